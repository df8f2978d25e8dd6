from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_jwt_extended import JWTManager
from flask_mail import Mail
from flask_socketio import SocketIO
from flask_apscheduler import APScheduler

# Created unbound; create_app() attaches them to the app instance
db = SQLAlchemy()
migrate = Migrate()
jwt = JWTManager()
mail = Mail()
# Origins are set per-app in create_app()
socketio = SocketIO()
scheduler = APScheduler()
