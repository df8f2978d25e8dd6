from flask import Flask
from flask_cors import CORS
import os
from dotenv import load_dotenv
from datetime import timedelta

from extensions import db, migrate, jwt, mail, socketio, scheduler
from errors import register_error_handlers

load_dotenv()


def _database_url():
    # Heroku-style URLs need the SQLAlchemy dialect name
    database_url = os.getenv('DATABASE_URL', 'sqlite:///surplus_relay.db')
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    return database_url


def create_app(config=None):
    """
    The Application Factory.
    Creates and configures the app, but does not run it or start the scheduler.
    `config` overrides are applied before any extension reads the settings.
    """
    app = Flask(__name__)

    # --- CONFIGURATION ---
    app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'default_secret_key')
    app.config['SQLALCHEMY_DATABASE_URI'] = _database_url()
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['JWT_SECRET_KEY'] = os.getenv('JWT_SECRET_KEY', 'fallback-secret-key')
    app.config['JWT_ACCESS_TOKEN_EXPIRES'] = timedelta(minutes=25)
    app.config['CORS_ORIGINS'] = [
        o.strip() for o in os.getenv('CORS_ORIGINS', 'http://localhost:3000').split(',') if o.strip()
    ]

    # --- EMAIL CONFIGURATION ---
    app.config['MAIL_SERVER'] = os.getenv('MAIL_SERVER', 'smtp.gmail.com')
    app.config['MAIL_PORT'] = int(os.getenv('MAIL_PORT', 587))
    app.config['MAIL_USE_TLS'] = True
    app.config['MAIL_USERNAME'] = os.getenv('MAIL_USERNAME')
    app.config['MAIL_PASSWORD'] = os.getenv('MAIL_PASSWORD')
    app.config['MAIL_DEFAULT_SENDER'] = os.getenv('MAIL_USERNAME', 'noreply@surplus-relay.local')

    if config:
        app.config.update(config)

    # --- INITIALIZE EXTENSIONS ---
    # Socket handlers must be registered before socketio binds to the app
    import notifications  # noqa: F401
    import scheduler as sweep_jobs  # noqa: F401

    db.init_app(app)
    migrate.init_app(app, db)
    jwt.init_app(app)
    mail.init_app(app)
    socketio.init_app(app, cors_allowed_origins=app.config['CORS_ORIGINS'])
    # Jobs are registered here; the clock only starts in __main__
    scheduler.init_app(app)

    # --- CORS CONFIGURATION ---
    CORS(app, resources={
        r"/api/*": {
            "origins": app.config['CORS_ORIGINS'],
            "methods": ["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
            "allow_headers": ["Content-Type", "Authorization", "X-Requested-With"],
            "supports_credentials": True
        }
    })

    register_error_handlers(app)

    # --- REGISTER BLUEPRINTS ---
    # Import inside the function to avoid circular imports
    from routes.donations import donations_bp
    from routes.claims import claims_bp

    app.register_blueprint(donations_bp)
    app.register_blueprint(claims_bp)

    @app.cli.command('sweep')
    def sweep_command():
        """Expire overdue claims and donations now."""
        from lifecycle import sweep_expired
        result = sweep_expired()
        print(f"🧹 Sweep: {result['expired_donation_count']} donations expired, "
              f"{result['expired_claim_count']} claims expired")

    return app


# --- ENTRY POINT ---
if __name__ == "__main__":
    app = create_app()

    # Start the Scheduler only when running the server (not during tests)
    scheduler.start()
    print("⏰ Scheduler Started: Watching for expired claims & donations...")

    socketio.run(app, debug=True)
