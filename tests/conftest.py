import sys
import os
from datetime import timedelta
from unittest.mock import patch
import pytest

# 1. Add the parent directory to Python's path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

# 2. NOW import from app
from app import create_app
from extensions import db, socketio
from flask_jwt_extended import create_access_token
from models import User, Donation, utcnow
from sqlalchemy import text

# Point at a PostGIS database to run the location search tests as well
TEST_DATABASE_URL = os.getenv('TEST_DATABASE_URL', 'sqlite:///:memory:')

POSTGIS = TEST_DATABASE_URL.startswith('postgresql')

requires_postgis = pytest.mark.skipif(not POSTGIS, reason="location search runs on PostGIS; set TEST_DATABASE_URL")
without_postgis = pytest.mark.skipif(POSTGIS, reason="checks the plain SQLite fallback")


@pytest.fixture
def app():
    """Create and configure a new app instance for each test."""
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": TEST_DATABASE_URL,
        "JWT_SECRET_KEY": "test-secret-key-that-is-long-enough",
        "MAIL_DEFAULT_SENDER": "test@relay.org",
    })

    with app.app_context():
        if db.engine.dialect.name == 'postgresql':
            db.session.execute(text("CREATE EXTENSION IF NOT EXISTS postgis"))
            db.session.commit()
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


# ==========================================
#  USERS & TOKENS
# ==========================================
def _make_user(**kwargs):
    user = User(**kwargs)
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def donor(app):
    return _make_user(name="Asha", email="donor@test.com", role="donor",
                      organization_name="Fresh Plate Cafe", city="Pune")


@pytest.fixture
def other_donor(app):
    return _make_user(name="Bharat", email="donor2@test.com", role="donor",
                      organization_name="Corner Pharmacy", city="Pune")


@pytest.fixture
def ngo(app):
    return _make_user(name="Chetan", email="ngo@test.com", role="ngo",
                      organization_name="Feed Pune Foundation", city="Pune")


@pytest.fixture
def volunteer(app):
    return _make_user(name="Divya", email="volunteer@test.com", role="volunteer", city="Mumbai")


def auth_headers(user):
    token = create_access_token(identity=str(user.id))
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def donor_headers(donor):
    return auth_headers(donor)


@pytest.fixture
def ngo_headers(ngo):
    return auth_headers(ngo)


@pytest.fixture
def volunteer_headers(volunteer):
    return auth_headers(volunteer)


# ==========================================
#  DATA
# ==========================================
@pytest.fixture
def donation_factory(donor):
    def _create(**kwargs):
        now = utcnow()
        defaults = {
            "donor_id": donor.id,
            "name": "Vegetable Biryani",
            "description": "Packed meals from lunch service",
            "category": "food",
            "quantity": 20,
            "unit": "meals",
            "estimated_value": 1000,
            "address": "12 MG Road, Camp",
            "city": "Pune",
            "latitude": 18.5204,
            "longitude": 73.8567,
            "expiry_date": now + timedelta(days=2),
            "pickup_start": now + timedelta(hours=1),
            "pickup_end": now + timedelta(hours=5),
            "status": "available",
        }
        defaults.update(kwargs)
        item = Donation(**defaults)
        db.session.add(item)
        db.session.commit()
        return item
    return _create


@pytest.fixture
def emitted():
    """Captures every fan-out emit as (event, payload, rooms)."""
    with patch.object(socketio, 'emit') as emit:
        yield emit


def emitted_events(emit_mock):
    return [(c.args[0], c.args[1], c.kwargs.get('to')) for c in emit_mock.call_args_list]
