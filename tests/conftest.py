import sys
import os
import pytest
from datetime import timedelta

# 1. Add the parent directory to Python's path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

# 2. NOW import from app
from app import create_app
from extensions import db
from models import Donation, User, utcnow, ROLE_DONOR, ROLE_NGO

# Bangalore: MG Road donor, Koramangala NGO (~4.6km apart)
MG_ROAD = (12.9716, 77.5946)
KORAMANGALA = (12.9352, 77.6146)
FAR_AWAY = (13.3525, 77.1010)  # ~72km from Koramangala


@pytest.fixture
def app():
    """Create and configure a new app instance for each test."""
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
        "JWT_SECRET_KEY": "test-secret-key-that-is-long-enough",
        "MAIL_SUPPRESS_SEND": True
    })

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def stores(app):
    return app.extensions['donation_store'], app.extensions['user_store']


@pytest.fixture
def user_factory(app):
    def _create(email, role, lat=None, lng=None, radius=None, name=None):
        user = User(
            email=email,
            display_name=name or email.split('@')[0],
            role=role,
            latitude=lat,
            longitude=lng,
            operational_radius_km=radius if role == ROLE_NGO else None,
            is_active=True
        )
        user.set_password("password")
        db.session.add(user)
        db.session.commit()
        return user
    return _create


@pytest.fixture
def donor_user(user_factory):
    return user_factory("donor@test.com", ROLE_DONOR, *MG_ROAD, name="Hotel Annapurna")


@pytest.fixture
def ngo_user(user_factory):
    """NGO in Koramangala with the default 20km operational radius."""
    return user_factory("ngo@test.com", ROLE_NGO, *KORAMANGALA, radius=20, name="Feed Bangalore")


@pytest.fixture
def other_ngo(user_factory):
    return user_factory("other-ngo@test.com", ROLE_NGO, *KORAMANGALA, radius=20, name="Roti Bank")


@pytest.fixture
def donation_factory(donor_user):
    def _create(**kwargs):
        now = utcnow()
        defaults = {
            "title": "Veg Biryani",
            "description": "Leftover from a wedding lunch",
            "quantity": "40 plates",
            "food_type": "cooked",
            "expiry_time": now + timedelta(days=2),
            "pickup_start": now,
            "pickup_end": now + timedelta(hours=6),
            "address": "MG Road, Bangalore",
            "latitude": MG_ROAD[0],
            "longitude": MG_ROAD[1],
            "donor_id": donor_user.id,
            "donor_name": donor_user.display_name,
            "status": "available"
        }
        defaults.update(kwargs)
        item = Donation(**defaults)
        db.session.add(item)
        db.session.commit()
        return item
    return _create


def _login(client, email):
    resp = client.post('/api/auth/login', json={"email": email, "password": "password"})
    return {'Authorization': f'Bearer {resp.get_json()["token"]}'}


@pytest.fixture
def donor_headers(client, donor_user):
    return _login(client, donor_user.email)


@pytest.fixture
def ngo_headers(client, ngo_user):
    return _login(client, ngo_user.email)


@pytest.fixture
def other_ngo_headers(client, other_ngo):
    return _login(client, other_ngo.email)
