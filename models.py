from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash
from datetime import datetime, timezone
from extensions import db
from geo import Coordinates


def utcnow():
    """Naive UTC 'now'. All timestamps are stored naive-UTC so SQLite and Postgres compare alike."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat(value):
    return value.isoformat() + 'Z' if value else None


ROLE_DONOR = 'donor'
ROLE_NGO = 'ngo'
ROLES = (ROLE_DONOR, ROLE_NGO)

STATUS_AVAILABLE = 'available'
STATUS_CLAIMED = 'claimed'
STATUS_PICKED = 'picked'
STATUS_EXPIRED = 'expired'
STATUSES = (STATUS_AVAILABLE, STATUS_CLAIMED, STATUS_PICKED, STATUS_EXPIRED)

DEFAULT_OPERATIONAL_RADIUS_KM = 20.0


# ==========================================
#  1. USER MODEL
# ==========================================
class User(UserMixin, db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(256), nullable=False)
    display_name = db.Column(db.String(150), nullable=False)
    role = db.Column(db.String(20), nullable=False, index=True)
    photo_url = db.Column(db.String(500), nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    # --- LOCATION (optional) ---
    address = db.Column(db.String(255), nullable=True)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)

    # --- NGO DETAILS ---
    ngo_description = db.Column(db.Text, nullable=True)
    contact_email = db.Column(db.String(120), nullable=True)
    contact_phone = db.Column(db.String(20), nullable=True)
    operational_radius_km = db.Column(db.Float, nullable=True)

    # --- TIMESTAMPS ---
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    # Closing a donor account takes their listings with it
    donations = db.relationship('Donation', backref='donor', lazy=True, cascade='all, delete-orphan')

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    @property
    def coordinates(self):
        if self.latitude is None or self.longitude is None:
            return None
        return Coordinates(self.latitude, self.longitude)

    @property
    def effective_radius_km(self):
        return self.operational_radius_km or DEFAULT_OPERATIONAL_RADIUS_KM

    def location_dict(self):
        if self.address is None and self.coordinates is None:
            return None
        coords = self.coordinates
        return {
            'address': self.address,
            'coordinates': {'lat': coords.lat, 'lng': coords.lng} if coords else None
        }

    def to_dict(self):
        data = {
            'id': self.id,
            'email': self.email,
            'display_name': self.display_name,
            'role': self.role,
            'photo_url': self.photo_url,
            'location': self.location_dict(),
            'is_active': self.is_active,
            'created_at': isoformat(self.created_at),
            'updated_at': isoformat(self.updated_at)
        }
        if self.role == ROLE_NGO:
            data['ngo_details'] = {
                'description': self.ngo_description,
                'contact_email': self.contact_email,
                'contact_phone': self.contact_phone,
                'operational_radius_km': self.effective_radius_km
            }
        return data


# ==========================================
#  2. DONATION MODEL
# ==========================================
class Donation(db.Model):
    __tablename__ = 'donations'

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, nullable=False)
    quantity = db.Column(db.String(100), nullable=False)
    food_type = db.Column(db.String(50), nullable=False)
    image_url = db.Column(db.String(500))

    # --- TIMING ---
    expiry_time = db.Column(db.DateTime, nullable=False)
    pickup_start = db.Column(db.DateTime, nullable=False)
    pickup_end = db.Column(db.DateTime, nullable=False)

    # --- LOCATION ---
    address = db.Column(db.String(255), nullable=False)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)

    # --- LIFECYCLE ---
    status = db.Column(db.String(20), default=STATUS_AVAILABLE, nullable=False, index=True)
    donor_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    donor_name = db.Column(db.String(150))
    claimed_by = db.Column(db.Integer, nullable=True, index=True)
    claimed_by_name = db.Column(db.String(150))
    claimed_at = db.Column(db.DateTime, nullable=True)
    picked_up_at = db.Column(db.DateTime, nullable=True)

    # --- TIMESTAMPS ---
    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    @property
    def coordinates(self):
        if self.latitude is None or self.longitude is None:
            return None
        return Coordinates(self.latitude, self.longitude)

    @property
    def is_expired(self):
        """Past expiry and never handed over. Derived, not necessarily persisted."""
        if self.status == STATUS_EXPIRED:
            return True
        if self.status != STATUS_AVAILABLE:
            return False
        return self.expiry_time is not None and self.expiry_time <= utcnow()

    @property
    def effective_status(self):
        return STATUS_EXPIRED if self.is_expired else self.status

    def to_dict(self, distance_km=None):
        coords = self.coordinates
        data = {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'quantity': self.quantity,
            'food_type': self.food_type,
            'image_url': self.image_url,
            'expiry_time': isoformat(self.expiry_time),
            'pickup_window': {
                'start': isoformat(self.pickup_start),
                'end': isoformat(self.pickup_end)
            },
            'location': {
                'address': self.address,
                'coordinates': {'lat': coords.lat, 'lng': coords.lng} if coords else None
            },
            'status': self.effective_status,
            'is_expired': self.is_expired,
            'donor_id': self.donor_id,
            'donor_name': self.donor_name,
            'claimed_by': self.claimed_by,
            'claimed_by_name': self.claimed_by_name,
            'claimed_at': isoformat(self.claimed_at),
            'picked_up_at': isoformat(self.picked_up_at),
            'created_at': isoformat(self.created_at),
            'updated_at': isoformat(self.updated_at)
        }
        if distance_km is not None:
            data['distance_km'] = round(distance_km, 2)
        return data


# ==========================================
#  3. AUDIT LOG MODEL
# ==========================================
class AuditLog(db.Model):
    __tablename__ = 'audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    action = db.Column(db.String(50), nullable=False)
    details = db.Column(db.String(255))
    timestamp = db.Column(db.DateTime, server_default=db.func.now())
