from datetime import datetime, timezone
from geoalchemy2 import Geometry, WKTElement
from sqlalchemy.types import TypeDecorator
from extensions import db

# Platform currency units per unit of quantity
BASE_RATES = {
    'food': 50,
    'medicine': 100,
    'other': 25,
}

CATEGORIES = tuple(BASE_RATES)
DONATION_STATUSES = ('available', 'claimed', 'collected', 'expired', 'cancelled')
CLAIM_STATUSES = ('pending', 'confirmed', 'collected', 'expired', 'cancelled')
ACTIVE_CLAIM_STATUSES = ('pending', 'confirmed')
ROLES = ('donor', 'ngo', 'volunteer')
SRID = 4326


def utcnow():
    """Naive UTC timestamp; every DateTime column is stored this way."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def estimate_value(quantity, category):
    return quantity * BASE_RATES.get(category, BASE_RATES['other'])


def _iso(value):
    return value.isoformat() if value else None


def make_point(lat, lng):
    return WKTElement(f'POINT({lng} {lat})', srid=SRID)


class GeoPoint(TypeDecorator):
    """
    geoalchemy2 POINT geometry on PostgreSQL/PostGIS. Other databases (the
    SQLite dev and test setups) keep the WKT text, so the schema still builds there.
    """
    impl = db.String(64)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(Geometry(geometry_type='POINT', srid=SRID))
        return dialect.type_descriptor(db.String(64))

    def process_bind_param(self, value, dialect):
        if isinstance(value, WKTElement) and dialect.name != 'postgresql':
            return value.data
        return value


def _location_from_coordinates(context):
    params = context.get_current_parameters()
    return make_point(params['latitude'], params['longitude'])


# ==========================================
#  1. USER MODEL
# ==========================================
class User(db.Model):
    """
    The identity collaborator's record. Tokens are issued elsewhere;
    this app only resolves the principal and keeps the donor's score.
    """
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    role = db.Column(db.String(20), nullable=False, default='donor')
    organization_name = db.Column(db.String(150), nullable=True)
    phone = db.Column(db.String(20), nullable=True)
    city = db.Column(db.String(100), nullable=True)

    # --- REPUTATION ---
    integrity_score = db.Column(db.Float, nullable=False, default=5.0)

    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    donations = db.relationship('Donation', backref='donor', lazy=True, foreign_keys='Donation.donor_id')
    claims = db.relationship('Claim', backref='claimant', lazy=True)

    @property
    def display_name(self):
        return self.organization_name or self.name

    def summary(self):
        return {
            'id': self.id,
            'name': self.display_name,
            'integrity_score': self.integrity_score,
        }


# ==========================================
#  2. DONATION MODEL
# ==========================================
class Donation(db.Model):
    __tablename__ = 'donations'

    id = db.Column(db.Integer, primary_key=True)
    donor_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)

    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.String(1000))
    category = db.Column(db.String(20), nullable=False, default='food')
    quantity = db.Column(db.Integer, nullable=False)
    unit = db.Column(db.String(50), nullable=False)
    tags = db.Column(db.String(200), default='')
    priority = db.Column(db.Integer, nullable=False, default=3)
    estimated_value = db.Column(db.Float, nullable=False, default=0)

    # --- LOCATION ---
    address = db.Column(db.String(255), nullable=False)
    city = db.Column(db.String(100), nullable=False)
    state = db.Column(db.String(100))
    latitude = db.Column(db.Float, nullable=False)
    longitude = db.Column(db.Float, nullable=False)
    # PostGIS point kept in step with latitude/longitude; drives the radius search
    location = db.Column(GeoPoint(), default=_location_from_coordinates)

    # --- TIMING ---
    expiry_date = db.Column(db.DateTime, nullable=False)
    pickup_start = db.Column(db.DateTime, nullable=False)
    pickup_end = db.Column(db.DateTime, nullable=False)

    # --- LIFECYCLE (written only through compare-and-set) ---
    status = db.Column(db.String(20), nullable=False, default='available')
    claimed_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    claimed_at = db.Column(db.DateTime, nullable=True)
    collected_at = db.Column(db.DateTime, nullable=True)
    otp = db.Column(db.String(4), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    claims = db.relationship('Claim', backref='donation', lazy=True)
    claimer = db.relationship('User', foreign_keys=[claimed_by])

    __table_args__ = (
        db.Index('ix_donations_status_expiry', 'status', 'expiry_date'),
        db.Index('ix_donations_donor_created', 'donor_id', 'created_at'),
        db.Index('ix_donations_category_status', 'category', 'status'),
        db.Index('ix_donations_claimed_by_status', 'claimed_by', 'status'),
    )

    def is_expired(self, now=None):
        return (now or utcnow()) > self.expiry_date

    def hours_to_expiry(self, now=None):
        remaining = (self.expiry_date - (now or utcnow())).total_seconds()
        return max(0, int(remaining // 3600))

    def pickup_status(self, now=None):
        now = now or utcnow()
        if now < self.pickup_start:
            return 'upcoming'
        if now > self.pickup_end:
            return 'closed'
        return 'active'

    def to_dict(self):
        # otp is deliberately absent: it only ever travels to the claimant
        return {
            'id': self.id,
            'donor': self.donor.summary() if self.donor else {'id': self.donor_id},
            'name': self.name,
            'description': self.description,
            'category': self.category,
            'quantity': self.quantity,
            'unit': self.unit,
            'tags': [t for t in (self.tags or '').split(',') if t],
            'priority': self.priority,
            'estimated_value': self.estimated_value,
            'location': {
                'address': self.address,
                'city': self.city,
                'state': self.state,
                'coordinates': {'lat': self.latitude, 'lng': self.longitude},
            },
            'expiry_date': _iso(self.expiry_date),
            'pickup_window': {'start': _iso(self.pickup_start), 'end': _iso(self.pickup_end)},
            'status': self.status,
            'claimed_by': self.claimed_by,
            'claimed_at': _iso(self.claimed_at),
            'collected_at': _iso(self.collected_at),
            'hours_to_expiry': self.hours_to_expiry(),
            'pickup_status': self.pickup_status(),
            'created_at': _iso(self.created_at),
        }


# ==========================================
#  3. CLAIM MODEL
# ==========================================
class Claim(db.Model):
    __tablename__ = 'claims'

    id = db.Column(db.Integer, primary_key=True)
    donation_id = db.Column(db.Integer, db.ForeignKey('donations.id'), nullable=False)
    claimant_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)

    status = db.Column(db.String(20), nullable=False, default='pending')
    otp = db.Column(db.String(4), nullable=False)

    # --- TIME TRACKING ---
    claimed_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    expires_at = db.Column(db.DateTime, nullable=False)
    confirmed_at = db.Column(db.DateTime, nullable=True)
    collected_at = db.Column(db.DateTime, nullable=True)

    # --- COORDINATION ---
    reason = db.Column(db.String(500), nullable=True)
    contact_phone = db.Column(db.String(20), nullable=True)
    alternate_contact = db.Column(db.String(100), nullable=True)

    # --- FEEDBACK (after collection) ---
    feedback_rating = db.Column(db.Integer, nullable=True)
    feedback_comment = db.Column(db.String(500), nullable=True)
    feedback_would_recommend = db.Column(db.Boolean, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        db.UniqueConstraint('donation_id', 'claimant_id', name='uq_claims_donation_claimant'),
        db.Index('ix_claims_status_expires', 'status', 'expires_at'),
        db.Index('ix_claims_claimant_created', 'claimant_id', 'created_at'),
    )

    def is_overdue(self, now=None):
        return self.status == 'pending' and (now or utcnow()) > self.expires_at

    def time_remaining_minutes(self, now=None):
        remaining = (self.expires_at - (now or utcnow())).total_seconds()
        return max(0, int(remaining // 60))

    def claim_duration_minutes(self):
        if not self.collected_at:
            return None
        return int((self.collected_at - self.claimed_at).total_seconds() // 60)

    def to_dict(self, include_otp=False, include_contact=True):
        data = {
            'id': self.id,
            'donation_id': self.donation_id,
            'claimant': self.claimant.summary() if self.claimant else {'id': self.claimant_id},
            'status': self.status,
            'claimed_at': _iso(self.claimed_at),
            'expires_at': _iso(self.expires_at),
            'confirmed_at': _iso(self.confirmed_at),
            'collected_at': _iso(self.collected_at),
            'reason': self.reason,
            'contact_info': {
                'phone': self.contact_phone,
                'alternate_contact': self.alternate_contact,
            },
            'feedback': None,
            'time_remaining_minutes': self.time_remaining_minutes(),
            'claim_duration_minutes': self.claim_duration_minutes(),
        }
        if self.feedback_rating is not None or self.feedback_comment:
            data['feedback'] = {
                'rating': self.feedback_rating,
                'comment': self.feedback_comment,
                'would_recommend': self.feedback_would_recommend,
            }
        if not include_contact:
            # Parties only: the claimant's phone numbers and reason
            del data['reason'], data['contact_info']
        if include_otp:
            data['otp'] = self.otp
        return data


# ==========================================
#  4. AUDIT LOG MODEL
# ==========================================
class AuditLog(db.Model):
    __tablename__ = 'audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    action = db.Column(db.String(50), nullable=False)
    details = db.Column(db.String(255))
    timestamp = db.Column(db.DateTime, default=utcnow)

    user = db.relationship('User', backref='logs')
