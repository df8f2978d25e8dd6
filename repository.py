"""
Data access for donations and claims.

The lifecycle engine never assigns `status` on a loaded object. Every state
change goes through one of the compare-and-set helpers below, which issue a
single conditional UPDATE and report whether a row matched. That UPDATE is
the only mutual exclusion the system has, so it stays correct when several
app instances share one database.
"""
import math
from sqlalchemy import update, or_, func
from sqlalchemy.exc import IntegrityError
from extensions import db
from models import Donation, Claim, ACTIVE_CLAIM_STATUSES, SRID, utcnow
from errors import DuplicateClaim, ValidationError

UNIQUE_CLAIM_CONSTRAINT = 'uq_claims_donation_claimant'


def _pagination(page, limit, total):
    return {
        'current': page,
        'pages': math.ceil(total / limit) if limit else 0,
        'total': total,
        'limit': limit,
    }


def spatial_search_available():
    return db.engine.dialect.name == 'postgresql'


def _origin(lat, lng):
    return func.ST_SetSRID(func.ST_MakePoint(lng, lat), SRID)


def _expire_cached(model, pk):
    # The conditional UPDATE bypasses the identity map; drop any stale copy
    obj = db.session.identity_map.get(db.session.identity_key(model, pk))
    if obj is not None:
        db.session.expire(obj)


# ==========================================
#  1. DONATIONS
# ==========================================
def get_donation(donation_id):
    return db.session.get(Donation, donation_id)


def add_donation(donation):
    db.session.add(donation)
    db.session.flush()
    return donation


def compare_and_set_donation_status(donation_id, expected_status, patch, claimed_by=None):
    """
    Applies `patch` only if the stored status is still `expected_status`
    (and, when given, the donation is still held by `claimed_by`).
    Returns False when another writer got there first.
    """
    stmt = update(Donation).where(
        Donation.id == donation_id,
        Donation.status == expected_status,
    )
    if claimed_by is not None:
        stmt = stmt.where(Donation.claimed_by == claimed_by)

    values = dict(patch)
    values['updated_at'] = utcnow()
    result = db.session.execute(
        stmt.values(**values).execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    _expire_cached(Donation, donation_id)
    return True


def list_donations(filters=None):
    """
    Returns (rows, pagination) where rows are (donation, distance_km) pairs.
    distance_km is None unless lat/lng were supplied.
    """
    filters = filters or {}
    limit = filters.get('limit', 20)
    page = filters.get('page', 1)

    query = Donation.query
    if filters.get('status'):
        query = query.filter(Donation.status == filters['status'])
    if filters.get('category'):
        query = query.filter(Donation.category == filters['category'])
    if filters.get('unexpired_at') is not None:
        query = query.filter(Donation.expiry_date >= filters['unexpired_at'])
    if filters.get('city'):
        query = query.filter(Donation.city.ilike(filters['city']))
    if filters.get('donor_id') is not None:
        query = query.filter(Donation.donor_id == filters['donor_id'])
    if filters.get('exclude_donor') is not None:
        query = query.filter(Donation.donor_id != filters['exclude_donor'])
    if filters.get('search'):
        pattern = f"%{filters['search']}%"
        query = query.filter(or_(
            Donation.name.ilike(pattern),
            Donation.description.ilike(pattern),
            Donation.tags.ilike(pattern),
        ))

    lat, lng = filters.get('lat'), filters.get('lng')

    # --- SCENARIO 1: NO LOCATION (newest first, paged in SQL) ---
    if lat is None or lng is None:
        total = query.count()
        donations = query.order_by(Donation.created_at.desc(), Donation.id.desc()) \
            .offset((page - 1) * limit).limit(limit).all()
        return [(d, None) for d in donations], _pagination(page, limit, total)

    # --- SCENARIO 2: LOCATION (PostGIS radius filter, nearest first) ---
    if not spatial_search_available():
        raise ValidationError('Location search needs a PostGIS database')
    radius_m = filters.get('radius_km', 25) * 1000
    distance_m = func.ST_DistanceSphere(Donation.location, _origin(lat, lng))
    query = query.filter(distance_m <= radius_m)

    total = query.count()
    rows = query.add_columns(distance_m.label('distance_m')) \
        .order_by(distance_m, Donation.id) \
        .offset((page - 1) * limit).limit(limit).all()
    return [(d, round(meters / 1000, 2)) for d, meters in rows], _pagination(page, limit, total)


def distance_km(donation_id, lat, lng):
    """Great-circle distance from (lat, lng), or None without PostGIS."""
    if not spatial_search_available():
        return None
    meters = db.session.query(
        func.ST_DistanceSphere(Donation.location, _origin(lat, lng))
    ).filter(Donation.id == donation_id).scalar()
    return round(meters / 1000, 2) if meters is not None else None


def list_overdue_donations(now):
    """Available donations whose expiry date has passed."""
    return Donation.query.filter(
        Donation.status == 'available',
        Donation.expiry_date < now,
    ).all()


# ==========================================
#  2. CLAIMS
# ==========================================
def get_claim(claim_id):
    return db.session.get(Claim, claim_id)


def create_claim(claim):
    """
    Inserts the claim inside the caller's transaction. A (donation, claimant)
    collision rolls the whole transaction back and raises DuplicateClaim.
    """
    db.session.add(claim)
    try:
        db.session.flush()
    except IntegrityError as e:
        db.session.rollback()
        if _is_duplicate_claim(e):
            raise DuplicateClaim('You have already claimed this donation')
        raise
    return claim


def _is_duplicate_claim(error):
    # psycopg2 names the violated constraint; SQLite only names the columns
    diag = getattr(error.orig, 'diag', None)
    if getattr(diag, 'constraint_name', None):
        return diag.constraint_name == UNIQUE_CLAIM_CONSTRAINT
    message = str(error.orig)
    return UNIQUE_CLAIM_CONSTRAINT in message or 'claims.donation_id, claims.claimant_id' in message


def find_claim(donation_id, claimant_id):
    return Claim.query.filter_by(donation_id=donation_id, claimant_id=claimant_id).first()


def compare_and_set_claim_status(claim_id, expected_status, patch):
    stmt = update(Claim).where(
        Claim.id == claim_id,
        Claim.status == expected_status,
    )
    values = dict(patch)
    values['updated_at'] = utcnow()
    result = db.session.execute(
        stmt.values(**values).execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    _expire_cached(Claim, claim_id)
    return True


def otp_in_use(code):
    """True if an active claim already holds this code."""
    return db.session.query(
        Claim.query.filter(
            Claim.otp == code,
            Claim.status.in_(ACTIVE_CLAIM_STATUSES),
        ).exists()
    ).scalar()


def list_claims(filters=None):
    filters = filters or {}
    limit = filters.get('limit', 20)
    page = filters.get('page', 1)

    query = Claim.query
    if filters.get('claimant_id') is not None:
        query = query.filter(Claim.claimant_id == filters['claimant_id'])
    if filters.get('donation_id') is not None:
        query = query.filter(Claim.donation_id == filters['donation_id'])
    if filters.get('status'):
        query = query.filter(Claim.status == filters['status'])

    total = query.count()
    claims = query.order_by(Claim.created_at.desc(), Claim.id.desc()) \
        .offset((page - 1) * limit).limit(limit).all()
    return claims, _pagination(page, limit, total)


def list_overdue_claims(now):
    """Pending claims past their confirmation deadline, oldest first."""
    return Claim.query.filter(
        Claim.status == 'pending',
        Claim.expires_at < now,
    ).order_by(Claim.expires_at.asc()).all()
