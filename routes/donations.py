from flask import Blueprint, request, jsonify
from flask_jwt_extended import jwt_required
from models import CATEGORIES, DONATION_STATUSES, utcnow
from errors import NotFound, Forbidden, ValidationError
from utils import current_user, parse_datetime, query_number, pagination_args
import lifecycle
import repository

donations_bp = Blueprint('donations', __name__)

# Keys a client may never send; these move only through claim transitions
LOCKED_KEYS = {'status', 'claimed_by', 'claimed_at', 'collected_at', 'otp', 'donor', 'donor_id'}
UPDATABLE_KEYS = {'name', 'description', 'category', 'quantity', 'unit', 'tags', 'priority', 'pickup_window'}


def _text(data, key, min_len=0, max_len=None, required=True):
    value = data.get(key)
    if value is None:
        if required:
            raise ValidationError(f'Missing required field: {key}')
        return None
    value = str(value).strip()
    if len(value) < min_len or (max_len and len(value) > max_len):
        raise ValidationError(f'{key} must be between {min_len} and {max_len} characters')
    return value


def _number(value, key, cast, minimum, maximum=None):
    if isinstance(value, bool):
        raise ValidationError(f'{key} must be a number')
    try:
        number = cast(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{key} must be a number')
    if cast is int and number != float(value):
        raise ValidationError(f'{key} must be a whole number')
    if number < minimum or (maximum is not None and number > maximum):
        raise ValidationError(f'Invalid {key}')
    return number


def _tags(value):
    if isinstance(value, str):
        value = value.split(',')
    if not isinstance(value, list):
        raise ValidationError('tags must be a list')
    return ','.join(t.strip().lower() for t in value if str(t).strip())


def _pickup_window(window, require_future):
    if not isinstance(window, dict):
        raise ValidationError('Missing required field: pickup_window')
    start = parse_datetime(window.get('start'), 'pickup start time')
    end = parse_datetime(window.get('end'), 'pickup end time')
    if require_future and start <= utcnow():
        raise ValidationError('Pickup start time must be in the future')
    if end <= start:
        raise ValidationError('Pickup end time must be after start time')
    return start, end


def parse_donation(data):
    """Validates a create payload into Donation model attributes."""
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')

    category = data.get('category', 'food')
    if category not in CATEGORIES:
        raise ValidationError('Invalid category')

    location = data.get('location')
    if not isinstance(location, dict):
        raise ValidationError('Missing required field: location')
    coordinates = location.get('coordinates') or {}

    expiry_date = parse_datetime(data.get('expiry_date'), 'expiry date')
    if expiry_date <= utcnow():
        raise ValidationError('Expiry date must be in the future')
    pickup_start, pickup_end = _pickup_window(data.get('pickup_window'), require_future=True)

    return {
        'name': _text(data, 'name', 2, 200),
        'description': _text(data, 'description', 0, 1000, required=False),
        'category': category,
        'quantity': _number(data.get('quantity'), 'quantity', int, 1),
        'unit': _text(data, 'unit', 1, 50),
        'tags': _tags(data.get('tags', [])),
        'priority': _number(data.get('priority', 3), 'priority', int, 1, 5),
        'address': _text(location, 'address', 5, 255),
        'city': _text(location, 'city', 1, 100),
        'state': _text(location, 'state', 0, 100, required=False),
        'latitude': _number(coordinates.get('lat'), 'latitude', float, -90, 90),
        'longitude': _number(coordinates.get('lng'), 'longitude', float, -180, 180),
        'expiry_date': expiry_date,
        'pickup_start': pickup_start,
        'pickup_end': pickup_end,
    }


def parse_donation_update(data):
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    locked = LOCKED_KEYS.intersection(data)
    if locked:
        raise ValidationError(
            f"{', '.join(sorted(locked))} can only change through the claim lifecycle")

    changes = {}
    if 'name' in data:
        changes['name'] = _text(data, 'name', 2, 200)
    if 'description' in data:
        changes['description'] = _text(data, 'description', 0, 1000)
    if 'category' in data:
        if data['category'] not in CATEGORIES:
            raise ValidationError('Invalid category')
        changes['category'] = data['category']
    if 'quantity' in data:
        changes['quantity'] = _number(data['quantity'], 'quantity', int, 1)
    if 'unit' in data:
        changes['unit'] = _text(data, 'unit', 1, 50)
    if 'tags' in data:
        changes['tags'] = _tags(data['tags'])
    if 'priority' in data:
        changes['priority'] = _number(data['priority'], 'priority', int, 1, 5)
    if 'pickup_window' in data:
        changes['pickup_start'], changes['pickup_end'] = _pickup_window(
            data['pickup_window'], require_future=False)

    if not changes:
        raise ValidationError(f"Nothing to update. Allowed fields: {', '.join(sorted(UPDATABLE_KEYS))}")
    return changes


# ==========================================
#  1. CREATE DONATION
# ==========================================
@donations_bp.route('/api/donations', methods=['POST'])
@jwt_required()
def create_donation():
    user = current_user()
    if user.role != 'donor':
        raise Forbidden('Only donors can post donations.')

    donation = lifecycle.create_donation(user, parse_donation(request.get_json(silent=True)))
    return jsonify({
        'message': 'Donation created successfully',
        'donation': donation.to_dict()
    }), 201


# ==========================================
#  2. GET ALL DONATIONS (Feed)
# ==========================================
@donations_bp.route('/api/donations', methods=['GET'])
@jwt_required(optional=True)
def get_donations():
    """
    Filtered, paginated feed. With lat/lng the results are limited to
    `radius` km and sorted nearest first.
    """
    args = request.args
    status = args.get('status', 'available')
    if status not in DONATION_STATUSES:
        raise ValidationError('Invalid status')
    category = args.get('category')
    if category and category not in CATEGORIES:
        raise ValidationError('Invalid category')

    filters = {
        'status': status,
        'category': category,
        'city': args.get('city'),
        'search': args.get('search'),
        'lat': query_number(args, 'lat', float, -90, 90),
        'lng': query_number(args, 'lng', float, -180, 180),
        'radius_km': query_number(args, 'radius', int, 1, 100, default=25),
        **pagination_args(args),
    }
    # Items past their date are hidden even before the sweeper catches them
    if status == 'available':
        filters['unexpired_at'] = utcnow()

    user = current_user()
    if user:
        filters['exclude_donor'] = user.id

    rows, pagination = repository.list_donations(filters)
    results = []
    for donation, distance_km in rows:
        item = donation.to_dict()
        item['distance_km'] = distance_km
        results.append(item)

    return jsonify({'donations': results, 'pagination': pagination}), 200


# ==========================================
#  3. GET MY DONATIONS
# ==========================================
@donations_bp.route('/api/donations/mine', methods=['GET'])
@jwt_required()
def get_my_donations():
    user = current_user()
    status = request.args.get('status')
    if status and status not in DONATION_STATUSES:
        raise ValidationError('Invalid status')

    rows, pagination = repository.list_donations({
        'donor_id': user.id,
        'status': status,
        **pagination_args(request.args),
    })
    return jsonify({
        'donations': [d.to_dict() for d, _ in rows],
        'pagination': pagination
    }), 200


# ==========================================
#  4. GET SINGLE DONATION
# ==========================================
@donations_bp.route('/api/donations/<int:donation_id>', methods=['GET'])
@jwt_required(optional=True)
def get_single_donation(donation_id):
    donation = repository.get_donation(donation_id)
    if not donation:
        raise NotFound('Donation not found')

    user = current_user()
    lat = query_number(request.args, 'lat', float, -90, 90)
    lng = query_number(request.args, 'lng', float, -180, 180)

    item = donation.to_dict()
    item['is_expired'] = donation.is_expired()
    item['is_owner'] = bool(user and user.id == donation.donor_id)
    item['distance_km'] = None
    if lat is not None and lng is not None:
        item['distance_km'] = repository.distance_km(donation.id, lat, lng)

    return jsonify(item), 200


# ==========================================
#  5. UPDATE DONATION (non-lifecycle fields only)
# ==========================================
@donations_bp.route('/api/donations/<int:donation_id>', methods=['PATCH'])
@jwt_required()
def update_donation(donation_id):
    user = current_user()
    changes = parse_donation_update(request.get_json(silent=True))
    donation = lifecycle.update_donation(donation_id, user.id, changes)
    return jsonify({
        'message': 'Donation updated successfully',
        'donation': donation.to_dict()
    }), 200


# ==========================================
#  6. WITHDRAW DONATION
# ==========================================
@donations_bp.route('/api/donations/<int:donation_id>', methods=['DELETE'])
@jwt_required()
def withdraw_donation(donation_id):
    """Soft delete: status becomes 'cancelled', history is kept."""
    user = current_user()
    lifecycle.withdraw_donation(donation_id, user.id)
    return jsonify({'message': 'Donation withdrawn successfully'}), 200
