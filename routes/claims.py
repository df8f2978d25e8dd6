import re
from flask import Blueprint, request, jsonify
from flask_jwt_extended import jwt_required
from models import CLAIM_STATUSES
from errors import NotFound, Forbidden, ValidationError
from utils import current_user, pagination_args
import lifecycle
import repository

claims_bp = Blueprint('claims', __name__)

CLAIMANT_ROLES = ('ngo', 'volunteer')
PHONE_RE = re.compile(r'^\+?[\d\s\-()]{7,20}$')


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


# ==========================================
#  1. CLAIM DONATION
# ==========================================
@claims_bp.route('/api/claims', methods=['POST'])
@jwt_required()
def create_claim():
    """
    Reserves a donation for 15 minutes and returns the pickup code.
    Only the claimant ever sees the code; they read it out at handoff.
    """
    user = current_user()
    if user.role not in CLAIMANT_ROLES:
        raise Forbidden('Only registered NGOs/Volunteers can claim donations.')

    data = _json_body()
    donation_id = data.get('donation_id')
    if isinstance(donation_id, bool) or not isinstance(donation_id, int):
        raise ValidationError('Invalid donation ID')

    reason = data.get('reason')
    if reason is not None:
        reason = str(reason).strip()
        if len(reason) > 500:
            raise ValidationError('Reason too long')

    contact_info = data.get('contact_info') or {}
    if not isinstance(contact_info, dict):
        raise ValidationError('contact_info must be an object')
    phone = contact_info.get('phone')
    if phone and not PHONE_RE.match(str(phone)):
        raise ValidationError('Invalid phone number')

    result = lifecycle.create_claim(donation_id, user.id, reason=reason, contact_info=contact_info)
    return jsonify({
        'message': 'Donation claimed successfully',
        'claim': result['claim'].to_dict(include_otp=True),
        'otp': result['otp'],
        'expires_in_minutes': result['expires_in_minutes']
    }), 201


# ==========================================
#  2. CONFIRM PICKUP (Donor enters the code)
# ==========================================
@claims_bp.route('/api/claims/<int:claim_id>/confirm', methods=['POST'])
@jwt_required()
def confirm_pickup(claim_id):
    user = current_user()
    otp = _json_body().get('otp')
    if not isinstance(otp, str) or len(otp) != 4:
        raise ValidationError('OTP must be 4 digits')

    claim = lifecycle.confirm_pickup(claim_id, user.id, otp)
    return jsonify({
        'message': 'Pickup confirmed successfully',
        'claim': claim.to_dict()
    }), 200


# ==========================================
#  3. MARK COLLECTED (Claimant)
# ==========================================
@claims_bp.route('/api/claims/<int:claim_id>/collect', methods=['POST'])
@jwt_required()
def mark_collected(claim_id):
    user = current_user()
    feedback = _json_body().get('feedback')
    if feedback is not None and not isinstance(feedback, dict):
        raise ValidationError('feedback must be an object')

    claim = lifecycle.mark_collected(claim_id, user.id, feedback=feedback)
    return jsonify({
        'message': 'Item marked as collected successfully',
        'claim': claim.to_dict()
    }), 200


# ==========================================
#  4. CANCEL CLAIM
# ==========================================
@claims_bp.route('/api/claims/<int:claim_id>', methods=['DELETE'])
@jwt_required()
def cancel_claim(claim_id):
    user = current_user()
    lifecycle.cancel_claim(claim_id, user.id)
    return jsonify({'message': 'Claim cancelled successfully'}), 200


# ==========================================
#  5. MY CLAIMS
# ==========================================
@claims_bp.route('/api/claims/mine', methods=['GET'])
@jwt_required()
def get_my_claims():
    user = current_user()
    status = request.args.get('status')
    if status and status not in CLAIM_STATUSES:
        raise ValidationError('Invalid status')

    claims, pagination = repository.list_claims({
        'claimant_id': user.id,
        'status': status,
        **pagination_args(request.args),
    })

    results = []
    for c in claims:
        item = c.to_dict(include_otp=c.status == 'pending')
        item['donation'] = c.donation.to_dict() if c.donation else None
        results.append(item)

    return jsonify({'claims': results, 'pagination': pagination}), 200


# ==========================================
#  6. SINGLE CLAIM (parties only)
# ==========================================
@claims_bp.route('/api/claims/<int:claim_id>', methods=['GET'])
@jwt_required()
def get_single_claim(claim_id):
    user = current_user()
    claim = repository.get_claim(claim_id)
    if not claim:
        raise NotFound('Claim not found')

    is_claimant = claim.claimant_id == user.id
    if not is_claimant and claim.donation.donor_id != user.id:
        raise Forbidden('Access denied.')

    item = claim.to_dict(include_otp=is_claimant and claim.status == 'pending')
    item['donation'] = claim.donation.to_dict()
    return jsonify(item), 200
