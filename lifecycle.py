"""
Claim lifecycle engine.

Owns every status change of a donation and its claims:

    available --claim--> claimed --confirm--> (claim confirmed) --collect--> collected
        ^                   |                       |
        +--- cancel/expire -+-------- cancel -------+

Each operation reads, validates, then performs its writes through the
repository's compare-and-set helpers in one transaction. Events are
published only after the commit succeeds. The sweeper and the HTTP routes
both call into this module, so there is a single code path per transition.
"""
import secrets
from contextlib import contextmanager
from datetime import timedelta
from extensions import db
from models import (
    Claim, Donation, User, ACTIVE_CLAIM_STATUSES, estimate_value, utcnow,
)
from errors import (
    NotFound, Forbidden, Conflict, DuplicateClaim, Expired, InvalidCode, ValidationError,
)
from notifications import (
    GLOBAL, publish, user_channel, location_channel, donation_channel,
    NewDonation, NearbyDonation, DonationClaimed, ClaimCreated, PickupConfirmed,
    DonationCollected, ClaimCancelled, DonationStatusUpdated, DonationDeleted,
)
from utils import generate_otp, log_activity, round10, send_claim_emails
import repository

CLAIM_WINDOW_MINUTES = 15
OTP_ATTEMPTS = 20

# Fields only the engine may write on a donation
LIFECYCLE_FIELDS = frozenset({
    'status', 'claimed_by', 'claimed_at', 'collected_at', 'otp', 'donor_id',
})

RELEASED = {'status': 'available', 'claimed_by': None, 'claimed_at': None, 'otp': None}


@contextmanager
def _transaction():
    try:
        yield
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def _fresh_otp():
    """A code no other active claim currently holds."""
    code = generate_otp()
    for _ in range(OTP_ATTEMPTS):
        if not repository.otp_in_use(code):
            break
        code = generate_otp()
    return code


def _load_claim(claim_id):
    claim = repository.get_claim(claim_id)
    if not claim:
        raise NotFound('Claim not found')
    return claim


def _load_donation(donation_id):
    donation = repository.get_donation(donation_id)
    if not donation:
        raise NotFound('Donation not found')
    return donation


# ==========================================
#  1. DONATIONS
# ==========================================
def create_donation(donor, fields):
    """
    Persists a new `available` donation. `fields` holds validated model
    attributes (see routes.donations.parse_donation).
    """
    donation = Donation(
        donor_id=donor.id,
        status='available',
        estimated_value=estimate_value(fields['quantity'], fields['category']),
        **fields
    )
    with _transaction():
        repository.add_donation(donation)
        log_activity(donor.id, "POST_DONATION",
                     f"Posted {donation.name} ({donation.quantity} {donation.unit})", commit=False)

    payload = donation.to_dict()
    publish(NewDonation(donation=payload,
                        message=f"New {donation.category} donation available: {donation.name}"),
            GLOBAL)
    publish(NearbyDonation(donation=payload,
                           message=f"New donation available nearby: {donation.name}"),
            location_channel(donation.city))
    return donation


def update_donation(donation_id, donor_id, changes):
    """Edits non-lifecycle fields while the donation is still available."""
    donation = _load_donation(donation_id)
    if donation.donor_id != donor_id:
        raise Forbidden('Unauthorized. You did not post this.')

    locked = LIFECYCLE_FIELDS.intersection(changes)
    if locked:
        raise ValidationError(
            f"{', '.join(sorted(locked))} can only change through the claim lifecycle")
    if not changes:
        raise ValidationError('No updatable fields supplied')
    if donation.status != 'available':
        raise Conflict('Cannot edit. This item is already claimed or closed.')

    patch = dict(changes)
    if 'quantity' in patch or 'category' in patch:
        patch['estimated_value'] = estimate_value(
            patch.get('quantity', donation.quantity),
            patch.get('category', donation.category),
        )

    with _transaction():
        if not repository.compare_and_set_donation_status(donation_id, 'available', patch):
            raise Conflict('Cannot edit. This item is already claimed or closed.')
        log_activity(donor_id, "UPDATE_DONATION", f"Updated {donation.name}", commit=False)

    publish(DonationStatusUpdated(donation=donation.to_dict(),
                                  message=f"Donation updated: {donation.name}"),
            GLOBAL)
    return donation


def withdraw_donation(donation_id, donor_id):
    """Soft delete: the record stays for claim history."""
    donation = _load_donation(donation_id)
    if donation.donor_id != donor_id:
        raise Forbidden('Unauthorized. You did not post this.')
    if donation.status != 'available':
        raise Conflict('Cannot withdraw. This item has already been claimed or closed.')

    with _transaction():
        if not repository.compare_and_set_donation_status(donation_id, 'available', {'status': 'cancelled'}):
            raise Conflict('Cannot withdraw. This item has already been claimed or closed.')
        log_activity(donor_id, "WITHDRAW_DONATION", f"Withdrew {donation.name}", commit=False)

    publish(DonationStatusUpdated(donation=donation.to_dict(),
                                  message=f"Donation removed: {donation.name}"),
            GLOBAL)
    publish(DonationDeleted(donation_id=donation.id, message=f"Donation removed: {donation.name}"), GLOBAL)
    return donation


def expire_donation(donation_id, now=None):
    """
    available -> expired once the expiry date has passed.
    Returns False (and changes nothing) if the donation is not eligible.
    """
    donation = _load_donation(donation_id)
    now = now or utcnow()
    if donation.status != 'available' or not donation.is_expired(now):
        return False

    with _transaction():
        if not repository.compare_and_set_donation_status(donation_id, 'available', {'status': 'expired'}):
            return False
        log_activity(donation.donor_id, "EXPIRED",
                     f"Donation '{donation.name}' expired automatically.", commit=False)

    publish(DonationStatusUpdated(donation=donation.to_dict(),
                                  message=f"Donation expired: {donation.name}"),
            GLOBAL)
    return True


# ==========================================
#  2. CLAIM TRANSITIONS
# ==========================================
def create_claim(donation_id, claimant_id, reason=None, contact_info=None):
    """
    Reserves the donation for `claimant_id` and issues the pickup code.
    Returns {'claim', 'otp', 'expires_in_minutes'}.
    """
    donation = _load_donation(donation_id)
    if donation.donor_id == claimant_id:
        raise Forbidden('You cannot claim your own donation.')
    if donation.status != 'available':
        raise Conflict('Donation is not available for claiming')

    now = utcnow()
    if donation.is_expired(now):
        expire_donation(donation_id, now)
        raise Conflict('Donation has expired')
    if repository.find_claim(donation_id, claimant_id):
        raise DuplicateClaim('You have already claimed this donation')

    contact_info = contact_info or {}
    otp = _fresh_otp()
    claim = Claim(
        donation_id=donation_id,
        claimant_id=claimant_id,
        status='pending',
        otp=otp,
        claimed_at=now,
        expires_at=now + timedelta(minutes=CLAIM_WINDOW_MINUTES),
        reason=reason,
        contact_phone=contact_info.get('phone'),
        alternate_contact=contact_info.get('alternate_contact'),
    )

    with _transaction():
        won = repository.compare_and_set_donation_status(donation_id, 'available', {
            'status': 'claimed',
            'claimed_by': claimant_id,
            'claimed_at': now,
            'otp': otp,
        })
        if not won:
            raise Conflict('Donation is not available for claiming')
        repository.create_claim(claim)
        log_activity(claimant_id, "CLAIM_ITEM", f"Claimed {donation.name}", commit=False)

    claimant = db.session.get(User, claimant_id)
    send_claim_emails(donation, claim, claimant)

    publish(DonationClaimed(donation=donation.to_dict(), claim=claim.to_dict(),
                            message=f'Your donation "{donation.name}" has been claimed by {claimant.display_name}'),
            user_channel(donation.donor_id))
    # Anyone may watch a donation room, so that copy leaves out contact details
    publish(DonationClaimed(donation=donation.to_dict(), claim=claim.to_dict(include_contact=False),
                            message=f'"{donation.name}" has been claimed'),
            donation_channel(donation_id))
    publish(ClaimCreated(claim=claim.to_dict(include_otp=True), otp=otp,
                         message=f'You have successfully claimed "{donation.name}". Your OTP is: {otp}'),
            user_channel(claimant_id))
    publish(DonationStatusUpdated(donation=donation.to_dict(),
                                  message=f"Donation claimed: {donation.name}"),
            GLOBAL)

    return {'claim': claim, 'otp': otp, 'expires_in_minutes': CLAIM_WINDOW_MINUTES}


def confirm_pickup(claim_id, donor_id, code):
    """
    Donor confirms the handoff with the code the claimant reads out.
    A wrong code changes nothing and may be retried until the deadline.
    """
    claim = _load_claim(claim_id)
    donation = claim.donation
    if donation.donor_id != donor_id:
        raise Forbidden('Access denied. Only the donor can confirm pickup.')
    if claim.status != 'pending':
        raise Conflict('Claim is not in pending status')

    now = utcnow()
    if now > claim.expires_at:
        # The closed window wins over the code, right or wrong
        expire_claim(claim_id, now)
        raise Expired('Claim has expired')

    if not secrets.compare_digest(str(code).encode(), claim.otp.encode()):
        raise InvalidCode('Invalid OTP')

    with _transaction():
        if not repository.compare_and_set_claim_status(claim_id, 'pending', {
            'status': 'confirmed',
            'confirmed_at': now,
        }):
            raise Conflict('Claim is not in pending status')
        log_activity(donor_id, "CONFIRM_PICKUP", f"Confirmed pickup of {donation.name}", commit=False)

    publish(PickupConfirmed(claim=claim.to_dict(),
                            message=f'Pickup confirmed for "{donation.name}"'),
            user_channel(claim.claimant_id), user_channel(donor_id))
    return claim


def _feedback_patch(feedback):
    if not feedback:
        return {}
    rating = feedback.get('rating')
    if rating is not None:
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError('Rating must be between 1 and 5')
    comment = feedback.get('comment')
    if comment is not None:
        comment = str(comment).strip()
        if len(comment) > 500:
            raise ValidationError('Comment too long')
    return {
        'feedback_rating': rating,
        'feedback_comment': comment,
        'feedback_would_recommend': bool(feedback.get('would_recommend', True)),
    }


def mark_collected(claim_id, claimant_id, feedback=None):
    claim = _load_claim(claim_id)
    if claim.claimant_id != claimant_id:
        raise Forbidden('Access denied. Only the claimant can mark as collected.')
    if claim.status != 'confirmed':
        raise Conflict('Claim must be confirmed before collection')

    now = utcnow()
    patch = {'status': 'collected', 'collected_at': now}
    patch.update(_feedback_patch(feedback))
    donation = claim.donation

    with _transaction():
        if not repository.compare_and_set_claim_status(claim_id, 'confirmed', patch):
            raise Conflict('Claim must be confirmed before collection')
        if not repository.compare_and_set_donation_status(donation.id, 'claimed', {
            'status': 'collected',
            'collected_at': now,
            'otp': None,
        }, claimed_by=claimant_id):
            raise Conflict('Donation is no longer held by this claim')

        rating = patch.get('feedback_rating')
        if rating is not None:
            donor = db.session.get(User, donation.donor_id, with_for_update=True)
            donor.integrity_score = round10((donor.integrity_score * 10 + rating) / 11)
        log_activity(claimant_id, "COLLECT_ITEM", f"Collected {donation.name}", commit=False)

    publish(DonationCollected(claim=claim.to_dict(),
                              message=f'Your donation "{donation.name}" has been successfully collected!'),
            user_channel(donation.donor_id), user_channel(claimant_id))
    publish(DonationStatusUpdated(donation=donation.to_dict(),
                                  message=f"Donation completed: {donation.name}"),
            GLOBAL)
    return claim


def cancel_claim(claim_id, claimant_id):
    claim = _load_claim(claim_id)
    if claim.claimant_id != claimant_id:
        raise Forbidden('Access denied. You can only cancel your own claims.')
    if claim.status == 'collected':
        raise Conflict('Cannot cancel collected claim')
    if claim.status not in ACTIVE_CLAIM_STATUSES:
        raise Conflict(f'Claim is already {claim.status}')

    donation = claim.donation
    with _transaction():
        if not repository.compare_and_set_claim_status(claim_id, claim.status, {'status': 'cancelled'}):
            raise Conflict('Claim changed while cancelling')
        if not repository.compare_and_set_donation_status(donation.id, 'claimed', RELEASED,
                                                          claimed_by=claimant_id):
            raise Conflict('Donation is no longer held by this claim')
        log_activity(claimant_id, "CANCEL_CLAIM", f"Cancelled claim on {donation.name}", commit=False)

    publish(ClaimCancelled(donation=donation.to_dict(),
                           message=f'Claim cancelled for "{donation.name}". Item is now available again.'),
            user_channel(donation.donor_id), user_channel(claimant_id))
    publish(DonationStatusUpdated(donation=donation.to_dict(),
                                  message=f"Donation available again: {donation.name}"),
            GLOBAL)


def expire_claim(claim_id, now=None):
    """
    pending -> expired once past the deadline, releasing the donation.
    Idempotent: returns False without side effects if already handled.
    """
    claim = _load_claim(claim_id)
    now = now or utcnow()
    if not claim.is_overdue(now):
        return False

    donation = claim.donation
    with _transaction():
        if not repository.compare_and_set_claim_status(claim_id, 'pending', {'status': 'expired'}):
            return False
        released = repository.compare_and_set_donation_status(
            donation.id, 'claimed', RELEASED, claimed_by=claim.claimant_id)
        log_activity(claim.claimant_id, "EXPIRE_CLAIM",
                     f"Claim on {donation.name} expired before pickup", commit=False)

    if not released:
        print(f"⚠️ Claim {claim_id} expired but donation {donation.id} was not held by it.")
        return True

    publish(DonationStatusUpdated(donation=donation.to_dict(),
                                  message=f"Donation available again: {donation.name}"),
            GLOBAL)
    return True


# ==========================================
#  3. SWEEPS
# ==========================================
def sweep_expired_claims(now=None):
    now = now or utcnow()
    count = 0
    for claim_id in [c.id for c in repository.list_overdue_claims(now)]:
        try:
            if expire_claim(claim_id, now):
                count += 1
        except Exception as e:
            print(f"❌ Sweep: claim {claim_id} skipped: {e}")
    return count


def sweep_expired_donations(now=None):
    now = now or utcnow()
    count = 0
    for donation_id in [d.id for d in repository.list_overdue_donations(now)]:
        try:
            if expire_donation(donation_id, now):
                count += 1
        except Exception as e:
            print(f"❌ Sweep: donation {donation_id} skipped: {e}")
    return count


def sweep_expired(now=None):
    now = now or utcnow()
    return {
        'expired_donation_count': sweep_expired_donations(now),
        'expired_claim_count': sweep_expired_claims(now),
    }
