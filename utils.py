import math
import secrets
from datetime import datetime
from flask_mail import Message
from flask_jwt_extended import get_jwt_identity
from extensions import db, mail
from models import AuditLog, User
from errors import Forbidden, ValidationError


def log_activity(user_id, action, details, commit=True):
    """
    Appends an audit row. Engine transitions pass commit=False so the row
    lands (or rolls back) together with the transition itself.
    """
    try:
        db.session.add(AuditLog(user_id=user_id, action=action, details=details[:255]))
        if commit:
            db.session.commit()
    except Exception as e:
        if commit:
            db.session.rollback()
            print(f"⚠️ Logging Failed: {e}")  # Don't crash the app if logging fails
        else:
            raise


def generate_otp():
    """4-digit numeric code, 1000-9999."""
    return str(1000 + secrets.randbelow(9000))


def round10(value):
    """Round half-up to one decimal place."""
    return math.floor(value * 10 + 0.5) / 10


def parse_datetime(value, field):
    """Accepts ISO-8601; aware values are converted to naive UTC."""
    if not value:
        raise ValidationError(f'{field} is required')
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        raise ValidationError(f'Invalid {field} format. Use ISO-8601')
    if parsed.tzinfo is not None:
        parsed = (parsed - parsed.utcoffset()).replace(tzinfo=None)
    return parsed


def query_number(args, name, cast=int, minimum=None, maximum=None, default=None):
    """Reads a numeric query parameter, rejecting junk instead of ignoring it."""
    raw = args.get(name)
    if raw is None or raw == '':
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise ValidationError(f'{name} must be a number')
    if minimum is not None and value < minimum:
        raise ValidationError(f'{name} must be at least {minimum}')
    if maximum is not None and value > maximum:
        raise ValidationError(f'{name} must be at most {maximum}')
    return value


def pagination_args(args):
    return {
        'limit': query_number(args, 'limit', minimum=1, maximum=100, default=20),
        'page': query_number(args, 'page', minimum=1, default=1),
    }


def current_user():
    """Resolves the authenticated principal from the JWT identity."""
    identity = get_jwt_identity()
    if identity is None:
        return None
    try:
        user_id = int(identity)
    except (TypeError, ValueError):
        raise Forbidden('Account not found or inactive.')
    user = db.session.get(User, user_id)
    if not user or not user.is_active:
        raise Forbidden('Account not found or inactive.')
    return user


# ==========================================
#  EMAIL NOTICES (best effort)
# ==========================================
def send_claim_emails(donation, claim, claimant):
    """
    The claimant gets the pickup code; the donor only learns who claimed.
    The code must be read out by the claimant at handoff.
    """
    donor = donation.donor
    try:
        msg = Message(f"Claim Confirmed: {donation.name}", recipients=[claimant.email])
        msg.body = f"""Hello {claimant.display_name},

You successfully claimed {donation.quantity} {donation.unit} of {donation.name}.

Pickup Code: {claim.otp}

Share this code with the donor at pickup. It expires at {claim.expires_at.strftime('%Y-%m-%d %H:%M')} UTC.
"""
        mail.send(msg)
    except Exception as e:
        print(f"⚠️ Failed to email {claimant.email}: {e}")

    if not donor:
        return
    try:
        msg = Message("Someone claimed your donation!", recipients=[donor.email])
        msg.body = f"""Hello {donor.display_name},

{claimant.display_name} just claimed your {donation.name}.

Ask them for their pickup code when they arrive.
"""
        mail.send(msg)
    except Exception as e:
        print(f"⚠️ Failed to email {donor.email}: {e}")
