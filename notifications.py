"""
Real-time fan-out over Socket.IO rooms.

Every lifecycle event is a small frozen dataclass with a fixed payload,
published once to the rooms that should see it. Delivery is at-most-once:
a client that was offline reconciles by re-listing on reconnect.
"""
from dataclasses import dataclass, asdict
from typing import ClassVar, Optional
from flask import request
from flask_jwt_extended import decode_token
from flask_socketio import join_room, leave_room, ConnectionRefusedError
from extensions import db, socketio
from models import User

GLOBAL = 'global'


def user_channel(user_id):
    return f"user:{user_id}"


def location_channel(city):
    return f"location:{city.strip().lower()}"


def donation_channel(donation_id):
    return f"donation:{donation_id}"


# ==========================================
#  EVENT VARIANTS
# ==========================================
@dataclass(frozen=True)
class Event:
    name: ClassVar[str] = ''

    def payload(self):
        return asdict(self)


@dataclass(frozen=True)
class NewDonation(Event):
    name: ClassVar[str] = 'new_donation'
    donation: dict
    message: str


@dataclass(frozen=True)
class NearbyDonation(Event):
    name: ClassVar[str] = 'nearby_donation'
    donation: dict
    message: str


@dataclass(frozen=True)
class DonationClaimed(Event):
    name: ClassVar[str] = 'donation_claimed'
    donation: dict
    claim: dict
    message: str


@dataclass(frozen=True)
class ClaimCreated(Event):
    """Carries the pickup code. Only ever addressed to the claimant."""
    name: ClassVar[str] = 'claim_created'
    claim: dict
    otp: str
    message: str


@dataclass(frozen=True)
class PickupConfirmed(Event):
    name: ClassVar[str] = 'pickup_confirmed'
    claim: dict
    message: str


@dataclass(frozen=True)
class DonationCollected(Event):
    name: ClassVar[str] = 'donation_collected'
    claim: dict
    message: str


@dataclass(frozen=True)
class ClaimCancelled(Event):
    name: ClassVar[str] = 'claim_cancelled'
    donation: dict
    message: str


@dataclass(frozen=True)
class DonationStatusUpdated(Event):
    name: ClassVar[str] = 'donation_status_updated'
    donation: dict
    message: str


@dataclass(frozen=True)
class DonationDeleted(Event):
    name: ClassVar[str] = 'donation_deleted'
    donation_id: int
    message: str


SECRET_EVENTS = (ClaimCreated,)


def _check_addressing(event, channels):
    if not channels:
        raise ValueError(f"{event.name} has no channels")
    if isinstance(event, SECRET_EVENTS):
        if len(channels) != 1 or not channels[0].startswith('user:'):
            raise ValueError(f"{event.name} may only be sent to a single user channel")


def publish(event, *channels):
    """
    Emits `event` once. GLOBAL broadcasts to every connected client;
    otherwise the rooms are passed as one list so a client in several of
    them still receives a single copy.
    Errors are reported, never raised: the transition has already committed.
    """
    channels = [c for c in dict.fromkeys(channels) if c]
    _check_addressing(event, channels)
    try:
        if GLOBAL in channels:
            socketio.emit(event.name, event.payload())
        else:
            socketio.emit(event.name, event.payload(), to=channels)
    except Exception as e:
        print(f"⚠️ Fan-out failed for {event.name}: {e}")


# ==========================================
#  SOCKET HANDLERS (subscriptions)
# ==========================================
def _token_from_handshake(auth: Optional[dict]):
    if auth and auth.get('token'):
        return auth['token']
    header = request.headers.get('Authorization', '')
    if header.startswith('Bearer '):
        return header[len('Bearer '):]
    return None


@socketio.on('connect')
def handle_connect(auth=None):
    token = _token_from_handshake(auth)
    if not token:
        raise ConnectionRefusedError('Authentication token required')
    try:
        user_id = int(decode_token(token)['sub'])
    except Exception:
        raise ConnectionRefusedError('Invalid token')

    user = db.session.get(User, user_id)
    if not user or not user.is_active:
        raise ConnectionRefusedError('Unknown user')

    join_room(user_channel(user.id))
    if user.city:
        join_room(location_channel(user.city))
    print(f"🔌 Connected: {user.display_name} ({user.role})")


@socketio.on('join_donation_room')
def handle_join_donation(donation_id):
    join_room(donation_channel(donation_id))


@socketio.on('leave_donation_room')
def handle_leave_donation(donation_id):
    leave_room(donation_channel(donation_id))
