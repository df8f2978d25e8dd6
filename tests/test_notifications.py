import pytest
from datetime import timedelta
from flask_jwt_extended import create_access_token
from extensions import socketio
from models import utcnow
from notifications import (
    GLOBAL, publish, user_channel, location_channel, donation_channel,
    ClaimCreated, DonationClaimed, DonationStatusUpdated,
)
from conftest import emitted_events
import lifecycle


def _connect(app, user=None, **kwargs):
    if user is not None:
        kwargs['auth'] = {'token': create_access_token(identity=str(user.id))}
    return socketio.test_client(app, **kwargs)


def _names(client):
    return [packet['name'] for packet in client.get_received()]


# ==========================================
#  1. ADDRESSING
# ==========================================

def test_channel_names():
    assert user_channel(7) == 'user:7'
    assert location_channel('  New Delhi ') == 'location:new delhi'
    assert donation_channel(3) == 'donation:3'


def test_global_events_broadcast(emitted):
    publish(DonationStatusUpdated(donation={'id': 1}, message='hi'), GLOBAL)

    assert emitted_events(emitted) == [('donation_status_updated', {'donation': {'id': 1}, 'message': 'hi'}, None)]


def test_rooms_get_a_single_emit(emitted):
    event = DonationClaimed(donation={'id': 1}, claim={'id': 2}, message='m')
    publish(event, 'user:1', 'donation:1', 'user:1')

    assert emitted.call_count == 1
    assert emitted_events(emitted)[0][2] == ['user:1', 'donation:1']


def test_code_bearing_event_is_private(emitted):
    event = ClaimCreated(claim={'id': 2}, otp='1234', message='m')

    with pytest.raises(ValueError):
        publish(event, GLOBAL)
    with pytest.raises(ValueError):
        publish(event, 'user:1', 'user:2')
    with pytest.raises(ValueError):
        publish(event, 'location:pune')

    assert emitted.call_count == 0


def test_emit_failure_is_swallowed(emitted):
    emitted.side_effect = RuntimeError("socket down")
    publish(DonationStatusUpdated(donation={}, message='m'), GLOBAL)


# ==========================================
#  2. LIVE SOCKETS
# ==========================================

def test_connect_requires_token(app):
    assert not _connect(app).is_connected()
    assert not _connect(app, auth={'token': 'not-a-jwt'}).is_connected()


def test_connect_refuses_non_numeric_identity(app):
    token = create_access_token(identity='abc')
    assert not _connect(app, auth={'token': token}).is_connected()


def test_claimant_alone_receives_code(app, donation_factory, donor, ngo, volunteer):
    donation = donation_factory()
    donor_socket = _connect(app, donor)
    ngo_socket = _connect(app, ngo)
    bystander = _connect(app, volunteer)
    assert donor_socket.is_connected() and ngo_socket.is_connected()
    for s in (donor_socket, ngo_socket, bystander):
        s.get_received()

    otp = lifecycle.create_claim(donation.id, ngo.id)['otp']

    ngo_packets = ngo_socket.get_received()
    created = [p for p in ngo_packets if p['name'] == 'claim_created']
    assert len(created) == 1
    assert created[0]['args'][0]['otp'] == otp

    donor_names = _names(donor_socket)
    assert 'donation_claimed' in donor_names
    assert 'claim_created' not in donor_names

    assert _names(bystander) == ['donation_status_updated']


def test_donation_room_subscription(app, donation_factory, ngo, volunteer):
    donation = donation_factory()
    watcher = _connect(app, volunteer)
    watcher.emit('join_donation_room', donation.id)
    watcher.get_received()

    lifecycle.create_claim(donation.id, ngo.id)

    assert 'donation_claimed' in _names(watcher)


def test_donation_room_never_sees_contact_details(app, donation_factory, donor, ngo, volunteer):
    donation = donation_factory()
    watcher = _connect(app, volunteer)
    donor_socket = _connect(app, donor)
    watcher.emit('join_donation_room', donation.id)
    watcher.get_received()
    donor_socket.get_received()

    lifecycle.create_claim(donation.id, ngo.id, reason="Night shelter, 40 people",
                           contact_info={'phone': '+91 98765 43210', 'alternate_contact': 'Gate 2 guard'})

    watched = str(watcher.get_received())
    assert '+91 98765 43210' not in watched
    assert 'Gate 2 guard' not in watched
    assert 'Night shelter' not in watched

    donor_claimed = [p for p in donor_socket.get_received() if p['name'] == 'donation_claimed']
    assert donor_claimed[0]['args'][0]['claim']['contact_info']['phone'] == '+91 98765 43210'


def test_nearby_donation_reaches_city_room(app, donor, ngo, volunteer):
    pune = _connect(app, ngo)
    mumbai = _connect(app, volunteer)
    pune.get_received()
    mumbai.get_received()
    now = utcnow()

    lifecycle.create_donation(donor, {
        'name': 'Chapati', 'description': None, 'category': 'food', 'quantity': 40,
        'unit': 'pieces', 'tags': '', 'priority': 3, 'address': '9 Station Road',
        'city': 'Pune', 'state': None, 'latitude': 18.53, 'longitude': 73.87,
        'expiry_date': now + timedelta(hours=6),
        'pickup_start': now + timedelta(hours=1), 'pickup_end': now + timedelta(hours=2),
    })

    assert _names(pune) == ['new_donation', 'nearby_donation']
    assert _names(mumbai) == ['new_donation']
