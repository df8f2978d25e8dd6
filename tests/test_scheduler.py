from datetime import timedelta
from unittest.mock import patch
from extensions import db, scheduler
from models import Donation, Claim, utcnow
import lifecycle
import scheduler as sweep_jobs


def _pending_claim(donation, claimant, minutes_ago):
    """A claim whose window closed `minutes_ago` minutes back."""
    claimed_at = utcnow() - timedelta(minutes=15 + minutes_ago)
    claim = Claim(donation_id=donation.id, claimant_id=claimant.id, status='pending', otp='2468',
                  claimed_at=claimed_at, expires_at=claimed_at + timedelta(minutes=15))
    db.session.add(claim)
    db.session.commit()
    return claim


# ==========================================
#  1. REGISTRATION
# ==========================================

def test_jobs_registered(app):
    claims_job = scheduler.get_job('expire_claims')
    donations_job = scheduler.get_job('expire_donations')

    assert claims_job.trigger.interval == timedelta(seconds=60)
    assert donations_job.trigger.interval == timedelta(minutes=60)
    assert claims_job.max_instances == 1
    assert not scheduler.running


# ==========================================
#  2. SWEEPS
# ==========================================

def test_sweep_expired_counts_both(donation_factory, ngo, volunteer, emitted):
    donation_factory(name="Lapsed", expiry_date=utcnow() - timedelta(hours=1))
    held = donation_factory(name="Held", status='claimed', claimed_by=ngo.id, otp='2468')
    _pending_claim(held, ngo, minutes_ago=2)
    live = donation_factory(name="Live", status='claimed', claimed_by=volunteer.id, otp='1357')
    db.session.add(Claim(donation_id=live.id, claimant_id=volunteer.id, status='pending', otp='1357',
                         claimed_at=utcnow(), expires_at=utcnow() + timedelta(minutes=15)))
    db.session.commit()

    result = lifecycle.sweep_expired()

    assert result == {'expired_donation_count': 1, 'expired_claim_count': 1}
    db.session.expire_all()
    assert db.session.get(Donation, held.id).status == 'available'
    assert db.session.get(Donation, live.id).status == 'claimed'

    # A second pass finds nothing left to do
    assert lifecycle.sweep_expired() == {'expired_donation_count': 0, 'expired_claim_count': 0}


def test_sweep_skips_failures(donation_factory, ngo, volunteer):
    first = donation_factory(name="One", status='claimed', claimed_by=ngo.id)
    second = donation_factory(name="Two", status='claimed', claimed_by=volunteer.id)
    bad = _pending_claim(first, ngo, minutes_ago=5)
    _pending_claim(second, volunteer, minutes_ago=1)
    real_expire = lifecycle.expire_claim

    def flaky(claim_id, now=None):
        if claim_id == bad.id:
            raise RuntimeError("database hiccup")
        return real_expire(claim_id, now)

    with patch.object(lifecycle, 'expire_claim', side_effect=flaky):
        assert lifecycle.sweep_expired_claims() == 1


def test_sweeper_and_late_confirm_race(donation_factory, donor, ngo):
    """Whoever expires the claim first wins; the other sees nothing to do."""
    result = lifecycle.create_claim(donation_factory().id, ngo.id)
    claim = result['claim']
    late = claim.expires_at + timedelta(seconds=5)

    assert lifecycle.sweep_expired_claims(late) == 1
    assert lifecycle.expire_claim(claim.id, late) is False


# ==========================================
#  3. JOB WRAPPERS
# ==========================================

def test_claim_job_runs_sweep(app):
    with patch.object(sweep_jobs, 'sweep_expired_claims', return_value=3) as mock_sweep:
        sweep_jobs.expire_claims_job()
    mock_sweep.assert_called_once_with()


def test_donation_job_expires_lapsed_items(donation_factory):
    lapsed = donation_factory(expiry_date=utcnow() - timedelta(minutes=1))

    sweep_jobs.expire_donations_job()

    db.session.expire_all()
    assert db.session.get(Donation, lapsed.id).status == 'expired'


def test_sweep_cli(app, donation_factory):
    donation_factory(expiry_date=utcnow() - timedelta(minutes=1))

    result = app.test_cli_runner().invoke(args=['sweep'])

    assert result.exit_code == 0
    assert '1 donations expired' in result.output
