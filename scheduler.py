import os
from extensions import scheduler
from lifecycle import sweep_expired_claims, sweep_expired_donations

# The claim deadline is 15 minutes, so claims are swept far more often
# than donations, whose expiry dates are measured in hours or days.
CLAIM_SWEEP_SECONDS = int(os.getenv('CLAIM_SWEEP_SECONDS', 60))
DONATION_SWEEP_MINUTES = int(os.getenv('DONATION_SWEEP_MINUTES', 60))


# ==========================================
#  TASK 1: EXPIRE ABANDONED CLAIMS
# ==========================================
@scheduler.task('interval', id='expire_claims', seconds=CLAIM_SWEEP_SECONDS,
                max_instances=1, coalesce=True)
def expire_claims_job():
    """
    Pending claims past their 15-minute window go back through the engine's
    expire transition, which frees the donation for the next claimant.
    """
    # Runs in a background thread, so it needs its own app context
    with scheduler.app.app_context():
        count = sweep_expired_claims()
        if count:
            print(f"⚠️  Scheduler: Expired {count} abandoned claims.")


# ==========================================
#  TASK 2: AUTO-EXPIRE DONATIONS
# ==========================================
@scheduler.task('interval', id='expire_donations', minutes=DONATION_SWEEP_MINUTES,
                max_instances=1, coalesce=True)
def expire_donations_job():
    """
    Available donations past their expiry date are marked 'expired'
    so they stop showing up in search.
    """
    with scheduler.app.app_context():
        count = sweep_expired_donations()
        if count:
            print(f"⚠️  Scheduler: Marked {count} donations as EXPIRED.")
