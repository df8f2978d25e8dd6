import os
from app import create_app
from extensions import db
from flask_migrate import upgrade
from sqlalchemy import text

app = create_app()

MIGRATIONS_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'migrations')


def deploy():
    """
    PRODUCTION DEPLOY SCRIPT
    1. Upgrades DB Schema (migrations if present, otherwise create missing tables)
    2. Runs one sweep so nothing stale is served after downtime
    """
    with app.app_context():
        # --- PART 1: SCHEMA ---
        if db.engine.dialect.name == 'postgresql':
            print("🌍 Enabling PostGIS...")
            db.session.execute(text("CREATE EXTENSION IF NOT EXISTS postgis;"))
            db.session.commit()

        print("🔄 1. Applying Database Schema...")
        if os.path.isdir(MIGRATIONS_DIR):
            # Python equivalent of 'flask db upgrade'
            upgrade(directory=MIGRATIONS_DIR)
        else:
            # Indexes (including claims(status, expires_at) for the sweeper) come with the tables
            db.create_all()
        print("✅ Database schema is up to date.")

        # --- PART 2: CATCH-UP SWEEP ---
        print("🧹 2. Expiring anything that lapsed while we were down...")
        from lifecycle import sweep_expired
        result = sweep_expired()
        print(f"✅ {result['expired_donation_count']} donations, {result['expired_claim_count']} claims expired.")


if __name__ == "__main__":
    deploy()
