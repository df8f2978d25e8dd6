from app import create_app
from extensions import db
from models import User

DEMO_USERS = [
    {'name': 'Green Bowl Kitchen', 'email': 'donor@relay.org', 'role': 'donor',
     'organization_name': 'Green Bowl Kitchen', 'city': 'Bengaluru'},
    {'name': 'Annapurna Trust', 'email': 'ngo@relay.org', 'role': 'ngo',
     'organization_name': 'Annapurna Trust', 'city': 'Bengaluru'},
    {'name': 'Ravi Kumar', 'email': 'volunteer@relay.org', 'role': 'volunteer', 'city': 'Bengaluru'},
]


def seed_users():
    app = create_app()
    with app.app_context():
        for data in DEMO_USERS:
            # 1. Skip anyone already present
            if User.query.filter_by(email=data['email']).first():
                print(f"✅ {data['email']} already exists. Skipping.")
                continue

            # 2. Create the missing user
            print(f"🚀 Creating {data['role']} {data['email']}...")
            db.session.add(User(**data))

        db.session.commit()
        print("✅ Demo users ready!")


if __name__ == "__main__":
    seed_users()
