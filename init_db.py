"""
Database initialization script.
Creates the schema, the admin account and the default leverage table.
"""
import os

# One-off script: keep the auto-close jobs out of it
os.environ.setdefault('SCHEDULER_AUTOSTART', 'False')

from app import app, seed_admin  # noqa: E402
from models import db, LeverageSetting  # noqa: E402


def init_database():
    """Initialize database with tables and default rows."""
    with app.app_context():
        db.create_all()
        print("Database tables created successfully!")

        created = 0
        for category, leverage in app.config['DEFAULT_LEVERAGE'].items():
            if not LeverageSetting.query.filter_by(category=category).first():
                db.session.add(LeverageSetting(category=category, leverage=leverage))
                created += 1
        db.session.commit()
        print(f"Initialized {created} leverage settings")

        admin = seed_admin()
        if admin:
            print(f"Created admin account {admin.email}")
        else:
            print("Admin account present or ADMIN_EMAIL/ADMIN_PASSWORD not set")


if __name__ == '__main__':
    print("Initializing database...")
    init_database()
    print("Database setup complete!")
