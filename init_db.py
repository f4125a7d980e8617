# init_db.py
import os

from app import create_app
from extensions import db
from models import Role, User, ensure_roles


def init_data():
    app = create_app()
    with app.app_context():
        # all tables, then the default roles
        db.create_all()
        ensure_roles()

        admin_email = os.environ.get("ADMIN_EMAIL", "admin@ledger.local")
        admin = User.query.filter_by(email=admin_email).first()

        if not admin:
            admin_role = Role.query.filter_by(name="admin").first()
            password = os.environ.get("ADMIN_PASSWORD", "change-me-now")
            admin = User(
                full_name="System Admin",
                email=admin_email,
                role=admin_role,
            )
            admin.set_password(password)  # change after first login
            db.session.add(admin)
            db.session.commit()
            print("Created default admin user:")
            print(f"  email: {admin_email}")
            if "ADMIN_PASSWORD" not in os.environ:
                print(f"  password: {password}")
        else:
            print("Admin user already exists; nothing to do.")


if __name__ == "__main__":
    init_data()
