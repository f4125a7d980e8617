from flask import current_app
from flask_login import current_user, login_required, login_user, logout_user
from flask_wtf.csrf import generate_csrf

from blueprints.params import payload
from models import User
from . import auth_bp


@auth_bp.route("/csrf-token")
def csrf_token():
    """Token for the X-CSRFToken header on JSON posts."""
    return {"csrf_token": generate_csrf()}


@auth_bp.route("/login", methods=["POST"])
def login():
    data = payload()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""

    user = User.query.filter_by(email=email).first()
    if not user or not user.check_password(password):
        current_app.logger.info("Failed login attempt", extra={"email": email})
        return {"error": "invalid_credentials", "message": "Invalid email or password"}, 401

    login_user(user)
    return {"id": user.id, "full_name": user.full_name, "role": user.role.name if user.role else None}


@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    user_id = current_user.get_id()
    logout_user()
    return {"logged_out": user_id}
