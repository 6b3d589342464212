"""
Authentication Routes

Provides:
- POST /auth/login        JSON {username, password}
- POST /auth/logout
- GET  /auth/csrf-token   token for the X-CSRFToken header of mutating requests
- GET  /auth/me

Rules:
- Only active users may log in.
- Credentials validated via password hash.
"""

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user
from flask_wtf.csrf import generate_csrf

from ...models import User


auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def _user_to_dict(user: User) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "display_name": user.display_name,
        "role": user.role,
        "vendor_id": user.vendor_id,
    }


# ============================================================
# LOGIN
# ============================================================

@auth_bp.route("/login", methods=["POST"])
def login():
    """Authenticate a user and open a session."""
    payload = request.get_json(silent=True) or {}
    username = str(payload.get("username") or "").strip()
    password = str(payload.get("password") or "")

    user = User.query.filter_by(username=username).first()

    if not user or not user.check_password(password):
        current_app.logger.info("Failed login for %r from %s", username, request.remote_addr)
        return jsonify({"error": {"code": "INVALID_CREDENTIALS", "message": "Invalid username or password", "retryable": False}}), 401

    if not user.is_active:
        return jsonify({"error": {"code": "ACCOUNT_INACTIVE", "message": "Account is inactive", "retryable": False}}), 403

    login_user(user)
    current_app.logger.info("User %s logged in", user.username)
    return jsonify({"user": _user_to_dict(user)})


# ============================================================
# LOGOUT
# ============================================================

@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    """Log out the current user."""
    logout_user()
    return jsonify({"status": "logged_out"})


@auth_bp.route("/me")
@login_required
def me():
    return jsonify({"user": _user_to_dict(current_user)})


@auth_bp.route("/csrf-token")
def csrf_token():
    return jsonify({"csrf_token": generate_csrf()})
