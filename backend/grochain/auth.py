from __future__ import annotations

from functools import wraps

from flask import Blueprint, jsonify, request
from flask_login import current_user

from grochain.extensions import db, login_manager
from grochain.models import User
from grochain.utils.jwt_utils import create_access_token, decode_token, get_bearer_token

api_auth = Blueprint("api_auth", __name__, url_prefix="/api/auth")


@login_manager.user_loader
def load_user(user_id):
    return db.session.get(User, int(user_id))


@login_manager.request_loader
def load_user_from_request(req):
    """Let @login_required accept `Authorization: Bearer <jwt>`."""
    token = get_bearer_token(req.headers.get("Authorization", ""))
    if not token:
        return None
    payload = decode_token(token)
    if not payload or payload.get("type") != "access":
        return None
    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        return None
    return db.session.get(User, user_id)


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({"status": "error", "message": "Unauthorized"}), 401


def admin_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if not current_user.is_authenticated:
            return unauthorized()
        if (current_user.role or "") != "admin":
            return jsonify({"status": "error", "message": "Admin required"}), 403
        return fn(*args, **kwargs)
    return wrapper


@api_auth.post("/login")
def api_login():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    if not email or not password:
        return jsonify({"status": "error", "message": "email and password required"}), 400
    user = User.query.filter(db.func.lower(User.email) == email).first()
    if not user or not user.check_password(password):
        return jsonify({"status": "error", "message": "invalid credentials"}), 401
    return jsonify({
        "status": "success",
        "data": {"token": create_access_token(int(user.id)), "user": user.to_dict()},
    }), 200
