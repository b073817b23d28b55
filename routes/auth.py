from flask import Blueprint, request, jsonify, current_app, g

from models import db
from models.user import User, Role
from security.password import hash_password, verify_password, validate_password
from security.session import (
    create_session,
    revoke_session,
    revoke_all_sessions,
    set_session_cookies,
    clear_session_cookies,
)
from utils.audit import log_event
from utils.auth_context import login_required

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def _is_valid_email(email: str) -> bool:
    return isinstance(email, str) and "@" in email and len(email) <= 255


def _profile(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "phone_number": user.phone_number,
        "roles": sorted(user.role_names),
    }


def _clean_optional(data: dict, field: str, max_len: int):
    """Returns (value, error). value is None when the field was not sent."""
    value = data.get(field)
    if value is None:
        return None, None
    if not isinstance(value, str) or len(value.strip()) > max_len:
        return None, f"Invalid {field}"
    return value.strip(), None


@auth_bp.post("/register")
def register():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""

    if not _is_valid_email(email):
        return jsonify(error="Invalid email"), 400
    valid, errors = validate_password(password)
    if not valid:
        return jsonify(error="Password does not meet policy", details=errors), 400

    full_name, err = _clean_optional(data, "full_name", 120)
    if err:
        return jsonify(error=err), 400
    phone_number, err = _clean_optional(data, "phone_number", 30)
    if err:
        return jsonify(error=err), 400

    if User.query.filter_by(email=email).first():
        log_event("REGISTER_FAIL_EMAIL_EXISTS", metadata={"email": email})
        return jsonify(error="Email already registered"), 409

    user = User(
        email=email,
        password_hash=hash_password(password),
        full_name=full_name,
        phone_number=phone_number,
    )
    db.session.add(user)

    customer_role = Role.query.filter_by(name="CUSTOMER").first()
    if customer_role:
        user.roles.append(customer_role)

    db.session.commit()
    log_event("REGISTER_SUCCESS", user_id=user.id)
    return jsonify(message="Registered successfully", id=user.id), 201


@auth_bp.post("/login")
def login():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""

    user = User.query.filter_by(email=email).first()
    if not user or not verify_password(password, user.password_hash):
        log_event("LOGIN_FAIL", user_id=user.id if user else None, metadata={"email": email})
        return jsonify(error="Invalid credentials"), 401

    # one active session per user
    revoked_count = revoke_all_sessions(user.id)
    raw_token = create_session(user.id)

    resp = set_session_cookies(jsonify(message="Login OK", user=_profile(user)), raw_token)
    log_event("LOGIN_SUCCESS", user_id=user.id, metadata={"revoked_sessions": revoked_count})
    return resp, 200


@auth_bp.post("/logout")
@login_required
def logout():
    cookie_name = current_app.config.get("AUTH_COOKIE_NAME", "waterslot_session")
    revoke_session(request.cookies.get(cookie_name))
    log_event("LOGOUT", user_id=g.user.id)
    return clear_session_cookies(jsonify(message="Logged out")), 200


@auth_bp.get("/me")
@login_required
def me():
    return jsonify(_profile(g.user)), 200


@auth_bp.post("/profile")
@login_required
def update_profile():
    data = request.get_json(silent=True) or {}

    full_name, err = _clean_optional(data, "full_name", 120)
    if err:
        return jsonify(error=err), 400
    phone_number, err = _clean_optional(data, "phone_number", 30)
    if err:
        return jsonify(error=err), 400

    if full_name is not None:
        g.user.full_name = full_name
    if phone_number is not None:
        g.user.phone_number = phone_number

    db.session.commit()
    log_event("PROFILE_UPDATE", user_id=g.user.id)
    return jsonify(message="Profile updated", user=_profile(g.user)), 200
