"""
Server-side cookie sessions and double-submit CSRF.

The cookie carries a random token; only its sha256 is stored in the
sessions table. Mutating requests from a logged-in browser must echo the
csrf_token cookie in the X-CSRF-Token header.
"""
import hashlib
import hmac
import secrets
from datetime import datetime, timedelta

from flask import request, current_app, jsonify

from models import db
from models.session import Session

CSRF_COOKIE = "csrf_token"
CSRF_HEADER = "X-CSRF-Token"


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _cookie_name() -> str:
    return current_app.config.get("AUTH_COOKIE_NAME", "waterslot_session")


def create_session(user_id: int) -> str:
    """Store a new session for user_id and return the raw cookie token."""
    raw_token = secrets.token_urlsafe(32)
    lifetime = current_app.config.get("SESSION_LIFETIME_SECONDS", 28800)

    db.session.add(Session(
        user_id=user_id,
        token_hash=_hash_token(raw_token),
        expires_at=datetime.utcnow() + timedelta(seconds=lifetime),
        ip=request.headers.get("X-Forwarded-For", request.remote_addr),
        user_agent=(request.headers.get("User-Agent") or "")[:255],
    ))
    db.session.commit()
    return raw_token


def get_session_from_request():
    raw_token = request.cookies.get(_cookie_name())
    if not raw_token:
        return None

    sess = Session.query.filter_by(token_hash=_hash_token(raw_token), revoked=False).first()
    if not sess:
        return None

    now = datetime.utcnow()
    idle_seconds = current_app.config.get("IDLE_TIMEOUT_SECONDS", 1200)
    last_seen = sess.last_seen_at or sess.created_at
    if sess.expires_at <= now or last_seen + timedelta(seconds=idle_seconds) <= now:
        return None

    sess.last_seen_at = now
    db.session.commit()
    return sess


def revoke_session(raw_token: str) -> bool:
    if not raw_token:
        return False
    sess = Session.query.filter_by(token_hash=_hash_token(raw_token)).first()
    if not sess:
        return False
    sess.revoked = True
    db.session.commit()
    return True


def revoke_all_sessions(user_id: int) -> int:
    count = (
        Session.query
        .filter_by(user_id=user_id, revoked=False)
        .update({"revoked": True}, synchronize_session=False)
    )
    db.session.commit()
    return count


def set_session_cookies(resp, raw_token: str):
    secure = current_app.config.get("SESSION_COOKIE_SECURE", False)
    samesite = current_app.config.get("SESSION_COOKIE_SAMESITE", "Lax")
    resp.set_cookie(
        _cookie_name(),
        raw_token,
        httponly=True,
        secure=secure,
        samesite=samesite,
        max_age=current_app.config.get("SESSION_LIFETIME_SECONDS", 28800),
        path="/",
    )
    # readable by the frontend so it can echo it back in CSRF_HEADER
    resp.set_cookie(CSRF_COOKIE, secrets.token_urlsafe(32), httponly=False,
                    secure=secure, samesite=samesite, path="/")
    return resp


def clear_session_cookies(resp):
    resp.delete_cookie(_cookie_name(), path="/")
    resp.delete_cookie(CSRF_COOKIE, path="/")
    return resp


def require_csrf():
    cookie_token = request.cookies.get(CSRF_COOKIE) or ""
    header_token = request.headers.get(CSRF_HEADER) or ""
    if not cookie_token or not hmac.compare_digest(cookie_token, header_token):
        return jsonify(error="CSRF validation failed"), 403
    return None
