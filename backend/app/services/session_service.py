# Overview: Issues, validates and revokes bearer session tokens.

"""
Session Tokens

A login hands the client a random 32-byte token (hex). The database keeps
only its SHA-256, so a leaked table cannot be replayed. SHA-256 is enough
here because the token is already high entropy; passwords use bcrypt.

LIFETIME:
- absolute: SESSION_ABSOLUTE_TIMEOUT_HOURS after issue (default 24)
- idle:     SESSION_IDLE_TIMEOUT_HOURS without a request (default 2)
- logout, or deactivation of the user, revokes immediately
"""

import hashlib
import secrets
from dataclasses import dataclass
from datetime import timedelta

from flask import current_app, has_app_context

from ..extensions import db
from ..models import SessionToken, User
from app.time_utils import utcnow


DEFAULT_ABSOLUTE_HOURS = 24
DEFAULT_IDLE_HOURS = 2


@dataclass
class SessionContext:
    """What require_auth puts on flask.g."""
    user: User
    session: SessionToken


def _hours(key: str, default: int) -> timedelta:
    value = current_app.config.get(key) if has_app_context() else None
    return timedelta(hours=value or default)


def absolute_timeout() -> timedelta:
    return _hours("SESSION_ABSOLUTE_TIMEOUT_HOURS", DEFAULT_ABSOLUTE_HOURS)


def idle_timeout() -> timedelta:
    return _hours("SESSION_IDLE_TIMEOUT_HOURS", DEFAULT_IDLE_HOURS)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _find(token: str) -> SessionToken | None:
    if not token:
        return None
    return (
        db.session.query(SessionToken)
        .filter_by(token_hash=hash_token(token), is_revoked=False)
        .first()
    )


def create_session(
    user_id: int,
    user_agent: str | None = None,
    ip_address: str | None = None,
) -> tuple[SessionToken, str]:
    """
    Issue a token for an active user.

    Returns (session_row, plaintext_token). The plaintext is never stored.
    Raises ValueError for a missing or deactivated user.
    """
    user = db.session.get(User, user_id)
    if user is None:
        raise ValueError("User not found")
    if not user.is_active:
        raise ValueError("User account is deactivated")

    token = secrets.token_hex(32)
    now = utcnow()
    session = SessionToken(
        user_id=user.id,
        token_hash=hash_token(token),
        created_at=now,
        last_used_at=now,
        expires_at=now + absolute_timeout(),
        user_agent=(user_agent or "")[:512] or None,
        ip_address=ip_address,
        is_revoked=False,
    )
    db.session.add(session)
    db.session.commit()
    return session, token


def validate_session(token: str) -> SessionContext | None:
    """
    Resolve a bearer token to its user, or None.

    An idle token or one whose user was deactivated is revoked on the way
    out, so it cannot come back to life. A valid token has its
    last_used_at bumped.
    """
    session = _find(token)
    if session is None:
        return None

    now = utcnow()
    if session.expires_at < now:
        return None

    reason = None
    if now - session.last_used_at > idle_timeout():
        reason = "Idle timeout"
    elif session.user is None or not session.user.is_active:
        reason = "User account deactivated"

    if reason:
        session.revoke(reason, now)
        db.session.commit()
        return None

    session.last_used_at = now
    db.session.commit()
    return SessionContext(user=session.user, session=session)


def revoke_session(token: str, reason: str = "User logout") -> bool:
    """Returns False when the token is unknown or already revoked."""
    session = _find(token)
    if session is None:
        return False
    session.revoke(reason, utcnow())
    db.session.commit()
    return True


def revoke_user_sessions(user_id: int, reason: str) -> int:
    """Revoke every live token of a user. Returns how many were revoked."""
    now = utcnow()
    sessions = db.session.query(SessionToken).filter_by(user_id=user_id, is_revoked=False).all()
    for session in sessions:
        session.revoke(reason, now)
    db.session.commit()
    return len(sessions)


def session_counts() -> dict:
    """Live and expired-but-unrevoked token counts, for the health check."""
    now = utcnow()
    live = db.session.query(SessionToken).filter(SessionToken.is_revoked.is_(False))
    return {
        "active_sessions": live.filter(SessionToken.expires_at >= now).count(),
        "expired_pending_cleanup": live.filter(SessionToken.expires_at < now).count(),
    }
