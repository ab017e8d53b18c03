# Overview: User accounts, password hashing and credential checks.

"""
Authentication Service

Passwords are hashed with bcrypt (cost BCRYPT_ROUNDS, default 12; the test
suite lowers it). Tokens are handled by session_service.

PASSWORD RULES: at least 8 characters with an uppercase letter, a lowercase
letter, a digit and a special character.
"""

import re

import bcrypt
from flask import current_app, has_app_context

from ..extensions import db
from ..models import User
from ..models.auth import VALID_ROLES, ROLE_EMPLOYEE
from ..models.security import EVENT_USER_DEACTIVATED
from . import permission_service, session_service
from app.time_utils import utcnow


MIN_PASSWORD_LENGTH = 8

PASSWORD_RULES = (
    (re.compile(r"[A-Z]"), "Password must contain at least one uppercase letter"),
    (re.compile(r"[a-z]"), "Password must contain at least one lowercase letter"),
    (re.compile(r"\d"), "Password must contain at least one digit"),
    (re.compile(r"[!@#$%^&*(),.'\":{}|<>_\-+=?]"), "Password must contain at least one special character"),
)


class PasswordValidationError(Exception):
    """Password does not meet the rules above."""


def validate_password_strength(password: str) -> None:
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise PasswordValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    for pattern, message in PASSWORD_RULES:
        if not pattern.search(password):
            raise PasswordValidationError(message)


def _rounds() -> int:
    if has_app_context():
        return int(current_app.config.get("BCRYPT_ROUNDS", 12))
    return 12


def hash_password(password: str) -> str:
    validate_password_strength(password)
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=_rounds())).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Constant-time check. A malformed stored hash counts as a mismatch."""
    try:
        return bcrypt.checkpw((password or "").encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def _normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def create_user(
    email: str,
    name: str,
    password: str,
    role: str = ROLE_EMPLOYEE,
    company_code: str | None = None,
    cost_center: str | None = None,
    department: str | None = None,
) -> User:
    """
    Raises:
        ValueError: blank email, unknown role or duplicate email
        PasswordValidationError: weak password
    """
    email = _normalize_email(email)
    if not email:
        raise ValueError("email is required")
    if role not in VALID_ROLES:
        raise ValueError(f"role must be one of: {', '.join(VALID_ROLES)}")
    if db.session.query(User.id).filter(User.email == email).first():
        raise ValueError("Email already exists")

    user = User(
        email=email,
        name=(name or email).strip(),
        password_hash=hash_password(password),
        role=role,
        company_code=company_code,
        cost_center=cost_center,
        department=department,
    )
    db.session.add(user)
    db.session.commit()
    current_app.logger.info("User %s created with role %s", email, role)
    return user


def authenticate(email: str, password: str) -> User | None:
    """The active user with this email and password, or None. Stamps last_login_at."""
    user = (
        db.session.query(User)
        .filter(User.email == _normalize_email(email), User.is_active.is_(True))
        .first()
    )
    if user is None or not verify_password(password, user.password_hash):
        return None

    user.last_login_at = utcnow()
    db.session.commit()
    return user


def deactivate_user(user: User, actor_id: int | None = None) -> int:
    """
    Block a user from logging in and revoke their live tokens.

    The row stays: requests and history keep pointing at it.
    Returns the number of revoked tokens.
    """
    user.is_active = False
    db.session.commit()
    revoked = session_service.revoke_user_sessions(user.id, "User account deactivated")
    permission_service.log_security_event(
        user_id=actor_id,
        event_type=EVENT_USER_DEACTIVATED,
        success=True,
        resource=f"user:{user.id}",
        action="deactivate",
        reason=f"{revoked} session(s) revoked",
    )
    current_app.logger.info("User %s deactivated (%s sessions revoked)", user.email, revoked)
    return revoked
