# Overview: Role checks for workflow routes and the security event log.

"""
Role Checks and Security Events

Roles gate whole endpoints (approver routes, admin routes, the all-requests
listing). Ownership rules such as "only the requester may cancel" depend on
the loaded request and live in the workflow services instead.

Fail closed: a role not listed for an endpoint is denied, and the denial is
written to security_events. Grants are not logged.
"""

from ..extensions import db
from ..models import SecurityEvent, User
from ..models.security import EVENT_ROLE_DENIED
from app.time_utils import utcnow


class PermissionDeniedError(Exception):
    """The user's role is not among the roles an endpoint allows."""


def log_security_event(
    user_id: int | None,
    event_type: str,
    success: bool,
    resource: str | None = None,
    action: str | None = None,
    reason: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> SecurityEvent:
    """Append one row to security_events and commit it."""
    event = SecurityEvent(
        user_id=user_id,
        event_type=event_type,
        success=success,
        resource=(resource or "")[:128] or None,
        action=action,
        reason=reason,
        ip_address=ip_address,
        user_agent=(user_agent or "")[:512] or None,
        occurred_at=utcnow(),
    )
    db.session.add(event)
    db.session.commit()
    return event


def has_role(user: User, roles: tuple[str, ...]) -> bool:
    return user is not None and user.is_active and user.role in roles


def require_role(
    user: User,
    roles: tuple[str, ...],
    resource: str | None = None,
    action: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> None:
    """Raise PermissionDeniedError (after logging it) unless the user holds one of `roles`."""
    if has_role(user, roles):
        return

    allowed = ", ".join(roles)
    log_security_event(
        user_id=user.id if user is not None else None,
        event_type=EVENT_ROLE_DENIED,
        success=False,
        resource=resource,
        action=action,
        reason=f"Role {getattr(user, 'role', None)} not in: {allowed}",
        ip_address=ip_address,
        user_agent=user_agent,
    )
    raise PermissionDeniedError(f"Requires one of roles: {allowed}")
