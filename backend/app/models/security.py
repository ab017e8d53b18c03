from __future__ import annotations

from ..extensions import db
from app.time_utils import to_utc_z


EVENT_LOGIN_FAILED = "LOGIN_FAILED"
EVENT_LOGOUT = "LOGOUT"
EVENT_ROLE_DENIED = "ROLE_DENIED"
EVENT_USER_DEACTIVATED = "USER_DEACTIVATED"
EVENT_AUTOMATION_CONFIG_UPDATED = "AUTOMATION_CONFIG_UPDATED"


class SecurityEvent(db.Model):
    """
    Audit trail for authentication and authorization outcomes.

    Covers failed logins, logouts, role denials on approver/admin routes,
    account deactivation and changes to the retailer automation account.
    Rows are append-only. Secrets never appear in `reason`.
    """
    __tablename__ = "security_events"
    __table_args__ = (
        db.Index("ix_security_events_user_type", "user_id", "event_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Null when the actor could not be identified (unknown email on login)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    event_type = db.Column(db.String(64), nullable=False, index=True)
    # Route path or "automation_config:<key>"
    resource = db.Column(db.String(128), nullable=True)
    # HTTP method, or a short verb such as "secret_rotated"
    action = db.Column(db.String(64), nullable=True)
    success = db.Column(db.Boolean, nullable=False, index=True)
    reason = db.Column(db.Text, nullable=True)

    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    user = db.relationship("User", backref=db.backref("security_events", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "event_type": self.event_type,
            "resource": self.resource,
            "action": self.action,
            "success": self.success,
            "reason": self.reason,
            "ip_address": self.ip_address,
            "occurred_at": to_utc_z(self.occurred_at),
        }
