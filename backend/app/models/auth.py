from __future__ import annotations

from ..extensions import db
from app.time_utils import to_utc_z


ROLE_ADMIN = "admin"
ROLE_GENERAL_MANAGER = "general_manager"
ROLE_SUPPLY_CHAIN_MANAGER = "supply_chain_manager"
ROLE_EMPLOYEE = "employee"

VALID_ROLES = (ROLE_ADMIN, ROLE_GENERAL_MANAGER, ROLE_SUPPLY_CHAIN_MANAGER, ROLE_EMPLOYEE)

APPROVER_ROLES = (ROLE_GENERAL_MANAGER, ROLE_ADMIN)
VIEW_ALL_ROLES = (ROLE_ADMIN, ROLE_SUPPLY_CHAIN_MANAGER, ROLE_GENERAL_MANAGER)


class User(db.Model):
    """
    A person who submits, decides or purchases requests.

    Exactly one role per user. Requests, decisions and history rows all
    point back here, so users are deactivated rather than deleted.
    """
    __tablename__ = "users"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)

    email = db.Column(db.String(255), nullable=False, unique=True, index=True)
    name = db.Column(db.String(255), nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(50), nullable=False, default=ROLE_EMPLOYEE, index=True)

    # Organisational attribution shown on requests
    company_code = db.Column(db.String(50), nullable=True)
    cost_center = db.Column(db.String(50), nullable=True)
    department = db.Column(db.String(100), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    last_login_at = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def can_approve(self) -> bool:
        return self.role in APPROVER_ROLES

    @property
    def can_view_all_requests(self) -> bool:
        return self.role in VIEW_ALL_ROLES

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def to_summary(self) -> dict:
        """Compact form embedded in requests and history rows."""
        return {"id": self.id, "email": self.email, "name": self.name, "role": self.role}

    def to_dict(self) -> dict:
        data = self.to_summary()
        data.update({
            "company_code": self.company_code,
            "cost_center": self.cost_center,
            "department": self.department,
            "is_active": self.is_active,
            "can_approve": self.can_approve,
            "can_view_all_requests": self.can_view_all_requests,
            "created_at": to_utc_z(self.created_at),
            "last_login_at": to_utc_z(self.last_login_at),
        })
        return data


class SessionToken(db.Model):
    """
    Bearer token issued at login.

    Only the SHA-256 of the token is stored. A token stops working when it
    passes expires_at, sits idle too long, is revoked at logout, or its
    user is deactivated.
    """
    __tablename__ = "session_tokens"
    __table_args__ = (
        db.Index("ix_session_tokens_user_active", "user_id", "is_revoked"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    token_hash = db.Column(db.String(255), nullable=False, unique=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    is_revoked = db.Column(db.Boolean, nullable=False, default=False, index=True)
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    revoked_reason = db.Column(db.String(255), nullable=True)

    user_agent = db.Column(db.String(512), nullable=True)
    ip_address = db.Column(db.String(45), nullable=True)

    user = db.relationship("User", backref=db.backref("session_tokens", lazy=True))

    def revoke(self, reason: str, now) -> None:
        self.is_revoked = True
        self.revoked_at = now
        self.revoked_reason = reason[:255]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "created_at": to_utc_z(self.created_at),
            "last_used_at": to_utc_z(self.last_used_at),
            "expires_at": to_utc_z(self.expires_at),
            "is_revoked": self.is_revoked,
        }
