from __future__ import annotations

from ..extensions import db
from app.time_utils import to_utc_z


DEFAULT_ACCOUNT_KEY = "default"
DEFAULT_MARKETPLACE = "www.amazon.com.mx"

TEST_STATUS_SUCCESS = "success"
TEST_STATUS_FAILED = "failed"


class AutomationConfig(db.Model):
    """
    Retailer account used by cart automation.

    SECURITY NOTES:
    - encrypted_secret holds the vault ciphertext only, never plaintext
    - to_dict() exposes has_secret, never the secret or its ciphertext
    - is_configured is computable without decrypting
    """
    __tablename__ = "automation_configs"
    __table_args__ = (
        db.UniqueConstraint("account_key", name="uq_automation_configs_account_key"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    account_key = db.Column(db.String(64), nullable=False, default=DEFAULT_ACCOUNT_KEY)

    identity = db.Column(db.String(255), nullable=True)
    encrypted_secret = db.Column(db.Text, nullable=True)
    marketplace = db.Column(db.String(100), nullable=False, default=DEFAULT_MARKETPLACE)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    last_login_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_test_at = db.Column(db.DateTime(timezone=True), nullable=True)
    test_status = db.Column(db.String(20), nullable=True)
    test_message = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    created_by = db.relationship("User")

    @property
    def is_configured(self) -> bool:
        return bool(self.identity) and bool(self.encrypted_secret)

    @property
    def can_connect(self) -> bool:
        return self.is_configured and bool(self.is_active)

    @property
    def base_url(self) -> str:
        return f"https://{self.marketplace or DEFAULT_MARKETPLACE}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "account_key": self.account_key,
            "identity": self.identity,
            "has_secret": bool(self.encrypted_secret),
            "marketplace": self.marketplace,
            "base_url": self.base_url,
            "is_active": self.is_active,
            "is_configured": self.is_configured,
            "can_connect": self.can_connect,
            "last_login_at": to_utc_z(self.last_login_at),
            "last_test_at": to_utc_z(self.last_test_at),
            "test_status": self.test_status,
            "test_message": self.test_message,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
