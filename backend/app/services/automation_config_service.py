# Overview: Service-layer operations for the retailer automation account; encapsulates vault access.

"""
Automation Config Service

WHY: Cart automation needs the retailer login. The secret is encrypted with
the credential vault on write and decrypted only at the moment automation
runs. Nothing in this module returns or logs the plaintext.

ONE ROW PER ACCOUNT KEY: the deployment uses the "default" account; the
key exists so a second retailer account does not need a schema change.
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import AutomationConfig, User
from ..models.automation import DEFAULT_ACCOUNT_KEY, TEST_STATUS_FAILED, TEST_STATUS_SUCCESS
from ..models.security import EVENT_AUTOMATION_CONFIG_UPDATED
from ..validation import NotFoundError, ValidationError
from .credential_vault import CredentialVault
from .concurrency import run_with_retry
from . import permission_service
from app.time_utils import utcnow


_MARKETPLACE_MAX = 100


def get_vault() -> CredentialVault:
    """The app's vault (built once in create_app from ENCRYPTION_KEY)."""
    vault = current_app.extensions.get("credential_vault")
    if vault is None:
        vault = CredentialVault.from_config(current_app.config["ENCRYPTION_KEY"])
        current_app.extensions["credential_vault"] = vault
    return vault


def get_config(account_key: str = DEFAULT_ACCOUNT_KEY) -> AutomationConfig | None:
    return db.session.query(AutomationConfig).filter_by(account_key=account_key).first()


def require_config(account_key: str = DEFAULT_ACCOUNT_KEY) -> AutomationConfig:
    config = get_config(account_key)
    if config is None:
        raise NotFoundError("Automation account is not configured")
    return config


def describe_config(account_key: str = DEFAULT_ACCOUNT_KEY) -> dict:
    """Public view of the account; a missing row reads as 'not configured'."""
    config = get_config(account_key)
    if config is not None:
        return config.to_dict()
    marketplace = current_app.config.get("DEFAULT_MARKETPLACE")
    return {
        "id": None,
        "account_key": account_key,
        "identity": None,
        "has_secret": False,
        "marketplace": marketplace,
        "base_url": f"https://{marketplace}",
        "is_active": False,
        "is_configured": False,
        "can_connect": False,
        "last_login_at": None,
        "last_test_at": None,
        "test_status": None,
        "test_message": None,
    }


def _normalize_marketplace(value) -> str:
    marketplace = str(value).strip().lower()
    for prefix in ("https://", "http://"):
        if marketplace.startswith(prefix):
            marketplace = marketplace[len(prefix):]
    marketplace = marketplace.rstrip("/")
    if not marketplace or "/" in marketplace or " " in marketplace:
        raise ValidationError("marketplace must be a bare domain like www.amazon.com.mx")
    if len(marketplace) > _MARKETPLACE_MAX:
        raise ValidationError(f"marketplace exceeds max length {_MARKETPLACE_MAX}")
    return marketplace


def save_config(
    actor: User,
    *,
    identity: str | None = None,
    secret: str | None = None,
    marketplace: str | None = None,
    is_active: bool | None = None,
    account_key: str = DEFAULT_ACCOUNT_KEY,
) -> AutomationConfig:
    """
    Create or update the automation account.

    - A new secret is encrypted before it touches the session.
    - An omitted (None or empty) secret keeps the stored ciphertext.
    - identity is required when the account is first created.
    """
    if identity is not None:
        identity = str(identity).strip()
        if not identity:
            raise ValidationError("identity cannot be blank")
    if marketplace is not None:
        marketplace = _normalize_marketplace(marketplace)
    if is_active is not None and not isinstance(is_active, bool):
        raise ValidationError("is_active must be a boolean")

    encrypted = get_vault().encrypt(secret) if secret else None

    def _op() -> AutomationConfig:
        config = get_config(account_key)
        if config is None:
            if not identity:
                raise ValidationError("identity is required")
            config = AutomationConfig(
                account_key=account_key,
                marketplace=current_app.config.get("DEFAULT_MARKETPLACE"),
                is_active=True,
                created_by_user_id=actor.id,
            )
            db.session.add(config)

        if identity is not None:
            config.identity = identity
        if encrypted is not None:
            config.encrypted_secret = encrypted
        if marketplace is not None:
            config.marketplace = marketplace
        if is_active is not None:
            config.is_active = is_active
        config.updated_at = utcnow()

        db.session.commit()
        return config

    config = run_with_retry(_op)

    permission_service.log_security_event(
        user_id=actor.id,
        event_type=EVENT_AUTOMATION_CONFIG_UPDATED,
        success=True,
        resource=f"automation_config:{account_key}",
        action="secret_rotated" if encrypted else "updated",
    )
    current_app.logger.info(
        "Automation account %s updated by user %s (identity=%s, secret_changed=%s)",
        account_key, actor.id, config.identity, bool(encrypted),
    )
    return config


def decrypt_secret(config: AutomationConfig) -> str:
    """Plaintext secret for an automation run. Raises CryptoError subclasses."""
    return get_vault().decrypt(config.encrypted_secret or "")


def record_test_result(config_id: int, *, success: bool, message: str) -> AutomationConfig:
    def _op() -> AutomationConfig:
        config = db.session.get(AutomationConfig, config_id)
        if config is None:
            raise NotFoundError("Automation account not found")
        now = utcnow()
        config.last_test_at = now
        config.test_status = TEST_STATUS_SUCCESS if success else TEST_STATUS_FAILED
        config.test_message = message
        if success:
            config.last_login_at = now
        db.session.commit()
        return config

    return run_with_retry(_op)


def record_login(config_id: int) -> None:
    def _op():
        config = db.session.get(AutomationConfig, config_id)
        if config is not None:
            config.last_login_at = utcnow()
            db.session.commit()

    run_with_retry(_op)
