from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import Boolean, Integer, Numeric, String, Text


# Maximum price accepted for an estimate or unit price
MAX_PRICE = Decimal("99999999.99")
MAX_QUANTITY = 100_000

URGENCY_VALUES = ("normal", "urgent")

_INT_RE = re.compile(r"-?\d+")


class WorkflowError(Exception):
    """Base for errors that map to a stable error kind and HTTP status."""
    kind = "WorkflowError"
    status_code = 400

    def to_dict(self) -> dict:
        return {"error": str(self), "kind": self.kind}


class ValidationError(WorkflowError, ValueError):
    """400-level input problem, rejected before touching state."""
    kind = "ValidationError"
    status_code = 400


class NotFoundError(WorkflowError):
    """Referenced request or config does not exist."""
    kind = "NotFound"
    status_code = 404


class ForbiddenError(WorkflowError):
    """Actor lacks the role or ownership required for the action."""
    kind = "Forbidden"
    status_code = 403


class InvalidStateError(WorkflowError):
    """Action is not legal from the request's current status."""
    kind = "InvalidState"
    status_code = 409


@dataclass(frozen=True)
class PayloadPolicy:
    """
    Which columns a client may send for one kind of write.

    Anything outside `writable` is rejected outright, so status, version and
    decision fields can only change through the workflow services.
    """
    writable: frozenset[str]
    required: frozenset[str] = frozenset()


def coerce_int(key: str, value: Any) -> int:
    """Accept ints and digit strings; bools, floats and "1e3" are rejected."""
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        raise ValidationError(f"{key} must be an integer, not a decimal")
    text = str(value).strip() if isinstance(value, str) else ""
    if not _INT_RE.fullmatch(text):
        raise ValidationError(f"{key} must be an integer")
    return int(text)


def coerce_decimal(key: str, value: Any) -> Decimal:
    """Money amount, 0 <= value <= MAX_PRICE, rounded to cents."""
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be a number")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{key} must be a number")
    if not amount.is_finite():
        raise ValidationError(f"{key} must be a finite number")
    if amount < 0:
        raise ValidationError(f"{key} must be >= 0")
    if amount > MAX_PRICE:
        raise ValidationError(f"{key} cannot exceed {MAX_PRICE}")
    return amount.quantize(Decimal("0.01"))


def require_quantity(value: Any, key: str = "quantity") -> int:
    qty = coerce_int(key, value)
    if qty < 1:
        raise ValidationError(f"{key} must be >= 1")
    if qty > MAX_QUANTITY:
        raise ValidationError(f"{key} cannot exceed {MAX_QUANTITY}")
    return qty


def require_text(value: Any, key: str, message: str | None = None) -> str:
    text = "" if value is None else str(value).strip()
    if not text:
        raise ValidationError(message or f"{key} is required")
    return text


def normalize_urgency(value: Any) -> str:
    if value in (None, ""):
        return "normal"
    urgency = str(value).strip().lower()
    if urgency not in URGENCY_VALUES:
        raise ValidationError(f"urgency must be one of: {', '.join(URGENCY_VALUES)}")
    return urgency


def _clean_column_value(column, value: Any):
    """Coerce one non-null value by column type and apply length/blank checks."""
    key, coltype = column.key, column.type

    if isinstance(coltype, Integer):
        return coerce_int(key, value)
    if isinstance(coltype, Numeric):
        return coerce_decimal(key, value)
    if isinstance(coltype, Boolean):
        return value if isinstance(value, bool) else bool(value)
    if not isinstance(coltype, (String, Text)):
        return value

    text = str(value).strip()
    if not text and not column.nullable:
        raise ValidationError(f"{key} cannot be blank")
    limit = getattr(coltype, "length", None)
    if limit and len(text) > limit:
        raise ValidationError(f"{key} exceeds max length {limit}")
    return text


def validate_payload(*, model, payload: dict, policy: PayloadPolicy, partial: bool) -> dict:
    """
    Check a JSON body against `policy` and the model's column definitions.

    Full writes (partial=False) must carry every required field. Returns a
    new dict holding only the cleaned fields that were sent.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    if not partial:
        missing = sorted(policy.required.difference(payload))
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    columns = {column.key: column for column in model.__mapper__.columns}
    rejected = [key for key in payload if key not in policy.writable or key not in columns]
    if rejected:
        key = rejected[0]
        reason = "Field not allowed" if key not in policy.writable else "Unknown field"
        raise ValidationError(f"{reason}: {key}")

    cleaned = {}
    for key, value in payload.items():
        column = columns[key]
        if value is None:
            if not column.nullable:
                raise ValidationError(f"{key} cannot be null")
            cleaned[key] = None
        else:
            cleaned[key] = _clean_column_value(column, value)
    return cleaned


def enforce_rules_request(patch: dict) -> None:
    """Purchase request rules the column types cannot express."""
    if "quantity" in patch:
        patch["quantity"] = require_quantity(patch["quantity"])
    if "urgency" in patch:
        patch["urgency"] = normalize_urgency(patch["urgency"])
    if "url" in patch:
        url = patch["url"] or ""
        if not url.lower().startswith(("http://", "https://")):
            raise ValidationError("url must be an http(s) URL")
