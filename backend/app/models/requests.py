from __future__ import annotations

from decimal import Decimal

from ..extensions import db
from app.time_utils import to_utc_z


# Status values (wire format). Exactly one at any time.
STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
STATUS_INFO_REQUESTED = "info_requested"
STATUS_PURCHASED = "purchased"
STATUS_CANCELLED = "cancelled"

VALID_STATUSES = (
    STATUS_PENDING,
    STATUS_APPROVED,
    STATUS_REJECTED,
    STATUS_INFO_REQUESTED,
    STATUS_PURCHASED,
    STATUS_CANCELLED,
)
TERMINAL_STATUSES = (STATUS_REJECTED, STATUS_PURCHASED, STATUS_CANCELLED)

KIND_URL = "url"
KIND_ITEMIZED = "itemized"

SOURCE_INTERNAL = "internal"
SOURCE_AMAZON = "amazon"


def _money(value: Decimal | None) -> str | None:
    if value is None:
        return None
    return format(value, "f")


class PurchaseRequest(db.Model):
    """
    A purchase request submitted by an employee.

    LIFECYCLE:
    1. pending: created by the requester, awaiting an approver
    2. approved / rejected / info_requested: approver decision
    3. pending again: requester answers an info request by editing
    4. purchased: admin confirms the order was placed
    5. cancelled: requester withdrew a pending/info_requested request

    DESIGN PRINCIPLES:
    - status changes only through approval_service transitions
    - decision metadata is written by the matching transition and never cleared
    - cart automation writes only the cart_* / added_to_cart fields
    - rows are soft-deleted (deleted_at), never hard-deleted
    """
    __tablename__ = "purchase_requests"
    __table_args__ = (
        db.Index("ix_purchase_requests_status_created", "status", "created_at"),
        db.Index("ix_purchase_requests_requester_status", "requester_id", "status"),
        db.CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'info_requested', 'purchased', 'cancelled')",
            name="status",  # -> ck_purchase_requests_status
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable number (e.g., "REQ-2026-0042")
    request_number = db.Column(db.String(50), nullable=False, unique=True, index=True)

    kind = db.Column(db.String(16), nullable=False, default=KIND_URL)

    # URL variant
    url = db.Column(db.String(2000), nullable=True)
    product_title = db.Column(db.String(500), nullable=True)
    product_image_url = db.Column(db.String(2000), nullable=True)
    product_description = db.Column(db.Text, nullable=True)
    estimated_price = db.Column(db.Numeric(12, 2), nullable=True)

    # Itemized variant
    total_amount = db.Column(db.Numeric(14, 2), nullable=True)

    currency = db.Column(db.String(10), nullable=False, default="MXN")
    quantity = db.Column(db.Integer, nullable=False, default=1)
    justification = db.Column(db.Text, nullable=False)
    urgency = db.Column(db.String(20), nullable=False, default="normal")

    requester_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    status = db.Column(db.String(20), nullable=False, default=STATUS_PENDING, index=True)

    # Decision metadata
    approved_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    info_requested_at = db.Column(db.DateTime(timezone=True), nullable=True)
    info_request_note = db.Column(db.Text, nullable=True)
    purchased_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    purchased_at = db.Column(db.DateTime(timezone=True), nullable=True)
    purchase_notes = db.Column(db.Text, nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Cart automation metadata (independent of status)
    is_automatable = db.Column(db.Boolean, nullable=False, default=False)
    amazon_asin = db.Column(db.String(20), nullable=True)
    added_to_cart = db.Column(db.Boolean, nullable=False, default=False)
    added_to_cart_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cart_error = db.Column(db.Text, nullable=True)
    cart_attempts = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    requester = db.relationship("User", foreign_keys=[requester_id], backref=db.backref("purchase_requests", lazy=True))
    approved_by = db.relationship("User", foreign_keys=[approved_by_id])
    rejected_by = db.relationship("User", foreign_keys=[rejected_by_id])
    purchased_by = db.relationship("User", foreign_keys=[purchased_by_id])
    items = db.relationship(
        "RequestItem",
        backref="request",
        lazy=True,
        order_by="RequestItem.id",
        cascade="all, delete-orphan",
    )
    history = db.relationship(
        "RequestHistory",
        backref="request",
        lazy=True,
        order_by="RequestHistory.id",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_history: bool = False) -> dict:
        data = {
            "id": self.id,
            "request_number": self.request_number,
            "kind": self.kind,
            "url": self.url,
            "product_title": self.product_title,
            "product_image_url": self.product_image_url,
            "product_description": self.product_description,
            "estimated_price": _money(self.estimated_price),
            "total_amount": _money(self.total_amount),
            "currency": self.currency,
            "quantity": self.quantity,
            "justification": self.justification,
            "urgency": self.urgency,
            "requester_id": self.requester_id,
            "requester": self.requester.to_summary() if self.requester else None,
            "status": self.status,
            "approved_by_id": self.approved_by_id,
            "approved_at": to_utc_z(self.approved_at),
            "rejected_by_id": self.rejected_by_id,
            "rejected_at": to_utc_z(self.rejected_at),
            "rejection_reason": self.rejection_reason,
            "info_requested_at": to_utc_z(self.info_requested_at),
            "info_request_note": self.info_request_note,
            "purchased_by_id": self.purchased_by_id,
            "purchased_at": to_utc_z(self.purchased_at),
            "purchase_notes": self.purchase_notes,
            "cancelled_at": to_utc_z(self.cancelled_at),
            "is_automatable": self.is_automatable,
            "amazon_asin": self.amazon_asin,
            "added_to_cart": self.added_to_cart,
            "added_to_cart_at": to_utc_z(self.added_to_cart_at),
            "cart_error": self.cart_error,
            "cart_attempts": self.cart_attempts,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "items": [item.to_dict() for item in self.items] if self.kind == KIND_ITEMIZED else [],
        }
        if include_history:
            data["history"] = [h.to_dict() for h in self.history]
        return data


class RequestItem(db.Model):
    """Line item of an itemized requisition."""
    __tablename__ = "request_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(db.Integer, db.ForeignKey("purchase_requests.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    specification = db.Column(db.Text, nullable=True)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    total_price = db.Column(db.Numeric(14, 2), nullable=False)
    supplier = db.Column(db.String(255), nullable=True)
    source = db.Column(db.String(20), nullable=False, default=SOURCE_INTERNAL)
    amazon_asin = db.Column(db.String(20), nullable=True)
    product_url = db.Column(db.String(2000), nullable=True)
    image_url = db.Column(db.String(500), nullable=True)

    # Set once the cart worker has pushed this item; retries skip it
    added_to_cart_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    @property
    def is_automatable(self) -> bool:
        return bool(self.amazon_asin) or (self.source == SOURCE_AMAZON and bool(self.product_url))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "name": self.name,
            "specification": self.specification,
            "quantity": self.quantity,
            "unit_price": _money(self.unit_price),
            "total_price": _money(self.total_price),
            "supplier": self.supplier,
            "source": self.source,
            "amazon_asin": self.amazon_asin,
            "product_url": self.product_url,
            "image_url": self.image_url,
            "added_to_cart_at": to_utc_z(self.added_to_cart_at),
        }


class RequestHistory(db.Model):
    """
    Append-only ledger of status transitions.

    IMMUTABLE: one row per accepted transition (creation included, with an
    empty old_status). Never updated or deleted.
    """
    __tablename__ = "request_history"
    __table_args__ = (
        db.Index("ix_request_history_request_created", "request_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(db.Integer, db.ForeignKey("purchase_requests.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    action = db.Column(db.String(30), nullable=False)
    old_status = db.Column(db.String(20), nullable=False, default="")
    new_status = db.Column(db.String(20), nullable=False)
    comment = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    user = db.relationship("User")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "user_id": self.user_id,
            "user": self.user.to_summary() if self.user else None,
            "action": self.action,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "comment": self.comment,
            "created_at": to_utc_z(self.created_at),
        }


class RequestSequence(db.Model):
    """Per-year counter backing REQ-<year>-<seq> numbers."""
    __tablename__ = "request_sequences"
    __table_args__ = (
        db.UniqueConstraint("year", name="uq_request_sequences_year"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    year = db.Column(db.Integer, nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
