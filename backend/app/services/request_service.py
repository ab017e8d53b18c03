# Overview: Service-layer operations for purchase requests; creation, requester edits, listings and archiving.

"""
Purchase Request Service

Creation and requester-side edits. Status changes are delegated to
approval_service so every one of them goes through the same
compare-and-swap + history path.

TWO SHAPES OF REQUEST:
- url:      one product page URL, optional metadata enrichment
- itemized: a list of line items with a computed total

AUTOMATABLE:
A url request is automatable when its URL is an Amazon URL. An itemized
request is automatable when at least one item is (ASIN present, or an
amazon-sourced item with a product URL).
"""

from __future__ import annotations

from decimal import Decimal

from flask import current_app
from sqlalchemy import and_, or_

from ..extensions import db
from ..models import PurchaseRequest, RequestHistory, RequestItem, User
from ..models.requests import (
    KIND_ITEMIZED,
    KIND_URL,
    SOURCE_AMAZON,
    SOURCE_INTERNAL,
    STATUS_APPROVED,
    STATUS_INFO_REQUESTED,
    STATUS_PENDING,
    STATUS_PURCHASED,
    TERMINAL_STATUSES,
    VALID_STATUSES,
)
from ..validation import (
    ForbiddenError,
    InvalidStateError,
    PayloadPolicy,
    NotFoundError,
    ValidationError,
    WorkflowError,
    coerce_decimal,
    enforce_rules_request,
    require_quantity,
    require_text,
    validate_payload,
)
from . import approval_service, metadata_service, url_classifier
from .approval_service import ACTION_CREATED, ACTION_RESUBMITTED
from .concurrency import compare_and_swap, run_with_retry
from .sequence_service import next_request_number
from app.time_utils import utcnow


MAX_ITEMS = 100
MAX_PER_PAGE = 100

URL_REQUEST_POLICY = PayloadPolicy(
    writable=frozenset({
        "url",
        "quantity",
        "justification",
        "urgency",
        "currency",
        "product_title",
        "product_image_url",
        "product_description",
        "estimated_price",
    }),
    required=frozenset({"url", "justification"}),
)

ITEMIZED_REQUEST_POLICY = PayloadPolicy(
    writable=frozenset({"justification", "urgency", "currency"}),
    required=frozenset({"justification"}),
)

ITEM_FIELDS = {
    "name",
    "specification",
    "quantity",
    "unit_price",
    "supplier",
    "source",
    "amazon_asin",
    "product_url",
    "image_url",
}

APPROVED_ORDER_FILTERS = ("all", "amazon_cart", "pending_manual", "purchased")


# =============================================================================
# Validation helpers
# =============================================================================

def _normalize_currency(patch: dict) -> None:
    if "currency" in patch:
        currency = (patch["currency"] or "").strip().upper()
        patch["currency"] = currency or current_app.config.get("DEFAULT_CURRENCY", "MXN")


def _validate_url_payload(payload: dict, *, partial: bool) -> dict:
    patch = validate_payload(model=PurchaseRequest, payload=payload, policy=URL_REQUEST_POLICY, partial=partial)
    enforce_rules_request(patch)
    _normalize_currency(patch)
    return patch


def _optional_text(raw: dict, key: str, limit: int | None = None) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if limit and len(text) > limit:
        raise ValidationError(f"{key} exceeds max length {limit}")
    return text


def _build_item(raw, index: int) -> RequestItem:
    if not isinstance(raw, dict):
        raise ValidationError(f"items[{index}] must be an object")
    unknown = set(raw) - ITEM_FIELDS
    if unknown:
        raise ValidationError(f"items[{index}]: field not allowed: {sorted(unknown)[0]}")

    name = require_text(raw.get("name"), "name", f"items[{index}].name is required")
    if len(name) > 255:
        raise ValidationError(f"items[{index}].name exceeds max length 255")
    quantity = require_quantity(raw.get("quantity", 1), f"items[{index}].quantity")
    if raw.get("unit_price") is None:
        raise ValidationError(f"items[{index}].unit_price is required")
    unit_price = coerce_decimal(f"items[{index}].unit_price", raw.get("unit_price"))

    source = (raw.get("source") or SOURCE_INTERNAL).strip().lower()
    if source not in (SOURCE_INTERNAL, SOURCE_AMAZON):
        raise ValidationError(f"items[{index}].source must be internal or amazon")

    product_url = _optional_text(raw, "product_url", 2000)
    if product_url and not product_url.lower().startswith(("http://", "https://")):
        raise ValidationError(f"items[{index}].product_url must be an http(s) URL")

    asin = _optional_text(raw, "amazon_asin", 20)
    if asin:
        asin = asin.upper()
        if not url_classifier.is_valid_asin(asin):
            raise ValidationError(f"items[{index}].amazon_asin must be 10 letters or digits")
    elif product_url and url_classifier.is_amazon_url(product_url):
        asin = url_classifier.extract_asin(product_url)
        source = SOURCE_AMAZON

    return RequestItem(
        name=name,
        specification=_optional_text(raw, "specification"),
        quantity=quantity,
        unit_price=unit_price,
        total_price=(unit_price * quantity).quantize(Decimal("0.01")),
        supplier=_optional_text(raw, "supplier", 255),
        source=source,
        amazon_asin=asin,
        product_url=product_url,
        image_url=_optional_text(raw, "image_url", 500),
    )


def _build_items(raw_items) -> list[RequestItem]:
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("items must be a non-empty list")
    if len(raw_items) > MAX_ITEMS:
        raise ValidationError(f"items cannot exceed {MAX_ITEMS} entries")
    return [_build_item(raw, i) for i, raw in enumerate(raw_items)]


def _classify_url_fields(url: str) -> dict:
    is_automatable, asin = url_classifier.classify(url)
    return {"is_automatable": is_automatable, "amazon_asin": asin}


def _enrich(patch: dict, extractor) -> None:
    """Fill blank product fields from the page. Failures are ignored."""
    if patch.get("product_title") and patch.get("estimated_price") is not None:
        return
    meta = extractor(patch["url"])
    if meta.error:
        current_app.logger.info("Metadata extraction skipped for %s: %s", patch["url"], meta.error)
        return
    if not patch.get("product_title") and meta.title:
        patch["product_title"] = meta.title[:500]
    if not patch.get("product_description") and meta.description:
        patch["product_description"] = meta.description
    if not patch.get("product_image_url") and meta.image_url:
        patch["product_image_url"] = meta.image_url[:2000]
    if patch.get("estimated_price") is None and meta.price is not None:
        patch["estimated_price"] = meta.price
    if not patch.get("currency") and meta.currency:
        patch["currency"] = meta.currency.upper()[:10]


def _insert(req: PurchaseRequest, requester: User) -> PurchaseRequest:
    """Number, insert and log creation in one commit."""
    def _op() -> PurchaseRequest:
        now = utcnow()
        req.request_number = next_request_number(year=now.year)
        req.created_at = now
        req.updated_at = now
        db.session.add(req)
        db.session.flush()
        db.session.add(RequestHistory(
            request_id=req.id,
            user_id=requester.id,
            action=ACTION_CREATED,
            old_status="",
            new_status=STATUS_PENDING,
            comment=None,
            created_at=now,
        ))
        db.session.commit()
        return req

    req = run_with_retry(_op)
    current_app.logger.info(
        "Request %s created by user %s (kind=%s, automatable=%s)",
        req.request_number, requester.id, req.kind, req.is_automatable,
    )
    return req


# =============================================================================
# Creation
# =============================================================================

def create_url_request(
    requester: User,
    payload: dict,
    *,
    fetch_metadata: bool = False,
    extractor=metadata_service.extract_metadata,
) -> PurchaseRequest:
    """
    Create a url-kind request in status pending.

    payload: url, justification (required); quantity, urgency, currency,
    product_title, product_image_url, product_description, estimated_price.
    With fetch_metadata, blank product fields are filled from the page.
    """
    patch = _validate_url_payload(payload, partial=False)
    if fetch_metadata:
        _enrich(patch, extractor)

    req = PurchaseRequest(
        kind=KIND_URL,
        requester_id=requester.id,
        status=STATUS_PENDING,
        quantity=patch.pop("quantity", 1),
        urgency=patch.pop("urgency", "normal"),
        currency=patch.pop("currency", None) or current_app.config.get("DEFAULT_CURRENCY", "MXN"),
        **_classify_url_fields(patch["url"]),
        **patch,
    )
    return _insert(req, requester)


def create_itemized_request(requester: User, payload: dict) -> PurchaseRequest:
    """
    Create an itemized request in status pending.

    payload: items (non-empty list), justification (required); urgency, currency.
    total_amount is the sum of quantity * unit_price over the items.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    payload = dict(payload)
    items = _build_items(payload.pop("items", None))
    patch = validate_payload(model=PurchaseRequest, payload=payload, policy=ITEMIZED_REQUEST_POLICY, partial=False)
    enforce_rules_request(patch)
    _normalize_currency(patch)

    req = PurchaseRequest(
        kind=KIND_ITEMIZED,
        requester_id=requester.id,
        status=STATUS_PENDING,
        quantity=sum(item.quantity for item in items),
        urgency=patch.get("urgency", "normal"),
        currency=patch.get("currency") or current_app.config.get("DEFAULT_CURRENCY", "MXN"),
        justification=patch["justification"],
        total_amount=sum((item.total_price for item in items), Decimal("0.00")),
        is_automatable=any(item.is_automatable for item in items),
        items=items,
    )
    return _insert(req, requester)


# =============================================================================
# Requester edits
# =============================================================================

def update_request(request_id: int, actor: User, changes: dict) -> PurchaseRequest:
    """
    Owner edit of a pending or info_requested request.

    - pending: field edit only, no history row
    - info_requested: the edit is the InfoRequested -> Pending transition
      (resubmitted history row), applied in the same commit

    Both paths are guarded by a status compare-and-swap, so an edit racing
    an approver's decision loses cleanly with InvalidStateError.
    """
    if not isinstance(changes, dict):
        raise ValidationError("Invalid JSON payload")
    changes = dict(changes)
    comment = changes.pop("comment", None)
    raw_items = changes.pop("items", None)

    def _op() -> PurchaseRequest:
        req = approval_service.load_request(request_id)
        approval_service.require_owner(req, actor, "edit")
        if req.status not in (STATUS_PENDING, STATUS_INFO_REQUESTED):
            raise InvalidStateError(f"Cannot edit a request in status {req.status}")

        values: dict = {}
        new_items = None
        if req.kind == KIND_ITEMIZED:
            patch = validate_payload(
                model=PurchaseRequest, payload=changes, policy=ITEMIZED_REQUEST_POLICY, partial=True,
            )
            enforce_rules_request(patch)
            _normalize_currency(patch)
            values.update(patch)
            if raw_items is not None:
                new_items = _build_items(raw_items)
                values["quantity"] = sum(item.quantity for item in new_items)
                values["total_amount"] = sum((item.total_price for item in new_items), Decimal("0.00"))
                values["is_automatable"] = any(item.is_automatable for item in new_items)
        else:
            if raw_items is not None:
                raise ValidationError("items can only be set on itemized requests")
            patch = _validate_url_payload(changes, partial=True)
            values.update(patch)
            if "url" in patch:
                values.update(_classify_url_fields(patch["url"]))

        now = utcnow()
        try:
            if req.status == STATUS_INFO_REQUESTED:
                approval_service.apply_transition(
                    req, actor, ACTION_RESUBMITTED, comment=approval_service._clean_comment(comment),
                    values=values, now=now,
                )
            else:
                swapped = compare_and_swap(
                    PurchaseRequest,
                    req.id,
                    expected={"status": STATUS_PENDING, "deleted_at": None},
                    values={**values, "updated_at": now},
                )
                if not swapped:
                    raise InvalidStateError("Request was changed by another action; reload and try again")

            if new_items is not None:
                db.session.query(RequestItem).filter(RequestItem.request_id == req.id).delete(
                    synchronize_session=False
                )
                for item in new_items:
                    item.request_id = req.id
                    db.session.add(item)
            db.session.commit()
        except WorkflowError:
            db.session.rollback()
            raise
        return req

    req = run_with_retry(_op)
    db.session.expire_all()
    req = db.session.get(PurchaseRequest, request_id)
    current_app.logger.info("Request %s edited by user %s (now %s)", req.request_number, actor.id, req.status)
    return req


def cancel_request(request_id: int, actor: User, comment: str | None = None) -> PurchaseRequest:
    return approval_service.cancel_request(request_id, actor, comment)


# =============================================================================
# Reads
# =============================================================================

def get_request(request_id: int, actor: User) -> PurchaseRequest:
    """Owner, or any user whose role can see all requests."""
    req = approval_service.load_request(request_id)
    if req.requester_id != actor.id and not actor.can_view_all_requests:
        raise ForbiddenError("You do not have access to this request")
    return req


def _page_args(page, per_page) -> tuple[int, int]:
    page = max(1, int(page or 1))
    per_page = min(MAX_PER_PAGE, max(1, int(per_page or 20)))
    return page, per_page


def list_requests(
    *,
    status: str | None = None,
    requester_id: int | None = None,
    page: int = 1,
    per_page: int = 20,
) -> dict:
    """Newest first. Archived requests are excluded."""
    if status and status not in VALID_STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(VALID_STATUSES)}")
    page, per_page = _page_args(page, per_page)

    query = db.session.query(PurchaseRequest).filter(PurchaseRequest.deleted_at.is_(None))
    if status:
        query = query.filter(PurchaseRequest.status == status)
    if requester_id is not None:
        query = query.filter(PurchaseRequest.requester_id == requester_id)

    total = query.count()
    rows = (
        query.order_by(PurchaseRequest.created_at.desc(), PurchaseRequest.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return {"items": [r.to_dict() for r in rows], "total": total, "page": page, "per_page": per_page}


def _pending_manual_clause():
    return and_(
        PurchaseRequest.status == STATUS_APPROVED,
        or_(
            PurchaseRequest.is_automatable.is_(False),
            PurchaseRequest.added_to_cart.is_(False),
        ),
    )


def list_approved_orders(filter_name: str = "all", page: int = 1, per_page: int = 20) -> dict:
    """
    Orders for the purchasing admin, most recently approved first.

    - all:            approved or purchased
    - amazon_cart:    approved, automatable, already in the retailer cart
    - pending_manual: approved and not in the cart (not automatable, or the push failed)
    - purchased:      purchased
    """
    filter_name = filter_name or "all"
    if filter_name not in APPROVED_ORDER_FILTERS:
        raise ValidationError(f"filter must be one of: {', '.join(APPROVED_ORDER_FILTERS)}")
    page, per_page = _page_args(page, per_page)

    query = db.session.query(PurchaseRequest).filter(PurchaseRequest.deleted_at.is_(None))
    if filter_name == "amazon_cart":
        query = query.filter(
            PurchaseRequest.status == STATUS_APPROVED,
            PurchaseRequest.is_automatable.is_(True),
            PurchaseRequest.added_to_cart.is_(True),
        )
    elif filter_name == "pending_manual":
        query = query.filter(_pending_manual_clause())
    elif filter_name == "purchased":
        query = query.filter(PurchaseRequest.status == STATUS_PURCHASED)
    else:
        query = query.filter(PurchaseRequest.status.in_((STATUS_APPROVED, STATUS_PURCHASED)))

    total = query.count()
    rows = (
        query.order_by(PurchaseRequest.approved_at.desc(), PurchaseRequest.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return {
        "items": [r.to_dict() for r in rows],
        "total": total,
        "page": page,
        "per_page": per_page,
        "filter": filter_name,
    }


def dashboard_stats() -> dict:
    active = db.session.query(PurchaseRequest).filter(PurchaseRequest.deleted_at.is_(None))
    return {
        "total_users": db.session.query(User).count(),
        "active_users": db.session.query(User).filter(User.is_active.is_(True)).count(),
        "total_requests": active.count(),
        "pending_approvals": active.filter(PurchaseRequest.status == STATUS_PENDING).count(),
        "approved_requests": active.filter(PurchaseRequest.status == STATUS_APPROVED).count(),
        "purchased_orders": active.filter(PurchaseRequest.status == STATUS_PURCHASED).count(),
        "amazon_in_cart": active.filter(
            PurchaseRequest.status == STATUS_APPROVED,
            PurchaseRequest.is_automatable.is_(True),
            PurchaseRequest.added_to_cart.is_(True),
        ).count(),
        "pending_manual": active.filter(_pending_manual_clause()).count(),
        "cart_errors": active.filter(
            PurchaseRequest.status == STATUS_APPROVED,
            PurchaseRequest.cart_error.isnot(None),
        ).count(),
    }


# =============================================================================
# Archiving
# =============================================================================

def archive_request(request_id: int, actor: User) -> PurchaseRequest:
    """
    Admin soft delete of a request in a terminal status.

    The row and its history stay in the database; archived requests only
    disappear from lookups and listings.
    """
    if not actor.is_admin:
        raise ForbiddenError("Only administrators can archive requests")

    def _op() -> PurchaseRequest:
        req = db.session.get(PurchaseRequest, request_id)
        if req is None:
            raise NotFoundError("Request not found")
        if req.deleted_at is not None:
            raise InvalidStateError("Request is already archived")
        if req.status not in TERMINAL_STATUSES:
            raise InvalidStateError(f"Only rejected, purchased or cancelled requests can be archived (status {req.status})")
        now = utcnow()
        swapped = compare_and_swap(
            PurchaseRequest,
            req.id,
            expected={"status": req.status, "deleted_at": None},
            values={"deleted_at": now, "updated_at": now},
        )
        if not swapped:
            db.session.rollback()
            raise InvalidStateError("Request was changed by another action; reload and try again")
        db.session.commit()
        return req

    req = run_with_retry(_op)
    db.session.refresh(req)
    current_app.logger.info("Request %s archived by user %s", req.request_number, actor.id)
    return req
