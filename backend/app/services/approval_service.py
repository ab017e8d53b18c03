# Overview: Service-layer operations for the request approval state machine; encapsulates business logic and database work.

"""
Purchase Request Approval State Machine

================================================================================
STATE MACHINE:
    (new) ----------> pending            created          requester
    pending --------> approved           approved         approver
    pending --------> rejected           rejected         approver (reason required)
    pending --------> info_requested     info_requested   approver (note required)
    info_requested -> pending            resubmitted      owning requester (edit)
    pending,
    info_requested -> cancelled          cancelled        owning requester
    approved -------> purchased          purchased        admin

    rejected, purchased and cancelled are terminal.
================================================================================

RULES (NON-NEGOTIABLE):
1. Every accepted transition writes status, its decision metadata and one
   request_history row in a single commit. Either all persist or none do.
2. Transitions are compare-and-swap: UPDATE ... WHERE status = <expected>.
   If another transition won the race, zero rows match and the loser gets
   InvalidStateError with nothing written.
3. Decision metadata is set by its own transition only and never cleared.
4. Role checks happen in the route decorators. Ownership checks (cancel,
   resubmit) happen here because they depend on the loaded row.
5. Approval schedules the cart automation job AFTER its commit. The job's
   outcome is written separately and can never fail or undo the approval.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from flask import current_app
from sqlalchemy import case, func

from ..extensions import db
from ..models import PurchaseRequest, RequestHistory, User
from ..models.requests import (
    STATUS_APPROVED,
    STATUS_CANCELLED,
    STATUS_INFO_REQUESTED,
    STATUS_PENDING,
    STATUS_PURCHASED,
    STATUS_REJECTED,
    VALID_STATUSES,
)
from ..validation import (
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
    WorkflowError,
)
from .concurrency import compare_and_swap, run_with_retry
from app.time_utils import utcnow


ACTION_CREATED = "created"
ACTION_APPROVED = "approved"
ACTION_REJECTED = "rejected"
ACTION_INFO_REQUESTED = "info_requested"
ACTION_RESUBMITTED = "resubmitted"
ACTION_CANCELLED = "cancelled"
ACTION_PURCHASED = "purchased"


@dataclass(frozen=True)
class Transition:
    action: str
    from_statuses: tuple[str, ...]
    to_status: str
    verb: str


TRANSITIONS = {
    ACTION_APPROVED: Transition(ACTION_APPROVED, (STATUS_PENDING,), STATUS_APPROVED, "approve"),
    ACTION_REJECTED: Transition(ACTION_REJECTED, (STATUS_PENDING,), STATUS_REJECTED, "reject"),
    ACTION_INFO_REQUESTED: Transition(ACTION_INFO_REQUESTED, (STATUS_PENDING,), STATUS_INFO_REQUESTED, "request info on"),
    ACTION_RESUBMITTED: Transition(ACTION_RESUBMITTED, (STATUS_INFO_REQUESTED,), STATUS_PENDING, "resubmit"),
    ACTION_CANCELLED: Transition(ACTION_CANCELLED, (STATUS_PENDING, STATUS_INFO_REQUESTED), STATUS_CANCELLED, "cancel"),
    ACTION_PURCHASED: Transition(ACTION_PURCHASED, (STATUS_APPROVED,), STATUS_PURCHASED, "mark as purchased"),
}

# (old_status, new_status, action) triples a valid history may contain
ALLOWED_STEPS = {("", STATUS_PENDING, ACTION_CREATED)} | {
    (from_status, t.to_status, t.action)
    for t in TRANSITIONS.values()
    for from_status in t.from_statuses
}


class HistoryIntegrityError(WorkflowError):
    """A stored history does not form a walk over the transition table."""
    kind = "HistoryIntegrity"
    status_code = 500


# =============================================================================
# Core transition
# =============================================================================

def load_request(request_id: int) -> PurchaseRequest:
    req = db.session.get(PurchaseRequest, request_id)
    if req is None or req.deleted_at is not None:
        raise NotFoundError("Request not found")
    return req


def _clean_comment(comment) -> str | None:
    if comment is None:
        return None
    text = str(comment).strip()
    return text or None


def apply_transition(
    req: PurchaseRequest,
    actor: User,
    action: str,
    *,
    comment: str | None = None,
    values: dict | None = None,
    now=None,
) -> RequestHistory:
    """
    CAS the status change and stage the history row on the current session.

    Does not commit: callers that need extra writes in the same unit
    (resubmit replaces items, for example) stage them before committing.
    Raises InvalidStateError if the status no longer permits `action`.
    """
    transition = TRANSITIONS[action]
    old_status = req.status
    if old_status not in transition.from_statuses:
        raise InvalidStateError(f"Cannot {transition.verb} a request in status {old_status}")

    now = now or utcnow()
    swapped = compare_and_swap(
        PurchaseRequest,
        req.id,
        expected={"status": old_status, "deleted_at": None},
        values={"status": transition.to_status, "updated_at": now, **(values or {})},
    )
    if not swapped:
        raise InvalidStateError("Request was changed by another action; reload and try again")

    entry = RequestHistory(
        request_id=req.id,
        user_id=actor.id,
        action=action,
        old_status=old_status,
        new_status=transition.to_status,
        comment=comment,
        created_at=now,
    )
    db.session.add(entry)
    return entry


def _transition(request_id: int, actor: User, action: str, *, comment=None, values_for=None) -> PurchaseRequest:
    def _op() -> PurchaseRequest:
        req = load_request(request_id)
        now = utcnow()
        values = values_for(now) if values_for else None
        try:
            apply_transition(req, actor, action, comment=comment, values=values, now=now)
            db.session.commit()
        except WorkflowError:
            db.session.rollback()
            raise
        return req

    req = run_with_retry(_op)
    db.session.refresh(req)
    current_app.logger.info(
        "Request %s %s by user %s (now %s)", req.request_number, action, actor.id, req.status,
    )
    return req


# =============================================================================
# Approver actions
# =============================================================================

def approve(request_id: int, actor: User, comment: str | None = None) -> PurchaseRequest:
    """
    Pending -> Approved.

    If the request is automatable, a cart job is enqueued after the commit.
    Enqueueing never raises into this call.
    """
    comment = _clean_comment(comment)
    req = _transition(
        request_id,
        actor,
        ACTION_APPROVED,
        comment=comment,
        values_for=lambda now: {"approved_by_id": actor.id, "approved_at": now},
    )

    if req.is_automatable:
        from .cart_jobs import dispatch_add_to_cart

        dispatch_add_to_cart(req.id)
        db.session.refresh(req)

    return req


def reject(request_id: int, actor: User, reason: str | None) -> PurchaseRequest:
    """Pending -> Rejected. The reason is required and stored on the request."""
    reason = _clean_comment(reason)
    if not reason:
        raise ValidationError("A rejection reason is required")
    return _transition(
        request_id,
        actor,
        ACTION_REJECTED,
        comment=reason,
        values_for=lambda now: {
            "rejected_by_id": actor.id,
            "rejected_at": now,
            "rejection_reason": reason,
        },
    )


def request_info(request_id: int, actor: User, note: str | None) -> PurchaseRequest:
    """Pending -> InfoRequested. The note tells the requester what is missing."""
    note = _clean_comment(note)
    if not note:
        raise ValidationError("A note describing the missing information is required")
    return _transition(
        request_id,
        actor,
        ACTION_INFO_REQUESTED,
        comment=note,
        values_for=lambda now: {"info_requested_at": now, "info_request_note": note},
    )


def mark_purchased(request_id: int, actor: User, notes: str | None = None) -> PurchaseRequest:
    """Approved -> Purchased (admin). Notes are optional."""
    notes = _clean_comment(notes)
    return _transition(
        request_id,
        actor,
        ACTION_PURCHASED,
        comment=notes,
        values_for=lambda now: {
            "purchased_by_id": actor.id,
            "purchased_at": now,
            "purchase_notes": notes,
        },
    )


# =============================================================================
# Requester actions
# =============================================================================

def require_owner(req: PurchaseRequest, actor: User, verb: str) -> None:
    if req.requester_id != actor.id:
        raise ForbiddenError(f"Only the requester can {verb} this request")


def cancel_request(request_id: int, actor: User, comment: str | None = None) -> PurchaseRequest:
    """Pending/InfoRequested -> Cancelled, owner only."""
    comment = _clean_comment(comment)

    def _op() -> PurchaseRequest:
        req = load_request(request_id)
        require_owner(req, actor, "cancel")
        now = utcnow()
        try:
            apply_transition(
                req, actor, ACTION_CANCELLED, comment=comment, values={"cancelled_at": now}, now=now,
            )
            db.session.commit()
        except WorkflowError:
            db.session.rollback()
            raise
        return req

    req = run_with_retry(_op)
    db.session.refresh(req)
    current_app.logger.info("Request %s cancelled by user %s", req.request_number, actor.id)
    return req


# =============================================================================
# Queries
# =============================================================================

def _active_requests():
    return db.session.query(PurchaseRequest).filter(PurchaseRequest.deleted_at.is_(None))


def list_pending_approvals(page: int = 1, per_page: int = 20) -> dict:
    """Pending requests, urgent first, then oldest first."""
    query = _active_requests().filter(PurchaseRequest.status == STATUS_PENDING)
    total = query.count()
    urgent_first = case((PurchaseRequest.urgency == "urgent", 0), else_=1)
    rows = (
        query.order_by(urgent_first, PurchaseRequest.created_at.asc(), PurchaseRequest.id.asc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return {
        "items": [r.to_dict() for r in rows],
        "total": total,
        "page": page,
        "per_page": per_page,
    }


def get_history(request_id: int) -> list[RequestHistory]:
    """History rows in transition order (created_at, then id)."""
    load_request(request_id)
    return (
        db.session.query(RequestHistory)
        .filter(RequestHistory.request_id == request_id)
        .order_by(RequestHistory.created_at.asc(), RequestHistory.id.asc())
        .all()
    )


def approval_stats() -> dict:
    counts = dict(
        _active_requests()
        .with_entities(PurchaseRequest.status, func.count(PurchaseRequest.id))
        .group_by(PurchaseRequest.status)
        .all()
    )
    stats = {status: counts.get(status, 0) for status in VALID_STATUSES}
    stats["total"] = sum(counts.values())
    stats["urgent_pending"] = (
        _active_requests()
        .filter(PurchaseRequest.status == STATUS_PENDING, PurchaseRequest.urgency == "urgent")
        .count()
    )
    stats["in_cart"] = _active_requests().filter(PurchaseRequest.added_to_cart.is_(True)).count()
    return stats


# =============================================================================
# History replay
# =============================================================================

def _field(row, name):
    if isinstance(row, dict):
        return row.get(name)
    return getattr(row, name)


def replay_history(rows: Iterable) -> list[str]:
    """
    Rebuild the status walk from ordered history rows and check every step
    against the transition table.

    Accepts RequestHistory rows or dicts with old_status/new_status/action.
    Returns the statuses visited, starting with the initial pending.
    Raises HistoryIntegrityError on the first illegal step.
    """
    walk: list[str] = []
    current = ""
    for index, row in enumerate(rows):
        old_status = _field(row, "old_status") or ""
        new_status = _field(row, "new_status")
        action = _field(row, "action")
        if old_status != current:
            raise HistoryIntegrityError(
                f"step {index}: old status {old_status or '(none)'} does not follow {current or '(none)'}"
            )
        if (old_status, new_status, action) not in ALLOWED_STEPS:
            raise HistoryIntegrityError(
                f"step {index}: {action} from {old_status or '(none)'} to {new_status} is not a legal transition"
            )
        walk.append(new_status)
        current = new_status
    if not walk:
        raise HistoryIntegrityError("history is empty")
    return walk


def verify_request_history(req: PurchaseRequest) -> list[str]:
    """Replay a request's stored history and check it ends in the stored status."""
    walk = replay_history(get_history(req.id))
    if walk[-1] != req.status:
        raise HistoryIntegrityError(
            f"history ends in {walk[-1]} but request {req.request_number} is {req.status}"
        )
    return walk
