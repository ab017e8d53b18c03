# Overview: Flask API routes for approver decisions; parses input and returns JSON responses.

# backend/app/routes/approvals.py
"""
Approval API routes

Available to: general_manager, admin
Every decision is a compare-and-swap on the request status; a request that
moved on since it was loaded answers 409 InvalidState.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..models.auth import APPROVER_ROLES
from ..services import approval_service
from ..validation import WorkflowError
from ..decorators import require_auth, require_role


approvals_bp = Blueprint("approvals", __name__, url_prefix="/api/v1/approvals")


def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


@approvals_bp.get("/")
@require_auth
@require_role(*APPROVER_ROLES)
def pending_approvals_route():
    """Pending requests, urgent first, then oldest first."""
    try:
        page = max(1, request.args.get("page", 1, type=int))
        per_page = min(100, max(1, request.args.get("per_page", 20, type=int)))
        return jsonify(approval_service.list_pending_approvals(page, per_page)), 200

    except Exception:
        current_app.logger.exception("Failed to list pending approvals")
        return jsonify({"error": "Internal server error"}), 500


@approvals_bp.get("/stats")
@require_auth
@require_role(*APPROVER_ROLES)
def approval_stats_route():
    try:
        return jsonify({"stats": approval_service.approval_stats()}), 200

    except Exception:
        current_app.logger.exception("Failed to compute approval stats")
        return jsonify({"error": "Internal server error"}), 500


@approvals_bp.get("/<int:request_id>")
@require_auth
@require_role(*APPROVER_ROLES)
def approval_detail_route(request_id: int):
    try:
        req = approval_service.load_request(request_id)
        return jsonify({"request": req.to_dict(include_history=True)}), 200

    except WorkflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load request for approval")
        return jsonify({"error": "Internal server error"}), 500


@approvals_bp.post("/<int:request_id>/approve")
@require_auth
@require_role(*APPROVER_ROLES)
def approve_route(request_id: int):
    """
    Pending -> approved.

    Automatable requests are queued for the retailer cart after the commit;
    the response does not wait for the cart.
    """
    try:
        req = approval_service.approve(request_id, g.current_user, _body().get("comment"))
        return jsonify({"request": req.to_dict()}), 200

    except WorkflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to approve request")
        return jsonify({"error": "Internal server error"}), 500


@approvals_bp.post("/<int:request_id>/reject")
@require_auth
@require_role(*APPROVER_ROLES)
def reject_route(request_id: int):
    """Pending -> rejected. Body: {"reason": "..."} (required)."""
    try:
        data = _body()
        req = approval_service.reject(request_id, g.current_user, data.get("reason") or data.get("comment"))
        return jsonify({"request": req.to_dict()}), 200

    except WorkflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to reject request")
        return jsonify({"error": "Internal server error"}), 500


@approvals_bp.post("/<int:request_id>/request-info")
@require_auth
@require_role(*APPROVER_ROLES)
def request_info_route(request_id: int):
    """Pending -> info_requested. Body: {"note": "..."} (required)."""
    try:
        data = _body()
        req = approval_service.request_info(request_id, g.current_user, data.get("note") or data.get("comment"))
        return jsonify({"request": req.to_dict()}), 200

    except WorkflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to request info")
        return jsonify({"error": "Internal server error"}), 500
