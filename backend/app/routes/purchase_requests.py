# Overview: Flask API routes for requester-side purchase request operations; parses input and returns JSON responses.

"""Purchase request API routes (requester side)"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import approval_service, metadata_service, request_service
from ..validation import ValidationError, WorkflowError
from ..decorators import require_auth


purchase_requests_bp = Blueprint("purchase_requests", __name__, url_prefix="/api/v1/purchase-requests")


def _truthy(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")


@purchase_requests_bp.post("/extract-metadata")
@require_auth
def extract_metadata_route():
    """
    Preview product metadata for a URL before submitting a request.

    Always 200 when the URL is well-formed; fetch problems come back in
    `metadata.error`.
    """
    try:
        data = request.get_json(silent=True) or {}
        url = (data.get("url") or "").strip()
        if not url:
            raise ValidationError("url is required")

        meta = metadata_service.extract_metadata(url)
        return jsonify({"metadata": meta.to_dict()}), 200

    except WorkflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to extract metadata")
        return jsonify({"error": "Internal server error"}), 500


@purchase_requests_bp.post("/")
@require_auth
def create_request_route():
    """
    Create a purchase request.

    Body with `items` creates an itemized request; otherwise `url` is
    required. `fetch_metadata: true` fills blank product fields from the page.
    """
    try:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationError("Invalid JSON payload")
        data = dict(data)
        fetch = _truthy(data.pop("fetch_metadata", False))

        if "items" in data:
            req = request_service.create_itemized_request(g.current_user, data)
        else:
            req = request_service.create_url_request(g.current_user, data, fetch_metadata=fetch)

        return jsonify({"request": req.to_dict()}), 201

    except WorkflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create purchase request")
        return jsonify({"error": "Internal server error"}), 500


@purchase_requests_bp.get("/my")
@require_auth
def my_requests_route():
    """
    Requests submitted by the current user.

    Query params: status, page, per_page
    """
    try:
        result = request_service.list_requests(
            status=request.args.get("status") or None,
            requester_id=g.current_user.id,
            page=request.args.get("page", 1, type=int),
            per_page=request.args.get("per_page", 20, type=int),
        )
        return jsonify(result), 200

    except WorkflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list own requests")
        return jsonify({"error": "Internal server error"}), 500


@purchase_requests_bp.get("/<int:request_id>")
@require_auth
def get_request_route(request_id: int):
    try:
        req = request_service.get_request(request_id, g.current_user)
        return jsonify({"request": req.to_dict(include_history=True)}), 200

    except WorkflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get purchase request")
        return jsonify({"error": "Internal server error"}), 500


@purchase_requests_bp.put("/<int:request_id>")
@require_auth
def update_request_route(request_id: int):
    """
    Owner edit. On an info_requested request this resubmits it to pending.
    """
    try:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationError("Invalid JSON payload")

        req = request_service.update_request(request_id, g.current_user, data)
        return jsonify({"request": req.to_dict()}), 200

    except WorkflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update purchase request")
        return jsonify({"error": "Internal server error"}), 500


@purchase_requests_bp.delete("/<int:request_id>")
@require_auth
def cancel_request_route(request_id: int):
    """Owner cancel of a pending or info_requested request."""
    try:
        data = request.get_json(silent=True) or {}
        req = request_service.cancel_request(request_id, g.current_user, data.get("comment"))
        return jsonify({"request": req.to_dict()}), 200

    except WorkflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to cancel purchase request")
        return jsonify({"error": "Internal server error"}), 500


@purchase_requests_bp.get("/<int:request_id>/history")
@require_auth
def request_history_route(request_id: int):
    try:
        request_service.get_request(request_id, g.current_user)
        rows = approval_service.get_history(request_id)
        return jsonify({"history": [h.to_dict() for h in rows]}), 200

    except WorkflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get request history")
        return jsonify({"error": "Internal server error"}), 500
