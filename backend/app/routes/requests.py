# Overview: Flask API routes for the all-requests listing; parses input and returns JSON responses.

"""All purchase requests, for roles that can see every requester's work."""

from flask import Blueprint, request, jsonify, current_app

from ..models.auth import VIEW_ALL_ROLES
from ..services import request_service
from ..validation import WorkflowError
from ..decorators import require_auth, require_role


requests_bp = Blueprint("requests", __name__, url_prefix="/api/v1/requests")


@requests_bp.get("/")
@require_auth
@require_role(*VIEW_ALL_ROLES)
def list_all_requests_route():
    """
    Query params:
    - status: filter by status
    - requester_id: filter by requester
    - page, per_page
    """
    try:
        result = request_service.list_requests(
            status=request.args.get("status") or None,
            requester_id=request.args.get("requester_id", type=int),
            page=request.args.get("page", 1, type=int),
            per_page=request.args.get("per_page", 20, type=int),
        )
        return jsonify(result), 200

    except WorkflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list requests")
        return jsonify({"error": "Internal server error"}), 500
