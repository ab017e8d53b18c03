# Overview: Flask API routes for admin operations; parses input and returns JSON responses.

# backend/app/routes/admin.py
"""
Admin routes for purchasing and cart automation.

Provides endpoints for:
- Dashboard counters
- Automation account (read, update, connection test, session status)
- Approved orders (list, mark purchased, retry cart push)
- Archiving finished requests

All endpoints require authentication and the admin role.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..models.auth import ROLE_ADMIN
from ..services import approval_service, automation_config_service, request_service
from ..services.cart_automation import AutomationError, AutomationTimeout
from ..services.credential_vault import CryptoError
from ..validation import ValidationError, WorkflowError
from ..decorators import require_auth, require_role

admin_bp = Blueprint("admin", __name__, url_prefix="/api/v1/admin")


def _cart_jobs():
    queue = current_app.extensions.get("cart_jobs")
    if queue is None:
        raise ValidationError("Cart automation is not available")
    return queue


def _automation_error(e: Exception):
    status = 504 if isinstance(e, AutomationTimeout) else 502
    return jsonify({"error": str(e), "kind": e.kind}), status


# =============================================================================
# DASHBOARD
# =============================================================================

@admin_bp.get("/dashboard")
@require_auth
@require_role(ROLE_ADMIN)
def dashboard_route():
    try:
        return jsonify({"stats": request_service.dashboard_stats()}), 200

    except Exception:
        current_app.logger.exception("Failed to compute dashboard stats")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# AUTOMATION ACCOUNT
# =============================================================================

@admin_bp.get("/automation/config")
@require_auth
@require_role(ROLE_ADMIN)
def get_automation_config_route():
    """The account as stored; the secret is reported only as has_secret."""
    try:
        return jsonify({"config": automation_config_service.describe_config()}), 200

    except Exception:
        current_app.logger.exception("Failed to read automation config")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.put("/automation/config")
@require_auth
@require_role(ROLE_ADMIN)
def update_automation_config_route():
    """
    Create or update the automation account.

    Body: identity, secret, marketplace, is_active (all optional on update).
    An omitted or empty secret keeps the stored one.
    """
    try:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationError("Invalid JSON payload")
        unknown = set(data) - {"identity", "secret", "marketplace", "is_active"}
        if unknown:
            raise ValidationError(f"Field not allowed: {sorted(unknown)[0]}")

        config = automation_config_service.save_config(
            g.current_user,
            identity=data.get("identity"),
            secret=data.get("secret"),
            marketplace=data.get("marketplace"),
            is_active=data.get("is_active"),
        )
        return jsonify({"config": config.to_dict()}), 200

    except WorkflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except CryptoError as e:
        current_app.logger.error("Automation secret could not be encrypted: %s", e)
        return jsonify({"error": str(e), "kind": e.kind}), 500
    except Exception:
        current_app.logger.exception("Failed to update automation config")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.post("/automation/test")
@require_auth
@require_role(ROLE_ADMIN)
def test_automation_route():
    """
    Log into the retailer with the stored account.

    200 with success=false when the login itself failed; the outcome is
    also stored on the config row.
    """
    try:
        result = _cart_jobs().run_test_connection()
        return jsonify(result), 200

    except WorkflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except AutomationError as e:
        return _automation_error(e)
    except Exception:
        current_app.logger.exception("Failed to test automation connection")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.get("/automation/session")
@require_auth
@require_role(ROLE_ADMIN)
def automation_session_route():
    try:
        return jsonify({"session": _cart_jobs().status()}), 200

    except WorkflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to read automation session")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# ORDERS
# =============================================================================

@admin_bp.get("/approved-orders")
@require_auth
@require_role(ROLE_ADMIN)
def approved_orders_route():
    """
    Query params:
    - filter: all | amazon_cart | pending_manual | purchased (default all)
    - page, per_page
    """
    try:
        result = request_service.list_approved_orders(
            request.args.get("filter", "all"),
            page=request.args.get("page", 1, type=int),
            per_page=request.args.get("per_page", 20, type=int),
        )
        return jsonify(result), 200

    except WorkflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list approved orders")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.patch("/orders/<int:request_id>/purchased")
@require_auth
@require_role(ROLE_ADMIN)
def mark_purchased_route(request_id: int):
    """Approved -> purchased. Body: {"notes": "..."} (optional)."""
    try:
        data = request.get_json(silent=True) or {}
        req = approval_service.mark_purchased(request_id, g.current_user, data.get("notes"))
        return jsonify({"request": req.to_dict()}), 200

    except WorkflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to mark request purchased")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.post("/orders/<int:request_id>/retry-cart")
@require_auth
@require_role(ROLE_ADMIN)
def retry_cart_route(request_id: int):
    """
    Re-run the cart push for an approved request and wait for the outcome.

    The refreshed request carries added_to_cart / cart_error either way.
    """
    try:
        result = _cart_jobs().run_retry(request_id)
        return jsonify({"request": result}), 200

    except WorkflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except AutomationError as e:
        return _automation_error(e)
    except Exception:
        current_app.logger.exception("Failed to retry cart push")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.delete("/requests/<int:request_id>")
@require_auth
@require_role(ROLE_ADMIN)
def archive_request_route(request_id: int):
    """Soft delete of a rejected, purchased or cancelled request."""
    try:
        req = request_service.archive_request(request_id, g.current_user)
        return jsonify({"request": req.to_dict()}), 200

    except WorkflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to archive request")
        return jsonify({"error": "Internal server error"}), 500
