# Overview: Login, logout and current-user endpoints.

"""
Authentication API routes

Login trades email and password for an opaque bearer token. Every failed
login and every logout is written to security_events.
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..services import auth_service
from ..services import session_service
from ..services import permission_service
from ..models.security import EVENT_LOGIN_FAILED, EVENT_LOGOUT
from ..decorators import require_auth, bearer_token


auth_bp = Blueprint("auth", __name__, url_prefix="/api/v1/auth")


def _client() -> dict:
    return {
        "ip_address": request.remote_addr,
        "user_agent": request.headers.get("User-Agent"),
    }


@auth_bp.post("/login")
def login_route():
    """
    Body: {"email", "password"} ("username" is accepted for email).

    200 -> {"user", "token", "session"}; 400 missing fields; 401 bad credentials.
    """
    data = request.get_json(silent=True) or {}
    email = data.get("email") or data.get("username")
    password = data.get("password")
    if not email or not password:
        return jsonify({"error": "email and password required", "kind": "ValidationError"}), 400

    try:
        user = auth_service.authenticate(email, password)
        if user is None:
            permission_service.log_security_event(
                user_id=None,
                event_type=EVENT_LOGIN_FAILED,
                success=False,
                resource=request.path,
                action="POST",
                reason=f"Invalid credentials for {str(email).strip().lower()}",
                **_client(),
            )
            return jsonify({"error": "Invalid credentials", "kind": "Unauthorized"}), 401

        session, token = session_service.create_session(user_id=user.id, **_client())
    except Exception:
        current_app.logger.exception("Login failed for %s", email)
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({
        "user": user.to_dict(),
        "token": token,
        "session": session.to_dict(),
    }), 200


@auth_bp.post("/logout")
@require_auth
def logout_route():
    try:
        session_service.revoke_session(bearer_token())
        permission_service.log_security_event(
            user_id=g.current_user.id,
            event_type=EVENT_LOGOUT,
            success=True,
            resource=request.path,
            action="POST",
            **_client(),
        )
    except Exception:
        current_app.logger.exception("Logout failed for user %s", g.current_user.id)
        return jsonify({"error": "Internal server error"}), 500
    return jsonify({"message": "Logged out"}), 200


@auth_bp.get("/me")
@require_auth
def me_route():
    return jsonify({
        "user": g.current_user.to_dict(),
        "session": g.session_context.session.to_dict(),
    }), 200
