# Overview: Bearer-token and role decorators for API routes.

from functools import wraps

from flask import g, jsonify, request

from .services import permission_service, session_service
from .services.permission_service import PermissionDeniedError


def _unauthorized(message: str):
    return jsonify({"error": message, "kind": "Unauthorized"}), 401


def bearer_token() -> str | None:
    """Token from `Authorization: Bearer <token>`, or None."""
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme != "Bearer" or not token.strip():
        return None
    return token.strip()


def require_auth(f):
    """
    Resolve the bearer token to a user.

    On success sets g.current_user and g.session_context. Answers 401 for a
    missing, unknown, expired, idle or revoked token and for a deactivated
    user.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = bearer_token()
        if token is None:
            return _unauthorized("Authentication required")

        context = session_service.validate_session(token)
        if context is None:
            return _unauthorized("Invalid or expired token")

        g.current_user = context.user
        g.session_context = context
        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles):
    """
    Allow only users holding one of `roles`. Stack under @require_auth.

    403 body: {"error", "kind": "Forbidden", "required_roles", "message"}.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            user = getattr(g, "current_user", None)
            if user is None:
                return _unauthorized("Authentication required")

            try:
                permission_service.require_role(
                    user,
                    tuple(roles),
                    resource=request.path,
                    action=request.method,
                    ip_address=request.remote_addr,
                    user_agent=request.headers.get("User-Agent"),
                )
            except PermissionDeniedError as e:
                return jsonify({
                    "error": "Permission denied",
                    "kind": "Forbidden",
                    "required_roles": list(roles),
                    "message": str(e),
                }), 403

            return f(*args, **kwargs)

        return decorated_function
    return decorator
