# backend/app/routes/system.py
"""
Health and version endpoints.

/health aggregates three checks. The database and the session table are
required; the cart worker is optional, so a disabled worker only degrades
the service.
"""

import sys
import time

from flask import Blueprint, current_app

from ..extensions import db
from ..models import PurchaseRequest, User
from ..services import session_service
from app.time_utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__)


def _timed(name: str, probe) -> dict:
    """Run probe() and wrap its details with status and latency."""
    started = time.perf_counter()
    try:
        details = probe()
        result = {"status": "healthy", "details": details}
    except Exception:
        current_app.logger.exception("%s health check failed", name)
        result = {"status": "unhealthy", "error": f"{name} error"}
    result["latency_ms"] = round((time.perf_counter() - started) * 1000, 2)
    return result


def _database_counts() -> dict:
    return {
        "users": db.session.query(User).count(),
        "purchase_requests": db.session.query(PurchaseRequest).count(),
    }


def check_cart_worker() -> dict:
    queue = current_app.extensions.get("cart_jobs")
    if queue is None:
        return {"status": "degraded", "warning": "Cart job queue not configured"}

    status = queue.status()
    if not status["enabled"]:
        return {"status": "degraded", "warning": "Cart automation disabled", "details": status}
    return {"status": "healthy", "details": status}


@system_bp.get("/health")
@system_bp.get("/api/v1/health")
def health():
    """200 when healthy or degraded, 503 when a required check fails."""
    started = time.perf_counter()
    checks = {
        "database": _timed("Database", _database_counts),
        "session_service": _timed("Session service", session_service.session_counts),
        "cart_worker": check_cart_worker(),
    }

    statuses = {check["status"] for check in checks.values()}
    if "unhealthy" in statuses:
        overall, http_status = "unhealthy", 503
    elif "degraded" in statuses:
        overall, http_status = "degraded", 200
    else:
        overall, http_status = "healthy", 200

    return {
        "status": overall,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round((time.perf_counter() - started) * 1000, 2),
        "checks": checks,
    }, http_status


@system_bp.get("/version")
def version():
    """Deployment info. Never exposes keys or paths."""
    return {
        "api_version": current_app.config.get("API_VERSION", "1.0.0"),
        "environment": "development" if current_app.debug else "production",
        "python_version": sys.version.split()[0],
        "server_time": to_utc_z(utcnow()),
    }
