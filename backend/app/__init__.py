# backend/app/__init__.py
import atexit
import logging

from flask import Flask, jsonify, request

from .config import Config
from .extensions import db, migrate


def _build_cart_jobs(app: Flask, driver_factory=None):
    from .services.cart_automation import CartAutomationSession, PlaywrightDriver
    from .services.cart_jobs import CartJobQueue

    marketplace = app.config["DEFAULT_MARKETPLACE"]
    session = CartAutomationSession(
        driver_factory or PlaywrightDriver,
        timeout_seconds=app.config["AUTOMATION_TIMEOUT_SECONDS"],
        confirmation_mode=app.config["CART_CONFIRMATION_MODE"],
        headless=app.config["AUTOMATION_HEADLESS"],
        base_url=f"https://{marketplace}",
        page_settle_ms=app.config["AUTOMATION_PAGE_SETTLE_MS"],
        cart_settle_ms=app.config["AUTOMATION_CART_SETTLE_MS"],
        logger=app.logger,
    )
    return CartJobQueue(
        app,
        session,
        mode=app.config["AUTOMATION_WORKER_MODE"],
        result_timeout=app.config["AUTOMATION_RESULT_TIMEOUT_SECONDS"],
        enabled=app.config["AUTOMATION_ENABLED"],
    )


def create_app(config_overrides: dict | None = None, *, driver_factory=None) -> Flask:
    """
    Application factory.

    config_overrides are applied before extensions are initialised, so tests
    can point SQLALCHEMY_DATABASE_URI at an in-memory database.
    driver_factory replaces the Playwright browser driver (tests use a fake).
    """
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    app.logger.setLevel(getattr(logging, str(app.config["LOG_LEVEL"]).upper(), logging.INFO))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # A bad ENCRYPTION_KEY fails start-up, not the first automation run
    from .services.credential_vault import CredentialVault
    app.extensions["credential_vault"] = CredentialVault.from_config(app.config["ENCRYPTION_KEY"])

    queue = _build_cart_jobs(app, driver_factory)
    app.extensions["cart_jobs"] = queue
    atexit.register(queue.shutdown)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.auth import auth_bp
    from .routes.purchase_requests import purchase_requests_bp
    from .routes.requests import requests_bp
    from .routes.approvals import approvals_bp
    from .routes.admin import admin_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(purchase_requests_bp)
    app.register_blueprint(requests_bp)
    app.register_blueprint(approvals_bp)
    app.register_blueprint(admin_bp)

    from .validation import WorkflowError
    from werkzeug.exceptions import HTTPException

    @app.errorhandler(WorkflowError)
    def handle_workflow_error(e):
        db.session.rollback()
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(Exception)
    def handle_unexpected_error(e):
        if isinstance(e, HTTPException):
            return jsonify({"error": e.description, "kind": e.name}), e.code
        db.session.rollback()
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"error": "Internal server error"}), 500

    cors_origins = set(app.config["CORS_ORIGINS"])

    @app.after_request
    def add_cors_headers(response):
        """Echo the Origin back for the configured browser front-ends only."""
        origin = request.headers.get("Origin")
        if origin and origin in cors_origins:
            response.headers.update({
                "Access-Control-Allow-Origin": origin,
                "Access-Control-Allow-Headers": "Authorization, Content-Type",
                "Access-Control-Allow-Methods": "GET, POST, PUT, PATCH, DELETE, OPTIONS",
                "Vary": "Origin",
            })
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
