"""
bidtab/__init__.py

Flask application factory for the Bid Tabulation & Award service.

Requirements:
- Production mindset: clear architecture, stable imports, server-side access control.
- PostgreSQL-ready (SQLAlchemy + migrations, row locks) but SQLite is used for dev/tests.
- JSON API only: every error leaves as {"error": {...}}.

API surface (all under /api/v1 except auth):
- /auth                              login / logout / csrf-token
- /api/v1/rfps/<id>/tabulation       comparison, leveling, CSV export
- /api/v1/rfps/<id>/...              publish, items, bids
- /api/v1/bids/<id>/...              submit, withdraw
- /api/v1/awards                     award transaction, award list
- /api/v1/projects/<id>/budget       budget summary
"""

from __future__ import annotations

import logging

import click
from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from .errors import BiddingError
from .extensions import csrf, db, login_manager, migrate
from .models import Role, User
from .notifications import init_notifications
from .security import readonly_guard

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(app: Flask) -> None:
    """Route the package loggers through one handler with the app's LOG_LEVEL."""
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)

    package_logger = logging.getLogger("bidtab")
    package_logger.setLevel(level)
    if not package_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        package_logger.addHandler(handler)

    app.logger.setLevel(level)


def _is_api_request() -> bool:
    path = request.path or ""
    return path.startswith("/api/") or path.startswith("/auth/")


def create_app(config_object: str | object = "config.Config") -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.from_object(config_object)

    configure_logging(app)

    # Extensions
    db.init_app(app)
    migrate.init_app(app, db)
    csrf.init_app(app)
    init_notifications(app)

    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id: str) -> User | None:
        """Load user for Flask-Login."""
        try:
            user = db.session.get(User, int(user_id))
        except (TypeError, ValueError):
            return None
        if user is None or not user.is_active:
            return None
        return user

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"error": {"code": "UNAUTHORIZED", "message": "Authentication required", "retryable": False}}), 401

    # ----------------------------------------------------------------------
    # GLOBAL SECURITY NET: read-only guard (server-side).
    # ----------------------------------------------------------------------
    @app.before_request
    def _readonly_guard_hook():
        """
        VIEWER / CONTRACTOR read-only enforcement (POST/PUT/PATCH/DELETE blocked).

        This is a safety net. Each route must still enforce its own permissions.
        """
        result = readonly_guard()
        if result is not None:
            return result
        return None

    # ----------------------------------------------------------------------
    # Errors -> JSON
    # ----------------------------------------------------------------------
    @app.errorhandler(BiddingError)
    def _bidding_error(exc: BiddingError):
        if exc.status_code >= 500:
            app.logger.warning("%s on %s %s: %s", exc.code, request.method, request.path, exc.message)
        return jsonify({"error": exc.to_dict()}), exc.status_code

    @app.errorhandler(HTTPException)
    def _http_error(exc: HTTPException):
        if not _is_api_request():
            return exc
        code = (exc.name or "HTTP_ERROR").upper().replace(" ", "_")
        return jsonify({"error": {"code": code, "message": exc.description, "retryable": False}}), exc.code

    # ----------------------------------------------------------------------
    # Blueprints
    # ----------------------------------------------------------------------
    from .blueprints.auth import auth_bp
    from .blueprints.awards import awards_bp
    from .blueprints.bids import bids_bp
    from .blueprints.budget import budget_bp
    from .blueprints.rfps import rfps_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(rfps_bp)
    app.register_blueprint(bids_bp)
    app.register_blueprint(awards_bp)
    app.register_blueprint(budget_bp)

    # ----------------------------------------------------------------------
    # CLI
    # ----------------------------------------------------------------------
    @app.cli.command("seed-demo")
    def seed_demo_command():
        """Seed a demo project, vendors, RFP and budget items."""
        from .seed import seed_demo

        summary = seed_demo()
        click.echo(f"Demo data seeded: {summary}")

    @app.cli.command("create-user")
    @click.argument("username")
    @click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True)
    @click.option("--role", type=click.Choice(Role.ALL, case_sensitive=False), default=Role.ADMIN)
    @click.option("--vendor-id", type=int, default=None, help="Vendor a CONTRACTOR acts for.")
    def create_user_command(username: str, password: str, role: str, vendor_id: int | None):
        """Create a login user."""
        from .seed import create_user

        try:
            user = create_user(username, password, role=role.upper(), vendor_id=vendor_id)
        except BiddingError as exc:
            raise click.ClickException(exc.message) from exc
        click.echo(f"User {user.username} ({user.role}) created.")

    # ----------------------------------------------------------------------
    # Home
    # ----------------------------------------------------------------------
    @app.route("/")
    def index():
        """Service banner."""
        return jsonify({"name": app.config.get("APP_NAME"), "api": "/api/v1"})

    app.logger.debug("Application created with %s", config_object)
    return app
