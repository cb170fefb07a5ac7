"""
cotiz/__init__.py

Flask application factory for the Cotiz procurement marketplace.

Requirements:
- JSON API only; every error leaves as {"error", "message", "request_id"}.
- PostgreSQL-ready (SQLAlchemy + migrations) but SQLite is used for dev.
- UI is never trusted; server-side access control and tenant scoping are enforced.
"""

from __future__ import annotations

import logging

import click
from flask import Flask, jsonify, g
from flask_wtf.csrf import CSRFError
from werkzeug.exceptions import HTTPException
from werkzeug.utils import import_string

from .errors import AppError, AuthRequired
from .extensions import csrf, db, login_manager, migrate
from .logging_config import ensure_request_id, setup_logging
from .models import User
from .security import suspended_account_guard
from .services.email import deliver_pending_emails, discard_pending_emails

log = logging.getLogger(__name__)


def _load_config(app: Flask, config_object) -> None:
    obj = import_string(config_object) if isinstance(config_object, str) else config_object
    if isinstance(obj, type):
        obj = obj()
    app.config.from_object(obj)


def create_app(config_object="config.Config") -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)
    _load_config(app, config_object)
    app.json.ensure_ascii = False

    setup_logging(app)

    # Extensions
    db.init_app(app)
    migrate.init_app(app, db)
    csrf.init_app(app)
    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id: str) -> User | None:
        """Load user for Flask-Login (inactive users are treated as logged out)."""
        if not user_id.isdigit():
            return None
        user = db.session.get(User, int(user_id))
        if user is None or not user.is_active:
            return None
        return user

    @login_manager.unauthorized_handler
    def unauthorized():
        raise AuthRequired()

    # ----------------------------------------------------------------------
    # Request lifecycle
    # ----------------------------------------------------------------------
    @app.before_request
    def _request_hooks():
        """Request id first, then the suspended-account guard (POST/PUT/PATCH/DELETE)."""
        ensure_request_id()
        suspended_account_guard()

    @app.after_request
    def _after_request(response):
        if response.status_code < 400:
            deliver_pending_emails()
        else:
            discard_pending_emails()
        rid = getattr(g, "request_id", None)
        if rid:
            response.headers["X-Request-Id"] = rid
        return response

    # ----------------------------------------------------------------------
    # Errors
    # ----------------------------------------------------------------------
    def _error_response(payload: dict, status: int):
        db.session.rollback()
        discard_pending_emails()
        return jsonify(payload), status

    @app.errorhandler(AppError)
    def _handle_app_error(exc: AppError):
        rid = ensure_request_id()
        level = logging.ERROR if exc.critical else logging.INFO
        log.log(
            level,
            "%s: %s",
            exc.code,
            exc.details or exc.message,
            extra={"error_code": exc.code, "http_status": exc.http_status},
        )
        return _error_response(exc.to_response_payload(rid), exc.http_status)

    @app.errorhandler(CSRFError)
    def _handle_csrf_error(exc: CSRFError):
        rid = ensure_request_id()
        return _error_response(
            {"error": "csrf_error", "message": "Token CSRF ausente ou inválido.", "request_id": rid},
            400,
        )

    @app.errorhandler(HTTPException)
    def _handle_http_error(exc: HTTPException):
        rid = ensure_request_id()
        code = (exc.name or "http_error").lower().replace(" ", "_")
        return _error_response(
            {"error": code, "message": exc.description, "request_id": rid},
            exc.code or 500,
        )

    @app.errorhandler(Exception)
    def _handle_unexpected(exc: Exception):
        rid = ensure_request_id()
        log.exception("Unhandled error", extra={"error_code": "system_error", "http_status": 500})
        return _error_response(
            {"error": "system_error", "message": AppError.default_message, "request_id": rid},
            500,
        )

    # ----------------------------------------------------------------------
    # Blueprints
    # ----------------------------------------------------------------------
    from .blueprints.auth import auth_bp
    from .blueprints.admin import admin_bp
    from .blueprints.suppliers import suppliers_bp
    from .blueprints.quotes import quotes_bp
    from .blueprints.supplier_portal import supplier_portal_bp
    from .blueprints.public import public_bp
    from .blueprints.approvals import approvals_bp
    from .blueprints.payments import payments_bp, webhooks_bp
    from .blueprints.deliveries import deliveries_bp
    from .blueprints.communication import communication_bp
    from .blueprints.contracts import contracts_bp
    from .blueprints.dashboard import dashboard_bp
    from .blueprints.billing import billing_bp

    # Token-authenticated endpoints have no session to protect.
    csrf.exempt(public_bp)
    csrf.exempt(webhooks_bp)

    for bp in (
        auth_bp,
        admin_bp,
        suppliers_bp,
        quotes_bp,
        supplier_portal_bp,
        public_bp,
        approvals_bp,
        payments_bp,
        webhooks_bp,
        deliveries_bp,
        communication_bp,
        contracts_bp,
        dashboard_bp,
        billing_bp,
    ):
        app.register_blueprint(bp)

    # ----------------------------------------------------------------------
    # CLI
    # ----------------------------------------------------------------------
    register_cli(app)

    @app.route("/")
    def index():
        return jsonify({"app": app.config.get("APP_NAME", "Cotiz"), "status": "ok"})

    @app.route("/health")
    def health():
        db.session.execute(db.text("SELECT 1"))
        return jsonify({"status": "ok"})

    return app


def register_cli(app: Flask) -> None:
    @app.cli.command("init-db")
    def init_db_command():
        """Create all tables (development; use flask db upgrade in production)."""
        db.create_all()
        click.echo("Database tables created.")

    @app.cli.command("seed-plans")
    def seed_plans_command():
        """Seed default subscription plans."""
        from .seed import seed_default_plans

        created = seed_default_plans()
        click.echo(f"Subscription plans seeded ({created} created).")

    @app.cli.command("create-admin")
    @click.option("--email", required=True)
    @click.option("--password", required=True, prompt=True, hide_input=True)
    @click.option("--name", "full_name", default="Administrador")
    def create_admin_command(email: str, password: str, full_name: str):
        """Bootstrap the first platform admin."""
        from .seed import bootstrap_admin

        user = bootstrap_admin(email, password, full_name)
        click.echo(f"Admin ready: {user.email}")

    @app.cli.group("billing")
    def billing_group():
        """Platform billing jobs."""

    @billing_group.command("run")
    def billing_run_command():
        """Issue invoices for subscriptions whose period ended."""
        from .billing import run_billing

        invoices = run_billing()
        click.echo(f"{len(invoices)} invoice(s) issued.")

    @billing_group.command("overdue")
    def billing_overdue_command():
        """Mark overdue invoices and suspend accounts past the grace period."""
        from .billing import mark_overdue

        result = mark_overdue()
        click.echo(f"{result['past_due']} invoice(s) past due, {result['suspended']} account(s) suspended.")

    @app.cli.command("release-escrow")
    def release_escrow_command():
        """Release in-escrow payments past their release date with confirmed delivery."""
        from .escrow import auto_release_due_payments

        released = auto_release_due_payments()
        db.session.commit()
        deliver_pending_emails()
        click.echo(f"{released} payment(s) released.")

    @app.cli.command("contract-alerts")
    def contract_alerts_command():
        """Notify expiring contracts; expire or auto-renew past ones."""
        from .billing import process_contract_alerts

        result = process_contract_alerts()
        click.echo(
            f"{result['alerted']} alert(s), {result['expired']} expired, {result['renewed']} renewed."
        )

    @app.cli.group("remind")
    def remind_group():
        """Reminder jobs."""

    @remind_group.command("quotes")
    def remind_quotes_command():
        """Remind invited suppliers that have not sent a proposal."""
        from .reminders import send_quote_reminders

        result = send_quote_reminders()
        click.echo(f"{result['reminded']} reminder(s) sent for {result['quotes']} open quote(s).")

    @remind_group.command("overdue")
    def remind_overdue_command():
        """Remind overdue invoices and pending escrow payments."""
        from .reminders import send_overdue_reminders

        result = send_overdue_reminders()
        click.echo(f"{result['invoices']} invoice reminder(s), {result['payments']} payment reminder(s).")
