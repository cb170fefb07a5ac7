"""
Payment Routes (escrow)

Provides:
- /payments                      list (tenant scoped) / create for an approved quote
- /payments/<id>                 detail with transactions
- /payments/<id>/offline         client declares an offline transfer
- /payments/<id>/review          admin confirms / rejects the offline transfer
- /payments/<id>/dispute         client opens a dispute (in escrow)
- /payments/<id>/resolve         admin resolves a dispute (release | refund)
- /payments/<id>/cancel          cancel a pending charge
- /webhooks/payments             payment gateway callbacks (token header, CSRF exempt)

IMPORTANT:
- Money state changes live in cotiz.escrow; the webhook dispatch in cotiz.billing.
- A rejected webhook is audited and committed before the 401 is raised, since the
  error handler rolls the session back.
"""

from __future__ import annotations

import hmac
import logging

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from ...audit import log_action
from ...billing import handle_gateway_event
from ...errors import AuthRequired, NotFoundError, ValidationError
from ...escrow import (
    cancel_payment,
    create_payment,
    open_dispute,
    resolve_dispute,
    review_offline_payment,
    submit_offline_payment,
)
from ...extensions import db
from ...models import Payment, Quote
from ...security import (
    admin_required,
    can_view_quote,
    manager_required,
    require_client_access,
    scoped_payments_query,
)
from ...utils import get_json_body, parse_optional_int

log = logging.getLogger(__name__)

payments_bp = Blueprint("payments", __name__, url_prefix="/payments")
webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/webhooks")

WEBHOOK_TOKEN_HEADER = "asaas-access-token"


def _load_payment(payment_id: int) -> Payment:
    payment = scoped_payments_query().filter(Payment.id == payment_id).first()
    if payment is None:
        raise NotFoundError("Pagamento não encontrado.")
    return payment


def _client_payment(payment_id: int) -> Payment:
    """Payment the current manager may act on (supplier users never get here)."""
    payment = _load_payment(payment_id)
    require_client_access(payment.client_id)
    return payment


# ============================================================
# PAYMENTS
# ============================================================

@payments_bp.route("")
@login_required
def list_payments():
    """Filters: status, quote_id."""
    q = scoped_payments_query()
    if request.args.get("status"):
        q = q.filter(Payment.status.in_(request.args["status"].split(",")))
    quote_id = parse_optional_int(request.args.get("quote_id"))
    if quote_id is not None:
        q = q.filter(Payment.quote_id == quote_id)
    payments = q.order_by(Payment.created_at.desc()).all()
    return jsonify({"items": [p.to_dict() for p in payments], "total": len(payments)})


@payments_bp.route("", methods=["POST"])
@manager_required
def create():
    """Body: quote_id. Returns the existing live payment when there is one."""
    quote_id = parse_optional_int(get_json_body().get("quote_id"))
    if quote_id is None:
        raise ValidationError("Informe a cotação.", payload={"fields": ["quote_id"]})
    quote = db.session.get(Quote, quote_id)
    if quote is None or not can_view_quote(current_user, quote):
        raise NotFoundError("Cotação não encontrada.")

    payment, created = create_payment(quote, current_user)
    db.session.commit()
    return jsonify(payment.to_dict(include_transactions=True)), 201 if created else 200


@payments_bp.route("/<int:payment_id>")
@login_required
def detail(payment_id: int):
    return jsonify(_load_payment(payment_id).to_dict(include_transactions=True))


@payments_bp.route("/<int:payment_id>/offline", methods=["POST"])
@manager_required
def offline(payment_id: int):
    """Body: notes (transfer proof description)."""
    payment = _client_payment(payment_id)
    submit_offline_payment(payment, current_user, get_json_body().get("notes"))
    db.session.commit()
    return jsonify(payment.to_dict(include_transactions=True))


@payments_bp.route("/<int:payment_id>/review", methods=["POST"])
@admin_required
def review(payment_id: int):
    """Body: approve (bool), notes?"""
    payment = _load_payment(payment_id)
    data = get_json_body()
    if not isinstance(data.get("approve"), bool):
        raise ValidationError("Informe 'approve' (true/false).", payload={"fields": ["approve"]})
    review_offline_payment(payment, current_user, data["approve"], data.get("notes"))
    db.session.commit()
    return jsonify(payment.to_dict(include_transactions=True))


@payments_bp.route("/<int:payment_id>/dispute", methods=["POST"])
@manager_required
def dispute(payment_id: int):
    """Body: reason."""
    payment = _client_payment(payment_id)
    open_dispute(payment, current_user, get_json_body().get("reason"))
    db.session.commit()
    return jsonify(payment.to_dict(include_transactions=True))


@payments_bp.route("/<int:payment_id>/resolve", methods=["POST"])
@admin_required
def resolve(payment_id: int):
    """Body: resolution (release | refund), notes?"""
    payment = _load_payment(payment_id)
    data = get_json_body()
    resolve_dispute(payment, current_user, data.get("resolution"), data.get("notes"))
    db.session.commit()
    return jsonify(payment.to_dict(include_transactions=True))


@payments_bp.route("/<int:payment_id>/cancel", methods=["POST"])
@manager_required
def cancel(payment_id: int):
    payment = _client_payment(payment_id)
    cancel_payment(payment, current_user)
    db.session.commit()
    return jsonify(payment.to_dict(include_transactions=True))


# ============================================================
# GATEWAY WEBHOOK
# ============================================================

def _webhook_token_valid() -> bool:
    """
    Compare the gateway token header with PAYMENT_WEBHOOK_TOKEN.

    Without a configured token only mock mode accepts callbacks.
    """
    expected = current_app.config.get("PAYMENT_WEBHOOK_TOKEN")
    received = request.headers.get(WEBHOOK_TOKEN_HEADER) or ""
    if not expected:
        return current_app.config.get("PAYMENT_GATEWAY_MODE", "mock") == "mock"
    return hmac.compare_digest(received.encode(), str(expected).encode())


@webhooks_bp.route("/payments", methods=["POST"])
def payment_webhook():
    if not _webhook_token_valid():
        log_action(
            None,
            "WEBHOOK_UNAUTHORIZED_ATTEMPT",
            entity_type="Webhook",
            entity_id="payments",
            details={"ip": request.remote_addr, "has_token": bool(request.headers.get(WEBHOOK_TOKEN_HEADER))},
        )
        db.session.commit()
        log.warning("Webhook rejected: invalid token", extra={"event": "webhook_unauthorized"})
        raise AuthRequired("Token de webhook inválido.", code="invalid_webhook_token")

    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValidationError("Payload inválido.")

    result = handle_gateway_event(body)
    db.session.commit()
    return jsonify({"ok": True, **result})
