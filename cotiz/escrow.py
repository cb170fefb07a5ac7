"""
cotiz/escrow.py

Escrow payments and delivery confirmation.

Money flow:
    pending -> (gateway or offline confirmation) -> in_escrow -> (delivery confirmed) -> completed

IMPORTANT:
- Functions flush but never commit; the caller owns the transaction.
- Every payment status change appends a PaymentTransaction row.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Tuple

from flask import current_app

from .audit import log_action, serialize_model
from .errors import ConflictError, NotFoundError, ValidationError
from .extensions import db
from .models import (
    Delivery,
    DeliveryConfirmation,
    Payment,
    PaymentTransaction,
    Quote,
    User,
    utcnow,
)
from .notifications import notify_admins, notify_client, notify_supplier
from .services.email import defer_email
from .services.payments_gateway import get_gateway
from .utils import numeric_code
from .workflow import transition_delivery, transition_payment, transition_quote

log = logging.getLogger(__name__)


def add_transaction(
    payment: Payment,
    type: str,
    description: str,
    *,
    amount: Decimal | None = None,
    user: User | None = None,
    details: Dict[str, Any] | None = None,
) -> PaymentTransaction:
    txn = PaymentTransaction(
        payment=payment,
        type=type,
        amount=amount,
        description=description,
        user_id=user.id if user else None,
        details=details,
    )
    db.session.add(txn)
    return txn


# ---------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------
def active_payment_for_quote(quote_id: int) -> Payment | None:
    return (
        Payment.query.filter(Payment.quote_id == quote_id, Payment.status != "cancelled")
        .order_by(Payment.id.desc())
        .first()
    )


def _client_customer_id(gateway, client) -> str:
    if not client.gateway_customer_id:
        client.gateway_customer_id = gateway.create_customer(
            name=client.name,
            email=client.email,
            cnpj=client.cnpj,
            external_reference=f"client-{client.id}",
        )
    return client.gateway_customer_id


def create_payment(quote: Quote, user: User) -> Tuple[Payment, bool]:
    """
    Create the escrow payment for an approved quote.

    Returns (payment, created). A live (non-cancelled) payment is returned as is.
    """
    existing = active_payment_for_quote(quote.id)
    if existing is not None:
        return existing, False

    if quote.status != "approved":
        raise ConflictError("Somente cotações aprovadas podem ser pagas.", code="quote_not_approved")
    response = quote.selected_response
    if response is None:
        raise ConflictError("Cotação sem proposta aprovada.", code="quote_not_approved")

    amount = response.grand_total
    gateway = get_gateway()
    customer_id = _client_customer_id(gateway, quote.client)

    payment = Payment(
        quote_id=quote.id,
        client_id=quote.client_id,
        supplier_id=response.supplier_id,
        amount=amount,
        status="pending",
    )
    db.session.add(payment)
    db.session.flush()

    charge = gateway.create_charge(
        customer_id=customer_id,
        amount=amount,
        due_date=(utcnow() + timedelta(days=3)).date(),
        description=f"Cotação {quote.local_code} - {quote.title}",
        external_reference=f"payment-{payment.id}",
    )
    payment.external_payment_id = charge["id"]
    payment.invoice_url = charge.get("invoice_url")

    add_transaction(payment, "created", "Cobrança criada", amount=amount, user=user)

    for delivery in Delivery.query.filter_by(quote_id=quote.id, payment_id=None).all():
        delivery.payment_id = payment.id

    db.session.flush()
    log_action(payment, "PAYMENT_CREATED", after=serialize_model(payment))
    log.info(
        "Payment created",
        extra={"quote_id": quote.id, "payment_id": payment.id, "event": "payment_created"},
    )
    return payment, True


def _delivery_confirmed(payment: Payment) -> bool:
    return (
        Delivery.query.filter_by(quote_id=payment.quote_id, status="delivered").first() is not None
    )


def hold_in_escrow(payment: Payment, *, source: str, user: User | None = None) -> bool:
    """
    Funds received: payment -> in_escrow (release date = now + ESCROW_RELEASE_DAYS).

    Completed right away when the delivery was already confirmed. Returns False when the
    payment is already past this point (webhook replays).
    """
    if payment.status not in ("pending", "waiting_confirmation"):
        return False

    now = utcnow()
    transition_payment(payment, "in_escrow")
    payment.paid_at = payment.paid_at or now
    payment.escrow_release_date = now + timedelta(days=int(current_app.config.get("ESCROW_RELEASE_DAYS", 10)))

    add_transaction(
        payment,
        "payment_received",
        "Pagamento recebido",
        amount=payment.amount,
        user=user,
        details={"source": source},
    )
    add_transaction(payment, "funds_held", "Valor retido em custódia", amount=payment.amount, user=user)

    notify_supplier(
        payment.supplier_id,
        "Pagamento em custódia",
        f"O pagamento de R$ {payment.amount} foi recebido e está em custódia até a confirmação da entrega.",
        type="payment",
        details={"payment_id": payment.id, "quote_id": payment.quote_id},
    )
    notify_client(
        payment.client_id,
        "Pagamento confirmado",
        f"Recebemos o pagamento de R$ {payment.amount}. O valor fica em custódia até a entrega.",
        type="payment",
        details={"payment_id": payment.id, "quote_id": payment.quote_id},
    )

    if _delivery_confirmed(payment):
        release_payment(payment, user=user, reason="delivery_already_confirmed")

    db.session.flush()
    log.info("Payment held in escrow", extra={"payment_id": payment.id, "event": "funds_held"})
    return True


def release_payment(payment: Payment, *, user: User | None = None, reason: str = "delivery_confirmed") -> Payment:
    """in_escrow/disputed -> completed; finalizes the quote."""
    transition_payment(payment, "completed")
    payment.completed_at = utcnow()
    add_transaction(
        payment,
        "funds_released",
        "Valor liberado ao fornecedor",
        amount=payment.amount,
        user=user,
        details={"reason": reason},
    )

    quote = payment.quote
    if quote is not None and quote.status == "approved":
        transition_quote(quote, "finalized")

    notify_supplier(
        payment.supplier_id,
        "Pagamento liberado",
        f"R$ {payment.amount} foram liberados para você.",
        type="payment",
        priority="high",
        details={"payment_id": payment.id, "quote_id": payment.quote_id},
    )
    db.session.flush()
    log_action(payment, "PAYMENT_RELEASED", details={"reason": reason})
    return payment


def refund_payment(payment: Payment, *, user: User | None = None, reason: str | None = None) -> bool:
    if payment.status == "refunded":
        return False
    transition_payment(payment, "refunded")
    add_transaction(
        payment,
        "refunded",
        "Valor reembolsado ao cliente",
        amount=payment.amount,
        user=user,
        details={"reason": reason} if reason else None,
    )
    notify_client(
        payment.client_id,
        "Pagamento reembolsado",
        f"O pagamento de R$ {payment.amount} foi reembolsado.",
        type="payment",
        details={"payment_id": payment.id},
    )
    db.session.flush()
    log_action(payment, "PAYMENT_REFUNDED", details={"reason": reason})
    return True


def submit_offline_payment(payment: Payment, user: User, notes: str | None) -> Payment:
    """Client declares an offline transfer: pending -> waiting_confirmation."""
    if not notes:
        raise ValidationError("Descreva o comprovante do pagamento.", payload={"fields": ["notes"]})
    transition_payment(payment, "waiting_confirmation")
    payment.payment_method = "offline"
    payment.offline_notes = notes
    add_transaction(payment, "offline_submitted", "Comprovante de pagamento enviado", user=user)
    notify_admins(
        "Pagamento offline para conferência",
        f"Pagamento #{payment.id} (R$ {payment.amount}) aguarda confirmação.",
        type="payment",
        details={"payment_id": payment.id},
    )
    db.session.flush()
    log_action(payment, "OFFLINE_PAYMENT_SUBMITTED", details={"notes": notes})
    return payment


def review_offline_payment(payment: Payment, admin: User, approve: bool, notes: str | None = None) -> Payment:
    """Admin confirms (-> in_escrow) or rejects (-> pending) an offline payment."""
    if payment.status != "waiting_confirmation":
        raise ConflictError("Pagamento não está aguardando confirmação.", code="invalid_transition")
    payment.reviewed_by_id = admin.id
    payment.reviewed_at = utcnow()
    if approve:
        hold_in_escrow(payment, source="offline", user=admin)
    else:
        transition_payment(payment, "pending")
        add_transaction(payment, "offline_rejected", "Comprovante recusado", user=admin, details={"notes": notes})
        notify_client(
            payment.client_id,
            "Comprovante recusado",
            f"O comprovante do pagamento #{payment.id} foi recusado." + (f" {notes}" if notes else ""),
            type="payment",
            details={"payment_id": payment.id},
        )
    db.session.flush()
    log_action(payment, "OFFLINE_PAYMENT_" + ("APPROVED" if approve else "REJECTED"), details={"notes": notes})
    return payment


def open_dispute(payment: Payment, user: User, reason: str | None) -> Payment:
    if not reason:
        raise ValidationError("Informe o motivo da disputa.", payload={"fields": ["reason"]})
    transition_payment(payment, "disputed")
    payment.dispute_reason = reason
    payment.auto_release_enabled = False
    add_transaction(payment, "dispute_opened", "Disputa aberta", user=user, details={"reason": reason})
    notify_admins(
        "Disputa aberta",
        f"Pagamento #{payment.id} em disputa: {reason}",
        type="payment",
        priority="high",
        details={"payment_id": payment.id},
    )
    notify_supplier(
        payment.supplier_id,
        "Pagamento em disputa",
        f"O cliente abriu uma disputa sobre o pagamento #{payment.id}.",
        type="payment",
        priority="high",
        details={"payment_id": payment.id},
    )
    db.session.flush()
    log_action(payment, "DISPUTE_OPENED", details={"reason": reason})
    return payment


def resolve_dispute(payment: Payment, admin: User, resolution: str, notes: str | None = None) -> Payment:
    if payment.status != "disputed":
        raise ConflictError("Pagamento não está em disputa.", code="invalid_transition")
    if resolution == "release":
        release_payment(payment, user=admin, reason="dispute_resolved")
    elif resolution == "refund":
        refund_payment(payment, user=admin, reason=notes or "dispute_resolved")
    else:
        raise ValidationError("Resolução deve ser 'release' ou 'refund'.", payload={"fields": ["resolution"]})
    return payment


def cancel_payment(payment: Payment, user: User) -> Payment:
    if payment.status != "pending":
        raise ConflictError("Somente pagamentos pendentes podem ser cancelados.", code="invalid_transition")
    get_gateway().cancel_charge(payment.external_payment_id)
    transition_payment(payment, "cancelled")
    add_transaction(payment, "cancelled", "Cobrança cancelada", user=user)
    db.session.flush()
    log_action(payment, "PAYMENT_CANCELLED")
    return payment


def auto_release_due_payments(now=None) -> int:
    """Release in-escrow payments past their release date whose delivery is confirmed."""
    now = now or utcnow()
    released = 0
    due = Payment.query.filter(
        Payment.status == "in_escrow",
        Payment.auto_release_enabled.is_(True),
        Payment.escrow_release_date.isnot(None),
        Payment.escrow_release_date <= now,
    ).all()
    for payment in due:
        if not _delivery_confirmed(payment):
            continue
        release_payment(payment, reason="auto_release")
        released += 1
    return released


# ---------------------------------------------------------------------
# Deliveries
# ---------------------------------------------------------------------
def _active_code_exists(code: str) -> bool:
    return (
        DeliveryConfirmation.query.filter(
            DeliveryConfirmation.confirmation_code == code,
            DeliveryConfirmation.is_used.is_(False),
            DeliveryConfirmation.expires_at > utcnow(),
        ).first()
        is not None
    )


def issue_delivery_code(delivery: Delivery) -> DeliveryConfirmation:
    """New 6-digit code, unique among active codes, valid DELIVERY_CODE_TTL_DAYS."""
    code = numeric_code(6)
    while _active_code_exists(code):
        code = numeric_code(6)
    ttl_days = int(current_app.config.get("DELIVERY_CODE_TTL_DAYS", 7))
    confirmation = DeliveryConfirmation(
        delivery=delivery,
        confirmation_code=code,
        expires_at=utcnow() + timedelta(days=ttl_days),
    )
    db.session.add(confirmation)
    db.session.flush()
    return confirmation


def active_code(delivery: Delivery) -> DeliveryConfirmation | None:
    now = utcnow()
    for confirmation in reversed(delivery.confirmations):
        if not confirmation.is_used and confirmation.expires_at > now:
            return confirmation
    return None


def find_confirmation(code: str, client_ids=None) -> DeliveryConfirmation:
    """
    Resolve a code: an active match wins; otherwise the latest match decides the error.

    client_ids (None = any) limits the lookup to deliveries the caller can see.
    """
    code = (code or "").strip()
    if not code:
        raise ValidationError("Informe o código de confirmação.", payload={"fields": ["code"]})

    q = DeliveryConfirmation.query.join(Delivery).filter(DeliveryConfirmation.confirmation_code == code)
    if client_ids is not None:
        q = q.filter(Delivery.client_id.in_(client_ids))
    matches = q.order_by(DeliveryConfirmation.id.desc()).all()

    if not matches:
        raise NotFoundError("Código não encontrado.", code="CODE_NOT_FOUND")

    now = utcnow()
    for confirmation in matches:
        if not confirmation.is_used and confirmation.expires_at > now:
            return confirmation

    latest = matches[0]
    if latest.is_used:
        raise ValidationError("Este código já foi utilizado.", code="CODE_ALREADY_USED")
    raise ValidationError("Este código expirou. Solicite um novo código.", code="CODE_EXPIRED")


def confirm_delivery(code: str, user: User, client_ids=None) -> Delivery:
    """
    Client confirms receipt with the delivery code.

    One transaction: code used, delivery delivered, payment released (when in escrow),
    supplier completed_orders + 1, quote finalized, supplier notified.
    """
    confirmation = find_confirmation(code, client_ids)
    delivery = confirmation.delivery
    if delivery.status not in ("scheduled", "in_transit"):
        raise ConflictError("Esta entrega não pode ser confirmada.", code="invalid_transition")

    now = utcnow()
    before = serialize_model(delivery)

    confirmation.is_used = True
    confirmation.confirmed_at = now
    confirmation.confirmed_by_id = user.id

    transition_delivery(delivery, "delivered")
    delivery.actual_delivery_date = now

    payment = delivery.payment or active_payment_for_quote(delivery.quote_id)
    if payment is not None and delivery.payment_id is None:
        delivery.payment_id = payment.id
    if payment is not None and payment.status == "in_escrow":
        release_payment(payment, user=user, reason="delivery_confirmed")

    supplier = delivery.supplier
    supplier.completed_orders = (supplier.completed_orders or 0) + 1

    quote = delivery.quote
    if quote.status == "approved" and payment is not None and payment.status == "completed":
        transition_quote(quote, "finalized")

    notify_supplier(
        delivery.supplier_id,
        "Entrega confirmada",
        f"O cliente confirmou o recebimento de {quote.local_code}.",
        type="delivery",
        priority="high",
        details={"delivery_id": delivery.id, "quote_id": quote.id},
        email={
            "subject": f"Entrega confirmada: {quote.title}",
            "template": "delivery_confirmed",
            "context": {"quote": quote, "delivery": delivery},
        },
    )

    db.session.flush()
    log_action(
        delivery,
        "DELIVERY_CONFIRMED",
        before=before,
        after=serialize_model(delivery),
        details={
            "payment_id": payment.id if payment else None,
            "payment_status": payment.status if payment else None,
        },
    )
    log.info(
        "Delivery confirmed",
        extra={"delivery_id": delivery.id, "quote_id": quote.id, "event": "delivery_confirmed"},
    )
    return delivery


def resend_delivery_code(delivery: Delivery, user: User) -> DeliveryConfirmation:
    """Email the active code (a new one when none is active)."""
    if delivery.status not in ("scheduled", "in_transit"):
        raise ConflictError("Esta entrega não aceita reenvio de código.", code="invalid_transition")

    confirmation = active_code(delivery) or issue_delivery_code(delivery)
    quote = delivery.quote
    context = {
        "quote": quote,
        "delivery": delivery,
        "code": confirmation.confirmation_code,
        "supplier_name": delivery.supplier.name if delivery.supplier else "",
    }
    recipients = {user.email}
    if delivery.client is not None and delivery.client.email:
        recipients.add(delivery.client.email)
    for email in sorted(recipients):
        defer_email(email, f"Código de confirmação de entrega: {quote.title}", "delivery_code", **context)

    log_action(delivery, "DELIVERY_CODE_RESENT", details={"confirmation_id": confirmation.id})
    return confirmation


def update_delivery_status(delivery: Delivery, user: User, status: str, tracking_code: str | None = None) -> Delivery:
    """Supplier side: scheduled -> in_transit (tracking code) or cancel."""
    if status not in ("in_transit", "cancelled"):
        raise ValidationError("Status de entrega inválido.", payload={"fields": ["status"]})
    old = transition_delivery(delivery, status)
    if tracking_code:
        delivery.tracking_code = tracking_code

    message = (
        f"A entrega de {delivery.quote.local_code} saiu para entrega."
        if status == "in_transit"
        else f"A entrega de {delivery.quote.local_code} foi cancelada pelo fornecedor."
    )
    notify_client(
        delivery.client_id,
        "Atualização de entrega",
        message,
        type="delivery",
        details={"delivery_id": delivery.id, "tracking_code": delivery.tracking_code},
    )
    db.session.flush()
    log_action(delivery, "STATUS_CHANGE", details={"from": old, "to": status})
    return delivery
