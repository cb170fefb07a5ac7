"""
cotiz/billing.py

Platform billing (subscriptions/invoices), payment gateway webhook processing and the
scheduled jobs run from the CLI (flask billing run / overdue, release-escrow, contract-alerts).

IMPORTANT:
- Webhook handlers are idempotent: replays of an event already applied are no-ops.
- Job functions commit per record so one failing gateway call does not undo the batch.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from .audit import log_action
from .errors import AppError, ValidationError
from .escrow import hold_in_escrow, refund_payment
from .extensions import db
from .models import (
    Client,
    Contract,
    ContractHistory,
    Invoice,
    Payment,
    Subscription,
    SubscriptionPlan,
    Supplier,
    utcnow,
)
from .notifications import notify_client
from .services.email import defer_email, deliver_pending_emails, discard_pending_emails
from .services.payments_gateway import get_gateway
from .utils import add_months

log = logging.getLogger(__name__)

BILLING_CYCLES = ("monthly", "yearly")


# ---------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------
def plan_price(plan: SubscriptionPlan, cycle: str) -> Decimal:
    return Decimal(str(plan.yearly_price if cycle == "yearly" else plan.monthly_price))


def advance_period(start: datetime, cycle: str) -> datetime:
    return add_months(start, 12 if cycle == "yearly" else 1)


def create_subscription(
    plan: SubscriptionPlan,
    *,
    client: Client | None = None,
    supplier: Supplier | None = None,
    billing_cycle: str = "monthly",
    start: datetime | None = None,
) -> Subscription:
    if (client is None) == (supplier is None):
        raise ValidationError("Assinatura deve pertencer a um cliente ou a um fornecedor.")
    if billing_cycle not in BILLING_CYCLES:
        raise ValidationError("Ciclo de cobrança inválido.", payload={"fields": ["billing_cycle"]})

    start = start or utcnow()
    subscription = Subscription(
        plan_id=plan.id,
        client_id=client.id if client else None,
        supplier_id=supplier.id if supplier else None,
        billing_cycle=billing_cycle,
        status="active",
        current_period_start=start,
        current_period_end=advance_period(start, billing_cycle),
    )
    db.session.add(subscription)
    if client is not None:
        client.subscription_plan_id = plan.id
    db.session.flush()
    log_action(subscription, "SUBSCRIPTION_CREATED", details={"plan": plan.name, "cycle": billing_cycle})
    return subscription


def _owner(subscription: Subscription):
    return subscription.client or subscription.supplier


def _ensure_customer(gateway, owner) -> str:
    if not owner.gateway_customer_id:
        kind = "client" if isinstance(owner, Client) else "supplier"
        owner.gateway_customer_id = gateway.create_customer(
            name=owner.name,
            email=owner.email,
            cnpj=owner.cnpj,
            external_reference=f"{kind}-{owner.id}",
        )
    return owner.gateway_customer_id


def issue_invoice(subscription: Subscription, now: datetime | None = None) -> Invoice | None:
    """
    Invoice the period that starts at current_period_end and advance the subscription.

    Returns None when that period was already invoiced.
    """
    now = now or utcnow()
    period_start = subscription.current_period_end
    if Invoice.query.filter_by(subscription_id=subscription.id, period_start=period_start).first():
        return None

    period_end = advance_period(period_start, subscription.billing_cycle)
    amount = plan_price(subscription.plan, subscription.billing_cycle)
    due_days = int(current_app.config.get("INVOICE_DUE_DAYS", 30))

    invoice = Invoice(
        subscription_id=subscription.id,
        client_id=subscription.client_id,
        supplier_id=subscription.supplier_id,
        amount=amount,
        status="open",
        due_date=now + timedelta(days=due_days),
        period_start=period_start,
        period_end=period_end,
    )
    db.session.add(invoice)

    subscription.current_period_start = period_start
    subscription.current_period_end = period_end
    db.session.flush()

    owner = _owner(subscription)
    if amount > 0 and owner is not None:
        gateway = get_gateway()
        charge = gateway.create_charge(
            customer_id=_ensure_customer(gateway, owner),
            amount=amount,
            due_date=invoice.due_date.date(),
            description=f"Assinatura Cotiz - {subscription.plan.display_name}",
            external_reference=f"invoice-{invoice.id}",
        )
        invoice.external_charge_id = charge["id"]
        invoice.invoice_url = charge.get("invoice_url")
        defer_email(
            owner.email,
            "Nova fatura disponível",
            "invoice_issued",
            name=owner.name,
            invoice=invoice,
            plan=subscription.plan,
        )

    log_action(invoice, "INVOICE_ISSUED", details={"amount": str(amount)}, client_id=subscription.client_id)
    log.info(
        "Invoice issued for subscription %s",
        subscription.id,
        extra={"event": "invoice_issued", "client_id": subscription.client_id, "supplier_id": subscription.supplier_id},
    )
    return invoice


def commit_or_rollback(label: str, record_id: int) -> bool:
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        discard_pending_emails()
        log.exception("Billing job failed for %s %s", label, record_id)
        return False
    deliver_pending_emails()
    return True


def run_billing(now: datetime | None = None) -> List[Invoice]:
    """Issue invoices for every active subscription whose period ended."""
    now = now or utcnow()
    due = (
        Subscription.query.filter(
            Subscription.status == "active",
            Subscription.current_period_end <= now,
        )
        .order_by(Subscription.id.asc())
        .all()
    )
    issued = []
    for subscription in due:
        try:
            invoice = issue_invoice(subscription, now)
        except AppError as exc:
            db.session.rollback()
            discard_pending_emails()
            log.warning("Billing failed for subscription %s: %s", subscription.id, exc.details or exc.message)
            continue
        if invoice is not None and commit_or_rollback("subscription", subscription.id):
            issued.append(invoice)
    return issued


def suspend_if_overdue(invoice: Invoice, now: datetime | None = None) -> bool:
    """Suspend subscription and account when the invoice is overdue >= SUSPENSION_GRACE_DAYS."""
    now = now or utcnow()
    grace = int(current_app.config.get("SUSPENSION_GRACE_DAYS", 7))
    days_overdue = (now - invoice.due_date).days
    if days_overdue < grace:
        return False

    subscription = invoice.subscription
    if subscription is None or subscription.status == "suspended":
        return False

    subscription.status = "suspended"
    owner = _owner(subscription)
    if isinstance(owner, Client):
        owner.is_active = False
    elif isinstance(owner, Supplier):
        owner.status = "suspended"

    if owner is not None:
        defer_email(owner.email, "Conta suspensa por falta de pagamento", "account_suspended", name=owner.name, invoice=invoice)

    log_action(
        subscription,
        "SUBSCRIPTION_SUSPENDED",
        details={"reason": "payment_overdue", "days_overdue": days_overdue, "invoice_id": invoice.id},
        client_id=subscription.client_id,
    )
    log.warning(
        "Subscription %s suspended (%d days overdue)",
        subscription.id,
        days_overdue,
        extra={"event": "subscription_suspended"},
    )
    return True


def mark_overdue(now: datetime | None = None) -> Dict[str, int]:
    """Open invoices past due -> past_due; suspend accounts beyond the grace period."""
    now = now or utcnow()
    marked = suspended = 0
    candidates = Invoice.query.filter(
        Invoice.status.in_(("open", "past_due")),
        Invoice.due_date < now,
    ).all()
    for invoice in candidates:
        if invoice.status == "open":
            invoice.status = "past_due"
            marked += 1
        if suspend_if_overdue(invoice, now):
            suspended += 1
        commit_or_rollback("invoice", invoice.id)
    return {"past_due": marked, "suspended": suspended}


def mark_invoice_paid(invoice: Invoice) -> bool:
    """Invoice paid: subscription active again, client/supplier reactivated."""
    if invoice.status == "paid":
        return False
    invoice.status = "paid"
    invoice.paid_at = utcnow()
    subscription = invoice.subscription
    if subscription is not None:
        subscription.status = "active"
        owner = _owner(subscription)
        if isinstance(owner, Client):
            owner.is_active = True
        elif isinstance(owner, Supplier):
            owner.status = "active"
    log_action(invoice, "INVOICE_PAID", client_id=invoice.client_id)
    return True


def invoice_checkout_url(invoice: Invoice) -> str | None:
    """Hosted checkout URL; creates the gateway charge when the invoice has none."""
    if invoice.status == "paid":
        return None
    if not invoice.external_charge_id:
        subscription = invoice.subscription
        owner = _owner(subscription)
        gateway = get_gateway()
        charge = gateway.create_charge(
            customer_id=_ensure_customer(gateway, owner),
            amount=Decimal(str(invoice.amount)),
            due_date=max(invoice.due_date, utcnow()).date(),
            description=f"Assinatura Cotiz - {subscription.plan.display_name}",
            external_reference=f"invoice-{invoice.id}",
        )
        invoice.external_charge_id = charge["id"]
        invoice.invoice_url = charge.get("invoice_url")
        db.session.flush()
    return invoice.invoice_url


# ---------------------------------------------------------------------
# Gateway webhook
# ---------------------------------------------------------------------
def handle_gateway_event(body: Dict[str, Any]) -> Dict[str, Any]:
    """
    Apply a payment gateway webhook.

    PAYMENT_RECEIVED / PAYMENT_CONFIRMED, PAYMENT_OVERDUE, PAYMENT_REFUNDED,
    SUBSCRIPTION_UPDATED / SUBSCRIPTION_EXPIRED. Unknown references are ignored.
    """
    event = str(body.get("event") or "").upper()
    charge = body.get("payment") or {}
    charge_id = charge.get("id")
    result: Dict[str, Any] = {"event": event, "handled": False}

    if event in ("PAYMENT_RECEIVED", "PAYMENT_CONFIRMED", "PAYMENT_OVERDUE", "PAYMENT_REFUNDED") and charge_id:
        payment = Payment.query.filter_by(external_payment_id=charge_id).first()
        invoice = Invoice.query.filter_by(external_charge_id=charge_id).first()

        if payment is not None:
            result["payment_id"] = payment.id
            if event in ("PAYMENT_RECEIVED", "PAYMENT_CONFIRMED"):
                payment.payment_method = (charge.get("billingType") or payment.payment_method or "").lower() or None
                result["handled"] = hold_in_escrow(payment, source="gateway")
            elif event == "PAYMENT_REFUNDED" and payment.status in ("in_escrow", "disputed"):
                result["handled"] = refund_payment(payment, reason="gateway_refund")
            elif event == "PAYMENT_OVERDUE":
                notify_client(
                    payment.client_id,
                    "Pagamento vencido",
                    f"A cobrança do pagamento #{payment.id} venceu.",
                    type="payment",
                    details={"payment_id": payment.id},
                )
                result["handled"] = True

        if invoice is not None:
            result["invoice_id"] = invoice.id
            if event in ("PAYMENT_RECEIVED", "PAYMENT_CONFIRMED"):
                result["handled"] = mark_invoice_paid(invoice)
            elif event == "PAYMENT_OVERDUE":
                if invoice.status == "open":
                    invoice.status = "past_due"
                suspend_if_overdue(invoice)
                result["handled"] = True

    elif event in ("SUBSCRIPTION_UPDATED", "SUBSCRIPTION_EXPIRED"):
        external_id = (body.get("subscription") or {}).get("id")
        subscription = (
            Subscription.query.filter_by(external_subscription_id=external_id).first() if external_id else None
        )
        if subscription is not None:
            subscription.status = "expired" if event == "SUBSCRIPTION_EXPIRED" else "active"
            result["handled"] = True
            result["subscription_id"] = subscription.id

    db.session.flush()
    log.info(
        "Webhook %s processed (handled=%s)",
        event,
        result["handled"],
        extra={"event": "webhook_processed", "payment_id": result.get("payment_id")},
    )
    return result


# ---------------------------------------------------------------------
# Contracts job
# ---------------------------------------------------------------------
def process_contract_alerts(now: datetime | None = None) -> Dict[str, int]:
    """
    Active contracts:
    - past end_date: auto_renewal extends by the original term, otherwise 'expired';
    - inside alert_days_before: managers notified (once per day).
    """
    now = now or utcnow()
    today = now.date()
    alerted = expired = renewed = 0

    for contract in Contract.query.filter(Contract.status == "active").all():
        if contract.end_date < today:
            if contract.auto_renewal:
                term = contract.end_date - contract.start_date
                new_end = contract.end_date + term
                db.session.add(
                    ContractHistory(
                        contract_id=contract.id,
                        event_type="renewed",
                        previous_end_date=contract.end_date,
                        new_end_date=new_end,
                        previous_value=contract.value,
                        new_value=contract.value,
                        notes="Renovação automática",
                    )
                )
                contract.start_date = contract.end_date
                contract.end_date = new_end
                renewed += 1
            else:
                contract.status = "expired"
                db.session.add(
                    ContractHistory(
                        contract_id=contract.id,
                        event_type="expired",
                        previous_end_date=contract.end_date,
                        notes="Contrato expirado",
                    )
                )
                notify_client(
                    contract.client_id,
                    "Contrato expirado",
                    f"O contrato '{contract.title}' expirou em {contract.end_date:%d/%m/%Y}.",
                    managers_only=True,
                    type="contract",
                    details={"contract_id": contract.id},
                )
                expired += 1
            continue

        days_left = (contract.end_date - today).days
        already_today = contract.last_alert_at is not None and contract.last_alert_at.date() == today
        if days_left <= contract.alert_days_before and not already_today:
            notify_client(
                contract.client_id,
                "Contrato próximo do vencimento",
                f"O contrato '{contract.title}' vence em {days_left} dia(s).",
                managers_only=True,
                type="contract",
                priority="high" if days_left <= 7 else "normal",
                details={"contract_id": contract.id, "days_left": days_left},
                email={
                    "subject": f"Contrato vence em {days_left} dia(s)",
                    "template": "contract_expiring",
                    "context": {"contract": contract, "days_left": days_left},
                },
            )
            contract.last_alert_at = now
            alerted += 1

    commit_or_rollback("contracts", 0)
    return {"alerted": alerted, "expired": expired, "renewed": renewed}
