"""
cotiz/reminders.py

Scheduled reminder jobs (flask remind quotes | overdue).

- Quotes: invited suppliers that have not answered QUOTE_REMINDER_AFTER_HOURS after
  the quote was sent get at most QUOTE_REMINDER_MAX reminders, spaced by
  QUOTE_REMINDER_INTERVAL_HOURS, with their access link.
- Invoices: open/past_due invoices are reminded on the OVERDUE_REMINDER_SCHEDULE
  days after due_date (each step once), until OVERDUE_REMINDER_STOP_AFTER_DAYS.
- Escrow payments still pending PAYMENT_REMINDER_AFTER_DAYS after creation are
  reminded to the client managers, once a day.

Jobs commit per record, like the billing jobs.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict

from flask import current_app

from .audit import log_action
from .billing import commit_or_rollback
from .extensions import db
from .lifecycle import issue_quote_token, quote_response_link
from .models import Client, Invoice, Payment, Quote, QuoteSupplier, QuoteToken, Supplier, utcnow
from .notifications import notify_client, notify_supplier
from .services.email import defer_email
from .utils import money

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# Quotes without an answer
# ---------------------------------------------------------------------
def _active_token(quote: Quote, supplier: Supplier, now: datetime) -> QuoteToken:
    token = (
        QuoteToken.query.filter(
            QuoteToken.quote_id == quote.id,
            QuoteToken.supplier_id == supplier.id,
            QuoteToken.expires_at > now,
        )
        .order_by(QuoteToken.id.desc())
        .first()
    )
    if token is None:
        token = issue_quote_token(quote, supplier)
        db.session.flush()
    return token


def send_quote_reminders(now: datetime | None = None) -> Dict[str, int]:
    now = now or utcnow()
    after = timedelta(hours=int(current_app.config.get("QUOTE_REMINDER_AFTER_HOURS", 48)))
    interval = timedelta(hours=int(current_app.config.get("QUOTE_REMINDER_INTERVAL_HOURS", 24)))
    max_reminders = int(current_app.config.get("QUOTE_REMINDER_MAX", 2))

    quotes = (
        Quote.query.filter(
            Quote.status.in_(("sent", "receiving")),
            Quote.sent_at.isnot(None),
            Quote.sent_at <= now - after,
        )
        .order_by(Quote.id.asc())
        .all()
    )

    reminded = 0
    for quote in quotes:
        if quote.deadline is not None and quote.deadline < now.date():
            continue
        sent_now = 0
        for link in QuoteSupplier.query.filter_by(quote_id=quote.id, responded_at=None).order_by(QuoteSupplier.id).all():
            supplier = link.supplier
            if supplier is None or supplier.status != "active":
                continue
            if link.reminder_count >= max_reminders:
                continue
            if link.last_reminder_at is not None and link.last_reminder_at > now - interval:
                continue

            token = _active_token(quote, supplier, now)
            link.reminder_count += 1
            link.last_reminder_at = now
            client_name = quote.client.name if quote.client else ""
            defer_email(
                supplier.email,
                f"Lembrete: cotação {quote.title}",
                "quote_reminder",
                supplier_name=supplier.name,
                client_name=client_name,
                quote=quote,
                link=quote_response_link(token),
                short_code=token.short_code,
                reminder_number=link.reminder_count,
            )
            notify_supplier(
                supplier.id,
                "Cotação aguardando sua proposta",
                f"{client_name} ainda aguarda sua proposta para {quote.local_code}: {quote.title}.",
                type="quote",
                action_url=f"/supplier/quotes/{quote.id}",
                details={"quote_id": quote.id, "reminder": link.reminder_count},
            )
            sent_now += 1

        if sent_now:
            log_action(quote, "QUOTE_REMINDERS_SENT", details={"suppliers": sent_now})
            if commit_or_rollback("quote", quote.id):
                reminded += sent_now
    log.info("Quote reminders sent: %d", reminded, extra={"event": "quote_reminders"})
    return {"quotes": len(quotes), "reminded": reminded}


# ---------------------------------------------------------------------
# Overdue invoices and pending payments
# ---------------------------------------------------------------------
def _invoice_owner(invoice: Invoice):
    if invoice.client_id:
        return db.session.get(Client, invoice.client_id)
    if invoice.supplier_id:
        return db.session.get(Supplier, invoice.supplier_id)
    return None


def late_fee(amount: Decimal) -> Decimal:
    """Flat late fee (LATE_FEE_PERCENT of the invoice amount)."""
    percent = Decimal(str(current_app.config.get("LATE_FEE_PERCENT", "2.0")))
    return money(Decimal(str(amount)) * percent / Decimal("100"))


def remind_overdue_invoices(now: datetime | None = None) -> int:
    now = now or utcnow()
    schedule = sorted(int(d) for d in current_app.config.get("OVERDUE_REMINDER_SCHEDULE", (1, 3, 7, 15, 30)))
    stop_after = int(current_app.config.get("OVERDUE_REMINDER_STOP_AFTER_DAYS", 45))

    sent = 0
    candidates = Invoice.query.filter(
        Invoice.status.in_(("open", "past_due")),
        Invoice.due_date < now,
    ).order_by(Invoice.due_date.asc())
    for invoice in candidates.all():
        days_overdue = (now - invoice.due_date).days
        if days_overdue > stop_after:
            continue
        reached = [day for day in schedule if day <= days_overdue]
        # Missed runs collapse into the latest step reached.
        if not reached or reached[-1] <= (invoice.last_reminder_day or 0):
            continue
        owner = _invoice_owner(invoice)
        if owner is None:
            continue

        fee = late_fee(invoice.amount)
        invoice.last_reminder_day = reached[-1]
        defer_email(
            owner.email,
            f"Fatura em atraso há {days_overdue} dia(s)",
            "invoice_overdue",
            name=owner.name,
            invoice=invoice,
            days_overdue=days_overdue,
            late_fee=fee,
            total_with_fee=money(Decimal(str(invoice.amount)) + fee),
        )
        notify = notify_client if isinstance(owner, Client) else notify_supplier
        notify(
            owner.id,
            "Fatura em atraso",
            f"Sua fatura de R$ {invoice.amount} venceu há {days_overdue} dia(s).",
            type="billing",
            priority="high",
            action_url="/billing/invoices",
            details={"invoice_id": invoice.id, "days_overdue": days_overdue},
        )
        log_action(
            invoice,
            "OVERDUE_REMINDER_SENT",
            details={"days_overdue": days_overdue, "step": reached[-1]},
            client_id=invoice.client_id,
        )
        if commit_or_rollback("invoice", invoice.id):
            sent += 1
    return sent


def remind_pending_payments(now: datetime | None = None) -> int:
    now = now or utcnow()
    after = timedelta(days=int(current_app.config.get("PAYMENT_REMINDER_AFTER_DAYS", 3)))

    sent = 0
    pending = Payment.query.filter(
        Payment.status == "pending",
        Payment.created_at <= now - after,
    ).order_by(Payment.id.asc())
    for payment in pending.all():
        if payment.last_reminder_at is not None and payment.last_reminder_at > now - timedelta(days=1):
            continue
        quote = payment.quote
        payment.last_reminder_at = now
        notify_client(
            payment.client_id,
            "Pagamento pendente",
            f"O pagamento de R$ {payment.amount} da cotação {quote.local_code if quote else ''} ainda não foi realizado.",
            managers_only=True,
            type="payment",
            priority="high",
            action_url=f"/payments/{payment.id}",
            details={"payment_id": payment.id, "quote_id": payment.quote_id},
            email={
                "subject": "Pagamento pendente",
                "template": "payment_pending",
                "context": {"payment": payment, "quote": quote},
            },
        )
        log_action(payment, "PAYMENT_REMINDER_SENT", client_id=payment.client_id)
        if commit_or_rollback("payment", payment.id):
            sent += 1
    return sent


def send_overdue_reminders(now: datetime | None = None) -> Dict[str, int]:
    now = now or utcnow()
    result = {"invoices": remind_overdue_invoices(now), "payments": remind_pending_payments(now)}
    log.info(
        "Overdue reminders: %d invoice(s), %d payment(s)",
        result["invoices"],
        result["payments"],
        extra={"event": "overdue_reminders"},
    )
    return result
