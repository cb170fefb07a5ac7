"""
Billing Routes (platform subscriptions)

Provides:
- /billing/subscription              current subscriptions of the caller's client(s) / supplier
- /billing/invoices                  invoices (status filter)
- /billing/invoices/<id>/pay         hosted checkout URL for an open invoice

Suspended accounts can still reach this blueprint, so they are able to pay.
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from ...billing import invoice_checkout_url
from ...errors import ConflictError, NotFoundError
from ...extensions import db
from ...models import Invoice, Subscription
from ...security import accessible_client_ids
from ...utils import parse_optional_int

billing_bp = Blueprint("billing", __name__, url_prefix="/billing")


def _scoped(model):
    """Admins see everything; suppliers their company; client users their clients."""
    if current_user.is_admin:
        return model.query
    if current_user.is_supplier_user:
        return model.query.filter(model.supplier_id == current_user.supplier_id)
    return model.query.filter(model.client_id.in_(accessible_client_ids() or {0}))


@billing_bp.route("/subscription")
@login_required
def subscription():
    q = _scoped(Subscription)
    if current_user.is_admin:
        client_id = parse_optional_int(request.args.get("client_id"))
        if client_id is not None:
            q = q.filter(Subscription.client_id == client_id)
    items = []
    for sub in q.order_by(Subscription.created_at.desc()).all():
        data = sub.to_dict()
        data["plan"] = sub.plan.to_dict()
        items.append(data)
    return jsonify({"items": items})


@billing_bp.route("/invoices")
@login_required
def list_invoices():
    """Filter: status (open, past_due, paid; comma separated)."""
    q = _scoped(Invoice)
    if request.args.get("status"):
        q = q.filter(Invoice.status.in_(request.args["status"].split(",")))
    invoices = q.order_by(Invoice.due_date.desc()).all()
    return jsonify({"items": [i.to_dict() for i in invoices], "total": len(invoices)})


@billing_bp.route("/invoices/<int:invoice_id>/pay", methods=["POST"])
@login_required
def pay_invoice(invoice_id: int):
    invoice = _scoped(Invoice).filter(Invoice.id == invoice_id).first()
    if invoice is None:
        raise NotFoundError("Fatura não encontrada.")
    if invoice.status == "paid":
        raise ConflictError("Esta fatura não está em aberto.", code="invoice_not_open")

    url = invoice_checkout_url(invoice)
    db.session.commit()
    return jsonify({"invoice": invoice.to_dict(), "checkout_url": url})
