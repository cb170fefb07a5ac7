"""
Delivery Routes

Provides:
- /deliveries                        list (tenant scoped)
- /deliveries/<id>                   detail
- /deliveries/confirm                client confirms receipt with the 6-digit code
- /deliveries/<id>/resend-code       client asks for the code again
- /deliveries/<id>/status            supplier: in_transit (tracking code) / cancelled

IMPORTANT:
- Confirmation releases the escrow and finalizes the quote in the same transaction
  (cotiz.escrow.confirm_delivery); any failure rolls everything back.
- Codes are looked up only among deliveries the caller can see.
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from ...errors import NotFoundError
from ...escrow import confirm_delivery, resend_delivery_code, update_delivery_status
from ...extensions import db
from ...models import Delivery
from ...security import (
    accessible_client_ids,
    client_user_required,
    scoped_deliveries_query,
    supplier_required,
)
from ...utils import get_json_body

deliveries_bp = Blueprint("deliveries", __name__, url_prefix="/deliveries")


def _load_delivery(delivery_id: int) -> Delivery:
    delivery = scoped_deliveries_query().filter(Delivery.id == delivery_id).first()
    if delivery is None:
        raise NotFoundError("Entrega não encontrada.")
    return delivery


@deliveries_bp.route("")
@login_required
def list_deliveries():
    """Filter: status."""
    q = scoped_deliveries_query()
    if request.args.get("status"):
        q = q.filter(Delivery.status.in_(request.args["status"].split(",")))
    deliveries = q.order_by(Delivery.scheduled_date.asc()).all()
    return jsonify({"items": [d.to_dict() for d in deliveries], "total": len(deliveries)})


@deliveries_bp.route("/<int:delivery_id>")
@login_required
def detail(delivery_id: int):
    delivery = _load_delivery(delivery_id)
    data = delivery.to_dict()
    data["quote"] = delivery.quote.to_dict()
    return jsonify(data)


@deliveries_bp.route("/confirm", methods=["POST"])
@client_user_required
def confirm():
    """Body: code."""
    code = str(get_json_body().get("code") or "")
    delivery = confirm_delivery(code, current_user, client_ids=accessible_client_ids())
    db.session.commit()

    payment = delivery.payment
    return jsonify(
        {
            "delivery": delivery.to_dict(),
            "payment": payment.to_dict() if payment else None,
            "quote": delivery.quote.to_dict(),
        }
    )


@deliveries_bp.route("/<int:delivery_id>/resend-code", methods=["POST"])
@client_user_required
def resend_code(delivery_id: int):
    delivery = _load_delivery(delivery_id)
    confirmation = resend_delivery_code(delivery, current_user)
    db.session.commit()
    return jsonify({"sent": True, "expires_at": confirmation.expires_at.isoformat()})


@deliveries_bp.route("/<int:delivery_id>/status", methods=["POST"])
@supplier_required
def set_status(delivery_id: int):
    """Body: status (in_transit | cancelled), tracking_code?"""
    delivery = _load_delivery(delivery_id)
    data = get_json_body()
    update_delivery_status(delivery, current_user, data.get("status"), data.get("tracking_code"))
    db.session.commit()
    return jsonify(delivery.to_dict())
