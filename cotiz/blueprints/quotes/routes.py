"""
Quote Routes (client side)

Provides:
- list / create / view / edit quotes (draft editing only)
- items, supplier invitations, send to suppliers
- cancel / trash / restore
- proposals: list, select (approval levels), reject
- technical visits, supplier rating after delivery

Access rules:
- Client users (manager / collaborator) of the quote's client, admins.
- Supplier selection, proposal rejection and cancellation need a manager.
- Out-of-scope quotes answer 404.

IMPORTANT:
- The business rules live in cotiz.lifecycle; routes check access, commit once and
  serialize.
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user

from ...audit import log_action
from ...errors import ConflictError, NotFoundError, PermissionDenied, ValidationError
from ...extensions import db
from ...insights import refresh_supplier_rating
from ...lifecycle import (
    add_item,
    change_quote_status,
    create_quote,
    invite_suppliers,
    reject_proposal,
    remove_item,
    select_proposal,
    send_quote,
    update_quote,
    update_visit,
)
from ...models import Delivery, Quote, QuoteResponse, QuoteVisit, SupplierRating
from ...security import (
    can_view_quote,
    client_user_required,
    is_manager,
    manager_required,
    resolve_acting_client,
    scoped_quotes_query,
)
from ...utils import get_json_body, parse_optional_int

quotes_bp = Blueprint("quotes", __name__, url_prefix="/quotes")


# ============================================================
# LOADERS
# ============================================================

def _client_quote(quote_id: int) -> Quote:
    """Load a quote the current client user may see (404 otherwise)."""
    quote = db.get_or_404(Quote, quote_id, description="Cotação não encontrada.")
    if not can_view_quote(current_user, quote):
        raise NotFoundError("Cotação não encontrada.")
    return quote


def _quote_response(quote: Quote, response_id: int) -> QuoteResponse:
    response = db.session.get(QuoteResponse, response_id)
    if response is None or response.quote_id != quote.id:
        raise NotFoundError("Proposta não encontrada.")
    return response


def _detail(quote: Quote) -> dict:
    data = quote.to_dict(include_items=True)
    data["suppliers"] = [
        {
            "supplier_id": inv.supplier_id,
            "name": inv.supplier.name if inv.supplier else None,
            "supplier_type": inv.supplier.supplier_type if inv.supplier else None,
            "invited_at": inv.invited_at.isoformat() if inv.invited_at else None,
            "responded_at": inv.responded_at.isoformat() if inv.responded_at else None,
        }
        for inv in quote.invitations
    ]
    data["responses"] = [r.to_dict() for r in quote.responses]
    return data


# ============================================================
# QUOTES
# ============================================================

@quotes_bp.route("")
@client_user_required
def list_quotes():
    """Filters: status (trash hidden unless asked), client_id, q."""
    q = scoped_quotes_query()
    status = request.args.get("status")
    if status:
        q = q.filter(Quote.status.in_(status.split(",")))
    else:
        q = q.filter(Quote.status != "trash")
    client_id = parse_optional_int(request.args.get("client_id"))
    if client_id is not None:
        q = q.filter(Quote.client_id == client_id)
    term = (request.args.get("q") or "").strip()
    if term:
        q = q.filter(Quote.title.ilike(f"%{term}%") | Quote.local_code.ilike(f"%{term}%"))

    quotes = q.order_by(Quote.created_at.desc(), Quote.id.desc()).all()
    return jsonify({"items": [quote.to_dict() for quote in quotes], "total": len(quotes)})


@quotes_bp.route("", methods=["POST"])
@client_user_required
def create():
    data = get_json_body()
    client = resolve_acting_client(data.get("client_id"))
    quote = create_quote(client, current_user, data)
    db.session.commit()
    return jsonify(_detail(quote)), 201


@quotes_bp.route("/<int:quote_id>")
@client_user_required
def detail(quote_id: int):
    return jsonify(_detail(_client_quote(quote_id)))


@quotes_bp.route("/<int:quote_id>", methods=["PATCH"])
@client_user_required
def edit(quote_id: int):
    quote = update_quote(_client_quote(quote_id), get_json_body())
    db.session.commit()
    return jsonify(_detail(quote))


@quotes_bp.route("/<int:quote_id>/items", methods=["POST"])
@client_user_required
def create_item(quote_id: int):
    item = add_item(_client_quote(quote_id), get_json_body())
    db.session.commit()
    return jsonify(item.to_dict()), 201


@quotes_bp.route("/<int:quote_id>/items/<int:item_id>", methods=["DELETE"])
@client_user_required
def delete_item(quote_id: int, item_id: int):
    remove_item(_client_quote(quote_id), item_id)
    db.session.commit()
    return jsonify({"ok": True})


@quotes_bp.route("/<int:quote_id>/suppliers", methods=["POST"])
@client_user_required
def invite(quote_id: int):
    """Body: supplier_ids [int]."""
    quote = _client_quote(quote_id)
    supplier_ids = get_json_body().get("supplier_ids")
    if not isinstance(supplier_ids, list) or not supplier_ids:
        raise ValidationError("Informe os fornecedores.", payload={"fields": ["supplier_ids"]})
    created = invite_suppliers(quote, supplier_ids)
    if created:
        log_action(quote, "SUPPLIERS_INVITED", details={"supplier_ids": [link.supplier_id for link in created]})
    db.session.commit()
    return jsonify({"invited": [link.supplier_id for link in created], "quote": _detail(quote)})


@quotes_bp.route("/<int:quote_id>/send", methods=["POST"])
@client_user_required
def send(quote_id: int):
    quote = _client_quote(quote_id)
    tokens = send_quote(quote, current_user)
    db.session.commit()
    return jsonify({"quote": quote.to_dict(), "tokens_issued": len(tokens)})


@quotes_bp.route("/<int:quote_id>/status", methods=["POST"])
@client_user_required
def set_status(quote_id: int):
    """Body: status in cancelled | trash | draft (restore). Cancelling needs a manager."""
    quote = _client_quote(quote_id)
    status = get_json_body().get("status")
    if status == "cancelled" and not is_manager():
        raise PermissionDenied("Apenas gestores podem cancelar cotações.")
    change_quote_status(quote, status, current_user)
    db.session.commit()
    return jsonify(quote.to_dict())


# ============================================================
# PROPOSALS
# ============================================================

@quotes_bp.route("/<int:quote_id>/responses")
@client_user_required
def list_responses(quote_id: int):
    """Proposals ordered by grand total (cheapest first)."""
    quote = _client_quote(quote_id)
    responses = sorted(quote.responses, key=lambda r: r.grand_total)
    return jsonify({"items": [r.to_dict() for r in responses]})


@quotes_bp.route("/<int:quote_id>/responses/<int:response_id>/select", methods=["POST"])
@manager_required
def select(quote_id: int, response_id: int):
    quote = _client_quote(quote_id)
    response = _quote_response(quote, response_id)
    result = select_proposal(response, current_user)
    db.session.commit()

    payload = {
        "approval_required": result["approval_required"],
        "quote": quote.to_dict(),
        "response": response.to_dict(),
    }
    if result["approval_required"]:
        payload["approvals"] = [a.to_dict() for a in result["approvals"]]
    return jsonify(payload)


@quotes_bp.route("/<int:quote_id>/responses/<int:response_id>/reject", methods=["POST"])
@manager_required
def reject(quote_id: int, response_id: int):
    quote = _client_quote(quote_id)
    response = _quote_response(quote, response_id)
    reject_proposal(response, current_user, get_json_body().get("reason"))
    db.session.commit()
    return jsonify(response.to_dict())


# ============================================================
# VISITS
# ============================================================

@quotes_bp.route("/<int:quote_id>/visits")
@client_user_required
def list_visits(quote_id: int):
    quote = _client_quote(quote_id)
    visits = QuoteVisit.query.filter_by(quote_id=quote.id).order_by(QuoteVisit.scheduled_date.asc()).all()
    return jsonify({"items": [v.to_dict() for v in visits]})


@quotes_bp.route("/<int:quote_id>/visits/<int:visit_id>", methods=["PATCH"])
@client_user_required
def set_visit_status(quote_id: int, visit_id: int):
    """Body: status in confirmed | cancelled."""
    quote = _client_quote(quote_id)
    visit = db.session.get(QuoteVisit, visit_id)
    if visit is None or visit.quote_id != quote.id:
        raise NotFoundError("Visita não encontrada.")
    update_visit(visit, get_json_body().get("status"))
    log_action(visit, "STATUS_CHANGE", details={"to": visit.status})
    db.session.commit()
    return jsonify(visit.to_dict())


# ============================================================
# RATING
# ============================================================

def _score(data: dict, field: str, required: bool = False):
    value = parse_optional_int(data.get(field))
    if value is None:
        if required:
            raise ValidationError("Informe a nota geral.", payload={"fields": [field]})
        return None
    if not 1 <= value <= 5:
        raise ValidationError("Notas vão de 1 a 5.", payload={"fields": [field]})
    return value


@quotes_bp.route("/<int:quote_id>/rating", methods=["POST"])
@client_user_required
def rate_supplier(quote_id: int):
    """Rate the supplier of a delivered quote (once per quote)."""
    quote = _client_quote(quote_id)
    delivered = Delivery.query.filter_by(quote_id=quote.id, status="delivered").first()
    if delivered is None:
        raise ConflictError("A avaliação é liberada após a entrega.", code="not_delivered")
    if SupplierRating.query.filter_by(quote_id=quote.id, client_id=quote.client_id).first() is not None:
        raise ConflictError("Esta cotação já foi avaliada.", code="already_rated")

    data = get_json_body()
    rating = SupplierRating(
        supplier_id=delivered.supplier_id,
        client_id=quote.client_id,
        quote_id=quote.id,
        rater_id=current_user.id,
        overall_rating=_score(data, "overall_rating", required=True),
        quality_rating=_score(data, "quality_rating"),
        delivery_rating=_score(data, "delivery_rating"),
        service_rating=_score(data, "service_rating"),
        price_rating=_score(data, "price_rating"),
        comments=data.get("comments") or None,
    )
    db.session.add(rating)
    db.session.flush()

    refresh_supplier_rating(delivered.supplier)
    log_action(rating, "SUPPLIER_RATED", details={"overall": rating.overall_rating})
    db.session.commit()
    return jsonify(rating.to_dict()), 201
