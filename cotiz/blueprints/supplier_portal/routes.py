"""
Supplier portal

Provides:
- quotes the supplier was invited to (or answered)
- submit / update a proposal, optionally pre-filled from a PDF (AI extraction)
- accept an approved proposal and schedule the delivery
- own profile

Rules:
- Supplier users only; every lookup is scoped by current_user.supplier_id.
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user

from ...audit import log_action, serialize_model
from ...errors import NotFoundError, ValidationError
from ...extensions import db
from ...lifecycle import accept_proposal, submit_proposal
from ...models import Quote, QuoteResponse, QuoteToken, QuoteVisit, utcnow
from ...security import quote_access_required, scoped_quotes_query, supplier_required
from ...services import ai
from ...utils import get_json_body, parse_datetime

supplier_portal_bp = Blueprint("supplier_portal", __name__, url_prefix="/supplier")

PROFILE_FIELDS = ("phone", "whatsapp", "address", "city", "state")


def _load_quote(quote_id: int, **_) -> Quote:
    return db.get_or_404(Quote, quote_id, description="Cotação não encontrada.")


def _own_response(quote_id: int) -> QuoteResponse | None:
    return QuoteResponse.query.filter_by(quote_id=quote_id, supplier_id=current_user.supplier_id).first()


def _supplier_view(quote: Quote) -> dict:
    """Quote as a supplier sees it: items, own proposal and visits, never competitors."""
    data = quote.to_dict(include_items=True)
    data.pop("invited_suppliers", None)
    data.pop("responses_count", None)
    data["client_name"] = quote.client.name if quote.client else None
    response = _own_response(quote.id)
    data["my_response"] = response.to_dict() if response else None
    data["visits"] = [
        v.to_dict()
        for v in QuoteVisit.query.filter_by(quote_id=quote.id, supplier_id=current_user.supplier_id).all()
    ]
    return data


# ============================================================
# QUOTES
# ============================================================

@supplier_portal_bp.route("/quotes")
@supplier_required
def my_quotes():
    """Filter: status."""
    q = scoped_quotes_query()
    if request.args.get("status"):
        q = q.filter(Quote.status.in_(request.args["status"].split(",")))
    quotes = q.order_by(Quote.created_at.desc()).all()

    responses = {
        r.quote_id: r
        for r in QuoteResponse.query.filter(
            QuoteResponse.supplier_id == current_user.supplier_id,
            QuoteResponse.quote_id.in_([quote.id for quote in quotes] or [0]),
        ).all()
    }
    items = []
    for quote in quotes:
        row = quote.to_dict()
        row.pop("invited_suppliers", None)
        row.pop("responses_count", None)
        response = responses.get(quote.id)
        row["my_response_status"] = response.status if response else None
        items.append(row)
    return jsonify({"items": items, "total": len(items)})


@supplier_portal_bp.route("/quotes/<int:quote_id>")
@supplier_required
@quote_access_required(_load_quote)
def quote_detail(quote_id: int):
    return jsonify(_supplier_view(_load_quote(quote_id)))


@supplier_portal_bp.route("/quotes/<int:quote_id>/proposal", methods=["POST"])
@supplier_required
@quote_access_required(_load_quote)
def send_proposal(quote_id: int):
    quote = _load_quote(quote_id)
    response = submit_proposal(quote, current_user.supplier, get_json_body(), via="portal", user=current_user)
    QuoteToken.query.filter_by(quote_id=quote.id, supplier_id=current_user.supplier_id, used_at=None).update(
        {"used_at": utcnow()}, synchronize_session=False
    )
    db.session.commit()
    return jsonify(response.to_dict()), 201


@supplier_portal_bp.route("/quotes/<int:quote_id>/extract-proposal", methods=["POST"])
@supplier_required
@quote_access_required(_load_quote)
def extract_proposal(quote_id: int):
    """
    Multipart upload 'file' (PDF). Returns the extracted proposal for review;
    nothing is saved until the supplier submits it.
    """
    upload = request.files.get("file")
    if upload is None or not upload.filename:
        raise ValidationError("Envie o PDF da proposta.", payload={"fields": ["file"]})
    if not upload.filename.lower().endswith(".pdf"):
        raise ValidationError("Apenas arquivos PDF são aceitos.", payload={"fields": ["file"]})

    extracted = ai.extract_proposal_from_pdf(upload.read(), file_name=upload.filename)
    return jsonify({"quote_id": quote_id, "proposal": extracted})


# ============================================================
# ACCEPTANCE
# ============================================================

@supplier_portal_bp.route("/responses/<int:response_id>/accept", methods=["POST"])
@supplier_required
def accept(response_id: int):
    """Body: scheduled_date (ISO), delivery_address?, notes?"""
    response = db.session.get(QuoteResponse, response_id)
    if response is None or response.supplier_id != current_user.supplier_id:
        raise NotFoundError("Proposta não encontrada.")

    data = get_json_body()
    delivery = accept_proposal(
        response,
        current_user,
        parse_datetime(data.get("scheduled_date"), "scheduled_date"),
        delivery_address=data.get("delivery_address"),
        notes=data.get("notes"),
    )
    db.session.commit()
    return jsonify({"response": response.to_dict(), "delivery": delivery.to_dict()})


# ============================================================
# PROFILE
# ============================================================

@supplier_portal_bp.route("/profile")
@supplier_required
def profile():
    return jsonify(current_user.supplier.to_dict())


@supplier_portal_bp.route("/profile", methods=["PATCH"])
@supplier_required
def update_profile():
    """Contact data and specialties. Name, CNPJ and certification are admin-managed."""
    supplier = current_user.supplier
    data = get_json_body()
    before = serialize_model(supplier)

    for field in PROFILE_FIELDS:
        if field in data:
            setattr(supplier, field, str(data[field]).strip() if data.get(field) else None)
    if supplier.state:
        supplier.state = supplier.state.upper()[:2]
    if "specialties" in data:
        if not isinstance(data["specialties"], list):
            raise ValidationError("'specialties' deve ser uma lista.", payload={"fields": ["specialties"]})
        supplier.specialties = sorted({str(s).strip() for s in data["specialties"] if str(s).strip()})

    db.session.flush()
    log_action(supplier, "UPDATE", before=before, after=serialize_model(supplier))
    db.session.commit()
    return jsonify(supplier.to_dict())
