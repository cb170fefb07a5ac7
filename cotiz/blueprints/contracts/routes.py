"""
Contract Routes

Contract tracking per client: create (manual or from an approved quote), update,
renew, cancel, list with an 'expiring_within' filter. Every change writes a
ContractHistory row in the same transaction.

Expiry alerts and automatic renewal run from the CLI (flask contract-alerts).
"""

from __future__ import annotations

from datetime import timedelta

from flask import Blueprint, jsonify, request
from flask_login import current_user

from ...audit import log_action, serialize_model
from ...errors import ConflictError, NotFoundError, ValidationError
from ...extensions import db
from ...lifecycle import supplier_visible_to_client
from ...models import Contract, ContractHistory, Quote, Supplier, utcnow
from ...security import (
    accessible_client_ids,
    client_user_required,
    manager_required,
    require_client_access,
    resolve_acting_client,
)
from ...utils import get_json_body, parse_date, parse_decimal, parse_optional_int, require_fields

contracts_bp = Blueprint("contracts", __name__, url_prefix="/contracts")

CONTRACT_TYPES = ("service", "supply", "maintenance", "other")


def _scoped_query():
    ids = accessible_client_ids()
    if ids is None:
        return Contract.query
    return Contract.query.filter(Contract.client_id.in_(ids or {0}))


def _load_contract(contract_id: int) -> Contract:
    contract = _scoped_query().filter(Contract.id == contract_id).first()
    if contract is None:
        raise NotFoundError("Contrato não encontrado.")
    return contract


def _history(contract: Contract, event_type: str, **fields) -> ContractHistory:
    entry = ContractHistory(contract_id=contract.id, event_type=event_type, user_id=current_user.id, **fields)
    db.session.add(entry)
    return entry


def _value(raw, field: str = "value"):
    value = parse_decimal(raw)
    if value is None or value < 0:
        raise ValidationError("Valor inválido.", payload={"fields": [field]})
    return value


@contracts_bp.route("")
@client_user_required
def list_contracts():
    """Filters: status, supplier_id, expiring_within (days, active contracts only)."""
    q = _scoped_query()
    if request.args.get("status"):
        q = q.filter(Contract.status == request.args["status"])
    supplier_id = parse_optional_int(request.args.get("supplier_id"))
    if supplier_id is not None:
        q = q.filter(Contract.supplier_id == supplier_id)
    within = parse_optional_int(request.args.get("expiring_within"))
    if within is not None:
        today = utcnow().date()
        q = q.filter(
            Contract.status == "active",
            Contract.end_date >= today,
            Contract.end_date <= today + timedelta(days=within),
        )
    contracts = q.order_by(Contract.end_date.asc()).all()
    return jsonify({"items": [c.to_dict() for c in contracts], "total": len(contracts)})


@contracts_bp.route("", methods=["POST"])
@manager_required
def create_contract():
    """
    Body: title, start_date, end_date, value?, supplier_id?, quote_id?, contract_type?,
          description?, auto_renewal?, alert_days_before?, client_id?

    With quote_id the supplier and value default to the quote's approved proposal.
    """
    data = get_json_body()
    require_fields(data, ("title", "start_date", "end_date"))

    quote = None
    quote_id = parse_optional_int(data.get("quote_id"))
    if quote_id is not None:
        quote = db.session.get(Quote, quote_id)
        if quote is None:
            raise NotFoundError("Cotação não encontrada.")
        require_client_access(quote.client_id)
        if quote.status not in ("approved", "finalized"):
            raise ConflictError("Somente cotações aprovadas geram contratos.", code="quote_not_approved")
        client = quote.client
    else:
        client = resolve_acting_client(data.get("client_id"))

    supplier_id = parse_optional_int(data.get("supplier_id")) or (quote.supplier_id if quote else None)
    if supplier_id is not None:
        supplier = db.session.get(Supplier, supplier_id)
        if supplier is None or not supplier_visible_to_client(supplier, client.id):
            raise ValidationError("Fornecedor não disponível para este cliente.", payload={"fields": ["supplier_id"]})

    start = parse_date(data.get("start_date"), "start_date")
    end = parse_date(data.get("end_date"), "end_date")
    if end <= start:
        raise ValidationError("A data final deve ser posterior à inicial.", payload={"fields": ["end_date"]})

    contract_type = data.get("contract_type") or "service"
    if contract_type not in CONTRACT_TYPES:
        raise ValidationError("Tipo de contrato inválido.", payload={"fields": ["contract_type"]})

    if data.get("value") is not None:
        value = _value(data["value"])
    else:
        value = quote.total if quote is not None and quote.total is not None else 0

    contract = Contract(
        client_id=client.id,
        supplier_id=supplier_id,
        quote_id=quote.id if quote else None,
        title=str(data["title"]).strip(),
        description=data.get("description") or None,
        contract_type=contract_type,
        value=value,
        start_date=start,
        end_date=end,
        status="active",
        auto_renewal=bool(data.get("auto_renewal", False)),
        alert_days_before=parse_optional_int(data.get("alert_days_before")) or 30,
        created_by_id=current_user.id,
    )
    db.session.add(contract)
    db.session.flush()
    _history(contract, "created", new_end_date=end, new_value=contract.value)
    log_action(contract, "CREATE", after=serialize_model(contract))
    db.session.commit()
    return jsonify(contract.to_dict(include_history=True)), 201


@contracts_bp.route("/<int:contract_id>")
@client_user_required
def detail(contract_id: int):
    return jsonify(_load_contract(contract_id).to_dict(include_history=True))


@contracts_bp.route("/<int:contract_id>", methods=["PATCH"])
@manager_required
def update_contract(contract_id: int):
    """Descriptive fields and alert settings. Dates and value change through renew."""
    contract = _load_contract(contract_id)
    if contract.status != "active":
        raise ConflictError("Somente contratos ativos podem ser alterados.", code="contract_not_active")
    data = get_json_body()
    before = serialize_model(contract)

    if "title" in data:
        title = str(data.get("title") or "").strip()
        if not title:
            raise ValidationError("Título é obrigatório.", payload={"fields": ["title"]})
        contract.title = title
    if "description" in data:
        contract.description = data.get("description") or None
    if "auto_renewal" in data:
        contract.auto_renewal = bool(data["auto_renewal"])
    if "alert_days_before" in data:
        days = parse_optional_int(data.get("alert_days_before"))
        if days is None or days < 0:
            raise ValidationError("Antecedência inválida.", payload={"fields": ["alert_days_before"]})
        contract.alert_days_before = days

    _history(contract, "updated")
    db.session.flush()
    log_action(contract, "UPDATE", before=before, after=serialize_model(contract))
    db.session.commit()
    return jsonify(contract.to_dict(include_history=True))


@contracts_bp.route("/<int:contract_id>/renew", methods=["POST"])
@manager_required
def renew(contract_id: int):
    """Body: new_end_date, new_value?, notes?  Expired contracts may be renewed too."""
    contract = _load_contract(contract_id)
    if contract.status == "cancelled":
        raise ConflictError("Contratos cancelados não podem ser renovados.", code="contract_cancelled")

    data = get_json_body()
    require_fields(data, ("new_end_date",))
    new_end = parse_date(data["new_end_date"], "new_end_date")
    if new_end <= contract.end_date:
        raise ValidationError("A nova data deve ser posterior ao vencimento atual.", payload={"fields": ["new_end_date"]})
    new_value = _value(data["new_value"], "new_value") if data.get("new_value") is not None else contract.value

    _history(
        contract,
        "renewed",
        previous_end_date=contract.end_date,
        new_end_date=new_end,
        previous_value=contract.value,
        new_value=new_value,
        notes=data.get("notes") or None,
    )
    contract.end_date = new_end
    contract.value = new_value
    contract.status = "active"
    contract.last_alert_at = None
    db.session.flush()
    log_action(contract, "CONTRACT_RENEWED", details={"new_end_date": new_end.isoformat()})
    db.session.commit()
    return jsonify(contract.to_dict(include_history=True))


@contracts_bp.route("/<int:contract_id>/cancel", methods=["POST"])
@manager_required
def cancel(contract_id: int):
    """Body: reason?"""
    contract = _load_contract(contract_id)
    if contract.status == "cancelled":
        return jsonify(contract.to_dict(include_history=True))

    reason = get_json_body().get("reason")
    contract.status = "cancelled"
    _history(contract, "cancelled", previous_end_date=contract.end_date, notes=reason or None)
    db.session.flush()
    log_action(contract, "CONTRACT_CANCELLED", details={"reason": reason})
    db.session.commit()
    return jsonify(contract.to_dict(include_history=True))
