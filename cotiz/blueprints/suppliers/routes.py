"""
Supplier directory (client side)

Client users see their clients' local suppliers plus every certified supplier.
Managers register local suppliers for their own client (or, for an administradora,
for one of its condominiums).
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user
from sqlalchemy import func, or_

from ...audit import log_action, serialize_model
from ...errors import ConflictError, NotFoundError, ValidationError
from ...extensions import db
from ...models import Supplier, SupplierRating
from ...security import (
    accessible_client_ids,
    client_user_required,
    manager_required,
    require_client_access,
    resolve_acting_client,
)
from ...services.cnpj import is_valid_cnpj
from ...utils import get_json_body, normalize_digits, require_fields

suppliers_bp = Blueprint("suppliers", __name__, url_prefix="/suppliers")

EDITABLE_FIELDS = ("phone", "whatsapp", "address", "city", "state")


def _visible_suppliers_query():
    ids = accessible_client_ids()
    q = Supplier.query
    if ids is None:
        return q
    return q.filter(or_(Supplier.supplier_type == "certified", Supplier.client_id.in_(ids or {0})))


def _load_visible(supplier_id: int) -> Supplier:
    supplier = _visible_suppliers_query().filter(Supplier.id == supplier_id).first()
    if supplier is None:
        raise NotFoundError("Fornecedor não encontrado.")
    return supplier


def _clean_specialties(value) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError("'specialties' deve ser uma lista.", payload={"fields": ["specialties"]})
    return sorted({str(s).strip() for s in value if str(s).strip()})


@suppliers_bp.route("")
@client_user_required
def list_suppliers():
    """Filters: q (name), specialty, state, supplier_type."""
    q = _visible_suppliers_query().filter(Supplier.status == "active")

    term = (request.args.get("q") or "").strip()
    if term:
        q = q.filter(Supplier.name.ilike(f"%{term}%"))
    if request.args.get("state"):
        q = q.filter(Supplier.state == request.args["state"].upper())
    if request.args.get("supplier_type"):
        q = q.filter(Supplier.supplier_type == request.args["supplier_type"])

    suppliers = q.order_by(Supplier.supplier_type.asc(), Supplier.name.asc()).all()

    # specialties is a JSON list; filtered here to stay portable across databases.
    specialty = (request.args.get("specialty") or "").strip().lower()
    if specialty:
        suppliers = [s for s in suppliers if any(specialty == x.lower() for x in (s.specialties or []))]

    return jsonify({"items": [s.to_dict() for s in suppliers], "total": len(suppliers)})


@suppliers_bp.route("", methods=["POST"])
@manager_required
def create_local_supplier():
    """Register a local supplier. Respects the plan's max_suppliers."""
    data = get_json_body()
    require_fields(data, ("name", "email"))
    client = resolve_acting_client(data.get("client_id"))

    cnpj = normalize_digits(data.get("cnpj")) or None
    if cnpj and not is_valid_cnpj(cnpj):
        raise ValidationError("CNPJ inválido.", payload={"fields": ["cnpj"]})
    if cnpj and Supplier.query.filter_by(cnpj=cnpj).first() is not None:
        raise ConflictError("Já existe um fornecedor com este CNPJ.", code="cnpj_in_use")

    email = str(data["email"]).strip().lower()
    existing = Supplier.query.filter(
        func.lower(Supplier.email) == email,
        or_(Supplier.client_id == client.id, Supplier.supplier_type == "certified"),
    ).first()
    if existing is not None:
        raise ConflictError("Fornecedor já cadastrado.", code="supplier_exists", payload={"supplier_id": existing.id})

    plan = client.plan
    if plan is not None and plan.max_suppliers is not None:
        count = Supplier.query.filter_by(client_id=client.id).count()
        if count >= plan.max_suppliers:
            raise ConflictError(
                f"Limite de {plan.max_suppliers} fornecedores do plano atingido.",
                code="plan_limit_reached",
            )

    supplier = Supplier(
        name=str(data["name"]).strip(),
        email=email,
        cnpj=cnpj,
        supplier_type="local",
        client_id=client.id,
        specialties=_clean_specialties(data.get("specialties")),
        status="active",
    )
    for field in EDITABLE_FIELDS:
        if data.get(field):
            setattr(supplier, field, str(data[field]).strip())
    if supplier.state:
        supplier.state = supplier.state.upper()[:2]

    db.session.add(supplier)
    db.session.flush()
    log_action(supplier, "CREATE", after=serialize_model(supplier), client_id=client.id)
    db.session.commit()
    return jsonify(supplier.to_dict()), 201


@suppliers_bp.route("/<int:supplier_id>")
@client_user_required
def get_supplier(supplier_id: int):
    supplier = _load_visible(supplier_id)
    return jsonify(supplier.to_dict())


@suppliers_bp.route("/<int:supplier_id>", methods=["PATCH"])
@manager_required
def update_local_supplier(supplier_id: int):
    """Managers edit their own local suppliers; certified ones are edited by their owners."""
    supplier = _load_visible(supplier_id)
    if supplier.is_certified and not current_user.is_admin:
        raise ValidationError("Fornecedores certificados mantêm o próprio cadastro.")
    if supplier.client_id is not None:
        require_client_access(supplier.client_id)

    data = get_json_body()
    before = serialize_model(supplier)
    if "name" in data:
        name = str(data.get("name") or "").strip()
        if not name:
            raise ValidationError("Nome é obrigatório.", payload={"fields": ["name"]})
        supplier.name = name
    if "email" in data:
        supplier.email = str(data.get("email") or "").strip().lower() or supplier.email
    for field in EDITABLE_FIELDS:
        if field in data:
            setattr(supplier, field, (str(data[field]).strip() if data.get(field) else None))
    if supplier.state:
        supplier.state = supplier.state.upper()[:2]
    if "specialties" in data:
        supplier.specialties = _clean_specialties(data.get("specialties"))
    if "status" in data:
        if data["status"] not in ("active", "inactive"):
            raise ValidationError("Status inválido.", payload={"fields": ["status"]})
        supplier.status = data["status"]

    db.session.flush()
    log_action(supplier, "UPDATE", before=before, after=serialize_model(supplier))
    db.session.commit()
    return jsonify(supplier.to_dict())


@suppliers_bp.route("/<int:supplier_id>/ratings")
@client_user_required
def supplier_ratings(supplier_id: int):
    supplier = _load_visible(supplier_id)
    ratings = (
        SupplierRating.query.filter_by(supplier_id=supplier.id)
        .order_by(SupplierRating.created_at.desc())
        .all()
    )
    return jsonify(
        {
            "supplier_id": supplier.id,
            "rating": float(supplier.rating) if supplier.rating is not None else None,
            "items": [r.to_dict() for r in ratings],
        }
    )
