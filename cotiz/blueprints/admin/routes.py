"""
cotiz/blueprints/admin/routes.py

Admin Routes – Platform Administration Module

Includes:
- Clients (condominiums / administradoras / companies) with their first manager
- Users (any role, bound to a client or supplier)
- Subscription plans and subscriptions
- Supplier certification and suspension
- Audit log listing
- AI lead scoring

NOTES:
- UI is never trusted. All validations happen server-side.
- Audit must be recorded in the same transaction as the data change.
  Pattern: db.session.flush() -> log_action(...) -> db.session.commit()
"""

from __future__ import annotations

from typing import Optional

from flask import Blueprint, jsonify, request
from flask_login import current_user

from ...accounts import create_user, normalize_email
from ...audit import log_action, serialize_model
from ...billing import BILLING_CYCLES, create_subscription
from ...errors import ConflictError, ValidationError
from ...extensions import db
from ...models import AuditLog, Client, Supplier, SubscriptionPlan, User
from ...notifications import notify_supplier
from ...security import admin_required
from ...services import ai
from ...services.cnpj import is_valid_cnpj
from ...utils import get_json_body, normalize_digits, parse_decimal, parse_optional_int, require_fields

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")

CLIENT_TYPES = ("condominium", "administradora", "company", "direct")
SUPPLIER_STATUSES = ("active", "suspended", "inactive", "pending")


# -------------------------------------------------------
# HELPERS
# -------------------------------------------------------
def _page_args(default_limit: int = 50):
    limit = parse_optional_int(request.args.get("limit")) or default_limit
    offset = parse_optional_int(request.args.get("offset")) or 0
    return max(1, min(limit, 200)), max(0, offset)


def _clean_cnpj(value) -> Optional[str]:
    """Digits-only CNPJ or None. Raises on a malformed one."""
    digits = normalize_digits(value)
    if not digits:
        return None
    if not is_valid_cnpj(digits):
        raise ValidationError("CNPJ inválido.", payload={"fields": ["cnpj"]})
    return digits


def _resolve_plan(value) -> Optional[SubscriptionPlan]:
    if value in (None, ""):
        return None
    plan_id = parse_optional_int(value)
    plan = (
        db.session.get(SubscriptionPlan, plan_id)
        if plan_id is not None
        else SubscriptionPlan.query.filter_by(name=str(value)).first()
    )
    if plan is None:
        raise ValidationError("Plano não encontrado.", payload={"fields": ["plan"]})
    return plan


def _resolve_parent(value, client_type: str) -> Optional[int]:
    """
    parent_client_id must point to an administradora.

    SECURITY:
    - Prevents forging a parent that would widen another tenant's scope.
    """
    parent_id = parse_optional_int(value)
    if parent_id is None:
        return None
    parent = db.session.get(Client, parent_id)
    if parent is None or parent.client_type != "administradora":
        raise ValidationError("A administradora informada não existe.", payload={"fields": ["parent_client_id"]})
    if client_type == "administradora":
        raise ValidationError("Uma administradora não pode ter administradora.")
    return parent.id


# -------------------------------------------------------
# CLIENTS
# -------------------------------------------------------
@admin_bp.route("/clients")
@admin_required
def list_clients():
    """List clients (filters: q, client_type, is_active)."""
    q = Client.query
    term = (request.args.get("q") or "").strip()
    if term:
        q = q.filter(Client.name.ilike(f"%{term}%"))
    if request.args.get("client_type"):
        q = q.filter(Client.client_type == request.args["client_type"])
    if request.args.get("is_active") in ("true", "false"):
        q = q.filter(Client.is_active.is_(request.args["is_active"] == "true"))

    limit, offset = _page_args()
    total = q.count()
    clients = q.order_by(Client.name.asc()).offset(offset).limit(limit).all()
    return jsonify({"items": [c.to_dict() for c in clients], "total": total})


@admin_bp.route("/clients", methods=["POST"])
@admin_required
def create_client():
    """
    Create a client and, when 'manager' is given, its first manager user.

    Body: name, email, cnpj?, phone?, address?, client_type, parent_client_id?,
          plan? (id or name), billing_cycle?, manager? {email, full_name, password?}
    """
    data = get_json_body()
    require_fields(data, ("name", "email"))

    client_type = data.get("client_type") or "condominium"
    if client_type not in CLIENT_TYPES:
        raise ValidationError("Tipo de cliente inválido.", payload={"fields": ["client_type"]})

    cnpj = _clean_cnpj(data.get("cnpj"))
    if cnpj and Client.query.filter_by(cnpj=cnpj).first() is not None:
        raise ConflictError("Já existe um cliente com este CNPJ.", code="cnpj_in_use")

    client = Client(
        name=str(data["name"]).strip(),
        email=normalize_email(data["email"]),
        cnpj=cnpj,
        phone=data.get("phone") or None,
        whatsapp=data.get("whatsapp") or None,
        address=data.get("address") or None,
        client_type=client_type,
        parent_client_id=_resolve_parent(data.get("parent_client_id"), client_type),
        is_active=True,
    )
    db.session.add(client)
    db.session.flush()
    log_action(client, "CREATE", after=serialize_model(client))

    plan = _resolve_plan(data.get("plan"))
    if plan is not None:
        create_subscription(plan, client=client, billing_cycle=data.get("billing_cycle") or "monthly")

    manager = None
    if isinstance(data.get("manager"), dict):
        m = data["manager"]
        manager, _ = create_user(
            email=m.get("email"),
            full_name=m.get("full_name") or client.name,
            role="manager",
            client=client,
            password=m.get("password") or None,
        )

    db.session.commit()
    payload = client.to_dict()
    if manager is not None:
        payload["manager"] = manager.to_dict()
    return jsonify(payload), 201


@admin_bp.route("/clients/<int:client_id>", methods=["PATCH"])
@admin_required
def update_client(client_id: int):
    client = db.get_or_404(Client, client_id, description="Cliente não encontrado.")
    data = get_json_body()
    before = serialize_model(client)

    if "name" in data:
        name = str(data.get("name") or "").strip()
        if not name:
            raise ValidationError("Nome é obrigatório.", payload={"fields": ["name"]})
        client.name = name
    if "email" in data:
        client.email = normalize_email(data["email"])
    for field in ("phone", "whatsapp", "address"):
        if field in data:
            setattr(client, field, data.get(field) or None)
    if "cnpj" in data:
        cnpj = _clean_cnpj(data.get("cnpj"))
        other = Client.query.filter(Client.cnpj == cnpj, Client.id != client.id).first() if cnpj else None
        if other is not None:
            raise ConflictError("Já existe um cliente com este CNPJ.", code="cnpj_in_use")
        client.cnpj = cnpj
    if "client_type" in data:
        if data["client_type"] not in CLIENT_TYPES:
            raise ValidationError("Tipo de cliente inválido.", payload={"fields": ["client_type"]})
        client.client_type = data["client_type"]
    if "parent_client_id" in data:
        parent_id = _resolve_parent(data.get("parent_client_id"), client.client_type)
        if parent_id == client.id:
            raise ValidationError("Um cliente não pode ser administradora de si mesmo.")
        client.parent_client_id = parent_id
    if "subscription_plan_id" in data:
        plan = _resolve_plan(data.get("subscription_plan_id"))
        client.subscription_plan_id = plan.id if plan else None
    if "is_active" in data:
        client.is_active = bool(data["is_active"])

    db.session.flush()
    log_action(client, "UPDATE", before=before, after=serialize_model(client))
    db.session.commit()
    return jsonify(client.to_dict())


# -------------------------------------------------------
# USERS
# -------------------------------------------------------
@admin_bp.route("/users")
@admin_required
def list_users():
    q = User.query
    if request.args.get("role"):
        q = q.filter(User.role == request.args["role"])
    client_id = parse_optional_int(request.args.get("client_id"))
    if client_id is not None:
        q = q.filter(User.client_id == client_id)
    supplier_id = parse_optional_int(request.args.get("supplier_id"))
    if supplier_id is not None:
        q = q.filter(User.supplier_id == supplier_id)

    limit, offset = _page_args()
    total = q.count()
    users = q.order_by(User.full_name.asc()).offset(offset).limit(limit).all()
    return jsonify({"items": [u.to_dict() for u in users], "total": total})


@admin_bp.route("/users", methods=["POST"])
@admin_required
def create_user_route():
    data = get_json_body()
    require_fields(data, ("email", "full_name", "role"))

    client = supplier = None
    client_id = parse_optional_int(data.get("client_id"))
    supplier_id = parse_optional_int(data.get("supplier_id"))
    if client_id is not None:
        client = db.get_or_404(Client, client_id, description="Cliente não encontrado.")
    if supplier_id is not None:
        supplier = db.get_or_404(Supplier, supplier_id, description="Fornecedor não encontrado.")

    user, temporary = create_user(
        email=data["email"],
        full_name=data["full_name"],
        role=data["role"],
        client=client,
        supplier=supplier,
        password=data.get("password") or None,
    )
    db.session.commit()
    payload = user.to_dict()
    payload["temporary_password_sent"] = temporary is not None
    return jsonify(payload), 201


@admin_bp.route("/users/<int:user_id>", methods=["PATCH"])
@admin_required
def update_user(user_id: int):
    """Update name / role / active flag. Admins cannot deactivate or demote themselves."""
    user = db.get_or_404(User, user_id, description="Usuário não encontrado.")
    data = get_json_body()
    before = serialize_model(user)

    if user.id == current_user.id and (data.get("is_active") is False or data.get("role", "admin") != "admin"):
        raise ValidationError("Você não pode desativar ou rebaixar o próprio usuário.")

    if "full_name" in data:
        name = str(data.get("full_name") or "").strip()
        if not name:
            raise ValidationError("Nome é obrigatório.", payload={"fields": ["full_name"]})
        user.full_name = name
    if "role" in data:
        role = data["role"]
        if role in ("manager", "collaborator") and user.client_id is None:
            raise ValidationError("Perfil exige um cliente vinculado.", payload={"fields": ["role"]})
        if role == "supplier" and user.supplier_id is None:
            raise ValidationError("Perfil exige um fornecedor vinculado.", payload={"fields": ["role"]})
        if role == "admin" and (user.client_id or user.supplier_id):
            raise ValidationError("Administradores não pertencem a um cliente ou fornecedor.")
        if role not in ("admin", "manager", "collaborator", "supplier"):
            raise ValidationError("Perfil inválido.", payload={"fields": ["role"]})
        user.role = role
    if "is_active" in data:
        user.is_active = bool(data["is_active"])
    if data.get("password"):
        if len(str(data["password"])) < 8:
            raise ValidationError("A senha deve ter ao menos 8 caracteres.", payload={"fields": ["password"]})
        user.set_password(str(data["password"]))
        user.force_password_change = True

    db.session.flush()
    log_action(user, "UPDATE", before=before, after=serialize_model(user))
    db.session.commit()
    return jsonify(user.to_dict())


# -------------------------------------------------------
# PLANS & SUBSCRIPTIONS
# -------------------------------------------------------
def _apply_plan_fields(plan: SubscriptionPlan, data: dict) -> None:
    if "display_name" in data:
        plan.display_name = str(data.get("display_name") or "").strip() or plan.name
    if "audience" in data:
        if data["audience"] not in ("client", "supplier"):
            raise ValidationError("Público do plano inválido.", payload={"fields": ["audience"]})
        plan.audience = data["audience"]
    for field in ("monthly_price", "yearly_price"):
        if field in data:
            price = parse_decimal(data.get(field))
            if price is None or price < 0:
                raise ValidationError("Preço inválido.", payload={"fields": [field]})
            setattr(plan, field, price)
    for field in ("max_quotes", "max_suppliers", "max_users"):
        if field in data:
            setattr(plan, field, parse_optional_int(data.get(field)))
    if "is_active" in data:
        plan.is_active = bool(data["is_active"])


@admin_bp.route("/plans")
@admin_required
def list_plans():
    plans = SubscriptionPlan.query.order_by(SubscriptionPlan.audience, SubscriptionPlan.monthly_price).all()
    return jsonify({"items": [p.to_dict() for p in plans]})


@admin_bp.route("/plans", methods=["POST"])
@admin_required
def create_plan():
    data = get_json_body()
    require_fields(data, ("name", "monthly_price"))
    name = str(data["name"]).strip().lower()
    if SubscriptionPlan.query.filter_by(name=name).first() is not None:
        raise ConflictError("Já existe um plano com este nome.", code="plan_exists")

    plan = SubscriptionPlan(name=name, display_name=name)
    data.setdefault("yearly_price", data["monthly_price"])
    _apply_plan_fields(plan, data)
    db.session.add(plan)
    db.session.flush()
    log_action(plan, "CREATE", after=serialize_model(plan))
    db.session.commit()
    return jsonify(plan.to_dict()), 201


@admin_bp.route("/plans/<int:plan_id>", methods=["PATCH"])
@admin_required
def update_plan(plan_id: int):
    plan = db.get_or_404(SubscriptionPlan, plan_id, description="Plano não encontrado.")
    before = serialize_model(plan)
    _apply_plan_fields(plan, get_json_body())
    db.session.flush()
    log_action(plan, "UPDATE", before=before, after=serialize_model(plan))
    db.session.commit()
    return jsonify(plan.to_dict())


@admin_bp.route("/subscriptions", methods=["POST"])
@admin_required
def create_subscription_route():
    """Body: plan (id or name), client_id | supplier_id, billing_cycle."""
    data = get_json_body()
    plan = _resolve_plan(data.get("plan"))
    if plan is None:
        raise ValidationError("Informe o plano.", payload={"fields": ["plan"]})
    cycle = data.get("billing_cycle") or "monthly"
    if cycle not in BILLING_CYCLES:
        raise ValidationError("Ciclo de cobrança inválido.", payload={"fields": ["billing_cycle"]})

    client = supplier = None
    if parse_optional_int(data.get("client_id")) is not None:
        client = db.get_or_404(Client, int(data["client_id"]), description="Cliente não encontrado.")
    if parse_optional_int(data.get("supplier_id")) is not None:
        supplier = db.get_or_404(Supplier, int(data["supplier_id"]), description="Fornecedor não encontrado.")

    subscription = create_subscription(plan, client=client, supplier=supplier, billing_cycle=cycle)
    db.session.commit()
    return jsonify(subscription.to_dict()), 201


# -------------------------------------------------------
# SUPPLIERS (certification / status)
# -------------------------------------------------------
@admin_bp.route("/suppliers")
@admin_required
def list_suppliers():
    q = Supplier.query
    if request.args.get("supplier_type"):
        q = q.filter(Supplier.supplier_type == request.args["supplier_type"])
    if request.args.get("status"):
        q = q.filter(Supplier.status == request.args["status"])
    term = (request.args.get("q") or "").strip()
    if term:
        q = q.filter(Supplier.name.ilike(f"%{term}%"))

    limit, offset = _page_args()
    total = q.count()
    suppliers = q.order_by(Supplier.name.asc()).offset(offset).limit(limit).all()
    return jsonify({"items": [s.to_dict() for s in suppliers], "total": total})


@admin_bp.route("/suppliers/<int:supplier_id>/certify", methods=["POST"])
@admin_required
def certify_supplier(supplier_id: int):
    """
    Promote a supplier to 'certified' (visible to every client).

    A certified supplier must carry a valid CNPJ.
    """
    supplier = db.get_or_404(Supplier, supplier_id, description="Fornecedor não encontrado.")
    if not is_valid_cnpj(supplier.cnpj):
        raise ValidationError("Fornecedor sem CNPJ válido não pode ser certificado.", payload={"fields": ["cnpj"]})
    if supplier.is_certified:
        return jsonify(supplier.to_dict())

    before = serialize_model(supplier)
    supplier.supplier_type = "certified"
    supplier.client_id = None
    if supplier.status == "pending":
        supplier.status = "active"
    notify_supplier(
        supplier.id,
        "Fornecedor certificado",
        "Sua empresa agora é certificada e está visível para todos os clientes da Cotiz.",
        type="system",
    )
    db.session.flush()
    log_action(supplier, "SUPPLIER_CERTIFIED", before=before, after=serialize_model(supplier))
    db.session.commit()
    return jsonify(supplier.to_dict())


@admin_bp.route("/suppliers/<int:supplier_id>/status", methods=["POST"])
@admin_required
def set_supplier_status(supplier_id: int):
    supplier = db.get_or_404(Supplier, supplier_id, description="Fornecedor não encontrado.")
    data = get_json_body()
    status = data.get("status")
    if status not in SUPPLIER_STATUSES:
        raise ValidationError("Status de fornecedor inválido.", payload={"fields": ["status"]})

    old = supplier.status
    supplier.status = status
    db.session.flush()
    log_action(supplier, "STATUS_CHANGE", details={"from": old, "to": status, "reason": data.get("reason")})
    db.session.commit()
    return jsonify(supplier.to_dict())


# -------------------------------------------------------
# AUDIT LOG
# -------------------------------------------------------
@admin_bp.route("/audit-logs")
@admin_required
def list_audit_logs():
    """Audit entries, newest first (filters: entity_type, entity_id, action, client_id, user_id)."""
    q = AuditLog.query
    for arg, column in (
        ("entity_type", AuditLog.entity_type),
        ("entity_id", AuditLog.entity_id),
        ("action", AuditLog.action),
    ):
        if request.args.get(arg):
            q = q.filter(column == request.args[arg])
    for arg, column in (("client_id", AuditLog.client_id), ("user_id", AuditLog.user_id)):
        value = parse_optional_int(request.args.get(arg))
        if value is not None:
            q = q.filter(column == value)

    limit, offset = _page_args(100)
    total = q.count()
    entries = q.order_by(AuditLog.id.desc()).offset(offset).limit(limit).all()
    return jsonify({"items": [e.to_dict() for e in entries], "total": total})


# -------------------------------------------------------
# LEAD SCORING
# -------------------------------------------------------
@admin_bp.route("/leads/score", methods=["POST"])
@admin_required
def score_leads():
    """Body: leads [ {company_name, units or estimated_employees, segment, state, city, email, phone} ], segment?, region?"""
    data = get_json_body()
    leads = data.get("leads")
    if not isinstance(leads, list) or not leads:
        raise ValidationError("Informe ao menos um lead.", payload={"fields": ["leads"]})
    if not all(isinstance(lead, dict) for lead in leads):
        raise ValidationError("Leads inválidos.", payload={"fields": ["leads"]})

    ranked = ai.score_leads(leads, segment=data.get("segment"), region=data.get("region"))
    return jsonify({"items": ranked, "ai": ai.ai_configured()})
