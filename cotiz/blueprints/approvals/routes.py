"""
Approval Routes

Provides:
- /approvals                       approvals assigned to the current user (admins: all)
- /approvals/<id>/decision         approve / reject
- /approvals/levels                approval levels per client (amount thresholds)

Rules:
- Only the listed approver (or an admin) decides.
- Levels are managed by client managers; approvers must be active users of that client.
"""

from __future__ import annotations

from decimal import Decimal

from flask import Blueprint, jsonify, request
from flask_login import current_user

from ...audit import log_action, serialize_model
from ...errors import ConflictError, NotFoundError, ValidationError
from ...extensions import db
from ...lifecycle import decide_approval
from ...models import Approval, ApprovalLevel, Quote, User
from ...security import (
    accessible_client_ids,
    client_user_required,
    manager_required,
    require_client_access,
    resolve_acting_client,
)
from ...utils import get_json_body, parse_decimal, parse_optional_int, require_fields

approvals_bp = Blueprint("approvals", __name__, url_prefix="/approvals")


# ============================================================
# APPROVALS
# ============================================================

@approvals_bp.route("")
@client_user_required
def list_approvals():
    """Filter: status (default pending). Non-admins only see their own."""
    q = Approval.query.join(Quote, Quote.id == Approval.quote_id)
    if not current_user.is_admin:
        q = q.filter(Approval.approver_id == current_user.id)
    status = request.args.get("status") or "pending"
    if status != "all":
        q = q.filter(Approval.status == status)

    items = []
    for approval in q.order_by(Approval.created_at.desc()).all():
        row = approval.to_dict()
        row["quote"] = approval.quote.to_dict()
        row["response"] = approval.response.to_dict() if approval.response else None
        items.append(row)
    return jsonify({"items": items, "total": len(items)})


@approvals_bp.route("/<int:approval_id>/decision", methods=["POST"])
@client_user_required
def decide(approval_id: int):
    """Body: decision (approve | reject), comments?"""
    approval = db.session.get(Approval, approval_id)
    if approval is None:
        raise NotFoundError("Aprovação não encontrada.")
    require_client_access(approval.quote.client_id)

    data = get_json_body()
    decide_approval(approval, current_user, data.get("decision"), data.get("comments"))
    db.session.commit()
    return jsonify({"approval": approval.to_dict(), "quote": approval.quote.to_dict()})


# ============================================================
# APPROVAL LEVELS
# ============================================================

def _load_level(level_id: int) -> ApprovalLevel:
    level = db.session.get(ApprovalLevel, level_id)
    if level is None:
        raise NotFoundError("Nível de aprovação não encontrado.")
    require_client_access(level.client_id)
    return level


def _clean_approvers(raw, client_id: int) -> list:
    """
    Approver ids must be active client users of the level's client.

    SECURITY:
    - Prevents forging an approver from another tenant.
    """
    if not isinstance(raw, list) or not raw:
        raise ValidationError("Informe ao menos um aprovador.", payload={"fields": ["approvers"]})
    ids = []
    for value in raw:
        user_id = parse_optional_int(value)
        if user_id is None:
            raise ValidationError("Aprovadores inválidos.", payload={"fields": ["approvers"]})
        ids.append(user_id)
    ids = sorted(set(ids))
    valid = {
        u.id
        for u in User.query.filter(
            User.id.in_(ids),
            User.client_id == client_id,
            User.role.in_(("manager", "collaborator")),
            User.is_active.is_(True),
        ).all()
    }
    missing = [i for i in ids if i not in valid]
    if missing:
        raise ValidationError(
            "Aprovadores devem ser usuários ativos deste cliente.",
            payload={"fields": ["approvers"], "invalid_ids": missing},
        )
    return ids


def _threshold(value) -> Decimal:
    amount = parse_decimal(value)
    if amount is None or amount < 0:
        raise ValidationError("Valor mínimo inválido.", payload={"fields": ["amount_threshold"]})
    return amount


@approvals_bp.route("/levels")
@client_user_required
def list_levels():
    ids = accessible_client_ids()
    q = ApprovalLevel.query
    if ids is not None:
        q = q.filter(ApprovalLevel.client_id.in_(ids or {0}))
    client_id = parse_optional_int(request.args.get("client_id"))
    if client_id is not None:
        q = q.filter(ApprovalLevel.client_id == client_id)
    levels = q.order_by(ApprovalLevel.client_id, ApprovalLevel.amount_threshold).all()
    return jsonify({"items": [level.to_dict() for level in levels]})


@approvals_bp.route("/levels", methods=["POST"])
@manager_required
def create_level():
    """Body: name, amount_threshold, approvers [user ids], client_id?"""
    data = get_json_body()
    require_fields(data, ("name", "amount_threshold", "approvers"))
    client = resolve_acting_client(data.get("client_id"))

    name = str(data["name"]).strip()
    if ApprovalLevel.query.filter_by(client_id=client.id, name=name).first() is not None:
        raise ConflictError("Já existe um nível com este nome.", code="level_exists")

    level = ApprovalLevel(
        client_id=client.id,
        name=name,
        amount_threshold=_threshold(data["amount_threshold"]),
        approvers=_clean_approvers(data["approvers"], client.id),
        is_active=bool(data.get("is_active", True)),
    )
    db.session.add(level)
    db.session.flush()
    log_action(level, "CREATE", after=serialize_model(level))
    db.session.commit()
    return jsonify(level.to_dict()), 201


@approvals_bp.route("/levels/<int:level_id>", methods=["PATCH"])
@manager_required
def update_level(level_id: int):
    level = _load_level(level_id)
    data = get_json_body()
    before = serialize_model(level)

    if "name" in data:
        name = str(data.get("name") or "").strip()
        if not name:
            raise ValidationError("Nome é obrigatório.", payload={"fields": ["name"]})
        clash = ApprovalLevel.query.filter(
            ApprovalLevel.client_id == level.client_id,
            ApprovalLevel.name == name,
            ApprovalLevel.id != level.id,
        ).first()
        if clash is not None:
            raise ConflictError("Já existe um nível com este nome.", code="level_exists")
        level.name = name
    if "amount_threshold" in data:
        level.amount_threshold = _threshold(data["amount_threshold"])
    if "approvers" in data:
        level.approvers = _clean_approvers(data["approvers"], level.client_id)
    if "is_active" in data:
        level.is_active = bool(data["is_active"])

    db.session.flush()
    log_action(level, "UPDATE", before=before, after=serialize_model(level))
    db.session.commit()
    return jsonify(level.to_dict())


@approvals_bp.route("/levels/<int:level_id>", methods=["DELETE"])
@manager_required
def deactivate_level(level_id: int):
    """Soft delete: past approvals keep pointing at the level."""
    level = _load_level(level_id)
    level.is_active = False
    db.session.flush()
    log_action(level, "DEACTIVATE")
    db.session.commit()
    return jsonify(level.to_dict())
