"""
cotiz/lifecycle.py

Quote -> proposal -> approval -> acceptance flows.

Each function mutates the current SQLAlchemy session and flushes; the caller
(route or CLI command) commits once, so a multi-step flow is a single transaction.

IMPORTANT:
- Status changes go through cotiz.workflow transition helpers.
- Permission checks that depend on the tenant happen in the blueprints; the
  business rules (states, limits, invitations) are enforced here.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List

from flask import current_app
from sqlalchemy import func

from .audit import log_action, serialize_model
from .errors import ConflictError, NotFoundError, PermissionDenied, ValidationError
from .extensions import db
from .models import (
    Approval,
    ApprovalLevel,
    Client,
    Delivery,
    Payment,
    Quote,
    QuoteItem,
    QuoteResponse,
    QuoteSupplier,
    QuoteToken,
    QuoteVisit,
    Supplier,
    User,
    utcnow,
)
from .notifications import notify_client, notify_supplier, notify_user
from .services.email import defer_email
from .utils import money, parse_date, parse_datetime, parse_decimal, parse_optional_int, short_code
from .workflow import QUOTE_OPEN_FOR_PROPOSALS, transition_quote

log = logging.getLogger(__name__)

REJECTION_NOTE = "Outra proposta foi aprovada para esta cotação."

# Defaults applied to quick responses submitted by token.
QUICK_RESPONSE_DEFAULTS = {
    "delivery_days": 7,
    "warranty_months": 12,
    "payment_terms": "30 dias",
}


# ---------------------------------------------------------------------
# Quotes
# ---------------------------------------------------------------------
def next_local_code(client_id: int, year: int | None = None) -> str:
    """COT-<year>-<seq> numbered per client and year."""
    year = year or utcnow().year
    prefix = f"COT-{year}-"
    count = (
        db.session.query(func.count(Quote.id))
        .filter(Quote.client_id == client_id, Quote.local_code.like(f"{prefix}%"))
        .scalar()
    )
    return f"{prefix}{(count or 0) + 1:04d}"


def check_quote_limit(client: Client) -> None:
    """Enforce the plan's monthly max_quotes (NULL = unlimited)."""
    plan = client.plan
    if plan is None or plan.max_quotes is None:
        return
    now = utcnow()
    month_start = datetime(now.year, now.month, 1)
    used = (
        db.session.query(func.count(Quote.id))
        .filter(Quote.client_id == client.id, Quote.created_at >= month_start)
        .scalar()
    )
    if used >= plan.max_quotes:
        raise ConflictError(
            f"Limite de {plan.max_quotes} cotações por mês do plano {plan.display_name} atingido.",
            code="plan_limit_reached",
            payload={"limit": plan.max_quotes, "used": used},
        )


def _parse_items(raw_items: Any) -> List[QuoteItem]:
    if raw_items is None:
        return []
    if not isinstance(raw_items, list):
        raise ValidationError("'items' deve ser uma lista.", payload={"fields": ["items"]})
    items = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError(f"Item {index + 1} inválido.")
        name = str(raw.get("product_name") or "").strip()
        if not name:
            raise ValidationError(f"Item {index + 1}: 'product_name' é obrigatório.")
        quantity = parse_decimal(raw.get("quantity", 1))
        if quantity is None or quantity <= 0:
            raise ValidationError(f"Item {index + 1}: quantidade deve ser maior que zero.")
        items.append(
            QuoteItem(
                product_name=name,
                quantity=quantity,
                unit=(raw.get("unit") or None),
                notes=(raw.get("notes") or None),
            )
        )
    return items


def create_quote(client: Client, user: User, data: Dict[str, Any]) -> Quote:
    title = str(data.get("title") or "").strip()
    if not title:
        raise ValidationError("'title' é obrigatório.", payload={"fields": ["title"]})

    deadline = parse_date(data.get("deadline"), "deadline")
    if deadline is not None and deadline < utcnow().date():
        raise ValidationError("O prazo não pode estar no passado.", payload={"fields": ["deadline"]})

    check_quote_limit(client)

    quote = Quote(
        client_id=client.id,
        created_by_id=user.id,
        title=title,
        description=data.get("description") or None,
        notes=data.get("notes") or None,
        delivery_address=data.get("delivery_address") or client.address,
        deadline=deadline,
        status="draft",
        local_code=next_local_code(client.id),
    )
    quote.items = _parse_items(data.get("items"))
    db.session.add(quote)
    db.session.flush()

    supplier_ids = data.get("supplier_ids") or []
    if supplier_ids:
        invite_suppliers(quote, supplier_ids)

    log_action(quote, "CREATE", after=serialize_model(quote))
    log.info("Quote created %s", quote.local_code, extra={"quote_id": quote.id, "client_id": client.id})
    return quote


def _require_draft(quote: Quote) -> None:
    if quote.status != "draft":
        raise ConflictError(
            "Somente cotações em rascunho podem ser editadas.",
            code="quote_not_editable",
        )


def update_quote(quote: Quote, data: Dict[str, Any]) -> Quote:
    _require_draft(quote)
    before = serialize_model(quote)

    if "title" in data:
        title = str(data.get("title") or "").strip()
        if not title:
            raise ValidationError("'title' é obrigatório.", payload={"fields": ["title"]})
        quote.title = title
    for field in ("description", "notes", "delivery_address"):
        if field in data:
            setattr(quote, field, data.get(field) or None)
    if "deadline" in data:
        deadline = parse_date(data.get("deadline"), "deadline")
        if deadline is not None and deadline < utcnow().date():
            raise ValidationError("O prazo não pode estar no passado.", payload={"fields": ["deadline"]})
        quote.deadline = deadline
    if "items" in data:
        quote.items = _parse_items(data.get("items"))

    db.session.flush()
    log_action(quote, "UPDATE", before=before, after=serialize_model(quote))
    return quote


def add_item(quote: Quote, data: Dict[str, Any]) -> QuoteItem:
    _require_draft(quote)
    item = _parse_items([data])[0]
    quote.items.append(item)
    db.session.flush()
    return item


def remove_item(quote: Quote, item_id: int) -> None:
    _require_draft(quote)
    item = next((i for i in quote.items if i.id == item_id), None)
    if item is None:
        raise NotFoundError("Item não encontrado.")
    quote.items.remove(item)
    db.session.flush()


def supplier_visible_to_client(supplier: Supplier, client_id: int) -> bool:
    if supplier.is_certified:
        return True
    return supplier.client_id == client_id


def invite_suppliers(quote: Quote, supplier_ids: List[Any]) -> List[QuoteSupplier]:
    """
    Invite suppliers (local to the quote's client, or certified).

    Already invited suppliers are skipped. Inviting after the quote was sent also issues
    the supplier's access token and invitation email.
    """
    if quote.status not in ("draft", "sent", "receiving"):
        raise ConflictError("Não é possível convidar fornecedores neste status.", code="quote_closed")

    ids = []
    for raw in supplier_ids:
        value = parse_optional_int(raw)
        if value is None:
            raise ValidationError("supplier_ids inválidos.", payload={"fields": ["supplier_ids"]})
        ids.append(value)

    already = quote.invited_supplier_ids()
    created = []
    for supplier_id in dict.fromkeys(ids):
        if supplier_id in already:
            continue
        supplier = db.session.get(Supplier, supplier_id)
        if supplier is None or not supplier_visible_to_client(supplier, quote.client_id):
            raise ValidationError(f"Fornecedor {supplier_id} não disponível para este cliente.")
        if supplier.status != "active":
            raise ValidationError(f"Fornecedor {supplier.name} não está ativo.")
        link = QuoteSupplier(quote=quote, supplier_id=supplier.id)
        db.session.add(link)
        created.append(link)
        if quote.status != "draft":
            db.session.flush()
            _invite_by_token(quote, supplier)

    db.session.flush()
    return created


def issue_quote_token(quote: Quote, supplier: Supplier | None) -> QuoteToken:
    """Create a public access token (expires at the deadline or after QUOTE_TOKEN_TTL_DAYS)."""
    ttl_days = int(current_app.config.get("QUOTE_TOKEN_TTL_DAYS", 7))
    expires_at = utcnow() + timedelta(days=ttl_days)
    if quote.deadline is not None:
        expires_at = datetime.combine(quote.deadline, datetime.max.time()).replace(microsecond=0)

    code = short_code()
    while QuoteToken.query.filter_by(short_code=code).first() is not None:
        code = short_code()

    token = QuoteToken(
        quote_id=quote.id,
        supplier_id=supplier.id if supplier else None,
        client_id=quote.client_id,
        short_code=code,
        full_token=secrets.token_urlsafe(32),
        expires_at=expires_at,
    )
    db.session.add(token)
    return token


def quote_response_link(token: QuoteToken) -> str:
    base = current_app.config.get("PUBLIC_BASE_URL", "").rstrip("/")
    return f"{base}/r/{token.short_code}"


def _invite_by_token(quote: Quote, supplier: Supplier) -> QuoteToken:
    token = issue_quote_token(quote, supplier)
    link = quote_response_link(token)
    client_name = quote.client.name if quote.client else ""
    defer_email(
        supplier.email,
        f"Nova cotação: {quote.title}",
        "quote_invitation",
        supplier_name=supplier.name,
        client_name=client_name,
        quote=quote,
        link=link,
        short_code=token.short_code,
    )
    notify_supplier(
        supplier.id,
        "Nova cotação disponível",
        f"{client_name} convidou você para a cotação {quote.local_code}: {quote.title}.",
        type="quote",
        action_url=f"/supplier/quotes/{quote.id}",
        details={"quote_id": quote.id},
    )
    return token


def send_quote(quote: Quote, user: User) -> List[QuoteToken]:
    """draft -> sent: one access token, email and notification per invited supplier."""
    if not quote.items:
        raise ValidationError("Adicione ao menos um item antes de enviar.")
    if not quote.invitations:
        raise ValidationError("Convide ao menos um fornecedor antes de enviar.")

    transition_quote(quote, "sent")
    db.session.flush()

    tokens = [_invite_by_token(quote, inv.supplier) for inv in quote.invitations]
    db.session.flush()

    log_action(quote, "QUOTE_SENT", details={"suppliers": sorted(quote.invited_supplier_ids())})
    log.info(
        "Quote sent to %d suppliers",
        len(tokens),
        extra={"quote_id": quote.id, "event": "quote_sent"},
    )
    return tokens


def change_quote_status(quote: Quote, new_status: str, user: User) -> Quote:
    """Cancel / trash / restore (restore: trash or rejected -> draft)."""
    if new_status not in ("cancelled", "trash", "draft"):
        raise ValidationError("Status inválido para esta operação.")
    old = transition_quote(quote, new_status)
    if new_status == "draft":
        quote.selected_response_id = None
        quote.supplier_id = None
        quote.total = None
    db.session.flush()
    log_action(quote, "STATUS_CHANGE", details={"from": old, "to": new_status})
    return quote


# ---------------------------------------------------------------------
# Proposals
# ---------------------------------------------------------------------
def _parse_proposal_items(quote: Quote, raw_items: Any) -> List[Dict[str, Any]]:
    if raw_items is None:
        raw_items = []
    if not isinstance(raw_items, list):
        raise ValidationError("'items' deve ser uma lista.", payload={"fields": ["items"]})

    quote_items = {item.id: item for item in quote.items}
    result = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError(f"Item {index + 1} inválido.")
        item_id = parse_optional_int(raw.get("quote_item_id"))
        source = quote_items.get(item_id) if item_id else None
        name = str(raw.get("product_name") or (source.product_name if source else "")).strip()
        if not name:
            raise ValidationError(f"Item {index + 1}: 'product_name' é obrigatório.")
        quantity = parse_decimal(raw.get("quantity")) or (
            Decimal(str(source.quantity)) if source else Decimal("1")
        )
        unit_price = parse_decimal(raw.get("unit_price"))
        if unit_price is None or unit_price < 0:
            raise ValidationError(f"Item {index + 1}: preço unitário inválido.")
        total = money(parse_decimal(raw.get("total")) or unit_price * quantity)
        result.append(
            {
                "quote_item_id": source.id if source else None,
                "product_name": name,
                "quantity": float(quantity),
                "unit_price": float(money(unit_price)),
                "total": float(total),
            }
        )
    return result


def _ensure_open_for_proposals(quote: Quote) -> None:
    if quote.status not in QUOTE_OPEN_FOR_PROPOSALS:
        raise ConflictError("Esta cotação não está recebendo propostas.", code="quote_closed")
    if quote.deadline is not None and quote.deadline < utcnow().date():
        raise ConflictError("O prazo desta cotação foi encerrado.", code="quote_deadline_passed")


def submit_proposal(
    quote: Quote,
    supplier: Supplier,
    data: Dict[str, Any],
    *,
    via: str = "portal",
    user: User | None = None,
) -> QuoteResponse:
    """
    Create or update the supplier's proposal.

    - One proposal per supplier per quote; only a 'submitted' one can be updated.
    - First proposal: sent -> receiving. Every invited supplier answered: receiving -> received.
    """
    _ensure_open_for_proposals(quote)
    if via == "portal" and supplier.id not in quote.invited_supplier_ids():
        raise PermissionDenied("Fornecedor não convidado para esta cotação.")

    items = _parse_proposal_items(quote, data.get("items"))
    shipping = parse_decimal(data.get("shipping_cost")) or Decimal("0")
    if shipping < 0:
        raise ValidationError("Frete não pode ser negativo.", payload={"fields": ["shipping_cost"]})

    total = parse_decimal(data.get("total_amount"))
    if total is None:
        total = sum((Decimal(str(i["total"])) for i in items), Decimal("0"))
    if total <= 0:
        raise ValidationError("O valor total da proposta deve ser maior que zero.", payload={"fields": ["total_amount"]})

    delivery_days = parse_optional_int(data.get("delivery_days"))
    warranty_months = parse_optional_int(data.get("warranty_months"))
    if via == "token":
        delivery_days = delivery_days if delivery_days is not None else QUICK_RESPONSE_DEFAULTS["delivery_days"]
        warranty_months = warranty_months if warranty_months is not None else QUICK_RESPONSE_DEFAULTS["warranty_months"]
    if delivery_days is not None and delivery_days < 0:
        raise ValidationError("Prazo de entrega inválido.", payload={"fields": ["delivery_days"]})

    payment_terms = data.get("payment_terms") or (
        QUICK_RESPONSE_DEFAULTS["payment_terms"] if via == "token" else None
    )

    response = QuoteResponse.query.filter_by(quote_id=quote.id, supplier_id=supplier.id).first()
    is_new = response is None
    if response is not None and response.status != "submitted":
        raise ConflictError("Esta proposta não pode mais ser alterada.", code="proposal_locked")
    if response is None:
        response = QuoteResponse(quote_id=quote.id, supplier_id=supplier.id, status="submitted")
        db.session.add(response)

    response.supplier_name = supplier.name
    response.items = items
    response.total_amount = money(total)
    response.shipping_cost = money(shipping)
    response.delivery_days = delivery_days
    response.warranty_months = warranty_months
    response.payment_terms = payment_terms
    response.notes = data.get("notes") or None
    response.submitted_via = via

    link = QuoteSupplier.query.filter_by(quote_id=quote.id, supplier_id=supplier.id).first()
    if link is None:
        link = QuoteSupplier(quote_id=quote.id, supplier_id=supplier.id)
        db.session.add(link)
    link.responded_at = utcnow()
    db.session.flush()
    db.session.refresh(quote)

    if quote.status == "sent":
        transition_quote(quote, "receiving")
    if quote.status == "receiving":
        invited = quote.invited_supplier_ids()
        answered = {r.supplier_id for r in quote.responses}
        if invited and invited <= answered:
            transition_quote(quote, "received")

    visit_date = parse_datetime(data.get("visit_date"), "visit_date")
    if visit_date is not None:
        schedule_visit(quote, supplier, visit_date, notes=data.get("visit_notes"))

    db.session.flush()

    if is_new:
        notify_client(
            quote.client_id,
            "Nova proposta recebida",
            f"{supplier.name} enviou uma proposta de R$ {response.grand_total} para {quote.local_code}.",
            type="proposal",
            action_url=f"/quotes/{quote.id}",
            details={"quote_id": quote.id, "response_id": response.id},
        )

    log_action(
        response,
        "PROPOSAL_SUBMITTED" if is_new else "PROPOSAL_UPDATED",
        after=serialize_model(response),
        client_id=quote.client_id,
    )
    log.info(
        "Proposal %s by supplier %s",
        "submitted" if is_new else "updated",
        supplier.id,
        extra={"quote_id": quote.id, "response_id": response.id, "supplier_id": supplier.id},
    )
    return response


def schedule_visit(quote: Quote, supplier: Supplier, when: datetime, notes: str | None = None) -> QuoteVisit:
    if when < utcnow():
        raise ValidationError("A data da visita deve ser futura.", payload={"fields": ["visit_date"]})
    visit = QuoteVisit(
        quote_id=quote.id,
        supplier_id=supplier.id,
        client_id=quote.client_id,
        scheduled_date=when,
        notes=notes or None,
    )
    db.session.add(visit)
    notify_client(
        quote.client_id,
        "Visita técnica agendada",
        f"{supplier.name} agendou visita técnica para {when:%d/%m/%Y %H:%M} ({quote.local_code}).",
        type="visit",
        action_url=f"/quotes/{quote.id}",
        details={"quote_id": quote.id},
    )
    return visit


def update_visit(visit: QuoteVisit, status: str) -> QuoteVisit:
    if status not in ("confirmed", "cancelled"):
        raise ValidationError("Status de visita inválido.")
    if visit.status != "scheduled":
        raise ConflictError("Esta visita já foi tratada.")
    visit.status = status
    if status == "confirmed":
        visit.confirmed_at = utcnow()
    notify_supplier(
        visit.supplier_id,
        "Visita técnica " + ("confirmada" if status == "confirmed" else "cancelada"),
        f"Visita de {visit.scheduled_date:%d/%m/%Y %H:%M} foi {'confirmada' if status == 'confirmed' else 'cancelada'}.",
        type="visit",
        details={"quote_id": visit.quote_id},
    )
    db.session.flush()
    return visit


def resolve_token(code: str) -> QuoteToken:
    """Find a token by short_code or full_token (404 when unknown, 410 when expired)."""
    code = (code or "").strip()
    if not code:
        raise NotFoundError("Link inválido.", code="token_not_found")
    token = QuoteToken.query.filter(
        (QuoteToken.short_code == code.upper()) | (QuoteToken.full_token == code)
    ).first()
    if token is None:
        raise NotFoundError("Link inválido.", code="token_not_found")
    if token.is_expired():
        raise ConflictError("Este link expirou.", code="token_expired", http_status=410)
    return token


def submit_quick_response(token: QuoteToken, data: Dict[str, Any]) -> QuoteResponse:
    """
    Public (token) proposal submission.

    Token bound to a supplier: that supplier answers. Otherwise the supplier is found by
    email, or created as a local supplier of the quote's client.
    """
    quote = token.quote
    supplier = token.supplier

    if supplier is None:
        email = str(data.get("supplier_email") or "").strip().lower()
        name = str(data.get("supplier_name") or "").strip()
        if not email or not name:
            raise ValidationError(
                "Informe nome e email do fornecedor.",
                payload={"fields": [f for f in ("supplier_name", "supplier_email") if not data.get(f)]},
            )
        supplier = Supplier.query.filter(func.lower(Supplier.email) == email).first()
        if supplier is None:
            supplier = Supplier(
                name=name,
                email=email,
                phone=data.get("supplier_phone") or None,
                supplier_type="local",
                client_id=quote.client_id,
                status="active",
            )
            db.session.add(supplier)
            db.session.flush()
            log_action(supplier, "CREATE", after=serialize_model(supplier), details={"source": "quick_response"})

    response = submit_proposal(quote, supplier, data, via="token")
    token.used_at = utcnow()
    db.session.flush()
    return response


# ---------------------------------------------------------------------
# Selection & approvals
# ---------------------------------------------------------------------
def find_approval_level(client_id: int, amount: Decimal) -> ApprovalLevel | None:
    """Active level with the largest amount_threshold <= amount."""
    return (
        ApprovalLevel.query.filter(
            ApprovalLevel.client_id == client_id,
            ApprovalLevel.is_active.is_(True),
            ApprovalLevel.amount_threshold <= amount,
        )
        .order_by(ApprovalLevel.amount_threshold.desc())
        .first()
    )


def select_proposal(response: QuoteResponse, user: User) -> Dict[str, Any]:
    """
    Client manager picks a proposal.

    No approval level for the amount: approved immediately.
    Otherwise: response 'selected', quote 'under_review', one pending approval per approver.
    """
    quote = response.quote
    if quote.status not in ("sent", "receiving", "received"):
        raise ConflictError("Esta cotação não permite seleção de proposta.", code="invalid_transition")
    if response.status != "submitted":
        raise ConflictError("Esta proposta não pode ser selecionada.", code="proposal_locked")
    # Resent quotes keep proposals from the previous round.
    if quote.status == "sent":
        transition_quote(quote, "receiving")

    amount = response.grand_total
    level = find_approval_level(quote.client_id, amount)
    approver_ids = [int(a) for a in (level.approvers or [])] if level else []
    approvers = User.query.filter(User.id.in_(approver_ids), User.is_active.is_(True)).all() if approver_ids else []

    if level is None or not approvers:
        approve_proposal(response, user)
        return {"approval_required": False, "quote": quote, "response": response}

    transition_quote(quote, "under_review")
    response.status = "selected"
    quote.selected_response_id = response.id

    approvals = []
    for approver in approvers:
        approval = Approval(
            quote_id=quote.id,
            response_id=response.id,
            approval_level_id=level.id,
            approver_id=approver.id,
            status="pending",
        )
        db.session.add(approval)
        approvals.append(approval)
        notify_user(
            approver,
            "Aprovação pendente",
            f"A proposta de {response.supplier_name} (R$ {amount}) para {quote.local_code} aguarda sua aprovação.",
            type="approval",
            priority="high",
            action_url="/approvals",
            details={"quote_id": quote.id, "response_id": response.id},
        )
    db.session.flush()

    log_action(
        quote,
        "PROPOSAL_SELECTED",
        details={"response_id": response.id, "approval_level_id": level.id, "amount": str(amount)},
    )
    return {"approval_required": True, "quote": quote, "response": response, "approvals": approvals}


def approve_proposal(response: QuoteResponse, user: User | None = None) -> QuoteResponse:
    """
    Approve a proposal: other open proposals rejected, quote approved with the chosen
    supplier and total, every supplier notified.
    """
    quote = response.quote
    if response.status not in ("submitted", "selected"):
        raise ConflictError("Esta proposta não pode ser aprovada.", code="proposal_locked")

    before = serialize_model(quote)
    transition_quote(quote, "approved")

    response.status = "approved"
    quote.selected_response_id = response.id
    quote.supplier_id = response.supplier_id
    quote.total = response.grand_total

    rejected = []
    for other in quote.responses:
        if other.id == response.id or other.status not in ("submitted", "selected"):
            continue
        other.status = "rejected"
        other.notes = f"{other.notes}\n{REJECTION_NOTE}" if other.notes else REJECTION_NOTE
        rejected.append(other)

    db.session.flush()

    supplier = response.supplier
    notify_supplier(
        response.supplier_id,
        "Proposta aprovada!",
        f"Sua proposta para {quote.local_code} ({quote.title}) foi aprovada. Confirme a entrega.",
        type="proposal",
        priority="high",
        action_url=f"/supplier/quotes/{quote.id}",
        details={"quote_id": quote.id, "response_id": response.id},
    )
    defer_email(
        supplier.email if supplier else None,
        f"Proposta aprovada: {quote.title}",
        "proposal_approved",
        supplier_name=response.supplier_name,
        quote=quote,
        amount=response.grand_total,
    )
    for other in rejected:
        notify_supplier(
            other.supplier_id,
            "Proposta não selecionada",
            f"Outra proposta foi escolhida para {quote.local_code}.",
            type="proposal",
            details={"quote_id": quote.id, "response_id": other.id},
        )

    log_action(
        quote,
        "PROPOSAL_APPROVED",
        before=before,
        after=serialize_model(quote),
        details={
            "response_id": response.id,
            "supplier_id": response.supplier_id,
            "amount": str(response.grand_total),
            "rejected_responses": [r.id for r in rejected],
        },
    )
    log.info(
        "Proposal approved",
        extra={"quote_id": quote.id, "response_id": response.id, "event": "proposal_approved"},
    )
    return response


def reject_proposal(response: QuoteResponse, user: User, reason: str | None = None) -> QuoteResponse:
    if response.status != "submitted":
        raise ConflictError("Esta proposta não pode ser rejeitada.", code="proposal_locked")
    response.status = "rejected"
    if reason:
        response.notes = f"{response.notes}\n{reason}" if response.notes else reason
    db.session.flush()

    quote = response.quote
    notify_supplier(
        response.supplier_id,
        "Proposta rejeitada",
        f"Sua proposta para {quote.local_code} foi rejeitada." + (f" Motivo: {reason}" if reason else ""),
        type="proposal",
        details={"quote_id": quote.id, "response_id": response.id},
    )
    defer_email(
        response.supplier.email if response.supplier else None,
        f"Proposta rejeitada: {quote.title}",
        "proposal_rejected",
        supplier_name=response.supplier_name,
        quote=quote,
        reason=reason,
    )
    log_action(response, "PROPOSAL_REJECTED", details={"reason": reason}, client_id=quote.client_id)
    return response


def decide_approval(approval: Approval, user: User, decision: str, comments: str | None = None) -> Approval:
    """
    Approver decision.

    approve: when no pending approval remains for the proposal, the proposal is approved.
    reject: remaining approvals cancelled, quote rejected, proposal back to 'submitted'.
    """
    if decision not in ("approve", "reject"):
        raise ValidationError("Decisão deve ser 'approve' ou 'reject'.", payload={"fields": ["decision"]})
    if approval.status != "pending":
        raise ConflictError("Esta aprovação já foi decidida.", code="approval_already_decided")
    if not user.is_admin and approval.approver_id != user.id:
        raise PermissionDenied("Você não é aprovador desta cotação.")

    approval.status = "approved" if decision == "approve" else "rejected"
    approval.comments = comments or None
    approval.decided_at = utcnow()
    db.session.flush()

    quote = approval.quote
    response = approval.response

    if decision == "approve":
        pending = Approval.query.filter_by(
            quote_id=quote.id, response_id=response.id, status="pending"
        ).count()
        if pending == 0:
            approve_proposal(response, user)
    else:
        for other in Approval.query.filter_by(quote_id=quote.id, response_id=response.id, status="pending").all():
            other.status = "cancelled"
            other.decided_at = approval.decided_at
        transition_quote(quote, "rejected")
        response.status = "submitted"
        quote.selected_response_id = None
        if quote.created_by is not None:
            notify_user(
                quote.created_by,
                "Cotação rejeitada na aprovação",
                f"{user.full_name} rejeitou a proposta de {response.supplier_name} para {quote.local_code}."
                + (f" Comentário: {comments}" if comments else ""),
                type="approval",
                action_url=f"/quotes/{quote.id}",
                details={"quote_id": quote.id},
            )

    db.session.flush()
    log_action(
        approval,
        "APPROVAL_" + approval.status.upper(),
        details={"quote_id": quote.id, "comments": comments},
        client_id=quote.client_id,
    )
    return approval


# ---------------------------------------------------------------------
# Supplier acceptance
# ---------------------------------------------------------------------
def accept_proposal(
    response: QuoteResponse,
    user: User,
    scheduled_date: datetime | None,
    *,
    delivery_address: str | None = None,
    notes: str | None = None,
) -> Delivery:
    """
    Supplier accepts the approved proposal and schedules the delivery.

    Idempotent: accepting again returns the existing delivery.
    """
    from .escrow import issue_delivery_code

    if response.status == "accepted":
        existing = Delivery.query.filter_by(response_id=response.id).first()
        if existing is not None:
            return existing
    if response.status != "approved":
        raise ConflictError("Apenas propostas aprovadas podem ser aceitas.", code="proposal_not_approved")

    if scheduled_date is None:
        raise ValidationError("Informe a data de entrega.", payload={"fields": ["scheduled_date"]})
    if scheduled_date.date() < utcnow().date():
        raise ValidationError("A data de entrega não pode estar no passado.", payload={"fields": ["scheduled_date"]})

    quote = response.quote
    address = delivery_address or quote.delivery_address or (quote.client.address if quote.client else None)
    if not address:
        raise ValidationError("Informe o endereço de entrega.", payload={"fields": ["delivery_address"]})

    payment = (
        Payment.query.filter(Payment.quote_id == quote.id, Payment.status != "cancelled")
        .order_by(Payment.id.desc())
        .first()
    )

    response.status = "accepted"
    delivery = Delivery(
        quote_id=quote.id,
        response_id=response.id,
        client_id=quote.client_id,
        supplier_id=response.supplier_id,
        payment_id=payment.id if payment else None,
        scheduled_date=scheduled_date,
        delivery_address=address,
        notes=notes or None,
        status="scheduled",
    )
    db.session.add(delivery)
    db.session.flush()

    confirmation = issue_delivery_code(delivery)

    notify_client(
        quote.client_id,
        "Entrega agendada",
        f"{response.supplier_name} agendou a entrega de {quote.local_code} para {scheduled_date:%d/%m/%Y}. "
        f"Código de confirmação: {confirmation.confirmation_code}.",
        type="delivery",
        action_url=f"/deliveries/{delivery.id}",
        details={"quote_id": quote.id, "delivery_id": delivery.id},
        email={
            "subject": f"Entrega agendada: {quote.title}",
            "template": "delivery_code",
            "context": {
                "quote": quote,
                "delivery": delivery,
                "code": confirmation.confirmation_code,
                "supplier_name": response.supplier_name,
            },
        },
    )

    log_action(
        delivery,
        "PROPOSAL_ACCEPTED",
        after=serialize_model(delivery),
        details={"response_id": response.id},
    )
    log.info(
        "Delivery scheduled",
        extra={"quote_id": quote.id, "delivery_id": delivery.id, "event": "proposal_accepted"},
    )
    return delivery
