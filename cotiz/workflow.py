"""
cotiz/workflow.py

Status graphs for quotes, payments and deliveries.

IMPORTANT:
- Every status change goes through transition_quote / transition_payment /
  transition_delivery so the allowed moves live in one place.
- Labels are the Portuguese strings shown to users.
"""

from __future__ import annotations

from typing import Dict, FrozenSet

from .errors import ConflictError
from .models import utcnow

# ---------------------------------------------------------------------
# Quotes
# ---------------------------------------------------------------------
QUOTE_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "draft": frozenset({"sent", "cancelled", "trash"}),
    "sent": frozenset({"receiving", "under_review", "cancelled"}),
    "receiving": frozenset({"received", "under_review", "approved", "cancelled"}),
    "received": frozenset({"under_review", "approved", "rejected", "cancelled"}),
    "under_review": frozenset({"approved", "rejected", "cancelled"}),
    "approved": frozenset({"finalized", "cancelled"}),
    "rejected": frozenset({"draft"}),
    "cancelled": frozenset({"trash"}),
    "trash": frozenset({"draft"}),
    "finalized": frozenset(),
}

QUOTE_STATUS_LABELS = {
    "draft": "Rascunho",
    "sent": "Enviada",
    "receiving": "Recebendo propostas",
    "received": "Propostas recebidas",
    "under_review": "Em aprovação",
    "approved": "Aprovada",
    "rejected": "Rejeitada",
    "finalized": "Finalizada",
    "cancelled": "Cancelada",
    "trash": "Lixeira",
}

# Quotes that still accept supplier proposals.
QUOTE_OPEN_FOR_PROPOSALS = frozenset({"sent", "receiving", "received"})

RESPONSE_STATUS_LABELS = {
    "submitted": "Enviada",
    "selected": "Selecionada",
    "approved": "Aprovada",
    "accepted": "Aceita pelo fornecedor",
    "rejected": "Rejeitada",
}

# ---------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------
PAYMENT_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"in_escrow", "waiting_confirmation", "cancelled"}),
    "waiting_confirmation": frozenset({"in_escrow", "pending", "cancelled"}),
    "in_escrow": frozenset({"completed", "disputed", "refunded"}),
    "disputed": frozenset({"completed", "refunded"}),
    "completed": frozenset(),
    "cancelled": frozenset(),
    "refunded": frozenset(),
}

PAYMENT_STATUS_LABELS = {
    "pending": "Aguardando pagamento",
    "waiting_confirmation": "Aguardando confirmação",
    "in_escrow": "Em custódia",
    "completed": "Liberado ao fornecedor",
    "disputed": "Em disputa",
    "cancelled": "Cancelado",
    "refunded": "Reembolsado",
}

# ---------------------------------------------------------------------
# Deliveries
# ---------------------------------------------------------------------
DELIVERY_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "scheduled": frozenset({"in_transit", "delivered", "cancelled"}),
    "in_transit": frozenset({"delivered", "cancelled"}),
    "delivered": frozenset(),
    "cancelled": frozenset(),
}

DELIVERY_STATUS_LABELS = {
    "scheduled": "Agendada",
    "in_transit": "Em trânsito",
    "delivered": "Entregue",
    "cancelled": "Cancelada",
}

STATUS_LABELS = {
    "quote": QUOTE_STATUS_LABELS,
    "response": RESPONSE_STATUS_LABELS,
    "payment": PAYMENT_STATUS_LABELS,
    "delivery": DELIVERY_STATUS_LABELS,
}


def _check(graph: Dict[str, FrozenSet[str]], kind: str, current: str, new_status: str) -> None:
    if new_status not in graph:
        raise ConflictError(
            f"Status desconhecido: {new_status}.",
            code="invalid_transition",
            payload={"from": current, "to": new_status},
        )
    if new_status not in graph.get(current, frozenset()):
        raise ConflictError(
            f"Transição de {kind} inválida: {current} -> {new_status}.",
            code="invalid_transition",
            payload={"from": current, "to": new_status},
        )


def can_transition_quote(current: str, new_status: str) -> bool:
    return new_status in QUOTE_TRANSITIONS.get(current, frozenset())


def transition_quote(quote, new_status: str) -> str:
    """Move a quote to new_status (ConflictError 'invalid_transition' otherwise). Returns old status."""
    old = quote.status
    _check(QUOTE_TRANSITIONS, "cotação", old, new_status)
    quote.status = new_status
    now = utcnow()
    if new_status == "sent" and quote.sent_at is None:
        quote.sent_at = now
    elif new_status == "approved":
        quote.approved_at = now
    elif new_status == "finalized":
        quote.finalized_at = now
    return old


def transition_payment(payment, new_status: str) -> str:
    old = payment.status
    _check(PAYMENT_TRANSITIONS, "pagamento", old, new_status)
    payment.status = new_status
    return old


def transition_delivery(delivery, new_status: str) -> str:
    old = delivery.status
    _check(DELIVERY_TRANSITIONS, "entrega", old, new_status)
    delivery.status = new_status
    return old
