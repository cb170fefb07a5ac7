"""
cotiz/security.py

Access control helpers for the Cotiz marketplace.

Key rules:
- UI is never trusted; all permission checks are server-side.
- Admin (platform): full access.
- Tenant isolation (replaces database row-level security):
  - client users see their own client and, for an administradora, its condominiums;
  - supplier users see quotes they were invited to or answered, and their own
    payments/deliveries.
- Per client:
  - manager: approvals, payments, supplier selection, settings.
  - collaborator: quotes and messaging only.

This module also provides a global safety net:
- suspended_account_guard() blocks POST/PUT/PATCH/DELETE for users whose client is
  inactive or whose supplier is suspended. Wire it via app.before_request.

IMPORTANT:
- Decorators must preserve wrapped function metadata to avoid Flask endpoint collisions.
  We use functools.wraps everywhere.
"""

from __future__ import annotations

from functools import wraps
from typing import Any, Callable, Optional, Set

from flask import request
from flask_login import current_user
from sqlalchemy import or_

from .errors import AuthRequired, NotFoundError, PermissionDenied, ValidationError
from .extensions import db
from .models import Client, Payment, Delivery, Quote, QuoteResponse, QuoteSupplier

MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}

# Endpoints a suspended account may still call (sign out and settle its bills).
SUSPENDED_ALLOWED_ENDPOINTS = {"auth.logout", "auth.me"}
SUSPENDED_ALLOWED_BLUEPRINTS = {"billing"}


def _require_login() -> None:
    if not current_user.is_authenticated:
        raise AuthRequired()


def is_admin() -> bool:
    """Return True if current user is authenticated and admin."""
    return bool(current_user.is_authenticated and getattr(current_user, "is_admin", False))


def is_manager() -> bool:
    """Return True if current user can manage their client (admin or client manager)."""
    if not current_user.is_authenticated:
        return False
    can_manage = getattr(current_user, "can_manage", None)
    return bool(callable(can_manage) and can_manage())


def is_account_suspended(user) -> bool:
    """Inactive client or non-active supplier means the tenant is suspended."""
    if user.is_admin:
        return False
    if user.client_id is not None and user.client is not None and not user.client.is_active:
        return True
    if user.supplier_id is not None and user.supplier is not None and user.supplier.status in ("suspended", "inactive"):
        return True
    return False


def suspended_account_guard() -> None:
    """
    Global guard: suspended tenants cannot mutate data.

    Allow-list:
    - auth.logout / auth.me
    - billing.* (so the account can pay what it owes)
    """
    if request.method not in MUTATING_METHODS:
        return None
    if not current_user.is_authenticated:
        return None

    endpoint = (request.endpoint or "").strip()
    if endpoint in SUSPENDED_ALLOWED_ENDPOINTS:
        return None
    if endpoint.split(".", 1)[0] in SUSPENDED_ALLOWED_BLUEPRINTS:
        return None

    if is_account_suspended(current_user):
        raise PermissionDenied(
            "Conta suspensa. Regularize a assinatura para continuar.",
            code="account_suspended",
        )
    return None


# ---------------------------------------------------------------------
# Decorators
# ---------------------------------------------------------------------
def admin_required(view_func: Callable[..., Any]) -> Callable[..., Any]:
    """Decorator: admin-only."""
    @wraps(view_func)
    def wrapper(*args: Any, **kwargs: Any):
        _require_login()
        if not is_admin():
            raise PermissionDenied()
        return view_func(*args, **kwargs)

    return wrapper


def manager_required(view_func: Callable[..., Any]) -> Callable[..., Any]:
    """Decorator: client manager or admin."""
    @wraps(view_func)
    def wrapper(*args: Any, **kwargs: Any):
        _require_login()
        if not is_manager():
            raise PermissionDenied("Apenas gestores podem executar esta ação.")
        return view_func(*args, **kwargs)

    return wrapper


def client_user_required(view_func: Callable[..., Any]) -> Callable[..., Any]:
    """Decorator: any client user (manager/collaborator) or admin."""
    @wraps(view_func)
    def wrapper(*args: Any, **kwargs: Any):
        _require_login()
        if not (is_admin() or current_user.is_client_user):
            raise PermissionDenied()
        return view_func(*args, **kwargs)

    return wrapper


def supplier_required(view_func: Callable[..., Any]) -> Callable[..., Any]:
    """Decorator: supplier users only."""
    @wraps(view_func)
    def wrapper(*args: Any, **kwargs: Any):
        _require_login()
        if not current_user.is_supplier_user:
            raise PermissionDenied("Apenas fornecedores podem executar esta ação.")
        return view_func(*args, **kwargs)

    return wrapper


# ---------------------------------------------------------------------
# Tenant scoping
# ---------------------------------------------------------------------
def accessible_client_ids(user=None) -> Optional[Set[int]]:
    """
    Client ids visible to the user.

    Returns None for admins (no restriction), an empty set for users without a client.
    """
    user = user or current_user
    if user.is_admin:
        return None
    if not user.client_id:
        return set()

    ids = {user.client_id}
    client = user.client
    if client is not None and client.client_type == "administradora":
        ids.update(
            c.id for c in Client.query.filter_by(parent_client_id=client.id).all()
        )
    return ids


def require_client_access(client_id: int, user=None) -> None:
    """Raise PermissionDenied unless the user can see client_id."""
    ids = accessible_client_ids(user)
    if ids is None:
        return
    if client_id not in ids:
        raise PermissionDenied()


def scoped_quotes_query(user=None):
    """Quotes visible to the user."""
    user = user or current_user
    if user.is_admin:
        return Quote.query
    if user.is_supplier_user:
        invited = QuoteSupplier.query.with_entities(QuoteSupplier.quote_id).filter(
            QuoteSupplier.supplier_id == user.supplier_id
        )
        answered = QuoteResponse.query.with_entities(QuoteResponse.quote_id).filter(
            QuoteResponse.supplier_id == user.supplier_id
        )
        return Quote.query.filter(
            or_(Quote.id.in_(invited), Quote.id.in_(answered)),
            Quote.status.notin_(("draft", "trash")),
        )
    ids = accessible_client_ids(user) or set()
    return Quote.query.filter(Quote.client_id.in_(ids))


def scoped_payments_query(user=None):
    user = user or current_user
    if user.is_admin:
        return Payment.query
    if user.is_supplier_user:
        return Payment.query.filter(Payment.supplier_id == user.supplier_id)
    ids = accessible_client_ids(user) or set()
    return Payment.query.filter(Payment.client_id.in_(ids))


def scoped_deliveries_query(user=None):
    user = user or current_user
    if user.is_admin:
        return Delivery.query
    if user.is_supplier_user:
        return Delivery.query.filter(Delivery.supplier_id == user.supplier_id)
    ids = accessible_client_ids(user) or set()
    return Delivery.query.filter(Delivery.client_id.in_(ids))


def can_view_quote(user, quote: Quote) -> bool:
    if user.is_admin:
        return True
    if user.is_supplier_user:
        if quote.status in ("draft", "trash"):
            return False
        if user.supplier_id in quote.invited_supplier_ids():
            return True
        return any(r.supplier_id == user.supplier_id for r in quote.responses)
    ids = accessible_client_ids(user) or set()
    return quote.client_id in ids


def quote_access_required(get_quote_func: Callable[..., Any]) -> Callable[..., Any]:
    """
    Decorator factory: VIEW permission for a quote.

    Admin: always allowed.
    Client users: quote must belong to an accessible client.
    Suppliers: must be invited to (or have answered) a non-draft quote.

    Out-of-scope quotes answer 404 so ids of other tenants are not disclosed.

    Usage:
        @quote_access_required(_load_quote)
        def view(quote_id): ...
    """
    def decorator(view_func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(view_func)
        def wrapper(*args: Any, **kwargs: Any):
            _require_login()
            quote = get_quote_func(**kwargs)
            if not can_view_quote(current_user, quote):
                raise NotFoundError("Cotação não encontrada.")
            return view_func(*args, **kwargs)

        return wrapper

    return decorator


def resolve_acting_client(client_id: Any = None, user=None) -> Client:
    """
    Client a client-side mutation applies to.

    Client users default to their own client; an administradora manager may act for one
    of its condominiums. Admins must name the client explicitly.
    """
    user = user or current_user
    if client_id in (None, ""):
        if user.is_admin or not user.client_id:
            raise ValidationError("Informe o cliente.", payload={"fields": ["client_id"]})
        return user.client

    try:
        wanted = int(client_id)
    except (TypeError, ValueError):
        raise ValidationError("client_id inválido.", payload={"fields": ["client_id"]})
    client = db.session.get(Client, wanted)
    if client is None:
        raise NotFoundError("Cliente não encontrado.")
    require_client_access(client.id, user)
    return client
