"""
Cotiz – Domain Models

Marketplace tenants:
- Client (condominium, administradora, or direct company) with its users
- Supplier (local to one client, or platform-certified) with its users
- Platform admins (User.role == "admin", no tenant)

Quote progression:
- Quote -> QuoteItem / QuoteSupplier (invitations) / QuoteToken (public access)
- QuoteResponse (supplier proposal) -> Approval (per ApprovalLevel)
- Payment (escrow) + PaymentTransaction history
- Delivery + DeliveryConfirmation code

Supporting data:
- Notification, QuoteMessage, Contract(+History), SupplierRating
- SubscriptionPlan, Subscription, Invoice (platform billing)
- VerificationCode, AuditLog

IMPORTANT:
- Status strings live in cotiz/workflow.py; transitions must go through it.
- Tenant isolation is enforced in cotiz/security.py query helpers, never in the UI.
"""

from __future__ import annotations

import json
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP

from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash

from .extensions import db


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------
def utcnow() -> datetime:
    """Naive UTC now (columns are stored without tz for SQLite/PostgreSQL portability)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _to_decimal(value) -> Decimal:
    """Convert Numeric/None to Decimal safely."""
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value))


def _money(x: Decimal) -> Decimal:
    return x.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _iso(value):
    if value is None:
        return None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _num(value):
    if value is None:
        return None
    return float(_money(_to_decimal(value)))


# ---------------------------------------------------------------------
# Plans, tenants & users
# ---------------------------------------------------------------------
class SubscriptionPlan(db.Model):
    """Platform plan. NULL limits mean unlimited."""

    __tablename__ = "subscription_plans"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(80), unique=True, nullable=False, index=True)
    display_name = db.Column(db.String(120), nullable=False)
    audience = db.Column(db.String(20), nullable=False, default="client")  # client | supplier

    monthly_price = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    yearly_price = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))

    max_quotes = db.Column(db.Integer, nullable=True)
    max_suppliers = db.Column(db.Integer, nullable=True)
    max_users = db.Column(db.Integer, nullable=True)

    is_active = db.Column(db.Boolean, default=True, nullable=False, index=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "display_name": self.display_name,
            "audience": self.audience,
            "monthly_price": _num(self.monthly_price),
            "yearly_price": _num(self.yearly_price),
            "max_quotes": self.max_quotes,
            "max_suppliers": self.max_suppliers,
            "max_users": self.max_users,
            "is_active": self.is_active,
        }


class Client(db.Model):
    """
    Buying tenant.

    client_type:
    - direct: a company buying for itself
    - administradora: manages several condominiums (children via parent_client_id)
    - condominium: optionally managed by an administradora
    - company: corporate buyer (offices, facilities)
    """

    __tablename__ = "clients"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(255), nullable=False, index=True)
    cnpj = db.Column(db.String(14), nullable=True, unique=True, index=True)
    email = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(30))
    whatsapp = db.Column(db.String(30))
    address = db.Column(db.String(255))

    client_type = db.Column(db.String(20), nullable=False, default="direct", index=True)

    parent_client_id = db.Column(
        db.Integer,
        db.ForeignKey("clients.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    subscription_plan_id = db.Column(
        db.Integer,
        db.ForeignKey("subscription_plans.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    gateway_customer_id = db.Column(db.String(100), nullable=True)

    is_active = db.Column(db.Boolean, default=True, nullable=False, index=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    parent = db.relationship(
        "Client",
        remote_side=[id],
        backref=db.backref("condominiums", lazy=True),
    )
    plan = db.relationship("SubscriptionPlan", foreign_keys=[subscription_plan_id])
    users = db.relationship("User", back_populates="client", lazy=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "cnpj": self.cnpj,
            "email": self.email,
            "phone": self.phone,
            "whatsapp": self.whatsapp,
            "address": self.address,
            "client_type": self.client_type,
            "parent_client_id": self.parent_client_id,
            "subscription_plan_id": self.subscription_plan_id,
            "is_active": self.is_active,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<Client {self.name}>"


class Supplier(db.Model):
    """
    Selling tenant.

    supplier_type:
    - local: registered by (and visible to) one client only
    - certified: platform-verified, visible to every client
    """

    __tablename__ = "suppliers"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(255), nullable=False, index=True)
    cnpj = db.Column(db.String(14), nullable=True, unique=True, index=True)
    email = db.Column(db.String(255), nullable=False, index=True)
    phone = db.Column(db.String(30))
    whatsapp = db.Column(db.String(30))
    address = db.Column(db.String(255))
    city = db.Column(db.String(100), index=True)
    state = db.Column(db.String(2), index=True)

    supplier_type = db.Column(db.String(20), nullable=False, default="local", index=True)

    client_id = db.Column(
        db.Integer,
        db.ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )

    specialties = db.Column(db.JSON, nullable=False, default=list)

    gateway_customer_id = db.Column(db.String(100), nullable=True)

    rating = db.Column(db.Numeric(3, 2), nullable=True)
    completed_orders = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(20), nullable=False, default="active", index=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    client = db.relationship("Client", backref=db.backref("local_suppliers", lazy=True))
    users = db.relationship("User", back_populates="supplier", lazy=True)

    @property
    def is_certified(self) -> bool:
        return self.supplier_type == "certified"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "cnpj": self.cnpj,
            "email": self.email,
            "phone": self.phone,
            "whatsapp": self.whatsapp,
            "address": self.address,
            "city": self.city,
            "state": self.state,
            "supplier_type": self.supplier_type,
            "is_certified": self.is_certified,
            "client_id": self.client_id,
            "specialties": list(self.specialties or []),
            "rating": _num(self.rating),
            "completed_orders": self.completed_orders,
            "status": self.status,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<Supplier {self.cnpj} - {self.name}>"


class User(UserMixin, db.Model):
    """
    Login user.

    role:
    - admin: platform administrator (no tenant)
    - manager / collaborator: client users (client_id required)
    - supplier: supplier users (supplier_id required)
    """

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    full_name = db.Column(db.String(255), nullable=False)

    role = db.Column(db.String(20), nullable=False, default="collaborator", index=True)

    client_id = db.Column(
        db.Integer,
        db.ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    supplier_id = db.Column(
        db.Integer,
        db.ForeignKey("suppliers.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )

    is_active = db.Column(db.Boolean, default=True, nullable=False)
    force_password_change = db.Column(db.Boolean, default=False, nullable=False)
    last_login_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    client = db.relationship("Client", back_populates="users")
    supplier = db.relationship("Supplier", back_populates="users")

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_client_user(self) -> bool:
        return self.role in ("manager", "collaborator") and self.client_id is not None

    @property
    def is_supplier_user(self) -> bool:
        return self.role == "supplier" and self.supplier_id is not None

    def can_manage(self) -> bool:
        return self.is_admin or (self.role == "manager" and self.client_id is not None)

    def panel_type(self) -> str:
        if self.is_admin:
            return "admin"
        if self.is_supplier_user:
            return "supplier"
        return "client"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role,
            "client_id": self.client_id,
            "supplier_id": self.supplier_id,
            "is_active": self.is_active,
            "force_password_change": self.force_password_change,
            "last_login_at": _iso(self.last_login_at),
        }

    def __repr__(self):
        return f"<User {self.email}>"


# ---------------------------------------------------------------------
# Quotes
# ---------------------------------------------------------------------
class Quote(db.Model):
    __tablename__ = "quotes"

    id = db.Column(db.Integer, primary_key=True)

    local_code = db.Column(db.String(30), nullable=True, index=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    notes = db.Column(db.Text)
    delivery_address = db.Column(db.String(255))

    status = db.Column(db.String(30), nullable=False, default="draft", index=True)

    client_id = db.Column(
        db.Integer,
        db.ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_by_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    deadline = db.Column(db.Date, nullable=True)

    # Selected proposal (plain id: quote_responses already references quotes)
    selected_response_id = db.Column(db.Integer, nullable=True, index=True)
    supplier_id = db.Column(
        db.Integer,
        db.ForeignKey("suppliers.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    total = db.Column(db.Numeric(12, 2), nullable=True)

    sent_at = db.Column(db.DateTime, nullable=True)
    approved_at = db.Column(db.DateTime, nullable=True)
    finalized_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    client = db.relationship("Client", backref=db.backref("quotes", lazy=True))
    created_by = db.relationship("User", foreign_keys=[created_by_id])
    supplier = db.relationship("Supplier", foreign_keys=[supplier_id])

    items = db.relationship(
        "QuoteItem",
        back_populates="quote",
        cascade="all, delete-orphan",
        order_by="QuoteItem.id",
    )
    invitations = db.relationship(
        "QuoteSupplier",
        back_populates="quote",
        cascade="all, delete-orphan",
    )
    responses = db.relationship(
        "QuoteResponse",
        back_populates="quote",
        cascade="all, delete-orphan",
        order_by="QuoteResponse.id",
    )

    @property
    def selected_response(self):
        if not self.selected_response_id:
            return None
        return db.session.get(QuoteResponse, self.selected_response_id)

    def invited_supplier_ids(self) -> set[int]:
        return {inv.supplier_id for inv in self.invitations or []}

    def to_dict(self, include_items: bool = False) -> dict:
        from .workflow import QUOTE_STATUS_LABELS

        data = {
            "id": self.id,
            "local_code": self.local_code,
            "title": self.title,
            "description": self.description,
            "notes": self.notes,
            "delivery_address": self.delivery_address,
            "status": self.status,
            "status_label": QUOTE_STATUS_LABELS.get(self.status, self.status),
            "client_id": self.client_id,
            "created_by_id": self.created_by_id,
            "deadline": _iso(self.deadline),
            "selected_response_id": self.selected_response_id,
            "supplier_id": self.supplier_id,
            "total": _num(self.total),
            "responses_count": len(self.responses or []),
            "invited_suppliers": sorted(self.invited_supplier_ids()),
            "sent_at": _iso(self.sent_at),
            "approved_at": _iso(self.approved_at),
            "finalized_at": _iso(self.finalized_at),
            "created_at": _iso(self.created_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data

    def __repr__(self):
        return f"<Quote {self.local_code or self.id} {self.status}>"


class QuoteItem(db.Model):
    __tablename__ = "quote_items"

    id = db.Column(db.Integer, primary_key=True)

    quote_id = db.Column(
        db.Integer,
        db.ForeignKey("quotes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    product_name = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Numeric(12, 2), nullable=False, default=1)
    unit = db.Column(db.String(30))
    notes = db.Column(db.Text)

    created_at = db.Column(db.DateTime, default=utcnow)

    quote = db.relationship("Quote", back_populates="items")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_name": self.product_name,
            "quantity": _num(self.quantity),
            "unit": self.unit,
            "notes": self.notes,
        }


class QuoteSupplier(db.Model):
    """Supplier invited to a quote."""

    __tablename__ = "quote_suppliers"

    id = db.Column(db.Integer, primary_key=True)

    quote_id = db.Column(
        db.Integer,
        db.ForeignKey("quotes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    supplier_id = db.Column(
        db.Integer,
        db.ForeignKey("suppliers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    invited_at = db.Column(db.DateTime, default=utcnow)
    responded_at = db.Column(db.DateTime, nullable=True)
    reminder_count = db.Column(db.Integer, nullable=False, default=0)
    last_reminder_at = db.Column(db.DateTime, nullable=True)

    quote = db.relationship("Quote", back_populates="invitations")
    supplier = db.relationship("Supplier", backref=db.backref("quote_invitations", lazy=True))

    __table_args__ = (
        db.UniqueConstraint("quote_id", "supplier_id", name="uq_quote_supplier"),
    )


class QuoteToken(db.Model):
    """Public access token letting a supplier answer a quote without logging in."""

    __tablename__ = "quote_tokens"

    id = db.Column(db.Integer, primary_key=True)

    quote_id = db.Column(
        db.Integer,
        db.ForeignKey("quotes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    supplier_id = db.Column(
        db.Integer,
        db.ForeignKey("suppliers.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    client_id = db.Column(
        db.Integer,
        db.ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    short_code = db.Column(db.String(16), unique=True, nullable=False, index=True)
    full_token = db.Column(db.String(128), unique=True, nullable=False, index=True)

    expires_at = db.Column(db.DateTime, nullable=False)
    access_count = db.Column(db.Integer, nullable=False, default=0)
    used_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow)

    quote = db.relationship("Quote", backref=db.backref("tokens", lazy=True, cascade="all, delete-orphan"))
    supplier = db.relationship("Supplier")

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at < (now or utcnow())


class QuoteResponse(db.Model):
    """Supplier proposal for a quote (one per supplier per quote)."""

    __tablename__ = "quote_responses"

    id = db.Column(db.Integer, primary_key=True)

    quote_id = db.Column(
        db.Integer,
        db.ForeignKey("quotes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    supplier_id = db.Column(
        db.Integer,
        db.ForeignKey("suppliers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    supplier_name = db.Column(db.String(255), nullable=False)

    # [{"quote_item_id", "product_name", "quantity", "unit_price", "total"}]
    items = db.Column(db.JSON, nullable=False, default=list)

    total_amount = db.Column(db.Numeric(12, 2), nullable=False)
    shipping_cost = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    delivery_days = db.Column(db.Integer, nullable=True)
    warranty_months = db.Column(db.Integer, nullable=True)
    payment_terms = db.Column(db.String(120), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(20), nullable=False, default="submitted", index=True)
    submitted_via = db.Column(db.String(20), nullable=False, default="portal")

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    quote = db.relationship("Quote", back_populates="responses")
    supplier = db.relationship("Supplier", backref=db.backref("responses", lazy=True))

    __table_args__ = (
        db.UniqueConstraint("quote_id", "supplier_id", name="uq_response_quote_supplier"),
    )

    @property
    def grand_total(self) -> Decimal:
        return _money(_to_decimal(self.total_amount) + _to_decimal(self.shipping_cost))

    def to_dict(self) -> dict:
        from .workflow import RESPONSE_STATUS_LABELS

        return {
            "id": self.id,
            "quote_id": self.quote_id,
            "supplier_id": self.supplier_id,
            "supplier_name": self.supplier_name,
            "items": list(self.items or []),
            "total_amount": _num(self.total_amount),
            "shipping_cost": _num(self.shipping_cost),
            "grand_total": _num(self.grand_total),
            "delivery_days": self.delivery_days,
            "warranty_months": self.warranty_months,
            "payment_terms": self.payment_terms,
            "notes": self.notes,
            "status": self.status,
            "status_label": RESPONSE_STATUS_LABELS.get(self.status, self.status),
            "submitted_via": self.submitted_via,
            "created_at": _iso(self.created_at),
        }


class QuoteVisit(db.Model):
    """Technical visit requested by a supplier before pricing."""

    __tablename__ = "quote_visits"

    id = db.Column(db.Integer, primary_key=True)

    quote_id = db.Column(db.Integer, db.ForeignKey("quotes.id", ondelete="CASCADE"), nullable=False, index=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id", ondelete="CASCADE"), nullable=False, index=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)

    scheduled_date = db.Column(db.DateTime, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="scheduled", index=True)
    notes = db.Column(db.Text)
    confirmed_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow)

    quote = db.relationship("Quote", backref=db.backref("visits", lazy=True, cascade="all, delete-orphan"))
    supplier = db.relationship("Supplier")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "quote_id": self.quote_id,
            "supplier_id": self.supplier_id,
            "client_id": self.client_id,
            "scheduled_date": _iso(self.scheduled_date),
            "status": self.status,
            "notes": self.notes,
            "confirmed_at": _iso(self.confirmed_at),
        }


# ---------------------------------------------------------------------
# Approvals
# ---------------------------------------------------------------------
class ApprovalLevel(db.Model):
    """
    Client approval rule: proposals whose total is >= amount_threshold need every
    listed approver (user ids) to approve. The highest matching threshold wins.
    """

    __tablename__ = "approval_levels"

    id = db.Column(db.Integer, primary_key=True)

    client_id = db.Column(db.Integer, db.ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    amount_threshold = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    approvers = db.Column(db.JSON, nullable=False, default=list)
    is_active = db.Column(db.Boolean, default=True, nullable=False, index=True)

    created_at = db.Column(db.DateTime, default=utcnow)

    client = db.relationship("Client", backref=db.backref("approval_levels", lazy=True))

    __table_args__ = (
        db.UniqueConstraint("client_id", "name", name="uq_approval_level_client_name"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "client_id": self.client_id,
            "name": self.name,
            "amount_threshold": _num(self.amount_threshold),
            "approvers": list(self.approvers or []),
            "is_active": self.is_active,
        }


class Approval(db.Model):
    __tablename__ = "approvals"

    id = db.Column(db.Integer, primary_key=True)

    quote_id = db.Column(db.Integer, db.ForeignKey("quotes.id", ondelete="CASCADE"), nullable=False, index=True)
    response_id = db.Column(
        db.Integer,
        db.ForeignKey("quote_responses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    approval_level_id = db.Column(
        db.Integer,
        db.ForeignKey("approval_levels.id", ondelete="SET NULL"),
        nullable=True,
    )
    approver_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    status = db.Column(db.String(20), nullable=False, default="pending", index=True)
    comments = db.Column(db.Text)
    decided_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    quote = db.relationship("Quote", backref=db.backref("approvals", lazy=True, cascade="all, delete-orphan"))
    response = db.relationship("QuoteResponse")
    approver = db.relationship("User")
    level = db.relationship("ApprovalLevel")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "quote_id": self.quote_id,
            "response_id": self.response_id,
            "approval_level_id": self.approval_level_id,
            "approver_id": self.approver_id,
            "status": self.status,
            "comments": self.comments,
            "decided_at": _iso(self.decided_at),
            "created_at": _iso(self.created_at),
        }


# ---------------------------------------------------------------------
# Payments & deliveries
# ---------------------------------------------------------------------
class Payment(db.Model):
    """Escrow payment for an approved quote."""

    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)

    quote_id = db.Column(db.Integer, db.ForeignKey("quotes.id", ondelete="CASCADE"), nullable=False, index=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id", ondelete="SET NULL"), nullable=True, index=True)

    amount = db.Column(db.Numeric(12, 2), nullable=False)
    status = db.Column(db.String(30), nullable=False, default="pending", index=True)

    payment_method = db.Column(db.String(30), nullable=True)
    external_payment_id = db.Column(db.String(100), nullable=True, unique=True, index=True)
    invoice_url = db.Column(db.String(500), nullable=True)

    escrow_release_date = db.Column(db.DateTime, nullable=True)
    auto_release_enabled = db.Column(db.Boolean, nullable=False, default=True)

    offline_notes = db.Column(db.Text, nullable=True)
    dispute_reason = db.Column(db.Text, nullable=True)
    reviewed_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reviewed_at = db.Column(db.DateTime, nullable=True)

    paid_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    last_reminder_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    quote = db.relationship("Quote", backref=db.backref("payments", lazy=True))
    client = db.relationship("Client")
    supplier = db.relationship("Supplier")

    transactions = db.relationship(
        "PaymentTransaction",
        back_populates="payment",
        cascade="all, delete-orphan",
        order_by="PaymentTransaction.id",
    )

    def to_dict(self, include_transactions: bool = False) -> dict:
        from .workflow import PAYMENT_STATUS_LABELS

        data = {
            "id": self.id,
            "quote_id": self.quote_id,
            "client_id": self.client_id,
            "supplier_id": self.supplier_id,
            "amount": _num(self.amount),
            "status": self.status,
            "status_label": PAYMENT_STATUS_LABELS.get(self.status, self.status),
            "payment_method": self.payment_method,
            "external_payment_id": self.external_payment_id,
            "invoice_url": self.invoice_url,
            "escrow_release_date": _iso(self.escrow_release_date),
            "auto_release_enabled": self.auto_release_enabled,
            "dispute_reason": self.dispute_reason,
            "paid_at": _iso(self.paid_at),
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
        }
        if include_transactions:
            data["transactions"] = [t.to_dict() for t in self.transactions]
        return data


class PaymentTransaction(db.Model):
    """Append-only payment history."""

    __tablename__ = "payment_transactions"

    id = db.Column(db.Integer, primary_key=True)

    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True)
    type = db.Column(db.String(40), nullable=False, index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=True)
    description = db.Column(db.String(255), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    details = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    payment = db.relationship("Payment", back_populates="transactions")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "amount": _num(self.amount),
            "description": self.description,
            "user_id": self.user_id,
            "details": self.details,
            "created_at": _iso(self.created_at),
        }


class Delivery(db.Model):
    __tablename__ = "deliveries"

    id = db.Column(db.Integer, primary_key=True)

    quote_id = db.Column(db.Integer, db.ForeignKey("quotes.id", ondelete="CASCADE"), nullable=False, index=True)
    response_id = db.Column(
        db.Integer,
        db.ForeignKey("quote_responses.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id", ondelete="CASCADE"), nullable=False, index=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id", ondelete="SET NULL"), nullable=True, index=True)

    scheduled_date = db.Column(db.DateTime, nullable=False)
    actual_delivery_date = db.Column(db.DateTime, nullable=True)

    status = db.Column(db.String(20), nullable=False, default="scheduled", index=True)
    delivery_address = db.Column(db.String(255), nullable=False)
    tracking_code = db.Column(db.String(100), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    quote = db.relationship("Quote", backref=db.backref("deliveries", lazy=True))
    supplier = db.relationship("Supplier")
    client = db.relationship("Client")
    payment = db.relationship("Payment")

    confirmations = db.relationship(
        "DeliveryConfirmation",
        back_populates="delivery",
        cascade="all, delete-orphan",
        order_by="DeliveryConfirmation.id",
    )

    def to_dict(self) -> dict:
        from .workflow import DELIVERY_STATUS_LABELS

        return {
            "id": self.id,
            "quote_id": self.quote_id,
            "response_id": self.response_id,
            "client_id": self.client_id,
            "supplier_id": self.supplier_id,
            "payment_id": self.payment_id,
            "scheduled_date": _iso(self.scheduled_date),
            "actual_delivery_date": _iso(self.actual_delivery_date),
            "status": self.status,
            "status_label": DELIVERY_STATUS_LABELS.get(self.status, self.status),
            "delivery_address": self.delivery_address,
            "tracking_code": self.tracking_code,
            "notes": self.notes,
            "created_at": _iso(self.created_at),
        }


class DeliveryConfirmation(db.Model):
    __tablename__ = "delivery_confirmations"

    id = db.Column(db.Integer, primary_key=True)

    delivery_id = db.Column(db.Integer, db.ForeignKey("deliveries.id", ondelete="CASCADE"), nullable=False, index=True)
    confirmation_code = db.Column(db.String(6), nullable=False, index=True)
    expires_at = db.Column(db.DateTime, nullable=False)
    is_used = db.Column(db.Boolean, nullable=False, default=False, index=True)
    confirmed_at = db.Column(db.DateTime, nullable=True)
    confirmed_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    delivery = db.relationship("Delivery", back_populates="confirmations")

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at < (now or utcnow())


# ---------------------------------------------------------------------
# Communication
# ---------------------------------------------------------------------
class Notification(db.Model):
    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False)
    type = db.Column(db.String(40), nullable=False, default="info", index=True)
    priority = db.Column(db.String(10), nullable=False, default="normal")
    action_url = db.Column(db.String(255), nullable=True)
    details = db.Column(db.JSON, nullable=True)

    is_read = db.Column(db.Boolean, nullable=False, default=False, index=True)
    read_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    user = db.relationship("User", backref=db.backref("notifications", lazy=True, cascade="all, delete-orphan"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "message": self.message,
            "type": self.type,
            "priority": self.priority,
            "action_url": self.action_url,
            "details": self.details,
            "is_read": self.is_read,
            "created_at": _iso(self.created_at),
        }


class QuoteMessage(db.Model):
    """Chat message on a quote, threaded per supplier."""

    __tablename__ = "quote_messages"

    id = db.Column(db.Integer, primary_key=True)

    quote_id = db.Column(db.Integer, db.ForeignKey("quotes.id", ondelete="CASCADE"), nullable=False, index=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id", ondelete="CASCADE"), nullable=False, index=True)
    sender_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    sender_type = db.Column(db.String(10), nullable=False)  # client | supplier
    content = db.Column(db.Text, nullable=False)
    is_read = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    quote = db.relationship("Quote", backref=db.backref("messages", lazy=True, cascade="all, delete-orphan"))
    sender = db.relationship("User")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "quote_id": self.quote_id,
            "supplier_id": self.supplier_id,
            "sender_id": self.sender_id,
            "sender_type": self.sender_type,
            "sender_name": self.sender.full_name if self.sender else None,
            "content": self.content,
            "is_read": self.is_read,
            "created_at": _iso(self.created_at),
        }


# ---------------------------------------------------------------------
# Contracts & ratings
# ---------------------------------------------------------------------
class Contract(db.Model):
    __tablename__ = "contracts"

    id = db.Column(db.Integer, primary_key=True)

    client_id = db.Column(db.Integer, db.ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id", ondelete="SET NULL"), nullable=True, index=True)
    quote_id = db.Column(db.Integer, db.ForeignKey("quotes.id", ondelete="SET NULL"), nullable=True, index=True)

    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    contract_type = db.Column(db.String(40), nullable=False, default="service")
    value = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))

    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False, index=True)

    status = db.Column(db.String(20), nullable=False, default="active", index=True)
    auto_renewal = db.Column(db.Boolean, nullable=False, default=False)
    alert_days_before = db.Column(db.Integer, nullable=False, default=30)
    last_alert_at = db.Column(db.DateTime, nullable=True)

    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    supplier = db.relationship("Supplier")
    history = db.relationship(
        "ContractHistory",
        back_populates="contract",
        cascade="all, delete-orphan",
        order_by="ContractHistory.id",
    )

    def days_to_expiry(self, today: date | None = None) -> int:
        return (self.end_date - (today or utcnow().date())).days

    def to_dict(self, include_history: bool = False) -> dict:
        data = {
            "id": self.id,
            "client_id": self.client_id,
            "supplier_id": self.supplier_id,
            "quote_id": self.quote_id,
            "title": self.title,
            "description": self.description,
            "contract_type": self.contract_type,
            "value": _num(self.value),
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "days_to_expiry": self.days_to_expiry(),
            "status": self.status,
            "auto_renewal": self.auto_renewal,
            "alert_days_before": self.alert_days_before,
        }
        if include_history:
            data["history"] = [h.to_dict() for h in self.history]
        return data


class ContractHistory(db.Model):
    __tablename__ = "contract_history"

    id = db.Column(db.Integer, primary_key=True)

    contract_id = db.Column(db.Integer, db.ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False, index=True)
    event_type = db.Column(db.String(20), nullable=False)
    previous_end_date = db.Column(db.Date, nullable=True)
    new_end_date = db.Column(db.Date, nullable=True)
    previous_value = db.Column(db.Numeric(12, 2), nullable=True)
    new_value = db.Column(db.Numeric(12, 2), nullable=True)
    notes = db.Column(db.Text)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow)

    contract = db.relationship("Contract", back_populates="history")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "previous_end_date": _iso(self.previous_end_date),
            "new_end_date": _iso(self.new_end_date),
            "previous_value": _num(self.previous_value),
            "new_value": _num(self.new_value),
            "notes": self.notes,
            "user_id": self.user_id,
            "created_at": _iso(self.created_at),
        }


class SupplierRating(db.Model):
    __tablename__ = "supplier_ratings"

    id = db.Column(db.Integer, primary_key=True)

    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id", ondelete="CASCADE"), nullable=False, index=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)
    quote_id = db.Column(db.Integer, db.ForeignKey("quotes.id", ondelete="CASCADE"), nullable=False, index=True)
    rater_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    overall_rating = db.Column(db.Integer, nullable=False)
    quality_rating = db.Column(db.Integer, nullable=True)
    delivery_rating = db.Column(db.Integer, nullable=True)
    service_rating = db.Column(db.Integer, nullable=True)
    price_rating = db.Column(db.Integer, nullable=True)
    comments = db.Column(db.Text)

    created_at = db.Column(db.DateTime, default=utcnow)

    __table_args__ = (
        db.UniqueConstraint("quote_id", "client_id", name="uq_rating_quote_client"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "supplier_id": self.supplier_id,
            "client_id": self.client_id,
            "quote_id": self.quote_id,
            "overall_rating": self.overall_rating,
            "quality_rating": self.quality_rating,
            "delivery_rating": self.delivery_rating,
            "service_rating": self.service_rating,
            "price_rating": self.price_rating,
            "comments": self.comments,
            "created_at": _iso(self.created_at),
        }


# ---------------------------------------------------------------------
# Platform billing
# ---------------------------------------------------------------------
class Subscription(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(db.Integer, primary_key=True)

    plan_id = db.Column(db.Integer, db.ForeignKey("subscription_plans.id", ondelete="RESTRICT"), nullable=False)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id", ondelete="CASCADE"), nullable=True, index=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id", ondelete="CASCADE"), nullable=True, index=True)

    status = db.Column(db.String(20), nullable=False, default="active", index=True)
    billing_cycle = db.Column(db.String(10), nullable=False, default="monthly")
    current_period_start = db.Column(db.DateTime, nullable=False, default=utcnow)
    current_period_end = db.Column(db.DateTime, nullable=False)

    external_subscription_id = db.Column(db.String(100), nullable=True, unique=True, index=True)
    external_customer_id = db.Column(db.String(100), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    plan = db.relationship("SubscriptionPlan")
    client = db.relationship("Client", backref=db.backref("subscriptions", lazy=True))
    supplier = db.relationship("Supplier", backref=db.backref("subscriptions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "plan_id": self.plan_id,
            "client_id": self.client_id,
            "supplier_id": self.supplier_id,
            "status": self.status,
            "billing_cycle": self.billing_cycle,
            "current_period_start": _iso(self.current_period_start),
            "current_period_end": _iso(self.current_period_end),
        }


class Invoice(db.Model):
    __tablename__ = "invoices"

    id = db.Column(db.Integer, primary_key=True)

    subscription_id = db.Column(
        db.Integer,
        db.ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id", ondelete="SET NULL"), nullable=True, index=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id", ondelete="SET NULL"), nullable=True, index=True)

    amount = db.Column(db.Numeric(12, 2), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="open", index=True)
    due_date = db.Column(db.DateTime, nullable=False)
    period_start = db.Column(db.DateTime, nullable=False)
    period_end = db.Column(db.DateTime, nullable=False)
    paid_at = db.Column(db.DateTime, nullable=True)
    # Highest overdue reminder step already sent (days after due_date).
    last_reminder_day = db.Column(db.Integer, nullable=True)

    external_charge_id = db.Column(db.String(100), nullable=True, unique=True, index=True)
    invoice_url = db.Column(db.String(500), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    subscription = db.relationship("Subscription", backref=db.backref("invoices", lazy=True))

    __table_args__ = (
        db.UniqueConstraint("subscription_id", "period_start", name="uq_invoice_subscription_period"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subscription_id": self.subscription_id,
            "client_id": self.client_id,
            "supplier_id": self.supplier_id,
            "amount": _num(self.amount),
            "status": self.status,
            "due_date": _iso(self.due_date),
            "period_start": _iso(self.period_start),
            "period_end": _iso(self.period_end),
            "paid_at": _iso(self.paid_at),
            "invoice_url": self.invoice_url,
        }


# ---------------------------------------------------------------------
# Verification & audit
# ---------------------------------------------------------------------
class VerificationCode(db.Model):
    __tablename__ = "verification_codes"

    id = db.Column(db.Integer, primary_key=True)

    email = db.Column(db.String(255), nullable=False, index=True)
    purpose = db.Column(db.String(40), nullable=False, default="email_verification")
    code_hash = db.Column(db.String(255), nullable=False)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    expires_at = db.Column(db.DateTime, nullable=False)
    used_at = db.Column(db.DateTime, nullable=True)
    verified_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    def set_code(self, code: str):
        self.code_hash = generate_password_hash(code)

    def check_code(self, code: str) -> bool:
        return check_password_hash(self.code_hash, code)


class AuditLog(db.Model):
    """Who did what to which entity, with before/after snapshots."""

    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    username_snapshot = db.Column(db.String(255), nullable=True)

    client_id = db.Column(db.Integer, nullable=True, index=True)
    panel_type = db.Column(db.String(20), nullable=True)

    entity_type = db.Column(db.String(50), nullable=False, index=True)
    entity_id = db.Column(db.String(64), nullable=False, index=True)

    action = db.Column(db.String(50), nullable=False, index=True)

    before_data = db.Column(db.Text, nullable=True)
    after_data = db.Column(db.Text, nullable=True)
    details = db.Column(db.JSON, nullable=True)

    ip_address = db.Column(db.String(45), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    user = db.relationship("User", backref=db.backref("audit_entries", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "username": self.username_snapshot,
            "client_id": self.client_id,
            "panel_type": self.panel_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "before": json.loads(self.before_data) if self.before_data else None,
            "after": json.loads(self.after_data) if self.after_data else None,
            "details": self.details,
            "ip_address": self.ip_address,
            "created_at": _iso(self.created_at),
        }
