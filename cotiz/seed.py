"""
cotiz/seed.py

Seed default subscription plans and bootstrap the first platform admin.

Rules:
- Safe to run multiple times (idempotent).
- Existing plans are updated in place (prices/limits), never duplicated.
"""

from __future__ import annotations

from decimal import Decimal

from .extensions import db
from .models import SubscriptionPlan, User


DEFAULT_PLANS = [
    # name, display_name, audience, monthly, yearly, max_quotes, max_suppliers, max_users
    ("basic", "Básico", "client", Decimal("99.00"), Decimal("990.00"), 50, 20, 3),
    ("professional", "Profissional", "client", Decimal("199.00"), Decimal("1990.00"), 200, 100, 10),
    ("enterprise", "Empresarial", "client", Decimal("499.00"), Decimal("4990.00"), None, None, None),
    ("supplier_free", "Fornecedor Gratuito", "supplier", Decimal("0.00"), Decimal("0.00"), None, None, 1),
    ("supplier_premium", "Fornecedor Premium", "supplier", Decimal("79.00"), Decimal("790.00"), None, None, 5),
]


def seed_default_plans() -> int:
    """Create or update the default plans. Returns how many were created."""
    created = 0
    for name, display, audience, monthly, yearly, max_quotes, max_suppliers, max_users in DEFAULT_PLANS:
        plan = SubscriptionPlan.query.filter_by(name=name).first()
        if plan is None:
            plan = SubscriptionPlan(name=name)
            db.session.add(plan)
            created += 1
        plan.display_name = display
        plan.audience = audience
        plan.monthly_price = monthly
        plan.yearly_price = yearly
        plan.max_quotes = max_quotes
        plan.max_suppliers = max_suppliers
        plan.max_users = max_users
    db.session.commit()
    return created


def bootstrap_admin(email: str, password: str, full_name: str = "Administrador") -> User:
    """Create the platform admin once; an existing user with that email is returned unchanged."""
    email = email.strip().lower()
    user = User.query.filter_by(email=email).first()
    if user is not None:
        return user
    user = User(email=email, full_name=full_name, role="admin", is_active=True)
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    return user
