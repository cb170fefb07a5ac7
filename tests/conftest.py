"""
Shared fixtures.

Every test gets its own SQLite file under tmp_path and a fresh app. Requests run
outside any pushed app context so each test client keeps its own logged-in user;
database setup and assertions open `with app.app_context():` explicitly.
"""

from __future__ import annotations

import re
from datetime import timedelta
from types import SimpleNamespace

import pytest

from config import Config
from cotiz import create_app
from cotiz.extensions import db
from cotiz.models import (
    Client,
    DeliveryConfirmation,
    Supplier,
    SubscriptionPlan,
    User,
    utcnow,
)

PASSWORD = "senha-forte-123"
WEBHOOK_TOKEN = "whk-test-token"
VALID_CNPJ = "11222333000181"
OTHER_VALID_CNPJ = "11444777000161"


def make_app(tmp_path, **overrides):
    settings = {
        "TESTING": True,
        "SECRET_KEY": "test-secret",
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'cotiz-test.db'}",
        "WTF_CSRF_ENABLED": False,
        "EMAIL_BACKEND": "log",
        "PAYMENT_GATEWAY_MODE": "mock",
        "PAYMENT_WEBHOOK_TOKEN": WEBHOOK_TOKEN,
        "CNPJ_LOOKUP_ENABLED": False,
        "AI_API_KEY": None,
        "LOG_LEVEL": "WARNING",
        "PUBLIC_BASE_URL": "http://cotiz.test",
    }
    settings.update(overrides)
    app = create_app(type("TestConfig", (Config,), settings))
    with app.app_context():
        db.create_all()
    return app


@pytest.fixture
def app(tmp_path):
    app = make_app(tmp_path)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


def login(app, email, password=PASSWORD):
    """New test client logged in as `email`."""
    client = app.test_client()
    resp = client.post("/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.get_json()
    return client


def outbox(app):
    return app.extensions.get("cotiz_outbox", [])


def last_code_sent_to(app, email):
    """6-digit code from the latest email sent to `email`."""
    for message in reversed(outbox(app)):
        if message.to == email:
            match = re.search(r"\b(\d{6})\b", message.text)
            if match:
                return match.group(1)
    raise AssertionError(f"no code emailed to {email}")


class Factory:
    """Creates rows inside its own app context and returns ids."""

    def __init__(self, app):
        self.app = app

    def plan(self, name="basic", **fields):
        with self.app.app_context():
            plan = SubscriptionPlan(
                name=name,
                display_name=fields.pop("display_name", name.title()),
                audience=fields.pop("audience", "client"),
                monthly_price=fields.pop("monthly_price", 99),
                yearly_price=fields.pop("yearly_price", 990),
                **fields,
            )
            db.session.add(plan)
            db.session.commit()
            return plan.id

    def client(self, name="Condomínio Jardim", **fields):
        with self.app.app_context():
            client = Client(
                name=name,
                email=fields.pop("email", f"{name.split()[-1].lower()}@condominio.test"),
                client_type=fields.pop("client_type", "condominium"),
                address=fields.pop("address", "Rua das Flores, 100 - São Paulo/SP"),
                **fields,
            )
            db.session.add(client)
            db.session.commit()
            return client.id

    def supplier(self, name, email, **fields):
        with self.app.app_context():
            supplier = Supplier(
                name=name,
                email=email,
                supplier_type=fields.pop("supplier_type", "local"),
                status=fields.pop("status", "active"),
                specialties=fields.pop("specialties", []),
                **fields,
            )
            db.session.add(supplier)
            db.session.commit()
            return supplier.id

    def user(self, email, role, full_name=None, password=PASSWORD, **fields):
        with self.app.app_context():
            user = User(email=email, full_name=full_name or email.split("@")[0], role=role, **fields)
            user.set_password(password)
            db.session.add(user)
            db.session.commit()
            return user.id


@pytest.fixture
def factory(app):
    return Factory(app)


@pytest.fixture
def env(app, factory):
    """
    A small marketplace:
    - admin
    - client A (condominium) with a manager and a collaborator
    - client B with a manager
    - local supplier of A and a certified supplier, each with one user
    """
    ns = SimpleNamespace()
    ns.admin_id = factory.user("admin@cotiz.test", "admin", full_name="Admin")

    ns.client_a = factory.client("Condomínio Jardim")
    ns.client_b = factory.client("Condomínio Aurora")
    ns.manager_a = factory.user("sindico@jardim.test", "manager", client_id=ns.client_a)
    ns.collab_a = factory.user("zelador@jardim.test", "collaborator", client_id=ns.client_a)
    ns.manager_b = factory.user("sindico@aurora.test", "manager", client_id=ns.client_b)

    ns.local_supplier = factory.supplier(
        "Hidráulica Local", "contato@hidraulica.test", client_id=ns.client_a, specialties=["hidráulica"]
    )
    ns.certified_supplier = factory.supplier(
        "Elétrica Certificada",
        "vendas@eletrica.test",
        supplier_type="certified",
        cnpj=VALID_CNPJ,
        state="SP",
        specialties=["elétrica"],
    )
    ns.local_user = factory.user("joao@hidraulica.test", "supplier", supplier_id=ns.local_supplier)
    ns.certified_user = factory.user("ana@eletrica.test", "supplier", supplier_id=ns.certified_supplier)
    return ns


# ---------------------------------------------------------------------
# Flow helpers
# ---------------------------------------------------------------------
def create_sent_quote(manager, supplier_ids, *, quantity=2, title="Troca de bombas"):
    """Create a quote with one item, invite suppliers and send it. Returns the quote detail."""
    resp = manager.post(
        "/quotes",
        json={
            "title": title,
            "description": "Substituição das bombas de recalque",
            "items": [{"product_name": "Bomba centrífuga 1cv", "quantity": quantity, "unit": "un"}],
            "supplier_ids": supplier_ids,
        },
    )
    assert resp.status_code == 201, resp.get_json()
    quote = resp.get_json()
    resp = manager.post(f"/quotes/{quote['id']}/send")
    assert resp.status_code == 200, resp.get_json()
    detail = manager.get(f"/quotes/{quote['id']}").get_json()
    assert detail["status"] == "sent"
    return detail


def submit_proposal(supplier_client, quote, unit_price="100.00", shipping="10.00"):
    item_id = quote["items"][0]["id"]
    resp = supplier_client.post(
        f"/supplier/quotes/{quote['id']}/proposal",
        json={
            "items": [{"quote_item_id": item_id, "unit_price": unit_price}],
            "shipping_cost": shipping,
            "delivery_days": 5,
            "warranty_months": 12,
            "payment_terms": "30 dias",
        },
    )
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()


def pay_via_webhook(app, manager, quote_id):
    """Create the escrow payment and confirm it through the gateway webhook."""
    resp = manager.post("/payments", json={"quote_id": quote_id})
    assert resp.status_code == 201, resp.get_json()
    payment = resp.get_json()
    hook = app.test_client().post(
        "/webhooks/payments",
        json={"event": "PAYMENT_RECEIVED", "payment": {"id": payment["external_payment_id"], "billingType": "PIX"}},
        headers={"asaas-access-token": WEBHOOK_TOKEN},
    )
    assert hook.status_code == 200, hook.get_json()
    return payment


def accept_delivery(supplier_client, response_id, days_ahead=3):
    when = (utcnow() + timedelta(days=days_ahead)).replace(microsecond=0)
    resp = supplier_client.post(
        f"/supplier/responses/{response_id}/accept",
        json={"scheduled_date": when.isoformat(), "notes": "Entrega pela portaria"},
    )
    assert resp.status_code == 200, resp.get_json()
    return resp.get_json()["delivery"]


def delivery_code(app, delivery_id):
    with app.app_context():
        confirmation = (
            DeliveryConfirmation.query.filter_by(delivery_id=delivery_id, is_used=False)
            .order_by(DeliveryConfirmation.id.desc())
            .first()
        )
        return confirmation.confirmation_code


def complete_purchase(app, env):
    """
    Run a whole purchase for client A with the local supplier:
    quote -> proposal -> approval -> escrow -> delivery confirmed.
    """
    manager = login(app, "sindico@jardim.test")
    supplier = login(app, "joao@hidraulica.test")

    quote = create_sent_quote(manager, [env.local_supplier])
    proposal = submit_proposal(supplier, quote)
    resp = manager.post(f"/quotes/{quote['id']}/responses/{proposal['id']}/select")
    assert resp.status_code == 200, resp.get_json()

    payment = pay_via_webhook(app, manager, quote["id"])
    delivery = accept_delivery(supplier, proposal["id"])
    code = delivery_code(app, delivery["id"])
    resp = manager.post("/deliveries/confirm", json={"code": code})
    assert resp.status_code == 200, resp.get_json()
    return SimpleNamespace(
        manager=manager,
        supplier=supplier,
        quote_id=quote["id"],
        response_id=proposal["id"],
        payment_id=payment["id"],
        delivery_id=delivery["id"],
        code=code,
    )
