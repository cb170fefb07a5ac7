from datetime import date, timedelta

import pytest

from cotiz.billing import create_subscription, handle_gateway_event, mark_overdue, process_contract_alerts, run_billing
from cotiz.extensions import db
from cotiz.models import Client, Contract, Invoice, Subscription, SubscriptionPlan, utcnow

from .conftest import login, outbox


# ---------------------------------------------------------------------
# Subscriptions and invoices
# ---------------------------------------------------------------------
@pytest.fixture
def subscribed(app, env, factory):
    """Client A on a monthly plan whose first period ended ten days ago."""
    plan_id = factory.plan("basic", monthly_price=149)
    with app.app_context():
        subscription = create_subscription(
            db.session.get(SubscriptionPlan, plan_id),
            client=db.session.get(Client, env.client_a),
            start=utcnow() - timedelta(days=40),
        )
        db.session.commit()
        return subscription.id


def test_run_billing_issues_one_invoice_per_period(app, env, subscribed):
    with app.app_context():
        issued = run_billing()
        assert len(issued) == 1
        invoice = issued[0]
        assert invoice.status == "open"
        assert float(invoice.amount) == 149.0
        assert invoice.external_charge_id.startswith("mock_pay_")
        assert invoice.client_id == env.client_a

        subscription = db.session.get(Subscription, subscribed)
        assert subscription.current_period_end > utcnow()

        assert run_billing() == []

    assert any(m.subject == "Nova fatura disponível" for m in outbox(app))


def test_overdue_invoice_suspends_and_payment_reactivates(app, env, subscribed):
    with app.app_context():
        invoice = run_billing()[0]
        invoice_id, charge_id, due = invoice.id, invoice.external_charge_id, invoice.due_date

        assert mark_overdue(now=due + timedelta(days=2)) == {"past_due": 1, "suspended": 0}
        assert mark_overdue(now=due + timedelta(days=8)) == {"past_due": 0, "suspended": 1}
        assert db.session.get(Invoice, invoice_id).status == "past_due"
        assert db.session.get(Client, env.client_a).is_active is False
        assert db.session.get(Subscription, subscribed).status == "suspended"

    manager = login(app, "sindico@jardim.test")
    assert manager.post("/quotes", json={"title": "Bloqueada"}).get_json()["error"] == "account_suspended"
    listed = manager.get("/billing/invoices?status=past_due").get_json()
    assert [i["id"] for i in listed["items"]] == [invoice_id]

    with app.app_context():
        result = handle_gateway_event({"event": "PAYMENT_RECEIVED", "payment": {"id": charge_id}})
        db.session.commit()
        assert result["handled"] is True
        assert result["invoice_id"] == invoice_id
        assert db.session.get(Invoice, invoice_id).status == "paid"
        assert db.session.get(Client, env.client_a).is_active is True
        assert db.session.get(Subscription, subscribed).status == "active"

    assert manager.post("/quotes", json={"title": "Liberada"}).status_code == 201


def test_pay_invoice_returns_checkout(app, env, subscribed):
    with app.app_context():
        invoice_id = run_billing()[0].id

    manager = login(app, "sindico@jardim.test")
    resp = manager.post(f"/billing/invoices/{invoice_id}/pay")
    assert resp.status_code == 200
    assert resp.get_json()["checkout_url"].startswith("http://cotiz.test/mock-checkout/")

    other = login(app, "sindico@aurora.test")
    assert other.post(f"/billing/invoices/{invoice_id}/pay").status_code == 404
    assert other.get("/billing/invoices").get_json()["total"] == 0

    subs = manager.get("/billing/subscription").get_json()["items"]
    assert subs[0]["plan"]["name"] == "basic"


# ---------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------
def _create_contract(manager, **overrides):
    today = utcnow().date()
    body = {
        "title": "Manutenção de elevadores",
        "start_date": today.isoformat(),
        "end_date": (today + timedelta(days=365)).isoformat(),
        "value": "1500,00",
        "contract_type": "maintenance",
    }
    body.update(overrides)
    return manager.post("/contracts", json=body)


def test_contract_lifecycle(app, env):
    manager = login(app, "sindico@jardim.test")
    resp = _create_contract(manager, supplier_id=env.local_supplier)
    assert resp.status_code == 201
    contract = resp.get_json()
    assert contract["value"] == 1500.0
    assert [h["event_type"] for h in contract["history"]] == ["created"]

    end = date.fromisoformat(contract["end_date"])
    earlier = manager.post(f"/contracts/{contract['id']}/renew", json={"new_end_date": end.isoformat()})
    assert earlier.status_code == 400

    renewed = manager.post(
        f"/contracts/{contract['id']}/renew",
        json={"new_end_date": (end + timedelta(days=180)).isoformat(), "new_value": "1650,00"},
    ).get_json()
    assert renewed["value"] == 1650.0
    assert renewed["history"][-1]["event_type"] == "renewed"

    cancelled = manager.post(f"/contracts/{contract['id']}/cancel", json={"reason": "Troca de fornecedor"})
    assert cancelled.get_json()["status"] == "cancelled"

    again = manager.post(
        f"/contracts/{contract['id']}/renew",
        json={"new_end_date": (end + timedelta(days=400)).isoformat()},
    )
    assert again.status_code == 409
    assert again.get_json()["error"] == "contract_cancelled"


def test_contract_validation_and_scoping(app, env):
    manager = login(app, "sindico@jardim.test")
    today = utcnow().date()
    backwards = _create_contract(manager, end_date=(today - timedelta(days=1)).isoformat())
    assert backwards.status_code == 400

    created = _create_contract(manager).get_json()
    other = login(app, "sindico@aurora.test")
    assert other.get(f"/contracts/{created['id']}").status_code == 404
    assert _create_contract(other, supplier_id=env.local_supplier).status_code == 400

    collaborator = login(app, "zelador@jardim.test")
    assert collaborator.get("/contracts").get_json()["total"] == 1
    assert _create_contract(collaborator).status_code == 403


def test_expiring_within_filter(app, env):
    manager = login(app, "sindico@jardim.test")
    today = utcnow().date()
    soon = _create_contract(manager, title="Limpeza", end_date=(today + timedelta(days=20)).isoformat()).get_json()
    _create_contract(manager, title="Portaria")

    items = manager.get("/contracts?expiring_within=30").get_json()["items"]
    assert [c["id"] for c in items] == [soon["id"]]


def test_contract_alert_job(app, env):
    manager = login(app, "sindico@jardim.test")
    today = utcnow().date()
    _create_contract(manager, title="Vence logo", end_date=(today + timedelta(days=10)).isoformat())
    _create_contract(
        manager,
        title="Já venceu",
        start_date=(today - timedelta(days=366)).isoformat(),
        end_date=(today - timedelta(days=1)).isoformat(),
    )
    renewable = _create_contract(
        manager,
        title="Renova sozinho",
        start_date=(today - timedelta(days=366)).isoformat(),
        end_date=(today - timedelta(days=1)).isoformat(),
        auto_renewal=True,
    ).get_json()

    now = utcnow()
    with app.app_context():
        assert process_contract_alerts(now) == {"alerted": 1, "expired": 1, "renewed": 1}
        assert process_contract_alerts(now) == {"alerted": 0, "expired": 0, "renewed": 0}

        contract = db.session.get(Contract, renewable["id"])
        assert contract.end_date == today - timedelta(days=1) + timedelta(days=365)
        assert [h.event_type for h in contract.history] == ["created", "renewed"]
        assert Contract.query.filter_by(status="expired").count() == 1

    titles = [n["title"] for n in manager.get("/notifications").get_json()["items"]]
    assert "Contrato próximo do vencimento" in titles
    assert "Contrato expirado" in titles
    assert any(m.to == "sindico@jardim.test" and "Vence logo" in m.text for m in outbox(app))
