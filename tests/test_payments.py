import pytest

from cotiz.extensions import db
from cotiz.models import AuditLog, Payment

from .conftest import WEBHOOK_TOKEN, create_sent_quote, login, submit_proposal


@pytest.fixture
def approved(app, env):
    """Approved quote for client A; returns (manager client, quote id)."""
    manager = login(app, "sindico@jardim.test")
    supplier = login(app, "joao@hidraulica.test")
    quote = create_sent_quote(manager, [env.local_supplier])
    proposal = submit_proposal(supplier, quote)
    manager.post(f"/quotes/{quote['id']}/responses/{proposal['id']}/select")
    return manager, quote["id"]


def _webhook(app, event, charge_id, token=WEBHOOK_TOKEN):
    headers = {"asaas-access-token": token} if token is not None else {}
    return app.test_client().post(
        "/webhooks/payments",
        json={"event": event, "payment": {"id": charge_id, "billingType": "PIX"}},
        headers=headers,
    )


def test_create_payment_is_idempotent(app, env, approved):
    manager, quote_id = approved
    first = manager.post("/payments", json={"quote_id": quote_id})
    assert first.status_code == 201
    payment = first.get_json()
    assert payment["status"] == "pending"
    assert payment["amount"] == 210.0
    assert payment["external_payment_id"].startswith("mock_pay_")
    assert payment["invoice_url"]

    second = manager.post("/payments", json={"quote_id": quote_id})
    assert second.status_code == 200
    assert second.get_json()["id"] == payment["id"]


def test_payment_requires_approved_quote(app, env):
    manager = login(app, "sindico@jardim.test")
    quote = create_sent_quote(manager, [env.local_supplier])
    resp = manager.post("/payments", json={"quote_id": quote["id"]})
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "quote_not_approved"


def test_webhook_moves_payment_to_escrow_once(app, env, approved):
    manager, quote_id = approved
    payment = manager.post("/payments", json={"quote_id": quote_id}).get_json()

    resp = _webhook(app, "PAYMENT_RECEIVED", payment["external_payment_id"])
    assert resp.status_code == 200
    assert resp.get_json() == {
        "ok": True,
        "event": "PAYMENT_RECEIVED",
        "handled": True,
        "payment_id": payment["id"],
    }

    detail = manager.get(f"/payments/{payment['id']}").get_json()
    assert detail["status"] == "in_escrow"
    assert detail["payment_method"] == "pix"
    assert detail["escrow_release_date"] is not None

    replay = _webhook(app, "PAYMENT_CONFIRMED", payment["external_payment_id"])
    assert replay.status_code == 200
    assert replay.get_json()["handled"] is False
    detail = manager.get(f"/payments/{payment['id']}").get_json()
    assert [t["type"] for t in detail["transactions"]].count("funds_held") == 1


def test_webhook_with_bad_token_is_rejected_and_audited(app, env, approved):
    manager, quote_id = approved
    payment = manager.post("/payments", json={"quote_id": quote_id}).get_json()

    resp = _webhook(app, "PAYMENT_RECEIVED", payment["external_payment_id"], token="wrong")
    assert resp.status_code == 401
    assert resp.get_json()["error"] == "invalid_webhook_token"

    missing = _webhook(app, "PAYMENT_RECEIVED", payment["external_payment_id"], token=None)
    assert missing.status_code == 401

    with app.app_context():
        attempts = AuditLog.query.filter_by(action="WEBHOOK_UNAUTHORIZED_ATTEMPT").count()
        assert attempts == 2
        assert db.session.get(Payment, payment["id"]).status == "pending"


def test_webhook_for_unknown_charge_is_ignored(app, env):
    resp = _webhook(app, "PAYMENT_RECEIVED", "pay_desconhecido")
    assert resp.status_code == 200
    assert resp.get_json()["handled"] is False


def test_webhook_rejects_non_json_body(app, env):
    resp = app.test_client().post(
        "/webhooks/payments",
        data="not json",
        headers={"asaas-access-token": WEBHOOK_TOKEN, "Content-Type": "text/plain"},
    )
    assert resp.status_code == 400


def test_offline_payment_review(app, env, approved):
    manager, quote_id = approved
    payment = manager.post("/payments", json={"quote_id": quote_id}).get_json()

    missing_notes = manager.post(f"/payments/{payment['id']}/offline", json={})
    assert missing_notes.status_code == 400

    resp = manager.post(f"/payments/{payment['id']}/offline", json={"notes": "TED 123, Banco X"})
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "waiting_confirmation"

    # Only admins confirm offline transfers.
    assert manager.post(f"/payments/{payment['id']}/review", json={"approve": True}).status_code == 403

    admin = login(app, "admin@cotiz.test")
    rejected = admin.post(f"/payments/{payment['id']}/review", json={"approve": False, "notes": "Ilegível"})
    assert rejected.get_json()["status"] == "pending"

    manager.post(f"/payments/{payment['id']}/offline", json={"notes": "TED 124"})
    confirmed = admin.post(f"/payments/{payment['id']}/review", json={"approve": True})
    assert confirmed.status_code == 200
    assert confirmed.get_json()["status"] == "in_escrow"


def test_dispute_and_refund(app, env, approved):
    manager, quote_id = approved
    payment = manager.post("/payments", json={"quote_id": quote_id}).get_json()
    _webhook(app, "PAYMENT_RECEIVED", payment["external_payment_id"])

    no_reason = manager.post(f"/payments/{payment['id']}/dispute", json={})
    assert no_reason.status_code == 400

    disputed = manager.post(f"/payments/{payment['id']}/dispute", json={"reason": "Produto errado"})
    assert disputed.status_code == 200
    body = disputed.get_json()
    assert body["status"] == "disputed"
    assert body["auto_release_enabled"] is False

    admin = login(app, "admin@cotiz.test")
    bad = admin.post(f"/payments/{payment['id']}/resolve", json={"resolution": "split"})
    assert bad.status_code == 400

    refunded = admin.post(f"/payments/{payment['id']}/resolve", json={"resolution": "refund"})
    assert refunded.status_code == 200
    assert refunded.get_json()["status"] == "refunded"


def test_cancel_only_pending(app, env, approved):
    manager, quote_id = approved
    payment = manager.post("/payments", json={"quote_id": quote_id}).get_json()
    resp = manager.post(f"/payments/{payment['id']}/cancel")
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "cancelled"

    again = manager.post(f"/payments/{payment['id']}/cancel")
    assert again.status_code == 409

    # A cancelled charge can be replaced by a new one.
    fresh = manager.post("/payments", json={"quote_id": quote_id})
    assert fresh.status_code == 201
    assert fresh.get_json()["id"] != payment["id"]


def test_payments_are_tenant_scoped(app, env, approved):
    manager, quote_id = approved
    payment = manager.post("/payments", json={"quote_id": quote_id}).get_json()

    other = login(app, "sindico@aurora.test")
    assert other.get(f"/payments/{payment['id']}").status_code == 404
    assert other.get("/payments").get_json()["total"] == 0

    supplier = login(app, "joao@hidraulica.test")
    assert supplier.get("/payments").get_json()["total"] == 1
    assert supplier.post(f"/payments/{payment['id']}/dispute", json={"reason": "x"}).status_code == 403
