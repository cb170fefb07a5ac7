from datetime import timedelta

from cotiz.extensions import db
from cotiz.models import Delivery, Payment, Quote, QuoteToken, Supplier, utcnow

from .conftest import (
    accept_delivery,
    complete_purchase,
    create_sent_quote,
    delivery_code,
    login,
    outbox,
    pay_via_webhook,
    submit_proposal,
)


def test_create_quote_assigns_local_code(app, env):
    manager = login(app, "sindico@jardim.test")
    resp = manager.post("/quotes", json={"title": "Pintura da fachada", "items": [{"product_name": "Tinta", "quantity": 10}]})
    assert resp.status_code == 201
    quote = resp.get_json()
    year = utcnow().year
    assert quote["local_code"] == f"COT-{year}-0001"
    assert quote["status"] == "draft"
    assert quote["delivery_address"].startswith("Rua das Flores")

    second = manager.post("/quotes", json={"title": "Jardinagem"}).get_json()
    assert second["local_code"] == f"COT-{year}-0002"


def test_create_quote_requires_title(app, env):
    manager = login(app, "sindico@jardim.test")
    resp = manager.post("/quotes", json={"items": []})
    assert resp.status_code == 400
    body = resp.get_json()
    assert body["error"] == "validation_error"
    assert body["fields"] == ["title"]
    assert body["request_id"]


def test_send_requires_items_and_suppliers(app, env):
    manager = login(app, "sindico@jardim.test")
    quote = manager.post("/quotes", json={"title": "Sem itens"}).get_json()
    resp = manager.post(f"/quotes/{quote['id']}/send")
    assert resp.status_code == 400


def test_send_issues_one_token_per_supplier_and_emails_them(app, env):
    manager = login(app, "sindico@jardim.test")
    quote = create_sent_quote(manager, [env.local_supplier, env.certified_supplier])

    with app.app_context():
        tokens = QuoteToken.query.filter_by(quote_id=quote["id"]).all()
        assert {t.supplier_id for t in tokens} == {env.local_supplier, env.certified_supplier}
        assert all(not t.is_expired() for t in tokens)

    recipients = {m.to for m in outbox(app)}
    assert {"contato@hidraulica.test", "vendas@eletrica.test"} <= recipients
    invitation = next(m for m in outbox(app) if m.to == "vendas@eletrica.test")
    assert "/r/" in invitation.text


def test_sent_quote_cannot_be_edited(app, env):
    manager = login(app, "sindico@jardim.test")
    quote = create_sent_quote(manager, [env.local_supplier])
    resp = manager.patch(f"/quotes/{quote['id']}", json={"title": "Outro"})
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "quote_not_editable"


def test_proposals_move_quote_through_receiving_to_received(app, env):
    manager = login(app, "sindico@jardim.test")
    local = login(app, "joao@hidraulica.test")
    certified = login(app, "ana@eletrica.test")
    quote = create_sent_quote(manager, [env.local_supplier, env.certified_supplier])

    first = submit_proposal(local, quote, unit_price="120.00")
    assert first["total_amount"] == 240.0
    assert first["grand_total"] == 250.0
    assert manager.get(f"/quotes/{quote['id']}").get_json()["status"] == "receiving"

    submit_proposal(certified, quote, unit_price="90,00", shipping="0")
    assert manager.get(f"/quotes/{quote['id']}").get_json()["status"] == "received"

    responses = manager.get(f"/quotes/{quote['id']}/responses").get_json()["items"]
    assert [r["supplier_id"] for r in responses] == [env.certified_supplier, env.local_supplier]


def test_supplier_can_revise_a_submitted_proposal(app, env):
    manager = login(app, "sindico@jardim.test")
    local = login(app, "joao@hidraulica.test")
    quote = create_sent_quote(manager, [env.local_supplier])

    first = submit_proposal(local, quote, unit_price="100.00")
    second = submit_proposal(local, quote, unit_price="80.00")
    assert second["id"] == first["id"]
    assert second["total_amount"] == 160.0


def test_proposal_after_deadline_is_refused(app, env):
    manager = login(app, "sindico@jardim.test")
    local = login(app, "joao@hidraulica.test")
    quote = create_sent_quote(manager, [env.local_supplier])
    with app.app_context():
        row = db.session.get(Quote, quote["id"])
        row.deadline = (utcnow() - timedelta(days=1)).date()
        db.session.commit()

    resp = local.post(
        f"/supplier/quotes/{quote['id']}/proposal",
        json={"items": [{"quote_item_id": quote["items"][0]["id"], "unit_price": "10"}]},
    )
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "quote_deadline_passed"


def test_quick_response_through_public_token(app, env):
    manager = login(app, "sindico@jardim.test")
    quote = create_sent_quote(manager, [env.certified_supplier])
    with app.app_context():
        token = QuoteToken.query.filter_by(quote_id=quote["id"]).first()
        code = token.short_code

    public = app.test_client()
    view = public.get(f"/public/quote-tokens/{code.lower()}")
    assert view.status_code == 200
    data = view.get_json()
    assert data["quote"]["title"] == "Troca de bombas"
    assert data["supplier"]["id"] == env.certified_supplier
    assert data["response"] is None

    resp = public.post(
        f"/public/quote-tokens/{code}/response",
        json={"items": [{"quote_item_id": quote["items"][0]["id"], "unit_price": "75"}]},
    )
    assert resp.status_code == 201
    response = resp.get_json()
    assert response["submitted_via"] == "token"
    assert response["delivery_days"] == 7
    assert response["warranty_months"] == 12
    assert response["payment_terms"] == "30 dias"

    with app.app_context():
        token = QuoteToken.query.filter_by(short_code=code).first()
        assert token.access_count == 1
        assert token.used_at is not None


def test_expired_and_unknown_tokens(app, env):
    manager = login(app, "sindico@jardim.test")
    quote = create_sent_quote(manager, [env.certified_supplier])
    with app.app_context():
        token = QuoteToken.query.filter_by(quote_id=quote["id"]).first()
        token.expires_at = utcnow() - timedelta(minutes=1)
        db.session.commit()
        code = token.short_code

    public = app.test_client()
    expired = public.get(f"/public/quote-tokens/{code}")
    assert expired.status_code == 410
    assert expired.get_json()["error"] == "token_expired"

    missing = public.get("/public/quote-tokens/NAOEXISTE")
    assert missing.status_code == 404
    assert missing.get_json()["error"] == "token_not_found"


def test_select_without_approval_level_approves_and_rejects_others(app, env):
    manager = login(app, "sindico@jardim.test")
    local = login(app, "joao@hidraulica.test")
    certified = login(app, "ana@eletrica.test")
    quote = create_sent_quote(manager, [env.local_supplier, env.certified_supplier])
    winner = submit_proposal(local, quote)
    loser = submit_proposal(certified, quote, unit_price="150")

    resp = manager.post(f"/quotes/{quote['id']}/responses/{winner['id']}/select")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["approval_required"] is False
    assert body["quote"]["status"] == "approved"
    assert body["quote"]["supplier_id"] == env.local_supplier
    assert body["quote"]["total"] == 210.0
    assert body["response"]["status"] == "approved"

    responses = {r["id"]: r for r in manager.get(f"/quotes/{quote['id']}/responses").get_json()["items"]}
    assert responses[loser["id"]]["status"] == "rejected"

    titles = [n["title"] for n in certified.get("/notifications").get_json()["items"]]
    assert "Proposta não selecionada" in titles


def test_accept_requires_approved_proposal(app, env):
    manager = login(app, "sindico@jardim.test")
    local = login(app, "joao@hidraulica.test")
    quote = create_sent_quote(manager, [env.local_supplier])
    proposal = submit_proposal(local, quote)

    when = (utcnow() + timedelta(days=2)).isoformat()
    resp = local.post(f"/supplier/responses/{proposal['id']}/accept", json={"scheduled_date": when})
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "proposal_not_approved"


def test_full_purchase_releases_escrow_and_finalizes(app, env):
    flow = complete_purchase(app, env)

    quote = flow.manager.get(f"/quotes/{flow.quote_id}").get_json()
    assert quote["status"] == "finalized"
    assert quote["finalized_at"] is not None

    payment = flow.manager.get(f"/payments/{flow.payment_id}").get_json()
    assert payment["status"] == "completed"
    types = [t["type"] for t in payment["transactions"]]
    assert types[:1] == ["created"]
    assert "funds_held" in types
    assert types[-1] == "funds_released"

    with app.app_context():
        delivery = db.session.get(Delivery, flow.delivery_id)
        assert delivery.status == "delivered"
        assert delivery.actual_delivery_date is not None
        assert db.session.get(Supplier, env.local_supplier).completed_orders == 1

    again = flow.manager.post("/deliveries/confirm", json={"code": flow.code})
    assert again.status_code == 400
    assert again.get_json()["error"] == "CODE_ALREADY_USED"


def test_delivery_code_is_emailed_to_client_users(app, env):
    manager = login(app, "sindico@jardim.test")
    local = login(app, "joao@hidraulica.test")
    quote = create_sent_quote(manager, [env.local_supplier])
    proposal = submit_proposal(local, quote)
    manager.post(f"/quotes/{quote['id']}/responses/{proposal['id']}/select")
    delivery = accept_delivery(local, proposal["id"])

    code = delivery_code(app, delivery["id"])
    mails = [m for m in outbox(app) if m.to == "sindico@jardim.test" and code in m.text]
    assert mails

    # Supplier never sees the code.
    assert code not in str(local.get(f"/deliveries/{delivery['id']}").get_json())


def test_delivery_before_payment_releases_on_webhook(app, env):
    manager = login(app, "sindico@jardim.test")
    local = login(app, "joao@hidraulica.test")
    quote = create_sent_quote(manager, [env.local_supplier])
    proposal = submit_proposal(local, quote)
    manager.post(f"/quotes/{quote['id']}/responses/{proposal['id']}/select")

    delivery = accept_delivery(local, proposal["id"])
    confirm = manager.post("/deliveries/confirm", json={"code": delivery_code(app, delivery["id"])})
    assert confirm.status_code == 200
    assert confirm.get_json()["quote"]["status"] == "approved"

    pay_via_webhook(app, manager, quote["id"])
    with app.app_context():
        payment = Payment.query.filter_by(quote_id=quote["id"]).one()
        assert payment.status == "completed"
        assert db.session.get(Quote, quote["id"]).status == "finalized"


def test_rating_after_delivery(app, env):
    flow = complete_purchase(app, env)

    resp = flow.manager.post(
        f"/quotes/{flow.quote_id}/rating",
        json={"overall_rating": 4, "quality_rating": 5, "comments": "Entrega rápida"},
    )
    assert resp.status_code == 201
    with app.app_context():
        assert float(db.session.get(Supplier, env.local_supplier).rating) == 4.0

    again = flow.manager.post(f"/quotes/{flow.quote_id}/rating", json={"overall_rating": 5})
    assert again.status_code == 409
    assert again.get_json()["error"] == "already_rated"


def test_rating_before_delivery_is_refused(app, env):
    manager = login(app, "sindico@jardim.test")
    quote = create_sent_quote(manager, [env.local_supplier])
    resp = manager.post(f"/quotes/{quote['id']}/rating", json={"overall_rating": 5})
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "not_delivered"
