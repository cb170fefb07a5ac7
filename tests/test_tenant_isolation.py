from cotiz.extensions import db
from cotiz.models import Client

from .conftest import create_sent_quote, login, submit_proposal


def test_other_client_cannot_see_quote(app, env):
    manager_a = login(app, "sindico@jardim.test")
    quote = create_sent_quote(manager_a, [env.local_supplier])

    manager_b = login(app, "sindico@aurora.test")
    resp = manager_b.get(f"/quotes/{quote['id']}")
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "not_found"
    assert manager_b.get("/quotes").get_json()["total"] == 0
    assert manager_b.get(f"/quotes/{quote['id']}/messages").status_code == 404


def test_local_supplier_only_visible_to_its_client(app, env):
    manager_a = login(app, "sindico@jardim.test")
    manager_b = login(app, "sindico@aurora.test")

    ids_a = {s["id"] for s in manager_a.get("/suppliers").get_json()["items"]}
    ids_b = {s["id"] for s in manager_b.get("/suppliers").get_json()["items"]}
    assert ids_a == {env.local_supplier, env.certified_supplier}
    assert ids_b == {env.certified_supplier}

    assert manager_b.get(f"/suppliers/{env.local_supplier}").status_code == 404

    resp = manager_b.post("/quotes", json={"title": "Teste", "supplier_ids": [env.local_supplier]})
    assert resp.status_code == 400


def test_supplier_only_sees_quotes_it_was_invited_to(app, env):
    manager = login(app, "sindico@jardim.test")
    quote = create_sent_quote(manager, [env.local_supplier])

    certified = login(app, "ana@eletrica.test")
    assert certified.get(f"/supplier/quotes/{quote['id']}").status_code == 404
    assert certified.get("/supplier/quotes").get_json()["total"] == 0

    resp = certified.post(
        f"/supplier/quotes/{quote['id']}/proposal",
        json={"items": [{"quote_item_id": quote["items"][0]["id"], "unit_price": "1"}]},
    )
    assert resp.status_code == 404

    local = login(app, "joao@hidraulica.test")
    listed = local.get("/supplier/quotes").get_json()["items"]
    assert [q["id"] for q in listed] == [quote["id"]]


def test_draft_quotes_are_hidden_from_suppliers(app, env):
    manager = login(app, "sindico@jardim.test")
    draft = manager.post("/quotes", json={"title": "Rascunho", "supplier_ids": [env.local_supplier]}).get_json()
    local = login(app, "joao@hidraulica.test")
    assert local.get(f"/supplier/quotes/{draft['id']}").status_code == 404


def test_supplier_cannot_see_competing_proposals(app, env):
    manager = login(app, "sindico@jardim.test")
    quote = create_sent_quote(manager, [env.local_supplier, env.certified_supplier])
    submit_proposal(login(app, "ana@eletrica.test"), quote, unit_price="55")

    local = login(app, "joao@hidraulica.test")
    view = local.get(f"/supplier/quotes/{quote['id']}").get_json()
    assert "55" not in str(view.get("my_response"))
    assert "responses" not in view


def test_role_boundaries(app, env):
    manager = login(app, "sindico@jardim.test")
    collaborator = login(app, "zelador@jardim.test")
    supplier = login(app, "joao@hidraulica.test")
    quote = create_sent_quote(manager, [env.local_supplier])
    proposal = submit_proposal(supplier, quote)

    # Collaborators prepare quotes but cannot pick the winner.
    assert collaborator.post("/quotes", json={"title": "Lâmpadas"}).status_code == 201
    resp = collaborator.post(f"/quotes/{quote['id']}/responses/{proposal['id']}/select")
    assert resp.status_code == 403
    assert resp.get_json()["error"] == "permission_denied"
    resp = collaborator.post(f"/quotes/{quote['id']}/status", json={"status": "cancelled"})
    assert resp.status_code == 403

    # Suppliers stay out of the client area, clients out of the supplier portal and admin.
    assert supplier.get("/quotes").status_code == 403
    assert manager.get("/supplier/quotes").status_code == 403
    assert manager.get("/admin/clients").status_code == 403


def test_anonymous_requests_get_json_401(app, env):
    resp = app.test_client().get("/quotes")
    assert resp.status_code == 401
    body = resp.get_json()
    assert body["error"] == "auth_required"
    assert resp.headers["X-Request-Id"] == body["request_id"]


def test_admin_sees_every_client(app, env):
    create_sent_quote(login(app, "sindico@jardim.test"), [env.local_supplier])
    create_sent_quote(login(app, "sindico@aurora.test"), [env.certified_supplier])
    admin = login(app, "admin@cotiz.test")
    assert admin.get("/quotes").get_json()["total"] == 2


def test_administradora_sees_its_condominiums(app, env, factory):
    admin_client = factory.client("Administradora Alfa", client_type="administradora")
    with app.app_context():
        db.session.get(Client, env.client_a).parent_client_id = admin_client
        db.session.commit()
    factory.user("gestor@alfa.test", "manager", client_id=admin_client)

    create_sent_quote(login(app, "sindico@jardim.test"), [env.local_supplier])
    create_sent_quote(login(app, "sindico@aurora.test"), [env.certified_supplier])

    gestor = login(app, "gestor@alfa.test")
    quotes = gestor.get("/quotes").get_json()["items"]
    assert {q["client_id"] for q in quotes} == {env.client_a}

    # Acting on behalf of a child condominium needs an explicit client_id.
    resp = gestor.post("/quotes", json={"title": "Portaria", "client_id": env.client_a})
    assert resp.status_code == 201
    assert resp.get_json()["client_id"] == env.client_a
    resp = gestor.post("/quotes", json={"title": "Portaria", "client_id": env.client_b})
    assert resp.status_code == 403


def test_suspended_client_is_read_only_except_billing(app, env):
    manager = login(app, "sindico@jardim.test")
    with app.app_context():
        db.session.get(Client, env.client_a).is_active = False
        db.session.commit()

    resp = manager.post("/quotes", json={"title": "Bloqueada"})
    assert resp.status_code == 403
    assert resp.get_json()["error"] == "account_suspended"

    assert manager.get("/quotes").status_code == 200
    assert manager.get("/billing/invoices").status_code == 200
    assert manager.post("/auth/logout").status_code == 200
