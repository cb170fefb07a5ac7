from cotiz.extensions import db
from cotiz.models import Subscription, User

from .conftest import VALID_CNPJ, login, outbox


def test_create_client_with_manager_and_plan(app, env, factory):
    factory.plan("pro", monthly_price=299)
    admin = login(app, "admin@cotiz.test")
    resp = admin.post(
        "/admin/clients",
        json={
            "name": "Condomínio Solar",
            "email": "ADM@Solar.test",
            "cnpj": "11.444.777/0001-61",
            "plan": "pro",
            "manager": {"email": "sindica@solar.test", "full_name": "Marta"},
        },
    )
    assert resp.status_code == 201
    body = resp.get_json()
    assert body["email"] == "adm@solar.test"
    assert body["cnpj"] == "11444777000161"
    assert body["manager"]["role"] == "manager"
    assert body["subscription_plan_id"] is not None
    assert any(m.to == "sindica@solar.test" for m in outbox(app))

    with app.app_context():
        assert Subscription.query.filter_by(client_id=body["id"], status="active").count() == 1

    duplicate = admin.post("/admin/clients", json={"name": "Outro", "email": "o@o.test", "cnpj": "11444777000161"})
    assert duplicate.status_code == 409
    assert duplicate.get_json()["error"] == "cnpj_in_use"

    bad_cnpj = admin.post("/admin/clients", json={"name": "Outro", "email": "o@o.test", "cnpj": "123"})
    assert bad_cnpj.status_code == 400


def test_parent_must_be_an_administradora(app, env):
    admin = login(app, "admin@cotiz.test")
    not_admin = admin.post(
        "/admin/clients",
        json={"name": "Filho", "email": "f@f.test", "parent_client_id": env.client_b},
    )
    assert not_admin.status_code == 400

    parent = admin.post(
        "/admin/clients", json={"name": "Administradora Beta", "email": "beta@adm.test", "client_type": "administradora"}
    ).get_json()
    child = admin.patch(f"/admin/clients/{env.client_b}", json={"parent_client_id": parent["id"]})
    assert child.status_code == 200
    assert child.get_json()["parent_client_id"] == parent["id"]

    listed = admin.get("/admin/clients?client_type=administradora").get_json()
    assert [c["name"] for c in listed["items"]] == ["Administradora Beta"]


def test_admin_users(app, env):
    admin = login(app, "admin@cotiz.test")
    managers = admin.get("/admin/users?role=manager").get_json()
    assert managers["total"] == 2

    demote_self = admin.patch(f"/admin/users/{env.admin_id}", json={"role": "manager"})
    assert demote_self.status_code == 400

    promoted = admin.patch(f"/admin/users/{env.collab_a}", json={"role": "manager"})
    assert promoted.get_json()["role"] == "manager"

    no_client = admin.patch(f"/admin/users/{env.local_user}", json={"role": "manager"})
    assert no_client.status_code == 400

    deactivated = admin.patch(f"/admin/users/{env.collab_a}", json={"is_active": False})
    assert deactivated.get_json()["is_active"] is False
    resp = app.test_client().post("/auth/login", json={"email": "zelador@jardim.test", "password": "senha-forte-123"})
    assert resp.status_code == 403

    supplier_user = admin.post(
        "/admin/users",
        json={"email": "novo@eletrica.test", "full_name": "Novo", "role": "supplier", "client_id": env.client_a},
    )
    assert supplier_user.status_code == 400


def test_plans_and_subscriptions(app, env):
    admin = login(app, "admin@cotiz.test")
    plan = admin.post("/admin/plans", json={"name": "Premium", "monthly_price": "499,90", "max_suppliers": 50})
    assert plan.status_code == 201
    body = plan.get_json()
    assert body["name"] == "premium"
    assert body["monthly_price"] == 499.9
    assert body["yearly_price"] == 499.9

    assert admin.post("/admin/plans", json={"name": "premium", "monthly_price": 1}).status_code == 409
    assert admin.patch(f"/admin/plans/{body['id']}", json={"monthly_price": "-1"}).status_code == 400

    updated = admin.patch(f"/admin/plans/{body['id']}", json={"yearly_price": "4999,00"})
    assert updated.get_json()["yearly_price"] == 4999.0

    sub = admin.post(
        "/admin/subscriptions",
        json={"plan": body["id"], "supplier_id": env.certified_supplier, "billing_cycle": "yearly"},
    )
    assert sub.status_code == 201
    assert sub.get_json()["supplier_id"] == env.certified_supplier
    assert sub.get_json()["billing_cycle"] == "yearly"

    both = admin.post(
        "/admin/subscriptions",
        json={"plan": body["id"], "client_id": env.client_a, "supplier_id": env.certified_supplier},
    )
    assert both.status_code == 400

    assert admin.post("/admin/subscriptions", json={"plan": "inexistente", "client_id": env.client_a}).status_code == 400


def test_plan_supplier_limit(app, env):
    admin = login(app, "admin@cotiz.test")
    plan = admin.post("/admin/plans", json={"name": "mini", "monthly_price": 10, "max_suppliers": 1}).get_json()
    admin.patch(f"/admin/clients/{env.client_a}", json={"subscription_plan_id": plan["id"]})

    manager = login(app, "sindico@jardim.test")
    resp = manager.post("/suppliers", json={"name": "Jardinagem", "email": "jardim@verde.test"})
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "plan_limit_reached"


def test_supplier_status_and_certification(app, env):
    admin = login(app, "admin@cotiz.test")
    no_cnpj = admin.post(f"/admin/suppliers/{env.local_supplier}/certify")
    assert no_cnpj.status_code == 400

    suspended = admin.post(f"/admin/suppliers/{env.certified_supplier}/status", json={"status": "suspended", "reason": "Fraude"})
    assert suspended.get_json()["status"] == "suspended"
    assert admin.post(f"/admin/suppliers/{env.certified_supplier}/status", json={"status": "x"}).status_code == 400

    manager = login(app, "sindico@jardim.test")
    ids = {s["id"] for s in manager.get("/suppliers").get_json()["items"]}
    assert env.certified_supplier not in ids

    listed = admin.get("/admin/suppliers?status=suspended").get_json()
    assert [s["cnpj"] for s in listed["items"]] == [VALID_CNPJ]


def test_audit_log_listing(app, env):
    admin = login(app, "admin@cotiz.test")
    admin.patch(f"/admin/clients/{env.client_a}", json={"phone": "1133334444"})

    entries = admin.get(f"/admin/audit-logs?entity_type=Client&entity_id={env.client_a}").get_json()
    assert entries["total"] == 1
    entry = entries["items"][0]
    assert entry["action"] == "UPDATE"
    assert entry["user_id"] == env.admin_id
    assert entry["before"]["phone"] is None
    assert entry["after"]["phone"] == "1133334444"

    with app.app_context():
        assert db.session.get(User, env.admin_id).role == "admin"
    assert login(app, "sindico@jardim.test").get("/admin/audit-logs").status_code == 403
