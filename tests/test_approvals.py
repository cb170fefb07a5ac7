import pytest

from .conftest import create_sent_quote, login, submit_proposal


@pytest.fixture
def level(app, env):
    """Proposals from R$ 1.000 need the collaborator's approval."""
    manager = login(app, "sindico@jardim.test")
    resp = manager.post(
        "/approvals/levels",
        json={"name": "Acima de mil", "amount_threshold": "1000,00", "approvers": [env.collab_a]},
    )
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()


def _selected_quote(app, env, unit_price):
    manager = login(app, "sindico@jardim.test")
    supplier = login(app, "joao@hidraulica.test")
    quote = create_sent_quote(manager, [env.local_supplier])
    proposal = submit_proposal(supplier, quote, unit_price=unit_price, shipping="0")
    resp = manager.post(f"/quotes/{quote['id']}/responses/{proposal['id']}/select")
    assert resp.status_code == 200, resp.get_json()
    return manager, quote, proposal, resp.get_json()


def test_level_approvers_must_belong_to_the_client(app, env):
    manager = login(app, "sindico@jardim.test")
    resp = manager.post(
        "/approvals/levels",
        json={"name": "Forjado", "amount_threshold": 10, "approvers": [env.manager_b]},
    )
    assert resp.status_code == 400
    assert resp.get_json()["invalid_ids"] == [env.manager_b]


def test_collaborator_cannot_create_levels(app, env):
    collaborator = login(app, "zelador@jardim.test")
    resp = collaborator.post(
        "/approvals/levels",
        json={"name": "Nível", "amount_threshold": 10, "approvers": [env.collab_a]},
    )
    assert resp.status_code == 403


def test_amount_below_threshold_skips_approval(app, env, level):
    _, _, _, body = _selected_quote(app, env, unit_price="100")
    assert body["approval_required"] is False
    assert body["quote"]["status"] == "approved"


def test_amount_above_threshold_goes_under_review(app, env, level):
    manager, quote, proposal, body = _selected_quote(app, env, unit_price="600")
    assert body["approval_required"] is True
    assert body["quote"]["status"] == "under_review"
    assert body["response"]["status"] == "selected"
    assert [a["approver_id"] for a in body["approvals"]] == [env.collab_a]

    # Payment is only possible after approval.
    resp = manager.post("/payments", json={"quote_id": quote["id"]})
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "quote_not_approved"


def test_approver_approves(app, env, level):
    manager, quote, proposal, body = _selected_quote(app, env, unit_price="600")
    approver = login(app, "zelador@jardim.test")

    pending = approver.get("/approvals").get_json()["items"]
    assert len(pending) == 1
    assert pending[0]["quote"]["id"] == quote["id"]

    resp = approver.post(f"/approvals/{pending[0]['id']}/decision", json={"decision": "approve", "comments": "Ok"})
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["approval"]["status"] == "approved"
    assert data["quote"]["status"] == "approved"
    assert data["quote"]["total"] == 1200.0

    again = approver.post(f"/approvals/{pending[0]['id']}/decision", json={"decision": "approve"})
    assert again.status_code == 409
    assert again.get_json()["error"] == "approval_already_decided"


def test_approver_rejects(app, env, level):
    manager, quote, proposal, body = _selected_quote(app, env, unit_price="600")
    approver = login(app, "zelador@jardim.test")
    approval_id = body["approvals"][0]["id"]

    resp = approver.post(f"/approvals/{approval_id}/decision", json={"decision": "reject", "comments": "Caro demais"})
    assert resp.status_code == 200
    assert resp.get_json()["quote"]["status"] == "rejected"

    responses = manager.get(f"/quotes/{quote['id']}/responses").get_json()["items"]
    assert responses[0]["status"] == "submitted"

    titles = [n["title"] for n in manager.get("/notifications").get_json()["items"]]
    assert "Cotação rejeitada na aprovação" in titles

    # A rejected quote goes back to draft for another round.
    restored = manager.post(f"/quotes/{quote['id']}/status", json={"status": "draft"})
    assert restored.status_code == 200
    assert restored.get_json()["status"] == "draft"


def test_previous_round_proposal_selected_after_resend(app, env, level):
    manager, quote, proposal, body = _selected_quote(app, env, unit_price="600")
    approver = login(app, "zelador@jardim.test")
    approver.post(f"/approvals/{body['approvals'][0]['id']}/decision", json={"decision": "reject"})

    assert manager.post(f"/quotes/{quote['id']}/status", json={"status": "draft"}).status_code == 200
    assert manager.delete(f"/approvals/levels/{level['id']}").status_code == 200
    sent = manager.post(f"/quotes/{quote['id']}/send")
    assert sent.status_code == 200
    assert sent.get_json()["quote"]["status"] == "sent"

    resp = manager.post(f"/quotes/{quote['id']}/responses/{proposal['id']}/select")
    assert resp.status_code == 200, resp.get_json()
    data = resp.get_json()
    assert data["approval_required"] is False
    assert data["quote"]["status"] == "approved"
    assert data["response"]["status"] == "approved"


def test_only_the_designated_approver_decides(app, env, level):
    manager, _, _, body = _selected_quote(app, env, unit_price="600")
    resp = manager.post(f"/approvals/{body['approvals'][0]['id']}/decision", json={"decision": "approve"})
    assert resp.status_code == 403

    other_tenant = login(app, "sindico@aurora.test")
    resp = other_tenant.post(f"/approvals/{body['approvals'][0]['id']}/decision", json={"decision": "approve"})
    assert resp.status_code == 403


def test_invalid_decision(app, env, level):
    _, _, _, body = _selected_quote(app, env, unit_price="600")
    approver = login(app, "zelador@jardim.test")
    resp = approver.post(f"/approvals/{body['approvals'][0]['id']}/decision", json={"decision": "maybe"})
    assert resp.status_code == 400
