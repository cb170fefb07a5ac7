import io
import json
from datetime import datetime
from unittest import mock

import pytest

from cotiz.insights import linear_trend, monthly_spend
from cotiz.services import ai

from .conftest import complete_purchase, create_sent_quote, login


# ---------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------
def test_linear_trend():
    assert linear_trend([1, 2, 3]) == {"slope": 1.0, "intercept": 1.0}
    assert linear_trend([5]) == {"slope": 0.0, "intercept": 5}
    assert linear_trend([]) == {"slope": 0.0, "intercept": 0.0}
    assert linear_trend([4, 4, 4, 4])["slope"] == 0.0


def test_fallback_lead_score(app):
    lead = {"company_name": " Condomínio Vista ", "units": 100, "segment": "Condomínio residencial", "state": "SP", "email": "x@y.test"}
    with app.app_context():
        scored = ai.fallback_lead_score(lead, segment="condomínio", region="sp")
    assert scored["company_name"] == "Condomínio Vista"
    assert scored["score"] == 70
    assert scored["source"] == "rules"
    assert "segmento aderente" in scored["reasoning"]

    assert ai.fallback_lead_score({"company_name": "Vazio"})["reasoning"] == "dados insuficientes"


@pytest.mark.parametrize(
    "content",
    ['```json\n{"a": 1}\n```', '```\n{"a": 1}\n```', '{"a": 1}'],
)
def test_strip_code_fences(content):
    assert json.loads(ai.strip_code_fences(content)) == {"a": 1}


def test_normalize_extraction(app):
    raw = {
        "items": [{"product_name": "Tinta acrílica", "quantity": "2", "unit_price": "10,50"}, "lixo"],
        "shipping_cost": 5,
        "delivery_days": "7",
        "payment_terms": "À vista",
    }
    with app.app_context():
        result = ai.normalize_extraction(raw)
    assert result["items"] == [{"product_name": "Tinta acrílica", "quantity": 2, "unit_price": 10.5, "total": 21.0}]
    assert result["total_amount"] == 26.0
    assert result["warranty_months"] == 12
    assert result["delivery_days"] == 7


def test_normalize_extraction_keeps_fractional_quantities(app):
    raw = {"items": [{"name": "Cabo 2,5mm", "quantity": "2,5", "unit_price": "4"}, {"name": "Luva", "quantity": "0"}]}
    with app.app_context():
        result = ai.normalize_extraction(raw)
    assert [(i["quantity"], i["total"]) for i in result["items"]] == [(2.5, 10.0), (1.0, 0.0)]
    assert result["total_amount"] == 10.0


# ---------------------------------------------------------------------
# AI gateway
# ---------------------------------------------------------------------
def _completion(content, status=200):
    resp = mock.Mock()
    resp.status_code = status
    resp.ok = 200 <= status < 300
    resp.json.return_value = {"choices": [{"message": {"content": content}}]}
    return resp


def test_chat_requires_api_key(app):
    with app.app_context(), pytest.raises(ai.ServiceUnavailable):
        ai.chat([{"role": "user", "content": "oi"}])


def test_lead_scoring_with_ai(app):
    app.config["AI_API_KEY"] = "test-key"
    content = '```json\n{"leads": [{"company_name": "A", "score": 40}, {"company_name": "B", "score": "130"}]}\n```'
    with app.app_context(), mock.patch("cotiz.services.ai.requests.post", return_value=_completion(content)) as post:
        ranked = ai.score_leads([{"company_name": "A"}, {"company_name": "B"}])
    assert [(r["company_name"], r["score"], r["source"]) for r in ranked] == [("B", 100, "ai"), ("A", 40, "ai")]
    assert post.call_args.kwargs["headers"]["Authorization"] == "Bearer test-key"


def test_ai_rate_limit_is_reported(app):
    app.config["AI_API_KEY"] = "test-key"
    with app.app_context(), mock.patch("cotiz.services.ai.requests.post", return_value=_completion("", status=429)):
        with pytest.raises(ai.IntegrationError) as excinfo:
            ai.chat([{"role": "user", "content": "oi"}])
    assert excinfo.value.http_status == 429
    assert excinfo.value.code == "ai_rate_limited"


def test_extract_proposal_endpoint(app, env):
    manager = login(app, "sindico@jardim.test")
    quote = create_sent_quote(manager, [env.local_supplier])
    supplier = login(app, "joao@hidraulica.test")
    url = f"/supplier/quotes/{quote['id']}/extract-proposal"

    not_pdf = supplier.post(url, data={"file": (io.BytesIO(b"abc"), "proposta.txt")}, content_type="multipart/form-data")
    assert not_pdf.status_code == 400

    unconfigured = supplier.post(url, data={"file": (io.BytesIO(b"%PDF"), "proposta.pdf")}, content_type="multipart/form-data")
    assert unconfigured.status_code in (400, 503)

    app.config["AI_API_KEY"] = "test-key"
    content = json.dumps({"items": [{"product_name": "Bomba", "quantity": 2, "unit_price": 100}], "shipping_cost": 10})
    with mock.patch("cotiz.services.ai.extract_pdf_text", return_value="Bomba 2x R$ 100,00"), mock.patch(
        "cotiz.services.ai.requests.post", return_value=_completion(content)
    ):
        resp = supplier.post(url, data={"file": (io.BytesIO(b"%PDF-1.4"), "proposta.pdf")}, content_type="multipart/form-data")
    assert resp.status_code == 200
    proposal = resp.get_json()["proposal"]
    assert proposal["total_amount"] == 210.0
    assert proposal["items"][0]["total"] == 200.0

    # Not invited: the quote stays hidden.
    other = login(app, "ana@eletrica.test")
    hidden = other.post(url, data={"file": (io.BytesIO(b"%PDF"), "proposta.pdf")}, content_type="multipart/form-data")
    assert hidden.status_code == 404


def test_admin_lead_scoring_endpoint(app, env):
    admin = login(app, "admin@cotiz.test")
    resp = admin.post(
        "/admin/leads/score",
        json={
            "segment": "condomínio",
            "region": "SP",
            "leads": [
                {"company_name": "Pequeno", "units": 10},
                {"company_name": "Grande", "units": 200, "segment": "condomínio", "state": "SP", "phone": "11999990000"},
            ],
        },
    )
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["ai"] is False
    assert [item["company_name"] for item in body["items"]] == ["Grande", "Pequeno"]

    assert admin.post("/admin/leads/score", json={"leads": []}).status_code == 400
    assert login(app, "sindico@jardim.test").post("/admin/leads/score", json={"leads": [{}]}).status_code == 403


# ---------------------------------------------------------------------
# Dashboards and reports
# ---------------------------------------------------------------------
def test_dashboards_per_role(app, env):
    complete_purchase(app, env)

    client_panel = login(app, "sindico@jardim.test").get("/dashboard").get_json()
    assert client_panel["panel"] == "client"
    assert client_panel["quotes_by_status"] == {"finalized": 1}
    assert client_panel["total_spent"] == 210.0
    assert client_panel["in_escrow"] == 0.0

    supplier_panel = login(app, "joao@hidraulica.test").get("/dashboard").get_json()
    assert supplier_panel["panel"] == "supplier"
    assert supplier_panel["revenue"] == 210.0
    assert supplier_panel["completed_orders"] == 1
    assert supplier_panel["win_rate"] == 1.0

    admin_panel = login(app, "admin@cotiz.test").get("/dashboard").get_json()
    assert admin_panel["panel"] == "admin"
    assert admin_panel["clients"] == 2
    assert admin_panel["payments_by_status"]["completed"] == {"count": 1, "amount": 210.0}

    other_panel = login(app, "sindico@aurora.test").get("/dashboard").get_json()
    assert other_panel["quotes_total"] == 0


def test_spending_report_csv(app, env):
    complete_purchase(app, env)
    manager = login(app, "sindico@jardim.test")

    resp = manager.get("/reports/spending?format=csv")
    assert resp.status_code == 200
    assert resp.mimetype == "text/csv"
    lines = resp.get_data(as_text=True).strip().splitlines()
    assert lines[0] == "month,supplier_id,supplier_name,payments,total"
    assert lines[1].endswith(f",{env.local_supplier},Hidráulica Local,1,210.0")

    body = manager.get("/reports/spending").get_json()
    assert body["total"] == 210.0

    assert login(app, "sindico@aurora.test").get(f"/reports/spending?client_id={env.client_a}").status_code == 403


def test_insights(app, env):
    complete_purchase(app, env)
    data = login(app, "sindico@jardim.test").get("/insights?months=3").get_json()
    assert len(data["monthly_spend"]) == 3
    assert data["monthly_spend"][-1]["total"] == 210.0
    assert data["top_suppliers"][0]["supplier_id"] == env.local_supplier
    assert data["avg_proposals_per_quote"] == 1.0
    assert "narrative" not in data

    with app.app_context():
        series = monthly_spend([env.client_a], months=2, now=datetime(2030, 1, 15))
    assert [p["month"] for p in series] == ["2029-12", "2030-01"]
