from unittest import mock

import pytest
import requests

from cotiz.extensions import db
from cotiz.models import Supplier, User, VerificationCode
from cotiz.services.cnpj import format_cnpj, is_valid_cnpj, lookup_cnpj

from .conftest import OTHER_VALID_CNPJ, VALID_CNPJ, last_code_sent_to, login, make_app

NEW_EMAIL = "comercial@novaforn.test"


# ---------------------------------------------------------------------
# CNPJ
# ---------------------------------------------------------------------
@pytest.mark.parametrize(
    "value,valid",
    [
        ("11.222.333/0001-81", True),
        ("11222333000181", True),
        ("11.444.777/0001-61", True),
        ("11.222.333/0001-82", False),
        ("11111111111111", False),
        ("123", False),
        ("", False),
        (None, False),
    ],
)
def test_is_valid_cnpj(value, valid):
    assert is_valid_cnpj(value) is valid


def test_format_cnpj():
    assert format_cnpj(VALID_CNPJ) == "11.222.333/0001-81"


def test_validate_endpoint_without_registry(app):
    client = app.test_client()
    ok = client.post("/public/cnpj/validate", json={"cnpj": "11.222.333/0001-81"}).get_json()
    assert ok == {
        "valid": True,
        "cnpj": VALID_CNPJ,
        "company": {"cnpj_formatado": "11.222.333/0001-81"},
        "source": "local",
    }

    bad = client.post("/public/cnpj/validate", json={"cnpj": "11.222.333/0001-00"}).get_json()
    assert bad["valid"] is False
    assert "dígitos" in bad["error"]


def _fake_response(status, payload):
    resp = mock.Mock()
    resp.status_code = status
    resp.ok = 200 <= status < 300
    resp.json.return_value = payload
    return resp


@pytest.fixture
def registry_app(tmp_path):
    return make_app(tmp_path, CNPJ_LOOKUP_ENABLED=True)


def test_registry_lookup_reports_inactive_company(registry_app):
    payload = {
        "razao_social": "EMPRESA BAIXADA LTDA",
        "descricao_situacao_cadastral": "BAIXADA",
        "municipio": "SAO PAULO",
        "uf": "SP",
    }
    with registry_app.app_context(), mock.patch("cotiz.services.cnpj.requests.get", return_value=_fake_response(200, payload)):
        result = lookup_cnpj(VALID_CNPJ)
    assert result.valid is False
    assert result.source == "brasilapi"
    assert "BAIXADA" in result.error
    assert result.company["endereco"]["uf"] == "SP"


def test_registry_falls_back_to_receitaws(registry_app):
    receita = {"nome": "FORNECEDORA LTDA", "situacao": "ATIVA", "municipio": "CAMPINAS", "uf": "SP"}
    responses = [requests.ConnectionError("down"), _fake_response(200, receita)]
    with registry_app.app_context(), mock.patch("cotiz.services.cnpj.requests.get", side_effect=responses) as get:
        result = lookup_cnpj(VALID_CNPJ)
    assert get.call_count == 2
    assert result.valid is True
    assert result.source == "receitaws"
    assert result.company["razao_social"] == "FORNECEDORA LTDA"


def test_registry_not_found(registry_app):
    responses = [_fake_response(404, {}), _fake_response(404, {})]
    with registry_app.app_context(), mock.patch("cotiz.services.cnpj.requests.get", side_effect=responses):
        result = lookup_cnpj(VALID_CNPJ)
    assert result.valid is False
    assert result.found is False


def test_registry_outage_is_a_502(registry_app):
    responses = [_fake_response(500, {}), _fake_response(503, {})]
    with mock.patch("cotiz.services.cnpj.requests.get", side_effect=responses):
        resp = registry_app.test_client().post("/public/cnpj/validate", json={"cnpj": VALID_CNPJ})
    assert resp.status_code == 502


def _html_response():
    resp = _fake_response(200, None)
    resp.json.side_effect = ValueError("Expecting value: line 1 column 1 (char 0)")
    return resp


def test_registry_html_page_is_a_502(registry_app):
    receita = {"nome": "FORNECEDORA LTDA", "situacao": "ATIVA", "uf": "SP"}
    with registry_app.app_context():
        with mock.patch("cotiz.services.cnpj.requests.get", side_effect=[_html_response(), _fake_response(200, receita)]):
            assert lookup_cnpj(VALID_CNPJ).source == "receitaws"

    with mock.patch("cotiz.services.cnpj.requests.get", side_effect=[_html_response(), _html_response()]):
        resp = registry_app.test_client().post("/public/cnpj/validate", json={"cnpj": VALID_CNPJ})
    assert resp.status_code == 502
    assert resp.get_json()["error"] == "integration_error"


# ---------------------------------------------------------------------
# Verification codes
# ---------------------------------------------------------------------
def test_verification_code_round(app):
    client = app.test_client()
    assert client.post("/public/verification-codes/send", json={"email": NEW_EMAIL}).status_code == 200
    code = last_code_sent_to(app, NEW_EMAIL)

    with app.app_context():
        record = VerificationCode.query.filter_by(email=NEW_EMAIL).one()
        assert record.code_hash != code

    resp = client.post("/public/verification-codes/verify", json={"email": NEW_EMAIL.upper(), "code": code})
    assert resp.status_code == 200
    assert resp.get_json() == {"verified": True}

    again = client.post("/public/verification-codes/verify", json={"email": NEW_EMAIL, "code": code})
    assert again.status_code == 404
    assert again.get_json()["error"] == "code_not_found"


def test_wrong_codes_are_counted_until_locked(app):
    client = app.test_client()
    client.post("/public/verification-codes/send", json={"email": NEW_EMAIL})
    code = last_code_sent_to(app, NEW_EMAIL)
    wrong = "000000" if code != "000000" else "111111"

    remaining = []
    for _ in range(5):
        resp = client.post("/public/verification-codes/verify", json={"email": NEW_EMAIL, "code": wrong})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "invalid_code"
        remaining.append(resp.get_json()["attempts_remaining"])
    assert remaining == [4, 3, 2, 1, 0]

    locked = client.post("/public/verification-codes/verify", json={"email": NEW_EMAIL, "code": code})
    assert locked.status_code == 400
    assert locked.get_json()["error"] == "too_many_attempts"


def test_new_code_replaces_the_previous_one(app):
    client = app.test_client()
    client.post("/public/verification-codes/send", json={"email": NEW_EMAIL})
    first = last_code_sent_to(app, NEW_EMAIL)
    client.post("/public/verification-codes/send", json={"email": NEW_EMAIL})
    second = last_code_sent_to(app, NEW_EMAIL)

    if first != second:
        stale = client.post("/public/verification-codes/verify", json={"email": NEW_EMAIL, "code": first})
        assert stale.status_code == 400

    # A superseded code does not count as a verified email.
    resp = client.post(
        "/public/suppliers/register",
        json={
            "company_name": "Nova Fornecedora",
            "cnpj": OTHER_VALID_CNPJ,
            "email": NEW_EMAIL,
            "full_name": "Carla",
            "password": "senha-da-carla",
        },
    )
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "email_not_verified"


# ---------------------------------------------------------------------
# Supplier self-registration
# ---------------------------------------------------------------------
def _register(client, code, **overrides):
    body = {
        "company_name": "Nova Fornecedora",
        "cnpj": "11.444.777/0001-61",
        "email": NEW_EMAIL,
        "full_name": "Carla Souza",
        "password": "senha-da-carla",
        "specialties": ["limpeza", " jardinagem ", ""],
        "code": code,
    }
    body.update(overrides)
    return client.post("/public/suppliers/register", json=body)


def test_supplier_registration(app, env):
    client = app.test_client()
    client.post("/public/verification-codes/send", json={"email": NEW_EMAIL})
    resp = _register(client, last_code_sent_to(app, NEW_EMAIL))
    assert resp.status_code == 201
    body = resp.get_json()
    assert body["supplier"]["status"] == "pending"
    assert body["supplier"]["supplier_type"] == "local"
    assert body["supplier"]["client_id"] is None
    assert body["supplier"]["specialties"] == ["jardinagem", "limpeza"]
    assert body["user"]["role"] == "supplier"

    with app.app_context():
        supplier = Supplier.query.filter_by(cnpj=OTHER_VALID_CNPJ).one()
        assert User.query.filter_by(supplier_id=supplier.id).count() == 1

    admin = login(app, "admin@cotiz.test")
    titles = [n["title"] for n in admin.get("/notifications").get_json()["items"]]
    assert "Novo fornecedor cadastrado" in titles

    # Pending suppliers are not offered to clients until certified.
    manager = login(app, "sindico@jardim.test")
    assert body["supplier"]["id"] not in {s["id"] for s in manager.get("/suppliers").get_json()["items"]}

    certified = admin.post(f"/admin/suppliers/{body['supplier']['id']}/certify")
    assert certified.status_code == 200
    assert certified.get_json()["supplier_type"] == "certified"
    assert certified.get_json()["status"] == "active"
    assert body["supplier"]["id"] in {s["id"] for s in manager.get("/suppliers").get_json()["items"]}


def test_registration_requires_code_and_unique_cnpj(app, env):
    client = app.test_client()
    no_code = _register(client, None)
    assert no_code.status_code == 400
    assert no_code.get_json()["error"] == "email_not_verified"

    client.post("/public/verification-codes/send", json={"email": NEW_EMAIL})
    taken = _register(client, last_code_sent_to(app, NEW_EMAIL), cnpj=VALID_CNPJ)
    assert taken.status_code == 409
    assert taken.get_json()["error"] == "cnpj_in_use"

    # The failed request rolled back, so the code is still unverified.
    with app.app_context():
        record = VerificationCode.query.filter_by(email=NEW_EMAIL).order_by(VerificationCode.id.desc()).first()
        assert record.verified_at is None


def test_registration_rejects_invalid_cnpj(app):
    client = app.test_client()
    client.post("/public/verification-codes/send", json={"email": NEW_EMAIL})
    resp = _register(client, last_code_sent_to(app, NEW_EMAIL), cnpj="12.345.678/0001-00")
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "invalid_cnpj"


def test_verified_email_allows_registration_without_code(app):
    client = app.test_client()
    client.post("/public/verification-codes/send", json={"email": NEW_EMAIL})
    client.post(
        "/public/verification-codes/verify",
        json={"email": NEW_EMAIL, "code": last_code_sent_to(app, NEW_EMAIL)},
    )
    resp = _register(client, None)
    assert resp.status_code == 201

    with app.app_context():
        assert db.session.query(Supplier).filter_by(email=NEW_EMAIL).count() == 1
