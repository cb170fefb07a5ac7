"""
cotiz/services/cnpj.py

CNPJ (Brazilian company registry number) validation.

1. Local check: 14 digits, not all equal, both check digits.
2. Registry lookup: BrasilAPI first, ReceitaWS as fallback.
   Only companies whose registration status is ATIVA are valid.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests
from flask import current_app

from ..errors import IntegrationError
from ..utils import normalize_digits

log = logging.getLogger(__name__)

BRASILAPI_URL = "https://brasilapi.com.br/api/cnpj/v1/{cnpj}"
RECEITAWS_URL = "https://receitaws.com.br/v1/cnpj/{cnpj}"

_WEIGHTS_1 = (5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)
_WEIGHTS_2 = (6, 5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)


def _check_digit(digits: str, weights) -> int:
    total = sum(int(d) * w for d, w in zip(digits, weights))
    remainder = total % 11
    return 0 if remainder < 2 else 11 - remainder


def is_valid_cnpj(value: str | None) -> bool:
    cnpj = normalize_digits(value)
    if len(cnpj) != 14:
        return False
    if cnpj == cnpj[0] * 14:
        return False
    if int(cnpj[12]) != _check_digit(cnpj[:12], _WEIGHTS_1):
        return False
    return int(cnpj[13]) == _check_digit(cnpj[:13], _WEIGHTS_2)


def format_cnpj(value: str | None) -> str:
    cnpj = normalize_digits(value)
    if len(cnpj) != 14:
        return cnpj
    return f"{cnpj[:2]}.{cnpj[2:5]}.{cnpj[5:8]}/{cnpj[8:12]}-{cnpj[12:]}"


@dataclass
class CnpjLookup:
    valid: bool
    cnpj: str
    found: bool = True
    company: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    source: Optional[str] = None

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {"valid": self.valid, "cnpj": self.cnpj}
        if self.company:
            data["company"] = self.company
        if self.error:
            data["error"] = self.error
        if self.source:
            data["source"] = self.source
        return data


def _inactive_error(situacao: str) -> str:
    return f"Situação cadastral: {situacao}. Apenas empresas ATIVAS podem se cadastrar."


def _from_brasilapi(cnpj: str, data: Dict[str, Any]) -> CnpjLookup:
    situacao = data.get("descricao_situacao_cadastral") or "Desconhecida"
    active = situacao.upper() == "ATIVA"
    company = {
        "razao_social": data.get("razao_social") or "",
        "nome_fantasia": data.get("nome_fantasia") or data.get("razao_social") or "",
        "situacao_cadastral": situacao,
        "data_situacao_cadastral": data.get("data_situacao_cadastral") or "",
        "cnpj_formatado": format_cnpj(cnpj),
        "endereco": {
            "logradouro": data.get("logradouro") or "",
            "numero": data.get("numero") or "",
            "complemento": data.get("complemento") or "",
            "bairro": data.get("bairro") or "",
            "municipio": data.get("municipio") or "",
            "uf": data.get("uf") or "",
            "cep": data.get("cep") or "",
        },
    }
    if data.get("cnae_fiscal_descricao"):
        company["atividade_principal"] = {
            "codigo": str(data.get("cnae_fiscal") or ""),
            "descricao": data["cnae_fiscal_descricao"],
        }
    return CnpjLookup(
        valid=active,
        cnpj=cnpj,
        company=company,
        error=None if active else _inactive_error(situacao),
        source="brasilapi",
    )


def _from_receitaws(cnpj: str, data: Dict[str, Any]) -> CnpjLookup:
    if data.get("status") == "ERROR":
        return CnpjLookup(
            valid=False,
            cnpj=cnpj,
            found=False,
            error=data.get("message") or "CNPJ não encontrado",
            source="receitaws",
        )
    situacao = data.get("situacao") or "Desconhecida"
    active = situacao.upper() == "ATIVA"
    company = {
        "razao_social": data.get("nome") or "",
        "nome_fantasia": data.get("fantasia") or data.get("nome") or "",
        "situacao_cadastral": situacao,
        "data_situacao_cadastral": data.get("data_situacao") or "",
        "cnpj_formatado": format_cnpj(cnpj),
        "endereco": {
            "logradouro": data.get("logradouro") or "",
            "numero": data.get("numero") or "",
            "complemento": data.get("complemento") or "",
            "bairro": data.get("bairro") or "",
            "municipio": data.get("municipio") or "",
            "uf": data.get("uf") or "",
            "cep": data.get("cep") or "",
        },
    }
    activities = data.get("atividade_principal") or []
    if activities:
        company["atividade_principal"] = {
            "codigo": activities[0].get("code") or "",
            "descricao": activities[0].get("text") or "",
        }
    return CnpjLookup(
        valid=active,
        cnpj=cnpj,
        company=company,
        error=None if active else _inactive_error(situacao),
        source="receitaws",
    )


def lookup_cnpj(value: str) -> CnpjLookup:
    """
    Validate a CNPJ locally and, when CNPJ_LOOKUP_ENABLED, against the registry.

    Raises IntegrationError when both registries fail for reasons other than "not found".
    """
    cnpj = normalize_digits(value)
    if not is_valid_cnpj(cnpj):
        return CnpjLookup(valid=False, cnpj=cnpj, found=False, error="CNPJ inválido. Verifique os dígitos.")

    if not current_app.config.get("CNPJ_LOOKUP_ENABLED", True):
        return CnpjLookup(valid=True, cnpj=cnpj, company={"cnpj_formatado": format_cnpj(cnpj)}, source="local")

    timeout = int(current_app.config.get("CNPJ_LOOKUP_TIMEOUT_SECONDS", 10))
    headers = {"Accept": "application/json"}

    primary_status = None
    try:
        resp = requests.get(BRASILAPI_URL.format(cnpj=cnpj), headers=headers, timeout=timeout)
        primary_status = resp.status_code
        if resp.ok:
            return _from_brasilapi(cnpj, resp.json())
    except (requests.RequestException, ValueError) as exc:
        log.warning("BrasilAPI lookup failed for %s: %s", cnpj, exc)

    log.info("BrasilAPI unavailable for %s, trying ReceitaWS", cnpj)
    try:
        resp = requests.get(RECEITAWS_URL.format(cnpj=cnpj), headers=headers, timeout=timeout)
    except requests.RequestException as exc:
        raise IntegrationError("Erro ao consultar CNPJ. Tente novamente.", details=str(exc))

    if resp.ok:
        try:
            data = resp.json()
        except ValueError as exc:
            raise IntegrationError("Erro ao consultar CNPJ. Tente novamente.", details=f"receitaws: {exc}")
        return _from_receitaws(cnpj, data)
    if primary_status == 404 or resp.status_code == 404:
        return CnpjLookup(
            valid=False,
            cnpj=cnpj,
            found=False,
            error="CNPJ não encontrado na Receita Federal",
        )
    raise IntegrationError(
        "Erro ao consultar CNPJ. Tente novamente.",
        details=f"brasilapi={primary_status} receitaws={resp.status_code}",
    )
