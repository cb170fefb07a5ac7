"""
cotiz/services/ai.py

AI-assisted analysis through an OpenAI-compatible chat completions gateway, plus PDF
text extraction with pypdf.

Uses:
- extract_proposal_from_pdf: supplier proposal PDF -> structured items/terms.
- score_leads: ranks prospect companies (deterministic fallback when AI is not configured).
- narrate_insights: optional narrative over computed spending metrics.
"""

from __future__ import annotations

import io
import json
import logging
import re
from decimal import Decimal
from typing import Any, Dict, List, Optional

import requests
from flask import current_app
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from ..errors import IntegrationError, ServiceUnavailable, ValidationError
from ..utils import money, parse_decimal, parse_optional_int

log = logging.getLogger(__name__)

# Upper bound of characters sent to the model.
MAX_PROMPT_CHARS = 30_000

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)

PROPOSAL_SYSTEM_PROMPT = """Você é um especialista em extrair dados de propostas comerciais e orçamentos de fornecedores brasileiros.

Extraia:
1. items: para cada produto/serviço, product_name, quantity (padrão 1), unit_price (decimal em reais) e total.
2. shipping_cost (0 se grátis), delivery_days (inteiro), warranty_months (padrão 12),
   payment_terms (ex: "30 dias"), notes e total_amount.

Valores monetários devem ser numéricos (1234.56, não "R$ 1.234,56").
Responda SOMENTE com um objeto JSON válido, sem markdown ou texto adicional."""

LEADS_SYSTEM_PROMPT = """Você é um especialista em qualificação de leads B2B para um marketplace de compras de condomínios.
Para cada empresa recebida, atribua score (0-100) e um motivo curto.
Responda SOMENTE com JSON: {"leads": [{"company_name": "...", "score": 0, "reasoning": "..."}]}"""

INSIGHTS_SYSTEM_PROMPT = """Você é um analista de compras. Com base nas métricas recebidas, escreva em português
um parágrafo curto com a tendência de gastos e uma recomendação prática."""


# ---------------------------------------------------------------------
# PDF
# ---------------------------------------------------------------------
def extract_pdf_text(data: bytes) -> str:
    """Concatenate the text of every page (ValidationError for unreadable PDFs)."""
    try:
        reader = PdfReader(io.BytesIO(data))
        pages = [page.extract_text() or "" for page in reader.pages]
    except (PdfReadError, ValueError) as exc:
        raise ValidationError("Não foi possível ler o PDF enviado.", details=str(exc))
    return "\n".join(p.strip() for p in pages if p.strip())


# ---------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------
def ai_configured() -> bool:
    return bool(current_app.config.get("AI_API_KEY"))


def strip_code_fences(content: str) -> str:
    return _FENCE_RE.sub("", (content or "").strip()).strip()


def chat(messages: List[Dict[str, Any]], *, max_tokens: int = 4096) -> str:
    """Send a chat completion and return the first choice's content."""
    cfg = current_app.config
    api_key = cfg.get("AI_API_KEY")
    if not api_key:
        raise ServiceUnavailable("Configuração de IA não encontrada.")

    url = f"{cfg['AI_GATEWAY_URL'].rstrip('/')}/chat/completions"
    try:
        resp = requests.post(
            url,
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            json={"model": cfg["AI_MODEL"], "messages": messages, "max_tokens": max_tokens},
            timeout=int(cfg.get("AI_TIMEOUT_SECONDS", 60)),
        )
    except requests.RequestException as exc:
        raise IntegrationError("Serviço de IA indisponível.", details=str(exc))

    if resp.status_code == 429:
        raise IntegrationError(
            "Limite de requisições da IA atingido. Tente novamente em instantes.",
            code="ai_rate_limited",
            http_status=429,
        )
    if resp.status_code == 402:
        raise IntegrationError("Créditos de IA esgotados.", code="ai_payment_required", http_status=402)
    if not resp.ok:
        raise IntegrationError("Serviço de IA indisponível.", details=f"status={resp.status_code}")

    try:
        return resp.json()["choices"][0]["message"]["content"] or ""
    except (ValueError, KeyError, IndexError) as exc:
        raise IntegrationError("Resposta inválida do serviço de IA.", details=str(exc))


def chat_json(system_prompt: str, user_prompt: str) -> Dict[str, Any]:
    content = chat(
        [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
    )
    try:
        data = json.loads(strip_code_fences(content))
    except json.JSONDecodeError as exc:
        raise IntegrationError(
            "Não foi possível interpretar os dados extraídos.",
            details=str(exc),
            payload={"raw_content": content[:500]},
        )
    if not isinstance(data, dict):
        raise IntegrationError("Não foi possível interpretar os dados extraídos.")
    return data


# ---------------------------------------------------------------------
# Proposal extraction
# ---------------------------------------------------------------------
def normalize_extraction(data: Dict[str, Any]) -> Dict[str, Any]:
    """Coerce model output into the proposal shape used by QuoteResponse."""
    items = []
    for raw in data.get("items") or []:
        if not isinstance(raw, dict):
            continue
        quantity = parse_decimal(raw.get("quantity"))
        if quantity is None or quantity <= 0:
            quantity = Decimal("1")
        unit_price = parse_decimal(raw.get("unit_price", raw.get("price"))) or Decimal("0")
        total = parse_decimal(raw.get("total")) or unit_price * quantity
        items.append(
            {
                "product_name": str(raw.get("product_name") or raw.get("name") or "Item").strip(),
                "quantity": float(quantity),
                "unit_price": float(money(unit_price)),
                "total": float(money(total)),
            }
        )

    shipping = parse_decimal(data.get("shipping_cost")) or Decimal("0")
    total_amount = parse_decimal(data.get("total_amount"))
    if not total_amount and items:
        total_amount = sum((Decimal(str(i["total"])) for i in items), Decimal("0")) + shipping

    return {
        "items": items,
        "shipping_cost": float(money(shipping)),
        "delivery_days": parse_optional_int(data.get("delivery_days")),
        "warranty_months": parse_optional_int(data.get("warranty_months")) or 12,
        "payment_terms": data.get("payment_terms") or None,
        "notes": data.get("notes") or None,
        "total_amount": float(money(total_amount)) if total_amount else None,
    }


def extract_proposal_from_text(text: str, file_name: str = "proposta.pdf") -> Dict[str, Any]:
    if not text.strip():
        raise ValidationError("O PDF não contém texto extraível.")
    user_prompt = (
        f"Arquivo: {file_name}\n\nConteúdo:\n{text[:MAX_PROMPT_CHARS]}\n\n"
        'Retorne {"items": [...], "shipping_cost": 0, "delivery_days": 7, '
        '"warranty_months": 12, "payment_terms": "30 dias", "notes": "...", "total_amount": 0}'
    )
    result = normalize_extraction(chat_json(PROPOSAL_SYSTEM_PROMPT, user_prompt))
    log.info(
        "Proposal extracted from %s: %d items",
        file_name,
        len(result["items"]),
        extra={"event": "ai_proposal_extracted"},
    )
    return result


def extract_proposal_from_pdf(data: bytes, file_name: str = "proposta.pdf") -> Dict[str, Any]:
    return extract_proposal_from_text(extract_pdf_text(data), file_name=file_name)


# ---------------------------------------------------------------------
# Lead scoring
# ---------------------------------------------------------------------
def fallback_lead_score(lead: Dict[str, Any], segment: str | None = None, region: str | None = None) -> Dict[str, Any]:
    """
    Deterministic score from supplied attributes:
    size (units/employees) up to 40, segment match 25, region match 15,
    has email 10, has phone 10.
    """
    score = 0
    units = parse_optional_int(lead.get("units")) or parse_optional_int(lead.get("estimated_employees")) or 0
    score += min(40, units // 5)

    reasons = []
    if segment and segment.lower() in str(lead.get("segment") or "").lower():
        score += 25
        reasons.append("segmento aderente")
    if region and region.lower() in " ".join(
        str(lead.get(k) or "") for k in ("region", "state", "city")
    ).lower():
        score += 15
        reasons.append("região atendida")
    if lead.get("email"):
        score += 10
    if lead.get("phone"):
        score += 10
    if units:
        reasons.append(f"porte estimado {units}")

    return {
        "company_name": str(lead.get("company_name") or lead.get("name") or "").strip(),
        "score": min(score, 100),
        "reasoning": ", ".join(reasons) or "dados insuficientes",
        "source": "rules",
    }


def score_leads(leads: List[Dict[str, Any]], *, segment: str | None = None, region: str | None = None) -> List[Dict[str, Any]]:
    """Score and rank leads (highest first). AI when configured, rules otherwise."""
    if not ai_configured():
        scored = [fallback_lead_score(lead, segment, region) for lead in leads]
    else:
        data = chat_json(
            LEADS_SYSTEM_PROMPT,
            json.dumps(
                {"segment": segment, "region": region, "companies": leads},
                ensure_ascii=False,
                default=str,
            )[:MAX_PROMPT_CHARS],
        )
        scored = []
        for raw in data.get("leads") or []:
            if not isinstance(raw, dict):
                continue
            value = parse_optional_int(raw.get("score"))
            if value is None:
                value = int(parse_decimal(raw.get("score")) or 0)
            scored.append(
                {
                    "company_name": str(raw.get("company_name") or "").strip(),
                    "score": max(0, min(100, value)),
                    "reasoning": raw.get("reasoning") or "",
                    "source": "ai",
                }
            )
    return sorted(scored, key=lambda item: item["score"], reverse=True)


def narrate_insights(metrics: Dict[str, Any]) -> Optional[str]:
    """Short narrative over computed metrics; None when AI is not configured."""
    if not ai_configured():
        return None
    content = chat(
        [
            {"role": "system", "content": INSIGHTS_SYSTEM_PROMPT},
            {"role": "user", "content": json.dumps(metrics, ensure_ascii=False, default=str)},
        ],
        max_tokens=600,
    )
    return content.strip() or None
