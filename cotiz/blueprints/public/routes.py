"""
Public (unauthenticated) endpoints

Provides:
- /public/quote-tokens/<code>           quote view by access token (short code or full token)
- /public/quote-tokens/<code>/response  quick proposal by token
- /public/cnpj/validate                 CNPJ check digits + registry lookup
- /public/verification-codes/send       6-digit email code
- /public/verification-codes/verify
- /public/suppliers/register            supplier self-registration

IMPORTANT:
- CSRF exempt (no session involved); the token or the verification code is the credential.
- Verification attempts must persist even when the request fails, so a wrong code
  commits the attempt counter before the error is raised.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify

from ...accounts import create_user, email_recently_verified, normalize_email, send_verification_code, verify_code
from ...audit import log_action, serialize_model
from ...billing import create_subscription
from ...errors import AppError, ConflictError, ValidationError
from ...extensions import db
from ...lifecycle import resolve_token, submit_quick_response
from ...models import QuoteResponse, Supplier, SubscriptionPlan
from ...notifications import notify_admins
from ...services.cnpj import lookup_cnpj
from ...utils import get_json_body, require_fields

log = logging.getLogger(__name__)

public_bp = Blueprint("public", __name__, url_prefix="/public")

SUPPLIER_SIGNUP_PLAN = "supplier_free"


# ============================================================
# QUOTE TOKENS
# ============================================================

@public_bp.route("/quote-tokens/<code>")
def quote_by_token(code: str):
    """Quote details for the token holder. Every view is counted."""
    token = resolve_token(code)
    token.access_count = (token.access_count or 0) + 1
    db.session.commit()

    quote = token.quote
    data = {
        "quote": {
            "local_code": quote.local_code,
            "title": quote.title,
            "description": quote.description,
            "delivery_address": quote.delivery_address,
            "deadline": quote.deadline.isoformat() if quote.deadline else None,
            "status": quote.status,
            "items": [item.to_dict() for item in quote.items],
        },
        "client_name": quote.client.name if quote.client else None,
        "supplier": {"id": token.supplier.id, "name": token.supplier.name} if token.supplier else None,
        "expires_at": token.expires_at.isoformat(),
    }
    if token.supplier_id is not None:
        response = QuoteResponse.query.filter_by(quote_id=quote.id, supplier_id=token.supplier_id).first()
        data["response"] = response.to_dict() if response else None
    return jsonify(data)


@public_bp.route("/quote-tokens/<code>/response", methods=["POST"])
def respond_by_token(code: str):
    """Quick response. Unbound tokens need supplier_name + supplier_email."""
    token = resolve_token(code)
    response = submit_quick_response(token, get_json_body())
    db.session.commit()
    return jsonify(response.to_dict()), 201


# ============================================================
# CNPJ
# ============================================================

@public_bp.route("/cnpj/validate", methods=["POST"])
def validate_cnpj():
    data = get_json_body()
    require_fields(data, ("cnpj",))
    result = lookup_cnpj(str(data["cnpj"]))
    return jsonify(result.to_dict())


# ============================================================
# VERIFICATION CODES
# ============================================================

@public_bp.route("/verification-codes/send", methods=["POST"])
def send_code():
    data = get_json_body()
    require_fields(data, ("email",))
    record = send_verification_code(data["email"], data.get("purpose") or "email_verification")
    db.session.commit()
    return jsonify({"sent": True, "expires_at": record.expires_at.isoformat()})


def _verify_and_persist(email: str, code: str, purpose: str):
    """Run verify_code; on failure keep the attempt counter before re-raising."""
    try:
        return verify_code(email, code, purpose)
    except AppError:
        db.session.commit()
        raise


@public_bp.route("/verification-codes/verify", methods=["POST"])
def verify():
    data = get_json_body()
    require_fields(data, ("email", "code"))
    _verify_and_persist(data["email"], data["code"], data.get("purpose") or "email_verification")
    db.session.commit()
    return jsonify({"verified": True})


# ============================================================
# SUPPLIER SELF-REGISTRATION
# ============================================================

@public_bp.route("/suppliers/register", methods=["POST"])
def register_supplier():
    """
    Register a supplier company and its first user.

    Requirements:
    - CNPJ valid and ATIVA in the registry.
    - Email verified: either 'code' in this request or a code verified in the last hour.

    The company starts as 'pending' until an admin certifies it.
    """
    data = get_json_body()
    require_fields(data, ("company_name", "cnpj", "email", "full_name", "password"))
    email = normalize_email(data["email"])

    if data.get("code"):
        _verify_and_persist(email, data["code"], "email_verification")
    elif not email_recently_verified(email):
        raise ValidationError("Confirme o email antes de concluir o cadastro.", code="email_not_verified")

    lookup = lookup_cnpj(str(data["cnpj"]))
    if not lookup.valid:
        raise ValidationError(lookup.error or "CNPJ inválido.", code="invalid_cnpj", payload={"fields": ["cnpj"]})
    if Supplier.query.filter_by(cnpj=lookup.cnpj).first() is not None:
        raise ConflictError("Já existe um fornecedor com este CNPJ.", code="cnpj_in_use")

    address = (lookup.company or {}).get("endereco") or {}
    supplier = Supplier(
        name=str(data["company_name"]).strip(),
        cnpj=lookup.cnpj,
        email=email,
        phone=data.get("phone") or None,
        whatsapp=data.get("whatsapp") or None,
        city=address.get("municipio") or data.get("city") or None,
        state=(address.get("uf") or data.get("state") or "")[:2].upper() or None,
        supplier_type="local",
        client_id=None,
        specialties=sorted({str(s).strip() for s in (data.get("specialties") or []) if str(s).strip()}),
        status="pending",
    )
    db.session.add(supplier)
    db.session.flush()
    log_action(supplier, "CREATE", after=serialize_model(supplier), details={"source": "self_registration"})

    user, _ = create_user(
        email=email,
        full_name=data["full_name"],
        role="supplier",
        supplier=supplier,
        password=str(data["password"]),
    )

    plan = SubscriptionPlan.query.filter_by(name=SUPPLIER_SIGNUP_PLAN, is_active=True).first()
    if plan is not None:
        create_subscription(plan, supplier=supplier)

    notify_admins(
        "Novo fornecedor cadastrado",
        f"{supplier.name} ({lookup.company.get('cnpj_formatado', supplier.cnpj)}) aguarda certificação.",
        type="system",
        details={"supplier_id": supplier.id},
    )
    db.session.commit()
    log.info("Supplier self-registered", extra={"supplier_id": supplier.id, "event": "supplier_registered"})
    return jsonify({"supplier": supplier.to_dict(), "user": user.to_dict()}), 201
