"""
cotiz/accounts.py

User accounts and email verification codes.

- create_user: validates the role/tenant binding, hashes the password, and emails a
  temporary password when none is given (force_password_change).
- Verification codes: 6 digits, VERIFICATION_CODE_TTL_MINUTES, at most
  VERIFICATION_CODE_MAX_ATTEMPTS wrong tries, single use; stored hashed.
"""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from typing import Tuple

from flask import current_app
from sqlalchemy import func

from .audit import log_action
from .errors import ConflictError, NotFoundError, ValidationError
from .extensions import db
from .models import Client, Supplier, User, VerificationCode, utcnow
from .services.email import defer_email
from .utils import numeric_code

log = logging.getLogger(__name__)

ROLES = ("admin", "manager", "collaborator", "supplier")
MIN_PASSWORD_LENGTH = 8


def normalize_email(value) -> str:
    email = str(value or "").strip().lower()
    if "@" not in email or "." not in email.split("@")[-1]:
        raise ValidationError("Email inválido.", payload={"fields": ["email"]})
    return email


def create_user(
    *,
    email: str,
    full_name: str,
    role: str,
    client: Client | None = None,
    supplier: Supplier | None = None,
    password: str | None = None,
) -> Tuple[User, str | None]:
    """Create a user bound to its tenant. Returns (user, temporary_password or None)."""
    email = normalize_email(email)
    if role not in ROLES:
        raise ValidationError("Perfil inválido.", payload={"fields": ["role"]})
    if role in ("manager", "collaborator") and client is None:
        raise ValidationError("Usuários de cliente exigem client_id.", payload={"fields": ["client_id"]})
    if role == "supplier" and supplier is None:
        raise ValidationError("Usuários de fornecedor exigem supplier_id.", payload={"fields": ["supplier_id"]})
    if role == "admin" and (client is not None or supplier is not None):
        raise ValidationError("Administradores não pertencem a um cliente ou fornecedor.")
    if not str(full_name or "").strip():
        raise ValidationError("Nome é obrigatório.", payload={"fields": ["full_name"]})

    if User.query.filter(func.lower(User.email) == email).first() is not None:
        raise ConflictError("Já existe um usuário com este email.", code="email_in_use")

    if client is not None and client.plan is not None and client.plan.max_users is not None:
        users = User.query.filter_by(client_id=client.id).count()
        if users >= client.plan.max_users:
            raise ConflictError(
                f"Limite de {client.plan.max_users} usuários do plano atingido.",
                code="plan_limit_reached",
            )

    temporary = None
    if not password:
        temporary = secrets.token_urlsafe(9)
        password = temporary
    elif len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"A senha deve ter ao menos {MIN_PASSWORD_LENGTH} caracteres.",
            payload={"fields": ["password"]},
        )

    user = User(
        email=email,
        full_name=str(full_name).strip(),
        role=role,
        client_id=client.id if client else None,
        supplier_id=supplier.id if supplier else None,
        is_active=True,
        force_password_change=temporary is not None,
    )
    user.set_password(password)
    db.session.add(user)
    db.session.flush()

    if temporary:
        defer_email(
            email,
            "Seu acesso à Cotiz",
            "welcome_user",
            full_name=user.full_name,
            email=email,
            temporary_password=temporary,
        )

    log_action(user, "CREATE", details={"role": role}, client_id=user.client_id)
    return user, temporary


# ---------------------------------------------------------------------
# Verification codes
# ---------------------------------------------------------------------
def send_verification_code(email: str, purpose: str = "email_verification") -> VerificationCode:
    """Issue a new code (older unused codes for the same email/purpose are invalidated)."""
    email = normalize_email(email)
    now = utcnow()

    for old in VerificationCode.query.filter_by(email=email, purpose=purpose, used_at=None).all():
        old.used_at = now

    code = numeric_code(6)
    ttl = int(current_app.config.get("VERIFICATION_CODE_TTL_MINUTES", 10))
    record = VerificationCode(email=email, purpose=purpose, expires_at=now + timedelta(minutes=ttl))
    record.set_code(code)
    db.session.add(record)
    db.session.flush()

    defer_email(email, "Seu código de verificação", "verification_code", code=code, ttl_minutes=ttl)
    log.info("Verification code issued", extra={"event": "verification_code_sent"})
    return record


def verify_code(email: str, code: str, purpose: str = "email_verification") -> VerificationCode:
    """
    Check a code. Errors: not found / expired / too many attempts / wrong code.

    A wrong code counts an attempt; the caller must commit even on failure so the
    counter persists (see the public blueprint).
    """
    email = normalize_email(email)
    record = (
        VerificationCode.query.filter_by(email=email, purpose=purpose, used_at=None)
        .order_by(VerificationCode.id.desc())
        .first()
    )
    if record is None:
        raise NotFoundError("Nenhum código pendente para este email.", code="code_not_found")
    if record.expires_at < utcnow():
        raise ValidationError("Código expirado. Solicite um novo.", code="code_expired")

    max_attempts = int(current_app.config.get("VERIFICATION_CODE_MAX_ATTEMPTS", 5))
    if record.attempts >= max_attempts:
        raise ValidationError("Número máximo de tentativas excedido.", code="too_many_attempts")

    if not record.check_code(str(code or "").strip()):
        record.attempts += 1
        remaining = max(0, max_attempts - record.attempts)
        raise ValidationError(
            "Código inválido.",
            code="invalid_code",
            payload={"attempts_remaining": remaining},
        )

    record.used_at = record.verified_at = utcnow()
    return record


def email_recently_verified(email: str, purpose: str = "email_verification", window_minutes: int = 60) -> bool:
    """True when a code for this email was verified within the window."""
    since = utcnow() - timedelta(minutes=window_minutes)
    return (
        VerificationCode.query.filter(
            VerificationCode.email == normalize_email(email),
            VerificationCode.purpose == purpose,
            VerificationCode.verified_at.isnot(None),
            VerificationCode.verified_at >= since,
            VerificationCode.attempts < int(current_app.config.get("VERIFICATION_CODE_MAX_ATTEMPTS", 5)),
        ).first()
        is not None
    )
