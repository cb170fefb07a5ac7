"""
Authentication Routes

Provides:
- /auth/login, /auth/logout, /auth/me
- /auth/csrf-token (token for the X-CSRFToken header of session requests)
- /auth/change-password
- /auth/seed-admin (first system bootstrap)

Rules:
- Only active users may log in.
- Credentials validated via password hash.
- Login and bootstrap are audited.
"""

from __future__ import annotations

from flask import Blueprint, jsonify
from flask_login import current_user, login_required, login_user, logout_user
from flask_wtf.csrf import generate_csrf
from sqlalchemy import func

from ...audit import log_action
from ...errors import AuthRequired, ConflictError, PermissionDenied, ValidationError
from ...extensions import db
from ...models import User, utcnow
from ...security import is_account_suspended
from ...utils import get_json_body, require_fields

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")

MIN_PASSWORD_LENGTH = 8


def validate_password(password: str) -> None:
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"A senha deve ter ao menos {MIN_PASSWORD_LENGTH} caracteres.",
            payload={"fields": ["password"]},
        )


def _me_payload(user: User) -> dict:
    data = user.to_dict()
    data["panel_type"] = user.panel_type()
    data["account_suspended"] = is_account_suspended(user)
    if user.client is not None:
        data["client"] = user.client.to_dict()
    if user.supplier is not None:
        data["supplier"] = user.supplier.to_dict()
    return data


# ============================================================
# LOGIN / LOGOUT
# ============================================================

@auth_bp.route("/login", methods=["POST"])
def login():
    """Authenticate a user (email + password)."""
    data = get_json_body()
    require_fields(data, ("email", "password"))

    email = str(data["email"]).strip().lower()
    user = User.query.filter(func.lower(User.email) == email).first()

    if not user or not user.check_password(str(data["password"])):
        raise AuthRequired("Email ou senha inválidos.", code="invalid_credentials")
    if not user.is_active:
        raise PermissionDenied("Usuário inativo.", code="user_inactive")

    login_user(user, remember=bool(data.get("remember")))
    user.last_login_at = utcnow()
    log_action(user, "LOGIN")
    db.session.commit()

    return jsonify({"user": _me_payload(user), "csrf_token": generate_csrf()})


@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    """Log out the current user."""
    logout_user()
    return jsonify({"ok": True})


@auth_bp.route("/me")
@login_required
def me():
    return jsonify({"user": _me_payload(current_user)})


@auth_bp.route("/csrf-token")
def csrf_token():
    return jsonify({"csrf_token": generate_csrf()})


@auth_bp.route("/change-password", methods=["POST"])
@login_required
def change_password():
    data = get_json_body()
    require_fields(data, ("current_password", "new_password"))

    if not current_user.check_password(str(data["current_password"])):
        raise ValidationError("Senha atual incorreta.", code="invalid_credentials")
    validate_password(str(data["new_password"]))

    current_user.set_password(str(data["new_password"]))
    current_user.force_password_change = False
    log_action(current_user, "PASSWORD_CHANGED")
    db.session.commit()
    return jsonify({"ok": True})


# ============================================================
# SEED FIRST ADMIN (BOOTSTRAP)
# ============================================================

@auth_bp.route("/seed-admin", methods=["POST"])
def seed_admin():
    """
    Bootstrap the FIRST platform admin.

    Safety rule: if ANY user already exists the request is refused.
    """
    if User.query.count() > 0:
        raise ConflictError("Já existe usuário no sistema.", code="already_bootstrapped")

    data = get_json_body()
    require_fields(data, ("email", "password"))
    validate_password(str(data["password"]))

    user = User(
        email=str(data["email"]).strip().lower(),
        full_name=str(data.get("full_name") or "Administrador").strip(),
        role="admin",
        is_active=True,
    )
    user.set_password(str(data["password"]))
    db.session.add(user)
    db.session.flush()
    log_action(user, "CREATE", details={"source": "seed_admin"})
    db.session.commit()

    return jsonify({"user": user.to_dict()}), 201
