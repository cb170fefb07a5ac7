"""
cotiz/errors.py

Application error taxonomy.

Every error raised on purpose by routes and flows is an AppError subclass. The app factory
registers one handler that renders them as JSON:

    {"error": <code>, "message": <user message>, "request_id": <id>, ...payload}

HTTPExceptions raised by Flask/Werkzeug (abort(404), get_or_404, CSRF failures) are rendered
in the same shape so clients only ever parse one error format.
"""

from __future__ import annotations

from typing import Any, Dict


class AppError(Exception):
    default_code = "system_error"
    default_message = "Não foi possível concluir a operação."
    default_http_status = 500
    default_critical = True

    def __init__(
        self,
        message: str | None = None,
        code: str | None = None,
        http_status: int | None = None,
        critical: bool | None = None,
        details: str | None = None,
        payload: Dict[str, Any] | None = None,
    ) -> None:
        self.message = (message or self.default_message).strip()
        self.code = (code or self.default_code).strip()
        self.http_status = int(http_status or self.default_http_status)
        self.critical = bool(self.default_critical if critical is None else critical)
        self.details = (details or "").strip() or None
        self.payload = dict(payload or {})
        super().__init__(self.details or self.message)

    def to_response_payload(self, request_id: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.code,
            "message": self.message,
            "request_id": request_id,
        }
        if self.payload:
            payload.update(self.payload)
        return payload


class ValidationError(AppError):
    default_code = "validation_error"
    default_message = "Dados inválidos."
    default_http_status = 400
    default_critical = False


class AuthRequired(AppError):
    default_code = "auth_required"
    default_message = "Autenticação necessária."
    default_http_status = 401
    default_critical = False


class PermissionDenied(AppError):
    default_code = "permission_denied"
    default_message = "Você não tem permissão para esta ação."
    default_http_status = 403
    default_critical = False


class NotFoundError(AppError):
    default_code = "not_found"
    default_message = "Registro não encontrado."
    default_http_status = 404
    default_critical = False


class ConflictError(AppError):
    default_code = "conflict"
    default_message = "A operação conflita com o estado atual do registro."
    default_http_status = 409
    default_critical = False


class IntegrationError(AppError):
    default_code = "integration_error"
    default_message = "Serviço externo temporariamente indisponível."
    default_http_status = 502
    default_critical = False


class ServiceUnavailable(AppError):
    default_code = "service_unavailable"
    default_message = "Serviço não configurado."
    default_http_status = 503
    default_critical = False
