"""
cotiz/services/email.py

Transactional email.

Backends (EMAIL_BACKEND):
- log: nothing leaves the process; messages are logged and kept in the app outbox
  (current_app.extensions["cotiz_outbox"]) for development and tests.
- smtp: smtplib with STARTTLS.
- resend: Resend HTTP API via requests.

Flows never send directly. They call defer_email(...) while building the transaction;
deliver_pending_emails() runs after the commit (after_request for HTTP, explicitly in
CLI jobs). A failed send is logged and never fails the request.
"""

from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, List

import requests
from flask import current_app, g, render_template

from ..errors import IntegrationError

log = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"


@dataclass
class EmailMessage:
    to: str
    subject: str
    text: str
    html: str
    tags: Dict[str, Any] = field(default_factory=dict)


def render_email(template: str, subject: str, to: str, **context: Any) -> EmailMessage:
    """Render emails/<template>.txt and wrap it in the shared HTML layout."""
    context.setdefault("app_name", current_app.config.get("APP_NAME", "Cotiz"))
    context.setdefault("base_url", current_app.config.get("PUBLIC_BASE_URL", ""))
    text = render_template(f"emails/{template}.txt", **context)
    html = render_template("emails/layout.html", subject=subject, body=text, **context)
    return EmailMessage(to=to, subject=subject, text=text, html=html, tags={"template": template})


def _outbox() -> List[EmailMessage]:
    return current_app.extensions.setdefault("cotiz_outbox", [])


def _send_smtp(message: EmailMessage) -> None:
    cfg = current_app.config
    mime = MIMEMultipart("alternative")
    mime["From"] = cfg["EMAIL_FROM"]
    mime["To"] = message.to
    mime["Subject"] = message.subject
    mime.attach(MIMEText(message.text, "plain", "utf-8"))
    mime.attach(MIMEText(message.html, "html", "utf-8"))

    try:
        with smtplib.SMTP(cfg["SMTP_HOST"], cfg["SMTP_PORT"], timeout=20) as server:
            if cfg.get("SMTP_USE_TLS"):
                server.starttls()
            if cfg.get("SMTP_USERNAME"):
                server.login(cfg["SMTP_USERNAME"], cfg.get("SMTP_PASSWORD") or "")
            server.send_message(mime)
    except (smtplib.SMTPException, OSError) as exc:
        raise IntegrationError("Falha ao enviar email.", details=str(exc))


def _send_resend(message: EmailMessage) -> None:
    cfg = current_app.config
    api_key = cfg.get("RESEND_API_KEY")
    if not api_key:
        raise IntegrationError("RESEND_API_KEY não configurada.")
    try:
        resp = requests.post(
            RESEND_URL,
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            json={
                "from": cfg["EMAIL_FROM"],
                "to": [message.to],
                "subject": message.subject,
                "html": message.html,
                "text": message.text,
            },
            timeout=15,
        )
        resp.raise_for_status()
    except requests.RequestException as exc:
        raise IntegrationError("Falha ao enviar email.", details=str(exc))


def send_email(message: EmailMessage) -> None:
    """Send immediately with the configured backend (raises IntegrationError)."""
    backend = (current_app.config.get("EMAIL_BACKEND") or "log").lower()
    if backend == "smtp":
        _send_smtp(message)
    elif backend == "resend":
        _send_resend(message)
    else:
        _outbox().append(message)
    log.info(
        "Email sent: %s -> %s",
        message.subject[:60],
        message.to,
        extra={"event": "email_sent"},
    )


def defer_email(to: str | None, subject: str, template: str, **context: Any) -> None:
    """Queue an email for delivery after the current transaction commits."""
    if not to:
        return
    pending = g.setdefault("pending_emails", [])
    pending.append(render_email(template, subject, to, **context))


def discard_pending_emails() -> None:
    g.pop("pending_emails", None)


def deliver_pending_emails() -> int:
    """Send every deferred email; failures are logged. Returns the number sent."""
    pending = g.pop("pending_emails", None) or []
    sent = 0
    for message in pending:
        try:
            send_email(message)
            sent += 1
        except IntegrationError as exc:
            log.warning(
                "Email failed: %s -> %s (%s)",
                message.subject[:60],
                message.to,
                exc.details or exc.message,
                extra={"event": "email_failed"},
            )
    return sent
