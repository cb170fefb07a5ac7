"""
cotiz/blueprints/payments/__init__.py

Blueprint package export.

IMPORTANT:
- Exposes payments_bp (session-authenticated) and webhooks_bp (gateway token, CSRF-exempt).
"""

from __future__ import annotations

from .routes import payments_bp, webhooks_bp  # noqa: F401
