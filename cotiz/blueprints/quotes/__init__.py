"""
cotiz/blueprints/quotes/__init__.py

Blueprint package export.

IMPORTANT:
- Must expose quotes_bp for app factory registration.
- Keep import minimal to avoid side effects.
"""

from __future__ import annotations

from .routes import quotes_bp  # noqa: F401
