"""
cotiz/blueprints/billing/__init__.py

Blueprint package export.

IMPORTANT:
- Must expose billing_bp for app factory registration.
- Keep import minimal to avoid side effects.
"""

from __future__ import annotations

from .routes import billing_bp  # noqa: F401
