"""
cotiz/blueprints/supplier_portal/__init__.py

Blueprint package export.

IMPORTANT:
- Must expose supplier_portal_bp for app factory registration.
- Keep import minimal to avoid side effects.
"""

from __future__ import annotations

from .routes import supplier_portal_bp  # noqa: F401
