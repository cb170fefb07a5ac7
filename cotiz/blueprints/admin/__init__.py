"""
cotiz/blueprints/admin/__init__.py

Blueprint package export.

IMPORTANT:
- Must expose admin_bp for app factory registration.
- Keep import minimal to avoid side effects.
"""

from __future__ import annotations

from .routes import admin_bp  # noqa: F401
