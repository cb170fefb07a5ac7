"""
cotiz/blueprints/public/__init__.py

Blueprint package export.

IMPORTANT:
- Must expose public_bp for app factory registration.
- Keep import minimal to avoid side effects.
"""

from __future__ import annotations

from .routes import public_bp  # noqa: F401
