"""
cotiz/blueprints/deliveries/__init__.py

Blueprint package export.

IMPORTANT:
- Must expose deliveries_bp for app factory registration.
- Keep import minimal to avoid side effects.
"""

from __future__ import annotations

from .routes import deliveries_bp  # noqa: F401
