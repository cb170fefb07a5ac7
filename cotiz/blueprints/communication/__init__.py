"""
cotiz/blueprints/communication/__init__.py

Blueprint package export.

IMPORTANT:
- Must expose communication_bp for app factory registration.
- Keep import minimal to avoid side effects.
"""

from __future__ import annotations

from .routes import communication_bp  # noqa: F401
