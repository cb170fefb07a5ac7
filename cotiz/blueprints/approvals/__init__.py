"""
cotiz/blueprints/approvals/__init__.py

Blueprint package export.

IMPORTANT:
- Must expose approvals_bp for app factory registration.
- Keep import minimal to avoid side effects.
"""

from __future__ import annotations

from .routes import approvals_bp  # noqa: F401
