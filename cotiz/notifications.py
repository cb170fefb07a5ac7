"""
cotiz/notifications.py

In-app notification fan-out.

IMPORTANT:
- Helpers only ADD rows to the current session; the caller commits.
- Email copies are deferred (services.email.defer_email) and go out after the commit.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List

from .extensions import db
from .models import Notification, User
from .services.email import defer_email


def notify_user(
    user: User,
    title: str,
    message: str,
    *,
    type: str = "info",
    priority: str = "normal",
    action_url: str | None = None,
    details: Dict[str, Any] | None = None,
) -> Notification:
    notification = Notification(
        user_id=user.id,
        title=title,
        message=message,
        type=type,
        priority=priority,
        action_url=action_url,
        details=details,
    )
    db.session.add(notification)
    return notification


def _notify_many(users: Iterable[User], title: str, message: str, email: Dict[str, Any] | None, **kwargs) -> List[Notification]:
    created = []
    for user in users:
        created.append(notify_user(user, title, message, **kwargs))
        if email:
            defer_email(user.email, email["subject"], email["template"], **email.get("context", {}))
    return created


def client_users(client_id: int, managers_only: bool = False) -> List[User]:
    q = User.query.filter(User.client_id == client_id, User.is_active.is_(True))
    if managers_only:
        q = q.filter(User.role == "manager")
    return q.order_by(User.id.asc()).all()


def supplier_users(supplier_id: int) -> List[User]:
    return (
        User.query.filter(User.supplier_id == supplier_id, User.is_active.is_(True))
        .order_by(User.id.asc())
        .all()
    )


def admin_users() -> List[User]:
    return User.query.filter(User.role == "admin", User.is_active.is_(True)).all()


def notify_client(
    client_id: int,
    title: str,
    message: str,
    *,
    managers_only: bool = False,
    email: Dict[str, Any] | None = None,
    **kwargs,
) -> List[Notification]:
    """Notify every active user of a client (optionally managers only)."""
    return _notify_many(client_users(client_id, managers_only), title, message, email, **kwargs)


def notify_supplier(
    supplier_id: int,
    title: str,
    message: str,
    *,
    email: Dict[str, Any] | None = None,
    **kwargs,
) -> List[Notification]:
    """Notify every active user of a supplier."""
    return _notify_many(supplier_users(supplier_id), title, message, email, **kwargs)


def notify_admins(title: str, message: str, **kwargs) -> List[Notification]:
    return _notify_many(admin_users(), title, message, None, **kwargs)
