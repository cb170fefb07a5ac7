"""
Communication Routes

Provides:
- /notifications                     list (unread filter, 'since' cursor for polling)
- /notifications/unread-count
- /notifications/<id>/read, /notifications/read-all
- /quotes/<id>/messages              client <-> supplier chat, one thread per supplier
- /quotes/<id>/messages/read

Rules:
- Notifications are always the current user's own.
- Suppliers only see their own thread; client users pick the thread by supplier_id.
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from ...errors import NotFoundError, ValidationError
from ...extensions import db
from ...models import Notification, Quote, QuoteMessage, utcnow
from ...notifications import notify_client, notify_supplier
from ...security import quote_access_required
from ...utils import get_json_body, parse_datetime, parse_optional_int

communication_bp = Blueprint("communication", __name__)

MAX_MESSAGE_LENGTH = 5000


# ============================================================
# NOTIFICATIONS
# ============================================================

@communication_bp.route("/notifications")
@login_required
def list_notifications():
    """
    Query args:
    - unread=1      only unread
    - since=<ISO>   only newer than the cursor, oldest first
    - limit         default 50

    The next poll passes the returned server_time as 'since'. With has_more the
    cursor stops at the last returned item, so a backlog is drained page by page.
    """
    cursor = utcnow()
    q = Notification.query.filter(
        Notification.user_id == current_user.id,
        Notification.created_at <= cursor,
    )
    if request.args.get("unread") in ("1", "true"):
        q = q.filter(Notification.is_read.is_(False))
    limit = max(1, min(parse_optional_int(request.args.get("limit")) or 50, 200))

    since = parse_datetime(request.args.get("since"), "since")
    if since is None:
        items = q.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()
        return jsonify({"items": [n.to_dict() for n in items], "server_time": cursor.isoformat(), "has_more": False})

    q = q.filter(Notification.created_at > since)
    rows = q.order_by(Notification.created_at.asc(), Notification.id.asc()).limit(limit + 1).all()
    has_more = len(rows) > limit
    items = rows[:limit]
    if has_more:
        # Never split a timestamp across pages.
        boundary = rows[limit].created_at
        items = [n for n in items if n.created_at < boundary]
        if not items:
            items = q.filter(Notification.created_at == boundary).order_by(Notification.id.asc()).all()
        cursor = items[-1].created_at
    return jsonify({"items": [n.to_dict() for n in items], "server_time": cursor.isoformat(), "has_more": has_more})


@communication_bp.route("/notifications/unread-count")
@login_required
def unread_count():
    count = Notification.query.filter_by(user_id=current_user.id, is_read=False).count()
    return jsonify({"unread": count})


@communication_bp.route("/notifications/<int:notification_id>/read", methods=["POST"])
@login_required
def mark_read(notification_id: int):
    notification = db.session.get(Notification, notification_id)
    if notification is None or notification.user_id != current_user.id:
        raise NotFoundError("Notificação não encontrada.")
    if not notification.is_read:
        notification.is_read = True
        notification.read_at = utcnow()
        db.session.commit()
    return jsonify(notification.to_dict())


@communication_bp.route("/notifications/read-all", methods=["POST"])
@login_required
def mark_all_read():
    updated = Notification.query.filter_by(user_id=current_user.id, is_read=False).update(
        {"is_read": True, "read_at": utcnow()}, synchronize_session=False
    )
    db.session.commit()
    return jsonify({"updated": updated})


# ============================================================
# QUOTE MESSAGES
# ============================================================

def _load_quote(quote_id: int, **_) -> Quote:
    return db.get_or_404(Quote, quote_id, description="Cotação não encontrada.")


def _thread_supplier_id(quote: Quote, raw_supplier_id, required: bool) -> int | None:
    """Suppliers: always their own id. Client users: a supplier of the quote."""
    if current_user.is_supplier_user:
        return current_user.supplier_id
    supplier_id = parse_optional_int(raw_supplier_id)
    if supplier_id is None:
        if required:
            raise ValidationError("Informe o fornecedor.", payload={"fields": ["supplier_id"]})
        return None
    participants = quote.invited_supplier_ids() | {r.supplier_id for r in quote.responses}
    if supplier_id not in participants:
        raise ValidationError("Fornecedor não participa desta cotação.", payload={"fields": ["supplier_id"]})
    return supplier_id


@communication_bp.route("/quotes/<int:quote_id>/messages")
@quote_access_required(_load_quote)
def list_messages(quote_id: int):
    quote = _load_quote(quote_id)
    supplier_id = _thread_supplier_id(quote, request.args.get("supplier_id"), required=False)
    cursor = utcnow()
    q = QuoteMessage.query.filter(QuoteMessage.quote_id == quote.id, QuoteMessage.created_at <= cursor)
    if supplier_id is not None:
        q = q.filter(QuoteMessage.supplier_id == supplier_id)
    since = parse_datetime(request.args.get("since"), "since")
    if since is not None:
        q = q.filter(QuoteMessage.created_at > since)
    messages = q.order_by(QuoteMessage.created_at.asc(), QuoteMessage.id.asc()).all()
    return jsonify({"items": [m.to_dict() for m in messages], "server_time": cursor.isoformat()})


@communication_bp.route("/quotes/<int:quote_id>/messages", methods=["POST"])
@quote_access_required(_load_quote)
def post_message(quote_id: int):
    """Body: content, supplier_id (client users)."""
    quote = _load_quote(quote_id)
    data = get_json_body()
    content = str(data.get("content") or "").strip()
    if not content:
        raise ValidationError("A mensagem não pode ser vazia.", payload={"fields": ["content"]})
    if len(content) > MAX_MESSAGE_LENGTH:
        raise ValidationError("Mensagem muito longa.", payload={"fields": ["content"]})

    supplier_id = _thread_supplier_id(quote, data.get("supplier_id"), required=True)
    sender_type = "supplier" if current_user.is_supplier_user else "client"
    message = QuoteMessage(
        quote_id=quote.id,
        supplier_id=supplier_id,
        sender_id=current_user.id,
        sender_type=sender_type,
        content=content,
    )
    db.session.add(message)
    db.session.flush()

    if sender_type == "client":
        notify_supplier(
            supplier_id,
            "Nova mensagem",
            f"{quote.client.name} enviou uma mensagem sobre {quote.local_code}.",
            type="message",
            action_url=f"/supplier/quotes/{quote.id}",
            details={"quote_id": quote.id, "message_id": message.id},
        )
    else:
        notify_client(
            quote.client_id,
            "Nova mensagem",
            f"{current_user.supplier.name} enviou uma mensagem sobre {quote.local_code}.",
            type="message",
            action_url=f"/quotes/{quote.id}",
            details={"quote_id": quote.id, "message_id": message.id, "supplier_id": supplier_id},
        )

    db.session.commit()
    return jsonify(message.to_dict()), 201


@communication_bp.route("/quotes/<int:quote_id>/messages/read", methods=["POST"])
@quote_access_required(_load_quote)
def mark_messages_read(quote_id: int):
    """Marks the other party's messages in the thread as read."""
    quote = _load_quote(quote_id)
    supplier_id = _thread_supplier_id(quote, get_json_body().get("supplier_id"), required=False)
    other_side = "client" if current_user.is_supplier_user else "supplier"

    q = QuoteMessage.query.filter(
        QuoteMessage.quote_id == quote.id,
        QuoteMessage.sender_type == other_side,
        QuoteMessage.is_read.is_(False),
    )
    if supplier_id is not None:
        q = q.filter(QuoteMessage.supplier_id == supplier_id)
    updated = q.update({"is_read": True}, synchronize_session=False)
    db.session.commit()
    return jsonify({"updated": updated})
