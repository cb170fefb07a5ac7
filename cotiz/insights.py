"""
cotiz/insights.py

Read-only aggregates: dashboards (client / supplier / admin), spending report and
predictive insights.

Queries stay in SQL (func.count / func.sum grouped) except the monthly bucketing,
which is done in Python to stay portable between SQLite and PostgreSQL.
"""

from __future__ import annotations

import csv
import io
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List

from sqlalchemy import func

from .extensions import db
from .models import (
    Approval,
    Client,
    Delivery,
    Payment,
    Quote,
    QuoteResponse,
    QuoteSupplier,
    Supplier,
    SupplierRating,
    User,
    utcnow,
)
from .utils import add_months, money, month_key


def _as_float(value) -> float:
    return float(money(Decimal(str(value or 0))))


def _status_counts(q, column) -> Dict[str, int]:
    return {status: count for status, count in q.with_entities(column, func.count()).group_by(column).all()}


# ---------------------------------------------------------------------
# Dashboards
# ---------------------------------------------------------------------
def client_dashboard(client_ids: Iterable[int], user: User) -> Dict[str, Any]:
    ids = list(client_ids)
    quotes_q = Quote.query.filter(Quote.client_id.in_(ids))
    quotes_by_status = _status_counts(quotes_q, Quote.status)

    pending_approvals = Approval.query.filter(
        Approval.approver_id == user.id, Approval.status == "pending"
    ).count()

    spend = (
        db.session.query(func.coalesce(func.sum(Payment.amount), 0))
        .filter(Payment.client_id.in_(ids), Payment.status == "completed")
        .scalar()
    )
    in_escrow = (
        db.session.query(func.coalesce(func.sum(Payment.amount), 0))
        .filter(Payment.client_id.in_(ids), Payment.status == "in_escrow")
        .scalar()
    )
    active_deliveries = Delivery.query.filter(
        Delivery.client_id.in_(ids), Delivery.status.in_(("scheduled", "in_transit"))
    ).count()

    return {
        "quotes_by_status": quotes_by_status,
        "quotes_total": sum(quotes_by_status.values()),
        "pending_approvals": pending_approvals,
        "total_spent": _as_float(spend),
        "in_escrow": _as_float(in_escrow),
        "active_deliveries": active_deliveries,
        "savings": savings(ids),
    }


def savings(client_ids: List[int]) -> Dict[str, Any]:
    """Average proposal total vs approved total across approved/finalized quotes."""
    quotes = Quote.query.filter(
        Quote.client_id.in_(client_ids),
        Quote.status.in_(("approved", "finalized")),
        Quote.total.isnot(None),
    ).all()
    saved = Decimal("0")
    counted = 0
    for quote in quotes:
        totals = [r.grand_total for r in quote.responses]
        if len(totals) < 2:
            continue
        average = sum(totals, Decimal("0")) / len(totals)
        saved += max(Decimal("0"), average - Decimal(str(quote.total)))
        counted += 1
    return {"amount": _as_float(saved), "quotes_compared": counted}


def supplier_dashboard(supplier: Supplier) -> Dict[str, Any]:
    invitations = QuoteSupplier.query.filter_by(supplier_id=supplier.id).count()
    responses_by_status = _status_counts(
        QuoteResponse.query.filter(QuoteResponse.supplier_id == supplier.id), QuoteResponse.status
    )
    sent = sum(responses_by_status.values())
    won = responses_by_status.get("approved", 0) + responses_by_status.get("accepted", 0)

    revenue = (
        db.session.query(func.coalesce(func.sum(Payment.amount), 0))
        .filter(Payment.supplier_id == supplier.id, Payment.status == "completed")
        .scalar()
    )
    pending_deliveries = Delivery.query.filter(
        Delivery.supplier_id == supplier.id, Delivery.status.in_(("scheduled", "in_transit"))
    ).count()

    return {
        "invitations": invitations,
        "proposals_sent": sent,
        "proposals_by_status": responses_by_status,
        "win_rate": round(won / sent, 4) if sent else 0.0,
        "revenue": _as_float(revenue),
        "pending_deliveries": pending_deliveries,
        "rating": _as_float(supplier.rating) if supplier.rating is not None else None,
        "completed_orders": supplier.completed_orders,
    }


def admin_dashboard() -> Dict[str, Any]:
    payments_by_status = {
        status: {"count": count, "amount": _as_float(total)}
        for status, count, total in db.session.query(
            Payment.status, func.count(Payment.id), func.coalesce(func.sum(Payment.amount), 0)
        )
        .group_by(Payment.status)
        .all()
    }
    return {
        "clients": Client.query.count(),
        "active_clients": Client.query.filter_by(is_active=True).count(),
        "suppliers": Supplier.query.count(),
        "certified_suppliers": Supplier.query.filter_by(supplier_type="certified").count(),
        "users": User.query.count(),
        "quotes_by_status": _status_counts(Quote.query, Quote.status),
        "payments_by_status": payments_by_status,
    }


# ---------------------------------------------------------------------
# Spending report
# ---------------------------------------------------------------------
def spending_rows(client_ids: List[int], start: datetime | None = None, end: datetime | None = None) -> List[Dict[str, Any]]:
    """Completed payments grouped by month and supplier."""
    q = (
        db.session.query(Payment, Supplier.name)
        .outerjoin(Supplier, Supplier.id == Payment.supplier_id)
        .filter(Payment.client_id.in_(client_ids), Payment.status == "completed")
    )
    if start is not None:
        q = q.filter(Payment.completed_at >= start)
    if end is not None:
        q = q.filter(Payment.completed_at < end)

    buckets: Dict[tuple, Dict[str, Any]] = {}
    for payment, supplier_name in q.all():
        when = payment.completed_at or payment.created_at
        key = (month_key(when), payment.supplier_id)
        row = buckets.setdefault(
            key,
            {
                "month": key[0],
                "supplier_id": payment.supplier_id,
                "supplier_name": supplier_name or "",
                "payments": 0,
                "total": Decimal("0"),
            },
        )
        row["payments"] += 1
        row["total"] += Decimal(str(payment.amount))

    rows = sorted(buckets.values(), key=lambda r: (r["month"], r["supplier_name"]))
    for row in rows:
        row["total"] = _as_float(row["total"])
    return rows


def spending_csv(rows: List[Dict[str, Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(
        buffer,
        fieldnames=["month", "supplier_id", "supplier_name", "payments", "total"],
        lineterminator="\n",
    )
    writer.writeheader()
    for row in rows:
        writer.writerow(row)
    return buffer.getvalue()


# ---------------------------------------------------------------------
# Predictive insights
# ---------------------------------------------------------------------
def linear_trend(values: List[float]) -> Dict[str, float]:
    """Least-squares slope/intercept over x = 0..n-1."""
    n = len(values)
    if n == 0:
        return {"slope": 0.0, "intercept": 0.0}
    if n == 1:
        return {"slope": 0.0, "intercept": values[0]}
    mean_x = (n - 1) / 2
    mean_y = sum(values) / n
    denominator = sum((x - mean_x) ** 2 for x in range(n))
    slope = sum((x - mean_x) * (y - mean_y) for x, y in enumerate(values)) / denominator
    return {"slope": slope, "intercept": mean_y - slope * mean_x}


def monthly_spend(client_ids: List[int], months: int = 6, now: datetime | None = None) -> List[Dict[str, Any]]:
    """Spend per month for the last `months` months (zero-filled, oldest first)."""
    now = now or utcnow()
    first = add_months(datetime(now.year, now.month, 1), -(months - 1))
    keys = [month_key(add_months(first, i)) for i in range(months)]
    totals = defaultdict(float)
    for row in spending_rows(client_ids, start=first):
        totals[row["month"]] += row["total"]
    return [{"month": key, "total": round(totals[key], 2)} for key in keys]


def predictive_insights(client_ids: List[int], months: int = 6, now: datetime | None = None) -> Dict[str, Any]:
    series = monthly_spend(client_ids, months, now)
    values = [point["total"] for point in series]
    trend = linear_trend(values)
    projected = max(0.0, trend["intercept"] + trend["slope"] * len(values))

    if trend["slope"] > 0.01:
        direction = "up"
    elif trend["slope"] < -0.01:
        direction = "down"
    else:
        direction = "flat"

    top_suppliers = [
        {"supplier_id": supplier_id, "supplier_name": name, "total": _as_float(total)}
        for supplier_id, name, total in db.session.query(
            Supplier.id, Supplier.name, func.sum(Payment.amount)
        )
        .join(Payment, Payment.supplier_id == Supplier.id)
        .filter(Payment.client_id.in_(client_ids), Payment.status == "completed")
        .group_by(Supplier.id, Supplier.name)
        .order_by(func.sum(Payment.amount).desc())
        .limit(5)
        .all()
    ]

    quote_count = Quote.query.filter(Quote.client_id.in_(client_ids), Quote.status != "draft").count()
    response_count = (
        QuoteResponse.query.join(Quote, Quote.id == QuoteResponse.quote_id)
        .filter(Quote.client_id.in_(client_ids))
        .count()
    )

    return {
        "monthly_spend": series,
        "trend": {"slope": round(trend["slope"], 2), "direction": direction},
        "projected_next_month": round(projected, 2),
        "top_suppliers": top_suppliers,
        "avg_proposals_per_quote": round(response_count / quote_count, 2) if quote_count else 0.0,
    }


def refresh_supplier_rating(supplier: Supplier) -> None:
    """Supplier rating = mean overall rating."""
    average = (
        db.session.query(func.avg(SupplierRating.overall_rating))
        .filter(SupplierRating.supplier_id == supplier.id)
        .scalar()
    )
    supplier.rating = money(Decimal(str(average))) if average is not None else None
