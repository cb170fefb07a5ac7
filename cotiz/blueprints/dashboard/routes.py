"""
Dashboard, reports and insights

- /dashboard            role-aware summary (admin / supplier / client)
- /reports/spending     completed payments by month and supplier (JSON or ?format=csv)
- /insights             spend trend, projection, top suppliers (+ AI narrative when configured)
"""

from __future__ import annotations

from datetime import datetime, time, timedelta
from typing import List

from flask import Blueprint, Response, jsonify, request
from flask_login import current_user, login_required

from ...insights import admin_dashboard, client_dashboard, predictive_insights, spending_csv, spending_rows, supplier_dashboard
from ...models import Client
from ...security import accessible_client_ids, client_user_required, require_client_access
from ...services import ai
from ...utils import parse_date, parse_optional_int

dashboard_bp = Blueprint("dashboard", __name__)


def _report_client_ids() -> List[int]:
    """Clients covered by a report: ?client_id narrows, admins default to every client."""
    client_id = parse_optional_int(request.args.get("client_id"))
    if client_id is not None:
        require_client_access(client_id)
        return [client_id]
    ids = accessible_client_ids()
    if ids is None:
        return [c.id for c in Client.query.with_entities(Client.id).all()]
    return sorted(ids)


@dashboard_bp.route("/dashboard")
@login_required
def dashboard():
    if current_user.is_admin:
        return jsonify({"panel": "admin", **admin_dashboard()})
    if current_user.is_supplier_user:
        return jsonify({"panel": "supplier", **supplier_dashboard(current_user.supplier)})
    return jsonify({"panel": "client", **client_dashboard(sorted(accessible_client_ids() or []), current_user)})


@dashboard_bp.route("/reports/spending")
@client_user_required
def spending_report():
    """Query args: start, end (ISO dates), client_id, format=csv."""
    start = parse_date(request.args.get("start"), "start")
    end = parse_date(request.args.get("end"), "end")
    rows = spending_rows(
        _report_client_ids(),
        start=datetime.combine(start, time.min) if start else None,
        end=datetime.combine(end, time.min) + timedelta(days=1) if end else None,
    )

    if request.args.get("format") == "csv":
        return Response(
            spending_csv(rows),
            mimetype="text/csv",
            headers={"Content-Disposition": "attachment; filename=gastos.csv"},
        )
    total = round(sum(row["total"] for row in rows), 2)
    return jsonify({"items": rows, "total": total})


@dashboard_bp.route("/insights")
@client_user_required
def insights():
    """Query args: months (default 6, max 24), narrative=1 for the AI summary."""
    months = max(2, min(parse_optional_int(request.args.get("months")) or 6, 24))
    data = predictive_insights(_report_client_ids(), months=months)
    if request.args.get("narrative") in ("1", "true") and ai.ai_configured():
        data["narrative"] = ai.narrate_insights(data)
    return jsonify(data)
