from fastapi import APIRouter, Depends, HTTPException
from datetime import date, timedelta
from typing import Optional
import uuid

from ..access import scoped_store_id
from ..analytics import category_breakdown, inventory_summary, sales_summary, stock_status
from ..cash_math import to_money
from ..db import get_conn, set_user_context
from ..deps import get_current_user, require_manager
from ..validation import GroupBy

router = APIRouter(tags=["reports"])

TRUNC_UNITS = {"daily": "day", "weekly": "week", "monthly": "month"}


def _store_filter(user: dict, store_id: Optional[uuid.UUID]) -> Optional[str]:
    sid = scoped_store_id(user, str(store_id) if store_id else None)
    if user["role"] != "admin" and not sid:
        raise HTTPException(status_code=403, detail="No store assigned to this account")
    return sid


def _window(date_from: Optional[date], date_to: Optional[date], default_days: int = 30) -> tuple[date, date]:
    end = date_to or date.today()
    start = date_from or end - timedelta(days=default_days - 1)
    if start > end:
        raise HTTPException(status_code=400, detail="date_from must be on or before date_to")
    return start, end


def _trend(cur, *, store_id: Optional[str], start: date, end: date, group_by: str) -> list:
    cur.execute(
        """
        SELECT date_trunc(%s, s.created_at)::date AS period,
               COALESCE(SUM(s.total) FILTER (WHERE s.status = 'completed'), 0) AS revenue,
               COUNT(*) FILTER (WHERE s.status = 'completed')::int AS transactions,
               COUNT(*) FILTER (WHERE s.status = 'refunded')::int AS refund_count
        FROM sales s
        WHERE s.created_at >= %s AND s.created_at < %s
          AND (%s::uuid IS NULL OR s.store_id = %s::uuid)
        GROUP BY 1
        ORDER BY 1
        """,
        (TRUNC_UNITS[group_by], start, end + timedelta(days=1), store_id, store_id),
    )
    return cur.fetchall()


def _top_products(cur, *, store_id: Optional[str], start: date, end: date, limit: int) -> list:
    cur.execute(
        """
        SELECT si.product_id, p.name, p.sku,
               SUM(si.quantity)::int AS quantity_sold,
               COALESCE(SUM(si.subtotal), 0) AS revenue
        FROM sale_items si
        JOIN sales s ON s.id = si.sale_id
        JOIN product_templates p ON p.id = si.product_id
        WHERE s.status = 'completed'
          AND s.created_at >= %s AND s.created_at < %s
          AND (%s::uuid IS NULL OR s.store_id = %s::uuid)
        GROUP BY si.product_id, p.name, p.sku
        ORDER BY revenue DESC, quantity_sold DESC
        LIMIT %s
        """,
        (start, end + timedelta(days=1), store_id, store_id, limit),
    )
    return cur.fetchall()


def _stock_levels(cur, *, store_id: Optional[str]) -> list:
    cur.execute(
        """
        SELECT i.id AS inventory_id, i.product_id, i.store_id, i.quantity,
               p.name, p.sku, p.price, p.cost, p.min_stock_level,
               c.name AS category_name, s.name AS store_name
        FROM product_inventory i
        JOIN product_templates p ON p.id = i.product_id
        JOIN stores s ON s.id = i.store_id
        LEFT JOIN categories c ON c.id = p.category_id
        WHERE p.is_active = true
          AND (%s::uuid IS NULL OR i.store_id = %s::uuid)
        ORDER BY p.name, s.name
        """,
        (store_id, store_id),
    )
    rows = cur.fetchall()
    for r in rows:
        r["status"] = stock_status(r["quantity"], r["min_stock_level"])
        # Valued at cost when known, otherwise at selling price.
        unit = r["cost"] if r["cost"] is not None else r["price"]
        r["stock_value"] = to_money(to_money(unit) * int(r["quantity"]))
    return rows


@router.get("/dashboard")
def dashboard(
    store_id: Optional[uuid.UUID] = None,
    days: int = 30,
    group_by: GroupBy = "daily",
    top: int = 5,
    user=Depends(get_current_user),
):
    if days <= 0 or days > 366:
        raise HTTPException(status_code=400, detail="days must be between 1 and 366")
    if top <= 0 or top > 50:
        raise HTTPException(status_code=400, detail="top must be between 1 and 50")
    sid = _store_filter(user, store_id)
    today = date.today()
    start = today - timedelta(days=days - 1)
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT COALESCE(SUM(total) FILTER (WHERE created_at >= %s), 0) AS today_revenue,
                       COUNT(*) FILTER (WHERE created_at >= %s)::int AS today_transactions,
                       COALESCE(SUM(total), 0) AS period_revenue,
                       COUNT(*)::int AS period_transactions
                FROM sales
                WHERE status = 'completed' AND created_at >= %s
                  AND (%s::uuid IS NULL OR store_id = %s::uuid)
                """,
                (today, today, start, sid, sid),
            )
            metrics = cur.fetchone()
            cur.execute("SELECT COUNT(*)::int AS n FROM customers")
            metrics["customer_count"] = cur.fetchone()["n"]
            levels = _stock_levels(cur, store_id=sid)
            metrics["product_count"] = len({str(r["product_id"]) for r in levels})
            trend = _trend(cur, store_id=sid, start=start, end=today, group_by=group_by)
            top_products = _top_products(cur, store_id=sid, start=start, end=today, limit=top)
    low_stock = [r for r in levels if r["status"] != "in_stock"]
    metrics["low_stock_count"] = len(low_stock)
    metrics["avg_transaction_value"] = (
        to_money(metrics["period_revenue"] / metrics["period_transactions"]) if metrics["period_transactions"] else to_money(0)
    )
    return {
        "success": True,
        "metrics": metrics,
        "revenue_trend": trend,
        "top_products": top_products,
        "low_stock_alerts": sorted(low_stock, key=lambda r: int(r["quantity"]))[:20],
    }


@router.get("/reports/sales")
def sales_report(
    store_id: Optional[uuid.UUID] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    group_by: GroupBy = "daily",
    user=Depends(require_manager),
):
    sid = _store_filter(user, store_id)
    start, end = _window(date_from, date_to)
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            trend = _trend(cur, store_id=sid, start=start, end=end, group_by=group_by)
            cur.execute(
                """
                SELECT payment_method, COUNT(*)::int AS transactions, COALESCE(SUM(total), 0) AS revenue,
                       COALESCE(SUM(tax), 0) AS tax, COALESCE(SUM(discount), 0) AS discount
                FROM sales
                WHERE status = 'completed' AND created_at >= %s AND created_at < %s
                  AND (%s::uuid IS NULL OR store_id = %s::uuid)
                GROUP BY payment_method
                ORDER BY revenue DESC
                """,
                (start, end + timedelta(days=1), sid, sid),
            )
            payments = cur.fetchall()
            top_products = _top_products(cur, store_id=sid, start=start, end=end, limit=10)
    summary = sales_summary(
        trend,
        total_tax=sum(to_money(p["tax"]) for p in payments),
        total_discount=sum(to_money(p["discount"]) for p in payments),
    )
    return {
        "success": True,
        "period": {"from": start, "to": end, "group_by": group_by},
        "summary": summary,
        "trend": trend,
        "payment_breakdown": [{k: v for k, v in p.items() if k not in ("tax", "discount")} for p in payments],
        "top_products": top_products,
    }


@router.get("/reports/inventory")
def inventory_report(store_id: Optional[uuid.UUID] = None, user=Depends(require_manager)):
    sid = _store_filter(user, store_id)
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            levels = _stock_levels(cur, store_id=sid)
    return {
        "success": True,
        "stock_levels": levels,
        "summary": inventory_summary(levels),
        "category_breakdown": category_breakdown(levels),
    }


@router.get("/reports/performance")
def performance_report(
    store_id: Optional[uuid.UUID] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    user=Depends(require_manager),
):
    sid = _store_filter(user, store_id)
    start, end = _window(date_from, date_to)
    params = (start, end + timedelta(days=1), sid, sid)
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT st.id AS store_id, st.name AS store_name,
                       COUNT(s.id) FILTER (WHERE s.status = 'completed')::int AS transactions,
                       COALESCE(SUM(s.total) FILTER (WHERE s.status = 'completed'), 0) AS revenue,
                       COUNT(s.id) FILTER (WHERE s.status = 'refunded')::int AS refund_count
                FROM stores st
                LEFT JOIN sales s ON s.store_id = st.id AND s.created_at >= %s AND s.created_at < %s
                WHERE (%s::uuid IS NULL OR st.id = %s::uuid)
                GROUP BY st.id, st.name
                ORDER BY revenue DESC
                """,
                params,
            )
            stores = cur.fetchall()
            cur.execute(
                """
                SELECT p.id AS cashier_id, p.full_name AS cashier_name,
                       COUNT(s.id) FILTER (WHERE s.status = 'completed')::int AS transactions,
                       COALESCE(SUM(s.total) FILTER (WHERE s.status = 'completed'), 0) AS revenue,
                       COUNT(s.id) FILTER (WHERE s.status = 'refunded')::int AS refund_count
                FROM sales s
                JOIN profiles p ON p.id = s.cashier_id
                WHERE s.created_at >= %s AND s.created_at < %s
                  AND (%s::uuid IS NULL OR s.store_id = %s::uuid)
                GROUP BY p.id, p.full_name
                ORDER BY revenue DESC
                """,
                params,
            )
            cashiers = cur.fetchall()
    for row in (*stores, *cashiers):
        row["avg_transaction_value"] = to_money(row["revenue"] / row["transactions"]) if row["transactions"] else to_money(0)
    return {
        "success": True,
        "period": {"from": start, "to": end},
        "store_comparison": stores,
        "cashier_performance": cashiers,
    }
