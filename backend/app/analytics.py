from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Iterable, Optional

from .cash_math import to_money


def stock_status(quantity: Any, min_stock_level: Any) -> str:
    q = int(quantity or 0)
    if q <= 0:
        return "out_of_stock"
    if q <= int(min_stock_level or 0):
        return "low_stock"
    return "in_stock"


def refund_rate(transactions: int, refunds: int) -> float:
    # Refunded sales are no longer counted as transactions, so the base is both.
    base = transactions + refunds
    if base <= 0:
        return 0.0
    return round(refunds / base * 100, 2)


def sales_summary(trend: Iterable[dict], *, total_tax: Any = None, total_discount: Any = None) -> dict:
    revenue = Decimal("0.00")
    transactions = 0
    refunds = 0
    for row in trend:
        revenue += to_money(row.get("revenue"))
        transactions += int(row.get("transactions") or 0)
        refunds += int(row.get("refund_count") or 0)
    return {
        "total_revenue": to_money(revenue),
        "total_transactions": transactions,
        "avg_transaction_value": to_money(revenue / transactions) if transactions else Decimal("0.00"),
        "refund_count": refunds,
        "refund_rate": refund_rate(transactions, refunds),
        "total_tax": to_money(total_tax),
        "total_discount": to_money(total_discount),
    }


def inventory_summary(stock_levels: list[dict]) -> dict:
    return {
        "total_products": len(stock_levels),
        "total_stock_value": to_money(sum((to_money(s["stock_value"]) for s in stock_levels), Decimal("0"))),
        "low_stock_count": sum(1 for s in stock_levels if s["status"] == "low_stock"),
        "out_of_stock_count": sum(1 for s in stock_levels if s["status"] == "out_of_stock"),
        "in_stock_count": sum(1 for s in stock_levels if s["status"] == "in_stock"),
    }


def category_breakdown(stock_levels: Iterable[dict]) -> list[dict]:
    buckets: dict[str, dict] = {}
    for s in stock_levels:
        name = s.get("category_name") or "Uncategorized"
        b = buckets.setdefault(name, {"category": name, "product_count": 0, "total_quantity": 0, "total_value": Decimal("0.00")})
        b["product_count"] += 1
        b["total_quantity"] += int(s.get("quantity") or 0)
        b["total_value"] = to_money(b["total_value"] + to_money(s.get("stock_value")))
    return list(buckets.values())


def _day(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def product_velocity(
    sale_quantities: Iterable[Any],
    snapshots: list[dict],
    *,
    days: int,
    current_quantity: int,
    price: Any,
    today: Optional[date] = None,
) -> dict:
    """
    sale_quantities: signed quantities of `sale` movements in the window (negative numbers).
    snapshots: movements in the window, oldest first, as {created_at, new_quantity}.

    The stock trend carries the last known quantity of each day forward over the window.
    """
    total_sales = abs(sum(int(q or 0) for q in sale_quantities))
    velocity = total_sales / days if days > 0 else 0.0
    remaining = round(current_quantity / velocity) if velocity > 0 else None

    today = today or date.today()
    start = today - timedelta(days=days)
    end_of_day: dict[date, int] = {}
    for m in snapshots:
        end_of_day[_day(m["created_at"])] = int(m["new_quantity"])

    trend = []
    last = int(snapshots[0]["new_quantity"]) if snapshots else int(current_quantity)
    for i in range(days):
        d = start + timedelta(days=i)
        if d in end_of_day:
            last = end_of_day[d]
        trend.append({"date": d.isoformat(), "quantity": last})

    return {
        "total_sales": total_sales,
        "total_revenue": to_money(total_sales * to_money(price)),
        "average_daily_velocity": round(velocity, 4),
        "days_of_stock_remaining": remaining,
        "stock_trend": trend,
    }
