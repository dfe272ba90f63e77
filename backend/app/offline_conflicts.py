"""
Reconciliation of sales rung up while a register was offline.

The client reserves stock against its cached catalog; by the time the queue reaches
the server another register may have sold the same units. Each queued line is
fulfilled from current server stock, and whatever cannot be fulfilled is priced as
a refund owed to the customer.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from .cash_math import to_money

# Refunds under this amount, with every line at least partly fulfilled, need no review.
AUTO_RESOLVE_REFUND_LIMIT = Decimal("5")

NOTHING_FULFILLED_MESSAGE = "No items could be fulfilled. Full refund required."


def resolve_items(items: list[dict], stock_by_inventory: dict[str, dict], original_total: Any) -> dict:
    """
    items: [{product_id, inventory_id, quantity, unit_price, discount}]
    stock_by_inventory: inventory_id -> {"quantity": int, "name": str, "product_id"?: str}

    Lines drawing on the same inventory row share its stock in order, so a
    later line only sees what earlier lines left behind.

    Returns {has_conflicts, resolved_items, conflict, adjusted_subtotal, refund_amount}.
    """
    resolved: list[dict] = []
    conflict_items: list[dict] = []
    refund_total = Decimal("0.00")
    adjusted_subtotal = Decimal("0.00")
    remaining = {key: max(0, int(row.get("quantity") or 0)) for key, row in stock_by_inventory.items()}

    for it in items:
        pid = str(it["product_id"])
        inv_key = str(it["inventory_id"])
        stock_row = stock_by_inventory.get(inv_key) or {}
        if stock_row.get("product_id") and str(stock_row["product_id"]) != pid:
            stock_row = {}
        stock = remaining.get(inv_key, 0) if stock_row else 0
        name = stock_row.get("name") or "Unknown"
        requested = int(it["quantity"])
        price = to_money(it["unit_price"])
        discount = to_money(it.get("discount"))

        if stock >= requested:
            fulfilled = requested
            refund = Decimal("0.00")
            adjusted_subtotal += price * requested - discount
        elif stock > 0:
            fulfilled = stock
            refund = to_money((requested - stock) * price)
            adjusted_subtotal += price * stock - discount
        else:
            fulfilled = 0
            refund = to_money(requested * price - discount)
        if stock_row:
            remaining[inv_key] = stock - fulfilled

        resolved.append({**it, "requested_quantity": requested, "fulfilled_quantity": fulfilled, "refund_amount": refund})
        if fulfilled < requested:
            conflict_items.append(
                {
                    "product_id": pid,
                    "product_name": name,
                    "requested_quantity": requested,
                    "fulfilled_quantity": fulfilled,
                    "server_stock": stock,
                    "price_at_sale": price,
                    "refund_for_item": refund,
                }
            )
            refund_total += refund

    adjusted_subtotal = to_money(adjusted_subtotal)
    refund_total = to_money(refund_total)
    conflict: Optional[dict] = None
    if conflict_items:
        kind = conflict_type(conflict_items)
        conflict = {
            "type": kind,
            "items": conflict_items,
            "original_total": to_money(original_total),
            "adjusted_total": adjusted_subtotal,
            "refund_amount": refund_total,
            "message": conflict_message(kind, conflict_items),
            "acknowledged_at": None,
            "acknowledged_by": None,
        }
    return {
        "has_conflicts": bool(conflict_items),
        "resolved_items": resolved,
        "conflict": conflict,
        "adjusted_subtotal": adjusted_subtotal,
        "refund_amount": refund_total,
    }


def conflict_type(conflict_items: list[dict]) -> str:
    unavailable = any(i["fulfilled_quantity"] == 0 for i in conflict_items)
    partial = any(0 < i["fulfilled_quantity"] < i["requested_quantity"] for i in conflict_items)
    if unavailable and not partial:
        return "product_unavailable"
    return "stock_shortage"


def conflict_message(kind: str, conflict_items: list[dict]) -> str:
    if kind == "product_unavailable":
        names = ", ".join(i["product_name"] for i in conflict_items if i["fulfilled_quantity"] == 0)
        return f"The following products are no longer available: {names}. A refund has been calculated."
    shortages = ", ".join(
        f"{i['product_name']} ({i['fulfilled_quantity']}/{i['requested_quantity']})" for i in conflict_items
    )
    return f"Stock was insufficient for: {shortages}. Quantities have been adjusted and a partial refund calculated."


def can_auto_resolve(conflict: dict) -> bool:
    return to_money(conflict["refund_amount"]) < AUTO_RESOLVE_REFUND_LIMIT and all(
        i["fulfilled_quantity"] > 0 for i in conflict["items"]
    )


def acknowledge(conflict: dict, user_id: str, *, now: Optional[datetime] = None) -> dict:
    return {
        **conflict,
        "acknowledged_at": now or datetime.now(timezone.utc),
        "acknowledged_by": str(user_id),
    }
