"""
Inventory and ledger writes shared by checkout, offline sync, refunds, proforma
conversion and manual stock movements.

Every quantity change goes through `adjust_inventory` so the row update, the
`stock_movements` ledger entry and the change notification stay together in the
caller's transaction.
"""

import json
from decimal import Decimal
from typing import Any, Optional

from fastapi import HTTPException

from .cash_math import sales_column_for, to_money

INVENTORY_CHANNEL = "inventory_updates"


def lock_inventory(cur, inventory_id: str, *, store_id: Optional[str] = None) -> Optional[dict]:
    if store_id:
        cur.execute(
            """
            SELECT id, product_id, store_id, quantity
            FROM product_inventory
            WHERE id = %s AND store_id = %s
            FOR UPDATE
            """,
            (inventory_id, store_id),
        )
    else:
        cur.execute(
            """
            SELECT id, product_id, store_id, quantity
            FROM product_inventory
            WHERE id = %s
            FOR UPDATE
            """,
            (inventory_id,),
        )
    return cur.fetchone()


def publish_inventory_change(cur, *, store_id: Any, product_id: Any, inventory_id: Any, quantity: int) -> None:
    payload = json.dumps(
        {
            "event": "inventory_updated",
            "store_id": str(store_id),
            "product_id": str(product_id),
            "inventory_id": str(inventory_id),
            "quantity": int(quantity),
        }
    )
    # Delivered to listeners on commit only.
    cur.execute("SELECT pg_notify(%s, %s)", (INVENTORY_CHANNEL, payload))


def adjust_inventory(
    cur,
    *,
    inventory: dict,
    delta: int,
    movement_type: str,
    user_id: Any,
    reference: Optional[str] = None,
    notes: Optional[str] = None,
    floor_at_zero: bool = False,
) -> int:
    """
    Applies a signed `delta` to a locked inventory row and records the movement.
    Returns the new quantity. Going below zero is a 400 unless `floor_at_zero`.
    """
    previous = int(inventory["quantity"])
    new_quantity = previous + int(delta)
    if new_quantity < 0:
        if not floor_at_zero:
            raise HTTPException(status_code=400, detail="Insufficient stock for this movement")
        new_quantity = 0
    applied = new_quantity - previous
    if applied == 0:
        return previous

    cur.execute(
        "UPDATE product_inventory SET quantity = %s WHERE id = %s",
        (new_quantity, inventory["id"]),
    )
    cur.execute(
        """
        INSERT INTO stock_movements
          (id, product_id, store_id, inventory_id, user_id, type, quantity,
           previous_quantity, new_quantity, reference, notes)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """,
        (
            inventory["product_id"],
            inventory["store_id"],
            inventory["id"],
            user_id,
            movement_type,
            applied,
            previous,
            new_quantity,
            reference,
            notes,
        ),
    )
    publish_inventory_change(
        cur,
        store_id=inventory["store_id"],
        product_id=inventory["product_id"],
        inventory_id=inventory["id"],
        quantity=new_quantity,
    )
    inventory["quantity"] = new_quantity
    return new_quantity


def bump_session_totals(cur, session_id: Optional[str], payment_method: str, amount: Any, *, count: int = 1) -> None:
    """Adds a tender to an open/locked session's running totals (negative amount for refunds)."""
    if not session_id:
        return
    column = sales_column_for(payment_method)
    cur.execute(
        f"""
        UPDATE cash_sessions
        SET {column} = {column} + %s,
            transaction_count = GREATEST(transaction_count + %s, 0)
        WHERE id = %s AND status IN ('open', 'locked')
        """,
        (to_money(amount), count, session_id),
    )


def bump_customer_totals(cur, customer_id: Optional[str], amount: Any, *, count: int = 1) -> None:
    if not customer_id:
        return
    cur.execute(
        """
        UPDATE customers
        SET total_purchases = GREATEST(total_purchases + %s, 0),
            total_spent = GREATEST(total_spent + %s, 0)
        WHERE id = %s
        """,
        (count, to_money(amount), customer_id),
    )


def insert_sale(cur, *, sale_number: str, store_id: Any, cashier_id: Any, customer_id: Any, cash_session_id: Any,
                totals: dict, payment_method: str, payment_reference: Optional[str], notes: Optional[str],
                created_at: Any = None) -> dict:
    cur.execute(
        """
        INSERT INTO sales
          (id, sale_number, store_id, cashier_id, customer_id, cash_session_id,
           subtotal, tax, discount, total, payment_method, payment_reference, status, notes, created_at)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 'completed', %s, COALESCE(%s::timestamptz, now()))
        RETURNING id, sale_number, created_at
        """,
        (
            sale_number,
            store_id,
            cashier_id,
            customer_id,
            cash_session_id,
            totals["subtotal"],
            totals["tax"],
            totals["discount"],
            totals["total"],
            payment_method,
            payment_reference,
            notes,
            created_at,
        ),
    )
    return cur.fetchone()


def insert_sale_item(cur, *, sale_id: Any, product_id: Any, inventory_id: Any, quantity: int, unit_price: Any, discount: Any) -> Decimal:
    subtotal = to_money(to_money(unit_price) * int(quantity) - to_money(discount))
    cur.execute(
        """
        INSERT INTO sale_items
          (id, sale_id, product_id, inventory_id, quantity, unit_price, discount, subtotal)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s)
        """,
        (sale_id, product_id, inventory_id, int(quantity), to_money(unit_price), to_money(discount), subtotal),
    )
    return subtotal


INBOUND_MOVEMENTS = {"purchase", "return"}
OUTBOUND_MOVEMENTS = {"sale", "damage", "loss"}


def signed_delta(movement_type: str, quantity: int) -> int:
    """Inbound types always add, outbound types always remove; adjustment and transfer keep the caller's sign."""
    q = int(quantity)
    if movement_type in INBOUND_MOVEMENTS:
        return abs(q)
    if movement_type in OUTBOUND_MOVEMENTS:
        return -abs(q)
    return q
