from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from datetime import date
from typing import Optional
import uuid

from ..access import assert_store_access, scoped_store_id
from ..analytics import product_velocity
from ..db import get_conn, set_user_context
from ..deps import get_current_user, require_manager
from ..logs import json_log
from ..stock import adjust_inventory, signed_delta
from ..validation import StockMovementType

router = APIRouter(prefix="/stock-movements", tags=["inventory"])


class StockMovementIn(BaseModel):
    product_id: uuid.UUID
    store_id: uuid.UUID
    type: StockMovementType
    quantity: int
    notes: Optional[str] = Field(default=None, max_length=500)
    reference: Optional[str] = Field(default=None, max_length=200)


@router.get("")
def list_stock_movements(
    product_id: Optional[uuid.UUID] = None,
    store_id: Optional[uuid.UUID] = None,
    type: Optional[StockMovementType] = None,
    page: int = 1,
    limit: int = 50,
    user=Depends(get_current_user),
):
    if page < 1:
        raise HTTPException(status_code=400, detail="page must be >= 1")
    if limit <= 0 or limit > 200:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 200")
    store_filter = scoped_store_id(user, str(store_id) if store_id else None)
    if user["role"] != "admin" and not store_filter:
        return {"success": True, "movements": [], "total": 0, "page": page, "limit": limit, "total_pages": 0}
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT m.id, m.product_id, m.store_id, m.inventory_id, m.user_id, m.type, m.quantity,
                       m.previous_quantity, m.new_quantity, m.reference, m.notes, m.created_at,
                       p.name AS product_name, p.sku, s.name AS store_name, u.full_name AS user_name,
                       COUNT(*) OVER()::int AS total_count
                FROM stock_movements m
                JOIN product_templates p ON p.id = m.product_id
                JOIN stores s ON s.id = m.store_id
                LEFT JOIN profiles u ON u.id = m.user_id
                WHERE (%s::uuid IS NULL OR m.product_id = %s::uuid)
                  AND (%s::uuid IS NULL OR m.store_id = %s::uuid)
                  AND (%s::text IS NULL OR m.type = %s::stock_movement_type)
                ORDER BY m.created_at DESC
                LIMIT %s OFFSET %s
                """,
                (product_id, product_id, store_filter, store_filter, type, type, limit, (page - 1) * limit),
            )
            rows = cur.fetchall()
    total = rows[0]["total_count"] if rows else 0
    for r in rows:
        r.pop("total_count", None)
    return {
        "success": True,
        "movements": rows,
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": (total + limit - 1) // limit,
    }


def _create_movement_impl(*, cur, data: StockMovementIn, user: dict) -> dict:
    if data.quantity == 0:
        raise HTTPException(status_code=400, detail="Quantity cannot be zero")
    assert_store_access(user, data.store_id)
    cur.execute(
        """
        SELECT id, product_id, store_id, quantity
        FROM product_inventory
        WHERE product_id = %s AND store_id = %s
        FOR UPDATE
        """,
        (data.product_id, data.store_id),
    )
    inv = cur.fetchone()
    if not inv:
        raise HTTPException(status_code=404, detail="Product is not stocked in this store")
    previous = int(inv["quantity"])
    delta = signed_delta(data.type, data.quantity)
    new_quantity = adjust_inventory(
        cur,
        inventory=inv,
        delta=delta,
        movement_type=data.type,
        user_id=user["user_id"],
        reference=(data.reference or "").strip() or None,
        notes=(data.notes or "").strip() or None,
    )
    return {"inventory_id": inv["id"], "previous_quantity": previous, "new_quantity": new_quantity, "quantity": delta}


@router.post("", status_code=201)
def create_stock_movement(data: StockMovementIn, user=Depends(require_manager)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.transaction():
            with conn.cursor() as cur:
                res = _create_movement_impl(cur=cur, data=data, user=user)
    json_log(
        "info",
        "inventory.movement.created",
        inventory_id=res["inventory_id"],
        type=data.type,
        quantity=res["quantity"],
        user_id=user["user_id"],
    )
    return {"success": True, "movement": res}


@router.get("/products/{product_id}/stats")
def product_stock_stats(
    product_id: uuid.UUID,
    store_id: Optional[uuid.UUID] = None,
    days: int = 30,
    user=Depends(get_current_user),
):
    if days <= 0 or days > 365:
        raise HTTPException(status_code=400, detail="days must be between 1 and 365")
    store_filter = scoped_store_id(user, str(store_id) if store_id else None)
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            cur.execute("SELECT id, name, price FROM product_templates WHERE id = %s", (product_id,))
            product = cur.fetchone()
            if not product:
                raise HTTPException(status_code=404, detail="Product not found")
            cur.execute(
                """
                SELECT COALESCE(SUM(quantity), 0)::int AS quantity
                FROM product_inventory
                WHERE product_id = %s AND (%s::uuid IS NULL OR store_id = %s::uuid)
                """,
                (product_id, store_filter, store_filter),
            )
            current = int(cur.fetchone()["quantity"])
            cur.execute(
                """
                SELECT type, quantity, new_quantity, created_at
                FROM stock_movements
                WHERE product_id = %s
                  AND (%s::uuid IS NULL OR store_id = %s::uuid)
                  AND created_at >= now() - make_interval(days => %s)
                ORDER BY created_at
                """,
                (product_id, store_filter, store_filter, days),
            )
            movements = cur.fetchall()
    stats = product_velocity(
        [m["quantity"] for m in movements if m["type"] == "sale"],
        movements,
        days=days,
        current_quantity=current,
        price=product["price"],
        today=date.today(),
    )
    return {"success": True, "product_id": product["id"], "current_quantity": current, "stats": stats}
