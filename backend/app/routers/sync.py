from fastapi import APIRouter, HTTPException, Depends, Query
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional
import time
import uuid

import psycopg

from ..access import assert_store_access, is_manager_or_admin
from ..cash_math import to_money
from ..db import get_conn, set_user_context
from ..deps import get_current_user
from ..logs import json_log
from ..numbering import offline_sale_number
from ..offline_conflicts import NOTHING_FULFILLED_MESSAGE, can_auto_resolve, resolve_items
from ..stock import adjust_inventory, bump_customer_totals, bump_session_totals, insert_sale, insert_sale_item, lock_inventory
from ..validation import PaymentMethod
from .checkout import CheckoutItemIn

router = APIRouter(prefix="/pos", tags=["pos"])


class OfflineTransactionIn(BaseModel):
    local_receipt_number: str = Field(min_length=1)
    created_at: datetime
    store_id: uuid.UUID
    cashier_id: uuid.UUID
    cash_session_id: Optional[uuid.UUID] = None
    customer_id: Optional[uuid.UUID] = None
    items: List[CheckoutItemIn] = Field(min_length=1)
    subtotal: Decimal = Decimal("0")
    tax: Decimal = Field(default=Decimal("0"), ge=0)
    discount: Decimal = Field(default=Decimal("0"), ge=0)
    total: Decimal = Decimal("0")
    payment_method: PaymentMethod = "cash"
    payment_reference: Optional[str] = None
    notes: Optional[str] = None


class SyncIn(BaseModel):
    transactions: List[OfflineTransactionIn] = Field(default_factory=list)


def _sync_notes(notes: Optional[str], local_receipt_number: str) -> str:
    tag = f"[Synced from offline: {local_receipt_number}]"
    return f"{notes}\n{tag}" if notes else tag


def _sync_one_impl(*, cur, tx: OfflineTransactionIn, user: dict, now_ms: int) -> dict:
    """
    Replays one queued sale against current stock. Returns a result row
    `{local_receipt_number, status, sale_id?, sale_number?, conflict?, error?}`.
    """
    assert_store_access(user, tx.store_id)
    if str(tx.cashier_id) != str(user["user_id"]) and not is_manager_or_admin(user):
        raise HTTPException(status_code=403, detail="You can only sync your own sales")

    locked: dict = {}
    stock_by_inventory: dict = {}
    for it in tx.items:
        key = str(it.inventory_id)
        if key in locked:
            continue
        inv = lock_inventory(cur, key, store_id=str(tx.store_id))
        if inv and str(inv["product_id"]) == str(it.product_id):
            locked[key] = inv
    if locked:
        cur.execute(
            "SELECT id, name FROM product_templates WHERE id = ANY(%s::uuid[])",
            ([str(inv["product_id"]) for inv in locked.values()],),
        )
        names = {str(r["id"]): r["name"] for r in cur.fetchall()}
        for key, inv in locked.items():
            pid = str(inv["product_id"])
            stock_by_inventory[key] = {"quantity": int(inv["quantity"]), "name": names.get(pid), "product_id": pid}

    items = [it.model_dump() for it in tx.items]
    resolution = resolve_items(items, stock_by_inventory, tx.total)
    fulfilled = [r for r in resolution["resolved_items"] if r["fulfilled_quantity"] > 0]

    if not fulfilled:
        conflict = {
            **resolution["conflict"],
            "adjusted_total": Decimal("0.00"),
            "refund_amount": to_money(tx.total),
            "message": NOTHING_FULFILLED_MESSAGE,
        }
        return {"local_receipt_number": tx.local_receipt_number, "status": "conflict", "conflict": conflict}

    subtotal = resolution["adjusted_subtotal"] if resolution["has_conflicts"] else to_money(
        sum(to_money(i["unit_price"]) * int(i["quantity"]) - to_money(i["discount"]) for i in items)
    )
    total = to_money(subtotal + to_money(tx.tax) - to_money(tx.discount))
    if total < 0:
        total = Decimal("0.00")
    totals = {"subtotal": subtotal, "tax": to_money(tx.tax), "discount": to_money(tx.discount), "total": total}

    sale = insert_sale(
        cur,
        sale_number=offline_sale_number(now_ms),
        store_id=tx.store_id,
        cashier_id=tx.cashier_id,
        customer_id=tx.customer_id,
        cash_session_id=tx.cash_session_id,
        totals=totals,
        payment_method=tx.payment_method,
        payment_reference=tx.payment_reference,
        notes=_sync_notes(tx.notes, tx.local_receipt_number),
        created_at=tx.created_at,
    )
    for r in fulfilled:
        insert_sale_item(
            cur,
            sale_id=sale["id"],
            product_id=r["product_id"],
            inventory_id=r["inventory_id"],
            quantity=r["fulfilled_quantity"],
            unit_price=r["unit_price"],
            discount=r["discount"],
        )
        adjust_inventory(
            cur,
            inventory=locked[str(r["inventory_id"])],
            delta=-r["fulfilled_quantity"],
            movement_type="sale",
            user_id=user["user_id"],
            reference=f"sale:{sale['id']}",
            notes=f"Offline sale {tx.local_receipt_number}",
            floor_at_zero=True,
        )
    bump_session_totals(cur, tx.cash_session_id, tx.payment_method, total)
    bump_customer_totals(cur, tx.customer_id, total)

    result = {
        "local_receipt_number": tx.local_receipt_number,
        "status": "success",
        "sale_id": sale["id"],
        "sale_number": sale["sale_number"],
        "total": total,
    }
    if resolution["has_conflicts"]:
        conflict = resolution["conflict"]
        result.update(status="conflict", conflict={**conflict, "auto_resolvable": can_auto_resolve(conflict)})
    return result


@router.post("/sync")
def sync_offline_transactions(data: SyncIn, user=Depends(get_current_user)):
    results: list[dict] = []
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        for tx in data.transactions:
            try:
                # One transaction per queued sale so a failure never drops the others.
                with conn.transaction():
                    with conn.cursor() as cur:
                        res = _sync_one_impl(cur=cur, tx=tx, user=user, now_ms=int(time.time() * 1000))
            except HTTPException as e:
                res = {"local_receipt_number": tx.local_receipt_number, "status": "failed", "error": e.detail}
            except psycopg.Error as e:
                res = {"local_receipt_number": tx.local_receipt_number, "status": "failed", "error": "Database error"}
                json_log(
                    "error",
                    "pos.sync.transaction_failed",
                    local_receipt_number=tx.local_receipt_number,
                    user_id=user["user_id"],
                    error=str(e),
                )
            results.append(res)

    synced = sum(1 for r in results if r["status"] == "success")
    conflicts = sum(1 for r in results if r["status"] == "conflict")
    failed = sum(1 for r in results if r["status"] == "failed")
    json_log("info", "pos.sync.completed", user_id=user["user_id"], synced=synced, conflicts=conflicts, failed=failed)
    return {"success": True, "results": results, "synced": synced, "conflicts": conflicts, "failed": failed}


@router.get("/products/sync")
def sync_products(
    store_id: uuid.UUID,
    since: Optional[datetime] = Query(default=None),
    user=Depends(get_current_user),
):
    assert_store_access(user, store_id)
    synced_at = datetime.now(timezone.utc)
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT p.id, p.sku, p.name, p.description, p.price, p.min_price, p.max_price,
                       p.barcode, p.image_url, p.min_stock_level, p.category_id,
                       c.name AS category_name,
                       i.id AS inventory_id, i.quantity, GREATEST(p.updated_at, i.updated_at) AS updated_at
                FROM product_templates p
                JOIN product_inventory i ON i.product_id = p.id AND i.store_id = %s
                LEFT JOIN categories c ON c.id = p.category_id
                WHERE p.is_active = true
                  AND (%s::timestamptz IS NULL OR GREATEST(p.updated_at, i.updated_at) > %s::timestamptz)
                ORDER BY p.name
                """,
                (store_id, since, since),
            )
            products = cur.fetchall()
    return {"success": True, "products": products, "synced_at": synced_at, "count": len(products)}
