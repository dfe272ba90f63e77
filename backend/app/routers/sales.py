from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from datetime import date, timedelta
from typing import Literal, Optional
import uuid

from ..access import assert_store_access, can_view_record, list_scope
from ..db import get_conn, set_user_context
from ..deps import get_current_user, require_manager
from ..logs import json_log
from ..stock import adjust_inventory, bump_customer_totals, bump_session_totals, lock_inventory
from ..validation import SaleStatus

router = APIRouter(prefix="/sales", tags=["sales"])

SortField = Literal["total", "sale_number", "created_at"]
SortOrder = Literal["asc", "desc"]

SALE_COLUMNS = """
    s.id, s.sale_number, s.store_id, s.cashier_id, s.customer_id, s.cash_session_id,
    s.subtotal, s.tax, s.discount, s.total, s.payment_method, s.payment_reference, s.status,
    s.notes, s.refund_reason, s.refunded_at, s.created_at, s.updated_at
"""


class RefundIn(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


@router.get("")
def list_sales(
    status: Optional[SaleStatus] = None,
    payment_method: Optional[str] = None,
    search: str = "",
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    cashier_id: Optional[uuid.UUID] = None,
    store_id: Optional[uuid.UUID] = None,
    sort: SortField = "created_at",
    order: SortOrder = "desc",
    page: int = 1,
    limit: int = 10,
    user=Depends(get_current_user),
):
    if page < 1:
        raise HTTPException(status_code=400, detail="page must be >= 1")
    if limit <= 0 or limit > 100:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 100")
    scope_sql, scope_params = list_scope(user, owner_column="s.cashier_id", store_column="s.store_id")
    where = [scope_sql]
    params: list = list(scope_params)
    if status:
        where.append("s.status = %s")
        params.append(status)
    if payment_method:
        where.append("s.payment_method = %s")
        params.append(payment_method.strip().lower())
    if search.strip():
        where.append("s.sale_number ILIKE %s")
        params.append(f"%{search.strip()}%")
    if date_from:
        where.append("s.created_at >= %s")
        params.append(date_from)
    if date_to:
        # Inclusive: everything before the next midnight.
        where.append("s.created_at < %s")
        params.append(date_to + timedelta(days=1))
    if cashier_id:
        where.append("s.cashier_id = %s")
        params.append(cashier_id)
    if store_id and user["role"] == "admin":
        where.append("s.store_id = %s")
        params.append(store_id)

    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {SALE_COLUMNS},
                       st.name AS store_name, p.full_name AS cashier_name, c.name AS customer_name,
                       COUNT(*) OVER()::int AS total_count
                FROM sales s
                JOIN stores st ON st.id = s.store_id
                LEFT JOIN profiles p ON p.id = s.cashier_id
                LEFT JOIN customers c ON c.id = s.customer_id
                WHERE {' AND '.join(where)}
                ORDER BY s.{sort} {order.upper()}, s.id
                LIMIT %s OFFSET %s
                """,
                [*params, limit, (page - 1) * limit],
            )
            rows = cur.fetchall()
    total = rows[0]["total_count"] if rows else 0
    for r in rows:
        r.pop("total_count", None)
    return {
        "success": True,
        "sales": rows,
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": (total + limit - 1) // limit,
    }


def _load_sale(cur, sale_id, *, for_update: bool = False) -> Optional[dict]:
    cur.execute(
        f"""
        SELECT {SALE_COLUMNS}
        FROM sales s
        WHERE s.id = %s
        {"FOR UPDATE" if for_update else ""}
        """,
        (sale_id,),
    )
    return cur.fetchone()


@router.get("/{sale_id}")
def get_sale(sale_id: uuid.UUID, user=Depends(get_current_user)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            sale = _load_sale(cur, sale_id)
            if not sale or not can_view_record(user, owner_id=sale["cashier_id"], store_id=sale["store_id"]):
                raise HTTPException(status_code=404, detail="Sale not found")
            cur.execute(
                """
                SELECT si.id, si.product_id, si.inventory_id, si.quantity, si.unit_price, si.discount,
                       si.subtotal, p.name AS product_name, p.sku
                FROM sale_items si
                JOIN product_templates p ON p.id = si.product_id
                WHERE si.sale_id = %s
                ORDER BY si.created_at, si.id
                """,
                (sale_id,),
            )
            sale["items"] = cur.fetchall()
            cur.execute("SELECT id, name, address, phone, email FROM stores WHERE id = %s", (sale["store_id"],))
            sale["store"] = cur.fetchone()
            cur.execute("SELECT id, full_name, email FROM profiles WHERE id = %s", (sale["cashier_id"],))
            sale["cashier"] = cur.fetchone()
            sale["customer"] = None
            if sale["customer_id"]:
                cur.execute("SELECT id, name, email, phone FROM customers WHERE id = %s", (sale["customer_id"],))
                sale["customer"] = cur.fetchone()
    return {"success": True, "sale": sale}


def _refund_impl(*, cur, sale_id, reason: str, user: dict) -> dict:
    sale = _load_sale(cur, sale_id, for_update=True)
    if not sale:
        raise HTTPException(status_code=404, detail="Sale not found")
    assert_store_access(user, sale["store_id"], "You can only refund sales from your store")
    if sale["status"] == "refunded":
        raise HTTPException(status_code=400, detail="Sale is already refunded")
    if sale["status"] != "completed":
        raise HTTPException(status_code=400, detail="Only completed sales can be refunded")

    cur.execute(
        "SELECT inventory_id, quantity FROM sale_items WHERE sale_id = %s ORDER BY created_at, id",
        (sale_id,),
    )
    for item in cur.fetchall():
        inv = lock_inventory(cur, str(item["inventory_id"]))
        if not inv:
            continue
        adjust_inventory(
            cur,
            inventory=inv,
            delta=int(item["quantity"]),
            movement_type="return",
            user_id=user["user_id"],
            reference=f"Refund: {sale_id}",
            notes=reason,
        )

    bump_customer_totals(cur, sale["customer_id"], -sale["total"], count=-1)
    if sale["cash_session_id"]:
        cur.execute("SELECT status FROM cash_sessions WHERE id = %s FOR UPDATE", (sale["cash_session_id"],))
        session = cur.fetchone()
        # Closed sessions keep the figures they were reconciled with.
        if session and session["status"] in ("open", "locked"):
            bump_session_totals(cur, sale["cash_session_id"], sale["payment_method"], -sale["total"], count=-1)

    cur.execute(
        f"""
        UPDATE sales s
        SET status = 'refunded', refund_reason = %s, refunded_at = now()
        WHERE s.id = %s
        RETURNING {SALE_COLUMNS}
        """,
        (reason, sale_id),
    )
    return cur.fetchone()


@router.post("/{sale_id}/refund")
def refund_sale(sale_id: uuid.UUID, data: RefundIn, user=Depends(require_manager)):
    reason = data.reason.strip()
    if not reason:
        raise HTTPException(status_code=400, detail="Refund reason is required")
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.transaction():
            with conn.cursor() as cur:
                sale = _refund_impl(cur=cur, sale_id=sale_id, reason=reason, user=user)
    json_log("info", "sales.refunded", sale_id=sale_id, user_id=user["user_id"], total=sale["total"])
    return {"success": True, "sale": sale}
