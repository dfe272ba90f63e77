from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from datetime import date, timedelta
from decimal import Decimal
from typing import List, Literal, Optional
import uuid

from ..access import assert_store_access, can_view_record, list_scope
from ..db import get_conn, set_user_context
from ..deps import get_current_user, require_manager
from ..logs import json_log
from ..numbering import next_document_number
from ..pricing import document_totals, line_subtotal
from ..stock import adjust_inventory, bump_customer_totals, bump_session_totals, insert_sale, insert_sale_item
from ..validation import PaymentMethod, ProformaStatus

router = APIRouter(prefix="/proformas", tags=["proformas"])

SortField = Literal["total", "proforma_number", "valid_until", "created_at"]
SortOrder = Literal["asc", "desc"]

EDITABLE_STATUSES = {"draft", "sent"}
CONVERTIBLE_STATUSES = {"draft", "sent", "accepted"}
STATUS_TRANSITIONS = {
    "draft": {"sent"},
    "sent": {"accepted", "rejected"},
    "accepted": set(),
    "rejected": set(),
    "converted": set(),
    "expired": set(),
}
STATUS_STAMPS = {"sent": "sent_at", "accepted": "accepted_at", "rejected": "rejected_at"}

PROFORMA_COLUMNS = """
    f.id, f.proforma_number, f.store_id, f.created_by, f.customer_id, f.status, f.subtotal, f.tax,
    f.discount, f.total, f.notes, f.terms, f.valid_until, f.sent_at, f.accepted_at, f.rejected_at,
    f.rejection_reason, f.converted_sale_id, f.converted_at, f.created_at, f.updated_at
"""


class ProformaItemIn(BaseModel):
    product_id: uuid.UUID
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(ge=0)
    discount: Decimal = Field(default=Decimal("0"), ge=0)
    notes: Optional[str] = None


class ProformaIn(BaseModel):
    store_id: uuid.UUID
    customer_id: Optional[uuid.UUID] = None
    items: List[ProformaItemIn] = Field(min_length=1)
    tax: Decimal = Field(default=Decimal("0"), ge=0)
    discount: Decimal = Field(default=Decimal("0"), ge=0)
    notes: Optional[str] = None
    terms: Optional[str] = None
    valid_until: Optional[date] = None


class ProformaUpdateIn(BaseModel):
    customer_id: Optional[uuid.UUID] = None
    items: Optional[List[ProformaItemIn]] = Field(default=None, min_length=1)
    tax: Optional[Decimal] = Field(default=None, ge=0)
    discount: Optional[Decimal] = Field(default=None, ge=0)
    notes: Optional[str] = None
    terms: Optional[str] = None
    valid_until: Optional[date] = None


class StatusUpdateIn(BaseModel):
    status: Literal["sent", "accepted", "rejected"]
    rejection_reason: Optional[str] = Field(default=None, max_length=500)


class ConvertIn(BaseModel):
    payment_method: PaymentMethod
    payment_reference: Optional[str] = None
    cash_session_id: Optional[uuid.UUID] = None
    notes: Optional[str] = None


def assert_transition(current: str, target: str) -> None:
    if target not in STATUS_TRANSITIONS.get(current, set()):
        raise HTTPException(status_code=400, detail=f"Cannot change status from {current} to {target}")


@router.get("")
def list_proformas(
    status: Optional[ProformaStatus] = None,
    search: str = "",
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    customer_id: Optional[uuid.UUID] = None,
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
    scope_sql, scope_params = list_scope(user, owner_column="f.created_by", store_column="f.store_id")
    where = [scope_sql]
    params: list = list(scope_params)
    if status:
        where.append("f.status = %s")
        params.append(status)
    if search.strip():
        where.append("f.proforma_number ILIKE %s")
        params.append(f"%{search.strip()}%")
    if date_from:
        where.append("f.created_at >= %s")
        params.append(date_from)
    if date_to:
        where.append("f.created_at < %s")
        params.append(date_to + timedelta(days=1))
    if customer_id:
        where.append("f.customer_id = %s")
        params.append(customer_id)
    if store_id and user["role"] == "admin":
        where.append("f.store_id = %s")
        params.append(store_id)

    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {PROFORMA_COLUMNS},
                       s.name AS store_name, c.name AS customer_name, p.full_name AS created_by_name,
                       COUNT(*) OVER()::int AS total_count
                FROM proformas f
                JOIN stores s ON s.id = f.store_id
                LEFT JOIN customers c ON c.id = f.customer_id
                LEFT JOIN profiles p ON p.id = f.created_by
                WHERE {' AND '.join(where)}
                ORDER BY f.{sort} {order.upper()} NULLS LAST, f.id
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
        "proformas": rows,
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": (total + limit - 1) // limit,
    }


def _load_proforma(cur, proforma_id, user: dict, *, for_update: bool = False) -> dict:
    cur.execute(
        f"SELECT {PROFORMA_COLUMNS} FROM proformas f WHERE f.id = %s {'FOR UPDATE' if for_update else ''}",
        (proforma_id,),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Proforma not found")
    if not can_view_record(user, owner_id=row["created_by"], store_id=row["store_id"]):
        raise HTTPException(status_code=403, detail="Access denied")
    return row


def _load_items(cur, proforma_id) -> list:
    cur.execute(
        """
        SELECT i.id, i.product_id, i.quantity, i.unit_price, i.discount, i.subtotal, i.notes,
               p.name AS product_name, p.sku
        FROM proforma_items i
        JOIN product_templates p ON p.id = i.product_id
        WHERE i.proforma_id = %s
        ORDER BY i.created_at, i.id
        """,
        (proforma_id,),
    )
    return cur.fetchall()


def _insert_items(cur, proforma_id, items: list) -> None:
    for it in items:
        cur.execute(
            """
            INSERT INTO proforma_items (id, proforma_id, product_id, quantity, unit_price, discount, subtotal, notes)
            VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                proforma_id,
                it["product_id"],
                int(it["quantity"]),
                it["unit_price"],
                it.get("discount") or 0,
                line_subtotal(it["unit_price"], it["quantity"], it.get("discount")),
                (it.get("notes") or "").strip() or None,
            ),
        )


@router.get("/{proforma_id}")
def get_proforma(proforma_id: uuid.UUID, user=Depends(get_current_user)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            proforma = _load_proforma(cur, proforma_id, user)
            proforma["items"] = _load_items(cur, proforma_id)
    return {"success": True, "proforma": proforma}


def _create_impl(*, cur, data: ProformaIn, user: dict, today: date) -> dict:
    assert_store_access(user, data.store_id, "Access denied to this store")
    items = [it.model_dump() for it in data.items]
    totals = document_totals(items, data.tax, data.discount)
    if totals["total"] < 0:
        raise HTTPException(status_code=400, detail="Discount cannot exceed the proforma total")
    number = next_document_number(cur, "proforma", data.store_id, today)
    cur.execute(
        """
        INSERT INTO proformas
          (id, proforma_number, store_id, created_by, customer_id, status, subtotal, tax, discount, total,
           notes, terms, valid_until)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s, 'draft', %s, %s, %s, %s, %s, %s, %s)
        RETURNING id, proforma_number
        """,
        (
            number,
            data.store_id,
            user["user_id"],
            data.customer_id,
            totals["subtotal"],
            totals["tax"],
            totals["discount"],
            totals["total"],
            (data.notes or "").strip() or None,
            (data.terms or "").strip() or None,
            data.valid_until,
        ),
    )
    row = cur.fetchone()
    _insert_items(cur, row["id"], items)
    return {**row, **totals}


@router.post("", status_code=201)
def create_proforma(data: ProformaIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.transaction():
            with conn.cursor() as cur:
                row = _create_impl(cur=cur, data=data, user=user, today=date.today())
    json_log("info", "proformas.created", proforma_id=row["id"], proforma_number=row["proforma_number"], user_id=user["user_id"])
    return {"success": True, "proforma": row}


@router.patch("/{proforma_id}")
def update_proforma(proforma_id: uuid.UUID, data: ProformaUpdateIn, user=Depends(get_current_user)):
    fields_set = data.model_fields_set
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.transaction():
            with conn.cursor() as cur:
                current = _load_proforma(cur, proforma_id, user, for_update=True)
                if current["status"] not in EDITABLE_STATUSES:
                    raise HTTPException(status_code=400, detail="Cannot edit proforma with current status")

                patch = {}
                for k in ("customer_id", "notes", "terms", "valid_until"):
                    if k in fields_set:
                        v = getattr(data, k)
                        patch[k] = (v.strip() or None) if isinstance(v, str) else v
                tax = data.tax if "tax" in fields_set and data.tax is not None else current["tax"]
                discount = data.discount if "discount" in fields_set and data.discount is not None else current["discount"]
                if data.items is not None:
                    items = [it.model_dump() for it in data.items]
                    cur.execute("DELETE FROM proforma_items WHERE proforma_id = %s", (proforma_id,))
                    _insert_items(cur, proforma_id, items)
                else:
                    items = _load_items(cur, proforma_id)
                totals = document_totals(items, tax, discount)
                if totals["total"] < 0:
                    raise HTTPException(status_code=400, detail="Discount cannot exceed the proforma total")
                patch.update(totals)

                fields = [f"{k} = %s" for k in patch]
                cur.execute(
                    f"UPDATE proformas f SET {', '.join(fields)} WHERE f.id = %s RETURNING {PROFORMA_COLUMNS}",
                    [*patch.values(), proforma_id],
                )
                proforma = cur.fetchone()
                proforma["items"] = _load_items(cur, proforma_id)
    return {"success": True, "proforma": proforma}


@router.post("/{proforma_id}/status")
def update_proforma_status(proforma_id: uuid.UUID, data: StatusUpdateIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.transaction():
            with conn.cursor() as cur:
                current = _load_proforma(cur, proforma_id, user, for_update=True)
                assert_transition(current["status"], data.status)
                stamp = STATUS_STAMPS[data.status]
                reason = ((data.rejection_reason or "").strip() or None) if data.status == "rejected" else None
                cur.execute(
                    f"""
                    UPDATE proformas f
                    SET status = %s, {stamp} = now(), rejection_reason = COALESCE(%s, rejection_reason)
                    WHERE f.id = %s
                    RETURNING {PROFORMA_COLUMNS}
                    """,
                    (data.status, reason, proforma_id),
                )
                proforma = cur.fetchone()
    json_log("info", "proformas.status_changed", proforma_id=proforma_id, status=data.status, user_id=user["user_id"])
    return {"success": True, "proforma": proforma}


@router.delete("/{proforma_id}")
def delete_proforma(proforma_id: uuid.UUID, user=Depends(require_manager)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.transaction():
            with conn.cursor() as cur:
                current = _load_proforma(cur, proforma_id, user, for_update=True)
                if current["status"] == "converted":
                    raise HTTPException(status_code=400, detail="Cannot delete converted proforma")
                cur.execute("DELETE FROM proformas WHERE id = %s", (proforma_id,))
    return {"success": True}


def _convert_impl(*, cur, proforma_id, data: ConvertIn, user: dict, today: date) -> dict:
    proforma = _load_proforma(cur, proforma_id, user, for_update=True)
    if proforma["status"] not in CONVERTIBLE_STATUSES:
        raise HTTPException(status_code=400, detail="Proforma cannot be converted with current status")
    items = _load_items(cur, proforma_id)
    if not items:
        raise HTTPException(status_code=400, detail="Proforma has no items")

    locked: dict = {}
    for it in items:
        pid = str(it["product_id"])
        if pid not in locked:
            cur.execute(
                """
                SELECT id, product_id, store_id, quantity
                FROM product_inventory
                WHERE product_id = %s AND store_id = %s
                FOR UPDATE
                """,
                (it["product_id"], proforma["store_id"]),
            )
            inv = cur.fetchone()
            if not inv:
                raise HTTPException(status_code=400, detail="Product not available in this store")
            locked[pid] = inv
        requested = sum(int(x["quantity"]) for x in items if str(x["product_id"]) == pid)
        if int(locked[pid]["quantity"]) < requested:
            raise HTTPException(status_code=400, detail="Insufficient stock for product")

    if data.cash_session_id:
        cur.execute("SELECT store_id, status FROM cash_sessions WHERE id = %s FOR UPDATE", (data.cash_session_id,))
        session = cur.fetchone()
        if not session or str(session["store_id"]) != str(proforma["store_id"]) or session["status"] != "open":
            raise HTTPException(status_code=400, detail="Cash session is not open for this store")

    notes = (data.notes or "").strip()
    tag = f"Converted from proforma {proforma['proforma_number']}"
    sale = insert_sale(
        cur,
        sale_number=next_document_number(cur, "sale", proforma["store_id"], today),
        store_id=proforma["store_id"],
        cashier_id=user["user_id"],
        customer_id=proforma["customer_id"],
        cash_session_id=data.cash_session_id,
        totals={k: proforma[k] for k in ("subtotal", "tax", "discount", "total")},
        payment_method=data.payment_method,
        payment_reference=(data.payment_reference or "").strip() or None,
        notes=f"{notes}\n{tag}" if notes else tag,
    )
    for it in items:
        inv = locked[str(it["product_id"])]
        insert_sale_item(
            cur,
            sale_id=sale["id"],
            product_id=it["product_id"],
            inventory_id=inv["id"],
            quantity=it["quantity"],
            unit_price=it["unit_price"],
            discount=it["discount"],
        )
        adjust_inventory(
            cur,
            inventory=inv,
            delta=-int(it["quantity"]),
            movement_type="sale",
            user_id=user["user_id"],
            reference=f"sale:{sale['id']}",
        )
    bump_session_totals(cur, data.cash_session_id, data.payment_method, proforma["total"])
    bump_customer_totals(cur, proforma["customer_id"], proforma["total"])
    cur.execute(
        """
        UPDATE proformas
        SET status = 'converted', converted_sale_id = %s, converted_at = now()
        WHERE id = %s
        """,
        (sale["id"], proforma_id),
    )
    return sale


@router.post("/{proforma_id}/convert")
def convert_proforma(proforma_id: uuid.UUID, data: ConvertIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.transaction():
            with conn.cursor() as cur:
                sale = _convert_impl(cur=cur, proforma_id=proforma_id, data=data, user=user, today=date.today())
    json_log("info", "proformas.converted", proforma_id=proforma_id, sale_id=sale["id"], user_id=user["user_id"])
    return {"success": True, "sale_id": sale["id"], "sale_number": sale["sale_number"]}


@router.post("/{proforma_id}/duplicate", status_code=201)
def duplicate_proforma(proforma_id: uuid.UUID, user=Depends(get_current_user)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.transaction():
            with conn.cursor() as cur:
                source = _load_proforma(cur, proforma_id, user)
                items = _load_items(cur, proforma_id)
                copy = ProformaIn(
                    store_id=source["store_id"],
                    customer_id=source["customer_id"],
                    items=[
                        ProformaItemIn(
                            product_id=it["product_id"],
                            quantity=it["quantity"],
                            unit_price=it["unit_price"],
                            discount=it["discount"],
                            notes=it["notes"],
                        )
                        for it in items
                    ],
                    tax=source["tax"],
                    discount=source["discount"],
                    notes=source["notes"],
                    terms=source["terms"],
                )
                row = _create_impl(cur=cur, data=copy, user=user, today=date.today())
    return {"success": True, "proforma": row}
