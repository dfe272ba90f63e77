from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import Optional
import uuid

from psycopg import errors as pg_errors

from ..db import get_conn, set_user_context
from ..deps import get_current_user, require_manager
from ..validation import OptionalEmail

router = APIRouter(prefix="/customers", tags=["customers"])

CUSTOMER_COLUMNS = "id, name, email, phone, address, notes, total_purchases, total_spent, created_at, updated_at"
DUPLICATE_EMAIL = "A customer with this email already exists"


class CustomerIn(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    email: OptionalEmail = None
    phone: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None


class CustomerUpdateIn(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    email: OptionalEmail = None
    phone: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None


def _clean(v: Optional[str]) -> Optional[str]:
    return (v or "").strip() or None


@router.get("")
def list_customers(q: str = "", limit: int = 50, offset: int = 0, user=Depends(get_current_user)):
    if limit <= 0 or limit > 200:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 200")
    if offset < 0:
        raise HTTPException(status_code=400, detail="offset must be >= 0")
    qq = (q or "").strip()
    like = f"%{qq}%"
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {CUSTOMER_COLUMNS}, COUNT(*) OVER()::int AS total_count
                FROM customers
                WHERE (%s = '' OR name ILIKE %s OR email ILIKE %s OR phone ILIKE %s)
                ORDER BY name
                LIMIT %s OFFSET %s
                """,
                (qq, like, like, like, limit, offset),
            )
            rows = cur.fetchall()
    total = rows[0]["total_count"] if rows else 0
    for r in rows:
        r.pop("total_count", None)
    return {"success": True, "customers": rows, "total": total}


@router.get("/{customer_id}")
def get_customer(customer_id: uuid.UUID, user=Depends(get_current_user)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            cur.execute(f"SELECT {CUSTOMER_COLUMNS} FROM customers WHERE id = %s", (customer_id,))
            row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Customer not found")
    return {"success": True, "customer": row}


@router.post("", status_code=201)
def create_customer(data: CustomerIn, user=Depends(get_current_user)):
    name = data.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Customer name is required")
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            try:
                cur.execute(
                    f"""
                    INSERT INTO customers (id, name, email, phone, address, notes)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s)
                    RETURNING {CUSTOMER_COLUMNS}
                    """,
                    (name, data.email, _clean(data.phone), _clean(data.address), _clean(data.notes)),
                )
            except pg_errors.UniqueViolation as e:
                raise HTTPException(status_code=409, detail=DUPLICATE_EMAIL) from e
            return {"success": True, "customer": cur.fetchone()}


@router.patch("/{customer_id}")
def update_customer(customer_id: uuid.UUID, data: CustomerUpdateIn, user=Depends(require_manager)):
    patch = {k: getattr(data, k) for k in data.model_fields_set}
    for k in ("name", "phone", "address", "notes"):
        if k in patch:
            patch[k] = _clean(patch[k])
    if "name" in patch and not patch["name"]:
        raise HTTPException(status_code=400, detail="Customer name is required")
    if not patch:
        raise HTTPException(status_code=400, detail="Nothing to update")
    fields = [f"{k} = %s" for k in patch]
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            try:
                cur.execute(
                    f"UPDATE customers SET {', '.join(fields)} WHERE id = %s RETURNING {CUSTOMER_COLUMNS}",
                    [*patch.values(), customer_id],
                )
            except pg_errors.UniqueViolation as e:
                raise HTTPException(status_code=409, detail=DUPLICATE_EMAIL) from e
            row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Customer not found")
    return {"success": True, "customer": row}


@router.delete("/{customer_id}")
def delete_customer(customer_id: uuid.UUID, user=Depends(require_manager)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM sales WHERE customer_id = %s LIMIT 1", (customer_id,))
                if cur.fetchone():
                    raise HTTPException(status_code=400, detail="Cannot delete customer with existing sales")
                cur.execute("SELECT 1 FROM proformas WHERE customer_id = %s LIMIT 1", (customer_id,))
                if cur.fetchone():
                    raise HTTPException(status_code=400, detail="Cannot delete customer with existing proformas")
                cur.execute("DELETE FROM customers WHERE id = %s RETURNING id", (customer_id,))
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="Customer not found")
    return {"success": True}
