from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import Optional
import uuid

from ..db import get_conn, set_user_context
from ..deps import get_current_user, require_admin
from ..logs import json_log
from ..validation import OptionalEmail

router = APIRouter(prefix="/stores", tags=["stores"])

STORE_COLUMNS = "id, name, address, phone, email, created_at, updated_at"


class StoreIn(BaseModel):
    name: str = Field(min_length=2, max_length=200)
    address: Optional[str] = None
    phone: Optional[str] = None
    email: OptionalEmail = None


class StoreUpdateIn(BaseModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=200)
    address: Optional[str] = None
    phone: Optional[str] = None
    email: OptionalEmail = None


def _clean(v: Optional[str]) -> Optional[str]:
    return (v or "").strip() or None


@router.get("")
def list_stores(user=Depends(get_current_user)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            cur.execute(f"SELECT {STORE_COLUMNS} FROM stores ORDER BY name")
            return {"success": True, "stores": cur.fetchall()}


@router.get("/{store_id}")
def get_store(store_id: uuid.UUID, user=Depends(get_current_user)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            cur.execute(f"SELECT {STORE_COLUMNS} FROM stores WHERE id = %s", (store_id,))
            row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Store not found")
    return {"success": True, "store": row}


@router.post("", status_code=201)
def create_store(data: StoreIn, user=Depends(require_admin)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO stores (id, name, address, phone, email)
                VALUES (gen_random_uuid(), %s, %s, %s, %s)
                RETURNING {STORE_COLUMNS}
                """,
                (data.name.strip(), _clean(data.address), _clean(data.phone), data.email),
            )
            row = cur.fetchone()
    json_log("info", "stores.created", store_id=row["id"], user_id=user["user_id"])
    return {"success": True, "store": row}


@router.patch("/{store_id}")
def update_store(store_id: uuid.UUID, data: StoreUpdateIn, user=Depends(require_admin)):
    patch = {k: getattr(data, k) for k in data.model_fields_set}
    for k in ("name", "address", "phone"):
        if k in patch:
            patch[k] = _clean(patch[k])
    if "name" in patch and not patch["name"]:
        raise HTTPException(status_code=400, detail="Store name is required")
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            if patch:
                fields = [f"{k} = %s" for k in patch]
                cur.execute(
                    f"UPDATE stores SET {', '.join(fields)} WHERE id = %s RETURNING {STORE_COLUMNS}",
                    [*patch.values(), store_id],
                )
            else:
                cur.execute(f"SELECT {STORE_COLUMNS} FROM stores WHERE id = %s", (store_id,))
            row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Store not found")
    return {"success": True, "store": row}


@router.delete("/{store_id}")
def delete_store(store_id: uuid.UUID, user=Depends(require_admin)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM product_inventory WHERE store_id = %s LIMIT 1", (store_id,))
                if cur.fetchone():
                    raise HTTPException(status_code=400, detail="Cannot delete store with existing inventory")
                cur.execute("DELETE FROM stores WHERE id = %s RETURNING id", (store_id,))
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="Store not found")
    json_log("info", "stores.deleted", store_id=store_id, user_id=user["user_id"])
    return {"success": True}
