from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from pydantic import BaseModel, Field
from decimal import Decimal
from typing import List, Optional
import time
import uuid

from botocore.exceptions import BotoCoreError, ClientError
from psycopg import errors as pg_errors

from ..access import assert_store_access, is_manager_or_admin, scoped_store_id
from ..config import settings
from ..db import get_conn, set_user_context
from ..deps import get_current_user, require_admin, require_manager
from ..images import ImageRejected, process_image
from ..logs import json_log
from ..pricing import validate_price_range
from ..stock import adjust_inventory, lock_inventory, publish_inventory_change
from ..storage.s3 import delete_object, key_from_public_url, put_bytes, s3_enabled

router = APIRouter(prefix="/products", tags=["products"])

PRODUCT_COLUMNS = """
    p.id, p.sku, p.name, p.description, p.category_id, p.price, p.min_price, p.max_price,
    p.cost, p.barcode, p.image_url, p.min_stock_level, p.is_active, p.created_at, p.updated_at
"""
DUPLICATE_SKU = "Product with this SKU already exists"


class InitialInventoryIn(BaseModel):
    store_id: uuid.UUID
    quantity: int = Field(default=0, ge=0)


class ProductIn(BaseModel):
    sku: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    category_id: Optional[uuid.UUID] = None
    price: Decimal = Field(ge=0)
    min_price: Optional[Decimal] = Field(default=None, ge=0)
    max_price: Optional[Decimal] = Field(default=None, ge=0)
    cost: Optional[Decimal] = Field(default=None, ge=0)
    barcode: Optional[str] = None
    image_url: Optional[str] = None
    min_stock_level: int = Field(default=10, ge=0)
    is_active: bool = True
    inventories: List[InitialInventoryIn] = Field(default_factory=list)


class ProductUpdateIn(BaseModel):
    sku: Optional[str] = Field(default=None, min_length=1, max_length=64)
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    category_id: Optional[uuid.UUID] = None
    price: Optional[Decimal] = Field(default=None, ge=0)
    min_price: Optional[Decimal] = Field(default=None, ge=0)
    max_price: Optional[Decimal] = Field(default=None, ge=0)
    cost: Optional[Decimal] = Field(default=None, ge=0)
    barcode: Optional[str] = None
    image_url: Optional[str] = None
    min_stock_level: Optional[int] = Field(default=None, ge=0)
    is_active: Optional[bool] = None


class InventoryAddIn(BaseModel):
    store_id: uuid.UUID
    quantity: int = Field(default=0, ge=0)


class InventoryQuantityIn(BaseModel):
    quantity: int = Field(ge=0)
    notes: Optional[str] = None


def _load_inventories(cur, product_ids: list, store_id: Optional[str] = None) -> dict:
    if not product_ids:
        return {}
    cur.execute(
        """
        SELECT i.id, i.product_id, i.store_id, i.quantity, i.updated_at, s.name AS store_name
        FROM product_inventory i
        JOIN stores s ON s.id = i.store_id
        WHERE i.product_id = ANY(%s::uuid[])
          AND (%s::uuid IS NULL OR i.store_id = %s::uuid)
        ORDER BY s.name
        """,
        ([str(p) for p in product_ids], store_id, store_id),
    )
    out: dict = {}
    for r in cur.fetchall():
        out.setdefault(str(r["product_id"]), []).append(r)
    return out


def _load_product(cur, product_id) -> dict:
    cur.execute(
        f"""
        SELECT {PRODUCT_COLUMNS}, c.name AS category_name
        FROM product_templates p
        LEFT JOIN categories c ON c.id = p.category_id
        WHERE p.id = %s
        """,
        (product_id,),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Product not found")
    row["inventories"] = _load_inventories(cur, [row["id"]]).get(str(row["id"]), [])
    row["total_quantity"] = sum(int(i["quantity"]) for i in row["inventories"])
    return row


@router.get("")
def list_products(
    q: str = "",
    category_id: Optional[uuid.UUID] = None,
    store_id: Optional[uuid.UUID] = None,
    active: Optional[bool] = None,
    page: int = 1,
    limit: int = 20,
    user=Depends(get_current_user),
):
    if page < 1:
        raise HTTPException(status_code=400, detail="page must be >= 1")
    if limit <= 0 or limit > 200:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 200")
    qq = (q or "").strip()
    like = f"%{qq}%"
    store_filter = str(store_id) if store_id else None
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {PRODUCT_COLUMNS}, c.name AS category_name, COUNT(*) OVER()::int AS total_count
                FROM product_templates p
                LEFT JOIN categories c ON c.id = p.category_id
                WHERE (%s = '' OR p.name ILIKE %s OR p.sku ILIKE %s OR p.barcode ILIKE %s)
                  AND (%s::uuid IS NULL OR p.category_id = %s::uuid)
                  AND (%s::boolean IS NULL OR p.is_active = %s::boolean)
                  AND (%s::uuid IS NULL OR EXISTS (
                        SELECT 1 FROM product_inventory i WHERE i.product_id = p.id AND i.store_id = %s::uuid))
                ORDER BY p.name
                LIMIT %s OFFSET %s
                """,
                (
                    qq, like, like, like,
                    category_id, category_id,
                    active, active,
                    store_filter, store_filter,
                    limit, (page - 1) * limit,
                ),
            )
            rows = cur.fetchall()
            inventories = _load_inventories(cur, [r["id"] for r in rows], store_filter)
    total = rows[0]["total_count"] if rows else 0
    for r in rows:
        r.pop("total_count", None)
        r["inventories"] = inventories.get(str(r["id"]), [])
        r["total_quantity"] = sum(int(i["quantity"]) for i in r["inventories"])
    return {
        "success": True,
        "products": rows,
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": (total + limit - 1) // limit,
    }


@router.get("/{product_id}")
def get_product(product_id: uuid.UUID, user=Depends(get_current_user)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            return {"success": True, "product": _load_product(cur, product_id)}


@router.post("", status_code=201)
def create_product(data: ProductIn, user=Depends(require_manager)):
    err = validate_price_range(data.price, data.min_price, data.max_price)
    if err:
        raise HTTPException(status_code=400, detail=err)
    for inv in data.inventories:
        assert_store_access(user, inv.store_id, "Managers can only stock their own store")
    if len({str(i.store_id) for i in data.inventories}) != len(data.inventories):
        raise HTTPException(status_code=400, detail="Each store may appear only once")

    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.transaction():
            with conn.cursor() as cur:
                try:
                    cur.execute(
                        """
                        INSERT INTO product_templates
                          (id, sku, name, description, category_id, price, min_price, max_price, cost,
                           barcode, image_url, min_stock_level, is_active)
                        VALUES
                          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                        RETURNING id
                        """,
                        (
                            data.sku.strip(),
                            data.name.strip(),
                            (data.description or "").strip() or None,
                            data.category_id,
                            data.price,
                            data.min_price,
                            data.max_price,
                            data.cost,
                            (data.barcode or "").strip() or None,
                            (data.image_url or "").strip() or None,
                            data.min_stock_level,
                            data.is_active,
                        ),
                    )
                except pg_errors.UniqueViolation as e:
                    raise HTTPException(status_code=409, detail=DUPLICATE_SKU) from e
                product_id = cur.fetchone()["id"]
                for inv in data.inventories:
                    _insert_inventory(cur, product_id=product_id, store_id=inv.store_id, quantity=inv.quantity, user_id=user["user_id"])
                product = _load_product(cur, product_id)
    json_log("info", "products.created", product_id=product_id, sku=product["sku"], user_id=user["user_id"])
    return {"success": True, "product": product}


def _insert_inventory(cur, *, product_id, store_id, quantity: int, user_id) -> dict:
    cur.execute(
        """
        INSERT INTO product_inventory (id, product_id, store_id, quantity)
        VALUES (gen_random_uuid(), %s, %s, 0)
        ON CONFLICT (product_id, store_id) DO NOTHING
        RETURNING id, product_id, store_id, quantity
        """,
        (product_id, store_id),
    )
    inv = cur.fetchone()
    if not inv:
        raise HTTPException(status_code=409, detail="Product already exists in this store")
    if quantity:
        adjust_inventory(
            cur,
            inventory=inv,
            delta=quantity,
            movement_type="purchase",
            user_id=user_id,
            notes="Initial stock",
        )
    else:
        publish_inventory_change(cur, store_id=store_id, product_id=product_id, inventory_id=inv["id"], quantity=0)
    return inv


@router.patch("/{product_id}")
def update_product(product_id: uuid.UUID, data: ProductUpdateIn, user=Depends(require_manager)):
    patch = {k: getattr(data, k) for k in data.model_fields_set}
    for k in ("sku", "name"):
        if k in patch:
            patch[k] = (patch[k] or "").strip()
            if not patch[k]:
                raise HTTPException(status_code=400, detail=f"{k} is required")
    for k in ("description", "barcode", "image_url"):
        if k in patch:
            patch[k] = (patch[k] or "").strip() or None
    if not patch:
        raise HTTPException(status_code=400, detail="Nothing to update")

    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.transaction():
            with conn.cursor() as cur:
                current = _load_product(cur, product_id)
                merged = {**current, **patch}
                err = validate_price_range(merged["price"], merged["min_price"], merged["max_price"])
                if err:
                    raise HTTPException(status_code=400, detail=err)
                fields = [f"{k} = %s" for k in patch]
                try:
                    cur.execute(
                        f"UPDATE product_templates SET {', '.join(fields)} WHERE id = %s",
                        [*patch.values(), product_id],
                    )
                except pg_errors.UniqueViolation as e:
                    raise HTTPException(status_code=409, detail=DUPLICATE_SKU) from e
                return {"success": True, "product": _load_product(cur, product_id)}


@router.post("/{product_id}/toggle-active")
def toggle_product_active(product_id: uuid.UUID, user=Depends(require_manager)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            cur.execute(
                "UPDATE product_templates SET is_active = NOT is_active WHERE id = %s RETURNING id, is_active",
                (product_id,),
            )
            row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"success": True, "product_id": row["id"], "is_active": row["is_active"]}


@router.delete("/{product_id}")
def delete_product(product_id: uuid.UUID, user=Depends(require_admin)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM sale_items WHERE product_id = %s LIMIT 1", (product_id,))
                if cur.fetchone():
                    raise HTTPException(
                        status_code=400,
                        detail="Cannot delete a product with sales history. Deactivate it instead.",
                    )
                cur.execute("SELECT 1 FROM proforma_items WHERE product_id = %s LIMIT 1", (product_id,))
                if cur.fetchone():
                    raise HTTPException(
                        status_code=400,
                        detail="Cannot delete a product used in proformas. Deactivate it instead.",
                    )
                cur.execute("DELETE FROM product_templates WHERE id = %s RETURNING id, sku, image_url", (product_id,))
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="Product not found")
    _discard_stored_image(key_from_public_url(row["image_url"]), product_id)
    json_log("info", "products.deleted", product_id=product_id, sku=row["sku"], user_id=user["user_id"])
    return {"success": True}


@router.post("/{product_id}/inventory", status_code=201)
def add_product_to_store(product_id: uuid.UUID, data: InventoryAddIn, user=Depends(require_manager)):
    assert_store_access(user, data.store_id)
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM product_templates WHERE id = %s", (product_id,))
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="Product not found")
                inv = _insert_inventory(cur, product_id=product_id, store_id=data.store_id, quantity=data.quantity, user_id=user["user_id"])
    return {"success": True, "inventory": inv}


@router.patch("/inventory/{inventory_id}")
def set_inventory_quantity(inventory_id: uuid.UUID, data: InventoryQuantityIn, user=Depends(get_current_user)):
    if not is_manager_or_admin(user):
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.transaction():
            with conn.cursor() as cur:
                inv = lock_inventory(cur, str(inventory_id), store_id=scoped_store_id(user, None))
                if not inv:
                    raise HTTPException(status_code=404, detail="Inventory not found")
                previous = int(inv["quantity"])
                adjust_inventory(
                    cur,
                    inventory=inv,
                    delta=data.quantity - previous,
                    movement_type="adjustment",
                    user_id=user["user_id"],
                    notes=(data.notes or "").strip() or "Manual quantity update",
                )
    return {"success": True, "inventory_id": inventory_id, "previous_quantity": previous, "quantity": data.quantity}


def _replace_image_impl(*, cur, product_id, image, now_ms: int) -> tuple[str, Optional[str]]:
    """
    Uploads the processed image and points the product at it.
    Returns (new_url, key of the previous stored image or None).
    """
    cur.execute("SELECT id, image_url FROM product_templates WHERE id = %s FOR UPDATE", (product_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Product not found")
    key = f"products/{product_id}/{now_ms}.{image.extension}"
    url = put_bytes(key=key, data=image.data, content_type=image.content_type, cache_control="public, max-age=31536000")
    cur.execute("UPDATE product_templates SET image_url = %s WHERE id = %s", (url, product_id))
    return url, key_from_public_url(row["image_url"])


def _discard_stored_image(key: Optional[str], product_id) -> None:
    if not key:
        return
    try:
        delete_object(key=key)
    except (BotoCoreError, ClientError) as e:
        # The product already points elsewhere; an orphaned object is only wasted space.
        json_log("warning", "products.image.delete_failed", product_id=product_id, key=key, error=str(e))


@router.post("/{product_id}/image")
def upload_product_image(
    product_id: uuid.UUID,
    file: UploadFile = File(...),
    supports_avif: bool = Form(default=False),
    user=Depends(require_manager),
):
    if not s3_enabled():
        raise HTTPException(status_code=503, detail="Image storage is not configured")
    raw = file.file.read() or b""
    max_bytes = settings.image_max_mb * 1024 * 1024
    if len(raw) > max_bytes:
        raise HTTPException(status_code=413, detail=f"Image too large (max {settings.image_max_mb}MB)")
    try:
        image = process_image(raw, file.content_type or "", prefer_avif=supports_avif)
    except ImageRejected as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.transaction():
            with conn.cursor() as cur:
                try:
                    url, old_key = _replace_image_impl(cur=cur, product_id=product_id, image=image, now_ms=int(time.time() * 1000))
                except (BotoCoreError, ClientError) as e:
                    json_log("error", "products.image.upload_failed", product_id=product_id, error=str(e))
                    raise HTTPException(status_code=502, detail="Failed to upload image") from e
    _discard_stored_image(old_key, product_id)
    json_log(
        "info",
        "products.image.uploaded",
        product_id=product_id,
        user_id=user["user_id"],
        bytes=len(image.data),
        content_type=image.content_type,
    )
    return {"success": True, "url": url, "width": image.width, "height": image.height}


@router.delete("/{product_id}/image")
def delete_product_image(product_id: uuid.UUID, user=Depends(require_manager)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, image_url FROM product_templates WHERE id = %s FOR UPDATE", (product_id,))
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="Product not found")
                cur.execute("UPDATE product_templates SET image_url = NULL WHERE id = %s", (product_id,))
    _discard_stored_image(key_from_public_url(row["image_url"]), product_id)
    return {"success": True}
