from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import Optional
import uuid

from psycopg import errors as pg_errors

from ..db import get_conn, set_user_context
from ..deps import get_current_user, require_manager

router = APIRouter(prefix="/categories", tags=["categories"])

DUPLICATE_NAME = "A category with this name already exists"


class CategoryIn(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None


class CategoryUpdateIn(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None


@router.get("")
def list_categories(user=Depends(get_current_user)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT c.id, c.name, c.description, c.created_at, c.updated_at,
                       COUNT(p.id)::int AS product_count
                FROM categories c
                LEFT JOIN product_templates p ON p.category_id = c.id
                GROUP BY c.id
                ORDER BY c.name
                """
            )
            return {"success": True, "categories": cur.fetchall()}


@router.post("", status_code=201)
def create_category(data: CategoryIn, user=Depends(require_manager)):
    name = data.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Category name is required")
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            try:
                cur.execute(
                    """
                    INSERT INTO categories (id, name, description)
                    VALUES (gen_random_uuid(), %s, %s)
                    RETURNING id, name, description, created_at, updated_at
                    """,
                    (name, (data.description or "").strip() or None),
                )
            except pg_errors.UniqueViolation as e:
                raise HTTPException(status_code=409, detail=DUPLICATE_NAME) from e
            return {"success": True, "category": cur.fetchone()}


@router.patch("/{category_id}")
def update_category(category_id: uuid.UUID, data: CategoryUpdateIn, user=Depends(require_manager)):
    patch = {k: getattr(data, k) for k in data.model_fields_set}
    if "name" in patch:
        patch["name"] = (patch["name"] or "").strip()
        if not patch["name"]:
            raise HTTPException(status_code=400, detail="Category name is required")
    if "description" in patch:
        patch["description"] = (patch["description"] or "").strip() or None
    if not patch:
        raise HTTPException(status_code=400, detail="Nothing to update")
    fields = [f"{k} = %s" for k in patch]
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            try:
                cur.execute(
                    f"""
                    UPDATE categories SET {', '.join(fields)}
                    WHERE id = %s
                    RETURNING id, name, description, created_at, updated_at
                    """,
                    [*patch.values(), category_id],
                )
            except pg_errors.UniqueViolation as e:
                raise HTTPException(status_code=409, detail=DUPLICATE_NAME) from e
            row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Category not found")
    return {"success": True, "category": row}


@router.delete("/{category_id}")
def delete_category(category_id: uuid.UUID, user=Depends(require_manager)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.transaction():
            with conn.cursor() as cur:
                # Products stay; they become uncategorized.
                cur.execute("UPDATE product_templates SET category_id = NULL WHERE category_id = %s", (category_id,))
                detached = cur.rowcount
                cur.execute("DELETE FROM categories WHERE id = %s RETURNING id", (category_id,))
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="Category not found")
    return {"success": True, "detached_products": detached}
