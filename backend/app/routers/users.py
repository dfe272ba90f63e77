from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import List, Optional
import uuid

from psycopg.errors import UniqueViolation

from ..db import get_conn, set_user_context
from ..deps import require_admin
from ..logs import json_log
from ..security import hash_password
from ..validation import Email, UserRole

router = APIRouter(prefix="/users", tags=["users"])

USER_COLUMNS = """
    p.id, p.email, p.full_name, p.avatar_url, p.role, p.store_id, p.preferred_language,
    p.deleted_at, p.created_at, p.updated_at
"""


class UserIn(BaseModel):
    email: Email
    password: str = Field(min_length=8, max_length=128)
    full_name: str = Field(min_length=2, max_length=200)
    role: UserRole = "cashier"
    store_id: Optional[uuid.UUID] = None


class UserUpdateIn(BaseModel):
    full_name: Optional[str] = Field(default=None, min_length=2, max_length=200)
    role: Optional[UserRole] = None


class StoreAssignmentIn(BaseModel):
    store_ids: List[uuid.UUID] = Field(default_factory=list)
    default_store_id: Optional[uuid.UUID] = None


@router.get("")
def list_users(
    q: str = "",
    role: Optional[UserRole] = None,
    store_id: Optional[uuid.UUID] = None,
    include_deleted: bool = False,
    user=Depends(require_admin),
):
    qq = (q or "").strip()
    like = f"%{qq}%"
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {USER_COLUMNS}, s.name AS store_name
                FROM profiles p
                LEFT JOIN stores s ON s.id = p.store_id
                WHERE (%s = '' OR p.email ILIKE %s OR p.full_name ILIKE %s)
                  AND (%s::user_role IS NULL OR p.role = %s::user_role)
                  AND (%s::uuid IS NULL OR p.store_id = %s::uuid
                       OR EXISTS (SELECT 1 FROM user_stores us WHERE us.user_id = p.id AND us.store_id = %s::uuid))
                  AND (%s OR p.deleted_at IS NULL)
                ORDER BY p.full_name NULLS LAST, p.email
                """,
                (qq, like, like, role, role, store_id, store_id, store_id, include_deleted),
            )
            return {"success": True, "users": cur.fetchall()}


def _load_user(cur, user_id) -> dict:
    cur.execute(f"SELECT {USER_COLUMNS} FROM profiles p WHERE p.id = %s", (user_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="User not found")
    cur.execute(
        """
        SELECT us.store_id, us.is_default, s.name AS store_name
        FROM user_stores us
        JOIN stores s ON s.id = us.store_id
        WHERE us.user_id = %s
        ORDER BY us.is_default DESC, s.name
        """,
        (user_id,),
    )
    row["stores"] = cur.fetchall()
    return row


@router.get("/{user_id}")
def get_user(user_id: uuid.UUID, user=Depends(require_admin)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            return {"success": True, "user": _load_user(cur, user_id)}


@router.post("", status_code=201)
def create_user(data: UserIn, user=Depends(require_admin)):
    if data.role != "admin" and not data.store_id:
        raise HTTPException(status_code=400, detail="Managers and cashiers must be assigned to a store")
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.transaction():
            with conn.cursor() as cur:
                try:
                    cur.execute(
                        """
                        INSERT INTO profiles (id, email, hashed_password, full_name, role, store_id)
                        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s)
                        RETURNING id
                        """,
                        (data.email, hash_password(data.password), data.full_name.strip(), data.role, data.store_id),
                    )
                except UniqueViolation as e:
                    raise HTTPException(status_code=409, detail="A user with this email already exists") from e
                new_id = cur.fetchone()["id"]
                if data.store_id:
                    cur.execute(
                        """
                        INSERT INTO user_stores (id, user_id, store_id, is_default)
                        VALUES (gen_random_uuid(), %s, %s, true)
                        """,
                        (new_id, data.store_id),
                    )
                created = _load_user(cur, new_id)
    json_log("info", "users.created", target_user_id=new_id, role=data.role, user_id=user["user_id"])
    return {"success": True, "user": created}


@router.patch("/{user_id}")
def update_user(user_id: uuid.UUID, data: UserUpdateIn, user=Depends(require_admin)):
    patch = {k: getattr(data, k) for k in data.model_fields_set if getattr(data, k) is not None}
    if "role" in patch and str(user_id) == str(user["user_id"]) and patch["role"] != user["role"]:
        raise HTTPException(status_code=400, detail="You cannot change your own role")
    if "full_name" in patch:
        patch["full_name"] = patch["full_name"].strip()
    if not patch:
        raise HTTPException(status_code=400, detail="Nothing to update")
    fields = [f"{k} = %s" for k in patch]
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            cur.execute(
                f"UPDATE profiles SET {', '.join(fields)} WHERE id = %s RETURNING id",
                [*patch.values(), user_id],
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="User not found")
            return {"success": True, "user": _load_user(cur, user_id)}


def _assign_stores_impl(*, cur, user_id, data: StoreAssignmentIn) -> None:
    store_ids = list(dict.fromkeys(str(s) for s in data.store_ids))
    default = str(data.default_store_id) if data.default_store_id else (store_ids[0] if store_ids else None)
    if default and default not in store_ids:
        raise HTTPException(status_code=400, detail="Default store must be one of the assigned stores")
    cur.execute("DELETE FROM user_stores WHERE user_id = %s", (user_id,))
    for sid in store_ids:
        cur.execute(
            """
            INSERT INTO user_stores (id, user_id, store_id, is_default)
            VALUES (gen_random_uuid(), %s, %s, %s)
            """,
            (user_id, sid, sid == default),
        )
    # The default store is the one the user works in.
    cur.execute("UPDATE profiles SET store_id = %s WHERE id = %s", (default, user_id))


@router.put("/{user_id}/stores")
def assign_user_stores(user_id: uuid.UUID, data: StoreAssignmentIn, user=Depends(require_admin)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.transaction():
            with conn.cursor() as cur:
                _load_user(cur, user_id)
                _assign_stores_impl(cur=cur, user_id=user_id, data=data)
                return {"success": True, "user": _load_user(cur, user_id)}


@router.delete("/{user_id}")
def delete_user(user_id: uuid.UUID, user=Depends(require_admin)):
    if str(user_id) == str(user["user_id"]):
        raise HTTPException(status_code=400, detail="You cannot delete your own account")
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.transaction():
            with conn.cursor() as cur:
                target = _load_user(cur, user_id)
                if target["deleted_at"] is not None:
                    raise HTTPException(status_code=400, detail="User is already deleted")
                cur.execute(
                    "SELECT 1 FROM cash_sessions WHERE cashier_id = %s AND status IN ('open', 'locked') LIMIT 1",
                    (user_id,),
                )
                if cur.fetchone():
                    raise HTTPException(status_code=400, detail="Cannot delete user with open cash sessions")
                cur.execute("UPDATE profiles SET deleted_at = now() WHERE id = %s", (user_id,))
                # Soft-deleted users lose their sessions immediately.
                cur.execute("UPDATE auth_sessions SET is_active = false WHERE user_id = %s", (user_id,))
    json_log("info", "users.deleted", target_user_id=user_id, user_id=user["user_id"])
    return {"success": True}


@router.post("/{user_id}/restore")
def restore_user(user_id: uuid.UUID, user=Depends(require_admin)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            cur.execute(
                "UPDATE profiles SET deleted_at = NULL WHERE id = %s AND deleted_at IS NOT NULL RETURNING id",
                (user_id,),
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="Deleted user not found")
            return {"success": True, "user": _load_user(cur, user_id)}
