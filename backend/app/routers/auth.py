from fastapi import APIRouter, HTTPException, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from datetime import datetime, timedelta, timezone
from typing import Optional
import uuid
import secrets
from ..config import settings
from ..db import get_admin_conn, get_conn, set_user_context
from ..deps import get_session, get_current_user, SESSION_COOKIE_NAME
from ..logs import json_log
from ..security import hash_password, verify_password, needs_rehash, hash_session_token
from ..validation import Email, Language

router = APIRouter(prefix="/auth", tags=["auth"])


class LoginIn(BaseModel):
    email: Email
    password: str


def _profile_payload(row: dict) -> dict:
    return {
        "id": row["id"],
        "email": row["email"],
        "full_name": row["full_name"],
        "avatar_url": row.get("avatar_url"),
        "role": row["role"],
        "store_id": row["store_id"],
        "preferred_language": row["preferred_language"],
    }


@router.post("/login")
def login(data: LoginIn):
    # Auth runs on the admin pool: no user context exists yet.
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, email, hashed_password, full_name, avatar_url, role, store_id,
                       preferred_language, deleted_at
                FROM profiles
                WHERE email = %s
                """,
                (data.email,),
            )
            user = cur.fetchone()
            if not user or not verify_password(data.password, user["hashed_password"]):
                json_log("warning", "auth.login.failed", email=data.email)
                raise HTTPException(status_code=401, detail="Invalid email or password")
            if user["deleted_at"] is not None:
                raise HTTPException(status_code=401, detail="Account has been deactivated")

            if needs_rehash(user["hashed_password"]):
                cur.execute(
                    "UPDATE profiles SET hashed_password = %s WHERE id = %s",
                    (hash_password(data.password), user["id"]),
                )

            # Only a hash of the token is stored.
            token = secrets.token_urlsafe(32)
            ttl = timedelta(hours=settings.session_ttl_hours)
            expires = datetime.now(timezone.utc) + ttl
            cur.execute(
                """
                INSERT INTO auth_sessions (id, user_id, token, expires_at)
                VALUES (gen_random_uuid(), %s, %s, %s)
                """,
                (user["id"], hash_session_token(token), expires),
            )

    json_log("info", "auth.login.succeeded", user_id=user["id"])
    resp = JSONResponse(
        {
            "success": True,
            "token": token,
            "expires_at": expires.isoformat(),
            "user": {k: (str(v) if isinstance(v, uuid.UUID) else v) for k, v in _profile_payload(user).items()},
        }
    )
    secure = settings.env not in {"local", "dev", "test"}
    resp.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=int(ttl.total_seconds()),
        path="/",
    )
    return resp


@router.post("/logout")
def logout(session=Depends(get_session)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "UPDATE auth_sessions SET is_active = false WHERE token = %s",
                (hash_session_token(session["token"]),),
            )
    resp = JSONResponse({"success": True})
    resp.delete_cookie(key=SESSION_COOKIE_NAME, path="/")
    return resp


def _load_me(cur, user_id) -> dict:
    cur.execute(
        """
        SELECT p.id, p.email, p.full_name, p.avatar_url, p.role, p.store_id, p.preferred_language,
               s.name AS store_name
        FROM profiles p
        LEFT JOIN stores s ON s.id = p.store_id
        WHERE p.id = %s
        """,
        (user_id,),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="User not found")
    cur.execute(
        """
        SELECT us.store_id, us.is_default, s.name
        FROM user_stores us
        JOIN stores s ON s.id = us.store_id
        WHERE us.user_id = %s
        ORDER BY us.is_default DESC, s.name
        """,
        (user_id,),
    )
    stores = cur.fetchall()
    return {**_profile_payload(row), "store_name": row["store_name"], "stores": stores}


@router.get("/me")
def me(user=Depends(get_current_user)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            return {"success": True, "user": _load_me(cur, user["user_id"])}


class ProfileUpdateIn(BaseModel):
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None


@router.patch("/me")
def update_me(data: ProfileUpdateIn, user=Depends(get_current_user)):
    patch = {k: getattr(data, k) for k in data.model_fields_set}
    if "full_name" in patch:
        patch["full_name"] = (patch.get("full_name") or "").strip() or None
        if patch["full_name"] is not None and len(patch["full_name"]) < 2:
            raise HTTPException(status_code=400, detail="Full name must be at least 2 characters")
    if "avatar_url" in patch:
        patch["avatar_url"] = (patch.get("avatar_url") or "").strip() or None

    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            if patch:
                fields = [f"{k} = %s" for k in patch]
                cur.execute(
                    f"UPDATE profiles SET {', '.join(fields)} WHERE id = %s",
                    [*patch.values(), user["user_id"]],
                )
            return {"success": True, "user": _load_me(cur, user["user_id"])}


class StoreSwitchIn(BaseModel):
    store_id: uuid.UUID


@router.patch("/me/store")
def switch_store(data: StoreSwitchIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.transaction():
            with conn.cursor() as cur:
                if user["role"] == "admin":
                    cur.execute("SELECT 1 FROM stores WHERE id = %s", (data.store_id,))
                    if not cur.fetchone():
                        raise HTTPException(status_code=404, detail="Store not found")
                else:
                    cur.execute(
                        "SELECT 1 FROM user_stores WHERE user_id = %s AND store_id = %s",
                        (user["user_id"], data.store_id),
                    )
                    if not cur.fetchone():
                        raise HTTPException(status_code=403, detail="You are not assigned to this store")
                cur.execute("UPDATE profiles SET store_id = %s WHERE id = %s", (data.store_id, user["user_id"]))
                return {"success": True, "user": _load_me(cur, user["user_id"])}


class LanguageIn(BaseModel):
    language: Language


@router.patch("/me/language")
def update_language(data: LanguageIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            cur.execute(
                "UPDATE profiles SET preferred_language = %s WHERE id = %s",
                (data.language, user["user_id"]),
            )
    return {"success": True, "language": data.language}
