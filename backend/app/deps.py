from fastapi import Header, HTTPException, Depends, Cookie
from .db import get_conn
from .security import hash_session_token
from datetime import datetime, timezone
from typing import Optional


SESSION_COOKIE_NAME = "nextstock_session"


def _extract_session_token(authorization: Optional[str], cookie_token: Optional[str]) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1]
    if cookie_token:
        return cookie_token
    raise HTTPException(status_code=401, detail="Not authenticated")


def get_session(
    authorization: Optional[str] = Header(None),
    cookie_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
):
    token = _extract_session_token(authorization, cookie_token)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id AS session_id, s.user_id, s.expires_at, s.is_active,
                       p.email, p.full_name, p.role, p.store_id, p.preferred_language, p.deleted_at
                FROM auth_sessions s
                JOIN profiles p ON p.id = s.user_id
                WHERE s.token = %s
                """,
                (hash_session_token(token),),
            )
            row = cur.fetchone()
            now = datetime.now(timezone.utc)
            if not row or not row["is_active"] or row["expires_at"] < now:
                raise HTTPException(status_code=401, detail="Not authenticated")
            if row["deleted_at"] is not None:
                raise HTTPException(status_code=401, detail="Account has been deactivated")
            return {
                "session_id": row["session_id"],
                "user_id": row["user_id"],
                "email": row["email"],
                "full_name": row["full_name"],
                "role": row["role"],
                "store_id": row["store_id"],
                "preferred_language": row["preferred_language"],
                "token": token,
            }


def get_current_user(session=Depends(get_session)):
    return {
        "user_id": session["user_id"],
        "email": session["email"],
        "full_name": session["full_name"],
        "role": session["role"],
        "store_id": session["store_id"],
        "preferred_language": session["preferred_language"],
    }


def require_roles(*roles: str):
    allowed = set(roles)

    def _dep(user=Depends(get_current_user)):
        if user["role"] not in allowed:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user
    return _dep


def require_manager(user=Depends(require_roles("admin", "manager"))):
    return user


def require_admin(user=Depends(require_roles("admin"))):
    return user
