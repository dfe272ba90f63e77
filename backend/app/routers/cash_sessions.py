from fastapi import APIRouter, HTTPException, Depends
from psycopg import errors as pg_errors
from pydantic import BaseModel
from decimal import Decimal
from typing import Optional
import uuid

from ..access import can_access_store, is_manager_or_admin
from ..approvals import load_pin_hash, verify_approver
from ..cash_math import assert_non_negative, discrepancy, expected_closing, requires_approval, session_summary
from ..db import get_conn, set_user_context
from ..deps import get_current_user
from ..logs import json_log
from ..security import is_valid_pin_format, verify_pin

router = APIRouter(prefix="/pos", tags=["pos"])

SESSION_COLUMNS = """
    id, store_id, cashier_id, status, opening_amount, opening_notes, opened_at,
    closing_amount, expected_closing_amount, discrepancy, closing_notes, closed_at,
    total_cash_sales, total_card_sales, total_mobile_sales, total_other_sales,
    transaction_count, requires_approval, approved_by, approved_at, locked_at, locked_by,
    created_at, updated_at
"""


class SessionOpenIn(BaseModel):
    store_id: uuid.UUID
    opening_amount: Decimal
    opening_notes: Optional[str] = None


class SessionCloseIn(BaseModel):
    session_id: uuid.UUID
    closing_amount: Decimal
    closing_notes: Optional[str] = None
    approved_by: Optional[uuid.UUID] = None
    approver_pin: Optional[str] = None


class SessionLockIn(BaseModel):
    session_id: uuid.UUID


class SessionUnlockIn(BaseModel):
    session_id: uuid.UUID
    pin: str
    validator_id: Optional[uuid.UUID] = None


class ValidatePinIn(BaseModel):
    manager_id: uuid.UUID
    pin: str
    store_id: Optional[uuid.UUID] = None


def _require_pin_format(pin: Optional[str]) -> str:
    if not pin:
        raise HTTPException(status_code=400, detail="PIN is required")
    if not is_valid_pin_format(pin):
        raise HTTPException(status_code=400, detail="PIN must be exactly 6 digits")
    return pin


@router.get("/session")
def get_active_session(store_id: uuid.UUID, user=Depends(get_current_user)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {SESSION_COLUMNS}
                FROM cash_sessions
                WHERE store_id = %s AND cashier_id = %s AND status IN ('open', 'locked')
                ORDER BY opened_at DESC
                LIMIT 1
                """,
                (store_id, user["user_id"]),
            )
            return {"success": True, "session": cur.fetchone()}


@router.post("/session", status_code=201)
def open_session(data: SessionOpenIn, user=Depends(get_current_user)):
    opening = assert_non_negative(data.opening_amount, "Opening amount")
    if not can_access_store(user, data.store_id):
        raise HTTPException(status_code=403, detail="You can only open sessions for your assigned store")
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.transaction():
            with conn.cursor() as cur:
                session = _open_session_impl(cur=cur, data=data, opening=opening, user=user)
    json_log("info", "pos.session.opened", session_id=session["id"], store_id=data.store_id, user_id=user["user_id"])
    return {"success": True, "session": session}


def _open_session_impl(*, cur, data: SessionOpenIn, opening: Decimal, user: dict) -> dict:
    cur.execute(
        """
        SELECT id, status
        FROM cash_sessions
        WHERE store_id = %s AND cashier_id = %s AND status IN ('open', 'locked')
        FOR UPDATE
        """,
        (data.store_id, user["user_id"]),
    )
    existing = cur.fetchone()
    if existing:
        if existing["status"] == "locked":
            raise HTTPException(status_code=400, detail="You have a locked session. Please unlock it first.")
        raise HTTPException(status_code=400, detail="You already have an open session")
    try:
        cur.execute(
            f"""
            INSERT INTO cash_sessions
              (id, store_id, cashier_id, status, opening_amount, opening_notes, opened_at)
            VALUES
              (gen_random_uuid(), %s, %s, 'open', %s, %s, now())
            RETURNING {SESSION_COLUMNS}
            """,
            (data.store_id, user["user_id"], opening, data.opening_notes),
        )
    except pg_errors.UniqueViolation as e:
        # A concurrent open won the cash_sessions_one_active index.
        raise HTTPException(status_code=400, detail="You already have an open session") from e
    return cur.fetchone()


@router.post("/session/close")
def close_session(data: SessionCloseIn, user=Depends(get_current_user)):
    closing = assert_non_negative(data.closing_amount, "Closing amount")
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.transaction():
            with conn.cursor() as cur:
                return _close_session_impl(cur=cur, data=data, closing=closing, user=user)


def _close_session_impl(*, cur, data: SessionCloseIn, closing: Decimal, user: dict):
    cur.execute(
        f"""
        SELECT {SESSION_COLUMNS}
        FROM cash_sessions
        WHERE id = %s AND status = 'open'
        FOR UPDATE
        """,
        (data.session_id,),
    )
    session = cur.fetchone()
    if not session:
        raise HTTPException(status_code=404, detail="Session not found or already closed")
    is_owner = str(session["cashier_id"]) == str(user["user_id"])
    if not is_owner and not is_manager_or_admin(user):
        raise HTTPException(status_code=403, detail="You can only close your own sessions")
    if not is_owner and user["role"] == "manager" and str(user.get("store_id")) != str(session["store_id"]):
        raise HTTPException(status_code=403, detail="You can only close sessions in your store")

    expected = expected_closing(session["opening_amount"], session["total_cash_sales"])
    diff = discrepancy(closing, expected)
    needs_approval = requires_approval(diff)

    approver_id = None
    if needs_approval:
        if not data.approved_by or not data.approver_pin:
            json_log(
                "info",
                "pos.session.approval_required",
                session_id=session["id"],
                user_id=user["user_id"],
                discrepancy=diff,
            )
            raise HTTPException(
                status_code=403,
                detail={
                    "error": "Manager approval required for cash discrepancy",
                    "requires_approval": True,
                    "discrepancy": str(diff),
                },
            )
        try:
            approver = verify_approver(cur, data.approved_by, data.approver_pin, session["store_id"])
        except HTTPException as exc:
            json_log(
                "warning",
                "pos.session.approval_denied",
                session_id=session["id"],
                approver_id=data.approved_by,
                status_code=exc.status_code,
            )
            raise
        approver_id = approver["id"]

    cur.execute(
        f"""
        UPDATE cash_sessions
        SET status = 'closed',
            closed_at = now(),
            closing_amount = %s,
            expected_closing_amount = %s,
            discrepancy = %s,
            closing_notes = %s,
            requires_approval = %s,
            approved_by = %s,
            approved_at = CASE WHEN %s::uuid IS NULL THEN NULL ELSE now() END
        WHERE id = %s
        RETURNING {SESSION_COLUMNS}
        """,
        (
            closing,
            expected,
            diff,
            data.closing_notes,
            needs_approval,
            approver_id,
            approver_id,
            data.session_id,
        ),
    )
    closed = cur.fetchone()
    json_log(
        "info",
        "pos.session.closed",
        session_id=closed["id"],
        user_id=user["user_id"],
        discrepancy=diff,
        approved_by=approver_id,
    )
    return {
        "success": True,
        "session": closed,
        "was_approved": approver_id is not None,
        "summary": session_summary(session, closing),
    }


@router.post("/session/lock")
def lock_session(data: SessionLockIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.transaction():
            with conn.cursor() as cur:
                return {"success": True, "session": _lock_session_impl(cur=cur, session_id=data.session_id, user=user)}


def _lock_session_impl(*, cur, session_id, user: dict) -> dict:
    cur.execute(
        """
        SELECT id, cashier_id
        FROM cash_sessions
        WHERE id = %s AND status = 'open'
        FOR UPDATE
        """,
        (session_id,),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Session not found or not open")
    if str(row["cashier_id"]) != str(user["user_id"]):
        raise HTTPException(status_code=403, detail="You can only lock your own sessions")
    cur.execute(
        f"""
        UPDATE cash_sessions
        SET status = 'locked', locked_at = now(), locked_by = %s
        WHERE id = %s
        RETURNING {SESSION_COLUMNS}
        """,
        (user["user_id"], session_id),
    )
    return cur.fetchone()


@router.post("/session/unlock")
def unlock_session(data: SessionUnlockIn, user=Depends(get_current_user)):
    if not data.pin:
        raise HTTPException(status_code=400, detail="PIN is required")
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.transaction():
            with conn.cursor() as cur:
                return {"success": True, "session": _unlock_session_impl(cur=cur, data=data, user=user)}


def _unlock_session_impl(*, cur, data: SessionUnlockIn, user: dict) -> dict:
    """
    The owner unlocks with their own PIN. With `validator_id`, a manager or
    admin of the session's store unlocks it with theirs.
    """
    cur.execute(
        """
        SELECT id, store_id, cashier_id
        FROM cash_sessions
        WHERE id = %s AND status = 'locked'
        FOR UPDATE
        """,
        (data.session_id,),
    )
    session = cur.fetchone()
    if not session:
        raise HTTPException(status_code=404, detail="Session not found or not locked")

    if data.validator_id:
        if not is_manager_or_admin(user) and str(data.validator_id) != str(user["user_id"]):
            raise HTTPException(status_code=403, detail="Only managers can unlock other users' sessions")
        verify_approver(
            cur,
            data.validator_id,
            data.pin,
            session["store_id"],
            label="Validator",
            missing_pin_detail="PIN not configured for this user",
        )
    else:
        if str(session["cashier_id"]) != str(user["user_id"]):
            raise HTTPException(
                status_code=403,
                detail="You can only unlock your own sessions. Use manager override for other sessions.",
            )
        pin_hash = load_pin_hash(cur, user["user_id"])
        if not pin_hash:
            raise HTTPException(status_code=400, detail="PIN not configured for this user")
        if not verify_pin(data.pin, pin_hash):
            raise HTTPException(status_code=401, detail="Invalid PIN")

    cur.execute(
        f"""
        UPDATE cash_sessions
        SET status = 'open', locked_at = NULL, locked_by = NULL
        WHERE id = %s
        RETURNING {SESSION_COLUMNS}
        """,
        (data.session_id,),
    )
    return cur.fetchone()


def _validate_pin_impl(cur, data: ValidatePinIn, user: dict) -> dict:
    _require_pin_format(data.pin)
    store_id = data.store_id or user.get("store_id")
    if data.store_id and not can_access_store(user, data.store_id):
        raise HTTPException(status_code=403, detail="You do not have access to this store")
    manager = verify_approver(
        cur,
        data.manager_id,
        data.pin,
        store_id,
        label="Manager",
        missing_pin_detail="Manager has not configured a PIN",
    )
    return {
        "success": True,
        "valid": True,
        "manager": {"id": manager["id"], "name": manager["full_name"] or manager["email"], "role": manager["role"]},
    }


@router.post("/session/validate-pin")
def validate_session_pin(data: ValidatePinIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            return _validate_pin_impl(cur, data, user)


@router.post("/validate-pin")
def validate_pin(data: ValidatePinIn, user=Depends(get_current_user)):
    # Store-scoped variant used outside the session flow (e.g. price overrides).
    if not data.store_id:
        raise HTTPException(status_code=400, detail="store_id is required")
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            return _validate_pin_impl(cur, data, user)


@router.get("/session/validators")
def list_validators(store_id: Optional[uuid.UUID] = None, user=Depends(get_current_user)):
    if store_id and not can_access_store(user, store_id):
        raise HTTPException(status_code=403, detail="You do not have access to this store")
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            return _list_validators_impl(cur=cur, store_id=store_id or user.get("store_id"), user=user)


def _list_validators_impl(*, cur, store_id, user: dict) -> dict:
    cur.execute(
        """
        SELECT p.id, p.full_name, p.email, p.role, p.store_id,
               (mp.user_id IS NOT NULL) AS has_pin
        FROM profiles p
        LEFT JOIN manager_pins mp ON mp.user_id = p.id
        WHERE p.deleted_at IS NULL
          AND p.id <> %s
          AND (p.role = 'admin' OR (p.role = 'manager' AND p.store_id = %s))
        ORDER BY p.role, p.full_name NULLS LAST, p.email
        """,
        (user["user_id"], store_id),
    )
    rows = cur.fetchall()
    validators = [r for r in rows if r["has_pin"]]
    without_pin = [r for r in rows if not r["has_pin"]]
    return {"success": True, "validators": validators, "validators_without_pin": without_pin}


def history_scope(user: dict, store_id: Optional[uuid.UUID]) -> tuple[list[str], list]:
    """Cashiers see their own closed sessions, managers their store's, admins any store."""
    where = ["s.status = 'closed'"]
    params: list = []
    if user["role"] == "cashier":
        where.append("s.cashier_id = %s")
        params.append(user["user_id"])
    elif user["role"] == "manager":
        where.append("s.store_id = %s")
        params.append(user.get("store_id"))
    elif store_id:
        where.append("s.store_id = %s")
        params.append(store_id)
    return where, params


@router.get("/session/history")
def session_history(store_id: Optional[uuid.UUID] = None, limit: int = 50, user=Depends(get_current_user)):
    limit = max(1, min(int(limit or 50), 500))
    where, params = history_scope(user, store_id)
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT s.id, s.store_id, st.name AS store_name, s.cashier_id, p.full_name AS cashier_name,
                       s.opened_at, s.closed_at, s.opening_amount, s.closing_amount,
                       s.expected_closing_amount, s.discrepancy, s.requires_approval,
                       s.approved_by, a.full_name AS approved_by_name, s.approved_at,
                       s.total_cash_sales, s.total_card_sales, s.total_mobile_sales, s.total_other_sales,
                       s.transaction_count
                FROM cash_sessions s
                JOIN stores st ON st.id = s.store_id
                JOIN profiles p ON p.id = s.cashier_id
                LEFT JOIN profiles a ON a.id = s.approved_by
                WHERE {" AND ".join(where)}
                ORDER BY s.closed_at DESC
                LIMIT %s
                """,
                (*params, limit),
            )
            return {"success": True, "sessions": cur.fetchall()}
