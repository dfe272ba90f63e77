from typing import Any, Optional

from fastapi import HTTPException

from .access import approver_error
from .security import verify_pin


def load_profile(cur, user_id: Any) -> Optional[dict]:
    cur.execute(
        """
        SELECT id, email, full_name, role, store_id, deleted_at
        FROM profiles
        WHERE id = %s
        """,
        (user_id,),
    )
    return cur.fetchone()


def load_pin_hash(cur, user_id: Any) -> Optional[str]:
    cur.execute("SELECT pin_hash FROM manager_pins WHERE user_id = %s", (user_id,))
    row = cur.fetchone()
    return row["pin_hash"] if row else None


def verify_approver(
    cur,
    approver_id: Any,
    pin: str,
    actor_store_id: Any,
    *,
    label: str = "Approver",
    missing_pin_detail: str = "Approver has not configured a PIN",
) -> dict:
    """
    Second-actor check: `approver_id` must be a manager (same store) or an admin,
    have a PIN on file, and `pin` must match it. Returns the approver profile.
    """
    approver = load_profile(cur, approver_id)
    err = approver_error(approver, actor_store_id, label)
    if err:
        raise HTTPException(status_code=err[0], detail=err[1])
    pin_hash = load_pin_hash(cur, approver_id)
    if not pin_hash:
        raise HTTPException(status_code=400, detail=missing_pin_detail)
    if not verify_pin(pin, pin_hash):
        raise HTTPException(status_code=401, detail="Invalid PIN")
    return approver
