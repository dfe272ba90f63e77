"""
Role scoping shared by the routers.

Admins act on every store. Managers and cashiers are bound to `profiles.store_id`;
in listings a cashier only sees records they created.
"""

from typing import Any, Optional

from fastapi import HTTPException

APPROVER_ROLES = {"admin", "manager"}


def _same_id(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return False
    return str(a) == str(b)


def is_manager_or_admin(user: dict) -> bool:
    return user.get("role") in APPROVER_ROLES


def can_access_store(user: dict, store_id: Any) -> bool:
    if user.get("role") == "admin":
        return True
    return _same_id(user.get("store_id"), store_id)


def assert_store_access(user: dict, store_id: Any, detail: str = "You do not have access to this store") -> None:
    if not can_access_store(user, store_id):
        raise HTTPException(status_code=403, detail=detail)


def scoped_store_id(user: dict, requested: Optional[str]) -> Optional[str]:
    """Store filter to apply for a listing: admins choose, everyone else gets their own store."""
    if user.get("role") == "admin":
        return requested or None
    store_id = user.get("store_id")
    return str(store_id) if store_id else None


def list_scope(user: dict, *, owner_column: str, store_column: str = "store_id") -> tuple[str, list]:
    """
    Returns a SQL predicate (and params) restricting a listing to what the caller may see.
    Column names are trusted identifiers supplied by the router.
    """
    role = user.get("role")
    if role == "admin":
        return "TRUE", []
    if role == "manager":
        if not user.get("store_id"):
            return "FALSE", []
        return f"{store_column} = %s", [user["store_id"]]
    return f"{owner_column} = %s", [user["user_id"]]


def can_view_record(user: dict, *, owner_id: Any, store_id: Any) -> bool:
    role = user.get("role")
    if role == "admin":
        return True
    if role == "manager":
        return _same_id(user.get("store_id"), store_id)
    return _same_id(user.get("user_id"), owner_id)


def approver_error(approver: Optional[dict], actor_store_id: Any, label: str = "Approver") -> Optional[tuple[int, str]]:
    """
    Checks that `approver` (a profiles row) may approve an action in `actor_store_id`.
    Returns (status_code, message) on failure.
    """
    if not approver or approver.get("deleted_at") is not None:
        return 404, f"{label} not found"
    if approver.get("role") not in APPROVER_ROLES:
        return 403, f"{label} must be a manager or admin"
    if approver["role"] == "manager" and not _same_id(approver.get("store_id"), actor_store_id):
        return 403, "Manager must be from the same store"
    return None
