import secrets
import string
from datetime import date
from typing import Optional

# kind -> (table, number column)
_DOCUMENTS = {
    "sale": ("sales", "sale_number"),
    "proforma": ("proformas", "proforma_number"),
}


def store_code(store_name: Optional[str]) -> str:
    code = (store_name or "").strip()[:3].upper()
    return code or "STR"


def number_prefix(kind: str, code: str, day: date) -> str:
    stamp = day.strftime("%Y%m%d")
    if kind == "proforma":
        return f"PRO-{code}-{stamp}-"
    return f"{code}-{stamp}-"


def format_document_number(kind: str, code: str, day: date, seq: int) -> str:
    return f"{number_prefix(kind, code, day)}{seq:04d}"


def next_document_number(cur, kind: str, store_id, day: date) -> str:
    """
    Next per-store, per-day number (e.g. `MAI-20250301-0007`).
    Holds a transaction-scoped advisory lock on the prefix so concurrent checkouts
    in the same store never mint the same number.
    """
    table, column = _DOCUMENTS[kind]
    cur.execute("SELECT name FROM stores WHERE id = %s", (store_id,))
    row = cur.fetchone()
    prefix = number_prefix(kind, store_code(row["name"] if row else None), day)
    cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (prefix,))
    cur.execute(
        f"""
        SELECT COALESCE(MAX(CAST(RIGHT({column}, 4) AS integer)), 0) AS last_seq
        FROM {table}
        WHERE LEFT({column}, %s) = %s AND length({column}) = %s
        """,
        (len(prefix), prefix, len(prefix) + 4),
    )
    last = cur.fetchone()
    seq = int((last or {}).get("last_seq") or 0) + 1
    return f"{prefix}{seq:04d}"


def offline_sale_number(now_ms: int, suffix: Optional[str] = None) -> str:
    if suffix is None:
        alphabet = string.ascii_uppercase + string.digits
        suffix = "".join(secrets.choice(alphabet) for _ in range(4))
    return f"SYNC-{now_ms}-{suffix}"
