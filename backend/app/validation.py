from __future__ import annotations

from typing import Annotated, Literal, Optional

from pydantic import BeforeValidator, StringConstraints


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


def _strip_str(v):
    if v is None:
        return v
    return str(v).strip()


def _empty_to_none(v):
    if v is None:
        return v
    s = str(v).strip()
    return s or None


# Canonical codes mirror Postgres enums in `backend/db/migrations/001_init.sql`.
UserRole = Annotated[Literal["admin", "manager", "cashier"], BeforeValidator(_to_lower_str)]
SaleStatus = Annotated[Literal["pending", "completed", "refunded", "cancelled"], BeforeValidator(_to_lower_str)]
ProformaStatus = Annotated[
    Literal["draft", "sent", "accepted", "rejected", "converted", "expired"],
    BeforeValidator(_to_lower_str),
]
StockMovementType = Annotated[
    Literal["purchase", "sale", "adjustment", "transfer", "return", "damage", "loss"],
    BeforeValidator(_to_lower_str),
]
ReceiptFormat = Annotated[Literal["THERMAL_80MM", "A6", "A5", "A4"], BeforeValidator(_to_upper_str)]
Language = Annotated[Literal["en", "fr"], BeforeValidator(_to_lower_str)]
GroupBy = Annotated[Literal["daily", "weekly", "monthly"], BeforeValidator(_to_lower_str)]

# Unknown methods are accepted and booked as "other" on the cash session.
PaymentMethod = Annotated[
    str,
    BeforeValidator(_to_lower_str),
    StringConstraints(min_length=1, max_length=32, pattern=r"^[a-z0-9][a-z0-9_-]*$"),
]

Pin = Annotated[str, BeforeValidator(_strip_str), StringConstraints(pattern=r"^[0-9]{6}$")]

Email = Annotated[
    str,
    BeforeValidator(_to_lower_str),
    StringConstraints(max_length=254, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$"),
]

# Accepts "" (form fields left blank) and stores NULL.
OptionalEmail = Annotated[Optional[Email], BeforeValidator(_empty_to_none)]
