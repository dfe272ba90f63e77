from decimal import Decimal
from typing import Any, Iterable, Optional

from .cash_math import to_money


def _fmt(v: Decimal) -> str:
    return f"{v:.2f}"


def validate_unit_price(price: Any, default_price: Any, min_price: Any, max_price: Any) -> Optional[str]:
    """
    Products without a price range sell at their catalog price only; with a range the
    cashier may pick any price inside it. Returns an error message, or None when valid.
    """
    p = to_money(price)
    if min_price is None and max_price is None:
        default = to_money(default_price)
        if p != default:
            return f"Price must be {_fmt(default)}"
        return None
    if min_price is not None and p < to_money(min_price):
        return f"Price cannot be below {_fmt(to_money(min_price))}"
    if max_price is not None and p > to_money(max_price):
        return f"Price cannot exceed {_fmt(to_money(max_price))}"
    return None


def validate_price_range(price: Any, min_price: Any, max_price: Any) -> Optional[str]:
    p = to_money(price)
    lo = to_money(min_price) if min_price is not None else None
    hi = to_money(max_price) if max_price is not None else None
    if lo is not None and hi is not None and lo > hi:
        return "Minimum price cannot exceed maximum price"
    if lo is not None and p < lo:
        return "Price cannot be below the minimum price"
    if hi is not None and p > hi:
        return "Price cannot exceed the maximum price"
    return None


def line_subtotal(unit_price: Any, quantity: int, discount: Any = None) -> Decimal:
    return to_money(to_money(unit_price) * int(quantity) - to_money(discount))


def document_totals(items: Iterable[dict], tax: Any = None, discount: Any = None) -> dict:
    subtotal = Decimal("0.00")
    for it in items:
        subtotal += line_subtotal(it["unit_price"], it["quantity"], it.get("discount"))
    tax_v = to_money(tax)
    discount_v = to_money(discount)
    return {
        "subtotal": to_money(subtotal),
        "tax": tax_v,
        "discount": discount_v,
        "total": to_money(subtotal + tax_v - discount_v),
    }
