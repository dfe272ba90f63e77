from decimal import Decimal, ROUND_HALF_UP
from typing import Any

from fastapi import HTTPException

CENT = Decimal("0.01")
# Anything below a tenth of a cent is rounding noise, not a discrepancy.
DISCREPANCY_TOLERANCE = Decimal("0.001")

SALES_COLUMNS = {
    "cash": "total_cash_sales",
    "card": "total_card_sales",
    "mobile": "total_mobile_sales",
}
OTHER_SALES_COLUMN = "total_other_sales"


def to_money(value: Any) -> Decimal:
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def assert_non_negative(amount: Any, label: str) -> Decimal:
    value = to_money(amount)
    if value < 0:
        raise HTTPException(status_code=400, detail=f"{label} must be >= 0")
    return value


def expected_closing(opening_amount: Any, total_cash_sales: Any) -> Decimal:
    # Only cash tenders end up in the drawer.
    return to_money(opening_amount) + to_money(total_cash_sales)


def discrepancy(closing_amount: Any, expected: Any) -> Decimal:
    return to_money(to_money(closing_amount) - to_money(expected))


def requires_approval(diff: Any) -> bool:
    return abs(Decimal(str(diff))) > DISCREPANCY_TOLERANCE


def sales_column_for(payment_method: str) -> str:
    return SALES_COLUMNS.get((payment_method or "").strip().lower(), OTHER_SALES_COLUMN)


def session_summary(session: dict, closing_amount: Any) -> dict:
    expected = expected_closing(session["opening_amount"], session["total_cash_sales"])
    actual = to_money(closing_amount)
    return {
        "opening_amount": to_money(session["opening_amount"]),
        "total_cash_sales": to_money(session["total_cash_sales"]),
        "total_card_sales": to_money(session["total_card_sales"]),
        "total_mobile_sales": to_money(session["total_mobile_sales"]),
        "total_other_sales": to_money(session["total_other_sales"]),
        "transaction_count": int(session["transaction_count"] or 0),
        "expected_closing": expected,
        "actual_closing": actual,
        "discrepancy": discrepancy(actual, expected),
    }
