from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app.cash_math import (
    assert_non_negative,
    discrepancy,
    expected_closing,
    requires_approval,
    sales_column_for,
    session_summary,
    to_money,
)


def test_to_money_rounds_half_up_to_cents():
    assert to_money("10.005") == Decimal("10.01")
    assert to_money(2.675) == Decimal("2.68")
    assert to_money(None) == Decimal("0.00")


def test_expected_closing_counts_cash_tenders_only():
    assert expected_closing(Decimal("100"), Decimal("250.50")) == Decimal("350.50")


def test_balanced_drawer_needs_no_approval():
    diff = discrepancy(Decimal("350.50"), Decimal("350.50"))
    assert diff == Decimal("0.00")
    assert requires_approval(diff) is False


def test_one_cent_short_needs_approval():
    diff = discrepancy(Decimal("350.49"), Decimal("350.50"))
    assert diff == Decimal("-0.01")
    assert requires_approval(diff) is True


def test_float_noise_is_not_a_discrepancy():
    # 0.1 + 0.2 in binary floating point; Decimal(str()) keeps it below tolerance.
    assert requires_approval(discrepancy(0.1 + 0.2, Decimal("0.30"))) is False


def test_assert_non_negative_rejects_negative_amounts():
    with pytest.raises(HTTPException) as ex:
        assert_non_negative(Decimal("-0.01"), "Opening amount")
    assert ex.value.status_code == 400
    assert "Opening amount must be >= 0" in str(ex.value.detail)


def test_sales_column_for_maps_unknown_methods_to_other():
    assert sales_column_for("Cash") == "total_cash_sales"
    assert sales_column_for("card") == "total_card_sales"
    assert sales_column_for("mobile") == "total_mobile_sales"
    assert sales_column_for("voucher") == "total_other_sales"


def test_session_summary_reports_discrepancy():
    session = {
        "opening_amount": Decimal("50"),
        "total_cash_sales": Decimal("120"),
        "total_card_sales": Decimal("80"),
        "total_mobile_sales": Decimal("0"),
        "total_other_sales": Decimal("0"),
        "transaction_count": 4,
    }
    summary = session_summary(session, Decimal("165"))
    assert summary["expected_closing"] == Decimal("170.00")
    assert summary["discrepancy"] == Decimal("-5.00")
    assert summary["transaction_count"] == 4
