from decimal import Decimal

from backend.app.pricing import document_totals, line_subtotal, validate_price_range, validate_unit_price


def test_fixed_price_product_must_sell_at_catalog_price():
    assert validate_unit_price(Decimal("10"), Decimal("10.00"), None, None) is None
    assert validate_unit_price(Decimal("9.99"), Decimal("10.00"), None, None) == "Price must be 10.00"


def test_ranged_price_accepts_values_inside_bounds():
    assert validate_unit_price(Decimal("8"), Decimal("10"), Decimal("7.50"), Decimal("12")) is None
    assert validate_unit_price(Decimal("7.49"), Decimal("10"), Decimal("7.50"), Decimal("12")) == "Price cannot be below 7.50"
    assert validate_unit_price(Decimal("12.01"), Decimal("10"), Decimal("7.50"), Decimal("12")) == "Price cannot exceed 12.00"


def test_open_ended_range_only_checks_the_given_bound():
    assert validate_unit_price(Decimal("1000"), Decimal("10"), Decimal("5"), None) is None


def test_validate_price_range():
    assert validate_price_range(Decimal("10"), Decimal("12"), Decimal("8")) == "Minimum price cannot exceed maximum price"
    assert validate_price_range(Decimal("4"), Decimal("5"), None) == "Price cannot be below the minimum price"
    assert validate_price_range(Decimal("10"), None, Decimal("9")) == "Price cannot exceed the maximum price"
    assert validate_price_range(Decimal("10"), Decimal("5"), Decimal("15")) is None


def test_line_subtotal_applies_line_discount():
    assert line_subtotal(Decimal("2.50"), 4, Decimal("1")) == Decimal("9.00")


def test_document_totals():
    totals = document_totals(
        [
            {"unit_price": Decimal("10"), "quantity": 2},
            {"unit_price": Decimal("3.33"), "quantity": 3, "discount": Decimal("0.99")},
        ],
        tax=Decimal("1.50"),
        discount=Decimal("2"),
    )
    assert totals["subtotal"] == Decimal("29.00")
    assert totals["total"] == Decimal("28.50")
