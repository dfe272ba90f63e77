import json

import pytest
from fastapi import HTTPException

from backend.app.stock import adjust_inventory, bump_customer_totals, bump_session_totals, signed_delta


class _LedgerCursor:
    def __init__(self):
        self.calls = []

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        self.calls.append((text, params))


def _inventory(quantity):
    return {"id": "inv-1", "product_id": "prod-1", "store_id": "store-1", "quantity": quantity}


@pytest.mark.parametrize(
    "movement_type,quantity,expected",
    [
        ("purchase", -4, 4),
        ("return", 2, 2),
        ("sale", 3, -3),
        ("damage", -1, -1),
        ("loss", 5, -5),
        ("adjustment", -2, -2),
        ("transfer", 6, 6),
    ],
)
def test_signed_delta(movement_type, quantity, expected):
    assert signed_delta(movement_type, quantity) == expected


def test_adjust_inventory_writes_row_ledger_and_notification():
    cur = _LedgerCursor()
    inv = _inventory(10)
    new_quantity = adjust_inventory(cur, inventory=inv, delta=-4, movement_type="sale", user_id="u1", reference="sale:s1")

    assert new_quantity == 6
    assert inv["quantity"] == 6
    texts = [text for text, _ in cur.calls]
    assert texts[0].startswith("update product_inventory")
    assert texts[1].startswith("insert into stock_movements")
    assert "pg_notify" in texts[2]
    movement = cur.calls[1][1]
    assert movement[4:8] == ("sale", -4, 10, 6)
    channel, payload = cur.calls[2][1]
    assert channel == "inventory_updates"
    assert json.loads(payload) == {
        "event": "inventory_updated",
        "store_id": "store-1",
        "product_id": "prod-1",
        "inventory_id": "inv-1",
        "quantity": 6,
    }


def test_adjust_inventory_refuses_negative_stock():
    cur = _LedgerCursor()
    with pytest.raises(HTTPException) as ex:
        adjust_inventory(cur, inventory=_inventory(1), delta=-2, movement_type="damage", user_id="u1")
    assert ex.value.status_code == 400
    assert cur.calls == []


def test_adjust_inventory_can_floor_at_zero():
    cur = _LedgerCursor()
    inv = _inventory(1)
    assert adjust_inventory(cur, inventory=inv, delta=-3, movement_type="sale", user_id="u1", floor_at_zero=True) == 0
    assert cur.calls[1][1][5] == -1


def test_zero_change_writes_nothing():
    cur = _LedgerCursor()
    assert adjust_inventory(cur, inventory=_inventory(0), delta=-1, movement_type="sale", user_id="u1", floor_at_zero=True) == 0
    assert cur.calls == []


def test_session_and_customer_bumps_skip_missing_ids():
    cur = _LedgerCursor()
    bump_session_totals(cur, None, "cash", 10)
    bump_customer_totals(cur, None, 10)
    assert cur.calls == []


def test_refund_bump_targets_payment_column():
    cur = _LedgerCursor()
    bump_session_totals(cur, "sess-1", "mobile", -12, count=-1)
    text, params = cur.calls[0]
    assert "total_mobile_sales = total_mobile_sales + %s" in text
    assert params[1] == -1
