from datetime import date
from decimal import Decimal
import uuid

import pytest
from fastapi import HTTPException

from backend.app.routers.proformas import ConvertIn, ProformaIn, _convert_impl, _create_impl, assert_transition

STORE = "00000000-0000-4000-8000-0000000000a1"
USER_ID = "00000000-0000-4000-8000-0000000000b1"
PROFORMA = "00000000-0000-4000-8000-0000000000f1"
PRODUCT = "00000000-0000-4000-8000-0000000000d1"

USER = {"user_id": USER_ID, "role": "cashier", "store_id": STORE}


@pytest.mark.parametrize(
    "current,target",
    [("draft", "sent"), ("sent", "accepted"), ("sent", "rejected")],
)
def test_allowed_transitions(current, target):
    assert_transition(current, target)


@pytest.mark.parametrize(
    "current,target",
    [("draft", "accepted"), ("accepted", "sent"), ("converted", "sent"), ("expired", "sent"), ("rejected", "accepted")],
)
def test_rejected_transitions(current, target):
    with pytest.raises(HTTPException) as ex:
        assert_transition(current, target)
    assert ex.value.status_code == 400
    assert ex.value.detail == f"Cannot change status from {current} to {target}"


class _ProformaCursor:
    def __init__(self, *, status="accepted", stock=10, item_quantity=3):
        self.proforma = {
            "id": PROFORMA,
            "proforma_number": "PRO-MAI-20250301-0002",
            "store_id": STORE,
            "created_by": USER_ID,
            "customer_id": None,
            "status": status,
            "subtotal": Decimal("30.00"),
            "tax": Decimal("0.00"),
            "discount": Decimal("0.00"),
            "total": Decimal("30.00"),
        }
        self.items = [
            {"product_id": PRODUCT, "quantity": item_quantity, "unit_price": Decimal("10.00"), "discount": Decimal("0")}
        ]
        self.inventory = {"id": "inv-1", "product_id": PRODUCT, "store_id": STORE, "quantity": stock}
        self.inserted_items = []
        self.sales = []
        self.movements = []
        self.converted = None
        self._rows = []

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        if text.startswith("update proformas"):
            self.converted = params
            return
        if "from proformas" in text and "max(cast(right(" not in text:
            self._rows = [self.proforma]
            return
        if "from proforma_items" in text:
            self._rows = list(self.items)
            return
        if "from product_inventory" in text:
            self._rows = [self.inventory]
            return
        if "from stores" in text:
            self._rows = [{"name": "Main Street"}]
            return
        if "pg_advisory_xact_lock" in text:
            return
        if "max(cast(right(" in text:
            self._rows = [{"last_seq": 1}]
            return
        if text.startswith("insert into proformas"):
            self._rows = [{"id": "new-proforma", "proforma_number": params[0]}]
            return
        if text.startswith("insert into proforma_items"):
            self.inserted_items.append(params)
            return
        if text.startswith("insert into sales"):
            self.sales.append(params)
            self._rows = [{"id": "sale-9", "sale_number": params[0], "created_at": None}]
            return
        if text.startswith("insert into sale_items") or text.startswith("update product_inventory"):
            return
        if text.startswith("insert into stock_movements"):
            self.movements.append(params)
            return
        if "pg_notify" in text:
            return
        if text.startswith("update cash_sessions") or text.startswith("update customers"):
            return
        raise AssertionError(f"unexpected SQL in test cursor: {text}")

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


def test_create_numbers_proforma_and_computes_totals():
    cur = _ProformaCursor()
    data = ProformaIn(
        store_id=uuid.UUID(STORE),
        items=[
            {"product_id": uuid.UUID(PRODUCT), "quantity": 2, "unit_price": Decimal("12.50")},
            {"product_id": uuid.UUID(PRODUCT), "quantity": 1, "unit_price": Decimal("5"), "discount": Decimal("1")},
        ],
        tax=Decimal("3"),
        discount=Decimal("2"),
    )
    row = _create_impl(cur=cur, data=data, user=USER, today=date(2025, 3, 1))

    assert row["proforma_number"] == "PRO-MAI-20250301-0002"
    assert row["subtotal"] == Decimal("29.00")
    assert row["total"] == Decimal("30.00")
    assert [p[6] for p in cur.inserted_items] == [Decimal("25.00"), Decimal("4.00")]


def test_create_rejects_other_store_for_cashier():
    data = ProformaIn(
        store_id=uuid.UUID("00000000-0000-4000-8000-0000000000a2"),
        items=[{"product_id": uuid.UUID(PRODUCT), "quantity": 1, "unit_price": Decimal("1")}],
    )
    with pytest.raises(HTTPException) as ex:
        _create_impl(cur=_ProformaCursor(), data=data, user=USER, today=date(2025, 3, 1))
    assert ex.value.status_code == 403


def test_convert_creates_sale_and_marks_proforma_converted():
    cur = _ProformaCursor(stock=10)
    sale = _convert_impl(cur=cur, proforma_id=PROFORMA, data=ConvertIn(payment_method="card"), user=USER, today=date(2025, 3, 2))

    assert sale["sale_number"] == "MAI-20250302-0002"
    assert cur.inventory["quantity"] == 7
    assert cur.movements[0][4] == "sale"
    assert cur.converted == ("sale-9", PROFORMA)
    # notes are the second-to-last sale column
    assert cur.sales[0][-2] == "Converted from proforma PRO-MAI-20250301-0002"


def test_convert_fails_when_stock_is_short():
    cur = _ProformaCursor(stock=2)
    with pytest.raises(HTTPException) as ex:
        _convert_impl(cur=cur, proforma_id=PROFORMA, data=ConvertIn(payment_method="cash"), user=USER, today=date(2025, 3, 2))
    assert ex.value.detail == "Insufficient stock for product"
    assert cur.sales == []


@pytest.mark.parametrize("status", ["converted", "rejected", "expired"])
def test_convert_rejects_closed_proformas(status):
    cur = _ProformaCursor(status=status)
    with pytest.raises(HTTPException) as ex:
        _convert_impl(cur=cur, proforma_id=PROFORMA, data=ConvertIn(payment_method="cash"), user=USER, today=date(2025, 3, 2))
    assert ex.value.status_code == 400
