from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
import uuid

import pytest
from fastapi import HTTPException

from backend.app.routers import sync as sync_router
from backend.app.routers.checkout import CheckoutIn, _checkout_impl
from backend.app.routers.sync import OfflineTransactionIn, SyncIn, _sync_one_impl

STORE = uuid.UUID("00000000-0000-4000-8000-0000000000a1")
OTHER_STORE = uuid.UUID("00000000-0000-4000-8000-0000000000a2")
CASHIER = uuid.UUID("00000000-0000-4000-8000-0000000000b1")
SESSION = uuid.UUID("00000000-0000-4000-8000-0000000000c1")
PRODUCT = uuid.UUID("00000000-0000-4000-8000-0000000000d1")
INVENTORY = uuid.UUID("00000000-0000-4000-8000-0000000000e1")

USER = {"user_id": str(CASHIER), "role": "cashier", "store_id": str(STORE)}


class _PosCursor:
    def __init__(self, *, stock=5, price=Decimal("10.00"), min_price=None, max_price=None, session_status="open"):
        self.inventory = {"id": str(INVENTORY), "product_id": str(PRODUCT), "store_id": str(STORE), "quantity": stock}
        self.product = {
            "id": str(PRODUCT),
            "name": "Olive oil",
            "price": price,
            "min_price": min_price,
            "max_price": max_price,
            "is_active": True,
        }
        self.session = {"id": str(SESSION), "store_id": str(STORE), "status": session_status}
        self.sales = []
        self.sale_items = []
        self.movements = []
        self.notifications = 0
        self.session_updates = []
        self.customer_updates = []
        self._rows = []

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        if text.startswith("update cash_sessions"):
            self.session_updates.append((text, params))
            self._rows = []
            return
        if "from cash_sessions" in text:
            self._rows = [self.session] if str(params[0]) == self.session["id"] else []
            return
        if "from product_templates" in text and "min_price" in text:
            self._rows = [self.product] if str(PRODUCT) in params[0] else []
            return
        if "select id, name from product_templates" in text:
            self._rows = [{"id": self.product["id"], "name": self.product["name"]}]
            return
        if "from product_inventory" in text and "for update" in text:
            inv = self.inventory
            match = str(params[0]) == inv["id"] and (len(params) < 2 or str(params[1]) == inv["store_id"])
            self._rows = [inv] if match else []
            return
        if "from stores" in text:
            self._rows = [{"name": "Main Street"}]
            return
        if "pg_advisory_xact_lock" in text:
            self._rows = []
            return
        if "max(cast(right(" in text:
            self._rows = [{"last_seq": 0}]
            return
        if text.startswith("insert into sales"):
            self.sales.append(params)
            self._rows = [{"id": "sale-1", "sale_number": params[0], "created_at": params[-1]}]
            return
        if text.startswith("insert into sale_items"):
            self.sale_items.append(params)
            return
        if text.startswith("update product_inventory"):
            return
        if text.startswith("insert into stock_movements"):
            self.movements.append(params)
            return
        if "pg_notify" in text:
            self.notifications += 1
            return
        if text.startswith("update customers"):
            self.customer_updates.append(params)
            return
        raise AssertionError(f"unexpected SQL in test cursor: {text}")

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


def _checkout(**overrides):
    payload = {
        "store_id": STORE,
        "cashier_id": CASHIER,
        "cash_session_id": SESSION,
        "items": [{"inventory_id": INVENTORY, "product_id": PRODUCT, "quantity": 2, "unit_price": Decimal("10.00")}],
        "payment_method": "cash",
    }
    payload.update(overrides)
    return CheckoutIn(**payload)


def test_checkout_records_sale_and_decrements_stock():
    cur = _PosCursor(stock=5)
    res = _checkout_impl(cur=cur, data=_checkout(), user=USER, today=date(2025, 3, 1))

    assert res["sale"]["sale_number"] == "MAI-20250301-0001"
    assert res["totals"]["total"] == Decimal("20.00")
    assert cur.inventory["quantity"] == 3
    # movement params: product, store, inventory, user, type, quantity, previous, new, reference, notes
    movement = cur.movements[0]
    assert movement[4] == "sale"
    assert movement[5:8] == (-2, 5, 3)
    assert movement[8] == "sale:sale-1"
    assert cur.notifications == 1
    text, params = cur.session_updates[0]
    assert "total_cash_sales = total_cash_sales + %s" in text
    assert params == (Decimal("20.00"), 1, SESSION)


def test_checkout_ignores_client_totals():
    cur = _PosCursor()
    res = _checkout_impl(
        cur=cur,
        data=_checkout(subtotal=Decimal("1"), total=Decimal("1"), tax=Decimal("2"), discount=Decimal("0.50")),
        user=USER,
        today=date(2025, 3, 1),
    )
    assert res["totals"] == {
        "subtotal": Decimal("20.00"),
        "tax": Decimal("2.00"),
        "discount": Decimal("0.50"),
        "total": Decimal("21.50"),
    }


def test_checkout_rejects_insufficient_stock_with_details():
    cur = _PosCursor(stock=1)
    with pytest.raises(HTTPException) as ex:
        _checkout_impl(cur=cur, data=_checkout(), user=USER, today=date(2025, 3, 1))
    assert ex.value.status_code == 400
    assert ex.value.detail["error"] == "Insufficient inventory"
    assert ex.value.detail["details"]["available"] == 1
    assert ex.value.detail["details"]["requested"] == 2
    assert cur.sales == []


def test_checkout_rejects_price_outside_catalog_price():
    cur = _PosCursor(price=Decimal("12.00"))
    with pytest.raises(HTTPException) as ex:
        _checkout_impl(cur=cur, data=_checkout(), user=USER, today=date(2025, 3, 1))
    assert ex.value.detail["error"] == "Invalid price"
    assert ex.value.detail["details"]["message"] == "Price must be 12.00"


def test_checkout_accepts_price_inside_range():
    cur = _PosCursor(price=Decimal("12.00"), min_price=Decimal("9"), max_price=Decimal("15"))
    res = _checkout_impl(cur=cur, data=_checkout(), user=USER, today=date(2025, 3, 1))
    assert res["totals"]["total"] == Decimal("20.00")


def test_checkout_rejects_empty_cart():
    with pytest.raises(HTTPException) as ex:
        _checkout_impl(cur=_PosCursor(), data=_checkout(items=[]), user=USER, today=date(2025, 3, 1))
    assert ex.value.status_code == 400
    assert ex.value.detail == "Cart is empty"


def test_cashier_cannot_record_sales_for_someone_else():
    other = uuid.UUID("00000000-0000-4000-8000-0000000000b2")
    with pytest.raises(HTTPException) as ex:
        _checkout_impl(cur=_PosCursor(), data=_checkout(cashier_id=other), user=USER, today=date(2025, 3, 1))
    assert ex.value.status_code == 403


def test_checkout_requires_an_open_session():
    with pytest.raises(HTTPException) as ex:
        _checkout_impl(cur=_PosCursor(session_status="locked"), data=_checkout(), user=USER, today=date(2025, 3, 1))
    assert ex.value.detail == "Cash session is not open"


def _offline(quantity=3, price="1.50", **overrides):
    payload = {
        "local_receipt_number": "OFF-0042",
        "created_at": datetime(2025, 3, 1, 9, 15, tzinfo=timezone.utc),
        "store_id": STORE,
        "cashier_id": CASHIER,
        "items": [{"inventory_id": INVENTORY, "product_id": PRODUCT, "quantity": quantity, "unit_price": Decimal(price)}],
        "total": Decimal(price) * quantity,
        "payment_method": "cash",
    }
    payload.update(overrides)
    return OfflineTransactionIn(**payload)


def test_sync_replays_sale_with_offline_number_and_original_time():
    cur = _PosCursor(stock=10)
    res = _sync_one_impl(cur=cur, tx=_offline(), user=USER, now_ms=1700000000000)

    assert res["status"] == "success"
    assert res["sale_number"].startswith("SYNC-1700000000000-")
    assert res["total"] == Decimal("4.50")
    assert cur.sales[0][-1] == datetime(2025, 3, 1, 9, 15, tzinfo=timezone.utc)
    assert "[Synced from offline: OFF-0042]" in cur.sales[0][-2]
    assert cur.inventory["quantity"] == 7


def test_sync_partial_stock_creates_sale_and_reports_conflict():
    cur = _PosCursor(stock=1)
    res = _sync_one_impl(cur=cur, tx=_offline(), user=USER, now_ms=1)

    assert res["status"] == "conflict"
    assert res["sale_id"] == "sale-1"
    assert res["total"] == Decimal("1.50")
    assert res["conflict"]["refund_amount"] == Decimal("3.00")
    assert res["conflict"]["auto_resolvable"] is True
    assert cur.sale_items[0][3] == 1
    assert cur.inventory["quantity"] == 0


def test_sync_with_no_stock_creates_no_sale():
    cur = _PosCursor(stock=0)
    res = _sync_one_impl(cur=cur, tx=_offline(), user=USER, now_ms=1)

    assert res["status"] == "conflict"
    assert "sale_id" not in res
    assert res["conflict"]["message"] == "No items could be fulfilled. Full refund required."
    assert cur.sales == []
    assert cur.movements == []


def test_sync_with_no_stock_refunds_what_the_customer_paid_including_tax():
    cur = _PosCursor(stock=0)
    res = _sync_one_impl(
        cur=cur,
        tx=_offline(quantity=2, price="10.00", tax=Decimal("1.75"), total=Decimal("21.75")),
        user=USER,
        now_ms=1,
    )

    assert res["conflict"]["refund_amount"] == Decimal("21.75")
    assert res["conflict"]["adjusted_total"] == Decimal("0.00")
    assert cur.sales == []


def test_sync_lines_for_the_same_inventory_share_its_stock():
    line = {"inventory_id": INVENTORY, "product_id": PRODUCT, "quantity": 3, "unit_price": Decimal("1.50")}
    cur = _PosCursor(stock=4)
    res = _sync_one_impl(cur=cur, tx=_offline(items=[line, dict(line)], total=Decimal("9.00")), user=USER, now_ms=1)

    assert res["status"] == "conflict"
    assert [params[3] for params in cur.sale_items] == [3, 1]
    assert cur.inventory["quantity"] == 0
    assert res["total"] == Decimal("6.00")
    assert res["conflict"]["refund_amount"] == Decimal("3.00")


def test_sync_line_with_unknown_inventory_is_refunded_not_fatal():
    good = {"inventory_id": INVENTORY, "product_id": PRODUCT, "quantity": 1, "unit_price": Decimal("1.50")}
    bogus = {**good, "inventory_id": uuid.UUID("00000000-0000-4000-8000-0000000000e9")}
    cur = _PosCursor(stock=10)
    res = _sync_one_impl(cur=cur, tx=_offline(items=[good, bogus], total=Decimal("3.00")), user=USER, now_ms=1)

    assert res["status"] == "conflict"
    assert res["conflict"]["type"] == "product_unavailable"
    assert len(cur.sale_items) == 1
    assert cur.inventory["quantity"] == 9


def test_sync_endpoint_isolates_failures(monkeypatch, logged_events):
    cur = _PosCursor(stock=10)

    class _FakeConn:
        @contextmanager
        def transaction(self):
            yield

        @contextmanager
        def cursor(self):
            yield cur

        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            return False

    monkeypatch.setattr(sync_router, "get_conn", lambda: _FakeConn())
    monkeypatch.setattr(sync_router, "set_user_context", lambda conn, user_id: None)

    payload = SyncIn(
        transactions=[
            _offline(quantity=1),
            _offline(quantity=1, local_receipt_number="OFF-0043", store_id=OTHER_STORE),
        ]
    )
    res = sync_router.sync_offline_transactions(payload, user=USER)

    assert res["success"] is True
    assert (res["synced"], res["conflicts"], res["failed"]) == (1, 0, 1)
    failed = res["results"][1]
    assert failed["local_receipt_number"] == "OFF-0043"
    assert failed["status"] == "failed"
    assert failed["error"] == "You do not have access to this store"

    summary = [e for e in logged_events() if e["event"] == "pos.sync.completed"]
    assert summary and (summary[0]["synced"], summary[0]["failed"]) == (1, 1)
