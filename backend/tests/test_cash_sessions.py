from decimal import Decimal
import uuid

import pytest
from fastapi import HTTPException

from psycopg import errors as pg_errors

from backend.app.routers.cash_sessions import (
    SessionCloseIn,
    SessionOpenIn,
    SessionUnlockIn,
    ValidatePinIn,
    _close_session_impl,
    _list_validators_impl,
    _lock_session_impl,
    _open_session_impl,
    _unlock_session_impl,
    _validate_pin_impl,
    history_scope,
)
from backend.app.security import hash_pin

STORE = "00000000-0000-4000-8000-0000000000a1"
SESSION = uuid.UUID("00000000-0000-4000-8000-0000000000c1")
CASHIER = "00000000-0000-4000-8000-0000000000b1"
MANAGER = uuid.UUID("00000000-0000-4000-8000-0000000000b9")

CASHIER_USER = {"user_id": CASHIER, "role": "cashier", "store_id": STORE}

PIN = "246810"
PIN_HASH = hash_pin(PIN)


class _SessionCursor:
    def __init__(self, *, approver=None, pin_hash=PIN_HASH, cash_sales=Decimal("120.00")):
        self.session = {
            "id": SESSION,
            "store_id": STORE,
            "cashier_id": CASHIER,
            "status": "open",
            "opening_amount": Decimal("50.00"),
            "total_cash_sales": cash_sales,
            "total_card_sales": Decimal("30.00"),
            "total_mobile_sales": Decimal("0"),
            "total_other_sales": Decimal("0"),
            "transaction_count": 3,
        }
        self.approver = approver
        self.pin_hash = pin_hash
        self.update_params = None
        self._row = None

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        if text.startswith("update cash_sessions"):
            self.update_params = params
            closing, expected, diff, notes, needs_approval, approver_id = params[:6]
            self._row = {
                **self.session,
                "status": "closed",
                "closing_amount": closing,
                "expected_closing_amount": expected,
                "discrepancy": diff,
                "closing_notes": notes,
                "requires_approval": needs_approval,
                "approved_by": approver_id,
            }
            return
        if "from cash_sessions" in text:
            self._row = self.session
            return
        if "from profiles" in text:
            self._row = self.approver
            return
        if "from manager_pins" in text:
            self._row = {"pin_hash": self.pin_hash} if self.pin_hash else None
            return
        raise AssertionError(f"unexpected SQL in test cursor: {text}")

    def fetchone(self):
        return self._row


def _manager(store_id=STORE, role="manager"):
    return {"id": MANAGER, "email": "boss@shop.test", "full_name": "Boss", "role": role, "store_id": store_id, "deleted_at": None}


def _close(closing, **kw):
    return SessionCloseIn(session_id=SESSION, closing_amount=Decimal(closing), **kw)


def test_balanced_close_needs_no_approval():
    cur = _SessionCursor()
    res = _close_session_impl(cur=cur, data=_close("170.00"), closing=Decimal("170.00"), user=CASHIER_USER)

    assert res["success"] is True
    assert res["was_approved"] is False
    assert res["session"]["status"] == "closed"
    assert res["summary"]["expected_closing"] == Decimal("170.00")
    assert res["summary"]["discrepancy"] == Decimal("0.00")
    assert cur.update_params[4] is False


def test_discrepancy_without_approver_is_rejected_with_amount():
    cur = _SessionCursor()
    with pytest.raises(HTTPException) as ex:
        _close_session_impl(cur=cur, data=_close("165.00"), closing=Decimal("165.00"), user=CASHIER_USER)

    assert ex.value.status_code == 403
    assert ex.value.detail["error"] == "Manager approval required for cash discrepancy"
    assert ex.value.detail["requires_approval"] is True
    assert ex.value.detail["discrepancy"] == "-5.00"
    assert cur.update_params is None


def test_discrepancy_with_manager_pin_closes_and_records_approver():
    cur = _SessionCursor(approver=_manager())
    data = _close("171.00", approved_by=MANAGER, approver_pin=PIN)
    res = _close_session_impl(cur=cur, data=data, closing=Decimal("171.00"), user=CASHIER_USER)

    assert res["was_approved"] is True
    assert res["session"]["approved_by"] == MANAGER
    assert res["session"]["discrepancy"] == Decimal("1.00")
    assert res["session"]["requires_approval"] is True


def test_wrong_pin_is_unauthorized():
    cur = _SessionCursor(approver=_manager())
    data = _close("160.00", approved_by=MANAGER, approver_pin="000000")
    with pytest.raises(HTTPException) as ex:
        _close_session_impl(cur=cur, data=data, closing=Decimal("160.00"), user=CASHIER_USER)
    assert ex.value.status_code == 401
    assert ex.value.detail == "Invalid PIN"


def test_manager_from_another_store_cannot_approve():
    cur = _SessionCursor(approver=_manager(store_id="00000000-0000-4000-8000-0000000000a2"))
    data = _close("160.00", approved_by=MANAGER, approver_pin=PIN)
    with pytest.raises(HTTPException) as ex:
        _close_session_impl(cur=cur, data=data, closing=Decimal("160.00"), user=CASHIER_USER)
    assert ex.value.status_code == 403
    assert ex.value.detail == "Manager must be from the same store"


def test_admin_from_any_store_can_approve():
    cur = _SessionCursor(approver=_manager(store_id=None, role="admin"))
    data = _close("160.00", approved_by=MANAGER, approver_pin=PIN)
    res = _close_session_impl(cur=cur, data=data, closing=Decimal("160.00"), user=CASHIER_USER)
    assert res["was_approved"] is True


def test_approver_without_pin_is_rejected():
    cur = _SessionCursor(approver=_manager(), pin_hash=None)
    data = _close("160.00", approved_by=MANAGER, approver_pin=PIN)
    with pytest.raises(HTTPException) as ex:
        _close_session_impl(cur=cur, data=data, closing=Decimal("160.00"), user=CASHIER_USER)
    assert ex.value.status_code == 400


def test_cashier_cannot_close_another_cashiers_session():
    cur = _SessionCursor()
    other = {"user_id": "someone-else", "role": "cashier", "store_id": STORE}
    with pytest.raises(HTTPException) as ex:
        _close_session_impl(cur=cur, data=_close("170.00"), closing=Decimal("170.00"), user=other)
    assert ex.value.status_code == 403


def test_validate_pin_returns_manager_identity():
    cur = _SessionCursor(approver=_manager())
    res = _validate_pin_impl(cur, ValidatePinIn(manager_id=MANAGER, pin=PIN), CASHIER_USER)
    assert res["valid"] is True
    assert res["manager"] == {"id": MANAGER, "name": "Boss", "role": "manager"}


def test_validate_pin_rejects_malformed_pin():
    with pytest.raises(HTTPException) as ex:
        _validate_pin_impl(_SessionCursor(), ValidatePinIn(manager_id=MANAGER, pin="12ab"), CASHIER_USER)
    assert ex.value.detail == "PIN must be exactly 6 digits"


class _LifecycleCursor:
    """Open/lock/unlock: one session row (or none), profiles by id, PINs by user id."""

    def __init__(self, *, session=None, profiles=None, pins=None, insert_error=None, validator_rows=None):
        self.session = session
        self.profiles = profiles or {}
        self.pins = pins or {}
        self.insert_error = insert_error
        self.validator_rows = validator_rows or []
        self.statements = []
        self._rows = []

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        self.statements.append((text, params))
        if text.startswith("insert into cash_sessions"):
            if self.insert_error:
                raise self.insert_error
            store_id, cashier_id, opening, notes = params
            self._rows = [{"id": SESSION, "store_id": store_id, "cashier_id": cashier_id, "status": "open", "opening_amount": opening}]
            return
        if text.startswith("update cash_sessions"):
            status = "locked" if "status = 'locked'" in text else "open"
            self.session = {**self.session, "status": status}
            self._rows = [self.session]
            return
        if "from cash_sessions" in text:
            wanted = "locked" if "status = 'locked'" in text else "open"
            ok = self.session and (self.session["status"] == wanted or "status in ('open', 'locked')" in text)
            self._rows = [self.session] if ok else []
            return
        if "from profiles p" in text and "manager_pins" in text:
            self._rows = list(self.validator_rows)
            return
        if "from profiles" in text:
            row = self.profiles.get(str(params[0]))
            self._rows = [row] if row else []
            return
        if "from manager_pins" in text:
            pin_hash = self.pins.get(str(params[0]))
            self._rows = [{"pin_hash": pin_hash}] if pin_hash else []
            return
        raise AssertionError(f"unexpected SQL in test cursor: {text}")

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


def _session_row(status="open", cashier_id=CASHIER):
    return {"id": SESSION, "store_id": STORE, "cashier_id": cashier_id, "status": status}


def _open_data():
    return SessionOpenIn(store_id=uuid.UUID(STORE), opening_amount=Decimal("50.00"))


def test_open_session_creates_an_open_session():
    cur = _LifecycleCursor()
    session = _open_session_impl(cur=cur, data=_open_data(), opening=Decimal("50.00"), user=CASHIER_USER)
    assert session["status"] == "open"
    assert session["opening_amount"] == Decimal("50.00")


@pytest.mark.parametrize(
    "status,message",
    [
        ("locked", "You have a locked session. Please unlock it first."),
        ("open", "You already have an open session"),
    ],
)
def test_open_session_refuses_a_second_active_session(status, message):
    cur = _LifecycleCursor(session=_session_row(status))
    with pytest.raises(HTTPException) as ex:
        _open_session_impl(cur=cur, data=_open_data(), opening=Decimal("50.00"), user=CASHIER_USER)
    assert ex.value.status_code == 400
    assert ex.value.detail == message
    assert not any(text.startswith("insert") for text, _ in cur.statements)


def test_concurrent_open_that_loses_the_unique_index_reports_already_open():
    cur = _LifecycleCursor(insert_error=pg_errors.UniqueViolation("cash_sessions_one_active"))
    with pytest.raises(HTTPException) as ex:
        _open_session_impl(cur=cur, data=_open_data(), opening=Decimal("50.00"), user=CASHIER_USER)
    assert ex.value.status_code == 400
    assert ex.value.detail == "You already have an open session"


def test_lock_session_marks_it_locked_by_owner():
    cur = _LifecycleCursor(session=_session_row("open"))
    session = _lock_session_impl(cur=cur, session_id=SESSION, user=CASHIER_USER)
    assert session["status"] == "locked"
    update = [p for text, p in cur.statements if text.startswith("update cash_sessions")][0]
    assert update == (CASHIER, SESSION)


def test_lock_session_rejects_other_cashiers():
    cur = _LifecycleCursor(session=_session_row("open", cashier_id="someone-else"))
    with pytest.raises(HTTPException) as ex:
        _lock_session_impl(cur=cur, session_id=SESSION, user=CASHIER_USER)
    assert ex.value.status_code == 403


def test_lock_session_requires_an_open_session():
    cur = _LifecycleCursor(session=_session_row("locked"))
    with pytest.raises(HTTPException) as ex:
        _lock_session_impl(cur=cur, session_id=SESSION, user=CASHIER_USER)
    assert ex.value.status_code == 404


def _unlock(pin=PIN, validator_id=None):
    return SessionUnlockIn(session_id=SESSION, pin=pin, validator_id=validator_id)


def test_owner_unlocks_with_own_pin():
    cur = _LifecycleCursor(session=_session_row("locked"), pins={CASHIER: PIN_HASH})
    session = _unlock_session_impl(cur=cur, data=_unlock(), user=CASHIER_USER)
    assert session["status"] == "open"


def test_owner_without_pin_cannot_unlock():
    cur = _LifecycleCursor(session=_session_row("locked"))
    with pytest.raises(HTTPException) as ex:
        _unlock_session_impl(cur=cur, data=_unlock(), user=CASHIER_USER)
    assert ex.value.status_code == 400
    assert ex.value.detail == "PIN not configured for this user"


def test_owner_with_wrong_pin_is_unauthorized():
    cur = _LifecycleCursor(session=_session_row("locked"), pins={CASHIER: PIN_HASH})
    with pytest.raises(HTTPException) as ex:
        _unlock_session_impl(cur=cur, data=_unlock(pin="135790"), user=CASHIER_USER)
    assert ex.value.status_code == 401


def test_manager_override_unlocks_another_cashiers_session():
    manager_user = {"user_id": str(MANAGER), "role": "manager", "store_id": STORE}
    cur = _LifecycleCursor(
        session=_session_row("locked"),
        profiles={str(MANAGER): _manager()},
        pins={str(MANAGER): PIN_HASH},
    )
    session = _unlock_session_impl(cur=cur, data=_unlock(validator_id=MANAGER), user=manager_user)
    assert session["status"] == "open"


def test_cashier_cannot_name_a_manager_as_validator():
    cur = _LifecycleCursor(session=_session_row("locked"), profiles={str(MANAGER): _manager()}, pins={str(MANAGER): PIN_HASH})
    with pytest.raises(HTTPException) as ex:
        _unlock_session_impl(cur=cur, data=_unlock(validator_id=MANAGER), user=CASHIER_USER)
    assert ex.value.status_code == 403
    assert ex.value.detail == "Only managers can unlock other users' sessions"


def test_validator_without_pin_cannot_unlock():
    manager_user = {"user_id": str(MANAGER), "role": "manager", "store_id": STORE}
    cur = _LifecycleCursor(session=_session_row("locked"), profiles={str(MANAGER): _manager()})
    with pytest.raises(HTTPException) as ex:
        _unlock_session_impl(cur=cur, data=_unlock(validator_id=MANAGER), user=manager_user)
    assert ex.value.status_code == 400
    assert ex.value.detail == "PIN not configured for this user"


def test_cashier_cannot_unlock_someone_elses_session_without_override():
    cur = _LifecycleCursor(session=_session_row("locked", cashier_id="someone-else"), pins={CASHIER: PIN_HASH})
    with pytest.raises(HTTPException) as ex:
        _unlock_session_impl(cur=cur, data=_unlock(), user=CASHIER_USER)
    assert ex.value.status_code == 403


def test_validators_are_split_by_pin():
    rows = [
        {"id": "m1", "full_name": "Mia", "email": "mia@shop.test", "role": "manager", "store_id": STORE, "has_pin": True},
        {"id": "a1", "full_name": "Ada", "email": "ada@shop.test", "role": "admin", "store_id": None, "has_pin": False},
    ]
    cur = _LifecycleCursor(validator_rows=rows)
    res = _list_validators_impl(cur=cur, store_id=STORE, user=CASHIER_USER)

    assert [v["id"] for v in res["validators"]] == ["m1"]
    assert [v["id"] for v in res["validators_without_pin"]] == ["a1"]
    _, params = cur.statements[0]
    assert params == (CASHIER, STORE)


def test_history_scope_by_role():
    other_store = uuid.UUID("00000000-0000-4000-8000-0000000000a2")
    assert history_scope(CASHIER_USER, other_store) == (["s.status = 'closed'", "s.cashier_id = %s"], [CASHIER])
    manager = {"user_id": str(MANAGER), "role": "manager", "store_id": STORE}
    assert history_scope(manager, other_store) == (["s.status = 'closed'", "s.store_id = %s"], [STORE])
    admin = {"user_id": "admin-1", "role": "admin", "store_id": None}
    assert history_scope(admin, other_store) == (["s.status = 'closed'", "s.store_id = %s"], [other_store])
    assert history_scope(admin, None) == (["s.status = 'closed'"], [])
