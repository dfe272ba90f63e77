import pytest
from fastapi import HTTPException

from backend.app.access import approver_error, assert_store_access, can_view_record, list_scope, scoped_store_id

ADMIN = {"user_id": "u-admin", "role": "admin", "store_id": None}
MANAGER = {"user_id": "u-mgr", "role": "manager", "store_id": "s1"}
CASHIER = {"user_id": "u-cash", "role": "cashier", "store_id": "s1"}


def test_store_access_by_role():
    assert_store_access(ADMIN, "s2")
    assert_store_access(MANAGER, "s1")
    with pytest.raises(HTTPException) as ex:
        assert_store_access(CASHIER, "s2")
    assert ex.value.status_code == 403


def test_scoped_store_id_ignores_requested_store_for_non_admins():
    assert scoped_store_id(ADMIN, "s2") == "s2"
    assert scoped_store_id(ADMIN, None) is None
    assert scoped_store_id(MANAGER, "s2") == "s1"


def test_list_scope_predicates():
    assert list_scope(ADMIN, owner_column="cashier_id") == ("TRUE", [])
    assert list_scope(MANAGER, owner_column="cashier_id") == ("store_id = %s", ["s1"])
    assert list_scope(CASHIER, owner_column="s.cashier_id") == ("s.cashier_id = %s", ["u-cash"])
    assert list_scope({"user_id": "x", "role": "manager", "store_id": None}, owner_column="c") == ("FALSE", [])


def test_can_view_record():
    assert can_view_record(MANAGER, owner_id="other", store_id="s1") is True
    assert can_view_record(MANAGER, owner_id="other", store_id="s2") is False
    assert can_view_record(CASHIER, owner_id="u-cash", store_id="s9") is True
    assert can_view_record(CASHIER, owner_id="other", store_id="s1") is False


def test_approver_error_cases():
    assert approver_error(None, "s1") == (404, "Approver not found")
    assert approver_error({"role": "manager", "store_id": "s1", "deleted_at": "2025-01-01"}, "s1")[0] == 404
    assert approver_error({"role": "cashier", "store_id": "s1"}, "s1") == (403, "Approver must be a manager or admin")
    assert approver_error({"role": "manager", "store_id": "s2"}, "s1") == (403, "Manager must be from the same store")
    assert approver_error({"role": "admin", "store_id": None}, "s1") is None
    assert approver_error({"role": "manager", "store_id": "s1"}, "s1") is None
