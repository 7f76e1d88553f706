import contextlib
import uuid
from datetime import datetime, timedelta, timezone

import psycopg
import pytest

from deviceauth.storage.errors import StoreUnavailable
from deviceauth.storage.models import DeviceInfo, DeviceType
from deviceauth.storage.postgres import PostgresStore
from deviceauth.logging import get_logger

T0 = datetime(2027, 1, 1, tzinfo=timezone.utc)


class FakeResult:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, results):
        self.results = list(results)
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        return self.results.pop(0) if self.results else FakeResult()


class FakePool:
    def __init__(self, results=(), error=None):
        self.conn = FakeConnection(results)
        self.error = error
        self.closed = False

    @contextlib.contextmanager
    def connection(self, timeout=None):
        if self.error is not None:
            raise self.error
        yield self.conn

    def close(self):
        self.closed = True


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.timeout = 1.0
    store.logger = get_logger("test")
    return store


def _row(**overrides):
    row = {
        "id": uuid.uuid4(),
        "user_id": "u1",
        "device_id": "phone",
        "device_name": "Phone",
        "device_type": "mobile",
        "access_token": "acc",
        "refresh_token": "ref",
        "refresh_token_expiry": T0 + timedelta(days=730),
        "is_active": True,
        "last_active": T0,
        "device_info": {"os": "Android"},
        "created_at": T0,
        "updated_at": T0,
    }
    row.update(overrides)
    return row


def test_upsert_uses_conflict_clause_on_device_key():
    pool = FakePool([FakeResult([_row()])])
    store = _store(pool)

    sess = store.upsert_device_session(
        "u1",
        DeviceInfo(device_id="phone", device_name="Phone", device_type="mobile", os="Android"),
        access_token="acc",
        refresh_token="ref",
        refresh_token_expiry=T0 + timedelta(days=730),
        now=T0,
    )

    sql, params = pool.conn.executed[0]
    assert "ON CONFLICT (user_id, device_id) DO UPDATE" in sql
    assert "is_active = TRUE" in sql
    assert params[1:8] == (
        "u1",
        "phone",
        "Phone",
        "mobile",
        "acc",
        "ref",
        T0 + timedelta(days=730),
    )
    assert isinstance(sess.id, str)
    assert sess.device_type is DeviceType.MOBILE
    assert sess.device_info == {"os": "Android"}


def test_set_access_token_is_conditional_on_refresh_token():
    pool = FakePool([FakeResult([])])
    store = _store(pool)

    assert store.set_access_token("sid", "ref", "acc-2", T0) is None
    sql, params = pool.conn.executed[0]
    assert "WHERE id = %s AND is_active AND refresh_token = %s" in sql
    assert params == ("acc-2", T0, T0, "sid", "ref")


def test_empty_refresh_token_skips_queries():
    pool = FakePool()
    store = _store(pool)

    assert store.find_active_by_refresh_token("") is None
    assert store.set_access_token("sid", "", "acc") is None
    assert pool.conn.executed == []


def test_revoke_blanks_tokens_in_single_statement():
    pool = FakePool([FakeResult(rowcount=1), FakeResult(rowcount=0)])
    store = _store(pool)

    assert store.revoke_device_session("u1", "phone", T0) is True
    assert store.revoke_device_session("u1", "phone", T0) is False
    sql, params = pool.conn.executed[0]
    assert "SET is_active = FALSE, access_token = '', refresh_token = ''" in sql
    assert params == (T0, "u1", "phone")


def test_revoke_others_returns_rowcount():
    pool = FakePool([FakeResult(rowcount=3)])
    store = _store(pool)

    assert store.revoke_other_device_sessions("u1", "phone", T0) == 3
    sql, params = pool.conn.executed[0]
    assert "device_id <> %s AND is_active" in sql
    assert params == (T0, "u1", "phone")


def test_list_active_orders_by_last_active():
    rows = [
        _row(device_id="b", last_active=T0 + timedelta(minutes=1)),
        _row(device_id="a"),
    ]
    pool = FakePool([FakeResult(rows)])
    store = _store(pool)

    sessions = store.list_active_device_sessions("u1")

    assert [s.device_id for s in sessions] == ["b", "a"]
    assert "ORDER BY last_active DESC" in pool.conn.executed[0][0]


def test_operational_error_becomes_store_unavailable():
    store = _store(FakePool(error=psycopg.OperationalError("connection refused")))

    with pytest.raises(StoreUnavailable) as excinfo:
        store.list_active_device_sessions("u1")

    assert excinfo.value.operation == "list_active_device_sessions"


def test_close_closes_pool():
    pool = FakePool()
    _store(pool).close()

    assert pool.closed
