import threading
from datetime import datetime, timedelta, timezone

import pytest

from deviceauth.storage.errors import StoreUnavailable
from deviceauth.storage.memory import MemoryStore
from deviceauth.storage.models import DeviceInfo, DeviceType

T0 = datetime(2027, 1, 1, tzinfo=timezone.utc)
EXPIRY = T0 + timedelta(days=730)


def _device(device_id: str = "device-a", **kwargs) -> DeviceInfo:
    return DeviceInfo(
        device_id=device_id, device_name=kwargs.pop("device_name", "Pixel"), **kwargs
    )


def _upsert(store, user_id="u1", device_id="device-a", *, access="acc", refresh="ref", now=T0, **kwargs):
    return store.upsert_device_session(
        user_id,
        _device(device_id, **kwargs),
        access_token=access,
        refresh_token=refresh,
        refresh_token_expiry=EXPIRY,
        now=now,
    )


def test_upsert_creates_active_session():
    store = MemoryStore()
    sess = _upsert(store, device_type="mobile", os="Android 14", ip="10.0.0.1")

    assert sess.is_active
    assert sess.user_id == "u1"
    assert sess.device_id == "device-a"
    assert sess.device_type is DeviceType.MOBILE
    assert sess.device_info == {"os": "Android 14", "ip": "10.0.0.1"}
    assert sess.last_active == T0
    assert sess.refresh_token_expiry == EXPIRY


def test_upsert_same_device_replaces_tokens_in_place():
    store = MemoryStore()
    first = _upsert(store, access="acc-1", refresh="ref-1")
    later = T0 + timedelta(minutes=5)
    second = _upsert(store, access="acc-2", refresh="ref-2", now=later, device_name="Pixel 9")

    assert second.id == first.id
    assert second.created_at == T0
    assert second.access_token == "acc-2"
    assert second.device_name == "Pixel 9"
    assert len(store.sessions) == 1
    assert store.find_active_by_refresh_token("ref-1") is None
    assert store.find_active_by_refresh_token("ref-2").id == first.id


def test_distinct_devices_get_distinct_records():
    store = MemoryStore()
    a = _upsert(store, device_id="device-a", refresh="ref-a")
    b = _upsert(store, device_id="device-b", refresh="ref-b")

    assert a.id != b.id
    assert len(store.sessions) == 2


def test_same_device_id_for_different_users_is_separate():
    store = MemoryStore()
    a = _upsert(store, user_id="u1", refresh="ref-1")
    b = _upsert(store, user_id="u2", refresh="ref-2")

    assert a.id != b.id
    assert store.get_device_session("u1", "device-a").refresh_token == "ref-1"
    assert store.get_device_session("u2", "device-a").refresh_token == "ref-2"


def test_returned_records_are_snapshots():
    store = MemoryStore()
    sess = _upsert(store)
    store.revoke_device_session("u1", "device-a")

    assert sess.is_active
    assert sess.refresh_token == "ref"
    assert not store.get_device_session("u1", "device-a").is_active


def test_set_access_token_requires_matching_active_session():
    store = MemoryStore()
    sess = _upsert(store)
    later = T0 + timedelta(hours=1)

    assert store.set_access_token(sess.id, "wrong", "acc-2", later) is None
    updated = store.set_access_token(sess.id, "ref", "acc-2", later)

    assert updated.access_token == "acc-2"
    assert updated.last_active == later
    assert updated.refresh_token == "ref"
    assert updated.refresh_token_expiry == EXPIRY

    store.revoke_device_session("u1", "device-a")
    assert store.set_access_token(sess.id, "ref", "acc-3", later) is None


def test_revoke_blanks_tokens_and_keeps_record():
    store = MemoryStore()
    _upsert(store)

    assert store.revoke_device_session("u1", "device-a") is True
    revoked = store.get_device_session("u1", "device-a")
    assert not revoked.is_active
    assert revoked.access_token == ""
    assert revoked.refresh_token == ""
    assert store.revoke_device_session("u1", "device-a") is False
    assert store.revoke_device_session("u1", "missing") is False


def test_empty_refresh_token_never_matches_revoked_records():
    store = MemoryStore()
    _upsert(store)
    store.revoke_device_session("u1", "device-a")

    assert store.find_active_by_refresh_token("") is None


def test_revoke_others_counts_only_active_siblings():
    store = MemoryStore()
    for idx, device_id in enumerate(["a", "b", "c", "d"]):
        _upsert(store, device_id=device_id, refresh=f"ref-{device_id}", access=f"acc-{idx}")
    _upsert(store, user_id="u2", device_id="x", refresh="ref-x")
    store.revoke_device_session("u1", "d")

    assert store.revoke_other_device_sessions("u1", "a") == 2
    active = store.list_active_device_sessions("u1")
    assert [s.device_id for s in active] == ["a"]
    assert store.get_device_session("u2", "x").is_active


def test_list_active_orders_by_last_active_desc():
    store = MemoryStore()
    _upsert(store, device_id="a", refresh="ref-a", now=T0)
    _upsert(store, device_id="b", refresh="ref-b", now=T0 + timedelta(minutes=1))
    c = _upsert(store, device_id="c", refresh="ref-c", now=T0 + timedelta(minutes=2))
    store.set_access_token(
        store.get_device_session("u1", "a").id, "ref-a", "acc-a2", T0 + timedelta(minutes=3)
    )
    store.revoke_device_session("u1", c.device_id)

    assert [s.device_id for s in store.list_active_device_sessions("u1")] == ["a", "b"]


def test_concurrent_upserts_for_same_device_converge():
    store = MemoryStore()
    barrier = threading.Barrier(8)

    def register(idx: int) -> None:
        barrier.wait()
        _upsert(store, access=f"acc-{idx}", refresh=f"ref-{idx}")

    threads = [threading.Thread(target=register, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(store.sessions) == 1
    final = store.get_device_session("u1", "device-a")
    matches = [i for i in range(8) if store.find_active_by_refresh_token(f"ref-{i}")]
    assert matches == [int(final.refresh_token.split("-")[1])]


def test_state_persists_across_instances(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    _upsert(store, device_type="tablet", location="Berlin")
    _upsert(store, device_id="device-b", refresh="ref-b")
    store.revoke_device_session("u1", "device-b")

    reloaded = MemoryStore(fs_root=str(tmp_path))
    sess = reloaded.get_device_session("u1", "device-a")

    assert sess.is_active
    assert sess.device_type is DeviceType.TABLET
    assert sess.device_info == {"location": "Berlin"}
    assert sess.refresh_token_expiry == EXPIRY
    assert not reloaded.get_device_session("u1", "device-b").is_active
    # Re-registration after reload must still hit the existing record
    again = _upsert(reloaded, refresh="ref-new")
    assert again.id == sess.id


def _block_state_file(tmp_path) -> None:
    state_file = tmp_path / "state" / "device_sessions.json"
    state_file.unlink()
    state_file.mkdir()


def test_failed_write_leaves_state_untouched(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    original = _upsert(store, refresh="ref-a")
    _block_state_file(tmp_path)

    with pytest.raises(StoreUnavailable) as excinfo:
        _upsert(store, device_id="device-b", refresh="ref-b")
    assert excinfo.value.operation == "upsert_device_session"
    assert len(store.sessions) == 1
    assert store.get_device_session("u1", "device-b") is None

    with pytest.raises(StoreUnavailable):
        _upsert(store, refresh="ref-new")
    assert store.find_active_by_refresh_token("ref-a").id == original.id

    with pytest.raises(StoreUnavailable):
        store.set_access_token(original.id, "ref-a", "acc-new")
    assert store.get_device_session("u1", "device-a").access_token == "acc"

    with pytest.raises(StoreUnavailable):
        store.revoke_device_session("u1", "device-a")
    with pytest.raises(StoreUnavailable):
        store.revoke_other_device_sessions("u1", "device-z")
    assert store.get_device_session("u1", "device-a").is_active
