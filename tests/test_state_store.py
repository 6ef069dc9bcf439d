import json

import pytest

from fleetgate.errors import LockContention, ObservationError
from fleetgate.models.state import ClusterState
from fleetgate.state_store import FileKeyValueStore, MemoryKeyValueStore, StateStoreAdapter


def test_memory_store_compare_and_swap():
    kv = MemoryKeyValueStore()
    assert kv.compare_and_swap("k", "a", None) == 1
    assert kv.compare_and_swap("k", "b", None) is None
    assert kv.compare_and_swap("k", "b", 1) == 2
    assert kv.get("k") == ("b", 2)
    assert not kv.delete("k", 1)
    assert kv.delete("k", 2)
    assert kv.get("k") is None


def test_file_store_compare_and_swap(tmp_path):
    kv = FileKeyValueStore(tmp_path)
    assert kv.compare_and_swap("clusters/demo/state", "{}", None) == 1
    assert (tmp_path / "clusters__demo__state.json").exists()
    assert kv.compare_and_swap("clusters/demo/state", "{}", 7) is None
    assert FileKeyValueStore(tmp_path).get("clusters/demo/state") == ("{}", 1)
    assert kv.delete("clusters/demo/state", 1)


def test_save_requires_lock(store):
    with pytest.raises(RuntimeError):
        store.save(ClusterState.empty("demo"))


def test_save_and_load_roundtrip_bumps_revision(store):
    with store.lock():
        assert store.load() is None
        state = ClusterState.empty("demo")
        store.save(state)
        store.save(state)
    assert state.revision == 2
    assert store.load().revision == 2


def test_lock_contention_after_bounded_wait(kv, clock):
    holder = StateStoreAdapter(kv, "demo", owner="first", clock=clock, sleep=clock.sleep)
    waiter = StateStoreAdapter(kv, "demo", owner="second", lock_timeout=5, clock=clock, sleep=clock.sleep)
    holder.acquire()
    start = clock()
    with pytest.raises(LockContention) as exc:
        waiter.acquire()
    assert exc.value.holder == "first"
    assert exc.value.retryable
    assert 4.9 < clock() - start < 7
    holder.release()
    waiter.acquire()
    assert waiter.locked


def test_expired_lease_is_taken_over(kv, clock):
    stale = StateStoreAdapter(kv, "demo", owner="crashed", lease_seconds=60, clock=clock, sleep=clock.sleep)
    stale.acquire()
    clock.advance(61)
    fresh = StateStoreAdapter(kv, "demo", owner="fresh", clock=clock, sleep=clock.sleep)
    fresh.acquire()
    assert json.loads(kv.get(fresh.lock_key)[0])["owner"] == "fresh"
    with pytest.raises(LockContention):
        stale.renew()


def test_concurrent_write_is_detected(kv, clock):
    a = StateStoreAdapter(kv, "demo", owner="a", clock=clock, sleep=clock.sleep)
    with a.lock():
        state = a.load() or ClusterState.empty("demo")
        # someone bypassing the lock
        kv.compare_and_swap(a.state_key, ClusterState.empty("demo").model_dump_json(), None)
        with pytest.raises(LockContention):
            a.save(state)


def test_unreadable_state_is_observation_error(kv, store):
    kv.compare_and_swap(store.state_key, "{not json", None)
    with pytest.raises(ObservationError):
        store.load()


def test_lock_is_released_on_error(store, kv):
    with pytest.raises(ValueError):
        with store.lock():
            raise ValueError("boom")
    assert kv.get(store.lock_key) is None
