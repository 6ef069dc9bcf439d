import threading

import pytest

from fleetgate.errors import InputError, LockContention
from fleetgate.models.state import MemberStatus
from fleetgate.state_store import StateStoreAdapter


@pytest.fixture
def applied(orchestrator, fleet, topology):
    """Three healthy workers."""
    orchestrator.apply(topology)
    fleet.tick()
    return topology


def _ids(state, *statuses):
    return [m.memberId for m in state.members(*statuses)]


def test_tick_promotes_ready_members(orchestrator, fleet, control_plane, store, topology):
    orchestrator.apply(topology)
    control_plane.ready["worker-0002"] = None
    report = fleet.tick()
    assert report.promoted == ["worker-0000", "worker-0001"]
    state = store.load()
    assert _ids(state, MemberStatus.JOINING) == ["worker-0002"]


def test_scale_up_provisions_difference(applied, fleet, store):
    report = fleet.scale(5)
    assert sorted(report.provisioned) == ["worker-0003", "worker-0004"]
    state = store.load()
    assert state.topology.worker_count == 5
    assert state.active_count == 5


def test_scale_down_drains_oldest_healthy_and_keeps_target(applied, fleet, store, control_plane, clock):
    fleet.scale(5)
    clock.advance(10)
    fleet.tick()
    assert len(_ids(store.load(), MemberStatus.HEALTHY)) == 5

    control_plane.assignments = {"worker-0000": 2, "worker-0001": 0, "worker-0002": 1}
    report = fleet.scale(2)
    assert report.draining == ["worker-0000", "worker-0001", "worker-0002"]
    state = store.load()
    assert state.active_count == 2

    report = fleet.tick()
    assert report.removed == ["worker-0001"]
    assert store.load().active_count == 2

    control_plane.assignments = {}
    fleet.tick()
    state = store.load()
    assert _ids(state) == ["worker-0003", "worker-0004"]
    assert sorted(control_plane.removed) == ["worker-0000", "worker-0001", "worker-0002"]


def test_scale_down_while_joining_only_drains_healthy(applied, fleet, store, control_plane):
    control_plane.default_ready = None
    fleet.scale(5)
    report = fleet.scale(4)
    assert report.draining == ["worker-0000"]
    state = store.load()
    assert _ids(state, MemberStatus.JOINING) == ["worker-0003", "worker-0004"]
    assert len(state.members(MemberStatus.HEALTHY, MemberStatus.JOINING)) == 4


def test_unhealthy_member_replaced_after_grace(applied, fleet, store, control_plane, clock):
    control_plane.ready["worker-0001"] = False
    report = fleet.tick()
    assert report.provisioned == [] and report.draining == []
    assert store.load().fleet["worker-0001"].unhealthySince == clock()

    clock.advance(30)
    assert fleet.tick().provisioned == []

    clock.advance(40)
    report = fleet.tick()
    assert report.provisioned == ["worker-0003"]
    assert report.draining == ["worker-0001"]
    state = store.load()
    assert len(state.members(MemberStatus.HEALTHY, MemberStatus.JOINING)) == 3


def test_recovered_member_is_not_replaced(applied, fleet, store, control_plane, clock):
    control_plane.ready["worker-0001"] = False
    fleet.tick()
    control_plane.ready["worker-0001"] = True
    clock.advance(120)
    report = fleet.tick()
    assert report.provisioned == []
    assert store.load().fleet["worker-0001"].unhealthySince is None


def test_member_that_never_joins_is_replaced(orchestrator, fleet, store, control_plane, provisioner, clock, topology):
    orchestrator.apply(topology)
    control_plane.ready["worker-0002"] = False
    assert fleet.tick().promoted == ["worker-0000", "worker-0001"]

    clock.advance(900)
    report = fleet.tick()
    assert report.provisioned == [] and report.removed == []

    clock.advance(1)
    report = fleet.tick()
    assert report.provisioned == ["worker-0003"]
    assert report.removed == ["worker-0002"]
    assert "worker-0002" in report.warnings[0]
    assert control_plane.removed == ["worker-0002"]
    assert "worker-0002" in provisioner.ops("destroy")

    for _ in range(5):
        clock.advance(3600)
        fleet.tick()
    state = store.load()
    assert _ids(state, MemberStatus.HEALTHY) == ["worker-0000", "worker-0001", "worker-0003"]
    assert _ids(state, MemberStatus.JOINING) == []


def test_drain_timeout_forces_deprovision_with_warning(applied, fleet, store, control_plane, clock):
    control_plane.assignments = {"worker-0000": 5}
    fleet.scale(2)
    assert fleet.tick().removed == []

    clock.advance(301)
    report = fleet.tick()
    assert report.removed == ["worker-0000"]
    assert len(report.warnings) == 1
    assert "worker-0000" in report.warnings[0] and "drain timeout" in report.warnings[0]
    assert report.ok
    assert "worker-0000" not in store.load().fleet


def test_failed_provisioning_goes_to_gone(applied, fleet, store, provisioner):
    provisioner.fail = {"worker-0003"}
    report = fleet.scale(4)
    assert "worker-0003" in report.errors
    assert not report.ok
    assert "worker-0003" not in store.load().fleet

    provisioner.fail = set()
    report = fleet.tick()
    assert report.provisioned == ["worker-0004"]
    assert store.load().active_count == 4


def test_scale_rejects_bad_input(fleet, orchestrator, topology):
    with pytest.raises(InputError):
        fleet.scale(3)
    orchestrator.apply(topology)
    with pytest.raises(InputError):
        fleet.scale(-1)


def test_tick_before_apply_is_empty(fleet):
    report = fleet.tick()
    assert report.target == 0 and report.ok


def test_tick_takes_the_cluster_lock(applied, fleet, kv, clock):
    other = StateStoreAdapter(kv, "demo", owner="apply-in-progress", clock=clock, sleep=clock.sleep)
    other.acquire()
    with pytest.raises(LockContention):
        fleet.tick()


def test_run_survives_contention_until_stopped(fleet):
    stop = threading.Event()
    seen = []

    def _tick():
        seen.append(1)
        if len(seen) == 1:
            raise LockContention("busy")
        stop.set()
        return fleet.reconcile_health()

    fleet.tick = _tick
    fleet.run(stop=stop, interval=0.01)
    assert len(seen) == 2
