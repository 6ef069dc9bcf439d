# fleetgate/fleet.py
"""Elastic worker group: scale, health-driven replacement and drain.

The controller is a polling state machine. Each `tick()` observes the fleet
through the control plane and moves members along
joining -> healthy -> draining -> gone (or joining -> gone), always under the
same cluster lock apply/destroy use.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from fleetgate.config import ControllerConfig
from fleetgate.errors import DrainTimeout, InputError, LockContention, ObservationError
from fleetgate.executor import ActionExecutor, run_parallel
from fleetgate.interfaces import ControlPlane, Provisioner, SecretProvider
from fleetgate.models.state import ClusterState, FleetMember, MemberStatus
from fleetgate.reconciler import worker_action
from fleetgate.state_store import StateStoreAdapter

log = logging.getLogger(__name__)


class FleetReport(BaseModel):
    target: int = 0
    provisioned: List[str] = Field(default_factory=list)
    promoted: List[str] = Field(default_factory=list)
    draining: List[str] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    errors: Dict[str, str] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


class FleetController:
    def __init__(
        self,
        store: StateStoreAdapter,
        provisioner: Provisioner,
        control_plane: ControlPlane,
        config: Optional[ControllerConfig] = None,
        secrets: Optional[SecretProvider] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.control_plane = control_plane
        self.config = config or ControllerConfig()
        self.clock = clock
        self.executor = ActionExecutor(provisioner, control_plane, secrets, clock)

    def _load_applied(self) -> ClusterState:
        state = self.store.load()
        if state is None or state.topology is None:
            raise InputError(f"cluster {self.store.cluster_name} has not been applied yet")
        return state

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def scale(self, target: int) -> FleetReport:
        """Set the worker count and converge the fleet towards it."""
        if target < 0:
            raise InputError(f"worker count must be >= 0, got {target}")
        with self.store.lock():
            state = self._load_applied()
            state.topology = state.topology.with_worker_count(target)
            report = FleetReport(target=target)
            self._converge(state, report)
            self.store.save(state)
        log.info("fleet scaled to %d: +%d, draining %d", target, len(report.provisioned), len(report.draining))
        return report

    def reconcile_health(self) -> FleetReport:
        """One periodic health pass over the fleet."""
        with self.store.lock():
            state = self.store.load()
            if state is None or state.topology is None:
                return FleetReport()
            report = FleetReport(target=state.topology.worker_count)
            now = self.clock()
            self._promote_joining(state, report, now)
            self._replace_unhealthy(state, report, now)
            self._finish_draining(state, report, now)
            self._converge(state, report)
            self.store.save(state)
        return report

    tick = reconcile_health

    def run(self, stop: Optional[threading.Event] = None, interval: Optional[float] = None) -> None:
        """Call `tick()` every `interval` seconds until `stop` is set."""
        stop = stop or threading.Event()
        interval = interval or self.config.tickIntervalSeconds
        while not stop.is_set():
            try:
                report = self.tick()
            except LockContention as e:
                log.info("fleet tick skipped: %s", e)
            except ObservationError as e:
                log.warning("fleet tick skipped: %s", e)
            else:
                for w in report.warnings:
                    log.warning(w)
                for member_id, err in report.errors.items():
                    log.error("%s: %s", member_id, err)
            stop.wait(interval)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------
    def _provision(self, state: ClusterState, count: int, report: FleetReport) -> List[str]:
        if count <= 0:
            return []
        actions = [worker_action(state.topology, state.allocate_worker_id()) for _ in range(count)]
        outcomes, _ = run_parallel(
            lambda a: self.executor.provision_worker(state, a), actions, self.config.maxParallel
        )
        done = []
        for outcome in outcomes:
            member_id = outcome.item.logicalId
            if outcome.error is None:
                done.append(member_id)
                report.provisioned.append(member_id)
            else:
                report.errors[member_id] = str(outcome.error)
        return done

    def _drain(self, state: ClusterState, member: FleetMember, report: FleetReport) -> None:
        try:
            self.executor.start_drain(state, member)
        except Exception as e:
            report.errors[member.memberId] = f"drain failed: {e}"
        else:
            report.draining.append(member.memberId)

    def _converge(self, state: ClusterState, report: FleetReport) -> None:
        target = state.topology.worker_count
        active = state.members(MemberStatus.JOINING, MemberStatus.HEALTHY)
        if len(active) < target:
            self._provision(state, target - len(active), report)
            return
        # only healthy members are drained, oldest first; joining ones are left
        # alone and reconsidered on a later tick
        excess = len(active) - target
        for member in state.members(MemberStatus.HEALTHY)[:excess]:
            self._drain(state, member, report)

    def _promote_joining(self, state: ClusterState, report: FleetReport, now: float) -> None:
        timeout = self.config.joinTimeoutSeconds
        for member in state.members(MemberStatus.JOINING):
            if member.resourceId is None:
                member.transition(MemberStatus.GONE)
                state.fleet.pop(member.memberId)
                report.removed.append(member.memberId)
                continue
            try:
                ready = self.control_plane.node_ready(member.memberId)
            except Exception as e:
                report.errors[member.memberId] = f"health check failed: {e}"
                continue
            if ready:
                member.transition(MemberStatus.HEALTHY)
                member.unhealthySince = None
                report.promoted.append(member.memberId)
                continue
            if now - member.createdAt <= timeout:
                continue
            # never joined: straight to gone, after its replacement unless the fleet is over target
            if state.active_count <= state.topology.worker_count and not self._provision(state, 1, report):
                continue
            try:
                self.executor.deprovision(state, member)
            except Exception as e:
                report.errors[member.memberId] = f"deprovision failed: {e}"
                continue
            report.removed.append(member.memberId)
            warning = f"worker {member.memberId} did not join within {timeout:g}s and was replaced"
            log.warning("%s", warning)
            report.warnings.append(warning)

    def _replace_unhealthy(self, state: ClusterState, report: FleetReport, now: float) -> None:
        grace = self.config.healthGraceSeconds
        for member in state.members(MemberStatus.HEALTHY):
            if member.memberId in report.promoted:
                continue
            try:
                ready = self.control_plane.node_ready(member.memberId)
            except Exception as e:
                report.errors[member.memberId] = f"health check failed: {e}"
                continue
            if ready:
                member.unhealthySince = None
                continue
            if member.unhealthySince is None:
                member.unhealthySince = now
                log.info("worker %s reported unhealthy", member.memberId)
            if now - member.unhealthySince <= grace:
                continue
            # replacement first, so healthy + joining never drops below target
            if not self._provision(state, 1, report):
                continue
            self._drain(state, member, report)

    def _finish_draining(self, state: ClusterState, report: FleetReport, now: float) -> None:
        timeout = self.config.drainTimeoutSeconds
        for member in state.members(MemberStatus.DRAINING):
            try:
                member.activeAssignments = self.control_plane.active_assignments(member.memberId)
            except Exception as e:
                report.errors[member.memberId] = f"assignment query failed: {e}"
                member.activeAssignments = None
            timed_out = member.drainStartedAt is not None and now - member.drainStartedAt > timeout
            if member.activeAssignments != 0 and not timed_out:
                continue
            warning = DrainTimeout(member.memberId, member.activeAssignments) if member.activeAssignments != 0 else None
            try:
                self.executor.deprovision(state, member)
            except Exception as e:
                report.errors[member.memberId] = f"deprovision failed: {e}"
                continue
            report.removed.append(member.memberId)
            if warning is not None:
                log.warning("%s", warning)
                report.warnings.append(str(warning))
