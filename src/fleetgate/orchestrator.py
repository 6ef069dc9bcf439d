# fleetgate/orchestrator.py
"""apply/destroy sequencing: lock, observe, plan, execute by rank, persist.

A failed action halts the ranks after it. Completed actions are never rolled
back; their effect is persisted so a retry plans only what is left.
"""
from __future__ import annotations

import hashlib
import logging
import threading
import time
from itertools import groupby
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel

from fleetgate.config import ControllerConfig
from fleetgate.errors import FleetgateError, InputError
from fleetgate.executor import ActionExecutor, run_parallel
from fleetgate.gateway import check_metrics_reachable, validate_policy
from fleetgate.interfaces import ControlPlane, ImageBuilder, Provisioner, SecretProvider
from fleetgate.models.plan import KIND_ORDER, Action, ReconcilePlan, RunReport
from fleetgate.models.state import ClusterState, MemberStatus, RunRecord
from fleetgate.models.topology import ClusterTopology, Role
from fleetgate.reconciler import reconcile
from fleetgate.state_store import StateStoreAdapter

log = logging.getLogger(__name__)


class DestroyPlan(BaseModel):
    """First phase of a teardown: what would be destroyed, and the token to confirm it."""
    plan: ReconcilePlan
    confirmToken: str
    revision: int


def confirm_token(name: str, revision: int, plan: ReconcilePlan) -> str:
    return hashlib.sha256(f"{name}:{revision}:{plan.digest()}".encode()).hexdigest()[:12]


class LifecycleOrchestrator:
    def __init__(
        self,
        store: StateStoreAdapter,
        provisioner: Provisioner,
        config: Optional[ControllerConfig] = None,
        image_builder: Optional[ImageBuilder] = None,
        control_plane: Optional[ControlPlane] = None,
        secrets: Optional[SecretProvider] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.config = config or ControllerConfig()
        self.image_builder = image_builder
        self.control_plane = control_plane
        self.clock = clock
        self.executor = ActionExecutor(provisioner, control_plane, secrets, clock)
        self._cancel = threading.Event()
        self._images: Dict[str, str] = {}
        self._started = 0.0

    # ------------------------------------------------------------------
    # Input checks (no mutation happens before these pass)
    # ------------------------------------------------------------------
    def prepare(self, topology: ClusterTopology) -> ClusterTopology:
        """Validate the topology and resolve image specs to image ids."""
        if topology.name != self.store.cluster_name:
            raise InputError(
                f"topology is for cluster {topology.name!r}, controller manages {self.store.cluster_name!r}"
            )
        validate_policy(topology)
        check_metrics_reachable(topology)

        images: Dict[Role, str] = {}
        for group in topology.nodeGroups:
            if group.imageSpec is None:
                continue
            if self.image_builder is None:
                raise InputError(f"nodeGroup '{group.role.value}' declares an imageSpec but no image builder is configured")
            key = group.imageSpec.model_dump_json()
            if key not in self._images:
                log.info("building image for %s", group.role.value)
                self._images[key] = self.image_builder.build(group.imageSpec, f"{topology.name}-{group.role.value}")
            images[group.role] = self._images[key]
        return topology.with_images(images) if images else topology

    def _observe(self) -> ClusterState:
        state = self.store.load() or ClusterState.empty(self.store.cluster_name)
        if self.control_plane is not None:
            for member in state.members(MemberStatus.DRAINING):
                try:
                    member.activeAssignments = self.control_plane.active_assignments(member.memberId)
                except Exception as e:
                    log.warning("cannot query assignments of %s: %s", member.memberId, e)
                    state.complete = False
        return state

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------
    def cancel(self) -> None:
        """Stop the running apply/destroy before its next action."""
        self._cancel.set()

    def plan(self, topology: ClusterTopology) -> ReconcilePlan:
        desired = self.prepare(topology)
        return reconcile(ClusterState.desired(desired), self._observe())

    def apply(self, topology: ClusterTopology) -> RunReport:
        desired = self.prepare(topology)
        self._cancel.clear()
        with self.store.lock():
            state = self._observe()
            plan = reconcile(ClusterState.desired(desired), state)
            log.info("apply %s: %d action(s) planned", desired.name, len(plan.actions))
            if plan.is_empty and state.topology == desired:
                return RunReport(operation="apply", status="noop")

            report = self._execute("apply", plan, state)
            if report.status in ("succeeded", "noop"):
                state.topology = desired
            self._finish(state, report)
            self.store.save(state)
        return report

    def plan_destroy(self) -> DestroyPlan:
        state = self._observe()
        plan = reconcile(ClusterState.empty(state.name), state)
        return DestroyPlan(plan=plan, confirmToken=confirm_token(state.name, state.revision, plan), revision=state.revision)

    def destroy(self, token: str) -> RunReport:
        self._cancel.clear()
        with self.store.lock():
            state = self._observe()
            plan = reconcile(ClusterState.empty(state.name), state)
            expected = confirm_token(state.name, state.revision, plan)
            if token != expected:
                raise InputError("confirmation token does not match the current teardown plan; run the plan again")
            if plan.is_empty and state.revision == 0:
                return RunReport(operation="destroy", status="noop")

            report = self._execute("destroy", plan, state)
            if report.ok:
                self.store.delete()
                log.info("cluster %s destroyed", state.name)
            else:
                self._finish(state, report)
                self.store.save(state)
        return report

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    def _finish(self, state: ClusterState, report: RunReport) -> None:
        state.lastRun = RunRecord(
            operation=report.operation,
            status=report.status,
            startedAt=self._started,
            finishedAt=self.clock(),
            succeeded=list(report.succeeded),
            failed=dict(report.failed),
            notAttempted=list(report.notAttempted),
            warnings=list(report.warnings),
        )

    def _run_action(self, state: ClusterState, action: Action, report: RunReport) -> None:
        try:
            self.executor.execute(action, state)
        except FleetgateError as e:
            log.error("%s failed: %s", action.describe(), e)
            report.failed[action.key] = str(e)
        else:
            report.succeeded.append(action.key)

    def _run_batch(self, state: ClusterState, actions: List[Action], report: RunReport) -> List[Action]:
        """Run actions of one kind; return the ones never started."""
        skipped: List[Action] = []
        serial = [a for a in actions if not a.parallel]
        parallel = [a for a in actions if a.parallel]

        outcomes, not_started = run_parallel(
            lambda a: self.executor.execute(a, state), parallel, self.config.maxParallel, self._cancel
        )
        for outcome in outcomes:
            if outcome.error is None:
                report.succeeded.append(outcome.item.key)
            else:
                log.error("%s failed: %s", outcome.item.describe(), outcome.error)
                report.failed[outcome.item.key] = str(outcome.error)
        skipped.extend(not_started)

        for action in serial:
            if self._cancel.is_set() or report.failed:
                skipped.append(action)
                continue
            self._run_action(state, action, report)
        return skipped

    def _run_rank(self, state: ClusterState, actions: List[Action], report: RunReport) -> List[Action]:
        """Run one rank, creates before updates before destroys.

        Returns the actions never started because of a failure or cancellation.
        """
        batches = [list(items) for _, items in groupby(actions, key=lambda a: KIND_ORDER[a.kind])]
        skipped: List[Action] = []
        for i, batch in enumerate(batches):
            skipped += self._run_batch(state, batch, report)
            if report.failed or skipped or self._cancel.is_set():
                skipped += [a for rest in batches[i + 1:] for a in rest]
                break
        return skipped

    def _execute(self, operation: str, plan: ReconcilePlan, state: ClusterState) -> RunReport:
        self._started = self.clock()
        report = RunReport(operation=operation)
        if plan.is_empty:
            report.status = "noop"
            return report

        ranks = plan.by_rank()
        for i, (rank, actions) in enumerate(ranks):
            if self._cancel.is_set():
                report.notAttempted += [a.key for _, rest in ranks[i:] for a in rest]
                break
            log.info("%s: rank %s (%d action(s))", operation, rank.label, len(actions))
            skipped = self._run_rank(state, actions, report)
            report.notAttempted += [a.key for a in skipped]
            # progress is durable after every rank
            self.store.save(state)
            if report.failed or skipped:
                report.notAttempted += [a.key for _, rest in ranks[i + 1:] for a in rest]
                break

        if report.failed:
            report.status = "failed"
        elif self._cancel.is_set() or report.notAttempted:
            report.status = "cancelled"
        else:
            report.status = "succeeded"
        return report
