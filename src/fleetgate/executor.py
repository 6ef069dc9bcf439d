# fleetgate/executor.py
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterable, List, NamedTuple, Optional, Tuple

from fleetgate.errors import FleetgateError, ProvisioningError
from fleetgate.interfaces import ControlPlane, Credentials, Provisioner, SecretProvider
from fleetgate.models.plan import Action, ActionKind, Rank
from fleetgate.models.state import ClusterState, FleetMember, MemberStatus, ResourceRecord

log = logging.getLogger(__name__)

REPLACED_SUFFIX = "~replaced"


class Outcome(NamedTuple):
    item: Any
    error: Optional[BaseException]


class _NotStarted(Exception):
    pass


def run_parallel(
    fn: Callable[[Any], Any],
    items: Iterable[Any],
    max_workers: int,
    cancelled: Optional[threading.Event] = None,
) -> Tuple[List[Outcome], List[Any]]:
    """Run `fn` over `items` concurrently and collect every failure.

    Returns the outcomes of started items (in input order) and the items that
    were never started because `cancelled` was set first.
    """
    items = list(items)
    if not items:
        return [], []

    def _guarded(item):
        if cancelled is not None and cancelled.is_set():
            raise _NotStarted()
        return fn(item)

    outcomes: List[Outcome] = []
    skipped: List[Any] = []
    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(items)))) as pool:
        futures = [(item, pool.submit(_guarded, item)) for item in items]
        for item, fut in futures:
            try:
                fut.result()
            except _NotStarted:
                skipped.append(item)
            except Exception as e:
                outcomes.append(Outcome(item, e))
            else:
                outcomes.append(Outcome(item, None))
    return outcomes, skipped


def _seq_of(member_id: str) -> int:
    try:
        return int(member_id.rsplit("-", 1)[1])
    except (IndexError, ValueError):
        return -1


class ActionExecutor:
    """Carry out single plan actions and record their effect in a ClusterState.

    Safe to call from several threads on the same state: provider calls run
    unlocked, state updates are serialized.
    """

    def __init__(
        self,
        provisioner: Provisioner,
        control_plane: Optional[ControlPlane] = None,
        secrets: Optional[SecretProvider] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.provisioner = provisioner
        self.control_plane = control_plane
        self.secrets = secrets
        self.clock = clock
        self._mutex = threading.Lock()

    def _credentials(self) -> Credentials:
        return dict(self.secrets.credentials()) if self.secrets else {}

    def execute(self, action: Action, state: ClusterState) -> None:
        try:
            if action.rank is Rank.WORKER:
                self._worker(action, state)
            else:
                self._resource(action, state)
        except FleetgateError:
            raise
        except Exception as e:
            raise ProvisioningError(f"{action.describe()} failed: {e}", action.key) from e

    # ------------------------------------------------------------------
    # Non-worker resources
    # ------------------------------------------------------------------
    def _record(self, state: ClusterState, action: Action, resource_id: str) -> None:
        with self._mutex:
            state.resources[action.logicalId] = ResourceRecord(
                resourceId=resource_id,
                kind=action.resourceKind,
                rank=int(action.rank),
                fingerprint=action.fingerprint,
            )

    def _resource(self, action: Action, state: ClusterState) -> None:
        creds = self._credentials()
        lid = action.logicalId

        if action.kind is ActionKind.CREATE:
            rid = self.provisioner.create(action, creds)
            self._record(state, action, rid)
            log.info("created %s %s (%s)", action.resourceKind, lid, rid)
            return

        if action.kind is ActionKind.DESTROY:
            rec = state.resources.get(lid)
            if rec is not None:
                self.provisioner.destroy(rec.kind, lid.removesuffix(REPLACED_SUFFIX), rec.resourceId, creds)
            with self._mutex:
                state.resources.pop(lid, None)
            log.info("destroyed %s %s", action.resourceKind, lid)
            return

        old = state.resources[lid]
        if not action.replace:
            rid = self.provisioner.update(action, old.resourceId, creds)
            self._record(state, action, rid)
            log.info("updated %s %s (%s)", action.resourceKind, lid, rid)
            return

        # replacement: the new resource exists before the old one is removed
        rid = self.provisioner.create(action, creds)
        self._record(state, action, rid)
        try:
            self.provisioner.destroy(old.kind, lid, old.resourceId, creds)
        except Exception as e:
            # keep the old resource tracked so the next reconcile destroys it
            with self._mutex:
                state.resources[lid + REPLACED_SUFFIX] = old
            raise ProvisioningError(
                f"replaced {lid} ({old.resourceId} -> {rid}) but could not remove the old resource: {e}",
                action.key,
            ) from e
        log.info("replaced %s %s (%s -> %s)", action.resourceKind, lid, old.resourceId, rid)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------
    def _worker(self, action: Action, state: ClusterState) -> None:
        if action.kind is ActionKind.CREATE:
            self.provision_worker(state, action)
            return

        member = state.fleet.get(action.logicalId)
        if member is None:
            log.warning("fleet member %s is not recorded; nothing to do", action.logicalId)
            return

        if action.kind is ActionKind.DESTROY:
            self.deprovision(state, member)
        elif action.drain:
            self.start_drain(state, member)
        elif action.replace:
            new_id = action.spec.get("replacement")
            if new_id is None:
                with self._mutex:
                    new_id = state.allocate_worker_id()
            spec = {k: v for k, v in action.spec.items() if k != "replacement"}
            replacement = action.model_copy(update={
                "kind": ActionKind.CREATE,
                "logicalId": new_id,
                "spec": dict(spec, nodeName=new_id),
                "replace": False,
            })
            self.provision_worker(state, replacement)
            if member.status is MemberStatus.JOINING:
                self.deprovision(state, member)
            else:
                self.start_drain(state, member)

    def provision_worker(self, state: ClusterState, action: Action) -> FleetMember:
        member_id = action.logicalId
        member = FleetMember(
            memberId=member_id,
            status=MemberStatus.JOINING,
            fingerprint=action.fingerprint,
            createdAt=self.clock(),
        )
        with self._mutex:
            state.nextWorkerSeq = max(state.nextWorkerSeq, _seq_of(member_id) + 1)
            state.fleet[member_id] = member

        try:
            creds = self._credentials()
            if self.control_plane is not None:
                token = self.control_plane.issue_join_token(member_id)
                member.membershipToken = token.tokenId
                creds["join_token"] = token.secret
            rid = self.provisioner.create(action, creds)
        except Exception as e:
            with self._mutex:
                member.transition(MemberStatus.GONE)
                state.fleet.pop(member_id, None)
            raise ProvisioningError(f"provisioning worker {member_id} failed: {e}", action.key) from e

        with self._mutex:
            member.resourceId = rid
        log.info("provisioned worker %s (%s), joining", member_id, rid)
        return member

    def start_drain(self, state: ClusterState, member: FleetMember) -> None:
        if self.control_plane is not None:
            self.control_plane.begin_drain(member.memberId)
        with self._mutex:
            member.transition(MemberStatus.DRAINING)
            member.drainStartedAt = self.clock()
            member.activeAssignments = None
        log.info("draining worker %s", member.memberId)

    def deprovision(self, state: ClusterState, member: FleetMember) -> None:
        creds = self._credentials()
        if self.control_plane is not None:
            self.control_plane.remove_node(member.memberId)
        if member.resourceId:
            self.provisioner.destroy("node", member.memberId, member.resourceId, creds)
        with self._mutex:
            member.status = MemberStatus.GONE
            state.fleet.pop(member.memberId, None)
        log.info("worker %s is gone", member.memberId)
