# fleetgate/reconciler.py
"""Diff a desired ClusterState against the observed one.

The plan is minimal (a resource whose recorded fingerprint matches its desired
spec produces no action) and ordered by rank, then create < update < destroy,
then logical id. Teardown reverses the rank order.
"""
from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, List, NamedTuple

from fleetgate.errors import ObservationError
from fleetgate.models.plan import Action, ActionKind, Rank, ReconcilePlan
from fleetgate.models.state import ClusterState, MemberStatus, worker_id
from fleetgate.models.topology import EXTERNAL, ClusterTopology, NodeGroup, Placement, Role

NODE = "node"

ROLE_RANK = {
    Role.GATEWAY: Rank.GATEWAY,
    Role.CONTROL_PLANE: Rank.CONTROL_PLANE,
    Role.WORKER: Rank.WORKER,
    Role.MONITORING: Rank.MONITORING,
}


class DesiredResource(NamedTuple):
    kind: str
    rank: Rank
    spec: Dict[str, Any]
    fingerprint: str


def fingerprint(spec: Dict[str, Any]) -> str:
    return hashlib.sha256(json.dumps(spec, sort_keys=True).encode()).hexdigest()[:16]


def _resource(kind: str, rank: Rank, spec: Dict[str, Any]) -> DesiredResource:
    return DesiredResource(kind, rank, spec, fingerprint(spec))


def node_spec(topology: ClusterTopology, group: NodeGroup) -> Dict[str, Any]:
    subnet = "network/subnet-public" if group.placement is Placement.PUBLIC else "network/subnet-private"
    return {
        "cluster": topology.name,
        "role": group.role.value,
        "image": group.image,
        "instanceProfile": group.instanceProfile,
        "placement": group.placement.value,
        "subnet": subnet,
    }


def desired_resources(topology: ClusterTopology) -> Dict[str, DesiredResource]:
    """Every non-worker resource the topology implies, keyed by logical id."""
    net = topology.network
    out: Dict[str, DesiredResource] = {
        "network/vpc": _resource("network", Rank.NETWORK, {"cluster": topology.name, "cidr": net.cidr}),
        "network/subnet-public": _resource(
            "subnet", Rank.NETWORK, {"cluster": topology.name, "cidr": net.publicCidr, "partition": "public"}
        ),
        "network/subnet-private": _resource(
            "subnet", Rank.NETWORK, {"cluster": topology.name, "cidr": net.privateCidr, "partition": "private"}
        ),
    }

    for rule in topology.securityPolicy.rules:
        lo, hi = rule.port_range
        sources = list(net.ingressCidrs) if rule.source == EXTERNAL else [rule.source]
        out[rule.key] = _resource("firewall-rule", Rank.SECURITY_POLICY, {
            "cluster": topology.name,
            "sources": sources,
            "sourceGroup": rule.source if rule.source_is_group else None,
            "destination": rule.destination.value,
            "portFrom": lo,
            "portTo": hi,
        })

    for group in topology.nodeGroups:
        if group.role is Role.WORKER:
            continue
        spec = node_spec(topology, group)
        for node_id in group.node_ids():
            out[node_id] = _resource(NODE, ROLE_RANK[group.role], dict(spec, nodeName=node_id))

    m = topology.access.metrics
    out["monitoring/metrics-endpoint"] = _resource("gateway-forward", Rank.MONITORING, {
        "cluster": topology.name,
        "localPort": m.localPort,
        "service": m.service.value,
        "port": m.port,
    })
    return out


def worker_action(topology: ClusterTopology, member_id: str, kind: ActionKind = ActionKind.CREATE, **flags) -> Action:
    group = topology.group(Role.WORKER)
    spec = node_spec(topology, group)
    return Action(
        kind=kind,
        rank=Rank.WORKER,
        logicalId=member_id,
        resourceKind=NODE,
        spec=dict(spec, nodeName=member_id),
        fingerprint=fingerprint(spec),
        **flags,
    )


def worker_fingerprint(topology: ClusterTopology) -> str:
    return fingerprint(node_spec(topology, topology.group(Role.WORKER)))


# ---------------------------------------------------------------------------
# Diff
# ---------------------------------------------------------------------------
def _teardown(observed: ClusterState) -> ReconcilePlan:
    actions = [
        Action(kind=ActionKind.DESTROY, rank=Rank(rec.rank), logicalId=lid, resourceKind=rec.kind,
               spec={"resourceId": rec.resourceId}, parallel=(rec.rank != Rank.CONTROL_PLANE))
        for lid, rec in observed.resources.items()
    ]
    actions += [
        Action(kind=ActionKind.DESTROY, rank=Rank.WORKER, logicalId=m.memberId, resourceKind=NODE,
               spec={"resourceId": m.resourceId})
        for m in observed.members()
    ]
    return ReconcilePlan.build(actions, teardown=True)


def _worker_actions(topology: ClusterTopology, observed: ClusterState) -> List[Action]:
    count = topology.worker_count
    fp = worker_fingerprint(topology)
    healthy = observed.members(MemberStatus.HEALTHY)
    active = observed.members(MemberStatus.JOINING, MemberStatus.HEALTHY)
    draining = observed.members(MemberStatus.DRAINING)
    actions: List[Action] = []

    # draining members still occupy their slot until they are gone
    missing = max(0, count - len(active) - len(draining))
    seq = observed.nextWorkerSeq
    for i in range(missing):
        actions.append(worker_action(topology, worker_id(seq + i)))
    seq += missing

    excess = len(active) - count
    to_drain = healthy[:max(0, excess)]
    for m in to_drain:
        actions.append(worker_action(topology, m.memberId, ActionKind.UPDATE, drain=True))

    drained = {m.memberId for m in to_drain}
    for m in active:
        if m.memberId not in drained and m.fingerprint != fp:
            # replacement ids are allocated at plan time, after the creates
            action = worker_action(topology, m.memberId, ActionKind.UPDATE, replace=True)
            actions.append(action.model_copy(update={"spec": dict(action.spec, replacement=worker_id(seq))}))
            seq += 1

    for m in draining:
        if m.activeAssignments == 0:
            actions.append(Action(kind=ActionKind.DESTROY, rank=Rank.WORKER, logicalId=m.memberId,
                                  resourceKind=NODE, spec={"resourceId": m.resourceId}))
    return actions


def reconcile(desired: ClusterState, observed: ClusterState) -> ReconcilePlan:
    """Compute the ordered actions that move `observed` to `desired`.

    `desired.topology` of None means full teardown.
    """
    if observed is None or not observed.complete:
        raise ObservationError("observed cluster state is missing or incomplete; refusing to plan")

    if desired.topology is None:
        return _teardown(observed)

    topology = desired.topology
    want = desired_resources(topology)
    actions: List[Action] = []

    for lid, res in want.items():
        rec = observed.resources.get(lid)
        serial = res.kind == NODE and res.rank == Rank.CONTROL_PLANE
        if rec is None:
            kind = ActionKind.CREATE
        elif rec.fingerprint != res.fingerprint:
            kind = ActionKind.UPDATE
        else:
            continue
        actions.append(Action(
            kind=kind,
            rank=res.rank,
            logicalId=lid,
            resourceKind=res.kind,
            spec=res.spec,
            fingerprint=res.fingerprint,
            replace=(kind is ActionKind.UPDATE and res.kind == NODE),
            parallel=not serial,
        ))

    for lid, rec in observed.resources.items():
        if lid not in want:
            actions.append(Action(
                kind=ActionKind.DESTROY,
                rank=Rank(rec.rank),
                logicalId=lid,
                resourceKind=rec.kind,
                spec={"resourceId": rec.resourceId},
                parallel=(rec.rank != Rank.CONTROL_PLANE),
            ))

    actions += _worker_actions(topology, observed)
    return ReconcilePlan.build(actions)
