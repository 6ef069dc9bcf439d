# fleetgate/models/state.py
from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from fleetgate.models.topology import ClusterTopology


class MemberStatus(str, Enum):
    JOINING = "joining"
    HEALTHY = "healthy"
    DRAINING = "draining"
    GONE = "gone"


# Allowed transitions of the fleet member state machine
TRANSITIONS = {
    MemberStatus.JOINING: {MemberStatus.HEALTHY, MemberStatus.GONE},
    MemberStatus.HEALTHY: {MemberStatus.DRAINING},
    MemberStatus.DRAINING: {MemberStatus.GONE},
    MemberStatus.GONE: set(),
}


class ResourceRecord(BaseModel):
    """A provisioned resource as last recorded by the controller."""
    resourceId: str
    kind: str
    rank: int
    fingerprint: str


class FleetMember(BaseModel):
    memberId: str
    resourceId: Optional[str] = None
    status: MemberStatus = MemberStatus.JOINING
    membershipToken: Optional[str] = None   # bootstrap token id only, never the secret
    fingerprint: str = ""
    createdAt: float = 0.0
    unhealthySince: Optional[float] = None
    drainStartedAt: Optional[float] = None
    activeAssignments: Optional[int] = None

    @property
    def active(self) -> bool:
        return self.status in (MemberStatus.JOINING, MemberStatus.HEALTHY)

    def transition(self, status: MemberStatus) -> None:
        if status not in TRANSITIONS[self.status]:
            raise ValueError(f"{self.memberId}: illegal transition {self.status.value} -> {status.value}")
        self.status = status


class RunRecord(BaseModel):
    """Outcome of the last apply/destroy/scale, kept for operators and resumption."""
    operation: str
    status: str
    startedAt: float
    finishedAt: Optional[float] = None
    succeeded: List[str] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict)
    notAttempted: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class ClusterState(BaseModel):
    """Last-applied topology plus what was actually provisioned for it.

    Only the state store adapter persists this; every mutation of the stored
    copy happens while the cluster lock is held.
    """
    name: str
    topology: Optional[ClusterTopology] = None
    resources: Dict[str, ResourceRecord] = Field(default_factory=dict)
    fleet: Dict[str, FleetMember] = Field(default_factory=dict)
    nextWorkerSeq: int = 0
    revision: int = 0
    # false when part of the observation could not be read; never persisted
    complete: bool = Field(default=True, exclude=True)
    lastRun: Optional[RunRecord] = None

    @classmethod
    def desired(cls, topology: ClusterTopology) -> "ClusterState":
        return cls(name=topology.name, topology=topology)

    @classmethod
    def empty(cls, name: str) -> "ClusterState":
        return cls(name=name)

    # ------------------------------------------------------------------
    # Fleet views
    # ------------------------------------------------------------------
    def members(self, *statuses: MemberStatus) -> List[FleetMember]:
        """Members with the given statuses, oldest first."""
        found = [m for m in self.fleet.values() if not statuses or m.status in statuses]
        return sorted(found, key=lambda m: (m.createdAt, m.memberId))

    @property
    def active_count(self) -> int:
        return len(self.members(MemberStatus.JOINING, MemberStatus.HEALTHY))

    def allocate_worker_id(self) -> str:
        member_id = worker_id(self.nextWorkerSeq)
        self.nextWorkerSeq += 1
        return member_id


def worker_id(seq: int) -> str:
    return f"worker-{seq:04d}"
