# fleetgate/models/plan.py
from __future__ import annotations

import hashlib
import json
from enum import Enum, IntEnum
from itertools import groupby
from typing import Any, Dict, List, Tuple

from pydantic import BaseModel, ConfigDict, Field


class Rank(IntEnum):
    """Dependency order used to sequence provisioning (reversed on teardown)."""
    NETWORK = 0
    SECURITY_POLICY = 1
    GATEWAY = 2
    CONTROL_PLANE = 3
    WORKER = 4
    MONITORING = 5

    @property
    def label(self) -> str:
        return self.name.lower().replace("_", "-")


class ActionKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DESTROY = "destroy"


KIND_ORDER = {ActionKind.CREATE: 0, ActionKind.UPDATE: 1, ActionKind.DESTROY: 2}


class Action(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ActionKind
    rank: Rank
    logicalId: str
    resourceKind: str
    spec: Dict[str, Any] = Field(default_factory=dict)
    fingerprint: str = ""
    replace: bool = False     # immutable resource: create the new one, then destroy the old
    drain: bool = False       # worker scale-down: start draining instead of destroying
    parallel: bool = True

    @property
    def key(self) -> str:
        return f"{self.kind.value}:{self.logicalId}"

    def describe(self) -> str:
        extra = " (replace)" if self.replace else " (drain)" if self.drain else ""
        return f"{self.kind.value} {self.resourceKind} {self.logicalId}{extra}"


def action_sort_key(action: Action, teardown: bool = False) -> Tuple[int, int, str]:
    rank = -int(action.rank) if teardown else int(action.rank)
    return (rank, KIND_ORDER[action.kind], action.logicalId)


class ReconcilePlan(BaseModel):
    """Ordered actions for one reconciliation cycle. Never persisted."""
    model_config = ConfigDict(frozen=True)

    actions: Tuple[Action, ...] = ()
    teardown: bool = False

    @classmethod
    def build(cls, actions: List[Action], teardown: bool = False) -> "ReconcilePlan":
        ordered = sorted(actions, key=lambda a: action_sort_key(a, teardown))
        return cls(actions=tuple(ordered), teardown=teardown)

    @property
    def is_empty(self) -> bool:
        return not self.actions

    def by_rank(self) -> List[Tuple[Rank, List[Action]]]:
        """Group consecutive actions by rank, preserving plan order."""
        return [(rank, list(items)) for rank, items in groupby(self.actions, key=lambda a: a.rank)]

    def ranks(self) -> List[Rank]:
        return [rank for rank, _ in self.by_rank()]

    def of_kind(self, kind: ActionKind) -> List[Action]:
        return [a for a in self.actions if a.kind is kind]

    def digest(self) -> str:
        payload = [(a.key, a.fingerprint, a.replace, a.drain) for a in self.actions]
        return hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest()


class RunReport(BaseModel):
    """What an apply/destroy did: succeeded, failed and never-attempted actions."""
    operation: str
    status: str = "noop"            # succeeded | failed | cancelled | noop
    succeeded: List[str] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict)
    notAttempted: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status in ("succeeded", "noop")
