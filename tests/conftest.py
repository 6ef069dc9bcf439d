"""Shared fakes and fixtures: in-memory provisioner, fake control plane, manual clock."""
import itertools
from typing import Dict, List, Optional, Set, Tuple

import pytest
from pydantic import SecretStr

from fleetgate.config import ControllerConfig
from fleetgate.fleet import FleetController
from fleetgate.interfaces import JoinToken
from fleetgate.models.topology import ClusterTopology
from fleetgate.orchestrator import LifecycleOrchestrator
from fleetgate.state_store import MemoryKeyValueStore, StateStoreAdapter


class ManualClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    # used as the store's sleep: waiting moves time forward
    sleep = advance


class FakeProvisioner:
    """Records every call; logical ids in `fail` (or `fail_destroy`) raise."""

    def __init__(self):
        self.calls: List[Tuple[str, str]] = []
        self.credentials_seen: List[Dict[str, SecretStr]] = []
        self.fail: Set[str] = set()
        self.fail_destroy: Set[str] = set()
        self.live: Dict[str, str] = {}
        self.on_create = None
        self._ids = itertools.count(1)

    def _new_id(self, logical_id: str) -> str:
        rid = f"r-{next(self._ids)}"
        self.live[rid] = logical_id
        return rid

    def create(self, action, credentials):
        self.calls.append(("create", action.logicalId))
        self.credentials_seen.append(dict(credentials))
        if self.on_create is not None:
            self.on_create(action.logicalId)
        if action.logicalId in self.fail:
            raise RuntimeError(f"boom creating {action.logicalId}")
        return self._new_id(action.logicalId)

    def update(self, action, resource_id, credentials):
        self.calls.append(("update", action.logicalId))
        if action.logicalId in self.fail:
            raise RuntimeError(f"boom updating {action.logicalId}")
        return resource_id

    def destroy(self, resource_kind, logical_id, resource_id, credentials):
        self.calls.append(("destroy", logical_id))
        if logical_id in self.fail_destroy:
            raise RuntimeError(f"boom destroying {logical_id}")
        self.live.pop(resource_id, None)

    def ops(self, op: str) -> List[str]:
        return [lid for o, lid in self.calls if o == op]


class FakeControlPlane:
    def __init__(self):
        self.ready: Dict[str, Optional[bool]] = {}
        self.default_ready: Optional[bool] = True
        self.assignments: Dict[str, int] = {}
        self.drained: List[str] = []
        self.removed: List[str] = []
        self.tokens: List[str] = []

    def node_ready(self, node_name):
        return self.ready.get(node_name, self.default_ready)

    def active_assignments(self, node_name):
        return self.assignments.get(node_name, 0)

    def begin_drain(self, node_name):
        self.drained.append(node_name)

    def remove_node(self, node_name):
        self.removed.append(node_name)

    def issue_join_token(self, node_name):
        token_id = f"t{len(self.tokens):05d}"
        self.tokens.append(token_id)
        return JoinToken(tokenId=token_id, secret=SecretStr(f"{token_id}.supersecretvalue"))


class StaticSecrets:
    def __init__(self, **values):
        self.values = values

    def credentials(self):
        return {k: SecretStr(v) for k, v in self.values.items()}


# ---------------------------------------------------------------------------
# Topology
# ---------------------------------------------------------------------------
DEFAULT_RULES = [
    {"source": "external", "destination": "gateway", "ports": "22"},
    {"source": "gateway", "destination": "control-plane", "ports": "6443"},
    {"source": "gateway", "destination": "monitoring", "ports": "9090"},
    {"source": "control-plane", "destination": "worker", "ports": "10250"},
]


def topology_data(workers: int = 3, control_planes: int = 3, rules=None, worker_image: str = "img-k8s-1") -> dict:
    return {
        "name": "demo",
        "network": {
            "cidr": "10.0.0.0/16",
            "publicCidr": "10.0.0.0/24",
            "privateCidr": "10.0.128.0/17",
        },
        "nodeGroups": [
            {"role": "gateway", "count": 1, "placement": "public", "image": "img-gw", "instanceProfile": "small"},
            {"role": "control-plane", "count": control_planes, "image": "img-k8s-1", "instanceProfile": "medium"},
            {"role": "worker", "count": workers, "image": worker_image, "instanceProfile": "large"},
            {"role": "monitoring", "count": 2, "image": "img-mon", "instanceProfile": "small"},
        ],
        "securityPolicy": {"rules": DEFAULT_RULES if rules is None else rules},
    }


@pytest.fixture
def make_topology():
    def _make(**kwargs) -> ClusterTopology:
        return ClusterTopology.model_validate(topology_data(**kwargs))
    return _make


@pytest.fixture
def topology(make_topology):
    return make_topology()


# ---------------------------------------------------------------------------
# Controller wiring
# ---------------------------------------------------------------------------
@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


@pytest.fixture
def store(kv, clock):
    return StateStoreAdapter(kv, "demo", owner="tester", lock_timeout=5, clock=clock, sleep=clock.sleep)


@pytest.fixture
def provisioner():
    return FakeProvisioner()


@pytest.fixture
def control_plane():
    return FakeControlPlane()


@pytest.fixture
def config():
    return ControllerConfig(healthGraceSeconds=60, drainTimeoutSeconds=300, maxParallel=4)


@pytest.fixture
def orchestrator(store, provisioner, control_plane, config, clock):
    return LifecycleOrchestrator(store, provisioner, config=config, control_plane=control_plane, clock=clock)


@pytest.fixture
def fleet(store, provisioner, control_plane, config, clock):
    return FleetController(store, provisioner, control_plane, config=config, clock=clock)
