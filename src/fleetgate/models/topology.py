# fleetgate/models/topology.py
from __future__ import annotations

import ipaddress
import re
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# Naming helpers
# ---------------------------------------------------------------------------
NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")
PORTS_RE = re.compile(r"^(\d{1,5})(?:-(\d{1,5}))?$")

EXTERNAL = "external"


def _name(v: str, what: str) -> str:
    if not NAME_RE.match(v):
        raise ValueError(f"{what} must include only letters, digits, hyphen (-) and underscore (_): {v!r}")
    return v


def _network(v: str, what: str) -> str:
    try:
        return str(ipaddress.ip_network(v, strict=True))
    except ValueError as e:
        raise ValueError(f"{what} is not a valid CIDR: {v!r} ({e})")


class Role(str, Enum):
    GATEWAY = "gateway"
    CONTROL_PLANE = "control-plane"
    WORKER = "worker"
    MONITORING = "monitoring"


class Placement(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


QUORUM_SIZES = (1, 3, 5, 7)


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------
class NetworkTopology(BaseModel):
    """Isolated network and its public/private partitions."""
    cidr: str
    publicCidr: str
    privateCidr: str
    # Source ranges a rule with source `external` is rendered to
    ingressCidrs: List[str] = Field(default_factory=lambda: ["0.0.0.0/0"])

    @field_validator("cidr", "publicCidr", "privateCidr")
    @classmethod
    def _v_cidr(cls, v: str, info) -> str:
        return _network(v, info.field_name)

    @field_validator("ingressCidrs")
    @classmethod
    def _v_ingress(cls, items: List[str]) -> List[str]:
        return [_network(v, "ingressCidrs") for v in items]

    @model_validator(mode="after")
    def _partitions(self):
        net = ipaddress.ip_network(self.cidr)
        pub = ipaddress.ip_network(self.publicCidr)
        priv = ipaddress.ip_network(self.privateCidr)
        if pub.version != net.version or priv.version != net.version:
            raise ValueError("publicCidr and privateCidr must use the same IP version as cidr")
        if not pub.subnet_of(net):
            raise ValueError(f"publicCidr {pub} is not inside cidr {net}")
        if not priv.subnet_of(net):
            raise ValueError(f"privateCidr {priv} is not inside cidr {net}")
        if pub.overlaps(priv):
            raise ValueError(f"publicCidr {pub} and privateCidr {priv} overlap")
        return self

    def partition_of(self, cidr: str) -> Optional[Placement]:
        """Return the partition fully containing `cidr`, if any."""
        n = ipaddress.ip_network(cidr, strict=False)
        for placement, part in ((Placement.PUBLIC, self.publicCidr), (Placement.PRIVATE, self.privateCidr)):
            p = ipaddress.ip_network(part)
            if n.version == p.version and n.subnet_of(p):
                return placement
        return None

    def is_external(self, cidr: str) -> bool:
        """True if traffic from `cidr` may originate outside the network boundary."""
        n = ipaddress.ip_network(cidr, strict=False)
        net = ipaddress.ip_network(self.cidr)
        return n.version != net.version or not n.subnet_of(net)


# ---------------------------------------------------------------------------
# Node groups
# ---------------------------------------------------------------------------
class ImageSpec(BaseModel):
    """Input to the external image builder."""
    baseImage: str
    packages: List[str] = Field(default_factory=list)
    hardening: Dict[str, bool] = Field(default_factory=dict)


class NodeGroup(BaseModel):
    role: Role
    count: int = Field(ge=0)
    placement: Placement = Placement.PRIVATE
    image: Optional[str] = None
    imageSpec: Optional[ImageSpec] = None
    instanceProfile: str

    @model_validator(mode="after")
    def _one_image(self):
        if not self.image and not self.imageSpec:
            raise ValueError(f"nodeGroup '{self.role.value}': set either 'image' or 'imageSpec'")
        if self.image and self.imageSpec:
            raise ValueError(f"nodeGroup '{self.role.value}': use only one: 'image' or 'imageSpec'")
        return self

    @model_validator(mode="after")
    def _role_rules(self):
        role = self.role
        if self.placement is Placement.PUBLIC and role is not Role.GATEWAY:
            raise ValueError(f"only the gateway may be placed in the public partition, not '{role.value}'")
        if role is Role.GATEWAY:
            if self.placement is not Placement.PUBLIC:
                raise ValueError("the gateway must be placed in the public partition")
            if self.count != 1:
                raise ValueError("the gateway group must have exactly one node")
        if role is Role.CONTROL_PLANE and self.count not in QUORUM_SIZES:
            raise ValueError(f"control-plane count must be one of {QUORUM_SIZES} for quorum, got {self.count}")
        if role is Role.MONITORING and self.count != 2:
            raise ValueError("the monitoring group is a pair (count 2)")
        return self

    def node_ids(self) -> List[str]:
        """Logical ids for fixed-size groups (workers are named by the fleet)."""
        return [f"{self.role.value}-{i}" for i in range(self.count)]


# ---------------------------------------------------------------------------
# Security policy
# ---------------------------------------------------------------------------
class AllowRule(BaseModel):
    """Allow `source` to reach `destination` on `ports` ("443" or "30000-32767")."""
    source: str
    destination: Role
    ports: str

    @field_validator("source")
    @classmethod
    def _v_source(cls, v: str) -> str:
        if v == EXTERNAL or v in {r.value for r in Role}:
            return v
        try:
            return str(ipaddress.ip_network(v, strict=False))
        except ValueError:
            raise ValueError(f"rule source must be a group role, '{EXTERNAL}' or a CIDR: {v!r}")

    @field_validator("ports", mode="before")
    @classmethod
    def _v_ports(cls, v) -> str:
        # YAML reads a bare `443` as an int
        if isinstance(v, int) and not isinstance(v, bool):
            v = str(v)
        if not isinstance(v, str):
            raise ValueError(f"ports must be a port number or 'N-M' range: {v!r}")
        v = v.strip()
        m = PORTS_RE.match(v)
        if not m:
            raise ValueError(f"ports must be 'N' or 'N-M': {v!r}")
        lo = int(m.group(1))
        hi = int(m.group(2) or lo)
        if not (1 <= lo <= hi <= 65535):
            raise ValueError(f"invalid port range: {v!r}")
        return v

    @property
    def port_range(self) -> Tuple[int, int]:
        lo, _, hi = self.ports.partition("-")
        return int(lo), int(hi or lo)

    def covers(self, port: int) -> bool:
        lo, hi = self.port_range
        return lo <= port <= hi

    @property
    def source_is_group(self) -> bool:
        return self.source in {r.value for r in Role}

    @property
    def key(self) -> str:
        src = self.source.replace("/", "_").replace(":", "_")
        return f"policy/{src}-{self.destination.value}-{self.ports}"


class SecurityPolicy(BaseModel):
    rules: List[AllowRule] = Field(default_factory=list)

    @field_validator("rules")
    @classmethod
    def _unique_rules(cls, items: List[AllowRule]) -> List[AllowRule]:
        seen = set()
        for it in items:
            if it.key in seen:
                raise ValueError(f"duplicated rule: {it.source} -> {it.destination.value}:{it.ports}")
            seen.add(it.key)
        return items


# ---------------------------------------------------------------------------
# Access layer
# ---------------------------------------------------------------------------
class MetricsEndpoint(BaseModel):
    """Stable scrape endpoint forwarded through the gateway."""
    service: Role = Role.MONITORING
    port: int = Field(default=9090, ge=1, le=65535)
    localPort: int = Field(default=19090, ge=1, le=65535)


class AccessConfig(BaseModel):
    metrics: MetricsEndpoint = Field(default_factory=MetricsEndpoint)
    tunnelBasePort: int = Field(default=20000, ge=1024, le=64000)


# ---------------------------------------------------------------------------
# Full topology
# ---------------------------------------------------------------------------
class ClusterTopology(BaseModel):
    """Desired cluster shape: one gateway, one control plane, one fleet, one monitoring pair."""
    name: str
    network: NetworkTopology
    nodeGroups: List[NodeGroup]
    securityPolicy: SecurityPolicy = Field(default_factory=SecurityPolicy)
    access: AccessConfig = Field(default_factory=AccessConfig)

    @field_validator("name")
    @classmethod
    def _v_name(cls, v: str) -> str:
        return _name(v, "cluster.name")

    @field_validator("nodeGroups")
    @classmethod
    def _one_group_per_role(cls, items: List[NodeGroup]) -> List[NodeGroup]:
        roles = [g.role for g in items]
        for role in Role:
            n = roles.count(role)
            if n == 0:
                raise ValueError(f"missing nodeGroup for role '{role.value}'")
            if n > 1:
                raise ValueError(f"duplicated nodeGroup for role '{role.value}'")
        return items

    def group(self, role: Role) -> NodeGroup:
        for g in self.nodeGroups:
            if g.role is role:
                return g
        raise KeyError(role)

    @property
    def worker_count(self) -> int:
        return self.group(Role.WORKER).count

    def with_worker_count(self, count: int) -> "ClusterTopology":
        groups = [
            g.model_copy(update={"count": count}) if g.role is Role.WORKER else g
            for g in self.nodeGroups
        ]
        return self.model_copy(update={"nodeGroups": groups})

    def with_images(self, images: Dict[Role, str]) -> "ClusterTopology":
        """Replace image specs by resolved image ids."""
        groups = [
            g.model_copy(update={"image": images[g.role], "imageSpec": None}) if g.role in images else g
            for g in self.nodeGroups
        ]
        return self.model_copy(update={"nodeGroups": groups})
