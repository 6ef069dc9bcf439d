# fleetgate/gateway.py
"""Single-entry-point access policy.

Only the gateway group is reachable from outside the network; every other
group is reachable only from the gateway or from inside the private partition.
Policies that break this are rejected, never rewritten.
"""
from __future__ import annotations

from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from fleetgate.errors import InputError, PolicyViolation
from fleetgate.models.topology import EXTERNAL, AllowRule, ClusterTopology, Placement, Role

GATEWAY_HOP = Role.GATEWAY.value


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def rule_violation(topology: ClusterTopology, rule: AllowRule) -> Optional[str]:
    """Return why `rule` breaks the single-entry-point invariant, or None."""
    if rule.destination is Role.GATEWAY:
        return None
    where = f"{rule.source} -> {rule.destination.value}:{rule.ports}"
    if rule.source == EXTERNAL:
        return f"{where}: external ingress is only allowed to the gateway"
    if rule.source_is_group:
        src = topology.group(Role(rule.source))
        if src.role is Role.GATEWAY or src.placement is Placement.PRIVATE:
            return None
        return f"{where}: source group '{src.role.value}' is not in the private partition"
    net = topology.network
    if net.is_external(rule.source):
        return f"{where}: source {rule.source} is outside the network boundary"
    if net.partition_of(rule.source) is not Placement.PRIVATE:
        return f"{where}: source {rule.source} is not inside the private partition"
    return None


def validate_policy(topology: ClusterTopology) -> None:
    """Raise PolicyViolation listing every offending rule."""
    violations = []
    for rule in topology.securityPolicy.rules:
        why = rule_violation(topology, rule)
        if why:
            violations.append(why)
    if violations:
        raise PolicyViolation(violations)


def check_metrics_reachable(topology: ClusterTopology) -> None:
    """The metrics endpoint must stay reachable through the gateway."""
    m = topology.access.metrics
    if m.service is Role.GATEWAY:
        raise InputError("metrics endpoint must be an internal service, not the gateway itself")
    for rule in topology.securityPolicy.rules:
        if rule.source == GATEWAY_HOP and rule.destination is m.service and rule.covers(m.port):
            return
    raise InputError(
        f"metrics endpoint {m.service.value}:{m.port} is not reachable through the gateway "
        f"(add a rule gateway -> {m.service.value}:{m.port})"
    )


# ---------------------------------------------------------------------------
# Tunnel routes
# ---------------------------------------------------------------------------
class TunnelSegment(BaseModel):
    """A block of gateway local ports forwarding to a contiguous port range."""
    model_config = ConfigDict(frozen=True)

    group: Role
    portLo: int
    portHi: int
    localLo: int

    def local_port(self, port: int) -> int:
        return self.localLo + (port - self.portLo)


class TunnelRoute(BaseModel):
    model_config = ConfigDict(frozen=True)

    service: str
    group: Role
    port: int
    localPort: int

    @property
    def hops(self) -> Tuple[str, str, str]:
        return (EXTERNAL, f"{GATEWAY_HOP}:{self.localPort}", f"{self.service}:{self.port}")

    def __str__(self) -> str:
        return " -> ".join(self.hops)

    def ssh_command(self, gateway_address: str, user: str, target_address: Optional[str] = None) -> List[str]:
        """`ssh -L` invocation the access tooling runs to open this tunnel."""
        target = target_address or self.service
        return [
            "ssh", "-N",
            "-o", "ExitOnForwardFailure=yes",
            "-L", f"{self.localPort}:{target}:{self.port}",
            f"{user}@{gateway_address}",
        ]


def tunnel_table(topology: ClusterTopology) -> List[TunnelSegment]:
    """All gateway-forwardable (group, port range) blocks with their local ports.

    The metrics endpoint keeps its configured local port. Other blocks are laid
    out from `tunnelBasePort` upwards, single ports first, in sorted order.
    """
    m = topology.access.metrics
    singles = set()
    ranges = set()
    for rule in topology.securityPolicy.rules:
        if rule.source != GATEWAY_HOP or rule.destination is Role.GATEWAY:
            continue
        lo, hi = rule.port_range
        (singles if lo == hi else ranges).add((rule.destination.value, lo, hi))

    segments = []
    if any(g == m.service.value and lo <= m.port <= hi for g, lo, hi in singles | ranges):
        segments.append(TunnelSegment(group=m.service, portLo=m.port, portHi=m.port, localLo=m.localPort))
    next_local = topology.access.tunnelBasePort
    for group, lo, hi in sorted(singles) + sorted(ranges):
        if (Role(group), lo, hi) == (m.service, m.port, m.port):
            continue
        size = hi - lo + 1
        if next_local <= m.localPort < next_local + size:
            next_local = m.localPort + 1
        if next_local + size - 1 > 65535:
            raise InputError(f"no local ports left to forward {group}:{lo}-{hi} (tunnelBasePort too high)")
        segments.append(TunnelSegment(group=Role(group), portLo=lo, portHi=hi, localLo=next_local))
        next_local += size
    return segments


def service_group(service: str) -> Role:
    """Resolve a group role or a node id ('control-plane-1', 'worker-0003') to its group."""
    for role in Role:
        if service == role.value:
            return role
    # longest match first: 'control-plane-0' must not resolve through a shorter prefix
    for role in sorted(Role, key=lambda r: len(r.value), reverse=True):
        if service.startswith(role.value + "-"):
            return role
    raise InputError(f"unknown service {service!r}: expected a group role or a node id")


def compute_tunnel_route(topology: ClusterTopology, service: str, port: int) -> TunnelRoute:
    """Forwarding path external -> gateway:localPort -> service:port.

    Pure function of the topology. Raises InputError when the policy has no
    gateway rule covering the service and port.
    """
    group = service_group(service)
    if group is Role.GATEWAY:
        raise InputError("the gateway is reached directly, not through a tunnel")
    for seg in tunnel_table(topology):
        if seg.group is group and seg.portLo <= port <= seg.portHi:
            return TunnelRoute(service=service, group=group, port=port, localPort=seg.local_port(port))
    raise InputError(f"no gateway route to {service}:{port}: the security policy does not allow it")
