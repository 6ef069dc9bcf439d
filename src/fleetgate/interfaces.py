# fleetgate/interfaces.py
"""Contracts of the external collaborators the controller drives."""
from __future__ import annotations

from typing import Dict, Optional, Protocol

from pydantic import BaseModel, SecretStr

from fleetgate.models.plan import Action
from fleetgate.models.topology import ImageSpec

Credentials = Dict[str, SecretStr]


class JoinToken(BaseModel):
    """Cluster-membership token. Only `tokenId` is ever persisted."""
    tokenId: str
    secret: SecretStr


class Provisioner(Protocol):
    def create(self, action: Action, credentials: Credentials) -> str:
        """Create the resource and return its provider resource id."""

    def update(self, action: Action, resource_id: str, credentials: Credentials) -> str:
        """Update a mutable resource in place and return its (possibly new) id."""

    def destroy(self, resource_kind: str, logical_id: str, resource_id: str, credentials: Credentials) -> None:
        """Delete the resource. Deleting an already missing resource is not an error."""


class ControlPlane(Protocol):
    def node_ready(self, node_name: str) -> Optional[bool]:
        """True/False from the node's Ready condition, None if not registered yet."""

    def active_assignments(self, node_name: str) -> int:
        """Number of relocatable workloads still scheduled on the node."""

    def begin_drain(self, node_name: str) -> None:
        """Cordon the node and start evicting its workloads."""

    def remove_node(self, node_name: str) -> None:
        """Remove the node object from cluster membership."""

    def issue_join_token(self, node_name: str) -> JoinToken:
        """Create a bootstrap token the new node uses to join."""


class ImageBuilder(Protocol):
    def build(self, spec: ImageSpec, name: str) -> str:
        """Build an image and return its opaque identifier."""


class SecretProvider(Protocol):
    def credentials(self) -> Credentials:
        """Credentials used for node bootstrap. Never logged or persisted."""
