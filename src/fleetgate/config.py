# fleetgate/config.py
from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from fleetgate.errors import InputError
from fleetgate.models.topology import ClusterTopology

ENV_STATE_DIR = "FLEETGATE_STATE_DIR"
ENV_KUBECONFIG = "FLEETGATE_KUBECONFIG"


class VaultConfig(BaseModel):
    """KV v2 secret holding the node-bootstrap credentials."""
    addr: str
    path: str
    mountPoint: str = "secret"
    tokenEnv: str = "VAULT_TOKEN"


class ControllerConfig(BaseModel):
    """Knobs of the controller itself (not of the cluster it manages)."""
    stateDir: str = "./.fleetgate/state"
    lockTimeoutSeconds: float = Field(default=30.0, gt=0)
    lockLeaseSeconds: float = Field(default=600.0, gt=0)
    healthGraceSeconds: float = Field(default=120.0, ge=0)
    # a worker not Ready this long after provisioning is replaced
    joinTimeoutSeconds: float = Field(default=900.0, gt=0)
    drainTimeoutSeconds: float = Field(default=600.0, gt=0)
    tickIntervalSeconds: float = Field(default=30.0, gt=0)
    maxParallel: int = Field(default=8, ge=1)

    # resource kind (network, subnet, firewall-rule, node, gateway-forward) -> Terraform module path
    terraformModules: Dict[str, str] = Field(default_factory=dict)
    terraformWorkdir: str = "./.fleetgate/tf"

    kubeconfig: Optional[str] = None
    # Packer template used for node groups declaring an imageSpec
    packerTemplate: Optional[str] = None
    # credential name -> environment variable holding it
    secretEnv: Dict[str, str] = Field(default_factory=dict)
    # takes precedence over secretEnv when set
    vault: Optional[VaultConfig] = None

    def with_env(self) -> "ControllerConfig":
        """Apply FLEETGATE_* environment overrides."""
        update = {}
        if os.environ.get(ENV_STATE_DIR):
            update["stateDir"] = os.environ[ENV_STATE_DIR]
        if os.environ.get(ENV_KUBECONFIG):
            update["kubeconfig"] = os.environ[ENV_KUBECONFIG]
        return self.model_copy(update=update) if update else self


class FleetgateDocument(BaseModel):
    cluster: ClusterTopology
    controller: ControllerConfig = Field(default_factory=ControllerConfig)


def parse_document(data: dict) -> FleetgateDocument:
    try:
        doc = FleetgateDocument.model_validate(data)
    except ValidationError as e:
        raise InputError(f"invalid topology document: {e}") from e
    doc.controller = doc.controller.with_env()
    return doc


def load_document(path: Path) -> FleetgateDocument:
    """Read and validate a topology YAML file."""
    try:
        data = yaml.safe_load(Path(path).read_text())
    except (OSError, yaml.YAMLError) as e:
        raise InputError(f"cannot read {path}: {e}") from e
    if not isinstance(data, dict):
        raise InputError(f"{path}: expected a mapping with a 'cluster' key")
    return parse_document(data)
