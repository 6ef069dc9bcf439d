import shutil
from dataclasses import dataclass
from typing import List


@dataclass
class Tool:
    name: str
    description: str
    needed_for: str


REQUIRED_TOOLS: List[Tool] = [
    Tool(
        name="terraform",
        description="Terraform infrastructure-as-code CLI",
        needed_for="provisioning every resource (cluster apply/destroy, fleet scale/tick)",
    ),
    Tool(
        name="kubectl",
        description="Kubernetes command-line tool",
        needed_for="worker join tokens, health checks and drains (fleet)",
    ),
    Tool(
        name="packer",
        description="HashiCorp Packer image builder",
        needed_for="node groups declaring an imageSpec",
    ),
    Tool(
        name="ssh",
        description="OpenSSH client",
        needed_for="opening access tunnels through the gateway",
    ),
]


def is_installed(name: str) -> bool:
    return shutil.which(name) is not None


def get_missing_tools() -> List[Tool]:
    return [t for t in REQUIRED_TOOLS if not is_installed(t.name)]
