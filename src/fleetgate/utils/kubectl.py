import json
import secrets
import shlex
import string
import subprocess
import time
from pathlib import Path
from typing import List, Optional

from pydantic import SecretStr
from rich import print as rprint

from fleetgate.errors import ObservationError
from fleetgate.interfaces import JoinToken

TOKEN_ALPHABET = string.ascii_lowercase + string.digits


class Kubectl:
    """Thin wrapper around kubectl to run simple queries with a given kubeconfig."""

    def __init__(self, kubeconfig: Path):
        self.kubeconfig = Path(kubeconfig).expanduser()

    # ------------------------------------------------------------------
    # Low-level runners
    # ------------------------------------------------------------------
    def _cmd(self, args: List[str]) -> List[str]:
        return ["kubectl", "--kubeconfig", str(self.kubeconfig), *args]

    def _run(self, args: List[str], stdin: Optional[str] = None) -> int:
        """Run kubectl and stream output to stdout (human use)."""
        cmd = self._cmd(args)
        rprint(f"[dim]$ {' '.join(shlex.quote(c) for c in cmd)}[/]")
        proc = subprocess.run(cmd, input=stdin, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True)
        if proc.stdout:
            print(proc.stdout, end="")
        return proc.returncode

    def _run_json(self, args: List[str]) -> Optional[dict]:
        """Run kubectl expecting JSON output; None if the object does not exist."""
        cmd = self._cmd(args)
        proc = subprocess.run(cmd, capture_output=True, text=True)
        if proc.returncode != 0:
            if "NotFound" in proc.stderr:
                return None
            raise ObservationError(f"kubectl {' '.join(args[:2])} failed: {proc.stderr.strip()}")
        try:
            return json.loads(proc.stdout)
        except json.JSONDecodeError as e:
            raise ObservationError(f"kubectl returned invalid JSON: {e}") from e

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def node(self, name: str) -> Optional[dict]:
        return self._run_json(["get", "node", name, "-o", "json"])

    def pods_on_node(self, name: str) -> List[dict]:
        data = self._run_json([
            "get", "pods", "--all-namespaces",
            "--field-selector", f"spec.nodeName={name},status.phase!=Succeeded,status.phase!=Failed",
            "-o", "json",
        ])
        return data.get("items", []) if data else []

    # ------------------------------------------------------------------
    # Parsers
    # ------------------------------------------------------------------
    @staticmethod
    def node_ready(node_obj: dict) -> bool:
        for c in node_obj.get("status", {}).get("conditions", []):
            if c.get("type") == "Ready":
                return c.get("status") == "True"
        return False

    @staticmethod
    def relocatable(pod_obj: dict) -> bool:
        """DaemonSet pods and static (mirror) pods stay with their node."""
        meta = pod_obj.get("metadata", {})
        if "kubernetes.io/config.mirror" in meta.get("annotations", {}):
            return False
        return not any(o.get("kind") == "DaemonSet" for o in meta.get("ownerReferences", []))


BOOTSTRAP_TOKEN_SECRET = """\
apiVersion: v1
kind: Secret
metadata:
  name: bootstrap-token-{token_id}
  namespace: kube-system
  labels:
    fleetgate.io/node: {node_name}
type: bootstrap.kubernetes.io/token
stringData:
  description: "fleetgate join token for {node_name}"
  token-id: {token_id}
  token-secret: {token_secret}
  expiration: {expiration}
  usage-bootstrap-authentication: "true"
  usage-bootstrap-signing: "true"
  auth-extra-groups: system:bootstrappers:kubeadm:default-node-token
"""


class KubectlControlPlane:
    """Cluster membership operations of the fleet, backed by kubectl."""

    def __init__(self, kubeconfig: Path, token_ttl_s: int = 3600, drain_timeout_s: int = 30):
        self.kubectl = Kubectl(kubeconfig)
        self.token_ttl_s = token_ttl_s
        self.drain_timeout_s = drain_timeout_s

    def node_ready(self, node_name: str) -> Optional[bool]:
        obj = self.kubectl.node(node_name)
        if obj is None:
            return None
        return Kubectl.node_ready(obj)

    def active_assignments(self, node_name: str) -> int:
        return sum(1 for p in self.kubectl.pods_on_node(node_name) if Kubectl.relocatable(p))

    def begin_drain(self, node_name: str) -> None:
        if self.kubectl._run(["cordon", node_name]) != 0:
            raise RuntimeError(f"kubectl cordon {node_name} failed")
        # eviction keeps going after the timeout; progress is polled through active_assignments
        self.kubectl._run([
            "drain", node_name,
            "--ignore-daemonsets", "--delete-emptydir-data",
            f"--timeout={self.drain_timeout_s}s",
        ])

    def remove_node(self, node_name: str) -> None:
        if self.kubectl._run(["delete", "node", node_name, "--ignore-not-found"]) != 0:
            raise RuntimeError(f"kubectl delete node {node_name} failed")

    def issue_join_token(self, node_name: str) -> JoinToken:
        token_id = "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(6))
        token_secret = "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(16))
        expiration = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(time.time() + self.token_ttl_s))
        manifest = BOOTSTRAP_TOKEN_SECRET.format(
            token_id=token_id, token_secret=token_secret, node_name=node_name, expiration=expiration
        )
        # the manifest carries the secret: pipe it, never echo it
        rc = self.kubectl._run(["apply", "-f", "-"], stdin=manifest)
        if rc != 0:
            raise RuntimeError(f"creating join token for {node_name} failed (kubectl exit {rc})")
        return JoinToken(tokenId=token_id, secret=SecretStr(f"{token_id}.{token_secret}"))
