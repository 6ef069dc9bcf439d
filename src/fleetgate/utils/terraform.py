import json
import os
import shutil
import subprocess
import uuid
from pathlib import Path
from typing import Dict, List, Optional

from rich import print as rprint

from fleetgate.errors import InputError, ProvisioningError
from fleetgate.interfaces import Credentials
from fleetgate.models.plan import Action
from fleetgate.utils.tf_templates import RESOURCE_TF

RESOURCE_KINDS = ("network", "subnet", "firewall-rule", "node", "gateway-forward")


class TerraformClient:
    """
    Wrapper around terraform commands: init, apply, destroy and output.
    """

    def __init__(self, workdir: Path, extra_env: Optional[Dict[str, str]] = None):
        self.workdir = Path(workdir)
        self.env = os.environ.copy()
        if extra_env:
            self.env.update(extra_env)

    def _run(self, args: List[str]) -> int:
        cmd = ["terraform"] + args
        rprint(f"[dim]{self.workdir}$ {' '.join(cmd)}[/]")
        proc = subprocess.Popen(
            cmd,
            cwd=self.workdir,
            env=self.env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
        assert proc.stdout is not None
        for line in proc.stdout:
            print(line, end="")
        return proc.wait()

    def init(self) -> int:
        return self._run(["init", "-input=false"])

    def apply(self, auto_approve: bool = True) -> int:
        args = ["apply", "-input=false"]
        if auto_approve:
            args.append("-auto-approve")
        return self._run(args)

    def destroy(self, auto_approve: bool = True) -> int:
        args = ["destroy", "-input=false"]
        if auto_approve:
            args.append("-auto-approve")
        return self._run(args)

    def output_json(self) -> dict:
        cmd = ["terraform", "output", "-json"]
        proc = subprocess.run(cmd, cwd=self.workdir, env=self.env, capture_output=True, text=True)
        if proc.returncode != 0:
            raise RuntimeError(f"terraform output failed: {proc.stderr}")
        return json.loads(proc.stdout)


class TerraformProvisioner:
    """
    Provision each logical resource as its own small Terraform root module.

    The root module calls the user's module for the resource kind and exposes
    its `id` output. Every physical resource gets its own workdir
    <workdir>/<cluster>/<logical id>/<slot>, and the slot is part of the
    returned resource id, so a replacement can exist next to the resource it
    replaces. Credentials only travel as TF_VAR_credentials in the environment.
    """

    def __init__(self, workdir: Path, cluster: str, modules: Dict[str, str]):
        self.root = Path(workdir).expanduser().resolve() / cluster
        self.cluster = cluster
        self.modules = {k: str(Path(v).expanduser().resolve()) for k, v in modules.items()}

    def check_modules(self) -> None:
        missing = [k for k in RESOURCE_KINDS if k not in self.modules]
        if missing:
            raise InputError(f"controller.terraformModules is missing module paths for: {', '.join(missing)}")

    # ------------------------------------------------------------------
    # Workdirs
    # ------------------------------------------------------------------
    def _workdir(self, logical_id: str, slot: str) -> Path:
        return self.root / logical_id.replace("/", "__") / slot

    @staticmethod
    def _split(resource_id: str):
        slot, _, provider_id = resource_id.partition("/")
        return slot, provider_id

    def _write(self, workdir: Path, action: Action) -> None:
        module = self.modules.get(action.resourceKind)
        if not module:
            raise ProvisioningError(f"no Terraform module configured for resource kind '{action.resourceKind}'", action.key)
        workdir.mkdir(parents=True, exist_ok=True)
        (workdir / "main.tf").write_text(RESOURCE_TF.format(module_source=json.dumps(module)))
        tfvars = {"cluster": self.cluster, "logical_id": action.logicalId, "spec": action.spec}
        (workdir / "terraform.tfvars.json").write_text(json.dumps(tfvars, indent=2, sort_keys=True))

    @staticmethod
    def _env(credentials: Credentials) -> Dict[str, str]:
        # Secrets are NOT written to disk; terraform reads them from ENV
        return {"TF_VAR_credentials": json.dumps({k: v.get_secret_value() for k, v in credentials.items()})}

    def _apply(self, workdir: Path, action: Action, credentials: Credentials) -> str:
        tf = TerraformClient(workdir=workdir, extra_env=self._env(credentials))
        if tf.init() != 0:
            raise ProvisioningError(f"terraform init failed for {action.logicalId}", action.key)
        if tf.apply() != 0:
            raise ProvisioningError(f"terraform apply failed for {action.logicalId}", action.key)
        outputs = tf.output_json()
        provider_id = outputs.get("id", {}).get("value")
        if not provider_id:
            raise ProvisioningError(f"module for {action.resourceKind} has no 'id' output", action.key)
        return str(provider_id)

    # ------------------------------------------------------------------
    # Provisioner
    # ------------------------------------------------------------------
    def create(self, action: Action, credentials: Credentials) -> str:
        slot = uuid.uuid4().hex[:8]
        workdir = self._workdir(action.logicalId, slot)
        self._write(workdir, action)
        return f"{slot}/{self._apply(workdir, action, credentials)}"

    def update(self, action: Action, resource_id: str, credentials: Credentials) -> str:
        slot, _ = self._split(resource_id)
        workdir = self._workdir(action.logicalId, slot)
        if not workdir.exists():
            raise ProvisioningError(f"workdir for {action.logicalId} not found: {workdir}", action.key)
        self._write(workdir, action)
        return f"{slot}/{self._apply(workdir, action, credentials)}"

    def destroy(self, resource_kind: str, logical_id: str, resource_id: str, credentials: Credentials) -> None:
        slot, _ = self._split(resource_id)
        workdir = self._workdir(logical_id, slot)
        if not workdir.exists():
            rprint(f"[yellow]Workdir not found, nothing to destroy:[/] {workdir}")
            return
        tf = TerraformClient(workdir=workdir, extra_env=self._env(credentials))
        if tf.destroy() != 0:
            raise ProvisioningError(f"terraform destroy failed for {logical_id} ({resource_kind})")
        shutil.rmtree(workdir)
