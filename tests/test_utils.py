import json
import subprocess
from types import SimpleNamespace

import hvac
import pytest
from pydantic import SecretStr

from fleetgate.errors import InputError, ObservationError, ProvisioningError
from fleetgate.models.plan import Action, ActionKind, Rank
from fleetgate.models.topology import ImageSpec
from fleetgate.utils import terraform
from fleetgate.utils.image_builder import PackerImageBuilder, parse_artifact_id
from fleetgate.utils.kubectl import Kubectl, KubectlControlPlane
from fleetgate.utils.secrets import EnvSecretProvider, VaultSecretProvider


# ---------------------------------------------------------------------------
# Secret providers
# ---------------------------------------------------------------------------
def test_env_secrets_are_wrapped():
    provider = EnvSecretProvider({"api_key": "CLOUD_KEY"}, environ={"CLOUD_KEY": "abc123"})
    creds = provider.credentials()
    assert isinstance(creds["api_key"], SecretStr)
    assert "abc123" not in repr(creds)
    assert creds["api_key"].get_secret_value() == "abc123"


def test_env_secrets_missing_variable():
    with pytest.raises(InputError, match="CLOUD_KEY"):
        EnvSecretProvider({"api_key": "CLOUD_KEY"}, environ={}).credentials()


def _vault_client(read):
    return SimpleNamespace(secrets=SimpleNamespace(kv=SimpleNamespace(v2=SimpleNamespace(read_secret_version=read))))


def test_vault_secrets_read_kv_v2():
    calls = []

    def read(path, mount_point, raise_on_deleted_version):
        calls.append((path, mount_point))
        return {"data": {"data": {"api_key": "v-123", "region": "eu"}}}

    provider = VaultSecretProvider("http://vault:8200", "fleetgate/demo", client=_vault_client(read))
    creds = provider.credentials()
    assert calls == [("fleetgate/demo", "secret")]
    assert creds["api_key"].get_secret_value() == "v-123"


def test_vault_missing_path_is_input_error():
    def read(**kwargs):
        raise hvac.exceptions.InvalidPath("nope")

    with pytest.raises(InputError):
        VaultSecretProvider("http://vault:8200", "missing", client=_vault_client(read)).credentials()


def test_vault_outage_is_observation_error():
    def read(**kwargs):
        raise hvac.exceptions.VaultDown("sealed")

    with pytest.raises(ObservationError):
        VaultSecretProvider("http://vault:8200", "fleetgate/demo", client=_vault_client(read)).credentials()


def test_vault_needs_token(monkeypatch):
    monkeypatch.delenv("VAULT_TOKEN", raising=False)
    with pytest.raises(InputError, match="VAULT_TOKEN"):
        VaultSecretProvider("http://vault:8200", "fleetgate/demo").credentials()


# ---------------------------------------------------------------------------
# Image builder
# ---------------------------------------------------------------------------
def test_parse_artifact_id():
    out = "\n".join([
        "1700000000,,ui,say,==> Builds finished",
        "1700000001,amazon-ebs,artifact,0,builder-id,mitchellh.amazonebs",
        "1700000001,amazon-ebs,artifact,0,id,eu-west-1:ami-0abc123",
    ])
    assert parse_artifact_id(out) == "eu-west-1:ami-0abc123"
    assert parse_artifact_id("1700000000,,ui,say,nothing") is None


def test_packer_failure_is_input_error(tmp_path, monkeypatch):
    template = tmp_path / "node.pkr.hcl"
    template.write_text("")
    seen = {}

    def fake_run(cmd, **kwargs):
        seen["cmd"] = cmd
        return subprocess.CompletedProcess(cmd, 1, stdout="1,,ui,error,boom\n", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)
    spec = ImageSpec(baseImage="ubuntu-22.04", packages=["containerd"], hardening={"cis": True, "fips": False})
    with pytest.raises(InputError, match="image build"):
        PackerImageBuilder(template).build(spec, "demo-worker")
    assert "hardening=[\"cis\"]" in seen["cmd"]


# ---------------------------------------------------------------------------
# kubectl
# ---------------------------------------------------------------------------
def test_node_ready_condition():
    node = {"status": {"conditions": [{"type": "MemoryPressure", "status": "False"}, {"type": "Ready", "status": "True"}]}}
    assert Kubectl.node_ready(node)
    assert not Kubectl.node_ready({"status": {"conditions": []}})


def test_active_assignments_skip_daemonsets_and_static_pods(monkeypatch):
    pods = {"items": [
        {"metadata": {"ownerReferences": [{"kind": "ReplicaSet"}]}},
        {"metadata": {"ownerReferences": [{"kind": "DaemonSet"}]}},
        {"metadata": {"annotations": {"kubernetes.io/config.mirror": "x"}}},
        {"metadata": {}},
    ]}

    def fake_run(cmd, **kwargs):
        return subprocess.CompletedProcess(cmd, 0, stdout=json.dumps(pods), stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)
    assert KubectlControlPlane("/tmp/kubeconfig").active_assignments("worker-0001") == 2


def test_unregistered_node_is_not_ready_yet(monkeypatch):
    def fake_run(cmd, **kwargs):
        return subprocess.CompletedProcess(cmd, 1, stdout="", stderr='Error from server (NotFound): nodes "worker-0009" not found')

    monkeypatch.setattr(subprocess, "run", fake_run)
    assert KubectlControlPlane("/tmp/kubeconfig").node_ready("worker-0009") is None


def test_join_token_secret_is_piped_not_echoed(monkeypatch, capsys):
    seen = {}

    def fake_run(cmd, **kwargs):
        seen["cmd"], seen["input"] = cmd, kwargs.get("input")
        return subprocess.CompletedProcess(cmd, 0, stdout="secret/bootstrap-token created", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)
    token = KubectlControlPlane("/tmp/kubeconfig").issue_join_token("worker-0004")
    token_id, secret = token.secret.get_secret_value().split(".")
    assert token_id == token.tokenId and len(token_id) == 6 and len(secret) == 16
    assert secret in seen["input"]
    assert secret not in " ".join(seen["cmd"])
    assert secret not in capsys.readouterr().out


def test_join_token_failure_raises(monkeypatch):
    def fake_run(cmd, **kwargs):
        return subprocess.CompletedProcess(cmd, 1, stdout="error: forbidden", stderr=None)

    monkeypatch.setattr(subprocess, "run", fake_run)
    with pytest.raises(RuntimeError, match="worker-0004"):
        KubectlControlPlane("/tmp/kubeconfig").issue_join_token("worker-0004")


# ---------------------------------------------------------------------------
# Terraform provisioner
# ---------------------------------------------------------------------------
class FakeTerraform:
    instances = []

    def __init__(self, workdir, extra_env=None):
        self.workdir = workdir
        self.env = extra_env or {}
        FakeTerraform.instances.append(self)

    def init(self):
        return 0

    def apply(self, auto_approve=True):
        return 0

    def destroy(self, auto_approve=True):
        return 0

    def output_json(self):
        return {"id": {"value": "i-0123"}}


@pytest.fixture
def tf(monkeypatch, tmp_path):
    FakeTerraform.instances = []
    monkeypatch.setattr(terraform, "TerraformClient", FakeTerraform)
    modules = {kind: str(tmp_path / "modules" / kind) for kind in terraform.RESOURCE_KINDS}
    return terraform.TerraformProvisioner(tmp_path / "tf", "demo", modules)


def _action(lid="network/vpc"):
    return Action(kind=ActionKind.CREATE, rank=Rank.NETWORK, logicalId=lid, resourceKind="network",
                  spec={"cidr": "10.0.0.0/16"}, fingerprint="f")


def test_terraform_create_writes_root_module_without_secrets(tf):
    rid = tf.create(_action(), {"api_key": SecretStr("s3cr3t")})
    slot, provider_id = rid.split("/")
    assert provider_id == "i-0123"

    workdir = tf.root / "network__vpc" / slot
    assert 'module "resource"' in (workdir / "main.tf").read_text()
    tfvars = json.loads((workdir / "terraform.tfvars.json").read_text())
    assert tfvars == {"cluster": "demo", "logical_id": "network/vpc", "spec": {"cidr": "10.0.0.0/16"}}
    assert "s3cr3t" not in (workdir / "terraform.tfvars.json").read_text()
    assert json.loads(FakeTerraform.instances[0].env["TF_VAR_credentials"]) == {"api_key": "s3cr3t"}


def test_terraform_destroy_removes_workdir(tf):
    rid = tf.create(_action(), {})
    tf.destroy("network", "network/vpc", rid, {})
    assert not (tf.root / "network__vpc" / rid.split("/")[0]).exists()


def test_terraform_missing_module_config(tmp_path):
    prov = terraform.TerraformProvisioner(tmp_path, "demo", {"network": str(tmp_path)})
    with pytest.raises(InputError, match="subnet"):
        prov.check_modules()


def test_terraform_apply_failure(tf, monkeypatch):
    monkeypatch.setattr(FakeTerraform, "apply", lambda self, auto_approve=True: 1)
    with pytest.raises(ProvisioningError):
        tf.create(_action(), {})
