import json
import shlex
import subprocess
from pathlib import Path
from typing import List, Optional

from rich import print as rprint

from fleetgate.errors import InputError
from fleetgate.models.topology import ImageSpec


def parse_artifact_id(machine_readable: str) -> Optional[str]:
    """Pick the artifact id from `packer build -machine-readable` output.

    Lines look like `<timestamp>,<builder>,artifact,0,id,<id>`.
    """
    artifact = None
    for line in machine_readable.splitlines():
        fields = line.split(",")
        if len(fields) >= 6 and fields[2] == "artifact" and fields[4] == "id":
            artifact = ",".join(fields[5:]).strip()
    return artifact or None


class PackerImageBuilder:
    """Build node images from an ImageSpec with a user-supplied Packer template."""

    def __init__(self, template: Path):
        self.template = Path(template).expanduser().resolve()

    def _vars(self, spec: ImageSpec, name: str) -> List[str]:
        hardening = sorted(k for k, enabled in spec.hardening.items() if enabled)
        values = {
            "image_name": name,
            "base_image": spec.baseImage,
            "packages": json.dumps(list(spec.packages)),
            "hardening": json.dumps(hardening),
        }
        args: List[str] = []
        for key, value in values.items():
            args += ["-var", f"{key}={value}"]
        return args

    def build(self, spec: ImageSpec, name: str) -> str:
        if not self.template.exists():
            raise InputError(f"Packer template not found: {self.template}")
        cmd = ["packer", "build", "-machine-readable", *self._vars(spec, name), str(self.template)]
        rprint(f"[dim]$ {' '.join(shlex.quote(c) for c in cmd)}[/]")
        proc = subprocess.run(cmd, capture_output=True, text=True)
        if proc.returncode != 0:
            tail = "\n".join(proc.stdout.splitlines()[-5:])
            raise InputError(f"image build for {name} failed:\n{tail or proc.stderr.strip()}")
        artifact = parse_artifact_id(proc.stdout)
        if artifact is None:
            raise InputError(f"image build for {name} produced no artifact id")
        rprint(f"[green]Image built:[/] {name} -> {artifact}")
        return artifact
