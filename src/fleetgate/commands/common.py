"""Shared wiring of the CLI commands: spec loading, collaborators, error mapping."""
from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import typer
from rich import box
from rich import print as rprint
from rich.table import Table

from fleetgate.config import FleetgateDocument, load_document
from fleetgate.errors import EXIT_OK, EXIT_RETRYABLE, FleetgateError, InputError, PolicyViolation
from fleetgate.fleet import FleetController
from fleetgate.interfaces import ControlPlane, ImageBuilder, Provisioner, SecretProvider
from fleetgate.models.plan import ReconcilePlan, RunReport
from fleetgate.orchestrator import LifecycleOrchestrator
from fleetgate.state_store import FileKeyValueStore, StateStoreAdapter
from fleetgate.utils.image_builder import PackerImageBuilder
from fleetgate.utils.kubectl import KubectlControlPlane
from fleetgate.utils.secrets import EnvSecretProvider, VaultSecretProvider
from fleetgate.utils.terraform import TerraformProvisioner

SPEC_OPTION = typer.Option(..., "--file", "-f", exists=True, readable=True, help="Cluster topology YAML")


def load_spec(file: Path) -> FleetgateDocument:
    try:
        return load_document(file)
    except InputError as e:
        rprint(f"[bold red]Spec validation error:[/] {e}")
        raise typer.Exit(code=e.exit_code)


@contextmanager
def handle_errors() -> Iterator[None]:
    """Print controller errors and turn them into the matching exit code."""
    try:
        yield
    except PolicyViolation as e:
        rprint("[bold red]Security policy rejected:[/]")
        for v in e.violations:
            rprint(f"  - {v}")
        raise typer.Exit(code=e.exit_code)
    except FleetgateError as e:
        hint = " [dim](retryable)[/]" if e.retryable else ""
        rprint(f"[bold red]{type(e).__name__}:[/] {e}{hint}")
        raise typer.Exit(code=e.exit_code)


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------
def make_store(doc: FleetgateDocument) -> StateStoreAdapter:
    c = doc.controller
    return StateStoreAdapter(
        FileKeyValueStore(Path(c.stateDir)),
        doc.cluster.name,
        lock_timeout=c.lockTimeoutSeconds,
        lease_seconds=c.lockLeaseSeconds,
    )


def make_provisioner(doc: FleetgateDocument, check: bool = True) -> Provisioner:
    c = doc.controller
    prov = TerraformProvisioner(Path(c.terraformWorkdir), doc.cluster.name, c.terraformModules)
    if check:
        prov.check_modules()
    return prov


def make_control_plane(doc: FleetgateDocument, required: bool = False) -> Optional[ControlPlane]:
    kubeconfig = doc.controller.kubeconfig
    if not kubeconfig:
        if required:
            raise InputError("controller.kubeconfig (or FLEETGATE_KUBECONFIG) is required for fleet operations")
        return None
    return KubectlControlPlane(Path(kubeconfig))


def make_image_builder(doc: FleetgateDocument) -> Optional[ImageBuilder]:
    template = doc.controller.packerTemplate
    return PackerImageBuilder(Path(template)) if template else None


def make_secrets(doc: FleetgateDocument) -> Optional[SecretProvider]:
    c = doc.controller
    if c.vault is not None:
        return VaultSecretProvider(c.vault.addr, c.vault.path, c.vault.mountPoint, c.vault.tokenEnv)
    return EnvSecretProvider(c.secretEnv) if c.secretEnv else None


def make_orchestrator(doc: FleetgateDocument, provision: bool = True) -> LifecycleOrchestrator:
    """`provision=False` skips the Terraform module check (plan only)."""
    return LifecycleOrchestrator(
        make_store(doc),
        make_provisioner(doc, check=provision),
        config=doc.controller,
        image_builder=make_image_builder(doc),
        control_plane=make_control_plane(doc),
        secrets=make_secrets(doc),
    )


def make_fleet(doc: FleetgateDocument) -> FleetController:
    return FleetController(
        make_store(doc),
        make_provisioner(doc),
        make_control_plane(doc, required=True),
        config=doc.controller,
        secrets=make_secrets(doc),
    )


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------
def print_plan(plan: ReconcilePlan, title: str) -> None:
    if plan.is_empty:
        rprint("[green]Nothing to do:[/] observed state matches the topology.")
        return
    table = Table(title=title, box=box.SIMPLE, show_header=True, header_style="bold")
    table.add_column("Rank")
    table.add_column("Action")
    table.add_column("Kind")
    table.add_column("Logical id")
    table.add_column("Notes")
    for a in plan.actions:
        notes = "replace" if a.replace else "drain" if a.drain else ""
        if not a.parallel:
            notes = ", ".join(filter(None, [notes, "serial"]))
        table.add_row(a.rank.label, a.kind.value, a.resourceKind, a.logicalId, notes)
    rprint(table)


def print_report(report: RunReport) -> int:
    """Print the run report; return the exit code it maps to."""
    color = {"succeeded": "green", "noop": "green", "cancelled": "yellow"}.get(report.status, "red")
    rprint(f"[bold {color}]{report.operation} {report.status}[/] "
           f"({len(report.succeeded)} succeeded, {len(report.failed)} failed, "
           f"{len(report.notAttempted)} not attempted)")
    for key, err in report.failed.items():
        rprint(f"  [red]failed[/] {key}: {err}")
    for key in report.notAttempted:
        rprint(f"  [yellow]not attempted[/] {key}")
    for w in report.warnings:
        rprint(f"  [yellow]warning[/] {w}")
    return EXIT_OK if report.ok else EXIT_RETRYABLE
