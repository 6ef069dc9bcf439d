import signal
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import typer
from rich import box
from rich import print as rprint
from rich.table import Table

from fleetgate.commands import common
from fleetgate.orchestrator import LifecycleOrchestrator

app = typer.Typer(no_args_is_help=True)


@contextmanager
def _cancel_on_interrupt(orch: LifecycleOrchestrator) -> Iterator[None]:
    """First Ctrl-C stops the run before its next action; a second one aborts."""
    previous = signal.getsignal(signal.SIGINT)

    def _handler(signum, frame):
        rprint("[yellow]Cancelling after the actions in flight (Ctrl-C again to abort)...[/]")
        orch.cancel()
        signal.signal(signal.SIGINT, previous)

    signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


# ----------
# cluster plan
# ----------
@app.command()
def plan(file: Path = common.SPEC_OPTION):
    """Show the actions `apply` would take, without changing anything."""
    doc = common.load_spec(file)
    with common.handle_errors():
        orch = common.make_orchestrator(doc, provision=False)
        p = orch.plan(doc.cluster)
    common.print_plan(p, title=f"Plan → cluster: {doc.cluster.name}")


# ----------
# cluster apply
# ----------
@app.command()
def apply(file: Path = common.SPEC_OPTION):
    """
    Bring the cluster to the topology in the file: lock, observe, plan,
    execute rank by rank and persist progress.
    """
    doc = common.load_spec(file)
    with common.handle_errors():
        orch = common.make_orchestrator(doc)
        with _cancel_on_interrupt(orch):
            report = orch.apply(doc.cluster)
    raise typer.Exit(code=common.print_report(report))


# ----------
# cluster destroy
# ----------
@app.command()
def destroy(
    file: Path = common.SPEC_OPTION,
    confirm: Optional[str] = typer.Option(None, "--confirm", help="Token printed by a previous `destroy` without --confirm"),
):
    """
    Tear the cluster down in reverse rank order.
    Without --confirm only the teardown plan and its confirmation token are printed.
    """
    doc = common.load_spec(file)
    with common.handle_errors():
        orch = common.make_orchestrator(doc, provision=confirm is not None)
        if confirm is None:
            dp = orch.plan_destroy()
            common.print_plan(dp.plan, title=f"Teardown plan → cluster: {doc.cluster.name}")
            if not dp.plan.is_empty:
                rprint(f"\nRun again with [bold]--confirm {dp.confirmToken}[/] to destroy.")
            return
        with _cancel_on_interrupt(orch):
            report = orch.destroy(confirm)
    raise typer.Exit(code=common.print_report(report))


# ----------
# cluster status
# ----------
@app.command()
def status(file: Path = common.SPEC_OPTION):
    """Show the stored state: resources, fleet members and the last run."""
    doc = common.load_spec(file)
    with common.handle_errors():
        state = common.make_store(doc).load()
    if state is None:
        rprint(f"[yellow]Cluster {doc.cluster.name} has no stored state (never applied).[/]")
        return

    rprint(f"[bold]Cluster:[/] {state.name}  [dim]revision {state.revision}[/]")
    table = Table(title="Resources", box=box.SIMPLE, show_header=True, header_style="bold")
    table.add_column("Logical id")
    table.add_column("Kind")
    table.add_column("Resource id")
    table.add_column("Fingerprint")
    for lid, rec in sorted(state.resources.items(), key=lambda kv: (kv[1].rank, kv[0])):
        table.add_row(lid, rec.kind, rec.resourceId, rec.fingerprint)
    rprint(table)

    if state.fleet:
        fleet = Table(title="Fleet", box=box.SIMPLE, show_header=True, header_style="bold")
        fleet.add_column("Member")
        fleet.add_column("Status")
        fleet.add_column("Resource id")
        for m in state.members():
            fleet.add_row(m.memberId, m.status.value, m.resourceId or "-")
        rprint(fleet)

    run = state.lastRun
    if run is not None:
        rprint(f"[bold]Last run:[/] {run.operation} {run.status} "
               f"({len(run.succeeded)} succeeded, {len(run.failed)} failed, {len(run.notAttempted)} not attempted)")
