import threading
from pathlib import Path

import typer
from rich import box
from rich import print as rprint
from rich.table import Table

from fleetgate.commands import common
from fleetgate.errors import EXIT_OK, EXIT_RETRYABLE
from fleetgate.fleet import FleetReport

app = typer.Typer(no_args_is_help=True)


def _print_fleet_report(report: FleetReport) -> int:
    for label, items in (
        ("provisioned", report.provisioned),
        ("promoted", report.promoted),
        ("draining", report.draining),
        ("removed", report.removed),
    ):
        if items:
            rprint(f"[cyan]{label}:[/] {', '.join(items)}")
    for w in report.warnings:
        rprint(f"[yellow]warning:[/] {w}")
    for member_id, err in report.errors.items():
        rprint(f"[red]{member_id}:[/] {err}")
    return EXIT_OK if report.ok else EXIT_RETRYABLE


@app.command()
def scale(
    file: Path = common.SPEC_OPTION,
    count: int = typer.Option(..., "--count", "-n", help="Desired number of workers"),
):
    """Set the worker count of an applied cluster and converge towards it."""
    doc = common.load_spec(file)
    with common.handle_errors():
        report = common.make_fleet(doc).scale(count)
    rprint(f"[bold]Fleet target:[/] {report.target}")
    raise typer.Exit(code=_print_fleet_report(report))


@app.command()
def tick(
    file: Path = common.SPEC_OPTION,
    watch: bool = typer.Option(False, "--watch/--once", help="Keep ticking every controller.tickIntervalSeconds"),
):
    """
    One health pass over the fleet: promote joined workers, replace unhealthy
    ones, finish drains and converge to the target count.
    """
    doc = common.load_spec(file)
    with common.handle_errors():
        controller = common.make_fleet(doc)
        if watch:
            stop = threading.Event()
            rprint(f"[cyan]Watching fleet of {doc.cluster.name} every {doc.controller.tickIntervalSeconds}s (Ctrl-C to stop)[/]")
            try:
                controller.run(stop=stop)
            except KeyboardInterrupt:
                stop.set()
            return
        report = controller.tick()
    raise typer.Exit(code=_print_fleet_report(report))


@app.command("list")
def list_members(file: Path = common.SPEC_OPTION):
    """List fleet members recorded in the stored state."""
    doc = common.load_spec(file)
    with common.handle_errors():
        state = common.make_store(doc).load()
    if state is None or not state.fleet:
        rprint("[yellow]No fleet members recorded.[/]")
        return
    table = Table(
        title=f"Fleet → cluster: {state.name}  (target: {state.topology.worker_count if state.topology else '-'})",
        box=box.SIMPLE,
        show_header=True,
        header_style="bold",
    )
    table.add_column("Member")
    table.add_column("Status")
    table.add_column("Resource id")
    table.add_column("Token id")
    table.add_column("Assignments")
    for m in state.members():
        table.add_row(
            m.memberId,
            m.status.value,
            m.resourceId or "-",
            m.membershipToken or "-",
            "-" if m.activeAssignments is None else str(m.activeAssignments),
        )
    rprint(table)
