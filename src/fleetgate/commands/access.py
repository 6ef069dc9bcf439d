import shlex
from pathlib import Path
from typing import Optional

import typer
from rich import box
from rich import print as rprint
from rich.table import Table

from fleetgate.commands import common
from fleetgate.gateway import check_metrics_reachable, compute_tunnel_route, tunnel_table, validate_policy

app = typer.Typer(no_args_is_help=True)


@app.command()
def check(file: Path = common.SPEC_OPTION):
    """Validate the security policy against the single-entry-point rule."""
    doc = common.load_spec(file)
    with common.handle_errors():
        validate_policy(doc.cluster)
        check_metrics_reachable(doc.cluster)
    rprint(f"[green]Policy OK:[/] {len(doc.cluster.securityPolicy.rules)} rule(s), gateway is the only entry point.")


@app.command()
def route(
    file: Path = common.SPEC_OPTION,
    service: str = typer.Option(..., "--service", "-s", help="Group role or node id, e.g. control-plane-0"),
    port: int = typer.Option(..., "--port", "-p", help="Port on the service"),
    gateway_address: Optional[str] = typer.Option(None, "--gateway-address", help="Print the ssh command for this gateway"),
    user: str = typer.Option("ubuntu", "--user", help="SSH user on the gateway"),
):
    """Show how to reach an internal service through the gateway."""
    doc = common.load_spec(file)
    with common.handle_errors():
        validate_policy(doc.cluster)
        r = compute_tunnel_route(doc.cluster, service, port)
    rprint(str(r))
    if gateway_address:
        rprint(f"[dim]$[/] {' '.join(shlex.quote(c) for c in r.ssh_command(gateway_address, user))}")


@app.command()
def tunnels(file: Path = common.SPEC_OPTION):
    """List every port block forwardable through the gateway."""
    doc = common.load_spec(file)
    with common.handle_errors():
        validate_policy(doc.cluster)
        segments = tunnel_table(doc.cluster)
    if not segments:
        rprint("[yellow]The security policy forwards nothing through the gateway.[/]")
        return
    table = Table(title=f"Gateway tunnels → cluster: {doc.cluster.name}", box=box.SIMPLE, show_header=True, header_style="bold")
    table.add_column("Local port(s)")
    table.add_column("Service")
    table.add_column("Port(s)")
    for seg in segments:
        hi_local = seg.local_port(seg.portHi)
        local = str(seg.localLo) if seg.localLo == hi_local else f"{seg.localLo}-{hi_local}"
        ports = str(seg.portLo) if seg.portLo == seg.portHi else f"{seg.portLo}-{seg.portHi}"
        table.add_row(local, seg.group.value, ports)
    rprint(table)
