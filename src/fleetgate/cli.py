import typer
from fleetgate.utils.logging import setup_logging
from fleetgate.commands import access, cluster, fleet
from fleetgate.utils import deps

app = typer.Typer(no_args_is_help=True, add_completion=False)
app.add_typer(cluster.app, name="cluster",
    help=(
        "Plan, apply and destroy a cluster topology: network, security policy, "
        "gateway, control plane, workers and monitoring."
    )
)
app.add_typer(fleet.app, name="fleet",
    help=(
        "Scale the worker fleet and run the health / drain state machine "
        "(joining -> healthy -> draining -> gone)."
    )
)
app.add_typer(access.app, name="access",
    help=(
        "Check the single-entry-point security policy and compute tunnels "
        "to internal services through the gateway."
    )
)


@app.callback()
def main(verbose: int = typer.Option(0, "--verbose", "-v", count=True)):
    setup_logging(verbosity=verbose)

def run():
    app()

@app.command("deps")
def deps_cmd():
    """
    Check the external CLI tools fleetgate drives:
    terraform, kubectl, packer, ssh.
    """
    missing = deps.get_missing_tools()
    if not missing:
        print("All required tools are installed.")
        return

    print("Missing tools:\n")
    for t in missing:
        print(f"- {t.name}: {t.description} (needed for {t.needed_for})")
    print("\nInstall them with your package manager before running the matching commands.")

if __name__ == "__main__":
    run()
