"""Main CLI entry point for cluster hosting."""

import re
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from cluster_hosting.exceptions import ClusterHostingError
from cluster_hosting.logging_config import get_logger, setup_logging

app = typer.Typer(
    name="cluster-host",
    help="Provision and manage the infrastructure hosting a cluster",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)

DefinitionArgument = typer.Argument(..., help="Path to the cluster definition YAML file")
AccessKeyOption = typer.Option(
    None, "--access-key-id", envvar="AWS_ACCESS_KEY_ID", help="AWS access key id", show_default=False
)
SecretKeyOption = typer.Option(
    None,
    "--secret-access-key",
    envvar="AWS_SECRET_ACCESS_KEY",
    help="AWS secret access key",
    show_default=False,
)


# Global callback to set up logging
@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    log_file: str | None = typer.Option(None, "--log-file", help="Path to log file"),
):
    """Global options for all commands."""
    log_path = Path(log_file) if log_file else None
    setup_logging(verbose=verbose, log_file=log_path)
    logger.debug("Logging initialized")


def _print_error(e: ClusterHostingError) -> None:
    label = re.sub(r"(?<!^)(?=[A-Z])", " ", type(e).__name__)
    logger.error(f"{label}: {e.message}")
    console.print(f"[red]{label}:[/red] {e.message}")
    if e.details:
        console.print(f"\n{e.details}")


def _load_manager(
    definition_path: str,
    access_key_id: str | None = None,
    secret_access_key: str | None = None,
    **kwargs,
):
    """Load a definition and create its validated hosting manager."""
    from cluster_hosting.hosting import create_manager
    from cluster_hosting.models.cluster import ClusterDefinition

    definition = ClusterDefinition.load(definition_path)
    aws = definition.hosting.aws
    if aws is not None:
        aws.access_key_id = aws.access_key_id or access_key_id
        aws.secret_access_key = aws.secret_access_key or secret_access_key

    manager = create_manager(definition, **kwargs)
    manager.validate()
    return manager


def _run_steps(manager, title: str, add_steps, max_parallel: int) -> None:
    """Run a manager's steps, printing progress; exits non-zero on failure."""
    from cluster_hosting.setup import SetupController

    controller = SetupController(
        title,
        manager.definition.nodes,
        max_parallel=max_parallel,
        on_status=lambda message: console.print(f"  {message}"),
    )
    add_steps(controller)

    console.print(f"\n[bold cyan]{title}[/bold cyan]")
    try:
        succeeded = controller.run()
    except KeyboardInterrupt:
        controller.cancel()
        console.print("\n[yellow]Interrupted; run the command again to resume[/yellow]")
        raise typer.Exit(code=130)

    if not succeeded:
        if controller.error is not None:
            _print_error(controller.error)
        else:
            console.print("[yellow]Cancelled[/yellow]")
        raise typer.Exit(code=1)

    console.print(f"[green]✓[/green] {title} completed")


@app.command()
def version() -> None:
    """Show version information."""
    from cluster_hosting import __version__

    typer.echo(f"cluster-hosting version {__version__}")


@app.command()
def validate(definition: str = DefinitionArgument) -> None:
    """Validate a cluster definition for its hosting environment."""
    try:
        manager = _load_manager(definition)
    except ClusterHostingError as e:
        _print_error(e)
        raise typer.Exit(code=1)

    cluster = manager.definition
    console.print(f"[green]✓[/green] Cluster '{cluster.name}' is valid for {cluster.hosting.environment}")

    table = Table(title="Nodes")
    table.add_column("Name", style="cyan")
    table.add_column("Role", style="magenta")
    table.add_column("Address", style="green")
    table.add_column("Ingress", style="yellow")
    for node in cluster.sorted_nodes:
        table.add_row(node.name, node.role, str(node.address), "Yes" if node.ingress else "No")
    console.print(table)


@app.command()
def provision(
    definition: str = DefinitionArgument,
    max_parallel: int = typer.Option(
        8, "--max-parallel", "-p", min=1, help="Maximum nodes provisioned at once"
    ),
    admin_password: str | None = typer.Option(
        None,
        "--admin-password",
        envvar="CLUSTER_ADMIN_PASSWORD",
        help="Administrator password set on new nodes (generated once and reused when omitted)",
        show_default=False,
    ),
    access_key_id: str | None = AccessKeyOption,
    secret_access_key: str | None = SecretKeyOption,
) -> None:
    """
    Create or reconcile the cluster infrastructure.

    Provisioning is resumable: running it again after an interruption or a
    failure picks up from what already exists.
    """
    try:
        manager = _load_manager(
            definition, access_key_id, secret_access_key, admin_password=admin_password
        )
        _run_steps(
            manager,
            f"Provisioning cluster {manager.definition.name}",
            manager.add_provisioning_steps,
            max_parallel,
        )
        _print_endpoints(manager)
        login_path = manager.login_store.path(manager.definition.name)
        console.print(f"[bold]Administrator login:[/bold] {login_path}")
    except ClusterHostingError as e:
        _print_error(e)
        raise typer.Exit(code=1)


@app.command()
def post_provision(
    definition: str = DefinitionArgument,
    max_parallel: int = typer.Option(8, "--max-parallel", "-p", min=1),
    access_key_id: str | None = AccessKeyOption,
    secret_access_key: str | None = SecretKeyOption,
) -> None:
    """Run the steps that follow node preparation, such as attaching storage volumes."""
    try:
        manager = _load_manager(definition, access_key_id, secret_access_key)
        _run_steps(
            manager,
            f"Post-provisioning cluster {manager.definition.name}",
            manager.add_post_provisioning_steps,
            max_parallel,
        )
    except ClusterHostingError as e:
        _print_error(e)
        raise typer.Exit(code=1)


@app.command()
def start(
    definition: str = DefinitionArgument,
    access_key_id: str | None = AccessKeyOption,
    secret_access_key: str | None = SecretKeyOption,
) -> None:
    """Start every node of a stopped cluster."""
    try:
        manager = _load_manager(definition, access_key_id, secret_access_key)
        console.print(f"[yellow]Starting cluster '{manager.definition.name}'...[/yellow]")
        manager.start()
    except ClusterHostingError as e:
        _print_error(e)
        raise typer.Exit(code=1)
    console.print("[green]✓[/green] Cluster started")


@app.command()
def stop(
    definition: str = DefinitionArgument,
    access_key_id: str | None = AccessKeyOption,
    secret_access_key: str | None = SecretKeyOption,
) -> None:
    """Stop every node without removing anything."""
    try:
        manager = _load_manager(definition, access_key_id, secret_access_key)
        console.print(f"[yellow]Stopping cluster '{manager.definition.name}'...[/yellow]")
        manager.stop()
    except ClusterHostingError as e:
        _print_error(e)
        raise typer.Exit(code=1)
    console.print("[green]✓[/green] Cluster stopped")


@app.command()
def remove(
    definition: str = DefinitionArgument,
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation prompt"),
    access_key_id: str | None = AccessKeyOption,
    secret_access_key: str | None = SecretKeyOption,
) -> None:
    """
    Remove every resource created for the cluster.

    Nodes, networking and load balancing are all deleted; this cannot be undone.
    """
    try:
        manager = _load_manager(definition, access_key_id, secret_access_key)

        if not force:
            console.print(
                f"[yellow]Warning:[/yellow] About to remove cluster '{manager.definition.name}' "
                f"from {manager.environment}"
            )
            console.print(f"  Nodes: {len(manager.definition.nodes)}")
            confirm = typer.confirm("Are you sure you want to continue?")
            if not confirm:
                console.print("Operation cancelled")
                raise typer.Exit(code=0)

        manager.remove()
    except ClusterHostingError as e:
        _print_error(e)
        raise typer.Exit(code=1)

    console.print(f"[green]✓[/green] Successfully removed cluster '{manager.definition.name}'")


def _print_endpoints(manager) -> None:
    table = Table(title=f"Cluster {manager.definition.name} endpoints")
    table.add_column("Node", style="cyan")
    table.add_column("Role", style="magenta")
    table.add_column("Address", style="green")
    table.add_column("SSH Endpoint", style="yellow")

    for node in manager.definition.sorted_nodes:
        try:
            address, port = manager.get_ssh_endpoint(node.name)
            endpoint = f"{address}:{port}"
        except ClusterHostingError as e:
            logger.debug(f"No SSH endpoint for {node.name}: {e.message}")
            endpoint = "-"
        table.add_row(node.name, node.role, str(node.address), endpoint)

    console.print(table)
    cluster_address = manager.get_cluster_address()
    if cluster_address:
        console.print(f"\n[bold]Cluster address:[/bold] {cluster_address}")


@app.command()
def endpoints(
    definition: str = DefinitionArgument,
    access_key_id: str | None = AccessKeyOption,
    secret_access_key: str | None = SecretKeyOption,
) -> None:
    """Show the cluster address and each node's SSH endpoint."""
    try:
        manager = _load_manager(definition, access_key_id, secret_access_key)
        _print_endpoints(manager)
    except ClusterHostingError as e:
        _print_error(e)
        raise typer.Exit(code=1)


@app.command()
def ssh(
    definition: str = DefinitionArgument,
    enable: bool = typer.Option(
        ..., "--enable/--disable", help="Open or close external SSH access to the nodes"
    ),
    access_key_id: str | None = AccessKeyOption,
    secret_access_key: str | None = SecretKeyOption,
) -> None:
    """Open or close external SSH access through the load balancer."""
    try:
        manager = _load_manager(definition, access_key_id, secret_access_key)
        if enable:
            manager.enable_internet_ssh()
        else:
            manager.disable_internet_ssh()
    except NotImplementedError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)
    except ClusterHostingError as e:
        _print_error(e)
        raise typer.Exit(code=1)

    console.print(f"[green]✓[/green] External SSH access {'enabled' if enable else 'disabled'}")


@app.command()
def availability(
    definition: str = DefinitionArgument,
    reserve_memory_gib: int = typer.Option(0, "--reserve-memory", min=0, help="GiB of memory to keep free"),
    reserve_disk_gib: int = typer.Option(0, "--reserve-disk", min=0, help="GiB of disk to keep free"),
    access_key_id: str | None = AccessKeyOption,
    secret_access_key: str | None = SecretKeyOption,
) -> None:
    """Check whether the hosting environment has room for the cluster."""
    try:
        manager = _load_manager(definition, access_key_id, secret_access_key)
        result = manager.get_resource_availability(reserve_memory_gib, reserve_disk_gib)
    except ClusterHostingError as e:
        _print_error(e)
        raise typer.Exit(code=1)

    if result.can_be_deployed:
        console.print("[green]✓[/green] The cluster can be deployed")
        return

    table = Table(title="Resource Constraints")
    table.add_column("Resource", style="cyan")
    table.add_column("Constraint", style="red")
    for resource, messages in sorted(result.constraints.items()):
        for message in messages:
            table.add_row(resource, message)
    console.print(table)
    raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
