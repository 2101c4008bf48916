"""Main CLI entry point for cluster provisioning."""

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from talos_provisioner.artifacts import KUBECONFIG, ArtifactStore
from talos_provisioner.exceptions import ArtifactError, ProvisionerError
from talos_provisioner.hcloud import HetznerCloudClient
from talos_provisioner.logging_config import get_logger, setup_logging
from talos_provisioner.models.cluster import ClusterSpec, write_example_config
from talos_provisioner.models.node import NodeRecord, NodeRole

app = typer.Typer(
    name="talos-prov",
    help="Provision Talos Linux Kubernetes clusters on Hetzner Cloud",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)

NGINX_MANIFESTS = ("nginx-deployment.yaml", "nginx-gateway.yaml")


class RoleChoice(str, Enum):
    control_plane = "control-plane"
    worker = "worker"


@dataclass
class CliContext:
    config_path: Path
    output_dir: Path

    @property
    def artifacts(self) -> ArtifactStore:
        return ArtifactStore(self.output_dir)

    def load_spec(self) -> ClusterSpec:
        spec = ClusterSpec.load(self.config_path)
        logger.info(f"Cluster name: {spec.cluster_name}")
        return spec


def build_client(spec: ClusterSpec) -> HetznerCloudClient:
    return HetznerCloudClient(spec.resolve_token())


@contextmanager
def handle_errors(action: str) -> Iterator[None]:
    """Turn provisioner errors into a printed message and exit code 1."""
    try:
        yield
    except (typer.Exit, typer.Abort):
        raise
    except ProvisionerError as e:
        logger.error(f"{action} failed: {e.message}")
        console.print(f"[red]Error:[/red] {e.message}")
        if e.details:
            console.print(f"\n{e.details}")
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        raise typer.Exit(code=130)
    except Exception as e:
        logger.error(f"Unexpected error during {action.lower()}: {e}", exc_info=True)
        console.print(f"[red]Unexpected error:[/red] {e}")
        console.print("\nRun with --verbose --log-file debug.log for more details")
        raise typer.Exit(code=1)


def nodes_table(title: str, nodes: list[NodeRecord]) -> Table:
    table = Table(title=title)
    table.add_column("Name", style="cyan")
    table.add_column("ID", style="magenta")
    table.add_column("Status", style="green")
    table.add_column("Public IP", style="yellow")
    table.add_column("Private IP", style="blue")
    for node in nodes:
        table.add_row(
            node.name,
            str(node.id),
            node.status,
            node.public_ip or "N/A",
            node.private_ip or "N/A",
        )
    return table


# Global callback to set up logging and shared options
@app.callback()
def main_callback(
    ctx: typer.Context,
    config: Path = typer.Option(
        Path("cluster.yaml"), "--config", "-c", help="Configuration file path"
    ),
    output: Path = typer.Option(
        Path("./output"), "--output", "-o", help="Output directory for generated files"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    log_file: str | None = typer.Option(None, "--log-file", help="Path to log file"),
):
    """Global options for all commands."""
    log_path = Path(log_file) if log_file else None
    setup_logging(verbose=verbose, log_file=log_path)
    logger.debug("Logging initialized")
    ctx.obj = CliContext(config_path=config, output_dir=output)


@app.command()
def version() -> None:
    """Show version information."""
    from talos_provisioner import __version__

    typer.echo(f"talos-provisioner version {__version__}")


@app.command()
def init(ctx: typer.Context) -> None:
    """Generate an example configuration file."""
    state: CliContext = ctx.obj
    with handle_errors("Init"):
        path = write_example_config(state.config_path)

    console.print(f"[green]✓[/green] Example configuration created: {path}")
    console.print("\n[bold]Next steps:[/bold]")
    console.print("  1. Edit the configuration file to match your requirements")
    console.print("  2. Set your Hetzner Cloud API token:")
    console.print("     export HCLOUD_TOKEN=your-token-here")
    console.print("  3. Create the cluster:")
    console.print("     talos-prov create")


@app.command()
def create(ctx: typer.Context) -> None:
    """
    Create a new Talos cluster.

    Creates the firewall, network and SSH key, generates Talos machine
    configs, creates all servers, bootstraps Kubernetes and installs Cilium.
    """
    from talos_provisioner.orchestrator import ClusterOrchestrator

    state: CliContext = ctx.obj
    with handle_errors("Create"):
        spec = state.load_spec()
        orchestrator = ClusterOrchestrator(spec, state.artifacts, build_client(spec))
        summary = orchestrator.create()

    console.print("\n[bold green]✓ Cluster creation completed successfully![/bold green]\n")
    console.print(f"[bold]Name:[/bold] {summary.cluster_name}")
    console.print(f"[bold]Endpoint:[/bold] {summary.endpoint}")
    console.print(nodes_table("Control Planes", summary.control_planes))
    if summary.workers:
        console.print(nodes_table("Workers", summary.workers))
    console.print(f"\n[bold]Talosconfig:[/bold] {summary.talosconfig}")
    console.print(f"[bold]Kubeconfig:[/bold] {summary.kubeconfig}")
    console.print("\nTo access your cluster:")
    console.print(f"  export KUBECONFIG={summary.kubeconfig}")
    console.print("  kubectl get nodes")


@app.command()
def destroy(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
) -> None:
    """Destroy an existing cluster and all of its Hetzner Cloud resources."""
    from talos_provisioner.orchestrator import ClusterOrchestrator

    state: CliContext = ctx.obj
    with handle_errors("Destroy"):
        spec = state.load_spec()
        if not yes:
            typer.confirm(
                f"Destroy cluster '{spec.cluster_name}' and delete all its servers?",
                abort=True,
            )
        orchestrator = ClusterOrchestrator(spec, state.artifacts, build_client(spec))
        failed = orchestrator.destroy()

    if failed:
        ids = ", ".join(str(i) for i in failed)
        console.print(f"[yellow]Warning:[/yellow] Could not delete servers: {ids}")
    console.print("[green]✓ Cluster destroyed successfully[/green]")


@app.command()
def status(ctx: typer.Context) -> None:
    """Show cluster nodes grouped by pool, and Cilium pods if available."""
    from talos_provisioner.orchestrator import ClusterOrchestrator

    state: CliContext = ctx.obj
    with handle_errors("Status"):
        spec = state.load_spec()
        orchestrator = ClusterOrchestrator(spec, state.artifacts, build_client(spec))
        cluster = orchestrator.status()

    if cluster.node_count == 0:
        console.print(f"[yellow]No servers found for cluster: {cluster.cluster_name}[/yellow]")
        return

    console.print(f"[bold cyan]Cluster:[/bold cyan] {cluster.cluster_name}")
    for pool in cluster.pools:
        title = f"{pool.role} pool {pool.name} ({len(pool.nodes)}/{pool.configured} nodes)"
        console.print(nodes_table(title, pool.nodes))
    if cluster.unassigned:
        console.print(nodes_table("Nodes outside configured pools", cluster.unassigned))

    if cluster.cilium_error:
        console.print(f"[yellow]Could not get Cilium status:[/yellow] {cluster.cilium_error}")
    elif cluster.cilium_pods is not None:
        table = Table(title="Cilium Pods")
        table.add_column("Name", style="cyan")
        table.add_column("Node", style="yellow")
        table.add_column("Status", style="green")
        for row in cluster.cilium_pods:
            table.add_row(*row)
        console.print(table)


@app.command()
def scale(
    ctx: typer.Context,
    role: RoleChoice = typer.Argument(..., help="Node type to scale"),
    count: int = typer.Option(..., "--count", "-n", help="Target number of nodes in the pool"),
    pool: str | None = typer.Option(
        None, "--pool", "-p", help="Node pool name (first pool of the role if omitted)"
    ),
) -> None:
    """
    Scale a node pool to a target size.

    Scaling down removes the newest nodes one at a time. Control plane
    removals are refused if they would break etcd quorum.
    """
    from talos_provisioner.scaling import ScalingProtocol

    state: CliContext = ctx.obj
    with handle_errors("Scale"):
        spec = state.load_spec()
        protocol = ScalingProtocol(spec, state.artifacts, build_client(spec))
        result = protocol.scale(NodeRole(role.value), count, pool)

    if not result.changed:
        console.print(
            f"Pool {result.pool} already has {result.previous_count} node(s), nothing to do"
        )
        return

    for name in result.added:
        console.print(f"[green]+[/green] {name}")
    for name in result.removed:
        console.print(f"[red]-[/red] {name}")
    for warning in result.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")
    console.print(
        f"[green]✓ Scaled {result.role} pool {result.pool}: "
        f"{result.previous_count} -> {result.target_count}[/green]"
    )


@app.command()
def upgrade(
    talos_version: str | None = typer.Option(None, "--talos-version", help="New Talos version"),
    kubernetes_version: str | None = typer.Option(
        None, "--kubernetes-version", help="New Kubernetes version"
    ),
) -> None:
    """Upgrade the cluster (not implemented yet)."""
    console.print("[red]Error:[/red] Cluster upgrade is not yet implemented")
    raise typer.Exit(code=1)


@app.command("deploy-nginx")
def deploy_nginx(ctx: typer.Context) -> None:
    """Deploy nginx exposed through the Gateway API."""
    from talos_provisioner.kubernetes import apply_manifest

    state: CliContext = ctx.obj
    with handle_errors("Deploy nginx"):
        state.load_spec()
        kubeconfig = state.artifacts.require(
            KUBECONFIG, "Please create the cluster first with 'talos-prov create'"
        )
        for manifest in NGINX_MANIFESTS:
            path = Path(manifest)
            if not path.exists():
                raise ArtifactError(f"{manifest} not found in current directory")
            apply_manifest(path, kubeconfig)

    console.print("[green]✓ nginx deployed successfully with Gateway API![/green]")
    console.print("\nTo check the status:")
    console.print("  kubectl get pods")
    console.print("  kubectl get gateway")
    console.print("  kubectl get httproute")


if __name__ == "__main__":
    app()
