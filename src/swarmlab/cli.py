"""Command-line interface for swarmlab.

Thin wrapper over the orchestrator: loads settings and the fleet file,
wires the cluster actions, and renders reports with rich.

Exit codes:
    0  all stacks deployed and healthy
    1  degraded (some stacks or machines failed)
    2  fatal (bad fleet file, dependency error, manager bootstrap failure)
"""

import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from swarmlab import __version__
from swarmlab.click_group import SwarmlabGroup
from swarmlab.cluster_actions import ClusterActionError, DockerSwarmActions
from swarmlab.cluster_reconciler import ClusterReconciler, ManagerBootstrapError
from swarmlab.config_manager import (
    ConfigError,
    ConfigManager,
    FleetLoader,
    SwarmlabConfig,
)
from swarmlab.dependency_resolver import DependencyError, DependencyResolver
from swarmlab.deployment_executor import DeploymentExecutor
from swarmlab.health_gate import HealthGate
from swarmlab.models import FleetSpec
from swarmlab.orchestrator import (
    DeploymentOrchestrator,
    DeployOptions,
    RunReport,
    RunStatus,
)
from swarmlab.remote_exec import RemoteExecutor

logger = logging.getLogger(__name__)
console = Console()

_STATUS_STYLE = {
    RunStatus.HEALTHY: "[green]healthy[/green]",
    RunStatus.DEGRADED: "[yellow]degraded[/yellow]",
    RunStatus.FATAL: "[red]fatal[/red]",
}


def _split_names(value: str | None) -> frozenset[str]:
    if not value:
        return frozenset()
    return frozenset(name.strip() for name in value.split(",") if name.strip())


def _load_settings(ctx: click.Context) -> SwarmlabConfig:
    try:
        return ConfigManager.load_config(ctx.obj.get("config_path"))
    except ConfigError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(RunStatus.FATAL.value)


def _load_fleet(ctx: click.Context, settings: SwarmlabConfig) -> FleetSpec:
    fleet_path = ConfigManager.resolve_fleet_file(ctx.obj.get("fleet_file"), settings)
    try:
        return FleetLoader.load(fleet_path)
    except ConfigError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(RunStatus.FATAL.value)


def _build_actions(
    settings: SwarmlabConfig, env: dict[str, str] | None = None
) -> DockerSwarmActions:
    key_path = Path(settings.ssh_key_path).expanduser() if settings.ssh_key_path else None
    return DockerSwarmActions(
        remote=RemoteExecutor(key_path=key_path), docker_host=settings.docker_host, env=env
    )


def _build_reconciler(settings: SwarmlabConfig, actions: DockerSwarmActions) -> ClusterReconciler:
    try:
        cached_token = ConfigManager.load_join_token(settings.token_file)
    except ConfigError as e:
        logger.warning(f"Ignoring cached join token: {e}")
        cached_token = None
    return ClusterReconciler(
        actions,
        max_workers=settings.max_parallel,
        default_ssh_user=settings.default_ssh_user or "root",
        preflight=settings.preflight_checks,
        fallback_token=cached_token,
    )


def _build_orchestrator(
    settings: SwarmlabConfig, fleet: FleetSpec, max_attempts: int | None = None
) -> DeploymentOrchestrator:
    if max_attempts is not None:
        settings.max_attempts = max_attempts
    try:
        settings.validate()
        policy = settings.retry_policy()
        env = ConfigManager.load_env(settings, fleet.source)
    except ConfigError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(RunStatus.FATAL.value)

    actions = _build_actions(settings, env)
    gate = HealthGate(interval=settings.health_interval)
    executor = DeploymentExecutor(
        actions,
        policy,
        settle_delay=settings.settle_delay,
        health_gate=gate,
        health_budget=settings.health_budget,
    )
    return DeploymentOrchestrator(
        actions,
        executor,
        _build_reconciler(settings, actions),
        gate,
        network_name=settings.network_name,
    )


def _print_machines(report: RunReport) -> None:
    if report.machines is None or not report.machines.outcomes:
        return
    table = Table(title="Machines")
    table.add_column("Machine", style="cyan")
    table.add_column("Actions")
    table.add_column("Outcome")
    for outcome in report.machines.outcomes:
        if outcome.skipped:
            result = f"[dim]skipped: {outcome.skipped}[/dim]"
        elif outcome.success:
            result = "[green]ok[/green]"
        else:
            result = f"[red]{outcome.error}[/red]"
        table.add_row(outcome.machine_id, ", ".join(outcome.actions_taken) or "-", result)
    console.print(table)


def _print_deploy_report(report: RunReport) -> None:
    _print_machines(report)

    for phase in report.phases:
        table = Table(title=f"Phase: {phase.phase.value}")
        table.add_column("Stack", style="cyan")
        table.add_column("Outcome")
        table.add_column("Attempts", justify="right")
        table.add_column("Health")

        health = {h.stack_name: h for h in phase.health}
        for unit in phase.units:
            outcome = "[green]success[/green]" if unit.succeeded else "[red]failed[/red]"
            stack_health = health.get(unit.stack_name)
            if stack_health is None:
                health_text = "-"
            elif stack_health.healthy:
                health_text = "[green]healthy[/green]"
            else:
                health_text = f"[yellow]{'; '.join(stack_health.problems())}[/yellow]"
            table.add_row(unit.stack_name, outcome, str(unit.attempt), health_text)
        console.print(table)

        for unit in phase.units:
            if not unit.succeeded:
                console.print(f"[red]{unit.stack_name} diagnostics:[/red]")
                for line in unit.diagnostics:
                    console.print(f"  {line}", markup=False)

    if report.fatal_error:
        console.print(f"[red]Fatal: {report.fatal_error}[/red]")
    console.print(f"Result: {_STATUS_STYLE[report.status]}")


@click.group(
    cls=SwarmlabGroup,
    invoke_without_command=True,
    context_settings={"help_option_names": ["--help", "-h"]},
)
@click.option("--fleet", "-f", "fleet_file", help="Fleet file (default: ./homelab.yaml)")
@click.option("--config", "config_path", help="Settings file (default: ~/.swarmlab/config.toml)")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.version_option(version=__version__)
@click.pass_context
def main(
    ctx: click.Context, fleet_file: str | None, config_path: str | None, verbose: bool
) -> None:
    """swarmlab - declarative Docker Swarm fleet deployment.

    Reads machines and services from a fleet file, converges swarm
    membership and node labels, then deploys stacks phase by phase in
    dependency order with retries, diagnosis and health verification.

    \b
    COMMANDS:
        deploy        Reconcile the cluster and deploy all stacks
        teardown      Remove stacks in reverse order and dismantle the swarm
        resolve       Show the deployment order
        dependents    Show services depending on a service
        reconcile     Converge swarm membership and labels only
        status        Show nodes and stack health
        config        Show or change settings

    \b
    EXAMPLES:
        $ swarmlab deploy
        $ swarmlab deploy --skip-infra --only nextcloud,gitea
        $ swarmlab resolve --graph docs/dependency-graph.md
        $ swarmlab teardown --dry-run

    \b
    CONFIGURATION:
        Settings file: ~/.swarmlab/config.toml
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO, format="%(message)s"
    )
    ctx.ensure_object(dict)
    ctx.obj["fleet_file"] = fleet_file
    ctx.obj["config_path"] = config_path

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        ctx.exit(0)


@main.command()
@click.option("--skip-infra", is_flag=True, help="Skip reconciliation and infrastructure stacks")
@click.option("--only", help="Comma-separated services to deploy")
@click.option("--skip", "exclude", help="Comma-separated services to leave out")
@click.option("--parallel", type=int, help="Max concurrent stack deployments")
@click.option("--max-attempts", type=int, help="Attempts per stack before giving up")
@click.option("--json", "as_json", is_flag=True, help="Print the run report as JSON")
@click.pass_context
def deploy(
    ctx: click.Context,
    skip_infra: bool,
    only: str | None,
    exclude: str | None,
    parallel: int | None,
    max_attempts: int | None,
    as_json: bool,
) -> None:
    """Reconcile the cluster and deploy every stack.

    \b
    Phases run in order: infrastructure, core, applications, monitoring.
    Exit code: 0 healthy, 1 degraded, 2 fatal.
    """
    settings = _load_settings(ctx)
    fleet = _load_fleet(ctx, settings)

    max_parallel = parallel if parallel is not None else settings.max_parallel
    if max_parallel < 1:
        raise click.BadParameter("must be >= 1", param_hint="--parallel")

    orchestrator = _build_orchestrator(settings, fleet, max_attempts)
    options = DeployOptions(
        skip_infrastructure=skip_infra,
        only=_split_names(only),
        exclude=_split_names(exclude),
        max_parallel=max_parallel,
        health_budget=settings.health_budget,
    )

    report = orchestrator.deploy(fleet, options)

    if report.machines is not None and report.machines.join_token:
        try:
            ConfigManager.save_join_token(report.machines.join_token, settings.token_file)
        except ConfigError as e:
            logger.warning(f"Could not cache join token: {e}")

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        _print_deploy_report(report)
    sys.exit(report.status.value)


@main.command()
@click.option("--stack", "stacks", multiple=True, help="Only remove this stack (repeatable)")
@click.option("--keep-nodes", is_flag=True, help="Leave swarm membership untouched")
@click.option("--dry-run", is_flag=True, help="Show what would be removed")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.pass_context
def teardown(
    ctx: click.Context, stacks: tuple[str, ...], keep_nodes: bool, dry_run: bool, yes: bool
) -> None:
    """Remove stacks in reverse dependency order, then what they leave behind."""
    settings = _load_settings(ctx)
    fleet = _load_fleet(ctx, settings)
    orchestrator = _build_orchestrator(settings, fleet)
    selected = list(stacks) if stacks else None

    if dry_run:
        try:
            plan = orchestrator.plan_teardown(fleet, remove_nodes=not keep_nodes, stacks=selected)
        except (DependencyError, ValueError) as e:
            console.print(f"[red]Error: {e}[/red]")
            sys.exit(RunStatus.FATAL.value)

        console.print("[bold]Would remove stacks:[/bold]")
        for position, name in enumerate(plan.stacks, 1):
            console.print(f"  {position}. {name}")
        if plan.networks:
            console.print("[bold]Would remove networks:[/bold]")
            for name in plan.networks:
                console.print(f"  - {name}")
        for machine_id, volumes in plan.volumes.items():
            console.print(f"[bold]Would remove volumes on {machine_id}:[/bold]")
            for volume in volumes:
                console.print(f"  - {volume}")
        for warning in plan.warnings:
            console.print(f"[yellow]{warning}[/yellow]")
        if plan.remove_nodes:
            console.print("[bold]Would remove all workers except the current node[/bold]")
        return

    count = len(selected) if selected else len(fleet.services)
    if not yes and not click.confirm(f"Remove {count} stacks?", default=False):
        console.print("Cancelled.")
        return

    report = orchestrator.teardown(fleet, remove_nodes=not keep_nodes, stacks=selected)

    for name in report.removed_stacks:
        console.print(f"[green]Removed stack {name}[/green]")
    for name in report.failed_removals:
        console.print(f"[red]Failed to remove stack {name}[/red]")
    for name in report.removed_networks:
        console.print(f"[green]Removed network {name}[/green]")
    for entry in report.removed_volumes:
        console.print(f"[green]Removed volume {entry}[/green]")
    for warning in report.warnings:
        console.print(f"[yellow]{warning}[/yellow]")
    _print_machines(report)
    if report.fatal_error:
        console.print(f"[red]Fatal: {report.fatal_error}[/red]")
    sys.exit(report.status.value)


@main.command()
@click.option("--reverse", is_flag=True, help="Show shutdown order instead")
@click.option("--graph", "graph_file", type=click.Path(dir_okay=False), help="Write Markdown graph")
@click.pass_context
def resolve(ctx: click.Context, reverse: bool, graph_file: str | None) -> None:
    """Show the deployment order of the fleet's services."""
    settings = _load_settings(ctx)
    fleet = _load_fleet(ctx, settings)

    try:
        order = DependencyResolver.resolve(fleet.services)
        DependencyResolver.check_phases(fleet.services)
        graph = DependencyResolver.render_dependency_graph(fleet.services) if graph_file else None
    except DependencyError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(RunStatus.FATAL.value)

    if reverse:
        order = DependencyResolver.reverse_order(order)

    table = Table(title="Shutdown Order" if reverse else "Startup Order")
    table.add_column("#", justify="right")
    table.add_column("Service", style="cyan")
    table.add_column("Phase")
    table.add_column("Priority", justify="right")
    table.add_column("Depends On")
    for position, name in enumerate(order, 1):
        service = fleet.services[name]
        table.add_row(
            str(position),
            name,
            service.phase.value,
            str(service.startup_priority),
            ", ".join(sorted(service.depends_on)) or "-",
        )
    console.print(table)

    if graph_file and graph is not None:
        Path(graph_file).write_text(graph)
        console.print(f"Dependency graph written to {graph_file}")


@main.command()
@click.argument("service")
@click.pass_context
def dependents(ctx: click.Context, service: str) -> None:
    """Show services that directly depend on SERVICE."""
    settings = _load_settings(ctx)
    fleet = _load_fleet(ctx, settings)

    if service not in fleet.services:
        console.print(f"[red]Error: Unknown service: {service}[/red]")
        sys.exit(1)

    names = sorted(DependencyResolver.dependents(fleet.services, service))
    if not names:
        console.print(f"No services depend on {service}")
        return
    console.print(f"Services depending on [cyan]{service}[/cyan]:")
    for name in names:
        console.print(f"  - {name}")


@main.command()
@click.option("--dry-run", is_flag=True, help="Only show the planned actions")
@click.pass_context
def reconcile(ctx: click.Context, dry_run: bool) -> None:
    """Converge swarm membership and node labels to the fleet file."""
    settings = _load_settings(ctx)
    fleet = _load_fleet(ctx, settings)
    try:
        settings.validate()
    except ConfigError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(RunStatus.FATAL.value)
    reconciler = _build_reconciler(settings, _build_actions(settings))
    machines = list(fleet.machines.values())

    if dry_run:
        try:
            plan = reconciler.plan(machines)
        except ClusterActionError as e:
            console.print(f"[red]Error: {e}[/red]")
            sys.exit(RunStatus.FATAL.value)

        if plan.is_converged:
            console.print("[green]Cluster already converged[/green]")
            return
        if plan.bootstrap is not None:
            console.print(f"Would bootstrap swarm on [cyan]{plan.bootstrap.id}[/cyan]")
        table = Table(title="Planned Actions")
        table.add_column("Machine", style="cyan")
        table.add_column("Actions")
        for machine_plan in plan.machines:
            if machine_plan.skip_reason:
                text = f"[dim]skip: {machine_plan.skip_reason}[/dim]"
            else:
                text = ", ".join(a.describe() for a in machine_plan.actions) or "-"
            table.add_row(machine_plan.machine_id, text)
        console.print(table)
        return

    try:
        report = reconciler.reconcile(machines)
    except ManagerBootstrapError as e:
        console.print(f"[red]Fatal: {e}[/red]")
        sys.exit(RunStatus.FATAL.value)
    except ClusterActionError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(RunStatus.FATAL.value)

    if report.join_token:
        try:
            ConfigManager.save_join_token(report.join_token, settings.token_file)
        except ConfigError as e:
            logger.warning(f"Could not cache join token: {e}")

    _print_machines(RunReport(machines=report))
    console.print(report.format_summary())
    sys.exit(RunStatus.HEALTHY.value if report.all_succeeded else RunStatus.DEGRADED.value)


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show swarm nodes and the replica health of every declared stack."""
    settings = _load_settings(ctx)
    fleet = _load_fleet(ctx, settings)
    actions = _build_actions(settings)

    try:
        nodes = actions.list_nodes()
    except ClusterActionError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(RunStatus.FATAL.value)

    node_table = Table(title="Nodes")
    node_table.add_column("Hostname", style="cyan")
    node_table.add_column("Role")
    node_table.add_column("Status")
    node_table.add_column("Labels")
    for node in nodes:
        node_table.add_row(
            node.hostname,
            node.role.value,
            node.status.value,
            ", ".join(sorted(node.current_labels)),
        )
    console.print(node_table)

    executor = DeploymentExecutor(actions)
    health = executor.verify_stacks(sorted(fleet.services))

    stack_table = Table(title="Stacks")
    stack_table.add_column("Stack", style="cyan")
    stack_table.add_column("Health")
    stack_table.add_column("Services")
    for stack in health:
        state = "[green]healthy[/green]" if stack.healthy else "[red]unhealthy[/red]"
        stack_table.add_row(
            stack.stack_name, state, ", ".join(str(s) for s in stack.services) or "-"
        )
    console.print(stack_table)

    if not all(stack.healthy for stack in health):
        sys.exit(RunStatus.DEGRADED.value)


@main.group(name="config")
def config_group() -> None:
    """Show or change swarmlab settings."""
    pass


@config_group.command(name="show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Show current settings."""
    settings = _load_settings(ctx)
    table = Table(title="Settings")
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for key, value in vars(settings).items():
        table.add_row(key, "-" if value is None else str(value))
    console.print(table)


def _coerce_setting(key: str, raw: str) -> Any:
    default = SwarmlabConfig.__dataclass_fields__[key].default
    if isinstance(default, bool):
        lowered = raw.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise click.BadParameter(f"{key} expects true/false", param_hint="VALUE")
    try:
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
    except ValueError as e:
        raise click.BadParameter(f"{key} expects a number", param_hint="VALUE") from e
    return raw


@config_group.command(name="set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx: click.Context, key: str, value: str) -> None:
    """Set a setting, e.g. `swarmlab config set max_attempts 3`."""
    if key not in SwarmlabConfig.__dataclass_fields__:
        valid = ", ".join(SwarmlabConfig.__dataclass_fields__)
        console.print(f"[red]Error: Unknown setting '{key}'. Valid: {valid}[/red]")
        sys.exit(1)

    updates = {key: _coerce_setting(key, value)}
    try:
        ConfigManager.update_config(ctx.obj.get("config_path"), **updates)
    except ConfigError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    console.print(f"[green]Set {key} = {value}[/green]")


if __name__ == "__main__":
    main()
