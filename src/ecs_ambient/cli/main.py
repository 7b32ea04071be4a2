"""Main CLI entry point for ecs-ambient."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ecs_ambient import __version__
from ecs_ambient.core.exceptions import DemoError, StepError
from ecs_ambient.utils.logging import setup_logging

if TYPE_CHECKING:
    from ecs_ambient.clients.aws_client import AWSSessions
    from ecs_ambient.clients.istioctl import IstioctlWrapper
    from ecs_ambient.clients.kubernetes_client import KubernetesClient
    from ecs_ambient.core.config import DemoConfig
    from ecs_ambient.core.models import DeletedResource

console = Console()

DEFAULT_CONFIG = "env-config.sh"


class EcsAmbientContext:
    """Shared context for CLI commands with lazy initialization."""

    def __init__(self, config_path: str):
        """Initialize context with config path.

        Args:
            config_path: Path to configuration file
        """
        self.config_path = config_path
        self._config: DemoConfig | None = None
        self._sessions: AWSSessions | None = None
        self._k8s: KubernetesClient | None = None
        self._istioctl: IstioctlWrapper | None = None

    @property
    def config(self) -> DemoConfig:
        """Get or create config lazily."""
        if self._config is None:
            from ecs_ambient.core.config import DemoConfig

            self._config = DemoConfig.from_file(self.config_path)
        return self._config

    @property
    def sessions(self) -> AWSSessions:
        """Get or create AWS sessions lazily."""
        if self._sessions is None:
            from ecs_ambient.clients.aws_client import AWSSessions

            self._sessions = AWSSessions(
                region=self.config.aws_region,
                local_profile=self.config.local_account_profile,
                external_profile=self.config.external_account_profile,
            )
        return self._sessions

    @property
    def k8s(self) -> KubernetesClient:
        """Get or create the Kubernetes client for the current context lazily."""
        if self._k8s is None:
            from ecs_ambient.clients.kubernetes_client import KubernetesClient

            self._k8s = KubernetesClient()
        return self._k8s

    @property
    def istioctl(self) -> IstioctlWrapper:
        """Get or create istioctl wrapper lazily."""
        if self._istioctl is None:
            from ecs_ambient.clients.istioctl import IstioctlWrapper

            self._istioctl = IstioctlWrapper(binary=self.config.istioctl)
        return self._istioctl


def _fail(ctx: click.Context, error: Exception) -> None:
    console.print(f"[red]Error: {escape(str(error))}[/red]")
    ctx.exit(1)


def _print_deleted(deleted: list[DeletedResource]) -> None:
    if not deleted:
        console.print("[yellow]Nothing was deleted (resources not found)[/yellow]")
        return
    console.print(f"\n[bold]Deleted resources ({len(deleted)}):[/bold]")
    for resource in deleted:
        console.print(f"  [green]✓[/green] {escape(str(resource))}", highlight=False)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "-c",
    type=click.Path(),
    default=DEFAULT_CONFIG,
    show_default=True,
    help="Path to configuration file (shell or YAML)",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    help="Log level",
)
@click.pass_context
def cli(ctx: click.Context, config: str, log_level: str) -> None:
    """ECS Ambient Mesh demo - provision, test and tear down ECS services in an Istio ambient mesh."""
    setup_logging(level=log_level)

    # Initialize shared context with lazy loading
    ctx.obj = EcsAmbientContext(config_path=config)


@cli.command()
@click.pass_context
def validate(ctx: click.Context) -> None:
    """Validate configuration, credentials and the Istio installation."""
    console.print("[bold magenta]ecs-ambient Validate Command[/bold magenta]\n")
    app = ctx.obj
    ok = True

    console.print("[bold]1. Configuration File[/bold]")
    console.print(f"  Path: {app.config_path}")
    try:
        config = app.config
    except DemoError as e:
        console.print(f"  [red]✗ Config file invalid: {escape(str(e))}[/red]\n")
        ctx.exit(1)
        return

    required = ["CLUSTER_NAME", "AWS_REGION", "LOCAL_ACCOUNT", "LOCAL_ACCOUNT_PROFILE"]
    if config.layout.is_multi_account:
        required += ["EXTERNAL_ACCOUNT", "EXTERNAL_ACCOUNT_PROFILE"]
    missing = config.missing(*required)
    if missing:
        console.print(f"  [red]✗ Missing variables: {', '.join(missing)}[/red]\n")
        ctx.exit(1)
        return
    console.print(f"  [green]✓ Config file valid (scenario {config.scenario})[/green]\n")

    console.print("[bold]2. AWS Credentials[/bold]")
    profiles = [config.local_account_profile]
    if config.layout.is_multi_account:
        profiles.append(config.external_account_profile)
    for profile in profiles:
        if app.sessions.for_profile(profile).has_valid_credentials():
            console.print(f"  [green]✓ {profile}[/green]")
        else:
            console.print(f"  [red]✗ {profile}: credentials invalid, run 'aws sso login --profile {profile}'[/red]")
            ok = False
    console.print()

    console.print("[bold]3. EKS Cluster[/bold]")
    try:
        cluster = app.sessions.local.describe_eks_cluster(config.cluster_name)
    except DemoError as e:
        cluster = None
        console.print(f"  [red]✗ {escape(str(e))}[/red]")
    if cluster is None:
        console.print(f"  [red]✗ Cluster {config.cluster_name} not found[/red]\n")
        ok = False
    else:
        console.print(f"  [green]✓ {config.cluster_name} ({cluster.get('status')})[/green]\n")

    console.print("[bold]4. Istio[/bold]")
    try:
        if not app.k8s.namespace_exists("istio-system"):
            console.print("  [red]✗ Namespace istio-system not found[/red]")
            ok = False
        else:
            istiod = app.k8s.get_deployment("istiod", "istio-system")
            ready = (istiod.status.ready_replicas or 0) if istiod is not None else 0
            if ready > 0:
                console.print(f"  [green]✓ istiod ready ({ready} replicas)[/green]")
            else:
                console.print("  [red]✗ istiod not ready[/red]")
                ok = False
    except DemoError as e:
        console.print(f"  [red]✗ Kubernetes unreachable: {escape(str(e))}[/red]")
        ok = False

    if ok:
        console.print("\n[bold green]✓ Validation complete![/bold green]")
    else:
        console.print("\n[bold red]✗ Validation failed[/bold red]")
        ctx.exit(1)


@cli.command("setup-infra")
@click.pass_context
def setup_infra(ctx: click.Context) -> None:
    """Set up networking and istiod IAM for the configured scenario."""
    from ecs_ambient.provisioning.network import setup_infrastructure

    app = ctx.obj
    console.print(f"[bold cyan]Setting up infrastructure for scenario {app.config.scenario}[/bold cyan]\n")
    try:
        failed = setup_infrastructure(app.config, app.sessions)
    except DemoError as e:
        _fail(ctx, e)
        return

    if failed:
        console.print("[yellow]Completed with warnings. Failed steps:[/yellow]")
        for step in failed:
            console.print(f"  [yellow]- {escape(step)}[/yellow]")
    else:
        console.print("[green]✓ Infrastructure setup complete[/green]")
    if app.config.path is not None:
        console.print(f"Generated values saved to {app.config.path}")


@cli.command("create-iam")
@click.pass_context
def create_iam(ctx: click.Context) -> None:
    """Create the ECS task roles (local, and external for scenario 3)."""
    from ecs_ambient.provisioning.iam import create_task_roles

    app = ctx.obj
    try:
        external = app.sessions.external if app.config.layout.is_multi_account else None
        arns = create_task_roles(app.config, app.sessions.local, external)
    except DemoError as e:
        _fail(ctx, e)
        return

    for name, arn in arns.items():
        console.print(f"[green]✓ {name}={arn}[/green]", highlight=False)


@cli.command("deploy-ecs")
@click.option("--debug", is_flag=True, help="Write a debug log to deploy-ecs-<timestamp>.log")
@click.pass_context
def deploy_ecs(ctx: click.Context, debug: bool) -> None:
    """Deploy the ECS clusters and the shell-task and echo-service services."""
    from ecs_ambient.provisioning import ecs

    if debug:
        log_file = f"deploy-ecs-{datetime.now().strftime('%Y%m%d-%H%M%S')}.log"
        setup_logging(level="DEBUG", output=log_file)
        console.print(f"Debug log: {log_file}")

    app = ctx.obj
    try:
        result = ecs.deploy_ecs(app.config, app.sessions)
    except DemoError as e:
        _fail(ctx, e)
        return

    table = Table(title="ECS Deployment Summary")
    table.add_column("Cluster", style="cyan")
    table.add_column("Account", style="magenta")
    table.add_column("Services", style="green")
    for cluster, count in result.service_counts.items():
        table.add_row(cluster, result.cluster_accounts.get(cluster, ""), str(count))
    console.print(table)

    if not result.succeeded:
        console.print("[red]Failed services:[/red]")
        for service in result.failed_services:
            console.print(f"  [red]- {escape(service)}[/red]")
        console.print(f"Run 'ecs-ambient -c {app.config_path} diagnose' for details")
        ctx.exit(1)
    console.print("[green]✓ All ECS services deployed[/green]")


@cli.command("create-namespaces")
@click.pass_context
def create_namespaces(ctx: click.Context) -> None:
    """Create the ambient namespaces and service accounts for the ECS clusters."""
    from ecs_ambient.provisioning.mesh import create_namespaces as create

    app = ctx.obj
    try:
        namespaces = create(app.config, app.k8s)
    except DemoError as e:
        _fail(ctx, e)
        return
    for namespace in namespaces:
        console.print(f"[green]✓ {namespace}[/green]")


@cli.command("add-to-mesh")
@click.pass_context
def add_to_mesh(ctx: click.Context) -> None:
    """Register the ECS services with istiod."""
    from ecs_ambient.provisioning.mesh import add_services_to_mesh, service_hostnames

    app = ctx.obj
    try:
        failed = add_services_to_mesh(app.config, app.istioctl)
    except DemoError as e:
        _fail(ctx, e)
        return

    for name in failed:
        console.print(f"[yellow]⚠ Failed to add {escape(name)}[/yellow]")
    console.print("\n[bold]Services are reachable in the mesh as:[/bold]")
    for hostname in service_hostnames(app.config):
        console.print(f"  {hostname}", highlight=False)


@cli.command()
@click.option("--cluster", help="ECS cluster (default: cluster 3 for scenario 3, else cluster 1)")
@click.option("--service", default="echo-service", show_default=True, help="ECS service")
@click.option("--profile", help="AWS profile owning the cluster")
@click.pass_context
def diagnose(ctx: click.Context, cluster: str | None, service: str, profile: str | None) -> None:
    """Explain why an ECS service failed to deploy."""
    from ecs_ambient.provisioning.diagnose import diagnose_service_failure

    app = ctx.obj
    config = app.config
    number = max(config.layout.all_clusters)
    cluster = cluster or config.ecs_cluster_name(number)
    profile = profile or config.profile_for_cluster(number)

    try:
        diagnosis = diagnose_service_failure(config, app.sessions.for_profile(profile), cluster, service)
    except DemoError as e:
        _fail(ctx, e)
        return

    console.rule(f"Diagnosing {service} in {cluster}")
    console.print("[bold]1. Cluster[/bold]")
    if diagnosis.cluster_status is None:
        console.print(f"  [red]✗ Cluster {cluster} not found[/red]")
    else:
        table = Table()
        for key in diagnosis.cluster_status:
            table.add_column(key)
        table.add_row(*(str(v) for v in diagnosis.cluster_status.values()))
        console.print(table)

    console.print("[bold]2. Service[/bold]")
    if diagnosis.service_exists:
        for key, value in (diagnosis.service_status or {}).items():
            console.print(f"  {key}: {value}")
    else:
        console.print("  [red]✗ Service does not exist[/red]")
        for failure in diagnosis.service_failures:
            console.print(f"  {escape(str(failure))}", highlight=False)

    console.print("[bold]3. Recent events[/bold]")
    for created, message in diagnosis.events:
        console.print(f"  {created}  {escape(message)}", highlight=False)

    console.print("[bold]4. Task definition[/bold]")
    if diagnosis.task_definition is not None:
        console.print(f"  [green]✓ {escape(str(diagnosis.task_definition))}[/green]", highlight=False)
    else:
        console.print(f"  [red]✗ {service}-definition not registered[/red]")
        for arn in diagnosis.available_task_definitions:
            console.print(f"  available: {arn}", highlight=False)

    console.print("[bold]5. IAM role[/bold]")
    console.print(f"  {diagnosis.task_role_arn or 'EXTERNAL_TASK_ROLE_ARN not set'}: {diagnosis.role_state}")

    console.print("[bold]6. Network[/bold]")
    for subnet, exists in diagnosis.subnets.items():
        mark = "[green]✓[/green]" if exists else "[red]✗[/red]"
        console.print(f"  {mark} subnet {subnet}")
    if diagnosis.security_group:
        mark = "[green]✓[/green]" if diagnosis.security_group_details else "[red]✗[/red]"
        console.print(f"  {mark} security group {diagnosis.security_group}")

    if not diagnosis.service_exists:
        console.rule("Likely causes")
        for number, (cause, check) in enumerate(diagnosis.likely_causes(), start=1):
            console.print(f"  {number}. {cause}")
            console.print(f"     {escape(check)}", highlight=False)


@cli.command()
@click.option("--yes", "-y", is_flag=True, help="Skip the confirmation prompt")
@click.option("--delete-eks", "-e", is_flag=True, help="Also delete the EKS cluster")
@click.option("--no-wait-for-deletion", is_flag=True, help="Do not wait for EKS stacks to finish deleting")
@click.pass_context
def cleanup(ctx: click.Context, yes: bool, delete_eks: bool, no_wait_for_deletion: bool) -> None:
    """Delete every resource the demo created."""
    from ecs_ambient.provisioning.cleanup import planned_deletions, run_cleanup

    app = ctx.obj
    config = app.config
    console.print("[bold red]The following resources will be deleted:[/bold red]")
    for line in planned_deletions(config, delete_eks):
        console.print(f"  - {line}", highlight=False)

    if not yes:
        answer = console.input("\nType 'yes' to continue: ")
        if answer.strip() != "yes":
            console.print("[yellow]Cleanup cancelled[/yellow]")
            return

    try:
        result = run_cleanup(
            config,
            app.sessions,
            app.k8s,
            app.istioctl,
            delete_eks=delete_eks,
            wait_for_deletion=not no_wait_for_deletion,
        )
    except DemoError as e:
        _fail(ctx, e)
        return

    _print_deleted(result.deleted)
    console.print("[green]✓ Cleanup complete[/green]")


@cli.command("test-scenario")
@click.argument("scenario", type=click.IntRange(1, 4))
@click.option("--delete", "-d", is_flag=True, help="Delete all resources after the tests")
@click.option("--tests-only", "-t", is_flag=True, help="Skip setup and only run the tests")
@click.option("--start-from", "-s", help="Step name or number to start from")
@click.option("--stop-after", help="Step name or number to stop after")
@click.option("--list-steps", "-l", is_flag=True, help="List the steps and their status")
@click.option("--reset", is_flag=True, help="Forget previous progress")
@click.pass_context
def test_scenario(
    ctx: click.Context,
    scenario: int,
    delete: bool,
    tests_only: bool,
    start_from: str | None,
    stop_after: str | None,
    list_steps: bool,
    reset: bool,
) -> None:
    """Provision and test a scenario (1: single cluster, 2: two clusters, 3: cross-account, 4: multicloud)."""
    from ecs_ambient.testing.progress import ProgressTracker, progress_file
    from ecs_ambient.testing.results import TestRecorder
    from ecs_ambient.testing.scenarios import ScenarioRunner

    app = ctx.obj
    config = app.config
    config.scenario = scenario

    runner = ScenarioRunner(config, app.sessions, TestRecorder(console), console)
    try:
        tracker = ProgressTracker(
            Path(progress_file(scenario)),
            runner.steps,
            start_from=start_from,
            stop_after=stop_after,
            reset=reset,
            retry_hint=f"ecs-ambient -c {app.config_path} test-scenario {scenario} -s {{step}}",
        )
    except DemoError as e:
        _fail(ctx, e)
        return

    if list_steps:
        tracker.render_steps(console)
        return

    console.rule(f"Scenario {scenario}")
    try:
        exit_code = runner.run(tracker, tests_only=tests_only, delete_after=delete)
    except StepError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        if not delete:
            console.print("\nTo remove what was created so far:")
            for line in runner.manual_cleanup_hint(app.config_path):
                console.print(f"  {line}", highlight=False)
        ctx.exit(1)
        return
    except DemoError as e:
        _fail(ctx, e)
        return
    ctx.exit(exit_code)


@cli.command()
@click.option("--exercise", "-x", default="all", show_default=True, help="Exercise 1-7 (or 6.N), or 'all'")
@click.option("--cleanup/--keep", "cleanup_policies", default=None, help="Remove policies after the summary")
@click.option("--non-interactive", is_flag=True, help="Do not pause between exercises")
@click.pass_context
def authz(ctx: click.Context, exercise: str, cleanup_policies: bool | None, non_interactive: bool) -> None:
    """Run the authorization policy workshop exercises (scenario 2)."""
    from ecs_ambient.testing.authz import AuthzWorkshop
    from ecs_ambient.testing.connectivity import ConnectivityTester
    from ecs_ambient.testing.results import TestRecorder

    app = ctx.obj
    recorder = TestRecorder(console)
    try:
        tester = ConnectivityTester(app.config, app.sessions, recorder, app.k8s)
        workshop = AuthzWorkshop(app.config, app.k8s, tester, console)
        if exercise.removeprefix("6.") == "7" and cleanup_policies is not None:
            workshop.exercise_7(cleanup_policies)
        else:
            workshop.run_exercises(exercise, interactive=not non_interactive)
    except DemoError as e:
        _fail(ctx, e)
        return

    if recorder.results:
        ctx.exit(recorder.summary())


@cli.command("call-from-ecs")
@click.argument("url")
@click.argument("data", required=False)
@click.option("--origin-cluster", help="ECS cluster to call from (default: cluster 1)")
@click.option("--profile", help="AWS profile (default: the account owning the origin cluster)")
@click.pass_context
def call_from_ecs(
    ctx: click.Context, url: str, data: str | None, origin_cluster: str | None, profile: str | None
) -> None:
    """curl URL from the shell container of an ECS task (POST when DATA is given)."""
    from ecs_ambient.testing.connectivity import call_from_ecs as call
    from ecs_ambient.testing.connectivity import format_ecs_response

    app = ctx.obj
    try:
        output = call(app.config, app.sessions, url, origin_cluster=origin_cluster, data=data, profile=profile)
    except DemoError as e:
        _fail(ctx, e)
        return
    click.echo(format_ecs_response(output, post=data is not None))


if __name__ == "__main__":
    cli()
