"""Main entry point for the stack bootstrap CLI."""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import click
import yaml
from pydantic import ValidationError
from rich import box
from rich.console import Console
from rich.live import Live
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table
from rich.text import Text

from stack_bootstrap import __version__
from stack_bootstrap.aws.cloudformation import StackStatusProber
from stack_bootstrap.aws.credentials import CredentialResolver, get_current_identity
from stack_bootstrap.aws.deployer import StackDeployer
from stack_bootstrap.aws.session import AwsClientFactory
from stack_bootstrap.config import Settings, get_settings
from stack_bootstrap.core.contracts import (
    AuthContext,
    DeploymentPlan,
    DeploymentSummary,
    ParsedPipeline,
    ProgressStatus,
    StackAction,
    StackPreview,
)
from stack_bootstrap.core.errors import BootstrapError, PipelineFileError
from stack_bootstrap.core.executor import DeploymentExecutor
from stack_bootstrap.core.planner import PlanBuilder
from stack_bootstrap.core.progress import FanOutProgressSink, LoggingProgressSink, ProgressRegistry
from stack_bootstrap.core.templates import DirectoryTemplateProvider
from stack_bootstrap.merge import default_registry

console = Console()

STATUS_STYLES = {
    ProgressStatus.PENDING: "dim",
    ProgressStatus.IN_PROGRESS: "yellow",
    ProgressStatus.COMPLETE: "green",
    ProgressStatus.FAILED: "red",
    ProgressStatus.ROLLBACK: "magenta",
}


def configure_logging(level: str) -> None:
    """Route log records through rich so they interleave with live output."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=True)],
        force=True,
    )
    # boto chatter drowns out the deployment log at DEBUG
    for name in ("boto3", "botocore", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)


def load_pipelines(path: Path) -> list[ParsedPipeline]:
    """Load already-parsed pipeline records from a YAML or JSON file.

    The file holds either a list of pipelines or a mapping with a
    ``pipelines`` key.

    Raises:
        PipelineFileError: The file is unreadable or malformed.
    """
    try:
        document = yaml.safe_load(path.read_text())
    except OSError as e:
        raise PipelineFileError(f"Cannot read pipeline file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise PipelineFileError(f"Pipeline file {path} is not valid YAML/JSON: {e}") from e

    if isinstance(document, dict):
        document = document.get("pipelines")
    if not isinstance(document, list) or not document:
        raise PipelineFileError(f"Pipeline file {path} contains no pipelines")

    try:
        return [ParsedPipeline.model_validate(record) for record in document]
    except ValidationError as e:
        raise PipelineFileError(f"Invalid pipeline record in {path}:\n{e}") from e


def print_banner(auth: AuthContext) -> None:
    """Print the application banner."""
    banner = Text()
    banner.append("Stack Bootstrap", style="bold blue")
    banner.append(f" v{__version__}\n", style="dim")
    banner.append(f"Org {auth.org_slug} / CI/CD {auth.cicd_account_id} ({auth.cicd_region})", style="italic")

    console.print(Panel(banner, title="[bold]stack-bootstrap[/bold]", border_style="blue"))


# =============================================================================
# Rendering
# =============================================================================


def plan_table(plan: DeploymentPlan) -> Table:
    table = Table(title="Deployment Plan", box=box.SIMPLE)
    table.add_column("Phase", justify="center")
    table.add_column("Kind", style="cyan")
    table.add_column("Stack")
    table.add_column("Account")
    table.add_column("Region")
    table.add_column("Action")

    for phase, stacks in (("1", plan.phase_one), ("2", plan.phase_two)):
        for stack in stacks:
            action = (
                "[yellow]Create[/yellow]" if stack.action == StackAction.CREATE else "[green]Update[/green]"
            )
            table.add_row(phase, stack.stack_kind.value, stack.stack_name, stack.account_id, stack.region, action)
    return table


def preview_table(previews: list[StackPreview]) -> Table:
    table = Table(title="Change Preview", box=box.SIMPLE)
    table.add_column("Stack", style="cyan")
    table.add_column("Account")
    table.add_column("Changes")

    for preview in previews:
        if preview.error:
            detail = f"[red]{escape(preview.error)}[/red]"
        elif preview.will_create:
            detail = "[yellow]stack will be created[/yellow]"
        elif not preview.changes:
            detail = "[dim]no changes[/dim]"
        else:
            detail = "\n".join(
                f"{change.action.value} {change.logical_id} ({change.resource_type})"
                + (" [red]replacement[/red]" if change.replacement == "True" else "")
                for change in preview.changes
            )
        table.add_row(preview.stack_name, preview.account_id, detail)
    return table


def progress_table(registry: ProgressRegistry) -> Table:
    table = Table(title="Deploying", box=box.SIMPLE)
    table.add_column("Stack", style="cyan")
    table.add_column("Account")
    table.add_column("Region")
    table.add_column("Status")
    table.add_column("Resources", justify="right")
    table.add_column("Latest")

    for event in registry.snapshot():
        style = STATUS_STYLES[event.status]
        resources = (
            f"{event.completed_resource_count}/{event.total_resource_count}"
            if event.total_resource_count
            else "-"
        )
        latest = escape(event.failure_reason or event.latest_resource_id or "")
        table.add_row(
            event.stack_name,
            event.account_id,
            event.region,
            f"[{style}]{event.status.value}[/{style}]",
            resources,
            latest,
        )
    return table


def print_summary(summary: DeploymentSummary) -> None:
    lines = [
        f"[bold]Succeeded:[/bold] {summary.success_count}",
        f"[bold]Failed:[/bold] {summary.failed_count}",
    ]
    if summary.aborted:
        lines.append(f"[bold]Skipped:[/bold] {len(summary.skipped_stacks)} (account stack failures)")
    for outcome in summary.failures:
        lines.append(
            f"[red]✗ {outcome.stack_name} ({outcome.account_id}/{outcome.region}): "
            f"{escape(outcome.failure_reason or '')}[/red]"
        )

    console.print(Panel.fit(
        "\n".join(lines),
        title="Deployment Summary",
        border_style="green" if summary.success else "red",
    ))


# =============================================================================
# Orchestration
# =============================================================================


class Bootstrap:
    """Wires the engine components for one CLI invocation."""

    def __init__(self, settings: Settings, progress: Optional[ProgressRegistry] = None):
        self.settings = settings
        self.clients = AwsClientFactory(settings)
        self.resolver = CredentialResolver(self.clients, settings)
        self.prober = StackStatusProber(self.clients)
        self.progress = progress or ProgressRegistry()
        self.deployer = StackDeployer(
            self.clients,
            settings,
            progress=FanOutProgressSink(self.progress, LoggingProgressSink()),
            prober=self.prober,
        )

    def executor(self, auth: AuthContext, templates_dir: Path) -> DeploymentExecutor:
        templates = DirectoryTemplateProvider(
            templates_dir,
            extra={"cicd_account_id": auth.cicd_account_id, "cicd_region": auth.cicd_region},
        )
        return DeploymentExecutor(
            self.deployer,
            self.resolver,
            default_registry(self.settings),
            templates,
            self.clients,
        )

    async def build_plan(
        self,
        pipelines: list[ParsedPipeline],
        auth: AuthContext,
        role_name: Optional[str],
    ) -> tuple[str, DeploymentPlan]:
        identity = await get_current_identity(self.clients)
        console.print(f"[green]Authenticated as:[/green] {identity.arn}")
        builder = PlanBuilder(self.resolver, self.prober, self.settings)
        plan = await builder.build(pipelines, auth, identity.account_id, role_name)
        return identity.account_id, plan


def pipeline_options(command):
    """Options shared by every command that plans a bootstrap."""
    options = [
        click.option("--pipelines", "pipelines_file", required=True,
                     type=click.Path(exists=True, dir_okay=False, path_type=Path),
                     help="YAML/JSON file of parsed pipeline records"),
        click.option("--org-slug", required=True, help="Organization slug"),
        click.option("--cicd-account-id", required=True, help="CI/CD account id"),
        click.option("--cicd-region", required=True, help="CI/CD region"),
        click.option("--role-name", default=None,
                     help="Role to assume in target accounts (no fallback when given)"),
        click.option("--verbose", is_flag=True, help="Enable debug logging"),
    ]
    for option in reversed(options):
        command = option(command)
    return command


def _setup(verbose: bool) -> Settings:
    settings = get_settings()
    configure_logging("DEBUG" if verbose else settings.log_level)
    return settings


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """Stack Bootstrap - Deploy CI/CD bootstrap stacks across AWS accounts."""
    pass


@cli.command()
@pipeline_options
@click.option("--templates", "templates_dir", default=None,
              type=click.Path(exists=True, file_okay=False, path_type=Path),
              help="Template directory; when given, change previews are shown")
def plan(
    pipelines_file: Path,
    org_slug: str,
    cicd_account_id: str,
    cicd_region: str,
    role_name: Optional[str],
    verbose: bool,
    templates_dir: Optional[Path],
) -> None:
    """Show the deployment plan without deploying anything."""
    settings = _setup(verbose)
    auth = AuthContext(org_slug=org_slug, cicd_account_id=cicd_account_id, cicd_region=cicd_region)
    print_banner(auth)

    async def run() -> None:
        pipelines = load_pipelines(pipelines_file)
        bootstrap = Bootstrap(settings)
        current_account_id, deployment_plan = await bootstrap.build_plan(pipelines, auth, role_name)
        console.print(plan_table(deployment_plan))
        console.print(
            f"[dim]Phase 1: {len(deployment_plan.phase_one)} account stack(s). "
            f"Phase 2: {len(deployment_plan.phase_two)} stack(s).[/dim]"
        )

        if templates_dir is not None:
            executor = bootstrap.executor(auth, templates_dir)
            previews = await executor.preview(deployment_plan, pipelines, current_account_id, role_name)
            console.print(preview_table(previews))

    try:
        asyncio.run(run())
    except BootstrapError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        sys.exit(1)


@cli.command()
@pipeline_options
@click.option("--templates", "templates_dir", required=True,
              type=click.Path(exists=True, file_okay=False, path_type=Path),
              help="Directory with one template per stack kind")
@click.option("--yes", "-y", is_flag=True, help="Deploy without asking for confirmation")
def deploy(
    pipelines_file: Path,
    org_slug: str,
    cicd_account_id: str,
    cicd_region: str,
    role_name: Optional[str],
    verbose: bool,
    templates_dir: Path,
    yes: bool,
) -> None:
    """Deploy every bootstrap stack: account stacks first, then the rest."""
    settings = _setup(verbose)
    auth = AuthContext(org_slug=org_slug, cicd_account_id=cicd_account_id, cicd_region=cicd_region)
    print_banner(auth)

    try:
        pipelines = load_pipelines(pipelines_file)
        bootstrap = Bootstrap(settings)
        current_account_id, deployment_plan = asyncio.run(
            bootstrap.build_plan(pipelines, auth, role_name)
        )
    except BootstrapError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        sys.exit(1)

    console.print(plan_table(deployment_plan))
    if not yes and not Confirm.ask(f"Deploy {deployment_plan.total_stacks} stack(s)?", console=console):
        console.print("[yellow]Deployment cancelled.[/yellow]")
        sys.exit(1)

    executor = bootstrap.executor(auth, templates_dir)
    bootstrap.progress.register(deployment_plan.all_stacks)

    with Live(console=console, get_renderable=lambda: progress_table(bootstrap.progress),
              refresh_per_second=4, transient=False):
        summary = asyncio.run(
            executor.execute(deployment_plan, pipelines, current_account_id, role_name)
        )

    print_summary(summary)
    if not summary.success:
        sys.exit(1)


if __name__ == "__main__":
    cli()
