"""Command-line interface for Stagegate."""

import click
import logging
import sys
import json
import yaml
from pathlib import Path
from typing import Optional
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

from . import __version__
from .approval import approval_registry
from .config.manager import ConfigManager
from .config.schema import PipelineConfig, ValidationError
from .core.interfaces import (
    DEPLOY_ENVIRONMENTS,
    DEPLOYMENT_STRATEGIES,
    PipelineRun,
    RunStatus,
    StageResult,
    StageRole,
    StageStatus,
    Trigger,
    TriggerKind,
)
from .core.orchestrator import PipelineOrchestrator
from .storage import bootstrap_schema, list_indexes, list_tables


# Initialize rich console for better output formatting
console = Console()

# Registered approval channels that can decide within a single CLI process
CLI_APPROVAL_CHANNELS = ("static", "console")

_STATUS_STYLES = {
    "success": "green",
    "unstable": "yellow",
    "failed": "red",
    "cancelled": "magenta",
    "skipped": "dim",
}


def setup_logging(verbose: bool = False, log_file: Optional[str] = None):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(
            logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        )
        logging.getLogger().addHandler(file_handler)


@click.group(invoke_without_command=True)
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.option('--log-file', type=click.Path(), help='Log file path')
@click.option('--version', is_flag=True, help='Show version and exit')
@click.pass_context
def cli(ctx, verbose: bool, log_file: Optional[str], version: bool):
    """Stagegate - stage gating and promotion for container build pipelines."""
    if version:
        console.print(f"Stagegate version {__version__}")
        sys.exit(0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        return

    ctx.ensure_object(dict)
    ctx.obj['verbose'] = verbose
    ctx.obj['log_file'] = log_file

    setup_logging(verbose, log_file)

    if verbose:
        console.print("[bold green]Stagegate CLI[/bold green] - Verbose mode enabled")


def _load_pipeline_config(config_manager: ConfigManager, config: Optional[str]) -> PipelineConfig:
    """Load a configuration file, or the built-in default pipeline."""
    if config:
        return config_manager.load_config(config)

    resolved = config_manager.resolve_variables(config_manager.get_default_config())
    result = config_manager.validate_schema(resolved)
    if not result.valid:
        raise ValidationError("Default configuration is invalid", result.errors)
    return result.config


@cli.command()
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to pipeline configuration file (built-in pipeline when omitted)')
@click.option('--branch', '-b', required=True, help='Branch being built')
@click.option('--commit', required=True, help='Commit hash being built')
@click.option('--build-number', type=int, default=1, help='Build number')
@click.option('--event', type=click.Choice([kind.value for kind in TriggerKind]), default='manual',
              help='Trigger event')
@click.option('--deploy-environment', type=click.Choice(list(DEPLOY_ENVIRONMENTS)), default='none',
              help='Target environment for a manual deployment')
@click.option('--skip-tests', is_flag=True, help='Skip the test stages')
@click.option('--force-rebuild', is_flag=True, help='Build the image without cache')
@click.option('--approver', help='Approve gated stages as this user')
@click.option('--deployment-strategy', type=click.Choice(list(DEPLOYMENT_STRATEGIES)),
              help='Deployment strategy submitted with the approval')
@click.option('--backup-before-deploy/--no-backup-before-deploy', default=True,
              help='Back up the production database before deploying')
@click.option('--approval-channel', type=click.Choice(list(CLI_APPROVAL_CHANNELS)), default='static',
              help='How gated stages are approved')
@click.option('--interactive', '-i', is_flag=True, help='Shorthand for --approval-channel console')
@click.option('--report', type=click.Path(), help='Write a JSON run report to this path')
@click.pass_context
def run(ctx, config: Optional[str], branch: str, commit: str, build_number: int, event: str,
        deploy_environment: str, skip_tests: bool, force_rebuild: bool, approver: Optional[str],
        deployment_strategy: Optional[str], backup_before_deploy: bool, approval_channel: str,
        interactive: bool, report: Optional[str]):
    """Run the pipeline for a branch and commit."""

    try:
        with console.status("[bold green]Loading configuration..."):
            config_manager = ConfigManager()
            pipeline_config = _load_pipeline_config(config_manager, config)
            definitions = config_manager.build_definitions(pipeline_config)

        console.print(f"[green]✓[/green] Configuration loaded: {pipeline_config.pipeline.name}")

        values = {"backup_before_deploy": backup_before_deploy}
        if deployment_strategy:
            values["deployment_strategy"] = deployment_strategy
        channel_name = 'console' if interactive else approval_channel
        channel_options = {
            'console': {'console': console},
            'static': {'approver': approver, 'values': values},
        }
        channel = approval_registry.create_component(channel_name, **channel_options[channel_name])

        orchestrator = PipelineOrchestrator(
            runner=config_manager.build_runner(pipeline_config),
            approval_channel=channel,
            notifier=config_manager.build_notifier(pipeline_config),
            max_workers=pipeline_config.runner.max_workers,
            error_log_path=pipeline_config.logging.error_log_path,
        )

        trigger = Trigger(
            kind=TriggerKind(event),
            branch=branch,
            commit=commit,
            build_number=build_number,
            parameters={
                "deploy_environment": deploy_environment,
                "skip_tests": skip_tests,
                "force_rebuild": force_rebuild,
            },
        )
        pipeline_run = PipelineRun.from_trigger(
            trigger,
            logs_url_template=pipeline_config.pipeline.logs_url_template,
            image_repository=pipeline_config.pipeline.image_repository,
        )

        console.print(f"[blue]Starting run {pipeline_run.run_id} on {branch}[/blue]")
        pipeline_run = orchestrator.run(definitions, pipeline_run)

        _display_run_results(pipeline_run)

        if report:
            orchestrator.save_run_report(pipeline_run, report)
            console.print(f"[blue]Report saved to:[/blue] {report}")

        if pipeline_run.status in (RunStatus.FAILED, RunStatus.CANCELLED):
            sys.exit(1)

    except ValidationError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        for error in e.errors:
            console.print(f"  [red]•[/red] {error}")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to pipeline configuration file (built-in pipeline when omitted)')
@click.option('--branch', '-b', required=True, help='Branch to plan for')
@click.option('--event', type=click.Choice([kind.value for kind in TriggerKind]), default='push',
              help='Trigger event')
@click.option('--deploy-environment', type=click.Choice(list(DEPLOY_ENVIRONMENTS)), default='none',
              help='Target environment for a manual deployment')
@click.option('--skip-tests', is_flag=True, help='Skip the test stages')
def plan(config: Optional[str], branch: str, event: str, deploy_environment: str, skip_tests: bool):
    """Show which stages would run for a trigger, assuming every step succeeds."""

    try:
        config_manager = ConfigManager()
        pipeline_config = _load_pipeline_config(config_manager, config)
        definitions = config_manager.build_definitions(pipeline_config)

        pipeline_run = PipelineRun(
            build_number=0,
            commit="0000000",
            branch=branch,
            event=TriggerKind(event),
            parameters={"deploy_environment": deploy_environment, "skip_tests": skip_tests},
        )

        table = Table(title=f"Plan for {branch} ({event})")
        table.add_column("Stage", style="cyan")
        table.add_column("Role")
        table.add_column("Decision")
        table.add_column("Condition", style="dim")

        for stage in definitions:
            runs = stage.when is None or stage.when.evaluate(pipeline_run)
            if stage.is_production and runs:
                runs = any(r.role is StageRole.PUSH and r.status is StageStatus.SUCCESS
                           for r in pipeline_run.results)
            if stage.always_run:
                decision = "[green]always[/green]"
            elif runs:
                decision = "[yellow]approval[/yellow]" if stage.approval else "[green]run[/green]"
            else:
                decision = "[dim]skip[/dim]"

            pipeline_run.results.append(StageResult(
                stage_name=stage.name,
                status=StageStatus.SUCCESS if runs or stage.always_run else StageStatus.SKIPPED,
                role=stage.role,
            ))
            table.add_row(stage.name, stage.role.value, decision,
                          stage.when.describe() if stage.when else "-")

        console.print(table)

    except Exception as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        sys.exit(1)


@cli.command()
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to pipeline configuration file to validate')
def validate(config: Optional[str]):
    """Validate a pipeline configuration file."""

    if not config:
        console.print("[red]Error:[/red] Configuration file path is required")
        sys.exit(1)

    try:
        with console.status("[bold green]Validating configuration..."):
            config_manager = ConfigManager()
            validation_result = config_manager.validate_schema(
                config_manager.resolve_variables(config_manager._load_raw_config(Path(config)))
            )

        if validation_result.valid:
            console.print(f"[green]✓[/green] Configuration is valid: {config}")

            if validation_result.warnings:
                console.print("\n[yellow]Warnings:[/yellow]")
                for warning in validation_result.warnings:
                    console.print(f"  [yellow]•[/yellow] {warning}")

            _display_config_summary(validation_result.config)
        else:
            console.print(f"[red]✗[/red] Configuration is invalid: {config}")
            console.print("\n[red]Errors:[/red]")
            for error in validation_result.errors:
                console.print(f"  [red]•[/red] {error}")
            sys.exit(1)

    except ValidationError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        sys.exit(1)


@cli.command()
@click.option('--output', '-o', type=click.Path(), default='./stagegate.yaml',
              help='Output path for configuration template')
@click.option('--format', type=click.Choice(['yaml', 'json']), default='yaml',
              help='Output format')
def init(output: str, format: str):
    """Initialize a new pipeline configuration template."""

    try:
        config_manager = ConfigManager()
        default_config = config_manager.get_default_config()

        output_path = Path(output)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, 'w') as f:
            if format == 'yaml':
                yaml.dump(default_config, f, default_flow_style=False, indent=2, sort_keys=False)
            else:
                json.dump(default_config, f, indent=2)

        console.print(f"[green]✓[/green] Configuration template created: {output_path}")
        console.print(f"[blue]Format:[/blue] {format}")

        panel = Panel(
            f"""[bold]Next Steps:[/bold]

1. Edit the configuration file: {output_path}
2. Check it: stagegate validate --config {output_path}
3. Preview a branch: stagegate plan --config {output_path} --branch develop
4. Run it: stagegate run --config {output_path} --branch develop --commit <sha>

[dim]For more help, run: stagegate --help[/dim]""",
            title="Getting Started",
            border_style="green"
        )
        console.print(panel)

    except Exception as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        sys.exit(1)


@cli.command(name='init-db')
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Pipeline configuration file holding the database path')
@click.option('--db-path', type=click.Path(), help='SQLite database file (overrides the configuration)')
def init_db(config: Optional[str], db_path: Optional[str]):
    """Create the survey database tables and indexes."""

    try:
        if not db_path:
            if config:
                db_path = ConfigManager().load_config(config).database.path
            else:
                db_path = "./patient_data.db"

        with console.status("[bold green]Creating database schema..."):
            path = bootstrap_schema(db_path)

        console.print(f"[green]✓[/green] Database tables created successfully: {path}")
        console.print(f"  [cyan]Tables:[/cyan] {', '.join(list_tables(path))}")
        console.print(f"  [cyan]Indexes:[/cyan] {', '.join(list_indexes(path))}")

    except Exception as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        sys.exit(1)


def _display_config_summary(config: PipelineConfig):
    """Display a summary of the configuration."""
    console.print(f"\n[bold]Configuration Summary:[/bold]")
    console.print(f"  [cyan]Pipeline:[/cyan] {config.pipeline.name}")
    console.print(f"  [cyan]Stages:[/cyan] {', '.join(stage.name for stage in config.stages)}")
    console.print(f"  [cyan]Production Branches:[/cyan] {', '.join(config.pipeline.production_branches)}")
    console.print(f"  [cyan]Production Gate:[/cyan] {config.pipeline.production_gate}")
    console.print(f"  [cyan]Notification Sinks:[/cyan] {', '.join(config.notifications.sinks)}")


def _display_run_results(pipeline_run: PipelineRun):
    """Display stage results of a finished run."""
    table = Table(title=f"Run {pipeline_run.run_id}")
    table.add_column("Stage", style="cyan")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Details", style="dim")

    for result in pipeline_run.results:
        style = _STATUS_STYLES.get(result.status.value, "white")
        table.add_row(
            result.stage_name,
            f"[{style}]{result.status.value}[/{style}]",
            f"{result.duration:.1f}s",
            result.failure_reason or "",
        )

    console.print(table)

    style = _STATUS_STYLES.get(pipeline_run.status.value, "white")
    console.print(f"[bold]Status:[/bold] [{style}]{pipeline_run.status.value}[/{style}]")
    for line in pipeline_run.description:
        console.print(f"  {line}")
    if pipeline_run.termination_reason:
        console.print(f"  [red]{pipeline_run.termination_reason}[/red]")


def main():
    """Main entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()
