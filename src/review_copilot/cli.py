"""Command-line interface for Review Copilot."""

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
import uvicorn
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from review_copilot import __version__
from review_copilot.config import Config, ConfigurationError, load_config, validate_config
from review_copilot.gitlab.webhook import create_app
from review_copilot.service import ReviewService, build_service
from review_copilot.store.models import ReviewRun, RunStatus
from review_copilot.store.repository import ReviewStore, RunInProgressError, RunNotFoundError

console = Console()

STATUS_STYLES = {
    RunStatus.PENDING: "yellow",
    RunStatus.COMPLETED: "green",
    RunStatus.FAILED: "red",
}


def setup_logging(verbose: bool = False) -> None:
    """Configure logging with rich handler."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _load_valid_config(config_path: str | None) -> Config:
    config = load_config(Path(config_path) if config_path else None)
    errors = validate_config(config)
    if errors:
        for error in errors:
            console.print(f"[red]Config error:[/red] {error}")
        sys.exit(1)
    return config


def _print_run(run: ReviewRun) -> None:
    """Print one run with its findings."""
    style = STATUS_STYLES.get(run.status, "white")
    change = f"commit {run.commit_short_id}" if run.is_push else f"!{run.merge_request_iid}"

    console.print(f"\n[bold]Run {run.id}[/bold] ({run.repository_id} {change})")
    console.print(f"Status: [{style}]{run.status.value}[/{style}]")
    console.print(f"Files: {run.reviewed_files}/{run.total_files}")
    console.print(
        f"Issues: 🔴 {run.critical_issues} / ⚠️ {run.normal_issues} / 💡 {run.suggestions}"
    )
    if run.model_provider:
        console.print(f"Model: {run.model_provider}/{run.model_id}")
    if run.error:
        console.print(f"[red]Error:[/red] {run.error}")
    if run.summary:
        console.print(f"\n[bold]Summary[/bold]\n{run.summary}")

    if run.findings:
        table = Table(title="Findings")
        table.add_column("Location")
        table.add_column("Severity")
        table.add_column("Content")
        for finding in run.findings:
            location = f"{finding.file_path or 'unknown'}:{finding.line}"
            if finding.line_end:
                location += f"-{finding.line_end}"
            table.add_row(location, finding.severity.value, finding.content)
        console.print(table)


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
def cli(verbose: bool) -> None:
    """Review Copilot - automated GitLab code review."""
    setup_logging(verbose)


@cli.command("review-mr")
@click.argument("repository_id")
@click.argument("merge_request_iid", type=int)
@click.option("--config", "config_path", type=click.Path(exists=True), help="Config file path")
def review_mr(repository_id: str, merge_request_iid: int, config_path: str | None) -> None:
    """Review a merge request and wait for the result."""
    config = _load_valid_config(config_path)
    console.print(f"🔍 Reviewing !{merge_request_iid} in [bold]{repository_id}[/bold]...")
    run = asyncio.run(_review_mr(build_service(config), repository_id, merge_request_iid))
    _print_run(run)
    if run.status != RunStatus.COMPLETED:
        sys.exit(1)


async def _review_mr(service: ReviewService, repository_id: str, iid: int) -> ReviewRun:
    try:
        run = await service.trigger_manual(repository_id, iid)
        await service.wait_for_tasks()
        return service.store.require_run(run.id)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)
    finally:
        await service.aclose()


@cli.command("retry")
@click.argument("run_id")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Config file path")
def retry(run_id: str, config_path: str | None) -> None:
    """Reset a finished run and review it again."""
    config = _load_valid_config(config_path)
    console.print(f"🔁 Retrying run {run_id}...")
    run = asyncio.run(_retry(build_service(config), run_id))
    _print_run(run)
    if run.status != RunStatus.COMPLETED:
        sys.exit(1)


async def _retry(service: ReviewService, run_id: str) -> ReviewRun:
    try:
        await service.retry(run_id)
        await service.wait_for_tasks()
        return service.store.require_run(run_id)
    except (RunNotFoundError, RunInProgressError, ConfigurationError) as e:
        console.print(f"[red]Cannot retry:[/red] {e}")
        sys.exit(1)
    finally:
        await service.aclose()


@cli.command("status")
@click.argument("run_id")
@click.option("--json", "as_json", is_flag=True, help="Print the run as JSON")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Config file path")
def status(run_id: str, as_json: bool, config_path: str | None) -> None:
    """Show a review run and its findings."""
    config = load_config(Path(config_path) if config_path else None)
    store = ReviewStore.from_settings(config.database)

    run = store.get_run(run_id)
    if run is None:
        console.print(f"[red]Run {run_id} not found[/red]")
        sys.exit(1)

    if as_json:
        data = run.to_dict()
        data["findings"] = [finding.to_dict() for finding in run.findings]
        click.echo(json.dumps(data, indent=2, ensure_ascii=False))
    else:
        _print_run(run)


@cli.command("runs")
@click.option("--repo", "repository_id", help="Only runs of this repository")
@click.option(
    "--status",
    "status_filter",
    type=click.Choice([s.value for s in RunStatus]),
    help="Only runs with this status",
)
@click.option("--page", default=1, type=int, help="Page number")
@click.option("--limit", default=20, type=int, help="Runs per page")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Config file path")
def runs(
    repository_id: str | None,
    status_filter: str | None,
    page: int,
    limit: int,
    config_path: str | None,
) -> None:
    """List recent review runs."""
    config = load_config(Path(config_path) if config_path else None)
    store = ReviewStore.from_settings(config.database)
    items, total = store.list_runs(
        page=page,
        limit=limit,
        repository_id=repository_id,
        status=RunStatus(status_filter) if status_filter else None,
    )

    table = Table(title=f"Review runs (page {page}, {total} total)")
    table.add_column("ID")
    table.add_column("Repository")
    table.add_column("Change")
    table.add_column("Status")
    table.add_column("Files")
    table.add_column("🔴/⚠️/💡")
    table.add_column("Started")

    for run in items:
        style = STATUS_STYLES.get(run.status, "white")
        table.add_row(
            run.id,
            run.repository_id,
            f"commit {run.commit_short_id}" if run.is_push else f"!{run.merge_request_iid}",
            f"[{style}]{run.status.value}[/{style}]",
            f"{run.reviewed_files}/{run.total_files}",
            f"{run.critical_issues}/{run.normal_issues}/{run.suggestions}",
            run.started_at.strftime("%Y-%m-%d %H:%M") if run.started_at else "",
        )

    console.print(table)


@cli.group("config")
def config_group() -> None:
    """Configuration commands."""
    pass


@config_group.command("validate")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Config file path")
def config_validate(config_path: str | None) -> None:
    """Validate configuration file."""
    try:
        config = load_config(Path(config_path) if config_path else None)
        errors = validate_config(config)

        if errors:
            console.print("[red]Configuration is invalid:[/red]")
            for error in errors:
                console.print(f"  • {error}")
            sys.exit(1)
        else:
            console.print("[green]✓ Configuration is valid[/green]")
    except Exception as e:
        console.print(f"[red]Error loading config:[/red] {e}")
        sys.exit(1)


@config_group.command("show")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Config file path")
def config_show(config_path: str | None) -> None:
    """Show current configuration."""
    config = load_config(Path(config_path) if config_path else None)

    console.print("\n[bold]Current Configuration[/bold]\n")

    models = Table(title="Models")
    models.add_column("Name")
    models.add_column("Provider")
    models.add_column("Model")
    models.add_column("Endpoint")
    for name, model in config.models.items():
        default = " (default)" if name == config.default_model else ""
        models.add_row(f"{name}{default}", model.provider, model.model_id, model.api_endpoint or "")
    console.print(models)

    repos = Table(title="Repositories")
    repos.add_column("ID")
    repos.add_column("Project")
    repos.add_column("Path")
    repos.add_column("Auto review")
    repos.add_column("Branches")
    repos.add_column("Model")
    for repo in config.repositories:
        model = repo.model.label if repo.model else (repo.default_model or "")
        repos.add_row(
            repo.id,
            str(repo.project_id),
            repo.path,
            "yes" if repo.auto_review and repo.active else "no",
            repo.watch_branches or "*",
            model,
        )
    console.print(repos)

    console.print(f"\n[bold]GitLab:[/bold] {config.gitlab.url}")
    console.print(f"[bold]Database:[/bold] {config.database.url}")
    console.print(
        f"[bold]Batch threshold:[/bold] {config.pipeline.batch_threshold} files, "
        f"[bold]finding cap:[/bold] {config.pipeline.max_critical_findings}"
    )


@cli.command("serve")
@click.option("--port", default=None, type=int, help="Port to listen on")
@click.option("--host", default=None, help="Host to bind to")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Config file path")
def serve(port: int | None, host: str | None, config_path: str | None) -> None:
    """Start the webhook and API server."""
    config = _load_valid_config(config_path)
    service = build_service(config)
    app = create_app(config, service)

    host = host or config.server.host
    port = port or config.server.port
    console.print(f"🚀 Starting Review Copilot on {host}:{port}")
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    cli()
