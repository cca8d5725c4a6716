import asyncio
import json

from pydantic import ValidationError
import redis.asyncio as redis
from redis.exceptions import RedisError
from rich.console import Console
from rich.markup import escape
from rich.table import Table
import typer

from launchpad.cache import Cache
from launchpad.config import get_settings
from launchpad.detector import detect_project
from launchpad.engine import DeploymentEngine
from launchpad.errors import LaunchpadError
from launchpad.git_service import parse_repo_url
from launchpad.logging_config import setup_logging
from launchpad.models import DeploymentRequest, PipelineResult
from launchpad.status import STATUS_CACHE_PREFIX
from launchpad.step_logs import StepLogs

app = typer.Typer()
console = Console()


@app.callback()
def callback():
    """
    Launchpad deployment engine
    """


@app.command()
def worker():
    """Consume deployment requests from Redis until stopped"""
    from launchpad import main

    main.main()


async def deploy_command(request: DeploymentRequest, skip_tests: bool) -> PipelineResult:
    settings = get_settings()
    if skip_tests:
        settings = settings.model_copy(update={"skip_tests": True})
    # Redis is only needed when ports are allocated there
    client = None
    if settings.port_backend == "redis":
        client = redis.from_url(settings.redis_url, decode_responses=True)
    engine = DeploymentEngine(settings, client)
    try:
        return await engine.deploy_and_wait(request)
    finally:
        await engine.shutdown()
        if client is not None:
            await client.aclose()


@app.command()
def deploy(
    project: str = typer.Argument(..., help="Project slug"),
    repo_url: str = typer.Argument(..., help="Git clone URL"),
    branch: str = typer.Option("main", "--branch", "-b"),
    token: str | None = typer.Option(None, "--token", envvar="LAUNCHPAD_GIT_TOKEN"),
    root_directory: str | None = typer.Option(None, "--root-dir"),
    skip_tests: bool = typer.Option(False, "--skip-tests"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Run one pipeline in this process and wait for it"""
    settings = get_settings()
    setup_logging(
        service_name=f"{settings.service_name}-cli",
        log_format=settings.log_format,
        log_level=settings.log_level,
    )
    try:
        request = DeploymentRequest(
            project=project,
            repo_url=repo_url,
            branch=branch,
            token=token,
            root_directory=root_directory,
        )
    except ValidationError as e:
        errors = escape(str(e.errors(include_url=False)))
        console.print(f"[bold red]Invalid request:[/bold red] {errors}")
        raise typer.Exit(code=1) from None

    try:
        result = asyncio.run(deploy_command(request, skip_tests))
    except LaunchpadError as e:
        console.print(f"[bold red]Error:[/bold red] {str(e)}")
        raise typer.Exit(code=1) from None

    if json_output:
        typer.echo(result.model_dump_json(indent=2))
    elif result.success:
        console.print("[bold green]✓ Deployment ready![/bold green]")
        console.print(f"URL: [cyan]{result.url}[/cyan]")
        console.print(f"Duration: {result.duration}s")
    else:
        console.print(f"[bold red]✗ Deployment {result.status.value.lower()}[/bold red]")
        console.print(result.error or "")
    if not result.success:
        raise typer.Exit(code=1)


@app.command("parse-url")
def parse_url(url: str = typer.Argument(...)):
    """Classify a repository URL by provider"""
    info = parse_repo_url(url)
    table = Table(show_header=False)
    table.add_row("Provider", info.provider.value)
    table.add_row("Owner", info.owner or "-")
    table.add_row("Repo", info.repo or "-")
    table.add_row("Valid", "yes" if info.is_valid else "no")
    console.print(table)
    if not info.is_valid:
        raise typer.Exit(code=1)


@app.command()
def detect(
    path: str = typer.Argument(..., help="Checked-out project"),
    root_directory: str | None = typer.Option(None, "--root-dir"),
):
    """Show what the detector infers for a project tree"""
    try:
        result = detect_project(path, root_directory)
    except LaunchpadError as e:
        console.print(f"[bold red]Error:[/bold red] {str(e)}")
        raise typer.Exit(code=1) from None
    typer.echo(result.model_dump_json(indent=2))


@app.command()
def logs(
    project: str = typer.Argument(...),
    step: str | None = typer.Option(None, "--step", "-s", help="Only this step"),
):
    """Print a project's step logs"""
    try:
        entries = StepLogs(get_settings()).read_all(project)
    except LaunchpadError as e:
        console.print(f"[bold red]Error:[/bold red] {str(e)}")
        raise typer.Exit(code=1) from None
    if step is not None:
        if step not in entries:
            console.print(f"[bold red]Unknown step:[/bold red] {step}")
            raise typer.Exit(code=1)
        entries = {step: entries[step]}

    found = False
    for name, content in entries.items():
        if content is None:
            continue
        found = True
        console.rule(f"[bold]{name}.log[/bold]")
        console.print(content, markup=False, highlight=False)
    if not found:
        console.print(f"No logs for [cyan]{project}[/cyan]")


async def status_command(project: str) -> dict | None:
    settings = get_settings()
    client = redis.from_url(settings.redis_url, decode_responses=True)
    try:
        return await Cache(client).get(f"{STATUS_CACHE_PREFIX}:{project}")
    finally:
        await client.aclose()


@app.command()
def status(project: str = typer.Argument(...)):
    """Show the last status a worker mirrored for a project"""
    try:
        data = asyncio.run(status_command(project))
    except RedisError as e:
        console.print(f"[bold red]Error:[/bold red] {str(e)}")
        raise typer.Exit(code=1) from None
    if data is None:
        console.print(f"No status for [cyan]{project}[/cyan]")
        raise typer.Exit(code=1)
    typer.echo(json.dumps(data, indent=2))
