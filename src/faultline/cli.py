"""Typer CLI entry point for faultline."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Annotated, Any, TypeVar

import structlog
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from faultline import __version__
from faultline.config import Settings, format_validation_error
from faultline.context import FaultlineContext
from faultline.doctor import CheckStatus, run_doctor
from faultline.exceptions import ConflictError, FaultlineError, NotFoundError
from faultline.logging import configure_logging
from faultline.models import (
    PipelineRun,
    PipelineStatus,
    RecoveryStrategy,
    TimelineEvent,
    validate_workload_name,
)

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

T = TypeVar("T")

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    name="faultline",
    help="Inject failures into containers, measure recovery, and run build pipelines.",
    no_args_is_help=True,
)
inject_app = typer.Typer(help="Inject kill, latency and memory failures.", no_args_is_help=True)
timeline_app = typer.Typer(help="Inspect and clear workload event timelines.", no_args_is_help=True)
pipeline_app = typer.Typer(help="Build, deploy and verify repositories.", no_args_is_help=True)
recovery_app = typer.Typer(help="Automatic recovery and SLI reporting.", no_args_is_help=True)

app.add_typer(inject_app, name="inject")
app.add_typer(timeline_app, name="timeline")
app.add_typer(pipeline_app, name="pipeline")
app.add_typer(recovery_app, name="recovery")

# Replaced in tests to inject fake runtimes and schedulers.
context_factory: Callable[[Settings], FaultlineContext] = FaultlineContext.from_settings

ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", "-c", help="Path to config YAML file."),
]
VerboseOption = Annotated[
    bool,
    typer.Option("--verbose", "-v", help="Enable verbose logging."),
]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_settings(
    config_path: Path | None = None,
    **overrides: Any,
) -> Settings:
    """Load settings with error handling and user-friendly messages."""
    from pydantic import ValidationError

    try:
        return Settings.load(config_path=config_path, **overrides)
    except ValidationError as exc:
        err_console.print(
            Panel(
                format_validation_error(exc),
                title="Configuration Error",
                border_style="red",
            )
        )
        raise typer.Exit(code=1) from exc


def _setup(config_path: Path | None, verbose: bool) -> Settings:
    overrides: dict[str, Any] = {}
    if verbose:
        overrides["logging"] = {"level": "DEBUG"}
    settings = _load_settings(config_path, **overrides)
    configure_logging(settings.logging)
    return settings


def _fail(exc: FaultlineError) -> typer.Exit:
    err_console.print(
        Panel(str(exc), title=type(exc).__name__, border_style="red")
    )
    return typer.Exit(code=1)


def _run(settings: Settings, action: Callable[[FaultlineContext], Awaitable[T]]) -> T:
    """Run ``action`` against a fresh context on a new event loop."""

    async def _main() -> T:
        ctx = context_factory(settings)
        try:
            return await action(ctx)
        finally:
            await ctx.shutdown()

    try:
        return asyncio.run(_main())
    except FaultlineError as exc:
        raise _fail(exc) from exc


def _context(settings: Settings) -> FaultlineContext:
    try:
        return context_factory(settings)
    except FaultlineError as exc:
        raise _fail(exc) from exc


def _parse_pairs(values: list[str] | None, sep: str, label: str) -> dict[str, str]:
    pairs: dict[str, str] = {}
    for raw in values or []:
        key, found, value = raw.partition(sep)
        if not found or not key:
            raise typer.BadParameter(f"Expected {label}, got {raw!r}")
        pairs[key] = value
    return pairs


def _event_detail(event: TimelineEvent) -> str:
    data = event.model_dump(mode="json", by_alias=True, exclude={"timestamp", "type", "status"})
    metadata = data.pop("metadata", None) or {}
    data.update(metadata)
    data.pop("buildLog", None)
    return ", ".join(f"{k}={v}" for k, v in data.items() if v not in (None, ""))


def _print_run(run: PipelineRun) -> None:
    for line in run.step_log:
        console.print(f"[dim]{line}[/dim]")
    if run.status is PipelineStatus.SUCCESS:
        console.print(
            Panel(
                f"Image: [cyan]{run.image_name}[/cyan]\nDuration: {run.duration_ms} ms",
                title=f"Pipeline {run.pipeline_id} succeeded",
                border_style="green",
            )
        )
    else:
        console.print(
            Panel(
                f"{run.error}\nSteps completed: {run.steps_completed}",
                title=f"Pipeline {run.pipeline_id} failed",
                border_style="red",
            )
        )


# ---------------------------------------------------------------------------
# Version callback
# ---------------------------------------------------------------------------


def _version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]faultline[/bold] {__version__}")
        raise typer.Exit


@app.callback()
def common(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit.",
            callback=_version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Faultline global options."""


# ---------------------------------------------------------------------------
# Workload commands
# ---------------------------------------------------------------------------


@app.command()
def deploy(
    image: Annotated[str, typer.Argument(help="Image reference to run.")],
    name: Annotated[str, typer.Argument(help="Workload (container) name.")],
    port: Annotated[
        list[str] | None,
        typer.Option("--port", "-p", help="Port mapping HOST:CONTAINER (repeatable)."),
    ] = None,
    env: Annotated[
        list[str] | None,
        typer.Option("--env", "-e", help="Environment variable KEY=VALUE (repeatable)."),
    ] = None,
    config: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Pull IMAGE and start it as workload NAME."""
    settings = _setup(config, verbose)
    options = {
        "ports": _parse_pairs(port, ":", "HOST:CONTAINER"),
        "env": _parse_pairs(env, "=", "KEY=VALUE"),
    }

    async def _deploy(ctx: FaultlineContext) -> str:
        workload = validate_workload_name(name)
        try:
            await ctx.runtime.inspect(workload)
        except NotFoundError:
            pass
        else:
            raise ConflictError(f"Workload {workload!r} already exists")
        await ctx.runtime.pull(image)
        return await ctx.runtime.create(image, workload, options)

    container_id = _run(settings, _deploy)
    console.print(f"[green]Deployed[/green] {name} ({container_id[:12]}) from {image}")


@app.command()
def containers(
    all_: Annotated[
        bool,
        typer.Option("--all", "-a", help="Include stopped containers."),
    ] = False,
    config: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """List workloads known to the container runtime."""
    settings = _setup(config, verbose)
    summaries = _run(settings, lambda ctx: ctx.runtime.list(all=all_))

    if not summaries:
        console.print("[yellow]No containers found.[/yellow]")
        return

    table = Table(title="Containers")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Image")
    table.add_column("State")
    table.add_column("Status", style="dim")
    for summary in summaries:
        table.add_row(summary.id, summary.name, summary.image, summary.state, summary.status)
    console.print(table)


@app.command()
def health(
    name: Annotated[str, typer.Argument(help="Workload name.")],
    config: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Show the runtime state of a workload."""
    settings = _setup(config, verbose)
    state = _run(settings, lambda ctx: ctx.runtime.inspect(validate_workload_name(name)))

    colour = "green" if state.running else "red"
    table = Table(title=f"Health: {state.name}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("State", f"[{colour}]{state.state or 'unknown'}[/{colour}]")
    table.add_row("Running", str(state.running))
    table.add_row("Exit code", "" if state.exit_code is None else str(state.exit_code))
    table.add_row("Started", state.started_at or "")
    table.add_row("Finished", state.finished_at or "")
    table.add_row("Image", state.image_ref)
    console.print(table)


@app.command()
def logs(
    name: Annotated[str, typer.Argument(help="Workload name.")],
    tail: Annotated[int, typer.Option("--tail", "-n", help="Lines to show.", min=1)] = 100,
    config: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Print the most recent log lines of a workload."""
    settings = _setup(config, verbose)
    output = _run(settings, lambda ctx: ctx.runtime.logs(validate_workload_name(name), tail))
    console.print(output.rstrip("\n"), markup=False, highlight=False)


@app.command()
def doctor(
    config: ConfigOption = None,
    no_binaries: Annotated[
        bool,
        typer.Option("--no-binaries", help="Skip docker and git checks."),
    ] = False,
    quiet: Annotated[
        bool,
        typer.Option("--quiet", help="Suppress table output, use exit code only."),
    ] = False,
) -> None:
    """Run self-diagnostics and health checks for this environment."""
    settings = _load_settings(config)
    report = run_doctor(
        settings=settings,
        config_path=config,
        check_binaries=not no_binaries,
    )

    if not quiet:
        table = Table(title="Faultline Doctor", show_lines=True)
        table.add_column("Check", style="cyan")
        table.add_column("Status", justify="center")
        table.add_column("Message")

        status_style = {
            CheckStatus.OK: "[green]OK[/green]",
            CheckStatus.WARN: "[yellow]WARN[/yellow]",
            CheckStatus.FAIL: "[red]FAIL[/red]",
        }

        for check in report.checks:
            table.add_row(check.name, status_style[check.status], check.message)
        console.print(table)

        for check in report.checks:
            if check.details:
                details = ", ".join(f"{k}={v}" for k, v in check.details.items())
                console.print(f"[dim]{check.name}: {details}[/dim]")

    raise typer.Exit(code=report.exit_code)


# ---------------------------------------------------------------------------
# Failure injection
# ---------------------------------------------------------------------------


@inject_app.command("kill")
def inject_kill(
    name: Annotated[str, typer.Argument(help="Workload to kill.")],
    delay_ms: Annotated[
        int, typer.Option("--delay-ms", help="Delay before the kill.", min=0)
    ] = 0,
    wait: Annotated[
        bool,
        typer.Option("--wait/--no-wait", help="Wait until recovery is detected."),
    ] = False,
    wait_timeout_s: Annotated[
        float,
        typer.Option("--wait-timeout-s", help="Give up waiting after this long."),
    ] = 300.0,
    config: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Kill a workload and watch for its recovery."""
    settings = _setup(config, verbose)

    async def _kill(ctx: FaultlineContext) -> int | None:
        result = await ctx.injector.inject_kill(name, delay_ms)
        console.print(f"[red]Killed[/red] {result.workload} at {result.timestamp}")
        if not wait:
            return None
        console.print("[dim]Waiting for sustained recovery...[/dim]")
        try:
            recovered = await asyncio.wait_for(
                ctx.detector.wait(result.workload), wait_timeout_s
            )
        except TimeoutError:
            recovered = False
        if not recovered:
            return -1
        last = ctx.injector.timeline(result.workload).events[-1]
        return int(getattr(last, "metadata", {}).get("recoveryDurationMs", 0))

    duration_ms = _run(settings, _kill)
    if duration_ms is None:
        return
    if duration_ms < 0:
        console.print(f"[yellow]{name} did not recover within {wait_timeout_s:g}s.[/yellow]")
        raise typer.Exit(code=1)
    console.print(f"[green]Recovered[/green] {name} after {duration_ms} ms")


@inject_app.command("latency")
def inject_latency(
    name: Annotated[str, typer.Argument(help="Workload name.")],
    latency_ms: Annotated[
        int | None, typer.Option("--latency-ms", help="Simulated added latency.")
    ] = None,
    duration_ms: Annotated[
        int | None, typer.Option("--duration-ms", help="How long the failure lasts.")
    ] = None,
    config: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Simulate added latency on a workload until it expires."""
    settings = _setup(config, verbose)

    async def _latency(ctx: FaultlineContext) -> None:
        result = await ctx.injector.inject_latency(name, latency_ms, duration_ms)
        console.print(
            f"[yellow]Latency[/yellow] {result.latency_ms} ms on {result.workload} "
            f"for {result.duration_ms} ms (simulated)"
        )
        await ctx.injector.wait_for_expiries()

    _run(settings, _latency)
    console.print(f"[green]Latency failure on {name} expired.[/green]")


@inject_app.command("memory")
def inject_memory(
    name: Annotated[str, typer.Argument(help="Workload name.")],
    limit: Annotated[
        str | None, typer.Option("--limit", help="Simulated memory limit, e.g. 256m.")
    ] = None,
    duration_ms: Annotated[
        int | None, typer.Option("--duration-ms", help="How long the failure lasts.")
    ] = None,
    config: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Simulate memory pressure on a workload until it expires."""
    settings = _setup(config, verbose)

    async def _memory(ctx: FaultlineContext) -> None:
        result = await ctx.injector.inject_memory(name, limit, duration_ms)
        console.print(
            f"[yellow]Memory limit[/yellow] {result.memory_limit} on {result.workload} "
            f"for {result.duration_ms} ms (simulated)"
        )
        await ctx.injector.wait_for_expiries()

    _run(settings, _memory)
    console.print(f"[green]Memory failure on {name} expired.[/green]")


# ---------------------------------------------------------------------------
# Timeline
# ---------------------------------------------------------------------------


@timeline_app.command("show")
def timeline_show(
    name: Annotated[str, typer.Argument(help="Workload name.")],
    as_json: Annotated[bool, typer.Option("--json", help="Print raw JSON.")] = False,
    config: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Show the event timeline of a workload."""
    settings = _setup(config, verbose)
    try:
        summary = _context(settings).injector.timeline(name)
    except FaultlineError as exc:
        raise _fail(exc) from exc

    if as_json:
        console.print_json(json.dumps(summary.model_dump(mode="json", by_alias=True)))
        return

    if not summary.events:
        console.print(f"[yellow]No events recorded for {summary.workload}.[/yellow]")
        return

    table = Table(title=f"Timeline: {summary.workload}")
    table.add_column("Timestamp", style="dim")
    table.add_column("Type", style="cyan")
    table.add_column("Status")
    table.add_column("Details", style="dim")
    for event in summary.events:
        table.add_row(
            event.timestamp,
            event.type,
            str(getattr(event, "status", "")),
            _event_detail(event),
        )
    console.print(table)
    console.print(
        f"Failures: [red]{summary.total_failures}[/red]  "
        f"Recoveries: [green]{summary.total_recoveries}[/green]"
    )


@timeline_app.command("list")
def timeline_list(
    config: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """List every workload that has a timeline."""
    settings = _setup(config, verbose)
    summaries = _context(settings).injector.all_timelines()

    if not summaries:
        console.print("[yellow]No timelines recorded.[/yellow]")
        return

    table = Table(title="Timelines")
    table.add_column("Workload", style="cyan")
    table.add_column("Events", justify="right")
    table.add_column("Failures", justify="right")
    table.add_column("Recoveries", justify="right")
    for name, summary in summaries.items():
        table.add_row(
            name,
            str(len(summary.events)),
            str(summary.total_failures),
            str(summary.total_recoveries),
        )
    console.print(table)


@timeline_app.command("clear")
def timeline_clear(
    name: Annotated[str, typer.Argument(help="Workload name.")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation.")] = False,
    config: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Delete the timeline of a workload."""
    settings = _setup(config, verbose)
    if not yes:
        typer.confirm(f"Delete the timeline of {name}?", abort=True)
    try:
        _context(settings).injector.clear_timeline(name)
    except FaultlineError as exc:
        raise _fail(exc) from exc
    console.print(f"[green]Cleared[/green] timeline of {name}")


# ---------------------------------------------------------------------------
# Pipelines
# ---------------------------------------------------------------------------


@pipeline_app.command("run")
def pipeline_run(
    repo: Annotated[str, typer.Argument(help="Repository URL or owner/repo.")],
    name: Annotated[str, typer.Argument(help="Workload name to deploy as.")],
    branch: Annotated[str, typer.Option("--branch", "-b", help="Branch to build.")] = "main",
    config: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Clone, validate, lint, test, build, deploy and smoke test a repository."""
    settings = _setup(config, verbose)
    console.print(
        Panel(f"[bold]{repo}[/bold] ({branch}) -> {name}", title="Pipeline", border_style="blue")
    )
    run = _run(settings, lambda ctx: ctx.pipeline.execute(repo, name, branch))
    _print_run(run)
    if run.status is not PipelineStatus.SUCCESS:
        raise typer.Exit(code=1)


@pipeline_app.command("deploy")
def pipeline_deploy(
    repo: Annotated[str, typer.Argument(help="Repository URL or owner/repo.")],
    name: Annotated[str, typer.Argument(help="Workload name to deploy as.")],
    branch: Annotated[str, typer.Option("--branch", "-b", help="Branch to build.")] = "main",
    config: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Build a repository's image and deploy it without lint, test or smoke test."""
    settings = _setup(config, verbose)
    run = _run(settings, lambda ctx: ctx.pipeline.deploy(repo, name, branch))
    _print_run(run)
    if run.status is not PipelineStatus.SUCCESS:
        raise typer.Exit(code=1)


@pipeline_app.command("history")
def pipeline_history(
    name: Annotated[str, typer.Argument(help="Workload name.")],
    config: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Show recorded pipeline runs for a workload."""
    settings = _setup(config, verbose)
    try:
        events = _context(settings).pipeline.history(name)
    except FaultlineError as exc:
        raise _fail(exc) from exc

    if not events:
        console.print(f"[yellow]No pipeline runs recorded for {name}.[/yellow]")
        return

    table = Table(title=f"Pipeline history: {name}")
    table.add_column("Started", style="dim")
    table.add_column("Pipeline", style="cyan")
    table.add_column("Status")
    table.add_column("Branch")
    table.add_column("Steps", justify="right")
    table.add_column("Duration (ms)", justify="right")
    table.add_column("Error", style="dim")
    for event in events:
        colour = "green" if event.status == PipelineStatus.SUCCESS else "red"
        table.add_row(
            event.timestamp,
            event.pipeline_id,
            f"[{colour}]{event.status}[/{colour}]",
            event.branch,
            str(event.steps_completed),
            str(event.duration_ms),
            event.error or "",
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------


def _print_report(ctx: FaultlineContext, name: str) -> None:
    report = ctx.recovery.report(name)
    sli = report.metrics
    table = Table(title=f"Recovery SLIs: {name}", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Total recoveries", str(sli.total_recoveries))
    table.add_row("Successful", str(sli.successful_recoveries))
    table.add_row("Success rate", f"{sli.success_rate:.2f}%")
    table.add_row("Average MTTR (ms)", str(sli.avg_mttr_ms))
    table.add_row("Median MTTR (ms)", f"{sli.median_mttr_ms:g}")
    table.add_row("Last recovery", sli.last_recovery or "never")
    table.add_row("Policy", str(report.policy.strategy) if report.policy else "none")
    console.print(table)
    for recommendation in report.recommendations:
        console.print(f"- {recommendation}")


@recovery_app.command("watch")
def recovery_watch(
    name: Annotated[str, typer.Argument(help="Workload to monitor.")],
    strategy: Annotated[
        RecoveryStrategy | None,
        typer.Option("--strategy", "-s", help="Recovery strategy.", case_sensitive=False),
    ] = None,
    interval_ms: Annotated[
        int | None, typer.Option("--interval-ms", help="Health check interval.")
    ] = None,
    max_retries: Annotated[
        int | None, typer.Option("--max-retries", help="Recovery attempts allowed.")
    ] = None,
    retry_delay_ms: Annotated[
        int | None, typer.Option("--retry-delay-ms", help="Minimum gap between attempts.")
    ] = None,
    duration_s: Annotated[
        float, typer.Option("--duration-s", help="How long to monitor before stopping.")
    ] = 60.0,
    config: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Monitor a workload and recover it automatically for a while."""
    settings = _setup(config, verbose)

    async def _watch(ctx: FaultlineContext) -> bool:
        resolved = strategy or settings.recovery.strategy
        ctx.recovery.register_policy(name, resolved)
        ctx.recovery.start_auto_recovery(
            name,
            health_check_interval_ms=interval_ms,
            strategy=resolved,
            max_retries=max_retries,
            retry_delay_ms=retry_delay_ms,
        )
        console.print(
            f"[blue]Monitoring[/blue] {name} with strategy {resolved} for {duration_s:g}s"
        )
        try:
            exhausted = await asyncio.wait_for(ctx.recovery.wait(name), duration_s)
        except TimeoutError:
            exhausted = False
        _print_report(ctx, name)
        return exhausted

    exhausted = _run(settings, _watch)
    if exhausted:
        console.print(f"[red]Recovery of {name} failed: retry budget exhausted.[/red]")
        raise typer.Exit(code=1)


@recovery_app.command("report")
def recovery_report(
    name: Annotated[str, typer.Argument(help="Workload name.")],
    config: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Show recovery SLIs and recommendations from the recorded timeline."""
    settings = _setup(config, verbose)
    ctx = _context(settings)
    try:
        _print_report(ctx, name)
    except FaultlineError as exc:
        raise _fail(exc) from exc


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
