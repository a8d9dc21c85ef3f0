from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Iterator, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import ConfigError, IJConfig, load_settings
from .errors import HistoryNotFoundError, ImageJobsError, JobNotFoundError, NotFoundError
from .gen.cost import format_cost
from .gen.operations import GenerationOutcome, GenerationService
from .gen.paths import display_path
from .gen.registry import ProviderRegistry
from .gen.types import ToolName
from .jobs import BatchRunner, JobManager, JobSpec, estimate_cost, load_batch_config
from .jobs.batch_config import parse_batch_config
from .provenance import assert_authentic, inspect_image
from .store import JobStatus, Store

app = typer.Typer(add_completion=False, no_args_is_help=True)
jobs_app = typer.Typer(add_completion=False, no_args_is_help=True)
app.add_typer(jobs_app, name="jobs", help="Background generation jobs")
batch_app = typer.Typer(add_completion=False, no_args_is_help=True)
app.add_typer(batch_app, name="batch", help="Run many generations from a config file")
history_app = typer.Typer(add_completion=False, no_args_is_help=True)
app.add_typer(history_app, name="history", help="Past generations")
metadata_app = typer.Typer(add_completion=False, no_args_is_help=True)
app.add_typer(metadata_app, name="metadata", help="Embedded provenance records")

console = Console()


@dataclass
class CLIOptions:
    config_path: Optional[Path] = None
    provider: Optional[str] = None


class Runtime:
    """Objects a command needs, built from settings on first use."""

    def __init__(self, settings: IJConfig, provider_name: Optional[str] = None):
        self.settings = settings
        self.store = Store(settings.storage.db_path)
        self.registry = ProviderRegistry(settings)
        self._provider_name = provider_name or settings.default_provider
        self._service: Optional[GenerationService] = None
        self._jobs: Optional[JobManager] = None

    @property
    def service(self) -> GenerationService:
        if self._service is None:
            self._service = GenerationService(
                self.registry.get_provider(self._provider_name),
                self.store,
                self.settings.storage.output_dir,
                embed_metadata=self.settings.metadata.embed,
                metadata_level=self.settings.metadata.level,
                default_model=self.registry.default_model(self._provider_name),
            )
        return self._service

    @property
    def jobs(self) -> JobManager:
        if self._jobs is None:
            self._jobs = JobManager(self.store, self.service.operations())
        return self._jobs

    async def aclose(self) -> None:
        if self._jobs is not None:
            await self._jobs.drain()
        await self.registry.aclose()
        self.store.close()


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, "--config", help="Path to imagejobs.toml"),
    provider: Optional[str] = typer.Option(None, "--provider", help="Provider name (overrides default_provider)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    debug_env = os.environ.get("DEBUG", "").lower() in ("1", "true", "yes")
    _configure_logging(verbose or debug_env)
    ctx.obj = CLIOptions(config_path=config, provider=provider)


@contextmanager
def _errors() -> Iterator[None]:
    try:
        yield
    except NotFoundError as e:
        console.print(f"[bold red]Not found:[/bold red] {e}")
        raise typer.Exit(code=2) from e
    except (ImageJobsError, ConfigError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(code=1) from e


def _runtime(ctx: typer.Context) -> Runtime:
    opts: CLIOptions = ctx.obj or CLIOptions()
    return Runtime(load_settings(opts.config_path), opts.provider)


def _run(runtime: Runtime, coro_fn) -> Any:
    async def runner():
        try:
            return await coro_fn()
        finally:
            await runtime.aclose()

    return asyncio.run(runner())


def _params(**values: Any) -> dict[str, Any]:
    return {k: v for k, v in values.items() if v is not None}


def _print_outcome(outcome: GenerationOutcome) -> None:
    paths = outcome.output_paths
    if len(paths) == 1:
        console.print(f"[bold green]Image generated:[/bold green] {display_path(paths[0])}")
    else:
        console.print(f"[bold green]{len(paths)} images generated:[/bold green]")
        for i, p in enumerate(paths, start=1):
            console.print(f"  {i}. {display_path(p)}")
    console.print(format_cost(outcome.cost))
    console.print(f"History ID: {outcome.history_id}")


def _invoke(ctx: typer.Context, tool: ToolName, params: dict[str, Any]) -> None:
    with _errors():
        runtime = _runtime(ctx)
        operation = runtime.service.operations()[tool]
        outcome = _run(runtime, lambda: operation(params))
    _print_outcome(outcome)


@app.command()
def generate(
    ctx: typer.Context,
    prompt: str = typer.Argument(...),
    output: Optional[str] = typer.Option(None, "--output", "-o"),
    model: Optional[str] = typer.Option(None, "--model"),
    size: Optional[str] = typer.Option(None, "--size"),
    quality: Optional[str] = typer.Option(None, "--quality"),
    output_format: Optional[str] = typer.Option(None, "--format"),
    transparent: bool = typer.Option(False, "--transparent", help="Transparent background (PNG only)"),
    moderation: Optional[str] = typer.Option(None, "--moderation"),
    samples: int = typer.Option(1, "--samples", "-n"),
):
    """Generate images from a text prompt."""
    params = _params(
        prompt=prompt,
        output_path=output,
        model=model,
        size=size,
        quality=quality,
        output_format=output_format,
        transparent_background=transparent or None,
        moderation=moderation,
        sample_count=samples,
    )
    _invoke(ctx, ToolName.GENERATE, params)


@app.command()
def edit(
    ctx: typer.Context,
    prompt: str = typer.Argument(...),
    image: Path = typer.Option(..., "--image", "-i", help="Reference image to edit"),
    mask: Optional[Path] = typer.Option(None, "--mask", help="Mask image (transparent areas are edited)"),
    output: Optional[str] = typer.Option(None, "--output", "-o"),
    model: Optional[str] = typer.Option(None, "--model"),
    size: Optional[str] = typer.Option(None, "--size"),
    quality: Optional[str] = typer.Option(None, "--quality"),
    output_format: Optional[str] = typer.Option(None, "--format"),
    moderation: Optional[str] = typer.Option(None, "--moderation"),
    input_fidelity: Optional[str] = typer.Option(None, "--input-fidelity"),
    samples: int = typer.Option(1, "--samples", "-n"),
):
    """Edit an image, optionally restricted to a mask."""
    params = _params(
        prompt=prompt,
        reference_image_path=str(image),
        mask_image_path=str(mask) if mask else None,
        output_path=output,
        model=model,
        size=size,
        quality=quality,
        output_format=output_format,
        moderation=moderation,
        input_fidelity=input_fidelity,
        sample_count=samples,
    )
    _invoke(ctx, ToolName.EDIT, params)


@app.command()
def transform(
    ctx: typer.Context,
    prompt: str = typer.Argument(...),
    image: Path = typer.Option(..., "--image", "-i", help="Reference image"),
    output: Optional[str] = typer.Option(None, "--output", "-o"),
    model: Optional[str] = typer.Option(None, "--model"),
    size: Optional[str] = typer.Option(None, "--size"),
    quality: Optional[str] = typer.Option(None, "--quality"),
    output_format: Optional[str] = typer.Option(None, "--format"),
    moderation: Optional[str] = typer.Option(None, "--moderation"),
    input_fidelity: Optional[str] = typer.Option(None, "--input-fidelity"),
    samples: int = typer.Option(1, "--samples", "-n"),
):
    """Create new images from a reference image and a prompt."""
    params = _params(
        prompt=prompt,
        reference_image_path=str(image),
        output_path=output,
        model=model,
        size=size,
        quality=quality,
        output_format=output_format,
        moderation=moderation,
        input_fidelity=input_fidelity,
        sample_count=samples,
    )
    _invoke(ctx, ToolName.TRANSFORM, params)


def _job_table(title: str, jobs: list) -> Table:
    table = Table(title=title)
    table.add_column("Job ID")
    table.add_column("Status")
    table.add_column("Tool")
    table.add_column("Progress")
    table.add_column("Created")
    table.add_column("Prompt")
    for job in jobs:
        table.add_row(
            job.job_id,
            job.status,
            job.tool_name,
            f"{job.progress}%",
            job.created_at.isoformat(timespec="seconds"),
            job.prompt[:50],
        )
    return table


@jobs_app.command("start")
def jobs_start(
    ctx: typer.Context,
    prompt: str = typer.Argument(...),
    tool: ToolName = typer.Option(ToolName.GENERATE, "--tool"),
    image: Optional[Path] = typer.Option(None, "--image", "-i"),
    mask: Optional[Path] = typer.Option(None, "--mask"),
    output: Optional[str] = typer.Option(None, "--output", "-o"),
    size: Optional[str] = typer.Option(None, "--size"),
    quality: Optional[str] = typer.Option(None, "--quality"),
    output_format: Optional[str] = typer.Option(None, "--format"),
    samples: int = typer.Option(1, "--samples", "-n"),
):
    """Create and start a job, then wait for it before exiting."""
    params = _params(
        reference_image_path=str(image) if image else None,
        mask_image_path=str(mask) if mask else None,
        output_path=output,
        size=size,
        quality=quality,
        output_format=output_format,
    )
    spec = JobSpec(tool_name=tool.value, prompt=prompt, parameters=params, sample_count=samples)

    with _errors():
        runtime = _runtime(ctx)

        async def start_and_wait():
            job_id = runtime.jobs.create(spec)
            await runtime.jobs.start(job_id)
            console.print(f"Job started: {job_id}")
            await runtime.jobs.drain()
            return runtime.jobs.get(job_id)

        job = _run(runtime, start_and_wait)

    _print_job(job)
    if job is not None and job.job_status is not JobStatus.COMPLETED:
        raise typer.Exit(code=1)


def _print_job(job) -> None:
    color = {"completed": "green", "failed": "red", "cancelled": "yellow"}.get(job.status, "cyan")
    console.print(f"[bold]Job:[/bold] {job.job_id}")
    console.print(f"[bold]Status:[/bold] [{color}]{job.status}[/{color}] ({job.progress}%)")
    console.print(f"[bold]Tool:[/bold] {job.tool_name}")
    console.print(f"[bold]Prompt:[/bold] {job.prompt}")
    if job.output_paths:
        console.print("[bold]Outputs:[/bold]")
        for p in job.output_paths:
            console.print(f"  - {display_path(p)}")
    if job.history_id:
        console.print(f"[bold]History ID:[/bold] {job.history_id}")
    if job.error_message:
        console.print(f"[bold]Error:[/bold] {job.error_message}")


@jobs_app.command("status")
def jobs_status(ctx: typer.Context, job_id: str = typer.Argument(...)):
    with _errors():
        runtime = _runtime(ctx)
        try:
            job = runtime.store.get_job(job_id)
        finally:
            runtime.store.close()
        if job is None:
            raise JobNotFoundError(job_id)
    _print_job(job)


@jobs_app.command("list")
def jobs_list(
    ctx: typer.Context,
    status: Optional[JobStatus] = typer.Option(None, "--status"),
    tool: Optional[ToolName] = typer.Option(None, "--tool"),
    limit: int = typer.Option(20, "--limit"),
    offset: int = typer.Option(0, "--offset"),
):
    with _errors():
        runtime = _runtime(ctx)
        try:
            manager = JobManager(runtime.store, {})
            jobs = manager.list(status=status, tool_name=tool.value if tool else None, limit=limit, offset=offset)
            total = manager.count(status)
        finally:
            runtime.store.close()
    console.print(_job_table(f"Jobs ({len(jobs)} of {total})", jobs))


@jobs_app.command("cancel")
def jobs_cancel(ctx: typer.Context, job_id: str = typer.Argument(...)):
    with _errors():
        runtime = _runtime(ctx)
        try:
            manager = JobManager(runtime.store, {})
            job = manager.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            cancelled = manager.cancel(job_id)
        finally:
            runtime.store.close()
    if cancelled:
        console.print(f"[bold green]Cancelled[/bold green] {job_id}")
    else:
        console.print(f"[bold yellow]Job {job_id} is already {job.status}[/bold yellow]")
        raise typer.Exit(code=1)


@jobs_app.command("cleanup")
def jobs_cleanup(
    ctx: typer.Context,
    days: int = typer.Option(7, "--days", min=0, help="Delete finished jobs older than this"),
):
    with _errors():
        runtime = _runtime(ctx)
        try:
            deleted = JobManager(runtime.store, {}).cleanup(older_than_days=days)
        finally:
            runtime.store.close()
    console.print(f"Deleted {deleted} job(s)")


def _load_batch(ctx: typer.Context, config_file: Path, overrides: dict[str, Any]):
    opts: CLIOptions = ctx.obj or CLIOptions()
    settings = load_settings(opts.config_path)
    defaults = settings.batch.model_dump()
    batch = load_batch_config(config_file, defaults)
    if overrides:
        batch = parse_batch_config({**batch.model_dump(), **overrides})
    if batch.output_dir is not None and not batch.output_dir.is_absolute():
        batch = batch.model_copy(update={"output_dir": (config_file.parent / batch.output_dir).resolve()})
    return settings, batch


@batch_app.command("run")
def batch_run(
    ctx: typer.Context,
    config_file: Path = typer.Argument(..., exists=True, dir_okay=False),
    max_concurrent: Optional[int] = typer.Option(None, "--max-concurrent"),
    timeout_ms: Optional[int] = typer.Option(None, "--timeout", help="Overall timeout in milliseconds"),
    output_dir: Optional[Path] = typer.Option(None, "--output-dir"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
):
    """Run every job in a JSON or YAML batch file."""
    overrides = _params(max_concurrent=max_concurrent, timeout_ms=timeout_ms, output_dir=output_dir)
    with _errors():
        settings, batch = _load_batch(ctx, config_file, overrides)
        opts: CLIOptions = ctx.obj or CLIOptions()
        runtime = Runtime(settings, opts.provider)
        runner = BatchRunner(runtime.jobs)
        result = _run(runtime, lambda: runner.execute(batch))

    if as_json:
        console.print_json(json.dumps(asdict(result)))
    else:
        table = Table(title="Batch results")
        table.add_column("#")
        table.add_column("Status")
        table.add_column("Job ID")
        table.add_column("Output / Error")
        for i, r in enumerate(result.results, start=1):
            detail = display_path(r.output_path) if r.output_path else (r.error or "")
            table.add_row(str(i), r.status, r.job_id or "-", detail)
        console.print(table)
        console.print(
            f"Total: {result.total}  Succeeded: {result.succeeded}  "
            f"Failed: {result.failed}  Cancelled: {result.cancelled}  "
            f"Duration: {result.total_duration_ms / 1000:.1f}s"
        )
        if result.total_cost is not None:
            console.print(f"Total cost: ${result.total_cost:.4f}")
    if result.succeeded != result.total:
        raise typer.Exit(code=1)


@batch_app.command("estimate")
def batch_estimate(
    ctx: typer.Context,
    config_file: Path = typer.Argument(..., exists=True, dir_okay=False),
):
    """Estimate the cost of a batch file without running it."""
    with _errors():
        _, batch = _load_batch(ctx, config_file, {})
    estimate = estimate_cost(batch)
    table = Table(title="Cost estimate")
    table.add_column("Quality")
    table.add_column("Images")
    table.add_column("Min")
    table.add_column("Max")
    for q in estimate.breakdown:
        table.add_row(q.quality, str(q.count), f"${q.cost_min:.2f}", f"${q.cost_max:.2f}")
    console.print(table)
    console.print(
        f"Total images: {estimate.total_images}  "
        f"Estimated cost: ${estimate.cost_min:.2f} - ${estimate.cost_max:.2f}"
    )


@history_app.command("list")
def history_list(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", min=1, max=100),
    offset: int = typer.Option(0, "--offset", min=0),
    tool: Optional[ToolName] = typer.Option(None, "--tool"),
    query: Optional[str] = typer.Option(None, "--query", "-q", help="Search prompts"),
):
    with _errors():
        runtime = _runtime(ctx)
        try:
            records = runtime.store.list_history(
                limit=limit, offset=offset, tool_name=tool.value if tool else None, query=query
            )
            total = runtime.store.count_history()
        finally:
            runtime.store.close()

    table = Table(title=f"History ({len(records)} of {total})")
    table.add_column("ID")
    table.add_column("Created")
    table.add_column("Tool")
    table.add_column("Images")
    table.add_column("Cost")
    table.add_column("Prompt")
    for r in records:
        cost = f"${r.estimated_cost:.4f}" if r.estimated_cost is not None else "-"
        table.add_row(
            r.id,
            r.created_at.isoformat(timespec="seconds"),
            r.tool_name,
            str(len(r.output_paths)),
            cost,
            r.prompt[:50],
        )
    console.print(table)


@history_app.command("show")
def history_show(ctx: typer.Context, history_id: str = typer.Argument(...)):
    with _errors():
        runtime = _runtime(ctx)
        try:
            record = runtime.store.get_history(history_id)
        finally:
            runtime.store.close()
        if record is None:
            raise HistoryNotFoundError(history_id)
    console.print_json(json.dumps(record.model_dump(mode="json")))


@metadata_app.command("show")
def metadata_show(
    ctx: typer.Context,
    image: Path = typer.Argument(..., exists=True, dir_okay=False),
):
    """Print the provenance record embedded in an image."""
    with _errors():
        runtime = _runtime(ctx)
        try:
            inspection = inspect_image(image, runtime.store)
        finally:
            runtime.store.close()

    if inspection.record is None:
        console.print(f"[bold yellow]No provenance metadata found in[/bold yellow] {image}")
        raise typer.Exit(code=1)
    console.print_json(inspection.record.to_json())
    if inspection.history is None:
        console.print("[yellow]No matching history record[/yellow]")
    elif inspection.verification is not None:
        color = "green" if inspection.verification.valid else "red"
        console.print(f"[{color}]{inspection.verification.message}[/{color}]")


@metadata_app.command("verify")
def metadata_verify(
    ctx: typer.Context,
    image: Path = typer.Argument(..., exists=True, dir_okay=False),
):
    """Check an image's embedded parameter hash against its history record."""
    with _errors():
        runtime = _runtime(ctx)
        try:
            inspection = inspect_image(image, runtime.store)
        finally:
            runtime.store.close()
        if inspection.record is None:
            raise NotFoundError(f"No provenance metadata found in {image}")
        if inspection.history is None:
            raise HistoryNotFoundError(inspection.record.id)
        assert_authentic(inspection.record, inspection.history.parameters)
    console.print(f"[bold green]{inspection.verification.message}[/bold green]")


if __name__ == "__main__":
    app()
