"""Entry-point for the Lecture Notes application."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from pathlib import Path
from typing import List, Optional

import typer
import uvicorn
from rich.console import Console

from lecture_notes.bootstrap import initialize_app
from lecture_notes.logging_utils import build_handlers, configure_logging, get_log_file_path
from lecture_notes.processing.documents import source_type_for
from lecture_notes.services.naming import build_source_key
from lecture_notes.services.progress import JobStatus, StartOutcome
from lecture_notes.services.runtime import build_services
from lecture_notes.services.storage import TranscriptionRepository
from lecture_notes.ui.console import JobsOverview
from lecture_notes.web.server import create_app


LOGGER = logging.getLogger("lecture_notes.cli")

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000
DEFAULT_OWNER = "local"


cli = typer.Typer(add_completion=False, help="Lecture Notes management commands")


def _prepare_logging(storage_root: Path, level: int = logging.INFO) -> None:
    configure_logging(level, handlers=build_handlers(get_log_file_path(storage_root)))


def _normalize_root_path(root_path: Optional[str]) -> str:
    if root_path is None:
        return ""
    normalized = root_path.strip().rstrip("/")
    if normalized and not normalized.startswith("/"):
        normalized = f"/{normalized}"
    return normalized


@cli.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Launch the web server when no explicit command is provided."""

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve, host=DEFAULT_HOST, port=DEFAULT_PORT, root_path=None)


@cli.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, help="Host interface for the web server"),
    port: int = typer.Option(DEFAULT_PORT, help="Port for the web server"),
    root_path: Optional[str] = typer.Option(
        None,
        help="Prefix the application expects when mounted behind a proxy",
        envvar="LECTURE_NOTES_ROOT_PATH",
    ),
) -> None:
    """Run the HTTP API together with the background pipeline workers."""

    app_config = initialize_app()
    _prepare_logging(app_config.storage_root)

    repository = TranscriptionRepository(app_config)
    normalized_root = _normalize_root_path(root_path)
    app = create_app(repository, config=app_config, root_path=normalized_root)

    server_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        root_path=normalized_root,
    )
    server = uvicorn.Server(server_config)
    app.state.server = server
    LOGGER.info("Serving Lecture Notes on http://%s:%s%s", host, port, normalized_root or "/")
    server.run()


@cli.command()
def process(
    paths: List[Path] = typer.Argument(
        ...,
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
        help="Recording or document files forming one lecture.",
    ),
    title: Optional[str] = typer.Option(None, help="Lecture title (defaults to the first file name)"),
) -> None:
    """Create a job from local files and run the pipeline to completion."""

    config = initialize_app()
    _prepare_logging(config.storage_root)

    repository = TranscriptionRepository(config)
    services = build_services(config, repository)

    keys = []
    for path in paths:
        key = build_source_key(DEFAULT_OWNER, path.name)
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        services.object_store.put(key, path.read_bytes(), content_type)
        keys.append(key)

    first = paths[0]
    job = repository.create_job(
        DEFAULT_OWNER,
        title or first.stem,
        keys,
        source_type=source_type_for(first.name) if len(paths) == 1 else "batch",
        mime_type=mimetypes.guess_type(first.name)[0],
        original_file_name=first.name,
    )
    typer.echo(f"Created job {job.id} with {len(keys)} source(s)")

    outcome, run_id = services.tracker.claim(job.id)
    if outcome is not StartOutcome.STARTED:
        typer.echo(f"Job {job.id} could not be started")
        raise typer.Exit(code=1)

    report = asyncio.run(services.pipeline.run(job.id, run_id=run_id))
    for stage in report.stages:
        suffix = f": {stage.reason}" if stage.reason else ""
        typer.echo(f"  {stage.stage}: {stage.outcome.value}{suffix}")

    JobsOverview(repository).show_job(repository.require_job(job.id))
    if report.status is not JobStatus.COMPLETED:
        raise typer.Exit(code=1)


@cli.command()
def jobs(
    owner: Optional[str] = typer.Option(None, help="Only list jobs of this owner"),
) -> None:
    """Render a table of stored transcription jobs."""

    config = initialize_app()
    repository = TranscriptionRepository(config)
    JobsOverview(repository, owner_id=owner).run()


@cli.command()
def status(job_id: str = typer.Argument(..., help="Identifier of the job")) -> None:
    """Show the status, progress and error of one job."""

    config = initialize_app()
    repository = TranscriptionRepository(config)
    job = repository.get_job(job_id)
    if job is None:
        Console(stderr=True).print(f"[red]Job {job_id} not found")
        raise typer.Exit(code=1)
    JobsOverview(repository).show_job(job)


if __name__ == "__main__":
    cli()
