"""Rich console views of stored transcription jobs."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Optional

from rich import box
from rich.console import Console, Group
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from ..services.progress import JobStatus
from ..services.storage import TranscriptionRecord, TranscriptionRepository


STATUS_STYLES: Dict[JobStatus, str] = {
    JobStatus.PENDING: "dim",
    JobStatus.PROCESSING: "cyan",
    JobStatus.STRUCTURING: "bright_cyan",
    JobStatus.COMPLETED: "green",
    JobStatus.ERROR: "red",
    JobStatus.CANCELED: "yellow",
}


@dataclass
class JobsSnapshot:
    jobs: List[TranscriptionRecord]
    status_totals: Dict[JobStatus, int]


def format_status(job: TranscriptionRecord) -> Text:
    label = Text(job.status.value, style=STATUS_STYLES.get(job.status, "white"))
    if job.is_active:
        label.append(f" {job.progress * 100:.0f}%", style="bold")
    return label


class JobsOverview:
    """Render stored jobs as a table followed by per-status totals."""

    def __init__(
        self,
        repository: TranscriptionRepository,
        *,
        console: Optional[Console] = None,
        owner_id: Optional[str] = None,
    ) -> None:
        self._repository = repository
        self._console = console or Console()
        self._owner_id = owner_id

    def run(self) -> None:
        snapshot = self._collect_snapshot()
        console = self._console
        console.rule("[bold magenta]Lecture Notes Jobs")

        if not snapshot.jobs:
            console.print(
                Panel(
                    "No transcriptions stored yet.\n"
                    "Use [bold]python run.py process FILE[/bold] or the upload API to add one.",
                    border_style="yellow",
                    box=box.ROUNDED,
                )
            )
            return

        console.print(self._build_table(snapshot.jobs))
        console.print(self._build_totals_panel(snapshot))

    def show_job(self, job: TranscriptionRecord) -> None:
        details = Table.grid(padding=(0, 1))
        details.add_column(style="dim")
        details.add_column()
        details.add_row("Status", format_status(job))
        details.add_row("Source", f"{job.source_type} ({job.original_file_name or '-'})")
        details.add_row("Model", job.transcription_model or "-")
        details.add_row("Language", job.detected_language or "-")
        if job.duration_seconds:
            details.add_row("Duration", f"{job.duration_seconds:.0f}s")
        if job.error_message:
            details.add_row("Error", Text(job.error_message, style="red"))
        details.add_row("Updated", job.updated_at)

        body: List[object] = [details]
        if job.structured_text or job.raw_text:
            preview = (job.structured_text or job.raw_text or "").strip()
            body.append(Rule(style="magenta"))
            body.append(Text(preview[:600] + ("..." if len(preview) > 600 else ""), style="white"))
        self._console.print(
            Panel(Group(*body), title=f"{job.title} [dim]{job.id}", border_style="cyan", box=box.ROUNDED)
        )

    @staticmethod
    def _build_table(jobs: List[TranscriptionRecord]) -> Table:
        table = Table(box=box.SIMPLE_HEAVY, expand=True)
        table.add_column("ID", style="dim", no_wrap=True)
        table.add_column("Title", style="bold")
        table.add_column("Source")
        table.add_column("Status")
        table.add_column("Updated", style="dim")
        for job in jobs:
            table.add_row(job.id[:12], job.title, job.source_type, format_status(job), job.updated_at)
        return table

    @staticmethod
    def _build_totals_panel(snapshot: JobsSnapshot) -> Panel:
        metrics = Table.grid(expand=True, padding=(0, 1))
        metrics.add_column(style="dim")
        metrics.add_column(justify="right", style="bold")
        metrics.add_row("Jobs", str(len(snapshot.jobs)))
        for status in JobStatus:
            count = snapshot.status_totals.get(status, 0)
            if count:
                metrics.add_row(status.value.capitalize(), str(count))
        return Panel(metrics, title="At a glance", border_style="magenta", box=box.ROUNDED)

    def _collect_snapshot(self) -> JobsSnapshot:
        jobs = self._repository.list_jobs(self._owner_id)
        totals = Counter(job.status for job in jobs)
        return JobsSnapshot(jobs=jobs, status_totals=dict(totals))


__all__ = ["JobsOverview", "format_status"]
