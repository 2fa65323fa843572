"""
CLI utility helpers: consoles, exit codes and result rendering.
"""

from __future__ import annotations

import typer
from rich.console import Console
from rich.table import Table

from imagegate.core.errors import ConfigurationError
from imagegate.pipeline.config import Stage
from imagegate.pipeline.results import (
    OverallStatus,
    PushOutcome,
    RunResult,
    StageStatus,
    VerificationOutcome,
)

console = Console()
err_console = Console(stderr=True)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2

_STATUS_STYLE = {
    OverallStatus.PASSED: "green",
    OverallStatus.FAILED: "red",
    OverallStatus.ABORTED: "red bold",
    OverallStatus.PENDING: "dim",
}

_STAGE_STYLE = {
    StageStatus.SUCCESS: ("green", "✓"),
    StageStatus.FAILURE: ("red", "✗"),
    StageStatus.SKIPPED: ("yellow", "–"),
    StageStatus.PENDING: ("dim", "·"),
}


def fail_config(exc: ConfigurationError) -> typer.Exit:
    """Print a configuration error and return the matching exit."""
    err_console.print(f"[bold red]Configuration error:[/bold red] {exc.message}")
    return typer.Exit(code=EXIT_CONFIG)


def exit_for(result: RunResult) -> None:
    """Raise ``typer.Exit(1)`` naming the failed services, if any."""
    if result.overall_status is OverallStatus.PASSED:
        return
    failed = result.failed_services
    err_console.print(f"[bold red]✗ Failed:[/bold red] {', '.join(failed) or 'none'}")
    raise typer.Exit(code=EXIT_FAILED)


def print_run_result(result: RunResult, *, title: str = "Pipeline Results") -> None:
    """Render the per-service, per-stage summary table."""
    table = Table(title=f"{title} (run {result.run_id}, version {result.version})")
    table.add_column("Service", style="bold")
    for stage in Stage:
        table.add_column(stage.value.capitalize())
    table.add_column("Details")

    for record in result.services:
        cells = []
        for stage in Stage:
            stage_record = record.stage(stage)
            style, mark = _STAGE_STYLE[stage_record.status]
            cells.append(f"[{style}]{mark} {stage_record.status.value}[/{style}]")
        table.add_row(record.service, *cells, _details(record.stages))

    console.print(table)
    style = _STATUS_STYLE[result.overall_status]
    console.print(f"[{style}]{result.summary}[/{style}]")
    if result.dry_run:
        console.print("[yellow]Dry run: no images were built or pushed.[/yellow]")


def _details(stages: list) -> str:
    notes = []
    for stage_record in stages:
        outcome = stage_record.outcome
        if stage_record.status is StageStatus.FAILURE:
            notes.append(f"{stage_record.stage.value}: {stage_record.detail}")
        elif stage_record.status is StageStatus.SKIPPED and stage_record.detail:
            notes.append(f"{stage_record.stage.value} skipped ({stage_record.detail})")
        if isinstance(outcome, VerificationOutcome):
            if outcome.passed:
                notes.append(f"healthy in {outcome.elapsed_seconds:.1f}s")
            if outcome.warning:
                notes.append(f"⚠ {outcome.error_line_count} error-like log lines")
            if outcome.left_running:
                notes.append(f"left running: {outcome.instance_name} on :{outcome.host_port}")
        elif isinstance(outcome, PushOutcome) and outcome.warning:
            notes.append(f"⚠ {outcome.warning}")
    return "; ".join(notes) or "—"
