"""Run summaries: the console table, the summary file and the run list."""

import logging
from pathlib import Path
from typing import Any, List, Optional, Sequence, Union

from rich import box
from rich.panel import Panel
from rich.table import Table

from . import APP_NAME, VERSION
from .catalog import Catalog
from .models import OutcomeKind, RunJournal, RunStatus, Step, StepResult
from .ui import NordColors, console, print_error, print_success, print_warning

logger = logging.getLogger("fedora_provision")

OUTCOME_STYLES = {
    OutcomeKind.SUCCEEDED: ("success", "SUCCEEDED"),
    OutcomeKind.SKIPPED: ("skipped", "SKIPPED"),
    OutcomeKind.FAILED_RECOVERABLE: ("warning", "FAILED (recoverable)"),
    OutcomeKind.FAILED_FATAL: ("error", "FAILED (fatal)"),
}


def _description(catalog: Optional[Catalog], step_id: str) -> str:
    if catalog is not None and step_id in catalog:
        return catalog[step_id].description
    return ""


def _not_run(journal: RunJournal, catalog: Optional[Catalog]) -> List[str]:
    if catalog is None:
        return []
    recorded = {r.step_id for r in journal.results}
    return [step_id for step_id in catalog.ids if step_id not in recorded]


class ConsoleReporter:
    """Shows a spinner while a step runs and one line when it finishes."""

    def __init__(self) -> None:
        self._status: Any = None

    def step_started(self, step: Step, position: int, total: int) -> None:
        self._status = console.status(
            f"[{NordColors.FROST_2}][{position}/{total}] {step.description}[/]",
            spinner="dots",
        )
        self._status.start()

    def step_finished(self, step: Step, result: StepResult) -> None:
        if self._status is not None:
            self._status.stop()
            self._status = None
        style, label = OUTCOME_STYLES[result.outcome.kind]
        message = f"{step.description}: {label}"
        if result.outcome.simulated:
            message += " (dry run)"
        if style == "success":
            print_success(message)
        elif style == "error":
            print_error(message)
        elif style == "warning":
            print_warning(message)
        else:
            console.print(f"[skipped]- {message}[/skipped]")


def build_summary_table(journal: RunJournal, catalog: Optional[Catalog] = None) -> Table:
    table = Table(title=f"Run {journal.run_id}", style="banner", box=box.ROUNDED)
    table.add_column("Step", style="header")
    table.add_column("Description")
    table.add_column("Outcome")
    table.add_column("Detail", overflow="fold")
    for result in journal.results:
        style, label = OUTCOME_STYLES[result.outcome.kind]
        if result.outcome.simulated:
            label += " *"
        table.add_row(
            result.step_id,
            _description(catalog, result.step_id),
            f"[{style}]{label}[/{style}]",
            result.outcome.detail,
        )
    for step_id in _not_run(journal, catalog):
        table.add_row(step_id, _description(catalog, step_id), "[debug]NOT RUN[/debug]", "")
    return table


def print_run_summary(journal: RunJournal, catalog: Optional[Catalog] = None) -> None:
    title = "Provisioning Summary" + (" (dry run)" if journal.dry_run else "")
    console.print(
        Panel(
            build_summary_table(journal, catalog),
            title=f"[banner]{title}[/banner]",
            border_style=NordColors.FROST_3,
        )
    )
    recoverable = journal.count(OutcomeKind.FAILED_RECOVERABLE)
    if journal.status == RunStatus.ABORTED:
        print_error(f"Run aborted by a fatal failure. Fix it, then re-run with --resume {journal.run_id}")
    elif journal.status == RunStatus.INTERRUPTED:
        print_warning(f"Run interrupted. Continue with --resume {journal.run_id}")
    elif recoverable:
        print_warning(
            f"Completed with {recoverable} recoverable failure"
            f"{'s' if recoverable != 1 else ''}. "
            f"Re-run with --resume {journal.run_id} after remediation."
        )
    else:
        print_success("All steps completed successfully!")


def render_summary_text(journal: RunJournal, catalog: Optional[Catalog] = None) -> str:
    lines = [
        f"{APP_NAME} v{VERSION} - run summary",
        "=" * 60,
        f"Run id:       {journal.run_id}",
        f"Catalog:      {journal.catalog or '-'}",
        f"Started:      {journal.started_at}",
        f"Finished:     {journal.finished_at or '-'}",
        f"Status:       {journal.status.value}",
    ]
    if journal.resumed_from:
        lines.append(f"Resumed from: {journal.resumed_from}")
    lines.append("")
    for result in journal.results:
        _, label = OUTCOME_STYLES[result.outcome.kind]
        line = f"[{label}] {result.step_id}"
        description = _description(catalog, result.step_id)
        if description:
            line += f" - {description}"
        lines.append(line)
        if result.outcome.detail:
            for detail_line in result.outcome.detail.splitlines():
                lines.append(f"    {detail_line}")
    for step_id in _not_run(journal, catalog):
        lines.append(f"[NOT RUN] {step_id}")
    if journal.failures:
        lines += ["", f"Re-run with: fedora-provision --resume {journal.run_id}"]
    return "\n".join(lines) + "\n"


def write_summary_file(
    journal: RunJournal, directory: Union[str, Path], catalog: Optional[Catalog] = None
) -> Path:
    path = Path(directory) / f"{journal.run_id}.summary.txt"
    path.write_text(render_summary_text(journal, catalog), encoding="utf-8")
    logger.info(f"Setup summary saved to: {path}")
    return path


def print_run_list(journals: Sequence[RunJournal]) -> None:
    if not journals:
        print_warning("No provisioning runs recorded yet.")
        return
    table = Table(title="Recorded Runs", style="banner", box=box.ROUNDED)
    table.add_column("Run id", style="header", no_wrap=True)
    table.add_column("Started")
    table.add_column("Status")
    table.add_column("Steps", justify="right")
    table.add_column("Failures", justify="right")
    table.add_column("Resumed from")
    status_styles = {
        RunStatus.COMPLETED: "success",
        RunStatus.ABORTED: "error",
        RunStatus.INTERRUPTED: "warning",
        RunStatus.RUNNING: "warning",
    }
    for journal in journals:
        style = status_styles[journal.status]
        # A journal still marked running was left behind by a crash.
        status = "crashed" if journal.status == RunStatus.RUNNING else journal.status.value
        table.add_row(
            journal.run_id,
            journal.started_at,
            f"[{style}]{status}[/{style}]",
            str(len(journal.results)),
            str(len(journal.failures)),
            journal.resumed_from or "",
        )
    console.print(table)
