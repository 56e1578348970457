"""
Durable run journals.

Each run is stored as one JSON-lines file, ``<run_id>.jsonl``, in the journal
directory. Records are only ever appended, and every append is flushed and
fsynced before the engine moves on, so a crash leaves a valid partial
journal behind. The last record of a finished run is its status marker.
"""

import json
import logging
import os
import re
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .errors import JournalError
from .models import RunJournal, RunStatus, StepResult, utc_now

logger = logging.getLogger("fedora_provision")

JOURNAL_SUFFIX = ".jsonl"
_RUN_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


def new_run_id() -> str:
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    return f"{stamp}-{uuid.uuid4().hex[:6]}"


class JournalStore:
    def __init__(self, directory: Union[str, Path]) -> None:
        self.directory = Path(directory)

    def path_for(self, run_id: str) -> Path:
        if not _RUN_ID_RE.match(run_id) or run_id in (".", ".."):
            raise JournalError(f"Invalid run id: {run_id!r}")
        return self.directory / f"{run_id}{JOURNAL_SUFFIX}"

    # ------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------
    def _append(self, run_id: str, record: Dict[str, Any]) -> None:
        path = self.path_for(run_id)
        try:
            with open(path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(record, sort_keys=True) + "\n")
                fh.flush()
                os.fsync(fh.fileno())
        except OSError as e:
            raise JournalError(f"Could not append to journal {path}: {e}") from e

    def create(self, journal: RunJournal) -> Path:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            os.chmod(self.directory, 0o700)
        except OSError as e:
            raise JournalError(f"Journal directory {self.directory} unusable: {e}") from e
        path = self.path_for(journal.run_id)
        if path.exists():
            raise JournalError(f"Journal {path} already exists")
        self._append(
            journal.run_id,
            {
                "event": "run_started",
                "run_id": journal.run_id,
                "started_at": journal.started_at,
                "catalog": journal.catalog,
                "dry_run": journal.dry_run,
                "resumed_from": journal.resumed_from,
            },
        )
        logger.debug(f"Journal created at {path}")
        return path

    def step_started(self, journal: RunJournal, step_id: str) -> None:
        self._append(
            journal.run_id, {"event": "step_started", "step_id": step_id, "at": utc_now()}
        )

    def step_finished(self, journal: RunJournal, result: StepResult) -> None:
        record = {"event": "step_finished"}
        record.update(result.to_dict())
        self._append(journal.run_id, record)

    def finalize(self, journal: RunJournal) -> None:
        self._append(
            journal.run_id,
            {
                "event": "run_finished",
                "status": journal.status.value,
                "at": journal.finished_at or utc_now(),
            },
        )

    # ------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------
    def load(self, run_id: str) -> RunJournal:
        path = self.path_for(run_id)
        if not path.is_file():
            raise JournalError(f"No journal for run {run_id} in {self.directory}")
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise JournalError(f"Could not read journal {path}: {e}") from e

        journal: Optional[RunJournal] = None
        open_steps: List[str] = []
        for lineno, line in enumerate(lines, 1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                # A torn final line means the process died while appending.
                if lineno == len(lines):
                    logger.warning(f"Ignoring truncated last record in {path}")
                    break
                raise JournalError(f"Corrupt record at {path}:{lineno}")
            event = record.get("event")
            if event == "run_started":
                journal = RunJournal(
                    run_id=record["run_id"],
                    started_at=record["started_at"],
                    catalog=record.get("catalog", ""),
                    dry_run=bool(record.get("dry_run", False)),
                    resumed_from=record.get("resumed_from"),
                )
            elif journal is None:
                raise JournalError(f"Journal {path} does not start with a run record")
            elif event == "step_started":
                open_steps.append(record["step_id"])
            elif event == "step_finished":
                journal.results.append(StepResult.from_dict(record))
                if record["step_id"] in open_steps:
                    open_steps.remove(record["step_id"])
            elif event == "run_finished":
                journal.status = RunStatus(record["status"])
                journal.finished_at = record.get("at")
            else:
                logger.warning(f"Unknown journal event {event!r} at {path}:{lineno}")

        if journal is None:
            raise JournalError(f"Journal {path} is empty")
        journal.interrupted_steps = open_steps
        return journal

    def list_runs(self) -> List[RunJournal]:
        if not self.directory.is_dir():
            return []
        journals = []
        for path in sorted(self.directory.glob(f"*{JOURNAL_SUFFIX}")):
            try:
                journals.append(self.load(path.name[: -len(JOURNAL_SUFFIX)]))
            except JournalError as e:
                logger.warning(f"Skipping unreadable journal {path.name}: {e}")
        journals.sort(key=lambda j: (j.started_at, j.run_id))
        return journals

    def latest_run_id(self, include_dry_runs: bool = False) -> Optional[str]:
        runs = [j for j in self.list_runs() if include_dry_runs or not j.dry_run]
        return runs[-1].run_id if runs else None

    def resolve(self, run_id: str) -> str:
        """Turn ``latest`` into a concrete run id."""
        if run_id == "latest":
            latest = self.latest_run_id()
            if latest is None:
                raise JournalError(f"No previous runs in {self.directory}")
            return latest
        return run_id
