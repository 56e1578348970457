"""
Provisioning engine.

Runs a catalog of steps strictly in declared order against the local
machine. Every step is bracketed by journal appends, so a crash between
steps leaves a consistent journal that a later run can resume from. Only
steps whose failure is declared fatal (and failed backups) stop the run.
"""

import logging
import os
import signal
import subprocess
import tempfile
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Sequence, Set, Union

from .backup import backup_file
from .catalog import Catalog
from .command import run_command
from .errors import BackupError, JournalError, PreconditionError, StepTimeoutError
from .identity import (
    Identity,
    require_root,
    resolve_invoking_user,
    root_identity,
    switch_identity,
)
from .journal import JournalStore, new_run_id
from .models import (
    Outcome,
    OutcomeKind,
    RunAs,
    RunJournal,
    RunStatus,
    Step,
    StepResult,
    utc_now,
)


# ----------------------------------------------------------------
# Run Configuration
# ----------------------------------------------------------------
@dataclass
class RunOptions:
    resume_from: Optional[str] = None
    dry_run: bool = False
    # Default per-step timeout in seconds; a step's own timeout wins.
    step_timeout: Optional[float] = None


@dataclass
class RunContext:
    """Who the run is for and how to report it."""

    user: Identity
    elevated: Identity
    logger: logging.Logger = field(
        default_factory=lambda: logging.getLogger("fedora_provision")
    )
    require_privilege: bool = True

    @classmethod
    def for_invoking_user(
        cls, username: Optional[str] = None, logger: Optional[logging.Logger] = None
    ) -> "RunContext":
        ctx = cls(user=resolve_invoking_user(username), elevated=root_identity())
        if logger is not None:
            ctx.logger = logger
        return ctx

    def identity_for(self, step: Step) -> Identity:
        return self.user if step.run_as == RunAs.USER else self.elevated


class StepContext:
    """What a step action and its precondition get to work with.

    Commands started through :meth:`run` and files written through
    :meth:`write_file` honor the step's identity, its remaining timeout and
    dry-run mode. Existing files are always backed up before being written.
    """

    def __init__(
        self,
        step: Step,
        identity: Identity,
        run_context: RunContext,
        dry_run: bool = False,
        timeout: Optional[float] = None,
    ) -> None:
        self.step = step
        self.identity = identity
        self.user = run_context.user
        self.logger = run_context.logger
        self.dry_run = dry_run
        self.timeout = timeout
        self.deadline = time.monotonic() + timeout if timeout is not None else None
        self.backups: Dict[str, str] = {}

    def expand(self, text: str) -> str:
        """Substitute ``{user}`` and ``{home}`` of the invoking user."""
        return text.replace("{user}", self.user.name).replace("{home}", self.user.home)

    def remaining_timeout(self) -> Optional[float]:
        if self.deadline is None:
            return None
        remaining = self.deadline - time.monotonic()
        if remaining <= 0:
            raise StepTimeoutError(self.timeout, f"step '{self.step.id}'")
        return remaining

    def run(
        self,
        cmd: Sequence[str],
        check: bool = True,
        capture_output: bool = True,
        input_text: Optional[str] = None,
        cwd: Optional[Union[str, Path]] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> subprocess.CompletedProcess:
        return run_command(
            cmd,
            identity=self.identity,
            check=check,
            capture_output=capture_output,
            timeout=self.remaining_timeout(),
            cwd=cwd,
            env=env,
            input_text=input_text,
            dry_run=self.dry_run,
            own_session=True,
        )

    def probe(self, cmd: Sequence[str]) -> bool:
        """Run a read-only check, even in dry-run mode. True on exit code 0.

        Dry runs may be unprivileged, so probes then run as the current user.
        """
        result = run_command(
            cmd,
            identity=None if self.dry_run else self.identity,
            check=False,
            timeout=self.remaining_timeout(),
            own_session=True,
        )
        return result.returncode == 0

    def backup(self, path: Union[str, Path]) -> Optional[Path]:
        target = Path(self.expand(str(path)))
        if self.dry_run:
            if target.exists():
                self.logger.info(f"Would back up {target}")
            return None
        backup_path = backup_file(target)
        if backup_path is not None:
            self.backups[str(target)] = str(backup_path)
        return backup_path

    def write_file(
        self,
        path: Union[str, Path],
        content: Union[str, bytes],
        mode: Optional[int] = None,
        append: bool = False,
    ) -> Path:
        """Back up ``path`` if it exists, then write or append ``content``.

        Replacement goes through a temporary sibling and an atomic rename, so
        the original is either untouched or fully replaced.
        """
        target = Path(self.expand(str(path)))
        data = content.encode("utf-8") if isinstance(content, str) else content
        verb = "append" if append else "write"
        if self.dry_run:
            self.logger.info(f"Would {verb} {len(data)} bytes to {target}")
            if target.exists():
                self.logger.info(f"Would back up {target} first")
            return target

        if str(target) not in self.backups:
            self.backup(target)
        target.parent.mkdir(parents=True, exist_ok=True)
        if append:
            with open(target, "ab") as fh:
                fh.write(data)
            if mode is not None:
                os.chmod(target, mode)
        else:
            existing_mode = target.stat().st_mode & 0o7777 if target.exists() else None
            fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", dir=str(target.parent))
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(data)
                    fh.flush()
                    os.fsync(fh.fileno())
                final_mode = mode if mode is not None else existing_mode
                os.chmod(tmp_name, final_mode if final_mode is not None else 0o644)
                os.replace(tmp_name, target)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        self.logger.debug(f"Wrote {len(data)} bytes to {target} ({verb})")
        return target


# ----------------------------------------------------------------
# Engine
# ----------------------------------------------------------------
class ProvisioningEngine:
    def __init__(self, store: JournalStore, reporter: Any = None) -> None:
        self.store = store
        self.reporter = reporter
        self._stop_requested = False

    def request_stop(self, signum: Optional[int] = None, frame: Any = None) -> None:
        """Ask the run to halt at the next step boundary."""
        if not self._stop_requested:
            name = signal.Signals(signum).name if signum else "request"
            logging.getLogger("fedora_provision").warning(
                f"Interrupted by {name}. Finishing the current step, then stopping."
            )
        self._stop_requested = True

    @contextmanager
    def _stop_signals(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return
        previous = {
            sig: signal.signal(sig, self.request_stop)
            for sig in (signal.SIGINT, signal.SIGTERM)
        }
        try:
            yield
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

    @contextmanager
    def _deadline(self, step: Step, timeout: Optional[float]) -> Iterator[None]:
        """Interrupt an in-process action that outlives its timeout."""
        usable = (
            timeout is not None
            and hasattr(signal, "setitimer")
            and threading.current_thread() is threading.main_thread()
        )
        if not usable:
            yield
            return

        def on_alarm(signum: int, frame: Any) -> None:
            raise StepTimeoutError(timeout, f"step '{step.id}'")

        previous = signal.signal(signal.SIGALRM, on_alarm)
        signal.setitimer(signal.ITIMER_REAL, timeout)
        try:
            yield
        finally:
            signal.setitimer(signal.ITIMER_REAL, 0)
            signal.signal(signal.SIGALRM, previous)

    def _notify(self, event: str, *args: Any) -> None:
        handler = getattr(self.reporter, event, None)
        if handler is not None:
            handler(*args)

    # ------------------------------------------------------------
    # Resume and history
    # ------------------------------------------------------------
    def _load_prior(
        self, catalog: Catalog, options: RunOptions, logger: logging.Logger
    ) -> Optional[RunJournal]:
        if not options.resume_from:
            return None
        prior = self.store.load(self.store.resolve(options.resume_from))
        if prior.dry_run:
            raise JournalError(f"Run {prior.run_id} was a dry run and cannot be resumed")
        for step_id in prior.interrupted_steps:
            logger.warning(
                f"Step {step_id} did not finish in run {prior.run_id}; treating it as failed"
            )
        unknown = sorted({r.step_id for r in prior.results} - set(catalog.ids))
        if unknown:
            logger.warning(
                f"Run {prior.run_id} recorded steps missing from this catalog: {', '.join(unknown)}"
            )
        logger.info(
            f"Resuming from run {prior.run_id} ({prior.status.value}, "
            f"{len(prior.done_step_ids())} steps already done)"
        )
        return prior

    def _previous_successes(self) -> Set[str]:
        succeeded: Set[str] = set()
        for journal in self.store.list_runs():
            if not journal.dry_run:
                succeeded |= journal.succeeded_step_ids()
        return succeeded

    # ------------------------------------------------------------
    # Step execution
    # ------------------------------------------------------------
    def _execute(
        self,
        step: Step,
        context: RunContext,
        options: RunOptions,
    ) -> Outcome:
        logger = context.logger
        dry_run = options.dry_run
        identity = context.identity_for(step)
        timeout = step.timeout if step.timeout is not None else options.step_timeout
        ctx = StepContext(step, identity, context, dry_run=dry_run, timeout=timeout)

        @contextmanager
        def as_step_identity() -> Iterator[None]:
            if dry_run:
                yield
            else:
                with switch_identity(identity):
                    yield

        if step.precondition is not None:
            try:
                with as_step_identity():
                    should_run = bool(step.precondition(ctx))
            except PreconditionError as e:
                logger.warning(f"[{step.id}] precondition could not be evaluated: {e}")
                return Outcome.skipped(f"precondition error: {e}", simulated=dry_run)
            except Exception as e:
                logger.warning(f"[{step.id}] precondition raised {type(e).__name__}: {e}")
                return Outcome.skipped(
                    f"precondition error: {type(e).__name__}: {e}", simulated=dry_run
                )
            if not should_run:
                reason = "precondition not met"
                describe = getattr(step.precondition, "describe", None)
                if callable(describe):
                    reason += f" ({describe()})"
                return Outcome.skipped(reason, simulated=dry_run)

        if dry_run:
            for path in step.mutates:
                ctx.backup(path)
            logger.info(f"[{step.id}] would {step.describe_action()}")
            if getattr(step.action, "supports_dry_run", False):
                try:
                    step.action(ctx)
                except Exception as e:
                    logger.warning(f"[{step.id}] dry run of action failed: {e}")
            return Outcome.succeeded(simulated=True)

        try:
            with as_step_identity():
                for path in step.mutates:
                    ctx.backup(path)
        except BackupError as e:
            logger.error(f"[{step.id}] backup failed, target left untouched: {e}")
            return Outcome(OutcomeKind.FAILED_FATAL, f"backup failed: {e}")

        try:
            with self._deadline(step, timeout):
                with as_step_identity():
                    step.action(ctx)
        except BackupError as e:
            logger.error(f"[{step.id}] backup failed, target left untouched: {e}")
            return Outcome(OutcomeKind.FAILED_FATAL, f"backup failed: {e}")
        except StepTimeoutError as e:
            logger.error(f"[{step.id}] {e}")
            return Outcome.failed(step.severity, str(e))
        except Exception as e:
            logger.debug(f"[{step.id}] action raised", exc_info=True)
            return Outcome.failed(step.severity, f"{type(e).__name__}: {e}")
        return Outcome.succeeded()

    def _log_result(self, step: Step, result: StepResult, logger: logging.Logger) -> None:
        outcome = result.outcome
        suffix = " (simulated)" if outcome.simulated else ""
        message = f"[{step.id}] {outcome.kind.value}{suffix}"
        if outcome.detail:
            message += f": {outcome.detail}"
        if outcome.kind == OutcomeKind.FAILED_FATAL:
            logger.error(message)
        elif outcome.kind == OutcomeKind.FAILED_RECOVERABLE:
            logger.warning(message)
        else:
            logger.info(message)

    # ------------------------------------------------------------
    # Run
    # ------------------------------------------------------------
    def run(
        self,
        catalog: Catalog,
        context: RunContext,
        options: Optional[RunOptions] = None,
    ) -> RunJournal:
        """Execute ``catalog`` in order and return the finished journal.

        Dry runs are not persisted. Everything else is appended to the
        journal store before and after each step.
        """
        options = options or RunOptions()
        logger = context.logger
        if context.require_privilege and not options.dry_run:
            require_root()

        prior = self._load_prior(catalog, options, logger)
        done = prior.done_step_ids() if prior else set()
        history = set() if options.dry_run else self._previous_successes()
        persist = not options.dry_run

        journal = RunJournal(
            run_id=new_run_id(),
            started_at=utc_now(),
            catalog=catalog.source or catalog.name,
            dry_run=options.dry_run,
            resumed_from=prior.run_id if prior else None,
        )
        if persist:
            self.store.create(journal)
        logger.info(
            f"Run {journal.run_id} started: {len(catalog)} steps for user "
            f"{context.user.name}" + (" (dry run)" if options.dry_run else "")
        )

        self._stop_requested = False
        status = RunStatus.COMPLETED
        total = len(catalog)
        with self._stop_signals():
            for position, step in enumerate(catalog, 1):
                if self._stop_requested:
                    status = RunStatus.INTERRUPTED
                    break

                self._notify("step_started", step, position, total)
                started_at = utc_now()
                if persist:
                    self.store.step_started(journal, step.id)

                if step.id in done:
                    previous = prior.result_for(step.id)
                    outcome = Outcome.skipped(
                        f"already {previous.outcome.kind.value} in run {prior.run_id}",
                        simulated=options.dry_run,
                    )
                else:
                    logger.info(f"[{step.id}] {step.description}")
                    outcome = self._execute(step, context, options)
                    if (
                        outcome.kind == OutcomeKind.SUCCEEDED
                        and not outcome.simulated
                        and step.precondition is None
                        and step.id in history
                    ):
                        logger.warning(
                            f"[{step.id}] has no precondition and succeeded again on a "
                            "machine where it already ran; it must be idempotent"
                        )

                result = StepResult(step.id, outcome, started_at, utc_now())
                journal.results.append(result)
                if persist:
                    self.store.step_finished(journal, result)
                self._log_result(step, result, logger)
                self._notify("step_finished", step, result)

                if outcome.kind == OutcomeKind.FAILED_FATAL:
                    status = RunStatus.ABORTED
                    break
            else:
                if self._stop_requested:
                    logger.warning("Stop requested after the last step; run is complete")

        journal.status = status
        journal.finished_at = utc_now()
        if persist:
            self.store.finalize(journal)
        logger.info(
            f"Run {journal.run_id} {status.value}: "
            f"{journal.count(OutcomeKind.SUCCEEDED)} succeeded, "
            f"{journal.count(OutcomeKind.SKIPPED)} skipped, "
            f"{journal.count(OutcomeKind.FAILED_RECOVERABLE)} recoverable failures, "
            f"{journal.count(OutcomeKind.FAILED_FATAL)} fatal"
        )
        return journal


EXIT_OK = 0
EXIT_ABORTED = 1
EXIT_CATALOG_ERROR = 2
EXIT_ENVIRONMENT_ERROR = 3
EXIT_INTERRUPTED = 130


def exit_code_for(journal: RunJournal) -> int:
    if journal.status == RunStatus.ABORTED:
        return EXIT_ABORTED
    if journal.status == RunStatus.INTERRUPTED:
        return EXIT_INTERRUPTED
    return EXIT_OK
