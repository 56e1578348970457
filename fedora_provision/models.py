from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Set, Tuple

if TYPE_CHECKING:
    from .engine import StepContext


def utc_now() -> str:
    return datetime.now().astimezone().isoformat(timespec="seconds")


# ----------------------------------------------------------------
# Enums
# ----------------------------------------------------------------
class Severity(str, Enum):
    """What a failure of the step means for the rest of the run."""

    FATAL = "fatal"
    RECOVERABLE = "recoverable"


class RunAs(str, Enum):
    """Identity a step action executes as."""

    ROOT = "root"
    USER = "user"


class OutcomeKind(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED_RECOVERABLE = "failed_recoverable"
    FAILED_FATAL = "failed_fatal"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"
    INTERRUPTED = "interrupted"


# ----------------------------------------------------------------
# Step Definition
# ----------------------------------------------------------------
@dataclass(frozen=True)
class Step:
    """A named, ordered unit of provisioning work.

    ``action`` is called with a :class:`StepContext` and signals failure by
    raising. ``precondition``, when given, is called the same way and the
    step is skipped if it returns false. Paths listed in ``mutates`` are
    backed up by the engine before the action runs.
    """

    id: str
    description: str
    action: Callable[["StepContext"], Any]
    severity: Severity = Severity.FATAL
    precondition: Optional[Callable[["StepContext"], bool]] = None
    run_as: RunAs = RunAs.ROOT
    mutates: Tuple[str, ...] = ()
    timeout: Optional[float] = None
    after: Tuple[str, ...] = ()

    def describe_action(self) -> str:
        describe = getattr(self.action, "describe", None)
        if callable(describe):
            return str(describe())
        return getattr(self.action, "__name__", repr(self.action))


# ----------------------------------------------------------------
# Outcomes and Journal
# ----------------------------------------------------------------
@dataclass(frozen=True)
class Outcome:
    kind: OutcomeKind
    detail: str = ""
    simulated: bool = False

    @classmethod
    def succeeded(cls, simulated: bool = False) -> "Outcome":
        return cls(OutcomeKind.SUCCEEDED, simulated=simulated)

    @classmethod
    def skipped(cls, reason: str, simulated: bool = False) -> "Outcome":
        return cls(OutcomeKind.SKIPPED, reason, simulated)

    @classmethod
    def failed(cls, severity: Severity, detail: str) -> "Outcome":
        if severity == Severity.FATAL:
            return cls(OutcomeKind.FAILED_FATAL, detail)
        return cls(OutcomeKind.FAILED_RECOVERABLE, detail)

    @property
    def is_failure(self) -> bool:
        return self.kind in (OutcomeKind.FAILED_RECOVERABLE, OutcomeKind.FAILED_FATAL)

    @property
    def is_done(self) -> bool:
        """Whether a resumed run may skip the step."""
        return self.kind in (OutcomeKind.SUCCEEDED, OutcomeKind.SKIPPED)


@dataclass
class StepResult:
    step_id: str
    outcome: Outcome
    started_at: str
    ended_at: str

    @property
    def error_detail(self) -> Optional[str]:
        return self.outcome.detail if self.outcome.is_failure else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "outcome": self.outcome.kind.value,
            "detail": self.outcome.detail,
            "simulated": self.outcome.simulated,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepResult":
        return cls(
            step_id=data["step_id"],
            outcome=Outcome(
                OutcomeKind(data["outcome"]),
                data.get("detail", ""),
                bool(data.get("simulated", False)),
            ),
            started_at=data["started_at"],
            ended_at=data["ended_at"],
        )


@dataclass
class RunJournal:
    """Record of one provisioning run, in execution order."""

    run_id: str
    started_at: str
    catalog: str = ""
    dry_run: bool = False
    resumed_from: Optional[str] = None
    results: List[StepResult] = field(default_factory=list)
    status: RunStatus = RunStatus.RUNNING
    finished_at: Optional[str] = None
    # Steps with a start record and no result (the process died mid-step).
    interrupted_steps: List[str] = field(default_factory=list)

    def result_for(self, step_id: str) -> Optional[StepResult]:
        for result in reversed(self.results):
            if result.step_id == step_id:
                return result
        return None

    def done_step_ids(self) -> Set[str]:
        return {
            step_id
            for step_id in {r.step_id for r in self.results}
            if self.result_for(step_id).outcome.is_done
        }

    def succeeded_step_ids(self) -> Set[str]:
        return {
            r.step_id
            for r in self.results
            if r.outcome.kind == OutcomeKind.SUCCEEDED and not r.outcome.simulated
        }

    def count(self, kind: OutcomeKind) -> int:
        return sum(1 for r in self.results if r.outcome.kind == kind)

    @property
    def failures(self) -> List[StepResult]:
        return [r for r in self.results if r.outcome.is_failure]

    @property
    def is_finished(self) -> bool:
        return self.status != RunStatus.RUNNING
