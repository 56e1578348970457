import logging
from collections import Counter
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from .errors import CatalogError
from .models import RunAs, Severity, Step

logger = logging.getLogger("fedora_provision")


class Catalog:
    """A validated, ordered collection of steps. Never reordered."""

    def __init__(self, steps: Tuple[Step, ...], name: str = "", source: str = "") -> None:
        self._steps = steps
        self._by_id: Dict[str, Step] = {step.id: step for step in steps}
        self.name = name
        self.source = source

    def __iter__(self) -> Iterator[Step]:
        return iter(self._steps)

    def __len__(self) -> int:
        return len(self._steps)

    def __getitem__(self, step_id: str) -> Step:
        return self._by_id[step_id]

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._by_id

    @property
    def ids(self) -> List[str]:
        return [step.id for step in self._steps]

    def index_of(self, step_id: str) -> int:
        return self.ids.index(step_id)


def _validate_step(step: Step, position: int) -> List[str]:
    problems = []
    label = f"step #{position + 1} ({step.id!r})"
    if not isinstance(step.id, str) or not step.id.strip():
        problems.append(f"step #{position + 1} has an empty or non-string id")
    if not callable(step.action):
        problems.append(f"{label} has no callable action")
    if step.precondition is not None and not callable(step.precondition):
        problems.append(f"{label} precondition is not callable")
    if not isinstance(step.severity, Severity):
        problems.append(f"{label} severity must be a Severity, got {step.severity!r}")
    if not isinstance(step.run_as, RunAs):
        problems.append(f"{label} run_as must be a RunAs, got {step.run_as!r}")
    if step.timeout is not None and step.timeout <= 0:
        problems.append(f"{label} timeout must be positive")
    return problems


def load_catalog(
    steps: Iterable[Step], name: str = "", source: str = ""
) -> Catalog:
    """Validate an ordered sequence of steps.

    Raises CatalogError when step ids are missing or duplicated, or when an
    ``after`` constraint cannot hold in declaration order.
    """
    ordered = tuple(steps)
    problems: List[str] = []
    for position, step in enumerate(ordered):
        problems.extend(_validate_step(step, position))

    # Ids that are not strings were reported above.
    named = [step for step in ordered if isinstance(step.id, str)]
    counts = Counter(step.id for step in named)
    duplicates = sorted(step_id for step_id, n in counts.items() if n > 1)
    if duplicates:
        problems.append(f"duplicate step ids: {', '.join(duplicates)}")

    positions: Dict[str, int] = {}
    for position, step in enumerate(ordered):
        if isinstance(step.id, str):
            positions.setdefault(step.id, position)
    for position, step in enumerate(ordered):
        for dep in step.after:
            dep_position: Optional[int] = positions.get(dep)
            if dep_position is None:
                problems.append(f"step {step.id!r} must run after unknown step {dep!r}")
            elif dep_position >= position:
                problems.append(
                    f"step {step.id!r} must run after {dep!r}, which is declared "
                    f"{'as itself' if dep == step.id else 'later'}"
                )

    if problems:
        for problem in problems:
            logger.error(f"Catalog error: {problem}")
        raise CatalogError("; ".join(problems))

    logger.debug(f"Loaded catalog {name or source or '<inline>'} with {len(ordered)} steps")
    return Catalog(ordered, name=name, source=source)
