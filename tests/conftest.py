import logging
from typing import Callable, List, Optional

import pytest

from fedora_provision.engine import ProvisioningEngine, RunContext
from fedora_provision.identity import current_identity
from fedora_provision.journal import JournalStore
from fedora_provision.models import Severity, Step


@pytest.fixture(autouse=True)
def reset_app_logger():
    """The CLI configures the package logger; give every test a clean one."""
    yield
    logger = logging.getLogger("fedora_provision")
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def identity():
    return current_identity()


@pytest.fixture
def run_context(identity):
    return RunContext(
        user=identity,
        elevated=identity,
        logger=logging.getLogger("provision-tests"),
        require_privilege=False,
    )


@pytest.fixture
def store(tmp_path):
    return JournalStore(tmp_path / "journals")


@pytest.fixture
def engine(store):
    return ProvisioningEngine(store)


class Recorder:
    """Builds steps whose actions note that they ran."""

    def __init__(self) -> None:
        self.calls: List[str] = []

    def step(
        self,
        step_id: str,
        severity: Severity = Severity.FATAL,
        fails: bool = False,
        precondition: Optional[Callable] = None,
        **kwargs,
    ) -> Step:
        def action(ctx):
            self.calls.append(step_id)
            if fails:
                raise RuntimeError(f"{step_id} broke")

        action.__name__ = f"do_{step_id}"
        return Step(
            id=step_id,
            description=f"Step {step_id}",
            action=action,
            severity=severity,
            precondition=precondition,
            **kwargs,
        )


@pytest.fixture
def recorder():
    return Recorder()


