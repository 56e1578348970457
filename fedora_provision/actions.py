"""
Built-in step actions and preconditions.

These are the building blocks catalog files are made of. Each one is a
small callable that receives the engine's StepContext; actions raise on
failure, preconditions return True when the step should run.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .command import command_exists, format_cmd


# ----------------------------------------------------------------
# Actions
# ----------------------------------------------------------------
@dataclass(frozen=True)
class CommandAction:
    argv: Tuple[str, ...]
    env: Optional[Tuple[Tuple[str, str], ...]] = None
    cwd: Optional[str] = None

    supports_dry_run = True

    def describe(self) -> str:
        return f"run: {format_cmd(self.argv)}"

    def __call__(self, ctx: Any) -> None:
        ctx.run(
            [ctx.expand(arg) for arg in self.argv],
            env=dict(self.env) if self.env else None,
            cwd=ctx.expand(self.cwd) if self.cwd else None,
        )


@dataclass(frozen=True)
class ShellAction:
    """A bash snippet, run with errexit, nounset and pipefail."""

    script: str

    supports_dry_run = True

    def describe(self) -> str:
        first_line = self.script.strip().splitlines()[0] if self.script.strip() else ""
        more = " ..." if len(self.script.strip().splitlines()) > 1 else ""
        return f"run shell: {first_line}{more}"

    def __call__(self, ctx: Any) -> None:
        ctx.run(["bash", "-euo", "pipefail", "-c", ctx.expand(self.script)])


@dataclass(frozen=True)
class WriteFileAction:
    path: str
    content: str
    mode: Optional[int] = None
    append: bool = False

    supports_dry_run = True

    def describe(self) -> str:
        return f"{'append to' if self.append else 'write'} {self.path}"

    def __call__(self, ctx: Any) -> None:
        ctx.write_file(
            self.path, ctx.expand(self.content), mode=self.mode, append=self.append
        )


@dataclass(frozen=True)
class SequenceAction:
    actions: Tuple[Any, ...]

    supports_dry_run = True

    def describe(self) -> str:
        parts = [getattr(a, "describe", lambda: repr(a))() for a in self.actions]
        return "; then ".join(parts)

    def __call__(self, ctx: Any) -> None:
        for action in self.actions:
            action(ctx)


# ----------------------------------------------------------------
# Preconditions
# ----------------------------------------------------------------
@dataclass(frozen=True)
class CommandMissing:
    command: str

    def describe(self) -> str:
        return f"'{self.command}' is not installed"

    def __call__(self, ctx: Any) -> bool:
        return not command_exists(self.command)


@dataclass(frozen=True)
class CommandExists:
    command: str

    def describe(self) -> str:
        return f"'{self.command}' is installed"

    def __call__(self, ctx: Any) -> bool:
        return command_exists(self.command)


@dataclass(frozen=True)
class PathExists:
    path: str

    def describe(self) -> str:
        return f"{self.path} exists"

    def __call__(self, ctx: Any) -> bool:
        return Path(ctx.expand(self.path)).exists()


@dataclass(frozen=True)
class PathMissing:
    path: str

    def describe(self) -> str:
        return f"{self.path} does not exist"

    def __call__(self, ctx: Any) -> bool:
        return not Path(ctx.expand(self.path)).exists()


@dataclass(frozen=True)
class FileLacks:
    """True while ``text`` has not been written to ``path`` yet."""

    path: str
    text: str

    def describe(self) -> str:
        return f"{self.path} does not contain {self.text!r}"

    def __call__(self, ctx: Any) -> bool:
        target = Path(ctx.expand(self.path))
        if not target.is_file():
            return True
        return ctx.expand(self.text) not in target.read_text(encoding="utf-8", errors="replace")


@dataclass(frozen=True)
class CommandSucceeds:
    argv: Tuple[str, ...]

    def describe(self) -> str:
        return f"'{format_cmd(self.argv)}' succeeds"

    def __call__(self, ctx: Any) -> bool:
        return ctx.probe([ctx.expand(arg) for arg in self.argv])


@dataclass(frozen=True)
class CommandFails:
    argv: Tuple[str, ...]

    def describe(self) -> str:
        return f"'{format_cmd(self.argv)}' fails"

    def __call__(self, ctx: Any) -> bool:
        return not ctx.probe([ctx.expand(arg) for arg in self.argv])


@dataclass(frozen=True)
class AllOf:
    conditions: Tuple[Any, ...]

    def describe(self) -> str:
        return " and ".join(c.describe() for c in self.conditions)

    def __call__(self, ctx: Any) -> bool:
        return all(condition(ctx) for condition in self.conditions)


def shell_argv(script: str) -> Tuple[str, ...]:
    return ("bash", "-euo", "pipefail", "-c", script)


ACTION_TYPES: Dict[str, type] = {
    "command": CommandAction,
    "shell": ShellAction,
    "write_file": WriteFileAction,
    "sequence": SequenceAction,
}

PRECONDITION_TYPES: Dict[str, type] = {
    "command_missing": CommandMissing,
    "command_exists": CommandExists,
    "path_exists": PathExists,
    "path_missing": PathMissing,
    "file_lacks": FileLacks,
    "command_succeeds": CommandSucceeds,
    "command_fails": CommandFails,
    "all": AllOf,
}
