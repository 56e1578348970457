"""
JSON catalog files.

A catalog file is an object with a ``steps`` list. Each step names its
action and optional precondition by ``type`` (see ``actions.ACTION_TYPES``
and ``actions.PRECONDITION_TYPES``). Paths given as ``source`` are read
relative to the catalog file.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from .actions import (
    ACTION_TYPES,
    AllOf,
    CommandAction,
    CommandFails,
    CommandSucceeds,
    FileLacks,
    PRECONDITION_TYPES,
    SequenceAction,
    ShellAction,
    WriteFileAction,
    shell_argv,
)
from .catalog import Catalog, load_catalog
from .errors import CatalogError
from .models import RunAs, Severity, Step

logger = logging.getLogger("fedora_provision")

STEP_KEYS = {
    "id",
    "description",
    "severity",
    "run_as",
    "timeout",
    "after",
    "mutates",
    "action",
    "precondition",
}


def _require(spec: Dict[str, Any], key: str, where: str) -> Any:
    if key not in spec:
        raise CatalogError(f"{where}: missing '{key}'")
    return spec[key]


def _string_list(value: Any, where: str) -> Tuple[str, ...]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise CatalogError(f"{where}: expected a list of strings")
    return tuple(value)


def _script(value: Any, where: str) -> str:
    if isinstance(value, list):
        return "\n".join(_string_list(value, where))
    if not isinstance(value, str):
        raise CatalogError(f"{where}: script must be a string or list of lines")
    return value


def _mode(value: Any, where: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise CatalogError(f"{where}: invalid file mode {value!r}")
    # Modes are octal digits, written as "0644" or 644.
    try:
        mode = int(str(value), 8)
    except ValueError:
        raise CatalogError(f"{where}: invalid file mode {value!r}") from None
    if not 0 <= mode <= 0o7777:
        raise CatalogError(f"{where}: invalid file mode {value!r}")
    return mode


def parse_action(spec: Any, base_dir: Path, where: str) -> Any:
    if not isinstance(spec, dict):
        raise CatalogError(f"{where}: action must be an object")
    kind = _require(spec, "type", where)
    if kind not in ACTION_TYPES:
        raise CatalogError(f"{where}: unknown action type {kind!r}")
    if kind == "command":
        env = spec.get("env")
        if env is not None and not isinstance(env, dict):
            raise CatalogError(f"{where}: env must be an object")
        return CommandAction(
            argv=_string_list(_require(spec, "argv", where), f"{where}.argv"),
            env=tuple(sorted((str(k), str(v)) for k, v in env.items())) if env else None,
            cwd=spec.get("cwd"),
        )
    if kind == "shell":
        return ShellAction(_script(_require(spec, "script", where), f"{where}.script"))
    if kind == "write_file":
        path = _require(spec, "path", where)
        if "content" in spec:
            content = _script(spec["content"], f"{where}.content")
        elif "source" in spec:
            source = base_dir / spec["source"]
            try:
                content = source.read_text(encoding="utf-8")
            except OSError as e:
                raise CatalogError(f"{where}: cannot read source {source}: {e}") from e
        else:
            raise CatalogError(f"{where}: write_file needs 'content' or 'source'")
        return WriteFileAction(
            path=path,
            content=content,
            mode=_mode(spec.get("mode"), where),
            append=bool(spec.get("append", False)),
        )
    if kind == "sequence":
        actions = _require(spec, "actions", where)
        if not isinstance(actions, list) or not actions:
            raise CatalogError(f"{where}: sequence needs a non-empty 'actions' list")
        return SequenceAction(
            tuple(
                parse_action(a, base_dir, f"{where}.actions[{i}]")
                for i, a in enumerate(actions)
            )
        )
    raise CatalogError(f"{where}: unsupported action type {kind!r}")


def parse_precondition(spec: Any, where: str) -> Any:
    if not isinstance(spec, dict):
        raise CatalogError(f"{where}: precondition must be an object")
    kind = _require(spec, "type", where)
    if kind in ("command_succeeds", "command_fails"):
        if "shell" in spec:
            argv = shell_argv(_script(spec["shell"], f"{where}.shell"))
        else:
            argv = _string_list(_require(spec, "argv", where), f"{where}.argv")
        return CommandSucceeds(argv) if kind == "command_succeeds" else CommandFails(argv)
    if kind == "all":
        conditions = _require(spec, "conditions", where)
        if not isinstance(conditions, list) or not conditions:
            raise CatalogError(f"{where}: 'all' needs a non-empty 'conditions' list")
        return AllOf(
            tuple(
                parse_precondition(c, f"{where}.conditions[{i}]")
                for i, c in enumerate(conditions)
            )
        )
    if kind == "file_lacks":
        return FileLacks(_require(spec, "path", where), _require(spec, "text", where))
    if kind in ("command_missing", "command_exists"):
        return PRECONDITION_TYPES[kind](_require(spec, "command", where))
    if kind in ("path_exists", "path_missing"):
        return PRECONDITION_TYPES[kind](_require(spec, "path", where))
    raise CatalogError(f"{where}: unknown precondition type {kind!r}")


def parse_step(spec: Any, base_dir: Path, position: int) -> Step:
    where = f"steps[{position}]"
    if not isinstance(spec, dict):
        raise CatalogError(f"{where}: step must be an object")
    unknown = sorted(set(spec) - STEP_KEYS)
    if unknown:
        raise CatalogError(f"{where}: unknown keys {', '.join(unknown)}")
    step_id = _require(spec, "id", where)
    if not isinstance(step_id, str):
        raise CatalogError(f"{where}: id must be a string, got {step_id!r}")
    where = f"{where} ({step_id})"
    try:
        severity = Severity(spec.get("severity", Severity.FATAL.value))
        run_as = RunAs(spec.get("run_as", RunAs.ROOT.value))
    except ValueError as e:
        raise CatalogError(f"{where}: {e}") from None
    timeout = spec.get("timeout")
    if timeout is not None and not isinstance(timeout, (int, float)):
        raise CatalogError(f"{where}: timeout must be a number of seconds")
    precondition = spec.get("precondition")
    return Step(
        id=step_id,
        description=spec.get("description", step_id),
        action=parse_action(_require(spec, "action", where), base_dir, f"{where}.action"),
        severity=severity,
        precondition=(
            parse_precondition(precondition, f"{where}.precondition")
            if precondition is not None
            else None
        ),
        run_as=run_as,
        mutates=_string_list(spec.get("mutates", []), f"{where}.mutates"),
        timeout=float(timeout) if timeout is not None else None,
        after=_string_list(spec.get("after", []), f"{where}.after"),
    )


def parse_catalog(data: Any, base_dir: Path, source: str = "") -> Catalog:
    if not isinstance(data, dict):
        raise CatalogError("Catalog must be a JSON object with a 'steps' list")
    steps = data.get("steps")
    if not isinstance(steps, list):
        raise CatalogError("Catalog must contain a 'steps' list")
    parsed: List[Step] = [parse_step(spec, base_dir, i) for i, spec in enumerate(steps)]
    return load_catalog(parsed, name=str(data.get("name", "")), source=source)


def load_catalog_file(path: Union[str, Path]) -> Catalog:
    """Read and validate a JSON catalog file."""
    path = Path(path).expanduser()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise CatalogError(f"Catalog file not found: {path}") from None
    except json.JSONDecodeError as e:
        raise CatalogError(f"Catalog {path} is not valid JSON: {e}") from e
    except OSError as e:
        raise CatalogError(f"Cannot read catalog {path}: {e}") from e
    catalog = parse_catalog(data, path.resolve().parent, source=str(path))
    logger.info(f"Loaded catalog '{catalog.name or path.name}' ({len(catalog)} steps)")
    return catalog
