import logging
import os
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from .errors import ActionError, StepTimeoutError
from .identity import Identity, regain_root, spawn_kwargs

logger = logging.getLogger("fedora_provision")


def format_cmd(cmd: Sequence[str]) -> str:
    return " ".join(shlex.quote(str(part)) for part in cmd)


def run_command(
    cmd: Sequence[str],
    identity: Optional[Identity] = None,
    check: bool = True,
    capture_output: bool = True,
    timeout: Optional[float] = None,
    cwd: Optional[Union[str, Path]] = None,
    env: Optional[Dict[str, str]] = None,
    input_text: Optional[str] = None,
    dry_run: bool = False,
    own_session: bool = False,
) -> subprocess.CompletedProcess:
    """Execute a command, optionally as another user and with a timeout.

    A timed-out child is killed and StepTimeoutError raised. With ``check``,
    a non-zero exit raises ActionError carrying the captured stderr. With
    ``own_session`` the child gets its own session, so a terminal Ctrl-C
    reaches only this process and the child runs to completion.
    """
    cmd_list: List[str] = [str(part) for part in cmd]
    cmd_str = format_cmd(cmd_list)
    who = f" as {identity.name}" if identity is not None else ""

    if dry_run:
        logger.info(f"Would run{who}: {cmd_str}")
        return subprocess.CompletedProcess(cmd_list, 0, "", "")

    logger.debug(f"Running command{who}: {cmd_str}" + (f" in {cwd}" if cwd else ""))
    process_env = os.environ.copy()
    if identity is not None:
        process_env.update(identity.environment())
    if env:
        process_env.update(env)

    try:
        with regain_root():
            result = subprocess.run(
                cmd_list,
                input=input_text,
                capture_output=capture_output,
                text=True,
                errors="replace",
                timeout=timeout,
                cwd=str(cwd) if cwd else None,
                env=process_env,
                start_new_session=own_session,
                **spawn_kwargs(identity),
            )
    except subprocess.TimeoutExpired as e:
        logger.error(f"Command timed out after {timeout} seconds: {cmd_str}")
        raise StepTimeoutError(timeout or 0, f"command '{cmd_str}'") from e
    except FileNotFoundError as e:
        logger.error(f"Command not found: {cmd_list[0]}. Ensure it is installed and in PATH.")
        raise ActionError(f"Command not found: {cmd_list[0]}") from e

    if capture_output:
        if result.stdout and result.stdout.strip():
            logger.debug(f"Cmd stdout: {result.stdout.strip()}")
        if result.stderr and result.stderr.strip():
            logger.debug(f"Cmd stderr: {result.stderr.strip()}")

    if check and result.returncode != 0:
        error_msg = f"Command '{cmd_str}' failed with code {result.returncode}."
        if result.stderr and result.stderr.strip():
            error_msg += f"\nStderr: {result.stderr.strip()[-2000:]}"
        raise ActionError(error_msg)
    return result


def command_exists(cmd: str) -> bool:
    exists = shutil.which(cmd)
    logger.debug(f"Command '{cmd}' found: {bool(exists)}")
    return bool(exists)
