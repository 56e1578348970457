import logging
import os
from pathlib import Path
from typing import Optional, Tuple, Union

from rich.logging import RichHandler

from .ui import console

LOGGER_NAME = "fedora_provision"


def _file_handler(log_file: Path) -> logging.FileHandler:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    if not log_file.exists():
        log_file.touch(mode=0o600)
    else:
        os.chmod(str(log_file), 0o600)
    handler = logging.FileHandler(log_file)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(
        logging.Formatter("[%(asctime)s] [%(levelname)s] %(message)s", "%Y-%m-%d %H:%M:%S")
    )
    return handler


def setup_logger(
    log_file: Union[str, Path],
    fallback_dir: Optional[Union[str, Path]] = None,
    debug: bool = False,
) -> Tuple[logging.Logger, Optional[Path]]:
    """Console logging through rich plus a DEBUG-level log file.

    If ``log_file`` cannot be opened, the log goes to ``fallback_dir``
    instead. Returns the logger and the file actually written, if any.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    for h in logger.handlers[:]:
        logger.removeHandler(h)
        h.close()

    console_handler = RichHandler(console=console, rich_tracebacks=True, show_path=False)
    console_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    logger.addHandler(console_handler)

    candidates = [Path(log_file)]
    if fallback_dir is not None:
        candidates.append(Path(fallback_dir) / Path(log_file).name)
    for candidate in candidates:
        try:
            logger.addHandler(_file_handler(candidate))
        except OSError as e:
            logger.warning(f"Could not log to {candidate}: {e}")
            continue
        logger.debug(f"Logging to {candidate}")
        return logger, candidate
    logger.error("File logging disabled; only console output will be kept")
    return logger, None
