import datetime
import filecmp
import logging
import shutil
from pathlib import Path
from typing import Optional, Union

from .errors import BackupError

logger = logging.getLogger("fedora_provision")


def backup_path_for(file_path: Path, timestamp: Optional[str] = None) -> Path:
    """Sibling path ``<name>.bak.<timestamp>`` that does not exist yet."""
    if timestamp is None:
        timestamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
    candidate = file_path.with_name(f"{file_path.name}.bak.{timestamp}")
    counter = 1
    while candidate.exists():
        candidate = file_path.with_name(f"{file_path.name}.bak.{timestamp}.{counter}")
        counter += 1
    return candidate


def backup_file(file_path: Union[str, Path]) -> Optional[Path]:
    """Copy an existing file to a timestamped sibling before it is overwritten.

    Returns the backup path, or None when there is nothing to back up. Raises
    BackupError if the copy cannot be made or does not match the original, in
    which case the caller must not touch the original.
    """
    file_path = Path(file_path)
    if not file_path.exists() and not file_path.is_symlink():
        logger.debug(f"Nothing to back up at {file_path}")
        return None
    if not file_path.is_file():
        raise BackupError(f"Cannot back up non-file: {file_path}")

    backup_path = backup_path_for(file_path)
    try:
        shutil.copy2(file_path, backup_path)
        if not filecmp.cmp(file_path, backup_path, shallow=False):
            raise BackupError(f"Backup {backup_path} does not match {file_path}")
    except BackupError:
        raise
    except Exception as e:
        raise BackupError(f"Failed backup {file_path} to {backup_path}: {e}") from e
    logger.info(f"Backed up '{file_path}' to '{backup_path.name}'")
    return backup_path
