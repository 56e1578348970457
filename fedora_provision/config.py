from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

CATALOG_DIR = Path(__file__).resolve().parent / "catalogs"


@dataclass
class AppConfig:
    """Default settings for a provisioning run.

    Every value can be overridden from the command line; the journal
    directory also from FEDORA_PROVISION_JOURNAL_DIR.
    """

    LOG_FILE: str = "/var/log/fedora_provision.log"
    JOURNAL_DIR: str = "/var/lib/fedora_provision/journals"
    CATALOG: str = field(
        default_factory=lambda: str(CATALOG_DIR / "fedora_workstation.json")
    )
    # None leaves external actions unbounded; they block as long as they need.
    STEP_TIMEOUT: Optional[float] = None
    USERNAME: Optional[str] = None

