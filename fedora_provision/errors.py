# ----------------------------------------------------------------
# Custom Exception Classes
# ----------------------------------------------------------------


class ProvisionError(Exception):
    """Base exception for all provisioning errors."""

    pass


class CatalogError(ProvisionError):
    """The step catalog is malformed and was rejected before execution."""

    pass


class PreconditionError(ProvisionError):
    """A precondition could not be evaluated. The step is skipped."""

    pass


class ActionError(ProvisionError):
    """A step action failed."""

    pass


class BackupError(ProvisionError):
    """A file could not be backed up before being overwritten."""

    pass


class StepTimeoutError(ProvisionError):
    """A step action exceeded its timeout."""

    def __init__(self, timeout: float, what: str = "step action") -> None:
        self.timeout = timeout
        super().__init__(f"timeout: {what} exceeded {timeout:g}s")


class PrivilegeError(ProvisionError):
    """The run cannot start, or a step cannot switch to its identity."""

    pass


class JournalError(ProvisionError):
    """A run journal is missing or unreadable."""

    pass
