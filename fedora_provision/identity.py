"""
Identity resolution and switching.

The engine runs as root, but user-scoped configuration (shell profile,
terminal and browser settings) must be created by the invoking user. Steps
declare which identity they need and the engine switches the effective
uid/gid around each action instead of relying on ambient environment
variables.
"""

import logging
import os
import pwd
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

from .errors import PrivilegeError

logger = logging.getLogger("fedora_provision")


@dataclass(frozen=True)
class Identity:
    name: str
    uid: int
    gid: int
    home: str
    shell: str = "/bin/bash"

    @classmethod
    def from_pwd(cls, entry: pwd.struct_passwd) -> "Identity":
        return cls(
            name=entry.pw_name,
            uid=entry.pw_uid,
            gid=entry.pw_gid,
            home=entry.pw_dir,
            shell=entry.pw_shell or "/bin/bash",
        )

    def groups(self) -> List[int]:
        try:
            return os.getgrouplist(self.name, self.gid)
        except OSError:
            return [self.gid]

    def environment(self) -> Dict[str, str]:
        return {"HOME": self.home, "USER": self.name, "LOGNAME": self.name}


def is_root() -> bool:
    return os.geteuid() == 0


def current_identity() -> Identity:
    return Identity.from_pwd(pwd.getpwuid(os.geteuid()))


def root_identity() -> Identity:
    return Identity.from_pwd(pwd.getpwuid(0))


def lookup_user(name: str) -> Identity:
    try:
        return Identity.from_pwd(pwd.getpwnam(name))
    except KeyError:
        raise PrivilegeError(f"User '{name}' not found.") from None


def resolve_invoking_user(username: Optional[str] = None) -> Identity:
    """Find the non-privileged user the machine is being provisioned for.

    An explicit name wins, then ``SUDO_USER``, then the uid that launched
    pkexec, then the current user.
    """
    if username:
        return lookup_user(username)
    sudo_user = os.environ.get("SUDO_USER")
    if sudo_user and sudo_user != "root":
        return lookup_user(sudo_user)
    pkexec_uid = os.environ.get("PKEXEC_UID")
    if pkexec_uid and pkexec_uid.isdigit():
        try:
            return Identity.from_pwd(pwd.getpwuid(int(pkexec_uid)))
        except KeyError:
            raise PrivilegeError(f"PKEXEC_UID {pkexec_uid} has no passwd entry.") from None
    return current_identity()


def require_root() -> None:
    if not is_root():
        raise PrivilegeError("Must run as root (e.g. with sudo).")


@contextmanager
def switch_identity(identity: Identity) -> Iterator[None]:
    """Run the body with the effective uid/gid of ``identity``.

    A no-op when the process already runs as that identity. Switching to any
    other identity requires root.
    """
    if os.geteuid() == identity.uid:
        yield
        return
    if os.geteuid() != 0:
        raise PrivilegeError(
            f"Cannot switch to '{identity.name}' without root privileges."
        )

    saved_groups = os.getgroups()
    saved_gid = os.getegid()
    saved_env = {k: os.environ.get(k) for k in ("HOME", "USER", "LOGNAME")}
    os.setgroups(identity.groups())
    os.setegid(identity.gid)
    os.seteuid(identity.uid)
    os.environ.update(identity.environment())
    logger.debug(f"Switched effective identity to {identity.name} ({identity.uid})")
    try:
        yield
    finally:
        os.seteuid(0)
        os.setegid(saved_gid)
        os.setgroups(saved_groups)
        for key, value in saved_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value
        logger.debug("Restored root identity")


@contextmanager
def regain_root() -> Iterator[None]:
    """Temporarily restore euid 0 inside :func:`switch_identity`.

    Spawning a child as another user needs the privilege to set its uid,
    groups and gid, which the switched process no longer holds.
    """
    if os.getuid() != 0 or os.geteuid() == 0:
        yield
        return
    saved_uid, saved_gid, saved_groups = os.geteuid(), os.getegid(), os.getgroups()
    os.seteuid(0)
    try:
        yield
    finally:
        os.setgroups(saved_groups)
        os.setegid(saved_gid)
        os.seteuid(saved_uid)


def spawn_kwargs(identity: Optional[Identity]) -> Dict[str, Any]:
    """subprocess keyword arguments that make a child run as ``identity``."""
    if identity is None or identity.uid == os.geteuid():
        return {}
    if os.geteuid() != 0:
        raise PrivilegeError(
            f"Cannot run commands as '{identity.name}' without root privileges."
        )
    return {
        "user": identity.uid,
        "group": identity.gid,
        "extra_groups": identity.groups(),
    }
