"""Local machine accessors: stable remote id, hostname, current user."""

import getpass
import logging
import os
import socket
import uuid
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# uuid5 namespace for local remote ids
REMOTE_ID_NAMESPACE = uuid.UUID("5b1a3a0e-6f0c-4a53-9a0b-2f3c8e1d7c44")

MACHINE_ID_PATHS = (Path("/etc/machine-id"), Path("/var/lib/dbus/machine-id"))


def _read_machine_id() -> Optional[str]:
    for path in MACHINE_ID_PATHS:
        try:
            value = path.read_text().strip()
        except OSError:
            continue
        if value:
            return value
    return None


def get_hostname() -> str:
    return socket.gethostname()


def get_current_user() -> str:
    return getpass.getuser()


def get_remote_id() -> str:
    """Stable id of the local machine.

    Derived from the machine id (hostname as a fallback) so repeated calls
    on the same host agree. SH2_REMOTE_ID overrides it.

    Raises:
        ValueError: If SH2_REMOTE_ID is set but is not a UUID.
    """
    override = os.environ.get("SH2_REMOTE_ID", "").strip()
    if override:
        try:
            return str(uuid.UUID(override))
        except ValueError:
            raise ValueError(f"SH2_REMOTE_ID is not a valid uuid: {override!r}") from None
    seed = _read_machine_id()
    if seed is None:
        logger.debug("No machine id found, deriving remote id from hostname")
        seed = get_hostname()
    return str(uuid.uuid5(REMOTE_ID_NAMESPACE, seed))
