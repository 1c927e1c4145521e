"""Store configuration read from the environment."""

import os
from pathlib import Path

from pydantic import BaseModel

DB_FILE_NAME = "sh2.db"
DEFAULT_BUSY_TIMEOUT_MS = 5000


def _default_home_dir() -> Path:
    """Return default home: ~/.sh2"""
    return Path.home() / ".sh2"


class StoreConfig(BaseModel):
    """Where the store lives and how long writers wait on a locked database.

    >>> cfg = StoreConfig(home_dir=Path("/tmp/sh2"))
    >>> cfg.db_path.name
    'sh2.db'
    """

    home_dir: Path
    db_file_name: str = DB_FILE_NAME
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS

    @property
    def db_path(self) -> Path:
        return self.home_dir / self.db_file_name

    @classmethod
    def from_env(cls) -> "StoreConfig":
        """Load configuration from environment.

        SH2_HOME overrides the home directory, SH2_BUSY_TIMEOUT_MS the
        writer wait in milliseconds.

        Raises:
            ValueError: If SH2_BUSY_TIMEOUT_MS is not a positive integer.
        """
        home = os.getenv("SH2_HOME")
        home_dir = Path(home).expanduser() if home else _default_home_dir()

        raw_timeout = os.getenv("SH2_BUSY_TIMEOUT_MS", "").strip()
        busy_timeout_ms = DEFAULT_BUSY_TIMEOUT_MS
        if raw_timeout:
            try:
                busy_timeout_ms = int(raw_timeout)
            except ValueError:
                raise ValueError(
                    f"SH2_BUSY_TIMEOUT_MS must be an integer, got {raw_timeout!r}"
                ) from None
            if busy_timeout_ms <= 0:
                raise ValueError("SH2_BUSY_TIMEOUT_MS must be positive")

        return cls(home_dir=home_dir, busy_timeout_ms=busy_timeout_ms)
