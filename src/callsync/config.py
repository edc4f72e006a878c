"""Startup configuration.

Everything comes from environment variables (``.env`` locally). The required
variables are checked before the app starts so a missing backend URL fails at
boot rather than on the first refresh.
"""

import os
import sys
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

REQUIRED_VARS = [
    "CALLSYNC_BACKEND_URL",
]

OPTIONAL_VARS = [
    "CALLSYNC_API_KEY",
    "CALLSYNC_DB_PATH",
    "CALLSYNC_DIRECTORY_URL",
    "CALLSYNC_NOTIFY_URL",
    "CALLSYNC_NOTIFY_SECRET",
    "CALLSYNC_REGION",
    "CALLSYNC_EXTERNAL_LINE_CODE",
    "CALLSYNC_REFRESH_INTERVAL",
    "CALLSYNC_INITIAL_DELAY",
    "CALLSYNC_LOOKUP_TIMEOUT",
    "LOG_LEVEL",
]


def validate_config() -> None:
    """Exit with a clear error if a required variable is missing or empty.

    Logs warnings for missing optional variables.
    """
    missing = [var for var in REQUIRED_VARS if not os.getenv(var)]

    if missing:
        print(
            f"\nFATAL: Missing required environment variables:\n"
            f"  {', '.join(missing)}\n"
            f"\nSet them in .env (local) or in the deployment's secrets.\n",
            file=sys.stderr,
        )
        sys.exit(1)

    for var in OPTIONAL_VARS:
        if not os.getenv(var):
            logger.warning("Optional env var %s is not set", var)


def _float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return default


@dataclass(frozen=True)
class SyncConfig:
    backend_url: str
    api_key: str = ""
    db_path: str = "callsync.db"
    directory_url: str = ""
    notify_url: str = ""
    notify_secret: str = ""
    region: Optional[str] = None
    external_line_code: str = ""
    # None means "use the stored refresh rate, else 30 minutes"
    refresh_interval: Optional[float] = None
    initial_delay: float = 5.0
    lookup_timeout: float = 5.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "SyncConfig":
        return cls(
            backend_url=os.getenv("CALLSYNC_BACKEND_URL", ""),
            api_key=os.getenv("CALLSYNC_API_KEY", ""),
            db_path=os.getenv("CALLSYNC_DB_PATH", "callsync.db"),
            directory_url=os.getenv("CALLSYNC_DIRECTORY_URL", ""),
            notify_url=os.getenv("CALLSYNC_NOTIFY_URL", ""),
            notify_secret=os.getenv("CALLSYNC_NOTIFY_SECRET", ""),
            region=os.getenv("CALLSYNC_REGION") or None,
            external_line_code=os.getenv("CALLSYNC_EXTERNAL_LINE_CODE", ""),
            refresh_interval=_float("CALLSYNC_REFRESH_INTERVAL", None),
            initial_delay=_float("CALLSYNC_INITIAL_DELAY", 5.0),
            lookup_timeout=_float("CALLSYNC_LOOKUP_TIMEOUT", 5.0),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
