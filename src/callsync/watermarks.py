"""Persisted refresh watermarks.

Two scalars are kept in the settings store:

* the client time of the last completed refresh, used to find local records
  written since the previous cycle;
* the server time of the newest server record ingested, used to skip server
  records already seen. The two come from different clocks and are never
  compared with each other.
"""

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Protocol

logger = logging.getLogger(__name__)

LAST_CLIENT_REFRESH_KEY = "callhistory.network.NETWORK_UPDATE_TIME"
LAST_SERVER_RECORD_KEY = "callhistory.network.LAST_SERVER"
REFRESH_RATE_KEY = "callhistory.network.REFRESH_RATE"


class Settings(Protocol):
    def get_int(self, key: str, default: int = 0) -> int: ...

    def set_int(self, key: str, value: int) -> None: ...


def to_millis(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def from_millis(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


@dataclass(frozen=True)
class Watermarks:
    last_client_refresh: int = 0
    last_server_record_time: int = 0
    first_run: bool = True

    @property
    def last_client_refresh_dt(self) -> datetime:
        return from_millis(self.last_client_refresh)

    @property
    def last_server_record_dt(self) -> datetime:
        return from_millis(self.last_server_record_time)


class WatermarkStore:
    """Owns the watermark pair and exposes it as an immutable snapshot.

    Only the reconciliation worker mutates it; triggers read ``snapshot``
    (or ``first_run``) and always see a consistent pair.
    """

    def __init__(self, settings: Settings):
        self._settings = settings
        self._lock = threading.Lock()
        self._current = Watermarks()
        self.reload()

    def reload(self) -> Watermarks:
        server = self._settings.get_int(LAST_SERVER_RECORD_KEY, 0)
        client = self._settings.get_int(LAST_CLIENT_REFRESH_KEY, 0)
        with self._lock:
            self._current = Watermarks(
                last_client_refresh=client,
                last_server_record_time=server,
                first_run=(server == 0),
            )
        logger.debug(
            "Watermarks loaded: client=%d server=%d first_run=%s",
            client, server, server == 0,
        )
        return self._current

    @property
    def snapshot(self) -> Watermarks:
        return self._current

    @property
    def first_run(self) -> bool:
        return self._current.first_run

    def advance_server(self, latest_end: datetime) -> bool:
        """Move the server watermark forward to ``latest_end``. Never moves back."""
        millis = to_millis(latest_end)
        with self._lock:
            if millis <= self._current.last_server_record_time:
                return False
            self._settings.set_int(LAST_SERVER_RECORD_KEY, millis)
            self._current = replace(self._current, last_server_record_time=millis)
        logger.debug("Server watermark advanced to %d", millis)
        return True

    def complete_refresh(self, now: datetime) -> None:
        """Record a finished cycle. Clears first-run."""
        millis = to_millis(now)
        with self._lock:
            self._settings.set_int(LAST_CLIENT_REFRESH_KEY, millis)
            self._current = replace(
                self._current, last_client_refresh=millis, first_run=False,
            )
        logger.debug("Client refresh watermark set to %d", millis)
