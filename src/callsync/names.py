import asyncio
import logging
from typing import AsyncIterator, Optional, Protocol

from callsync.numbers import log_hash

logger = logging.getLogger(__name__)

DEFAULT_LOOKUP_TIMEOUT = 5.0


class Directory(Protocol):
    def query(self, number: str) -> AsyncIterator[dict]: ...


class NameResolver:
    """Best-effort display-name lookup with a per-cycle cache.

    Each number is queried at most once per cycle. The wait for the directory
    is bounded; a timeout or error is cached as "no name" and not retried.
    """

    def __init__(self, directory: Optional[Directory], timeout: float = DEFAULT_LOOKUP_TIMEOUT):
        self.directory = directory
        self.timeout = timeout
        self._cache: dict[str, Optional[str]] = {}

    def reset(self) -> None:
        self._cache.clear()

    async def resolve(self, number: str) -> Optional[str]:
        if number in self._cache:
            return self._cache[number]
        if self.directory is None:
            logger.debug("No directory to look up %s", log_hash(number))
            return None

        try:
            name = await asyncio.wait_for(self._first_match(number), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.info("Directory lookup for %s timed out after %.1fs", log_hash(number), self.timeout)
            name = None
        except Exception as e:
            logger.warning("Directory lookup for %s failed: %s", log_hash(number), e)
            name = None

        self._cache[number] = name
        logger.debug("Directory lookup for %s found=%s", log_hash(number), name is not None)
        return name

    async def _first_match(self, number: str) -> Optional[str]:
        async for contact in self.directory.query(number):
            name = contact.get("displayName")
            if name:
                return name
        return None
