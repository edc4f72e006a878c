"""Refresh triggers.

Every source of "the call list may have changed" (the periodic timer, network
coming back, voicemail count going up, a call ending, a missed call) posts a
``Trigger`` onto one queue. A single dispatcher task turns triggers into
refresh requests, so all trigger state lives here and the fetch path has one
entry point.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

from callsync.states import CallState

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL = 30 * 60.0
DEFAULT_INITIAL_DELAY = 5.0
# Lets backend state settle before we ask for it
DEFAULT_FETCH_DELAY = 1.0
# Catch the caller hanging up, then the caller giving up on leaving a voicemail
MISSED_CALL_DELAYS = (10.0, 60.0)


class TriggerEvent(Enum):
    TIMER = "timer"
    NETWORK_UP = "network_up"
    MESSAGE_WAITING = "message_waiting"
    CALL_STATE = "call_state"
    MISSED_CALL = "missed_call"
    MANUAL = "manual"


@dataclass
class Trigger:
    event: TriggerEvent
    unread: int = 0
    on_the_phone: bool = False
    peers: list[str] = field(default_factory=list)
    call_ended: bool = False


RequestRefresh = Callable[[float], Awaitable[bool]]


class RefreshScheduler:
    def __init__(
        self,
        request_refresh: RequestRefresh,
        call_state: Optional[CallState] = None,
        *,
        interval: float = DEFAULT_REFRESH_INTERVAL,
        initial_delay: float = DEFAULT_INITIAL_DELAY,
        fetch_delay: float = DEFAULT_FETCH_DELAY,
        missed_call_delays: tuple[float, ...] = MISSED_CALL_DELAYS,
    ):
        self.request_refresh = request_refresh
        self.call_state = call_state or CallState()
        self.interval = interval
        self.initial_delay = initial_delay
        self.fetch_delay = fetch_delay
        self.missed_call_delays = missed_call_delays

        self._queue: asyncio.Queue[Trigger] = asyncio.Queue()
        self._timer_task: Optional[asyncio.Task] = None
        self._dispatcher_task: Optional[asyncio.Task] = None
        self._pending: set[asyncio.Task] = set()
        self._unread = 0

    @property
    def enabled(self) -> bool:
        return self._dispatcher_task is not None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def enable(self) -> None:
        """Register all triggers and (re)start the periodic timer."""
        if self._timer_task is not None:
            self._timer_task.cancel()
        if self._dispatcher_task is None:
            self._dispatcher_task = asyncio.create_task(self._dispatch(), name="refresh-dispatcher")
        self._timer_task = asyncio.create_task(self._run_timer(), name="refresh-timer")
        logger.info(
            "Refresh triggers registered: interval=%.0fs initial_delay=%.1fs",
            self.interval, self.initial_delay,
        )

    async def disable(self) -> None:
        """Unregister triggers; cancels the timer and every pending delayed task."""
        tasks = [t for t in (self._timer_task, self._dispatcher_task) if t is not None]
        tasks.extend(self._pending)
        self._timer_task = None
        self._dispatcher_task = None
        self._pending.clear()
        # A delayed fetch may be the one disabling us (backend said "not permitted")
        current = asyncio.current_task()
        tasks = [t for t in tasks if t is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        # Drop triggers that arrived while disabling
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        logger.info("Refresh triggers unregistered")

    def post(self, trigger: Trigger) -> bool:
        """Queue a trigger. Call state is tracked even while disabled."""
        if trigger.event is TriggerEvent.CALL_STATE:
            trigger.call_ended = self.call_state.update(trigger.on_the_phone, trigger.peers)
        if not self.enabled:
            logger.debug("Ignoring %s trigger, refresh disabled", trigger.event.value)
            return False
        self._queue.put_nowait(trigger)
        return True

    def call_later(self, delay: float, callback: Callable[[], Awaitable[object]], name: str = "") -> asyncio.Task:
        """Run ``callback`` after ``delay`` seconds; cancelled by ``disable``."""

        async def _later():
            await asyncio.sleep(delay)
            await callback()

        task = asyncio.create_task(_later(), name=name or "refresh-delayed")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait until every queued trigger has been dispatched."""
        await self._queue.join()

    async def _run_timer(self) -> None:
        await asyncio.sleep(self.initial_delay)
        while True:
            logger.debug("Timer popped, refreshing call history")
            self.post(Trigger(TriggerEvent.TIMER))
            await asyncio.sleep(self.interval)

    async def _dispatch(self) -> None:
        while True:
            trigger = await self._queue.get()
            try:
                await self._handle(trigger)
            except Exception:
                logger.exception("Failed to handle %s trigger", trigger.event.value)
            finally:
                self._queue.task_done()

    async def _handle(self, trigger: Trigger) -> None:
        event = trigger.event
        if event is TriggerEvent.MESSAGE_WAITING:
            # More voicemail than before: someone probably left one after a missed call
            increased = trigger.unread > self._unread
            self._unread = trigger.unread
            if increased:
                logger.debug("Message waiting count increased to %d", trigger.unread)
                await self.request_refresh(self.fetch_delay)
        elif event is TriggerEvent.CALL_STATE:
            if trigger.call_ended:
                logger.debug("No longer on the phone")
                await self.request_refresh(self.fetch_delay)
        elif event is TriggerEvent.MISSED_CALL:
            for delay in self.missed_call_delays:
                self.call_later(
                    delay,
                    lambda: self.request_refresh(self.fetch_delay),
                    name=f"missed-call-refresh-{delay:.0f}s",
                )
        else:
            logger.debug("%s trigger, refreshing call history", event.value)
            await self.request_refresh(self.fetch_delay)
