import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from callsync.backend import BackendError, CallListClient, NotPermittedError
from callsync.names import DEFAULT_LOOKUP_TIMEOUT, Directory, NameResolver
from callsync.notifications import MissedCallNotifier, NotificationSink
from callsync.numbers import NumberNormalizer
from callsync.parser import CallListParser, ParseResult, PayloadError, known_names_from
from callsync.reconciler import HistoryStore, Reconciler
from callsync.records import CallRecord
from callsync.scheduler import (
    DEFAULT_FETCH_DELAY,
    DEFAULT_INITIAL_DELAY,
    DEFAULT_REFRESH_INTERVAL,
    RefreshScheduler,
    Trigger,
    TriggerEvent,
)
from callsync.states import SI_NAME_COMBINED, CallState, ClassOfService, FeatureState
from callsync.watermarks import REFRESH_RATE_KEY, Settings, WatermarkStore

logger = logging.getLogger(__name__)


class CallHistorySync:
    """Keeps local call history in step with the backend's call list.

    Lifecycle: ``start()`` asks the backend for the subscriber's time zone and
    class of service, and enables refresh triggers if call history is allowed.
    ``stop()`` unregisters them. ``trigger_refresh()`` requests a refresh by hand.

    At most one fetch runs at a time: ``fetch_in_flight`` is checked and set
    under ``_lock``, and cleared exactly once per fetch, either when the fetch
    gives up or when the reconciliation worker finishes.
    """

    def __init__(
        self,
        *,
        client: CallListClient,
        store: HistoryStore,
        settings: Settings,
        directory: Optional[Directory] = None,
        sink: Optional[NotificationSink] = None,
        normalizer: Optional[NumberNormalizer] = None,
        call_state: Optional[CallState] = None,
        refresh_interval: Optional[float] = None,
        initial_delay: float = DEFAULT_INITIAL_DELAY,
        fetch_delay: float = DEFAULT_FETCH_DELAY,
        lookup_timeout: float = DEFAULT_LOOKUP_TIMEOUT,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.client = client
        self.store = store
        self.watermarks = WatermarkStore(settings)
        self.normalizer = normalizer or NumberNormalizer()
        self.call_state = call_state or CallState()
        self.parser = CallListParser(self.normalizer, self.watermarks, self.call_state)
        self.reconciler = Reconciler(store, NameResolver(directory, lookup_timeout), self.normalizer)
        self.notifier = MissedCallNotifier(sink)
        self.fetch_delay = fetch_delay
        self._clock = clock

        if refresh_interval is None:
            stored_ms = settings.get_int(REFRESH_RATE_KEY, 0)
            refresh_interval = stored_ms / 1000 if stored_ms > 0 else DEFAULT_REFRESH_INTERVAL
        self.scheduler = RefreshScheduler(
            self.request_refresh,
            self.call_state,
            interval=refresh_interval,
            initial_delay=initial_delay,
            fetch_delay=fetch_delay,
        )

        self.state = FeatureState.DISABLED
        self.si_name = SI_NAME_COMBINED
        self._lock = asyncio.Lock()
        self._fetch_in_flight = False
        self._fetch_task: Optional[asyncio.Task] = None
        self._worker: Optional[asyncio.Task] = None

    @property
    def fetch_in_flight(self) -> bool:
        return self._fetch_in_flight

    @property
    def first_run(self) -> bool:
        return self.watermarks.first_run

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        logger.info("Starting network call history")
        try:
            tz_name = await self.client.fetch_timezone()
            self.parser.tz = ZoneInfo(tz_name)
            logger.info("Subscriber time zone is %s", tz_name)
        except (BackendError, ZoneInfoNotFoundError, ValueError) as e:
            # Not fatal: call times are read as UTC
            logger.error("Could not get subscriber time zone: %s", e)

        try:
            cos = await self.client.fetch_class_of_service()
        except NotPermittedError:
            cos = ClassOfService()
        except BackendError as e:
            logger.error("Could not get class of service: %s", e)
            return
        await self.apply_class_of_service(cos)

    async def stop(self) -> None:
        logger.info("Stopping network call history")
        await self._set_state(FeatureState.DISABLED)
        # An update already running is allowed to finish so we never half-write
        if self._worker is not None:
            await asyncio.gather(self._worker, return_exceptions=True)

    async def apply_class_of_service(self, cos: ClassOfService) -> None:
        allowed = cos.history_allowed
        logger.debug("Class of service received, history allowed=%s", allowed)
        self.si_name = cos.si_name
        logger.info("Service indication to use is %s", self.si_name)
        await self._set_state(FeatureState.ENABLED if allowed else FeatureState.DISABLED)

    async def _set_state(self, new_state: FeatureState) -> None:
        async with self._lock:
            old_state = self.state
            if new_state is old_state:
                return
            self.state = new_state
        logger.info("Network call history %s -> %s", old_state.value, new_state.value)
        if new_state.is_enabled:
            self.scheduler.enable()
        else:
            await self.scheduler.disable()

    # -- triggers ----------------------------------------------------------

    async def trigger_refresh(self) -> bool:
        return await self.request_refresh(self.fetch_delay)

    def on_missed_call(self) -> bool:
        return self.scheduler.post(Trigger(TriggerEvent.MISSED_CALL))

    def on_network_up(self) -> bool:
        return self.scheduler.post(Trigger(TriggerEvent.NETWORK_UP))

    def on_message_waiting(self, unread: int) -> bool:
        return self.scheduler.post(Trigger(TriggerEvent.MESSAGE_WAITING, unread=unread))

    def on_call_state(self, on_the_phone: bool, peers: Optional[list[str]] = None) -> bool:
        return self.scheduler.post(
            Trigger(TriggerEvent.CALL_STATE, on_the_phone=on_the_phone, peers=list(peers or []))
        )

    async def request_refresh(self, delay: float = DEFAULT_FETCH_DELAY) -> bool:
        """Schedule a fetch unless disabled or one is already in flight."""
        async with self._lock:
            if not self.state.is_enabled:
                logger.debug("Ignoring refresh request, call history not allowed")
                return False
            if self._fetch_in_flight:
                logger.info("Ignoring refresh request, fetch already in flight")
                return False
            self._fetch_in_flight = True
        self._fetch_task = self.scheduler.call_later(delay, self._fetch, name="call-list-fetch")
        self._fetch_task.add_done_callback(self._on_fetch_done)
        return True

    def _on_fetch_done(self, task: asyncio.Task) -> None:
        # Cancelled while still waiting out its delay: _fetch never ran to release
        if task.cancelled() and task is self._fetch_task:
            self._fetch_in_flight = False

    async def wait_idle(self) -> None:
        """Wait for the current fetch and update, if any, to finish."""
        for task in (self._fetch_task, self._worker):
            if task is not None:
                await asyncio.gather(task, return_exceptions=True)
        # The fetch may have handed off to a worker while we waited
        if self._worker is not None:
            await asyncio.gather(self._worker, return_exceptions=True)

    async def _release(self) -> None:
        async with self._lock:
            self._fetch_in_flight = False

    # -- pipeline ----------------------------------------------------------

    async def _fetch(self) -> None:
        handed_off = False
        try:
            since = self.watermarks.snapshot.last_client_refresh_dt
            logger.debug(
                "Fetching call list %s; last refresh %s, last server record %s",
                self.si_name, since.isoformat(),
                self.watermarks.snapshot.last_server_record_dt.isoformat(),
            )
            try:
                data = await self.client.fetch_call_list(self.si_name)
            except NotPermittedError:
                logger.info("Backend indicates call history is not enabled")
                await self._set_state(FeatureState.DISABLED)
                return
            except BackendError as e:
                logger.error("Error getting call history: %s", e)
                return

            local = await self.store.find_records_added_after(since)
            logger.debug("Got %d new local records", len(local))

            try:
                parsed = self.parser.parse(
                    data,
                    si_name=self.si_name,
                    known_names=known_names_from(local, self.normalizer),
                )
            except PayloadError as e:
                # The payload itself is PII so it is not logged
                logger.error("Bad call list from the backend: %s", e)
                return

            self._worker = asyncio.create_task(
                self._update(parsed, local), name="call-history-update",
            )
            handed_off = True
        finally:
            if not handed_off:
                await self._release()

    async def _update(self, parsed: ParseResult, local: list[CallRecord]) -> None:
        logger.debug("Update call history worker starting")
        try:
            first_run = self.watermarks.first_run
            await self.reconciler.reconcile(parsed.records, local, first_run)
            await self.notifier.notify_missed_calls(parsed.missed_count, first_run)
            # After the writes above, so the records just written are never
            # returned as "added since last refresh" next time
            self.watermarks.complete_refresh(self._clock())
        except Exception:
            logger.exception("Failed to update call history")
            raise
        finally:
            await self._release()
            logger.debug("Update call history worker finished")
