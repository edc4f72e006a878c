"""Parse the backend call list into server call records.

The backend groups calls into buckets::

    [{"data": {"AnsweredCalls": {"Call": [...]},
               "MissedCalls":   {"Call": [...]},
               "DialedCalls":   {"Call": [...]}}}]

Each call has ``DateTime`` ("29 Sep 09 11:57:07", subscriber time zone),
``Duration`` ("H:M:S", absent for missed calls) and ``DirectoryNumber``.
Rejected calls are not imported.

A batch is all-or-nothing: any malformed entry raises ``PayloadError`` and the
server watermark is left where it was.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Optional, Protocol

from callsync.numbers import NumberNormalizer, log_hash
from callsync.records import CallRecord, Direction, EndReason, PeerRecord, Provenance
from callsync.states import SI_NAME_CFS
from callsync.watermarks import WatermarkStore

logger = logging.getLogger(__name__)

ANSWERED = "AnsweredCalls"
MISSED = "MissedCalls"
DIALED = "DialedCalls"
CALL_TYPES = (ANSWERED, MISSED, DIALED)

UNKNOWN_NAME = "Unknown"

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
           "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


class PayloadError(ValueError):
    """The call list could not be parsed. The whole batch is rejected."""


class CallStateProvider(Protocol):
    def is_on_the_phone(self) -> bool: ...

    def active_peer_addresses(self) -> list[str]: ...


@dataclass
class ParseResult:
    records: list[CallRecord] = field(default_factory=list)
    missed_count: int = 0
    latest_end: Optional[datetime] = None


def parse_call_time(value: Any, tz: tzinfo = timezone.utc) -> datetime:
    """Parse "dd MMM yy HH:mm:ss" without depending on the process locale."""
    if not isinstance(value, str):
        raise PayloadError(f"DateTime is not a string: {type(value).__name__}")
    parts = value.split()
    if len(parts) != 4 or parts[1].title() not in _MONTHS:
        raise PayloadError(f"Bad DateTime {value!r}")
    month = _MONTHS.index(parts[1].title()) + 1
    try:
        naive = datetime.strptime(
            f"{parts[0]} {month:02d} {parts[2]} {parts[3]}", "%d %m %y %H:%M:%S",
        )
    except ValueError as e:
        raise PayloadError(f"Bad DateTime {value!r}") from e
    return naive.replace(tzinfo=tz)


def parse_duration(value: Any) -> timedelta:
    if not isinstance(value, str):
        raise PayloadError(f"Duration is not a string: {type(value).__name__}")
    parts = value.split(":")
    if len(parts) != 3:
        raise PayloadError(f"Bad duration {value!r}")
    try:
        hours, mins, secs = (int(p) for p in parts)
    except ValueError as e:
        raise PayloadError(f"Bad duration {value!r}") from e
    return timedelta(hours=hours, minutes=mins, seconds=secs)


def extract_buckets(payload: Any) -> dict:
    """Unwrap the vendor envelope, accepting a bare bucket object too."""
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except ValueError as e:
            raise PayloadError("Call list is not valid JSON") from e
    if isinstance(payload, list):
        if not payload or not isinstance(payload[0], dict):
            raise PayloadError("Call list envelope is empty")
        payload = payload[0].get("data")
    elif isinstance(payload, dict) and isinstance(payload.get("data"), dict):
        payload = payload["data"]
    if not isinstance(payload, dict):
        raise PayloadError("Call list data is not an object")
    return payload


def known_names_from(records: list[CallRecord], normalizer: NumberNormalizer) -> dict[str, str]:
    """Map normalised number -> display name for peers already in local history."""
    names: dict[str, str] = {}
    for record in records:
        for peer in record.peers:
            number = peer.normalized_number or normalizer.normalize(peer.address)
            if peer.display_name:
                names[number] = peer.display_name
    return names


class CallListParser:
    def __init__(
        self,
        normalizer: NumberNormalizer,
        watermarks: WatermarkStore,
        call_state: Optional[CallStateProvider] = None,
        tz: tzinfo = timezone.utc,
    ):
        self.normalizer = normalizer
        self.watermarks = watermarks
        self.call_state = call_state
        self.tz = tz

    def parse(
        self,
        payload: Any,
        *,
        si_name: str = "",
        known_names: Optional[dict[str, str]] = None,
    ) -> ParseResult:
        """Convert a payload into new server records and advance the server watermark."""
        buckets = extract_buckets(payload)
        known_names = known_names or {}
        watermark = self.watermarks.snapshot.last_server_record_dt
        result = ParseResult()

        for call_type in CALL_TYPES:
            bucket = buckets.get(call_type)
            if bucket is None:
                logger.error("No call data for type %s", call_type)
                continue
            if not isinstance(bucket, dict):
                raise PayloadError(f"Bucket {call_type} is not an object")
            calls = bucket.get("Call")
            if calls is None:
                logger.error("No call data for type %s", call_type)
                continue
            if not isinstance(calls, list):
                raise PayloadError(f"Bucket {call_type} calls are not a list")

            logger.debug("Call type %s, %d entries", call_type, len(calls))
            for call in calls:
                record = self._convert(call, call_type, watermark, si_name, known_names)
                if record is None:
                    continue
                result.records.append(record)
                if call_type == MISSED:
                    result.missed_count += 1
                if result.latest_end is None or record.end_time > result.latest_end:
                    result.latest_end = record.end_time

        logger.debug("Got %d new server records", len(result.records))
        if result.latest_end is not None:
            self.watermarks.advance_server(result.latest_end)
        return result

    def _convert(
        self,
        call: Any,
        call_type: str,
        watermark: datetime,
        si_name: str,
        known_names: dict[str, str],
    ) -> Optional[CallRecord]:
        if not isinstance(call, dict):
            raise PayloadError(f"{call_type} entry is not an object")

        start = parse_call_time(call.get("DateTime"), self.tz)
        if call_type == MISSED:
            end = start
        else:
            end = start + parse_duration(call.get("Duration"))

        # Already ingested on a previous refresh
        if end <= watermark:
            return None

        number = call.get("DirectoryNumber")
        if number is not None and not isinstance(number, str):
            raise PayloadError(f"DirectoryNumber is not a string: {type(number).__name__}")
        if number is not None:
            number = self.normalizer.fix_international(number)

        # Dialled calls, and answered calls on the CFS-only feed, include calls
        # still in progress. Those reappear with their real duration later.
        from_cfs = call_type == DIALED or (call_type == ANSWERED and si_name == SI_NAME_CFS)
        if from_cfs and start == end and number and self._in_progress(number):
            logger.debug("Skipping in-progress call record for %s", log_hash(number))
            return None

        direction = Direction.OUT if call_type == DIALED else Direction.IN
        end_reason = None
        if direction == Direction.IN and call_type == ANSWERED:
            end_reason = EndReason.NORMAL_CLEARING

        normalized = self.normalizer.normalize(number)
        if number is None:
            name = UNKNOWN_NAME
        else:
            name = known_names.get(normalized)

        return CallRecord(
            direction=direction,
            start_time=start,
            end_time=end,
            peers=[PeerRecord(address=number or "", normalized_number=normalized, display_name=name)],
            end_reason=end_reason,
            provenance=Provenance.SERVER,
        )

    def _in_progress(self, number: str) -> bool:
        if self.call_state is None or not self.call_state.is_on_the_phone():
            return False
        # Being on the phone with no local calls is fine: the line may be busy elsewhere
        formatted = self.normalizer.normalize(number)
        return any(
            self.normalizer.normalize(peer) == formatted
            for peer in self.call_state.active_peer_addresses()
        )
