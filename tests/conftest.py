import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from callsync.numbers import NumberNormalizer
from callsync.records import CallRecord, Direction, EndReason, PeerRecord, Provenance
from callsync.watermarks import WatermarkStore

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class MemorySettings:
    def __init__(self, values=None):
        self.values = dict(values or {})

    def get_int(self, key, default=0):
        return self.values.get(key, default)

    def set_int(self, key, value):
        self.values[key] = int(value)


class FakeStore:
    """In-memory history store recording every write and delete."""

    def __init__(self, records=None, clock=None):
        self.records = list(records or [])
        self.writes = []
        self.deletes = []
        self.changed_count = 0
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def find_records_added_after(self, timestamp):
        return [r for r in self.records if r.added_at is None or r.added_at > timestamp]

    async def write(self, record, peer_address):
        record.added_at = self._clock()
        self.records.append(record)
        self.writes.append((record, peer_address))

    async def delete(self, record):
        self.records = [r for r in self.records if r is not record]
        self.deletes.append(record)

    async def fire_history_changed(self):
        self.changed_count += 1


class FakeDirectory:
    def __init__(self, names=None, delay=0.0):
        self.names = dict(names or {})
        self.delay = delay
        self.queries = []

    async def query(self, number):
        self.queries.append(number)
        if self.delay:
            await asyncio.sleep(self.delay)
        if number in self.names:
            yield {"displayName": self.names[number]}


class FakeSink:
    def __init__(self):
        self.fired = []

    async def fire_notification(self, kind):
        self.fired.append(kind)


def make_call(
    direction=Direction.IN,
    start=T0,
    duration=0,
    number="+441632960001",
    name=None,
    attention=False,
    end_reason=None,
    provenance=None,
    peers=None,
):
    if peers is None:
        peers = [PeerRecord(address=number, normalized_number=number, display_name=name)]
    return CallRecord(
        direction=direction,
        start_time=start,
        end_time=start + timedelta(seconds=duration),
        peers=peers,
        end_reason=end_reason,
        attention=attention,
        provenance=provenance,
    )


def local_missed(number="+441632960001", start=T0, attention=True, end_reason=None):
    return make_call(Direction.IN, start, 0, number, name="Alice",
                     attention=attention, end_reason=end_reason, provenance=Provenance.LOCAL)


def server_call(direction, number, start=T0, duration=0, end_reason=None):
    if end_reason is None and direction == Direction.IN and duration:
        end_reason = EndReason.NORMAL_CLEARING
    return make_call(direction, start, duration, number, end_reason=end_reason,
                     provenance=Provenance.SERVER)


@pytest.fixture
def settings():
    return MemorySettings()


@pytest.fixture
def watermarks(settings):
    return WatermarkStore(settings)


@pytest.fixture
def normalizer():
    return NumberNormalizer()


@pytest.fixture
def store():
    return FakeStore()
