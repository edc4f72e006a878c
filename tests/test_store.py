from datetime import timedelta

import pytest

from callsync.records import Direction, EndReason, PeerRecord
from callsync.store import SQLiteCallHistoryStore, SQLiteSettings, connect
from callsync.watermarks import LAST_SERVER_RECORD_KEY
from tests.conftest import T0, make_call


class StepClock:
    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture
def db(tmp_path):
    conn = connect(tmp_path / "history.db")
    yield conn
    conn.close()


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def history(db, clock):
    return SQLiteCallHistoryStore(db, clock=clock)


class TestSettings:
    def test_default_when_unset(self, db):
        assert SQLiteSettings(db).get_int(LAST_SERVER_RECORD_KEY) == 0
        assert SQLiteSettings(db).get_int(LAST_SERVER_RECORD_KEY, 7) == 7

    def test_set_overwrites(self, db):
        settings = SQLiteSettings(db)
        settings.set_int(LAST_SERVER_RECORD_KEY, 1)
        settings.set_int(LAST_SERVER_RECORD_KEY, 2)
        assert settings.get_int(LAST_SERVER_RECORD_KEY) == 2

    def test_survives_reopen(self, tmp_path):
        store, settings = SQLiteCallHistoryStore.open(tmp_path / "h.db")
        settings.set_int(LAST_SERVER_RECORD_KEY, 42)
        store.close()
        store, settings = SQLiteCallHistoryStore.open(tmp_path / "h.db")
        assert settings.get_int(LAST_SERVER_RECORD_KEY) == 42
        store.close()


class TestHistory:
    @pytest.mark.asyncio
    async def test_write_and_read_back(self, history):
        record = make_call(Direction.IN, T0, 60, "+441632960001", name="Alice",
                           attention=True, end_reason=EndReason.NORMAL_CLEARING)
        await history.write(record, "+441632960001")
        assert record.record_id is not None
        assert record.added_at == T0 + timedelta(seconds=1)

        (loaded,) = history.all_records()
        assert loaded.direction == Direction.IN
        assert loaded.start_time == T0
        assert loaded.end_time == T0 + timedelta(seconds=60)
        assert loaded.end_reason == EndReason.NORMAL_CLEARING
        assert loaded.attention is True
        assert loaded.peers == [PeerRecord("+441632960001", "+441632960001", "Alice")]

    @pytest.mark.asyncio
    async def test_conference_peers_keep_order(self, history):
        record = make_call(Direction.OUT, T0, 60, peers=[
            PeerRecord("+441632960002", "+441632960002", "Bob"),
            PeerRecord("+441632960001", "+441632960001", "Alice"),
        ])
        await history.write(record, "+441632960002")
        (loaded,) = history.all_records()
        assert [p.display_name for p in loaded.peers] == ["Bob", "Alice"]

    @pytest.mark.asyncio
    async def test_find_added_after(self, history):
        old = history.add_local_call(make_call(start=T0))
        new = history.add_local_call(make_call(start=T0 + timedelta(minutes=1)))
        found = await history.find_records_added_after(old.added_at)
        assert [r.record_id for r in found] == [new.record_id]

    @pytest.mark.asyncio
    async def test_delete_removes_record_and_peers(self, history, db):
        record = history.add_local_call(make_call())
        await history.delete(record)
        assert record.record_id is None
        assert history.all_records() == []
        assert db.execute("SELECT COUNT(*) FROM call_peers").fetchone()[0] == 0

    @pytest.mark.asyncio
    async def test_delete_unsaved_record_is_noop(self, history):
        await history.delete(make_call())
        assert history.all_records() == []

    @pytest.mark.asyncio
    async def test_history_changed_notifies_listeners(self, history):
        calls = []
        history.add_listener(lambda: calls.append(1))
        await history.fire_history_changed()
        assert calls == [1]
