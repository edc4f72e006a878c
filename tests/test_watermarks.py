from datetime import timedelta

from callsync.watermarks import (
    LAST_CLIENT_REFRESH_KEY,
    LAST_SERVER_RECORD_KEY,
    WatermarkStore,
    to_millis,
)
from tests.conftest import T0, MemorySettings


class TestFirstRun:
    def test_no_stored_server_time_is_first_run(self):
        assert WatermarkStore(MemorySettings()).first_run is True

    def test_stored_server_time_is_not_first_run(self):
        wm = WatermarkStore(MemorySettings({LAST_SERVER_RECORD_KEY: to_millis(T0)}))
        assert wm.first_run is False
        assert wm.snapshot.last_server_record_dt == T0

    def test_complete_refresh_clears_first_run(self):
        settings = MemorySettings()
        wm = WatermarkStore(settings)
        wm.complete_refresh(T0)
        assert wm.first_run is False
        assert settings.values[LAST_CLIENT_REFRESH_KEY] == to_millis(T0)


class TestServerWatermark:
    def test_advances_and_persists(self):
        settings = MemorySettings()
        wm = WatermarkStore(settings)
        assert wm.advance_server(T0) is True
        assert settings.values[LAST_SERVER_RECORD_KEY] == to_millis(T0)

    def test_never_moves_backwards(self):
        settings = MemorySettings({LAST_SERVER_RECORD_KEY: to_millis(T0)})
        wm = WatermarkStore(settings)
        assert wm.advance_server(T0 - timedelta(hours=1)) is False
        assert wm.advance_server(T0) is False
        assert settings.values[LAST_SERVER_RECORD_KEY] == to_millis(T0)

    def test_advancing_does_not_clear_first_run(self):
        wm = WatermarkStore(MemorySettings())
        wm.advance_server(T0)
        # First run lasts until the cycle completes
        assert wm.first_run is True

    def test_snapshot_is_immutable(self):
        wm = WatermarkStore(MemorySettings())
        before = wm.snapshot
        wm.advance_server(T0)
        assert before.last_server_record_time == 0
        assert wm.snapshot.last_server_record_time == to_millis(T0)
