import pytest

from callsync.config import SyncConfig, validate_config


class TestValidateConfig:
    def test_exits_when_backend_url_missing(self, monkeypatch):
        monkeypatch.delenv("CALLSYNC_BACKEND_URL", raising=False)
        with pytest.raises(SystemExit) as exc:
            validate_config()
        assert exc.value.code == 1

    def test_passes_with_backend_url(self, monkeypatch):
        monkeypatch.setenv("CALLSYNC_BACKEND_URL", "https://backend.example.com")
        validate_config()


class TestSyncConfig:
    def test_defaults(self, monkeypatch):
        for var in ("CALLSYNC_DB_PATH", "CALLSYNC_REGION", "CALLSYNC_REFRESH_INTERVAL", "CALLSYNC_LOOKUP_TIMEOUT"):
            monkeypatch.delenv(var, raising=False)
        monkeypatch.setenv("CALLSYNC_BACKEND_URL", "https://backend.example.com")
        config = SyncConfig.from_env()
        assert config.backend_url == "https://backend.example.com"
        assert config.db_path == "callsync.db"
        assert config.region is None
        assert config.refresh_interval is None
        assert config.lookup_timeout == 5.0

    def test_reads_overrides(self, monkeypatch):
        monkeypatch.setenv("CALLSYNC_BACKEND_URL", "https://backend.example.com")
        monkeypatch.setenv("CALLSYNC_REGION", "GB")
        monkeypatch.setenv("CALLSYNC_REFRESH_INTERVAL", "600")
        monkeypatch.setenv("CALLSYNC_EXTERNAL_LINE_CODE", "9")
        config = SyncConfig.from_env()
        assert config.region == "GB"
        assert config.refresh_interval == 600.0
        assert config.external_line_code == "9"

    def test_bad_number_falls_back(self, monkeypatch):
        monkeypatch.setenv("CALLSYNC_LOOKUP_TIMEOUT", "soon")
        assert SyncConfig.from_env().lookup_timeout == 5.0


def test_every_tunable_is_listed_as_optional(monkeypatch, caplog):
    monkeypatch.setenv("CALLSYNC_BACKEND_URL", "https://backend.example.com")
    monkeypatch.delenv("CALLSYNC_INITIAL_DELAY", raising=False)
    monkeypatch.delenv("CALLSYNC_LOOKUP_TIMEOUT", raising=False)
    with caplog.at_level("WARNING", logger="callsync.config"):
        validate_config()
    assert "CALLSYNC_INITIAL_DELAY" in caplog.text
    assert "CALLSYNC_LOOKUP_TIMEOUT" in caplog.text
