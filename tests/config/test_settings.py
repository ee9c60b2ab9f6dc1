"""
Tests for settings loading, environment overrides and service wiring.
"""

from pathlib import Path

import pytest
import yaml

from supply_config import (
    ENV_CONFIG_FILE,
    ENV_DATABASE_URL,
    ENV_TIMEZONE,
    compute_checksum,
    get_active_settings,
    parse_settings,
)
from supply_config.schema import SupplySettings
from supply_kernel.db.engine import reset_engine
from supply_kernel.services.audit_sink import NullAuditSink, QueuedAuditSink
from supply_services import (
    InMemoryDispensedEventSource,
    InMemoryItemCatalog,
    build_command_service,
)
from supply_services.sources import CatalogItem

MINIMAL = {"settings_id": "ward", "version": 3}


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (ENV_CONFIG_FILE, ENV_DATABASE_URL, ENV_TIMEZONE):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_trace(captured_logs):
    def _records():
        return [r for r in captured_logs() if r["message"] == "SUPPLY_CONFIG_TRACE"]

    return _records


def _write(tmp_path: Path, data: dict) -> Path:
    path = tmp_path / "settings.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


class TestDefaultSettings:
    def test_packaged_defaults(self):
        settings = get_active_settings()
        assert isinstance(settings, SupplySettings)
        assert settings.settings_id == "default"
        assert settings.timezone == "UTC"
        assert settings.default_page_limit == 10
        assert settings.max_page_limit == 100
        assert settings.audit_queue_size == 1000
        assert settings.max_comparison_item_codes == 5000
        assert settings.database_url == "sqlite:///:memory:"
        assert len(settings.checksum) == 64

    def test_trace_logged(self, config_trace):
        settings = get_active_settings()
        (trace,) = config_trace()
        assert trace["settings_id"] == "default"
        assert trace["checksum"] == settings.checksum
        assert trace["overrides"] == []


class TestParseSettings:
    def test_minimal_uses_defaults(self):
        settings = parse_settings(dict(MINIMAL))
        assert settings.max_comparison_item_codes is None
        assert settings.database.pool_size == 20

    def test_missing_identity(self):
        with pytest.raises(KeyError):
            parse_settings({"version": 1})

    @pytest.mark.parametrize(
        "extra",
        [
            {"pagination": {"default_limit": 0}},
            {"pagination": {"max_limit": -5}},
            {"pagination": {"default_limit": 50, "max_limit": 20}},
            {"audit": {"queue_size": "many"}},
            {"reconciliation": {"max_item_codes": 0}},
            {"database": {"pool_size": True}},
        ],
    )
    def test_out_of_range(self, extra):
        with pytest.raises(ValueError):
            parse_settings({**MINIMAL, **extra})

    def test_unknown_timezone(self):
        with pytest.raises(ValueError, match="Unknown timezone"):
            parse_settings({**MINIMAL, "timezone": "Mars/Olympus"})

    def test_checksum_is_content_hash(self):
        a = parse_settings({**MINIMAL, "timezone": "Asia/Bangkok"})
        b = parse_settings({"timezone": "Asia/Bangkok", **MINIMAL})
        c = parse_settings({**MINIMAL, "timezone": "UTC"})
        expected = compute_checksum({**MINIMAL, "timezone": "Asia/Bangkok"})
        assert a.checksum == b.checksum == expected
        assert a.checksum != c.checksum


class TestOverrides:
    def test_file_from_environment(self, tmp_path, monkeypatch):
        path = _write(tmp_path, {**MINIMAL, "timezone": "Asia/Bangkok"})
        monkeypatch.setenv(ENV_CONFIG_FILE, str(path))
        settings = get_active_settings()
        assert settings.settings_id == "ward"
        assert settings.timezone == "Asia/Bangkok"

    def test_explicit_path_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv(ENV_CONFIG_FILE, "/nonexistent.yaml")
        assert get_active_settings(_write(tmp_path, MINIMAL)).version == 3

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_settings(tmp_path / "absent.yaml")

    def test_database_and_timezone_overrides(self, monkeypatch, config_trace):
        monkeypatch.setenv(ENV_DATABASE_URL, "postgresql://supply@db/supply")
        monkeypatch.setenv(ENV_TIMEZONE, "Asia/Bangkok")

        settings = get_active_settings()

        assert settings.database_url == "postgresql://supply@db/supply"
        assert settings.database.pool_size == 20
        assert settings.timezone == "Asia/Bangkok"
        (trace,) = config_trace()
        assert trace["overrides"] == [ENV_DATABASE_URL, ENV_TIMEZONE]

    def test_bad_timezone_override(self, monkeypatch):
        monkeypatch.setenv(ENV_TIMEZONE, "Nowhere/Special")
        with pytest.raises(ValueError):
            get_active_settings()


class TestBuildCommandService:
    @pytest.fixture
    def settings(self):
        yield parse_settings({**MINIMAL, "database": {"url": "sqlite:///:memory:"}})
        reset_engine()

    @pytest.fixture
    def ports(self):
        catalog = InMemoryItemCatalog([CatalogItem("GAUZE-01", "Sterile gauze 4x4", 1)])
        return InMemoryDispensedEventSource(catalog=catalog), catalog

    def test_wired_service_runs_commands(self, settings, ports):
        event_source, catalog = ports
        commands = build_command_service(
            settings=settings, event_source=event_source, catalog=catalog,
            audit_sink=NullAuditSink(),
        )

        episode = commands.create_episode(
            patient_hn="HN-1", orders=[{"ItemCode": "GAUZE-01", "QTY": 2}],
        )
        item = commands.record_usage(
            item_id=episode.line_items[0].id, qty_used=2, recorded_by_user_id="nurse-1",
        )

        assert item.item_status.value == "COMPLETED"
        assert commands.settings is settings

    def test_default_audit_sink_is_queued(self, settings, ports):
        event_source, catalog = ports
        commands = build_command_service(
            settings=settings, event_source=event_source, catalog=catalog,
        )
        sink = commands.audit_sink
        try:
            assert isinstance(sink, QueuedAuditSink)
            assert sink.is_running
        finally:
            sink.close()
