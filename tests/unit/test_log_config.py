import logging

import pytest

from device_connector.core.log_config import apply_log_level_from_config, level_from_cfg_or_env
from device_connector.core.snapshots import build_presence


@pytest.fixture(autouse=True)
def restore_root_level():
    root = logging.getLogger()
    level = root.level
    yield
    root.setLevel(level)


def test_config_level_wins_over_env(monkeypatch):
    monkeypatch.setenv("CONNECTOR_LOG_LEVEL", "ERROR")
    assert level_from_cfg_or_env({"log_level": "DEBUG"}) == logging.DEBUG


def test_env_level_used_without_config(monkeypatch):
    monkeypatch.setenv("CONNECTOR_LOG_LEVEL", "warning")
    assert level_from_cfg_or_env({}) == logging.WARNING


def test_default_is_info(monkeypatch):
    monkeypatch.delenv("CONNECTOR_LOG_LEVEL", raising=False)
    assert level_from_cfg_or_env(None) == logging.INFO


def test_unknown_level_falls_back_to_info(monkeypatch):
    monkeypatch.setenv("CONNECTOR_LOG_LEVEL", "chatty")
    assert level_from_cfg_or_env(None) == logging.INFO


def test_apply_sets_root_level():
    apply_log_level_from_config({"log_level": "ERROR"})
    assert logging.getLogger().level == logging.ERROR


def test_offline_presence_has_no_live_fields():
    assert build_presence("offline", "dev-1", "1.0.0") == {
        "state": "offline",
        "device_id": "dev-1",
        "version": "1.0.0",
    }


def test_online_presence_has_live_fields():
    p = build_presence("online", "dev-1", "1.0.0", connected_since_ts="2026-01-01T00:00:00+00:00", uptime_s=3)
    assert p["connected_since_ts"] == "2026-01-01T00:00:00+00:00"
    assert p["uptime_s"] == 3
