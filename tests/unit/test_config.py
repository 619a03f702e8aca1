#!/usr/bin/env python3
"""
Tests for Config Manager
"""

from dataclasses import FrozenInstanceError
from pathlib import Path
from unittest.mock import Mock

import pytest
import yaml
from watchdog.events import FileCreatedEvent, FileModifiedEvent, FileMovedEvent

from ingress_uploader.config_manager import (
    DEFAULT_MAX_BYTES,
    ConfigFileHandler,
    ConfigManager,
    ConfigValidationError,
    Configuration,
    HTTPConfig,
)


def write_yaml(path, data):
    with open(path, "w") as f:
        yaml.safe_dump(data, f)
    return path


def test_load_valid_config(config_factory, report_dir):
    """Test loading a valid configuration file"""
    cm = ConfigManager(str(config_factory()), handle_sighup=False)

    cfg = cm.config()
    assert cfg.report is True
    assert cfg.endpoint == "http://127.0.0.1:9/upload"
    assert cfg.interval == 15
    assert cfg.tick_timeout == 10
    assert cfg.storage_path == str(report_dir)
    assert cfg.file_prefix == "insights-"
    assert cfg.reporting_mode == "latest"
    assert cfg.max_bytes == DEFAULT_MAX_BYTES
    assert cfg.http == HTTPConfig()


def test_snapshot_includes_credentials_and_http(config_factory):
    path = config_factory({
        "authorization": {"username": "user", "password": "pass", "token": None},
        "http": {
            "https_proxy": "http://proxy.corp:3128",
            "no_proxy": ".internal",
            "trusted_ca_path": "/etc/pki/ca.pem",
            "max_bytes": 1024,
        },
    })

    cfg = ConfigManager(str(path), handle_sighup=False).config()

    assert cfg.username == "user"
    assert cfg.password == "pass"
    assert cfg.token == ""
    assert cfg.http.https_proxy == "http://proxy.corp:3128"
    assert cfg.http.http_proxy == ""
    assert cfg.http.is_set()
    assert cfg.trusted_ca_path == "/etc/pki/ca.pem"
    assert cfg.max_bytes == 1024


def test_snapshot_is_immutable(config_factory):
    cfg = ConfigManager(str(config_factory()), handle_sighup=False).config()

    with pytest.raises(FrozenInstanceError):
        cfg.endpoint = "http://other"


def test_load_nonexistent_file():
    """Test loading a file that doesn't exist"""
    with pytest.raises(FileNotFoundError):
        ConfigManager("/nonexistent/path/config.yaml", handle_sighup=False)


def test_empty_file(temp_dir):
    path = temp_dir / "empty.yaml"
    path.write_text("   \n")

    with pytest.raises(ConfigValidationError, match="empty"):
        ConfigManager(str(path), handle_sighup=False)


def test_missing_required_key(temp_dir):
    """Test validation fails when required key is missing"""
    path = write_yaml(temp_dir / "config.yaml", {"reporting": {"enabled": True}})

    with pytest.raises(ConfigValidationError, match="Missing required key: storage"):
        ConfigManager(str(path), handle_sighup=False)


@pytest.mark.parametrize("overrides,match", [
    ({"reporting": {"enabled": "yes"}}, "reporting.enabled"),
    ({"reporting": {"endpoint": "ftp://example.com"}}, "http"),
    ({"reporting": {"interval_seconds": 0}}, "interval_seconds"),
    ({"reporting": {"tick_timeout_seconds": -5}}, "tick_timeout_seconds"),
    ({"storage": {"path": ""}}, "storage.path"),
    ({"storage": {"reporting_mode": "oldest"}}, "reporting_mode"),
    ({"authorization": {"token": 42}}, "authorization.token"),
    ({"http": {"max_bytes": 0}}, "max_bytes"),
    ({"http": {"max_bytes": True}}, "max_bytes"),
    ({"monitoring": {"cloudwatch_enabled": True}}, "monitoring.region"),
    ({"http": "proxy"}, "http must be a mapping"),
])
def test_invalid_values(config_factory, overrides, match):
    """Test validation rejects bad values with a descriptive error"""
    with pytest.raises(ConfigValidationError, match=match):
        ConfigManager(str(config_factory(overrides)), handle_sighup=False)


def test_empty_endpoint_allowed(config_factory):
    cm = ConfigManager(str(config_factory({"reporting": {"endpoint": None}})), handle_sighup=False)

    assert cm.config().endpoint == ""


def test_env_var_expansion(config_factory, monkeypatch):
    """Test ${VAR} values are expanded"""
    monkeypatch.setenv("INGRESS_TOKEN", "secret-token")
    path = config_factory({"authorization": {"token": "${INGRESS_TOKEN}"}})

    cm = ConfigManager(str(path), handle_sighup=False)

    assert cm.config().token == "secret-token"


def test_home_expansion(config_factory):
    path = config_factory({"storage": {"path": "~/reports"}})

    cm = ConfigManager(str(path), handle_sighup=False)

    assert cm.config().storage_path == str(Path.home() / "reports")


def test_get_dot_notation(config_factory):
    cm = ConfigManager(str(config_factory()), handle_sighup=False)

    assert cm.get("reporting.interval_seconds") == 15
    assert cm.get("storage.file_suffix") == ".tar.gz"
    assert cm.get("missing.key") is None
    assert cm.get("missing.key", "default") == "default"


def test_reload_applies_changes_and_notifies(config_factory):
    """Test a valid reload swaps the snapshot and wakes subscribers"""
    path = config_factory()
    cm = ConfigManager(str(path), handle_sighup=False)
    changed, cancel = cm.config_changed()

    config_factory({"reporting": {"endpoint": "https://ingress.example.com/upload"}})
    cm.reload_config()

    assert cm.config().endpoint == "https://ingress.example.com/upload"
    assert changed.is_set()
    cancel()


def test_reload_without_changes_does_not_notify(config_factory):
    cm = ConfigManager(str(config_factory()), handle_sighup=False)
    changed, _ = cm.config_changed()

    cm.reload_config()

    assert not changed.is_set()


def test_cancelled_subscription_not_notified(config_factory):
    cm = ConfigManager(str(config_factory()), handle_sighup=False)
    changed, cancel = cm.config_changed()
    cancel()
    cancel()

    config_factory({"reporting": {"interval_seconds": 30}})
    cm.reload_config()

    assert not changed.is_set()


def test_invalid_reload_keeps_previous_config(config_factory, temp_dir):
    """Test a broken file on reload keeps the last good snapshot"""
    path = config_factory()
    cm = ConfigManager(str(path), handle_sighup=False)
    before = cm.config()
    changed, _ = cm.config_changed()

    path.write_text("reporting: [unclosed")
    cm.reload_config()

    assert cm.config() == before
    assert not changed.is_set()


def test_sighup_handler_reloads(config_factory):
    cm = ConfigManager(str(config_factory()), handle_sighup=False)

    config_factory({"reporting": {"interval_seconds": 60}})
    cm._handle_reload_signal(None, None)

    assert cm.config().interval == 60


def test_watching_is_idempotent(config_factory):
    cm = ConfigManager(str(config_factory()), handle_sighup=False)

    cm.start_watching()
    observer = cm._observer
    cm.start_watching()
    assert cm._observer is observer

    cm.stop_watching()
    assert cm._observer is None
    cm.stop_watching()


def test_configuration_defaults():
    cfg = Configuration()

    assert cfg.report is False
    assert cfg.endpoint == ""
    assert cfg.http.is_set() is False


class TestConfigFileHandler:
    """Test the watchdog handler only reacts to the config file"""

    def test_modified_config_triggers_callback(self, temp_dir):
        path = temp_dir / "config.yaml"
        callback = Mock()
        handler = ConfigFileHandler(path, callback)

        handler.on_modified(FileModifiedEvent(str(path)))

        callback.assert_called_once()

    def test_other_files_ignored(self, temp_dir):
        callback = Mock()
        handler = ConfigFileHandler(temp_dir / "config.yaml", callback)

        handler.on_modified(FileModifiedEvent(str(temp_dir / "other.yaml")))
        handler.on_created(FileCreatedEvent(str(temp_dir / "status.json")))

        callback.assert_not_called()

    def test_replaced_config_triggers_callback(self, temp_dir):
        """Test editors that write a temp file and rename it are detected"""
        path = temp_dir / "config.yaml"
        callback = Mock()
        handler = ConfigFileHandler(path, callback)

        handler.on_moved(FileMovedEvent(str(temp_dir / ".config.yaml.swp"), str(path)))
        handler.on_created(FileCreatedEvent(str(path)))

        assert callback.call_count == 2
