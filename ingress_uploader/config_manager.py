#!/usr/bin/env python3
"""
Configuration Manager for Ingress Uploader
Loads, validates, and manages YAML configuration

Every upload tick works from an immutable Configuration snapshot. Reloads
(SIGHUP or a change to the config file) swap the snapshot atomically and
notify subscribers; an invalid file keeps the previous snapshot.
"""

import logging
import os
import signal
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Tuple

import yaml
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 15
DEFAULT_TICK_TIMEOUT_SECONDS = 60
DEFAULT_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_CONTENT_TYPE = "application/vnd.redhat.openshift.periodic+tar"
DEFAULT_FILE_SUFFIX = ".tar.gz"
VALID_REPORTING_MODES = ["latest", "all"]


class ConfigValidationError(Exception):
    """
    Raised when configuration validation fails.

    This exception is raised when the configuration file is malformed,
    missing required fields, or contains invalid values.
    """

    pass


@dataclass(frozen=True)
class HTTPConfig:
    """Explicit proxy settings; empty values mean 'use the environment'."""

    http_proxy: str = ""
    https_proxy: str = ""
    no_proxy: str = ""

    def is_set(self) -> bool:
        return bool(self.http_proxy or self.https_proxy or self.no_proxy)


@dataclass(frozen=True)
class Configuration:
    """Snapshot of the settings one upload tick runs with."""

    report: bool = False
    endpoint: str = ""
    interval: float = DEFAULT_INTERVAL_SECONDS
    tick_timeout: float = DEFAULT_TICK_TIMEOUT_SECONDS
    content_type: str = DEFAULT_CONTENT_TYPE
    storage_path: str = ""
    file_prefix: str = ""
    file_suffix: str = DEFAULT_FILE_SUFFIX
    reporting_mode: str = "latest"
    username: str = ""
    password: str = ""
    token: str = ""
    http: HTTPConfig = field(default_factory=HTTPConfig)
    trusted_ca_path: str = ""
    max_bytes: int = DEFAULT_MAX_BYTES


class ConfigManager:
    """
    Manages system configuration from YAML file.

    Features:
    - Load and validate YAML config
    - Immutable per-tick snapshots via config()
    - Change notification via config_changed()
    - Reload on SIGHUP and (optionally) on config file changes
    - Dot-notation access to nested values

    Example:
        >>> config = ConfigManager('/etc/ingress-uploader/config.yaml')
        >>> endpoint = config.get('reporting.endpoint')
        >>> snapshot = config.config()
        >>> changed, cancel = config.config_changed()

    Attributes:
        config_path (Path): Path to the configuration file
        settings (dict): Loaded configuration dictionary
    """

    def __init__(self, config_path: str, handle_sighup: bool = True):
        """
        Initialize config manager and load configuration.

        Args:
            config_path: Path to YAML config file
            handle_sighup: Install a SIGHUP handler (main thread only)

        Raises:
            FileNotFoundError: If config file doesn't exist
            yaml.YAMLError: If YAML syntax is invalid
            ConfigValidationError: If validation fails
        """
        self.config_path = Path(config_path)
        self.settings: Dict[str, Any] = {}
        self._snapshot = Configuration()
        self._lock = threading.Lock()
        self._listeners: List[threading.Event] = []
        self._observer = None

        if handle_sighup:
            signal.signal(signal.SIGHUP, self._handle_reload_signal)

        self.load_config()

    def load_config(self) -> Dict[str, Any]:
        """Load and validate configuration from YAML file, then swap the snapshot."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        with open(self.config_path, "r") as f:
            raw = yaml.safe_load(f)

        if raw is None:
            raise ConfigValidationError("Config file is empty or contains only whitespace")
        if not isinstance(raw, dict):
            raise ConfigValidationError("Config file must contain a mapping at the top level")

        # Expand environment variables in paths
        raw = self._expand_env_vars(raw)

        self.validate_config(raw)
        snapshot = self._build_snapshot(raw)

        with self._lock:
            self.settings = raw
            self._snapshot = snapshot

        logger.info(f"Loaded config from {self.config_path}")
        return raw

    def reload_config(self) -> Dict[str, Any]:
        """
        Reload configuration from disk.

        A valid file replaces the snapshot used from the next tick on and
        wakes every config_changed() subscriber. An invalid file is logged
        and the existing configuration is kept.
        """
        logger.info("Reloading configuration...")
        old_snapshot = self.config()

        try:
            new_config = self.load_config()
        except Exception as e:
            logger.error(f"Failed to reload config: {e}")
            logger.info("Keeping existing configuration")
            return self.settings

        if self.config() != old_snapshot:
            logger.info("Configuration changed, applying from next upload tick")
            self._notify_listeners()
        else:
            logger.debug("Configuration reloaded without changes")

        return new_config

    def config(self) -> Configuration:
        """Get the current configuration snapshot."""
        with self._lock:
            return self._snapshot

    def config_changed(self) -> Tuple[threading.Event, Callable[[], None]]:
        """
        Subscribe to configuration changes.

        Returns:
            Tuple[Event, Callable]: Event set on every applied change, and a
            function that cancels the subscription
        """
        event = threading.Event()
        with self._lock:
            self._listeners.append(event)

        def cancel():
            with self._lock:
                if event in self._listeners:
                    self._listeners.remove(event)

        return event, cancel

    def _notify_listeners(self):
        with self._lock:
            listeners = list(self._listeners)
        for event in listeners:
            event.set()

    def start_watching(self):
        """
        Reload automatically when the config file is written or replaced.

        Note:
            Safe to call multiple times - will not start a second observer
        """
        if self._observer is not None:
            logger.warning("Already watching config file")
            return

        handler = ConfigFileHandler(self.config_path, self.reload_config)
        self._observer = Observer()
        self._observer.schedule(handler, str(self.config_path.parent), recursive=False)
        self._observer.start()
        logger.info(f"Watching config file for changes: {self.config_path}")

    def stop_watching(self):
        """Stop the config file observer."""
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join()
        self._observer = None
        logger.info("Stopped watching config file")

    def _expand_env_vars(self, config: Any) -> Any:
        """
        Recursively expand environment variables in configuration values.

        Supports ${VAR_NAME}, $VAR and ~ expansion in string values.

        Examples:
            "${HOME}/reports" -> "/home/ABC/reports"
            "~/reports" -> "/home/ABC/reports"
        """
        if isinstance(config, dict):
            return {key: self._expand_env_vars(value) for key, value in config.items()}
        elif isinstance(config, list):
            return [self._expand_env_vars(item) for item in config]
        elif isinstance(config, str):
            expanded = os.path.expanduser(config)
            expanded = os.path.expandvars(expanded)
            return expanded
        else:
            return config

    def validate_config(self, config: Dict[str, Any]) -> bool:
        """Validate configuration schema and values."""
        required_keys = ["reporting", "storage"]
        for key in required_keys:
            if key not in config:
                raise ConfigValidationError(f"Missing required key: {key}")

        for section in ["reporting", "storage", "authorization", "http", "cluster", "monitoring"]:
            if section in config and not isinstance(config[section], dict):
                raise ConfigValidationError(f"{section} must be a mapping")

        self._validate_reporting_config(config["reporting"])
        self._validate_storage_config(config["storage"])

        if "authorization" in config:
            self._validate_authorization_config(config["authorization"])

        if "http" in config:
            self._validate_http_config(config["http"])

        if "monitoring" in config:
            self._validate_monitoring_config(config["monitoring"])

        logger.info("Configuration validated successfully")
        return True

    def _validate_reporting_config(self, reporting: Dict[str, Any]) -> None:
        """Validate reporting configuration section."""
        if "enabled" in reporting and not isinstance(reporting["enabled"], bool):
            raise ConfigValidationError(
                f"reporting.enabled must be boolean, got {type(reporting['enabled'])}"
            )

        endpoint = reporting.get("endpoint", "")
        if endpoint is None:
            endpoint = ""
        if not isinstance(endpoint, str):
            raise ConfigValidationError("reporting.endpoint must be a string")
        if endpoint and not endpoint.startswith(("http://", "https://")):
            raise ConfigValidationError(
                f"reporting.endpoint must be an http(s) URL, got: {endpoint}"
            )

        for key in ["interval_seconds", "tick_timeout_seconds"]:
            if key in reporting:
                value = reporting[key]
                if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                    raise ConfigValidationError(
                        f"reporting.{key} must be a positive number, got: {value}"
                    )

        if "content_type" in reporting and not isinstance(reporting["content_type"], str):
            raise ConfigValidationError("reporting.content_type must be a string")

    def _validate_storage_config(self, storage: Dict[str, Any]) -> None:
        """Validate storage configuration section."""
        if "path" not in storage:
            raise ConfigValidationError("Missing storage.path")
        if not isinstance(storage["path"], str) or not storage["path"]:
            raise ConfigValidationError("storage.path must be a non-empty string")

        for key in ["file_prefix", "file_suffix", "status_file"]:
            if key in storage and not isinstance(storage[key], str):
                raise ConfigValidationError(f"storage.{key} must be a string")

        mode = storage.get("reporting_mode", "latest")
        if mode not in VALID_REPORTING_MODES:
            raise ConfigValidationError(
                f"storage.reporting_mode must be one of {VALID_REPORTING_MODES}, got: {mode}"
            )

    def _validate_authorization_config(self, auth: Dict[str, Any]) -> None:
        """Validate authorization configuration section."""
        for key in ["username", "password", "token", "pull_secret_path"]:
            if key in auth and auth[key] is not None and not isinstance(auth[key], str):
                raise ConfigValidationError(f"authorization.{key} must be a string")

    def _validate_http_config(self, http: Dict[str, Any]) -> None:
        """Validate http configuration section."""
        for key in ["http_proxy", "https_proxy", "no_proxy", "trusted_ca_path"]:
            if key in http and http[key] is not None and not isinstance(http[key], str):
                raise ConfigValidationError(f"http.{key} must be a string")

        if "max_bytes" in http:
            max_bytes = http["max_bytes"]
            if isinstance(max_bytes, bool) or not isinstance(max_bytes, int) or max_bytes <= 0:
                raise ConfigValidationError(
                    f"http.max_bytes must be a positive integer, got: {max_bytes}"
                )

    def _validate_monitoring_config(self, monitoring: Dict[str, Any]) -> None:
        """Validate monitoring configuration section."""
        if "cloudwatch_enabled" in monitoring:
            if not isinstance(monitoring["cloudwatch_enabled"], bool):
                raise ConfigValidationError("monitoring.cloudwatch_enabled must be boolean")

        if monitoring.get("cloudwatch_enabled") and not monitoring.get("region"):
            raise ConfigValidationError(
                "monitoring.region is required when cloudwatch_enabled is true"
            )

    def _build_snapshot(self, config: Dict[str, Any]) -> Configuration:
        reporting = config.get("reporting", {})
        storage = config.get("storage", {})
        auth = config.get("authorization") or {}
        http = config.get("http") or {}

        return Configuration(
            report=reporting.get("enabled", False),
            endpoint=reporting.get("endpoint") or "",
            interval=reporting.get("interval_seconds", DEFAULT_INTERVAL_SECONDS),
            tick_timeout=reporting.get("tick_timeout_seconds", DEFAULT_TICK_TIMEOUT_SECONDS),
            content_type=reporting.get("content_type", DEFAULT_CONTENT_TYPE),
            storage_path=storage["path"],
            file_prefix=storage.get("file_prefix", ""),
            file_suffix=storage.get("file_suffix", DEFAULT_FILE_SUFFIX),
            reporting_mode=storage.get("reporting_mode", "latest"),
            username=auth.get("username") or "",
            password=auth.get("password") or "",
            token=auth.get("token") or "",
            http=HTTPConfig(
                http_proxy=http.get("http_proxy") or "",
                https_proxy=http.get("https_proxy") or "",
                no_proxy=http.get("no_proxy") or "",
            ),
            trusted_ca_path=http.get("trusted_ca_path") or "",
            max_bytes=http.get("max_bytes", DEFAULT_MAX_BYTES),
        )

    def _handle_reload_signal(self, signum, frame):
        """
        Signal handler for SIGHUP.

        Args:
            signum: Signal number
            frame: Current stack frame
        """
        self.reload_config()

    def get(self, key: str, default=None) -> Any:
        """
        Get configuration value by dot-separated key path.

        Args:
            key: Dot-separated key path (e.g., 'reporting.endpoint')
            default: Default value if key not found

        Returns:
            Configuration value or default if not found

        Examples:
            >>> config.get('storage.path')  # '/var/lib/ingress-uploader/reports'
            >>> config.get('missing.key', 'default')  # 'default'
        """
        keys = key.split(".")
        with self._lock:
            value = self.settings

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value


class ConfigFileHandler(FileSystemEventHandler):
    """
    Watchdog event handler for the config file.

    Editors and config-map mounts replace files rather than writing them in
    place, so created and moved events count as changes too.
    """

    def __init__(self, config_path: Path, callback: Callable[[], Any]):
        self.config_path = Path(config_path).resolve()
        self.callback = callback

    def _matches(self, path) -> bool:
        if not path:
            return False
        if isinstance(path, bytes):
            path = os.fsdecode(path)
        return Path(path).resolve() == self.config_path

    def on_modified(self, event):
        if not event.is_directory and self._matches(event.src_path):
            self.callback()

    def on_created(self, event):
        if not event.is_directory and self._matches(event.src_path):
            self.callback()

    def on_moved(self, event):
        if not event.is_directory and self._matches(getattr(event, "dest_path", None)):
            self.callback()
