#!/usr/bin/env python3
"""
Ingress Uploader - Main Entry Point
Wires configuration, selector, client and controller together

Usage:
    ingress-uploader --config /etc/ingress-uploader/config.yaml
    ingress-uploader --config config.yaml --test-config
    ingress-uploader --config config.yaml --once --log-level DEBUG
"""

import logging
import signal
import sys
import time
from typing import Any, Dict

from ingress_uploader import __version__
from ingress_uploader.cluster_identity import (
    UNKNOWN_CLUSTER_ID,
    ClusterIdentity,
    PullSecretTokenReader,
    TransientAvailabilityError,
)
from ingress_uploader.config_manager import ConfigManager
from ingress_uploader.controller_status import SimpleStatus, Summary
from ingress_uploader.metrics_manager import CloudWatchRequestCounter, RequestCounter
from ingress_uploader.proxy_control import ProxyResolver
from ingress_uploader.request_authorizer import ConfiguredAuthorizer
from ingress_uploader.request_decorator import RequestDecorator, UserAgentConfig
from ingress_uploader.source_selector import DiskSummarizer, ReportingMode
from ingress_uploader.status_reporter import StatusReporter
from ingress_uploader.upload_client import UploadClient
from ingress_uploader.upload_controller import CONTROLLER_NAME, UploadController

logger = logging.getLogger(__name__)

OPERATOR_NAME = "ingress-uploader"
DEFAULT_CONFIG_PATH = "/etc/ingress-uploader/config.yaml"
DEFAULT_STATUS_FILE = "/var/lib/ingress-uploader/status.json"


class IngressUploaderSystem:
    """
    Main system coordinator.

    Builds every component from the configuration file and owns their
    lifecycle. Storage, identity, max_bytes and trusted_ca_path are read at
    startup; reporting, endpoint, interval, credentials and proxy settings
    follow config reloads from the next tick on.

    Example:
        >>> system = IngressUploaderSystem('/etc/ingress-uploader/config.yaml')
        >>> system.start()
        >>> system.health()['healthy']
        True
        >>> system.stop()
    """

    def __init__(self, config_path: str, handle_sighup: bool = True):
        """
        Initialize all components.

        Raises:
            FileNotFoundError: If the config file does not exist
            ConfigValidationError: If the config file is invalid
            RuntimeError: If CloudWatch is enabled but cannot be initialized
        """
        self.config = ConfigManager(config_path, handle_sighup=handle_sighup)
        cfg = self.config.config()

        self.cluster_identity = ClusterIdentity(
            cluster_id=self.config.get("cluster.id") or "",
            id_file=self.config.get("cluster.id_file") or None,
        )

        token_provider = None
        pull_secret_path = self.config.get("authorization.pull_secret_path")
        if pull_secret_path:
            token_provider = PullSecretTokenReader(pull_secret_path).token
            logger.info(f"Bearer token fallback: pull secret {pull_secret_path}")

        self.metrics = self._create_metrics()

        decorator = RequestDecorator(
            UserAgentConfig(OPERATOR_NAME, __version__, self.cluster_identity),
            ConfiguredAuthorizer(self.config, token_provider),
        )
        self.client = UploadClient(
            decorator,
            ProxyResolver(self.config),
            self.metrics,
            max_bytes=cfg.max_bytes,
            cert_path=cfg.trusted_ca_path,
        )

        self.summarizer = DiskSummarizer(
            cfg.storage_path,
            cfg.file_prefix,
            cfg.file_suffix,
            ReportingMode(cfg.reporting_mode),
        )
        self.reporter = StatusReporter(self.config.get("storage.status_file") or DEFAULT_STATUS_FILE)
        self.status = SimpleStatus(CONTROLLER_NAME)

        self.controller = UploadController(
            self.summarizer,
            self.client,
            self.config,
            self.reporter,
            status=self.status,
            metrics=self.metrics,
        )

        self._running = False
        logger.info(f"Initialized {OPERATOR_NAME} {__version__}")
        logger.info(f"Endpoint: {cfg.endpoint or '(none)'}, reporting enabled: {cfg.report}")

    def _create_metrics(self) -> RequestCounter:
        if not self.config.get("monitoring.cloudwatch_enabled", False):
            return RequestCounter()

        try:
            cluster_id = self.cluster_identity.cluster_id()
        except TransientAvailabilityError:
            cluster_id = UNKNOWN_CLUSTER_ID

        return CloudWatchRequestCounter(
            region=self.config.get("monitoring.region"),
            cluster_id=cluster_id,
            profile_name=self.config.get("monitoring.profile_name"),
        )

    def start(self):
        """
        Start config watching and the upload loop.

        Note:
            Safe to call multiple times - will not start if already running
        """
        if self._running:
            logger.warning("Already running")
            return

        logger.info(f"Starting {OPERATOR_NAME}...")
        self.config.start_watching()
        self.controller.start()
        self._running = True
        logger.info("System started successfully")

    def stop(self):
        """Stop the upload loop and config watching, then flush metrics."""
        if not self._running:
            return

        logger.info(f"Stopping {OPERATOR_NAME}...")
        self.controller.stop()
        self.config.stop_watching()
        self.metrics.flush()
        self._running = False
        logger.info("System stopped")

    def run_once(self) -> Dict[str, Any]:
        """Run a single upload tick and return the resulting health."""
        _, ready = self.status.current_status()
        if not ready:
            self.status.update_status(Summary(healthy=True))
        self.controller.run_once()
        return self.health()

    def health(self) -> Dict[str, Any]:
        """Current health summary for external reporting."""
        summary, ready = self.status.current_status()
        last_reported = self.reporter.last_reported_time()
        return {
            "ready": ready,
            "healthy": summary.healthy,
            "operation": getattr(summary.operation, "value", summary.operation),
            "reason": summary.reason,
            "message": summary.message,
            "count": summary.count,
            "last_transition_time": (
                summary.last_transition_time.isoformat() if summary.last_transition_time else None
            ),
            "last_reported_time": last_reported.isoformat() if last_reported else None,
        }


system = None


def signal_handler(signum, frame):
    """
    Handle shutdown signals (SIGTERM, SIGINT).

    Args:
        signum: Signal number
        frame: Current stack frame
    """
    global system

    logger.info(f"Received signal {signum}")
    if system:
        system.stop()
    sys.exit(0)


def main():
    """
    Main entry point for Ingress Uploader.

    Command-line arguments:
        --config: Path to configuration file
        --test-config: Test configuration and exit
        --once: Run a single upload tick and exit
        --log-level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    import argparse

    parser = argparse.ArgumentParser(description=f"Ingress Uploader v{__version__}")
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help="Path to configuration file"
    )
    parser.add_argument(
        "--test-config",
        action="store_true",
        help="Test configuration and exit"
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single upload tick, print the status and exit"
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level"
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(name)s] [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    if args.test_config:
        try:
            config = ConfigManager(args.config, handle_sighup=False)
            cfg = config.config()
            logger.info("Configuration valid!")
            logger.info(f"Endpoint: {cfg.endpoint or '(none)'}")
            logger.info(f"Reporting enabled: {cfg.report}")
            logger.info(f"Interval: {cfg.interval}s, tick timeout: {cfg.tick_timeout}s")
            logger.info(f"Storage: {cfg.storage_path} ({cfg.file_prefix}*{cfg.file_suffix}, mode={cfg.reporting_mode})")
            logger.info(f"Proxy: {'configured' if cfg.http.is_set() else 'environment'}")
            sys.exit(0)
        except Exception as e:
            logger.error(f"Configuration error: {e}")
            sys.exit(1)

    global system

    if args.once:
        try:
            system = IngressUploaderSystem(args.config, handle_sighup=False)
            health = system.run_once()
        except Exception as e:
            logger.error(f"FATAL ERROR: {e}")
            sys.exit(1)
        print(health)
        sys.exit(0 if health["healthy"] or not health["ready"] else 1)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        system = IngressUploaderSystem(args.config)
        system.start()

        logger.info("Running... Press Ctrl+C to stop")
        while True:
            time.sleep(1)

    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
        if system:
            system.stop()
    except Exception as e:
        logger.error(f"FATAL ERROR: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
