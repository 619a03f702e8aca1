#!/usr/bin/env python3
"""
Upload Controller for Ingress Uploader
Runs the periodic upload loop

Every tick snapshots the configuration, walks the candidates offered by the
source selector and sends them (or, with reporting disabled, only logs what
would have been sent). The watermark moves forward only after a successful
upload. Failures mark the status unhealthy and end the tick; the next tick
retries.
"""

import logging
import tarfile
import threading
import time
import traceback
import zlib
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Optional

from ingress_uploader.cluster_identity import ClusterVersionUnavailable, TransientAvailabilityError
from ingress_uploader.controller_status import Operation, SimpleStatus, Summary
from ingress_uploader.request_authorizer import InvalidCredentialError
from ingress_uploader.upload_client import AuthorizationError, Source, UploadError

logger = logging.getLogger(__name__)

CONTROLLER_NAME = "insightsuploader"
MAX_SILENT_UNAVAILABLE_TICKS = 20
STOP_TIMEOUT_SECONDS = 10


def report_to_logs(source: BinaryIO) -> int:
    """
    Log every entry of a gzip-compressed tar stream.

    Args:
        source: Binary stream positioned at the start of the archive

    Returns:
        int: Number of entries logged

    Raises:
        tarfile.TarError: If the stream is not a valid tar.gz
    """
    count = 0
    with tarfile.open(fileobj=source, mode="r|gz") as archive:
        for member in archive:
            mtime = datetime.fromtimestamp(member.mtime, tz=timezone.utc).isoformat()
            logger.info(f"Dry-run: {mtime} {member.size:7d} {member.name}")
            count += 1
    return count


class UploadController:
    """
    Periodic uploader.

    Features:
    - Fixed interval ticks, first tick immediately, cooperative stop
    - Per-tick time budget shared by all uploads of the tick
    - Fail-fast within a tick, retry on the next tick
    - Dry-run logging when reporting is disabled
    - Watermark persisted through the status reporter

    Example:
        >>> controller = UploadController(selector, client, config, reporter)
        >>> controller.start()
        >>> summary, ready = controller.status.current_status()
        >>> controller.stop()
    """

    def __init__(self, summarizer, client, configurator, reporter,
                 status: Optional[SimpleStatus] = None, metrics=None):
        """
        Initialize the controller.

        Args:
            summarizer: DiskSummarizer offering candidates
            client: UploadClient, or None to disable reporting entirely
            configurator: ConfigManager (config() and config_changed())
            reporter: StatusReporter holding the watermark
            status: Status to update (default: new 'insightsuploader' status)
            metrics: Request counter flushed after every tick
        """
        self.summarizer = summarizer
        self.client = client
        self.configurator = configurator
        self.reporter = reporter
        self.status = status if status is not None else SimpleStatus(CONTROLLER_NAME)
        self.metrics = metrics

        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._config_changed: Optional[threading.Event] = None
        self._unavailable_ticks = 0

    def start(self):
        """
        Run the loop on a daemon thread.

        Note:
            Safe to call multiple times - will not start while a loop thread
            is still alive, including one that outlived stop()
        """
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Upload controller already running")
            return

        # Fresh event per loop; a loop that outlived stop() keeps its own, already set
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self.run, args=(self._stop_event,), name=CONTROLLER_NAME, daemon=True
        )
        self._running = True
        self._thread.start()
        logger.info("Upload controller started")

    def stop(self):
        """
        Signal the loop to stop and wait for the current tick to finish.

        Returns:
            bool: True if the loop thread has exited
        """
        if not self._running:
            return True

        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=STOP_TIMEOUT_SECONDS)
            if self._thread.is_alive():
                logger.warning("Upload controller did not stop within timeout, still finishing the current tick")
                return False
        self._running = False
        logger.info("Upload controller stopped")
        return True

    def run(self, stop_event: threading.Event):
        """
        Blocking upload loop; returns once stop_event is set.

        Note:
            Logs errors but never raises
        """
        self.status.update_status(Summary(healthy=True))

        if self.client is None:
            logger.info("No reporting possible without a configured client")
            return

        self._config_changed, cancel = self.configurator.config_changed()
        logger.info("Upload loop started")

        try:
            while not stop_event.is_set():
                try:
                    self.run_once(stop_event)
                except Exception as e:
                    logger.error(f"Error in upload loop: {e}")
                    logger.debug(traceback.format_exc())

                if stop_event.wait(self.configurator.config().interval):
                    break
        finally:
            cancel()
            self._config_changed = None

        logger.info("Upload loop stopped")

    def run_once(self, stop_event: Optional[threading.Event] = None):
        """Run a single upload tick."""
        try:
            self._tick(stop_event)
        finally:
            if self.metrics is not None:
                self.metrics.flush()

    def upload(self, source: Source, stop_event: Optional[threading.Event] = None,
               timeout: Optional[float] = None):
        """
        Send one source and record the outcome in the status.

        Raises:
            TransientAvailabilityError: Cluster ID not available; status unchanged
                (unless it stayed unavailable for too many ticks)
            AuthorizationError: Status set to NotAuthorized
            UploadError, InvalidCredentialError: Status set to UploadFailed
        """
        cfg = self.configurator.config()
        started = time.monotonic()

        try:
            self.client.send(cfg.endpoint, source, timeout=timeout, stop_event=stop_event)
        except TransientAvailabilityError as e:
            logger.info(f"Unable to upload report after {time.monotonic() - started:.2f}s: {e}")
            self._record_unavailable(e)
            raise
        except AuthorizationError as e:
            logger.info(f"Unable to upload report after {time.monotonic() - started:.2f}s: {e}")
            self._unavailable_ticks = 0
            self.reporter.set_safe_initial_start(False)
            self.status.update_status(Summary(
                operation=Operation.UPLOADING, healthy=False,
                reason="NotAuthorized", message=f"Reporting was not allowed: {e}",
            ))
            raise
        except (UploadError, InvalidCredentialError) as e:
            logger.info(f"Unable to upload report after {time.monotonic() - started:.2f}s: {e}")
            self._unavailable_ticks = 0
            self.reporter.set_safe_initial_start(False)
            self.status.update_status(Summary(
                operation=Operation.UPLOADING, healthy=False,
                reason="UploadFailed", message=f"Unable to report: {e}",
            ))
            raise

        self._unavailable_ticks = 0
        self.reporter.set_safe_initial_start(False)
        logger.info(f"Uploaded report {source.id} successfully in {time.monotonic() - started:.2f}s")

    def _tick(self, stop_event: Optional[threading.Event]):
        cfg = self.configurator.config()
        last_reported = self.reporter.last_reported_time()

        if self._config_changed is not None and self._config_changed.is_set():
            self._config_changed.clear()
            logger.info("Configuration changed, using updated settings for this tick")

        if not cfg.endpoint:
            logger.debug("No endpoint configured, skipping upload tick")
            return

        start = datetime.now(timezone.utc)
        deadline = time.monotonic() + cfg.tick_timeout
        since = last_reported.isoformat() if last_reported else "the beginning"

        self.summarizer.reset()
        source_index = 0
        uploaded = 0

        while True:
            try:
                stream, found = self.summarizer.summary(last_reported)
            except OSError as e:
                self.status.update_status(Summary(
                    healthy=False, reason="SummaryFailed",
                    message=f"Unable to retrieve local data: {e}",
                ))
                return

            if not found:
                break

            with closing(stream):
                if cfg.report:
                    logger.debug(f"Uploading latest report since {since}")
                    source = Source(
                        id=f"{start.isoformat()}-{source_index}",
                        type=cfg.content_type,
                        contents=stream,
                        filename=Path(getattr(stream, "name", "")).name,
                    )
                    try:
                        self.upload(source, stop_event, timeout=deadline - time.monotonic())
                    except (TransientAvailabilityError, UploadError, InvalidCredentialError):
                        return
                    uploaded += 1
                    self.status.update_status(Summary(healthy=True))
                else:
                    logger.debug("Display report that would be sent")
                    self._dry_run(stream)

            source_index += 1

        if source_index == 0:
            logger.debug(f"Nothing to report since {since}")
            return

        if cfg.report and uploaded > 0:
            watermark = start if last_reported is None else max(last_reported, start)
            self.reporter.set_last_reported_time(watermark)
            logger.info(f"Uploaded {uploaded} report(s), last reported time is now {watermark.isoformat()}")

    def _dry_run(self, stream: BinaryIO):
        try:
            count = report_to_logs(stream)
            logger.debug(f"Dry-run listed {count} entries")
        except (tarfile.TarError, OSError, EOFError, zlib.error) as e:
            logger.error(f"Unable to log upload: {e}")

    def _record_unavailable(self, error: TransientAvailabilityError):
        if not isinstance(error, ClusterVersionUnavailable):
            return

        self._unavailable_ticks += 1
        if self._unavailable_ticks >= MAX_SILENT_UNAVAILABLE_TICKS:
            self.status.update_status(Summary(
                operation=Operation.UPLOADING, healthy=False,
                reason="ClusterVersionUnavailable",
                message=f"Unable to obtain the cluster ID: {error}",
            ))
