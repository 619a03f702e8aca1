#!/usr/bin/env python3
"""
Status Reporter for Ingress Uploader
Persists the upload watermark across restarts

File format:
{
    "_metadata": {"last_updated": "...", "version": 1},
    "last_reported_time": "2024-05-01T10:00:00+00:00" | null,
    "safe_initial_start": true
}
"""

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

STATUS_FILE_VERSION = 1


class StatusReporter:
    """
    Thread-safe holder of the last successful report time.

    Every setter writes the file atomically (temp file + rename). A missing
    file starts fresh; a corrupt file is logged and also starts fresh.

    Example:
        >>> reporter = StatusReporter('/var/lib/ingress-uploader/status.json')
        >>> reporter.last_reported_time()  # None on first run
        >>> reporter.set_last_reported_time(datetime.now(timezone.utc))
    """

    def __init__(self, status_file: str):
        self.status_file = Path(status_file)
        self._lock = threading.Lock()
        self._last_reported_time: Optional[datetime] = None
        self._safe_initial_start = True
        self._load()

    def last_reported_time(self) -> Optional[datetime]:
        with self._lock:
            return self._last_reported_time

    def set_last_reported_time(self, when: datetime):
        """
        Record the watermark and persist it.

        Raises:
            OSError: If the status file cannot be written
        """
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        with self._lock:
            self._last_reported_time = when
            self._save()

    def safe_initial_start(self) -> bool:
        with self._lock:
            return self._safe_initial_start

    def set_safe_initial_start(self, flag: bool):
        with self._lock:
            if self._safe_initial_start == flag:
                return
            self._safe_initial_start = flag
            self._save()

    def _load(self):
        if not self.status_file.exists():
            logger.info(f"No status file at {self.status_file}, starting fresh")
            return

        try:
            with open(self.status_file, "r") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("status file must contain a JSON object")

            raw_time = data.get("last_reported_time")
            self._last_reported_time = self._parse_time(raw_time) if raw_time else None
            self._safe_initial_start = bool(data.get("safe_initial_start", True))

            logger.info(f"Loaded status: last reported {raw_time or 'never'}")

        except (OSError, ValueError) as e:
            # json.JSONDecodeError is a ValueError
            logger.error(f"Corrupted status file {self.status_file}: {e}")
            logger.warning("Starting with fresh status")
            self._last_reported_time = None
            self._safe_initial_start = True

    @staticmethod
    def _parse_time(value: str) -> datetime:
        parsed = datetime.fromisoformat(value)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    def _save(self):
        """Write the status file. Caller holds the lock."""
        data = {
            "_metadata": {
                "last_updated": datetime.now(timezone.utc).isoformat(),
                "version": STATUS_FILE_VERSION,
            },
            "last_reported_time": (
                self._last_reported_time.isoformat() if self._last_reported_time else None
            ),
            "safe_initial_start": self._safe_initial_start,
        }

        try:
            self.status_file.parent.mkdir(parents=True, exist_ok=True)

            temp_file = self.status_file.with_suffix(".json.tmp")
            with open(temp_file, "w") as f:
                json.dump(data, f, indent=2)

            temp_file.replace(self.status_file)
            logger.debug(f"Saved status to {self.status_file}")

        except OSError as e:
            logger.error(f"Failed to write status file {self.status_file}: {e}")
            raise
