#!/usr/bin/env python3
"""
Source Selector for Ingress Uploader
Picks the next archive to upload from the report directory
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import BinaryIO, List, Optional, Tuple

logger = logging.getLogger(__name__)


class ReportingMode(str, Enum):
    """Which candidates a tick uploads."""

    LATEST = "latest"
    ALL_SINCE_LAST_REPORTING = "all"


class DiskSummarizer:
    """
    Yields candidate archives newest first, one per call.

    Candidates are regular files in base_path named <prefix>...<suffix> whose
    mtime is strictly after the watermark. The list is built on the first
    call of a cycle and walked with a cursor; reset() starts a new cycle.

    Modes:
    - LATEST: only the newest candidate is returned per cycle
    - ALL_SINCE_LAST_REPORTING: every candidate, newest to oldest

    Example:
        >>> selector = DiskSummarizer('/var/lib/reports', 'insights-', '.tar.gz', ReportingMode.ALL_SINCE_LAST_REPORTING)
        >>> stream, found = selector.summary(since=None)
        >>> while found:
        ...     with stream:
        ...         upload(stream)
        ...     stream, found = selector.summary(since=None)
    """

    def __init__(self, base_path: str, file_prefix: str = "", file_suffix: str = "",
                 reporting_mode: ReportingMode = ReportingMode.LATEST):
        self.base_path = Path(base_path)
        self.file_prefix = file_prefix
        self.file_suffix = file_suffix
        self.reporting_mode = ReportingMode(reporting_mode)

        self._recent_files: List[Path] = []
        self._cursor = 0
        self.last_open_error: Optional[OSError] = None

    def reset(self):
        """Forget cached candidates; the next summary() rescans the directory."""
        self._recent_files = []
        self._cursor = 0
        self.last_open_error = None

    def summary(self, since: Optional[datetime]) -> Tuple[Optional[BinaryIO], bool]:
        """
        Open the next candidate.

        Args:
            since: Watermark (aware UTC datetime); None selects every file

        Returns:
            Tuple[stream, bool]: Open binary stream and True, or (None, False)
            when nothing is left this cycle. The caller closes the stream.

        Raises:
            OSError: If the directory cannot be listed
        """
        if not self._recent_files:
            if not self._scan(since):
                return None, False

        next_file = self._next_file()
        if next_file is None:
            return None, False

        logger.debug(f"Found file to send: {next_file.name}")
        try:
            return open(next_file, "rb"), True
        except OSError as e:
            self.last_open_error = e
            logger.warning(f"Cannot open candidate {next_file}: {e}")
            return None, False

    def _scan(self, since: Optional[datetime]) -> bool:
        candidates = []

        for file_path in self.base_path.iterdir():
            name = file_path.name
            if not name.startswith(self.file_prefix) or not name.endswith(self.file_suffix):
                continue

            try:
                if not file_path.is_file():
                    continue
                mtime = datetime.fromtimestamp(file_path.stat().st_mtime, tz=timezone.utc)
            except FileNotFoundError:
                # Removed between listing and stat
                continue

            if since is not None and mtime <= since:
                continue
            candidates.append((mtime, name, file_path))

        if not candidates:
            return False

        candidates.sort(key=lambda c: (c[0], c[1]), reverse=True)
        self._recent_files = [c[2] for c in candidates]
        self._cursor = 0
        logger.debug(f"Found {len(self._recent_files)} candidate(s) in {self.base_path}")
        return True

    def _next_file(self) -> Optional[Path]:
        if self.reporting_mode == ReportingMode.LATEST and self._cursor > 0:
            logger.debug("Latest file was already processed")
            return None
        if self._cursor >= len(self._recent_files):
            logger.debug("No files left to process")
            return None

        next_file = self._recent_files[self._cursor]
        self._cursor += 1
        return next_file
