#!/usr/bin/env python3
"""
Controller Status for Ingress Uploader
Thread-safe health summary of the upload pipeline

The upload loop writes the summary; health reporting surfaces read it
through current_status(), which always returns a copy.
"""

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple

logger = logging.getLogger(__name__)


class Operation(str, Enum):
    """Operation a summary describes."""

    UPLOADING = "Uploading"


@dataclass
class Summary:
    """
    Health, time and count of an operation.

    Attributes:
        operation: Operation tag (e.g. Operation.UPLOADING)
        healthy: Whether the operation is currently healthy
        reason: Short machine-readable reason (e.g. 'NotAuthorized')
        message: Human-readable detail
        last_transition_time: When healthy last flipped
        count: Consecutive updates in the current state (0 = never observed)
    """

    operation: str = ""
    healthy: bool = False
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[datetime] = None
    count: int = 0


class SimpleStatus:
    """
    Tracks a named summary under a single lock.

    Example:
        >>> status = SimpleStatus('insightsuploader')
        >>> status.update_status(Summary(healthy=True))
        >>> summary, ready = status.current_status()
    """

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()
        self._summary = Summary()

    def update_status(self, summary: Summary):
        """
        Record a new observation.

        - First observation or healthy flip: replace everything, count=1,
          transition time defaults to now
        - Unhealthy with a new reason/message: update those, count=1,
          transition time kept
        - Otherwise: count += 1
        """
        with self._lock:
            current = self._summary

            if current.count == 0 or current.healthy != summary.healthy:
                self._log(summary)
                last_transition = summary.last_transition_time or datetime.now(timezone.utc)
                self._summary = replace(summary, last_transition_time=last_transition, count=1)
                return

            if summary.healthy:
                current.count += 1
                return

            if current.reason != summary.reason or current.message != summary.message:
                self._log(summary)
                current.reason = summary.reason
                current.message = summary.message
                if summary.operation:
                    current.operation = summary.operation
                current.count = 1
                return

            current.count += 1

    def current_status(self) -> Tuple[Summary, bool]:
        """
        Get a snapshot of the summary.

        Returns:
            Tuple[Summary, bool]: (copy of summary, False if nothing was ever recorded)
        """
        with self._lock:
            if self._summary.count == 0:
                return Summary(), False
            return replace(self._summary), True

    def _log(self, summary: Summary):
        logger.info(
            f"name={self.name} healthy={summary.healthy} "
            f"reason={summary.reason} message={summary.message}"
        )
