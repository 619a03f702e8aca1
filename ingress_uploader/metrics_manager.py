#!/usr/bin/env python3
"""
Metrics Manager for Ingress Uploader
Counts upload attempts and publishes them to CloudWatch

The upload client increments a counter keyed by (client, status_code) for
every attempt; status '0' means no response was received. The in-memory
counter is what tests and --once runs use; the CloudWatch variant also
publishes the deltas at the end of every upload tick.
"""

import logging
import os
import threading
from datetime import datetime, timezone
from typing import Dict, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

CLOUDWATCH_NAMESPACE = "Insights/Uploader"
METRIC_REQUEST_SEND_TOTAL = "RequestSendTotal"
MAX_METRICS_PER_CALL = 1000


class RequestCounter:
    """
    Thread-safe in-memory request counter.

    Example:
        >>> counter = RequestCounter()
        >>> counter.inc('insightsclient', '401')
        >>> counter.value('insightsclient', '401')
        1
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._counts: Dict[Tuple[str, str], int] = {}

    def inc(self, client: str, status_code: str):
        key = (client, str(status_code))
        with self._lock:
            self._counts[key] = self._counts.get(key, 0) + 1
            self._on_inc(key)
        logger.debug(f"Request counter {client}/{status_code} incremented")

    def value(self, client: str, status_code: str) -> int:
        with self._lock:
            return self._counts.get((client, str(status_code)), 0)

    def snapshot(self) -> Dict[Tuple[str, str], int]:
        """Copy of all counters."""
        with self._lock:
            return dict(self._counts)

    def flush(self):
        """Publish pending counts. Nothing to do for the in-memory counter."""
        pass

    def _on_inc(self, key: Tuple[str, str]):
        pass


class CloudWatchRequestCounter(RequestCounter):
    """
    Request counter that publishes increments to CloudWatch.

    Metric published:
    - Insights/Uploader/RequestSendTotal, dimensions ClusterId, Client, StatusCode

    Failed publishes keep their deltas, so they are retried on the next flush.

    Example:
        >>> counter = CloudWatchRequestCounter('us-east-1', 'cluster-1')
        >>> counter.inc('insightsclient', '202')
        >>> counter.flush()
    """

    def __init__(self, region: str, cluster_id: str, enabled: bool = True, profile_name: str = None):
        """
        Initialize CloudWatch publishing.

        Raises:
            RuntimeError: If the CloudWatch client cannot be created
        """
        super().__init__()
        self.region = region
        self.cluster_id = cluster_id
        self.enabled = enabled
        self.profile_name = profile_name
        self.cw_client = None
        self._pending: Dict[Tuple[str, str], int] = {}

        if not self.enabled:
            logger.info("CloudWatch disabled (enabled=False)")
            return

        try:
            endpoint_url = os.getenv("AWS_ENDPOINT_URL")

            if endpoint_url:
                logger.info(f"CloudWatch in TEST mode (endpoint: {endpoint_url})")
                self.cw_client = boto3.client(
                    "cloudwatch",
                    region_name=region,
                    endpoint_url=endpoint_url,
                    aws_access_key_id=os.getenv("AWS_ACCESS_KEY_ID", "test"),
                    aws_secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY", "test"),
                )
            elif profile_name:
                session = boto3.Session(profile_name=profile_name)
                self.cw_client = session.client("cloudwatch", region_name=region)
                logger.info(f"CloudWatch initialized with profile '{profile_name}' for region: {region}")
            else:
                self.cw_client = boto3.client("cloudwatch", region_name=region)
                logger.info(f"CloudWatch initialized for region: {region}")

        except (BotoCoreError, ClientError) as e:
            logger.error(f"CloudWatch client creation failed: {e}")
            logger.error("Set monitoring.cloudwatch_enabled: false if monitoring is optional")
            raise RuntimeError(f"CloudWatch initialization failed: {e}")

    def _on_inc(self, key: Tuple[str, str]):
        self._pending[key] = self._pending.get(key, 0) + 1

    def pending(self) -> Dict[Tuple[str, str], int]:
        with self._lock:
            return dict(self._pending)

    def flush(self):
        """Publish pending deltas to CloudWatch and clear them on success."""
        if not self.enabled:
            logger.debug("CloudWatch disabled, skipping publish")
            return

        if self.cw_client is None:
            logger.error("CloudWatch client not initialized, cannot publish metrics")
            return

        with self._lock:
            pending = dict(self._pending)
            self._pending.clear()

        if not pending:
            return

        timestamp = datetime.now(timezone.utc)
        metrics = [
            {
                "MetricName": METRIC_REQUEST_SEND_TOTAL,
                "Value": count,
                "Unit": "Count",
                "Timestamp": timestamp,
                "Dimensions": [
                    {"Name": "ClusterId", "Value": self.cluster_id},
                    {"Name": "Client", "Value": client},
                    {"Name": "StatusCode", "Value": status_code},
                ],
            }
            for (client, status_code), count in sorted(pending.items())
        ]

        try:
            for start in range(0, len(metrics), MAX_METRICS_PER_CALL):
                self.cw_client.put_metric_data(
                    Namespace=CLOUDWATCH_NAMESPACE,
                    MetricData=metrics[start:start + MAX_METRICS_PER_CALL],
                )
            logger.info(f"Published {len(metrics)} metrics to CloudWatch")

        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to publish CloudWatch metrics: {e}")
            with self._lock:
                for key, count in pending.items():
                    self._pending[key] = self._pending.get(key, 0) + count
