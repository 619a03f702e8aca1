#!/usr/bin/env python3
"""
Cluster Identity for Ingress Uploader
Provides the cluster ID and the pull-secret bearer token

Both come from configuration or from files mounted next to the daemon.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from ingress_uploader.request_authorizer import InvalidCredentialError

logger = logging.getLogger(__name__)

UNKNOWN_CLUSTER_ID = "unknown"
PULL_SECRET_AUTH_KEY = "cloud.openshift.com"


class TransientAvailabilityError(Exception):
    """
    Raised when upstream identity is not available yet.

    The upload loop retries on the next tick without reporting unhealthy.
    """

    pass


class ClusterVersionNotReady(TransientAvailabilityError):
    """Cluster identity has not been published yet."""

    def __init__(self, message: str = "waiting for the cluster version to be loaded"):
        super().__init__(message)


class ClusterVersionUnavailable(TransientAvailabilityError):
    """Cluster identity exists but could not be retrieved."""

    def __init__(self, message: str = "unable to obtain the cluster version"):
        super().__init__(message)


class ClusterIdentity:
    """
    Resolves the cluster ID used in the User-Agent header.

    A static ID wins. Otherwise the ID file is read once and cached.

    Example:
        >>> identity = ClusterIdentity(id_file='/run/cluster/id')
        >>> identity.cluster_id()
        'b7f5c3a2-...'
    """

    def __init__(self, cluster_id: str = "", id_file: Optional[str] = None):
        self._static_id = cluster_id.strip() if cluster_id else ""
        self.id_file = Path(id_file) if id_file else None
        self._cached_id = ""

    def cluster_id(self) -> str:
        """
        Get the cluster ID.

        Raises:
            ClusterVersionNotReady: If the ID file does not exist yet
            ClusterVersionUnavailable: If the ID file is unreadable or empty
        """
        if self._static_id:
            return self._static_id
        if self._cached_id:
            return self._cached_id
        if self.id_file is None:
            return UNKNOWN_CLUSTER_ID

        if not self.id_file.exists():
            raise ClusterVersionNotReady()

        try:
            value = self.id_file.read_text().strip()
        except OSError as e:
            raise ClusterVersionUnavailable(f"unable to read cluster ID from {self.id_file}: {e}")

        if not value:
            raise ClusterVersionUnavailable("No cluster ID found in cluster ID file")

        self._cached_id = value
        logger.info(f"Cluster ID: {value}")
        return value


class PullSecretTokenReader:
    """
    Reads the bearer token from a docker-config JSON pull secret.

    Expected format:
    {
        "auths": {
            "cloud.openshift.com": {"auth": "<token>"}
        }
    }
    """

    def __init__(self, path: str, auth_key: str = PULL_SECRET_AUTH_KEY):
        self.path = Path(path)
        self.auth_key = auth_key

    def token(self) -> str:
        """
        Read the token. The file is re-read on every call so rotated
        secrets are picked up.

        Raises:
            InvalidCredentialError: If the secret is missing, corrupt or has no usable token
        """
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except FileNotFoundError:
            raise InvalidCredentialError(f"cluster authorization secret not found: {self.path}")
        except (OSError, json.JSONDecodeError) as e:
            raise InvalidCredentialError(f"cluster authorization secret could not be read: {e}")

        auths = data.get("auths") if isinstance(data, dict) else None
        entry = auths.get(self.auth_key) if isinstance(auths, dict) else None
        if not isinstance(entry, dict):
            raise InvalidCredentialError("cluster authorization token is not found")

        token = str(entry.get("auth", "")).strip()
        if "\n" in token or "\r" in token:
            raise InvalidCredentialError("cluster authorization token is not valid: contains newlines")
        if not token:
            raise InvalidCredentialError("cluster authorization token is not found")
        return token
