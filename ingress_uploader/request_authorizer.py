#!/usr/bin/env python3
"""
Request Authorizer for Ingress Uploader
Attaches credentials to outgoing upload requests

Exactly one credential mode is active per request:
- basic auth when a username or password is configured (checked first, wins)
- bearer token otherwise, when a token is configured or provided
- none (unauthenticated) when neither is available
"""

import logging
from typing import Callable, Optional

from requests.auth import HTTPBasicAuth

logger = logging.getLogger(__name__)


class InvalidCredentialError(ValueError):
    """
    Raised when locally configured credentials are unusable.

    The request is never sent when this is raised.
    """

    pass


class NoAuthorizer:
    """Leaves the request unauthenticated."""

    mode = "none"

    def set_authorization(self, request):
        return request


class BasicAuthAuthorizer:
    """HTTP Basic authentication from a username and password."""

    mode = "basic"

    def __init__(self, username: str, password: str):
        self.username = username
        self.password = password

    def set_authorization(self, request):
        return HTTPBasicAuth(self.username, self.password)(request)


class BearerTokenAuthorizer:
    """
    Bearer token authentication.

    The token is trimmed and validated on construction, so an invalid
    token never reaches a request header.
    """

    mode = "bearer"

    def __init__(self, token: str):
        self.token = validate_token(token)

    def set_authorization(self, request):
        request.headers["Authorization"] = f"Bearer {self.token}"
        return request


def validate_token(token: str) -> str:
    """
    Trim and validate a bearer token.

    Raises:
        InvalidCredentialError: If the token is empty or spans several lines
    """
    token = (token or "").strip()
    if "\n" in token or "\r" in token:
        raise InvalidCredentialError("cluster authorization token is not valid: contains newlines")
    if not token:
        raise InvalidCredentialError("cluster authorization token is empty")
    return token


def authorizer_for(cfg, token_provider: Optional[Callable[[], str]] = None):
    """
    Select the credential mode for a configuration snapshot.

    Args:
        cfg: Configuration snapshot (username, password, token)
        token_provider: Fallback token source when cfg has no token

    Returns:
        NoAuthorizer, BasicAuthAuthorizer or BearerTokenAuthorizer

    Raises:
        InvalidCredentialError: If the bearer token is malformed
    """
    if cfg.username or cfg.password:
        return BasicAuthAuthorizer(cfg.username, cfg.password)

    token = cfg.token
    if not token and token_provider is not None:
        token = token_provider()

    if token:
        return BearerTokenAuthorizer(token)

    return NoAuthorizer()


class ConfiguredAuthorizer:
    """
    Authorizes requests using the configurator's current snapshot.

    Example:
        >>> authorizer = ConfiguredAuthorizer(config_manager)
        >>> authorizer.authorize(request)  # sets Authorization header
    """

    def __init__(self, configurator, token_provider: Optional[Callable[[], str]] = None):
        self.configurator = configurator
        self.token_provider = token_provider

    def authorize(self, request):
        """
        Attach credentials to the request.

        Raises:
            InvalidCredentialError: If the configured token is malformed;
                request headers are left untouched
        """
        authorizer = authorizer_for(self.configurator.config(), self.token_provider)
        logger.debug(f"Authorizing request with {authorizer.mode} credentials")
        return authorizer.set_authorization(request)
