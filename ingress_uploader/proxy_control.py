#!/usr/bin/env python3
"""
Proxy Control for Ingress Uploader
Resolves the proxy to use for each upload request

Explicit proxy settings from the configuration take precedence; otherwise
the conventional HTTP_PROXY / HTTPS_PROXY / NO_PROXY environment variables
apply. In both cases NO_PROXY entries may be CIDR ranges, which the plain
environment lookup only honours for IPv4 hosts.
"""

import ipaddress
import logging
import os
from typing import Callable, Dict, Optional
from urllib.parse import urlsplit

from requests.utils import get_environ_proxies, prepend_scheme_if_needed, select_proxy
from urllib3.exceptions import LocationParseError
from urllib3.util import parse_url

logger = logging.getLogger(__name__)

LOOPBACK_HOSTS = {"localhost", "localhost.localdomain"}


class ProxyConfigError(ValueError):
    """Raised when a configured proxy string is not a usable URL."""

    pass


def _parse_ip(host: str):
    try:
        return ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return None


def _is_loopback(host: str) -> bool:
    if host in LOOPBACK_HOSTS:
        return True
    ip = _parse_ip(host)
    return ip is not None and ip.is_loopback


def _split_entry(entry: str):
    """Split a no-proxy entry into (host, port); port is '' when absent."""
    if entry.startswith("["):
        host, _, rest = entry[1:].partition("]")
        return host, rest.lstrip(":")
    if entry.count(":") == 1:
        host, _, port = entry.partition(":")
        return host, port
    return entry, ""


def no_proxy_matches(host: str, port: Optional[int], no_proxy: str) -> bool:
    """
    Check whether a host is excluded from proxying.

    Entries (comma separated):
    - '*' matches everything
    - CIDR ranges ('10.0.0.0/8', 'fd00::/8') match IP hosts inside them
    - IP literals match exactly
    - 'example.com' matches example.com and any subdomain
    - '.example.com' matches subdomains and example.com itself
    - any entry may carry ':port' to restrict it to one port

    Args:
        host: Request host (no brackets needed for IPv6)
        port: Request port, or None for the scheme default
        no_proxy: Comma-separated exclusion list

    Returns:
        bool: True if the request should go direct
    """
    if not host or not no_proxy:
        return False

    host = host.lower().strip("[]").rstrip(".")
    host_ip = _parse_ip(host)

    for raw_entry in no_proxy.split(","):
        entry = raw_entry.strip().lower()
        if not entry:
            continue
        if entry == "*":
            return True

        if "/" in entry:
            if host_ip is None:
                continue
            try:
                network = ipaddress.ip_network(entry, strict=False)
            except ValueError:
                logger.debug(f"Ignoring malformed no_proxy CIDR entry: {entry}")
                continue
            if host_ip.version == network.version and host_ip in network:
                return True
            continue

        entry_host, entry_port = _split_entry(entry)
        if entry_port and port is not None and entry_port != str(port):
            continue

        entry_ip = _parse_ip(entry_host)
        if entry_ip is not None:
            if host_ip is not None and entry_ip == host_ip:
                return True
            continue

        domain = entry_host.lstrip("*").rstrip(".")
        if domain.startswith("."):
            if host == domain[1:] or host.endswith(domain):
                return True
        elif host == domain or host.endswith("." + domain):
            return True

    return False


def _normalize_proxy(value: str) -> str:
    """Add a missing scheme ('proxy.to' -> 'http://proxy.to') and validate."""
    try:
        normalized = prepend_scheme_if_needed(value.strip(), "http")
        parsed = parse_url(normalized)
    except (LocationParseError, ValueError) as e:
        raise ProxyConfigError(f"invalid proxy URL {value!r}: {e}")
    if not parsed.host:
        raise ProxyConfigError(f"invalid proxy URL {value!r}: missing host")
    return normalized


def _env_no_proxy() -> str:
    return os.environ.get("no_proxy") or os.environ.get("NO_PROXY") or ""


class ProxyResolver:
    """
    Picks the proxy for a request URL from configuration or environment.

    Example:
        >>> resolver = ProxyResolver(config_manager)
        >>> resolver.proxy_for_url('https://ingest.example.com/upload')
        'http://proxy.corp:3128'
        >>> resolver.proxies_for_url('https://10.1.2.3/upload')  # in no_proxy 10.0.0.0/8
        {}
    """

    def __init__(self, configurator=None):
        """
        Args:
            configurator: Object with config() returning a Configuration;
                None means environment only
        """
        self.configurator = configurator

    def new_system_or_configured_proxy(self) -> Callable[[str], Optional[str]]:
        """
        Build a proxy function from the current configuration.

        Returns:
            Callable[[str], Optional[str]]: URL -> proxy URL or None for direct
        """
        http_config = None
        if self.configurator is not None:
            cfg = self.configurator.config()
            if cfg is not None and cfg.http.is_set():
                http_config = cfg.http

        if http_config is not None:
            return lambda url: self._configured_proxy(url, http_config)
        return self._environment_proxy

    def proxy_for_url(self, url: str) -> Optional[str]:
        """Resolve the proxy for a single URL (None = direct connection)."""
        return self.new_system_or_configured_proxy()(url)

    def proxies_for_url(self, url: str) -> Dict[str, str]:
        """
        Resolve the proxy as a requests-style proxies mapping.

        Raises:
            ProxyConfigError: If the configured proxy string is not a URL
        """
        proxy = self.proxy_for_url(url)
        if not proxy:
            return {}
        scheme = urlsplit(url).scheme or "http"
        return {scheme: proxy}

    def _configured_proxy(self, url: str, http_config) -> Optional[str]:
        parts = urlsplit(url)
        host = parts.hostname or ""
        if _is_loopback(host) or no_proxy_matches(host, parts.port, http_config.no_proxy):
            return None

        proxy = http_config.https_proxy if parts.scheme == "https" else http_config.http_proxy
        if not proxy:
            return None
        return _normalize_proxy(proxy)

    def _environment_proxy(self, url: str) -> Optional[str]:
        parts = urlsplit(url)
        host = parts.hostname or ""
        if _is_loopback(host):
            return None

        proxy = select_proxy(url, get_environ_proxies(url))
        if not proxy:
            return None

        # requests only understands IPv4 CIDR entries in NO_PROXY
        if no_proxy_matches(host, parts.port, _env_no_proxy()):
            return None
        return _normalize_proxy(proxy)
