#!/usr/bin/env python3
"""
Upload Client for Ingress Uploader
Streams one archive to the ingress endpoint as a multipart form upload

Each attempt gets a fresh requests session, so proxy and CA changes apply
from the next upload on. The multipart body is produced by a background
thread into a bounded queue and sent with chunked transfer encoding, so the
archive is never buffered in memory as a whole.
"""

import logging
import queue
import socket
import ssl
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.connection import HTTPConnection
from urllib3.exceptions import HTTPError as URLLib3HTTPError
from urllib3.fields import RequestField
from urllib3.filepost import choose_boundary

from ingress_uploader.metrics_manager import RequestCounter
from ingress_uploader.proxy_control import ProxyConfigError

logger = logging.getLogger(__name__)

DEFAULT_FILENAME = "payload.tar.gz"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_METRICS_NAME = "insightsclient"
REQUEST_ID_HEADER = "x-rh-insights-request-id"
RESPONSE_BODY_LOG_LEN = 1024

# Transport settings
DIAL_TIMEOUT_SECONDS = 30  # also bounds the TLS handshake
KEEPALIVE_SECONDS = 30

# Body streaming
CHUNK_SIZE = 64 * 1024
QUEUE_CHUNKS = 8  # at most 512 KiB buffered between producer and transport
QUEUE_POLL_SECONDS = 0.1
PRODUCER_JOIN_SECONDS = 5


class UploadError(Exception):
    """
    Base class for failed uploads.

    Attributes:
        status_code (int): HTTP status, or None when no response was received
        request_id (str): Value of the x-rh-insights-request-id response header
        body (str): First 1024 bytes of the response body
    """

    def __init__(self, message: str, status_code: Optional[int] = None,
                 request_id: str = "", body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.request_id = request_id
        self.body = body


class AuthorizationError(UploadError):
    """Credentials rejected or expired (HTTP 401/403)."""
    pass


class BadRequestError(UploadError):
    """Ingress server rejected the request (HTTP 400)."""
    pass


class UnexpectedStatusError(UploadError):
    """Any other response outside 2xx."""
    pass


class TransportError(UploadError):
    """
    Raised when no response was obtained.

    Covers connection, TLS, proxy and timeout failures as well as errors
    raised while producing the request body.
    """
    pass


class TransportConfigError(UploadError):
    """
    Raised when the trusted CA bundle is present but malformed.

    The client logs it and continues with the system trust store.
    """
    pass


def is_authorization_error(err: BaseException) -> bool:
    return isinstance(err, AuthorizationError)


@dataclass
class Source:
    """One payload eligible for upload."""

    id: str
    type: str
    contents: BinaryIO
    filename: str = ""


class LimitedReader:
    """
    Reads at most `limit` bytes from the underlying stream.

    Anything past the limit is silently dropped; reaching the limit looks
    like a normal end of stream to the caller.
    """

    def __init__(self, reader: BinaryIO, limit: int):
        self.reader = reader
        self.remaining = limit

    def read(self, size: int = -1) -> bytes:
        if self.remaining <= 0:
            return b""
        if size < 0 or size > self.remaining:
            size = self.remaining
        data = self.reader.read(size)
        self.remaining -= len(data)
        return data


def abort_reason(deadline: Optional[float], stop_event: Optional[threading.Event]) -> str:
    """
    Why an in-flight upload has to stop, or "" to keep going.

    Args:
        deadline: time.monotonic() value the upload must finish by (None = no deadline)
        stop_event: Cancellation flag (None = not cancellable)
    """
    if stop_event is not None and stop_event.is_set():
        return "upload cancelled"
    if deadline is not None and time.monotonic() >= deadline:
        return "upload deadline exceeded"
    return ""


class ResponseWatchdog:
    """
    Shuts down a streamed response once the deadline passes or stop is requested.

    Blocking reads on the response return as soon as the socket is shut down,
    so reading the body can never outlive the upload's time budget.

    Example:
        >>> with ResponseWatchdog(response.raw, deadline, stop_event) as watchdog:
        ...     data = response.raw.read(1024)
        ...     watchdog.check()
    """

    def __init__(self, raw, deadline: Optional[float] = None,
                 stop_event: Optional[threading.Event] = None):
        self.raw = raw
        self.deadline = deadline
        self.stop_event = stop_event
        self.reason = ""
        self._done = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def __enter__(self):
        if self.deadline is not None or self.stop_event is not None:
            self._thread = threading.Thread(target=self._watch, name="response-watchdog", daemon=True)
            self._thread.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self._done.set()
        if self._thread is not None:
            self._thread.join(timeout=PRODUCER_JOIN_SECONDS)
        return False

    @property
    def tripped(self) -> bool:
        return bool(self.reason)

    def check(self):
        """
        Raises:
            TransportError: If the response was shut down
        """
        if self.reason:
            raise TransportError(f"{self.reason} while reading the response")

    def _watch(self):
        while not self._done.wait(QUEUE_POLL_SECONDS):
            reason = abort_reason(self.deadline, self.stop_event)
            if reason:
                self.reason = reason
                self._shutdown()
                return

    def _shutdown(self):
        logger.debug(f"Shutting down response: {self.reason}")
        try:
            self.raw.shutdown()
        except (ValueError, RuntimeError, OSError) as e:
            # Connection already released; close whatever is left
            logger.debug(f"Response shutdown not possible ({e}), closing instead")
            try:
                self.raw.close()
            except (URLLib3HTTPError, OSError) as close_error:
                logger.warning(f"Failed to close response body: {close_error}")


class _ProducerAborted(Exception):
    pass


_END_OF_BODY = object()


class MultipartBodyProducer:
    """
    Renders a single-part multipart/form-data body on a background thread.

    The part is named 'file'. Chunks are handed over through a bounded queue;
    iterating the producer yields them in order. The first error raised while
    producing becomes the terminal error of the stream and is re-raised to
    the consumer as a TransportError.

    Example:
        >>> producer = MultipartBodyProducer(source, max_bytes=10 * 1024 * 1024)
        >>> producer.start()
        >>> body = b"".join(producer)
        >>> producer.close()
    """

    def __init__(self, source: Source, max_bytes: int = DEFAULT_MAX_BYTES,
                 stop_event: Optional[threading.Event] = None,
                 chunk_size: int = CHUNK_SIZE, queue_chunks: int = QUEUE_CHUNKS,
                 deadline: Optional[float] = None):
        self.source = source
        self.max_bytes = max_bytes
        self.stop_event = stop_event
        self.deadline = deadline  # time.monotonic() value, None for no deadline
        self.chunk_size = chunk_size
        self.filename = source.filename or DEFAULT_FILENAME
        self.boundary = choose_boundary()
        self.bytes_read = 0
        self.error: Optional[BaseException] = None

        self._queue: "queue.Queue" = queue.Queue(maxsize=queue_chunks)
        self._aborted = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def content_type(self) -> str:
        return f"multipart/form-data; boundary={self.boundary}"

    def start(self):
        """Start the producer thread."""
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._produce,
            name=f"multipart-{self.source.id}",
            daemon=True,
        )
        self._thread.start()

    def close(self):
        """
        Stop the producer and wait briefly for it to exit.

        Safe to call multiple times and before start().
        """
        self._aborted.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=PRODUCER_JOIN_SECONDS)
            if self._thread.is_alive():
                logger.warning(f"Multipart producer for {self.source.id} did not exit in time")

    def __iter__(self):
        while True:
            try:
                item = self._queue.get(timeout=QUEUE_POLL_SECONDS)
            except queue.Empty:
                reason = self._abort_reason()
                if reason:
                    self.close()
                    raise TransportError(f"{reason} while streaming the request body")
                continue

            if item is _END_OF_BODY:
                return
            if isinstance(item, TransportError):
                raise item
            if isinstance(item, BaseException):
                raise TransportError(f"failed to produce multipart body: {item}") from item
            yield item

    def _abort_reason(self) -> str:
        return abort_reason(self.deadline, self.stop_event)

    def _preamble(self) -> bytes:
        field = RequestField(name="file", data=b"", filename=self.filename)
        field.make_multipart(content_type=self.source.type or None)
        return f"--{self.boundary}\r\n".encode("utf-8") + field.render_headers().encode("utf-8")

    def _epilogue(self) -> bytes:
        return f"\r\n--{self.boundary}--\r\n".encode("utf-8")

    def _put(self, item):
        while not self._aborted.is_set():
            try:
                self._queue.put(item, timeout=QUEUE_POLL_SECONDS)
                return
            except queue.Full:
                continue
        raise _ProducerAborted()

    def _produce(self):
        try:
            self._put(self._preamble())

            reader = LimitedReader(self.source.contents, self.max_bytes)
            while True:
                reason = self._abort_reason()
                if reason:
                    raise TransportError(f"{reason} while streaming the request body")
                chunk = reader.read(self.chunk_size)
                if not chunk:
                    break
                self.bytes_read += len(chunk)
                self._put(chunk)

            self._put(self._epilogue())
            self._put(_END_OF_BODY)
        except _ProducerAborted:
            logger.debug(f"Multipart producer for {self.source.id} aborted by consumer")
        except Exception as e:
            self.error = e
            try:
                self._put(e)
            except _ProducerAborted:
                logger.debug(f"Multipart producer error after consumer exit: {e}")


class KeepAliveAdapter(HTTPAdapter):
    """HTTPAdapter whose connections (direct and via proxy) use TCP keep-alive."""

    def __init__(self, keepalive_seconds: int = KEEPALIVE_SECONDS, **kwargs):
        self.socket_options = list(HTTPConnection.default_socket_options)
        self.socket_options.append((socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1))
        if hasattr(socket, "TCP_KEEPIDLE"):
            self.socket_options.append((socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, keepalive_seconds))
        if hasattr(socket, "TCP_KEEPINTVL"):
            self.socket_options.append((socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, keepalive_seconds))
        super().__init__(**kwargs)

    def init_poolmanager(self, *args, **kwargs):
        kwargs["socket_options"] = self.socket_options
        super().init_poolmanager(*args, **kwargs)

    def proxy_manager_for(self, proxy, **proxy_kwargs):
        proxy_kwargs["socket_options"] = self.socket_options
        return super().proxy_manager_for(proxy, **proxy_kwargs)


class UploadClient:
    """
    Sends archives to the ingress endpoint.

    Features:
    - Fresh session and connection per attempt (Connection: close)
    - Streaming multipart body capped at max_bytes
    - Response classification into AuthorizationError, BadRequestError,
      UnexpectedStatusError and TransportError
    - Request counter keyed by (client, status code), '0' for no response

    Example:
        >>> client = UploadClient(decorator, ProxyResolver(config), RequestCounter())
        >>> with open('/var/lib/reports/insights-1.tar.gz', 'rb') as f:
        ...     client.send(endpoint, Source('1', 'application/gzip', f, 'insights-1.tar.gz'))
    """

    def __init__(self, decorator, proxy_resolver, metrics: RequestCounter = None,
                 metrics_name: str = DEFAULT_METRICS_NAME,
                 max_bytes: int = DEFAULT_MAX_BYTES, cert_path: str = ""):
        """
        Initialize upload client.

        Args:
            decorator: RequestDecorator setting Content-Type, User-Agent, Authorization
            proxy_resolver: ProxyResolver consulted per attempt
            metrics: Request counter (default: a private in-memory counter)
            metrics_name: Client label for the request counter
            max_bytes: Maximum payload bytes sent per upload
            cert_path: Trusted CA bundle (PEM); empty or missing means system trust
        """
        self.decorator = decorator
        self.proxy_resolver = proxy_resolver
        self.metrics = metrics if metrics is not None else RequestCounter()
        self.metrics_name = metrics_name
        self.max_bytes = max_bytes
        self.cert_path = cert_path

    def send(self, endpoint: str, source: Source, timeout: Optional[float] = None,
             stop_event: Optional[threading.Event] = None):
        """
        Upload one source.

        Args:
            endpoint: Ingress URL
            source: Payload to send (its stream is not closed here)
            timeout: Remaining time budget in seconds (None = no deadline). Bounds the
                whole attempt, including reading the response body
            stop_event: Aborts the attempt when set

        Raises:
            AuthorizationError: 401 or 403
            BadRequestError: 400
            UnexpectedStatusError: Any other non-2xx status
            TransportError: No response was obtained, or the deadline passed or
                stop was requested before the response was read
            TransientAvailabilityError: Cluster ID not available (nothing sent)
            InvalidCredentialError: Malformed token (nothing sent)
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        producer = MultipartBodyProducer(source, self.max_bytes, stop_event=stop_event, deadline=deadline)
        session = self._new_session()

        try:
            try:
                request = session.prepare_request(
                    requests.Request("POST", endpoint, data=producer)
                )
            except requests.RequestException as e:
                raise self._transport_failure(e)

            self.decorator.update_headers(request, producer.content_type)

            try:
                proxies = self.proxy_resolver.proxies_for_url(endpoint)
                verify = self._trusted_ca_bundle()
                timeouts = self._timeouts(None if deadline is None else deadline - time.monotonic())
                producer.start()
                logger.debug(f"Uploading {source.type} to {endpoint}")
                response = session.send(
                    request,
                    proxies=proxies,
                    timeout=timeouts,
                    verify=verify,
                    stream=True,
                    allow_redirects=False,
                )
            except (requests.RequestException, URLLib3HTTPError, TransportError, ProxyConfigError, OSError) as e:
                raise self._transport_failure(e)

            with ResponseWatchdog(response.raw, deadline, stop_event) as watchdog:
                try:
                    self._check_response(endpoint, response, watchdog)
                finally:
                    self._close_response(response, watchdog)
                watchdog.check()

            request_id = response.headers.get(REQUEST_ID_HEADER, "")
            if request_id:
                logger.info(
                    f"Successfully reported id={source.id} {REQUEST_ID_HEADER}={request_id}, "
                    f"wrote={producer.bytes_read}"
                )
            else:
                logger.debug(f"Successfully reported id={source.id}, wrote={producer.bytes_read}")
        finally:
            producer.close()
            session.close()

    def _new_session(self) -> requests.Session:
        session = requests.Session()
        session.trust_env = False  # proxies come from ProxyResolver only
        session.headers["Connection"] = "close"
        adapter = KeepAliveAdapter()
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def _timeouts(self, timeout: Optional[float]):
        if timeout is None:
            return (DIAL_TIMEOUT_SECONDS, None)
        if timeout <= 0:
            raise TransportError("upload deadline exceeded before the request was sent")
        return (min(DIAL_TIMEOUT_SECONDS, timeout), timeout)

    def _transport_failure(self, error: BaseException) -> TransportError:
        logger.debug(f"Unable to send request: {error}")
        self.metrics.inc(self.metrics_name, "0")
        if isinstance(error, TransportError):
            return error
        return TransportError(f"unable to build request to connect to ingress server: {error}")

    def _trusted_ca_bundle(self):
        """
        Resolve the requests `verify` argument for this attempt.

        Returns:
            str or bool: Path to a valid CA bundle, or True for system trust
        """
        if not self.cert_path:
            return True

        path = Path(self.cert_path)
        try:
            if not path.is_file() or path.stat().st_size == 0:
                logger.debug(f"No trusted CA bundle at {path}, using system trust store")
                return True
            ssl.create_default_context().load_verify_locations(cafile=str(path))
        except OSError as e:
            error = TransportConfigError(f"failed to load trusted CA bundle {path}: {e}")
            logger.error(f"{error}; using system trust store")
            return True

        return str(path)

    def _check_response(self, endpoint: str, response, watchdog: Optional[ResponseWatchdog] = None):
        status = response.status_code
        request_id = response.headers.get(REQUEST_ID_HEADER, "")
        self.metrics.inc(self.metrics_name, str(status))

        if status == 401:
            logger.info(f"Ingress server {endpoint} returned 401, {REQUEST_ID_HEADER}={request_id}")
            body = self._response_body(response, watchdog)
            raise AuthorizationError(
                f"account is not enabled for remote support or your token has expired: {body}",
                status_code=status, request_id=request_id, body=body,
            )

        if status == 403:
            logger.info(f"Ingress server {endpoint} returned 403, {REQUEST_ID_HEADER}={request_id}")
            body = self._response_body(response, watchdog)
            raise AuthorizationError(
                "account is not enabled for remote support",
                status_code=status, request_id=request_id, body=body,
            )

        if status == 400:
            body = self._response_body(response, watchdog)
            raise BadRequestError(
                f"ingress server bad request: {endpoint} (request={request_id}): {body}",
                status_code=status, request_id=request_id, body=body,
            )

        if status < 200 or status >= 300:
            body = self._response_body(response, watchdog)
            raise UnexpectedStatusError(
                f"ingress server reported unexpected error code: {status} (request={request_id}): {body}",
                status_code=status, request_id=request_id, body=body,
            )

    def _response_body(self, response, watchdog: Optional[ResponseWatchdog] = None) -> str:
        """
        First RESPONSE_BODY_LOG_LEN bytes of the body, decoded leniently.

        Raises:
            TransportError: If the watchdog shut the response down while reading
        """
        try:
            data = response.raw.read(RESPONSE_BODY_LOG_LEN, decode_content=True) or b""
        except (URLLib3HTTPError, OSError) as e:
            if watchdog is not None:
                watchdog.check()
            logger.warning(f"Failed to read response body: {e}")
            return ""
        if watchdog is not None:
            watchdog.check()
        return data[:RESPONSE_BODY_LOG_LEN].decode("utf-8", errors="replace")

    def _close_response(self, response, watchdog: Optional[ResponseWatchdog] = None):
        """Drain and close the response. Stops early once the watchdog has tripped."""
        try:
            while not (watchdog is not None and watchdog.tripped) and response.raw.read(CHUNK_SIZE):
                pass
        except (URLLib3HTTPError, OSError) as e:
            if watchdog is None or not watchdog.tripped:
                logger.warning(f"Error draining response body: {e}")

        try:
            response.close()
        except (URLLib3HTTPError, OSError) as e:
            logger.warning(f"Failed to close response body: {e}")
