"""
Secure API Client for menu analysis.

This module is the only path to the network. It builds signed requests for a
single trusted inference endpoint, enforces a sliding-window rate limit,
pins the server certificate during the TLS handshake and validates responses,
failing closed on any security violation.
"""

import base64
import functools
import hashlib
import hmac
import json
import logging
import socket
import threading
import time
import uuid
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, FrozenSet, Iterable, Optional, Tuple, Union
from urllib.parse import urlsplit

import requests
from requests.adapters import HTTPAdapter
from urllib3.connection import HTTPSConnection
from urllib3.connectionpool import HTTPSConnectionPool
from urllib3.exceptions import HTTPError as Urllib3HTTPError
from urllib3.util.retry import Retry

from menuscan.models.data_models import RequestAuditEntry
from menuscan.services.cancellation import CancellationToken
from menuscan.services.errors import (
    AnalysisCancelledError, AnalysisError, AuthenticationFailedError, BadRequestError,
    CertificatePinningError, ForbiddenError, HTTPStatusError, InsecureTransportError,
    MaxRetriesExceededError, NetworkTimeoutError, NetworkUnavailableError,
    RateLimitExceededError, RemoteRateLimitedError, ResponseValidationError, ServerError,
    ServiceNotConfiguredError, UnexpectedStatusError
)


logger = logging.getLogger(__name__)

MAX_REQUEST_BYTES = 10 * 1024 * 1024
MAX_RESPONSE_BYTES = 50 * 1024 * 1024
READ_CHUNK_SIZE = 64 * 1024

CREDENTIAL_HEADER = "x-api-key"
VERSION_HEADER = "anthropic-version"
SIGNATURE_HEADER = "X-Request-Signature"
REQUIRED_HEADERS = (CREDENTIAL_HEADER, VERSION_HEADER, "Content-Type")


@dataclass
class APICredentials:
    """Secure storage for the inference credential."""
    api_key: str

    def __post_init__(self):
        if not self.api_key:
            raise ServiceNotConfiguredError("API key required for the inference endpoint")

    def get_masked_key(self) -> str:
        """Get masked version of API key for logging."""
        return mask_secret(self.api_key)


@dataclass(frozen=True)
class SignedRequest:
    """A validated, signed request ready to send."""
    method: str
    url: str
    host: str
    path: str
    body: bytes
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class TransportResponse:
    """Successful response body and status."""
    body: bytes
    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)

    def json(self) -> Any:
        return json.loads(self.body.decode("utf-8"))


class SlidingWindowRateLimiter:
    """
    At most max_requests timestamps within the trailing window.

    Pruning happens lazily on every check; there is no background timer.
    """

    def __init__(self, max_requests: int = 20, window_seconds: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self._timestamps: Deque[float] = deque()
        self._lock = threading.Lock()

    def is_limited(self) -> bool:
        with self._lock:
            self._prune(self.clock())
            return len(self._timestamps) >= self.max_requests

    def acquire(self) -> None:
        """
        Record a request, or refuse it.

        Raises:
            RateLimitExceededError: If the window is already full
        """
        with self._lock:
            now = self.clock()
            self._prune(now)
            if len(self._timestamps) >= self.max_requests:
                retry_after = self.window_seconds - (now - self._timestamps[0])
                raise RateLimitExceededError(
                    f"Rate limit of {self.max_requests} requests per "
                    f"{self.window_seconds:.0f}s reached, retry in {retry_after:.1f}s"
                )
            self._timestamps.append(now)

    def recent_count(self) -> int:
        with self._lock:
            self._prune(self.clock())
            return len(self._timestamps)

    def reset(self) -> None:
        with self._lock:
            self._timestamps.clear()

    def _prune(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.window_seconds:
            self._timestamps.popleft()


class InFlightRequest:
    """
    The connection carrying one request, so another thread can abort it.

    abort() may arrive before the pool hands out a connection, while the
    handshake is running or while the body is streaming; in every case the
    socket is shut down or the connection refuses to proceed.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._connection = None
        self.aborted = False

    def attach(self, connection) -> None:
        with self._lock:
            self._connection = connection
            aborted = self.aborted
        if aborted:
            _shutdown(connection)

    def abort(self) -> None:
        with self._lock:
            self.aborted = True
            connection = self._connection
        if connection is not None:
            _shutdown(connection)


def _shutdown(connection) -> None:
    sock = getattr(connection, "sock", None)
    if sock is None:
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError as e:
        logger.debug(f"Socket already closed during abort: {e}")


class PinnedHTTPSConnection(HTTPSConnection):
    """HTTPS connection that checks the peer certificate before any request bytes are written."""

    pinned_certificates: FrozenSet[str] = frozenset()
    in_flight: Optional[InFlightRequest] = None

    def connect(self) -> None:
        super().connect()

        if self.in_flight is not None and self.in_flight.aborted:
            self.close()
            raise AnalysisCancelledError("Request aborted before it was sent")

        if not self.pinned_certificates:
            return
        certificate = peer_certificate(self.sock)
        if certificate is None:
            self.close()
            raise CertificatePinningError("No peer certificate available for pinning")
        if certificate_fingerprint(certificate) not in self.pinned_certificates:
            self.close()
            logger.error("Certificate pinning failed: presented certificate is not pinned")
            raise CertificatePinningError("Server certificate does not match pinned set")


class PinnedHTTPSConnectionPool(HTTPSConnectionPool):
    ConnectionCls = PinnedHTTPSConnection

    def __init__(self, *args, adapter: "SecureHTTPAdapter", **kwargs):
        self.adapter = adapter
        super().__init__(*args, **kwargs)

    def _new_conn(self):
        conn = super()._new_conn()
        conn.pinned_certificates = self.adapter.pinned_certificates
        return conn

    def _get_conn(self, timeout=None):
        conn = super()._get_conn(timeout)
        self.adapter.attach(conn)
        return conn


class SecureHTTPAdapter(HTTPAdapter):
    """
    requests adapter that pins certificates during the TLS handshake.

    Every https pool it creates, proxied ones included, hands out
    PinnedHTTPSConnection objects. A connection taken from the pool is bound
    to the InFlightRequest the calling thread registered with track().
    """

    def __init__(self, pinned_certificates: Iterable[str] = (), **kwargs):
        self.pinned_certificates: FrozenSet[str] = frozenset(pinned_certificates)
        self._local = threading.local()
        super().__init__(**kwargs)

    def init_poolmanager(self, *args, **kwargs):
        super().init_poolmanager(*args, **kwargs)
        self._install_pool_class(self.poolmanager)

    def proxy_manager_for(self, proxy, **proxy_kwargs):
        manager = super().proxy_manager_for(proxy, **proxy_kwargs)
        self._install_pool_class(manager)
        return manager

    def _install_pool_class(self, manager) -> None:
        manager.pool_classes_by_scheme = {
            **manager.pool_classes_by_scheme,
            "https": functools.partial(PinnedHTTPSConnectionPool, adapter=self),
        }

    @contextmanager
    def track(self, in_flight: InFlightRequest):
        self._local.in_flight = in_flight
        try:
            yield in_flight
        finally:
            self._local.in_flight = None

    def attach(self, connection) -> None:
        in_flight = getattr(self._local, "in_flight", None)
        connection.in_flight = in_flight
        if in_flight is not None:
            in_flight.attach(connection)


class SecureAPIClient:
    """
    Secure API client with signing, rate limiting and certificate pinning.

    Every rule fails closed. An empty pin set disables pinning (development
    only); TLS verification itself is always on.
    """

    def __init__(self,
                 trusted_host: str = "api.anthropic.com",
                 allowed_path_prefixes: Iterable[str] = ("/v1/",),
                 signing_key: Union[str, bytes] = b"",
                 pinned_certificates: Iterable[str] = (),
                 api_version: str = "2023-06-01",
                 rate_limiter: Optional[SlidingWindowRateLimiter] = None,
                 timeout: float = 30.0,
                 max_retries: int = 2,
                 backoff_factor: float = 1.0,
                 session: Optional[requests.Session] = None):
        """
        Initialize the secure API client.

        Args:
            trusted_host: The only host requests may target
            allowed_path_prefixes: Paths must start with one of these
            signing_key: HMAC key for the request signature header
            pinned_certificates: "sha256/<base64>" hashes of accepted certificates
            api_version: Value of the protocol-version header
            rate_limiter: Sliding-window limiter (20 per 60s by default)
            timeout: Per-request socket timeout in seconds
            max_retries: Retries for recoverable failures
            backoff_factor: Delay before retry n is backoff_factor * 2**n seconds
            session: Optional pre-built requests session
        """
        self.trusted_host = trusted_host.lower()
        self.allowed_path_prefixes: Tuple[str, ...] = tuple(allowed_path_prefixes)
        self.signing_key = signing_key.encode("utf-8") if isinstance(signing_key, str) else signing_key
        self.pinned_certificates: FrozenSet[str] = frozenset(p.strip() for p in pinned_certificates if p.strip())
        self.api_version = api_version
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter()
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_factor = backoff_factor
        self.request_log: Deque[RequestAuditEntry] = deque(maxlen=100)

        self.session = session or requests.Session()
        self._configure_session()

        if not self.signing_key:
            raise ServiceNotConfiguredError("A request signing key is required")
        if not self.pinned_certificates:
            logger.warning("Certificate pinning disabled: no pinned certificates configured")

        logger.info(f"Secure API client initialized for {self.trusted_host}")

    @classmethod
    def from_config(cls, config, session: Optional[requests.Session] = None) -> "SecureAPIClient":
        """Build a client from a menuscan.config settings class."""
        return cls(
            trusted_host=config.MENU_API_HOST,
            allowed_path_prefixes=(config.MENU_API_PATH_PREFIX,),
            signing_key=config.MENU_SIGNING_KEY,
            pinned_certificates=config.MENU_PINNED_CERTS,
            api_version=config.MENU_API_VERSION,
            rate_limiter=SlidingWindowRateLimiter(config.MENU_RATE_LIMIT, 60.0),
            timeout=config.REQUEST_TIMEOUT,
            session=session,
        )

    def _configure_session(self) -> None:
        """Configure HTTP session. Retries are handled by send(), not urllib3."""
        self.adapter = SecureHTTPAdapter(
            self.pinned_certificates,
            max_retries=Retry(total=0, redirect=False, raise_on_status=False),
        )
        self.session.mount("https://", self.adapter)

        self.session.headers.update({
            'User-Agent': 'MenuScan/1.0',
            'Accept': 'application/json',
        })

        self.session.verify = True

    # Request construction

    def build_request(self, url: str, method: str, body: Union[bytes, str, Dict[str, Any]],
                      credential: str) -> SignedRequest:
        """
        Validate and sign an outbound request.

        Args:
            url: Full https URL on the trusted host
            method: HTTP method
            body: JSON-serializable dict, or already-encoded bytes/str
            credential: API key for the credential header

        Returns:
            SignedRequest ready for send()

        Raises:
            ServiceNotConfiguredError: If the credential is missing
            InsecureTransportError: If scheme, host, path, headers or size are rejected
            RateLimitExceededError: If the rate window is already full
        """
        method = method.upper()
        parts = urlsplit(url)

        if parts.scheme != "https":
            raise InsecureTransportError(f"Refusing non-HTTPS scheme: {parts.scheme or 'none'}")
        host = (parts.hostname or "").lower()
        if host != self.trusted_host or parts.port not in (None, 443):
            raise InsecureTransportError(f"Untrusted host: {host or 'none'}")
        if parts.username or parts.password:
            raise InsecureTransportError("Credentials in URL are not allowed")
        path = parts.path or "/"
        if ".." in path.split("/") or not any(path.startswith(p) for p in self.allowed_path_prefixes):
            raise InsecureTransportError(f"Path not allowed: {path}")

        if not credential:
            raise ServiceNotConfiguredError("Missing API credential")
        credentials = APICredentials(credential)

        body_bytes = self._encode_body(body)
        if len(body_bytes) > MAX_REQUEST_BYTES:
            raise InsecureTransportError(
                f"Request body of {len(body_bytes)} bytes exceeds {MAX_REQUEST_BYTES} byte limit"
            )

        if self.rate_limiter.is_limited():
            raise RateLimitExceededError("Rate limit reached before request was built")

        headers = {
            "Content-Type": "application/json",
            CREDENTIAL_HEADER: credentials.api_key,
            VERSION_HEADER: self.api_version,
            "Cache-Control": "no-store, no-cache",
            "Pragma": "no-cache",
            "X-Request-ID": uuid.uuid4().hex,
            SIGNATURE_HEADER: self.sign(method, path, body_bytes),
        }
        missing = [name for name in REQUIRED_HEADERS if not headers.get(name)]
        if missing:
            raise InsecureTransportError(f"Missing required headers: {', '.join(missing)}")

        logger.debug(f"Built {method} request to {host}{path} "
                     f"({len(body_bytes)} bytes, key {credentials.get_masked_key()})")
        return SignedRequest(method=method, url=url, host=host, path=path,
                             body=body_bytes, headers=headers)

    def sign(self, method: str, path: str, body: bytes) -> str:
        """HMAC-SHA256 over method, path and the body's SHA-256, hex encoded."""
        body_hash = hashlib.sha256(body).hexdigest()
        message = f"{method.upper()}\n{path}\n{body_hash}".encode("utf-8")
        return hmac.new(self.signing_key, message, hashlib.sha256).hexdigest()

    def verify_signature(self, request: SignedRequest) -> bool:
        expected = self.sign(request.method, request.path, request.body)
        return hmac.compare_digest(expected, request.headers.get(SIGNATURE_HEADER, ""))

    # Sending

    def send(self, request: SignedRequest,
             cancel_token: Optional[CancellationToken] = None,
             max_retries: Optional[int] = None,
             deadline: Optional[float] = None) -> TransportResponse:
        """
        Send a signed request, retrying recoverable failures with backoff.

        Args:
            request: Output of build_request()
            cancel_token: Cancelling shuts down the connection carrying the call
            max_retries: Overrides the client default for this call
            deadline: time.monotonic() value after which no attempt may run;
                each attempt's socket timeout is capped at the time remaining

        Returns:
            TransportResponse for a 2xx reply

        Raises:
            SecurityError: Pinning or response validation failed (never retried)
            RateLimitExceededError: Local limiter refused the attempt
            HTTPStatusError: Non-recoverable status
            NetworkTimeoutError: The deadline passed before an attempt could start
            MaxRetriesExceededError: Recoverable failures outlasted the retries
            NetworkUnavailableError: No connectivity
            AnalysisCancelledError: The token was cancelled
        """
        retries = self.max_retries if max_retries is None else max_retries
        last_error: Optional[AnalysisError] = None
        attempts = 0

        for attempt in range(retries + 1):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            timeout = self._attempt_timeout(deadline)
            attempts += 1
            try:
                return self._send_once(request, cancel_token, timeout)
            except (RemoteRateLimitedError, ServerError, NetworkTimeoutError) as e:
                last_error = e
                if attempt == retries:
                    break
                delay = self.backoff_factor * (2 ** attempt)
                if deadline is not None and time.monotonic() + delay >= deadline:
                    logger.warning(f"Recoverable failure ({e.__class__.__name__}), "
                                   f"no time left before the deadline to retry")
                    break
                logger.warning(f"Recoverable failure ({e.__class__.__name__}), "
                               f"retry {attempt + 1}/{retries} in {delay:.1f}s")
                if cancel_token is not None:
                    if cancel_token.wait(delay):
                        cancel_token.raise_if_cancelled()
                elif delay > 0:
                    time.sleep(delay)

        if attempts == 1:
            raise last_error
        raise MaxRetriesExceededError(
            f"Request failed after {attempts} attempts: {last_error}",
            attempts=attempts, cause=last_error
        ) from last_error

    def _attempt_timeout(self, deadline: Optional[float]) -> float:
        if deadline is None:
            return self.timeout
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise NetworkTimeoutError("Deadline passed before the request was sent")
        return min(self.timeout, remaining)

    def _send_once(self, request: SignedRequest,
                   cancel_token: Optional[CancellationToken],
                   timeout: float) -> TransportResponse:
        self.rate_limiter.acquire()
        audit = RequestAuditEntry(method=request.method, host=request.host, path=request.path)
        self.request_log.append(audit)
        start_time = time.time()

        in_flight = InFlightRequest()
        if cancel_token is not None:
            cancel_token.add_callback(in_flight.abort)
        try:
            try:
                with self.adapter.track(in_flight):
                    response = self.session.request(
                        method=request.method,
                        url=request.url,
                        headers=request.headers,
                        data=request.body,
                        timeout=timeout,
                        stream=True,
                        allow_redirects=False,
                    )
            except AnalysisError as e:
                audit.success, audit.error = False, e.__class__.__name__
                audit.duration = time.time() - start_time
                raise
            except requests.exceptions.RequestException as e:
                audit.duration = time.time() - start_time
                raise self._request_error(e, audit, cancel_token) from e

            audit.status_code = response.status_code
            try:
                error = error_for_status(response.status_code)
                if error is not None:
                    audit.success, audit.error = False, f"http_{response.status_code}"
                    logger.warning(f"{request.method} {request.host}{request.path} -> {response.status_code}")
                    raise error

                self._validate_content_type(response)
                body = self._read_body(response, cancel_token)
            except AnalysisError as e:
                if audit.success is None:
                    audit.success, audit.error = False, e.__class__.__name__
                raise
            finally:
                response.close()
                audit.duration = time.time() - start_time
        finally:
            if cancel_token is not None:
                cancel_token.remove_callback(in_flight.abort)

        audit.success = True
        audit.response_size = len(body)
        logger.debug(f"{request.method} {request.host}{request.path} -> "
                     f"{response.status_code} ({len(body)} bytes, {audit.duration:.2f}s)")
        return TransportResponse(body=body, status_code=response.status_code,
                                 headers=dict(response.headers))

    @staticmethod
    def _request_error(error: requests.exceptions.RequestException, audit: RequestAuditEntry,
                       cancel_token: Optional[CancellationToken]) -> AnalysisError:
        if cancel_token is not None and cancel_token.cancelled:
            audit.success, audit.error = False, "cancelled"
            return AnalysisCancelledError("Request aborted", cause=error)
        if isinstance(error, requests.exceptions.SSLError):
            audit.success, audit.error = False, "tls"
            return CertificatePinningError("TLS verification failed", cause=error)
        if isinstance(error, requests.exceptions.Timeout):
            audit.success, audit.error = False, "timeout"
            return NetworkTimeoutError("Request timed out", cause=error)
        audit.success, audit.error = False, "connection"
        return NetworkUnavailableError("Inference endpoint unreachable", cause=error)

    # Response validation

    @staticmethod
    def _validate_content_type(response: requests.Response) -> None:
        content_type = response.headers.get("Content-Type", "")
        if "application/json" not in content_type.lower():
            raise ResponseValidationError(f"Unexpected content type: {content_type or 'none'}")

    @staticmethod
    def _read_body(response: requests.Response,
                   cancel_token: Optional[CancellationToken]) -> bytes:
        declared = response.headers.get("Content-Length")
        if declared and declared.isdigit() and int(declared) > MAX_RESPONSE_BYTES:
            raise ResponseValidationError(f"Response of {declared} bytes exceeds size limit")

        chunks = []
        total = 0
        try:
            for chunk in response.iter_content(chunk_size=READ_CHUNK_SIZE):
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()
                total += len(chunk)
                if total > MAX_RESPONSE_BYTES:
                    raise ResponseValidationError("Response exceeds size limit")
                chunks.append(chunk)
        except (requests.exceptions.RequestException, Urllib3HTTPError, OSError, ValueError) as e:
            if cancel_token is not None and cancel_token.cancelled:
                raise AnalysisCancelledError("Response read aborted", cause=e) from e
            if isinstance(e, requests.exceptions.Timeout):
                raise NetworkTimeoutError("Response read timed out", cause=e) from e
            raise NetworkUnavailableError("Connection lost while reading response", cause=e) from e

        # An abort from another thread can end the stream early without an error
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        return b"".join(chunks)

    # Status and audit

    def get_security_status(self) -> Dict[str, Any]:
        """Privacy-safe summary of the client's security posture."""
        return {
            'trusted_host': self.trusted_host,
            'ssl_verification': self.session.verify,
            'certificate_pinning': 'enforced' if self.pinned_certificates else 'permissive',
            'pinned_certificate_count': len(self.pinned_certificates),
            'rate_limit_active': self.rate_limiter.is_limited(),
            'recent_requests': self.rate_limiter.recent_count(),
            'max_requests_per_window': self.rate_limiter.max_requests,
            'window_seconds': self.rate_limiter.window_seconds,
        }

    def create_audit_entry(self, operation: str) -> Dict[str, Any]:
        """Non-sensitive network audit record for an operation."""
        return {
            'operation': operation,
            'timestamp': time.time(),
            'trusted_host': self.trusted_host,
            'pinning_enabled': bool(self.pinned_certificates),
            'rate_limited': self.rate_limiter.is_limited(),
            'recent_request_count': len(self.request_log),
        }

    @staticmethod
    def _encode_body(body: Union[bytes, str, Dict[str, Any]]) -> bytes:
        if isinstance(body, bytes):
            return body
        if isinstance(body, str):
            return body.encode("utf-8")
        return json.dumps(body, separators=(",", ":")).encode("utf-8")


def error_for_status(status_code: int) -> Optional[HTTPStatusError]:
    """Map an HTTP status to its error, or None for 2xx."""
    if 200 <= status_code < 300:
        return None
    if status_code == 400:
        return BadRequestError("Bad request")
    if status_code == 401:
        return AuthenticationFailedError("Authentication failed")
    if status_code == 403:
        return ForbiddenError("Forbidden")
    if status_code == 429:
        return RemoteRateLimitedError("Rate limited by server")
    if 500 <= status_code < 600:
        return ServerError(f"Server error {status_code}", status_code=status_code)
    return UnexpectedStatusError(f"Unexpected status {status_code}", status_code=status_code)


def certificate_fingerprint(der_certificate: bytes) -> str:
    """Pin format for a DER certificate: "sha256/" + base64 of its SHA-256."""
    digest = hashlib.sha256(der_certificate).digest()
    return "sha256/" + base64.b64encode(digest).decode("ascii")


def peer_certificate(sock) -> Optional[bytes]:
    """DER certificate the peer presented on a TLS socket, or None."""
    try:
        certificate = sock.getpeercert(binary_form=True)
    except (AttributeError, ValueError, OSError):
        return None
    return certificate if isinstance(certificate, bytes) else None


def mask_secret(value: str) -> str:
    """Mask a secret for logging: first and last four characters only."""
    if not value:
        return ""
    if len(value) <= 8:
        return "*" * len(value)
    return value[:4] + "*" * (len(value) - 8) + value[-4:]
