"""Reachability probes for managed DNS records.

A probe requests ``https://<hostname>`` and then ``http://<hostname>`` and
classifies the outcome. Any response below 500 counts as healthy: the record
resolves and something is answering. 401 challenges are handled separately
(see ``HealthProber.probe``).

Probes never raise for network failures. Every outcome is returned as a
``ProbeResult`` so a batch of probes can be reported on as a whole.
"""

from __future__ import annotations

import concurrent.futures
import logging
import socket
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

import requests
from requests.auth import HTTPBasicAuth

from homelab_proxy.observer import HealthObserver

logger = logging.getLogger(__name__)

VERSION = "1.0.0"
USER_AGENT = f"Homelab-Proxy-Helper/{VERSION}"
MAX_REDIRECTS = 5
DEFAULT_TIMEOUT_MS = 5000
DEFAULT_CONCURRENCY = 5

# =============================================================================
# Data Classes
# =============================================================================


class Protocol(Enum):
    """Transport a healthy probe succeeded over."""

    HTTPS = "https"
    HTTP = "http"


class ErrorKind(Enum):
    """Why a hostname was classified as stale."""

    CONNECTION_REFUSED = "connection_refused"
    CONNECTION_RESET = "connection_reset"
    DNS_FAILURE = "dns_failure"
    TIMEOUT = "timeout"
    HTTP_SERVER_ERROR = "http_server_error"
    AUTH_REQUIRED = "auth_required"
    AUTH_FAILED = "auth_failed"
    UNKNOWN = "unknown"


_ERROR_DESCRIPTIONS = {
    ErrorKind.CONNECTION_REFUSED: "Connection refused",
    ErrorKind.CONNECTION_RESET: "Connection reset",
    ErrorKind.DNS_FAILURE: "DNS resolution failed",
    ErrorKind.TIMEOUT: "Connection timeout",
    ErrorKind.AUTH_REQUIRED: "Authentication required",
}


@dataclass(frozen=True)
class ProbeError:
    """Classified failure of a probe.

    ``status_code`` is only set for HTTP_SERVER_ERROR, ``message`` for
    AUTH_FAILED and UNKNOWN.
    """

    kind: ErrorKind
    status_code: Optional[int] = None
    message: str = ""

    def describe(self) -> str:
        """Human-readable reason, as shown in reports and prompts."""
        if self.kind == ErrorKind.HTTP_SERVER_ERROR:
            return f"HTTP {self.status_code}"
        if self.kind == ErrorKind.AUTH_FAILED:
            return f"Authentication failed ({self.message})" if self.message else "Authentication failed"
        if self.kind == ErrorKind.UNKNOWN:
            return self.message or "Unknown error"
        return _ERROR_DESCRIPTIONS[self.kind]

    def __str__(self) -> str:
        return self.describe()


@dataclass(frozen=True)
class Credentials:
    """HTTP basic-auth credentials used to answer a 401 challenge."""

    username: str
    password: str

    def as_auth(self) -> HTTPBasicAuth:
        return HTTPBasicAuth(self.username, self.password)

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password='***')"


# Asked for credentials when a probe hits an unresolved 401. Returns None when
# the user declines.
CredentialProvider = Callable[[str], Optional[Credentials]]


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of checking one hostname."""

    hostname: str
    is_healthy: bool
    response_time_ms: int
    timestamp: datetime
    status_code: Optional[int] = None
    error: Optional[ProbeError] = None
    protocol: Optional[Protocol] = None
    auth_attempted: bool = False

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        return self.error.kind if self.error else None

    @property
    def reason(self) -> str:
        """Status line for display: the error for stale hosts, the code otherwise."""
        if self.error:
            return self.error.describe()
        return f"HTTP {self.status_code}"


# =============================================================================
# Error Classification
# =============================================================================

_DNS_FAILURE_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "failed to resolve",
    "temporary failure in name resolution",
    "getaddrinfo failed",
    "no address associated with hostname",
)


def _iter_exception_chain(exc: BaseException):
    """Yield ``exc`` and every exception nested inside it.

    ``requests`` wraps urllib3 errors, which in turn wrap socket errors, in
    ``args``, ``reason``, ``__cause__`` and ``__context__``.
    """
    seen = set()
    stack = [exc]
    while stack:
        current = stack.pop()
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        nested = [getattr(current, "reason", None), current.__cause__, current.__context__]
        nested.extend(arg for arg in getattr(current, "args", ()) if isinstance(arg, BaseException))
        stack.extend(n for n in nested if isinstance(n, BaseException))


def classify_exception(exc: BaseException) -> ProbeError:
    """Map a transport-level exception to a ``ProbeError``."""
    if isinstance(exc, requests.exceptions.Timeout):
        return ProbeError(ErrorKind.TIMEOUT)

    chain = list(_iter_exception_chain(exc))
    for error in chain:
        if isinstance(error, ConnectionRefusedError):
            return ProbeError(ErrorKind.CONNECTION_REFUSED)
        if isinstance(error, ConnectionResetError):
            return ProbeError(ErrorKind.CONNECTION_RESET)
        if isinstance(error, socket.gaierror):
            return ProbeError(ErrorKind.DNS_FAILURE)
        if isinstance(error, (socket.timeout, TimeoutError, ConnectionAbortedError)):
            return ProbeError(ErrorKind.TIMEOUT)
        if type(error).__name__ == "NameResolutionError":
            return ProbeError(ErrorKind.DNS_FAILURE)

    text = " ".join(str(error) for error in chain).lower()
    if any(marker in text for marker in _DNS_FAILURE_MARKERS):
        return ProbeError(ErrorKind.DNS_FAILURE)
    if "connection refused" in text:
        return ProbeError(ErrorKind.CONNECTION_REFUSED)
    if "connection reset" in text:
        return ProbeError(ErrorKind.CONNECTION_RESET)

    return ProbeError(ErrorKind.UNKNOWN, message=str(exc) or type(exc).__name__)


# =============================================================================
# Prober
# =============================================================================


class HealthProber:
    """Probe a single hostname over https and then http."""

    def __init__(
        self,
        session_factory: Callable[[], requests.Session] = requests.Session,
        user_agent: str = USER_AGENT,
        max_redirects: int = MAX_REDIRECTS,
    ):
        self._session_factory = session_factory
        self._user_agent = user_agent
        self._max_redirects = max_redirects

    @staticmethod
    def candidates(hostname: str) -> List[Tuple[Protocol, str]]:
        return [
            (Protocol.HTTPS, f"https://{hostname}"),
            (Protocol.HTTP, f"http://{hostname}"),
        ]

    def _new_session(self) -> requests.Session:
        session = self._session_factory()
        session.max_redirects = self._max_redirects
        session.headers.update({"User-Agent": self._user_agent})
        return session

    def _get_status(
        self,
        session: requests.Session,
        url: str,
        timeout_ms: int,
        credentials: Optional[Credentials],
    ) -> int:
        started = time.monotonic()
        response = session.get(
            url,
            timeout=timeout_ms / 1000.0,
            auth=credentials.as_auth() if credentials else None,
            allow_redirects=True,
            stream=True,
        )
        try:
            elapsed_ms = (time.monotonic() - started) * 1000
            if elapsed_ms > timeout_ms:
                raise requests.exceptions.Timeout(
                    f"{url} took {int(elapsed_ms)}ms, limit is {timeout_ms}ms"
                )
            return response.status_code
        finally:
            response.close()

    def probe(
        self,
        hostname: str,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        saved_credentials: Optional[Credentials] = None,
        auth_provider: Optional[CredentialProvider] = None,
    ) -> ProbeResult:
        """Check one hostname and classify the outcome.

        Candidates are tried in order (https, http):

        - status < 500 (other than 401) is healthy and stops the probe.
        - status >= 500 stops the probe as HTTP_SERVER_ERROR.
        - 401 with saved credentials attached stops the probe as AUTH_FAILED.
        - 401 without saved credentials asks ``auth_provider`` and retries the
          same URL with what it returns. After one retry has been sent, later
          401s are not offered to the provider. Otherwise it is
          recorded as AUTH_REQUIRED and the next candidate is tried.
        - transport errors are recorded and the next candidate is tried.

        When every candidate fails the last recorded error is reported.
        """
        timestamp = datetime.now(timezone.utc)
        started = time.monotonic()

        def elapsed_ms() -> int:
            return max(0, int((time.monotonic() - started) * 1000))

        auth_attempted = False
        challenge_handled = False
        last_error: Optional[ProbeError] = None
        last_status: Optional[int] = None

        def unhealthy(error: ProbeError, status_code: Optional[int]) -> ProbeResult:
            return ProbeResult(
                hostname=hostname,
                is_healthy=False,
                response_time_ms=elapsed_ms(),
                timestamp=timestamp,
                status_code=status_code,
                error=error,
                auth_attempted=auth_attempted,
            )

        def healthy(protocol: Protocol, status_code: int) -> ProbeResult:
            return ProbeResult(
                hostname=hostname,
                is_healthy=True,
                response_time_ms=elapsed_ms(),
                timestamp=timestamp,
                status_code=status_code,
                protocol=protocol,
                auth_attempted=auth_attempted,
            )

        session = self._new_session()
        try:
            for protocol, url in self.candidates(hostname):
                try:
                    status = self._get_status(session, url, timeout_ms, saved_credentials)
                except requests.exceptions.RequestException as e:
                    logger.debug(f"{url} failed: {e}")
                    last_error = classify_exception(e)
                    continue

                last_status = status
                if status >= 500:
                    return unhealthy(ProbeError(ErrorKind.HTTP_SERVER_ERROR, status_code=status), status)

                if status != 401:
                    return healthy(protocol, status)

                if challenge_handled:
                    last_error = ProbeError(ErrorKind.AUTH_REQUIRED)
                    continue

                if saved_credentials is not None:
                    auth_attempted = True
                    return unhealthy(
                        ProbeError(ErrorKind.AUTH_FAILED, message="saved credentials invalid"), 401
                    )

                if auth_provider is None:
                    last_error = ProbeError(ErrorKind.AUTH_REQUIRED)
                    continue

                auth_attempted = True
                credentials = auth_provider(hostname)
                if credentials is None:
                    logger.debug(f"Credentials declined for {hostname}")
                    last_error = ProbeError(ErrorKind.AUTH_REQUIRED)
                    continue

                challenge_handled = True
                try:
                    status = self._get_status(session, url, timeout_ms, credentials)
                except requests.exceptions.RequestException as e:
                    logger.debug(f"{url} failed on authenticated retry: {e}")
                    last_error = classify_exception(e)
                    continue

                last_status = status
                if status >= 500:
                    last_error = ProbeError(ErrorKind.HTTP_SERVER_ERROR, status_code=status)
                elif status == 401:
                    last_error = ProbeError(ErrorKind.AUTH_REQUIRED)
                else:
                    return healthy(protocol, status)
        except Exception as e:
            logger.debug(f"Probe of {hostname} failed unexpectedly: {e}", exc_info=True)
            return unhealthy(ProbeError(ErrorKind.UNKNOWN, message=str(e) or type(e).__name__), last_status)
        finally:
            session.close()

        if last_error is None:
            last_error = ProbeError(ErrorKind.UNKNOWN, message="no candidate URL could be checked")
        status_code = last_status if last_error.kind in (
            ErrorKind.HTTP_SERVER_ERROR,
            ErrorKind.AUTH_REQUIRED,
        ) else None
        return unhealthy(last_error, status_code)


# =============================================================================
# Batch Scheduler
# =============================================================================


class SerializedCredentialProvider:
    """Wrap a credential provider so only one prompt runs at a time."""

    def __init__(self, provider: CredentialProvider):
        self._provider = provider
        self._lock = threading.Lock()

    def __call__(self, hostname: str) -> Optional[Credentials]:
        with self._lock:
            return self._provider(hostname)


def probe_all(
    hostnames: Sequence[str],
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    concurrency: int = DEFAULT_CONCURRENCY,
    saved_credentials: Optional[Credentials] = None,
    auth_provider: Optional[CredentialProvider] = None,
    *,
    prober: Optional[HealthProber] = None,
    observer: Optional[HealthObserver] = None,
) -> List[ProbeResult]:
    """Probe every hostname, ``concurrency`` at a time.

    Hostnames are split into consecutive windows. All probes in a window run
    concurrently and the window finishes before the next one starts. The
    returned list lines up with ``hostnames``: result i belongs to hostname i.
    """
    if concurrency < 1:
        raise ValueError(f"concurrency must be at least 1, got {concurrency}")

    prober = prober or HealthProber()
    observer = observer or HealthObserver()
    if auth_provider is not None and not isinstance(auth_provider, SerializedCredentialProvider):
        auth_provider = SerializedCredentialProvider(auth_provider)

    results: List[Optional[ProbeResult]] = [None] * len(hostnames)

    with concurrent.futures.ThreadPoolExecutor(max_workers=concurrency) as executor:
        for start in range(0, len(hostnames), concurrency):
            window = list(hostnames[start : start + concurrency])
            futures = {}
            for offset, hostname in enumerate(window):
                observer.probe_started(hostname)
                future = executor.submit(
                    prober.probe, hostname, timeout_ms, saved_credentials, auth_provider
                )
                futures[future] = start + offset

            for future in concurrent.futures.as_completed(futures):
                index = futures[future]
                try:
                    result = future.result()
                except Exception as e:
                    observer.batch_failed(start, window, e)
                    result = ProbeResult(
                        hostname=hostnames[index],
                        is_healthy=False,
                        response_time_ms=0,
                        timestamp=datetime.now(timezone.utc),
                        error=ProbeError(ErrorKind.UNKNOWN, message=f"probe failed: {e}"),
                    )
                results[index] = result
                observer.probe_finished(result)

    return [r for r in results if r is not None]
