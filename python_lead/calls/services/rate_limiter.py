"""
Rate-limited retrying client for outbound dependency calls.

A ``TokenBucket`` bounds the request rate towards one external provider and is
shared by every worker thread in the process. ``RetryingClient`` acquires a
token before each attempt, retries transient failures with exponential
backoff and is the only place where an outbound failure is classified as
transient or fatal.
"""
import logging
import threading
import time
from typing import Callable, Optional, TypeVar

import httpx

from calls.services.errors import (
    AuthenticationError,
    DependencyError,
    NotYetAvailableError,
    OperationCancelled,
    PermanentDependencyError,
    RateLimitTimeout,
    RetriesExhaustedError,
    TransientDependencyError,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Set when the Celery worker begins a warm shutdown
SHUTDOWN_EVENT = threading.Event()

POLL_INTERVAL = 0.05

AUTH_STATUS_CODES = {401, 403}
NOT_YET_AVAILABLE_STATUS_CODES = {404, 410}
TRANSIENT_STATUS_CODES = {408, 425, 429}


class CancelToken:
    """
    Cancellation signal for blocking waits.

    A token is cancelled when ``cancel()`` is called, when its deadline
    passes, or when the worker is shutting down.
    """

    def __init__(self, deadline_seconds: Optional[float] = None):
        self._event = threading.Event()
        self._deadline = None if deadline_seconds is None else time.monotonic() + deadline_seconds

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set() or SHUTDOWN_EVENT.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled("operation cancelled (deadline passed or worker shutting down)")

    def timeout_for(self, timeout: Optional[float]) -> Optional[float]:
        """Shrink a per-call timeout so it never outlives the deadline."""
        remaining = self.remaining()
        if remaining is None:
            return timeout
        if timeout is None:
            return remaining
        return min(timeout, remaining)

    def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless cancelled first."""
        end = time.monotonic() + seconds
        while True:
            self.raise_if_cancelled()
            left = end - time.monotonic()
            if left <= 0:
                return
            self._event.wait(min(left, POLL_INTERVAL))


class TokenBucket:
    """
    Capacity-bounded token pool refilled to capacity on a fixed interval.

    Many threads may call ``acquire`` concurrently; a single background thread
    started with ``start()`` calls ``refill`` once per interval.
    """

    def __init__(self, capacity: int, refill_interval: float = 60.0, name: str = 'default'):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.refill_interval = refill_interval
        self.name = name
        self._tokens = capacity
        self._condition = threading.Condition()
        self._stopped = threading.Event()
        self._refill_thread: Optional[threading.Thread] = None

    @property
    def available(self) -> int:
        with self._condition:
            return self._tokens

    def refill(self) -> None:
        with self._condition:
            self._tokens = self.capacity
            self._condition.notify_all()

    def acquire(self, cancel: Optional[CancelToken] = None, timeout: Optional[float] = None) -> None:
        """
        Take one token, blocking until one is available.

        Args:
            cancel: Optional cancellation token observed while waiting
            timeout: Maximum seconds to wait (None waits indefinitely)

        Raises:
            OperationCancelled: If the cancel token fires while waiting
            RateLimitTimeout: If no token became available within ``timeout``
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._condition:
            while self._tokens == 0:
                if cancel is not None:
                    cancel.raise_if_cancelled()
                elif SHUTDOWN_EVENT.is_set():
                    raise OperationCancelled("worker shutting down")
                wait = POLL_INTERVAL
                if deadline is not None:
                    left = deadline - time.monotonic()
                    if left <= 0:
                        raise RateLimitTimeout(
                            f"no {self.name} request token available within {timeout}s",
                            dependency=self.name
                        )
                    wait = min(wait, left)
                self._condition.wait(wait)
            self._tokens -= 1

    def start(self) -> None:
        """Start the background refill thread (idempotent)."""
        if self._refill_thread is not None and self._refill_thread.is_alive():
            return
        self._stopped.clear()
        self._refill_thread = threading.Thread(
            target=self._refill_loop,
            name=f"token-refill-{self.name}",
            daemon=True
        )
        self._refill_thread.start()

    def stop(self) -> None:
        self._stopped.set()

    def _refill_loop(self) -> None:
        while not self._stopped.wait(self.refill_interval):
            self.refill()


def classify_error(exc: Exception, dependency: str) -> Optional[DependencyError]:
    """
    Map a raw failure to the pipeline's dependency error taxonomy.

    Returns None for exceptions that are not outbound-call failures; those
    propagate unchanged.
    """
    if isinstance(exc, DependencyError):
        return exc

    if isinstance(exc, httpx.HTTPStatusError):
        status_code = exc.response.status_code
        message = f"{dependency} responded {status_code}"
        if status_code in AUTH_STATUS_CODES:
            return AuthenticationError(message, dependency=dependency, status_code=status_code)
        if status_code in NOT_YET_AVAILABLE_STATUS_CODES:
            return NotYetAvailableError(message, dependency=dependency, status_code=status_code)
        if status_code in TRANSIENT_STATUS_CODES or status_code >= 500:
            return TransientDependencyError(message, dependency=dependency, status_code=status_code)
        return PermanentDependencyError(message, dependency=dependency, status_code=status_code)

    if isinstance(exc, httpx.TransportError):
        return TransientDependencyError(
            f"{dependency} transport error: {exc.__class__.__name__}: {exc}",
            dependency=dependency
        )

    return None


def json_object(response: httpx.Response, dependency: str, description: str = '') -> dict:
    """
    Decode a successful response whose body must be a JSON object.

    Raises:
        PermanentDependencyError: If the body is not JSON or not an object
    """
    label = description or dependency
    try:
        data = response.json()
    except ValueError:
        raise PermanentDependencyError(
            f"{label}: response is not JSON (content-type {response.headers.get('content-type', '')!r})",
            dependency=dependency,
            status_code=response.status_code
        )
    if not isinstance(data, dict):
        raise PermanentDependencyError(
            f"{label}: expected a JSON object, got {type(data).__name__}",
            dependency=dependency,
            status_code=response.status_code
        )
    return data


class RetryingClient:
    """
    Wraps outbound calls to one dependency with rate limiting and retries.

    Args:
        name: Dependency name used in logs and errors
        bucket: Token bucket shared by every caller of this dependency
        http: httpx client used by ``request``
        max_attempts: Total attempts per call, including the first
        backoff_base: Delay before the second attempt; doubles for each further attempt
        backoff_max: Upper bound for a single backoff delay
        max_concurrency: Optional bound on in-flight calls to this dependency
        token_timeout: Maximum seconds to wait for a token
    """

    def __init__(
        self,
        name: str,
        bucket: TokenBucket,
        http: Optional[httpx.Client] = None,
        max_attempts: int = 4,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        max_concurrency: Optional[int] = None,
        token_timeout: Optional[float] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.name = name
        self.bucket = bucket
        self.http = http
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.token_timeout = token_timeout
        self._slots = threading.BoundedSemaphore(max_concurrency) if max_concurrency else None

    def backoff_delay(self, attempt: int) -> float:
        """Delay before ``attempt`` (2-based): base, 2*base, 4*base, ..."""
        return min(self.backoff_base * (2 ** (attempt - 2)), self.backoff_max)

    def call(self, operation: Callable[[], T], description: str = '', cancel: Optional[CancelToken] = None) -> T:
        """
        Run ``operation`` under the rate limit, retrying transient failures.

        Raises:
            AuthenticationError: On 401/403, after a single attempt
            NotYetAvailableError: On 404/410, after a single attempt
            PermanentDependencyError: On other 4xx, after a single attempt
            RetriesExhaustedError: When every attempt failed transiently
            OperationCancelled: When the cancel token fires
        """
        cancel = cancel or CancelToken()
        label = description or self.name
        last_error: Optional[DependencyError] = None

        for attempt in range(1, self.max_attempts + 1):
            cancel.raise_if_cancelled()
            if attempt > 1:
                delay = self.backoff_delay(attempt)
                logger.debug(f"{label}: backing off {delay:.2f}s before attempt {attempt}/{self.max_attempts}")
                cancel.sleep(delay)

            self.bucket.acquire(cancel=cancel, timeout=self.token_timeout)

            try:
                result = self._run(operation, cancel)
            except Exception as exc:
                error = classify_error(exc, self.name)
                if error is None:
                    raise
                if not error.retryable:
                    logger.error(f"{label}: non-retryable failure on attempt {attempt}: {error}")
                    if error is exc:
                        raise
                    raise error from exc
                last_error = error
                logger.warning(f"{label}: transient failure on attempt {attempt}/{self.max_attempts}: {error}")
                continue

            if attempt > 1:
                logger.info(f"{label}: succeeded on attempt {attempt}/{self.max_attempts}")
            return result

        raise RetriesExhaustedError(
            f"{label} failed after {self.max_attempts} attempts: {last_error}",
            dependency=self.name,
            attempts=self.max_attempts,
            last_error=last_error
        ) from last_error

    def request(
        self,
        method: str,
        url: str,
        description: str = '',
        cancel: Optional[CancelToken] = None,
        timeout: Optional[float] = None,
        **kwargs
    ) -> httpx.Response:
        """
        Issue an HTTP request through ``call``. Non-2xx responses are raised
        as ``httpx.HTTPStatusError`` and classified like any other failure.
        """
        if self.http is None:
            raise RuntimeError(f"RetryingClient {self.name} has no HTTP client")
        cancel = cancel or CancelToken()

        def _send() -> httpx.Response:
            effective_timeout = cancel.timeout_for(timeout)
            if effective_timeout is not None:
                kwargs['timeout'] = effective_timeout
            response = self.http.request(method, url, **kwargs)
            response.raise_for_status()
            return response

        return self.call(_send, description=description or f"{self.name} {method} {url}", cancel=cancel)

    def _run(self, operation: Callable[[], T], cancel: CancelToken) -> T:
        if self._slots is None:
            return operation()
        while not self._slots.acquire(timeout=POLL_INTERVAL):
            cancel.raise_if_cancelled()
        try:
            return operation()
        finally:
            self._slots.release()
