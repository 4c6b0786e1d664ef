import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any

import httpx


logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})
_TRANSPORT_ERRORS = (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)


class CircuitOpenError(RuntimeError):
    """Raised without touching the network while a bridge endpoint is cooling down."""

    def __init__(self, endpoint: str, retry_after_s: float = 0.0) -> None:
        super().__init__(f"HTTP circuit open for {endpoint}; retry in {retry_after_s:.1f}s")
        self.endpoint = endpoint
        self.retry_after_s = retry_after_s


@dataclass(frozen=True)
class BreakerSettings:
    enabled: bool = True
    failure_threshold: int = 5
    reset_s: float = 30.0

    @classmethod
    def from_env(cls) -> "BreakerSettings":
        flag = os.getenv("SURVIVOR_HTTP_CIRCUIT_BREAKER_ENABLED", "1").strip().lower()
        return cls(
            enabled=flag in {"1", "true", "yes"},
            failure_threshold=max(1, int(os.getenv("SURVIVOR_HTTP_CIRCUIT_FAILURE_THRESHOLD", "5"))),
            reset_s=max(0.0, float(os.getenv("SURVIVOR_HTTP_CIRCUIT_RESET_SECONDS", "30"))),
        )


class CircuitBreaker:
    """Consecutive-failure counter for one endpoint.

    The loop submits from a worker thread while the main thread keeps reading, so
    every transition happens under a lock.
    """

    def __init__(self, endpoint: str) -> None:
        self.endpoint = endpoint
        self.failures = 0
        self.open_until = 0.0
        self._lock = threading.Lock()

    def check(self, settings: BreakerSettings, now: float) -> None:
        with self._lock:
            if self.open_until > now:
                raise CircuitOpenError(self.endpoint, self.open_until - now)
            if self.open_until:
                # Cool-down elapsed: let one request through with a clean slate.
                self.failures = 0
                self.open_until = 0.0

    def succeeded(self) -> None:
        with self._lock:
            self.failures = 0
            self.open_until = 0.0

    def failed(self, settings: BreakerSettings, now: float) -> None:
        with self._lock:
            self.failures += 1
            if self.failures < settings.failure_threshold or self.open_until > now:
                return
            self.open_until = now + settings.reset_s
        logger.warning(
            "HTTP circuit opened",
            extra={"endpoint": self.endpoint, "failures": self.failures, "reset_s": settings.reset_s},
        )


_BREAKERS: dict[str, CircuitBreaker] = {}
_BREAKERS_LOCK = threading.Lock()


def _breaker_for(client: httpx.Client) -> CircuitBreaker:
    endpoint = str(getattr(client, "base_url", "") or "unknown")
    with _BREAKERS_LOCK:
        breaker = _BREAKERS.get(endpoint)
        if breaker is None:
            breaker = _BREAKERS[endpoint] = CircuitBreaker(endpoint)
        return breaker


def reset_circuit_breakers() -> None:
    with _BREAKERS_LOCK:
        _BREAKERS.clear()


def _should_retry(exc: Exception) -> bool:
    if isinstance(exc, _TRANSPORT_ERRORS):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES
    return False


def is_transient_http_error(exc: Exception) -> bool:
    """Failures worth retrying later: transport errors, retryable statuses and an open circuit."""

    return isinstance(exc, CircuitOpenError) or _should_retry(exc)


def _retry_delay(exc: Exception, backoff_seconds: float, attempt_index: int) -> float:
    delay = max(0.0, backoff_seconds) * (2 ** attempt_index)
    if isinstance(exc, httpx.HTTPStatusError):
        retry_after = exc.response.headers.get("Retry-After", "")
        if retry_after.strip().isdigit():
            delay = max(delay, float(retry_after))
    return delay


def _send(client: httpx.Client, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
    response = client.request(method, path, **kwargs)
    if response.status_code in RETRYABLE_STATUS_CODES:
        raise httpx.HTTPStatusError(
            f"Bridge answered {response.status_code} for {method} {path}",
            request=response.request,
            response=response,
        )
    response.raise_for_status()
    payload = response.json()
    return payload if isinstance(payload, dict) else {"results": payload}


def request_json_with_retry(
    client: httpx.Client,
    method: str,
    path: str,
    *,
    params: dict[str, Any] | None = None,
    json_body: Any = None,
    headers: dict[str, str] | None = None,
    retries: int = 0,
    backoff_seconds: float = 0.2,
) -> dict[str, Any]:
    """Send one JSON request, retrying transient failures up to ``retries`` extra times.

    Only transient failures count against the endpoint's circuit breaker; a 4xx or a
    malformed body propagates immediately.
    """

    settings = BreakerSettings.from_env()
    breaker = _breaker_for(client) if settings.enabled else None
    attempts = max(0, int(retries)) + 1

    attempt_index = 0
    while True:
        if breaker is not None:
            breaker.check(settings, time.time())
        try:
            payload = _send(client, method, path, params=params, json=json_body, headers=headers)
        except Exception as exc:
            transient = _should_retry(exc)
            if transient and breaker is not None:
                breaker.failed(settings, time.time())
            if not transient or attempt_index >= attempts - 1:
                raise
            delay = _retry_delay(exc, backoff_seconds, attempt_index)
            logger.debug(
                "Retrying bridge request",
                extra={"method": method, "path": path, "attempt": attempt_index + 1, "delay_s": delay},
            )
            if delay > 0:
                time.sleep(delay)
            attempt_index += 1
            continue
        if breaker is not None:
            breaker.succeeded()
        return payload


def get_json_with_retry(
    client: httpx.Client,
    path: str,
    *,
    params: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    retries: int = 0,
    backoff_seconds: float = 0.2,
) -> dict[str, Any]:
    return request_json_with_retry(
        client, "GET", path, params=params, headers=headers, retries=retries, backoff_seconds=backoff_seconds
    )


def post_json(
    client: httpx.Client,
    path: str,
    payload: Any,
    *,
    headers: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Single POST attempt. State-changing calls are never replayed here."""

    return request_json_with_retry(client, "POST", path, json_body=payload, headers=headers, retries=0)
