from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

import requests.exceptions
from urllib3.exceptions import MaxRetryError, NewConnectionError

T = TypeVar("T")

logger = logging.getLogger(__name__)


class RetryableHTTPError(requests.exceptions.HTTPError):
    """An HTTP status the active policy treats as transient (throttling, gateway errors)."""


def nothing_sent(exc: BaseException) -> bool:
    """True when the request never reached the server: DNS lookup or TCP connect failed.

    urllib3's NameResolutionError is a NewConnectionError, so both land here.
    """
    if isinstance(exc, requests.exceptions.ConnectTimeout):
        return True
    if not isinstance(exc, requests.exceptions.ConnectionError):
        return False
    reason = exc.args[0] if exc.args else None
    if isinstance(reason, MaxRetryError):
        reason = reason.reason
    return isinstance(reason, NewConnectionError) or isinstance(exc.__cause__, NewConnectionError)


def maybe_delivered(exc: BaseException) -> bool:
    """True when the request may have reached SEFAZ but no answer came back.

    A failed TLS handshake happens before the body is written, so it does not count.
    """
    if isinstance(exc, requests.exceptions.ReadTimeout):
        return True
    return (
        isinstance(exc, requests.exceptions.ConnectionError)
        and not isinstance(exc, requests.exceptions.SSLError)
        and not nothing_sent(exc)
    )


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for one class of SEFAZ calls.

    ``retry_if`` narrows ``retryable_exceptions`` further: an error it
    rejects propagates on the spot.
    """

    max_attempts: int
    base_delay: float
    max_delay: float
    backoff_factor: float
    jitter: float
    retryable_exceptions: tuple[type[Exception], ...]
    retryable_status_codes: frozenset[int] = field(default_factory=frozenset)
    retry_if: Callable[[BaseException], bool] | None = None

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt *attempt* (0-indexed), jittered by +/- jitter."""
        base = min(self.base_delay * self.backoff_factor**attempt, self.max_delay)
        spread = base * self.jitter
        return max(0.0, base + random.uniform(-spread, spread))

    def should_retry(self, exc: BaseException) -> bool:
        return isinstance(exc, self.retryable_exceptions) and (self.retry_if is None or self.retry_if(exc))


# Batch submission and events: only failures where nothing reached SEFAZ.
# A reset or read timeout may mean the lote was accepted, so it is never resent.
SEFAZ_SUBMIT = RetryPolicy(
    max_attempts=3,
    base_delay=1.0,
    max_delay=10.0,
    backoff_factor=2.0,
    jitter=0.25,
    retryable_exceptions=(requests.exceptions.ConnectionError,),
    retry_if=nothing_sent,
)

# Idempotent reads: receipt polling, protocol query, service status.
SEFAZ_READ = RetryPolicy(
    max_attempts=4,
    base_delay=1.0,
    max_delay=15.0,
    backoff_factor=2.0,
    jitter=0.25,
    retryable_exceptions=(
        requests.exceptions.ConnectionError,
        requests.exceptions.Timeout,
        RetryableHTTPError,
    ),
    retryable_status_codes=frozenset({429, 502, 503, 504}),
)


def raise_for_retryable_status(resp: Any, policy: RetryPolicy, action: str) -> None:
    """Turn a status listed in *policy* into RetryableHTTPError so retry_call sees it.

    Other non-2xx answers are left for the caller to classify.
    """
    if resp.ok or resp.status_code not in policy.retryable_status_codes:
        return
    body = resp.text[:500] if resp.text else ""
    raise RetryableHTTPError(f"Erro SEFAZ {action} ({resp.status_code}): {body}", response=resp)


def retry_call(
    func: Callable[[], T],
    policy: RetryPolicy,
    *,
    sleep_func: Callable[[float], object] = time.sleep,
    action: str = "SEFAZ",
    deadline: float | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """Call *func()* until it succeeds or *policy* gives up; the last error propagates.

    Errors the policy does not retry propagate on the first try. With a
    *deadline* (a value of *clock*) the last error also propagates as soon
    as the next backoff would end past it.
    """
    attempt = 0
    while True:
        try:
            return func()
        except Exception as exc:
            if not policy.should_retry(exc):
                raise
            attempt += 1
            if attempt >= policy.max_attempts:
                logger.error("%s: %d tentativa(s) sem sucesso (%s)", action, attempt, type(exc).__name__)
                raise
            delay = policy.delay(attempt - 1)
            if deadline is not None and clock() + delay > deadline:
                logger.error("%s: prazo esgotado após %d tentativa(s) (%s)", action, attempt, type(exc).__name__)
                raise
            logger.warning(
                "%s: tentativa %d/%d falhou (%s), nova tentativa em %.1fs",
                action,
                attempt,
                policy.max_attempts,
                type(exc).__name__,
                delay,
            )
            sleep_func(delay)
