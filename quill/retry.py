"""Bounded exponential-backoff retry around model-provider calls."""

import random
import time

import litellm

from .cancel import CancellationToken

MAX_ATTEMPTS = 3
BASE_DELAY = 1.0  # seconds
JITTER = 0.25

_AUTH_TYPES = (litellm.AuthenticationError, litellm.PermissionDeniedError)
_RATE_LIMIT_TYPES = (litellm.RateLimitError,)
_NETWORK_TYPES = (
    litellm.APIConnectionError,
    litellm.ServiceUnavailableError,
    litellm.InternalServerError,
    litellm.Timeout,
    ConnectionError,
    TimeoutError,
)

_AUTH_HINTS = ("401", "invalid api key", "unauthorized")
_RATE_LIMIT_HINTS = ("429", "rate limit", "too many requests")
_NETWORK_HINTS = (
    "503",
    "service unavailable",
    "network",
    "connection refused",
    "connection reset",
    "econnrefused",
    "econnreset",
    "etimedout",
    "timed out",
    "fetch failed",
    "socket hang up",
)


def classify_error(exc: BaseException) -> str:
    """Map a provider failure to auth | rate_limit | network | unknown."""
    # Order matters: litellm's rate-limit and auth errors are not connection
    # errors, but some wrappers subclass both.
    if isinstance(exc, _AUTH_TYPES):
        return "auth"
    if isinstance(exc, _RATE_LIMIT_TYPES):
        return "rate_limit"
    if isinstance(exc, _NETWORK_TYPES):
        return "network"

    lower = str(exc).lower()
    if any(h in lower for h in _AUTH_HINTS):
        return "auth"
    if any(h in lower for h in _RATE_LIMIT_HINTS):
        return "rate_limit"
    if any(h in lower for h in _NETWORK_HINTS):
        return "network"
    return "unknown"


def is_retryable(exc: BaseException) -> bool:
    return classify_error(exc) in ("rate_limit", "network")


def backoff_delay(attempt: int, base_delay: float = BASE_DELAY) -> float:
    """Nominal delay before retry number `attempt`, jittered by ±25%."""
    nominal = base_delay * 2 ** (attempt - 1)
    return nominal + nominal * JITTER * random.uniform(-1.0, 1.0)


def with_retry(
    fn,
    on_retry=None,
    token: CancellationToken | None = None,
    *,
    max_attempts: int = MAX_ATTEMPTS,
    base_delay: float = BASE_DELAY,
):
    """Call fn(), retrying transient failures with exponential backoff.

    on_retry(attempt, delay_ms, exc) fires before each wait. auth and unknown
    failures are raised on the spot. If the token fires during a wait the
    original error is raised without another attempt.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            return fn()
        except Exception as exc:
            if not is_retryable(exc) or attempt == max_attempts:
                raise
            if token is not None and token.cancelled:
                raise
            delay = backoff_delay(attempt, base_delay)
            if on_retry is not None:
                on_retry(attempt, round(delay * 1000), exc)
            if token is not None:
                if token.wait(delay):
                    raise
            else:
                time.sleep(delay)
