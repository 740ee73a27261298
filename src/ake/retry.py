"""Exponential backoff with jitter for calls to external providers.

One ``RetryPolicy`` is built at startup and handed to every adapter that talks
to the network (LLM completions, embeddings, connector APIs). Delays are in
seconds.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_STATUSES = {408, 409, 425, 429}
TRANSIENT_MESSAGES = (
    "timeout",
    "timed out",
    "rate limit",
    "too many requests",
    "temporar",
    "econnreset",
    "connection reset",
    "eai_again",
    "enotfound",
    "name or service not known",
    "network",
)


@dataclass
class RetryInfo:
    attempt: int
    max_attempts: int
    delay: float
    error: BaseException


def get_error_status(error: BaseException) -> int | None:
    """HTTP status carried by an SDK error, if any."""
    for attr in ("status", "status_code"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def is_likely_transient_error(error: BaseException, attempt: int = 1) -> bool:
    """Default classifier: rate limits, timeouts, 5xx and dropped connections."""
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True

    status = get_error_status(error)
    if status is not None:
        if status in TRANSIENT_STATUSES or status >= 500:
            return True

    message = str(error).lower()
    if not message:
        return False
    return any(pattern in message for pattern in TRANSIENT_MESSAGES)


def parse_retry_after(value: Any) -> float | None:
    """Parse a Retry-After value (seconds or HTTP-date) into seconds from now."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else None
    if not isinstance(value, str) or not value.strip():
        return None

    raw = value.strip()
    try:
        seconds = float(raw)
    except ValueError:
        pass
    else:
        return seconds if seconds > 0 else None

    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError, IndexError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    wait = (when - datetime.now(timezone.utc)).total_seconds()
    return wait if wait > 0 else None


def _header(headers: Any, key: str) -> str | None:
    if headers is None:
        return None
    getter = getattr(headers, "get", None)
    if callable(getter):
        value = getter(key)
        if isinstance(value, str) and value.strip():
            return value
    if isinstance(headers, dict):
        for name, value in headers.items():
            if name.lower() != key.lower():
                continue
            if isinstance(value, (list, tuple)) and value:
                value = value[0]
            if isinstance(value, str) and value.strip():
                return value
    return None


def error_retry_after(error: BaseException) -> float | None:
    """Server-requested wait for an error, read from Retry-After if present."""
    headers = getattr(error, "headers", None)
    if headers is None:
        headers = getattr(getattr(error, "response", None), "headers", None)
    from_header = parse_retry_after(_header(headers, "retry-after"))
    if from_header is not None:
        return from_header
    return parse_retry_after(getattr(error, "retry_after", None))


def _with_jitter(delay: float, jitter: float) -> float:
    if jitter <= 0:
        return delay
    offset = (random.random() * 2 - 1) * jitter
    return max(0.0, delay * (1 + offset))


@dataclass
class RetryPolicy:
    """Retry an awaitable operation with exponential backoff.

    ``should_retry(error, attempt)`` decides whether an error is worth another
    attempt; ``retry_after(error)`` may override the computed delay with a
    server-requested wait.
    """
    attempts: int = 3
    min_delay: float = 0.4
    max_delay: float = 15.0
    jitter: float = 0.1
    should_retry: Callable[[BaseException, int], bool] = is_likely_transient_error
    retry_after: Callable[[BaseException], float | None] | None = error_retry_after
    on_retry: Callable[[RetryInfo], None] | None = None

    def __post_init__(self):
        self.attempts = max(1, int(self.attempts))
        self.min_delay = max(0.0, float(self.min_delay))
        self.max_delay = max(self.min_delay, float(self.max_delay))
        self.jitter = min(1.0, max(0.0, float(self.jitter)))

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "RetryPolicy":
        retry_cfg = config.get("retry", {})
        return cls(
            attempts=retry_cfg.get("attempts", 3),
            min_delay=retry_cfg.get("min_delay", 0.4),
            max_delay=retry_cfg.get("max_delay", 15.0),
            jitter=retry_cfg.get("jitter", 0.1),
        )

    def compute_delay(self, error: BaseException, attempt: int) -> float:
        override = self.retry_after(error) if self.retry_after else None
        if override is not None and override > 0:
            base = override
        else:
            base = self.min_delay * 2 ** (attempt - 1)
        clamped = min(max(base, self.min_delay), self.max_delay)
        return _with_jitter(clamped, self.jitter)

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` until it succeeds or the policy gives up.

        The last error is re-raised unchanged.
        """
        for attempt in range(1, self.attempts + 1):
            try:
                return await operation()
            except Exception as e:
                if attempt >= self.attempts or not self.should_retry(e, attempt):
                    raise
                delay = self.compute_delay(e, attempt)
                info = RetryInfo(attempt=attempt, max_attempts=self.attempts, delay=delay, error=e)
                if self.on_retry:
                    self.on_retry(info)
                logger.debug(f"Retrying after attempt {attempt}/{self.attempts} in {delay:.2f}s: {e}")
                await asyncio.sleep(delay)
        raise RuntimeError("unreachable")  # pragma: no cover


async def retry_async(operation: Callable[[], Awaitable[T]], **options: Any) -> T:
    """One-off retry without building a policy first."""
    return await RetryPolicy(**options).run(operation)
