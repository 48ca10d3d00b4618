"""Bounded retry with linear-capped delays and error classification.

Delays grow linearly (``base + attempt * increment``) and are capped; the default
budget tops out around 13-16 seconds of total waiting.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from .errors import FatalDeliveryError, RelayError, RetryExhaustedError

_LOGGER = logging.getLogger("relay.compose.retry")

DEFAULT_FATAL_PATTERNS: tuple[str, ...] = (
    "invalid tab id",
    "tab was closed",
    "tab closed",
    "no tab with id",
    "no target with given id",
    "permission denied",
    "invalid url",
    "network error",
    "context invalidated",
    "malformed payload",
)

DEFAULT_CONNECTION_PATTERNS: tuple[str, ...] = (
    "connection",
    "receiving end does not exist",
    "did not respond",
    "timeout",
    "timed out",
    "disconnected",
    "channel closed",
)


def _error_text(error: Any) -> str:
    if error is None:
        return ""
    if isinstance(error, RelayError):
        return error.reason.lower()
    return str(error).lower()


@dataclass(frozen=True)
class AttemptResult:
    """Explicit outcome of one attempt; anything else returned counts as success."""

    success: bool
    retryable: bool = True
    error: str | None = None
    value: Any = None

    @classmethod
    def ok(cls, value: Any = None) -> AttemptResult:
        return cls(success=True, value=value)

    @classmethod
    def retry(cls, error: str) -> AttemptResult:
        return cls(success=False, retryable=True, error=error)

    @classmethod
    def fatal(cls, error: str) -> AttemptResult:
        return cls(success=False, retryable=False, error=error)


@dataclass
class RetryContext:
    operation: str
    max_attempts: int
    started_at: float = field(default_factory=time.time)
    correlation: dict[str, Any] = field(default_factory=dict)
    context_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    attempt: int = 0
    last_error: str | None = None

    def elapsed_ms(self) -> int:
        return int((time.time() - self.started_at) * 1000)

    def log_fields(self) -> str:
        extra = " ".join(f"{k}={v}" for k, v in sorted(self.correlation.items()))
        return f"op={self.operation} ctx={self.context_id} {extra}".rstrip()


class RetryPolicy:
    def __init__(
        self,
        *,
        base_delay_ms: int = 600,
        delay_increment_ms: int = 150,
        max_delay_ms: int = 1500,
        max_attempts: int = 12,
        max_ping_attempts: int = 3,
        fatal_patterns: Iterable[str] = DEFAULT_FATAL_PATTERNS,
        connection_patterns: Iterable[str] = DEFAULT_CONNECTION_PATTERNS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_delay_ms = max(0, int(base_delay_ms))
        self.delay_increment_ms = max(0, int(delay_increment_ms))
        self.max_delay_ms = max(0, int(max_delay_ms))
        self.max_attempts = max(1, int(max_attempts))
        self.max_ping_attempts = max(1, int(max_ping_attempts))
        self.fatal_patterns = tuple(p.lower() for p in fatal_patterns)
        self.connection_patterns = tuple(p.lower() for p in connection_patterns)
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: Any, *, sleep: Callable[[float], None] = time.sleep) -> RetryPolicy:
        return cls(
            base_delay_ms=config.base_delay_ms,
            delay_increment_ms=config.delay_increment_ms,
            max_delay_ms=config.max_delay_ms,
            max_attempts=config.max_attempts,
            max_ping_attempts=config.max_ping_attempts,
            sleep=sleep,
        )

    # ── classification ──────────────────────────────────────────────────────

    def is_fatal_error(self, error: Any) -> bool:
        if isinstance(error, FatalDeliveryError):
            return True
        text = _error_text(error)
        return bool(text) and any(p in text for p in self.fatal_patterns)

    def is_connection_error(self, error: Any) -> bool:
        text = _error_text(error)
        return bool(text) and any(p in text for p in self.connection_patterns)

    # ── timing ──────────────────────────────────────────────────────────────

    def calculate_delay(self, attempt: int) -> int:
        """Delay in ms applied before ``attempt`` (0 for the first attempt)."""
        if attempt <= 0:
            return 0
        return min(self.base_delay_ms + attempt * self.delay_increment_ms, self.max_delay_ms)

    def estimated_total_retry_time_ms(self) -> int:
        return sum(self.calculate_delay(n) for n in range(1, self.max_attempts))

    def config(self) -> dict[str, Any]:
        return {
            "maxAttempts": self.max_attempts,
            "baseDelayMs": self.base_delay_ms,
            "delayIncrementMs": self.delay_increment_ms,
            "maxDelayMs": self.max_delay_ms,
            "maxPingAttempts": self.max_ping_attempts,
            "fatalPatterns": list(self.fatal_patterns),
            "connectionPatterns": list(self.connection_patterns),
        }

    def create_retry_context(self, operation: str, **correlation: Any) -> RetryContext:
        return RetryContext(operation=operation, max_attempts=self.max_attempts, correlation=dict(correlation))

    # ── execution ───────────────────────────────────────────────────────────

    def execute_with_retry(self, operation: Callable[[int], Any], context: RetryContext | None = None) -> Any:
        ctx = context or self.create_retry_context(getattr(operation, "__name__", "operation"))
        last_exc: BaseException | None = None

        for attempt in range(ctx.max_attempts):
            ctx.attempt = attempt
            delay_ms = self.calculate_delay(attempt)
            if delay_ms:
                _LOGGER.debug("retry wait %sms before attempt %s (%s)", delay_ms, attempt + 1, ctx.log_fields())
                self._sleep(delay_ms / 1000.0)

            try:
                result = operation(attempt)
            except Exception as exc:
                ctx.last_error = _error_text(exc) or type(exc).__name__
                if self.is_fatal_error(exc):
                    _LOGGER.warning("fatal error on attempt %s, not retrying (%s): %s", attempt + 1, ctx.log_fields(), exc)
                    raise
                _LOGGER.info("attempt %s/%s failed (%s): %s", attempt + 1, ctx.max_attempts, ctx.log_fields(), exc)
                last_exc = exc
                continue

            if isinstance(result, AttemptResult) and not result.success:
                ctx.last_error = result.error
                if not result.retryable:
                    _LOGGER.warning("non-retryable result on attempt %s (%s): %s", attempt + 1, ctx.log_fields(), result.error)
                    raise FatalDeliveryError(
                        result.error or "non-retryable failure",
                        component="retry",
                        action=ctx.operation,
                        details={"attempt": attempt},
                    )
                _LOGGER.info("attempt %s/%s unsuccessful (%s): %s", attempt + 1, ctx.max_attempts, ctx.log_fields(), result.error)
                last_exc = None
                continue

            if attempt:
                _LOGGER.info("succeeded on attempt %s after %sms (%s)", attempt + 1, ctx.elapsed_ms(), ctx.log_fields())
            if isinstance(result, AttemptResult):
                return result.value if result.value is not None else True
            return result

        if last_exc is not None:
            raise last_exc
        raise RetryExhaustedError(ctx.operation, ctx.max_attempts, ctx.last_error)


_DEFAULT_POLICY = RetryPolicy()


def is_fatal_error(error: Any) -> bool:
    return _DEFAULT_POLICY.is_fatal_error(error)


def is_connection_error(error: Any) -> bool:
    return _DEFAULT_POLICY.is_connection_error(error)


def calculate_delay(attempt: int) -> int:
    return _DEFAULT_POLICY.calculate_delay(attempt)


__all__ = [
    "AttemptResult",
    "DEFAULT_CONNECTION_PATTERNS",
    "DEFAULT_FATAL_PATTERNS",
    "RetryContext",
    "RetryPolicy",
    "calculate_delay",
    "is_connection_error",
    "is_fatal_error",
]
