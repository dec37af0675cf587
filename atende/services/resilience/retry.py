"""Async retry with exponential backoff."""

import asyncio
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Optional, TypeVar

from atende.logging_config import get_logger

logger = get_logger("resilience.retry")

T = TypeVar("T")

RetryPredicate = Callable[[BaseException, int], bool]
AttemptCallback = Callable[[BaseException, int, float], None]


@dataclass(frozen=True)
class RetryOptions:
    max_retries: int = 3
    initial_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 10.0
    should_retry: Optional[RetryPredicate] = None
    on_retry: Optional[AttemptCallback] = None

    def with_callbacks(
        self,
        *,
        should_retry: Optional[RetryPredicate] = None,
        on_retry: Optional[AttemptCallback] = None,
    ) -> "RetryOptions":
        return replace(
            self,
            should_retry=should_retry or self.should_retry,
            on_retry=on_retry or self.on_retry,
        )


_PERMANENT_MARKERS = (
    "invalid api key",
    "incorrect api key",
    "authentication",
    "insufficient_quota",
    "quota",
    "rate limit exceeded",
)


def _is_permanent(error: BaseException) -> bool:
    # Errors that carry their own verdict win over message sniffing.
    retryable = getattr(error, "retryable", None)
    if retryable is not None:
        return not retryable
    message = str(error).lower()
    return any(marker in message for marker in _PERMANENT_MARKERS)


def _completion_should_retry(error: BaseException, attempt: int) -> bool:
    return not _is_permanent(error)


def _channel_should_retry(error: BaseException, attempt: int) -> bool:
    retryable = getattr(error, "retryable", None)
    if retryable is not None:
        return retryable
    message = str(error).lower()
    return "session not found" not in message and "not connected" not in message


OPENAI_RETRY = RetryOptions(
    max_retries=3,
    initial_delay=1.0,
    backoff_factor=2.0,
    max_delay=8.0,
    should_retry=_completion_should_retry,
)

CHANNEL_RETRY = RetryOptions(
    max_retries=2,
    initial_delay=0.5,
    backoff_factor=2.0,
    max_delay=2.0,
    should_retry=_channel_should_retry,
)


def compute_delay(options: RetryOptions, attempt: int) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    delay = options.initial_delay * (options.backoff_factor ** (attempt - 1))
    return min(delay, options.max_delay)


async def retry(
    operation: Callable[[], Awaitable[T]],
    options: RetryOptions = RetryOptions(),
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation`` up to ``max_retries + 1`` times.

    Non-retryable errors (per ``should_retry``) propagate after the first
    failing attempt; the last error propagates once attempts run out.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            exhausted = attempt > options.max_retries
            if exhausted or (options.should_retry and not options.should_retry(exc, attempt)):
                if not exhausted:
                    logger.info(
                        "Non-retryable error",
                        extra={"context": {"attempt": attempt, "error": str(exc)}},
                    )
                raise
            delay = compute_delay(options, attempt)
            logger.warning(
                "Operation failed, retrying",
                extra={"context": {"attempt": attempt, "delay": delay, "error": str(exc)}},
            )
            if options.on_retry:
                options.on_retry(exc, attempt, delay)
            await sleep(delay)
