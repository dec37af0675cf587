from atende.services.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerError, CircuitState
from atende.services.resilience.rate_limiter import RATE_LIMITS, RateLimitConfig, RateLimiter, RateLimitResult
from atende.services.resilience.retry import (
    CHANNEL_RETRY,
    OPENAI_RETRY,
    RetryOptions,
    retry,
)

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerError",
    "CircuitState",
    "RATE_LIMITS",
    "RateLimitConfig",
    "RateLimiter",
    "RateLimitResult",
    "RetryOptions",
    "OPENAI_RETRY",
    "CHANNEL_RETRY",
    "retry",
]
