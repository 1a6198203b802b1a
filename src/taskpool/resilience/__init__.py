"""Guards for calls to external dependencies."""

from taskpool.resilience.circuit_breaker import (
    BreakerResult,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
    FallbackResult,
)
from taskpool.resilience.http_client import QuotaAwareHttpClient
from taskpool.resilience.rate_limiter import RateLimiter, RateLimiterConfig, RateLimitResource

__all__ = [
    "BreakerResult",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    "FallbackResult",
    "QuotaAwareHttpClient",
    "RateLimitResource",
    "RateLimiter",
    "RateLimiterConfig",
]
