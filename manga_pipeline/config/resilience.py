"""
Retry and circuit breaker presets.

DEFAULT_RETRY covers internal work, EXTERNAL_API_RETRY the generation and
insight collaborators, STORE_RETRY the entity store.
"""

from ..core.resilience import CircuitBreakerConfig, RetryConfig

DEFAULT_RETRY = RetryConfig(
    max_attempts=3,
    base_delay=1.0,
    max_delay=30.0,
    backoff_multiplier=2.0,
    jitter=0.1,
    retryable_codes=frozenset(
        {"TIMEOUT_ERROR", "THROTTLING_ERROR", "INTERNAL_ERROR", "EXTERNAL_SERVICE_ERROR"}
    ),
)

EXTERNAL_API_RETRY = RetryConfig(
    max_attempts=5,
    base_delay=2.0,
    max_delay=60.0,
    backoff_multiplier=2.0,
    jitter=0.5,
    retryable_codes=frozenset({"TIMEOUT_ERROR", "THROTTLING_ERROR", "EXTERNAL_SERVICE_ERROR"}),
)

STORE_RETRY = RetryConfig(
    max_attempts=3,
    base_delay=0.1,
    max_delay=2.0,
    backoff_multiplier=2.0,
    jitter=0.05,
    retryable_codes=frozenset({"THROTTLING_ERROR", "TIMEOUT_ERROR"}),
)

DEFAULT_BREAKER = CircuitBreakerConfig(
    failure_threshold=5,
    recovery_timeout=60.0,
    half_open_max_calls=3,
)

# Named breakers, one per external collaborator
TEXT_GENERATION_BREAKER = "text-generation"
IMAGE_GENERATION_BREAKER = "image-generation"
INSIGHTS_BREAKER = "insights"
