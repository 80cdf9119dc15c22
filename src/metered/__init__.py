from .adapters import AiohttpClient, AiohttpResult, HttpxClient, RequestsClient, error_from_response
from .env import load_limits_from_env
from .errors import ApiError, MeteredError, RetriesExhaustedError
from .executor import AsyncRetryingExecutor, RetryingExecutor
from .observe import LoggingObserver, Observer
from .policies import (
    ErrorClassifier,
    backoff_delay,
    coerce_classifier,
    is_retryable,
    outcome_from_exception,
)
from .state import UsageWindow
from .store import KeyValueStore, MemoryStore
from .tracker import AsyncWindowTracker, WindowTracker
from .types import (
    DEFAULT_LIMITS,
    Admission,
    AttemptOutcome,
    RateLimitConfig,
    UsageSnapshot,
)

__all__ = [
    "RateLimitConfig",
    "DEFAULT_LIMITS",
    "Admission",
    "UsageSnapshot",
    "AttemptOutcome",
    "UsageWindow",
    "KeyValueStore",
    "MemoryStore",
    "Observer",
    "LoggingObserver",
    "ApiError",
    "MeteredError",
    "RetriesExhaustedError",
    "ErrorClassifier",
    "coerce_classifier",
    "is_retryable",
    "backoff_delay",
    "outcome_from_exception",
    "WindowTracker",
    "AsyncWindowTracker",
    "RetryingExecutor",
    "AsyncRetryingExecutor",
    "RequestsClient",
    "HttpxClient",
    "AiohttpClient",
    "AiohttpResult",
    "error_from_response",
    "load_limits_from_env",
]
