"""Failure classification and backoff math.

Classification is a best-effort heuristic: upstream error messages are not a
stable contract, so the rules match on case-insensitive substrings and anything
unrecognised is treated as terminal.
"""

import asyncio
import inspect
import math
import random
from typing import Callable, Union

from .errors import ApiError
from .types import AttemptOutcome, RateLimitConfig

# Kinds reported for transport failures (connection refused, DNS, timeouts)
TRANSPORT_KINDS = frozenset({"http_request_failed", "http_request_not_executed"})

RATE_LIMIT_PHRASES = ("rate limit", "too many requests", "429", "quota", "throttl")
SERVER_ERROR_PHRASES = ("500", "502", "503", "504", "server error", "gateway", "timeout", "timed out")

OVERLOADED_KIND = "api_error"
TOKEN_REFRESH_KIND = "gsc_refresh_error"

# Jitter adds up to this fraction of the delay
MAX_JITTER = 0.25

DEFAULT_PREDICATE_ARGC = 2  # fn(kind, message)
PREDICATE_WITH_MESSAGE_ARGC = 2


def _count_positional_args(fn, default: int) -> int:
    """Return count of positional params for fn; fall back to default on failure."""
    try:
        sig = inspect.signature(fn)
        return len(
            [
                p
                for p in sig.parameters.values()
                if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)
            ]
        )
    except (TypeError, ValueError):
        return default


def _contains_any(message: str, phrases) -> bool:
    lowered = message.lower()
    return any(p in lowered for p in phrases)


# A rule returns True (retry), False (terminal) or None (no opinion, try the next rule)
Rule = Callable[[str, str], Union[bool, None]]


def transport_rule(kind: str, message: str) -> Union[bool, None]:
    return True if kind in TRANSPORT_KINDS else None


def rate_limit_rule(kind: str, message: str) -> Union[bool, None]:
    return True if _contains_any(message, RATE_LIMIT_PHRASES) else None


def server_error_rule(kind: str, message: str) -> Union[bool, None]:
    return True if _contains_any(message, SERVER_ERROR_PHRASES) else None


def overloaded_rule(kind: str, message: str) -> Union[bool, None]:
    if kind == OVERLOADED_KIND and "overloaded" in message.lower():
        return True
    return None


def token_refresh_rule(kind: str, message: str) -> Union[bool, None]:
    return True if kind == TOKEN_REFRESH_KIND else None


DEFAULT_RULES: tuple[Rule, ...] = (
    transport_rule,
    rate_limit_rule,
    server_error_rule,
    overloaded_rule,
    token_refresh_rule,
)


class ErrorClassifier:
    """Ordered rule table; the first rule with an opinion wins, the fallback is terminal."""

    def __init__(self, rules: Union[list[Rule], tuple[Rule, ...], None] = None):
        self.rules: list[Rule] = list(DEFAULT_RULES if rules is None else rules)

    def add_rule(self, rule: Rule, first: bool = False) -> None:
        if first:
            self.rules.insert(0, rule)
        else:
            self.rules.append(rule)

    def is_retryable(self, kind: Union[str, None], message: Union[str, None]) -> bool:
        kind = kind or ""
        message = message or ""
        for rule in self.rules:
            verdict = rule(kind, message)
            if verdict is not None:
                return bool(verdict)
        return False


class FunctionalClassifier(ErrorClassifier):
    """Wrap a user-supplied predicate.

    Accepted function signatures:
        - fn(kind, message) -> bool
        - fn(outcome) -> bool   (receives an AttemptOutcome)
    """

    def __init__(self, fn: Callable):
        super().__init__(rules=[])
        self.fn = fn

    def is_retryable(self, kind, message):
        argc = _count_positional_args(self.fn, DEFAULT_PREDICATE_ARGC)
        if argc >= PREDICATE_WITH_MESSAGE_ARGC:
            return bool(self.fn(kind or "", message or ""))
        return bool(self.fn(AttemptOutcome(False, kind, message or "")))


_default_classifier = ErrorClassifier()


def is_retryable(kind: Union[str, None], message: Union[str, None]) -> bool:
    """Classify a failure with the built-in rule table."""
    return _default_classifier.is_retryable(kind, message)


def coerce_classifier(classifier: Union[object, None]) -> ErrorClassifier:
    """Turn None | ErrorClassifier | callable into an ErrorClassifier."""
    if classifier is None:
        return ErrorClassifier()
    if isinstance(classifier, ErrorClassifier):
        return classifier
    if callable(classifier):
        return FunctionalClassifier(classifier)
    raise TypeError("classifier must be None, an ErrorClassifier, or a callable")


def backoff_delay(
    attempt: int, config: RateLimitConfig, rand: Callable[[float, float], float] = random.uniform
) -> int:
    """Whole seconds to wait after failed attempt `attempt` (0-based).

    min(base * 2**attempt, max) plus up to 25% jitter, truncated.
    """
    delay = min(config.base_delay * (2**attempt), config.max_delay)
    jitter = delay * rand(0, MAX_JITTER)
    return math.floor(delay + jitter)


# ---------- exception -> outcome ----------


def _raised_by(exc: BaseException, package: str) -> bool:
    """True when exc's class, or one of its bases, is defined in `package`.

    Only the client library that raised the error gets imported.
    """
    return any(cls.__module__.split(".")[0] == package for cls in type(exc).__mro__)


def _status_from_exception(exc: BaseException) -> Union[int, None]:
    if _raised_by(exc, "requests"):
        import requests  # noqa: PLC0415

        if isinstance(exc, requests.HTTPError) and exc.response is not None:
            return exc.response.status_code
    elif _raised_by(exc, "httpx"):
        import httpx  # noqa: PLC0415

        if isinstance(exc, httpx.HTTPStatusError):
            return exc.response.status_code
    elif _raised_by(exc, "aiohttp"):
        import aiohttp  # noqa: PLC0415

        if isinstance(exc, aiohttp.ClientResponseError):
            return exc.status
    return None


def _is_transport_failure(exc: BaseException) -> bool:
    if isinstance(exc, (asyncio.TimeoutError, ConnectionError, TimeoutError)):
        return True
    if _raised_by(exc, "requests"):
        import requests  # noqa: PLC0415

        return isinstance(exc, (requests.ConnectionError, requests.Timeout))
    if _raised_by(exc, "httpx"):
        import httpx  # noqa: PLC0415

        return isinstance(exc, httpx.TransportError)
    if _raised_by(exc, "aiohttp"):
        import aiohttp  # noqa: PLC0415

        return isinstance(exc, aiohttp.ClientConnectionError)
    return False


def outcome_from_exception(exc: BaseException) -> AttemptOutcome:
    """Describe a failed attempt as (kind, message) for classification."""
    if isinstance(exc, ApiError):
        return AttemptOutcome(False, exc.kind, exc.message)
    message = str(exc) or type(exc).__name__
    status = _status_from_exception(exc)
    if status is not None:
        return AttemptOutcome(False, "http_error", f"HTTP {status}: {message}")
    if _is_transport_failure(exc):
        return AttemptOutcome(False, "http_request_failed", message)
    return AttemptOutcome(False, type(exc).__name__, message)
