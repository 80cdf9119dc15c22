import contextlib
import functools
import inspect
import logging
import random
from typing import Any, Awaitable, Callable, TypeVar, Union

from .env import load_limits_from_env
from .errors import ApiError, RetriesExhaustedError
from .observe import Observer, emit
from .policies import ErrorClassifier, backoff_delay, coerce_classifier, outcome_from_exception
from .tracker import AsyncWindowTracker, WindowTracker
from .types import DEFAULT_API, Admission, RateLimitConfig, UsageSnapshot

T = TypeVar("T")

# ---------- Base executor (retry decisions; suspension handled by subclasses) ----------


class _Executor:
    def __init__(
        self,
        tracker: Union[WindowTracker, AsyncWindowTracker],
        classifier: Union[object, None],
        observer: Union[Observer, None],
        rand: Callable[[float, float], float],
    ):
        self.tracker = tracker
        self.classifier: ErrorClassifier = coerce_classifier(classifier)
        self._observer = observer if observer is not None else tracker._observer
        self._rand = rand
        self._logger = logging.getLogger("metered")

    def _next_delay(
        self, api_name: str, cfg: RateLimitConfig, attempt: int, failure: BaseException
    ) -> Union[int, None]:
        """Seconds to back off after a failed attempt, or None when no attempt is left.

        Terminal failures are re-raised unchanged.
        """
        outcome = outcome_from_exception(failure)
        if not self.classifier.is_retryable(outcome.error_kind, outcome.error_message):
            with contextlib.suppress(Exception):
                self._logger.debug(
                    f"terminal error api={api_name} kind={outcome.error_kind}: "
                    f"{outcome.error_message}"
                )
            raise failure
        if attempt >= cfg.max_retries:
            return None
        delay = backoff_delay(attempt, cfg, self._rand)
        emit(
            self._observer,
            "warning",
            f"{api_name.upper()} API retry {attempt + 1}/{cfg.max_retries} after {delay}s: "
            f"{outcome.error_message}",
            context={
                "api": api_name,
                "attempt": attempt + 1,
                "max_retries": cfg.max_retries,
                "delay": delay,
                "kind": outcome.error_kind,
            },
        )
        return delay

    def _exhausted(
        self, api_name: str, cfg: RateLimitConfig, failure: BaseException
    ) -> RetriesExhaustedError:
        message = outcome_from_exception(failure).error_message
        emit(
            self._observer,
            "error",
            f"{api_name.upper()} API failed after {cfg.max_retries} retries: {message}",
            context={"api": api_name, "max_retries": cfg.max_retries},
        )
        return RetriesExhaustedError(api_name, cfg.max_retries, message)

    # delegated tracker API
    def get_usage(self, api_name: str) -> UsageSnapshot:
        return self.tracker.get_usage(api_name)

    def usage_report(self) -> dict[str, UsageSnapshot]:
        return self.tracker.usage_report()

    def reset(self, api_name: str) -> None:
        self.tracker.reset(api_name)


# ---------- Sync executor ----------


class RetryingExecutor(_Executor):
    def __init__(
        self,
        tracker: Union[WindowTracker, None] = None,
        classifier: Union[object, None] = None,
        observer: Union[Observer, None] = None,
        sleep: Union[Callable[[float], None], None] = None,
        rand: Callable[[float, float], float] = random.uniform,
        **kwargs,
    ):
        """Initialize a RetryingExecutor.

        Args:
            tracker (WindowTracker | None): admission control; built from kwargs if None
            classifier (ErrorClassifier | callable | None): retryable-or-terminal decision
            observer (Observer | None): receives retry/exhaustion notices
            sleep (Callable[[float], None] | None): used for backoff (and the tracker if built here)
            rand (Callable[[float, float], float]): jitter source, uniform(a, b)
            kwargs: forwarded to WindowTracker when `tracker` is None
            - limits: dict[str, RateLimitConfig]
            - default: str
            - store: KeyValueStore
            - clock: Callable[[], float]
            - key_prefix: str
            - log_level: int
        """
        if tracker is None:
            tracker = WindowTracker(observer=observer, sleep=sleep, **kwargs)
        elif kwargs:
            raise TypeError(
                f"tracker settings {sorted(kwargs)} cannot be combined with an explicit tracker"
            )
        super().__init__(tracker, classifier, observer, rand)
        self._sleep = sleep or tracker._sleep

    def throttle(self, api_name: str) -> Admission:
        return self.tracker.throttle(api_name)

    def execute(self, api_name: str, work: Callable[[], T]) -> T:
        """Run work() under api_name's rate limit, retrying retryable failures.

        Raises:
            RetriesExhaustedError: every attempt failed with a retryable error
            Exception: the first terminal error, unchanged
        """
        cfg = self.tracker.config(api_name)
        failure: Union[BaseException, None] = None
        for attempt in range(cfg.max_retries + 1):
            self.tracker.throttle(api_name)
            try:
                result = work()
            except Exception as e:
                failure = e
            else:
                if not isinstance(result, ApiError):
                    return result
                failure = result
            delay = self._next_delay(api_name, cfg, attempt, failure)
            if delay is None:
                break
            self._sleep(delay)
        raise self._exhausted(api_name, cfg, failure) from failure

    def guarded(self, api_name: str):
        """Decorator form of execute(): each call of the wrapped function is one unit of work."""

        def _decorate(fn):
            @functools.wraps(fn)
            def _wrapped(*args, **kwargs):
                return self.execute(api_name, lambda: fn(*args, **kwargs))

            return _wrapped

        return _decorate

    def requests_client(self, api_name: str, session=None):
        from .adapters import RequestsClient  # noqa: PLC0415

        return RequestsClient(self, api_name, session=session)

    @classmethod
    def from_env(
        cls,
        prefix: str = "METERED_",
        env_path: Union[str, None] = None,
        limits: Union[dict[str, RateLimitConfig], None] = None,
        **kwargs,
    ):
        if kwargs.get("tracker") is not None:
            raise TypeError(
                "from_env builds its own tracker; pass limits or tracker settings instead"
            )
        default = kwargs.get("default", DEFAULT_API)
        table = load_limits_from_env(prefix=prefix, env_path=env_path, base=limits, default=default)
        return cls(limits=table, **kwargs)


# ---------- Async executor ----------


class AsyncRetryingExecutor(_Executor):
    def __init__(
        self,
        tracker: Union[AsyncWindowTracker, None] = None,
        classifier: Union[object, None] = None,
        observer: Union[Observer, None] = None,
        sleep: Union[Callable, None] = None,
        rand: Callable[[float, float], float] = random.uniform,
        **kwargs,
    ):
        """Initialize an AsyncRetryingExecutor.

        Same arguments as RetryingExecutor; `sleep` must be a coroutine function.
        """
        if tracker is None:
            tracker = AsyncWindowTracker(observer=observer, sleep=sleep, **kwargs)
        elif kwargs:
            raise TypeError(
                f"tracker settings {sorted(kwargs)} cannot be combined with an explicit tracker"
            )
        super().__init__(tracker, classifier, observer, rand)
        self._sleep = sleep or tracker._sleep

    async def throttle(self, api_name: str) -> Admission:
        return await self.tracker.throttle(api_name)

    async def execute(self, api_name: str, work: Callable[[], Union[Awaitable[T], T]]) -> T:
        """Async execute(); work() may return an awaitable or a plain value."""
        cfg = self.tracker.config(api_name)
        failure: Union[BaseException, None] = None
        for attempt in range(cfg.max_retries + 1):
            await self.tracker.throttle(api_name)
            try:
                result: Any = work()
                if inspect.isawaitable(result):
                    result = await result
            except Exception as e:
                failure = e
            else:
                if not isinstance(result, ApiError):
                    return result
                failure = result
            delay = self._next_delay(api_name, cfg, attempt, failure)
            if delay is None:
                break
            await self._sleep(delay)
        raise self._exhausted(api_name, cfg, failure) from failure

    def guarded(self, api_name: str):
        def _decorate(fn):
            @functools.wraps(fn)
            async def _wrapped(*args, **kwargs):
                return await self.execute(api_name, lambda: fn(*args, **kwargs))

            return _wrapped

        return _decorate

    def httpx_client(self, api_name: str, client=None):
        from .adapters import HttpxClient  # noqa: PLC0415

        return HttpxClient(self, api_name, client=client)

    def aiohttp_client(self, api_name: str, session):
        from .adapters import AiohttpClient  # noqa: PLC0415

        return AiohttpClient(self, api_name, session)

    @classmethod
    def from_env(
        cls,
        prefix: str = "METERED_",
        env_path: Union[str, None] = None,
        limits: Union[dict[str, RateLimitConfig], None] = None,
        **kwargs,
    ):
        if kwargs.get("tracker") is not None:
            raise TypeError(
                "from_env builds its own tracker; pass limits or tracker settings instead"
            )
        default = kwargs.get("default", DEFAULT_API)
        table = load_limits_from_env(prefix=prefix, env_path=env_path, base=limits, default=default)
        return cls(limits=table, **kwargs)
