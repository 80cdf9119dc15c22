import asyncio
import contextlib
import logging
import threading
import time
from typing import Callable, Union

from .env import load_limits_from_env
from .observe import LoggingObserver, Observer, emit
from .state import UsageWindow
from .store import KeyValueStore, MemoryStore
from .types import (
    DEFAULT_API,
    DEFAULT_LIMITS,
    WINDOW_SECONDS,
    WINDOW_TTL_SECONDS,
    Admission,
    RateLimitConfig,
    UsageSnapshot,
    resolve_config,
)

DEFAULT_KEY_PREFIX = "ssf_rl_"

# ---------- Base tracker (shared logic; synchronization handled by subclasses) ----------


class _Tracker:
    def __init__(
        self,
        limits: Union[dict[str, RateLimitConfig], None],
        default: str,
        store: Union[KeyValueStore, None],
        observer: Union[Observer, None],
        clock: Callable[[], float],
        key_prefix: str,
        log_level: Union[int, None],
    ):
        """Initialize a _Tracker.

        Args:
            limits (dict[str, RateLimitConfig] | None): per-API limits; built-in table if None
            default (str): entry used for API names missing from `limits`
            store (KeyValueStore | None): where usage windows live; in-memory if None
            observer (Observer | None): receives wait notices; logs via "metered" if None
            clock (Callable[[], float]): epoch-seconds time source
            key_prefix (str): store key prefix, the API name is appended
            log_level (int | None): level for the "metered" logger

        Raises:
            ValueError: if `default` has no entry in `limits`
        """
        self._limits = dict(DEFAULT_LIMITS if limits is None else limits)
        if default not in self._limits:
            raise ValueError(f"default API {default!r} has no rate limit entry")
        self.default = default
        self._clock = clock
        self._store = store if store is not None else MemoryStore(clock=clock)
        self._observer = observer if observer is not None else LoggingObserver()
        self._key_prefix = key_prefix
        self._logger = logging.getLogger("metered")
        if log_level is not None:
            with contextlib.suppress(Exception):
                self._logger.setLevel(log_level)

    def _now(self) -> float:
        return self._clock()

    @property
    def limits(self) -> dict[str, RateLimitConfig]:
        return dict(self._limits)

    def config(self, api_name: str) -> RateLimitConfig:
        return resolve_config(self._limits, api_name, self.default)

    def _key(self, api_name: str) -> str:
        return f"{self._key_prefix}{api_name}"

    def _load(self, api_name: str) -> Union[UsageWindow, None]:
        return UsageWindow.from_value(self._store.get(self._key(api_name)))

    def _save(self, api_name: str, window: UsageWindow) -> None:
        self._store.set(self._key(api_name), window.to_value(), WINDOW_TTL_SECONDS)

    def _try_admit(
        self, api_name: str, waited_on: Union[float, None]
    ) -> tuple[int, float, Union[UsageWindow, None]]:
        """One read-modify-write of the window; callers hold the per-API lock.

        Returns (count, 0, None) when admitted, or (0, wait, window) when the
        caller must suspend for `wait` seconds before trying again.
        `waited_on` is the window_start the caller already slept through.
        """
        cfg = self.config(api_name)
        now = self._now()
        window = self._load(api_name)

        if waited_on is not None and (window is None or window.window_start == waited_on):
            # nobody rolled the window while we slept: open a fresh one
            window = UsageWindow(count=1, window_start=now)
            self._save(api_name, window)
            return window.count, 0.0, None

        if window is None or window.expired(now):
            window = UsageWindow(count=0, window_start=now)

        if window.count < cfg.requests_per_minute:
            window.count += 1
            self._save(api_name, window)
            return window.count, 0.0, None

        wait = WINDOW_SECONDS - window.elapsed(now)
        if not 0 < wait <= WINDOW_SECONDS:
            # window_start lies in the future (clock moved back); restart instead of stalling
            window = UsageWindow(count=1, window_start=now)
            self._save(api_name, window)
            return window.count, 0.0, None
        return 0, wait, window

    def _notice_wait(self, api_name: str, window: UsageWindow, wait: float) -> None:
        limit = self.config(api_name).requests_per_minute
        emit(
            self._observer,
            "warning",
            f"Rate limit reached for {api_name} ({window.count}/{limit}). Waiting {wait:.1f}s.",
            context={"api": api_name, "count": window.count, "limit": limit, "wait": wait},
        )

    def _admitted(self, api_name: str, count: int, waited: float) -> Admission:
        with contextlib.suppress(Exception):
            self._logger.debug(f"admit api={api_name} count={count} waited={waited:.2f}s")
        return Admission(api_name=api_name, count=count, waited=waited)

    # ---------- read-only / administrative ----------

    def get_usage(self, api_name: str) -> UsageSnapshot:
        limit = self.config(api_name).requests_per_minute
        window = self._load(api_name)
        if window is None or window.expired(self._now()):
            # a window older than a minute is already spent, even before the store evicts it
            return UsageSnapshot(api_name, count=0, limit=limit, remaining=limit, resets_in=0.0)
        return UsageSnapshot(
            api_name,
            count=window.count,
            limit=limit,
            remaining=max(0, limit - window.count),
            resets_in=window.resets_in(self._now()),
        )

    def usage_report(self) -> dict[str, UsageSnapshot]:
        return {name: self.get_usage(name) for name in sorted(self._limits)}

    def reset(self, api_name: str) -> None:
        self._store.delete(self._key(api_name))


# ---------- Sync tracker (threads) ----------


class WindowTracker(_Tracker):
    """Per-API sliding usage window that blocks callers once the minute's budget is spent.

    Windows and locks are keyed by the API name as given. A name missing from `limits`
    borrows the default entry's budget but counts in its own window, and its lock is
    kept for the tracker's lifetime, so callers should pass a bounded set of names.
    """

    def __init__(
        self,
        limits: Union[dict[str, RateLimitConfig], None] = None,
        default: str = DEFAULT_API,
        store: Union[KeyValueStore, None] = None,
        observer: Union[Observer, None] = None,
        clock: Callable[[], float] = time.time,
        sleep: Union[Callable[[float], None], None] = None,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        log_level: Union[int, None] = None,
    ):
        super().__init__(limits, default, store, observer, clock, key_prefix, log_level)
        self._sleep = sleep or time.sleep
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, api_name: str) -> threading.Lock:
        with self._guard:
            if api_name not in self._locks:
                self._locks[api_name] = threading.Lock()
            return self._locks[api_name]

    def throttle(self, api_name: str) -> Admission:
        """Admit one call for api_name, sleeping until the window rolls over if it is full."""
        waited = 0.0
        waited_on = None
        while True:
            with self._lock_for(api_name):
                count, wait, window = self._try_admit(api_name, waited_on)
            if window is None:
                return self._admitted(api_name, count, waited)
            # lock released: other APIs and callers proceed while we sleep
            self._notice_wait(api_name, window, wait)
            self._sleep(wait)
            waited += wait
            waited_on = window.window_start

    @classmethod
    def from_env(
        cls,
        prefix: str = "METERED_",
        env_path: Union[str, None] = None,
        limits: Union[dict[str, RateLimitConfig], None] = None,
        **kwargs,
    ):
        """Build a tracker whose limits are `limits` (or the built-in table) overridden by env."""
        default = kwargs.get("default", DEFAULT_API)
        table = load_limits_from_env(prefix=prefix, env_path=env_path, base=limits, default=default)
        return cls(table, **kwargs)


# ---------- Async tracker (asyncio) ----------


class AsyncWindowTracker(_Tracker):
    def __init__(
        self,
        limits: Union[dict[str, RateLimitConfig], None] = None,
        default: str = DEFAULT_API,
        store: Union[KeyValueStore, None] = None,
        observer: Union[Observer, None] = None,
        clock: Callable[[], float] = time.time,
        sleep: Union[Callable, None] = None,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        log_level: Union[int, None] = None,
    ):
        """Initialize an AsyncWindowTracker.

        Same arguments as WindowTracker, except `sleep` must be a coroutine function
        (asyncio.sleep by default).
        """
        super().__init__(limits, default, store, observer, clock, key_prefix, log_level)
        self._sleep = sleep or asyncio.sleep
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, api_name: str) -> asyncio.Lock:
        # created on first use so the lock binds to the running loop
        if api_name not in self._locks:
            self._locks[api_name] = asyncio.Lock()
        return self._locks[api_name]

    async def throttle(self, api_name: str) -> Admission:
        waited = 0.0
        waited_on = None
        while True:
            async with self._lock_for(api_name):
                count, wait, window = self._try_admit(api_name, waited_on)
            if window is None:
                return self._admitted(api_name, count, waited)
            self._notice_wait(api_name, window, wait)
            await self._sleep(wait)
            waited += wait
            waited_on = window.window_start

    @classmethod
    def from_env(
        cls,
        prefix: str = "METERED_",
        env_path: Union[str, None] = None,
        limits: Union[dict[str, RateLimitConfig], None] = None,
        **kwargs,
    ):
        default = kwargs.get("default", DEFAULT_API)
        table = load_limits_from_env(prefix=prefix, env_path=env_path, base=limits, default=default)
        return cls(table, **kwargs)
