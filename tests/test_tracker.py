import pytest

from metered import AsyncWindowTracker, MemoryStore, RateLimitConfig, WindowTracker

LIMITS = {"api": RateLimitConfig(requests_per_minute=3), "other": RateLimitConfig(2)}


def _tracker(clock, observer=None, **kw):
    return WindowTracker(LIMITS, default="api", clock=clock, sleep=clock.sleep, observer=observer, **kw)


def test_budget_admits_without_waiting(clock):
    tracker = _tracker(clock)
    for i in range(3):
        adm = tracker.throttle("api")
        assert adm.immediate
        assert adm.count == i + 1
        clock.advance(10)
    assert clock.sleeps == []


def test_over_budget_waits_for_window_rollover(clock, observer):
    tracker = _tracker(clock, observer)
    start = clock.now
    for _ in range(3):
        tracker.throttle("api")
        clock.advance(10)
    clock.advance(5)  # 35s into the window
    adm = tracker.throttle("api")
    assert clock.sleeps == [pytest.approx(25.0)]
    assert adm.waited == pytest.approx(25.0)
    assert not adm.immediate
    assert adm.count == 1
    usage = tracker.get_usage("api")
    assert usage.count == 1
    assert usage.remaining == 2  # noqa: PLR2004
    assert usage.resets_in == pytest.approx(60.0)
    assert clock.now == pytest.approx(start + 60)

    level, message, category, context = observer.events[0]
    assert level == "warning"
    assert category == "rate_limit"
    assert "Rate limit reached for api (3/3)" in message
    assert context["wait"] == pytest.approx(25.0)


def test_window_resets_after_sixty_seconds(clock):
    tracker = _tracker(clock)
    for _ in range(3):
        tracker.throttle("api")
    clock.advance(60)
    adm = tracker.throttle("api")
    assert adm.immediate
    assert adm.count == 1
    assert clock.sleeps == []


def test_get_usage_without_window(clock):
    usage = _tracker(clock).get_usage("api")
    assert usage.as_dict() == {"count": 0, "limit": 3, "remaining": 3, "resets_in": 0}


def test_get_usage_does_not_mutate(clock):
    tracker = _tracker(clock)
    tracker.throttle("api")
    clock.advance(20)
    first = tracker.get_usage("api")
    second = tracker.get_usage("api")
    assert first == second
    assert first.count == 1
    assert first.resets_in == pytest.approx(40.0)


def test_reset_clears_window(clock):
    tracker = _tracker(clock)
    for _ in range(3):
        tracker.throttle("api")
    assert tracker.get_usage("api").remaining == 0
    tracker.reset("api")
    usage = tracker.get_usage("api")
    assert usage.count == 0
    assert usage.remaining == usage.limit
    assert tracker.throttle("api").immediate


def test_apis_are_tracked_independently(clock):
    tracker = _tracker(clock)
    for _ in range(3):
        tracker.throttle("api")
    assert tracker.throttle("other").immediate
    report = tracker.usage_report()
    assert report["api"].count == 3  # noqa: PLR2004
    assert report["other"].count == 1


def test_unknown_api_uses_default_limit_but_own_window(clock):
    tracker = _tracker(clock)
    for _ in range(3):
        assert tracker.throttle("unlisted").immediate
    assert tracker.get_usage("api").count == 0
    assert tracker.get_usage("unlisted").limit == 3  # noqa: PLR2004


def test_idle_window_expires_from_store(clock):
    store = MemoryStore(clock=clock)
    tracker = _tracker(clock, store=store)
    tracker.throttle("api")
    assert store.get("ssf_rl_api") is not None
    clock.advance(121)
    assert store.get("ssf_rl_api") is None
    assert tracker.get_usage("api").count == 0


def test_future_window_start_restarts_instead_of_stalling(clock):
    store = MemoryStore(clock=clock)
    tracker = _tracker(clock, store=store)
    store.set("ssf_rl_api", {"count": 3, "window_start": clock.now + 30}, 120)
    adm = tracker.throttle("api")
    assert adm.immediate
    assert adm.count == 1
    assert clock.sleeps == []


def test_waiter_joins_window_rolled_by_another_caller(clock):
    tracker = WindowTracker(LIMITS, default="api", clock=clock)
    calls = []

    def sleep_while_other_caller_runs(seconds):
        clock.sleep(seconds)
        # a second caller gets in first once the window has rolled
        calls.append(tracker.throttle("api"))

    tracker._sleep = sleep_while_other_caller_runs
    for _ in range(3):
        tracker.throttle("api")
    adm = tracker.throttle("api")
    assert calls[0].count == 1
    assert adm.count == 2  # noqa: PLR2004
    assert tracker.get_usage("api").count == 2  # noqa: PLR2004


def test_custom_key_prefix(clock):
    store = MemoryStore(clock=clock)
    tracker = _tracker(clock, store=store, key_prefix="limits:")
    tracker.throttle("api")
    assert store.get("limits:api") == {"count": 1, "window_start": clock.now}


@pytest.mark.asyncio
async def test_async_tracker_waits_cooperatively(clock, observer):
    tracker = AsyncWindowTracker(
        LIMITS, default="api", clock=clock, sleep=clock.asleep, observer=observer
    )
    for _ in range(3):
        assert (await tracker.throttle("api")).immediate
    clock.advance(45)
    adm = await tracker.throttle("api")
    assert adm.waited == pytest.approx(15.0)
    assert adm.count == 1
    assert observer.levels() == ["warning"]


def test_usage_of_stale_window_reads_as_reset(clock):
    tracker = _tracker(clock)
    for _ in range(3):
        tracker.throttle("api")
    clock.advance(61)
    # still held by the store (TTL 120s) but older than the window
    assert tracker._store.get("ssf_rl_api") is not None
    usage = tracker.get_usage("api")
    assert usage.count == 0
    assert usage.remaining == usage.limit
    assert usage.resets_in == 0


def test_locks_are_created_once_per_api(clock):
    tracker = _tracker(clock)
    assert tracker._lock_for("api") is tracker._lock_for("api")
    assert tracker._lock_for("api") is not tracker._lock_for("other")


@pytest.mark.asyncio
async def test_async_lock_is_built_only_on_first_use(clock, monkeypatch):
    import asyncio  # noqa: PLC0415

    created = []
    real_lock = asyncio.Lock

    def counting_lock():
        created.append(1)
        return real_lock()

    tracker = AsyncWindowTracker(LIMITS, default="api", clock=clock, sleep=clock.asleep)
    monkeypatch.setattr("metered.tracker.asyncio.Lock", counting_lock)
    first = tracker._lock_for("api")
    for _ in range(3):
        assert tracker._lock_for("api") is first
        await tracker.throttle("api")
    assert len(created) == 1


def test_each_api_name_keeps_its_own_lock(clock):
    tracker = _tracker(clock)
    for name in ("unlisted", "unlisted", "also-unlisted"):
        tracker.throttle(name)
    assert sorted(tracker._locks) == ["also-unlisted", "unlisted"]
    assert tracker.get_usage("unlisted").count == 2  # noqa: PLR2004
