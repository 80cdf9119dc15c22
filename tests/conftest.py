import pytest


class FakeClock:
    """Epoch clock that only moves when something sleeps on it."""

    def __init__(self, start=1_700_000_000.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds

    async def asleep(self, seconds):
        self.sleep(seconds)


class RecordingObserver:
    def __init__(self):
        self.events = []

    def observe(self, level, message, category="rate_limit", context=None):
        self.events.append((level, message, category, context or {}))

    def levels(self):
        return [e[0] for e in self.events]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def observer():
    return RecordingObserver()
