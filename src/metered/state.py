from dataclasses import dataclass
from typing import Any, Union

from .types import WINDOW_SECONDS


@dataclass
class UsageWindow:
    count: int = 0
    window_start: float = 0.0

    def elapsed(self, now: float) -> float:
        return now - self.window_start

    def expired(self, now: float) -> bool:
        return self.elapsed(now) >= WINDOW_SECONDS

    def resets_in(self, now: float) -> float:
        return max(0.0, WINDOW_SECONDS - self.elapsed(now))

    # stored as a plain dict so any key-value backend can hold it
    def to_value(self) -> dict[str, Any]:
        return {"count": self.count, "window_start": self.window_start}

    @classmethod
    def from_value(cls, value: Union[dict[str, Any], None]) -> Union["UsageWindow", None]:
        if not value:
            return None
        try:
            return cls(count=int(value["count"]), window_start=float(value["window_start"]))
        except (KeyError, TypeError, ValueError):
            # unreadable entries count as absent
            return None
