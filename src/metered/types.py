from dataclasses import dataclass
from typing import Literal, Union

# Length of the accounting window and how long an idle window survives in the store
WINDOW_SECONDS = 60
WINDOW_TTL_SECONDS = 120

DEFAULT_API = "openai"

Level = Literal["warning", "error"]


@dataclass(frozen=True)
class RateLimitConfig:
    requests_per_minute: int = 30
    max_retries: int = 3
    # seconds
    base_delay: float = 2.0
    max_delay: float = 60.0

    def __post_init__(self):
        if self.requests_per_minute < 1:
            raise ValueError("requests_per_minute must be >= 1")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")


DEFAULT_LIMITS: dict[str, RateLimitConfig] = {
    "openai": RateLimitConfig(requests_per_minute=30, max_retries=3, base_delay=2, max_delay=60),
    "gsc": RateLimitConfig(requests_per_minute=50, max_retries=3, base_delay=1, max_delay=30),
}


def resolve_config(
    limits: dict[str, RateLimitConfig], api_name: str, default: str = DEFAULT_API
) -> RateLimitConfig:
    """Return the config for api_name, falling back to the default entry."""
    cfg = limits.get(api_name)
    if cfg is not None:
        return cfg
    try:
        return limits[default]
    except KeyError:
        raise KeyError(f"no rate limit for {api_name!r} and no default entry {default!r}") from None


@dataclass(frozen=True)
class Admission:
    api_name: str
    count: int
    waited: float = 0.0

    @property
    def immediate(self) -> bool:
        return self.waited <= 0


@dataclass(frozen=True)
class UsageSnapshot:
    api_name: str
    count: int
    limit: int
    remaining: int
    resets_in: float

    def as_dict(self) -> dict[str, Union[int, float]]:
        return {
            "count": self.count,
            "limit": self.limit,
            "remaining": self.remaining,
            "resets_in": self.resets_in,
        }


@dataclass(frozen=True)
class AttemptOutcome:
    success: bool
    error_kind: Union[str, None] = None
    error_message: str = ""
