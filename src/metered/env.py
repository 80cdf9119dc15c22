import os
from typing import Union

from .types import DEFAULT_API, DEFAULT_LIMITS, RateLimitConfig

DEFAULT_PREFIX = "METERED_"

_FIELDS = ("requests_per_minute", "max_retries", "base_delay", "max_delay")


def _parse_env_file(env_path: str) -> dict[str, str]:
    """Parse a simple .env file into a dict without modifying os.environ.

    Supports basic KEY=VALUE pairs, ignoring comments and blank lines.
    Surrounding single/double quotes are stripped if present.
    """
    values: dict[str, str] = {}
    try:
        with open(env_path) as f:
            for raw_line in f:
                line = raw_line.strip()
                if not line or line.startswith("#"):
                    continue
                if "=" not in line:
                    continue
                key, val = line.split("=", 1)
                key = key.strip()
                val = val.strip().strip('"').strip("'")
                if key:
                    values[key] = val
    except FileNotFoundError:
        # Silently ignore missing file to make the helper easy to use
        pass
    return values


def _parse_limit(raw: str, fallback: RateLimitConfig) -> RateLimitConfig:
    parts = [p.strip() for p in raw.split(",")]
    if not parts or not parts[0] or len(parts) > len(_FIELDS):
        raise ValueError(f"expected rpm[,max_retries[,base_delay[,max_delay]]], got {raw!r}")
    values = {
        "requests_per_minute": fallback.requests_per_minute,
        "max_retries": fallback.max_retries,
        "base_delay": fallback.base_delay,
        "max_delay": fallback.max_delay,
    }
    for field, part in zip(_FIELDS, parts):
        if not part:
            continue
        values[field] = int(part) if field in ("requests_per_minute", "max_retries") else float(part)
    return RateLimitConfig(**values)


def load_limits_from_env(
    prefix: str = DEFAULT_PREFIX,
    env_path: Union[str, None] = None,
    base: Union[dict[str, RateLimitConfig], None] = None,
    default: str = DEFAULT_API,
) -> dict[str, RateLimitConfig]:
    """Build a rate limit table from environment variables.

    Each variable `<prefix><NAME>=rpm[,max_retries[,base_delay[,max_delay]]]` defines or
    overrides the entry for `name` (lowercased). Empty or missing fields inherit from the
    existing entry for that name, else from the default entry of `base`.

    - `base` is the table to start from (the built-in DEFAULT_LIMITS when None).
    - If 'env_path' is provided, variables from the .env file will be used to augment
        lookups (without mutating the process environment). Values in the actual environment
        take precedence over the file.
    """
    # Build a lookup map: actual environment takes precedence over .env file
    file_env = _parse_env_file(env_path) if env_path else {}
    env_map: dict[str, str] = {**file_env, **os.environ}

    overrides = {
        var[len(prefix) :].lower(): raw
        for var, raw in env_map.items()
        if var.startswith(prefix) and len(var) > len(prefix) and raw.strip()
    }
    limits = dict(DEFAULT_LIMITS if base is None else base)
    # the default entry first, so new names inherit its overridden values
    for name in sorted(overrides, key=lambda n: n != default):
        fallback = limits.get(name) or limits.get(default) or RateLimitConfig()
        limits[name] = _parse_limit(overrides[name], fallback)
    return limits
