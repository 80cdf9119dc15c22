import contextlib
import logging
from typing import Any, Protocol, Union

from .types import Level

DEFAULT_CATEGORY = "rate_limit"

_LEVELS = {"debug": logging.DEBUG, "info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}


class Observer(Protocol):
    def observe(
        self,
        level: Level,
        message: str,
        category: str = DEFAULT_CATEGORY,
        context: Union[dict[str, Any], None] = None,
    ) -> None: ...


class LoggingObserver:
    """Forward observations to a stdlib logger; category and context ride along in `extra`."""

    def __init__(self, logger: Union[logging.Logger, None] = None):
        self.logger = logger or logging.getLogger("metered")

    def observe(self, level, message, category=DEFAULT_CATEGORY, context=None):
        self.logger.log(
            _LEVELS.get(level, logging.WARNING),
            message,
            extra={"category": category, "context": dict(context or {})},
        )


def emit(
    observer: Union[Observer, None],
    level: Level,
    message: str,
    category: str = DEFAULT_CATEGORY,
    context: Union[dict[str, Any], None] = None,
) -> None:
    """Fire-and-forget: a broken observer never changes the caller's control flow."""
    if observer is None:
        return
    with contextlib.suppress(Exception):
        observer.observe(level, message, category, context)
