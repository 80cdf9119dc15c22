from typing import Union

EXHAUSTED_KIND = "rate_limit_exhausted"


class MeteredError(Exception):
    """Base class for errors raised by metered."""


class ApiError(MeteredError):
    """A failed upstream call, described by a short kind code and a message.

    Work functions may raise it or return it; both count as a failed attempt.
    """

    def __init__(self, kind: str, message: str = "", status_code: Union[int, None] = None):
        self.kind = kind
        self.message = message
        self.status_code = status_code
        super().__init__(message or kind)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind!r}, message={self.message!r})"


class RetriesExhaustedError(ApiError):
    """Every attempt failed with a retryable error."""

    def __init__(self, api_name: str, retries: int, last_message: str):
        self.api_name = api_name
        self.retries = retries
        self.last_message = last_message
        super().__init__(
            EXHAUSTED_KIND,
            f"API request failed after {retries} retries: {last_message}",
        )
