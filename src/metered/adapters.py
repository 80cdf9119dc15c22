import contextlib
import json
from dataclasses import dataclass, field
from typing import Any

from .errors import ApiError
from .executor import AsyncRetryingExecutor, RetryingExecutor

HTTP_ERROR_MIN = 400
HTTP_TOO_MANY_REQUESTS = 429
# Response bodies are clipped before they go into error messages
MAX_BODY_IN_MESSAGE = 200


def error_from_response(status: int, reason: str = "", body: str = "") -> ApiError:
    """Describe an error response so the classifier can see its status code."""
    kind = "rate_limited" if status == HTTP_TOO_MANY_REQUESTS else f"http_{status}"
    message = f"HTTP {status}"
    if reason:
        message += f" {reason}"
    if body:
        message += f": {body[:MAX_BODY_IN_MESSAGE]}"
    return ApiError(kind, message, status_code=status)


# ---------- requests (sync) ----------
class RequestsClient:
    """Send each request through a RetryingExecutor; error statuses become ApiError."""

    def __init__(self, executor: RetryingExecutor, api_name: str, session=None):
        self.executor = executor
        self.api_name = api_name
        self.session = session
        self._own_session = False

    def __enter__(self):
        if self.session is None:
            import requests  # noqa: PLC0415

            self.session = requests.Session()
            self._own_session = True
        return self

    def __exit__(self, exc_type, exc, tb):
        if self._own_session:
            with contextlib.suppress(Exception):
                self.session.close()
            self.session = None
            self._own_session = False
        return False

    def request(self, method, url, **kwargs):
        sess = self.session
        if sess is None:
            import requests  # noqa: PLC0415

            sess = requests

        def _attempt():
            resp = sess.request(method, url, **kwargs)
            if resp.status_code >= HTTP_ERROR_MIN:
                err = error_from_response(resp.status_code, resp.reason or "", resp.text or "")
                with contextlib.suppress(Exception):
                    resp.close()
                return err
            return resp

        return self.executor.execute(self.api_name, _attempt)

    def get(self, url, **kw):
        return self.request("GET", url, **kw)

    def post(self, url, **kw):
        return self.request("POST", url, **kw)

    def put(self, url, **kw):
        return self.request("PUT", url, **kw)

    def delete(self, url, **kw):
        return self.request("DELETE", url, **kw)


# ---------- httpx (async) ----------
class HttpxClient:
    def __init__(self, executor: AsyncRetryingExecutor, api_name: str, client=None):
        self.executor = executor
        self.api_name = api_name
        self.client = client
        self._internal_client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if self._internal_client is not None:
            with contextlib.suppress(Exception):
                await self._internal_client.aclose()
            self._internal_client = None
        return False

    def _client(self):
        if self.client is not None:
            return self.client
        if self._internal_client is None:
            import httpx  # noqa: PLC0415

            self._internal_client = httpx.AsyncClient()
        return self._internal_client

    async def request(self, method, url, **kwargs):
        client = self._client()

        async def _attempt():
            resp = await client.request(method, url, **kwargs)
            if resp.status_code >= HTTP_ERROR_MIN:
                return error_from_response(
                    resp.status_code, resp.reason_phrase or "", resp.text or ""
                )
            return resp

        return await self.executor.execute(self.api_name, _attempt)

    async def get(self, url, **kw):
        return await self.request("GET", url, **kw)

    async def post(self, url, **kw):
        return await self.request("POST", url, **kw)

    async def put(self, url, **kw):
        return await self.request("PUT", url, **kw)

    async def delete(self, url, **kw):
        return await self.request("DELETE", url, **kw)


# ---------- aiohttp (async) ----------
@dataclass
class AiohttpResult:
    """Body read inside the attempt; the aiohttp response is already released."""

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def text(self, encoding: str = "utf-8") -> str:
        return self.body.decode(encoding, errors="replace")

    def json(self) -> Any:
        return json.loads(self.body)


class AiohttpClient:
    def __init__(self, executor: AsyncRetryingExecutor, api_name: str, session):
        self.executor = executor
        self.api_name = api_name
        self.session = session

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def request(self, method, url, **kwargs) -> AiohttpResult:
        async def _attempt():
            async with self.session.request(method, url, **kwargs) as resp:
                body = await resp.read()
                if resp.status >= HTTP_ERROR_MIN:
                    return error_from_response(
                        resp.status, resp.reason or "", body.decode("utf-8", errors="replace")
                    )
                return AiohttpResult(resp.status, dict(resp.headers), body)

        return await self.executor.execute(self.api_name, _attempt)

    async def get(self, url, **kw):
        return await self.request("GET", url, **kw)

    async def post(self, url, **kw):
        return await self.request("POST", url, **kw)

    async def put(self, url, **kw):
        return await self.request("PUT", url, **kw)

    async def delete(self, url, **kw):
        return await self.request("DELETE", url, **kw)
