"""
HTTP node adapter — generic outbound request for HTTP nodes.

  request(method, url, headers, body, timeout) -> HttpResponse(status, body)

- GET sends the body as query params; other methods send it as JSON
  (or raw text when the body is a non-JSON string)
- `Content-Type: application/json` unless the node overrides it
- Response body is parsed JSON when possible, else text
- Non-2xx and transport failures raise HttpCallError
- Optional retries (tenacity, exponential wait) on transport errors, 429 and 5xx
"""
from __future__ import annotations

import json
import structlog
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from tenacity import (
    AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential,
)

logger = structlog.get_logger()

_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE"}


class HttpCallError(Exception):
    """An HTTP node request failed (transport error or non-2xx status)."""

    def __init__(self, message: str, status: Optional[int] = None, body: Any = None):
        self.status = status
        self.body = body
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.status is None or self.status == 429 or self.status >= 500

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "body": self.body, "message": str(self)}


@dataclass
class HttpResponse:
    status: int
    body: Any
    headers: dict[str, str]


def _parse_body(response: httpx.Response) -> Any:
    if not response.content:
        return ""
    try:
        return response.json()
    except ValueError:
        return response.text


class HttpClient:
    """
    Thin async HTTP adapter over a shared httpx.AsyncClient.
    Pass `transport` (e.g. httpx.MockTransport) to stub the network in tests.
    """

    def __init__(
        self,
        default_timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_wait_multiplier: float = 1.0,
        retry_wait_max: float = 10.0,
    ):
        self.default_timeout = default_timeout
        self.retry_wait_multiplier = retry_wait_multiplier
        self.retry_wait_max = retry_wait_max
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(transport=self._transport, follow_redirects=True)
        return self._client

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        body: Any = None,
        timeout: Optional[float] = None,
        retries: int = 0,
    ) -> HttpResponse:
        method = (method or "GET").upper()
        if method not in _METHODS:
            raise HttpCallError(f"Unsupported HTTP method: {method}")

        attempts = max(retries, 0) + 1
        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=self.retry_wait_multiplier, max=self.retry_wait_max),
            retry=retry_if_exception(
                lambda e: isinstance(e, HttpCallError) and e.retryable
            ),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._send_once(method, url, headers, body, timeout)

    async def _send_once(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]],
        body: Any,
        timeout: Optional[float],
    ) -> HttpResponse:
        request_headers = {"Content-Type": "application/json", **(headers or {})}
        kwargs: dict[str, Any] = {
            "headers": request_headers,
            "timeout": timeout if timeout and timeout > 0 else self.default_timeout,
        }
        if body not in (None, "", {}):
            if method == "GET":
                kwargs["params"] = body if isinstance(body, dict) else None
            elif isinstance(body, (dict, list)):
                kwargs["content"] = json.dumps(body, ensure_ascii=False).encode()
            else:
                kwargs["content"] = str(body).encode()

        try:
            response = await self._get_client().request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("http_request_failed", method=method, url=url, error=str(e))
            raise HttpCallError(f"{method} {url} failed: {e}") from e

        parsed = _parse_body(response)
        if not response.is_success:
            logger.warning("http_request_error_status",
                           method=method, url=url, status=response.status_code)
            raise HttpCallError(
                f"{method} {url} returned {response.status_code}",
                status=response.status_code,
                body=parsed,
            )

        logger.info("http_request_completed", method=method, url=url, status=response.status_code)
        return HttpResponse(status=response.status_code, body=parsed, headers=dict(response.headers))

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
