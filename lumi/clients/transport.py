"""HTTP transport shared by the JSON-over-HTTP adapters."""

from collections.abc import AsyncGenerator
from typing import Any, Protocol

import httpx

from lumi.clients.base import WireRequest
from lumi.models.errors import (
    APIKeyNotFoundError,
    InvalidResponseError,
    ProviderNetworkError,
    ProviderRequestError,
    RateLimitExceededError,
)
from lumi.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 120.0
ERROR_BODY_LIMIT = 200


class Transport(Protocol):
    """Sends built requests and yields raw response lines for streams."""

    async def send(self, request: WireRequest) -> dict[str, Any]: ...

    def stream(self, request: WireRequest) -> AsyncGenerator[str, None]: ...

    async def aclose(self) -> None: ...


def check_http(status_code: int, body: str, provider: str) -> None:
    """Map a non-2xx status onto the provider error taxonomy."""
    if 200 <= status_code < 300:
        return
    if status_code == 401:
        raise APIKeyNotFoundError(provider)
    if status_code == 429:
        raise RateLimitExceededError()
    raise ProviderRequestError(f"{provider} HTTP {status_code}: {body[:ERROR_BODY_LIMIT]}", status_code=status_code)


class HttpTransport:
    """httpx-based transport with a fixed per-call timeout."""

    def __init__(
        self,
        provider_name: str,
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        self.provider_name = provider_name
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    def _request_kwargs(self, request: WireRequest) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"headers": request.headers}
        if request.params:
            kwargs["params"] = request.params
        if request.method.upper() != "GET":
            kwargs["json"] = request.body
        return kwargs

    async def send(self, request: WireRequest) -> dict[str, Any]:
        logger.debug(f"{request.method} {request.url} ({self.provider_name})")
        try:
            response = await self._client.request(request.method, request.url, **self._request_kwargs(request))
        except httpx.TimeoutException as e:
            raise ProviderNetworkError(f"Request to {self.provider_name} timed out.") from e
        except httpx.RequestError as e:
            logger.warning(f"{self.provider_name} request failed: {e}")
            raise ProviderNetworkError() from e

        check_http(response.status_code, response.text, self.provider_name)

        try:
            payload = response.json()
        except ValueError as e:
            raise InvalidResponseError() from e
        if not isinstance(payload, dict):
            raise InvalidResponseError()
        return payload

    async def stream(self, request: WireRequest) -> AsyncGenerator[str, None]:
        """Yield response lines; the connection is closed when the generator exits."""
        logger.debug(f"Streaming {request.method} {request.url} ({self.provider_name})")
        try:
            async with self._client.stream(request.method, request.url, **self._request_kwargs(request)) as response:
                if not 200 <= response.status_code < 300:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    check_http(response.status_code, body, self.provider_name)
                async for line in response.aiter_lines():
                    yield line
        except httpx.TimeoutException as e:
            raise ProviderNetworkError(f"Stream from {self.provider_name} timed out.") from e
        except httpx.RequestError as e:
            logger.warning(f"{self.provider_name} stream failed: {e}")
            raise ProviderNetworkError() from e

    async def aclose(self) -> None:
        await self._client.aclose()
