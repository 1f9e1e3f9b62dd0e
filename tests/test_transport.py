"""Tests for the httpx transport."""

import json

import httpx
import pytest

from lumi.clients.base import WireRequest
from lumi.clients.transport import HttpTransport, check_http
from lumi.models.errors import (
    APIKeyNotFoundError,
    InvalidResponseError,
    ProviderNetworkError,
    ProviderRequestError,
    RateLimitExceededError,
)


def transport_for(handler) -> HttpTransport:
    return HttpTransport("OpenAI", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


REQUEST = WireRequest(url="https://api.example.com/v1/chat", body={"model": "m"}, headers={"X-Test": "1"})


class TestStatusMapping:
    """Tests for mapping HTTP statuses onto provider errors."""

    def test_success_passes(self):
        """Test that 2xx statuses raise nothing."""
        check_http(200, "", "OpenAI")
        check_http(204, "", "OpenAI")

    def test_unauthorized_is_missing_key(self):
        """Test that 401 means the API key is missing or wrong."""
        with pytest.raises(APIKeyNotFoundError):
            check_http(401, "bad key", "OpenAI")

    def test_too_many_requests(self):
        """Test that 429 maps to the rate limit error."""
        with pytest.raises(RateLimitExceededError):
            check_http(429, "slow down", "OpenAI")

    def test_other_statuses_keep_code_and_truncated_body(self):
        """Test that other failures carry the status code and at most 200 body characters."""
        with pytest.raises(ProviderRequestError) as exc_info:
            check_http(503, "x" * 500, "OpenAI")

        assert exc_info.value.status_code == 503
        assert "OpenAI HTTP 503" in str(exc_info.value)
        assert str(exc_info.value).count("x") == 200


class TestHttpTransport:
    """Tests for sending and streaming over httpx."""

    @pytest.mark.asyncio
    async def test_send_posts_json(self):
        """Test that the body is sent as JSON with the request headers."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"ok": True})

        transport = transport_for(handler)
        payload = await transport.send(REQUEST)

        assert payload == {"ok": True}
        assert seen[0].method == "POST"
        assert seen[0].headers["X-Test"] == "1"
        assert json.loads(seen[0].read()) == {"model": "m"}
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_send_get_with_params(self):
        """Test that GET requests carry query parameters and no body."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"models": []})

        transport = transport_for(handler)
        await transport.send(WireRequest(url="http://localhost:11434/api/tags", body={}, method="GET", params={"a": "b"}))

        assert seen[0].method == "GET"
        assert seen[0].url.params["a"] == "b"
        assert seen[0].read() == b""

    @pytest.mark.asyncio
    async def test_send_maps_status(self):
        """Test that error statuses raise typed errors."""
        transport = transport_for(lambda request: httpx.Response(500, text="internal"))

        with pytest.raises(ProviderRequestError) as exc_info:
            await transport.send(REQUEST)
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_send_rejects_non_json(self):
        """Test that a non-JSON body is an invalid response."""
        transport = transport_for(lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(InvalidResponseError):
            await transport.send(REQUEST)

    @pytest.mark.asyncio
    async def test_connection_errors_are_network_errors(self):
        """Test that httpx connection failures become ProviderNetworkError."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        transport = transport_for(handler)

        with pytest.raises(ProviderNetworkError):
            await transport.send(REQUEST)

    @pytest.mark.asyncio
    async def test_timeouts_are_network_errors(self):
        """Test that httpx timeouts become ProviderNetworkError."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        transport = transport_for(handler)

        with pytest.raises(ProviderNetworkError, match="timed out"):
            await transport.send(REQUEST)

    @pytest.mark.asyncio
    async def test_stream_yields_lines(self):
        """Test that streamed bodies are yielded line by line."""
        body = b'data: {"a": 1}\n\ndata: [DONE]\n\n'
        transport = transport_for(lambda request: httpx.Response(200, content=body))

        lines = [line async for line in transport.stream(REQUEST)]

        assert 'data: {"a": 1}' in lines
        assert "data: [DONE]" in lines

    @pytest.mark.asyncio
    async def test_stream_maps_status(self):
        """Test that a failing stream raises before yielding lines."""
        transport = transport_for(lambda request: httpx.Response(429, text="slow down"))

        with pytest.raises(RateLimitExceededError):
            async for _ in transport.stream(REQUEST):
                pass
