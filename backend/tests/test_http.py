"""Tests for photo download by URL (backend/imagine/utils/http.py)."""

import httpx
import pytest

from imagine.errors import ImagineError
from imagine.utils.http import fetch_photo_bytes
from tests.fakes import make_render

_URL = "https://photos.example.com/room.png"


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestFetchPhotoBytes:
    @pytest.mark.asyncio
    async def test_returns_image_bytes(self):
        png = make_render()

        def handler(request):
            return httpx.Response(200, content=png, headers={"content-type": "image/png"})

        async with _client(handler) as client:
            assert await fetch_photo_bytes(client, _URL, 1024 * 1024) == png

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self):
        async with _client(lambda request: httpx.Response(503)) as client:
            with pytest.raises(ImagineError, match="HTTP 503") as exc_info:
                await fetch_photo_bytes(client, _URL, 1024)
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_not_found_is_permanent(self):
        async with _client(lambda request: httpx.Response(404)) as client:
            with pytest.raises(ImagineError) as exc_info:
                await fetch_photo_bytes(client, _URL, 1024)
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_rejects_non_image_content_type(self):
        def handler(request):
            return httpx.Response(
                200, text="<html></html>", headers={"content-type": "text/html"}
            )

        async with _client(handler) as client:
            with pytest.raises(ImagineError, match="content-type"):
                await fetch_photo_bytes(client, _URL, 1024)

    @pytest.mark.asyncio
    async def test_rejects_oversize_payload(self):
        def handler(request):
            return httpx.Response(
                200, content=b"x" * 2048, headers={"content-type": "image/jpeg"}
            )

        async with _client(handler) as client:
            with pytest.raises(ImagineError, match="limit"):
                await fetch_photo_bytes(client, _URL, 1024)

    @pytest.mark.asyncio
    async def test_network_error_is_retryable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(ImagineError, match="Network error") as exc_info:
                await fetch_photo_bytes(client, _URL, 1024)
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        async with _client(handler) as client:
            with pytest.raises(ImagineError, match="Timeout") as exc_info:
                await fetch_photo_bytes(client, _URL, 1024)
        assert exc_info.value.retryable is True
