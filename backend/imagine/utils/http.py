"""Fetch a room photo from a URL for sessions that ingest by link instead of upload."""

from __future__ import annotations

import httpx

from imagine.errors import ImagineError

DOWNLOAD_TIMEOUT = 30.0


async def fetch_photo_bytes(client: httpx.AsyncClient, url: str, max_bytes: int) -> bytes:
    """Fetch and sanity-check a single image using the given HTTP client."""
    try:
        response = await client.get(url, timeout=DOWNLOAD_TIMEOUT, follow_redirects=True)
    except httpx.TimeoutException as exc:
        raise ImagineError(f"Timeout downloading image: {url[:100]}", retryable=True) from exc
    except httpx.RequestError as exc:
        raise ImagineError(
            f"Network error downloading image: {url[:100]}: {type(exc).__name__}",
            retryable=True,
        ) from exc

    if response.status_code >= 400:
        # 429 and 5xx may clear up; other 4xx will not
        retryable = response.status_code >= 500 or response.status_code == 429
        raise ImagineError(
            f"HTTP {response.status_code} downloading image: {url[:100]}",
            retryable=retryable,
        )

    content_type = response.headers.get("content-type", "")
    if content_type and not content_type.startswith("image/"):
        raise ImagineError(f"Expected image content-type, got: {content_type}")

    if len(response.content) > max_bytes:
        raise ImagineError(f"Image exceeds {max_bytes // (1024 * 1024)} MB limit")
    return response.content


async def download_photo(url: str, max_bytes: int) -> bytes:
    async with httpx.AsyncClient() as client:
        return await fetch_photo_bytes(client, url, max_bytes)
