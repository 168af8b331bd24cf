"""Claude vision as an alternative critique model (AUDIT_BACKEND=claude).

Implements only the VisionModel half of the oracle: Claude judges renders,
it never produces them.
"""

from __future__ import annotations

import base64
from typing import Any

import anthropic
import structlog

from imagine.config import settings
from imagine.utils.oracle import ImagePart, Part

log = structlog.get_logger("claude")

MAX_TOKENS = 1024
_CLAUDE_IMAGE_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp")


def _image_block(part: ImagePart) -> dict[str, Any]:
    media_type = part.mime_type if part.mime_type in _CLAUDE_IMAGE_TYPES else "image/png"
    return {
        "type": "image",
        "source": {
            "type": "base64",
            "media_type": media_type,
            "data": base64.standard_b64encode(part.data).decode("ascii"),
        },
    }


def to_content_blocks(parts: list[Part]) -> list[dict[str, Any]]:
    blocks: list[dict[str, Any]] = []
    for item in parts:
        if isinstance(item, str):
            blocks.append({"type": "text", "text": item})
        elif isinstance(item, ImagePart):
            blocks.append(_image_block(item))
        else:
            raise ValueError(f"Unexpected message part type: {type(item).__name__}")
    return blocks


class ClaudeVisionModel:
    """VisionModel over the Anthropic Messages API."""

    def __init__(
        self,
        client: anthropic.AsyncAnthropic | None = None,
        *,
        model: str | None = None,
    ) -> None:
        self._client = client
        self.model = model or settings.claude_audit_model

    @property
    def client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)
        return self._client

    async def analyze(self, parts: list[Part]) -> str:
        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=MAX_TOKENS,
                messages=[
                    {"role": "user", "content": to_content_blocks(parts)}  # type: ignore[typeddict-item]
                ],
            )
        except anthropic.RateLimitError:
            log.warning("claude_rate_limited", model=self.model)
            raise
        except anthropic.APIStatusError as e:
            log.error("claude_api_error", model=self.model, status=e.status_code)
            raise

        return "".join(block.text for block in response.content if hasattr(block, "text"))
