"""Gemini-backed implementation of the model oracle.

Structured calls (survey, lighting, audit) go to the analysis model with a
JSON response mime type. Renders go to the image model with the target aspect
ratio and a low temperature. The SDK is synchronous here, so each call runs
in a worker thread under a hard timeout.
"""

from __future__ import annotations

import asyncio

import structlog
from google import genai
from google.genai import types

from imagine.config import settings
from imagine.utils.oracle import ImagePart, Part, RenderResponse

logger = structlog.get_logger()


def get_client() -> genai.Client:
    """Create a Gemini client using the configured API key."""
    return genai.Client(api_key=settings.google_ai_api_key)


def to_gemini_parts(parts: list[Part]) -> list[types.Part]:
    converted: list[types.Part] = []
    for item in parts:
        if isinstance(item, str):
            converted.append(types.Part(text=item))
        elif isinstance(item, ImagePart):
            converted.append(types.Part.from_bytes(data=item.data, mime_type=item.mime_type))
        else:
            raise ValueError(f"Unexpected message part type: {type(item).__name__}")
    return converted


def extract_image_bytes(response: types.GenerateContentResponse) -> bytes | None:
    """Return the first inline image payload of a response, if any."""
    if not response.candidates:
        return None
    content = response.candidates[0].content
    if content is None or content.parts is None:
        return None
    for part in content.parts:
        if part.inline_data is not None and part.inline_data.data:
            return part.inline_data.data
    return None


def extract_text(response: types.GenerateContentResponse) -> str:
    """Extract all text parts from a Gemini response."""
    if not response.candidates:
        return ""
    content = response.candidates[0].content
    if content is None or content.parts is None:
        return ""
    return "\n".join(part.text for part in content.parts if part.text is not None)


def make_render_config(aspect_ratio: str, temperature: float) -> types.GenerateContentConfig:
    return types.GenerateContentConfig(
        response_modalities=["TEXT", "IMAGE"],
        temperature=temperature,
        image_config=types.ImageConfig(aspect_ratio=aspect_ratio),
    )


ANALYSIS_CONFIG = types.GenerateContentConfig(response_mime_type="application/json")


class GeminiImageModel:
    """ImageModel over google-genai."""

    def __init__(
        self,
        client: genai.Client | None = None,
        *,
        analysis_model: str | None = None,
        render_model: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self._client = client
        self.analysis_model = analysis_model or settings.analysis_model
        self.render_model = render_model or settings.render_model
        self.timeout = timeout or settings.model_timeout_seconds

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            self._client = get_client()
        return self._client

    async def _generate(
        self,
        model: str,
        contents: list[types.Part],
        config: types.GenerateContentConfig,
    ) -> types.GenerateContentResponse:
        async with asyncio.timeout(self.timeout):
            return await asyncio.to_thread(
                self.client.models.generate_content,
                model=model,
                contents=contents,
                config=config,
            )

    async def analyze(self, parts: list[Part]) -> str:
        contents = to_gemini_parts(parts)
        response = await self._generate(self.analysis_model, contents, ANALYSIS_CONFIG)
        return extract_text(response)

    async def render(
        self,
        source: ImagePart,
        prompt: str,
        *,
        aspect_ratio: str,
        temperature: float,
    ) -> RenderResponse:
        logger.info(
            "gemini_render_start",
            model=self.render_model,
            aspect_ratio=aspect_ratio,
            prompt_chars=len(prompt),
        )
        response = await self._generate(
            self.render_model,
            to_gemini_parts([source, prompt]),
            make_render_config(aspect_ratio, temperature),
        )
        image = extract_image_bytes(response)
        text = extract_text(response)
        if image is None:
            logger.warning("gemini_no_image_response", gemini_text=text[:300])
        return RenderResponse(image=image, text=text)
