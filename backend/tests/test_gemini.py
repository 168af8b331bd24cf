"""Tests for the Gemini adapter (backend/imagine/utils/gemini.py).

The genai client is mocked; no API keys needed.
"""

from unittest.mock import MagicMock

import pytest
from google.genai import types

from imagine.utils.gemini import (
    ANALYSIS_CONFIG,
    GeminiImageModel,
    extract_image_bytes,
    extract_text,
    make_render_config,
    to_gemini_parts,
)
from imagine.utils.oracle import ImageModel, ImagePart
from tests.fakes import make_render


def _response(*parts: types.Part) -> types.GenerateContentResponse:
    return types.GenerateContentResponse(
        candidates=[types.Candidate(content=types.Content(role="model", parts=list(parts)))]
    )


def _image_part(data: bytes) -> types.Part:
    return types.Part(inline_data=types.Blob(data=data, mime_type="image/png"))


class TestResponseHelpers:
    def test_extract_text_joins_text_parts(self):
        response = _response(
            types.Part(text="first"), _image_part(b"x"), types.Part(text="second")
        )
        assert extract_text(response) == "first\nsecond"

    def test_extract_image_returns_first_inline_payload(self):
        response = _response(types.Part(text="here"), _image_part(b"one"), _image_part(b"two"))
        assert extract_image_bytes(response) == b"one"

    def test_no_candidates(self):
        response = types.GenerateContentResponse(candidates=[])
        assert extract_text(response) == ""
        assert extract_image_bytes(response) is None

    def test_text_only_response_has_no_image(self):
        assert extract_image_bytes(_response(types.Part(text="I can't do that"))) is None


class TestRequestHelpers:
    def test_parts_conversion(self):
        parts = to_gemini_parts(["describe", ImagePart(b"\x89PNG", "image/png")])
        assert parts[0].text == "describe"
        assert parts[1].inline_data.data == b"\x89PNG"
        assert parts[1].inline_data.mime_type == "image/png"

    def test_rejects_unknown_part(self):
        with pytest.raises(ValueError):
            to_gemini_parts([42])  # type: ignore[list-item]

    def test_render_config(self):
        config = make_render_config("16:9", 0.4)
        assert config.response_modalities == ["TEXT", "IMAGE"]
        assert config.temperature == pytest.approx(0.4)
        assert config.image_config.aspect_ratio == "16:9"

    def test_analysis_config_requests_json(self):
        assert ANALYSIS_CONFIG.response_mime_type == "application/json"


class TestGeminiImageModel:
    def test_satisfies_protocol(self):
        assert isinstance(GeminiImageModel(client=MagicMock()), ImageModel)

    @pytest.mark.asyncio
    async def test_analyze_uses_analysis_model(self):
        client = MagicMock()
        client.models.generate_content.return_value = _response(types.Part(text='{"area": 20}'))
        model = GeminiImageModel(client, analysis_model="gemini-a", render_model="gemini-r")

        text = await model.analyze(["prompt", ImagePart(b"img")])

        assert text == '{"area": 20}'
        kwargs = client.models.generate_content.call_args.kwargs
        assert kwargs["model"] == "gemini-a"
        assert kwargs["config"] is ANALYSIS_CONFIG
        assert len(kwargs["contents"]) == 2

    @pytest.mark.asyncio
    async def test_render_returns_image_and_text(self):
        png = make_render()
        client = MagicMock()
        client.models.generate_content.return_value = _response(
            types.Part(text="Done."), _image_part(png)
        )
        model = GeminiImageModel(client, render_model="gemini-r")

        result = await model.render(
            ImagePart(b"src"), "make it cozy", aspect_ratio="3:4", temperature=0.4
        )

        assert result.image == png
        assert result.text == "Done."
        kwargs = client.models.generate_content.call_args.kwargs
        assert kwargs["model"] == "gemini-r"
        assert kwargs["config"].image_config.aspect_ratio == "3:4"
        # Source image precedes the instruction
        assert kwargs["contents"][0].inline_data.data == b"src"
        assert kwargs["contents"][1].text == "make it cozy"

    @pytest.mark.asyncio
    async def test_render_without_image(self):
        client = MagicMock()
        client.models.generate_content.return_value = _response(types.Part(text="Blocked"))
        result = await GeminiImageModel(client).render(
            ImagePart(b"src"), "x", aspect_ratio="1:1", temperature=0.4
        )
        assert result.image is None
        assert result.text == "Blocked"

    @pytest.mark.asyncio
    async def test_sdk_errors_propagate(self):
        client = MagicMock()
        client.models.generate_content.side_effect = RuntimeError("429 RESOURCE_EXHAUSTED")
        with pytest.raises(RuntimeError, match="RESOURCE_EXHAUSTED"):
            await GeminiImageModel(client).analyze(["x"])
