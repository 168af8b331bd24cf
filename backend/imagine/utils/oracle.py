"""Narrow capability interfaces over the hosted models.

Every pipeline component talks to one of these protocols instead of an SDK,
so tests can drive the whole loop with a scripted stand-in.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class ImagePart:
    data: bytes
    mime_type: str = "image/jpeg"


# A multimodal request is an ordered list of text and image parts.
Part = str | ImagePart


@dataclass(frozen=True)
class RenderResponse:
    image: bytes | None
    text: str = ""


@runtime_checkable
class VisionModel(Protocol):
    async def analyze(self, parts: list[Part]) -> str:
        """Send text+image parts and return the text answer (JSON requested)."""
        ...


@runtime_checkable
class ImageModel(VisionModel, Protocol):
    async def render(
        self,
        source: ImagePart,
        prompt: str,
        *,
        aspect_ratio: str,
        temperature: float,
    ) -> RenderResponse:
        """Edit `source` following `prompt`; the first image part wins."""
        ...
