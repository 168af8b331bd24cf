"""Lighting analysis: where the light comes from and how warm it is.

Best-effort. Whatever goes wrong, the caller gets a usable profile back
(the previous one, or Natural / 4500K) and the survey carries on.
"""

from __future__ import annotations

from typing import Any

import structlog

from imagine.activities.context import PipelineContext
from imagine.models.contracts import LightDirection, LightingProfile, PipelinePhase, RoomPhoto
from imagine.utils.oracle import ImagePart
from imagine.utils.structured import parse_json_object

log = structlog.get_logger("lighting")

LIGHTING_PROMPT = """\
ANALYZE IMAGE PHYSICS & CAMERA LENS.
1. Identify Main Light Entry Point (Window left, Ceiling light, etc).
2. Estimate the dominant color temperature in Kelvin.
3. Estimate Focal Length (Wide Angle 16mm, Standard 35mm, Telephoto 85mm).
JSON ONLY: { "direction": "Left"|"Right"|"Center"|"Top"|"Natural", \
"temperature": "string", "focal_length": "string" }"""

_DIRECTIONS = {d.value.lower(): d for d in LightDirection}


def build_lighting_profile(data: dict[str, Any], fallback: LightingProfile) -> LightingProfile:
    """Merge a lighting answer over `fallback`, field by field."""
    direction = fallback.direction
    raw_direction = data.get("direction")
    if isinstance(raw_direction, str):
        direction = _DIRECTIONS.get(raw_direction.strip().lower(), fallback.direction)

    temperature = data.get("temperature")
    if isinstance(temperature, int | float) and not isinstance(temperature, bool):
        temperature = f"{int(temperature)}K"
    if not isinstance(temperature, str) or not temperature.strip():
        temperature = fallback.color_temperature

    focal_length = data.get("focal_length")
    if not isinstance(focal_length, str) or not focal_length.strip():
        focal_length = fallback.focal_length

    return LightingProfile(
        direction=direction,
        color_temperature=temperature.strip(),
        focal_length=focal_length.strip() if focal_length else None,
    )


async def analyze_lighting(
    ctx: PipelineContext,
    photo: RoomPhoto,
    previous: LightingProfile | None = None,
) -> LightingProfile:
    """Infer light direction, colour temperature and focal length. Never raises."""
    fallback = previous or LightingProfile()
    ctx.reporter.phase(PipelinePhase.LIGHTING, log="Tracing light direction...")
    parts = [ImagePart(photo.data, photo.mime_type), LIGHTING_PROMPT]

    try:
        text = await ctx.call(lambda: ctx.model.analyze(parts), "lighting")
        data = parse_json_object(text)
    except Exception as exc:
        log.warning(
            "lighting_analysis_skipped", error=str(exc)[:200], error_type=type(exc).__name__
        )
        return fallback

    profile = build_lighting_profile(data, fallback)
    log.info(
        "lighting_analysis_complete",
        direction=profile.direction.value,
        temperature=profile.color_temperature,
        focal_length=profile.focal_length,
    )
    return profile
