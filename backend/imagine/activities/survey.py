"""Structural survey: the "measure the room" step before any render.

Asks the analysis model for floor area, ceiling height and a room category,
then runs the lighting analysis on the same photo. The survey is advisory:
the user confirms or overrides the numbers at the volume gate, and a failed
survey only means the gate opens in manual-entry mode.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog

from imagine.activities.context import PipelineContext
from imagine.activities.lighting import analyze_lighting
from imagine.errors import SurveyError
from imagine.models.contracts import (
    ROOM_CATEGORIES,
    GeometryEstimate,
    LightingProfile,
    PipelinePhase,
    RoomPhoto,
)
from imagine.utils.oracle import ImagePart
from imagine.utils.structured import StructuredResponseError, coerce_float, parse_json_object

log = structlog.get_logger("survey")

SURVEY_PROMPT = (
    "Analyze this ROOM PHOTO. Estimate floor area in square meters and ceiling height "
    "in meters. Classify the room as exactly one of: "
    + ", ".join(f'"{c}"' for c in ROOM_CATEGORIES)
    + '.\nJSON ONLY: { "area": number, "height": number, "roomType": string }'
)

# Anything outside these bounds is a misread, not a room
_AREA_RANGE_M2 = (1.0, 2000.0)
_HEIGHT_RANGE_M = (1.5, 15.0)


@dataclass(frozen=True)
class SurveyResult:
    geometry: GeometryEstimate
    lighting: LightingProfile


def _within(value: float | None, bounds: tuple[float, float]) -> bool:
    return value is not None and bounds[0] <= value <= bounds[1]


def build_geometry(data: dict[str, Any], previous: GeometryEstimate) -> GeometryEstimate:
    """Overlay a survey answer on `previous`.

    Numbers are taken only when plausible; the room category only when it is
    one of ROOM_CATEGORIES. A payload with no usable field is a parse failure.
    """
    area = coerce_float(data.get("area"))
    height = coerce_float(data.get("height"))
    raw_category = data.get("roomType")
    category = raw_category.strip().lower() if isinstance(raw_category, str) else None

    usable_area = _within(area, _AREA_RANGE_M2)
    usable_height = _within(height, _HEIGHT_RANGE_M)
    usable_category = category in ROOM_CATEGORIES

    if not (usable_area or usable_height or usable_category):
        raise StructuredResponseError(f"Survey answer has no usable fields: {list(data)}")
    if category is not None and not usable_category:
        log.info("survey_room_category_ignored", room_type=raw_category)

    return GeometryEstimate(
        area_m2=area if usable_area else previous.area_m2,  # type: ignore[arg-type]
        ceiling_height_m=height if usable_height else previous.ceiling_height_m,  # type: ignore[arg-type]
        room_category=category if usable_category else previous.room_category,  # type: ignore[arg-type]
    )


async def estimate_geometry(
    ctx: PipelineContext,
    photo: RoomPhoto,
    previous: GeometryEstimate,
) -> GeometryEstimate:
    """One survey call. Raises SurveyError on any failure."""
    parts = [ImagePart(photo.data, photo.mime_type), SURVEY_PROMPT]
    try:
        text = await ctx.call(lambda: ctx.model.analyze(parts), "survey")
    except Exception as exc:
        log.error("survey_call_failed", error_type=type(exc).__name__, error=str(exc)[:200])
        raise SurveyError(f"AI connection error: {str(exc)[:200]}", retryable=True) from exc

    try:
        return build_geometry(parse_json_object(text), previous)
    except StructuredResponseError as exc:
        log.warning("survey_parse_failed", text=text[:200])
        raise SurveyError("Could not read the room geometry from the photo") from exc


async def run_survey(
    ctx: PipelineContext,
    photo: RoomPhoto,
    geometry: GeometryEstimate | None = None,
    lighting: LightingProfile | None = None,
) -> SurveyResult:
    """Survey geometry, then lighting. Phases: scanning -> lighting.

    Raises SurveyError if the geometry step fails; lighting never raises.
    """
    ctx.reporter.phase(
        PipelinePhase.SCANNING, log="Scanning beams, pillars and openings...", progress=10
    )
    log.info("survey_start", aspect_ratio=photo.aspect_ratio)

    estimate = await estimate_geometry(ctx, photo, geometry or GeometryEstimate())
    ctx.reporter.phase(PipelinePhase.SCANNING, log="Building geometry mesh...", progress=60)

    profile = await analyze_lighting(ctx, photo, lighting)
    ctx.reporter.phase(PipelinePhase.LIGHTING, log="Structural analysis complete.", progress=90)

    log.info(
        "survey_complete",
        area_m2=estimate.area_m2,
        ceiling_height_m=estimate.ceiling_height_m,
        volume_m3=estimate.volume_m3,
        room_category=estimate.room_category,
        light_direction=profile.direction.value,
    )
    return SurveyResult(geometry=estimate, lighting=profile)
