"""Imagine contract models.

Shared by the pipeline activities, the session workflow and the HTTP layer.
Image payloads travel as raw bytes inside the process; only the API edge
deals with uploads and downloads.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, computed_field

# === Shared Types ===

AspectRatio = Literal["1:1", "3:4", "4:3", "9:16", "16:9"]

ROOM_CATEGORIES: tuple[str, ...] = (
    "living room",
    "dining room",
    "kitchen",
    "master bedroom",
    "bathroom",
    "hallway",
    "entrance hall",
    "terrace",
)
DEFAULT_ROOM_CATEGORY = "living room"


class PipelinePhase(StrEnum):
    IDLE = "idle"
    QUEUED = "queued"
    SCANNING = "scanning"
    LIGHTING = "lighting"
    GENERATING = "generating"
    JUDGING = "judging"
    REFINING = "refining"
    APPLYING_VOLUMETRICS = "applying_volumetrics"
    COMPLETE = "complete"


class Flaw(StrEnum):
    GHOSTING = "GHOSTING"
    PERSPECTIVE = "PERSPECTIVE"
    ARCHITECTURE = "ARCHITECTURE"
    FLOATING = "FLOATING"
    PLASTIC_LOOK = "PLASTIC_LOOK"
    NONE = "NONE"


class LightDirection(StrEnum):
    LEFT = "Left"
    RIGHT = "Right"
    CENTER = "Center"
    TOP = "Top"
    NATURAL = "Natural"


class GateState(StrEnum):
    CLOSED = "closed"  # no photo yet
    REVIEW = "review"  # survey estimate awaiting acceptance
    MANUAL = "manual"  # survey failed, manual entry required
    CONFIRMED = "confirmed"


# === Pipeline Types ===


class RoomPhoto(BaseModel):
    """An ingested photo. Immutable for the lifetime of a session."""

    model_config = ConfigDict(frozen=True)

    data: bytes = Field(repr=False)
    mime_type: str = "image/jpeg"
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    aspect_ratio: AspectRatio


class GeometryEstimate(BaseModel):
    area_m2: float = Field(default=20.0, gt=0)
    ceiling_height_m: float = Field(default=2.5, gt=0)
    room_category: str = DEFAULT_ROOM_CATEGORY

    @computed_field  # type: ignore[prop-decorator]
    @property
    def volume_m3(self) -> float:
        return round(self.area_m2 * self.ceiling_height_m, 2)


class LightingProfile(BaseModel):
    direction: LightDirection = LightDirection.NATURAL
    color_temperature: str = "4500K"
    focal_length: str | None = None


class AuditVerdict(BaseModel):
    score: float = Field(ge=0, le=1)
    structural_fail: bool
    flaw: Flaw = Flaw.NONE


class RenderAttempt(BaseModel):
    index: int = Field(ge=1)
    source_image: bytes = Field(repr=False)
    instruction: str
    result_image: bytes | None = Field(default=None, repr=False)
    verdict: AuditVerdict | None = None


class BestCandidate(BaseModel):
    """Highest-scoring attempt of a run. The default value is the no-result sentinel."""

    image: bytes | None = Field(default=None, repr=False)
    score: float = -1.0
    structural_fail: bool = True
    flaw: Flaw = Flaw.NONE
    attempt_index: int | None = None

    @property
    def has_image(self) -> bool:
        return self.image is not None


class RunOutcome(BaseModel):
    best: BestCandidate
    attempts: int
    converged: bool
    refinement: bool


# === API Types ===


class CreateSessionResponse(BaseModel):
    session_id: str


class PhotoUrlRequest(BaseModel):
    url: HttpUrl


class VolumeRequest(BaseModel):
    """Accept the surveyed geometry, or override area and/or height."""

    accept: bool = False
    area_m2: float | None = Field(default=None, gt=0)
    ceiling_height_m: float | None = Field(default=None, gt=0)


class PromptRequest(BaseModel):
    # Stripped before the length check, so blank prompts fail validation
    model_config = ConfigDict(str_strip_whitespace=True)

    prompt: str = Field(min_length=1, max_length=2000)


class ActionResponse(BaseModel):
    status: Literal["accepted"] = "accepted"
    run_id: int


class SessionState(BaseModel):
    session_id: str
    phase: PipelinePhase
    progress: int = Field(ge=0, le=100)
    log: str = ""
    gate: GateState
    aspect_ratio: AspectRatio | None = None
    geometry: GeometryEstimate
    lighting: LightingProfile
    attempt: int = 0
    best_score: float | None = None
    best_flaw: Flaw | None = None
    has_result: bool = False
    error: str | None = None


class ErrorResponse(BaseModel):
    error: str
    message: str
    retryable: bool = False
