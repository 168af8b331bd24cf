"""Render orchestrator: generate, audit, keep the best, retry with feedback.

One run is a strictly serial loop: each attempt's instruction depends on the
previous attempt's audit. The loop stops early once an attempt passes the
audit, otherwise it exhausts its attempt budget and surfaces the best image
it saw, however low its score.
"""

from __future__ import annotations

import structlog

from imagine.activities.audit import audit_render
from imagine.activities.context import PipelineContext
from imagine.errors import RenderFailedError
from imagine.models.contracts import (
    AuditVerdict,
    BestCandidate,
    Flaw,
    GeometryEstimate,
    LightingProfile,
    PipelinePhase,
    RenderAttempt,
    RoomPhoto,
    RunOutcome,
)
from imagine.utils.image import (
    InvalidPhotoError,
    decode_image,
    prepare_render_source,
    sniff_mime_type,
)
from imagine.utils.oracle import ImagePart

log = structlog.get_logger("render")

PHYSICS_INSTRUCTION = """\
ROLE: Interior Photographer (Smartphone/DSLR).

1. GEOMETRY LOCK (ABSOLUTE):
   - Treat input image as a LIDAR SCAN.
   - DO NOT MOVE WALLS, BEAMS, OR WINDOWS.
   - DO NOT EXPAND THE ROOM. Perspective must match input perfectly.
   - Room: {room_category}, {area:.1f} m2 floor, {height:.2f} m ceiling ({volume:.1f} m3).

2. ANTI-PLASTIC RULES (DIRTY REALISM):
   - NO "CGI" LOOK. NO PERFECT SURFACES.
   - TEXTURES: Must show micro-imperfections, slight dust in corners, slight unevenness.
   - LIGHTING: Use existing light sources ({direction}, {temperature}). \
Shadows must be soft (penumbra).
   - REFLECTIONS: Fresnel is mandatory. Floor reflects strictly based on angle.

3. CAMERA SENSOR SIMULATION:
   - Add subtle ISO NOISE/GRAIN to match a real photo.
   - Slight Chromatic Aberration on window edges.
   - Dynamic Range: Not everything should be perfectly lit; allow for some shadow \
crush if realistic.{lens}

4. VOLUME:
   - Furniture MUST cast contact shadows (Ambient Occlusion) on the floor. No floating."""

OUTPUT_INSTRUCTION = "OUTPUT: Photorealistic JPG, ISO 800, Natural Light."


def build_physics_instruction(geometry: GeometryEstimate, lighting: LightingProfile) -> str:
    lens = ""
    if lighting.focal_length:
        lens = f"\n   - Lens: keep the input focal length ({lighting.focal_length})."
    return PHYSICS_INSTRUCTION.format(
        room_category=geometry.room_category,
        area=geometry.area_m2,
        height=geometry.ceiling_height_m,
        volume=geometry.volume_m3,
        direction=lighting.direction.value,
        temperature=lighting.color_temperature,
        lens=lens,
    )


def build_user_instruction(prompt: str, *, refinement: bool) -> str:
    if refinement:
        return (
            f"MODIFICATION: {prompt}. ONLY change specific items. "
            "KEEP GEOMETRY LOCKED. MAINTAIN SENSOR GRAIN."
        )
    return f"TASK: {prompt}. Style: Realistic, Lived-in. NOT a 3D Render. Match input focal length."


def build_corrective_feedback(verdict: AuditVerdict) -> str | None:
    """Instruction to prepend to the next attempt, or None if the audit found nothing."""
    if not verdict.structural_fail and verdict.flaw == Flaw.NONE:
        return None
    return f"PREVIOUS FAILED: {verdict.flaw.value}. FIX IT. LOCK WALLS AND PERSPECTIVE."


def compose_instruction(physics: str, user: str, feedback: str | None) -> str:
    sections = [physics, user]
    if feedback:
        sections.append(feedback)
    sections.append(OUTPUT_INSTRUCTION)
    return "\n\n".join(sections)


def is_better(verdict: AuditVerdict, best: BestCandidate) -> bool:
    """Replace the best if it is still failing, or on a strictly higher score."""
    return best.structural_fail or verdict.score > best.score


def has_converged(verdict: AuditVerdict, threshold: float) -> bool:
    return not verdict.structural_fail and verdict.score > threshold


def select_best(best: BestCandidate, attempt: RenderAttempt) -> BestCandidate:
    """Fold one scored attempt into the running best. Unscored attempts never win."""
    if attempt.result_image is None or attempt.verdict is None:
        return best
    if not is_better(attempt.verdict, best):
        return best
    return BestCandidate(
        image=attempt.result_image,
        score=attempt.verdict.score,
        structural_fail=attempt.verdict.structural_fail,
        flaw=attempt.verdict.flaw,
        attempt_index=attempt.index,
    )


def _decodable(data: bytes | None) -> bool:
    if not data:
        return False
    try:
        decode_image(data)
    except InvalidPhotoError:
        return False
    return True


async def run_render(
    ctx: PipelineContext,
    *,
    original: RoomPhoto,
    prompt: str,
    geometry: GeometryEstimate,
    lighting: LightingProfile,
    previous_image: bytes | None = None,
) -> RunOutcome:
    """Run one initial generation (previous_image=None) or one refinement.

    Initial runs render from a near-lossless copy of the original and are
    audited against the original. Refinements render from `previous_image`,
    are audited against it, and get a smaller attempt budget.

    Raises RenderFailedError if the final attempt comes back without an image,
    even when an earlier attempt produced one; model errors that survive the
    retry budget propagate unchanged.
    """
    refinement = previous_image is not None
    config = ctx.config
    max_attempts = config.max_refine_attempts if refinement else config.max_initial_attempts

    ctx.reporter.phase(
        PipelinePhase.GENERATING,
        log="Refining textures..." if refinement else "Starting PBR optics engine...",
        progress=10,
    )
    if previous_image is not None:
        source = ImagePart(previous_image, sniff_mime_type(previous_image))
        reference = source
    else:
        ctx.reporter.phase(
            PipelinePhase.APPLYING_VOLUMETRICS, log="Calculating volume...", progress=20
        )
        source = ImagePart(prepare_render_source(original.data), "image/jpeg")
        reference = ImagePart(original.data, original.mime_type)

    physics = build_physics_instruction(geometry, lighting)
    user = build_user_instruction(prompt, refinement=refinement)
    feedback: str | None = None
    best = BestCandidate()
    converged = False
    attempts_made = 0

    log.info(
        "render_run_start",
        refinement=refinement,
        max_attempts=max_attempts,
        aspect_ratio=original.aspect_ratio,
    )

    for index in range(1, max_attempts + 1):
        attempts_made = index
        ctx.reporter.attempt(index)
        if index == 1:
            ctx.reporter.phase(
                PipelinePhase.GENERATING, log="Rendering dirty realism...", progress=30
            )
        else:
            ctx.reporter.phase(
                PipelinePhase.REFINING,
                log=f"Correcting perspective (attempt {index})...",
                progress=min(50 + index * 10, 95),
            )

        attempt = RenderAttempt(
            index=index,
            source_image=source.data,
            instruction=compose_instruction(physics, user, feedback),
        )
        response = await ctx.call(
            lambda: ctx.model.render(
                source,
                attempt.instruction,
                aspect_ratio=original.aspect_ratio,
                temperature=config.render_temperature,
            ),
            "render",
        )

        if not _decodable(response.image):
            log.warning(
                "render_attempt_no_image",
                attempt=index,
                has_payload=response.image is not None,
                gemini_text=response.text[:300],
            )
            if index == max_attempts:
                # An earlier best stays on the session via reporter.candidate
                raise RenderFailedError(response.text.strip()[:500] or "Render failed")
            continue

        attempt.result_image = response.image
        attempt.verdict = await audit_render(
            ctx,
            ImagePart(response.image, sniff_mime_type(response.image)),  # type: ignore[arg-type]
            reference,
        )
        log.info(
            "render_attempt_scored",
            attempt=index,
            score=attempt.verdict.score,
            structural_fail=attempt.verdict.structural_fail,
            flaw=attempt.verdict.flaw.value,
        )

        updated = select_best(best, attempt)
        if updated is not best:
            best = updated
            ctx.reporter.candidate(best)

        if has_converged(attempt.verdict, config.convergence_threshold):
            converged = True
            break

        feedback = build_corrective_feedback(attempt.verdict) or feedback

    ctx.reporter.phase(PipelinePhase.COMPLETE, log="Render finished", progress=100)
    log.info(
        "render_run_complete",
        refinement=refinement,
        attempts=attempts_made,
        converged=converged,
        best_score=best.score,
        best_attempt=best.attempt_index,
    )
    return RunOutcome(best=best, attempts=attempts_made, converged=converged, refinement=refinement)
