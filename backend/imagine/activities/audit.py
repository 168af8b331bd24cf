"""Structural audit: a second model call that judges each render.

The judge compares the render with a reference photo and returns a realism
score, a structural-failure flag and the single worst flaw. It is tuned to be
permissive: grain, dust and uneven surfaces are what the render prompt asks
for, so only moved walls/openings or broken perspective should fail.

An audit outage must never block the user from getting an image, so every
failure of the judge itself degrades to an optimistic verdict.
"""

from __future__ import annotations

from typing import Any

import structlog

from imagine.activities.context import PipelineContext
from imagine.models.contracts import AuditVerdict, Flaw, PipelinePhase
from imagine.utils.oracle import ImagePart, Part
from imagine.utils.structured import StructuredResponseError, coerce_float, parse_json_object

log = structlog.get_logger("audit")

AUDIT_ROLE = "ROLE: Senior Structural Engineer. MODE: AUDIT"

STRUCTURAL_CHECK = """\
CRITICAL AUDIT:
1. Did windows/doors/walls move? (FAIL if yes).
2. Does it look PLASTIC/FAKE? (FAIL if yes).
3. Do objects float? (FAIL if yes).

SCORE RULES:
- If structure is SAFE and realism is OK (>0.7), return HIGH SCORE (0.9) to stop iterations.
- Only fail if there is a MAJOR perspective or geometry error.
- Sensor grain, dust and small surface imperfections are intended, not defects."""

AUDIT_RESPONSE_FORMAT = (
    'OUTPUT JSON ONLY: { "score": float (0.0-1.0), "structural_fail": boolean, '
    '"critical_flaw": "GHOSTING"|"PERSPECTIVE"|"ARCHITECTURE"|"FLOATING"|"PLASTIC_LOOK"|"NONE" }'
)

# Judge unreachable or unreadable: let the render through
OPTIMISTIC_VERDICT = AuditVerdict(score=0.9, structural_fail=False, flaw=Flaw.NONE)
# Judge answered with nothing at all: treat as a failed render
EMPTY_VERDICT = AuditVerdict(score=0.0, structural_fail=True, flaw=Flaw.NONE)

_TRUE_STRINGS = {"true", "yes", "1", "fail"}
_FALSE_STRINGS = {"false", "no", "0", "pass", ""}


def build_audit_parts(generated: ImagePart, reference: ImagePart) -> list[Part]:
    return [
        AUDIT_ROLE,
        "ORIGINAL GEOMETRY:",
        reference,
        "GENERATED PROPOSAL:",
        generated,
        f"{STRUCTURAL_CHECK}\n\n{AUDIT_RESPONSE_FORMAT}",
    ]


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int | float):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise StructuredResponseError(f"Not a boolean: {value!r}")


def parse_verdict(data: dict[str, Any]) -> AuditVerdict:
    """Build a verdict from the judge's JSON. Score is clamped to [0, 1]."""
    score = coerce_float(data.get("score"))
    if score is None:
        raise StructuredResponseError(f"Audit answer has no score: {data!r}"[:200])
    score = max(0.0, min(score, 1.0))

    structural_fail = _parse_bool(data.get("structural_fail", False))

    raw_flaw = data.get("critical_flaw", data.get("flaw"))
    flaw = Flaw.NONE
    if isinstance(raw_flaw, str):
        try:
            flaw = Flaw(raw_flaw.strip().upper())
        except ValueError:
            log.info("audit_unknown_flaw", flaw=raw_flaw)

    return AuditVerdict(score=score, structural_fail=structural_fail, flaw=flaw)


async def audit_render(
    ctx: PipelineContext,
    generated: ImagePart,
    reference: ImagePart,
) -> AuditVerdict:
    """Judge `generated` against `reference`. Never raises."""
    ctx.reporter.phase(PipelinePhase.JUDGING, log="Verifying consistency...")
    parts = build_audit_parts(generated, reference)
    judge = ctx.judge

    try:
        text = await ctx.call(lambda: judge.analyze(parts), "audit")
    except Exception as exc:
        log.warning(
            "audit_degraded",
            reason="call_failed",
            error_type=type(exc).__name__,
            error=str(exc)[:200],
        )
        return OPTIMISTIC_VERDICT

    if not text.strip():
        log.warning("audit_empty_response")
        return EMPTY_VERDICT

    try:
        verdict = parse_verdict(parse_json_object(text))
    except StructuredResponseError as exc:
        log.warning("audit_degraded", reason="unparseable", error=str(exc)[:200])
        return OPTIMISTIC_VERDICT

    log.info(
        "audit_verdict",
        score=verdict.score,
        structural_fail=verdict.structural_fail,
        flaw=verdict.flaw.value,
    )
    return verdict
