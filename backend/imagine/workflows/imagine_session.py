"""ImagineSession: one instance per browser session.

Owns every state transition of the Imagine pipeline: photo ingestion, the
survey, the volume gate, and render runs. Surveys and runs execute as
background tasks; each captures the run id current at launch and every write
it makes back to the session is dropped once that id has moved on (new
upload, new run, session closed). Nothing is cancelled on the model side.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Coroutine
from typing import Any

import structlog

from imagine.activities.context import PipelineContext
from imagine.activities.render import run_render
from imagine.activities.survey import run_survey
from imagine.config import Settings, settings
from imagine.errors import ImagineError, RenderFailedError, SurveyError, user_message
from imagine.models.contracts import (
    BestCandidate,
    GateState,
    GeometryEstimate,
    LightingProfile,
    PipelinePhase,
    RoomPhoto,
    SessionState,
    VolumeRequest,
)
from imagine.utils.image import ingest_photo
from imagine.utils.oracle import ImageModel, VisionModel
from imagine.utils.retry import Sleeper

logger = structlog.get_logger()

# Strong references so abandoned runs are not GC'd before they finish
_background_tasks: set[asyncio.Task[None]] = set()

P = PipelinePhase

# Legal phase edges. Any phase may also drop back to idle (abort / reset).
TRANSITIONS: dict[PipelinePhase, frozenset[PipelinePhase]] = {
    P.IDLE: frozenset({P.SCANNING, P.GENERATING}),
    P.SCANNING: frozenset({P.LIGHTING, P.QUEUED}),
    P.LIGHTING: frozenset({P.QUEUED}),
    P.QUEUED: frozenset({P.SCANNING, P.LIGHTING, P.GENERATING, P.REFINING, P.JUDGING}),
    P.GENERATING: frozenset({P.APPLYING_VOLUMETRICS, P.JUDGING, P.REFINING, P.QUEUED}),
    P.APPLYING_VOLUMETRICS: frozenset({P.GENERATING}),
    P.JUDGING: frozenset({P.REFINING, P.COMPLETE, P.QUEUED}),
    P.REFINING: frozenset({P.JUDGING, P.QUEUED, P.COMPLETE}),
    P.COMPLETE: frozenset(),
}


class IllegalTransitionError(ImagineError):
    pass


def can_transition(current: PipelinePhase, target: PipelinePhase) -> bool:
    return target == current or target == P.IDLE or target in TRANSITIONS[current]


def build_models(config: Settings | None = None) -> tuple[ImageModel, VisionModel | None]:
    """Production models: Gemini for everything, or Claude as the judge."""
    from imagine.utils.gemini import GeminiImageModel

    config = config or settings
    audit_model: VisionModel | None = None
    if config.audit_backend == "claude":
        from imagine.utils.claude import ClaudeVisionModel

        audit_model = ClaudeVisionModel(model=config.claude_audit_model)
    elif config.audit_backend != "gemini":
        logger.warning("unknown_audit_backend", audit_backend=config.audit_backend)
    return GeminiImageModel(), audit_model


class _RunReporter:
    """PipelineReporter bound to one run id of a session."""

    def __init__(self, session: ImagineSession, run_id: int) -> None:
        self._session = session
        self._run_id = run_id
        self._resume: PipelinePhase | None = None

    @property
    def current(self) -> bool:
        return self._session.run_id == self._run_id

    def phase(
        self,
        phase: PipelinePhase,
        *,
        log: str | None = None,
        progress: int | None = None,
    ) -> None:
        if not self.current:
            return
        self._session._transition(phase)
        if log is not None:
            self._session.log = log
        if progress is not None:
            self._session.progress = progress

    def wait(self, seconds_left: int) -> None:
        if not self.current:
            return
        session = self._session
        if seconds_left > 0:
            if session.phase != P.QUEUED:
                self._resume = session.phase
                session._transition(P.QUEUED)
            session.log = f"Optimizing connection: {seconds_left}s..."
            return
        session.log = "Reconnecting..."
        if session.phase == P.QUEUED and self._resume is not None:
            session._transition(self._resume)
        self._resume = None

    def attempt(self, index: int) -> None:
        if self.current:
            self._session.attempt = index

    def candidate(self, best: BestCandidate) -> None:
        if self.current:
            self._session.best = best


class ImagineSession:
    """Pipeline state for one user. Not shared across sessions; no locking."""

    def __init__(
        self,
        session_id: str,
        model: ImageModel,
        audit_model: VisionModel | None = None,
        *,
        config: Settings | None = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.session_id = session_id
        self._model = model
        self._audit_model = audit_model
        self._config = config or settings
        self._sleep = sleep

        self.phase = P.IDLE
        self.progress = 0
        self.log = ""
        self.photo: RoomPhoto | None = None
        self.geometry = GeometryEstimate()
        self.lighting = LightingProfile()
        self.gate = GateState.CLOSED
        self.best = BestCandidate()
        self.attempt = 0
        self.error: str | None = None
        self.run_id = 0
        self.last_access = time.monotonic()
        self._task: asyncio.Task[None] | None = None
        self._log = logger.bind(session_id=session_id)

    # --- State ---

    def touch(self) -> None:
        self.last_access = time.monotonic()

    def idle_for(self, now: float) -> float:
        return now - self.last_access

    @property
    def volume_confirmed(self) -> bool:
        return self.gate == GateState.CONFIRMED

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    def snapshot(self) -> SessionState:
        has_result = self.best.has_image
        return SessionState(
            session_id=self.session_id,
            phase=self.phase,
            progress=self.progress,
            log=self.log,
            gate=self.gate,
            aspect_ratio=self.photo.aspect_ratio if self.photo else None,
            geometry=self.geometry,
            lighting=self.lighting,
            attempt=self.attempt,
            best_score=self.best.score if has_result else None,
            best_flaw=self.best.flaw if has_result else None,
            has_result=has_result,
            error=self.error,
        )

    def _transition(self, target: PipelinePhase) -> None:
        if not can_transition(self.phase, target):
            raise IllegalTransitionError(f"Illegal phase transition {self.phase} -> {target}")
        self.phase = target

    def _reset_to_idle(self) -> None:
        self._transition(P.IDLE)
        self.progress = 0
        self.attempt = 0

    def _context(self, run_id: int) -> PipelineContext:
        return PipelineContext(
            model=self._model,
            audit_model=self._audit_model,
            reporter=_RunReporter(self, run_id),
            config=self._config,
            sleep=self._sleep,
        )

    def _launch(self, coro_factory: Callable[[int], Coroutine[Any, Any, None]]) -> int:
        """Bump the run id and start a background task for the new run."""
        self.run_id += 1
        run_id = self.run_id
        task = asyncio.create_task(coro_factory(run_id))
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)
        self._task = task
        return run_id

    # --- Ingestion & survey ---

    def ingest(self, data: bytes) -> int:
        """Take a new photo, abandon any in-flight work and start the survey.

        Raises InvalidPhotoError if the bytes are not a readable image.
        """
        photo = ingest_photo(data)
        self.photo = photo
        self.best = BestCandidate()
        self.gate = GateState.CLOSED
        self.error = None
        self._reset_to_idle()
        self.log = ""
        return self._launch(self._survey)

    async def _survey(self, run_id: int) -> None:
        assert self.photo is not None
        photo = self.photo
        ctx = self._context(run_id)
        log = self._log.bind(run_id=run_id)
        try:
            result = await run_survey(ctx, photo, self.geometry, self.lighting)
        except SurveyError as exc:
            if self.run_id != run_id:
                return
            log.warning("survey_failed_manual_mode", error=exc.message)
            self.error = user_message(exc)
            self.gate = GateState.MANUAL
        except Exception as exc:
            if self.run_id != run_id:
                return
            log.error("survey_crashed", error_type=type(exc).__name__, exc_info=exc)
            self.error = user_message(exc)
            self.gate = GateState.MANUAL
        else:
            if self.run_id != run_id:
                log.info("stale_survey_ignored")
                return
            self.geometry = result.geometry
            self.lighting = result.lighting
            self.gate = GateState.REVIEW
        finally:
            if self.run_id == run_id:
                self._reset_to_idle()

    # --- Volume gate ---

    def confirm_volume(self, request: VolumeRequest) -> GeometryEstimate:
        """Accept the estimate or apply manual overrides, then confirm.

        Raises ImagineError if there is no photo, a survey is still running, or
        the volume is already confirmed. Only a new photo reopens the gate.
        """
        if self.photo is None or self.gate == GateState.CLOSED:
            raise ImagineError("Upload a photo and wait for the survey first")
        if self.gate == GateState.CONFIRMED:
            raise ImagineError("Volume already confirmed; upload a new photo to change it")
        updates: dict[str, float] = {}
        if request.area_m2 is not None:
            updates["area_m2"] = request.area_m2
        if request.ceiling_height_m is not None:
            updates["ceiling_height_m"] = request.ceiling_height_m
        if not request.accept and not updates:
            raise ImagineError("Nothing to confirm: accept the estimate or provide overrides")
        if updates:
            # volume_m3 is computed, so it follows the overridden area/height
            self.geometry = self.geometry.model_copy(update=updates)
        self.gate = GateState.CONFIRMED
        self._log.info(
            "volume_confirmed",
            manual=bool(updates),
            area_m2=self.geometry.area_m2,
            ceiling_height_m=self.geometry.ceiling_height_m,
            volume_m3=self.geometry.volume_m3,
        )
        return self.geometry

    # --- Render runs ---

    def start_generate(self, prompt: str) -> int | None:
        """Start an initial generation. Returns the run id, or None if gated."""
        return self._start_run(prompt, refinement=False)

    def start_refine(self, prompt: str) -> int | None:
        """Start a refinement of the current result. Returns the run id, or None if gated."""
        return self._start_run(prompt, refinement=True)

    def _start_run(self, prompt: str, *, refinement: bool) -> int | None:
        prompt = prompt.strip()
        if self.photo is None or not prompt or not self.volume_confirmed:
            self._log.info(
                "render_gated",
                has_photo=self.photo is not None,
                has_prompt=bool(prompt),
                volume_confirmed=self.volume_confirmed,
            )
            return None
        if refinement and not self.best.has_image:
            self._log.info("refine_gated_no_result")
            return None
        previous = self.best.image if refinement else None
        self.error = None
        self._reset_to_idle()
        return self._launch(lambda run_id: self._run(run_id, prompt, previous))

    async def _run(self, run_id: int, prompt: str, previous_image: bytes | None) -> None:
        assert self.photo is not None
        ctx = self._context(run_id)
        log = self._log.bind(run_id=run_id)
        try:
            outcome = await run_render(
                ctx,
                original=self.photo,
                prompt=prompt,
                geometry=self.geometry,
                lighting=self.lighting,
                previous_image=previous_image,
            )
        except RenderFailedError as exc:
            if self.run_id == run_id:
                log.warning("render_run_failed", error=exc.message[:200])
                self.error = user_message(exc)
        except Exception as exc:
            if self.run_id == run_id:
                log.error("render_run_aborted", error_type=type(exc).__name__, exc_info=exc)
                self.error = user_message(exc)
        else:
            if self.run_id != run_id:
                log.info("stale_run_ignored", attempts=outcome.attempts)
            elif outcome.best.has_image:
                self.best = outcome.best
        finally:
            if self.run_id == run_id:
                self._reset_to_idle()

    # --- Lifecycle ---

    async def wait_idle(self) -> None:
        """Wait for the current background task (tests and graceful shutdown)."""
        if self._task is not None:
            await asyncio.shield(self._task)

    def close(self) -> None:
        """Abandon any in-flight work. Late results are ignored via the run id."""
        self.run_id += 1
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
