"""Tests for ImagineSession (backend/imagine/workflows/imagine_session.py).

Drives the full survey -> volume gate -> render flow in-process against a
scripted model. Backoff sleeps are instant.
"""

import pytest

from imagine.errors import ImagineError
from imagine.models.contracts import GateState, PipelinePhase, VolumeRequest
from imagine.utils.image import InvalidPhotoError
from imagine.workflows.imagine_session import (
    TRANSITIONS,
    IllegalTransitionError,
    ImagineSession,
    build_models,
    can_transition,
)
from tests.fakes import (
    FakeImageModel,
    TransientError,
    lighting_json,
    make_render,
    make_room_photo,
    survey_json,
    verdict_json,
)

P = PipelinePhase


def _session(model, config, sleep) -> ImagineSession:
    return ImagineSession("sess-1", model, config=config, sleep=sleep)


async def _surveyed(model, config, sleep) -> ImagineSession:
    session = _session(model, config, sleep)
    session.ingest(make_room_photo())
    await session.wait_idle()
    return session


async def _confirmed(model, config, sleep) -> ImagineSession:
    session = await _surveyed(model, config, sleep)
    session.confirm_volume(VolumeRequest(accept=True))
    return session


class TestTransitions:
    def test_every_phase_has_an_entry(self):
        assert set(TRANSITIONS) == set(PipelinePhase)

    @pytest.mark.parametrize(
        "current, target",
        [
            (P.IDLE, P.SCANNING),
            (P.SCANNING, P.LIGHTING),
            (P.GENERATING, P.APPLYING_VOLUMETRICS),
            (P.APPLYING_VOLUMETRICS, P.GENERATING),
            (P.GENERATING, P.JUDGING),
            (P.JUDGING, P.REFINING),
            (P.JUDGING, P.COMPLETE),
            (P.REFINING, P.QUEUED),
            (P.QUEUED, P.REFINING),
            (P.COMPLETE, P.IDLE),
            (P.JUDGING, P.JUDGING),
        ],
    )
    def test_legal_edges(self, current, target):
        assert can_transition(current, target) is True

    @pytest.mark.parametrize(
        "current, target",
        [
            (P.IDLE, P.COMPLETE),
            (P.IDLE, P.JUDGING),
            (P.COMPLETE, P.GENERATING),
            (P.SCANNING, P.GENERATING),
            (P.APPLYING_VOLUMETRICS, P.COMPLETE),
        ],
    )
    def test_illegal_edges(self, current, target):
        assert can_transition(current, target) is False

    def test_any_phase_may_return_to_idle(self):
        assert all(can_transition(phase, P.IDLE) for phase in PipelinePhase)

    def test_illegal_transition_raises(self, config, sleep):
        session = _session(FakeImageModel(), config, sleep)
        with pytest.raises(IllegalTransitionError):
            session._transition(P.COMPLETE)


class TestIngestAndSurvey:
    @pytest.mark.asyncio
    async def test_survey_opens_gate_in_review(self, config, sleep):
        model = FakeImageModel(analyses=[survey_json(24.0, 2.7, "kitchen"), lighting_json()])
        session = await _surveyed(model, config, sleep)

        assert session.gate == GateState.REVIEW
        assert session.geometry.area_m2 == pytest.approx(24.0)
        assert session.lighting.focal_length == "24mm"
        assert session.phase == P.IDLE
        assert session.progress == 0
        assert session.error is None
        assert session.snapshot().aspect_ratio == "4:3"

    @pytest.mark.asyncio
    async def test_failed_survey_opens_manual_mode(self, config, sleep):
        model = FakeImageModel(analyses=["sorry, cannot measure"])
        session = await _surveyed(model, config, sleep)

        assert session.gate == GateState.MANUAL
        assert session.error
        assert session.phase == P.IDLE
        # Defaults stay in place for the manual form
        assert session.geometry.area_m2 == pytest.approx(20.0)
        assert session.geometry.ceiling_height_m == pytest.approx(2.5)

    @pytest.mark.asyncio
    async def test_invalid_photo_rejected_synchronously(self, config, sleep):
        session = _session(FakeImageModel(), config, sleep)
        with pytest.raises(InvalidPhotoError):
            session.ingest(b"not a photo")
        assert session.photo is None
        assert session.run_id == 0

    @pytest.mark.asyncio
    async def test_gate_closed_while_survey_runs(self, config, sleep):
        model = FakeImageModel(analyses=[survey_json(), lighting_json()])
        session = _session(model, config, sleep)
        session.ingest(make_room_photo())
        assert session.gate == GateState.CLOSED
        with pytest.raises(ImagineError):
            session.confirm_volume(VolumeRequest(accept=True))
        await session.wait_idle()


class TestVolumeGate:
    @pytest.mark.asyncio
    async def test_accept_keeps_estimate(self, config, sleep):
        model = FakeImageModel(analyses=[survey_json(24.0, 2.7), lighting_json()])
        session = await _surveyed(model, config, sleep)
        geometry = session.confirm_volume(VolumeRequest(accept=True))
        assert session.volume_confirmed
        assert geometry.volume_m3 == pytest.approx(64.8)

    @pytest.mark.asyncio
    async def test_override_recomputes_volume(self, config, sleep):
        model = FakeImageModel(analyses=[survey_json(24.0, 2.7), lighting_json()])
        session = await _surveyed(model, config, sleep)
        geometry = session.confirm_volume(VolumeRequest(area_m2=30.0))
        assert geometry.area_m2 == pytest.approx(30.0)
        assert geometry.ceiling_height_m == pytest.approx(2.7)
        assert geometry.volume_m3 == pytest.approx(81.0)
        assert session.gate == GateState.CONFIRMED

    @pytest.mark.asyncio
    async def test_manual_entry_after_failed_survey(self, config, sleep):
        session = await _surveyed(FakeImageModel(analyses=["???"]), config, sleep)
        geometry = session.confirm_volume(VolumeRequest(area_m2=12.0, ceiling_height_m=3.0))
        assert geometry.volume_m3 == pytest.approx(36.0)
        assert session.volume_confirmed

    @pytest.mark.asyncio
    async def test_empty_request_is_rejected(self, config, sleep):
        model = FakeImageModel(analyses=[survey_json(), lighting_json()])
        session = await _surveyed(model, config, sleep)
        with pytest.raises(ImagineError, match="Nothing to confirm"):
            session.confirm_volume(VolumeRequest())
        assert session.gate == GateState.REVIEW

    @pytest.mark.asyncio
    async def test_confirmed_geometry_is_frozen(self, config, sleep):
        model = FakeImageModel(analyses=[survey_json(24.0, 2.7), lighting_json()])
        session = await _confirmed(model, config, sleep)
        with pytest.raises(ImagineError, match="already confirmed"):
            session.confirm_volume(VolumeRequest(area_m2=999.0))
        with pytest.raises(ImagineError, match="already confirmed"):
            session.confirm_volume(VolumeRequest(accept=True))
        assert session.geometry.volume_m3 == pytest.approx(64.8)
        assert session.volume_confirmed

    @pytest.mark.asyncio
    async def test_new_photo_allows_confirming_again(self, config, sleep):
        model = FakeImageModel(
            analyses=[
                survey_json(24.0, 2.7),
                lighting_json(),
                survey_json(10.0, 2.5),
                lighting_json(),
            ]
        )
        session = await _confirmed(model, config, sleep)
        session.ingest(make_room_photo(800, 800))
        await session.wait_idle()
        geometry = session.confirm_volume(VolumeRequest(ceiling_height_m=3.0))
        assert geometry.volume_m3 == pytest.approx(30.0)

    def test_no_photo_is_rejected(self, config, sleep):
        session = _session(FakeImageModel(), config, sleep)
        with pytest.raises(ImagineError):
            session.confirm_volume(VolumeRequest(accept=True))

    @pytest.mark.asyncio
    async def test_new_photo_closes_gate(self, config, sleep):
        model = FakeImageModel(
            analyses=[survey_json(), lighting_json(), survey_json(), lighting_json()]
        )
        session = await _confirmed(model, config, sleep)
        session.ingest(make_room_photo(800, 800))
        assert session.gate == GateState.CLOSED
        await session.wait_idle()
        assert session.gate == GateState.REVIEW
        assert not session.volume_confirmed


class TestRenderRuns:
    @pytest.mark.asyncio
    async def test_generate_without_confirmed_volume_is_noop(self, config, sleep):
        model = FakeImageModel(analyses=[survey_json(), lighting_json()], renders=[make_render()])
        session = await _surveyed(model, config, sleep)

        assert session.start_generate("modern loft") is None
        assert model.render_calls == []
        assert session.phase == P.IDLE
        assert session.run_id == 1

    @pytest.mark.asyncio
    async def test_generate_without_photo_is_noop(self, config, sleep):
        session = _session(FakeImageModel(), config, sleep)
        assert session.start_generate("modern loft") is None

    @pytest.mark.asyncio
    async def test_blank_prompt_is_noop(self, config, sleep):
        model = FakeImageModel(analyses=[survey_json(), lighting_json()])
        session = await _confirmed(model, config, sleep)
        assert session.start_generate("   ") is None

    @pytest.mark.asyncio
    async def test_generate_produces_result(self, config, sleep):
        render = make_render("#335577")
        model = FakeImageModel(
            analyses=[survey_json(), lighting_json(), verdict_json(0.92)], renders=[render]
        )
        session = await _confirmed(model, config, sleep)

        run_id = session.start_generate("japandi living room")
        assert run_id == 2
        await session.wait_idle()

        state = session.snapshot()
        assert state.has_result is True
        assert state.best_score == pytest.approx(0.92)
        assert state.phase == P.IDLE
        assert state.attempt == 0
        assert state.error is None
        assert session.best.image == render
        # Geometry reaches the render prompt
        assert "24.0 m2" in model.render_calls[0]["prompt"]

    @pytest.mark.asyncio
    async def test_refine_requires_existing_result(self, config, sleep):
        model = FakeImageModel(analyses=[survey_json(), lighting_json()])
        session = await _confirmed(model, config, sleep)
        assert session.start_refine("more plants") is None

    @pytest.mark.asyncio
    async def test_refine_renders_from_current_best(self, config, sleep):
        first = make_render("#111111")
        second = make_render("#222222")
        model = FakeImageModel(
            analyses=[survey_json(), lighting_json(), verdict_json(0.9), verdict_json(0.95)],
            renders=[first, second],
        )
        session = await _confirmed(model, config, sleep)
        session.start_generate("warm minimalism")
        await session.wait_idle()

        assert session.start_refine("swap the sofa for a green one") is not None
        await session.wait_idle()

        assert model.render_calls[1]["source"].data == first
        assert "MODIFICATION:" in model.render_calls[1]["prompt"]
        assert session.best.image == second

    @pytest.mark.asyncio
    async def test_run_error_keeps_previous_best_and_geometry(self, config, sleep):
        first = make_render("#121212")
        model = FakeImageModel(
            analyses=[survey_json(24.0, 2.7), lighting_json(), verdict_json(0.9)],
            renders=[first, ValueError("Request contains an invalid argument. " + "x" * 300)],
        )
        session = await _confirmed(model, config, sleep)
        session.start_generate("industrial")
        await session.wait_idle()

        session.start_generate("industrial, but darker")
        await session.wait_idle()

        assert session.best.image == first
        assert session.geometry.area_m2 == pytest.approx(24.0)
        assert session.volume_confirmed
        assert session.error is not None
        assert len(session.error) == 150
        assert session.error.startswith("Request contains an invalid argument.")
        assert session.phase == P.IDLE

    @pytest.mark.asyncio
    async def test_no_image_sets_render_failed_message(self, config, sleep):
        model = FakeImageModel(
            analyses=[survey_json(), lighting_json()], renders=[None, None, None]
        )
        session = await _confirmed(model, config, sleep)
        session.start_generate("coastal")
        await session.wait_idle()

        assert session.best.has_image is False
        assert session.error == "I cannot edit this photo."
        assert session.phase == P.IDLE

    @pytest.mark.asyncio
    async def test_missing_final_image_keeps_earlier_best_and_reports_error(self, config, sleep):
        first = make_render("#0f0f0f")
        model = FakeImageModel(
            analyses=[survey_json(), lighting_json(), verdict_json(0.3, fail=True)],
            renders=[first, None, None],
        )
        session = await _confirmed(model, config, sleep)
        session.start_generate("mid-century study")
        await session.wait_idle()

        assert session.best.image == first
        assert session.snapshot().has_result is True
        assert session.error == "I cannot edit this photo."
        assert session.phase == P.IDLE

    @pytest.mark.asyncio
    async def test_backoff_moves_session_to_queued(self, config):
        observed: list[tuple[PipelinePhase, str]] = []
        session: ImagineSession | None = None

        async def watching_sleep(seconds: float) -> None:
            assert session is not None
            observed.append((session.phase, session.log))

        model = FakeImageModel(
            analyses=[survey_json(), lighting_json(), verdict_json(0.9)],
            renders=[TransientError(), make_render()],
        )
        session = await _confirmed(model, config, watching_sleep)
        session.start_generate("scandi")
        await session.wait_idle()

        assert [phase for phase, _ in observed] == [P.QUEUED] * 5
        assert observed[0][1] == "Optimizing connection: 5s..."
        assert observed[-1][1] == "Optimizing connection: 1s..."
        assert session.best.has_image

    @pytest.mark.asyncio
    async def test_superseded_run_is_ignored(self, config, sleep):
        stale = make_render("#aa0000")
        fresh = make_render("#00aa00")
        model = FakeImageModel(
            analyses=[survey_json(), lighting_json(), verdict_json(0.9), verdict_json(0.8)],
            renders=[stale, fresh],
        )
        session = await _confirmed(model, config, sleep)

        first = session.start_generate("first idea")
        second = session.start_generate("second idea")
        assert second == first + 1
        await session.wait_idle()

        assert len(model.render_calls) == 2
        assert session.best.image == fresh
        assert session.best.score == pytest.approx(0.8)

    @pytest.mark.asyncio
    async def test_new_upload_abandons_running_render(self, config, sleep):
        model = FakeImageModel(
            # The abandoned run still executes and audits before the new survey
            analyses=[
                survey_json(),
                lighting_json(),
                verdict_json(0.9),
                survey_json(),
                lighting_json(),
            ],
            renders=[make_render()],
        )
        session = await _confirmed(model, config, sleep)

        session.start_generate("boho")
        session.ingest(make_room_photo(600, 800))
        await session.wait_idle()

        assert len(model.render_calls) == 1
        assert session.best.has_image is False
        assert session.gate == GateState.REVIEW
        assert session.photo.aspect_ratio == "3:4"

    @pytest.mark.asyncio
    async def test_close_abandons_work(self, config, sleep):
        model = FakeImageModel(analyses=[survey_json(), lighting_json()])
        session = _session(model, config, sleep)
        session.ingest(make_room_photo())
        session.close()
        assert session.busy is False
        assert session.gate == GateState.CLOSED


class TestBuildModels:
    def test_gemini_backend_uses_single_model(self, config):
        model, audit_model = build_models(config)
        assert audit_model is None
        assert model.render_model == config.render_model

    def test_claude_backend_adds_judge(self, config):
        config.audit_backend = "claude"
        _, audit_model = build_models(config)
        assert audit_model is not None
        assert audit_model.model == config.claude_audit_model
