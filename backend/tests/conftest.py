"""Shared fixtures: test settings, instant sleep, pipeline context, API client."""

import pytest
from httpx import ASGITransport, AsyncClient

from imagine.activities.context import PipelineContext
from imagine.config import Settings
from tests.fakes import RecordingReporter, SleepRecorder


@pytest.fixture
def config() -> Settings:
    return Settings(google_ai_api_key="test-key", environment="test", audit_backend="gemini")


@pytest.fixture
def sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter()


@pytest.fixture
def make_ctx(config, reporter, sleep):
    """Build a PipelineContext around a fake model with instant backoff."""

    def _make(model, audit_model=None) -> PipelineContext:
        return PipelineContext(
            model=model,
            audit_model=audit_model,
            reporter=reporter,
            config=config,
            sleep=sleep,
        )

    return _make


@pytest.fixture
async def client():
    from imagine.main import app

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
