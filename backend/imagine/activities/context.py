"""Shared plumbing for pipeline activities: models, progress reporting, retry budgets."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Literal, Protocol, TypeVar

from imagine.config import Settings, settings
from imagine.models.contracts import BestCandidate, PipelinePhase
from imagine.utils.oracle import ImageModel, VisionModel
from imagine.utils.retry import Sleeper, with_backoff

T = TypeVar("T")

CallSite = Literal["survey", "lighting", "render", "audit"]


class PipelineReporter(Protocol):
    """Receives user-facing narration from a running activity."""

    def phase(
        self,
        phase: PipelinePhase,
        *,
        log: str | None = None,
        progress: int | None = None,
    ) -> None: ...

    def wait(self, seconds_left: int) -> None: ...

    def attempt(self, index: int) -> None: ...

    def candidate(self, best: BestCandidate) -> None: ...


class NullReporter:
    def phase(
        self,
        phase: PipelinePhase,
        *,
        log: str | None = None,
        progress: int | None = None,
    ) -> None:
        pass

    def wait(self, seconds_left: int) -> None:
        pass

    def attempt(self, index: int) -> None:
        pass

    def candidate(self, best: BestCandidate) -> None:
        pass


@dataclass(frozen=True)
class RetryBudget:
    retries: int
    base_delay: float


def budgets_from(config: Settings) -> dict[CallSite, RetryBudget]:
    return {
        "survey": RetryBudget(config.survey_retries, config.survey_base_delay),
        "lighting": RetryBudget(config.lighting_retries, config.lighting_base_delay),
        "render": RetryBudget(config.render_retries, config.render_base_delay),
        "audit": RetryBudget(config.audit_retries, config.audit_base_delay),
    }


@dataclass
class PipelineContext:
    """Everything an activity needs besides its own inputs.

    `audit_model` defaults to `model`; `sleep` is swapped out in tests so
    backoff countdowns finish instantly.
    """

    model: ImageModel
    audit_model: VisionModel | None = None
    reporter: PipelineReporter = field(default_factory=NullReporter)
    config: Settings = field(default_factory=lambda: settings)
    sleep: Sleeper = asyncio.sleep

    @property
    def judge(self) -> VisionModel:
        return self.audit_model if self.audit_model is not None else self.model

    async def call(self, operation: Callable[[], Awaitable[T]], site: CallSite) -> T:
        """Run one external model call under its call site's retry budget."""
        budget = budgets_from(self.config)[site]
        return await with_backoff(
            operation,
            retries=budget.retries,
            base_delay=budget.base_delay,
            step=self.config.backoff_step_seconds,
            on_wait=self.reporter.wait,
            sleep=self.sleep,
            label=site,
        )
