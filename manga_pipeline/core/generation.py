"""
Async, resilient front ends for the text and image generation collaborators.

The dspy modules and the google-genai client are blocking, so every call
runs in a worker thread. Each call goes through the collaborator's named
circuit breaker and the external API retry policy, and records an
ExternalAPICall metric per attempt. Collaborator exceptions are wrapped in
ExternalServiceError, flagged retryable when they look transient.
"""

import asyncio
import logging
from typing import Any, Callable, Optional, TypeVar

import dspy

from ..config.resilience import IMAGE_GENERATION_BREAKER, TEXT_GENERATION_BREAKER
from .errors import ExternalServiceError, PipelineError
from .metrics import MetricsRecorder, PerformanceTimer
from .modules.panel_illustrator import PanelIllustrator
from .modules.story_writer import EpisodeWriter, StoryWriter
from .resilience import BreakerRegistry, RetryHandler, call_with_resilience, is_retryable
from .types import QlooInsights, UserPreferencesData

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _ResilientCollaborator:
    service = ""

    def __init__(self, breakers: BreakerRegistry, retry: RetryHandler, metrics: Optional[MetricsRecorder] = None):
        self.breaker = breakers.get_or_create(self.service)
        self.retry = retry
        self.metrics = metrics

    async def _call(self, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        async def attempt() -> T:
            timer = PerformanceTimer(operation)
            try:
                result = await asyncio.to_thread(func, *args, **kwargs)
            except Exception as e:
                error = self._wrap(operation, e)
                if self.metrics:
                    self.metrics.record_external_call(self.service, operation, timer.stop(), False, error.code)
                if error is e:
                    raise
                raise error from e
            if self.metrics:
                self.metrics.record_external_call(self.service, operation, timer.stop(), True)
            return result

        return await call_with_resilience(
            attempt,
            breaker=self.breaker,
            retry=self.retry,
            operation_name=f"{self.service}.{operation}",
        )

    def _wrap(self, operation: str, error: Exception) -> PipelineError:
        if isinstance(error, PipelineError):
            return error
        return ExternalServiceError(
            f"{self.service} {operation} failed: {error}",
            service=self.service,
            retryable=is_retryable(error, self.retry.config),
        )


class TextGenerator(_ResilientCollaborator):
    """Story and episode writing through dspy."""

    service = TEXT_GENERATION_BREAKER

    def __init__(
        self,
        breakers: BreakerRegistry,
        retry: RetryHandler,
        metrics: Optional[MetricsRecorder] = None,
        lm: Optional[dspy.LM] = None,
        lm_factory: Optional[Callable[[], dspy.LM]] = None,
    ):
        super().__init__(breakers, retry, metrics)
        self._lm = lm
        self._lm_factory = lm_factory
        self.story_writer = StoryWriter()
        self.episode_writer = EpisodeWriter()

    def _get_lm(self) -> dspy.LM:
        if self._lm is None:
            if self._lm_factory is None:
                from ..config.llm import get_inference_lm

                self._lm_factory = get_inference_lm
            self._lm = self._lm_factory()
        return self._lm

    def _run(self, module: dspy.Module, **kwargs) -> str:
        with dspy.context(lm=self._get_lm()):
            content = module(**kwargs)
        if not content:
            raise ExternalServiceError(
                "Text generation returned empty content",
                service=self.service,
                retryable=True,
            )
        return content

    async def generate_story(self, preferences: UserPreferencesData, insights: QlooInsights) -> str:
        return await self._call(
            "generate_story",
            self._run,
            self.story_writer,
            preferences=preferences,
            insights=insights,
        )

    async def generate_episode(
        self,
        story: str,
        preferences: UserPreferencesData,
        episode_number: int,
        is_continuation: bool = False,
    ) -> str:
        return await self._call(
            "generate_episode",
            self._run,
            self.episode_writer,
            story=story,
            preferences=preferences,
            episode_number=episode_number,
            is_continuation=is_continuation,
        )


class ImageGenerator(_ResilientCollaborator):
    """Panel illustration through google-genai."""

    service = IMAGE_GENERATION_BREAKER

    def __init__(
        self,
        breakers: BreakerRegistry,
        retry: RetryHandler,
        metrics: Optional[MetricsRecorder] = None,
        illustrator: Optional[PanelIllustrator] = None,
    ):
        super().__init__(breakers, retry, metrics)
        self._illustrator = illustrator

    @property
    def illustrator(self) -> PanelIllustrator:
        if self._illustrator is None:
            self._illustrator = PanelIllustrator()
        return self._illustrator

    async def generate_panel(self, scene: str, panel_number: int, style: Optional[str] = None) -> bytes:
        return await self._call(
            "generate_panel",
            self.illustrator.illustrate_panel,
            scene,
            panel_number,
            style,
        )
