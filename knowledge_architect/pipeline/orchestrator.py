"""
Knowledge pipeline orchestrator.

Runs the fixed stage sequence (synthesizer, condenser, enhancer, mermaid
validator, finalizer, optional HTML translator), threading each stage's
output into the next and emitting progress events as an async generator.

Features:
    - Lazy event stream: the next provider call starts only when the caller
      asks for the next event, and closing the generator stops the run
    - Write-once stage outputs with monotonic run status
    - Stage-tagged failures with the original error chained as ``__cause__``
    - Input validation before any provider call
    - Optional token streaming with a tokens-per-second estimate

Example:
    >>> pipeline = KnowledgePipeline(provider)
    >>> run = pipeline.start(raw_input, "Photosynthesis", PipelineConfig())
    >>> async for event in pipeline.execute(run):
    ...     print(event.type, event.stage)
    >>> run.final_markdown
"""

from __future__ import annotations

import time
from datetime import date
from typing import AsyncIterator, Callable, Optional

from knowledge_architect.config.settings import Settings, get_settings
from knowledge_architect.models.schemas import (
    AppSettings,
    ModelTier,
    PipelineConfig,
    PipelineEvent,
    PipelineEventType,
    PipelineRun,
    ProviderIdentity,
    StageId,
)
from knowledge_architect.pipeline.stages import StageRunner, build_stage_definitions
from knowledge_architect.services.providers import ProviderClient, create_provider
from knowledge_architect.services.validation_service import (
    InputValidationError,
    ValidationService,
)
from knowledge_architect.utils.logger import get_logger
from knowledge_architect.utils.observability import ObservabilityContext
from knowledge_architect.utils.retry import RetryExecutor

logger = get_logger(__name__)


# =============================================================================
# Constants
# =============================================================================

CHARS_PER_TOKEN = 4
MIN_THROUGHPUT_ELAPSED_SECONDS = 0.2


# =============================================================================
# Custom Exceptions
# =============================================================================

class PipelineError(Exception):
    """
    A stage failed. ``stage`` names it; the original error is ``__cause__``.
    """

    def __init__(self, stage: StageId | str, original_error: Optional[BaseException] = None):
        self.stage = StageId(stage)
        self.original_error = original_error
        message = f"Error during the '{self.stage.value}' stage"
        if original_error is not None and str(original_error):
            message = f"{message}: {original_error}"
        super().__init__(message)


# =============================================================================
# Throughput
# =============================================================================

class ThroughputMeter:
    """Estimates tokens per second from characters received in a stage."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._started = clock()
        self._chars = 0

    def reset(self) -> None:
        self._started = self._clock()
        self._chars = 0

    def add(self, text: str) -> Optional[float]:
        """Record received text; returns a rate once enough time has passed."""
        self._chars += len(text)
        elapsed = self._clock() - self._started
        if elapsed <= MIN_THROUGHPUT_ELAPSED_SECONDS:
            return None
        return round((self._chars / CHARS_PER_TOKEN) / elapsed, 1)


# =============================================================================
# Main Pipeline Class
# =============================================================================

class KnowledgePipeline:
    """
    Sequential multi-stage note generation.

    One ``KnowledgePipeline`` can serve many runs; each run gets its own
    ``PipelineRun``. Provider clients are created per provider identity on
    first use unless one is injected.
    """

    def __init__(
        self,
        provider: Optional[ProviderClient] = None,
        app_settings: Optional[AppSettings] = None,
        settings: Optional[Settings] = None,
        retry_executor: Optional[RetryExecutor] = None,
        observability: Optional[ObservabilityContext] = None,
        validator: Optional[ValidationService] = None,
        clock: Callable[[], float] = time.monotonic,
        today: Optional[date] = None,
    ):
        """
        Initialize the pipeline.

        Args:
            provider: Provider client to use for every run (created from
                ``app_settings`` per run config when omitted)
            app_settings: User settings for provider creation
            settings: Process settings (defaults to cached environment settings)
            retry_executor: Retry policy for provider calls
            observability: Logger, error manager and log collector
            validator: Input validator
            clock: Monotonic clock, injectable for tests
            today: Date stamped into the finalizer template
        """
        self.settings = settings or get_settings()
        self.app_settings = app_settings or AppSettings()
        self.observability = observability or ObservabilityContext.create(
            max_log_entries=self.settings.max_log_entries
        )
        self.retry_executor = retry_executor or RetryExecutor.from_settings(
            self.settings, observability=self.observability
        )
        self.validator = validator or ValidationService(self.settings.max_input_chars)
        self._clock = clock
        self._today = today
        self._injected_provider = provider
        self._providers: dict[str, ProviderClient] = {}
        self.current_run: Optional[PipelineRun] = None

    async def __aenter__(self) -> "KnowledgePipeline":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Close provider clients created by the pipeline."""
        for provider in self._providers.values():
            try:
                await provider.disconnect()
            except Exception as e:
                logger.warning("Error closing provider", provider=provider.name, error=str(e))
        self._providers.clear()

    def provider_for(self, config: PipelineConfig) -> ProviderClient:
        if self._injected_provider is not None:
            return self._injected_provider
        identity = ProviderIdentity(config.provider).value
        if identity not in self._providers:
            self._providers[identity] = create_provider(
                self.app_settings,
                settings=self.settings,
                observability=self.observability,
                provider=identity,
            )
        return self._providers[identity]

    # =========================================================================
    # Run Lifecycle
    # =========================================================================

    def start(
        self,
        raw_input: str,
        topic: str,
        config: Optional[PipelineConfig] = None,
    ) -> PipelineRun:
        """
        Validate input and create an idle run.

        Raises:
            InputValidationError: Empty topic, empty input or oversized input.
        """
        config = config or PipelineConfig.from_settings(self.app_settings)
        try:
            raw_input, topic = self.validator.validate_pipeline_input(raw_input, topic)
        except InputValidationError as e:
            self.observability.collector.warn(
                e.message, "validation", "validation", code=e.code.value
            )
            raise

        run = PipelineRun(raw_input=raw_input, topic=topic, config=config)
        self.current_run = run
        self.observability.collector.info(
            "Pipeline run created",
            "pipeline",
            "setup",
            run_id=run.run_id,
            topic=topic,
            provider=config.provider,
            model_tier=config.model_tier,
            generate_html=config.generate_html,
            input_chars=len(raw_input),
        )
        return run

    async def execute(self, run: PipelineRun) -> AsyncIterator[PipelineEvent]:
        """
        Drive ``run`` through every stage, yielding progress events.

        Raises:
            PipelineError: A stage failed; earlier stage outputs stay committed.
        """
        config = run.config
        provider = self.provider_for(config)
        runner = StageRunner(provider, self.retry_executor, self.observability)
        collector = self.observability.collector
        log = self.observability.logger.bind(run_id=run.run_id)
        meter = ThroughputMeter(self._clock)

        current_content = run.raw_input
        log.info(
            "Pipeline started",
            topic=run.topic,
            provider=provider.name,
            model_tier=config.model_tier,
            streaming=config.streaming_enabled,
        )
        collector.start_timer(f"pipeline:{run.run_id}")

        for definition in build_stage_definitions(self._today):
            stage = StageId(definition.id)

            if definition.skippable and not config.generate_html:
                run.mark_skipped(stage)
                log.info("Stage skipped", stage=stage.value)
                yield PipelineEvent(type=PipelineEventType.SKIPPED, stage=stage)
                continue

            run.mark_running(stage)
            log.info("Stage started", stage=stage.value)
            stage_timer = f"stage:{run.run_id}:{stage.value}"
            collector.start_timer(stage_timer)
            yield PipelineEvent(type=PipelineEventType.STAGE_START, stage=stage)

            meter.reset()
            try:
                if config.streaming_enabled:
                    stream = runner.stream(definition, current_content, run.topic, config)
                    async for delta in stream:
                        yield PipelineEvent(
                            type=PipelineEventType.CHUNK,
                            stage=stage,
                            content=delta,
                            tokens_per_second=meter.add(delta),
                        )
                    output = stream.result
                else:
                    output = await runner.run(definition, current_content, run.topic, config)
            except Exception as e:
                run.mark_failed(stage, e)
                collector.end_timer(stage_timer, status="failed")
                collector.end_timer(f"pipeline:{run.run_id}", status="failed")
                log.error(
                    "Stage failed",
                    stage=stage.value,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise PipelineError(stage, e) from e

            run.commit(stage, output)
            if not config.streaming_enabled:
                yield PipelineEvent(
                    type=PipelineEventType.CHUNK,
                    stage=stage,
                    content=output,
                    tokens_per_second=meter.add(output),
                )

            collector.end_timer(stage_timer, status="completed", output_chars=len(output))
            collector.track_event("stage_completed", "pipeline", stage=stage.value, run_id=run.run_id)
            yield PipelineEvent(type=PipelineEventType.STAGE_END, stage=stage, content=output)
            current_content = output

        run.mark_succeeded()
        collector.end_timer(f"pipeline:{run.run_id}", status="succeeded")
        log.info("Pipeline completed", stages=list(run.stage_outputs))

    def run(
        self,
        raw_input: str,
        topic: str,
        config: Optional[PipelineConfig] = None,
    ) -> AsyncIterator[PipelineEvent]:
        """
        Validate input, then return the event stream for a new run.

        Validation happens immediately, before the first event is requested.
        The run is available as ``current_run``.
        """
        run = self.start(raw_input, topic, config)
        return self.execute(run)


# =============================================================================
# Convenience Functions
# =============================================================================

async def run_knowledge_pipeline(
    raw_input: str,
    topic: str,
    generate_html: bool = False,
    model_tier: ModelTier | str = ModelTier.FAST,
    app_settings: Optional[AppSettings] = None,
    settings: Optional[Settings] = None,
    provider: Optional[ProviderClient] = None,
    observability: Optional[ObservabilityContext] = None,
    retry_executor: Optional[RetryExecutor] = None,
) -> AsyncIterator[PipelineEvent]:
    """
    Run the pipeline once with settings-derived configuration.

    Args:
        raw_input: Combined input text
        topic: Topic of the note
        generate_html: Also produce the HTML translation
        model_tier: fast or high-quality
        app_settings: User settings (defaults used when omitted)
        settings: Process settings override
        provider: Provider client override
        observability: Observability context override
        retry_executor: Retry policy override

    Yields:
        PipelineEvent for every stage transition and text chunk

    Example:
        >>> async for event in run_knowledge_pipeline(text, "Photosynthesis"):
        ...     if event.type == "stage_end":
        ...         print(event.stage, len(event.content))
    """
    app_settings = app_settings or AppSettings()
    config = PipelineConfig.from_settings(app_settings, model_tier, generate_html)

    async with KnowledgePipeline(
        provider=provider,
        app_settings=app_settings,
        settings=settings,
        retry_executor=retry_executor,
        observability=observability,
    ) as pipeline:
        async for event in pipeline.run(raw_input, topic, config):
            yield event


__all__ = [
    "CHARS_PER_TOKEN",
    "MIN_THROUGHPUT_ELAPSED_SECONDS",
    "PipelineError",
    "ThroughputMeter",
    "KnowledgePipeline",
    "run_knowledge_pipeline",
]
