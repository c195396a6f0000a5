"""
Single-shot title generation for notes.

Shares the provider and retry path with the pipeline but runs one prompt with
no chaining.
"""

from typing import Optional

from knowledge_architect.config.settings import Settings, get_settings
from knowledge_architect.models.schemas import AppSettings, ModelTier, PipelineConfig
from knowledge_architect.pipeline.prompts import format_title_prompt
from knowledge_architect.services.providers import ProviderClient, create_provider
from knowledge_architect.utils.logger import get_logger
from knowledge_architect.utils.observability import ObservabilityContext
from knowledge_architect.utils.retry import RetryExecutor

logger = get_logger(__name__)

TITLE_TEMPERATURE = 0.4


class TitleGenerationError(Exception):
    """Title could not be generated."""
    pass


class TitleGenerator:
    """Generates a concise title for a body of text."""

    def __init__(
        self,
        provider: ProviderClient,
        retry_executor: Optional[RetryExecutor] = None,
        observability: Optional[ObservabilityContext] = None,
    ):
        self.provider = provider
        self.retry_executor = retry_executor or RetryExecutor(observability=observability)
        self.observability = observability

    async def generate(
        self,
        content: str,
        config: Optional[PipelineConfig] = None,
    ) -> str:
        """
        Generate a title for ``content``.

        Raises:
            TitleGenerationError: Empty content or an empty response.
        """
        if not isinstance(content, str) or not content.strip():
            raise TitleGenerationError("Cannot generate a title from empty content.")

        model_tier = config.model_tier if config else ModelTier.FAST
        prompt = format_title_prompt(content)

        text = await self.retry_executor.execute(
            lambda: self.provider.generate_text(prompt, TITLE_TEMPERATURE, model_tier),
            label="generateTitle",
        )
        if not isinstance(text, str) or not text.strip():
            raise TitleGenerationError("Received an empty or invalid response from the API.")

        title = text.strip()
        (self.observability.logger if self.observability else logger).info(
            "Title generated",
            provider=self.provider.name,
            content_chars=len(content),
            title=title,
        )
        return title


async def generate_title(
    content: str,
    model_tier: ModelTier | str = ModelTier.FAST,
    app_settings: Optional[AppSettings] = None,
    settings: Optional[Settings] = None,
    provider: Optional[ProviderClient] = None,
    observability: Optional[ObservabilityContext] = None,
    retry_executor: Optional[RetryExecutor] = None,
) -> str:
    """
    Convenience function to generate a title with settings-derived configuration.

    Example:
        >>> title = await generate_title(note_text, app_settings=stored_settings)
    """
    settings = settings or get_settings()
    app_settings = app_settings or AppSettings()
    config = PipelineConfig.from_settings(app_settings, model_tier)
    owns_provider = provider is None
    provider = provider or create_provider(app_settings, settings, observability)
    retry_executor = retry_executor or RetryExecutor.from_settings(
        settings, observability=observability
    )

    try:
        generator = TitleGenerator(provider, retry_executor, observability)
        return await generator.generate(content, config)
    finally:
        if owns_provider:
            await provider.disconnect()


__all__ = [
    "TITLE_TEMPERATURE",
    "TitleGenerationError",
    "TitleGenerator",
    "generate_title",
]
