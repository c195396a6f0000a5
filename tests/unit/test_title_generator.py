import pytest

from knowledge_architect.models.schemas import ModelTier, PipelineConfig
from knowledge_architect.services.providers import ProviderResponseError
from knowledge_architect.services.title_generator import (
    TITLE_TEMPERATURE,
    TitleGenerationError,
    TitleGenerator,
    generate_title,
)


@pytest.mark.asyncio
async def test_generate_returns_trimmed_title(make_provider, retry_executor):
    provider = make_provider(responses=["  Photosynthesis Explained \n"])
    generator = TitleGenerator(provider, retry_executor)

    title = await generator.generate("Plants convert light into chemical energy.")

    assert title == "Photosynthesis Explained"
    call = provider.calls[0]
    assert call["temperature"] == TITLE_TEMPERATURE
    assert call["model_selector"] == ModelTier.FAST
    assert "Plants convert light into chemical energy." in call["prompt"]
    assert 'You are a "Title Architect"' in call["prompt"]


@pytest.mark.asyncio
@pytest.mark.parametrize("content", ["", "   \n", None])
async def test_empty_content_is_rejected_without_calls(make_provider, retry_executor, content):
    provider = make_provider()
    generator = TitleGenerator(provider, retry_executor)

    with pytest.raises(TitleGenerationError, match="Cannot generate a title from empty content."):
        await generator.generate(content)

    assert provider.calls == []


@pytest.mark.asyncio
async def test_empty_response_is_an_error(make_provider, retry_executor):
    provider = make_provider(responses=["   "])
    generator = TitleGenerator(provider, retry_executor)

    with pytest.raises(TitleGenerationError, match="Received an empty or invalid response from the API."):
        await generator.generate("Some text")


@pytest.mark.asyncio
async def test_rate_limit_is_retried(make_provider, retry_executor, no_sleep):
    provider = make_provider(responses=[ProviderResponseError("Rate limit exceeded", status_code=429), "Title"])
    generator = TitleGenerator(provider, retry_executor)

    assert await generator.generate("Some text") == "Title"
    assert len(provider.calls) == 2
    no_sleep.assert_awaited_once_with(2.0)


@pytest.mark.asyncio
async def test_config_selects_tier(make_provider, retry_executor):
    provider = make_provider(responses=["Title"])
    generator = TitleGenerator(provider, retry_executor)

    await generator.generate("Some text", PipelineConfig(model_tier=ModelTier.HIGH_QUALITY))

    assert provider.calls[0]["model_selector"] == ModelTier.HIGH_QUALITY


@pytest.mark.asyncio
async def test_generate_title_with_injected_provider(make_provider, test_settings, observability):
    provider = make_provider(responses=["Light and Life"])

    title = await generate_title(
        "Some text",
        model_tier="high-quality",
        settings=test_settings,
        provider=provider,
        observability=observability,
    )

    assert title == "Light and Life"
    assert provider.calls[0]["model_selector"] == ModelTier.HIGH_QUALITY
    assert provider.disconnected is False


@pytest.mark.asyncio
async def test_generate_title_closes_provider_it_creates(make_provider, test_settings, monkeypatch):
    created = make_provider(responses=["Created Title"])
    monkeypatch.setattr(
        "knowledge_architect.services.title_generator.create_provider",
        lambda *args, **kwargs: created,
    )

    assert await generate_title("Some text", settings=test_settings) == "Created Title"
    assert created.disconnected is True
