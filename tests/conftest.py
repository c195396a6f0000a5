import pytest
from datetime import date
from typing import AsyncIterator, Callable, Optional
from unittest.mock import AsyncMock, patch

from knowledge_architect.config.settings import Settings
from knowledge_architect.models.schemas import AppSettings, ModelTier, ProviderIdentity
from knowledge_architect.services.providers import ProviderClient
from knowledge_architect.utils.observability import ObservabilityContext
from knowledge_architect.utils.retry import RetryExecutor


FIXED_TODAY = date(2024, 5, 1)

# Role line of each prompt, used to answer per stage in fake providers.
STAGE_ROLE_MARKERS = {
    "synthesizer": 'You are the "Knowledge Synthesizer"',
    "condenser": 'You are the "Information Condenser"',
    "enhancer": 'You are the "Clarity Architect & Enhancer"',
    "mermaidValidator": 'You are the "Mermaid Validator"',
    "finalizer": 'You are the "Obsidian Finalizer"',
    "htmlTranslator": 'You are the "HTML Translator"',
    "title": 'You are a "Title Architect"',
}


def stage_of(prompt: str) -> Optional[str]:
    for stage, marker in STAGE_ROLE_MARKERS.items():
        if marker in prompt:
            return stage
    return None


class ScriptedProvider(ProviderClient):
    """
    In-memory provider for tests.

    Answers from ``handler(prompt)`` when given, else pops ``responses`` in
    order. An exception in either place is raised instead of returned.
    """

    identity = ProviderIdentity.ANTHROPIC

    def __init__(
        self,
        responses: Optional[list] = None,
        handler: Optional[Callable[[str], object]] = None,
        chunk_size: int = 7,
        app_settings: Optional[AppSettings] = None,
        settings: Optional[Settings] = None,
    ):
        super().__init__(app_settings or AppSettings(), settings=settings)
        self.responses = list(responses or [])
        self.handler = handler
        self.chunk_size = chunk_size
        self.calls: list[dict] = []
        self.connected = False
        self.disconnected = False

    @property
    def is_configured(self) -> bool:
        return True

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.disconnected = True

    def _answer(self, prompt: str, temperature: float, model_selector) -> str:
        self.calls.append({
            "prompt": prompt,
            "temperature": temperature,
            "model_selector": ModelTier(model_selector),
        })
        if self.handler is not None:
            result = self.handler(prompt)
        elif self.responses:
            result = self.responses.pop(0)
        else:
            result = f"output {len(self.calls)}"
        if isinstance(result, BaseException):
            raise result
        return result

    async def generate_text(self, prompt, temperature, model_selector=ModelTier.FAST) -> str:
        return self._answer(prompt, temperature, model_selector)

    async def stream_text(self, prompt, temperature, model_selector=ModelTier.FAST) -> AsyncIterator[str]:
        text = self._answer(prompt, temperature, model_selector)
        for start in range(0, len(text), self.chunk_size):
            yield text[start:start + self.chunk_size]


@pytest.fixture
def test_settings(tmp_path):
    """Real settings isolated from the environment and the user's data directory."""
    return Settings(
        _env_file=None,
        ANTHROPIC_API_KEY="sk-ant-test-key",
        OPENROUTER_API_KEY=None,
        RETRY_BASE_DELAY_SECONDS=0,
        DATA_DIR=str(tmp_path / "data"),
        OUTPUT_DIR=str(tmp_path / "notes"),
    )


@pytest.fixture(autouse=True)
def patch_get_settings(test_settings):
    """Globally patch get_settings to return test_settings."""
    with patch("knowledge_architect.config.settings.get_settings", return_value=test_settings):
        with patch("knowledge_architect.pipeline.orchestrator.get_settings", return_value=test_settings):
            with patch("knowledge_architect.services.providers.get_settings", return_value=test_settings):
                with patch("knowledge_architect.services.title_generator.get_settings", return_value=test_settings):
                    yield test_settings


@pytest.fixture
def app_settings():
    return AppSettings()


@pytest.fixture
def observability():
    return ObservabilityContext.create(session_id="session_test", level="debug")


@pytest.fixture
def no_sleep():
    return AsyncMock()


@pytest.fixture
def retry_executor(no_sleep, observability):
    return RetryExecutor(sleep=no_sleep, observability=observability)


@pytest.fixture
def make_provider(test_settings):
    def factory(**kwargs) -> ScriptedProvider:
        kwargs.setdefault("settings", test_settings)
        return ScriptedProvider(**kwargs)
    return factory


@pytest.fixture
def photosynthesis_handler():
    """Answers each stage prompt with a plausible note body for that stage."""
    outputs = {
        "synthesizer": (
            "# Photosynthesis\n\n## Overview\nPlants convert light energy into chemical energy.\n\n"
            "## Light Reactions\nChlorophyll absorbs light in the thylakoid membranes."
        ),
        "condenser": (
            "# Photosynthesis\n\n## Overview\nLight energy becomes chemical energy.\n\n"
            "## Light Reactions\nChlorophyll absorbs light in thylakoids."
        ),
        "enhancer": (
            "# Photosynthesis\n\n## Overview\nLight energy becomes chemical energy.\n\n"
            "```mermaid\ngraph TD\n    A[Light] --> B(Chlorophyll)\n```"
        ),
        "mermaidValidator": (
            "# Photosynthesis\n\n## Overview\nLight energy becomes chemical energy.\n\n"
            "```mermaid\ngraph TD\n    A[\"Light\"] --> B(\"Chlorophyll\")\n```"
        ),
        "finalizer": (
            "```markdown\n---\ntitle: Photosynthesis\naliases: [Photosynthetic Process]\n"
            "tags: [biology/plants]\ncreation_date: 2024-05-01\n---\n\n## Summary\n"
            "> [!summary]\n> Plants turn [[Light Energy]] into sugar.\n\n"
            "```mermaid\ngraph TD\n    A[\"Light\"] --> B(\"Chlorophyll\")\n```\n```"
        ),
        "htmlTranslator": (
            "```html\n<!DOCTYPE html>\n<html><head><title>Photosynthesis</title></head>"
            "<body><h1>Photosynthesis</h1></body></html>\n```"
        ),
        "title": "Photosynthesis: Turning Light into Sugar",
    }

    def handler(prompt: str) -> str:
        return outputs[stage_of(prompt)]

    handler.outputs = outputs
    return handler
