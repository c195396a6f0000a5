import pytest
from pydantic import ValidationError

from knowledge_architect.models.schemas import (
    PIPELINE_STAGES,
    SKIPPED_MARKER,
    AppSettings,
    EnhancedError,
    ErrorCategory,
    ErrorCode,
    ErrorSeverity,
    ModelTier,
    OutputKind,
    PipelineConfig,
    PipelineEvent,
    PipelineRun,
    ProviderIdentity,
    ProviderRequest,
    RunStatus,
    StageDefinition,
    StageId,
    StageOutputs,
)


# =============================================================================
# Settings Blob
# =============================================================================

def test_app_settings_defaults():
    settings = AppSettings()
    assert settings.provider == ProviderIdentity.ANTHROPIC
    assert settings.config.ollama.base_url == "http://localhost:11434"
    assert settings.config.lmstudio.base_url == "http://localhost:1234"
    assert settings.config.openrouter.selected_model == "deepseek/deepseek-chat-v3-0324:free"
    assert settings.reasoning_mode_enabled is False


def test_app_settings_camel_case_roundtrip():
    settings = AppSettings.from_stored({
        "provider": "lmstudio",
        "reasoningModeEnabled": True,
        "config": {"lmstudio": {"baseUrl": "http://box:1234", "selectedModel": "qwen"}},
    })

    assert settings.provider == "lmstudio"
    assert settings.active_config.base_url == "http://box:1234"
    assert settings.active_config.selected_model == "qwen"

    stored = settings.to_stored()
    assert stored["reasoningModeEnabled"] is True
    assert stored["config"]["lmstudio"]["baseUrl"] == "http://box:1234"
    assert AppSettings.from_stored(stored) == settings


def test_app_settings_from_empty_blob():
    assert AppSettings.from_stored(None) == AppSettings()


# =============================================================================
# Pipeline Configuration
# =============================================================================

def test_pipeline_config_from_settings():
    settings = AppSettings(provider=ProviderIdentity.OLLAMA, streaming_enabled=True)

    config = PipelineConfig.from_settings(settings, "high-quality", generate_html=True)

    assert config.model_tier == ModelTier.HIGH_QUALITY
    assert config.provider == ProviderIdentity.OLLAMA
    assert config.generate_html is True
    assert config.streaming_enabled is True
    assert config.disable_reasoning is True


def test_pipeline_config_is_frozen():
    config = PipelineConfig()
    with pytest.raises(ValidationError):
        config.generate_html = True


def test_pipeline_config_rejects_unknown_tier():
    with pytest.raises(ValueError):
        PipelineConfig.from_settings(AppSettings(), "turbo")


@pytest.mark.parametrize("kwargs", [
    {"prompt": "", "temperature": 0.5},
    {"prompt": "hi", "temperature": 1.5},
    {"prompt": "hi", "temperature": -0.1},
])
def test_provider_request_validation(kwargs):
    with pytest.raises(ValidationError):
        ProviderRequest(**kwargs)


def test_stage_temperatures():
    markdown = StageDefinition(id=StageId.CONDENSER, prompt_template="x")
    html = StageDefinition(id=StageId.HTML_TRANSLATOR, prompt_template="x", output_kind=OutputKind.HTML)
    assert markdown.temperature == 0.6
    assert html.temperature == 0.2


def test_pipeline_event():
    event = PipelineEvent(type="chunk", stage=StageId.ENHANCER, content="abc")
    assert event.type == "chunk"
    assert event.stage == "enhancer"
    assert event.tokens_per_second is None


# =============================================================================
# Run State
# =============================================================================

def test_stage_outputs_are_write_once():
    outputs = StageOutputs()
    outputs._commit(StageId.SYNTHESIZER, "first")

    assert outputs["synthesizer"] == "first"
    assert outputs[StageId.SYNTHESIZER] == "first"
    assert StageId.SYNTHESIZER in outputs
    assert "bogus" not in outputs
    with pytest.raises(KeyError):
        outputs["bogus"]
    with pytest.raises(RuntimeError):
        outputs._commit(StageId.SYNTHESIZER, "second")
    assert outputs.to_dict() == {"synthesizer": "first"}


def test_run_happy_path():
    run = PipelineRun("notes", "Topic", PipelineConfig())
    assert run.status == RunStatus.IDLE

    for stage in PIPELINE_STAGES[:-1]:
        run.mark_running(stage)
        run.commit(stage, f"{stage.value} output")
    run.mark_skipped(StageId.HTML_TRANSLATOR)
    run.mark_succeeded()

    assert run.status == RunStatus.SUCCEEDED
    assert run.started_at is not None
    assert run.completed_at is not None
    assert run.final_markdown == "finalizer output"
    assert run.stage_outputs[StageId.HTML_TRANSLATOR] == SKIPPED_MARKER
    assert run.html_document is None


def test_run_stages_only_move_forward():
    run = PipelineRun("notes", "Topic", PipelineConfig())
    run.mark_running(StageId.CONDENSER)

    with pytest.raises(RuntimeError):
        run.mark_running(StageId.SYNTHESIZER)
    with pytest.raises(RuntimeError):
        run.mark_running(StageId.CONDENSER)


def test_run_rejects_empty_commit():
    run = PipelineRun("notes", "Topic", PipelineConfig())
    run.mark_running(StageId.SYNTHESIZER)
    with pytest.raises(ValueError):
        run.commit(StageId.SYNTHESIZER, "")


def test_run_failure_is_terminal():
    run = PipelineRun("notes", "Topic", PipelineConfig())
    run.mark_running(StageId.SYNTHESIZER)
    error = RuntimeError("boom")
    run.mark_failed(StageId.SYNTHESIZER, error)

    assert run.status == RunStatus.FAILED
    assert run.failed_stage == StageId.SYNTHESIZER
    assert run.error is error
    with pytest.raises(RuntimeError):
        run.mark_running(StageId.CONDENSER)
    with pytest.raises(RuntimeError):
        run.mark_succeeded()


def test_run_cannot_succeed_before_running():
    with pytest.raises(RuntimeError):
        PipelineRun("notes", "Topic", PipelineConfig()).mark_succeeded()


# =============================================================================
# Errors
# =============================================================================

def test_enhanced_error_code_name_and_serialization():
    record = EnhancedError(
        code=ErrorCode.NETWORK_TIMEOUT,
        category=ErrorCategory.NETWORK,
        severity=ErrorSeverity.MEDIUM,
        context="setup",
        message="timed out",
    )

    assert record.code == "NET_002"
    assert record.code_name == "NETWORK_TIMEOUT"
    assert record.model_dump(mode="json")["timestamp"].endswith("Z")
