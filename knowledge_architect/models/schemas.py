"""
Pydantic models and schemas for the Knowledge Architect pipeline.

This module defines the data structures shared by the provider clients,
the stage runner, the pipeline engine and the error service.

Models:
    - AppSettings: User-facing provider configuration blob
    - PipelineConfig: Immutable per-run configuration
    - ProviderRequest: One text-generation call
    - StageDefinition: Static description of a pipeline stage
    - PipelineEvent: Progress event emitted by the engine
    - PipelineRun: State of one pipeline execution
    - EnhancedError / ErrorNotification: Structured failures
    - LogEntry / HistoryItem: Observability and history records
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from enum import Enum
from typing import Any, Iterator, Optional, Self
from uuid import uuid4

from pydantic import (
    BaseModel as PydanticBaseModel,
    ConfigDict,
    Field,
    field_serializer,
    model_validator,
)


# =============================================================================
# Base Configuration
# =============================================================================

class BaseModel(PydanticBaseModel):
    """Base model with common configuration for all schemas."""

    model_config = ConfigDict(
        str_strip_whitespace=False,
        populate_by_name=True,
        use_enum_values=True,
        validate_default=True,
    )

    def to_json(self, **kwargs) -> str:
        """Serialize model to JSON string."""
        return self.model_dump_json(indent=2, **kwargs)

    def to_dict(self, **kwargs) -> dict[str, Any]:
        """Serialize model to dictionary."""
        return self.model_dump(**kwargs)

    @classmethod
    def from_json(cls, json_str: str) -> Self:
        """Deserialize model from JSON string."""
        return cls.model_validate_json(json_str)


# =============================================================================
# Enums
# =============================================================================

class StageId(str, Enum):
    """Pipeline stages, declared in execution order."""
    SYNTHESIZER = "synthesizer"
    CONDENSER = "condenser"
    ENHANCER = "enhancer"
    MERMAID_VALIDATOR = "mermaidValidator"
    FINALIZER = "finalizer"
    HTML_TRANSLATOR = "htmlTranslator"


class ModelTier(str, Enum):
    """Model quality tier selected by the caller."""
    FAST = "fast"
    HIGH_QUALITY = "high-quality"


class ProviderIdentity(str, Enum):
    """Text-generation backends."""
    ANTHROPIC = "anthropic"
    OPENROUTER = "openrouter"
    OLLAMA = "ollama"
    LMSTUDIO = "lmstudio"


class OutputKind(str, Enum):
    """Kind of document a stage produces."""
    MARKDOWN = "markdown"
    HTML = "html"


class RunStatus(str, Enum):
    """Lifecycle of a pipeline run."""
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PipelineEventType(str, Enum):
    """Progress event types."""
    STAGE_START = "stage_start"
    CHUNK = "chunk"
    STAGE_END = "stage_end"
    SKIPPED = "skipped"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    API = "api"
    VALIDATION = "validation"
    NETWORK = "network"
    FILE = "file"
    CONFIGURATION = "configuration"
    PROCESSING = "processing"
    UI = "ui"
    SYSTEM = "system"


class ErrorCode(str, Enum):
    """Namespaced error codes. Member names are the symbolic codes."""
    # API
    API_KEY_MISSING = "API_001"
    API_KEY_INVALID = "API_002"
    API_RATE_LIMIT = "API_003"
    API_QUOTA_EXCEEDED = "API_004"
    API_SERVICE_UNAVAILABLE = "API_005"
    API_TIMEOUT = "API_006"
    API_RESPONSE_INVALID = "API_007"

    # Network
    NETWORK_CONNECTION_FAILED = "NET_001"
    NETWORK_TIMEOUT = "NET_002"
    NETWORK_DNS_ERROR = "NET_003"

    # File processing
    FILE_TOO_LARGE = "FILE_001"
    FILE_INVALID_FORMAT = "FILE_002"
    FILE_CORRUPTED = "FILE_003"
    FILE_READ_ERROR = "FILE_004"
    FILE_UPLOAD_FAILED = "FILE_005"

    # Validation
    VALIDATION_INPUT_EMPTY = "VAL_001"
    VALIDATION_INPUT_TOO_LONG = "VAL_002"
    VALIDATION_INVALID_FORMAT = "VAL_003"
    VALIDATION_REQUIRED_FIELD = "VAL_004"

    # Configuration
    CONFIG_MISSING_SETTING = "CFG_001"
    CONFIG_INVALID_VALUE = "CFG_002"
    CONFIG_SAVE_FAILED = "CFG_003"

    # Processing
    PROCESSING_PIPELINE_FAILED = "PROC_001"
    PROCESSING_STAGE_FAILED = "PROC_002"
    PROCESSING_TIMEOUT = "PROC_003"
    PROCESSING_MEMORY_ERROR = "PROC_004"

    # UI
    UI_COMPONENT_ERROR = "UI_001"
    UI_RENDER_ERROR = "UI_002"
    UI_STATE_ERROR = "UI_003"

    # System
    SYSTEM_UNKNOWN = "SYS_001"
    SYSTEM_MEMORY_LOW = "SYS_002"
    SYSTEM_STORAGE_FULL = "SYS_003"


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    CRITICAL = "critical"


# Stage order is fixed; every stage consumes the previous stage's full output.
PIPELINE_STAGES: tuple[StageId, ...] = (
    StageId.SYNTHESIZER,
    StageId.CONDENSER,
    StageId.ENHANCER,
    StageId.MERMAID_VALIDATOR,
    StageId.FINALIZER,
    StageId.HTML_TRANSLATOR,
)

SKIPPED_MARKER = "Skipped"


# =============================================================================
# Settings Models (external configuration surface)
# =============================================================================

class ProviderConfig(BaseModel):
    """Per-provider configuration as stored in the settings blob."""

    api_key: str = Field(default="", alias="apiKey")
    base_url: str = Field(default="", alias="baseUrl")
    models: list[str] = Field(default_factory=list)
    selected_model: str = Field(default="", alias="selectedModel")

    @model_validator(mode="before")
    @classmethod
    def migrate_legacy_model(cls, data: Any) -> Any:
        """Older blobs stored a single ``model`` instead of ``models`` + ``selectedModel``."""
        if isinstance(data, dict) and data.get("model") and not data.get("models"):
            data = dict(data)
            model = data.pop("model")
            data["models"] = [model]
            data["selectedModel"] = model
        return data


class AnthropicConfig(ProviderConfig):
    pass


class OpenRouterConfig(ProviderConfig):
    models: list[str] = Field(
        default_factory=lambda: [
            "deepseek/deepseek-chat-v3-0324:free",
            "deepseek/deepseek-r1-0528-qwen3-8b:free",
            "deepseek/deepseek-r1-0528:free",
            "z-ai/glm-4.5-air:free",
        ]
    )
    selected_model: str = Field(
        default="deepseek/deepseek-chat-v3-0324:free", alias="selectedModel"
    )


class OllamaConfig(ProviderConfig):
    base_url: str = Field(default="http://localhost:11434", alias="baseUrl")
    models: list[str] = Field(default_factory=lambda: ["llama3", "gemma:2b"])
    selected_model: str = Field(default="llama3", alias="selectedModel")


class LMStudioConfig(ProviderConfig):
    base_url: str = Field(default="http://localhost:1234", alias="baseUrl")


class ProviderConfigs(BaseModel):
    """Configuration for every supported provider."""

    anthropic: AnthropicConfig = Field(default_factory=AnthropicConfig)
    openrouter: OpenRouterConfig = Field(default_factory=OpenRouterConfig)
    ollama: OllamaConfig = Field(default_factory=OllamaConfig)
    lmstudio: LMStudioConfig = Field(default_factory=LMStudioConfig)

    def for_provider(self, provider: ProviderIdentity | str) -> ProviderConfig:
        return getattr(self, ProviderIdentity(provider).value)


class AppSettings(BaseModel):
    """
    User settings consumed by the pipeline core.

    Missing keys are filled from per-provider defaults, so a blob saved by an
    older version loads with the new settings included.

    Example:
        >>> settings = AppSettings.from_stored({"provider": "ollama"})
        >>> settings.active_config.base_url
        'http://localhost:11434'
    """

    provider: ProviderIdentity = ProviderIdentity.ANTHROPIC
    config: ProviderConfigs = Field(default_factory=ProviderConfigs)
    reasoning_mode_enabled: bool = Field(default=False, alias="reasoningModeEnabled")
    streaming_enabled: bool = Field(default=False, alias="streamingEnabled")

    @model_validator(mode="before")
    @classmethod
    def drop_unknown_provider(cls, data: Any) -> Any:
        """Blobs written for a provider this build does not ship fall back to the default."""
        if isinstance(data, dict) and "provider" in data:
            provider = getattr(data["provider"], "value", data["provider"])
            if provider not in [identity.value for identity in ProviderIdentity]:
                data = {key: value for key, value in data.items() if key != "provider"}
        return data

    @property
    def active_config(self) -> ProviderConfig:
        return self.config.for_provider(self.provider)

    @classmethod
    def from_stored(cls, data: Optional[dict[str, Any]]) -> "AppSettings":
        """Build settings from a stored blob, merging with defaults."""
        return cls.model_validate(data or {})

    def to_stored(self) -> dict[str, Any]:
        """Serialize using the camelCase keys of the stored blob."""
        return self.model_dump(mode="json", by_alias=True)


# =============================================================================
# Pipeline Models
# =============================================================================

class PipelineConfig(BaseModel):
    """Immutable configuration of one pipeline run."""

    model_config = ConfigDict(frozen=True)

    model_tier: ModelTier = ModelTier.FAST
    provider: ProviderIdentity = ProviderIdentity.ANTHROPIC
    generate_html: bool = False
    reasoning_enabled: bool = False
    streaming_enabled: bool = False

    @classmethod
    def from_settings(
        cls,
        settings: AppSettings,
        model_tier: ModelTier | str = ModelTier.FAST,
        generate_html: bool = False,
    ) -> "PipelineConfig":
        return cls(
            model_tier=ModelTier(model_tier),
            provider=settings.provider,
            generate_html=generate_html,
            reasoning_enabled=settings.reasoning_mode_enabled,
            streaming_enabled=settings.streaming_enabled,
        )

    @property
    def disable_reasoning(self) -> bool:
        return not self.reasoning_enabled


class ProviderRequest(BaseModel):
    """A single text-generation call. Ephemeral, never persisted."""

    model_config = ConfigDict(frozen=True)

    prompt: str = Field(..., min_length=1)
    temperature: float = Field(..., ge=0.0, le=1.0)
    model_selector: ModelTier = ModelTier.FAST
    provider: ProviderIdentity = ProviderIdentity.ANTHROPIC
    disable_reasoning: bool = True


class StageDefinition(BaseModel):
    """Static description of a pipeline stage."""

    model_config = ConfigDict(frozen=True)

    id: StageId
    prompt_template: str
    output_kind: OutputKind = OutputKind.MARKDOWN
    skippable: bool = False

    @property
    def temperature(self) -> float:
        # Precision for markup translation, creativity for prose rewriting.
        return 0.2 if self.output_kind == OutputKind.HTML else 0.6


class PipelineEvent(BaseModel):
    """
    Progress event emitted by the pipeline engine.

    ``content`` is the text delta for ``chunk`` events and the full cleaned
    stage output for ``stage_end`` events. Streamed deltas already have the
    wrapping code fence removed, so they join to the cleaned output up to
    surrounding whitespace.
    """

    model_config = ConfigDict(frozen=True)

    type: PipelineEventType
    stage: StageId
    content: Optional[str] = None
    tokens_per_second: Optional[float] = None


class StageOutputs(Mapping):
    """Read-only, write-once mapping of stage id to committed output."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    @staticmethod
    def _key(stage: StageId | str) -> str:
        return StageId(stage).value

    def __getitem__(self, stage: StageId | str) -> str:
        try:
            return self._data[self._key(stage)]
        except ValueError:
            raise KeyError(stage) from None

    def __contains__(self, stage: object) -> bool:
        try:
            return self._key(stage) in self._data  # type: ignore[arg-type]
        except ValueError:
            return False

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"StageOutputs({self._data!r})"

    def _commit(self, stage: StageId | str, content: str) -> None:
        key = self._key(stage)
        if key in self._data:
            raise RuntimeError(f"Output for stage '{key}' is already committed")
        self._data[key] = content

    def to_dict(self) -> dict[str, str]:
        return dict(self._data)


class PipelineRun:
    """
    One execution of the knowledge pipeline.

    Status only moves forward: idle -> running(stage) -> ... -> succeeded,
    or to failed from any running state. ``stage_outputs`` is written once
    per stage by the engine that owns the run.
    """

    def __init__(
        self,
        raw_input: str,
        topic: str,
        config: PipelineConfig,
        run_id: Optional[str] = None,
    ):
        self.raw_input = raw_input
        self.topic = topic
        self.config = config
        self.run_id = run_id or uuid4().hex
        self.status = RunStatus.IDLE
        self.current_stage: Optional[StageId] = None
        self.failed_stage: Optional[StageId] = None
        self.error: Optional[BaseException] = None
        self.started_at: Optional[datetime] = None
        self.completed_at: Optional[datetime] = None
        self._outputs = StageOutputs()

    @property
    def stage_outputs(self) -> StageOutputs:
        return self._outputs

    @property
    def is_finished(self) -> bool:
        return self.status in (RunStatus.SUCCEEDED, RunStatus.FAILED)

    @property
    def final_markdown(self) -> Optional[str]:
        return self._outputs.get(StageId.FINALIZER)

    @property
    def html_document(self) -> Optional[str]:
        html = self._outputs.get(StageId.HTML_TRANSLATOR)
        return None if html in (None, SKIPPED_MARKER) else html

    def mark_running(self, stage: StageId) -> None:
        if self.is_finished:
            raise RuntimeError(f"Run {self.run_id} is already {self.status.value}")
        if self.current_stage is not None and (
            PIPELINE_STAGES.index(stage) <= PIPELINE_STAGES.index(self.current_stage)
        ):
            raise RuntimeError(
                f"Stage '{stage.value}' cannot follow '{self.current_stage.value}'"
            )
        if self.status == RunStatus.IDLE:
            self.started_at = datetime.utcnow()
        self.status = RunStatus.RUNNING
        self.current_stage = stage

    def commit(self, stage: StageId, content: str) -> None:
        if not isinstance(content, str) or not content:
            raise ValueError(f"Refusing to commit empty output for '{stage.value}'")
        self._outputs._commit(stage, content)

    def mark_skipped(self, stage: StageId) -> None:
        self.mark_running(stage)
        self._outputs._commit(stage, SKIPPED_MARKER)

    def mark_succeeded(self) -> None:
        if self.status != RunStatus.RUNNING:
            raise RuntimeError(f"Run {self.run_id} cannot succeed from {self.status.value}")
        self.status = RunStatus.SUCCEEDED
        self.completed_at = datetime.utcnow()

    def mark_failed(self, stage: StageId, error: BaseException) -> None:
        if self.is_finished:
            raise RuntimeError(f"Run {self.run_id} is already {self.status.value}")
        self.status = RunStatus.FAILED
        self.failed_stage = stage
        self.error = error
        self.completed_at = datetime.utcnow()


# =============================================================================
# Error Models
# =============================================================================

class EnhancedError(BaseModel):
    """Structured failure record. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"error_{uuid4().hex[:12]}")
    code: ErrorCode
    category: ErrorCategory
    severity: ErrorSeverity
    context: str
    message: str
    details: Optional[str] = None
    retryable: bool = False
    user_action: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    session_id: Optional[str] = None
    stack_trace: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def code_name(self) -> str:
        """Symbolic name of the code, e.g. ``API_RATE_LIMIT``."""
        return ErrorCode(self.code).name

    @field_serializer("timestamp")
    def serialize_timestamp(self, value: datetime) -> str:
        return value.isoformat() + "Z" if value.tzinfo is None else value.isoformat()


class NotificationAction(BaseModel):
    label: str
    action: str


class ErrorNotification(BaseModel):
    """User-facing notification derived from a high/critical error."""

    id: str
    type: str  # "modal" or "toast"
    title: str
    message: str
    severity: ErrorSeverity
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    dismissed: bool = False
    actions: list[NotificationAction] = Field(default_factory=list)
    error_id: Optional[str] = None


# =============================================================================
# Observability / History Models
# =============================================================================

class LogEntry(BaseModel):
    id: str = Field(default_factory=lambda: f"log_{uuid4().hex[:12]}")
    level: LogLevel
    message: str
    category: str = "general"
    context: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    session_id: Optional[str] = None


class HistoryItem(BaseModel):
    """A completed run saved to history."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    topic: str
    date: datetime = Field(default_factory=datetime.utcnow)
    outputs: dict[str, str] = Field(default_factory=dict)

    @field_serializer("date")
    def serialize_date(self, value: datetime) -> str:
        return value.isoformat()


__all__ = [
    "BaseModel",
    "StageId",
    "ModelTier",
    "ProviderIdentity",
    "OutputKind",
    "RunStatus",
    "PipelineEventType",
    "ErrorSeverity",
    "ErrorCategory",
    "ErrorCode",
    "LogLevel",
    "PIPELINE_STAGES",
    "SKIPPED_MARKER",
    "ProviderConfig",
    "AnthropicConfig",
    "OpenRouterConfig",
    "OllamaConfig",
    "LMStudioConfig",
    "ProviderConfigs",
    "AppSettings",
    "PipelineConfig",
    "ProviderRequest",
    "StageDefinition",
    "PipelineEvent",
    "StageOutputs",
    "PipelineRun",
    "EnhancedError",
    "NotificationAction",
    "ErrorNotification",
    "LogEntry",
    "HistoryItem",
]
