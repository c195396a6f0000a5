"""Data models module for Knowledge Architect."""

from knowledge_architect.models.schemas import (
    # Base Models
    BaseModel,

    # Enums
    StageId,
    ModelTier,
    ProviderIdentity,
    OutputKind,
    RunStatus,
    PipelineEventType,
    ErrorSeverity,
    ErrorCategory,
    ErrorCode,
    LogLevel,

    # Constants
    PIPELINE_STAGES,
    SKIPPED_MARKER,

    # Settings Models
    ProviderConfig,
    ProviderConfigs,
    AppSettings,

    # Pipeline Models
    PipelineConfig,
    ProviderRequest,
    StageDefinition,
    PipelineEvent,
    StageOutputs,
    PipelineRun,

    # Error Models
    EnhancedError,
    ErrorNotification,

    # Records
    LogEntry,
    HistoryItem,
)

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
    "ProviderConfigs",
    "AppSettings",
    "PipelineConfig",
    "ProviderRequest",
    "StageDefinition",
    "PipelineEvent",
    "StageOutputs",
    "PipelineRun",
    "EnhancedError",
    "ErrorNotification",
    "LogEntry",
    "HistoryItem",
]
