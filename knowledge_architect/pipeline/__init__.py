"""Pipeline module for Knowledge Architect."""

from knowledge_architect.pipeline.prompts import (
    STAGE_PROMPTS,
    TITLE_PROMPT,
    get_stage_prompt,
    format_title_prompt,
)
from knowledge_architect.pipeline.stages import (
    EmptyStageOutputError,
    StageRunner,
    StageStream,
    build_stage_definitions,
    build_stage_prompt,
    strip_fences,
)
from knowledge_architect.pipeline.orchestrator import (
    KnowledgePipeline,
    PipelineError,
    ThroughputMeter,
    run_knowledge_pipeline,
)

__all__ = [
    # Prompts
    "STAGE_PROMPTS",
    "TITLE_PROMPT",
    "get_stage_prompt",
    "format_title_prompt",
    # Stages
    "EmptyStageOutputError",
    "StageRunner",
    "StageStream",
    "build_stage_definitions",
    "build_stage_prompt",
    "strip_fences",
    # Orchestrator
    "KnowledgePipeline",
    "PipelineError",
    "ThroughputMeter",
    "run_knowledge_pipeline",
]
