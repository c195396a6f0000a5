"""
Single-stage execution for the knowledge pipeline.

A stage wraps its prompt template with the topic and the previous stage's
output, calls the provider through the retry executor, strips the code fence
models like to wrap their answers in, and refuses empty results.
"""

from __future__ import annotations

import re
import time
from datetime import date
from typing import TYPE_CHECKING, AsyncIterator, Optional

from knowledge_architect.models.schemas import (
    PIPELINE_STAGES,
    OutputKind,
    PipelineConfig,
    StageDefinition,
    StageId,
)
from knowledge_architect.pipeline.prompts import get_stage_prompt
from knowledge_architect.services.providers import ProviderClient
from knowledge_architect.utils.logger import get_logger
from knowledge_architect.utils.retry import RetryExecutor

if TYPE_CHECKING:
    from knowledge_architect.utils.observability import ObservabilityContext

logger = get_logger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class EmptyStageOutputError(Exception):
    """Stage produced no usable text after cleanup."""

    def __init__(self, stage: StageId | str):
        self.stage = StageId(stage)
        super().__init__(f"Stage '{self.stage.value}' returned an empty response")


# =============================================================================
# Prompt Building and Cleanup
# =============================================================================

_LEADING_FENCE = re.compile(r"^\s*```(?:markdown|html)[ \t]*(?:\r?\n|$)", re.IGNORECASE)
_TRAILING_FENCE = re.compile(r"\n?[ \t]*```\s*$")
_FENCE_LINE = re.compile(r"^[ \t]*```", re.MULTILINE)
# Trailing text that may still turn out to be a closing fence.
_PENDING_TAIL = re.compile(r"\s*`{0,3}\s*$")


def _ends_with_unpaired_fence(text: str) -> bool:
    stripped = text.rstrip()
    return stripped.endswith("```") and len(_FENCE_LINE.findall(stripped)) % 2 == 1


def strip_fences(text: str) -> str:
    """
    Remove one wrapping code fence from model output, then trim.

    A leading ```markdown or ```html line is removed. A trailing ``` is removed
    only when it is unpaired, so a note that legitimately ends with a code
    block keeps its closing fence. Text without fences passes through trimmed.
    """
    if not isinstance(text, str):
        return ""
    cleaned = _LEADING_FENCE.sub("", text, count=1)
    if _ends_with_unpaired_fence(cleaned):
        cleaned = _TRAILING_FENCE.sub("", cleaned.rstrip(), count=1)
    return cleaned.strip()


def build_stage_prompt(template: str, previous_output: str, topic: str) -> str:
    return (
        f'CONTEXT TOPIC: "{topic}"\n'
        f"---\n"
        f"{template}\n"
        f"---\n"
        f"PREVIOUS STAGE CONTENT TO PROCESS:\n"
        f"```markdown\n{previous_output}\n```"
    )


def build_stage_definitions(today: Optional[date] = None) -> tuple[StageDefinition, ...]:
    """Stage definitions in execution order. Only the HTML translator is skippable."""
    definitions = []
    for stage in PIPELINE_STAGES:
        is_html = stage == StageId.HTML_TRANSLATOR
        definitions.append(
            StageDefinition(
                id=stage,
                prompt_template=get_stage_prompt(stage, today),
                output_kind=OutputKind.HTML if is_html else OutputKind.MARKDOWN,
                skippable=is_html,
            )
        )
    return tuple(definitions)


# =============================================================================
# Stage Runner
# =============================================================================

class StageStream:
    """
    Streaming execution of one stage.

    Iterate to receive text deltas with the wrapping code fence removed: the
    opening fence line is held back until the first line is complete, and
    trailing whitespace or backticks are held back until more text arrives or
    the stream ends. Once iteration finishes, ``result`` holds the cleaned full
    text and ``raw_text`` everything the provider sent. An empty result raises
    ``EmptyStageOutputError`` at the end of iteration.
    """

    def __init__(self, stage: StageId, chunks: AsyncIterator[str]):
        self.stage = stage
        self._chunks = chunks
        self._parts: list[str] = []
        self._result: Optional[str] = None

    async def __aiter__(self) -> AsyncIterator[str]:
        pending = ""
        opened = False
        async for chunk in self._chunks:
            self._parts.append(chunk)
            pending += chunk
            if not opened:
                head = pending.lstrip()
                if not head or (head.startswith("`") and "\n" not in head):
                    continue
                pending = _LEADING_FENCE.sub("", pending, count=1)
                opened = True
            held = _PENDING_TAIL.search(pending).start()
            delta, pending = pending[:held], pending[held:]
            if delta:
                yield delta

        if not opened:
            pending = _LEADING_FENCE.sub("", pending, count=1)
        if _ends_with_unpaired_fence(_LEADING_FENCE.sub("", self.raw_text, count=1)):
            pending = pending[:_PENDING_TAIL.search(pending).start()]
        if pending:
            yield pending

        cleaned = strip_fences(self.raw_text)
        if not cleaned:
            raise EmptyStageOutputError(self.stage)
        self._result = cleaned

    @property
    def raw_text(self) -> str:
        return "".join(self._parts)

    @property
    def result(self) -> str:
        if self._result is None:
            raise RuntimeError(f"Stream for stage '{self.stage.value}' has not completed")
        return self._result


class StageRunner:
    """
    Executes a single stage against a provider.

    Example:
        >>> runner = StageRunner(provider, RetryExecutor())
        >>> text = await runner.run(definition, previous_output, topic, config)
    """

    def __init__(
        self,
        provider: ProviderClient,
        retry_executor: Optional[RetryExecutor] = None,
        observability: Optional["ObservabilityContext"] = None,
    ):
        self.provider = provider
        self.retry_executor = retry_executor or RetryExecutor(observability=observability)
        self.observability = observability

    @property
    def _logger(self):
        return self.observability.logger if self.observability else logger

    async def run(
        self,
        definition: StageDefinition,
        previous_output: str,
        topic: str,
        config: PipelineConfig,
    ) -> str:
        """Run the stage to completion and return the cleaned text."""
        stage = StageId(definition.id)
        prompt = build_stage_prompt(definition.prompt_template, previous_output, topic)
        started = time.monotonic()

        raw = await self.retry_executor.execute(
            lambda: self.provider.generate_text(
                prompt, definition.temperature, config.model_tier
            ),
            label=f"Stage: {stage.value}",
        )

        cleaned = strip_fences(raw)
        if not cleaned:
            raise EmptyStageOutputError(stage)

        self._logger.info(
            "Stage completed",
            stage=stage.value,
            provider=self.provider.name,
            input_chars=len(previous_output),
            output_chars=len(cleaned),
            elapsed_seconds=round(time.monotonic() - started, 3),
        )
        return cleaned

    def stream(
        self,
        definition: StageDefinition,
        previous_output: str,
        topic: str,
        config: PipelineConfig,
    ) -> StageStream:
        """Stream the stage's raw deltas. See ``StageStream``."""
        stage = StageId(definition.id)
        prompt = build_stage_prompt(definition.prompt_template, previous_output, topic)
        chunks = self.retry_executor.execute_stream(
            lambda: self.provider.stream_text(
                prompt, definition.temperature, config.model_tier
            ),
            label=f"Stage: {stage.value}",
        )
        return StageStream(stage, chunks)


__all__ = [
    "EmptyStageOutputError",
    "strip_fences",
    "build_stage_prompt",
    "build_stage_definitions",
    "StageStream",
    "StageRunner",
]
