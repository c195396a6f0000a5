"""
End-to-end pipeline runs against a scripted provider.
"""

from datetime import date

import pytest

from knowledge_architect.models.schemas import (
    PIPELINE_STAGES,
    AppSettings,
    ErrorCode,
    PipelineConfig,
    RunStatus,
    StageId,
)
from knowledge_architect.pipeline.orchestrator import KnowledgePipeline, PipelineError
from knowledge_architect.services.providers import ProviderResponseError
from knowledge_architect.services.title_generator import generate_title


RAW_NOTES = """
Photosynthesis happens in chloroplasts. Light reactions in thylakoids make ATP
and NADPH. The Calvin cycle in the stroma fixes CO2 into sugar.
"""


@pytest.fixture
def pipeline_factory(make_provider, test_settings, retry_executor, observability):
    def factory(**provider_kwargs):
        provider = make_provider(**provider_kwargs)
        pipeline = KnowledgePipeline(
            provider=provider,
            settings=test_settings,
            retry_executor=retry_executor,
            observability=observability,
            today=date(2024, 5, 1),
        )
        return pipeline, provider
    return factory


@pytest.mark.asyncio
async def test_full_run_produces_note_and_html(pipeline_factory, photosynthesis_handler):
    pipeline, provider = pipeline_factory(handler=photosynthesis_handler)
    run = pipeline.start(RAW_NOTES, "Photosynthesis", PipelineConfig(generate_html=True))

    ends = {}
    async for event in pipeline.execute(run):
        if event.type == "stage_end":
            ends[event.stage] = event.content

    assert run.status == RunStatus.SUCCEEDED
    assert list(ends) == [stage.value for stage in PIPELINE_STAGES]
    assert len(provider.calls) == 6

    note = run.final_markdown
    assert note.startswith("---\ntitle: Photosynthesis")
    assert note.endswith("```mermaid\ngraph TD\n    A[\"Light\"] --> B(\"Chlorophyll\")\n```")
    assert "creation_date: 2024-05-01" in note

    assert run.html_document.startswith("<!DOCTYPE html>")
    assert run.html_document.endswith("</html>")

    # Each stage received the cleaned output of the one before it
    html_prompt = provider.calls[-1]["prompt"]
    assert f"```markdown\n{note}\n```" in html_prompt


@pytest.mark.asyncio
async def test_streaming_run_matches_non_streaming(pipeline_factory, photosynthesis_handler):
    pipeline, _ = pipeline_factory(handler=photosynthesis_handler, chunk_size=5)
    config = PipelineConfig(streaming_enabled=True)

    chunks = []
    async for event in pipeline.run(RAW_NOTES, "Photosynthesis", config):
        if event.type == "chunk" and event.stage == StageId.CONDENSER:
            chunks.append(event.content)

    run = pipeline.current_run
    assert len(chunks) > 1
    assert "".join(chunks).strip() == run.stage_outputs[StageId.CONDENSER]
    assert run.final_markdown.startswith("---")
    assert run.html_document is None


@pytest.mark.asyncio
async def test_rate_limited_run_is_classified(pipeline_factory, observability, photosynthesis_handler):
    def handler(prompt):
        if 'You are the "Information Condenser"' in prompt:
            return ProviderResponseError("Rate limit exceeded", status_code=429)
        return photosynthesis_handler(prompt)

    pipeline, provider = pipeline_factory(handler=handler)

    with pytest.raises(PipelineError) as exc:
        async for _ in pipeline.run(RAW_NOTES, "Photosynthesis"):
            pass

    error = exc.value
    assert error.stage == StageId.CONDENSER
    assert str(error) == "Error during the 'condenser' stage: Rate limit exceeded"

    # One synthesizer call plus three condenser attempts
    assert len(provider.calls) == 4
    assert pipeline.current_run.stage_outputs.to_dict() == {
        "synthesizer": photosynthesis_handler.outputs["synthesizer"],
    }

    record = observability.error_manager.handle_error(error, error.stage.value)
    assert record.code == ErrorCode.API_RATE_LIMIT
    assert record.code_name == "API_RATE_LIMIT"
    assert record.retryable is True


@pytest.mark.asyncio
async def test_title_for_generated_note(pipeline_factory, photosynthesis_handler, test_settings):
    pipeline, provider = pipeline_factory(handler=photosynthesis_handler)
    async for _ in pipeline.run(RAW_NOTES, "Photosynthesis"):
        pass

    title = await generate_title(
        pipeline.current_run.final_markdown,
        app_settings=AppSettings(),
        settings=test_settings,
        provider=provider,
    )

    assert title == "Photosynthesis: Turning Light into Sugar"
