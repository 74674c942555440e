import json

import pytest

from forefront.coordinator import StepCoordinator
from forefront.extraction import extract_json_block, extract_structured, safe_json_parse
from tests.fakes import FakeBackend, make_registry


@pytest.mark.asyncio
async def test_structured_output_is_used_without_a_model_call():
    backend = FakeBackend()
    coordinator = StepCoordinator(make_registry(backend))
    output = json.dumps({"optimizedPrompt": "A lighthouse at dusk, oil painting", "reasoning": "r"})
    result = await coordinator.coordinate("prompt-enhancement", "image-generation", output, "draw a lighthouse")
    assert result.kind == "structured"
    assert result.text == "A lighthouse at dusk, oil painting"
    assert backend.calls == []


@pytest.mark.asyncio
async def test_research_findings_are_carried_forward():
    coordinator = StepCoordinator(make_registry(FakeBackend()))
    output = json.dumps({"analysis": "Prices fell.", "keyFindings": ["supply rose", "demand fell"]})
    result = await coordinator.coordinate("web-search", "text-generation", output, "write about GPU prices")
    assert result.kind == "structured"
    assert result.text.startswith("Prices fell.")
    assert "- supply rose" in result.text


@pytest.mark.asyncio
async def test_free_text_goes_through_the_coordinator_model():
    backend = FakeBackend()
    coordinator = StepCoordinator(make_registry(backend))
    result = await coordinator.coordinate("web-search", "prompt-enhancement", "plain research notes", "draw it")
    assert result.kind == "heuristic"
    assert result.text == "Key insights for the next step."
    call = backend.calls_with("You are the Step Coordinator")[0]
    assert "INSIGHTS:" in call["system"]
    assert call["request"]["temperature"] == 0.2


@pytest.mark.asyncio
async def test_coordinator_failure_passes_output_through():
    backend = FakeBackend(failing={"groq"})
    coordinator = StepCoordinator(make_registry(backend))
    result = await coordinator.coordinate("reasoning", "text-generation", "plain reasoning notes", "q")
    assert result.kind == "raw"
    assert result.text == "plain reasoning notes"


def test_extract_structured_variants():
    structured = extract_structured('Sure!\n```json\n{"narrative": "Done."}\n```')
    assert structured.kind == "structured"
    assert structured.text == "Done."

    labelled = extract_structured("Enhanced Prompt: a red fox in fresh snow\n\nWhy: colour contrast")
    assert labelled.kind == "heuristic"
    assert labelled.text == "a red fox in fresh snow"

    fenced = extract_structured("Here you go:\n```python\nprint('hi')\n```")
    assert fenced.kind == "heuristic"
    assert fenced.text == "print('hi')"

    raw = extract_structured("just some words")
    assert raw.kind == "raw"
    assert raw.text == "just some words"

    assert extract_structured(None).kind == "raw"


def test_extract_json_block_never_raises():
    assert extract_json_block('prefix {"a": 1} suffix') == {"a": 1}
    assert extract_json_block("{broken") is None
    assert extract_json_block("") is None


@pytest.mark.asyncio
async def test_safe_json_parse_repairs_through_the_fixer_model():
    backend = FakeBackend()
    assert await safe_json_parse('{"a": 1}') == {"a": 1}
    assert await safe_json_parse("not json") is None
    assert await safe_json_parse("not json", make_registry(backend), "llama-3.1-8b-instant") == {}
    assert backend.calls_with("You are JSONRepair")
