import pytest

from forefront.router import (
    build_classification_prompt,
    classify_query,
    has_multiple_steps,
    quick_route,
    select_optimal_model,
)
from forefront.schemas import ChatMessage, RequestContext
from tests.fakes import FakeBackend, make_registry


@pytest.mark.asyncio
async def test_classify_query_parses_flags_and_selects_model():
    backend = FakeBackend(
        classification={"type": "factual", "needsWebSearch": True, "complexity": "low", "confidence": 0.92}
    )
    intent = await classify_query(make_registry(backend), "Who won the match yesterday?")
    assert intent.type == "factual"
    assert intent.needs_web_search is True
    assert intent.suggested_model == "sonar-pro"
    assert intent.fallback_model == "sonar"
    assert intent.confidence == pytest.approx(0.92)
    call = backend.calls_with("You are the Query Classifier")[0]
    assert call["request"]["temperature"] == 0.0
    assert call["request"]["max_tokens"] == 200


@pytest.mark.asyncio
async def test_unparseable_classification_uses_low_confidence_default():
    backend = FakeBackend(classification="I think this is a greeting.")
    intent = await classify_query(make_registry(backend), "hello there")
    assert intent.type == "simple"
    assert intent.confidence == pytest.approx(0.3)


@pytest.mark.asyncio
async def test_missing_confidence_defaults_to_half():
    backend = FakeBackend(classification={"type": "coding", "needsCodeGeneration": True})
    intent = await classify_query(make_registry(backend), "fix my function")
    assert intent.confidence == pytest.approx(0.5)
    assert intent.suggested_model == "llama-3.3-70b-versatile"


@pytest.mark.asyncio
async def test_classifier_failure_returns_fallback_intent():
    backend = FakeBackend(failing={"groq"})
    intent = await classify_query(make_registry(backend), "anything")
    assert intent.type == "simple"
    assert intent.confidence == pytest.approx(0.5)
    assert intent.suggested_model == "llama-3.3-70b-versatile"
    assert intent.fallback_model == "gemini-2.0-flash"


@pytest.mark.asyncio
async def test_multi_step_phrasing_forces_chaining():
    backend = FakeBackend(classification={"type": "reasoning", "complexity": "high", "confidence": 0.8})
    intent = await classify_query(make_registry(backend), "research quantum sensors and then write a short report")
    assert intent.needs_chaining is True
    assert intent.type == "chained"
    assert intent.suggested_model == "chained"


@pytest.mark.asyncio
async def test_confidence_is_clamped():
    backend = FakeBackend(classification={"type": "simple", "confidence": 7})
    intent = await classify_query(make_registry(backend), "hi")
    assert intent.confidence == 1.0


@pytest.mark.asyncio
async def test_zero_confidence_is_kept():
    backend = FakeBackend(classification={"type": "simple", "confidence": 0})
    intent = await classify_query(make_registry(backend), "hi")
    assert intent.confidence == 0.0


@pytest.mark.asyncio
async def test_string_flags_are_read_as_booleans():
    backend = FakeBackend(
        classification={
            "type": "factual",
            "needsWebSearch": "false",
            "needsReasoning": "True",
            "needsCodeGeneration": 0,
            "confidence": 0.8,
        }
    )
    intent = await classify_query(make_registry(backend), "what is a transformer")
    assert intent.needs_web_search is False
    assert intent.needs_reasoning is True
    assert intent.needs_code_generation is False


def test_has_multiple_steps():
    assert has_multiple_steps("First outline the essay, then write the intro")
    assert has_multiple_steps("enhance my prompt for better generation")
    assert not has_multiple_steps("What is a transformer?")


def test_select_optimal_model_priority():
    assert select_optimal_model({"type": "factual", "needs_tool_use": True})["suggested_model"] == "sonar-pro"
    assert select_optimal_model({"type": "tool-use"})["suggested_model"] == "groq/compound"
    assert select_optimal_model({"needs_reasoning": True, "complexity": "high"})["suggested_model"] == "qwen/qwen3-32b"
    assert select_optimal_model({"needs_reasoning": True, "complexity": "medium"})["suggested_model"] == (
        "llama-3.3-70b-versatile"
    )
    assert select_optimal_model({"type": "image-generation"})["suggested_model"] == "seedream-4"
    assert select_optimal_model({"type": "multimodal"})["suggested_model"] == "gemini-2.0-flash"
    assert select_optimal_model({"type": "simple"})["suggested_model"] == "llama-3.1-8b-instant"


def test_classification_prompt_includes_learning_context():
    context = RequestContext(
        module_title="Neural Networks",
        current_slide={"title": "Backpropagation"},
        highlighted_text="chain rule",
        conversation_history=[ChatMessage(role="user", content="x" * 300)],
    )
    prompt = build_classification_prompt("explain this", context)
    assert 'Highlighted text: "chain rule"' in prompt
    assert 'Module "Neural Networks" - Slide "Backpropagation"' in prompt
    assert 'Previous context: "' + "x" * 100 + '..."' in prompt


def test_quick_route_is_a_hint_only():
    assert quick_route("hi") == "llama-3.1-8b-instant"
    assert quick_route("what's the latest news on fusion?") == "sonar-pro"
    assert quick_route("research X and then write Y") is None
    assert quick_route("") is None
