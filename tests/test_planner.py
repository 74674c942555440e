import pytest

from forefront.planner import (
    apply_model_preferences,
    generate_execution_plan,
    generate_fallback_plan,
    normalize_plan,
    substitute_unavailable_models,
)
from forefront.schemas import ExecutionPlan, ModelPreferences, QueryIntent
from tests.fakes import FakeBackend, make_registry


def assert_linear(plan: ExecutionPlan) -> None:
    assert [s.step_number for s in plan.steps] == list(range(1, len(plan.steps) + 1))
    for step in plan.steps:
        assert step.input_from is None or 1 <= step.input_from < step.step_number


def test_image_only_fallback_is_enhancement_then_image():
    plan = generate_fallback_plan(QueryIntent(type="image-generation", needs_image_generation=True))
    assert [s.purpose for s in plan.steps] == ["prompt-enhancement", "image-generation"]
    assert plan.steps[1].input_from == 1
    assert plan.steps[1].recommended_model == "seedream-4"
    assert plan.source == "fallback"


def test_research_and_image_fallback_composes():
    intent = QueryIntent(type="chained", needs_web_search=True, needs_image_generation=True, needs_chaining=True)
    plan = generate_fallback_plan(intent)
    assert [s.purpose for s in plan.steps] == [
        "web-search",
        "prompt-enhancement",
        "image-generation",
        "final-composition",
    ]
    assert plan.steps[1].input_from == 1
    assert plan.steps[2].input_from == 2
    assert_linear(plan)


def test_fallback_picks_reasoning_for_hard_analysis():
    plan = generate_fallback_plan(QueryIntent(type="reasoning", needs_reasoning=True, complexity="high"))
    assert [s.purpose for s in plan.steps] == ["reasoning"]
    assert plan.steps[0].recommended_model == "qwen/qwen3-32b"


def test_normalize_repairs_order_references_and_missing_steps():
    raw = {
        "reasoning": "r",
        "estimatedTime": "oops",
        "steps": [
            {"stepNumber": 1, "purpose": "image-generation", "recommendedModel": "seedream-4", "inputFrom": 3},
            {"stepNumber": 2, "purpose": "web-search", "recommendedModel": "made-up-model"},
            {"stepNumber": 3, "purpose": "text-generation", "inputFrom": 2},
            {"stepNumber": 4, "purpose": "dance"},
        ],
    }
    plan = normalize_plan(raw)
    assert [s.purpose for s in plan.steps] == [
        "prompt-enhancement",
        "image-generation",
        "web-search",
        "text-generation",
        "final-composition",
    ]
    assert_linear(plan)
    assert plan.steps[1].input_from == 1
    assert plan.steps[3].input_from == 3
    assert plan.steps[2].recommended_model == "sonar-pro"
    assert plan.estimated_time == 50.0


def test_normalize_drops_composition_for_single_content_step():
    raw = {
        "steps": [
            {"stepNumber": 1, "purpose": "code-generation"},
            {"stepNumber": 2, "purpose": "final-composition", "inputFrom": 1},
        ]
    }
    plan = normalize_plan(raw)
    assert [s.purpose for s in plan.steps] == ["code-generation"]


def test_normalize_keeps_a_single_trailing_composition():
    raw = {
        "steps": [
            {"stepNumber": 1, "purpose": "final-composition"},
            {"stepNumber": 2, "purpose": "web-search"},
            {"stepNumber": 3, "purpose": "reasoning", "inputFrom": 2},
            {"stepNumber": 4, "purpose": "final-composition"},
        ]
    }
    plan = normalize_plan(raw)
    assert [s.purpose for s in plan.steps] == ["web-search", "reasoning", "final-composition"]
    assert plan.steps[1].input_from == 1
    assert_linear(plan)


def test_normalize_swaps_models_that_cannot_serve_the_step():
    raw = {
        "steps": [
            {"stepNumber": 1, "purpose": "text-generation", "recommendedModel": "seedream-4"},
            {"stepNumber": 2, "purpose": "image-generation", "recommendedModel": "llama-3.3-70b-versatile"},
            {"stepNumber": 3, "purpose": "web-search", "recommendedModel": "sonar-reasoning"},
        ]
    }
    plan = normalize_plan(raw)
    models = {s.purpose: s.recommended_model for s in plan.steps}
    assert models["text-generation"] == "llama-3.3-70b-versatile"
    assert models["image-generation"] == "seedream-4"
    assert models["web-search"] == "sonar-reasoning"
    assert_linear(plan)


def test_preferences_never_put_a_text_model_on_an_image_step():
    plan = generate_fallback_plan(QueryIntent(needs_image_generation=True))
    plan = apply_model_preferences(plan, ModelPreferences(image=["gemini-2.0-flash"]))
    assert plan.steps[-1].purpose == "image-generation"
    assert plan.steps[-1].recommended_model == "seedream-4"


def test_normalize_rejects_plans_without_steps():
    with pytest.raises(ValueError):
        normalize_plan({"steps": []})
    with pytest.raises(ValueError):
        normalize_plan({"steps": [{"purpose": "juggling"}]})


@pytest.mark.asyncio
async def test_model_plan_is_used_when_valid():
    backend = FakeBackend(
        plan={
            "reasoning": "search then write",
            "estimatedTime": 12,
            "steps": [
                {"stepNumber": 1, "purpose": "web-search", "recommendedModel": "sonar"},
                {"stepNumber": 2, "purpose": "text-generation", "inputFrom": 1},
            ],
        }
    )
    plan = await generate_execution_plan(make_registry(backend), "research and write", QueryIntent())
    assert plan.source == "model"
    assert [s.purpose for s in plan.steps] == ["web-search", "text-generation", "final-composition"]
    assert plan.steps[0].recommended_model == "sonar"
    call = backend.calls_with("You are the Workflow Planner")[0]
    assert call["request"]["temperature"] == 0.1
    assert call["request"]["max_tokens"] == 2000


@pytest.mark.asyncio
async def test_planner_failure_falls_back_and_avoids_unavailable_providers():
    backend = FakeBackend()
    registry = make_registry(backend)
    registry.mark_unavailable("perplexity")
    intent = QueryIntent(type="factual", needs_web_search=True, needs_chaining=True)
    plan = await generate_execution_plan(registry, "latest fusion news", intent, fixer_model="llama-3.1-8b-instant")
    assert plan.source == "fallback"
    assert [s.purpose for s in plan.steps] == ["web-search", "text-generation", "final-composition"]
    assert plan.steps[0].recommended_model == "gemini-2.0-flash"
    # The prose plan went through the repair prompt before falling back.
    assert backend.calls_with("You are JSONRepair")


def test_substitution_never_moves_image_steps():
    plan = generate_fallback_plan(QueryIntent(needs_image_generation=True))
    substituted = substitute_unavailable_models(plan, {"groq", "replicate"}, "gemini-2.0-flash")
    assert substituted.steps[0].recommended_model == "gemini-2.0-flash"
    assert substituted.steps[1].recommended_model == "seedream-4"


def test_substitution_skips_fallback_on_unavailable_family():
    plan = generate_fallback_plan(QueryIntent(type="coding"))
    substituted = substitute_unavailable_models(plan, {"groq"}, "llama-3.3-70b-versatile")
    assert substituted.steps[0].recommended_model == "gemini-2.0-flash"


def test_user_preferences_override_step_models():
    plan = generate_fallback_plan(QueryIntent(needs_web_search=True, needs_image_generation=True))
    prefs = ModelPreferences(search=["sonar-deep-research"], image=["midjourney"])
    plan = apply_model_preferences(plan, prefs)
    assert plan.steps[0].recommended_model == "sonar-deep-research"
    # Unknown models are ignored.
    assert plan.steps[2].recommended_model == "seedream-4"
