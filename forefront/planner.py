import logging
from typing import Any, Dict, List, Optional, Set

from . import agents
from .extraction import safe_json_parse
from .llm import message_content
from .models import PROVIDER_REPLICATE, get_model, provider_family
from .schemas import ChatMessage, ExecutionPlan, ModelPreferences, PlannedStep, QueryIntent

logger = logging.getLogger("uvicorn.error")

PLANNER_MODEL = "llama-3.3-70b-versatile"
SAFE_DEFAULT_MODELS = ("llama-3.3-70b-versatile", "gemini-2.0-flash")
CONTENT_PURPOSES = {"web-search", "image-generation", "code-generation", "text-generation", "reasoning"}
PURPOSES = CONTENT_PURPOSES | {"prompt-enhancement", "final-composition"}

DEFAULT_MODEL_FOR = {
    "web-search": "sonar-pro",
    "prompt-enhancement": "llama-3.3-70b-versatile",
    "image-generation": "seedream-4",
    "code-generation": "llama-3.3-70b-versatile",
    "text-generation": "llama-3.3-70b-versatile",
    "reasoning": "qwen/qwen3-32b",
    "final-composition": "llama-3.3-70b-versatile",
}

STEP_IDS = {
    "web-search": "research",
    "prompt-enhancement": "enhance-prompt",
    "image-generation": "generate-image",
    "code-generation": "write-code",
    "text-generation": "write-text",
    "reasoning": "reason",
    "final-composition": "compose",
}

# Preference category -> step purposes it applies to.
PREFERENCE_PURPOSES = {
    "search": ("web-search",),
    "image": ("image-generation",),
    "reasoning": ("reasoning",),
    "text": ("text-generation", "code-generation"),
}


def build_planning_prompt(message: str, intent: QueryIntent, history: Optional[List[ChatMessage]] = None) -> str:
    lines = [
        f'# USER REQUEST\n"{message}"\n',
        "# INTENT ANALYSIS",
        f"Type: {intent.type}",
        f"Complexity: {intent.complexity}",
        f"Needs web search: {intent.needs_web_search}",
        f"Needs reasoning: {intent.needs_reasoning}",
        f"Needs image generation: {intent.needs_image_generation}",
        f"Needs code generation: {intent.needs_code_generation or intent.type == 'coding'}",
        f"Confidence: {intent.confidence * 100:.0f}%\n",
    ]
    if history:
        lines.append("# CONVERSATION CONTEXT")
        for msg in history[-3:]:
            snippet = msg.content[:150] + ("..." if len(msg.content) > 150 else "")
            lines.append(f"{msg.role}: {snippet}")
        lines.append("")
    lines.append("# YOUR TASK\nCreate the execution plan for this request. Return ONLY the JSON object.")
    return "\n".join(lines)


def _step(purpose: str, number: int, input_from: Optional[int] = None, model: Optional[str] = None) -> PlannedStep:
    role = agents.role_for_purpose(purpose)
    return PlannedStep(
        step_id=STEP_IDS[purpose],
        step_number=number,
        purpose=purpose,
        recommended_model=model or DEFAULT_MODEL_FOR[purpose],
        system_prompt=role.system_prompt,
        instructions="",
        expected_output_schema=dict(role.output_schema),
        input_from=input_from,
    )


def _coerce_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def model_fits_purpose(model: str, purpose: str) -> bool:
    """Image steps run only on image models and every other step only on text models."""
    spec = get_model(model)
    if spec is None:
        return False
    return (spec.provider == PROVIDER_REPLICATE) == (purpose == "image-generation")


def normalize_plan(data: Dict[str, Any], source: str = "model") -> ExecutionPlan:
    """Validate a raw plan into a linear chain numbered 1..N with backward-only inputs."""
    raw_steps = data.get("steps")
    if not isinstance(raw_steps, list):
        raise ValueError("plan has no steps")

    steps: List[PlannedStep] = []
    renumbered: Dict[int, int] = {}
    for raw in raw_steps:
        if not isinstance(raw, dict):
            continue
        purpose = str(raw.get("purpose") or "").strip()
        if purpose not in PURPOSES:
            logger.warning("Planner returned unknown purpose %r; skipping step", purpose)
            continue
        model = str(raw.get("recommendedModel") or raw.get("recommended_model") or "")
        if not model_fits_purpose(model, purpose):
            if get_model(model) is not None:
                logger.warning("Planner put %s on a %s step; using %s", model, purpose, DEFAULT_MODEL_FOR[purpose])
            model = DEFAULT_MODEL_FOR[purpose]
        number = len(steps) + 1
        original = _coerce_int(raw.get("stepNumber", raw.get("step_number")))
        if original is not None:
            renumbered[original] = number
        schema = raw.get("expectedOutputSchema") or raw.get("expected_output_schema")
        steps.append(
            PlannedStep(
                step_id=str(raw.get("stepId") or raw.get("step_id") or STEP_IDS[purpose]),
                step_number=number,
                purpose=purpose,
                recommended_model=model,
                system_prompt=str(raw.get("systemPrompt") or raw.get("system_prompt") or ""),
                instructions=str(raw.get("instructions") or ""),
                expected_output_schema=schema if isinstance(schema, dict) else {},
                input_from=_coerce_int(raw.get("inputFrom", raw.get("input_from"))),
            )
        )
    if not steps:
        raise ValueError("plan has no usable steps")

    for step in steps:
        if step.input_from is not None:
            step.input_from = renumbered.get(step.input_from)
        if step.input_from is not None and step.input_from >= step.step_number:
            step.input_from = None

    steps = ensure_enhancement_before_image(steps)
    steps = ensure_composition(steps)
    estimated = data.get("estimatedTime", data.get("estimatedTotalTime"))
    try:
        estimated_time = float(estimated)
    except (TypeError, ValueError):
        estimated_time = float(len(steps) * 10)
    return ExecutionPlan(
        reasoning=str(data.get("reasoning") or "Plan generated"),
        estimated_time=estimated_time,
        steps=steps,
        source=source,
    )


def _rebuild(steps: List[PlannedStep]) -> List[PlannedStep]:
    """Renumber 1..N, remapping inputs. Steps numbered 0 are new and cannot be referenced."""
    mapping = {s.step_number: i for i, s in enumerate(steps, start=1) if s.step_number > 0}
    for index, step in enumerate(steps, start=1):
        target = mapping.get(step.input_from) if step.input_from is not None else None
        step.input_from = target if target is not None and target < index else None
        step.step_number = index
    return steps


def ensure_enhancement_before_image(steps: List[PlannedStep]) -> List[PlannedStep]:
    result: List[PlannedStep] = []
    links = []
    for step in steps:
        previous = result[-1] if result else None
        if step.purpose == "image-generation":
            if previous is None or previous.purpose != "prompt-enhancement":
                previous = _step("prompt-enhancement", 0, input_from=step.input_from)
                result.append(previous)
                logger.info("Inserted prompt-enhancement before image generation")
            links.append((previous, step))
        result.append(step)
    _rebuild(result)
    for enhancement, image in links:
        image.input_from = enhancement.step_number
    return result


def ensure_composition(steps: List[PlannedStep]) -> List[PlannedStep]:
    """Exactly one trailing composition when two or more content steps exist, none otherwise."""
    content = sum(1 for s in steps if s.purpose in CONTENT_PURPOSES)
    composition = [s for s in steps if s.purpose == "final-composition"]
    result = [s for s in steps if s.purpose != "final-composition"]
    if content >= 2:
        result.append(composition[-1] if composition else _step("final-composition", 0))
    return _rebuild(result)


def generate_fallback_plan(intent: QueryIntent) -> ExecutionPlan:
    steps: List[PlannedStep] = []
    if intent.needs_web_search:
        steps.append(_step("web-search", 1))
    research = 1 if steps else None
    if intent.needs_image_generation:
        number = len(steps) + 1
        steps.append(_step("prompt-enhancement", number, input_from=research))
        steps.append(_step("image-generation", number + 1, input_from=number))
    elif intent.needs_code_generation or intent.type == "coding":
        steps.append(_step("code-generation", len(steps) + 1, input_from=research))
    elif intent.needs_reasoning and intent.complexity == "high":
        steps.append(_step("reasoning", len(steps) + 1, input_from=research))
    else:
        steps.append(_step("text-generation", len(steps) + 1, input_from=research))
    if sum(1 for s in steps if s.purpose in CONTENT_PURPOSES) >= 2:
        steps.append(_step("final-composition", len(steps) + 1))
    return ExecutionPlan(
        reasoning="Fallback plan built from intent flags",
        estimated_time=float(len(steps) * 10),
        steps=steps,
        source="fallback",
    )


def substitute_unavailable_models(plan: ExecutionPlan, unavailable: Set[str], fallback_model: str) -> ExecutionPlan:
    """Move steps off provider families that are currently failing."""
    if not unavailable:
        return plan
    candidates = [fallback_model] + [m for m in SAFE_DEFAULT_MODELS if m != fallback_model]
    replacement = next((m for m in candidates if provider_family(m) not in unavailable), None)
    for step in plan.steps:
        if step.purpose == "image-generation":
            continue
        if provider_family(step.recommended_model) in unavailable and replacement:
            logger.warning(
                "Step %s: %s is on an unavailable provider; using %s",
                step.step_number,
                step.recommended_model,
                replacement,
            )
            step.recommended_model = replacement
    return plan


def apply_model_preferences(plan: ExecutionPlan, preferences: ModelPreferences) -> ExecutionPlan:
    for category, purposes in PREFERENCE_PURPOSES.items():
        wanted = next((m for m in getattr(preferences, category) if get_model(m) is not None), None)
        if wanted is None:
            continue
        for step in plan.steps:
            if step.purpose in purposes and step.recommended_model != wanted and model_fits_purpose(wanted, step.purpose):
                logger.info("Step %s: user asked for %s", step.step_number, wanted)
                step.recommended_model = wanted
    return plan


async def generate_execution_plan(
    registry: Any,
    message: str,
    intent: QueryIntent,
    history: Optional[List[ChatMessage]] = None,
    model: str = PLANNER_MODEL,
    fallback_model: str = "gemini-2.0-flash",
    fixer_model: Optional[str] = None,
) -> ExecutionPlan:
    try:
        resp = await registry.invoke(
            model,
            {
                "messages": [
                    {"role": "system", "content": agents.PLANNER_SYSTEM},
                    {"role": "user", "content": build_planning_prompt(message, intent, history)},
                ],
                "temperature": 0.1,
                "max_tokens": 2000,
            },
        )
        data = await safe_json_parse(message_content(resp), registry, fixer_model)
        if not data:
            raise ValueError("planner returned no JSON plan")
        plan = normalize_plan(data)
        logger.info("Planner produced %s steps: %s", len(plan.steps), plan.reasoning)
        return plan
    except Exception as exc:
        logger.warning("Planner failed, using fallback plan: %s", exc)
        plan = generate_fallback_plan(intent)
        return substitute_unavailable_models(plan, registry.unavailable_families(), fallback_model)
