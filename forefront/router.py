import logging
import re
from typing import Any, Dict, Optional

from . import agents
from .extraction import extract_json_block
from .llm import message_content
from .schemas import QueryIntent, RequestContext

logger = logging.getLogger("uvicorn.error")

CLASSIFIER_MODEL = "llama-3.1-8b-instant"
INTENT_TYPES = {
    "factual",
    "reasoning",
    "coding",
    "multimodal",
    "simple",
    "tool-use",
    "image-generation",
    "image-prompt-help",
    "chained",
}
COMPLEXITIES = {"low", "medium", "high"}
FLAG_KEYS = {
    "needsWebSearch": "needs_web_search",
    "needsReasoning": "needs_reasoning",
    "needsMultimodal": "needs_multimodal",
    "needsToolUse": "needs_tool_use",
    "needsImageGeneration": "needs_image_generation",
    "needsImagePromptHelp": "needs_image_prompt_help",
    "needsCodeGeneration": "needs_code_generation",
    "needsTextGeneration": "needs_text_generation",
    "needsChaining": "needs_chaining",
}
MULTI_STEP_PATTERNS = [
    re.compile(r"\b(study|research|analyze|look at|examine)\b.*\b(then|and|before)\b.*\b(create|generate|make|write)", re.I),
    re.compile(r"\b(first|start by|begin with)\b.*\b(then|next|after|finally)", re.I),
    re.compile(r"\b(optimize|improve|enhance)\b.*\b(prompt|generation|code|text)", re.I),
    re.compile(r"\bmultiple\s+(steps|stages|phases)", re.I),
    re.compile(r"\b(and then|after that|following this)", re.I),
    re.compile(r"\b(research|search).*(and|then).*(generate|create|write|code)", re.I),
    re.compile(r"\b(write|code).*(and|then).*(explain|document|test)", re.I),
]
_GREETING_RE = re.compile(r"^\s*(hi|hello|hey|thanks|thank you|ok|okay)\b", re.I)
_SEARCH_HINT_RE = re.compile(r"\b(latest|today|this week|news|current|recent)\b", re.I)
_CODE_HINT_RE = re.compile(r"```|\bdef \w+\(|\bfunction\s+\w+\(|\b(stack trace|traceback|debug)\b", re.I)


def has_multiple_steps(message: str) -> bool:
    return any(pattern.search(message or "") for pattern in MULTI_STEP_PATTERNS)


def build_classification_prompt(message: str, context: Optional[RequestContext] = None) -> str:
    prompt = f'Query: "{message}"'
    if context is None:
        return prompt
    if context.highlighted_text:
        prompt += f'\nHighlighted text: "{context.highlighted_text}"'
    if context.module_title:
        prompt += f'\nLearning context: Module "{context.module_title}"'
        slide_title = (context.current_slide or {}).get("title")
        if slide_title:
            prompt += f' - Slide "{slide_title}"'
    if context.conversation_history:
        last = context.conversation_history[-1].content
        prompt += f'\nPrevious context: "{last[:100]}..."'
    return prompt


def default_classification(confidence: float) -> Dict[str, Any]:
    data: Dict[str, Any] = {flag: False for flag in FLAG_KEYS.values()}
    data.update({"type": "simple", "complexity": "medium", "confidence": confidence})
    return data


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def parse_classification(content: str) -> Dict[str, Any]:
    parsed = extract_json_block(content)
    if not isinstance(parsed, dict):
        logger.warning("Classifier returned unparseable output; using default intent")
        return default_classification(0.3)
    data = default_classification(0.5)
    intent_type = str(parsed.get("type") or "simple").strip().lower()
    data["type"] = intent_type if intent_type in INTENT_TYPES else "simple"
    for wire, field_name in FLAG_KEYS.items():
        data[field_name] = _flag(parsed.get(wire, parsed.get(field_name, False)))
    complexity = str(parsed.get("complexity") or "medium").strip().lower()
    data["complexity"] = complexity if complexity in COMPLEXITIES else "medium"
    confidence = parsed.get("confidence")
    data["confidence"] = 0.5 if confidence is None else confidence
    return data


def select_optimal_model(classification: Dict[str, Any]) -> Dict[str, Optional[str]]:
    kind = classification.get("type")
    complexity = classification.get("complexity")
    if classification.get("needs_chaining") or kind == "chained":
        # The planner assigns concrete models per step.
        return {"suggested_model": "chained", "fallback_model": "llama-3.3-70b-versatile"}
    if classification.get("needs_web_search") or kind == "factual":
        return {"suggested_model": "sonar-pro", "fallback_model": "sonar"}
    if classification.get("needs_tool_use") or kind == "tool-use":
        return {"suggested_model": "groq/compound", "fallback_model": "llama-3.3-70b-versatile"}
    if classification.get("needs_reasoning") and complexity == "high":
        return {"suggested_model": "qwen/qwen3-32b", "fallback_model": "llama-3.3-70b-versatile"}
    if classification.get("needs_code_generation") or kind == "coding":
        return {"suggested_model": "llama-3.3-70b-versatile", "fallback_model": "openai/gpt-oss-120b"}
    if classification.get("needs_image_generation") or kind == "image-generation":
        return {"suggested_model": "seedream-4", "fallback_model": "llama-3.3-70b-versatile"}
    if classification.get("needs_multimodal") or kind == "multimodal":
        return {
            "suggested_model": "gemini-2.0-flash",
            "fallback_model": "meta-llama/llama-4-maverick-17b-128e-instruct",
        }
    if complexity == "low" or kind == "simple":
        return {"suggested_model": "llama-3.1-8b-instant", "fallback_model": "llama-3.3-70b-versatile"}
    return {"suggested_model": "llama-3.3-70b-versatile", "fallback_model": "gemini-2.0-flash"}


def fallback_intent() -> QueryIntent:
    data = default_classification(0.5)
    return QueryIntent(**data, suggested_model="llama-3.3-70b-versatile", fallback_model="gemini-2.0-flash")


async def classify_query(
    registry: Any,
    message: str,
    context: Optional[RequestContext] = None,
    model: str = CLASSIFIER_MODEL,
) -> QueryIntent:
    try:
        resp = await registry.invoke(
            model,
            {
                "messages": [
                    {"role": "system", "content": agents.CLASSIFIER_SYSTEM},
                    {"role": "user", "content": build_classification_prompt(message, context)},
                ],
                "temperature": 0.0,
                "max_tokens": 200,
            },
        )
        content = message_content(resp) or "{}"
    except Exception as exc:
        logger.warning("Classifier call failed: %s", exc)
        return fallback_intent()
    classification = parse_classification(content)
    if has_multiple_steps(message) and not classification["needs_chaining"]:
        logger.info("Multi-step phrasing detected; enabling planned workflow")
        classification["needs_chaining"] = True
        classification["type"] = "chained"
    classification.update(select_optimal_model(classification))
    return QueryIntent(**classification)


def quick_route(message: str) -> Optional[str]:
    """Keyword guess at a model. Advisory only; classification always runs."""
    text = (message or "").strip()
    if not text:
        return None
    if has_multiple_steps(text):
        return None
    if len(text) < 30 and _GREETING_RE.match(text):
        return "llama-3.1-8b-instant"
    if _SEARCH_HINT_RE.search(text):
        return "sonar-pro"
    if _CODE_HINT_RE.search(text):
        return "llama-3.3-70b-versatile"
    return None
