import re
from typing import List, Optional, Pattern, Sequence, Tuple

from .schemas import (
    ModelPreferences,
    ParsedInstructions,
    References,
    ToolRequirements,
    ValidationReport,
    WorkflowHints,
)

_I = re.IGNORECASE

MODEL_PATTERNS: Sequence[Tuple[str, Pattern, str]] = (
    ("image", re.compile(r"seed\s*-?\s*dream|seedream", _I), "seedream-4"),
    ("image", re.compile(r"\bflux\s*(1\.1|pro|dev)?", _I), "flux"),
    ("image", re.compile(r"midjourney|\bmj\b", _I), "midjourney"),
    ("image", re.compile(r"dalle|dall-e", _I), "dalle-3"),
    ("search", re.compile(r"sonar\s*-?\s*deep\s*-?\s*research", _I), "sonar-deep-research"),
    ("search", re.compile(r"sonar\s*-?\s*pro", _I), "sonar-pro"),
    ("search", re.compile(r"sonar\s*-?\s*reasoning", _I), "sonar-reasoning"),
    ("search", re.compile(r"perplexity", _I), "sonar-pro"),
    ("reasoning", re.compile(r"deepseek\s*-?\s*r1", _I), "deepseek-r1-distill-llama-70b"),
    ("reasoning", re.compile(r"qwen\s*-?\s*qwq", _I), "qwen-qwq-32b"),
    ("reasoning", re.compile(r"o1\s*-?\s*preview", _I), "o1-preview"),
    ("text", re.compile(r"llama\s*-?\s*3\.3\s*-?\s*70b", _I), "llama-3.3-70b-versatile"),
    ("text", re.compile(r"gemini\s*flash\s*2\.0|gemini\s*2\.0\s*flash", _I), "gemini-2.0-flash"),
    ("text", re.compile(r"claude\s*3\.5", _I), "claude-3.5-sonnet"),
    ("text", re.compile(r"gpt\s*-?\s*4o", _I), "gpt-4o"),
    ("vision", re.compile(r"llama.*vision|vision.*llama", _I), "llama-3.2-90b-vision-preview"),
    ("vision", re.compile(r"pixtral", _I), "pixtral-12b"),
)

MUST_USE_PATTERNS: Sequence[Tuple[Pattern, str]] = (
    (re.compile(r"(generate|create|make|produce).*image|image.*(generation|creation)|\bdraw\b|illustrate", _I), "generate_image"),
    (re.compile(r"\b(search|check)\b.*\b(the\s+)?(web|online|internet)\b|\buse\s+(web\s+)?search\b", _I), "search_web"),
)

PREFERRED_PATTERNS: Sequence[Tuple[Pattern, str]] = (
    (re.compile(r"(search|find|look up|research|latest|current|news|what is happening)|(what'?s new)", _I), "search_web"),
    (re.compile(r"(run|execute|calculate|compute).*code|code.*(execution|run)|python|calculate this", _I), "execute_code"),
    (re.compile(r"analy[sz]e.*data|data.*(analysis|insights)|statistics|trends", _I), "analyze_data"),
    (re.compile(r"(enhance|improve|optimi[sz]e|refine|better).*prompt|prompt.*(enhancement|optimi[sz]ation)", _I), "enhance_prompt"),
    (re.compile(r"(explain|what is|how does|describe|teach me|tell me about)", _I), "explain_concept"),
)

REFERENCE_PATTERNS: Sequence[Pattern] = (
    re.compile(r"\b(that|this|these|those)\s+(prompt|code|image|result|output|response|search|answer)\b", _I),
    re.compile(r"\b(it|them|that|this)\b", _I),
    re.compile(r"\b(the\s+)?(previous|last|above|earlier|prior)\s+(prompt|code|image|result|output|response)\b", _I),
    re.compile(r"\busing\s+(it|that|this)\b", _I),
    re.compile(r"\bwith\s+(it|that|this|the\s+same)\b", _I),
    re.compile(r"\bfrom\s+(it|that|this|above|before)\b", _I),
)

REFERENCE_TYPES: Sequence[Tuple[Pattern, str]] = (
    (re.compile(r"prompt", _I), "prompt"),
    (re.compile(r"code|script|function", _I), "code"),
    (re.compile(r"image|picture|photo", _I), "image"),
    (re.compile(r"search|results|findings", _I), "search-result"),
    (re.compile(r"analysis|insights", _I), "analysis"),
    (re.compile(r"explanation|concept", _I), "explanation"),
)

MULTI_STEP_HINTS: Sequence[Pattern] = (
    re.compile(r"first.*then", _I),
    re.compile(r"\d+\.\s"),
    re.compile(r"(and then|\bnext\b|after that|finally)", _I),
    re.compile(r"(step 1|step one)", _I),
)
_NUMBERED_STEP_RE = re.compile(r"\d+\.\s+([^.]+)")
_FIRST_THEN_RE = re.compile(r"first,?\s+(.+?)[,;]\s*(?:and\s+)?then,?\s+(.+)", _I)


def extract_model_preferences(message: str) -> ModelPreferences:
    found = {}
    for category, pattern, model in MODEL_PATTERNS:
        if pattern.search(message):
            bucket = found.setdefault(category, [])
            if model not in bucket:
                bucket.append(model)
    return ModelPreferences(**found)


def extract_tool_requirements(message: str) -> ToolRequirements:
    must = [tool for pattern, tool in MUST_USE_PATTERNS if pattern.search(message)]
    preferred = [tool for pattern, tool in PREFERRED_PATTERNS if pattern.search(message)]
    return ToolRequirements(must_use_tools=must, preferred_tools=preferred)


def extract_references(message: str) -> References:
    indicators: List[str] = []
    for pattern in REFERENCE_PATTERNS:
        for match in pattern.finditer(message):
            if match.group(0) not in indicators:
                indicators.append(match.group(0))
    reference_type: Optional[str] = None
    for pattern, kind in REFERENCE_TYPES:
        if pattern.search(message):
            reference_type = kind
            break
    return References(
        has_references=bool(indicators),
        reference_type=reference_type,
        reference_indicators=indicators,
    )


def extract_workflow(message: str) -> WorkflowHints:
    hints = WorkflowHints(is_multi_step=any(p.search(message) for p in MULTI_STEP_HINTS))
    numbered = _NUMBERED_STEP_RE.findall(message)
    if len(numbered) > 1:
        hints.is_multi_step = True
        hints.steps = [step.strip() for step in numbered]
    first_then = _FIRST_THEN_RE.search(message)
    if first_then:
        hints.is_multi_step = True
        hints.steps = [first_then.group(1).strip(), first_then.group(2).strip()]
    return hints


def parse_instructions(message: str) -> ParsedInstructions:
    text = message or ""
    return ParsedInstructions(
        model_preferences=extract_model_preferences(text),
        tool_requirements=extract_tool_requirements(text),
        references=extract_references(text),
        workflow=extract_workflow(text),
    )


def _matches(preferences: List[str], selected_model: str) -> bool:
    selected = (selected_model or "").lower()
    return any(pref.lower() in selected for pref in preferences)


def validate_against_instructions(
    parsed: ParsedInstructions,
    selected_model: str,
    selected_tools: List[str],
) -> ValidationReport:
    violations: List[str] = []
    prefs = parsed.model_preferences
    if prefs.image and "generate_image" in selected_tools and not _matches(prefs.image, selected_model):
        violations.append(
            f"User requested image generation with {' or '.join(prefs.image)}, but using {selected_model}"
        )
    if prefs.search and "search_web" in selected_tools and not _matches(prefs.search, selected_model):
        violations.append(f"User requested search with {' or '.join(prefs.search)}, but using {selected_model}")
    for tool in parsed.tool_requirements.must_use_tools:
        if tool not in selected_tools:
            violations.append(f"User's request requires tool '{tool}' but it was not selected")
    return ValidationReport(valid=not violations, violations=violations)
