import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger("uvicorn.error")

PROVIDER_GROQ = "groq"
PROVIDER_PERPLEXITY = "perplexity"
PROVIDER_GOOGLE = "google"
PROVIDER_REPLICATE = "replicate"

DEFAULT_OUTPUT_RESERVE = 2048


@dataclass
class ModelSpec:
    id: str
    name: str
    provider: str
    context_window: int
    max_output_tokens: int
    capabilities: Dict[str, bool] = field(default_factory=dict)
    specialization: str = "general"
    default_temperature: float = 0.7
    temperature_range: Tuple[float, float] = (0.0, 2.0)
    deprecated: bool = False
    replacement: Optional[str] = None
    # Provider rejects system turns for this model; instructions ride in the first user turn.
    system_in_user: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "provider": self.provider,
            "context_window": self.context_window,
            "max_output_tokens": self.max_output_tokens,
            "capabilities": dict(self.capabilities),
            "specialization": self.specialization,
            "default_temperature": self.default_temperature,
            "temperature_range": list(self.temperature_range),
            "deprecated": self.deprecated,
            "replacement": self.replacement,
        }


def _caps(*names: str) -> Dict[str, bool]:
    return {name: True for name in names}


_CATALOG: List[ModelSpec] = [
    # Groq
    ModelSpec(
        "llama-3.3-70b-versatile", "Llama 3.3 70B Versatile", PROVIDER_GROQ, 128_000, 8_192,
        _caps("tool_calling", "json_mode", "streaming"), "tool-use",
    ),
    ModelSpec(
        "llama-3.3-70b-specdec", "Llama 3.3 70B SpecDec", PROVIDER_GROQ, 8_192, 8_192,
        _caps("tool_calling", "json_mode", "streaming"), "speed",
    ),
    ModelSpec(
        "llama-3.1-8b-instant", "Llama 3.1 8B Instant", PROVIDER_GROQ, 131_072, 8_192,
        _caps("json_mode", "streaming"), "speed",
    ),
    ModelSpec(
        "qwen/qwen3-32b", "Qwen3 32B", PROVIDER_GROQ, 128_000, 40_960,
        _caps("tool_calling", "json_mode", "reasoning", "streaming"), "reasoning", 0.6, (0.0, 1.0),
    ),
    ModelSpec(
        "openai/gpt-oss-120b", "GPT-OSS 120B", PROVIDER_GROQ, 131_072, 65_536,
        _caps("tool_calling", "json_mode", "reasoning", "streaming"), "reasoning",
    ),
    ModelSpec(
        "openai/gpt-oss-20b", "GPT-OSS 20B", PROVIDER_GROQ, 131_072, 65_536,
        _caps("tool_calling", "json_mode", "reasoning", "streaming"), "general",
    ),
    ModelSpec(
        "deepseek-r1-distill-llama-70b", "DeepSeek R1 Distill Llama 70B", PROVIDER_GROQ, 128_000, 16_384,
        _caps("reasoning", "streaming"), "reasoning", 0.6, (0.0, 1.0), system_in_user=True,
    ),
    ModelSpec(
        "deepseek-r1-distill-qwen-32b", "DeepSeek R1 Distill Qwen 32B", PROVIDER_GROQ, 128_000, 16_384,
        _caps("reasoning", "streaming"), "reasoning", 0.6, (0.0, 1.0), system_in_user=True,
    ),
    ModelSpec(
        "llama-3.2-90b-vision-preview", "Llama 3.2 90B Vision", PROVIDER_GROQ, 8_192, 8_192,
        _caps("vision", "tool_calling", "json_mode", "streaming"), "vision",
    ),
    ModelSpec(
        "llama-3.2-11b-vision-preview", "Llama 3.2 11B Vision", PROVIDER_GROQ, 8_192, 8_192,
        _caps("vision", "tool_calling", "json_mode", "streaming"), "vision",
    ),
    ModelSpec(
        "llama-3.2-3b-preview", "Llama 3.2 3B", PROVIDER_GROQ, 8_192, 8_192,
        _caps("json_mode", "streaming"), "speed",
    ),
    ModelSpec(
        "llama-3.2-1b-preview", "Llama 3.2 1B", PROVIDER_GROQ, 8_192, 8_192,
        _caps("json_mode", "streaming"), "speed",
    ),
    ModelSpec(
        "groq/compound", "Groq Compound", PROVIDER_GROQ, 70_000, 8_192,
        _caps("tool_calling", "web_search", "code_execution"), "tool-use",
    ),
    ModelSpec(
        "groq/compound-mini", "Groq Compound Mini", PROVIDER_GROQ, 70_000, 8_192,
        _caps("tool_calling", "web_search", "code_execution"), "tool-use",
    ),
    ModelSpec(
        "meta-llama/llama-4-maverick-17b-128e-instruct", "Llama 4 Maverick", PROVIDER_GROQ, 131_072, 8_192,
        _caps("vision", "tool_calling", "json_mode", "streaming"), "vision",
    ),
    ModelSpec(
        "llama3-groq-70b-tool-use", "Llama 3 Groq 70B Tool Use", PROVIDER_GROQ, 8_192, 8_192,
        _caps("tool_calling", "json_mode", "streaming"), "tool-use",
        deprecated=True, replacement="llama-3.3-70b-versatile",
    ),
    ModelSpec(
        "llama3-groq-8b-tool-use", "Llama 3 Groq 8B Tool Use", PROVIDER_GROQ, 8_192, 8_192,
        _caps("tool_calling", "streaming"), "tool-use",
        deprecated=True, replacement="llama-3.3-70b-versatile",
    ),
    # Perplexity
    ModelSpec("sonar", "Sonar", PROVIDER_PERPLEXITY, 127_072, 8_000, _caps("web_search", "citations"), "search", 0.2),
    ModelSpec("sonar-pro", "Sonar Pro", PROVIDER_PERPLEXITY, 127_072, 8_000, _caps("web_search", "citations"), "search", 0.2),
    ModelSpec(
        "sonar-reasoning", "Sonar Reasoning", PROVIDER_PERPLEXITY, 127_072, 8_000,
        _caps("web_search", "citations", "reasoning"), "search", 0.2,
    ),
    ModelSpec(
        "sonar-deep-research", "Sonar Deep Research", PROVIDER_PERPLEXITY, 127_072, 8_000,
        _caps("web_search", "citations", "reasoning"), "search", 0.2,
    ),
    # Google
    ModelSpec(
        "gemini-2.0-flash", "Gemini 2.0 Flash", PROVIDER_GOOGLE, 1_000_000, 8_192,
        _caps("vision", "multimodal", "json_mode"), "general",
    ),
    ModelSpec(
        "gemini-2.0-flash-exp", "Gemini 2.0 Flash Experimental", PROVIDER_GOOGLE, 1_000_000, 8_192,
        _caps("vision", "multimodal", "json_mode"), "general",
    ),
    # Replicate
    ModelSpec("seedream-4", "Seedream 4", PROVIDER_REPLICATE, 0, 0, _caps("image_generation"), "image"),
]

MODEL_REGISTRY: Dict[str, ModelSpec] = {spec.id: spec for spec in _CATALOG}

BEST_FOR = {
    "orchestration": "llama-3.3-70b-versatile",
    "reasoning": "deepseek-r1-distill-llama-70b",
    "vision": "llama-3.2-90b-vision-preview",
    "speed": "llama-3.3-70b-specdec",
    "search": "sonar-pro",
    "image": "seedream-4",
    "multimodal": "gemini-2.0-flash",
}


def get_model(model_id: Optional[str]) -> Optional[ModelSpec]:
    """Look up a model; deprecated ids resolve to their replacement."""
    if not model_id:
        return None
    spec = MODEL_REGISTRY.get(model_id)
    if spec is None:
        return None
    if spec.deprecated and spec.replacement:
        logger.warning("Model %s is deprecated; using %s", model_id, spec.replacement)
        return MODEL_REGISTRY.get(spec.replacement, spec)
    return spec


def resolve_model_id(model_id: str) -> str:
    spec = get_model(model_id)
    return spec.id if spec else model_id


def provider_family(model_id: str) -> Optional[str]:
    spec = get_model(model_id)
    return spec.provider if spec else None


def get_best_model_for(task: str) -> ModelSpec:
    return MODEL_REGISTRY[BEST_FOR.get(task, "llama-3.3-70b-versatile")]


def active_models(provider: Optional[str] = None) -> List[ModelSpec]:
    return [
        spec
        for spec in MODEL_REGISTRY.values()
        if not spec.deprecated and (provider is None or spec.provider == provider)
    ]


def calculate_token_budget(
    model_id: str,
    message_tokens: int = 0,
    reserve_output: int = DEFAULT_OUTPUT_RESERVE,
) -> Dict[str, Any]:
    spec = get_model(model_id)
    if spec is None or spec.context_window <= 0:
        return {"max_input": 0, "max_output": 0, "recommended": 0, "needs_compression": True}
    max_input = max(0, spec.context_window - reserve_output)
    recommended = int(max_input * 0.8)
    return {
        "max_input": max_input,
        "max_output": min(reserve_output, spec.max_output_tokens),
        "recommended": recommended,
        "needs_compression": message_tokens > recommended,
    }


def clamp_temperature(model_id: str, temperature: float) -> float:
    spec = get_model(model_id)
    if spec is None:
        return temperature
    low, high = spec.temperature_range
    return max(low, min(high, temperature))


def preferred_model(candidates: List[str], default: str) -> str:
    """First known model among the user's picks, else the default."""
    return next((m for m in candidates if get_model(m) is not None), default)
