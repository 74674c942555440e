import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "FOREFRONT_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
MASKED = "********"


class ProviderEndpoint(BaseModel):
    base_url: str
    api_key: Optional[str] = None

    model_config = {"protected_namespaces": ()}


class AppSettings(BaseModel):
    groq: ProviderEndpoint = Field(
        default_factory=lambda: ProviderEndpoint(base_url="https://api.groq.com/openai/v1")
    )
    perplexity: ProviderEndpoint = Field(
        default_factory=lambda: ProviderEndpoint(base_url="https://api.perplexity.ai")
    )
    gemini: ProviderEndpoint = Field(
        default_factory=lambda: ProviderEndpoint(base_url="https://generativelanguage.googleapis.com/v1beta")
    )
    replicate: ProviderEndpoint = Field(
        default_factory=lambda: ProviderEndpoint(base_url="https://api.replicate.com/v1")
    )

    # Role models
    classifier_model: str = "llama-3.1-8b-instant"
    summarizer_model: str = "llama-3.1-8b-instant"
    coordinator_model: str = "llama-3.1-8b-instant"
    planner_model: str = "llama-3.3-70b-versatile"
    tool_model: str = "llama-3.3-70b-versatile"
    search_model: str = "sonar-pro"
    image_model: str = "seedream-4"
    fallback_model: str = "gemini-2.0-flash"

    default_context_level: str = "standard"
    low_confidence_threshold: float = 0.7
    short_answer_chars: int = 100
    request_timeout_s: float = 60.0
    unavailable_ttl_s: float = 60.0
    max_output_tokens: int = 4096
    host: str = "0.0.0.0"
    port: int = 8000

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for name in ("groq", "perplexity", "gemini", "replicate"):
            endpoint = data.get(name) or {}
            if endpoint.get("api_key"):
                endpoint["api_key"] = MASKED
        return data

    model_config = {"protected_namespaces": ()}


_ENDPOINT_ENV = {
    "groq": ("GROQ_BASE_URL", "GROQ_API_KEY"),
    "perplexity": ("PERPLEXITY_BASE_URL", "PERPLEXITY_API_KEY"),
    "gemini": ("GEMINI_BASE_URL", "GEMINI_API_KEY"),
    "replicate": ("REPLICATE_BASE_URL", "REPLICATE_API_TOKEN"),
}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "classifier_model": os.getenv("CLASSIFIER_MODEL"),
        "summarizer_model": os.getenv("SUMMARIZER_MODEL"),
        "coordinator_model": os.getenv("COORDINATOR_MODEL"),
        "planner_model": os.getenv("PLANNER_MODEL"),
        "tool_model": os.getenv("TOOL_MODEL"),
        "search_model": os.getenv("SEARCH_MODEL"),
        "image_model": os.getenv("IMAGE_MODEL"),
        "fallback_model": os.getenv("FALLBACK_MODEL"),
        "default_context_level": os.getenv("DEFAULT_CONTEXT_LEVEL"),
        "low_confidence_threshold": os.getenv("LOW_CONFIDENCE_THRESHOLD"),
        "short_answer_chars": os.getenv("SHORT_ANSWER_CHARS"),
        "request_timeout_s": os.getenv("REQUEST_TIMEOUT_S"),
        "unavailable_ttl_s": os.getenv("UNAVAILABLE_TTL_S"),
        "max_output_tokens": os.getenv("MAX_OUTPUT_TOKENS"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    cleaned: Dict[str, Any] = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("short_answer_chars", "max_output_tokens", "port"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in ("low_confidence_threshold", "request_timeout_s", "unavailable_ttl_s"):
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    for name, (url_var, key_var) in _ENDPOINT_ENV.items():
        endpoint: Dict[str, Any] = {}
        if os.getenv(url_var):
            endpoint["base_url"] = os.getenv(url_var)
        if os.getenv(key_var):
            endpoint["api_key"] = os.getenv(key_var)
        if endpoint:
            cleaned[name] = endpoint
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _merge_endpoint(
    name: str,
    merged: Dict[str, Any],
    file_data: Dict[str, Any],
    env_data: Dict[str, Any],
    allow_env_overrides: bool,
) -> None:
    """Merge one provider endpoint field by field; keys always backfill from env."""
    defaults = AppSettings().model_dump()[name]
    file_ep = file_data.get(name) if isinstance(file_data.get(name), dict) else {}
    env_ep = env_data.get(name) if isinstance(env_data.get(name), dict) else {}
    if allow_env_overrides:
        endpoint = {**defaults, **file_ep, **env_ep}
    else:
        endpoint = {**defaults, **env_ep, **file_ep}
    if not endpoint.get("api_key") and env_ep.get("api_key"):
        endpoint["api_key"] = env_ep["api_key"]
    merged[name] = endpoint


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    allow_env_overrides = _env_overrides_config()
    # Config wins by default; allow env overrides only when explicitly enabled.
    if allow_env_overrides:
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    for name in _ENDPOINT_ENV:
        _merge_endpoint(name, merged, file_data, env_data, allow_env_overrides)
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
