import logging
import time
from typing import Any, Dict, List, Optional, Protocol, Set

from .config import AppSettings
from .gemini import GeminiClient, response_text
from .llm import ChatCompletionsClient, ProviderError
from .models import (
    PROVIDER_GOOGLE,
    PROVIDER_GROQ,
    PROVIDER_PERPLEXITY,
    PROVIDER_REPLICATE,
    clamp_temperature,
    get_model,
)
from .perplexity import PerplexityClient
from .replicate import DEFAULT_ASPECT_RATIO, ReplicateClient

logger = logging.getLogger("uvicorn.error")


class ModelProvider(Protocol):
    id: str

    async def invoke(self, request: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def close(self) -> None:
        ...


def _completion(content: str, model: str, **extra: Any) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "_model_used": model,
    }
    data.update(extra)
    return data


def _raise_on_error(provider: str, result: Dict[str, Any]) -> None:
    if isinstance(result, dict) and result.get("error"):
        detail = result.get("detail") or result["error"]
        raise ProviderError(provider, str(detail), result.get("status_code"))


def fold_system_into_user(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Move system instructions into the first user turn for models that ignore system turns."""
    system_text = "\n\n".join(
        str(m.get("content") or "") for m in messages if m.get("role") == "system" and m.get("content")
    )
    rest = [dict(m) for m in messages if m.get("role") != "system"]
    if not system_text:
        return rest
    for msg in rest:
        if msg.get("role") == "user":
            msg["content"] = f"{system_text}\n\n---\n\n{msg.get('content') or ''}"
            return rest
    return [{"role": "user", "content": system_text}] + rest


def last_user_text(messages: List[Dict[str, Any]]) -> str:
    for msg in reversed(messages):
        if msg.get("role") == "user":
            return str(msg.get("content") or "")
    return ""


class OpenAICompatibleProvider:
    def __init__(self, client: ChatCompletionsClient, provider_id: str = PROVIDER_GROQ):
        self.id = provider_id
        self.client = client

    async def invoke(self, request: Dict[str, Any]) -> Dict[str, Any]:
        model = request["model"]
        spec = get_model(model)
        messages = list(request.get("messages") or [])
        if spec is not None and spec.system_in_user:
            messages = fold_system_into_user(messages)
        return await self.client.chat_completion(
            model=model,
            messages=messages,
            temperature=clamp_temperature(model, float(request.get("temperature", 0.7))),
            max_tokens=int(request.get("max_tokens") or 1024),
            tools=request.get("tools"),
            tool_choice=request.get("tool_choice"),
            response_format=request.get("response_format"),
        )

    async def close(self) -> None:
        await self.client.close()


class PerplexityProvider:
    id = PROVIDER_PERPLEXITY

    def __init__(self, client: PerplexityClient):
        self.client = client

    async def invoke(self, request: Dict[str, Any]) -> Dict[str, Any]:
        search = request.get("search") or {}
        result = await self.client.chat(
            request.get("messages") or [],
            model=request["model"],
            include_images=bool(search.get("images", True)),
            include_videos=bool(search.get("videos", True)),
            search_recency=search.get("recency", "week"),
            search_domains=search.get("domains"),
            temperature=float(request.get("temperature", 0.2)),
            max_tokens=request.get("max_tokens"),
        )
        _raise_on_error(self.id, result)
        result["_model_used"] = request["model"]
        for key in ("citations", "search_results", "images", "videos"):
            result.setdefault(key, [])
        return result

    async def close(self) -> None:
        await self.client.close()


class GeminiProvider:
    id = PROVIDER_GOOGLE

    def __init__(self, client: GeminiClient):
        self.client = client

    @staticmethod
    def build_prompt(messages: List[Dict[str, Any]]) -> str:
        system = "\n\n".join(str(m.get("content") or "") for m in messages if m.get("role") == "system")
        turns = [m for m in messages if m.get("role") in ("user", "assistant")]
        final = turns[-1] if turns and turns[-1].get("role") == "user" else None
        history = turns[:-1] if final else turns
        lines = []
        for msg in history:
            speaker = "Student" if msg.get("role") == "user" else "Assistant"
            lines.append(f"{speaker}: {msg.get('content') or ''}")
        prompt = system
        if lines:
            prompt += "\n\nConversation:\n" + "\n\n".join(lines)
        if final:
            prompt += f"\n\nStudent: {final.get('content') or ''}"
        return (prompt + "\n\nAssistant:").strip()

    async def invoke(self, request: Dict[str, Any]) -> Dict[str, Any]:
        model = request["model"]
        result = await self.client.generate_content(
            model,
            self.build_prompt(list(request.get("messages") or [])),
            temperature=float(request.get("temperature", 0.7)),
            max_tokens=int(request.get("max_tokens") or 4096),
        )
        _raise_on_error(self.id, result)
        return _completion(response_text(result), model)

    async def close(self) -> None:
        await self.client.close()


class ReplicateProvider:
    id = PROVIDER_REPLICATE

    def __init__(self, client: ReplicateClient):
        self.client = client

    async def invoke(self, request: Dict[str, Any]) -> Dict[str, Any]:
        model = request["model"]
        prompt = request.get("prompt") or last_user_text(list(request.get("messages") or []))
        if not prompt.strip():
            raise ProviderError(self.id, "image prompt is empty")
        result = await self.client.generate_image(
            prompt,
            model=model,
            aspect_ratio=request.get("aspect_ratio") or DEFAULT_ASPECT_RATIO,
        )
        _raise_on_error(self.id, result)
        return _completion(result["url"], model, image_url=result["url"], prompt=prompt)

    async def close(self) -> None:
        await self.client.close()


class ProviderRegistry:
    """Model id -> provider family -> provider, with a short memory of failing families."""

    def __init__(self, unavailable_ttl: float = 60.0):
        self.providers: Dict[str, ModelProvider] = {}
        self.unavailable: Dict[str, float] = {}
        self.unavailable_ttl = unavailable_ttl

    def register(self, provider: ModelProvider) -> None:
        self.providers[provider.id] = provider

    def for_model(self, model_id: str) -> ModelProvider:
        spec = get_model(model_id)
        if spec is None:
            raise ValueError(f"Model not found: {model_id}")
        provider = self.providers.get(spec.provider)
        if provider is None:
            raise ValueError(f"Provider not supported: {spec.provider}")
        return provider

    async def invoke(self, model_id: str, request: Dict[str, Any]) -> Dict[str, Any]:
        spec = get_model(model_id)
        provider = self.for_model(model_id)
        payload = {**request, "model": spec.id if spec else model_id}
        try:
            result = await provider.invoke(payload)
        except ProviderError as exc:
            logger.warning("Provider %s failed for %s: %s", provider.id, model_id, exc.detail)
            self.mark_unavailable(provider.id)
            raise
        self.unavailable.pop(provider.id, None)
        return result

    def mark_unavailable(self, family: str) -> None:
        if family:
            self.unavailable[family] = time.monotonic()

    def _prune_unavailable(self) -> None:
        if not self.unavailable:
            return
        if self.unavailable_ttl <= 0:
            self.unavailable.clear()
            return
        now = time.monotonic()
        expired = [key for key, ts in self.unavailable.items() if now - ts > self.unavailable_ttl]
        for key in expired:
            self.unavailable.pop(key, None)

    def unavailable_families(self) -> Set[str]:
        self._prune_unavailable()
        return set(self.unavailable)

    def is_available(self, family: Optional[str]) -> bool:
        return bool(family) and family not in self.unavailable_families()

    async def close(self) -> None:
        for provider in self.providers.values():
            await provider.close()


def build_registry(settings: AppSettings) -> ProviderRegistry:
    timeout = settings.request_timeout_s
    registry = ProviderRegistry(unavailable_ttl=settings.unavailable_ttl_s)
    registry.register(
        OpenAICompatibleProvider(
            ChatCompletionsClient(
                settings.groq.base_url,
                api_key=settings.groq.api_key,
                provider=PROVIDER_GROQ,
                timeout=timeout,
                max_output_tokens=settings.max_output_tokens,
            )
        )
    )
    registry.register(
        PerplexityProvider(PerplexityClient(settings.perplexity.api_key, base_url=settings.perplexity.base_url, timeout=timeout))
    )
    registry.register(GeminiProvider(GeminiClient(settings.gemini.api_key, base_url=settings.gemini.base_url, timeout=timeout)))
    registry.register(
        ReplicateProvider(ReplicateClient(settings.replicate.api_key, base_url=settings.replicate.base_url))
    )
    return registry
