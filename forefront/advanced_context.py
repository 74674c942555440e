import logging
import math
from typing import Any, Dict, List, Optional

from . import agents
from .llm import message_content
from .models import ModelSpec, calculate_token_budget, get_model
from .schemas import ChatMessage, ContextWindow

logger = logging.getLogger("uvicorn.error")

DEFAULT_SYSTEM_PROMPT_TOKENS = 500
CHUNK_FALLBACK_CHARS = 400


def estimate_text_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def window_tokens(messages: List[ChatMessage]) -> int:
    return sum(estimate_text_tokens(m.content) for m in messages)


def importance_score(message: ChatMessage, position: int, length: int) -> float:
    score = 0.5
    score += (1 - position / max(length, 1)) * 0.3
    meta = message.metadata or {}
    if message.role == "tool" or meta.get("toolName"):
        score += 0.2
    if message.role == "user":
        score += 0.15
    if len(message.content) > 500:
        score += 0.1
    if meta.get("citations"):
        score += 0.1
    if meta.get("imageUrl"):
        score += 0.15
    return min(score, 1.0)


def build_strategy(spec: ModelSpec, budget: Dict[str, int], overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    strategy: Dict[str, Any] = {
        "recent_verbatim": 20,
        "summarization": True,
        "chunk_size": 10,
        "filtering": False,
        "min_importance": 0.3,
        "target_budget": budget["target"],
        "max_budget": budget["max"],
    }
    if spec.context_window <= 8_192:
        strategy.update({"recent_verbatim": 8, "chunk_size": 6, "filtering": True, "min_importance": 0.5})
    if spec.specialization == "reasoning":
        strategy.update({"recent_verbatim": 30, "filtering": False})
    strategy.update(overrides or {})
    return strategy


class AdvancedContextManager:
    """Fits history into one model's context window."""

    def __init__(self, registry: Any = None, summarizer_model: str = "llama-3.1-8b-instant"):
        self.registry = registry
        self.summarizer_model = summarizer_model

    def history_budget(self, spec: ModelSpec, system_prompt: Optional[str], user_message: str) -> Dict[str, int]:
        prompt_tokens = (
            estimate_text_tokens(system_prompt) if system_prompt else DEFAULT_SYSTEM_PROMPT_TOKENS
        ) + estimate_text_tokens(user_message)
        # Small-window models cannot reserve their full output size.
        reserve = min(spec.max_output_tokens, spec.context_window // 4)
        budget = calculate_token_budget(spec.id, prompt_tokens, reserve_output=reserve)
        return {
            "target": max(0, budget["recommended"] - prompt_tokens),
            "max": max(0, budget["max_input"] - prompt_tokens),
        }

    async def get_context_for_model(
        self,
        model_id: str,
        messages: List[ChatMessage],
        user_message: str,
        system_prompt: Optional[str] = None,
        strategy: Optional[Dict[str, Any]] = None,
        level: str = "standard",
    ) -> ContextWindow:
        spec = get_model(model_id)
        if spec is None or spec.context_window <= 0:
            return ContextWindow(
                model_id=model_id, context_level=level, total_available=len(messages)
            )
        budget = self.history_budget(spec, system_prompt, user_message)
        plan = build_strategy(spec, budget, strategy)
        logger.info(
            "Context for %s: window=%s history budget=%s messages=%s",
            spec.id,
            spec.context_window,
            budget["target"],
            len(messages),
        )
        window = await self.compress(messages, plan)
        window.model_id = spec.id
        window.context_level = level
        return window

    async def compress(self, messages: List[ChatMessage], strategy: Dict[str, Any]) -> ContextWindow:
        total = len(messages)
        if not messages:
            return ContextWindow(max_token_budget=strategy["max_budget"], strategy=strategy)

        scored = [
            m.model_copy(update={"metadata": {**m.metadata, "importance": importance_score(m, i, total)}})
            for i, m in enumerate(messages)
        ]
        keep = max(0, int(strategy["recent_verbatim"]))
        recent = scored[-keep:] if keep else []
        older = scored[:-keep] if keep else scored

        filtered = older
        if strategy["filtering"] and older:
            filtered = [m for m in older if m.metadata.get("importance", 0) >= strategy["min_importance"]]
            logger.info("Context filter dropped %s low-importance messages", len(older) - len(filtered))

        processed = filtered
        summarized = 0
        chunk_size = max(1, int(strategy["chunk_size"]))
        if strategy["summarization"] and len(filtered) > chunk_size:
            processed = []
            for start in range(0, len(filtered), chunk_size):
                chunk = filtered[start : start + chunk_size]
                summary = await self.summarize_chunk(chunk)
                processed.append(
                    ChatMessage(
                        role="system",
                        content=f"[Summary of {len(chunk)} messages]: {summary}",
                        metadata={"importance": 0.7, "isSummary": True},
                    )
                )
                summarized += len(chunk)

        final = processed + recent
        while final and window_tokens(final) > strategy["max_budget"]:
            final.pop(0)
        tokens = window_tokens(final)
        if tokens > strategy["target_budget"]:
            logger.info("Context over target budget: %s > %s tokens", tokens, strategy["target_budget"])
        return ContextWindow(
            messages=final,
            token_count=tokens,
            filtered_count=len(final),
            total_available=total,
            has_summary=summarized > 0,
            summarized_count=summarized,
            max_token_budget=strategy["max_budget"],
            strategy=strategy,
            compression_applied=summarized > 0 or len(filtered) != len(older) or len(final) < len(processed) + len(recent),
        )

    async def summarize_chunk(self, chunk: List[ChatMessage]) -> str:
        transcript = "\n\n".join(f"{m.role.upper()}: {m.content}" for m in chunk)
        if self.registry is not None:
            try:
                resp = await self.registry.invoke(
                    self.summarizer_model,
                    {
                        "messages": [
                            {"role": "system", "content": "You are the Conversation Summarizer."},
                            {"role": "user", "content": agents.CHUNK_SUMMARY_PROMPT.format(transcript=transcript)},
                        ],
                        "temperature": 0.3,
                        "max_tokens": 500,
                    },
                )
                summary = message_content(resp).strip()
                if summary:
                    return summary
            except Exception as exc:
                logger.warning("Chunk summarization failed: %s", exc)
        return transcript[:CHUNK_FALLBACK_CHARS] + "..."


def format_system_in_user(window: ContextWindow, system_instructions: str, user_message: str) -> List[Dict[str, Any]]:
    """Message list for models that take their instructions inside the first user turn."""
    messages = [m.to_wire() for m in window.messages if m.role != "system"]
    for msg in messages:
        if msg["role"] == "user":
            msg["content"] = f"{system_instructions}\n\n---\n\n{msg['content']}"
            return messages + [{"role": "user", "content": user_message}]
    return messages + [{"role": "user", "content": f"{system_instructions}\n\n---\n\n{user_message}"}]
