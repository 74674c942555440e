"""Conversation-level history budgeting.

History is reduced to a token-bounded window: the most recent messages are kept
verbatim, older ones are either summarized by a fast model or filtered by
relevance to the current query.
"""

import logging
import math
import re
from typing import Any, Dict, List, Optional, Tuple

from . import agents
from .llm import message_content
from .schemas import ChatMessage, ContextConfig, ManagedContext, QueryIntent

logger = logging.getLogger("uvicorn.error")

TOKENS_PER_CHAR = 0.25
SUMMARY_RESERVE_TOKENS = 500
MIN_SUMMARY_BUDGET = 200
MIN_OLDER_FOR_SUMMARY = 2
POSITION_BASELINE = 0.05

LEVEL_PRESETS: Dict[str, Dict[str, Any]] = {
    "minimal": {"max_tokens": 500, "include_recent": 0, "relevance_threshold": 0.9},
    "standard": {"max_tokens": 2000, "include_recent": 4, "relevance_threshold": 0.6},
    "full": {"max_tokens": 8000, "include_recent": 10, "relevance_threshold": 0.4},
    "extended": {"max_tokens": 16000, "include_recent": 20, "relevance_threshold": 0.2},
}

STOP_WORDS = {
    "the", "is", "at", "which", "on", "a", "an", "and", "or", "but", "in", "with", "to", "for",
    "of", "as", "by", "from", "that", "this", "it", "be", "are", "was", "were", "been", "have",
    "has", "had", "do", "does", "did", "will", "would", "should", "could", "can", "may", "might",
}

SYNONYMS: Dict[str, List[str]] = {
    "neural": ["network", "deep", "learning", "model"],
    "model": ["neural", "machine", "learning", "train"],
    "training": ["train", "learning", "optimization", "gradient"],
    "gradient": ["descent", "backpropagation", "optimization"],
    "backprop": ["backpropagation", "gradient", "training"],
    "backpropagation": ["backprop", "gradient", "chain rule"],
    "function": ["method", "procedure", "subroutine"],
    "variable": ["parameter", "argument", "value"],
    "error": ["bug", "issue", "problem", "exception"],
    "debug": ["debugging", "troubleshoot", "fix"],
    "explain": ["describe", "clarify", "elaborate"],
    "understand": ["comprehend", "grasp", "learn"],
    "example": ["sample", "demonstration", "instance"],
}

TECHNICAL_MARKERS = (
    "```", "def ", "function", "class ", "import ", "return", "async", "await",
    "()", "{}", "=>", "==", "API", "HTTP", "JSON", "SQL", "URL",
)


def config_for_level(level: Optional[str]) -> ContextConfig:
    name = level if level in LEVEL_PRESETS else "standard"
    return ContextConfig(level=name, **LEVEL_PRESETS[name])


def estimate_tokens(messages: List[ChatMessage]) -> int:
    chars = sum(len(m.content) + len(m.role) * 2 for m in messages)
    return math.ceil(chars * TOKENS_PER_CHAR)


def truncate_to_budget(messages: List[ChatMessage], max_tokens: int) -> List[ChatMessage]:
    """Keep the newest messages that fit, dropping from the oldest end."""
    kept: List[ChatMessage] = []
    used = 0
    for msg in reversed(messages):
        cost = estimate_tokens([msg])
        if used + cost > max_tokens:
            break
        kept.insert(0, msg)
        used += cost
    return kept


def fit_text(text: str, role: str, max_tokens: int) -> str:
    max_chars = int(max_tokens / TOKENS_PER_CHAR) - len(role) * 2
    if max_chars <= 0:
        return ""
    if len(text) <= max_chars:
        return text
    return text[: max(0, max_chars - 3)].rstrip() + "..."


def extract_key_terms(text: str) -> List[str]:
    return [t for t in re.split(r"\s+", text.lower()) if len(t) > 3 and t not in STOP_WORDS]


def expand_terms(terms: List[str]) -> List[str]:
    expanded: List[str] = []
    for term in terms:
        for candidate in [term] + SYNONYMS.get(term, []):
            if candidate not in expanded:
                expanded.append(candidate)
    return expanded


def has_technical_content(content: str) -> bool:
    return any(marker in content for marker in TECHNICAL_MARKERS)


def rare_term_score(terms: List[str], content: str, corpus: List[str]) -> float:
    total = len(corpus)
    score = 0.0
    for term in terms:
        containing = sum(1 for doc in corpus if term in doc)
        if containing and term in content:
            score += math.log(total / containing)
    return min(score / max(len(terms), 1), 1.0)


def score_relevance(query: str, messages: List[ChatMessage]) -> List[Tuple[int, float]]:
    """(index, score) for each message; higher means more useful for the query."""
    terms = extract_key_terms(query)
    expanded = expand_terms(terms)
    corpus = [m.content.lower() for m in messages]
    scored = []
    for index, msg in enumerate(messages):
        content = corpus[index]
        exact = sum(1 for t in terms if t in content) / len(terms) if terms else 0.0
        semantic = sum(1 for t in expanded if t in content) / len(expanded) if expanded else 0.0
        term_score = exact * 0.7 + semantic * 0.3
        length_score = min(len(msg.content) / 500, 1.0)
        substantive = 0.2 if len(msg.content) > 100 else 0.0
        role_score = 0.3 if msg.role == "assistant" and len(msg.content) > 150 else 0.0
        technical = 0.15 if has_technical_content(msg.content) else 0.0
        score = (
            term_score * 0.35
            + rare_term_score(terms, content, corpus) * 0.2
            + length_score * 0.15
            + substantive * 0.1
            + role_score * 0.1
            + POSITION_BASELINE * 0.05
            + technical * 0.05
        )
        scored.append((index, score))
    return scored


class ConversationContextManager:
    def __init__(self, registry: Any = None, summarizer_model: str = "llama-3.1-8b-instant"):
        self.registry = registry
        self.summarizer_model = summarizer_model

    async def manage_context(
        self,
        history: List[ChatMessage],
        query: str,
        config: Optional[ContextConfig] = None,
    ) -> ManagedContext:
        config = config or config_for_level("standard")
        total = len(history)
        if config.level == "minimal" or not history or config.max_tokens <= 0:
            return ManagedContext(context_level=config.level, total_available=total)

        if config.level in ("full", "extended"):
            tokens = estimate_tokens(history)
            if tokens <= config.max_tokens:
                return self._result(list(history), config, total)

        return await self._hybrid(history, query, config)

    async def _hybrid(self, history: List[ChatMessage], query: str, config: ContextConfig) -> ManagedContext:
        total = len(history)
        keep = max(0, config.include_recent)
        # history[-0:] would be the whole list.
        recent = list(history[-keep:]) if keep else []
        older = list(history[:-keep]) if keep else list(history)
        recent_tokens = estimate_tokens(recent)
        logger.info(
            "Context: recent=%s msgs (%s tokens), older=%s msgs", len(recent), recent_tokens, len(older)
        )

        if recent_tokens >= config.max_tokens:
            return self._result(truncate_to_budget(recent, config.max_tokens), config, total)
        if not older:
            return self._result(recent, config, total)

        remaining = config.max_tokens - recent_tokens - SUMMARY_RESERVE_TOKENS
        if remaining > MIN_SUMMARY_BUDGET and len(older) > MIN_OLDER_FOR_SUMMARY:
            summary = await self.summarize(older, query)
            header = f"[Summary of earlier conversation ({len(older)} messages)]: "
            body = fit_text(header + summary, "assistant", config.max_tokens - recent_tokens)
            summary_msg = ChatMessage(
                role="assistant",
                content=body,
                metadata={"isSummary": True, "summarizedCount": len(older)},
            )
            messages = [summary_msg] + recent
            return ManagedContext(
                messages=messages,
                token_count=estimate_tokens(messages),
                context_level=config.level,
                filtered_count=len(messages),
                total_available=total,
                has_summary=True,
                summarized_count=len(older),
            )

        selected = self.filter_relevant(query, older, remaining, config.relevance_threshold)
        return self._result(selected + recent, config, total)

    def filter_relevant(
        self,
        query: str,
        older: List[ChatMessage],
        budget: int,
        threshold: float,
    ) -> List[ChatMessage]:
        if budget <= 0:
            return []
        candidates = [item for item in score_relevance(query, older) if item[1] >= threshold]
        candidates.sort(key=lambda item: item[1], reverse=True)
        chosen: List[int] = []
        used = 0
        for index, _score in candidates:
            cost = estimate_tokens([older[index]])
            if used + cost > budget:
                break
            chosen.append(index)
            used += cost
        return [older[i] for i in sorted(chosen)]

    async def summarize(self, messages: List[ChatMessage], query: str) -> str:
        transcript = "\n\n".join(
            f"{'Student' if m.role == 'user' else 'Assistant'}: {m.content}" for m in messages
        )
        if self.registry is not None:
            try:
                resp = await self.registry.invoke(
                    self.summarizer_model,
                    {
                        "messages": [
                            {"role": "system", "content": agents.SUMMARIZER_SYSTEM.format(query=query)},
                            {"role": "user", "content": f"Summarize this conversation:\n\n{transcript}"},
                        ],
                        "temperature": 0.3,
                        "max_tokens": 300,
                    },
                )
                summary = message_content(resp).strip()
                if summary:
                    return summary
            except Exception as exc:
                logger.warning("Summarization failed, using concatenation: %s", exc)
        topics = ", ".join(m.content[:50] for m in messages[:3])
        return f"Earlier discussion covered {len(messages)} messages including {topics}"

    @staticmethod
    def _result(messages: List[ChatMessage], config: ContextConfig, total: int) -> ManagedContext:
        return ManagedContext(
            messages=messages,
            token_count=estimate_tokens(messages),
            context_level=config.level,
            filtered_count=len(messages),
            total_available=total,
        )


def create_context_summary(ctx: ManagedContext) -> str:
    base = (
        f"Context: {ctx.filtered_count}/{ctx.total_available} messages, "
        f"{ctx.token_count} tokens (level: {ctx.context_level})"
    )
    if ctx.has_summary:
        return f"{base} [{ctx.summarized_count} messages summarized]"
    return base


def suggest_context_level(intent: QueryIntent) -> str:
    if intent.needs_chaining or intent.complexity == "high":
        return "full"
    if intent.type in ("simple", "image-generation") or intent.complexity == "low":
        return "minimal"
    return "standard"
