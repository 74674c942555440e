import json
import logging
import re
import time
import uuid
from typing import Any, Dict, List, Optional

from .schemas import References, ToolExecutionResult, TrackedEntity

logger = logging.getLogger("uvicorn.error")

ACTION_VERBS = (
    "generate",
    "create",
    "make",
    "use",
    "using",
    "with",
    "run",
    "execute",
    "apply",
    "show",
    "display",
)
ACTION_WINDOW_CHARS = 50
PLACEHOLDER = "\x00ref\x00"

TOOL_ENTITY_TYPES = {
    "enhance_prompt": "prompt",
    "generate_image": "image",
    "execute_code": "code",
    "search_web": "search-result",
    "analyze_data": "analysis",
    "explain_concept": "explanation",
}
# Metadata keys carried from a tool result onto the tracked entity.
TOOL_METADATA_KEYS = {
    "enhance_prompt": ("originalPrompt",),
    "generate_image": ("prompt",),
    "execute_code": ("language",),
    "search_web": ("citations", "query"),
    "analyze_data": ("analysisType",),
    "explain_concept": ("concept",),
}


class ConversationEntityTracker:
    """Artifacts produced during one conversation. Append-only; one instance per session."""

    def __init__(self) -> None:
        self.entities: List[TrackedEntity] = []
        self.current_turn_index = 0

    def track_entity(self, entity_type: str, content: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        entity_id = f"{entity_type}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"
        entity = TrackedEntity(
            id=entity_id,
            type=entity_type,
            content=content,
            metadata={**(metadata or {}), "timestamp": int(time.time() * 1000)},
            turn_index=self.current_turn_index,
        )
        self.entities.append(entity)
        logger.info("Tracked %s entity %s", entity_type, entity_id)
        return entity_id

    def get_most_recent(self, entity_type: Optional[str] = None) -> Optional[TrackedEntity]:
        for entity in reversed(self.entities):
            if entity_type is None or entity.type == entity_type:
                return entity
        return None

    def get_by_id(self, entity_id: str) -> Optional[TrackedEntity]:
        return next((e for e in self.entities if e.id == entity_id), None)

    def get_by_type(self, entity_type: str) -> List[TrackedEntity]:
        return [e for e in self.entities if e.type == entity_type]

    def get_recent(self, count: int = 5) -> List[TrackedEntity]:
        if count <= 0:
            return []
        return self.entities[-count:]

    def next_turn(self) -> None:
        self.current_turn_index += 1

    def clear(self) -> None:
        self.entities = []
        self.current_turn_index = 0

    def get_all(self) -> List[TrackedEntity]:
        return list(self.entities)

    def serialize(self) -> str:
        return json.dumps(
            {
                "entities": [e.model_dump(by_alias=True) for e in self.entities],
                "currentTurnIndex": self.current_turn_index,
            }
        )

    @classmethod
    def deserialize(cls, data: str) -> "ConversationEntityTracker":
        parsed = json.loads(data) if data else {}
        tracker = cls()
        tracker.entities = [TrackedEntity.model_validate(item) for item in parsed.get("entities") or []]
        tracker.current_turn_index = int(parsed.get("currentTurnIndex") or 0)
        return tracker


def track_tool_result(
    tracker: ConversationEntityTracker,
    tool_name: str,
    result: ToolExecutionResult,
    metadata: Optional[Dict[str, Any]] = None,
) -> Optional[str]:
    entity_type = TOOL_ENTITY_TYPES.get(tool_name)
    if entity_type is None or result.metadata.get("error"):
        return None
    content = result.content
    if tool_name == "generate_image":
        content = result.metadata.get("imageUrl") or content
    elif tool_name == "execute_code":
        content = result.metadata.get("code") or content
    extra = {key: result.metadata.get(key) for key in TOOL_METADATA_KEYS.get(tool_name, ())}
    return tracker.track_entity(entity_type, content, {**(metadata or {}), **extra, "toolUsed": tool_name})


def infer_entity_type(phrase: str) -> Optional[str]:
    if re.search(r"prompt", phrase, re.I):
        return "prompt"
    if re.search(r"code|script|function", phrase, re.I):
        return "code"
    if re.search(r"image|picture|photo", phrase, re.I):
        return "image"
    if re.search(r"search|results?", phrase, re.I):
        return "search-result"
    if re.search(r"analysis", phrase, re.I):
        return "analysis"
    if re.search(r"explanation", phrase, re.I):
        return "explanation"
    return None


class ReferenceResolver:
    def __init__(self, tracker: ConversationEntityTracker):
        self.tracker = tracker

    def resolve(self, phrase: str, entity_type: Optional[str] = None) -> Optional[str]:
        entity = self.tracker.get_most_recent(entity_type or infer_entity_type(phrase))
        if entity is None:
            logger.info("No entity found for reference %r", phrase)
            return None
        return entity.content

    def resolve_all(self, message: str, references: References) -> str:
        if not references.reference_indicators:
            return message
        entity = self.tracker.get_most_recent(references.reference_type)
        if entity is None:
            logger.info("No entity to resolve references to; leaving message unchanged")
            return message
        actionable = [i for i in references.reference_indicators if is_actionable_reference(message, i)]
        # Longest phrases first; replaced spans become a placeholder so shorter
        # indicators ("that") cannot match inside them or inside the entity text.
        actionable.sort(key=len, reverse=True)
        resolved = message
        for indicator in actionable:
            pattern = re.compile(r"\b" + re.escape(indicator) + r"\b", re.I)
            resolved, count = pattern.subn(PLACEHOLDER, resolved)
            if count:
                logger.info("Replaced %r with %s content", indicator, entity.type)
        return resolved.replace(PLACEHOLDER, f'"{entity.content}"')


def is_actionable_reference(message: str, phrase: str) -> bool:
    """True when an action verb precedes the phrase or follows it closely."""
    lowered = message.lower()
    position = lowered.find(phrase.lower())
    if position < 0:
        return False
    before = lowered[:position]
    after = lowered[position : position + ACTION_WINDOW_CHARS]
    return any(verb in before or verb in after for verb in ACTION_VERBS)
