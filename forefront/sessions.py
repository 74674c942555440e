import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

from .entity_tracker import ConversationEntityTracker


def utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class ConversationSession:
    session_id: str
    tracker: ConversationEntityTracker = field(default_factory=ConversationEntityTracker)
    created_at: str = field(default_factory=utc_iso)

    def to_dict(self) -> Dict[str, object]:
        return {
            "session_id": self.session_id,
            "created_at": self.created_at,
            "turn_index": self.tracker.current_turn_index,
            "entities": len(self.tracker.entities),
        }


class SessionStore:
    """In-memory conversations keyed by session id. Each one owns its own tracker."""

    def __init__(self) -> None:
        self.sessions: Dict[str, ConversationSession] = {}

    def get(self, session_id: str) -> Optional[ConversationSession]:
        return self.sessions.get(session_id)

    def get_or_create(self, session_id: Optional[str] = None) -> ConversationSession:
        """Sessions are kept only under a caller-supplied id; anonymous ones last one turn."""
        if not session_id:
            return ConversationSession(session_id=uuid.uuid4().hex)
        if session_id not in self.sessions:
            self.sessions[session_id] = ConversationSession(session_id=session_id)
        return self.sessions[session_id]

    def discard(self, session_id: str) -> bool:
        return self.sessions.pop(session_id, None) is not None

    def __len__(self) -> int:
        return len(self.sessions)
