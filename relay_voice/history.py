"""
Conversation history kept for context replay

Stores completed user/assistant turns with timestamps. After a remote
session reconnects, the most recent turns are rendered as a readable
transcript so the endpoint can continue where it left off.
"""

import json
import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Deque, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 200
DEFAULT_CONTEXT_TURNS = 20

CONTEXT_HEADER = "Session reconnected. Here's the conversation so far:"
CONTEXT_FOOTER = "Continue from here."


@dataclass(frozen=True)
class ConversationTurn:
    """One exchange: what the user said and what the assistant replied"""
    timestamp: datetime
    user_utterance: str
    assistant_reply: str

    @property
    def is_complete(self) -> bool:
        return bool(self.user_utterance.strip()) and bool(self.assistant_reply.strip())

    def to_jsonl(self) -> str:
        """Convert to JSONL format with ISO 8601 timestamp"""
        ts_str = self.timestamp.isoformat(timespec='milliseconds')
        return json.dumps({"ts": ts_str, "user": self.user_utterance, "assistant": self.assistant_reply})

    @classmethod
    def create(
        cls,
        user_utterance: str,
        assistant_reply: str,
        timestamp: Optional[datetime] = None,
    ) -> "ConversationTurn":
        """Create a turn with given or current timestamp"""
        if timestamp is None:
            timestamp = datetime.now(timezone.utc).astimezone()
        return cls(
            timestamp=timestamp,
            user_utterance=user_utterance.strip(),
            assistant_reply=assistant_reply.strip(),
        )


def build_context_message(turns: List[ConversationTurn], window: int = DEFAULT_CONTEXT_TURNS) -> Optional[str]:
    """
    Render the most recent turns as a transcript for replay

    Args:
        turns: Conversation so far, oldest first
        window: How many of the latest turns to consider

    Returns:
        Context message, or None if no complete turn exists
    """
    recent = turns[-window:] if window > 0 else []
    complete = [turn for turn in recent if turn.is_complete]
    if not complete:
        return None

    lines = [
        f"[User]: {turn.user_utterance}\n[Assistant]: {turn.assistant_reply}"
        for turn in complete
    ]
    return f"{CONTEXT_HEADER}\n\n" + "\n\n".join(lines) + f"\n\n{CONTEXT_FOOTER}"


class ConversationHistory:
    """
    Thread-safe, append-only, bounded list of turns

    Oldest turns fall off once the limit is reached.
    """

    def __init__(self, limit: int = DEFAULT_HISTORY_LIMIT):
        self.limit = limit
        self._turns: Deque[ConversationTurn] = deque(maxlen=limit)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._turns)

    def add(
        self,
        user_utterance: Optional[str],
        assistant_reply: Optional[str],
        timestamp: Optional[datetime] = None,
    ) -> bool:
        """
        Record a turn once both halves exist

        Returns:
            True if added, False if either half was empty
        """
        if not user_utterance or not user_utterance.strip():
            return False
        if not assistant_reply or not assistant_reply.strip():
            return False

        turn = ConversationTurn.create(user_utterance, assistant_reply, timestamp)
        with self._lock:
            self._turns.append(turn)

        logger.debug(f"Saved conversation turn at {turn.timestamp}")
        return True

    def turns(self) -> List[ConversationTurn]:
        """Snapshot of all turns, oldest first"""
        with self._lock:
            return list(self._turns)

    def context_message(self, window: int = DEFAULT_CONTEXT_TURNS) -> Optional[str]:
        return build_context_message(self.turns(), window)

    def to_jsonl(self) -> str:
        return "\n".join(turn.to_jsonl() for turn in self.turns())

    def get_stats(self) -> dict:
        """Get history statistics"""
        with self._lock:
            return {
                "turn_count": len(self._turns),
                "limit": self.limit,
            }
