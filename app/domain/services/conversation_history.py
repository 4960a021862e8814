"""
Conversation History Store

Bounded per-conversation message log, keyed by ``{session_id}_{customer_id}``.
In memory only; gone on restart.

Invariants after every append:
- length ≤ cap (oldest entries evicted first)
- no two consecutive user turns — a dangling user turn (e.g. from a call that
  never got an answer) is dropped before the next one is appended
"""
from collections import deque
from typing import Literal

from app.core.config import settings

Role = Literal["user", "assistant"]


def conversation_key(session_id: str, customer_id: str) -> str:
    return f"{session_id}_{customer_id}"


class ConversationHistory:
    """In-memory conversation logs with FIFO eviction"""

    def __init__(self, max_messages: int = settings.CONVERSATION_HISTORY_CAP) -> None:
        if max_messages < 2:
            raise ValueError("max_messages must be at least 2")
        self.max_messages = max_messages
        self._conversations: dict[str, deque[dict[str, str]]] = {}

    def _log(self, conversation_id: str) -> deque[dict[str, str]]:
        log = self._conversations.get(conversation_id)
        if log is None:
            log = deque(maxlen=self.max_messages)
            self._conversations[conversation_id] = log
        return log

    def get(self, conversation_id: str) -> list[dict[str, str]]:
        """Copy of the stored turns, oldest first"""
        return [dict(m) for m in self._conversations.get(conversation_id, ())]

    def append(self, conversation_id: str, role: Role, content: str) -> None:
        log = self._log(conversation_id)
        if role == "user" and log and log[-1]["role"] == "user":
            log.pop()
        log.append({"role": role, "content": content})

    def append_user(self, conversation_id: str, content: str) -> None:
        self.append(conversation_id, "user", content)

    def append_assistant(self, conversation_id: str, content: str) -> None:
        self.append(conversation_id, "assistant", content)

    def discard_trailing_user(self, conversation_id: str) -> bool:
        """Remove the last turn if it is an unanswered user turn"""
        log = self._conversations.get(conversation_id)
        if log and log[-1]["role"] == "user":
            log.pop()
            if not log:
                del self._conversations[conversation_id]
            return True
        return False

    def last_assistant_message(self, conversation_id: str) -> str | None:
        for message in reversed(self._conversations.get(conversation_id, ())):
            if message["role"] == "assistant":
                return message["content"]
        return None

    def clear(self, conversation_id: str) -> None:
        self._conversations.pop(conversation_id, None)

    def clear_prefix(self, prefix: str) -> int:
        """Drop every conversation whose id starts with ``prefix`` (a whole session)"""
        doomed = [cid for cid in self._conversations if cid.startswith(prefix)]
        for cid in doomed:
            del self._conversations[cid]
        return len(doomed)

    def __len__(self) -> int:
        return len(self._conversations)

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._conversations
