"""
Conversation Memory for Foreman.

WHAT THIS FILE DOES:
-------------------
Stores conversations (ordered message lists) and hands the interaction loop
a context window that fits the model's token budget.

TOKEN ACCOUNTING:
----------------
Tokens are estimated as ceil(len(content) / 4). It is crude, but the same
estimate is used everywhere, so the budget checks are consistent.

Two budgets exist:
- max_context_length bounds what a conversation STORES. When an append pushes
  the total over it, the oldest non-system messages are evicted one at a
  time. System messages are never evicted.
- get_context_window(max_tokens) bounds what is SENT. It walks from the
  newest message backwards and stops before the budget would be exceeded,
  so the model always sees the most recent suffix of the conversation.

PERSISTENCE:
-----------
PersistentConversationMemory writes the whole store to one JSON document
(~/.foreman/memory.json by default). Writes are debounced: a burst of
appends produces one write. A corrupted document is moved aside as
<file>.backup.<timestamp> and the store starts empty.
"""

import atexit
import json
import logging
import math
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from errors import ConfigError, ConversationNotFound
from schemas import Conversation, ConversationMetadata, Message, Role

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONTEXT_LENGTH = 8192


def estimate_tokens(text: str) -> int:
    """Rough token count: one token per four characters, rounded up."""
    return math.ceil(len(text) / 4)


def message_tokens(message: Message) -> int:
    return estimate_tokens(message.content)


class ConversationMemory:
    """
    In-memory conversation store.

    All mutations hold a lock, so the store can be shared by concurrently
    running steps (and by the persistence timer thread).

    Example usage:
        memory = ConversationMemory(max_context_length=8192)
        conv_id = memory.create_conversation(provider="ollama", model="qwen3:4b")
        memory.add_message(conv_id, Message(role=Role.USER, content="hi"))
        window = memory.get_context_window(conv_id, max_tokens=4096)
    """

    def __init__(self, max_context_length: int = DEFAULT_MAX_CONTEXT_LENGTH):
        self.max_context_length = max_context_length
        self._conversations: dict[str, Conversation] = {}
        self._lock = threading.RLock()

    def create_conversation(self, provider: str = "", model: str = "") -> str:
        """Create an empty conversation and return its id."""
        conversation = Conversation(metadata=ConversationMetadata(provider=provider, model=model))
        with self._lock:
            self._conversations[conversation.id] = conversation
        self._changed()
        logger.debug("Created conversation %s", conversation.id)
        return conversation.id

    def add_message(self, conversation_id: str, message: Message) -> None:
        """
        Append a message, then evict old messages if over budget.

        Raises:
            ConversationNotFound: If the id is unknown (store is left unchanged)
        """
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                raise ConversationNotFound(conversation_id)
            conversation.messages.append(message)
            conversation.metadata.updated = datetime.now()
            self._trim(conversation)
        self._changed()

    def _trim(self, conversation: Conversation) -> None:
        messages = conversation.messages
        total = sum(message_tokens(m) for m in messages)
        while total > self.max_context_length:
            index = next((i for i, m in enumerate(messages) if m.role != Role.SYSTEM), None)
            if index is None:
                break
            evicted = messages.pop(index)
            total -= message_tokens(evicted)
            logger.debug(
                "Evicted %s message from %s (%d tokens left)",
                evicted.role.value, conversation.id, total,
            )

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            return self._conversations.get(conversation_id)

    def get_messages(self, conversation_id: str, limit: Optional[int] = None) -> list[Message]:
        """Messages of a conversation (the last `limit` if given). Unknown ids give []."""
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                return []
            messages = list(conversation.messages)
        if limit is not None:
            return messages[-limit:] if limit > 0 else []
        return messages

    def get_context_window(self, conversation_id: str, max_tokens: int) -> list[Message]:
        """
        The newest messages that fit in max_tokens, in chronological order.

        Args:
            conversation_id: Conversation to read
            max_tokens: Token budget for the window

        Returns:
            A suffix of the conversation whose estimated tokens <= max_tokens
        """
        window: list[Message] = []
        used = 0
        for message in reversed(self.get_messages(conversation_id)):
            tokens = message_tokens(message)
            if used + tokens > max_tokens:
                break
            window.append(message)
            used += tokens
        window.reverse()
        return window

    def total_tokens(self, conversation_id: str) -> int:
        return sum(message_tokens(m) for m in self.get_messages(conversation_id))

    def list_conversations(self) -> list[Conversation]:
        """All conversations, most recently updated first."""
        with self._lock:
            conversations = list(self._conversations.values())
        return sorted(conversations, key=lambda c: c.metadata.updated, reverse=True)

    def delete_conversation(self, conversation_id: str) -> bool:
        with self._lock:
            deleted = self._conversations.pop(conversation_id, None) is not None
        if deleted:
            self._changed()
        return deleted

    def clear_all(self) -> None:
        with self._lock:
            self._conversations.clear()
        self._changed()

    def flush(self) -> None:
        """Persist pending changes (no-op for the in-memory store)."""

    def close(self) -> None:
        """Flush and release the store."""
        self.flush()

    def _changed(self) -> None:
        """Hook called after every mutation."""


class MemoryDocument(BaseModel):
    """On-disk layout of the persistent store."""
    conversations: dict[str, Conversation] = Field(default_factory=dict)
    last_saved: Optional[datetime] = None


class PersistentConversationMemory(ConversationMemory):
    """
    Conversation store backed by a JSON file.

    Every mutation schedules a save after debounce_ms; further mutations in
    that window reuse the pending save. flush() writes immediately and is
    also registered to run at interpreter exit.
    """

    def __init__(
        self,
        path: Path,
        max_context_length: int = DEFAULT_MAX_CONTEXT_LENGTH,
        debounce_ms: int = 100,
    ):
        super().__init__(max_context_length=max_context_length)
        self.path = Path(path).expanduser()
        self.debounce_ms = debounce_ms
        self._timer: Optional[threading.Timer] = None
        self._timer_lock = threading.Lock()
        self._load()
        atexit.register(self.flush)

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            document = MemoryDocument.model_validate_json(self.path.read_bytes())
        except ValueError as e:
            backup = self.path.with_name(f"{self.path.name}.backup.{datetime.now():%Y%m%d%H%M%S}")
            os.replace(self.path, backup)
            logger.warning("Memory file %s was corrupted (%s); moved to %s", self.path, e, backup)
            return
        with self._lock:
            self._conversations = dict(document.conversations)
        logger.debug("Loaded %d conversations from %s", len(document.conversations), self.path)

    def _changed(self) -> None:
        with self._timer_lock:
            if self._timer is not None:
                return
            self._timer = threading.Timer(self.debounce_ms / 1000, self._timer_fired)
            self._timer.daemon = True
            self._timer.start()

    def _timer_fired(self) -> None:
        with self._timer_lock:
            self._timer = None
        self._write()

    def flush(self) -> None:
        """Cancel any pending debounced save and write now."""
        with self._timer_lock:
            pending = self._timer
            self._timer = None
        if pending is not None:
            pending.cancel()
            self._write()

    def close(self) -> None:
        """Flush and drop the exit hook registered for this store."""
        self.flush()
        atexit.unregister(self.flush)

    def _write(self) -> None:
        with self._lock:
            document = MemoryDocument(
                conversations=dict(self._conversations),
                last_saved=datetime.now(),
            )
            payload = document.model_dump(mode="json")

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with open(tmp_path, "w") as f:
            json.dump(payload, f, indent=2, default=str)
        os.replace(tmp_path, self.path)
        logger.debug("Saved %d conversations to %s", len(payload["conversations"]), self.path)


def create_memory(persistent: bool, path: Optional[Path] = None,
                  max_context_length: int = DEFAULT_MAX_CONTEXT_LENGTH,
                  debounce_ms: int = 100) -> ConversationMemory:
    """Build the in-memory or file-backed store."""
    if persistent:
        if path is None:
            raise ConfigError("A file path is required for persistent memory")
        return PersistentConversationMemory(path, max_context_length=max_context_length, debounce_ms=debounce_ms)
    return ConversationMemory(max_context_length=max_context_length)
