from dataclasses import dataclass, field
from typing import Any, Literal, Protocol
from uuid import uuid4


@dataclass(frozen=True)
class ThreadMessage:
    role: Literal["user", "assistant"]
    content: str
    author_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class ConversationStore(Protocol):
    def verify_ownership(self, thread_ref: str, caller_id: str) -> bool:
        """True when ``thread_ref`` exists and belongs to ``caller_id``."""

    def append(self, thread_ref: str, message: ThreadMessage) -> str:
        """Append ``message`` to the thread and return the new message id."""


@dataclass
class _Thread:
    owner_id: str
    messages: list[tuple[str, ThreadMessage]] = field(default_factory=list)


class InMemoryConversationStore:
    """Process-local conversation store used for development and tests."""

    def __init__(self) -> None:
        self._threads: dict[str, _Thread] = {}

    def create_thread(self, owner_id: str, thread_ref: str | None = None) -> str:
        ref = thread_ref or str(uuid4())
        self._threads[ref] = _Thread(owner_id=owner_id)
        return ref

    def verify_ownership(self, thread_ref: str, caller_id: str) -> bool:
        thread = self._threads.get(thread_ref)
        return thread is not None and thread.owner_id == caller_id

    def append(self, thread_ref: str, message: ThreadMessage) -> str:
        thread = self._threads.get(thread_ref)
        if thread is None:
            raise KeyError(thread_ref)
        message_id = str(uuid4())
        thread.messages.append((message_id, message))
        return message_id

    def messages(self, thread_ref: str) -> list[tuple[str, ThreadMessage]]:
        thread = self._threads.get(thread_ref)
        return list(thread.messages) if thread else []
