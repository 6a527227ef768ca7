"""
Collaborator interfaces consumed by the context core.
"""

from typing import Any, Optional, Protocol, Sequence, runtime_checkable

from .models import ChatEvent, ChatMetadata, CheapLLMTaskResult, ScoredMemory


@runtime_checkable
class TokenEstimator(Protocol):
    def estimate_tokens(self, text: str, provider: Optional[str] = None) -> int: ...

    def truncate_to_limit(
        self, text: str, max_tokens: int, provider: Optional[str] = None
    ) -> str: ...


@runtime_checkable
class MemorySearch(Protocol):
    def search_memories(
        self,
        character_id: str,
        query: str,
        *,
        user_id: Optional[str] = None,
        limit: int = 20,
        min_importance: float = 0.0,
    ) -> list[ScoredMemory]: ...


@runtime_checkable
class CheapGenerator(Protocol):
    """Cheap text generation used only for summaries and titles."""

    def summarize_chat(self, messages: Sequence[dict]) -> CheapLLMTaskResult: ...

    def update_context_summary(
        self, current_summary: str, messages: Sequence[dict]
    ) -> CheapLLMTaskResult: ...

    def title_from_summary(self, summary: str) -> CheapLLMTaskResult: ...

    def consider_title_update(
        self,
        current_title: str,
        messages: Sequence[dict],
        context: Optional[str],
    ) -> CheapLLMTaskResult: ...


@runtime_checkable
class ChatRepository(Protocol):
    def find_by_id(self, chat_id: str) -> Optional[ChatMetadata]: ...

    def update(self, chat_id: str, fields: dict[str, Any]) -> Optional[ChatMetadata]: ...

    def get_messages(self, chat_id: str) -> list[ChatEvent]: ...

    def add_message(self, chat_id: str, event: ChatEvent) -> None: ...
