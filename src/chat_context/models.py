"""
Data model shared by context assembly and the background schedulers.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

EVENT_MESSAGE = "message"
EVENT_CONTEXT_SUMMARY = "context-summary"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ContextBudget:
    """Token caps for one context assembly."""

    total_limit: int
    system_prompt_budget: int
    memory_budget: int
    summary_budget: int
    recent_messages_budget: int
    response_reserve: int

    @property
    def available_input(self) -> int:
        return max(self.total_limit - self.response_reserve, 0)


@dataclass
class ContextMessage:
    role: str  # system | user | assistant
    content: str
    metadata: Optional[dict[str, Any]] = None

    def to_langchain(self) -> BaseMessage:
        """Convert to the matching LangChain message class."""
        if self.role == "system":
            return SystemMessage(content=self.content)
        if self.role == "assistant":
            return AIMessage(content=self.content)
        return HumanMessage(content=self.content)


@dataclass
class ScoredMemory:
    """A memory candidate returned by semantic search."""

    summary: str
    importance: float
    score: float


@dataclass
class Character:
    id: Optional[str] = None
    name: str = ""
    system_prompt: str = ""
    personality: str = ""
    scenario: str = ""
    example_dialogues: str = ""


@dataclass
class Persona:
    name: str
    description: str = ""


@dataclass
class ChatMetadata:
    id: str
    title: str = ""
    context_summary: Optional[str] = None
    message_count: int = 0
    last_rename_check_interchange: int = 0
    updated_at: datetime = field(default_factory=utc_now)


@dataclass
class ChatEvent:
    """
    One entry of a chat's history.

    ``type`` is ``"message"`` for conversational turns (with ``role`` set to
    USER / ASSISTANT / SYSTEM) and ``"context-summary"`` for summary markers,
    whose ``content`` holds the summary text.
    """

    type: str
    content: str = ""
    role: Optional[str] = None
    id: str = ""
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class TokenUsage:
    system_prompt: int = 0
    memories: int = 0
    summary: int = 0
    recent_messages: int = 0
    total: int = 0


@dataclass
class BuiltContext:
    """Result of one context assembly."""

    messages: list[ContextMessage]
    token_usage: TokenUsage
    budget: ContextBudget
    included_summary: bool = False
    memories_included: int = 0
    messages_included: int = 0
    messages_truncated: bool = False
    # token_usage.total exceeds total_limit - response_reserve
    over_budget: bool = False
    warnings: list[str] = field(default_factory=list)
    debug_memories: list[dict] = field(default_factory=list)
    debug_summary: Optional[str] = None
    debug_system_prompt: str = ""

    def to_langchain_messages(self) -> list[BaseMessage]:
        return [m.to_langchain() for m in self.messages]


@dataclass
class CheapLLMTaskResult:
    """Outcome of one cheap-LLM call."""

    success: bool
    result: Any = None
    error: Optional[str] = None
    usage: Optional[dict[str, int]] = None


@dataclass
class TitleConsideration:
    needs_new_title: bool
    reason: str
    suggested_title: Optional[str] = None


@dataclass
class SummaryGenerationResult:
    success: bool
    summary: Optional[str] = None
    error: Optional[str] = None
    was_generated: bool = False
    usage: Optional[dict[str, int]] = None


def event_field(event, name: str):
    """Read a field from a chat event given as a dict or an object."""
    if isinstance(event, dict):
        return event.get(name)
    return getattr(event, name, None)
