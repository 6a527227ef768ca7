"""
Token-budgeted context assembly for conversational agents.

Builds the bounded input for each LLM call from competing sources:

- System prompt (character + persona), truncated to its budget
- Relevant memories, ranked by score with importance tie-breaks
- Stored conversation summary
- The most recent messages that still fit

Two background passes keep later assemblies cheap and accurate: the
summarization scheduler regenerates conversation summaries once a chat grows
long, and the title scheduler reconsiders chat titles at interchange
checkpoints. Both run off the request path on a thread pool.
"""

from .assembler import (
    BuildContextOptions,
    ContextAssembler,
    get_context_status,
    will_exceed_context_limit,
)
from .background import BackgroundTaskRunner
from .cheap_llm import CheapLLM
from .config import ContextConfig, get_model_context_limit, should_summarize_conversation
from .models import (
    BuiltContext,
    Character,
    ChatEvent,
    ChatMetadata,
    ContextBudget,
    ContextMessage,
    Persona,
    ScoredMemory,
    TokenUsage,
)
from .prompt import build_system_prompt
from .repository import InMemoryChatRepository, PostgresChatRepository
from .retriever import PgVectorMemorySearch
from .selectors import (
    format_memories_for_context,
    format_summary_for_context,
    select_recent_messages,
)
from .service import ChatContextService
from .summarizer import SummarizationScheduler
from .titles import (
    TitleScheduler,
    calculate_interchange_count,
    should_check_title_at_interchange,
)
from .token_budget import (
    CharTokenEstimator,
    calculate_budget,
    estimate_tokens,
    truncate_to_limit,
)

__all__ = [
    "BackgroundTaskRunner",
    "BuildContextOptions",
    "BuiltContext",
    "Character",
    "CharTokenEstimator",
    "ChatContextService",
    "ChatEvent",
    "ChatMetadata",
    "CheapLLM",
    "ContextAssembler",
    "ContextBudget",
    "ContextConfig",
    "ContextMessage",
    "InMemoryChatRepository",
    "Persona",
    "PgVectorMemorySearch",
    "PostgresChatRepository",
    "ScoredMemory",
    "SummarizationScheduler",
    "TitleScheduler",
    "TokenUsage",
    "build_system_prompt",
    "calculate_budget",
    "calculate_interchange_count",
    "estimate_tokens",
    "format_memories_for_context",
    "format_summary_for_context",
    "get_context_status",
    "get_model_context_limit",
    "select_recent_messages",
    "should_check_title_at_interchange",
    "should_summarize_conversation",
    "truncate_to_limit",
    "will_exceed_context_limit",
]
