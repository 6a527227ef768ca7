"""
Context assembler.

Builds the message list sent to the LLM for one chat turn, fitting every
content source into its share of the model's context window:

- System prompt (character + persona), truncated to its budget
- Relevant memories, ranked and greedily packed
- Stored conversation summary, truncated to its budget
- As many recent messages as the remaining budget allows

The assembler never raises: failures degrade the context and are reported
through ``BuiltContext.warnings``.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from .config import (
    ContextConfig,
    get_model_context_limit,
    should_summarize_conversation,
)
from .interfaces import MemorySearch, TokenEstimator
from .models import (
    BuiltContext,
    Character,
    ChatMetadata,
    ContextBudget,
    ContextMessage,
    Persona,
    TokenUsage,
)
from .prompt import build_system_prompt
from .selectors import (
    MemoryBlock,
    format_memories_for_context,
    format_summary_for_context,
    select_recent_messages,
)
from .token_budget import (
    MESSAGE_OVERHEAD_TOKENS,
    CharTokenEstimator,
    calculate_budget,
    count_messages_tokens,
    get_context_usage_percent,
)

logger = logging.getLogger(__name__)

SUMMARIZE_RECOMMENDATION = (
    "Conversation is getting long. Consider generating a summary for better "
    "context management."
)


@dataclass
class BuildContextOptions:
    provider: str
    model_name: str
    character: Character
    chat: ChatMetadata
    new_user_message: str
    existing_messages: list = field(default_factory=list)
    user_id: Optional[str] = None
    persona: Optional[Persona] = None
    system_prompt_override: Optional[str] = None
    skip_memories: Optional[bool] = None
    max_memories: Optional[int] = None
    min_memory_importance: Optional[float] = None


class ContextAssembler:
    """
    Assembles a bounded LLM context for a chat turn.

    Usage:
        assembler = ContextAssembler(memory_search=search)
        built = assembler.build_context(BuildContextOptions(...))
        llm.invoke(built.to_langchain_messages())
    """

    def __init__(
        self,
        memory_search: Optional[MemorySearch] = None,
        estimator: Optional[TokenEstimator] = None,
        config: Optional[ContextConfig] = None,
        budget_fn: Optional[Callable[..., ContextBudget]] = None,
    ):
        self.memory_search = memory_search
        self.estimator = estimator or CharTokenEstimator()
        self.config = config or ContextConfig()
        self.budget_fn = budget_fn or calculate_budget

    def build_context(self, options: BuildContextOptions) -> BuiltContext:
        provider = options.provider
        warnings: list[str] = []
        budget = self.budget_fn(provider, options.model_name, self.config)

        # --- System prompt ---
        system_prompt = build_system_prompt(
            options.character, options.persona, options.system_prompt_override
        )
        system_tokens = self.estimator.estimate_tokens(system_prompt, provider)
        if system_tokens > budget.system_prompt_budget:
            warnings.append(
                f"System prompt ({system_tokens} tokens) exceeds budget "
                f"({budget.system_prompt_budget}). Truncating."
            )
            system_prompt = self.estimator.truncate_to_limit(
                system_prompt, budget.system_prompt_budget, provider
            )
            system_tokens = self.estimator.estimate_tokens(system_prompt, provider)

        # --- Memories ---
        memories = self._build_memories(options, budget, warnings)

        # --- Summary ---
        summary = format_summary_for_context(
            options.chat.context_summary,
            budget.summary_budget,
            provider,
            self.estimator,
        )

        # --- Recent messages ---
        new_message_tokens = (
            self.estimator.estimate_tokens(options.new_user_message, provider)
            + MESSAGE_OVERHEAD_TOKENS
        )
        used = system_tokens + memories.token_count + summary.token_count
        remaining = budget.total_limit - used - budget.response_reserve - new_message_tokens
        remaining = max(remaining, 0)

        recent = select_recent_messages(
            options.existing_messages,
            min(remaining, budget.recent_messages_budget),
            provider,
            self.estimator,
        )

        if recent.truncated:
            full_history_tokens = count_messages_tokens(
                options.existing_messages, provider
            )
            if should_summarize_conversation(
                len(options.existing_messages),
                full_history_tokens,
                budget.total_limit,
            ):
                warnings.append(SUMMARIZE_RECOMMENDATION)

        # --- Assemble ---
        system_content = system_prompt
        if memories.content:
            system_content += "\n\n" + memories.content
        if summary.content:
            system_content += "\n\n" + summary.content

        messages = [
            ContextMessage(
                role="system",
                content=system_content,
                metadata={"is_injected": True, "token_count": used},
            )
        ]
        for msg in recent.messages:
            messages.append(ContextMessage(role=msg["role"].lower(), content=msg["content"]))
        messages.append(ContextMessage(role="user", content=options.new_user_message))

        total = used + recent.token_count + new_message_tokens
        over_budget = total > budget.available_input
        if over_budget and not recent.truncated:
            warnings.append(
                f"Context ({total} tokens) exceeds the input budget "
                f"({budget.available_input})."
            )

        logger.debug(
            "Built context for chat %s: system=%d memories=%d summary=%d "
            "recent=%d (%d msgs, truncated=%s) total=%d/%d",
            options.chat.id,
            system_tokens,
            memories.token_count,
            summary.token_count,
            recent.token_count + new_message_tokens,
            len(recent.messages),
            recent.truncated,
            total,
            budget.total_limit,
        )

        return BuiltContext(
            messages=messages,
            token_usage=TokenUsage(
                system_prompt=system_tokens,
                memories=memories.token_count,
                summary=summary.token_count,
                recent_messages=recent.token_count + new_message_tokens,
                total=total,
            ),
            budget=budget,
            included_summary=summary.token_count > 0,
            memories_included=memories.memories_used,
            messages_included=len(recent.messages) + 1,
            messages_truncated=recent.truncated,
            over_budget=over_budget,
            warnings=warnings,
            debug_memories=memories.debug_memories,
            debug_summary=options.chat.context_summary or None,
            debug_system_prompt=system_prompt,
        )

    def _build_memories(
        self,
        options: BuildContextOptions,
        budget: ContextBudget,
        warnings: list[str],
    ) -> MemoryBlock:
        """Search memories relevant to the new message and pack them."""
        skip = (
            options.skip_memories
            if options.skip_memories is not None
            else self.config.skip_memories
        )
        if skip or not self.memory_search or not options.character.id:
            return MemoryBlock()

        max_memories = (
            options.max_memories
            if options.max_memories is not None
            else self.config.max_memories
        )
        if max_memories <= 0:
            return MemoryBlock()
        min_importance = (
            options.min_memory_importance
            if options.min_memory_importance is not None
            else self.config.min_memory_importance
        )

        try:
            results = self.memory_search.search_memories(
                options.character.id,
                options.new_user_message,
                user_id=options.user_id,
                limit=max_memories * 2,
                min_importance=min_importance,
            )
        except Exception as e:
            logger.warning(
                "Memory search failed for character %s: %s", options.character.id, e
            )
            warnings.append(f"Failed to retrieve memories: {e}")
            return MemoryBlock()

        return format_memories_for_context(
            list(results)[:max_memories],
            budget.memory_budget,
            options.provider,
            self.estimator,
        )


def will_exceed_context_limit(
    existing_messages: list,
    new_message: str,
    provider: Optional[str],
    model_name: str,
    system_prompt_estimate: int = 2000,
    response_reserve: int = 4096,
) -> dict:
    """Rough pre-send check of whether a request will overflow the window."""
    limit = get_model_context_limit(provider, model_name)
    estimated = (
        system_prompt_estimate
        + count_messages_tokens(existing_messages, provider)
        + CharTokenEstimator().estimate_tokens(new_message, provider)
        + response_reserve
    )
    return {
        "will_exceed": estimated > limit,
        "estimated_usage": estimated,
        "limit": limit,
        "percent_used": round(estimated / limit * 100) if limit else 100,
    }


def get_context_status(used_tokens: int, total_limit: int) -> dict:
    """Usage level and a short message for display."""
    percent = get_context_usage_percent(used_tokens, total_limit)
    remaining = total_limit - used_tokens

    if percent >= 95:
        level = "critical"
        message = (
            "Context nearly full. Consider starting a new conversation or "
            "generating a summary."
        )
    elif percent >= 80:
        level = "warning"
        message = "Context filling up. Older messages may be dropped soon."
    else:
        level = "ok"
        message = f"Using {percent}% of context window."

    return {
        "level": level,
        "percent_used": percent,
        "remaining_tokens": remaining,
        "message": message,
    }
