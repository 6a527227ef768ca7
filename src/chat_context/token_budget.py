"""
Token estimation and budget calculation.

Token counts are character-ratio estimates with a small safety buffer, so
they slightly over-count rather than risk exceeding a model's window.
"""

import json
import math
from typing import Optional

from .config import ContextConfig, get_recommended_allocation
from .models import ContextBudget

# Characters per token by provider (conservative)
CHARS_PER_TOKEN: dict[str, float] = {
    "OPENAI": 3.5,
    "ANTHROPIC": 3.5,
    "GOOGLE": 3.8,
    "GROK": 3.5,
    "OLLAMA": 3.5,
    "OPENROUTER": 3.5,
    "OPENAI_COMPATIBLE": 3.5,
    "GAB_AI": 3.5,
}
DEFAULT_CHARS_PER_TOKEN = 3.5

SAFETY_BUFFER = 0.05

# Role markers and formatting per message
MESSAGE_OVERHEAD_TOKENS = 4
# Start/end markers per conversation
CONVERSATION_OVERHEAD_TOKENS = 3

TRUNCATION_SUFFIX = "..."


def _chars_per_token(provider: Optional[str]) -> float:
    if not provider:
        return DEFAULT_CHARS_PER_TOKEN
    return CHARS_PER_TOKEN.get(provider.upper(), DEFAULT_CHARS_PER_TOKEN)


def estimate_tokens(text: str, provider: Optional[str] = None) -> int:
    """Conservative token estimate for ``text``."""
    if not text:
        return 0
    base = math.ceil(len(text) / _chars_per_token(provider))
    return math.ceil(base * (1 + SAFETY_BUFFER))


def truncate_to_limit(
    text: str,
    max_tokens: int,
    provider: Optional[str] = None,
    suffix: str = TRUNCATION_SUFFIX,
) -> str:
    """
    Truncate ``text`` so its estimate fits ``max_tokens``.

    Cuts at a word boundary when one is close to the limit and appends
    ``suffix``. Text already within the limit is returned unchanged.
    """
    if not text:
        return ""
    if estimate_tokens(text, provider) <= max_tokens:
        return text

    available = max_tokens - estimate_tokens(suffix, provider)
    max_chars = math.floor(available * _chars_per_token(provider) * 0.95)
    if max_chars <= 0:
        return suffix

    truncated = text[:max_chars]
    last_space = truncated.rfind(" ")
    if last_space > max_chars * 0.8:
        truncated = truncated[:last_space]
    return truncated + suffix


def _message_role_and_content(msg) -> tuple[str, str]:
    """Pull (role, text) out of a dict, a dataclass, or a LangChain message."""
    if isinstance(msg, dict):
        return str(msg.get("role") or ""), str(msg.get("content") or "")

    role = getattr(msg, "role", None) or getattr(msg, "type", "") or ""
    content = getattr(msg, "content", "")
    if isinstance(content, str):
        return str(role), content

    # LangChain content blocks
    parts = []
    if isinstance(content, list):
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict):
                btype = block.get("type", "")
                if btype in ("thinking", "reasoning"):
                    parts.append(block.get("thinking", "") or block.get("reasoning", ""))
                elif btype == "text":
                    parts.append(block.get("text", ""))
                elif btype in ("tool_use", "tool_call"):
                    args = block.get("input") or block.get("args") or {}
                    parts.append(json.dumps(args, ensure_ascii=False))
    return str(role), "\n".join(parts)


def count_message_tokens(msg, provider: Optional[str] = None) -> int:
    """Estimate one message including role and per-message overhead."""
    role, content = _message_role_and_content(msg)
    return (
        estimate_tokens(content, provider)
        + estimate_tokens(role, provider)
        + MESSAGE_OVERHEAD_TOKENS
    )


def count_messages_tokens(messages: list, provider: Optional[str] = None) -> int:
    """Estimate a whole conversation."""
    if not messages:
        return 0
    total = sum(count_message_tokens(m, provider) for m in messages)
    return total + CONVERSATION_OVERHEAD_TOKENS


def format_token_count(tokens: int) -> str:
    """Human-readable count, e.g. ``1.5k`` or ``2.0M``."""
    if tokens >= 1_000_000:
        return f"{tokens / 1_000_000:.1f}M"
    if tokens >= 1000:
        return f"{tokens / 1000:.1f}k"
    return str(tokens)


def get_context_usage_percent(used_tokens: int, context_limit: int) -> int:
    if context_limit <= 0:
        return 100
    return min(100, round(used_tokens / context_limit * 100))


def get_context_warning_level(used_tokens: int, context_limit: int) -> str:
    """``ok``, ``warning`` (>= 80%) or ``critical`` (>= 95%)."""
    percent = get_context_usage_percent(used_tokens, context_limit)
    if percent >= 95:
        return "critical"
    if percent >= 80:
        return "warning"
    return "ok"


class CharTokenEstimator:
    """Default estimator backed by the character-ratio functions above."""

    def estimate_tokens(self, text: str, provider: Optional[str] = None) -> int:
        return estimate_tokens(text, provider)

    def truncate_to_limit(
        self, text: str, max_tokens: int, provider: Optional[str] = None
    ) -> str:
        return truncate_to_limit(text, max_tokens, provider)


def calculate_budget(
    provider: Optional[str],
    model_name: str,
    config: Optional[ContextConfig] = None,
) -> ContextBudget:
    """Derive the per-section token caps for a provider/model."""
    allocation = get_recommended_allocation(provider, model_name, config)
    return ContextBudget(
        total_limit=allocation["total_limit"],
        system_prompt_budget=allocation["system_prompt"],
        memory_budget=allocation["memories"],
        summary_budget=allocation["conversation_summary"],
        recent_messages_budget=allocation["recent_messages"],
        response_reserve=allocation["response_reserve"],
    )
