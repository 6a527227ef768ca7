"""
Budgeted selection of memories, the stored summary and recent messages.

Each selector is greedy: items are accepted in priority order until the next
one would exceed its token budget, without backtracking.
"""

import functools
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .interfaces import TokenEstimator
from .models import ScoredMemory
from .token_budget import MESSAGE_OVERHEAD_TOKENS, CharTokenEstimator

MEMORY_HEADER = "## Relevant Memories"
SUMMARY_HEADER = "## Previous Conversation Summary"

# Scores closer than this are ranked by importance instead
TIE_BREAK_THRESHOLD = 0.1
_FLOAT_EPSILON = 1e-9

_default_estimator = CharTokenEstimator()


@dataclass
class MemoryBlock:
    content: str = ""
    token_count: int = 0
    memories_used: int = 0
    debug_memories: list[dict] = field(default_factory=list)


@dataclass
class SummaryBlock:
    content: str = ""
    token_count: int = 0


@dataclass
class RecentSelection:
    messages: list[dict] = field(default_factory=list)
    token_count: int = 0
    truncated: bool = False


def _sign(value: float) -> int:
    return (value > 0) - (value < 0)


def _compare_memories(a: ScoredMemory, b: ScoredMemory) -> int:
    score_diff = b.score - a.score
    if abs(score_diff) > TIE_BREAK_THRESHOLD + _FLOAT_EPSILON:
        return _sign(score_diff)
    return _sign(b.importance - a.importance)


def rank_memories(memories: Iterable[ScoredMemory]) -> list[ScoredMemory]:
    """Order by score, breaking near-ties (<= 0.1 apart) by importance."""
    return sorted(memories, key=functools.cmp_to_key(_compare_memories))


def format_memories_for_context(
    memories: list[ScoredMemory],
    max_tokens: int,
    provider: Optional[str] = None,
    estimator: Optional[TokenEstimator] = None,
) -> MemoryBlock:
    """
    Render the highest-ranked memories that fit ``max_tokens``.

    The block is re-estimated after every added line; the first memory that
    would overflow ends the selection.
    """
    if not memories:
        return MemoryBlock()
    estimator = estimator or _default_estimator

    lines = [MEMORY_HEADER]
    token_count = 0
    debug_memories: list[dict] = []

    for memory in rank_memories(memories):
        candidate = "\n".join([*lines, f"- {memory.summary}"])
        candidate_tokens = estimator.estimate_tokens(candidate, provider)
        if candidate_tokens > max_tokens:
            break
        lines.append(f"- {memory.summary}")
        token_count = candidate_tokens
        debug_memories.append({
            "summary": memory.summary,
            "importance": memory.importance,
            "score": memory.score,
        })

    if not debug_memories:
        return MemoryBlock()

    return MemoryBlock(
        content="\n".join(lines),
        token_count=token_count,
        memories_used=len(debug_memories),
        debug_memories=debug_memories,
    )


def format_summary_for_context(
    summary: Optional[str],
    max_tokens: int,
    provider: Optional[str] = None,
    estimator: Optional[TokenEstimator] = None,
) -> SummaryBlock:
    """Prefix the summary with its header, truncating only the body."""
    if not summary or not summary.strip():
        return SummaryBlock()
    estimator = estimator or _default_estimator

    full = f"{SUMMARY_HEADER}\n{summary}"
    full_tokens = estimator.estimate_tokens(full, provider)
    if full_tokens <= max_tokens:
        return SummaryBlock(content=full, token_count=full_tokens)

    header_tokens = estimator.estimate_tokens(f"{SUMMARY_HEADER}\n", provider)
    available = max_tokens - header_tokens
    if available <= 0:
        return SummaryBlock()

    body = estimator.truncate_to_limit(summary, available, provider)
    content = f"{SUMMARY_HEADER}\n{body}"
    return SummaryBlock(
        content=content,
        token_count=estimator.estimate_tokens(content, provider),
    )


def _role_and_content(msg) -> tuple[str, str]:
    if isinstance(msg, dict):
        return str(msg.get("role") or ""), str(msg.get("content") or "")
    return str(getattr(msg, "role", "") or ""), str(getattr(msg, "content", "") or "")


def select_recent_messages(
    messages: list,
    max_tokens: int,
    provider: Optional[str] = None,
    estimator: Optional[TokenEstimator] = None,
) -> RecentSelection:
    """
    Keep the newest messages that fit ``max_tokens``, in chronological order.

    If not even the newest message fits it is included on its own and the
    selection is marked truncated, so a non-empty history never yields an
    empty window.
    """
    if not messages:
        return RecentSelection()
    estimator = estimator or _default_estimator

    selected: list[dict] = []
    total = 0
    truncated = False

    # Walk backwards from the most recent message
    for msg in reversed(messages):
        role, content = _role_and_content(msg)
        msg_tokens = estimator.estimate_tokens(content, provider) + MESSAGE_OVERHEAD_TOKENS
        if total + msg_tokens > max_tokens:
            truncated = True
            break
        selected.append({"role": role, "content": content})
        total += msg_tokens

    if not selected:
        role, content = _role_and_content(messages[-1])
        selected.append({"role": role, "content": content})
        total = estimator.estimate_tokens(content, provider) + MESSAGE_OVERHEAD_TOKENS
        truncated = True

    selected.reverse()
    return RecentSelection(messages=selected, token_count=total, truncated=truncated)
