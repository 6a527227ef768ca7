"""
Shared test setup.

Puts ``src`` on the import path so tests can import ``chat_context``
without installing it, and provides fixtures for the collaborators.
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add the src directory to PYTHONPATH
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from chat_context.models import ChatEvent, ChatMetadata, CheapLLMTaskResult  # noqa: E402
from chat_context.repository import InMemoryChatRepository  # noqa: E402


class WordTokenEstimator:
    """One token per whitespace-separated word, for predictable budgets."""

    def estimate_tokens(self, text, provider=None):
        return len(text.split()) if text else 0

    def truncate_to_limit(self, text, max_tokens, provider=None):
        return " ".join(text.split()[:max_tokens])


@pytest.fixture
def word_estimator():
    return WordTokenEstimator()


@pytest.fixture
def repository():
    return InMemoryChatRepository()


@pytest.fixture
def cheap_llm():
    """Cheap LLM double whose calls all succeed."""
    llm = MagicMock()
    llm.summarize_chat.return_value = CheapLLMTaskResult(
        success=True, result="Full summary of the chat."
    )
    llm.update_context_summary.return_value = CheapLLMTaskResult(
        success=True, result="Updated summary of the chat."
    )
    llm.title_from_summary.return_value = CheapLLMTaskResult(
        success=True, result="Tea Talk"
    )
    return llm


def make_events(count: int, words_per_message: int = 3) -> list[ChatEvent]:
    """Alternating USER/ASSISTANT message events."""
    events = []
    for i in range(count):
        role = "USER" if i % 2 == 0 else "ASSISTANT"
        content = " ".join([f"m{i}"] * words_per_message)
        events.append(ChatEvent(type="message", role=role, content=content, id=f"e-{i}"))
    return events


def make_chat(repository, chat_id="chat-1", events=None, **fields) -> ChatMetadata:
    events = events or []
    fields.setdefault(
        "message_count", sum(1 for e in events if e.type == "message")
    )
    return repository.create(ChatMetadata(id=chat_id, **fields), events)
