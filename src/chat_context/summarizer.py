"""
Conversation summary scheduling.

Decides when a chat's history is long enough to need a summary, and
(re)generates it with the cheap LLM: incrementally from the last messages
when a summary exists, from scratch otherwise. A fresh summary is stored on
the chat, recorded as a ``context-summary`` event, and used to retitle the
chat.
"""

import logging
import threading
import uuid
from typing import Optional

from .background import BackgroundTaskRunner
from .config import ContextConfig, get_model_context_limit, should_summarize_conversation
from .interfaces import ChatRepository, CheapGenerator
from .models import (
    EVENT_CONTEXT_SUMMARY,
    EVENT_MESSAGE,
    ChatEvent,
    SummaryGenerationResult,
    event_field,
    utc_now,
)
from .token_budget import count_messages_tokens

logger = logging.getLogger(__name__)

# A chat with a summary is not re-evaluated until this many messages follow it
SUMMARY_RECHECK_MESSAGE_COUNT = 100

CONVERSATION_ROLES = ("USER", "ASSISTANT")


def messages_since_last_summary(events: list) -> int:
    """Count ``message`` events after the most recent ``context-summary`` marker."""
    count = 0
    for event in events:
        event_type = event_field(event, "type")
        if event_type == EVENT_CONTEXT_SUMMARY:
            count = 0
        elif event_type == EVENT_MESSAGE:
            count += 1
    return count


def conversation_messages(events: list) -> list[dict]:
    """User/assistant turns of a chat history as ``{role, content}`` dicts."""
    result = []
    for event in events:
        if event_field(event, "type") != EVENT_MESSAGE:
            continue
        role = str(event_field(event, "role") or "").upper()
        if role not in CONVERSATION_ROLES:
            continue
        result.append({"role": role.lower(), "content": event_field(event, "content") or ""})
    return result


class SummarizationScheduler:
    """
    Keeps per-chat context summaries up to date.

    Usage:
        scheduler = SummarizationScheduler(repository, cheap_llm, runner)
        scheduler.check_and_schedule(chat_id, "ANTHROPIC", "claude-sonnet-4-5")
    """

    def __init__(
        self,
        repository: ChatRepository,
        cheap_llm: Optional[CheapGenerator] = None,
        runner: Optional[BackgroundTaskRunner] = None,
        config: Optional[ContextConfig] = None,
    ):
        self.repository = repository
        self.cheap_llm = cheap_llm
        self.runner = runner
        self.config = config or ContextConfig()
        self._in_flight: set[str] = set()
        self._in_flight_lock = threading.Lock()

    def chat_needs_summary(
        self, chat_id: str, provider: str, model_name: str
    ) -> tuple[bool, str]:
        """Whether the chat's history warrants a new or updated summary."""
        chat = self.repository.find_by_id(chat_id)
        if not chat:
            return False, "Chat not found"

        events = self.repository.get_messages(chat_id)
        if (
            chat.context_summary
            and messages_since_last_summary(events) < SUMMARY_RECHECK_MESSAGE_COUNT
        ):
            return False, "Existing summary is recent enough"

        messages = conversation_messages(events)
        estimated = count_messages_tokens(messages, provider)
        limit = get_model_context_limit(provider, model_name, self.config)

        if should_summarize_conversation(len(messages), estimated, limit):
            percent = round(estimated / limit * 100) if limit else 100
            return True, (
                f"Conversation has {len(messages)} messages using ~{estimated} "
                f"tokens ({percent}% of context)"
            )
        return False, "Conversation is short enough"

    def generate_context_summary(
        self,
        chat_id: str,
        provider: str = "",
        model_name: str = "",
        force_regenerate: bool = False,
    ) -> SummaryGenerationResult:
        """Generate or update the summary and persist it on success."""
        try:
            return self._generate(chat_id, provider, model_name, force_regenerate)
        except Exception as e:
            logger.warning("Summary generation failed for chat %s: %s", chat_id, e)
            return SummaryGenerationResult(success=False, error=str(e))

    def _generate(
        self, chat_id: str, provider: str, model_name: str, force_regenerate: bool
    ) -> SummaryGenerationResult:
        chat = self.repository.find_by_id(chat_id)
        if not chat:
            return SummaryGenerationResult(success=False, error="Chat not found")

        if not force_regenerate and chat.context_summary:
            needed, _ = self.chat_needs_summary(chat_id, provider, model_name)
            if not needed:
                return SummaryGenerationResult(success=True, summary=chat.context_summary)

        if not self.cheap_llm:
            logger.info("No cheap LLM configured; skipping summary for chat %s", chat_id)
            return SummaryGenerationResult(
                success=False, error="No cheap LLM provider available"
            )

        messages = conversation_messages(self.repository.get_messages(chat_id))
        if not messages:
            return SummaryGenerationResult(success=False, error="No messages to summarize")

        result = None
        if chat.context_summary and not force_regenerate:
            recent = messages[-self.config.summary_recent_messages:]
            result = self.cheap_llm.update_context_summary(chat.context_summary, recent)
            if not (result.success and result.result):
                logger.info(
                    "Incremental summary update failed for chat %s (%s); regenerating",
                    chat_id,
                    result.error,
                )
                result = None

        if result is None:
            result = self.cheap_llm.summarize_chat(messages)
            if not (result.success and result.result):
                return SummaryGenerationResult(
                    success=False, error=result.error or "Failed to generate summary"
                )

        summary = result.result
        self.repository.update(chat_id, {"context_summary": summary, "updated_at": utc_now()})
        self.repository.add_message(
            chat_id,
            ChatEvent(type=EVENT_CONTEXT_SUMMARY, content=summary, id=str(uuid.uuid4())),
        )
        logger.info("Stored context summary for chat %s (%d chars)", chat_id, len(summary))

        self._retitle_from_summary(chat_id, summary)

        return SummaryGenerationResult(
            success=True, summary=summary, was_generated=True, usage=result.usage
        )

    def _retitle_from_summary(self, chat_id: str, summary: str):
        try:
            title_result = self.cheap_llm.title_from_summary(summary)
        except Exception as e:
            logger.warning("Title generation failed for chat %s: %s", chat_id, e)
            return
        if not (title_result.success and title_result.result):
            logger.warning(
                "Title generation failed for chat %s: %s", chat_id, title_result.error
            )
            return
        try:
            self.repository.update(
                chat_id, {"title": title_result.result, "updated_at": utc_now()}
            )
            logger.info("Retitled chat %s to %r", chat_id, title_result.result)
        except Exception as e:
            logger.warning("Failed to save title for chat %s: %s", chat_id, e)

    def clear_context_summary(self, chat_id: str) -> bool:
        try:
            self.repository.update(chat_id, {"context_summary": None, "updated_at": utc_now()})
            return True
        except Exception as e:
            logger.warning("Failed to clear context summary for chat %s: %s", chat_id, e)
            return False

    def check_and_schedule(self, chat_id: str, provider: str, model_name: str) -> bool:
        """
        Queue a background summary check for the chat.

        The need check and any generation run inside the task, off the
        caller's thread. Returns False when a task for the chat is already
        in flight. With a runner, True means a task was submitted; without
        one the task runs inline and True means a summary was attempted.
        """
        with self._in_flight_lock:
            if chat_id in self._in_flight:
                logger.debug("Summary already in progress for chat %s", chat_id)
                return False
            self._in_flight.add(chat_id)

        def _task() -> Optional[SummaryGenerationResult]:
            try:
                needed, reason = self.chat_needs_summary(chat_id, provider, model_name)
                if not needed:
                    logger.debug("Chat %s does not need a summary: %s", chat_id, reason)
                    return None
                logger.info("Chat %s needs summary: %s", chat_id, reason)
                result = self.generate_context_summary(chat_id, provider, model_name)
                if not result.success:
                    logger.warning("Context summary failed for chat %s: %s", chat_id, result.error)
                return result
            finally:
                with self._in_flight_lock:
                    self._in_flight.discard(chat_id)

        if self.runner is None:
            return _task() is not None
        try:
            self.runner.submit(chat_id, "context-summary", _task)
        except Exception:
            with self._in_flight_lock:
                self._in_flight.discard(chat_id)
            raise
        return True
