"""
Chat title maintenance.

Titles are reconsidered at a few early interchange checkpoints, while the
topic of a new chat is still settling, and every tenth interchange after.
"""

import logging
from typing import Optional

from .background import BackgroundTaskRunner
from .config import ContextConfig
from .interfaces import ChatRepository, CheapGenerator
from .models import EVENT_MESSAGE, event_field, utc_now
from .summarizer import conversation_messages

logger = logging.getLogger(__name__)

TITLE_CHECKPOINTS = (2, 3, 5, 7, 10)
TITLE_CHECK_INTERVAL = 10


def calculate_interchange_count(events: list) -> int:
    """Completed user/assistant pairs among ``message`` events."""
    user_count = 0
    assistant_count = 0
    for event in events:
        if event_field(event, "type") != EVENT_MESSAGE:
            continue
        role = str(event_field(event, "role") or "").upper()
        if role == "USER":
            user_count += 1
        elif role == "ASSISTANT":
            assistant_count += 1
    return min(user_count, assistant_count)


def should_check_title_at_interchange(current: int, last_checked: int) -> bool:
    if current <= last_checked:
        return False
    if current in TITLE_CHECKPOINTS:
        return True
    return current > TITLE_CHECKPOINTS[-1] and current % TITLE_CHECK_INTERVAL == 0


class TitleScheduler:
    """Asks the cheap LLM whether a chat's title still fits, at checkpoints."""

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

    def check_title(self, chat_id: str) -> Optional[str]:
        """
        Re-evaluate the title if a checkpoint has been reached.

        Returns the new title when one was saved, otherwise None.
        """
        if not self.cheap_llm:
            logger.debug("No cheap LLM configured; skipping title check for %s", chat_id)
            return None

        chat = self.repository.find_by_id(chat_id)
        if not chat:
            return None

        events = self.repository.get_messages(chat_id)
        interchange = calculate_interchange_count(events)
        if not should_check_title_at_interchange(
            interchange, chat.last_rename_check_interchange
        ):
            return None

        logger.info("Checking title for chat %s at interchange %d", chat_id, interchange)

        recent = conversation_messages(events)[-self.config.title_recent_messages:]
        context = chat.context_summary or chat.title or None
        result = self.cheap_llm.consider_title_update(chat.title, recent, context)

        fields = {"last_rename_check_interchange": interchange, "updated_at": utc_now()}
        new_title = None
        if not result.success:
            logger.warning("Title consideration failed for chat %s: %s", chat_id, result.error)
        else:
            decision = result.result
            if decision.needs_new_title and decision.suggested_title:
                new_title = decision.suggested_title
                fields["title"] = new_title
                logger.info(
                    "Renaming chat %s to %r (%s)", chat_id, new_title, decision.reason
                )

        self.repository.update(chat_id, fields)
        return new_title

    def schedule(self, chat_id: str):
        """Run ``check_title`` in the background; failures are only logged."""
        if self.runner is None:
            try:
                self.check_title(chat_id)
            except Exception as e:
                logger.warning("Title check failed for chat %s: %s", chat_id, e)
            return None
        return self.runner.submit(chat_id, "title-check", self.check_title, chat_id)
