"""
Cheap LLM tasks for background housekeeping.

Wraps a small/fast LangChain chat model used only for conversation
summaries and chat titles, never for the main conversation.
"""

import json
import logging
import re
from typing import Callable, Optional, Sequence

from langchain_core.messages import HumanMessage, SystemMessage

from .models import CheapLLMTaskResult, TitleConsideration

logger = logging.getLogger(__name__)

CHAT_SUMMARY_PROMPT = """You are a summarizer. Create a concise summary of the following conversation.
Focus on key events, decisions, emotional moments, and important information shared.
Keep the summary under 200 words. Write in third person, past tense.
Respond with only the summary text, no additional formatting."""

CONTEXT_SUMMARY_UPDATE_PROMPT = """You are updating a running summary of a conversation.
Integrate the new messages into the existing summary, keeping it concise and under 300 words.
Focus on maintaining continuity and capturing any new important information.
Respond with only the updated summary text."""

TITLE_FROM_SUMMARY_PROMPT = """Generate a short, descriptive title for this conversation based on the summary provided.
The title should:
- Be under 60 characters
- Capture the main topic or theme of the conversation
- Be engaging but not clickbait
- Be concise and clear

Respond with only the title, no quotes or additional text."""

TITLE_CONSIDERATION_PROMPT = """You are a chat title evaluator. You will be given:
1. The current chat title
2. A previous summary or title (if available)
3. Recent messages from the chat

Determine if the conversation has shifted topic significantly enough to warrant a new title.
Consider:
- Is the current title still accurate?
- Has the main topic or focus changed?
- Are they discussing something substantially different now?

Respond with a JSON object:
{
  "needsNewTitle": true/false,
  "reason": "brief explanation",
  "suggestedTitle": "new title if needsNewTitle is true, otherwise null"
}

Keep suggested titles under 60 characters, descriptive, and engaging."""

MAX_TITLE_CHARS = 60
# Per-message cap when showing recent messages to the title evaluator
TITLE_MESSAGE_CHARS = 500


def _messages_to_text(messages: Sequence[dict], max_chars: Optional[int] = None) -> str:
    lines = []
    for msg in messages:
        role = str(msg.get("role", "")).upper()
        content = str(msg.get("content", ""))
        if max_chars is not None:
            content = content[:max_chars]
        lines.append(f"{role}: {content}")
    return "\n\n".join(lines)


def clean_title(raw: str) -> str:
    """Strip quotes and cap the title length."""
    title = raw.strip()
    title = re.sub(r'^["\']|["\']$', "", title).strip()
    if len(title) > MAX_TITLE_CHARS:
        title = title[: MAX_TITLE_CHARS - 3] + "..."
    return title


def parse_title_consideration(raw: str) -> TitleConsideration:
    """Parse the evaluator's JSON reply; unparseable replies mean no change."""
    content = raw.strip()
    if content.startswith("```"):
        content = re.sub(r"^```(?:json)?\s*", "", content)
        content = re.sub(r"\s*```$", "", content)

    try:
        parsed = json.loads(content)
    except (json.JSONDecodeError, ValueError):
        match = re.search(r"\{.*\}", content, re.DOTALL)
        if not match:
            return TitleConsideration(False, "Failed to parse response")
        try:
            parsed = json.loads(match.group())
        except (json.JSONDecodeError, ValueError):
            return TitleConsideration(False, "Failed to parse response")

    if not isinstance(parsed, dict):
        return TitleConsideration(False, "Failed to parse response")

    suggested = parsed.get("suggestedTitle")
    if isinstance(suggested, str) and suggested.strip():
        suggested = clean_title(suggested)
    else:
        suggested = None

    return TitleConsideration(
        needs_new_title=parsed.get("needsNewTitle") is True,
        reason=parsed.get("reason") or "No reason provided",
        suggested_title=suggested or None,
    )


class CheapLLM:
    """Summary and title generation backed by a LangChain chat model."""

    def __init__(self, llm=None):
        self._llm = llm

    @property
    def available(self) -> bool:
        return self._llm is not None

    def _execute(
        self,
        system_prompt: str,
        user_content: str,
        parse: Callable[[str], object],
    ) -> CheapLLMTaskResult:
        if not self._llm:
            return CheapLLMTaskResult(success=False, error="No cheap LLM configured")
        try:
            response = self._llm.invoke([
                SystemMessage(content=system_prompt),
                HumanMessage(content=user_content),
            ])
        except Exception as e:
            logger.warning("Cheap LLM call failed: %s", e)
            return CheapLLMTaskResult(success=False, error=str(e))

        content = response.content if hasattr(response, "content") else str(response)
        if not isinstance(content, str):
            content = str(content)

        usage = None
        usage_metadata = getattr(response, "usage_metadata", None)
        if isinstance(usage_metadata, dict):
            usage = {
                "prompt_tokens": usage_metadata.get("input_tokens", 0),
                "completion_tokens": usage_metadata.get("output_tokens", 0),
                "total_tokens": usage_metadata.get("total_tokens", 0),
            }

        result = parse(content)
        if result is None or result == "":
            return CheapLLMTaskResult(success=False, error="Empty response", usage=usage)
        return CheapLLMTaskResult(success=True, result=result, usage=usage)

    def summarize_chat(self, messages: Sequence[dict]) -> CheapLLMTaskResult:
        """Summarize a whole conversation from scratch."""
        return self._execute(
            CHAT_SUMMARY_PROMPT,
            _messages_to_text(messages),
            lambda content: content.strip(),
        )

    def update_context_summary(
        self, current_summary: str, messages: Sequence[dict]
    ) -> CheapLLMTaskResult:
        """Fold new messages into an existing running summary."""
        user_content = (
            f"Current summary:\n{current_summary}\n\n"
            f"New messages to integrate:\n{_messages_to_text(messages)}"
        )
        return self._execute(
            CONTEXT_SUMMARY_UPDATE_PROMPT,
            user_content,
            lambda content: content.strip(),
        )

    def title_from_summary(self, summary: str) -> CheapLLMTaskResult:
        return self._execute(
            TITLE_FROM_SUMMARY_PROMPT,
            f"Summary:\n{summary}",
            clean_title,
        )

    def consider_title_update(
        self,
        current_title: str,
        messages: Sequence[dict],
        context: Optional[str],
    ) -> CheapLLMTaskResult:
        """Ask whether the chat has drifted enough to need a new title."""
        context_info = f"Previous context: {context}" if context else "No previous context"
        user_content = (
            f'Current Title: "{current_title}"\n\n{context_info}\n\n'
            f"Recent Messages:\n{_messages_to_text(messages, TITLE_MESSAGE_CHARS)}"
        )
        return self._execute(
            TITLE_CONSIDERATION_PROMPT,
            user_content,
            parse_title_consideration,
        )
