"""
Context configuration and model context window mappings.
"""

import math
import os
from dataclasses import dataclass

# Provider → context window used when the model is unknown (tokens)
DEFAULT_CONTEXT_BY_PROVIDER: dict[str, int] = {
    "ANTHROPIC": 200_000,
    "OPENAI": 128_000,
    "GOOGLE": 1_000_000,
    "GROK": 131_072,
    "OLLAMA": 8_192,
    "OPENROUTER": 128_000,
    "OPENAI_COMPATIBLE": 8_192,
    "GAB_AI": 32_000,
}

DEFAULT_CONTEXT_WINDOW = 8_192

# Model-specific windows that differ from the provider default
MODEL_CONTEXT_OVERRIDES: dict[str, int] = {
    # Ollama
    "llama3.2:3b": 131_072,
    "llama3.1:8b": 131_072,
    "llama3.1:70b": 131_072,
    "mistral:7b": 32_768,
    "mixtral:8x7b": 32_768,
    "codellama:7b": 16_384,
    "phi3:mini": 4_096,
    "qwen2:7b": 32_768,
    # OpenRouter
    "anthropic/claude-3-opus": 200_000,
    "anthropic/claude-3-sonnet": 200_000,
    "anthropic/claude-3-haiku": 200_000,
    "openai/gpt-4-turbo": 128_000,
    "openai/gpt-4": 8_192,
    "google/gemini-pro": 1_000_000,
    # Older OpenAI models
    "gpt-4-0613": 8_192,
    "gpt-4-32k": 32_768,
    "gpt-3.5-turbo-16k": 16_385,
}

# Model → context window size (tokens), matched exactly or by prefix
MODEL_CONTEXT_WINDOWS: dict[str, int] = {
    # Anthropic
    "claude-sonnet-4-5-20250929": 200_000,
    "claude-sonnet-4-20250514": 200_000,
    "claude-opus-4-20250514": 200_000,
    "claude-opus-4-5-20251101": 200_000,
    "claude-haiku-4-5": 200_000,
    "claude-3-5-sonnet": 200_000,
    "claude-3-haiku": 200_000,
    # OpenAI
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
    "gpt-4-turbo": 128_000,
    "gpt-3.5-turbo": 16_385,
    # Google
    "gemini-2.0-flash": 1_000_000,
    "gemini-1.5-pro": 2_000_000,
    "gemini-1.5-flash": 1_000_000,
    # Grok
    "grok-2": 131_072,
    # DeepSeek
    "deepseek-chat": 64_000,
    "deepseek-reasoner": 64_000,
}

# Summarize once the conversation uses more than this share of the window...
SUMMARIZE_USAGE_PERCENT = 60
# ...or holds more than this many messages
SUMMARIZE_MESSAGE_COUNT = 50


def _normalize_provider(provider: str | None) -> str:
    return (provider or "").upper()


def get_model_context_limit(
    provider: str | None,
    model_name: str,
    config: "ContextConfig | None" = None,
) -> int:
    """Resolve the context window size for a provider/model pair."""
    if config is not None and config.context_window > 0:
        return config.context_window

    provider = _normalize_provider(provider)

    if model_name in MODEL_CONTEXT_OVERRIDES:
        return MODEL_CONTEXT_OVERRIDES[model_name]
    prefixed = f"{provider.lower()}/{model_name}"
    if prefixed in MODEL_CONTEXT_OVERRIDES:
        return MODEL_CONTEXT_OVERRIDES[prefixed]

    # Try exact match first, then prefix match
    if model_name in MODEL_CONTEXT_WINDOWS:
        return MODEL_CONTEXT_WINDOWS[model_name]
    if model_name:
        for key, size in MODEL_CONTEXT_WINDOWS.items():
            if model_name.startswith(key) or key.startswith(model_name):
                return size

    return DEFAULT_CONTEXT_BY_PROVIDER.get(provider, DEFAULT_CONTEXT_WINDOW)


def get_safe_input_limit(
    provider: str | None,
    model_name: str,
    max_response_tokens: int = 4096,
) -> int:
    """Input tokens usable after reserving the response and a 10% buffer."""
    total = get_model_context_limit(provider, model_name)
    safety_buffer = math.ceil(total * 0.10)
    return max(1000, total - max_response_tokens - safety_buffer)


def has_extended_context(provider: str | None, model_name: str) -> bool:
    return get_model_context_limit(provider, model_name) > 32_768


def get_recommended_allocation(
    provider: str | None,
    model_name: str,
    config: "ContextConfig | None" = None,
) -> dict[str, int]:
    """
    Recommended token split for a model, scaled by its window size.

    Keys: total_limit, system_prompt, memories, conversation_summary,
    recent_messages, response_reserve.
    """
    total = get_model_context_limit(provider, model_name, config)

    if total >= 200_000:
        system, memories, summary, recent_ratio, reserve = 4000, 8000, 4000, 0.60, 8192
    elif total >= 100_000:
        system, memories, summary, recent_ratio, reserve = 3000, 6000, 3000, 0.55, 4096
    elif total >= 32_000:
        system, memories, summary, recent_ratio, reserve = 2000, 4000, 2000, 0.50, 4096
    else:
        system, memories, summary, recent_ratio, reserve = 1000, 2000, 1000, 0.40, 2048

    parts = {
        "system_prompt": system,
        "memories": memories,
        "conversation_summary": summary,
        "recent_messages": int(total * recent_ratio),
        "response_reserve": reserve,
    }

    # Small windows cannot hold the fixed allocations; shrink every part
    # by the same factor so the split never exceeds the window.
    allocated = sum(parts.values())
    if allocated > total:
        scale = total / allocated
        parts = {key: int(value * scale) for key, value in parts.items()}

    return {"total_limit": total, **parts}


def should_summarize_conversation(
    message_count: int,
    estimated_tokens: int,
    context_limit: int,
) -> bool:
    """Whether a conversation is long enough to warrant a summary."""
    if context_limit > 0:
        usage_percent = estimated_tokens / context_limit * 100
        if usage_percent > SUMMARIZE_USAGE_PERCENT:
            return True
    return message_count > SUMMARIZE_MESSAGE_COUNT


def calculate_recent_message_count(
    available_tokens: int,
    average_message_tokens: int = 150,
) -> int:
    """How many recent messages to keep in full (between 4 and 100)."""
    count = available_tokens // max(average_message_tokens, 1)
    return max(4, min(100, count))


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class ContextConfig:
    """Configuration for context assembly and background housekeeping."""

    # Context window (0 = auto-detect from provider/model)
    context_window: int = 0

    # Memory injection
    skip_memories: bool = False
    max_memories: int = 10
    min_memory_importance: float = 0.3

    # Background summarization / titling
    summary_recent_messages: int = 20
    title_recent_messages: int = 10
    background_workers: int = 4

    # Cheap LLM used for summaries and titles (empty = disabled)
    cheap_model: str = ""
    cheap_model_provider: str = ""

    # Memory search
    embedding_model: str = "text-embedding-3-small"
    embedding_base_url: str = ""
    embedding_api_key: str = ""

    # Storage (empty = in-memory)
    database_url: str = ""

    @classmethod
    def from_env(cls) -> "ContextConfig":
        """Load configuration from environment variables."""
        return cls(
            context_window=int(os.getenv("CONTEXT_WINDOW", "0")),
            skip_memories=_env_bool("CONTEXT_SKIP_MEMORIES", "false"),
            max_memories=int(os.getenv("CONTEXT_MAX_MEMORIES", "10")),
            min_memory_importance=float(
                os.getenv("CONTEXT_MIN_MEMORY_IMPORTANCE", "0.3")
            ),
            summary_recent_messages=int(
                os.getenv("CONTEXT_SUMMARY_RECENT_MESSAGES", "20")
            ),
            title_recent_messages=int(
                os.getenv("CONTEXT_TITLE_RECENT_MESSAGES", "10")
            ),
            background_workers=int(os.getenv("CONTEXT_BACKGROUND_WORKERS", "4")),
            cheap_model=os.getenv("CONTEXT_CHEAP_MODEL", ""),
            cheap_model_provider=os.getenv("CONTEXT_CHEAP_MODEL_PROVIDER", ""),
            embedding_model=os.getenv(
                "CONTEXT_EMBEDDING_MODEL", "text-embedding-3-small"
            ),
            embedding_base_url=os.getenv("CONTEXT_EMBEDDING_BASE_URL", ""),
            embedding_api_key=os.getenv("CONTEXT_EMBEDDING_API_KEY", ""),
            database_url=os.getenv("DATABASE_URL", ""),
        )
