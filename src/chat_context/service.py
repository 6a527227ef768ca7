"""
Chat context service.

Application root that owns the context assembler and the two background
schedulers, wired to storage, memory search and the cheap LLM:

- ``build_context``: synchronous, called before the main LLM request
- ``after_turn``: queues the summary and title passes once a turn is done

Storage uses PostgreSQL when ``DATABASE_URL`` is set and falls back to an
in-memory store otherwise.
"""

import logging
import os
from typing import Optional

from dotenv import load_dotenv

from .assembler import BuildContextOptions, ContextAssembler
from .background import BackgroundTaskRunner
from .cheap_llm import CheapLLM
from .config import ContextConfig
from .interfaces import ChatRepository, CheapGenerator, MemorySearch, TokenEstimator
from .models import BuiltContext
from .repository import InMemoryChatRepository, PostgresChatRepository
from .retriever import PgVectorMemorySearch
from .summarizer import SummarizationScheduler
from .titles import TitleScheduler

logger = logging.getLogger(__name__)


def get_credentials() -> tuple[Optional[str], Optional[str]]:
    """
    API credentials for the cheap LLM and embeddings.

    API key: API_KEY > OPENAI_API_KEY > ANTHROPIC_API_KEY
    Base URL: API_BASE_URL > OPENAI_BASE_URL
    """
    api_key = (
        os.getenv("API_KEY")
        or os.getenv("OPENAI_API_KEY")
        or os.getenv("ANTHROPIC_API_KEY")
    )
    base_url = os.getenv("API_BASE_URL") or os.getenv("OPENAI_BASE_URL")
    return api_key, base_url


class ChatContextService:
    """
    Context assembly plus background summary/title maintenance.

    Usage:
        service = ChatContextService.from_env()
        built = service.build_context(options)
        ...  # call the main LLM with built.to_langchain_messages()
        service.after_turn(chat_id, options.provider, options.model_name)
    """

    def __init__(
        self,
        repository: ChatRepository,
        memory_search: Optional[MemorySearch] = None,
        cheap_llm: Optional[CheapGenerator] = None,
        estimator: Optional[TokenEstimator] = None,
        config: Optional[ContextConfig] = None,
        runner: Optional[BackgroundTaskRunner] = None,
    ):
        self.config = config or ContextConfig()
        self.repository = repository
        self.runner = runner or BackgroundTaskRunner(self.config.background_workers)
        self.assembler = ContextAssembler(
            memory_search=memory_search,
            estimator=estimator,
            config=self.config,
        )
        self.summaries = SummarizationScheduler(
            repository, cheap_llm, self.runner, self.config
        )
        self.titles = TitleScheduler(repository, cheap_llm, self.runner, self.config)

    @classmethod
    def from_env(cls, config: Optional[ContextConfig] = None) -> "ChatContextService":
        """Build the service from environment variables (and ``.env``)."""
        load_dotenv(override=True)
        config = config or ContextConfig.from_env()

        pg_conn = _connect_postgres(config.database_url)
        if pg_conn is not None:
            repository = PostgresChatRepository(pg_conn)
            memory_search = PgVectorMemorySearch(
                pg_conn=pg_conn, embedding_model=_create_embedding_model(config)
            )
        else:
            repository = InMemoryChatRepository()
            memory_search = None

        return cls(
            repository=repository,
            memory_search=memory_search,
            cheap_llm=_create_cheap_llm(config),
            config=config,
        )

    def build_context(self, options: BuildContextOptions) -> BuiltContext:
        return self.assembler.build_context(options)

    def after_turn(self, chat_id: str, provider: str, model_name: str):
        """Queue background housekeeping for a completed turn; never raises."""
        try:
            self.summaries.check_and_schedule(chat_id, provider, model_name)
        except Exception as e:
            logger.warning("Failed to schedule summary for chat %s: %s", chat_id, e)
        try:
            self.titles.schedule(chat_id)
        except Exception as e:
            logger.warning("Failed to schedule title check for chat %s: %s", chat_id, e)

    def shutdown(self, wait: bool = True):
        self.runner.shutdown(wait=wait)


def _connect_postgres(database_url: str):
    if not database_url:
        return None
    try:
        from psycopg import Connection
        from psycopg.rows import dict_row

        return Connection.connect(
            database_url,
            autocommit=True,
            prepare_threshold=0,
            row_factory=dict_row,
        )
    except Exception as e:
        logger.warning(
            "Failed to connect to PostgreSQL: %s. Falling back to in-memory storage.", e
        )
        return None


def _create_cheap_llm(config: ContextConfig) -> Optional[CheapLLM]:
    """Create the cheap LLM for summaries and titles, if one is configured."""
    if not config.cheap_model:
        logger.info("No cheap model configured; summaries and titles are disabled")
        return None
    try:
        from langchain.chat_models import init_chat_model

        api_key, base_url = get_credentials()
        init_kwargs = {"temperature": 0.3, "max_tokens": 1000}
        if api_key:
            init_kwargs["api_key"] = api_key
        if base_url:
            init_kwargs["base_url"] = base_url
        if config.cheap_model_provider:
            init_kwargs["model_provider"] = config.cheap_model_provider

        return CheapLLM(init_chat_model(config.cheap_model, **init_kwargs))
    except Exception as e:
        logger.warning("Failed to create cheap LLM: %s", e)
        return None


def _create_embedding_model(config: ContextConfig):
    try:
        from langchain_openai import OpenAIEmbeddings

        api_key, base_url = get_credentials()
        embed_kwargs = {}
        embed_api_key = config.embedding_api_key or api_key
        embed_base_url = config.embedding_base_url or base_url
        if embed_api_key:
            embed_kwargs["api_key"] = embed_api_key
        if embed_base_url:
            embed_kwargs["base_url"] = embed_base_url
        return OpenAIEmbeddings(model=config.embedding_model, **embed_kwargs)
    except Exception as e:
        logger.warning(
            "Failed to create embedding model: %s. Memory search will use keywords.", e
        )
        return None
