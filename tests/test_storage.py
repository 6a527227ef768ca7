"""
Tests for chat storage, memory search and service wiring.
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from chat_context.assembler import BuildContextOptions
from chat_context.config import ContextConfig
from chat_context.models import Character, ChatEvent, ChatMetadata, ScoredMemory, utc_now
from chat_context.repository import InMemoryChatRepository, PostgresChatRepository
from chat_context.retriever import KEYWORD_MATCH_SCORE, PgVectorMemorySearch
from chat_context.service import ChatContextService, get_credentials

from conftest import make_chat, make_events


def _mock_pg():
    """psycopg-style connection whose cursor context manager yields ``cur``."""
    conn = MagicMock()
    cur = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cur
    return conn, cur


# ── In-Memory Repository Tests ──


class TestInMemoryChatRepository:
    def test_find_returns_copy(self, repository):
        make_chat(repository, title="Original")
        chat = repository.find_by_id("chat-1")
        chat.title = "Mutated"
        assert repository.find_by_id("chat-1").title == "Original"

    def test_find_missing(self, repository):
        assert repository.find_by_id("nope") is None

    def test_update(self, repository):
        make_chat(repository)
        updated = repository.update("chat-1", {"title": "Tea Talk", "updated_at": utc_now()})
        assert updated.title == "Tea Talk"
        assert repository.find_by_id("chat-1").title == "Tea Talk"

    def test_stale_update_ignored(self, repository):
        make_chat(repository, title="Fresh")
        stale = utc_now() - timedelta(minutes=5)
        repository.update("chat-1", {"title": "Stale", "updated_at": stale})
        assert repository.find_by_id("chat-1").title == "Fresh"

    def test_unknown_field_rejected(self, repository):
        make_chat(repository)
        with pytest.raises(ValueError):
            repository.update("chat-1", {"owner": "someone"})

    def test_update_missing_chat(self, repository):
        assert repository.update("nope", {"title": "x"}) is None

    def test_add_message_counts_only_messages(self, repository):
        make_chat(repository, events=make_events(2))
        repository.add_message("chat-1", ChatEvent(type="message", role="USER", content="hi"))
        repository.add_message("chat-1", ChatEvent(type="context-summary", content="summary"))

        events = repository.get_messages("chat-1")
        assert len(events) == 4
        assert all(e.id for e in events)
        assert repository.find_by_id("chat-1").message_count == 3


# ── PostgreSQL Repository Tests ──


class TestPostgresChatRepository:
    def test_no_connection(self):
        repo = PostgresChatRepository()
        assert repo.find_by_id("chat-1") is None
        assert repo.get_messages("chat-1") == []
        assert repo.update("chat-1", {"title": "x"}) is None

    def test_creates_tables(self):
        conn, cur = _mock_pg()
        PostgresChatRepository(conn)
        sql = " ".join(call.args[0] for call in cur.execute.call_args_list)
        assert "CREATE TABLE IF NOT EXISTS chats" in sql
        assert "CREATE TABLE IF NOT EXISTS chat_events" in sql

    def test_find_by_id_dict_row(self):
        conn, cur = _mock_pg()
        now = utc_now()
        cur.fetchone.return_value = {
            "id": "chat-1",
            "title": "Tea Talk",
            "context_summary": None,
            "message_count": 12,
            "last_rename_check_interchange": 5,
            "updated_at": now,
        }
        chat = PostgresChatRepository(conn).find_by_id("chat-1")
        assert chat == ChatMetadata(
            id="chat-1",
            title="Tea Talk",
            message_count=12,
            last_rename_check_interchange=5,
            updated_at=now,
        )

    def test_update_guards_stale_writes(self):
        conn, cur = _mock_pg()
        now = utc_now()
        cur.fetchone.return_value = ("chat-1", "Tea Talk", None, 4, 2, now)
        chat = PostgresChatRepository(conn).update(
            "chat-1", {"title": "Tea Talk", "updated_at": now}
        )

        sql, params = cur.execute.call_args.args
        assert "updated_at <= %s" in sql
        assert "title = %s" in sql
        assert params == ["Tea Talk", now, "chat-1", now]
        assert chat.title == "Tea Talk"
        assert chat.last_rename_check_interchange == 2

    def test_update_rejects_unknown_field(self):
        conn, _ = _mock_pg()
        with pytest.raises(ValueError):
            PostgresChatRepository(conn).update("chat-1", {"id; DROP TABLE chats": 1})

    def test_get_messages_tuple_rows(self):
        conn, cur = _mock_pg()
        now = utc_now()
        cur.fetchall.return_value = [
            ("e-1", "message", "USER", "hi", now),
            ("e-2", "context-summary", None, "summary", now),
        ]
        events = PostgresChatRepository(conn).get_messages("chat-1")
        assert [e.type for e in events] == ["message", "context-summary"]
        assert events[0].role == "USER"

    def test_add_message_bumps_count(self):
        conn, cur = _mock_pg()
        repo = PostgresChatRepository(conn)
        cur.execute.reset_mock()
        repo.add_message("chat-1", ChatEvent(type="message", role="USER", content="hi"))
        statements = [call.args[0] for call in cur.execute.call_args_list]
        assert "INSERT INTO chat_events" in statements[0]
        assert "message_count = message_count + 1" in statements[1]

    def test_add_summary_event_keeps_count(self):
        conn, cur = _mock_pg()
        repo = PostgresChatRepository(conn)
        cur.execute.reset_mock()
        repo.add_message("chat-1", ChatEvent(type="context-summary", content="summary"))
        assert cur.execute.call_count == 1


# ── Memory Search Tests ──


class TestPgVectorMemorySearch:
    def test_no_connection(self):
        search = PgVectorMemorySearch()
        assert search.search_memories("char-1", "tea") == []
        assert search.store_memory("char-1", "Likes tea") is None

    def test_deterministic_ids(self):
        a = PgVectorMemorySearch._make_id("char-1", "Likes tea")
        b = PgVectorMemorySearch._make_id("char-1", "Likes tea")
        c = PgVectorMemorySearch._make_id("char-2", "Likes tea")
        assert a == b
        assert a != c
        assert a.startswith("mem-")

    def test_vector_search(self):
        conn, cur = _mock_pg()
        embeddings = MagicMock()
        embeddings.embed_query.return_value = [0.1, 0.2, 0.3]
        cur.fetchall.return_value = [
            {"summary": "Likes green tea", "importance": 0.8, "score": 0.91},
        ]
        search = PgVectorMemorySearch(pg_conn=conn, embedding_model=embeddings)

        results = search.search_memories(
            "char-1", "tea", user_id="user-1", limit=4, min_importance=0.3
        )

        assert results == [ScoredMemory(summary="Likes green tea", importance=0.8, score=0.91)]
        sql, params = cur.execute.call_args.args
        assert "embedding <=> %s::vector" in sql
        assert params[1:6] == ("char-1", "user-1", "user-1", 0.3, [0.1, 0.2, 0.3])
        assert params[-1] == 4

    def test_keyword_fallback(self):
        conn, cur = _mock_pg()
        cur.fetchall.return_value = [("Likes green tea", 0.6)]
        search = PgVectorMemorySearch(pg_conn=conn)

        results = search.search_memories("char-1", "green tea")

        assert results == [
            ScoredMemory(summary="Likes green tea", importance=0.6, score=KEYWORD_MATCH_SCORE)
        ]
        sql, params = cur.execute.call_args.args
        assert "ILIKE" in sql
        assert "green" in params and "tea" in params

    def test_search_failure_returns_empty(self):
        conn, cur = _mock_pg()
        search = PgVectorMemorySearch(pg_conn=conn)
        cur.execute.side_effect = RuntimeError("connection lost")
        assert search.search_memories("char-1", "tea") == []

    def test_store_memory_clamps_importance(self):
        conn, cur = _mock_pg()
        search = PgVectorMemorySearch(pg_conn=conn)
        memory_id = search.store_memory("char-1", "Likes tea", importance=1.7)
        params = cur.execute.call_args.args[1]
        assert memory_id == params[0]
        assert params[5] == 1.0


# ── Service Tests ──


class TestChatContextService:
    def test_get_credentials(self, monkeypatch):
        for name in ("API_KEY", "OPENAI_API_KEY", "ANTHROPIC_API_KEY", "API_BASE_URL", "OPENAI_BASE_URL"):
            monkeypatch.delenv(name, raising=False)
        monkeypatch.setenv("OPENAI_API_KEY", "sk-openai")
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-anthropic")
        monkeypatch.setenv("OPENAI_BASE_URL", "http://localhost:8000/v1")
        assert get_credentials() == ("sk-openai", "http://localhost:8000/v1")

    def test_build_and_after_turn(self, cheap_llm):
        repository = InMemoryChatRepository()
        chat = make_chat(repository, events=make_events(60), title="New Chat")
        cheap_llm.consider_title_update.return_value = MagicMock(success=False, error="skip")
        service = ChatContextService(repository, cheap_llm=cheap_llm)
        try:
            built = service.build_context(BuildContextOptions(
                provider="ANTHROPIC",
                model_name="claude-sonnet-4-5-20250929",
                character=Character(system_prompt="You are helpful."),
                chat=chat,
                existing_messages=[
                    {"role": e.role, "content": e.content} for e in make_events(60)
                ],
                new_user_message="Hello again",
            ))
            assert built.messages[-1].content == "Hello again"
            assert built.messages_included == 61

            service.after_turn("chat-1", "ANTHROPIC", "claude-sonnet-4-5-20250929")
        finally:
            service.shutdown(wait=True)

        assert repository.find_by_id("chat-1").context_summary == "Full summary of the chat."

    def test_after_turn_defers_storage_work(self, cheap_llm):
        repository = MagicMock()
        runner = MagicMock()
        service = ChatContextService(repository, cheap_llm=cheap_llm, runner=runner)

        service.after_turn("chat-1", "OPENAI", "gpt-4o")

        assert repository.method_calls == []
        assert [c.args[1] for c in runner.submit.call_args_list] == [
            "context-summary",
            "title-check",
        ]

    def test_after_turn_never_raises(self):
        repository = MagicMock()
        repository.find_by_id.side_effect = RuntimeError("db down")
        service = ChatContextService(repository)
        try:
            service.after_turn("chat-1", "OPENAI", "gpt-4o")
        finally:
            service.shutdown()

    def test_from_env_in_memory(self, monkeypatch):
        monkeypatch.setattr("chat_context.service.load_dotenv", lambda **kwargs: None)
        config = ContextConfig(database_url="", cheap_model="")
        service = ChatContextService.from_env(config)
        try:
            assert isinstance(service.repository, InMemoryChatRepository)
            assert service.summaries.cheap_llm is None
            assert service.assembler.memory_search is None
        finally:
            service.shutdown()
