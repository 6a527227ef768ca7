"""
Chat storage.

Two implementations of the chat repository: an in-process store for tests
and single-process use, and a PostgreSQL store on a psycopg connection.
Writes carry an ``updated_at`` timestamp and are rejected when older than
the stored one, so a stale background write cannot overwrite a newer one.
"""

import logging
import threading
import uuid
from dataclasses import replace
from typing import Any, Optional

from .models import EVENT_MESSAGE, ChatEvent, ChatMetadata, utc_now

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = (
    "title",
    "context_summary",
    "message_count",
    "last_rename_check_interchange",
    "updated_at",
)


class InMemoryChatRepository:
    """Thread-safe in-process chat store."""

    def __init__(self):
        self._chats: dict[str, ChatMetadata] = {}
        self._events: dict[str, list[ChatEvent]] = {}
        self._lock = threading.Lock()

    def create(self, chat: ChatMetadata, events: Optional[list[ChatEvent]] = None) -> ChatMetadata:
        with self._lock:
            self._chats[chat.id] = chat
            self._events[chat.id] = list(events or [])
            return chat

    def find_by_id(self, chat_id: str) -> Optional[ChatMetadata]:
        with self._lock:
            chat = self._chats.get(chat_id)
            return replace(chat) if chat else None

    def update(self, chat_id: str, fields: dict[str, Any]) -> Optional[ChatMetadata]:
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update chat fields: {sorted(unknown)}")

        with self._lock:
            chat = self._chats.get(chat_id)
            if chat is None:
                return None
            updated_at = fields.get("updated_at") or utc_now()
            if updated_at < chat.updated_at:
                logger.info("Ignoring stale update for chat %s", chat_id)
                return replace(chat)
            chat = replace(chat, **{**fields, "updated_at": updated_at})
            self._chats[chat_id] = chat
            return replace(chat)

    def get_messages(self, chat_id: str) -> list[ChatEvent]:
        with self._lock:
            return list(self._events.get(chat_id, []))

    def add_message(self, chat_id: str, event: ChatEvent) -> None:
        with self._lock:
            if not event.id:
                event = replace(event, id=str(uuid.uuid4()))
            self._events.setdefault(chat_id, []).append(event)
            chat = self._chats.get(chat_id)
            if chat is not None and event.type == EVENT_MESSAGE:
                self._chats[chat_id] = replace(chat, message_count=chat.message_count + 1)


class PostgresChatRepository:
    """Chat store on PostgreSQL (psycopg connection with autocommit)."""

    def __init__(self, pg_conn=None):
        self._pg_conn = pg_conn
        self._setup_tables()

    def _setup_tables(self):
        if not self._pg_conn:
            return
        try:
            with self._pg_conn.cursor() as cur:
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS chats (
                        id TEXT PRIMARY KEY,
                        title TEXT NOT NULL DEFAULT '',
                        context_summary TEXT,
                        message_count INT NOT NULL DEFAULT 0,
                        last_rename_check_interchange INT NOT NULL DEFAULT 0,
                        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                """)
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS chat_events (
                        id TEXT PRIMARY KEY,
                        chat_id TEXT NOT NULL REFERENCES chats (id) ON DELETE CASCADE,
                        type TEXT NOT NULL,
                        role TEXT,
                        content TEXT NOT NULL DEFAULT '',
                        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                """)
                cur.execute("""
                    CREATE INDEX IF NOT EXISTS idx_chat_events_chat
                    ON chat_events (chat_id, created_at)
                """)
        except Exception as e:
            logger.warning("Failed to create chat tables: %s", e)

    @staticmethod
    def _row_to_chat(row) -> ChatMetadata:
        if isinstance(row, dict):
            return ChatMetadata(
                id=row["id"],
                title=row.get("title") or "",
                context_summary=row.get("context_summary"),
                message_count=row.get("message_count") or 0,
                last_rename_check_interchange=row.get("last_rename_check_interchange") or 0,
                updated_at=row["updated_at"],
            )
        return ChatMetadata(
            id=row[0],
            title=row[1] or "",
            context_summary=row[2],
            message_count=row[3] or 0,
            last_rename_check_interchange=row[4] or 0,
            updated_at=row[5],
        )

    @staticmethod
    def _row_to_event(row) -> ChatEvent:
        if isinstance(row, dict):
            return ChatEvent(
                id=row["id"],
                type=row["type"],
                role=row.get("role"),
                content=row.get("content") or "",
                created_at=row["created_at"],
            )
        return ChatEvent(
            id=row[0], type=row[1], role=row[2], content=row[3] or "", created_at=row[4]
        )

    def find_by_id(self, chat_id: str) -> Optional[ChatMetadata]:
        if not self._pg_conn:
            return None
        try:
            with self._pg_conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, title, context_summary, message_count,
                           last_rename_check_interchange, updated_at
                    FROM chats WHERE id = %s
                    """,
                    (chat_id,),
                )
                row = cur.fetchone()
                return self._row_to_chat(row) if row else None
        except Exception as e:
            logger.warning("Failed to load chat %s: %s", chat_id, e)
            return None

    def update(self, chat_id: str, fields: dict[str, Any]) -> Optional[ChatMetadata]:
        if not self._pg_conn:
            return None
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update chat fields: {sorted(unknown)}")

        values = {**fields, "updated_at": fields.get("updated_at") or utc_now()}
        assignments = ", ".join(f"{column} = %s" for column in values)
        params = [*values.values(), chat_id, values["updated_at"]]
        with self._pg_conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE chats SET {assignments}
                WHERE id = %s AND updated_at <= %s
                RETURNING id, title, context_summary, message_count,
                          last_rename_check_interchange, updated_at
                """,
                params,
            )
            row = cur.fetchone()
        if not row:
            logger.info("No update applied to chat %s (missing or stale write)", chat_id)
            return self.find_by_id(chat_id)
        return self._row_to_chat(row)

    def get_messages(self, chat_id: str) -> list[ChatEvent]:
        if not self._pg_conn:
            return []
        try:
            with self._pg_conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, type, role, content, created_at
                    FROM chat_events
                    WHERE chat_id = %s
                    ORDER BY created_at, id
                    """,
                    (chat_id,),
                )
                return [self._row_to_event(r) for r in cur.fetchall()]
        except Exception as e:
            logger.warning("Failed to load messages for chat %s: %s", chat_id, e)
            return []

    def add_message(self, chat_id: str, event: ChatEvent) -> None:
        if not self._pg_conn:
            return
        with self._pg_conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO chat_events (id, chat_id, type, role, content, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO NOTHING
                """,
                (
                    event.id or str(uuid.uuid4()),
                    chat_id,
                    event.type,
                    event.role,
                    event.content,
                    event.created_at,
                ),
            )
            if event.type == EVENT_MESSAGE:
                cur.execute(
                    "UPDATE chats SET message_count = message_count + 1 WHERE id = %s",
                    (chat_id,),
                )
