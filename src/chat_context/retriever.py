"""
Vector-based memory search using pgvector.

Character memories are stored with an importance score and an embedding of
their summary. Search embeds the query and ranks by cosine similarity,
falling back to ILIKE keyword search when embeddings are unavailable.
Results are ``ScoredMemory`` candidates for the context assembler.
"""

import hashlib
import logging
from typing import Optional

from .models import ScoredMemory

logger = logging.getLogger(__name__)

# Score given to keyword matches, which carry no similarity
KEYWORD_MATCH_SCORE = 0.5


class PgVectorMemorySearch:
    """
    Stores and searches character memories in PostgreSQL.

    Uses a LangChain embedding model for semantic search.
    """

    def __init__(
        self,
        pg_conn=None,
        embedding_model=None,
        embedding_dimensions: int = 0,
    ):
        self._pg_conn = pg_conn
        self._embedding_model = embedding_model
        self._embedding_dimensions = embedding_dimensions
        self._table_ready = False
        self._setup_table()

    def _setup_table(self):
        """Create the character_memories table with the pgvector extension."""
        if not self._pg_conn:
            return
        try:
            with self._pg_conn.cursor() as cur:
                cur.execute("CREATE EXTENSION IF NOT EXISTS vector")

                dim = self._embedding_dimensions or self._detect_dimensions()

                cur.execute(f"""
                    CREATE TABLE IF NOT EXISTS character_memories (
                        id TEXT PRIMARY KEY,
                        character_id TEXT NOT NULL,
                        user_id TEXT,
                        summary TEXT NOT NULL,
                        content TEXT NOT NULL DEFAULT '',
                        importance REAL NOT NULL DEFAULT 0.5,
                        embedding vector({dim}),
                        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                """)
                cur.execute("""
                    CREATE INDEX IF NOT EXISTS idx_character_memories_character
                    ON character_memories (character_id, user_id)
                """)
                self._table_ready = True
        except Exception as e:
            logger.warning("Failed to setup character_memories table: %s", e)

    def _detect_dimensions(self) -> int:
        """Detect embedding dimensions by doing a test embed."""
        if self._embedding_model:
            try:
                dim = len(self._embedding_model.embed_query("test"))
                self._embedding_dimensions = dim
                return dim
            except Exception as e:
                logger.warning("Embedding dimension probe failed: %s", e)
        return 1536

    def _embed(self, text: str) -> Optional[list[float]]:
        if not self._embedding_model:
            return None
        try:
            return self._embedding_model.embed_query(text)
        except Exception as e:
            logger.warning("Embedding failed: %s", e)
            return None

    @staticmethod
    def _make_id(character_id: str, summary: str) -> str:
        """Deterministic ID for deduplication."""
        h = hashlib.sha256(f"{character_id}:{summary[:200]}".encode()).hexdigest()[:16]
        return f"mem-{h}"

    def store_memory(
        self,
        character_id: str,
        summary: str,
        importance: float = 0.5,
        content: str = "",
        user_id: Optional[str] = None,
    ) -> Optional[str]:
        """Store one memory; returns its id, or None when not stored."""
        if not self._pg_conn or not self._table_ready:
            return None

        memory_id = self._make_id(character_id, summary)
        embedding = self._embed(summary)
        importance = min(max(importance, 0.0), 1.0)
        try:
            with self._pg_conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO character_memories
                        (id, character_id, user_id, summary, content, importance, embedding)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO NOTHING
                    """,
                    (memory_id, character_id, user_id, summary, content, importance, embedding),
                )
            return memory_id
        except Exception as e:
            logger.warning("Failed to store memory for character %s: %s", character_id, e)
            return None

    def search_memories(
        self,
        character_id: str,
        query: str,
        *,
        user_id: Optional[str] = None,
        limit: int = 20,
        min_importance: float = 0.0,
    ) -> list[ScoredMemory]:
        """Memories of a character most relevant to ``query``."""
        if not self._pg_conn or not self._table_ready:
            return []

        embedding = self._embed(query)
        if embedding:
            return self._vector_search(character_id, embedding, user_id, limit, min_importance)
        return self._keyword_search(character_id, query, user_id, limit, min_importance)

    def _vector_search(
        self,
        character_id: str,
        embedding: list[float],
        user_id: Optional[str],
        limit: int,
        min_importance: float,
    ) -> list[ScoredMemory]:
        try:
            with self._pg_conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT summary, importance,
                           1 - (embedding <=> %s::vector) AS score
                    FROM character_memories
                    WHERE character_id = %s
                      AND (%s::text IS NULL OR user_id = %s)
                      AND importance >= %s
                      AND embedding IS NOT NULL
                    ORDER BY embedding <=> %s::vector
                    LIMIT %s
                    """,
                    (embedding, character_id, user_id, user_id, min_importance, embedding, limit),
                )
                return self._rows_to_results(cur.fetchall())
        except Exception as e:
            logger.warning("Vector search failed: %s", e)
            return []

    def _keyword_search(
        self,
        character_id: str,
        query: str,
        user_id: Optional[str],
        limit: int,
        min_importance: float,
    ) -> list[ScoredMemory]:
        """Fallback: keyword-based search using PostgreSQL ILIKE."""
        words = query.strip().split()
        if not words:
            return []
        try:
            conditions = " OR ".join("summary ILIKE '%%' || %s || '%%'" for _ in words)
            sql = f"""
                SELECT summary, importance FROM character_memories
                WHERE character_id = %s
                  AND (%s::text IS NULL OR user_id = %s)
                  AND importance >= %s
                  AND ({conditions})
                ORDER BY importance DESC, created_at DESC
                LIMIT %s
            """
            params = [character_id, user_id, user_id, min_importance, *words, limit]
            with self._pg_conn.cursor() as cur:
                cur.execute(sql, params)
                return self._rows_to_results(cur.fetchall(), default_score=KEYWORD_MATCH_SCORE)
        except Exception as e:
            logger.warning("Keyword search failed: %s", e)
            return []

    @staticmethod
    def _rows_to_results(rows, default_score: Optional[float] = None) -> list[ScoredMemory]:
        results = []
        for row in rows:
            if isinstance(row, dict):
                summary = row["summary"]
                importance = row.get("importance", 0)
                score = row.get("score", default_score)
            else:
                summary = row[0]
                importance = row[1] if len(row) > 1 else 0
                score = row[2] if len(row) > 2 else default_score
            results.append(ScoredMemory(
                summary=summary,
                importance=float(importance or 0),
                score=float(score or 0),
            ))
        return results

    def delete_character(self, character_id: str):
        """Delete all memories of a character."""
        if not self._pg_conn:
            return
        try:
            with self._pg_conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM character_memories WHERE character_id = %s",
                    (character_id,),
                )
        except Exception as e:
            logger.warning("Failed to delete memories for character %s: %s", character_id, e)
