"""Full-text note search over the FTS5 mirror, with a LIKE fallback."""
import logging
import re
import sqlite3
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import OperationalError as SQLAlchemyOperationalError
from sqlalchemy.exc import SQLAlchemyError

from notegraph.exceptions import ErrorCode, SearchError
from notegraph.models.schema import NoteLookupResult
from notegraph.storage.index_store import IndexStore, StoreConnection
from notegraph.utils import escape_like_pattern

logger = logging.getLogger(__name__)

# Characters that make a raw query unsafe to hand to MATCH
_FTS_UNSAFE = re.compile(r"""[()@"'\-:^{}\[\]]""")


class FtsIndex:
    """Search notes by text, ranked by FTS5 ``bm25``.

    An empty query lists notes by most recent update. Queries that cannot
    be expressed safely in FTS5 syntax, or that FTS5 rejects, fall back to
    a LIKE scan of title and content.
    """

    def __init__(self, store: IndexStore) -> None:
        self.store = store

    def search(
        self,
        query: Optional[str],
        note_type: Optional[str] = None,
        limit: int = 10,
        conn: Optional[StoreConnection] = None,
    ) -> List[NoteLookupResult]:
        safe_query = (query or "").strip()
        with self.store.connection_scope(conn, read_only=True) as c:
            if not safe_query:
                return self._list_recent(c, note_type, limit)

            fts_query = self.to_fts_query(safe_query)
            if fts_query is None:
                return self._fallback_text_search(c, safe_query, note_type, limit)

            sql = (
                "SELECT n.id, n.title, n.type, n.filename "
                "FROM notes_fts JOIN notes n ON n.id = notes_fts.id "
                "WHERE notes_fts MATCH :query"
            )
            params: Dict[str, Any] = {"query": fts_query, "limit": limit}
            if note_type:
                sql += " AND n.type = :type"
                params["type"] = note_type
            sql += " ORDER BY bm25(notes_fts) LIMIT :limit"

            try:
                with c.savepoint():
                    rows = c.all(sql, params)
            except (sqlite3.OperationalError, SQLAlchemyOperationalError) as e:
                logger.warning(
                    f"FTS5 query failed for '{safe_query}': {e}. Using fallback search."
                )
                return self._fallback_text_search(c, safe_query, note_type, limit)
            return [self._row_to_result(row) for row in rows]

    @staticmethod
    def to_fts_query(query: str) -> Optional[str]:
        """Translate user text into a MATCH expression.

        Returns None when the text contains FTS5 syntax characters. Terms of
        three or more characters get a trailing ``*`` for prefix matching.
        """
        trimmed = query.strip()
        if not trimmed or _FTS_UNSAFE.search(trimmed):
            return None
        if not trimmed.endswith("*") and len(trimmed) >= 3:
            return f"{trimmed}*"
        return trimmed

    def _list_recent(
        self, conn: StoreConnection, note_type: Optional[str], limit: int
    ) -> List[NoteLookupResult]:
        sql = "SELECT id, title, type, filename FROM notes"
        params: Dict[str, Any] = {"limit": limit}
        if note_type:
            sql += " WHERE type = :type"
            params["type"] = note_type
        sql += " ORDER BY updated DESC, id LIMIT :limit"
        return [self._row_to_result(row) for row in conn.all(sql, params)]

    def _fallback_text_search(
        self,
        conn: StoreConnection,
        query: str,
        note_type: Optional[str],
        limit: int,
    ) -> List[NoteLookupResult]:
        """LIKE-based search used when FTS5 cannot take the query."""
        term = f"%{escape_like_pattern(query)}%"
        sql = (
            "SELECT id, title, type, filename FROM notes "
            "WHERE (title LIKE :term ESCAPE '\\' OR content LIKE :term ESCAPE '\\')"
        )
        params: Dict[str, Any] = {"term": term, "limit": limit}
        if note_type:
            sql += " AND type = :type"
            params["type"] = note_type
        sql += " ORDER BY updated DESC, id LIMIT :limit"
        try:
            rows = conn.all(sql, params)
        except SQLAlchemyError as e:
            raise SearchError(
                f"Fallback text search failed: {e}",
                query=query,
                code=ErrorCode.SEARCH_FAILED,
            ) from e
        logger.debug(f"Fallback search returned {len(rows)} results for '{query}'")
        return [self._row_to_result(row) for row in rows]

    @staticmethod
    def _row_to_result(row) -> NoteLookupResult:
        return NoteLookupResult(
            id=row["id"],
            title=row["title"],
            note_type=row["type"],
            filename=row["filename"],
        )
