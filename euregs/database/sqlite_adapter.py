"""Embedded SQLite + FTS5 backend."""

import asyncio
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from euregs.database.adapter import BackendKind, DatabaseAdapter
from euregs.database.dialect import fts5_match_expression, query_terms, translate_to_sqlite
from euregs.database.statement import RenderedStatement, Select, render_sqlite
from euregs.errors import (
    BackendError,
    BackendUnavailable,
    DialectUnsupported,
    QueryFailed,
    SchemaError,
)
from euregs.models.regulation import ArticleHit, RecitalHit, SearchResult, SearchTarget

logger = logging.getLogger(__name__)

_SEARCH_SQL = {
    SearchTarget.ARTICLES: """
        SELECT
            articles_fts.regulation AS regulation,
            articles_fts.article_number AS article_number,
            articles_fts.title AS title,
            snippet(articles_fts, 3, '>>>', '<<<', '...', 32) AS snippet,
            bm25(articles_fts) AS score
        FROM articles_fts
        WHERE articles_fts MATCH ?{filter}
        ORDER BY score
        LIMIT ?
    """,
    SearchTarget.RECITALS: """
        SELECT
            recitals_fts.regulation AS regulation,
            recitals_fts.recital_number AS recital_number,
            snippet(recitals_fts, 2, '>>>', '<<<', '...', 32) AS snippet,
            bm25(recitals_fts) AS score
        FROM recitals_fts
        WHERE recitals_fts MATCH ?{filter}
        ORDER BY score
        LIMIT ?
    """,
}

_SEARCH_FILTER = {
    SearchTarget.ARTICLES: "articles_fts.regulation",
    SearchTarget.RECITALS: "recitals_fts.regulation",
}


def classify_sqlite_error(error: sqlite3.Error) -> BackendError:
    message = str(error)
    lowered = message.lower()
    if "no such table" in lowered or "no such column" in lowered:
        return SchemaError("Referenced table or column does not exist", backend_message=message)
    return QueryFailed("SQLite query failed", backend_message=message)


class SqliteAdapter(DatabaseAdapter):
    """Read-only adapter over a single SQLite file.

    One connection is shared and serialised by a lock; queries run in a
    worker thread so the event loop is never blocked.
    """

    kind = BackendKind.SQLITE

    def __init__(self, path: str):
        self.path = Path(path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    async def connect(self) -> None:
        if self._conn is not None:
            return
        if not self.path.is_file():
            raise BackendUnavailable(f"SQLite database not found: {self.path}")
        uri = f"{self.path.resolve().as_uri()}?mode=ro"
        try:
            conn = sqlite3.connect(uri, uri=True, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("SELECT 1").fetchone()
        except sqlite3.Error as e:
            logger.error(f"Failed to open SQLite database {self.path}: {e}")
            raise BackendUnavailable(f"SQLite database cannot be opened: {self.path}") from e
        self._conn = conn
        logger.info(f"SQLite database opened read-only: {self.path}")

    async def close(self) -> None:
        with self._lock:
            conn, self._conn = self._conn, None
        if conn is not None:
            conn.close()
            logger.info("SQLite database closed")

    def render(self, select: Select) -> RenderedStatement:
        return render_sqlite(select)

    def prepare(self, sql: str, params: Tuple[Any, ...]) -> Tuple[str, Tuple[str, ...]]:
        translation = translate_to_sqlite(sql)
        if translation.placeholder_count != len(params):
            raise DialectUnsupported(
                f"Statement has {translation.placeholder_count} placeholder(s) "
                f"but {len(params)} parameter(s) were given"
            )
        return translation.sql, translation.distinct_on

    def _query(self, sql: str, params: Tuple[Any, ...]) -> List[Dict[str, Any]]:
        with self._lock:
            if self._conn is None:
                raise BackendUnavailable("SQLite database is closed")
            try:
                cursor = self._conn.execute(sql, params)
                return [dict(row) for row in cursor.fetchall()]
            except sqlite3.Error as e:
                raise classify_sqlite_error(e) from e

    async def _fetch_rows(self, sql: str, params: Tuple[Any, ...]) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._query, sql, params)

    async def search(
        self,
        target: SearchTarget,
        query: str,
        regulations: Optional[Sequence[str]] = None,
        limit: int = 10,
    ) -> List[SearchResult]:
        expression = fts5_match_expression(query_terms(query))
        if not expression:
            return []

        params: List[Any] = [expression]
        regulation_filter = ""
        if regulations:
            marks = ", ".join("?" for _ in regulations)
            regulation_filter = f" AND {_SEARCH_FILTER[target]} IN ({marks})"
            params.extend(regulations)
        params.append(limit)

        sql = _SEARCH_SQL[target].format(filter=regulation_filter)
        rows = await self._run(sql, tuple(params))

        hit_model = ArticleHit if target == SearchTarget.ARTICLES else RecitalHit
        results = []
        for row in rows:
            score = float(row["score"])
            results.append(SearchResult(
                item=hit_model.model_validate(row),
                snippet=row["snippet"] or "",
                score=score,
                relevance=-score,
            ))
        return results
