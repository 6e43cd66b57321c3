"""Networked PostgreSQL backend on an asyncpg connection pool."""

import asyncio
import logging
import os
import ssl
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import asyncpg

from euregs.database.adapter import BackendKind, DatabaseAdapter
from euregs.database.dialect import query_terms, tsquery_expression
from euregs.database.statement import RenderedStatement, Select, render_postgres
from euregs.errors import (
    BackendConnectionError,
    BackendError,
    BackendUnavailable,
    QueryFailed,
    QueryTimeout,
    SchemaError,
)
from euregs.models.regulation import ArticleHit, RecitalHit, SearchResult, SearchTarget
from euregs.models.responses import PoolStats

logger = logging.getLogger(__name__)

SCHEMA_SQLSTATES = {"42P01", "42703"}

_HEADLINE_OPTIONS = "StartSel=>>>, StopSel=<<<, MaxWords=32, MinWords=16"

_SEARCH_SQL = {
    SearchTarget.ARTICLES: f"""
        SELECT
            a.regulation,
            a.article_number,
            a.title,
            ts_headline('english', a.text, to_tsquery('english', $1), '{_HEADLINE_OPTIONS}') AS snippet,
            ts_rank(
                to_tsvector('english', COALESCE(a.title, '') || ' ' || a.text),
                to_tsquery('english', $1)
            ) AS score
        FROM articles a
        WHERE to_tsvector('english', COALESCE(a.title, '') || ' ' || a.text) @@ to_tsquery('english', $1){{filter}}
        ORDER BY score DESC
        LIMIT {{limit}}
    """,
    SearchTarget.RECITALS: f"""
        SELECT
            r.regulation,
            r.recital_number,
            ts_headline('english', r.text, to_tsquery('english', $1), '{_HEADLINE_OPTIONS}') AS snippet,
            ts_rank(to_tsvector('english', r.text), to_tsquery('english', $1)) AS score
        FROM recitals r
        WHERE to_tsvector('english', r.text) @@ to_tsquery('english', $1){{filter}}
        ORDER BY score DESC
        LIMIT {{limit}}
    """,
}

_SEARCH_FILTER = {
    SearchTarget.ARTICLES: "a.regulation",
    SearchTarget.RECITALS: "r.regulation",
}


def build_ssl_context(mode: str, root_cert: Optional[str] = None) -> Union[bool, ssl.SSLContext]:
    """Translate a transport-trust mode into what asyncpg expects for ``ssl``."""
    if mode == "disable":
        return False
    if mode == "require":
        return ssl.create_default_context()
    if mode == "verify-ca":
        if not root_cert:
            raise ValueError("database_ssl_root_cert is required for ssl mode verify-ca")
        if not os.path.isfile(root_cert):
            raise ValueError(f"Root certificate not found: {root_cert}")
        context = ssl.create_default_context(cafile=root_cert)
        context.check_hostname = False
        return context
    if mode == "insecure":
        logger.warning(
            "ssl mode 'insecure' is deprecated: the server certificate is not verified. "
            "Use 'verify-ca' with database_ssl_root_cert instead"
        )
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        return context
    raise ValueError(f"Unknown ssl mode: {mode}")


def classify_postgres_error(error: BaseException) -> BackendError:
    """Map a driver error onto the error taxonomy by SQLSTATE, never by message text."""
    message = str(error)
    sqlstate = getattr(error, "sqlstate", None) or ""
    if isinstance(error, (OSError, asyncpg.exceptions.ConnectionDoesNotExistError)) or sqlstate.startswith("08"):
        return BackendConnectionError("Connection to PostgreSQL failed", backend_message=message)
    if sqlstate in SCHEMA_SQLSTATES:
        return SchemaError("Referenced table or column does not exist", backend_message=message)
    return QueryFailed("PostgreSQL query failed", backend_message=message)


def _discard_outcome(task: "asyncio.Future") -> None:
    """Retrieve the result of an abandoned query so it is never reported as unhandled."""
    if not task.cancelled():
        task.exception()


class PostgresAdapter(DatabaseAdapter):
    """Adapter over a bounded asyncpg pool.

    Pool acquisition and query execution have separate timeouts, with
    acquisition strictly shorter. A query that misses its deadline is
    cancelled and its connection terminated before the pool sees it again.
    """

    kind = BackendKind.POSTGRES

    def __init__(
        self,
        dsn: Optional[str] = None,
        *,
        pool: Optional[Any] = None,
        min_size: int = 1,
        max_size: int = 10,
        idle_timeout: float = 30.0,
        acquire_timeout: float = 2.0,
        query_timeout: float = 10.0,
        ssl_mode: str = "require",
        ssl_root_cert: Optional[str] = None,
        application_name: str = "eu-regulations",
    ):
        if acquire_timeout >= query_timeout:
            raise ValueError("acquire_timeout must be shorter than query_timeout")
        if dsn is None and pool is None:
            raise ValueError("A DSN or an existing pool is required")
        self._dsn = dsn
        self._pool = pool
        self.min_size = min_size
        self.max_size = max_size
        self.idle_timeout = idle_timeout
        self.acquire_timeout = acquire_timeout
        self.query_timeout = query_timeout
        self.ssl_mode = ssl_mode
        self.ssl_root_cert = ssl_root_cert
        self.application_name = application_name

    @property
    def is_open(self) -> bool:
        return self._pool is not None

    async def connect(self) -> None:
        """Create the pool (unless one was injected) and test it with SELECT 1."""
        if self._pool is None:
            if not self._dsn:
                raise BackendUnavailable("PostgreSQL backend has been closed")
            ssl_option = build_ssl_context(self.ssl_mode, self.ssl_root_cert)
            try:
                self._pool = await asyncpg.create_pool(
                    self._dsn,
                    min_size=self.min_size,
                    max_size=self.max_size,
                    max_inactive_connection_lifetime=self.idle_timeout,
                    timeout=self.query_timeout,
                    ssl=ssl_option,
                    server_settings={
                        "application_name": self.application_name,
                        "timezone": "UTC",
                    },
                )
            except (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
                logger.error(f"Failed to create PostgreSQL pool: {type(e).__name__}")
                raise BackendUnavailable("PostgreSQL is unavailable", backend_message=str(e)) from e

        try:
            await self._fetch_rows("SELECT 1", ())
        except BackendError as e:
            logger.error(f"PostgreSQL connection test failed: {e.condition}")
            await self.close()
            raise BackendUnavailable("PostgreSQL is unavailable", backend_message=e.backend_message) from e
        logger.info(
            f"PostgreSQL pool ready (min={self.min_size}, max={self.max_size}, ssl={self.ssl_mode})"
        )

    async def close(self) -> None:
        pool, self._pool = self._pool, None
        if pool is not None:
            await pool.close()
            logger.info("PostgreSQL pool closed")

    def render(self, select: Select) -> RenderedStatement:
        return render_postgres(select)

    def prepare(self, sql: str, params: Tuple[Any, ...]) -> Tuple[str, Tuple[str, ...]]:
        return sql, ()

    async def _fetch_rows(self, sql: str, params: Tuple[Any, ...]) -> List[Dict[str, Any]]:
        pool = self._pool
        if pool is None:
            raise BackendUnavailable("PostgreSQL backend is not open")

        try:
            conn = await pool.acquire(timeout=self.acquire_timeout)
        except asyncio.TimeoutError as e:
            raise BackendConnectionError(
                f"No pooled connection available within {self.acquire_timeout}s"
            ) from e
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise classify_postgres_error(e) from e

        try:
            return await self._fetch_with_deadline(conn, sql, params)
        finally:
            await pool.release(conn)

    async def _fetch_with_deadline(self, conn, sql: str, params: Tuple[Any, ...]) -> List[Dict[str, Any]]:
        task = asyncio.ensure_future(conn.fetch(sql, *params))
        try:
            done, _ = await asyncio.wait({task}, timeout=self.query_timeout)
        except asyncio.CancelledError:
            self._abandon(task, conn)
            raise

        if not done:
            self._abandon(task, conn)
            raise QueryTimeout(f"Query exceeded {self.query_timeout}s deadline")

        try:
            records = task.result()
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise classify_postgres_error(e) from e
        return [dict(record) for record in records]

    @staticmethod
    def _abandon(task: "asyncio.Future", conn) -> None:
        task.cancel()
        task.add_done_callback(_discard_outcome)
        # The server may still be running the statement; never reuse this connection
        conn.terminate()

    def pool_stats(self) -> Optional[PoolStats]:
        pool = self._pool
        if pool is None:
            return None
        size = pool.get_size()
        idle = pool.get_idle_size()
        return PoolStats(
            size=size,
            idle=idle,
            in_use=size - idle,
            min_size=pool.get_min_size(),
            max_size=pool.get_max_size(),
        )

    async def search(
        self,
        target: SearchTarget,
        query: str,
        regulations: Optional[Sequence[str]] = None,
        limit: int = 10,
    ) -> List[SearchResult]:
        expression = tsquery_expression(query_terms(query))
        if not expression:
            return []

        params: List[Any] = [expression]
        regulation_filter = ""
        if regulations:
            marks = ", ".join(f"${i}" for i in range(2, len(regulations) + 2))
            regulation_filter = f" AND {_SEARCH_FILTER[target]} IN ({marks})"
            params.extend(regulations)
        params.append(limit)

        sql = _SEARCH_SQL[target].format(filter=regulation_filter, limit=f"${len(params)}")
        rows = await self._run(sql, tuple(params))

        hit_model = ArticleHit if target == SearchTarget.ARTICLES else RecitalHit
        return [
            SearchResult(
                item=hit_model.model_validate(row),
                snippet=row["snippet"] or "",
                score=float(row["score"]),
                relevance=float(row["score"]),
            )
            for row in rows
        ]
