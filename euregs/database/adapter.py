"""Storage adapter contract shared by the SQLite and PostgreSQL backends."""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type, Union

import pydantic
from pydantic import BaseModel

from euregs.database.dialect import validate_statement
from euregs.database.statement import RenderedStatement, Select
from euregs.errors import BackendError, BackendUnavailable, SchemaError
from euregs.models.regulation import SearchResult, SearchTarget
from euregs.models.responses import PoolStats

logger = logging.getLogger(__name__)

MAX_LOGGED_SQL = 200


class BackendKind(str, Enum):
    SQLITE = "sqlite"
    POSTGRES = "postgres"


class QueryResult(BaseModel):
    """Rows returned by ``execute``; typed when a row model was supplied.

    ``distinct_on`` and ``limit`` are left for ``dedupe_leading`` when the
    engine could not apply them.
    """
    rows: List[Any]
    row_count: int
    distinct_on: Tuple[str, ...] = ()
    limit: Optional[int] = None


def redact_params(params: Sequence[Any]) -> List[str]:
    """Describe parameters for logs without leaking their contents."""
    described = []
    for value in params:
        if isinstance(value, str):
            described.append(f"<str len={len(value)}>")
        elif value is None or isinstance(value, (bool, int, float)):
            described.append(repr(value))
        else:
            described.append(f"<{type(value).__name__}>")
    return described


def truncate_sql(sql: str) -> str:
    flat = " ".join(sql.split())
    if len(flat) > MAX_LOGGED_SQL:
        return flat[:MAX_LOGGED_SQL] + "..."
    return flat


class DatabaseAdapter(ABC):
    """Query a regulations store without knowing which engine backs it.

    Subclasses implement ``connect``, ``close``, ``render``, ``prepare``,
    ``_fetch_rows`` and ``search``. Everything else, including row decoding
    and fault logging, lives here.
    """

    kind: BackendKind

    @abstractmethod
    async def connect(self) -> None:
        """Open the backend; raises ``BackendUnavailable`` when it cannot."""

    @abstractmethod
    async def close(self) -> None:
        """Release the backend. Calling it twice, or before connect, is safe."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...

    @abstractmethod
    def render(self, select: Select) -> RenderedStatement:
        ...

    @abstractmethod
    def prepare(self, sql: str, params: Tuple[Any, ...]) -> Tuple[str, Tuple[str, ...]]:
        """Turn common-dialect text into engine SQL plus dropped DISTINCT ON columns."""

    @abstractmethod
    async def _fetch_rows(self, sql: str, params: Tuple[Any, ...]) -> List[Dict[str, Any]]:
        """Run engine SQL and return plain dict rows, raising ``BackendError`` subclasses."""

    @abstractmethod
    async def search(
        self,
        target: SearchTarget,
        query: str,
        regulations: Optional[Sequence[str]] = None,
        limit: int = 10,
    ) -> List[SearchResult]:
        """Full-text search, most relevant first, relevance normalised to higher-is-better."""

    async def execute(
        self,
        statement: Union[Select, str],
        parameters: Sequence[Any] = (),
        *,
        row_model: Optional[Type[BaseModel]] = None,
    ) -> QueryResult:
        """Run a ``Select`` or a common-dialect statement and decode its rows."""
        if isinstance(statement, Select):
            rendered = self.render(statement)
            sql, params, distinct_on = rendered.sql, rendered.params, rendered.distinct_on
            limit = rendered.limit
            row_model = row_model or statement.row_model
        else:
            params = tuple(parameters)
            limit = None
            sql, distinct_on = self.prepare(validate_statement(statement), params)

        rows = await self._run(sql, params)

        if row_model is not None:
            rows = self._decode(rows, row_model, sql)
        return QueryResult(rows=rows, row_count=len(rows), distinct_on=distinct_on, limit=limit)

    async def _run(self, sql: str, params: Tuple[Any, ...]) -> List[Dict[str, Any]]:
        if not self.is_open:
            raise BackendUnavailable(f"{self.kind.value} backend is not open")
        try:
            return await self._fetch_rows(sql, params)
        except BackendError as e:
            logger.error(
                f"{self.kind.value} query failed [{e.condition}]: {truncate_sql(sql)} "
                f"params={redact_params(params)} error={e.backend_message or e.message}"
            )
            raise

    def _decode(self, rows: List[Dict[str, Any]], row_model: Type[BaseModel], sql: str) -> List[Any]:
        try:
            return [row_model.model_validate(row) for row in rows]
        except pydantic.ValidationError as e:
            logger.error(
                f"Rows from {truncate_sql(sql)} do not match {row_model.__name__}: "
                f"{e.error_count()} error(s)"
            )
            raise SchemaError(
                f"Stored rows do not match {row_model.__name__}", backend_message=str(e)
            ) from e

    async def ping(self) -> bool:
        """Round-trip a trivial query; never raises."""
        if not self.is_open:
            return False
        try:
            await self._fetch_rows("SELECT 1", ())
            return True
        except BackendError as e:
            logger.warning(f"{self.kind.value} health check failed: {e.condition}")
            return False

    def pool_stats(self) -> Optional[PoolStats]:
        return None

    async def __aenter__(self) -> "DatabaseAdapter":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
