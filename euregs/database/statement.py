"""A small SELECT representation with one renderer per backend.

Services describe queries as ``Select`` values instead of SQL strings. Each
adapter renders them for its own engine, so no text rewriting is needed on
the hot path. Placeholders are numbered in the order they appear in the
rendered text, which keeps the PostgreSQL rendering translatable.
"""

from dataclasses import dataclass, field
from typing import Any, Iterable, List, NamedTuple, Optional, Sequence, Tuple, Type, Union

from pydantic import BaseModel

POSTGRES = "postgres"
SQLITE = "sqlite"

CAST_TYPES = ("TEXT", "INTEGER", "REAL", "NUMERIC")


@dataclass(frozen=True)
class Cast:
    expr: str
    type_name: str
    alias: Optional[str] = None

    def __post_init__(self):
        if self.type_name not in CAST_TYPES:
            raise ValueError(f"Unsupported cast type {self.type_name}")


Column = Union[str, Cast]


@dataclass(frozen=True)
class Eq:
    column: str
    value: Any


@dataclass(frozen=True)
class ILike:
    """Case-insensitive pattern match (``%`` and ``_`` wildcards)."""
    column: str
    pattern: str


@dataclass(frozen=True)
class In:
    column: str
    values: Tuple[Any, ...]


@dataclass(frozen=True)
class IsNull:
    column: str
    negate: bool = False


@dataclass(frozen=True)
class AnyOf:
    conditions: Tuple["Condition", ...]


@dataclass(frozen=True)
class AllOf:
    conditions: Tuple["Condition", ...]


Condition = Union[Eq, ILike, In, IsNull, AnyOf, AllOf]


@dataclass(frozen=True)
class Join:
    table: str
    alias: Optional[str]
    on: Tuple[Tuple[str, str], ...]
    kind: str = "INNER"


@dataclass(frozen=True)
class OrderBy:
    expr: str
    descending: bool = False


@dataclass(frozen=True)
class RankBy:
    """Order by position of ``column`` in ``values``; unknown values sort last."""
    column: str
    values: Tuple[Any, ...]


@dataclass(frozen=True)
class NullsLast:
    column: str


Ordering = Union[OrderBy, RankBy, NullsLast]


@dataclass(frozen=True)
class Select:
    table: str
    columns: Tuple[Column, ...]
    alias: Optional[str] = None
    joins: Tuple[Join, ...] = ()
    where: Tuple[Condition, ...] = ()
    group_by: Tuple[str, ...] = ()
    order_by: Tuple[Ordering, ...] = ()
    limit: Optional[int] = None
    distinct_on: Tuple[str, ...] = ()
    row_model: Optional[Type[BaseModel]] = field(default=None, compare=False)


class RenderedStatement(NamedTuple):
    """Engine SQL plus what the caller must still apply to the rows.

    When DISTINCT ON could not be rendered, ``distinct_on`` names the key
    columns and ``limit`` (if any) must be applied after de-duplication.
    """
    sql: str
    params: Tuple[Any, ...]
    distinct_on: Tuple[str, ...]
    limit: Optional[int] = None


class _Renderer:
    def __init__(self, dialect: str):
        self.dialect = dialect
        self.params: List[Any] = []

    def bind(self, value: Any) -> str:
        self.params.append(value)
        if self.dialect == POSTGRES:
            return f"${len(self.params)}"
        return "?"

    def column(self, col: Column) -> str:
        if isinstance(col, Cast):
            if self.dialect == POSTGRES:
                text = f"{col.expr}::{col.type_name}"
            else:
                text = f"CAST({col.expr} AS {col.type_name})"
            return f"{text} AS {col.alias}" if col.alias else text
        return col

    def condition(self, cond: Condition) -> str:
        if isinstance(cond, Eq):
            return f"{cond.column} = {self.bind(cond.value)}"
        if isinstance(cond, ILike):
            op = "ILIKE" if self.dialect == POSTGRES else "LIKE"
            return f"{cond.column} {op} {self.bind(cond.pattern)}"
        if isinstance(cond, In):
            if not cond.values:
                return "1 = 0"
            marks = ", ".join(self.bind(v) for v in cond.values)
            return f"{cond.column} IN ({marks})"
        if isinstance(cond, IsNull):
            return f"{cond.column} IS NOT NULL" if cond.negate else f"{cond.column} IS NULL"
        if isinstance(cond, AnyOf):
            return "(" + " OR ".join(self.condition(c) for c in cond.conditions) + ")"
        if isinstance(cond, AllOf):
            return "(" + " AND ".join(self.condition(c) for c in cond.conditions) + ")"
        raise TypeError(f"Unknown condition {cond!r}")

    def ordering(self, order: Ordering) -> str:
        if isinstance(order, OrderBy):
            return f"{order.expr} DESC" if order.descending else order.expr
        if isinstance(order, RankBy):
            whens = " ".join(
                f"WHEN {self.bind(v)} THEN {i}" for i, v in enumerate(order.values)
            )
            return f"CASE {order.column} {whens} ELSE {len(order.values)} END"
        if isinstance(order, NullsLast):
            return f"CASE WHEN {order.column} IS NULL THEN 1 ELSE 0 END"
        raise TypeError(f"Unknown ordering {order!r}")

    def render(self, select: Select) -> RenderedStatement:
        parts = ["SELECT"]
        if select.distinct_on and self.dialect == POSTGRES:
            parts.append(f"DISTINCT ON ({', '.join(select.distinct_on)})")
        parts.append(", ".join(self.column(c) for c in select.columns))
        parts.append(f"FROM {select.table}" + (f" {select.alias}" if select.alias else ""))
        for join in select.joins:
            target = join.table + (f" {join.alias}" if join.alias else "")
            on = " AND ".join(f"{left} = {right}" for left, right in join.on)
            parts.append(f"{join.kind} JOIN {target} ON {on}")
        if select.where:
            parts.append("WHERE " + " AND ".join(self.condition(c) for c in select.where))
        if select.group_by:
            parts.append("GROUP BY " + ", ".join(select.group_by))
        if select.order_by:
            parts.append("ORDER BY " + ", ".join(self.ordering(o) for o in select.order_by))
        deferred_limit = None
        if select.limit is not None:
            if select.distinct_on and self.dialect != POSTGRES:
                # Limiting before de-duplication would drop distinct keys
                deferred_limit = int(select.limit)
            else:
                parts.append(f"LIMIT {self.bind(int(select.limit))}")
        return RenderedStatement(
            " ".join(parts), tuple(self.params), tuple(select.distinct_on), deferred_limit
        )


def render_postgres(select: Select) -> RenderedStatement:
    """Render in the common (PostgreSQL) dialect."""
    return _Renderer(POSTGRES).render(select)


def render_sqlite(select: Select) -> RenderedStatement:
    """Render natively for SQLite; DISTINCT ON is left to ``dedupe_leading``."""
    return _Renderer(SQLITE).render(select)


def _key(row: Any, columns: Sequence[str]) -> Tuple[Any, ...]:
    if isinstance(row, dict):
        return tuple(row.get(c) for c in columns)
    return tuple(getattr(row, c) for c in columns)


def dedupe_leading(
    rows: Iterable[Any], columns: Sequence[str], limit: Optional[int] = None
) -> List[Any]:
    """Keep the first row for each distinct value of ``columns``, as DISTINCT ON does.

    ``limit`` caps the de-duplicated rows, matching LIMIT applied after DISTINCT ON.
    """
    if not columns:
        rows = list(rows)
        return rows if limit is None else rows[:limit]
    seen = set()
    kept = []
    for row in rows:
        key = _key(row, columns)
        if key in seen:
            continue
        seen.add(key)
        kept.append(row)
        if limit is not None and len(kept) >= limit:
            break
    return kept
