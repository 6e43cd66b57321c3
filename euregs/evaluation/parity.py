"""Check that both backends return the same rows for the same statements.

Two checks are available:
- translation parity: on one SQLite adapter, the natively rendered statement
  and the translated common-dialect rendering must agree;
- backend parity: a SQLite and a PostgreSQL adapter loaded with the same
  data must agree.

Row sets are compared as multisets after DISTINCT ON compensation, so
ordering and relevance scores are deliberately ignored.
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Sequence, Tuple

from euregs.config.settings import settings, use_postgres
from euregs.database.adapter import DatabaseAdapter
from euregs.database.connection import create_adapter
from euregs.database.sqlite_adapter import SqliteAdapter
from euregs.database.statement import (
    AnyOf,
    Cast,
    Eq,
    ILike,
    In,
    IsNull,
    Join,
    NullsLast,
    OrderBy,
    RankBy,
    Select,
    dedupe_leading,
    render_postgres,
)

logger = logging.getLogger(__name__)


@dataclass
class ParityCase:
    name: str
    select: Select
    # DISTINCT ON with LIMIT only renders natively; its text form is rejected
    translatable: bool = True


@dataclass
class ParityResult:
    """Outcome of one case."""
    name: str
    left_rows: int
    right_rows: int
    only_left: List[Tuple] = field(default_factory=list)
    only_right: List[Tuple] = field(default_factory=list)

    @property
    def matched(self) -> bool:
        return not self.only_left and not self.only_right


@dataclass
class ParityReport:
    left: str
    right: str
    results: List[ParityResult]

    @property
    def passed(self) -> bool:
        return all(r.matched for r in self.results)


def default_cases() -> List[ParityCase]:
    """Statement shapes the service layer relies on."""
    return [
        ParityCase("regulation_by_id", Select(
            table="regulations",
            columns=("id", "full_name", "celex_id"),
            where=(Eq("id", "GDPR"),),
        )),
        ParityCase("article_counts", Select(
            table="regulations",
            alias="r",
            columns=("r.id AS id", "COUNT(a.regulation) AS article_count"),
            joins=(Join("articles", "a", (("a.regulation", "r.id"),), kind="LEFT"),),
            group_by=("r.id",),
        )),
        ParityCase("articles_in_list", Select(
            table="articles",
            columns=("regulation", "article_number", "title"),
            where=(Eq("regulation", "GDPR"), In("article_number", ("5", "32", "33"))),
        )),
        ParityCase("definitions_ilike_join", Select(
            table="definitions",
            alias="d",
            columns=("d.regulation AS regulation", "d.term AS term", "a.title AS article_title"),
            joins=(Join("articles", "a", (
                ("a.regulation", "d.regulation"),
                ("a.article_number", "d.article"),
            )),),
            where=(ILike("d.term", "%DATA%"),),
        )),
        ParityCase("recital_number_cast", Select(
            table="recitals",
            columns=("regulation", Cast("recital_number", "TEXT", "article")),
            where=(Eq("regulation", "GDPR"),),
        )),
        ParityCase("applicability_distinct_on", Select(
            table="applicability_rules",
            columns=("regulation", "confidence", "subsector"),
            where=(Eq("sector", "financial"), AnyOf((IsNull("subsector"), Eq("subsector", "bank")))),
            order_by=(
                OrderBy("regulation"),
                RankBy("confidence", ("definite", "likely", "possible")),
                NullsLast("subsector"),
            ),
            distinct_on=("regulation",),
        )),
        ParityCase("applicability_distinct_on_limited", Select(
            table="applicability_rules",
            columns=("regulation", "subsector"),
            where=(Eq("sector", "financial"),),
            order_by=(OrderBy("regulation"), NullsLast("subsector")),
            distinct_on=("regulation",),
            limit=2,
        ), translatable=False),
        ParityCase("limited_ordering", Select(
            table="articles",
            columns=("regulation", "article_number"),
            order_by=(OrderBy("regulation"), OrderBy("article_number")),
            limit=3,
        )),
    ]


def _normalise(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return value


def _row_key(row: Any) -> Tuple:
    data: Dict[str, Any] = row if isinstance(row, dict) else row.model_dump()
    return tuple(sorted((k, _normalise(v)) for k, v in data.items()))


def diff_rows(name: str, left: Sequence[Any], right: Sequence[Any]) -> ParityResult:
    left_counts = Counter(_row_key(r) for r in left)
    right_counts = Counter(_row_key(r) for r in right)
    return ParityResult(
        name=name,
        left_rows=len(left),
        right_rows=len(right),
        only_left=list((left_counts - right_counts).elements()),
        only_right=list((right_counts - left_counts).elements()),
    )


async def _rows(adapter: DatabaseAdapter, statement, params=()) -> List[Any]:
    result = await adapter.execute(statement, params)
    return dedupe_leading(result.rows, result.distinct_on, result.limit)


async def check_translation(adapter: SqliteAdapter, cases: Sequence[ParityCase]) -> ParityReport:
    """Native SQLite rendering versus the translated common-dialect rendering."""
    results = []
    for case in cases:
        if not case.translatable:
            logger.info(f"Skipping {case.name}: no common-dialect text form")
            continue
        rendered = render_postgres(case.select)
        native = await _rows(adapter, case.select)
        translated = await _rows(adapter, rendered.sql, rendered.params)
        results.append(diff_rows(case.name, native, translated))
    return ParityReport(left="sqlite-native", right="sqlite-translated", results=results)


async def check_backends(
    left: DatabaseAdapter, right: DatabaseAdapter, cases: Sequence[ParityCase]
) -> ParityReport:
    """The same statements against two different adapters."""
    results = []
    for case in cases:
        left_rows, right_rows = await asyncio.gather(
            _rows(left, case.select), _rows(right, case.select)
        )
        results.append(diff_rows(case.name, left_rows, right_rows))
    return ParityReport(left=left.kind.value, right=right.kind.value, results=results)


def generate_report(report: ParityReport) -> str:
    lines = [f"Parity {report.left} vs {report.right}: {'PASS' if report.passed else 'FAIL'}"]
    for r in report.results:
        status = "ok" if r.matched else "MISMATCH"
        lines.append(f"  {r.name:<28} {status:<9} {r.left_rows:>5} / {r.right_rows:<5}")
        for row in r.only_left[:5]:
            lines.append(f"      only {report.left}: {dict(row)}")
        for row in r.only_right[:5]:
            lines.append(f"      only {report.right}: {dict(row)}")
    return "\n".join(lines)


async def run_parity() -> List[ParityReport]:
    cases = default_cases()
    reports = []
    async with SqliteAdapter(settings.sqlite_db_path) as sqlite_adapter:
        reports.append(await check_translation(sqlite_adapter, cases))
        if use_postgres():
            async with create_adapter() as postgres_adapter:
                reports.append(await check_backends(sqlite_adapter, postgres_adapter, cases))
        else:
            logger.info("DATABASE_URL not set; skipping cross-backend parity")
    return reports


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")

    reports = asyncio.run(run_parity())
    for report in reports:
        print(generate_report(report))
        print()

    raise SystemExit(0 if all(r.passed for r in reports) else 1)
