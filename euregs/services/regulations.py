"""Business operations over the regulations store.

Every operation validates its input before touching storage and talks to
the backend only through the ``DatabaseAdapter`` contract.
"""

import asyncio
import functools
import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

from euregs.database.adapter import DatabaseAdapter
from euregs.database.statement import (
    AnyOf,
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
)
from euregs.errors import BackendError, NotFound, SchemaError, ValidationError
from euregs.framework.controls import get_framework, parse_evidence_type, parse_sector, VALID_EVIDENCE_TYPES, VALID_FRAMEWORKS, VALID_SECTORS
from euregs.models.regulation import (
    ApplicabilityRule,
    Article,
    ArticleHeading,
    ArticleText,
    Confidence,
    ControlMapping,
    CountRow,
    Definition,
    EvidenceRequirement,
    Recital,
    Regulation,
    RegulationSummary,
    SearchTarget,
)
from euregs.models.responses import (
    ApplicabilityResult,
    ArticleDetail,
    Chapter,
    CompareResult,
    ControlGroup,
    ControlMappingResult,
    DefinitionsResult,
    EntityProfile,
    EvidenceResult,
    HealthStatus,
    RegulationComparison,
    RegulationInfo,
    RegulationList,
    SearchHit,
    SearchResponse,
    Statistics,
)

logger = logging.getLogger(__name__)

MAX_ARTICLE_CHARS = 50_000
MAX_RECITAL_NUMBER = 10_000
MAX_FILTER_REGULATIONS = 20
MAX_QUERY_CHARS = 1_000
RELEVANCE_TIE = 0.01
COMPARE_HITS_PER_REGULATION = 5

REQUIRED_TABLES = (
    "regulations",
    "articles",
    "recitals",
    "definitions",
    "control_mappings",
    "applicability_rules",
)
OPTIONAL_TABLES = ("evidence_requirements", "source_registry")

TIMELINE_PATTERNS = [
    re.compile(r"\d+\s*hours?", re.IGNORECASE),
    re.compile(r"\d+\s*days?", re.IGNORECASE),
    re.compile(r"without\s+undue\s+delay", re.IGNORECASE),
    re.compile(r"immediately", re.IGNORECASE),
]

_ARTICLE_NUMBER = re.compile(r"(\d+)(.*)")
_REGULATION_ID = re.compile(r"^[A-Z0-9][A-Z0-9_\-]{0,63}$")


def article_sort_key(number: str) -> Tuple[int, int, int, str]:
    """Natural order: 5, 5a, 5b, 6, 10, 10a, then annexes."""
    text = number.strip()
    annex = text.lower().startswith("annex")
    if annex:
        text = text[len("annex"):].strip()
    match = _ARTICLE_NUMBER.match(text)
    if match:
        return (int(annex), 0, int(match.group(1)), match.group(2).strip().lower())
    return (int(annex), 1, 0, text.lower())


def extract_timelines(text: str) -> Optional[str]:
    """Pull deadline phrases such as "72 hours" or "without undue delay" out of text."""
    found: List[str] = []
    seen = set()
    for pattern in TIMELINE_PATTERNS:
        for match in pattern.findall(text):
            key = " ".join(match.lower().split())
            if key not in seen:
                seen.add(key)
                found.append(match)
    return ", ".join(found) if found else None


def strip_highlight(snippet: str) -> str:
    return snippet.replace(">>>", "").replace("<<<", "")


def _compare_hits(a: SearchHit, b: SearchHit) -> int:
    if abs(a.relevance - b.relevance) > RELEVANCE_TIE:
        return -1 if a.relevance > b.relevance else 1
    if a.type != b.type:
        return -1 if a.type == "article" else 1
    return 0


class RegulationsService:
    """Backend-agnostic queries over regulations, articles and mappings."""

    def __init__(self, adapter: DatabaseAdapter, max_limit: int = 50, max_compare: int = 10):
        self.adapter = adapter
        self.max_limit = max_limit
        self.max_compare = max_compare

    # Validation

    def _text(self, value: Any, field: str, max_length: int = MAX_QUERY_CHARS) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{field} must be a non-empty string", field=field)
        if len(value) > max_length:
            raise ValidationError(f"{field} must be at most {max_length} characters", field=field)
        return value.strip()

    def _regulation(self, value: Any, field: str = "regulation") -> str:
        regulation = self._text(value, field, max_length=64).upper()
        if not _REGULATION_ID.match(regulation):
            raise ValidationError(f"{field} is not a valid regulation identifier", field=field)
        return regulation

    def _regulations(self, values: Optional[Sequence[str]], max_count: int) -> Optional[List[str]]:
        if values is None:
            return None
        if isinstance(values, str):
            raise ValidationError("regulations must be a list", field="regulations")
        if len(values) > max_count:
            raise ValidationError(f"At most {max_count} regulations may be given", field="regulations")
        return [self._regulation(v, "regulations") for v in values] or None

    def _limit(self, limit: Any) -> int:
        if isinstance(limit, bool) or not isinstance(limit, int):
            raise ValidationError("limit must be an integer", field="limit")
        if limit < 1 or limit > self.max_limit:
            raise ValidationError(f"limit must be between 1 and {self.max_limit}", field="limit")
        return limit

    # Search

    async def search_regulations(
        self,
        query: str,
        regulations: Optional[Sequence[str]] = None,
        limit: int = 10,
    ) -> SearchResponse:
        """Search articles and recitals; articles win relevance ties."""
        if not isinstance(query, str) or not query:
            raise ValidationError("query must be a non-empty string", field="query")
        if len(query) > MAX_QUERY_CHARS:
            raise ValidationError(f"query must be at most {MAX_QUERY_CHARS} characters", field="query")
        regs = self._regulations(regulations, MAX_FILTER_REGULATIONS)
        limit = self._limit(limit)

        article_hits, recital_hits = await asyncio.gather(
            self.adapter.search(SearchTarget.ARTICLES, query, regs, limit),
            self.adapter.search(SearchTarget.RECITALS, query, regs, limit),
        )

        hits = [
            SearchHit(
                regulation=r.item.regulation,
                article=r.item.article_number,
                title=r.item.title,
                snippet=r.snippet,
                relevance=r.relevance,
                type="article",
            )
            for r in article_hits
        ]
        hits.extend(
            SearchHit(
                regulation=r.item.regulation,
                article=str(r.item.recital_number),
                title=f"Recital {r.item.recital_number}",
                snippet=r.snippet,
                relevance=r.relevance,
                type="recital",
            )
            for r in recital_hits
        )
        hits.sort(key=functools.cmp_to_key(_compare_hits))
        hits = hits[:limit]
        return SearchResponse(query=query, results=hits, total=len(hits))

    # Articles and recitals

    async def get_article(
        self, regulation: str, article: str, include_recitals: bool = False
    ) -> ArticleDetail:
        regulation = self._regulation(regulation)
        article = self._text(article, "article", max_length=32)

        result = await self.adapter.execute(Select(
            table="articles",
            columns=("regulation", "article_number", "title", "text", "chapter", "recitals", "cross_references"),
            where=(Eq("regulation", regulation), Eq("article_number", article)),
            limit=1,
            row_model=Article,
        ))
        if not result.rows:
            raise NotFound("Article", regulation=regulation, article=article)
        found: Article = result.rows[0]

        text = found.text
        truncated = len(text) > MAX_ARTICLE_CHARS
        if truncated:
            text = (
                text[:MAX_ARTICLE_CHARS]
                + f"\n\n[Truncated: article is {len(found.text)} characters; "
                f"showing the first {MAX_ARTICLE_CHARS}]"
            )

        related = None
        if include_recitals:
            related = await self._linked_recitals(regulation, found.recitals or [])

        return ArticleDetail(
            regulation=found.regulation,
            article_number=found.article_number,
            title=found.title,
            text=text,
            chapter=found.chapter,
            recitals=found.recitals,
            cross_references=found.cross_references,
            truncated=truncated,
            original_length=len(found.text) if truncated else None,
            related_recitals=related,
        )

    async def _linked_recitals(self, regulation: str, numbers: Sequence[str]) -> List[Recital]:
        wanted = sorted({int(n) for n in numbers if str(n).strip().isdigit()})
        if not wanted:
            return []
        result = await self.adapter.execute(Select(
            table="recitals",
            columns=("regulation", "recital_number", "text", "related_articles"),
            where=(Eq("regulation", regulation), In("recital_number", tuple(wanted))),
            order_by=(OrderBy("recital_number"),),
            row_model=Recital,
        ))
        return result.rows

    async def get_recital(self, regulation: str, recital_number: int) -> Recital:
        regulation = self._regulation(regulation)
        if isinstance(recital_number, bool) or not isinstance(recital_number, int):
            raise ValidationError("recital_number must be an integer", field="recital_number")
        if recital_number < 1 or recital_number > MAX_RECITAL_NUMBER:
            raise NotFound("Recital", regulation=regulation, recital_number=recital_number)

        result = await self.adapter.execute(Select(
            table="recitals",
            columns=("regulation", "recital_number", "text", "related_articles"),
            where=(Eq("regulation", regulation), Eq("recital_number", recital_number)),
            limit=1,
            row_model=Recital,
        ))
        if not result.rows:
            raise NotFound("Recital", regulation=regulation, recital_number=recital_number)
        return result.rows[0]

    # Regulations

    async def list_regulations(self, regulation: Optional[str] = None) -> RegulationList:
        if regulation is None:
            result = await self.adapter.execute(Select(
                table="regulations",
                alias="r",
                columns=(
                    "r.id AS id",
                    "r.full_name AS full_name",
                    "r.celex_id AS celex_id",
                    "r.effective_date AS effective_date",
                    "COUNT(a.regulation) AS article_count",
                ),
                joins=(Join("articles", "a", (("a.regulation", "r.id"),), kind="LEFT"),),
                group_by=("r.id", "r.full_name", "r.celex_id", "r.effective_date"),
                order_by=(OrderBy("r.id"),),
                row_model=RegulationSummary,
            ))
            return RegulationList(regulations=[
                RegulationInfo(**summary.model_dump()) for summary in result.rows
            ])

        regulation = self._regulation(regulation)
        meta = await self._regulation_row(regulation)
        headings = await self.adapter.execute(Select(
            table="articles",
            columns=("article_number", "title", "chapter"),
            where=(Eq("regulation", regulation),),
            row_model=ArticleHeading,
        ))
        ordered = sorted(headings.rows, key=lambda h: article_sort_key(h.article_number))

        chapters: Dict[str, Chapter] = {}
        for heading in ordered:
            key = heading.chapter or "General"
            if key not in chapters:
                chapters[key] = Chapter(number=key, title=f"Chapter {key}", articles=[])
            chapters[key].articles.append(heading.article_number)

        return RegulationList(regulations=[RegulationInfo(
            id=meta.id,
            full_name=meta.full_name,
            celex_id=meta.celex_id,
            effective_date=meta.effective_date,
            article_count=len(ordered),
            chapters=list(chapters.values()),
        )])

    async def _regulation_row(self, regulation: str) -> Regulation:
        result = await self.adapter.execute(Select(
            table="regulations",
            columns=("id", "full_name", "celex_id", "effective_date", "last_amended", "eur_lex_url"),
            where=(Eq("id", regulation),),
            limit=1,
            row_model=Regulation,
        ))
        if not result.rows:
            raise NotFound("Regulation", regulation=regulation)
        return result.rows[0]

    # Comparison

    async def compare_requirements(self, topic: str, regulations: Sequence[str]) -> CompareResult:
        """Compare how several regulations treat a topic, one concurrent search each."""
        topic = self._text(topic, "topic")
        regs = self._regulations(regulations, self.max_compare) or []
        if len(regs) < 2:
            raise ValidationError("At least two regulations are required", field="regulations")
        if len(set(regs)) != len(regs):
            raise ValidationError("Regulations must be distinct", field="regulations")

        comparisons = await asyncio.gather(*(self._compare_one(topic, reg) for reg in regs))
        return CompareResult(topic=topic, regulations=list(comparisons))

    async def _compare_one(self, topic: str, regulation: str) -> RegulationComparison:
        hits = await self.adapter.search(
            SearchTarget.ARTICLES, topic, [regulation], COMPARE_HITS_PER_REGULATION
        )
        articles = [hit.item.article_number for hit in hits]
        requirements = [strip_highlight(hit.snippet) for hit in hits]

        timelines = None
        if articles:
            texts = await self.adapter.execute(Select(
                table="articles",
                columns=("article_number", "text"),
                where=(Eq("regulation", regulation), In("article_number", tuple(articles))),
                row_model=ArticleText,
            ))
            timelines = extract_timelines(" ".join(row.text for row in texts.rows))

        return RegulationComparison(
            regulation=regulation,
            requirements=requirements,
            articles=articles,
            timelines=timelines,
        )

    # Mappings

    async def map_controls(
        self,
        framework: str,
        control: Optional[str] = None,
        regulation: Optional[str] = None,
    ) -> ControlMappingResult:
        info = get_framework(self._text(framework, "framework", max_length=64))
        if info is None:
            raise ValidationError(
                f"framework must be one of {', '.join(VALID_FRAMEWORKS)}", field="framework"
            )

        where = [Eq("framework", info.id.value)]
        if control is not None:
            where.append(Eq("control_id", self._text(control, "control", max_length=64)))
        if regulation is not None:
            where.append(Eq("regulation", self._regulation(regulation)))

        result = await self.adapter.execute(Select(
            table="control_mappings",
            columns=("id", "framework", "control_id", "control_name", "regulation", "articles", "coverage", "notes"),
            where=tuple(where),
            order_by=(OrderBy("control_id"), OrderBy("id")),
            row_model=ControlMapping,
        ))

        groups: Dict[str, ControlGroup] = {}
        for mapping in result.rows:
            group = groups.get(mapping.control_id)
            if group is None:
                group = groups[mapping.control_id] = ControlGroup(
                    control_id=mapping.control_id,
                    control_name=mapping.control_name,
                    mappings=[],
                )
            group.mappings.append(mapping)
        return ControlMappingResult(framework=info.id.value, controls=list(groups.values()))

    async def check_applicability(
        self,
        sector: str,
        subsector: Optional[str] = None,
        size: Optional[str] = None,
        member_state: Optional[str] = None,
    ) -> ApplicabilityResult:
        """Strongest matching rule per regulation, split by whether it applies."""
        parsed = parse_sector(self._text(sector, "sector", max_length=64))
        if parsed is None:
            raise ValidationError(f"sector must be one of {', '.join(VALID_SECTORS)}", field="sector")
        if size is not None and size not in ("sme", "large"):
            raise ValidationError("size must be 'sme' or 'large'", field="size")
        if subsector is not None:
            subsector = self._text(subsector, "subsector", max_length=64).lower()

        if subsector:
            subsector_match = AnyOf((IsNull("subsector"), Eq("subsector", subsector)))
        else:
            subsector_match = IsNull("subsector")

        select = Select(
            table="applicability_rules",
            columns=("regulation", "sector", "subsector", "applies", "confidence", "basis_article", "notes"),
            where=(Eq("sector", parsed.value), subsector_match),
            order_by=(
                OrderBy("regulation"),
                RankBy("confidence", tuple(c.value for c in Confidence)),
                NullsLast("subsector"),
            ),
            distinct_on=("regulation",),
            row_model=ApplicabilityRule,
        )
        result = await self.adapter.execute(select)
        rules = dedupe_leading(result.rows, result.distinct_on, result.limit)
        rules.sort(key=lambda r: (r.confidence.rank, r.regulation))

        return ApplicabilityResult(
            entity=EntityProfile(
                sector=parsed.value, subsector=subsector, size=size, member_state=member_state
            ),
            applicable_regulations=[r for r in rules if r.applies],
            not_applicable=[r for r in rules if not r.applies],
        )

    async def get_definitions(self, term: str, regulation: Optional[str] = None) -> DefinitionsResult:
        term = self._text(term, "term", max_length=200)
        where = [ILike("d.term", f"%{term}%")]
        if regulation is not None:
            where.append(Eq("d.regulation", self._regulation(regulation)))

        result = await self.adapter.execute(Select(
            table="definitions",
            alias="d",
            columns=(
                "d.regulation AS regulation",
                "d.term AS term",
                "d.definition AS definition",
                "d.article AS article",
                "a.title AS article_title",
            ),
            joins=(Join("articles", "a", (
                ("a.regulation", "d.regulation"),
                ("a.article_number", "d.article"),
            )),),
            where=tuple(where),
            order_by=(OrderBy("d.regulation"), OrderBy("d.term")),
            row_model=Definition,
        ))
        return DefinitionsResult(term=term, definitions=result.rows)

    async def get_evidence_requirements(
        self,
        regulation: Optional[str] = None,
        article: Optional[str] = None,
        evidence_type: Optional[str] = None,
    ) -> EvidenceResult:
        where = []
        if regulation is not None:
            where.append(Eq("regulation", self._regulation(regulation)))
        if article is not None:
            where.append(Eq("article", self._text(article, "article", max_length=32)))
        if evidence_type is not None:
            parsed = parse_evidence_type(self._text(evidence_type, "evidence_type", max_length=32))
            if parsed is None:
                raise ValidationError(
                    f"evidence_type must be one of {', '.join(VALID_EVIDENCE_TYPES)}",
                    field="evidence_type",
                )
            where.append(Eq("evidence_type", parsed.value))

        try:
            result = await self.adapter.execute(Select(
                table="evidence_requirements",
                columns=(
                    "regulation", "article", "requirement_summary", "evidence_type",
                    "artifact_name", "artifact_example", "description", "retention_period",
                    "auditor_questions", "maturity_levels", "cross_references",
                ),
                where=tuple(where),
                order_by=(OrderBy("regulation"), OrderBy("article"), OrderBy("id")),
                row_model=EvidenceRequirement,
            ))
        except SchemaError:
            logger.warning("Evidence requirements are not available in this database")
            return EvidenceResult(requirements=[], total=0)
        return EvidenceResult(requirements=result.rows, total=result.row_count)

    # Statistics and health

    async def _count(self, table: str, optional: bool = False) -> int:
        try:
            result = await self.adapter.execute(Select(
                table=table, columns=("COUNT(*) AS count",), row_model=CountRow,
            ))
        except SchemaError:
            if not optional:
                raise
            logger.info(f"Optional table {table} is missing; counting it as 0")
            return 0
        return result.rows[0].count if result.rows else 0

    async def get_statistics(self) -> Statistics:
        tables = REQUIRED_TABLES + OPTIONAL_TABLES
        counts = await asyncio.gather(
            *(self._count(t, optional=t in OPTIONAL_TABLES) for t in tables)
        )
        return Statistics(**dict(zip(tables, counts)))

    async def health(self) -> HealthStatus:
        connected = await self.adapter.ping()
        counts = None
        if connected:
            try:
                stats = await self.get_statistics()
            except BackendError as e:
                logger.warning(f"Health check could not count rows: {e.condition}")
            else:
                counts = {
                    "regulations": stats.regulations,
                    "articles": stats.articles,
                    "recitals": stats.recitals,
                }
        return HealthStatus(
            status="healthy" if counts is not None else "degraded",
            backend=self.adapter.kind.value,
            connected=connected,
            pool=self.adapter.pool_stats(),
            counts=counts,
        )
