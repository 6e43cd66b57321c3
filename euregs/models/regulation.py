"""Data models for regulations, articles and their mappings."""

import json
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field, field_validator


class Coverage(str, Enum):
    """How completely a control covers the mapped articles."""
    FULL = "full"
    PARTIAL = "partial"
    RELATED = "related"


class Confidence(str, Enum):
    """Confidence of an applicability rule."""
    DEFINITE = "definite"
    LIKELY = "likely"
    POSSIBLE = "possible"

    @property
    def rank(self) -> int:
        """Lower rank means stronger confidence."""
        return _CONFIDENCE_RANK[self]


_CONFIDENCE_RANK = {
    Confidence.DEFINITE: 1,
    Confidence.LIKELY: 2,
    Confidence.POSSIBLE: 3,
}


class SearchTarget(str, Enum):
    """Full-text indexed collections."""
    ARTICLES = "articles"
    RECITALS = "recitals"


def parse_list_column(v: Any) -> Optional[List[str]]:
    """Decode a list column stored as a JSON array, comma-separated text or native array."""
    if v is None:
        return None
    if isinstance(v, (list, tuple)):
        return [str(item) for item in v]
    if isinstance(v, str):
        text = v.strip()
        if not text:
            return []
        if text.startswith("["):
            try:
                decoded = json.loads(text)
            except json.JSONDecodeError:
                decoded = None
            if isinstance(decoded, list):
                return [str(item) for item in decoded]
        return [part.strip() for part in text.split(",") if part.strip()]
    return [str(v)]


def parse_date_column(v: Any) -> Optional[str]:
    """Normalise TEXT and DATE columns to ISO strings."""
    if v is None:
        return None
    if isinstance(v, (date, datetime)):
        return v.isoformat()
    return str(v)


class Row(BaseModel):
    """Immutable row decoded from either backend."""

    class Config:
        frozen = True


class Regulation(Row):
    """A regulation (or directive) and its EUR-Lex metadata."""
    id: str
    full_name: str
    celex_id: str
    effective_date: Optional[str] = None
    last_amended: Optional[str] = None
    eur_lex_url: Optional[str] = None

    @field_validator("effective_date", "last_amended", mode="before")
    @classmethod
    def normalise_dates(cls, v):
        return parse_date_column(v)


class RegulationSummary(Row):
    """A regulation with the number of articles stored for it."""
    id: str
    full_name: str
    celex_id: str
    effective_date: Optional[str] = None
    article_count: int = 0

    @field_validator("effective_date", mode="before")
    @classmethod
    def normalise_dates(cls, v):
        return parse_date_column(v)


class Article(Row):
    """A single article of a regulation."""
    regulation: str
    article_number: str
    title: Optional[str] = None
    text: str
    chapter: Optional[str] = None
    recitals: Optional[List[str]] = None
    cross_references: Optional[List[str]] = None

    @field_validator("article_number", mode="before")
    @classmethod
    def coerce_number(cls, v):
        return str(v)

    @field_validator("recitals", "cross_references", mode="before")
    @classmethod
    def decode_lists(cls, v):
        return parse_list_column(v)


class ArticleHeading(Row):
    """Article number, title and chapter, without the body."""
    article_number: str
    title: Optional[str] = None
    chapter: Optional[str] = None

    @field_validator("article_number", mode="before")
    @classmethod
    def coerce_number(cls, v):
        return str(v)


class ArticleText(Row):
    """Article number and body, used for timeline extraction."""
    article_number: str
    text: str


class Recital(Row):
    """A numbered recital from a regulation's preamble."""
    regulation: str
    recital_number: int = Field(..., gt=0)
    text: str
    related_articles: Optional[List[str]] = None

    @field_validator("related_articles", mode="before")
    @classmethod
    def decode_lists(cls, v):
        return parse_list_column(v)


class Definition(Row):
    """A defined term and the article that defines it."""
    regulation: str
    term: str
    definition: str
    article: str
    article_title: Optional[str] = None

    @field_validator("article", mode="before")
    @classmethod
    def coerce_article(cls, v):
        return str(v)


class ControlMapping(Row):
    """Mapping from a framework control to regulation articles."""
    id: Optional[int] = None
    framework: str
    control_id: str
    control_name: str
    regulation: str
    articles: List[str] = Field(default_factory=list)
    coverage: Optional[Coverage] = None
    notes: Optional[str] = None

    @field_validator("articles", mode="before")
    @classmethod
    def decode_lists(cls, v):
        return parse_list_column(v) or []


class ApplicabilityRule(Row):
    """Whether a regulation applies to a sector (and optional subsector)."""
    regulation: str
    sector: str
    subsector: Optional[str] = None
    applies: bool
    confidence: Confidence = Confidence.POSSIBLE
    basis_article: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("basis_article", mode="before")
    @classmethod
    def coerce_basis(cls, v):
        return None if v is None else str(v)


class EvidenceRequirement(Row):
    """An audit artifact that demonstrates compliance with an article."""
    regulation: str
    article: str
    requirement_summary: Optional[str] = None
    evidence_type: Optional[str] = None
    artifact_name: Optional[str] = None
    artifact_example: Optional[str] = None
    description: Optional[str] = None
    retention_period: Optional[str] = None
    auditor_questions: Optional[List[str]] = None
    maturity_levels: Optional[Dict[str, str]] = None
    cross_references: Optional[List[str]] = None

    @field_validator("article", mode="before")
    @classmethod
    def coerce_article(cls, v):
        return str(v)

    @field_validator("auditor_questions", "cross_references", mode="before")
    @classmethod
    def decode_lists(cls, v):
        return parse_list_column(v)

    @field_validator("maturity_levels", mode="before")
    @classmethod
    def decode_mapping(cls, v):
        if isinstance(v, str):
            if not v.strip():
                return None
            return json.loads(v)
        return v


class CountRow(Row):
    """Result of a COUNT(*) statement."""
    count: int


class ArticleHit(Row):
    """Article identity as returned by a full-text search."""
    regulation: str
    article_number: str
    title: Optional[str] = None

    @field_validator("article_number", mode="before")
    @classmethod
    def coerce_number(cls, v):
        return str(v)


class RecitalHit(Row):
    """Recital identity as returned by a full-text search."""
    regulation: str
    recital_number: int


T = TypeVar("T")


class SearchResult(BaseModel, Generic[T]):
    """A full-text hit.

    ``score`` is the backend's native ranking value (BM25 is lower-is-better,
    ts_rank is higher-is-better) and is only comparable within one query.
    ``relevance`` is normalised so that higher always means more relevant.
    """
    item: T
    snippet: str = ""
    score: float
    relevance: float

    class Config:
        frozen = True
