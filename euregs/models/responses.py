"""Response models returned by the service layer and the API."""

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .regulation import (
    ApplicabilityRule,
    ControlMapping,
    Definition,
    EvidenceRequirement,
    Recital,
)


class SearchHit(BaseModel):
    """One merged search hit across articles and recitals."""
    regulation: str
    article: str
    title: Optional[str] = None
    snippet: str
    relevance: float
    type: Literal["article", "recital"]


class SearchResponse(BaseModel):
    query: str
    results: List[SearchHit]
    total: int


class ArticleDetail(BaseModel):
    """Full article with optional linked recitals."""
    regulation: str
    article_number: str
    title: Optional[str] = None
    text: str
    chapter: Optional[str] = None
    recitals: Optional[List[str]] = None
    cross_references: Optional[List[str]] = None
    truncated: bool = False
    original_length: Optional[int] = None
    related_recitals: Optional[List[Recital]] = None


class Chapter(BaseModel):
    number: str
    title: str
    articles: List[str]


class RegulationInfo(BaseModel):
    id: str
    full_name: str
    celex_id: str
    effective_date: Optional[str] = None
    article_count: int
    chapters: Optional[List[Chapter]] = None


class RegulationList(BaseModel):
    regulations: List[RegulationInfo]


class RegulationComparison(BaseModel):
    regulation: str
    requirements: List[str]
    articles: List[str]
    timelines: Optional[str] = None


class CompareResult(BaseModel):
    topic: str
    regulations: List[RegulationComparison]


class ControlGroup(BaseModel):
    """All mappings of a single framework control."""
    control_id: str
    control_name: str
    mappings: List[ControlMapping]


class ControlMappingResult(BaseModel):
    framework: str
    controls: List[ControlGroup]


class EntityProfile(BaseModel):
    sector: str
    subsector: Optional[str] = None
    size: Optional[Literal["sme", "large"]] = None
    member_state: Optional[str] = None


class ApplicabilityResult(BaseModel):
    entity: EntityProfile
    applicable_regulations: List[ApplicabilityRule]
    not_applicable: List[ApplicabilityRule] = Field(default_factory=list)


class DefinitionsResult(BaseModel):
    term: str
    definitions: List[Definition]


class EvidenceResult(BaseModel):
    requirements: List[EvidenceRequirement]
    total: int


class Statistics(BaseModel):
    """Row counts per entity table."""
    regulations: int
    articles: int
    recitals: int
    definitions: int
    control_mappings: int
    applicability_rules: int
    evidence_requirements: int
    source_registry: int


class PoolStats(BaseModel):
    size: int
    idle: int
    in_use: int
    min_size: int
    max_size: int


class HealthStatus(BaseModel):
    status: Literal["healthy", "degraded"]
    backend: str
    connected: bool
    pool: Optional[PoolStats] = None
    counts: Optional[Dict[str, int]] = None
