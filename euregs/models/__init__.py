"""Data models for the EU regulations store."""

from .regulation import (
    Regulation,
    Article,
    Recital,
    Definition,
    ControlMapping,
    ApplicabilityRule,
    EvidenceRequirement,
    SearchResult,
    SearchTarget,
)

__all__ = [
    "Regulation",
    "Article",
    "Recital",
    "Definition",
    "ControlMapping",
    "ApplicabilityRule",
    "EvidenceRequirement",
    "SearchResult",
    "SearchTarget",
]
