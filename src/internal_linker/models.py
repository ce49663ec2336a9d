"""Records shared by the pipeline, the worker pool and the persistence layer."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any


def doc_id_for_url(url: str) -> str:
    """Stable short identifier derived from a document URL."""
    return hashlib.sha256(url.encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True)
class Document:
    """A tokenized document. Identity is the URL; terms never change after tokenization."""
    url: str
    title: str = ""
    body: str = ""
    terms: tuple[str, ...] = ()
    doc_id: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.terms, tuple):
            object.__setattr__(self, "terms", tuple(self.terms))
        if not self.doc_id:
            object.__setattr__(self, "doc_id", doc_id_for_url(self.url))

    def to_dict(self) -> dict[str, Any]:
        return {
            "doc_id": self.doc_id,
            "url": self.url,
            "title": self.title,
            "body": self.body,
            "terms": list(self.terms),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Document":
        return cls(
            url=data["url"],
            title=data.get("title", ""),
            body=data.get("body", ""),
            terms=tuple(data.get("terms", ())),
            doc_id=data.get("doc_id", ""),
        )


@dataclass(frozen=True)
class SimilarityMatch:
    """One suggested link target for a source document."""
    target_url: str
    title: str
    similarity: float
    suggested_anchor: str
    topics: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_url": self.target_url,
            "title": self.title,
            "similarity": self.similarity,
            "suggested_anchor": self.suggested_anchor,
            "topics": list(self.topics),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SimilarityMatch":
        return cls(
            target_url=data["target_url"],
            title=data.get("title", ""),
            similarity=float(data["similarity"]),
            suggested_anchor=data.get("suggested_anchor", ""),
            topics=tuple(data.get("topics", ())),
        )


@dataclass
class SimilarityResult:
    """Ranked matches for one source document."""
    source_url: str
    source_title: str
    matches: list[SimilarityMatch] = field(default_factory=list)
    topics: tuple[str, ...] = ()
    from_cache: bool = False

    @property
    def should_mark_processed(self) -> bool:
        # Sources without matches stay eligible for a later run against a larger corpus
        return len(self.matches) > 0

    @property
    def top_match(self) -> SimilarityMatch | None:
        return self.matches[0] if self.matches else None


# =============================================================================
# Module exports
# =============================================================================

__all__ = [
    "Document",
    "SimilarityMatch",
    "SimilarityResult",
    "doc_id_for_url",
]
