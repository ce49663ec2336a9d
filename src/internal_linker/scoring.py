"""
Exact similarity scoring, ranking, anchor suggestion and topics.

Vectors produced by the TF-IDF model are L2-normalized, so cosine similarity
is a dot product. Scores are clamped to [-1, 1] to absorb floating-point
drift. A target vector whose dimension differs from the source vector's means
a stale vocabulary and raises DataError.

Usage:
    from internal_linker.scoring import ScoringRequest, score_source

    result = score_source(ScoringRequest(source, source_vec, candidates, candidate_rows))
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import numpy as np
from scipy.sparse import issparse

from internal_linker.errors import DataError
from internal_linker.models import Document, SimilarityMatch, SimilarityResult
from internal_linker.tokenizer import ALL_STOPWORDS

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from internal_linker.worker_pool import WorkerContext

log = logging.getLogger("internal_linker.scoring")


# =============================================================================
# Configuration
# =============================================================================

DEFAULT_SIMILARITY_THRESHOLD = 0.01
DEFAULT_TOP_K = 5
DEFAULT_MAX_TOPICS = 5
ANCHOR_WINDOW = 3
ANCHOR_FALLBACK_WORDS = 5
ANCHOR_FALLBACK_CHARS = 30


# =============================================================================
# Vector Backend
# =============================================================================


class VectorBackend(Protocol):
    """Dot-product kernel used by the scorer."""

    def dot_product(self, a: NDArray[np.float64], b: NDArray[np.float64]) -> float: ...

    def batch_similarity(self, source: NDArray[np.float64], targets: Any) -> NDArray[np.float64]: ...


class NumpyBackend:
    """CPU backend: numpy dot products, scipy sparse matrix-vector products."""

    def dot_product(self, a: NDArray[np.float64], b: NDArray[np.float64]) -> float:
        a = np.asarray(a, dtype=np.float64)
        b = np.asarray(b, dtype=np.float64)
        if a.ndim != 1 or a.shape != b.shape:
            raise DataError(f"Vector dimension mismatch: {a.shape} vs {b.shape}")
        return float(np.clip(np.dot(a, b), -1.0, 1.0))

    def batch_similarity(self, source: NDArray[np.float64], targets: Any) -> NDArray[np.float64]:
        """
        Dot product of ``source`` with every target vector.

        Args:
            source: Normalized source vector (d,)
            targets: csr_matrix or 2-D array (n, d), or a sequence of (d,) vectors

        Returns:
            Clamped scores (n,)
        """
        source = np.asarray(source, dtype=np.float64)
        if source.ndim != 1:
            raise DataError(f"Source vector must be 1-D, got shape {source.shape}")
        dim = source.shape[0]

        if issparse(targets):
            if targets.shape[1] != dim:
                raise DataError(f"Target matrix has {targets.shape[1]} columns, source vector has {dim}")
            scores = np.asarray(targets @ source, dtype=np.float64).ravel()
        elif isinstance(targets, np.ndarray) and targets.ndim == 2:
            if targets.shape[1] != dim:
                raise DataError(f"Target matrix has {targets.shape[1]} columns, source vector has {dim}")
            scores = targets @ source
        else:
            rows = [np.asarray(t, dtype=np.float64) for t in targets]
            for i, row in enumerate(rows):
                if row.shape != (dim,):
                    raise DataError(
                        f"Target vector {i} has shape {row.shape}, expected ({dim},)"
                    )
            if not rows:
                return np.array([], dtype=np.float64)
            scores = np.vstack(rows) @ source

        return np.clip(scores, -1.0, 1.0)


DEFAULT_BACKEND = NumpyBackend()


def cosine_similarity(a: NDArray[np.float64], b: NDArray[np.float64]) -> float:
    """Cosine of the angle between two arbitrary vectors; 0 if either is zero."""
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.shape != b.shape:
        raise DataError(f"Vector dimension mismatch: {a.shape} vs {b.shape}")
    magnitude = float(np.linalg.norm(a)) * float(np.linalg.norm(b))
    if magnitude == 0.0:
        return 0.0
    return float(np.clip(np.dot(a, b) / magnitude, -1.0, 1.0))


# =============================================================================
# Ranking
# =============================================================================


def select_top_k(
    scores: NDArray[np.float64],
    top_k: int = DEFAULT_TOP_K,
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> tuple[NDArray[np.int64], NDArray[np.float64]]:
    """
    Indices and scores of the best ``top_k`` scores at or above ``threshold``.

    Ties keep their input order.

    Returns:
        (sorted_indices, sorted_scores) in descending order
    """
    scores = np.asarray(scores, dtype=np.float64)
    kept = np.flatnonzero(scores >= threshold)
    if len(kept) == 0:
        return np.array([], dtype=np.int64), np.array([], dtype=np.float64)
    order = kept[np.lexsort((kept, -scores[kept]))][:top_k]
    return order.astype(np.int64), scores[order]


# =============================================================================
# Anchors and Topics
# =============================================================================


def suggest_anchor(text: str) -> str:
    """
    Naive anchor text for a link to a document with text ``text``.

    The first window of three words longer than two characters; for shorter
    documents the first five words, or the first 30 characters when those
    words are too short to use.
    """
    words = [w for w in text.split() if len(w) > 2]
    if len(words) >= ANCHOR_WINDOW:
        return " ".join(words[:ANCHOR_WINDOW])

    first_words = " ".join(text.strip().split()[:ANCHOR_FALLBACK_WORDS])
    if len(first_words) > 2:
        return first_words
    return text[:ANCHOR_FALLBACK_CHARS]


def extract_topics(terms: Sequence[str], max_topics: int = DEFAULT_MAX_TOPICS) -> tuple[str, ...]:
    """Most frequent non-stop-word terms; ties keep first-seen order."""
    counts = Counter(
        term
        for term in (t.strip().lower() for t in terms)
        if len(term) >= 3 and term not in ALL_STOPWORDS
    )
    return tuple(term for term, _ in counts.most_common(max_topics))


# =============================================================================
# Source scoring (worker entry point)
# =============================================================================


@dataclass
class ScoringRequest:
    """Everything one worker needs to score one source document."""
    source: Document
    source_vector: NDArray[np.float64]
    candidates: list[Document]
    candidate_vectors: Any
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    top_k: int = DEFAULT_TOP_K


def score_source(
    request: ScoringRequest,
    backend: VectorBackend = DEFAULT_BACKEND,
) -> SimilarityResult:
    """Score a source against its candidates and build the ranked result."""
    source = request.source
    result = SimilarityResult(
        source_url=source.url,
        source_title=source.title,
        topics=extract_topics(source.terms),
    )
    if not request.candidates:
        return result

    scores = backend.batch_similarity(request.source_vector, request.candidate_vectors)
    if len(scores) != len(request.candidates):
        raise DataError(
            f"{len(scores)} candidate vectors for {len(request.candidates)} candidate documents"
        )

    indices, top_scores = select_top_k(scores, request.top_k, request.threshold)
    for idx, score in zip(indices, top_scores):
        target = request.candidates[int(idx)]
        target_text = f"{target.title} {target.body}".strip()
        result.matches.append(
            SimilarityMatch(
                target_url=target.url,
                title=target.title or target.url,
                similarity=float(score),
                suggested_anchor=suggest_anchor(target_text),
                topics=extract_topics(target.terms),
            )
        )
    return result


def score_task(request: ScoringRequest, context: WorkerContext) -> SimilarityResult:
    """WorkerPool entry point wrapping score_source."""
    result = score_source(request)
    context.log(
        f"scored {request.source.url}: {len(request.candidates)} candidates, "
        f"{len(result.matches)} matches",
        level="debug",
    )
    return result


# =============================================================================
# Module exports
# =============================================================================

__all__ = [
    "DEFAULT_BACKEND",
    "NumpyBackend",
    "ScoringRequest",
    "VectorBackend",
    "cosine_similarity",
    "extract_topics",
    "score_source",
    "score_task",
    "select_top_k",
    "suggest_anchor",
]
