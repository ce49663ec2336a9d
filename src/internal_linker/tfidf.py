"""
TF-IDF vector space model.

One weighting scheme is used everywhere:

    tf(t, d)  = 1 + ln(count(t, d))
    idf(t)    = ln((N + 1) / (df(t) + 1)) + 1
    v(d)      = tf * idf, L2-normalized

so cosine similarity between two document vectors is their dot product.

Vocabulary, IDF table and cached vectors all carry the fingerprint of the
corpus they were built from; mixing generations raises DataError.

Usage:
    from internal_linker.tfidf import TfidfModel

    model = TfidfModel()
    model.fit(target_docs)
    matrix = model.transform_many(target_docs)   # csr_matrix (N, |V|)
    query = model.transform(source_doc.terms)    # dense (|V|,)
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import time
from collections import Counter
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
from scipy.sparse import csr_matrix

from internal_linker.errors import DataError
from internal_linker.models import Document

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from internal_linker.cache import MemoryManager, VectorCache

log = logging.getLogger("internal_linker.tfidf")


# =============================================================================
# Configuration
# =============================================================================

# Cooperative yield interval for bulk vectorization
DEFAULT_YIELD_EVERY = 500


# =============================================================================
# Corpus input helpers
# =============================================================================


def _terms_of(doc: Any, position: int) -> Sequence[str]:
    """Extract the term sequence of one corpus entry, rejecting anything else."""
    if isinstance(doc, Document):
        return doc.terms
    if isinstance(doc, (str, bytes)) or not isinstance(doc, Sequence):
        raise DataError(
            f"Document at position {position} is not a sequence of terms "
            f"(got {type(doc).__name__})"
        )
    for term in doc:
        if not isinstance(term, str):
            raise DataError(
                f"Document at position {position} contains a non-string term "
                f"({type(term).__name__})"
            )
    return doc


def corpus_fingerprint(corpus: Sequence[Any]) -> str:
    """
    Order-independent content hash of a tokenized corpus.

    Each document contributes its sorted terms; the document list is sorted
    before hashing, so reordering documents keeps the fingerprint.
    """
    docs = sorted(sorted(_terms_of(doc, i)) for i, doc in enumerate(corpus))
    payload = json.dumps(docs, ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


# =============================================================================
# Vocabulary and IDF table
# =============================================================================


@dataclass(frozen=True, eq=False)
class Vocabulary:
    """Sorted, deduplicated terms of one corpus snapshot with document frequencies."""
    terms: tuple[str, ...]
    index: Mapping[str, int]
    document_frequency: NDArray[np.int64]
    document_count: int
    fingerprint: str

    def __len__(self) -> int:
        return len(self.terms)

    def __contains__(self, term: object) -> bool:
        return term in self.index

    def get_term_id(self, term: str) -> int | None:
        return self.index.get(term)

    def df(self, term: str) -> int:
        term_id = self.index.get(term)
        return 0 if term_id is None else int(self.document_frequency[term_id])


@dataclass(frozen=True, eq=False)
class IdfTable:
    """IDF weights aligned with one Vocabulary."""
    weights: NDArray[np.float64]
    fingerprint: str
    vocabulary: Vocabulary = field(repr=False)

    def __len__(self) -> int:
        return len(self.weights)

    def __getitem__(self, term: str) -> float:
        term_id = self.vocabulary.get_term_id(term)
        if term_id is None:
            raise KeyError(term)
        return float(self.weights[term_id])


def build_vocabulary(corpus: Sequence[Any]) -> Vocabulary:
    """
    Collect the vocabulary and document frequencies of a tokenized corpus.

    Args:
        corpus: Documents or term sequences

    Returns:
        Vocabulary with sorted terms

    Raises:
        DataError: empty corpus, a non-sequence document, or no terms at all
    """
    if corpus is None or isinstance(corpus, (str, bytes)) or not isinstance(corpus, Sequence):
        raise DataError("Corpus must be a sequence of documents")
    if len(corpus) == 0:
        raise DataError("empty corpus")

    df: Counter[str] = Counter()
    for i, doc in enumerate(corpus):
        df.update(set(_terms_of(doc, i)))

    if not df:
        raise DataError("empty corpus: no document produced a valid term")

    terms = tuple(sorted(df))
    index = {term: i for i, term in enumerate(terms)}
    frequencies = np.array([df[t] for t in terms], dtype=np.int64)
    return Vocabulary(
        terms=terms,
        index=index,
        document_frequency=frequencies,
        document_count=len(corpus),
        fingerprint=corpus_fingerprint(corpus),
    )


def compute_idf(
    vocabulary: Vocabulary,
    doc_frequencies: NDArray[np.int64] | Mapping[str, int] | None = None,
    total_docs: int | None = None,
) -> IdfTable:
    """
    Smoothed IDF: ln((N + 1) / (df + 1)) + 1.

    Strictly positive and strictly decreasing in df.

    Args:
        vocabulary: Vocabulary the table is aligned with
        doc_frequencies: Per-term document frequencies, an array aligned with
            the vocabulary or a term -> df mapping (default: the vocabulary's own)
        total_docs: Corpus size N (default: the vocabulary's document count)

    Returns:
        IdfTable sharing the vocabulary's fingerprint
    """
    if len(vocabulary) == 0:
        raise DataError("empty corpus: vocabulary has no terms")

    if doc_frequencies is None:
        df = vocabulary.document_frequency.astype(np.float64)
    elif isinstance(doc_frequencies, Mapping):
        df = np.array([doc_frequencies.get(t, 0) for t in vocabulary.terms], dtype=np.float64)
    else:
        df = np.asarray(doc_frequencies, dtype=np.float64)
        if df.shape != (len(vocabulary),):
            raise DataError(
                f"Document frequency array has shape {df.shape}, "
                f"expected ({len(vocabulary)},)"
            )

    n = vocabulary.document_count if total_docs is None else total_docs
    if n <= 0:
        raise DataError(f"total_docs must be positive, got {n}")
    if np.any(df < 0) or np.any(df > n):
        raise DataError("Document frequencies must lie in [0, total_docs]")

    weights = np.log((n + 1.0) / (df + 1.0)) + 1.0
    return IdfTable(weights=weights, fingerprint=vocabulary.fingerprint, vocabulary=vocabulary)


# =============================================================================
# Vectorization
# =============================================================================


def vectorize(
    terms: Sequence[str],
    vocabulary: Vocabulary,
    idf_table: IdfTable,
    cache: VectorCache | None = None,
) -> NDArray[np.float64]:
    """
    Turn a term sequence into an L2-normalized TF-IDF vector.

    Terms outside the vocabulary are ignored; if none remain the zero vector
    is returned.

    Args:
        terms: Document terms (duplicates count towards tf)
        vocabulary: Vocabulary of the target corpus
        idf_table: IDF table built from the same vocabulary
        cache: Optional vector cache keyed by sorted terms + fingerprint

    Returns:
        Dense vector of shape (len(vocabulary),)
    """
    if idf_table.fingerprint != vocabulary.fingerprint or len(idf_table) != len(vocabulary):
        raise DataError("IDF table was built from a different vocabulary")

    key = None
    if cache is not None:
        key = cache.make_key(terms, vocabulary.fingerprint)
        cached = cache.get(key)
        if cached is not None:
            return cached

    vector = np.zeros(len(vocabulary), dtype=np.float64)
    counts = Counter(t for t in terms if t in vocabulary.index)
    if counts:
        ids = np.fromiter((vocabulary.index[t] for t in counts), dtype=np.int64, count=len(counts))
        tf = 1.0 + np.log(np.fromiter(counts.values(), dtype=np.float64, count=len(counts)))
        vector[ids] = tf * idf_table.weights[ids]
        norm = math.sqrt(float(np.dot(vector, vector)))
        if norm > 0:
            vector /= norm

    if cache is not None and key is not None:
        cache.put(key, vector)
    return vector


# =============================================================================
# Model (vocabulary + IDF + cache lifecycle)
# =============================================================================


class TfidfModel:
    """
    Owns the vocabulary, IDF table and vector cache of one corpus snapshot.

    ``fit`` is a no-op when the corpus fingerprint is unchanged; otherwise the
    vocabulary and IDF table are rebuilt and the vector cache is invalidated.
    """

    def __init__(
        self,
        cache: VectorCache | None = None,
        memory_manager: MemoryManager | None = None,
    ):
        self.cache = cache
        self.vocabulary: Vocabulary | None = None
        self.idf_table: IdfTable | None = None
        if memory_manager is not None and cache is not None:
            memory_manager.register("tfidf_vectors", cache.clear)

    @property
    def is_fitted(self) -> bool:
        return self.vocabulary is not None and self.idf_table is not None

    @property
    def fingerprint(self) -> str | None:
        return None if self.vocabulary is None else self.vocabulary.fingerprint

    @property
    def dimension(self) -> int:
        return 0 if self.vocabulary is None else len(self.vocabulary)

    def fit(self, corpus: Sequence[Any]) -> bool:
        """
        Build vocabulary and IDF table for ``corpus``.

        Returns:
            True when the model was rebuilt, False when the fitted snapshot was reused
        """
        vocabulary = self.vocabulary
        if vocabulary is not None and isinstance(corpus, Sequence) and len(corpus) > 0:
            if corpus_fingerprint(corpus) == vocabulary.fingerprint:
                log.debug("corpus fingerprint unchanged, reusing vocabulary")
                return False

        vocabulary = build_vocabulary(corpus)
        self.vocabulary = vocabulary
        self.idf_table = compute_idf(vocabulary)
        if self.cache is not None:
            self.cache.invalidate_on_corpus_change(vocabulary.fingerprint)
        log.info(
            "built vocabulary: %d terms from %d documents",
            len(vocabulary),
            vocabulary.document_count,
        )
        return True

    def _require_fitted(self) -> tuple[Vocabulary, IdfTable]:
        if self.vocabulary is None or self.idf_table is None:
            raise DataError("TfidfModel is not fitted")
        return self.vocabulary, self.idf_table

    def transform(self, terms: Sequence[str]) -> NDArray[np.float64]:
        vocabulary, idf_table = self._require_fitted()
        return vectorize(terms, vocabulary, idf_table, cache=self.cache)

    def transform_many(
        self,
        corpus: Sequence[Any],
        progress: Callable[[int, int], None] | None = None,
        yield_every: int = DEFAULT_YIELD_EVERY,
    ) -> csr_matrix:
        """
        Vectorize many documents into a CSR matrix, one row per document.

        Every ``yield_every`` documents the loop reports progress and yields
        the CPU (time.sleep(0)) so long builds stay cooperative.

        Returns:
            csr_matrix of shape (len(corpus), dimension)
        """
        vocabulary, idf_table = self._require_fitted()
        total = len(corpus)

        indptr = [0]
        indices: list[NDArray[np.int64]] = []
        data: list[NDArray[np.float64]] = []
        for i, doc in enumerate(corpus):
            # Bulk vectors bypass the cache so one build cannot evict query vectors
            vector = vectorize(_terms_of(doc, i), vocabulary, idf_table)
            nonzero = np.flatnonzero(vector)
            indices.append(nonzero)
            data.append(vector[nonzero])
            indptr.append(indptr[-1] + len(nonzero))

            done = i + 1
            if done % yield_every == 0:
                if progress is not None:
                    progress(done, total)
                time.sleep(0)

        if progress is not None and total % yield_every != 0:
            progress(total, total)

        return csr_matrix(
            (
                np.concatenate(data) if data else np.array([], dtype=np.float64),
                np.concatenate(indices) if indices else np.array([], dtype=np.int64),
                np.array(indptr, dtype=np.int64),
            ),
            shape=(total, len(vocabulary)),
        )

    def clear(self) -> None:
        """Forget the fitted snapshot and every cached vector."""
        self.vocabulary = None
        self.idf_table = None
        if self.cache is not None:
            self.cache.clear()


# =============================================================================
# Module exports
# =============================================================================

__all__ = [
    "IdfTable",
    "TfidfModel",
    "Vocabulary",
    "build_vocabulary",
    "compute_idf",
    "corpus_fingerprint",
    "vectorize",
]
