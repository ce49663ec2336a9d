"""
Candidate selection: combine the filters to shrink the set of targets that
need exact scoring.

The Bloom filter over the target vocabulary runs first. A source whose terms
all miss it cannot share a term with any target, so it gets no candidates
without touching the indexes. The remaining terms go through one strategy:

    postings  - inverted-index union; lossless for cosine > 0 (default)
    lsh       - MinHash/LSH bands; approximate, favours near-duplicates
    prefix    - 3-character prefix intersection; approximate
    all       - every target (exhaustive scoring)
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from internal_linker.bloom_filter import BloomFilter
from internal_linker.config import CANDIDATE_STRATEGIES
from internal_linker.errors import DataError
from internal_linker.inverted_index import InvertedIndex
from internal_linker.lsh import DEFAULT_BANDS, DEFAULT_NUM_HASHES, LshIndex
from internal_linker.models import Document
from internal_linker.prefix_index import PrefixIndex

log = logging.getLogger("internal_linker.candidates")


class CandidateSelector:
    """Filters built over one target corpus snapshot."""

    def __init__(
        self,
        strategy: str = "postings",
        num_hashes: int = DEFAULT_NUM_HASHES,
        bands: int = DEFAULT_BANDS,
        bloom_fp_rate: float = 0.01,
    ):
        if strategy not in CANDIDATE_STRATEGIES:
            raise DataError(f"Unknown candidate strategy {strategy!r}")
        self.strategy = strategy
        self.bloom_fp_rate = bloom_fp_rate
        self.inverted = InvertedIndex()
        self.prefix = PrefixIndex()
        self.lsh = LshIndex(num_hashes=num_hashes, bands=bands)
        self.bloom: BloomFilter | None = None
        self._doc_ids: list[str] = []

    def __len__(self) -> int:
        return len(self._doc_ids)

    @property
    def is_built(self) -> bool:
        return self.bloom is not None

    def build(self, documents: Sequence[Document]) -> None:
        """(Re)build every structure the strategy needs from the target documents."""
        self.clear()
        vocabulary = {term for doc in documents for term in doc.terms}
        self.bloom = BloomFilter(len(vocabulary), self.bloom_fp_rate)
        self.bloom.update(vocabulary)

        self._doc_ids = [doc.doc_id for doc in documents]
        self.inverted.rebuild(documents)
        if self.strategy == "prefix":
            self.prefix.rebuild(documents)
        elif self.strategy == "lsh":
            self.lsh.rebuild(documents)

        log.info(
            "candidate filters built: %d targets, %d terms, strategy=%s",
            len(self._doc_ids),
            len(vocabulary),
            self.strategy,
        )

    def known_terms(self, terms: Sequence[str]) -> list[str]:
        """Terms that may occur in some target (Bloom filter test)."""
        if self.bloom is None:
            raise DataError("CandidateSelector has not been built")
        return [t for t in terms if t in self.bloom]

    def select(self, terms: Sequence[str]) -> set[str]:
        """Doc ids of the targets worth scoring against ``terms``."""
        known = self.known_terms(terms)
        if not known:
            return set()
        if self.strategy == "postings":
            return self.inverted.search_any(known)
        if self.strategy == "lsh":
            return self.lsh.query(known)
        if self.strategy == "prefix":
            return self.prefix.find_candidates(known)
        return set(self._doc_ids)

    def clear(self) -> None:
        self.inverted.clear()
        self.prefix.clear()
        self.lsh.clear()
        self.bloom = None
        self._doc_ids = []


__all__ = [
    "CandidateSelector",
]
