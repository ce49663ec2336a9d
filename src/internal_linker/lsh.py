"""
MinHash/LSH candidate filter.

Each document's term set is hashed into a ``num_hashes`` MinHash signature,
sliced into ``bands`` bands of ``num_hashes // bands`` rows. Two documents are
candidates when any band matches exactly. 128 hashes / 16 bands is a coarse,
recall-oriented pre-filter, not a final answer.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from datasketch import MinHash, MinHashLSH

from internal_linker.errors import DataError
from internal_linker.models import Document

log = logging.getLogger("internal_linker.lsh")


DEFAULT_NUM_HASHES = 128
DEFAULT_BANDS = 16
DEFAULT_SEED = 1


class LshIndex:
    """Banded MinHash index over document term sets."""

    def __init__(
        self,
        num_hashes: int = DEFAULT_NUM_HASHES,
        bands: int = DEFAULT_BANDS,
        seed: int = DEFAULT_SEED,
    ):
        if bands < 1 or num_hashes < bands or num_hashes % bands:
            raise DataError(
                f"num_hashes ({num_hashes}) must be a positive multiple of bands ({bands})"
            )
        self.num_hashes = num_hashes
        self.bands = bands
        self.rows = num_hashes // bands
        self.seed = seed
        self._lsh = self._new_lsh()
        self._keys: set[str] = set()

    def _new_lsh(self) -> MinHashLSH:
        return MinHashLSH(num_perm=self.num_hashes, params=(self.bands, self.rows))

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, doc_id: object) -> bool:
        return doc_id in self._keys

    def signature(self, terms: Iterable[str]) -> MinHash:
        """MinHash signature of the distinct terms."""
        mh = MinHash(num_perm=self.num_hashes, seed=self.seed)
        for term in set(terms):
            mh.update(term.encode("utf-8"))
        return mh

    def band_keys(self, signature: MinHash) -> list[tuple[int, bytes]]:
        """Bucket keys (band index, band slice) of a signature."""
        values = signature.hashvalues
        return [
            (band, values[band * self.rows:(band + 1) * self.rows].tobytes())
            for band in range(self.bands)
        ]

    def add(self, doc_id: str, terms: Sequence[str]) -> None:
        if not terms:
            # An empty set hashes to the sentinel signature and would match every other empty doc
            return
        if doc_id in self._keys:
            self._lsh.remove(doc_id)
        self._lsh.insert(doc_id, self.signature(terms))
        self._keys.add(doc_id)

    def query(self, terms: Sequence[str]) -> set[str]:
        """Ids of indexed documents sharing at least one band with ``terms``."""
        if not terms or not self._keys:
            return set()
        return set(self._lsh.query(self.signature(terms)))

    def estimate_jaccard(self, a: Sequence[str], b: Sequence[str]) -> float:
        return float(self.signature(a).jaccard(self.signature(b)))

    def clear(self) -> None:
        self._lsh = self._new_lsh()
        self._keys.clear()

    def rebuild(self, documents: Iterable[Document]) -> None:
        self.clear()
        for doc in documents:
            self.add(doc.doc_id, doc.terms)
        log.debug("LSH index rebuilt with %d documents", len(self._keys))


# =============================================================================
# Module exports
# =============================================================================

__all__ = [
    "LshIndex",
]
