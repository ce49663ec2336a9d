"""Exact term -> posting set index."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from internal_linker.models import Document


class InvertedIndex:
    """
    Term -> set of document ids.

    ``search`` intersects the posting sets of the query terms (AND);
    ``search_any`` takes their union (OR), which keeps every document with a
    nonzero cosine score against the query.
    """

    def __init__(self) -> None:
        self._postings: dict[str, set[str]] = {}
        self._doc_terms: dict[str, frozenset[str]] = {}

    def __len__(self) -> int:
        return len(self._doc_terms)

    def __contains__(self, doc_id: object) -> bool:
        return doc_id in self._doc_terms

    @property
    def vocabulary_size(self) -> int:
        return len(self._postings)

    def add(self, doc_id: str, terms: Sequence[str]) -> None:
        if doc_id in self._doc_terms:
            self.remove(doc_id)
        unique = frozenset(terms)
        self._doc_terms[doc_id] = unique
        for term in unique:
            self._postings.setdefault(term, set()).add(doc_id)

    def remove(self, doc_id: str) -> None:
        for term in self._doc_terms.pop(doc_id, frozenset()):
            posting = self._postings.get(term)
            if posting is None:
                continue
            posting.discard(doc_id)
            if not posting:
                del self._postings[term]

    def posting(self, term: str) -> frozenset[str]:
        return frozenset(self._postings.get(term, ()))

    def search(self, terms: Sequence[str]) -> set[str]:
        """
        Documents containing every query term the index knows about.

        Unknown terms are dropped before intersecting, so they never empty the
        result on their own: ("cats", "zzz") returns the documents holding
        "cats". A query with no known term returns an empty set.
        """
        postings = [self._postings[t] for t in dict.fromkeys(terms) if t in self._postings]
        if not postings:
            return set()
        postings.sort(key=len)
        result = set(postings[0])
        for posting in postings[1:]:
            result &= posting
            if not result:
                break
        return result

    def search_any(self, terms: Sequence[str]) -> set[str]:
        """Documents containing at least one query term."""
        result: set[str] = set()
        for term in set(terms):
            posting = self._postings.get(term)
            if posting:
                result |= posting
        return result

    def clear(self) -> None:
        self._postings.clear()
        self._doc_terms.clear()

    def rebuild(self, documents: Iterable[Document]) -> None:
        self.clear()
        for doc in documents:
            self.add(doc.doc_id, doc.terms)


__all__ = [
    "InvertedIndex",
]
