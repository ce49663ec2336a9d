"""3-character prefix index for misspelling- and inflection-tolerant lookups."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from internal_linker.models import Document

PREFIX_LENGTH = 3


def _words(text: str | Sequence[str]) -> list[str]:
    if isinstance(text, str):
        return text.lower().split()
    return [w.lower() for w in text]


class PrefixIndex:
    """Word prefix -> set of document ids."""

    def __init__(self, prefix_length: int = PREFIX_LENGTH):
        self.prefix_length = prefix_length
        self._postings: dict[str, set[str]] = {}

    def __len__(self) -> int:
        return len(self._postings)

    def prefixes(self, text: str | Sequence[str]) -> list[str]:
        """Prefixes of the significant words (at least prefix_length characters)."""
        n = self.prefix_length
        return [w[:n] for w in _words(text) if len(w) >= n]

    def add(self, doc_id: str, text: str | Sequence[str]) -> None:
        for prefix in self.prefixes(text):
            self._postings.setdefault(prefix, set()).add(doc_id)

    def find_candidates(self, phrase: str | Sequence[str]) -> set[str]:
        """
        Intersect the posting sets of every significant word with a known prefix.

        Words whose prefix is unknown are skipped.
        """
        candidates: set[str] | None = None
        for prefix in dict.fromkeys(self.prefixes(phrase)):
            posting = self._postings.get(prefix)
            if posting is None:
                continue
            candidates = set(posting) if candidates is None else candidates & posting
            if not candidates:
                break
        return candidates or set()

    def clear(self) -> None:
        self._postings.clear()

    def rebuild(self, documents: Iterable[Document]) -> None:
        self.clear()
        for doc in documents:
            self.add(doc.doc_id, doc.terms)


__all__ = [
    "PREFIX_LENGTH",
    "PrefixIndex",
]
