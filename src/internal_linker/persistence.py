"""
Persistence contract consumed by the orchestrator, plus two stores.

InMemoryLinkStore  - dicts, for tests and one-off runs.
JsonLinkStore      - the same state in one JSON file, written atomically
                     (temp file + os.replace) after every mutation.
RetryingLinkStore  - wraps any store and retries transient failures.

Store schema (JSON):
{
  "updated_at_ms": 123,
  "documents": {"<url>": {"doc_id": ..., "url": ..., "title": ..., "body": ..., "terms": [...]}},
  "matches": {"<source url>": [{"target_url": ..., "similarity": ..., ...}]},
  "processed": [["<source url>", "<corpus id>"], ...],
  "corpora": {"<corpus id>": ["<target url>", ...]}
}
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
import time
from collections.abc import Iterable
from typing import Any, Protocol

from internal_linker.models import Document, SimilarityMatch
from internal_linker.retry import RetryPolicy, call_with_retry

log = logging.getLogger("internal_linker.persistence")


def corpus_id_for(urls: Iterable[str]) -> str:
    """Content-addressed id of a target URL set (order-independent)."""
    joined = "|".join(sorted(urls))
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


class LinkStore(Protocol):
    def get_document(self, url: str) -> Document | None: ...

    def put_document(self, doc: Document) -> None: ...

    def get_cached_matches(self, source_url: str) -> list[SimilarityMatch] | None: ...

    def put_matches(self, source_url: str, matches: list[SimilarityMatch]) -> None: ...

    def is_processed(self, source_url: str, corpus_id: str) -> bool: ...

    def mark_processed(self, source_url: str, corpus_id: str) -> None: ...

    def clear_processed(self, source_url: str, corpus_id: str) -> None: ...

    def get_or_create_corpus_id(self, sorted_target_urls: Iterable[str]) -> str: ...


# =============================================================================
# In-memory store
# =============================================================================


class InMemoryLinkStore:
    """Thread-safe dict-backed LinkStore."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._documents: dict[str, Document] = {}
        self._matches: dict[str, list[SimilarityMatch]] = {}
        self._processed: set[tuple[str, str]] = set()
        self._corpora: dict[str, list[str]] = {}

    def get_document(self, url: str) -> Document | None:
        with self._lock:
            return self._documents.get(url)

    def put_document(self, doc: Document) -> None:
        with self._lock:
            self._documents[doc.url] = doc
            self._changed()

    def get_cached_matches(self, source_url: str) -> list[SimilarityMatch] | None:
        with self._lock:
            matches = self._matches.get(source_url)
            return None if matches is None else list(matches)

    def put_matches(self, source_url: str, matches: list[SimilarityMatch]) -> None:
        with self._lock:
            self._matches[source_url] = list(matches)
            self._changed()

    def is_processed(self, source_url: str, corpus_id: str) -> bool:
        with self._lock:
            return (source_url, corpus_id) in self._processed

    def mark_processed(self, source_url: str, corpus_id: str) -> None:
        with self._lock:
            self._processed.add((source_url, corpus_id))
            self._changed()

    def clear_processed(self, source_url: str, corpus_id: str) -> None:
        with self._lock:
            self._processed.discard((source_url, corpus_id))
            self._changed()

    def get_or_create_corpus_id(self, sorted_target_urls: Iterable[str]) -> str:
        urls = sorted(sorted_target_urls)
        corpus_id = corpus_id_for(urls)
        with self._lock:
            if corpus_id not in self._corpora:
                self._corpora[corpus_id] = urls
                self._changed()
        return corpus_id

    def corpus_urls(self, corpus_id: str) -> list[str] | None:
        with self._lock:
            urls = self._corpora.get(corpus_id)
            return None if urls is None else list(urls)

    def _changed(self) -> None:
        """Hook called (under the lock) after every mutation."""


# =============================================================================
# JSON file store
# =============================================================================


class JsonLinkStore(InMemoryLinkStore):
    """InMemoryLinkStore persisted to a single JSON file."""

    def __init__(self, path: str, autosave: bool = True):
        super().__init__()
        self.path = path
        self.autosave = autosave
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self._load()

    def _load(self) -> None:
        if not os.path.exists(self.path):
            return
        with open(self.path, "r", encoding="utf-8") as f:
            state = json.load(f)
        self._documents = {
            url: Document.from_dict(doc) for url, doc in state.get("documents", {}).items()
        }
        self._matches = {
            url: [SimilarityMatch.from_dict(m) for m in matches]
            for url, matches in state.get("matches", {}).items()
        }
        self._processed = {(url, corpus_id) for url, corpus_id in state.get("processed", [])}
        self._corpora = {k: list(v) for k, v in state.get("corpora", {}).items()}
        log.info(
            "loaded store %s: %d documents, %d cached results",
            self.path, len(self._documents), len(self._matches),
        )

    def _state(self) -> dict[str, Any]:
        return {
            "updated_at_ms": int(time.time() * 1000),
            "documents": {url: doc.to_dict() for url, doc in self._documents.items()},
            "matches": {
                url: [m.to_dict() for m in matches] for url, matches in self._matches.items()
            },
            "processed": sorted([url, corpus_id] for url, corpus_id in self._processed),
            "corpora": self._corpora,
        }

    def save(self) -> None:
        with self._lock:
            state = self._state()
            tmp = self.path + ".tmp"
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(state, f, ensure_ascii=False)
            os.replace(tmp, self.path)

    def _changed(self) -> None:
        if self.autosave:
            self.save()


# =============================================================================
# Retrying wrapper
# =============================================================================


class RetryingLinkStore:
    """Applies a RetryPolicy to every call on the wrapped store."""

    def __init__(self, inner: LinkStore, policy: RetryPolicy | None = None):
        self.inner = inner
        self.policy = policy or RetryPolicy()

    def _call(self, method: str, *args: Any) -> Any:
        return call_with_retry(getattr(self.inner, method), *args, policy=self.policy)

    def get_document(self, url: str) -> Document | None:
        return self._call("get_document", url)

    def put_document(self, doc: Document) -> None:
        self._call("put_document", doc)

    def get_cached_matches(self, source_url: str) -> list[SimilarityMatch] | None:
        return self._call("get_cached_matches", source_url)

    def put_matches(self, source_url: str, matches: list[SimilarityMatch]) -> None:
        self._call("put_matches", source_url, matches)

    def is_processed(self, source_url: str, corpus_id: str) -> bool:
        return self._call("is_processed", source_url, corpus_id)

    def mark_processed(self, source_url: str, corpus_id: str) -> None:
        self._call("mark_processed", source_url, corpus_id)

    def clear_processed(self, source_url: str, corpus_id: str) -> None:
        self._call("clear_processed", source_url, corpus_id)

    def get_or_create_corpus_id(self, sorted_target_urls: Iterable[str]) -> str:
        return self._call("get_or_create_corpus_id", list(sorted_target_urls))


__all__ = [
    "InMemoryLinkStore",
    "JsonLinkStore",
    "LinkStore",
    "RetryingLinkStore",
    "corpus_id_for",
]
