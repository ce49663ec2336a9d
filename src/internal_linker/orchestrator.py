"""
End-to-end linking run.

1. Fingerprint the target corpus; reuse the prepared snapshot (vocabulary,
   IDF, target vectors, candidate filters, corpus id) when unchanged.
2. For every source not yet processed for this corpus id: tokenize,
   vectorize, pick candidates and score them in the worker pool, or inline
   when no pool is configured.
3. Merge with cached results from the store. A source marked processed but
   without cached matches has its status cleared and is scored again.
4. Store matches and mark the source processed only when it has at least
   one match (best effort).

Results are yielded as they complete; failures of single sources are
collected in the RunReport and never abort the run.

Usage:
    from internal_linker.orchestrator import LinkOrchestrator

    with LinkOrchestrator(config) as linker:
        report = linker.run(sources=[(url, body), ...], targets=[(url, body), ...])
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Iterator, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, wait
from dataclasses import dataclass, field
from typing import Any

from internal_linker.cache import MemoryManager, VectorCache
from internal_linker.candidates import CandidateSelector
from internal_linker.config import LinkerConfig
from internal_linker.errors import DataError, TaskCancelledError
from internal_linker.models import Document, SimilarityResult
from internal_linker.persistence import InMemoryLinkStore, LinkStore, corpus_id_for
from internal_linker.scoring import ScoringRequest, extract_topics, score_source, score_task
from internal_linker.tfidf import TfidfModel, corpus_fingerprint
from internal_linker.tokenizer import Preprocessor
from internal_linker.worker_pool import Task, WorkerPool, WorkerSpec

log = logging.getLogger("internal_linker.orchestrator")

# Sources between two memory-pressure checks
MEMORY_CHECK_EVERY = 100

# Outstanding pool tasks allowed per worker before submission blocks
MAX_IN_FLIGHT_PER_WORKER = 2

# (url, body) or (url, body, title) rows, or ready Documents
SourceItem = Document | tuple[str, str] | tuple[str, str, str]


@dataclass
class TargetSnapshot:
    """Everything derived from one target corpus; read-only during a run."""
    fingerprint: str
    corpus_id: str
    documents: list[Document]
    matrix: Any
    selector: CandidateSelector
    row_of: dict[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.row_of:
            self.row_of = {doc.doc_id: i for i, doc in enumerate(self.documents)}

    def __len__(self) -> int:
        return len(self.documents)

    def matches_documents(self, documents: Sequence[Document]) -> bool:
        if len(documents) != len(self.documents):
            return False
        by_url = {doc.url: doc.terms for doc in self.documents}
        return all(by_url.get(doc.url) == doc.terms for doc in documents)


@dataclass
class RunReport:
    """Outcome of one run, keyed by source URL."""
    results: dict[str, SimilarityResult] = field(default_factory=dict)
    failures: dict[str, BaseException] = field(default_factory=dict)
    cancelled: list[str] = field(default_factory=list)
    cached: int = 0
    computed: int = 0
    peak_in_flight: int = 0

    @property
    def total_matches(self) -> int:
        return sum(len(r.matches) for r in self.results.values())


class LinkOrchestrator:
    """Owns the target snapshot, the caches and (optionally) the worker pool."""

    def __init__(
        self,
        config: LinkerConfig | None = None,
        store: LinkStore | None = None,
        pool: WorkerPool | None = None,
        memory_manager: MemoryManager | None = None,
    ):
        self.config = config or LinkerConfig()
        self.store = store if store is not None else InMemoryLinkStore()
        self.memory = memory_manager or MemoryManager(
            threshold=self.config.memory_threshold,
            backoff_seconds=self.config.memory_backoff,
        )
        self.vector_cache = VectorCache(
            max_entries=self.config.vector_cache_size, memory_manager=self.memory
        )
        self.model = TfidfModel(cache=self.vector_cache)
        self.preprocessor = Preprocessor(store=self.store, memory_manager=self.memory)

        self._pool = pool
        self._owns_pool = False
        self._snapshot: TargetSnapshot | None = None
        self._cancel = threading.Event()
        self._inline_logged = False

    # -------------------------------------------------------------------------
    # Resources
    # -------------------------------------------------------------------------

    @property
    def pool(self) -> WorkerPool | None:
        """The worker pool, started on first use unless use_pool is off."""
        if self._pool is None and self.config.use_pool:
            self._pool = WorkerPool(WorkerSpec(score_task), size=self.config.max_workers or None)
            self._owns_pool = True
        return self._pool

    @property
    def snapshot(self) -> TargetSnapshot | None:
        return self._snapshot

    def close(self) -> None:
        if self._pool is not None and self._owns_pool:
            self._pool.shutdown()
            self._pool = None
            self._owns_pool = False

    def __enter__(self) -> "LinkOrchestrator":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def cancel(self) -> None:
        """Stop submitting sources and cancel the pool's outstanding work."""
        self._cancel.set()
        if self._pool is not None:
            self._pool.cancel_all()

    # -------------------------------------------------------------------------
    # Target preparation
    # -------------------------------------------------------------------------

    def _as_document(self, item: SourceItem) -> Document:
        if isinstance(item, Document):
            return item
        if isinstance(item, (tuple, list)) and len(item) in (2, 3):
            url, body = item[0], item[1]
            title = item[2] if len(item) == 3 else ""
            return self.preprocessor.preprocess(url, body, title)
        raise DataError(f"Expected a Document or a (url, body[, title]) row, got {item!r}")

    def prepare_targets(
        self,
        targets: Iterable[SourceItem],
        progress: Callable[[int, int], None] | None = None,
    ) -> TargetSnapshot:
        """Build (or reuse) vocabulary, IDF table, target vectors and filters."""
        documents: list[Document] = []
        seen: set[str] = set()
        for item in targets:
            doc = self._as_document(item)
            if doc.url in seen:
                log.warning("duplicate target %s ignored", doc.url)
                continue
            seen.add(doc.url)
            documents.append(doc)
        if not documents:
            raise DataError("empty corpus: no target documents")

        fingerprint = corpus_fingerprint(documents)
        snapshot = self._snapshot
        if (
            snapshot is not None
            and snapshot.fingerprint == fingerprint
            and snapshot.matches_documents(documents)
        ):
            log.info("target corpus unchanged (%s), reusing prepared vectors", fingerprint[:12])
            return snapshot

        self.model.fit(documents)
        matrix = self.model.transform_many(documents, progress=progress, yield_every=self.config.yield_every)

        selector = CandidateSelector(
            strategy=self.config.candidate_strategy,
            num_hashes=self.config.num_hashes,
            bands=self.config.bands,
            bloom_fp_rate=self.config.bloom_fp_rate,
        )
        selector.build(documents)

        urls = sorted(doc.url for doc in documents)
        try:
            corpus_id = self.store.get_or_create_corpus_id(urls)
        except Exception:
            log.exception("failed to register corpus id, using the local content hash")
            corpus_id = corpus_id_for(urls)

        self._snapshot = TargetSnapshot(
            fingerprint=fingerprint,
            corpus_id=corpus_id,
            documents=documents,
            matrix=matrix,
            selector=selector,
        )
        log.info(
            "prepared %d targets: %d terms, corpus id %s",
            len(documents), self.model.dimension, corpus_id[:12],
        )
        return self._snapshot

    def _require_snapshot(self) -> TargetSnapshot:
        if self._snapshot is None:
            raise DataError("No target corpus prepared; call prepare_targets() first")
        return self._snapshot

    # -------------------------------------------------------------------------
    # Per-source steps
    # -------------------------------------------------------------------------

    def build_request(self, source: Document) -> ScoringRequest:
        """Vectorize a source and gather its candidate targets."""
        snapshot = self._require_snapshot()
        vector = self.model.transform(source.terms)
        rows = sorted(
            snapshot.row_of[doc_id]
            for doc_id in snapshot.selector.select(source.terms)
            if doc_id in snapshot.row_of
        )
        # A page never links to itself
        rows = [r for r in rows if snapshot.documents[r].url != source.url]
        return ScoringRequest(
            source=source,
            source_vector=vector,
            candidates=[snapshot.documents[r] for r in rows],
            candidate_vectors=snapshot.matrix[rows],
            threshold=self.config.similarity_threshold,
            top_k=self.config.top_k,
        )

    def _cached_result(self, source: Document, corpus_id: str) -> SimilarityResult | None:
        try:
            if not self.store.is_processed(source.url, corpus_id):
                return None
            matches = self.store.get_cached_matches(source.url)
            if matches:
                return SimilarityResult(
                    source_url=source.url,
                    source_title=source.title,
                    matches=matches,
                    topics=extract_topics(source.terms),
                    from_cache=True,
                )
            log.info("%s marked processed without cached matches, reprocessing", source.url)
            self.store.clear_processed(source.url, corpus_id)
        except Exception:
            log.exception("failed to read cached results for %s", source.url)
        return None

    def _persist(self, result: SimilarityResult, corpus_id: str) -> None:
        if not result.should_mark_processed:
            return
        try:
            self.store.put_matches(result.source_url, result.matches)
            self.store.mark_processed(result.source_url, corpus_id)
        except Exception:
            log.exception("failed to store results for %s", result.source_url)

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    def iter_results(
        self,
        sources: Iterable[SourceItem],
        report: RunReport | None = None,
    ) -> Iterator[SimilarityResult]:
        """
        Yield one SimilarityResult per source as soon as it is available.

        Completion order is not submission order. Failures and cancellations
        are recorded in ``report`` instead of being raised.
        """
        snapshot = self._require_snapshot()
        report = report if report is not None else RunReport()
        self._cancel.clear()
        pool = self.pool
        if pool is None and not self._inline_logged:
            log.info("no worker pool configured, scoring sources in the calling process")
            self._inline_logged = True

        pending: dict[Future, Document] = {}
        max_in_flight = pool.size * MAX_IN_FLIGHT_PER_WORKER if pool is not None else 0
        seen: set[str] = set()

        for count, item in enumerate(sources, start=1):
            if self._cancel.is_set():
                log.info("run cancelled, no further sources submitted")
                break
            try:
                source = self._as_document(item)
            except Exception as e:
                url = item[0] if isinstance(item, (tuple, list)) and item else repr(item)
                log.error("could not preprocess source %s: %s", url, e)
                report.failures[str(url)] = e
                continue
            if source.url in seen:
                log.warning("duplicate source %s ignored", source.url)
                continue
            seen.add(source.url)

            cached = self._cached_result(source, snapshot.corpus_id)
            if cached is not None:
                report.cached += 1
                report.results[source.url] = cached
                yield cached
                continue

            if count % MEMORY_CHECK_EVERY == 0:
                self.memory.relieve()

            if pool is None:
                result = self._score_inline(source, snapshot, report)
                if result is not None:
                    yield result
                continue

            # Bound queued requests (and their vectors) to a few per worker
            while len(pending) >= max_in_flight:
                yield from self._drain(pending, snapshot, report, block=True)
            if self._cancel.is_set():
                log.info("run cancelled while waiting for a free slot")
                report.cancelled.append(source.url)
                break

            try:
                request = self.build_request(source)
                pending[pool.submit(Task(source.url, request))] = source
            except Exception as e:
                log.error("could not submit source %s: %s", source.url, e)
                report.failures[source.url] = e
                continue
            report.peak_in_flight = max(report.peak_in_flight, len(pending))

            yield from self._drain(pending, snapshot, report, block=False)

        while pending:
            yield from self._drain(pending, snapshot, report, block=True)

    def _drain(
        self,
        pending: dict[Future, Document],
        snapshot: TargetSnapshot,
        report: RunReport,
        block: bool,
    ) -> Iterator[SimilarityResult]:
        """Collect finished futures; with ``block`` wait for at least one."""
        if block:
            done, _ = wait(list(pending), return_when=FIRST_COMPLETED)
        else:
            done = [f for f in pending if f.done()]
        for future in done:
            result = self._collect(future, pending.pop(future), snapshot, report)
            if result is not None:
                yield result

    def _score_inline(
        self, source: Document, snapshot: TargetSnapshot, report: RunReport
    ) -> SimilarityResult | None:
        try:
            result = score_source(self.build_request(source))
        except Exception as e:
            log.error("scoring %s failed: %s", source.url, e)
            report.failures[source.url] = e
            return None
        return self._accept(result, snapshot, report)

    def _collect(
        self, future: Future, source: Document, snapshot: TargetSnapshot, report: RunReport
    ) -> SimilarityResult | None:
        try:
            result = future.result()
        except TaskCancelledError:
            report.cancelled.append(source.url)
            return None
        except Exception as e:
            log.error("scoring %s failed: %s", source.url, e)
            report.failures[source.url] = e
            return None
        return self._accept(result, snapshot, report)

    def _accept(
        self, result: SimilarityResult, snapshot: TargetSnapshot, report: RunReport
    ) -> SimilarityResult:
        self._persist(result, snapshot.corpus_id)
        report.computed += 1
        report.results[result.source_url] = result
        return result

    def run(
        self,
        sources: Iterable[SourceItem],
        targets: Iterable[SourceItem] | None = None,
        on_result: Callable[[SimilarityResult], None] | None = None,
    ) -> RunReport:
        """Prepare targets (if given), process every source and return the report."""
        if targets is not None:
            self.prepare_targets(targets)
        report = RunReport()
        for result in self.iter_results(sources, report):
            if on_result is not None:
                on_result(result)
        log.info(
            "run finished: %d results (%d cached, %d computed), %d failures, %d cancelled",
            len(report.results), report.cached, report.computed,
            len(report.failures), len(report.cancelled),
        )
        return report


__all__ = [
    "LinkOrchestrator",
    "RunReport",
    "TargetSnapshot",
]
