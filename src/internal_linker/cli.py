"""
Command line entry point.

Examples:
  # Link every source page to its 5 most similar target pages
  internal-linker --sources sources.csv --targets targets.csv --output links.csv

  # Keep tokenized documents and results between runs
  internal-linker --sources s.csv --targets t.csv --output links.csv --store state/links.json

  # Score in the calling process instead of the worker pool
  internal-linker --sources s.csv --targets t.csv --output links.csv --no-pool
"""

from __future__ import annotations

import argparse
import logging
import sys

from tqdm import tqdm

from internal_linker.config import CANDIDATE_STRATEGIES, LinkerConfig
from internal_linker.errors import LinkerError
from internal_linker.export import write_csv
from internal_linker.ingest import read_table
from internal_linker.logging_ import setup_logging
from internal_linker.orchestrator import LinkOrchestrator
from internal_linker.persistence import InMemoryLinkStore, JsonLinkStore, RetryingLinkStore
from internal_linker.retry import RetryPolicy

log = logging.getLogger("internal_linker.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="internal-linker",
        description="Suggest internal links between source and target pages using TF-IDF similarity.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--sources", required=True, help="CSV of (url, body) source pages")
    parser.add_argument("--targets", required=True, help="CSV of (url, body) target pages")
    parser.add_argument("--output", "-o", required=True, help="CSV file for the suggested links")
    parser.add_argument(
        "--store", default=None,
        help="JSON file keeping documents and results between runs"
    )
    parser.add_argument(
        "--workers", type=int, default=None,
        help="Worker processes (default: min(2 x cores, 16))"
    )
    parser.add_argument(
        "--no-pool", action="store_true",
        help="Score in the calling process"
    )
    parser.add_argument("--top-k", type=int, default=None, help="Matches kept per source")
    parser.add_argument("--threshold", type=float, default=None, help="Minimum similarity")
    parser.add_argument(
        "--strategy", choices=CANDIDATE_STRATEGIES, default=None,
        help="Candidate pre-filter"
    )
    parser.add_argument("--log-file", default=None, help="Also write logs to this file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO, args.log_file)

    try:
        config = LinkerConfig.from_env(
            top_k=args.top_k,
            similarity_threshold=args.threshold,
            candidate_strategy=args.strategy,
            max_workers=args.workers,
            use_pool=not args.no_pool,
        )
    except LinkerError as e:
        log.error("invalid configuration: %s", e)
        return 2

    sources = read_table(args.sources)
    targets = read_table(args.targets)
    if not sources.rows or not targets.rows:
        log.error("no valid rows in %s", args.sources if not sources.rows else args.targets)
        return 1

    json_store = JsonLinkStore(args.store, autosave=False) if args.store else None
    store = RetryingLinkStore(
        json_store if json_store is not None else InMemoryLinkStore(),
        RetryPolicy(max_attempts=config.max_retries, base_delay=config.retry_base_delay),
    )

    results = []
    with LinkOrchestrator(config, store=store) as linker:
        with tqdm(total=len(targets.rows), desc="Vectorizing targets", unit="doc") as bar:
            def advance(done: int, total: int) -> None:
                bar.update(done - bar.n)

            try:
                linker.prepare_targets(targets.rows, progress=advance)
            except LinkerError as e:
                log.error("could not prepare targets: %s", e)
                return 1

        try:
            for result in tqdm(
                linker.iter_results(sources.rows),
                total=len(sources.rows),
                desc="Linking",
                unit="page",
            ):
                results.append(result)
        except KeyboardInterrupt:
            log.warning("interrupted, cancelling outstanding work")
            linker.cancel()
        finally:
            if json_store is not None:
                json_store.save()

    rows = write_csv(results, args.output)
    log.info("wrote %d rows for %d sources to %s", rows, len(results), args.output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
