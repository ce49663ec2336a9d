"""Flatten similarity results into CSV rows, one per match."""

from __future__ import annotations

import csv
import os
from collections.abc import Iterable
from typing import TextIO

from internal_linker.models import SimilarityResult

EXPORT_HEADER = (
    "Source URL",
    "Match URL",
    "Similarity (%)",
    "Match Topics",
    "Source Topics",
)
NO_MATCH_PLACEHOLDER = "No matches found"
TOPIC_SEPARATOR = "; "


def flatten_results(results: Iterable[SimilarityResult]) -> list[tuple[str, str, str, str, str]]:
    """
    (source_url, match_url, similarity_percent, match_topics, source_topics) rows.

    A source without matches still gets one placeholder row.
    """
    rows = []
    for result in results:
        source_topics = TOPIC_SEPARATOR.join(result.topics)
        if not result.matches:
            rows.append((result.source_url, NO_MATCH_PLACEHOLDER, "", "", source_topics))
            continue
        for match in result.matches:
            rows.append((
                result.source_url,
                match.target_url,
                f"{match.similarity * 100:.2f}",
                TOPIC_SEPARATOR.join(match.topics),
                source_topics,
            ))
    return rows


def write_csv(results: Iterable[SimilarityResult], target: str | TextIO) -> int:
    """Write the flattened rows with a header; returns the number of data rows."""
    rows = flatten_results(results)
    if isinstance(target, str):
        directory = os.path.dirname(target)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(target, "w", encoding="utf-8", newline="") as f:
            _write(f, rows)
    else:
        _write(target, rows)
    return len(rows)


def _write(f: TextIO, rows: list[tuple[str, str, str, str, str]]) -> None:
    writer = csv.writer(f)
    writer.writerow(EXPORT_HEADER)
    writer.writerows(rows)


__all__ = [
    "EXPORT_HEADER",
    "NO_MATCH_PLACEHOLDER",
    "flatten_results",
    "write_csv",
]
