"""
Two-column (URL, body) table ingestion with per-row diagnostics.

Malformed rows are rejected one by one and reported as issues; a file only
fails as a whole when it cannot be read. Rows with fewer than three words are
kept but reported as warnings.
"""

from __future__ import annotations

import csv
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import TextIO
from urllib.parse import urlsplit

log = logging.getLogger("internal_linker.ingest")

MIN_BODY_CHARS = 10
MAX_BODY_CHARS = 50_000
MIN_BODY_WORDS = 3
ALLOWED_SCHEMES = ("http", "https")


@dataclass(frozen=True)
class IngestIssue:
    line: int
    message: str
    severity: str = "error"

    def __str__(self) -> str:
        return f"Line {self.line}: {self.message}"


@dataclass
class IngestReport:
    rows: list[tuple[str, str]] = field(default_factory=list)
    issues: list[IngestIssue] = field(default_factory=list)

    @property
    def errors(self) -> list[IngestIssue]:
        return [i for i in self.issues if i.severity == "error"]

    @property
    def warnings(self) -> list[IngestIssue]:
        return [i for i in self.issues if i.severity == "warning"]

    @property
    def urls(self) -> list[str]:
        return [url for url, _ in self.rows]


def _url_problem(url: str) -> str | None:
    try:
        parts = urlsplit(url)
    except ValueError:
        return "Invalid URL format"
    if not parts.scheme:
        return "Invalid URL format"
    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        return "URL must use HTTP or HTTPS protocol"
    if not parts.netloc:
        return "Invalid URL format"
    return None


def _looks_like_header(row: Sequence[str]) -> bool:
    if not row:
        return False
    first = row[0].strip()
    return not first or _url_problem(first) is not None


def validate_rows(
    rows: Iterable[Sequence[str]],
    has_header: bool | None = None,
) -> IngestReport:
    """
    Validate raw (url, body) rows.

    Args:
        rows: Parsed table rows, header included if present
        has_header: Skip the first row; None detects a header whose first
            cell is not a URL

    Returns:
        IngestReport with the accepted rows and every issue found
    """
    report = IngestReport()
    seen: set[str] = set()

    for index, row in enumerate(rows):
        line = index + 1
        if index == 0 and (has_header or (has_header is None and _looks_like_header(row))):
            continue
        if not any(cell.strip() for cell in row):
            continue

        if len(row) != 2:
            report.issues.append(IngestIssue(line, "Row must have exactly 2 columns"))
            continue
        url, body = (cell.strip() for cell in row)

        if not url:
            report.issues.append(IngestIssue(line, "URL is empty"))
            continue
        problem = _url_problem(url)
        if problem is not None:
            report.issues.append(IngestIssue(line, problem))
            continue
        if url in seen:
            report.issues.append(IngestIssue(line, "Duplicate URL found"))
            continue
        seen.add(url)

        if not body:
            report.issues.append(IngestIssue(line, "Body text is empty"))
            continue
        if len(body) < MIN_BODY_CHARS:
            report.issues.append(
                IngestIssue(line, f"Body text is too short (minimum {MIN_BODY_CHARS} characters)")
            )
            continue
        if len(body) > MAX_BODY_CHARS:
            report.issues.append(
                IngestIssue(line, f"Body text is too long (maximum {MAX_BODY_CHARS:,} characters)")
            )
            continue
        if len(body.split()) < MIN_BODY_WORDS:
            report.issues.append(
                IngestIssue(line, f"Body text has too few words (minimum {MIN_BODY_WORDS} words)", "warning")
            )

        report.rows.append((url, body))

    return report


def read_table(source: str | TextIO, has_header: bool | None = None) -> IngestReport:
    """Read and validate a (url, body) CSV file or open text stream."""
    if isinstance(source, str):
        with open(source, "r", encoding="utf-8-sig", newline="") as f:
            report = validate_rows(csv.reader(f), has_header)
        name = source
    else:
        report = validate_rows(csv.reader(source), has_header)
        name = getattr(source, "name", "<stream>")

    for issue in report.issues:
        log.log(logging.WARNING if issue.severity == "error" else logging.INFO, "%s: %s", name, issue)
    log.info("%s: %d valid rows, %d rejected", name, len(report.rows), len(report.errors))
    return report


__all__ = [
    "IngestIssue",
    "IngestReport",
    "read_table",
    "validate_rows",
]
