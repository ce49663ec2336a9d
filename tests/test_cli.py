import csv

import pytest

from internal_linker.cli import build_parser, main
from internal_linker.export import EXPORT_HEADER
from internal_linker.persistence import JsonLinkStore


@pytest.fixture
def tables(tmp_path):
    sources = tmp_path / "sources.csv"
    sources.write_text(
        "url,body\n"
        "https://ex.com/src,cats make great pets\n"
        "https://ex.com/other,quantum chromodynamics lattice\n",
        encoding="utf-8",
    )
    targets = tmp_path / "targets.csv"
    targets.write_text(
        "url,body\n"
        "https://ex.com/cats,cats are great pets\n"
        "https://ex.com/dogs,dogs are loyal animals\n",
        encoding="utf-8",
    )
    return str(sources), str(targets)


def test_cli_writes_links(tmp_path, tables):
    sources, targets = tables
    output = tmp_path / "links.csv"
    store = tmp_path / "state" / "links.json"

    code = main([
        "--sources", sources,
        "--targets", targets,
        "--output", str(output),
        "--store", str(store),
        "--no-pool",
    ])
    assert code == 0

    with open(output, encoding="utf-8", newline="") as f:
        rows = list(csv.reader(f))
    assert tuple(rows[0]) == EXPORT_HEADER
    by_source = {row[0]: row for row in rows[1:]}
    assert by_source["https://ex.com/src"][1:3] == ["https://ex.com/cats", "100.00"]
    assert by_source["https://ex.com/other"][1] == "No matches found"

    saved = JsonLinkStore(str(store))
    assert saved.get_cached_matches("https://ex.com/src")
    assert saved.get_cached_matches("https://ex.com/other") is None


def test_cli_rejects_invalid_config(tmp_path, tables):
    sources, targets = tables
    code = main([
        "--sources", sources,
        "--targets", targets,
        "--output", str(tmp_path / "links.csv"),
        "--top-k", "0",
    ])
    assert code == 2


def test_cli_fails_without_valid_rows(tmp_path, tables):
    sources, _ = tables
    empty = tmp_path / "empty.csv"
    empty.write_text("url,body\nftp://ex.com/a,not an http page\n", encoding="utf-8")
    code = main([
        "--sources", sources,
        "--targets", str(empty),
        "--output", str(tmp_path / "links.csv"),
        "--no-pool",
    ])
    assert code == 1
    assert not (tmp_path / "links.csv").exists()


def test_parser_choices():
    parser = build_parser()
    args = parser.parse_args(["--sources", "s.csv", "--targets", "t.csv", "-o", "out.csv", "--strategy", "lsh"])
    assert args.strategy == "lsh"
    assert args.no_pool is False
    with pytest.raises(SystemExit):
        parser.parse_args(["--sources", "s.csv", "--targets", "t.csv", "-o", "out.csv", "--strategy", "magic"])
