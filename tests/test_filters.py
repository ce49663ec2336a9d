import pytest

from internal_linker.bloom_filter import BloomFilter, optimal_hashes, optimal_size
from internal_linker.candidates import CandidateSelector
from internal_linker.errors import DataError
from internal_linker.inverted_index import InvertedIndex
from internal_linker.lsh import LshIndex
from internal_linker.models import Document
from internal_linker.prefix_index import PrefixIndex


@pytest.fixture
def documents():
    return [
        Document(url="https://ex.com/cats", terms=("cats", "great", "pets")),
        Document(url="https://ex.com/dogs", terms=("dogs", "loyal", "pets")),
        Document(url="https://ex.com/birds", terms=("birds", "sing", "songs")),
    ]


# =============================================================================
# Bloom filter
# =============================================================================


def test_bloom_sizing():
    assert optimal_size(1000, 0.01) == 9586
    assert optimal_hashes(1000, 9586) == 7
    assert optimal_hashes(1, 10_000) == 16
    assert optimal_hashes(1000, 10) == 1


def test_bloom_has_no_false_negatives():
    bloom = BloomFilter(1000, 0.01)
    items = [f"term-{i}" for i in range(1000)]
    bloom.update(items)
    assert all(item in bloom for item in items)
    assert len(bloom) == 1000


def test_bloom_false_positive_rate_near_target():
    bloom = BloomFilter(1000, 0.01)
    bloom.update(f"term-{i}" for i in range(1000))
    probes = [f"other-{i}" for i in range(10_000)]
    false_positives = sum(1 for p in probes if bloom.test(p))
    assert false_positives / len(probes) < 0.03
    assert bloom.estimated_false_positive_rate() < 0.03


def test_bloom_clear():
    bloom = BloomFilter(10)
    bloom.add("cats")
    assert bloom.bits_set > 0
    bloom.clear()
    assert "cats" not in bloom
    assert bloom.bits_set == 0


@pytest.mark.parametrize("rate", [0.0, 1.0, -0.5, 2.0])
def test_bloom_rejects_invalid_rate(rate):
    with pytest.raises(DataError):
        BloomFilter(10, rate)


# =============================================================================
# Inverted index
# =============================================================================


def test_inverted_index_and_or(documents):
    index = InvertedIndex()
    index.rebuild(documents)
    cats, dogs, birds = (d.doc_id for d in documents)

    assert index.search(["pets"]) == {cats, dogs}
    assert index.search(["pets", "loyal"]) == {dogs}
    assert index.search(["cats", "dogs"]) == set()
    assert index.search_any(["cats", "dogs"]) == {cats, dogs}
    assert index.search_any(["songs", "quantum"]) == {birds}


def test_inverted_index_ignores_unknown_terms(documents):
    index = InvertedIndex()
    index.rebuild(documents)
    assert index.search(["pets", "quantum"]) == index.search(["pets"])
    assert index.search(["quantum"]) == set()


def test_inverted_index_remove_and_readd(documents):
    index = InvertedIndex()
    index.rebuild(documents)
    cats = documents[0].doc_id

    index.remove(cats)
    assert index.posting("great") == frozenset()
    assert cats not in index

    index.add(cats, ["cats", "pets"])
    index.add(cats, ["cats", "pets"])
    assert index.posting("pets") == frozenset({cats, documents[1].doc_id})
    assert len(index) == 3


def test_inverted_index_rebuild_is_idempotent(documents):
    index = InvertedIndex()
    index.rebuild(documents)
    size = index.vocabulary_size
    index.rebuild(documents)
    assert index.vocabulary_size == size
    assert len(index) == 3


# =============================================================================
# Prefix index
# =============================================================================


def test_prefix_index_matches_inflections(documents):
    index = PrefixIndex()
    index.rebuild(documents)
    cats, dogs, birds = (d.doc_id for d in documents)

    assert index.find_candidates("catalog") == {cats}
    assert index.find_candidates(["pet", "loyalty"]) == {dogs}
    assert index.find_candidates("singer songwriter") == {birds}


def test_prefix_index_skips_unknown_and_short_words(documents):
    index = PrefixIndex()
    index.rebuild(documents)
    assert index.find_candidates("zz quantum pets") == {documents[0].doc_id, documents[1].doc_id}
    assert index.find_candidates("quantum") == set()
    assert index.prefixes("a an the cats") == ["the", "cat"]


# =============================================================================
# LSH
# =============================================================================


def test_lsh_finds_near_duplicates():
    index = LshIndex()
    base = [f"word{i}" for i in range(40)]
    index.add("a", base)
    index.add("b", [f"other{i}" for i in range(40)])

    assert index.query(base) == {"a"}
    assert index.query(base[:39] + ["extra"]) >= {"a"}
    assert index.estimate_jaccard(base, base) == 1.0


def test_lsh_band_keys():
    index = LshIndex(num_hashes=128, bands=16)
    keys = index.band_keys(index.signature(["cats", "pets"]))
    assert len(keys) == 16
    assert [band for band, _ in keys] == list(range(16))
    assert all(isinstance(key, bytes) for _, key in keys)


def test_lsh_empty_inputs():
    index = LshIndex()
    assert index.query(["cats"]) == set()
    index.add("empty", [])
    assert "empty" not in index
    index.add("a", ["cats"])
    assert index.query([]) == set()


def test_lsh_readd_and_rebuild(documents):
    index = LshIndex()
    index.add("a", ["cats", "pets"])
    index.add("a", ["dogs", "loyal"])
    assert index.query(["dogs", "loyal"]) == {"a"}
    assert index.query(["cats", "pets"]) == set()

    index.rebuild(documents)
    first = index.query(["cats", "great", "pets"])
    index.rebuild(documents)
    assert index.query(["cats", "great", "pets"]) == first
    assert documents[0].doc_id in first
    assert len(index) == 3

    index.clear()
    assert len(index) == 0


@pytest.mark.parametrize("num_hashes, bands", [(128, 0), (100, 16), (8, 16)])
def test_lsh_rejects_bad_banding(num_hashes, bands):
    with pytest.raises(DataError):
        LshIndex(num_hashes=num_hashes, bands=bands)


# =============================================================================
# Candidate selection
# =============================================================================


def test_selector_bloom_short_circuit(documents):
    selector = CandidateSelector()
    selector.build(documents)
    assert selector.select(["quantum", "chromodynamics"]) == set()


@pytest.mark.parametrize("strategy", ["postings", "lsh", "prefix", "all"])
def test_selector_strategies_keep_exact_match(documents, strategy):
    selector = CandidateSelector(strategy=strategy)
    selector.build(documents)
    assert documents[0].doc_id in selector.select(["cats", "great", "pets"])


def test_selector_postings_is_union(documents):
    selector = CandidateSelector()
    selector.build(documents)
    assert selector.select(["cats", "loyal"]) == {documents[0].doc_id, documents[1].doc_id}


def test_selector_all_returns_every_target(documents):
    selector = CandidateSelector(strategy="all")
    selector.build(documents)
    assert selector.select(["songs"]) == {d.doc_id for d in documents}


def test_selector_requires_build():
    selector = CandidateSelector()
    assert not selector.is_built
    with pytest.raises(DataError):
        selector.select(["cats"])


def test_selector_rejects_unknown_strategy():
    with pytest.raises(DataError):
        CandidateSelector(strategy="magic")
