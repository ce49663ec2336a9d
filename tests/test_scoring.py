import numpy as np
import pytest
from scipy.sparse import csr_matrix

from internal_linker.errors import DataError
from internal_linker.messages import (
    ErrorMessage,
    LogMessage,
    ProgressMessage,
    ResultMessage,
    parse_message,
)
from internal_linker.models import Document
from internal_linker.scoring import (
    NumpyBackend,
    ScoringRequest,
    cosine_similarity,
    extract_topics,
    score_source,
    select_top_k,
    suggest_anchor,
)
from internal_linker.tfidf import TfidfModel


def _unit(v):
    v = np.asarray(v, dtype=np.float64)
    return v / np.linalg.norm(v)


# =============================================================================
# Similarity
# =============================================================================


def test_self_similarity_is_one():
    backend = NumpyBackend()
    v = _unit([0.3, 0.0, 1.2, 4.0])
    assert np.isclose(backend.dot_product(v, v), 1.0)


def test_similarity_bounds():
    rng = np.random.default_rng(7)
    backend = NumpyBackend()
    source = _unit(rng.normal(size=16))
    targets = np.vstack([_unit(rng.normal(size=16)) for _ in range(50)])
    scores = backend.batch_similarity(source, targets)
    assert scores.shape == (50,)
    assert np.all(scores >= -1.0) and np.all(scores <= 1.0)


def test_batch_similarity_accepts_sparse_dense_and_lists():
    backend = NumpyBackend()
    source = _unit([1.0, 1.0, 0.0])
    rows = [_unit([1.0, 1.0, 0.0]), _unit([0.0, 0.0, 1.0]), _unit([1.0, 0.0, 0.0])]
    expected = np.array([1.0, 0.0, np.sqrt(0.5)])

    assert np.allclose(backend.batch_similarity(source, csr_matrix(np.vstack(rows))), expected)
    assert np.allclose(backend.batch_similarity(source, np.vstack(rows)), expected)
    assert np.allclose(backend.batch_similarity(source, rows), expected)
    assert backend.batch_similarity(source, []).shape == (0,)


def test_dimension_mismatch_raises():
    backend = NumpyBackend()
    source = _unit([1.0, 1.0, 0.0])
    with pytest.raises(DataError):
        backend.dot_product(source, np.ones(4))
    with pytest.raises(DataError):
        backend.batch_similarity(source, csr_matrix(np.ones((2, 4))))
    with pytest.raises(DataError):
        backend.batch_similarity(source, np.ones((2, 4)))
    with pytest.raises(DataError):
        backend.batch_similarity(source, [np.ones(3), np.ones(4)])
    with pytest.raises(DataError):
        cosine_similarity(np.ones(3), np.ones(2))


def test_cosine_similarity():
    assert np.isclose(cosine_similarity([1.0, 0.0], [2.0, 0.0]), 1.0)
    assert np.isclose(cosine_similarity([1.0, 0.0], [-3.0, 0.0]), -1.0)
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0


# =============================================================================
# Ranking
# =============================================================================


@pytest.mark.parametrize(
    "scores, top_k, threshold, expected",
    [
        ([0.2, 0.9, 0.5], 5, 0.01, [1, 2, 0]),
        ([0.2, 0.9, 0.5], 2, 0.01, [1, 2]),
        ([0.2, 0.9, 0.5], 5, 0.3, [1, 2]),
        ([0.005, 0.0], 5, 0.01, []),
        ([0.5, 0.7, 0.5, 0.5], 3, 0.01, [1, 0, 2]),
        ([0.01, 0.0], 5, 0.01, [0]),
    ],
)
def test_select_top_k(scores, top_k, threshold, expected):
    indices, top_scores = select_top_k(np.array(scores), top_k, threshold)
    assert indices.tolist() == expected
    assert np.all(np.diff(top_scores) <= 0)


# =============================================================================
# Anchors and topics
# =============================================================================


@pytest.mark.parametrize(
    "text, expected",
    [
        ("The quick brown fox jumps", "The quick brown"),
        ("a big cat is on", "a big cat is on"),
        ("a b c d e f g", "a b c d e"),
        ("hi", "hi"),
        ("", ""),
    ],
)
def test_suggest_anchor(text, expected):
    assert suggest_anchor(text) == expected


def test_extract_topics():
    terms = ["pets", "cats", "pets", "the", "dogs", "cats", "pets", "ox", "birds", "fish", "owls"]
    topics = extract_topics(terms)
    assert topics == ("pets", "cats", "dogs", "birds", "fish")
    assert extract_topics(terms, max_topics=2) == ("pets", "cats")
    assert extract_topics([]) == ()


# =============================================================================
# Source scoring
# =============================================================================


def _request(source_terms, targets, **kwargs):
    model = TfidfModel()
    model.fit(targets)
    source = Document(url="https://ex.com/src", title="Source", terms=tuple(source_terms))
    return ScoringRequest(
        source=source,
        source_vector=model.transform(source.terms),
        candidates=targets,
        candidate_vectors=model.transform_many(targets),
        **kwargs,
    )


def test_score_source_ranks_candidates():
    targets = [
        Document(url="https://ex.com/cats", title="", body="cats are great pets", terms=("cats", "great", "pets")),
        Document(url="https://ex.com/dogs", title="Dogs", body="dogs are loyal animals", terms=("dogs", "loyal", "animals")),
    ]
    result = score_source(_request(["cats", "great", "pets"], targets))

    assert result.source_url == "https://ex.com/src"
    assert [m.target_url for m in result.matches] == ["https://ex.com/cats"]
    match = result.top_match
    assert np.isclose(match.similarity, 1.0)
    assert match.title == "https://ex.com/cats"
    assert match.suggested_anchor == "cats are great"
    assert match.topics == ("cats", "great", "pets")
    assert result.topics == ("cats", "great", "pets")


def test_score_source_without_candidates():
    source = Document(url="https://ex.com/src", terms=("quantum",))
    result = score_source(ScoringRequest(source, np.zeros(3), [], csr_matrix((0, 3))))
    assert result.matches == []
    assert not result.should_mark_processed


def test_score_source_rejects_misaligned_candidates():
    targets = [
        Document(url="https://ex.com/cats", terms=("cats", "pets")),
        Document(url="https://ex.com/dogs", terms=("dogs", "pets")),
    ]
    request = _request(["pets"], targets)
    request.candidates = targets[:1]
    with pytest.raises(DataError):
        score_source(request)


# =============================================================================
# Worker messages
# =============================================================================


def test_parse_message_round_trips_each_type():
    messages = [
        ProgressMessage("t1", 0.5, "half"),
        ResultMessage("t1", {"value": 1}),
        ErrorMessage("t1", "boom", "ValueError", "trace", critical=True),
        LogMessage("t1", "warning", "careful"),
    ]
    for message in messages:
        assert parse_message(message.to_wire()) == message


@pytest.mark.parametrize(
    "raw",
    [
        "result",
        {"type": "result", "value": 1},
        {"type": "bogus", "task_id": "t1"},
        {"type": "progress", "task_id": "t1", "progress": "half"},
        {"type": "progress", "task_id": "t1"},
        {"type": "log", "task_id": "t1", "level": "loud", "message": "x"},
        {"type": "error", "task_id": "t1"},
    ],
)
def test_parse_message_rejects_malformed(raw):
    with pytest.raises(DataError):
        parse_message(raw)
