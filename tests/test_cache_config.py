import numpy as np
import pytest

from internal_linker.cache import MemoryManager, VectorCache
from internal_linker.config import LinkerConfig
from internal_linker.errors import DataError


# =============================================================================
# Vector cache
# =============================================================================


def test_vector_cache_lru_eviction():
    cache = VectorCache(max_entries=2)
    k1, k2, k3 = (VectorCache.make_key([t], "fp") for t in ("a", "b", "c"))
    cache.put(k1, np.ones(3))
    cache.put(k2, np.ones(3))
    assert cache.get(k1) is not None
    cache.put(k3, np.ones(3))

    assert cache.get(k2) is None
    assert cache.get(k1) is not None
    assert cache.get(k3) is not None
    assert len(cache) == 2
    assert cache.hits == 3
    assert cache.misses == 1


def test_vector_cache_byte_bound():
    cache = VectorCache(max_entries=100, max_bytes=200)
    for i in range(5):
        cache.put(VectorCache.make_key([str(i)], "fp"), np.zeros(10))
    assert cache.nbytes <= 200
    assert len(cache) == 2

    cache.put(VectorCache.make_key(["huge"], "fp"), np.zeros(100))
    assert cache.get(VectorCache.make_key(["huge"], "fp")) is None


def test_vector_cache_key_ignores_term_order():
    assert VectorCache.make_key(["b", "a"], "fp") == VectorCache.make_key(["a", "b"], "fp")
    assert VectorCache.make_key(["a"], "fp1") != VectorCache.make_key(["a"], "fp2")


def test_vector_cache_invalidation():
    cache = VectorCache()
    assert cache.invalidate_on_corpus_change("one") is False
    cache.put(VectorCache.make_key(["a"], "one"), np.ones(2))
    assert cache.invalidate_on_corpus_change("one") is False
    assert len(cache) == 1

    assert cache.invalidate_on_corpus_change("two") is True
    assert len(cache) == 0
    assert cache.nbytes == 0
    assert cache.fingerprint == "two"


# =============================================================================
# Memory manager
# =============================================================================


def test_memory_manager_relieves_pressure(monkeypatch):
    slept = []
    monkeypatch.setattr("internal_linker.cache.time.sleep", slept.append)
    usage = {"value": 0.5}
    manager = MemoryManager(threshold=0.7, backoff_seconds=0.5, usage_fn=lambda: usage["value"])
    cleared = []
    manager.register("a", lambda: cleared.append("a"))
    manager.register("b", lambda: cleared.append("b"))

    assert manager.relieve() is False
    assert cleared == []

    usage["value"] = 0.9
    assert manager.under_pressure()
    assert manager.relieve() is True
    assert sorted(cleared) == ["a", "b"]
    assert slept == [0.5]

    manager.unregister("a")
    assert manager.registered == ["b"]


def test_memory_manager_clears_registered_caches():
    manager = MemoryManager(usage_fn=lambda: 0.0)
    cache = VectorCache(memory_manager=manager)
    cache.put(VectorCache.make_key(["a"], "fp"), np.ones(2))
    manager.clear_all()
    assert len(cache) == 0


def test_memory_manager_reads_system_usage():
    assert 0.0 <= MemoryManager().usage() <= 1.0


# =============================================================================
# Config
# =============================================================================


def test_config_defaults():
    config = LinkerConfig()
    assert config.top_k == 5
    assert config.similarity_threshold == 0.01
    assert config.num_hashes == 128
    assert config.bands == 16
    assert config.candidate_strategy == "postings"
    assert config.to_dict()["use_pool"] is True


@pytest.mark.parametrize(
    "overrides",
    [
        {"top_k": 0},
        {"similarity_threshold": 1.5},
        {"num_hashes": 100, "bands": 16},
        {"bands": 0},
        {"bloom_fp_rate": 0.0},
        {"candidate_strategy": "magic"},
        {"max_workers": -1},
        {"yield_every": 0},
        {"max_retries": 0},
    ],
)
def test_config_rejects_invalid_values(overrides):
    with pytest.raises(DataError):
        LinkerConfig(**overrides)


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("LINKER_TOP_K", "9")
    monkeypatch.setenv("LINKER_CANDIDATE_STRATEGY", "lsh")

    config = LinkerConfig.from_env()
    assert config.top_k == 9
    assert config.candidate_strategy == "lsh"

    config = LinkerConfig.from_env(top_k=2, candidate_strategy=None)
    assert config.top_k == 2
    assert config.candidate_strategy == "lsh"


def test_config_from_env_rejects_unknown_fields():
    with pytest.raises(DataError):
        LinkerConfig.from_env(top_n=3)
