"""
Run configuration.

Every default can be overridden through a LINKER_* environment variable, e.g.:

    LINKER_TOP_K=10 LINKER_CANDIDATE_STRATEGY=lsh internal-linker ...
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, fields
from typing import Any

from internal_linker.errors import DataError

# =============================================================================
# Configuration
# =============================================================================

DEFAULT_SIMILARITY_THRESHOLD = float(os.environ.get("LINKER_SIMILARITY_THRESHOLD", "0.01"))
DEFAULT_TOP_K = int(os.environ.get("LINKER_TOP_K", "5"))
DEFAULT_NUM_HASHES = int(os.environ.get("LINKER_NUM_HASHES", "128"))
DEFAULT_BANDS = int(os.environ.get("LINKER_BANDS", "16"))
DEFAULT_BLOOM_FP_RATE = float(os.environ.get("LINKER_BLOOM_FP_RATE", "0.01"))
DEFAULT_CANDIDATE_STRATEGY = os.environ.get("LINKER_CANDIDATE_STRATEGY", "postings")
DEFAULT_MAX_WORKERS = int(os.environ.get("LINKER_MAX_WORKERS", "0"))  # 0 = auto
DEFAULT_YIELD_EVERY = int(os.environ.get("LINKER_YIELD_EVERY", "500"))
DEFAULT_MAX_RETRIES = int(os.environ.get("LINKER_MAX_RETRIES", "3"))
DEFAULT_RETRY_BASE_DELAY = float(os.environ.get("LINKER_RETRY_BASE_DELAY", "1.0"))
DEFAULT_VECTOR_CACHE_SIZE = int(os.environ.get("LINKER_VECTOR_CACHE_SIZE", "1000"))
DEFAULT_MEMORY_THRESHOLD = float(os.environ.get("LINKER_MEMORY_THRESHOLD", "0.7"))
DEFAULT_MEMORY_BACKOFF = float(os.environ.get("LINKER_MEMORY_BACKOFF", "0.5"))

CANDIDATE_STRATEGIES = ("postings", "lsh", "prefix", "all")


@dataclass
class LinkerConfig:
    """Tunable parameters of one linking run."""
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    top_k: int = DEFAULT_TOP_K
    num_hashes: int = DEFAULT_NUM_HASHES
    bands: int = DEFAULT_BANDS
    bloom_fp_rate: float = DEFAULT_BLOOM_FP_RATE
    candidate_strategy: str = DEFAULT_CANDIDATE_STRATEGY
    max_workers: int = DEFAULT_MAX_WORKERS
    use_pool: bool = True
    yield_every: int = DEFAULT_YIELD_EVERY
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY
    vector_cache_size: int = DEFAULT_VECTOR_CACHE_SIZE
    memory_threshold: float = DEFAULT_MEMORY_THRESHOLD
    memory_backoff: float = DEFAULT_MEMORY_BACKOFF

    def __post_init__(self) -> None:
        if not -1.0 <= self.similarity_threshold <= 1.0:
            raise DataError(f"similarity_threshold must be in [-1, 1], got {self.similarity_threshold}")
        if self.top_k < 1:
            raise DataError(f"top_k must be positive, got {self.top_k}")
        if self.bands < 1 or self.num_hashes < self.bands or self.num_hashes % self.bands:
            raise DataError(
                f"num_hashes ({self.num_hashes}) must be a positive multiple of bands ({self.bands})"
            )
        if not 0.0 < self.bloom_fp_rate < 1.0:
            raise DataError(f"bloom_fp_rate must be in (0, 1), got {self.bloom_fp_rate}")
        if self.candidate_strategy not in CANDIDATE_STRATEGIES:
            raise DataError(
                f"Unknown candidate strategy {self.candidate_strategy!r}, "
                f"expected one of {', '.join(CANDIDATE_STRATEGIES)}"
            )
        if self.max_workers < 0:
            raise DataError(f"max_workers must be >= 0, got {self.max_workers}")
        if self.yield_every < 1:
            raise DataError(f"yield_every must be positive, got {self.yield_every}")
        if self.max_retries < 1:
            raise DataError(f"max_retries must be positive, got {self.max_retries}")

    @classmethod
    def from_env(cls, **overrides: Any) -> "LinkerConfig":
        """Build a config from LINKER_* variables read now, then apply overrides."""
        env = {
            "similarity_threshold": float(os.environ.get("LINKER_SIMILARITY_THRESHOLD", DEFAULT_SIMILARITY_THRESHOLD)),
            "top_k": int(os.environ.get("LINKER_TOP_K", DEFAULT_TOP_K)),
            "num_hashes": int(os.environ.get("LINKER_NUM_HASHES", DEFAULT_NUM_HASHES)),
            "bands": int(os.environ.get("LINKER_BANDS", DEFAULT_BANDS)),
            "bloom_fp_rate": float(os.environ.get("LINKER_BLOOM_FP_RATE", DEFAULT_BLOOM_FP_RATE)),
            "candidate_strategy": os.environ.get("LINKER_CANDIDATE_STRATEGY", DEFAULT_CANDIDATE_STRATEGY),
            "max_workers": int(os.environ.get("LINKER_MAX_WORKERS", DEFAULT_MAX_WORKERS)),
            "yield_every": int(os.environ.get("LINKER_YIELD_EVERY", DEFAULT_YIELD_EVERY)),
            "max_retries": int(os.environ.get("LINKER_MAX_RETRIES", DEFAULT_MAX_RETRIES)),
            "retry_base_delay": float(os.environ.get("LINKER_RETRY_BASE_DELAY", DEFAULT_RETRY_BASE_DELAY)),
            "vector_cache_size": int(os.environ.get("LINKER_VECTOR_CACHE_SIZE", DEFAULT_VECTOR_CACHE_SIZE)),
            "memory_threshold": float(os.environ.get("LINKER_MEMORY_THRESHOLD", DEFAULT_MEMORY_THRESHOLD)),
            "memory_backoff": float(os.environ.get("LINKER_MEMORY_BACKOFF", DEFAULT_MEMORY_BACKOFF)),
        }
        known = {f.name for f in fields(cls)}
        unknown = set(overrides) - known
        if unknown:
            raise DataError(f"Unknown config field(s): {', '.join(sorted(unknown))}")
        env.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**env)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# =============================================================================
# Module exports
# =============================================================================

__all__ = [
    "CANDIDATE_STRATEGIES",
    "LinkerConfig",
]
