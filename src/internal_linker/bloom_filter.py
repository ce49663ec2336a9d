"""
Bloom filter for O(1) negative membership tests.

Sizing follows the standard formulas for ``n`` expected items and target
false-positive rate ``p``:

    m = ceil(-n * ln(p) / (ln 2)^2)
    k = max(1, min(round((m / n) * ln 2), 16))

Bit positions use double hashing over a 128-bit BLAKE2b digest:
``h_i = (h1 + i * h2) mod m``.
"""

from __future__ import annotations

import hashlib
import math
from collections.abc import Iterable

import numpy as np

from internal_linker.errors import DataError

MAX_HASHES = 16


def optimal_size(n: int, p: float) -> int:
    """Number of bits m for n items at false-positive rate p."""
    return max(1, math.ceil(-(n * math.log(p)) / (math.log(2) ** 2)))


def optimal_hashes(n: int, m: int) -> int:
    """Number of hash functions k for n items in m bits."""
    return max(1, min(int(math.floor((m / n) * math.log(2) + 0.5)), MAX_HASHES))


class BloomFilter:
    """Fixed-size Bloom filter over strings."""

    def __init__(self, expected_items: int, false_positive_rate: float = 0.01):
        if not 0.0 < false_positive_rate < 1.0:
            raise DataError(f"false_positive_rate must be in (0, 1), got {false_positive_rate}")
        n = max(1, int(expected_items))
        self.expected_items = n
        self.false_positive_rate = false_positive_rate
        self.size = optimal_size(n, false_positive_rate)
        self.num_hashes = optimal_hashes(n, self.size)
        self._bits = np.zeros((self.size + 7) // 8, dtype=np.uint8)
        self._count = 0

    def __len__(self) -> int:
        """Number of add() calls since the last clear."""
        return self._count

    def __contains__(self, value: str) -> bool:
        return self.test(value)

    def _positions(self, value: str) -> np.ndarray:
        digest = hashlib.blake2b(value.encode("utf-8"), digest_size=16).digest()
        h1 = int.from_bytes(digest[:8], "little")
        h2 = int.from_bytes(digest[8:], "little") | 1
        return np.array(
            [(h1 + i * h2) % self.size for i in range(self.num_hashes)],
            dtype=np.int64,
        )

    def add(self, value: str) -> None:
        positions = self._positions(value)
        masks = np.left_shift(1, positions & 7).astype(np.uint8)
        np.bitwise_or.at(self._bits, positions >> 3, masks)
        self._count += 1

    def update(self, values: Iterable[str]) -> None:
        for value in values:
            self.add(value)

    def test(self, value: str) -> bool:
        """False means definitely absent; True means probably present."""
        positions = self._positions(value)
        masks = np.left_shift(1, positions & 7).astype(np.uint8)
        return bool(np.all(self._bits[positions >> 3] & masks))

    def clear(self) -> None:
        self._bits.fill(0)
        self._count = 0

    @property
    def bits_set(self) -> int:
        return int(np.unpackbits(self._bits).sum())

    def estimated_false_positive_rate(self) -> float:
        """(fraction of bits set) ** k."""
        return (self.bits_set / self.size) ** self.num_hashes


__all__ = [
    "BloomFilter",
    "optimal_hashes",
    "optimal_size",
]
