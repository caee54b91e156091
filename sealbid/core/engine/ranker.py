"""
Ranker - rank accumulation as N running encrypted counters.

rank(i) = number of bids that outrank bid i. Each compared pair (i, j)
increments exactly one of the two counters, so after all N(N-1)/2 pairs the
counters form a bijection onto [0, N).
"""

from collections import Counter
from typing import List

from sealbid.crypto.fhe import Ciphertext, CipherType, FHEBackend


RANK_TYPE = CipherType.EUINT16

UPDATE_RECIPE = Counter({"cast": 2, "not": 1, "add": 2})


class Ranker:
    """Encrypted rank counters, one per bid."""

    def __init__(self, backend: FHEBackend):
        self.backend = backend
        self.ranks: List[Ciphertext] = []

    def reset(self, n: int) -> None:
        """Start n counters at zero."""
        self.ranks = [self.backend.trivial_encrypt(0, RANK_TYPE) for _ in range(n)]

    def record(self, i: int, j: int, i_wins: Ciphertext) -> None:
        """Account for one compared pair; `i_wins` is an encrypted boolean."""
        b = self.backend
        self.ranks[j] = b.add(self.ranks[j], b.cast(i_wins, RANK_TYPE))
        self.ranks[i] = b.add(self.ranks[i], b.cast(b.not_(i_wins), RANK_TYPE))


__all__ = ["Ranker", "RANK_TYPE", "UPDATE_RECIPE"]
