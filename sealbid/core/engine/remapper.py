"""
Identity Remapper - rank-indexed allocation back to bidder identities.

Unit u covers (m, k) = divmod(u, N): if rank(m) == k, bidder m takes the
validated price and won quantity of rank k. Neither side of the mapping is
cleartext, so all N^2 pairs are visited.
"""

from collections import Counter
from typing import List, Sequence

from sealbid.core.engine.allocator import Allocator
from sealbid.core.engine.bid_store import PRICE_TYPE, QUANTITY_TYPE
from sealbid.crypto.fhe import Ciphertext, FHEBackend


UNIT_RECIPE = Counter({"eq": 1, "select": 2})


class IdentityRemapper:
    """Identity-indexed (validated price, won quantity)."""

    def __init__(self, backend: FHEBackend):
        self.backend = backend
        self.price_by_id: List[Ciphertext] = []
        self.won_by_id: List[Ciphertext] = []

    def reset(self, n: int) -> None:
        b = self.backend
        self.price_by_id = [b.trivial_encrypt(0, PRICE_TYPE) for _ in range(n)]
        self.won_by_id = [b.trivial_encrypt(0, QUANTITY_TYPE) for _ in range(n)]

    def remap_unit(self, unit: int, ranks: Sequence[Ciphertext], allocation: Allocator) -> None:
        n = len(ranks)
        m, k = divmod(unit, n)
        b = self.backend
        hit = b.eq(ranks[m], k)
        self.won_by_id[m] = b.select(hit, allocation.rank_won[k], self.won_by_id[m])
        self.price_by_id[m] = b.select(hit, allocation.rank_price[k], self.price_by_id[m])

    def to_dict(self) -> dict:
        return {
            "price_by_id": [c.to_str() for c in self.price_by_id],
            "won_by_id": [c.to_str() for c in self.won_by_id],
        }

    def load_dict(self, data: dict) -> None:
        self.price_by_id = [Ciphertext.from_str(s) for s in data["price_by_id"]]
        self.won_by_id = [Ciphertext.from_str(s) for s in data["won_by_id"]]


__all__ = ["IdentityRemapper", "UNIT_RECIPE"]
