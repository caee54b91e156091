"""
Allocator - per-rank allocation and the uniform clearing price.

Processes ranks k = 0..N-1 strictly in order:

    (price[k], quantity[k], id[k]) = fields of the bid m with rank(m) == k
    C[k+1]    = C[k] + quantity[k]
    valid[k]  = C[k] < Q
    won[k]    = valid[k] ? min(quantity[k], Q - C[k]) : 0
    uniform   = (valid[k] and quantity[k] != 0) ? price[k] : uniform

The per-rank selection scans every bid with an oblivious equality test, so
one unit costs O(N). A validated-to-zero bid contributes nothing at its rank
and never moves the uniform price.
"""

from collections import Counter
from typing import List, Optional, Sequence

from sealbid.core.engine.bid_store import Bid, ID_TYPE, PRICE_TYPE, QUANTITY_TYPE, WIDE_TYPE
from sealbid.crypto.fhe import Ciphertext, FHEBackend


class Allocator:
    """Rank-indexed allocation vectors."""

    def __init__(self, backend: FHEBackend, total_quantity: int):
        self.backend = backend
        self.total_quantity = total_quantity

        self.rank_price: List[Ciphertext] = []
        self.rank_quantity: List[Ciphertext] = []
        self.rank_id: List[Ciphertext] = []
        self.rank_won: List[Ciphertext] = []
        self.validity: List[Ciphertext] = []
        self.cumulative: List[Ciphertext] = []  # N+1 entries once complete
        self.uniform_price: Optional[Ciphertext] = None

    @staticmethod
    def unit_recipe(n: int) -> Counter:
        """Operations run by allocate_rank() for n bids."""
        recipe = Counter({"eq": n, "select": 3 * n})
        recipe.update({"cast": 2, "lt": 1, "sub": 1, "min": 1, "select": 2, "add": 1, "and": 1, "ne": 1})
        return recipe

    def reset(self) -> None:
        b = self.backend
        self.rank_price = []
        self.rank_quantity = []
        self.rank_id = []
        self.rank_won = []
        self.validity = []
        self.cumulative = [b.trivial_encrypt(0, WIDE_TYPE)]
        self.uniform_price = b.trivial_encrypt(0, PRICE_TYPE)

    @property
    def ranks_done(self) -> int:
        return len(self.rank_won)

    def allocate_rank(self, k: int, bids: Sequence[Bid], ranks: Sequence[Ciphertext]) -> None:
        """Compute allocation for rank k; ranks must be processed in order."""
        if k != len(self.rank_won):
            raise RuntimeError(f"Rank {k} allocated out of order, expected {len(self.rank_won)}")

        b = self.backend
        price = b.trivial_encrypt(0, PRICE_TYPE)
        quantity = b.trivial_encrypt(0, QUANTITY_TYPE)
        ident = b.trivial_encrypt(0, ID_TYPE)
        for bid, rank in zip(bids, ranks):
            hit = b.eq(rank, k)
            price = b.select(hit, bid.price, price)
            quantity = b.select(hit, bid.quantity, quantity)
            ident = b.select(hit, bid.enc_id, ident)

        prev = self.cumulative[k]
        wide_quantity = b.cast(quantity, WIDE_TYPE)
        valid = b.lt(prev, self.total_quantity)
        remaining = b.sub(b.trivial_encrypt(self.total_quantity, WIDE_TYPE), prev)
        # won <= Q, so narrowing back is exact
        won = b.cast(b.select(valid, b.min(wide_quantity, remaining), 0), QUANTITY_TYPE)
        wins = b.and_(valid, b.ne(quantity, 0))

        self.rank_price.append(price)
        self.rank_quantity.append(quantity)
        self.rank_id.append(ident)
        self.rank_won.append(won)
        self.validity.append(valid)
        self.cumulative.append(b.add(prev, wide_quantity))
        self.uniform_price = b.select(wins, price, self.uniform_price)

    def to_dict(self) -> dict:
        return {
            "rank_price": [c.to_str() for c in self.rank_price],
            "rank_quantity": [c.to_str() for c in self.rank_quantity],
            "rank_id": [c.to_str() for c in self.rank_id],
            "rank_won": [c.to_str() for c in self.rank_won],
            "validity": [c.to_str() for c in self.validity],
            "cumulative": [c.to_str() for c in self.cumulative],
            "uniform_price": self.uniform_price.to_str() if self.uniform_price else None,
        }

    def load_dict(self, data: dict) -> None:
        for name in ("rank_price", "rank_quantity", "rank_id", "rank_won", "validity", "cumulative"):
            setattr(self, name, [Ciphertext.from_str(s) for s in data[name]])
        raw = data.get("uniform_price")
        self.uniform_price = Ciphertext.from_str(raw) if raw else None


__all__ = ["Allocator"]
