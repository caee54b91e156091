"""
Comparator - oblivious "a outranks b" predicate over encrypted bids.

Ordering (highest rank first):
1. Higher price wins.
2. On equal price, the configured tie-break rule decides:
   - PRICE_ID:          earlier registration wins
   - PRICE_QUANTITY_ID: larger quantity wins, then earlier registration
   - RANDOM:            smaller pre-assigned random key wins

Every pair (i, j) with i < j is compared once; the reverse direction is the
logical negation, so only N(N-1)/2 comparisons are needed. Because i < j
registration order is cleartext, "earlier registration wins" is a plain
choice between ge and gt on price.

Pairs are enumerated row-major:
    (0,1) (0,2) ... (0,N-1) (1,2) ... (N-2,N-1)
"""

from collections import Counter
from typing import Tuple

from sealbid.core.engine.bid_store import Bid
from sealbid.core.types import TieBreakRule
from sealbid.crypto.fhe import Ciphertext, FHEBackend


# =============================================================================
# Pair Enumeration
# =============================================================================


def pair_count(n: int) -> int:
    """Number of unordered pairs among n bids."""
    return n * (n - 1) // 2


def pair_at(index: int, n: int) -> Tuple[int, int]:
    """
    Row-major (i, j), i < j, for a 0-based pair index.

    Raises:
        IndexError: if index is outside [0, n(n-1)/2)
    """
    if not 0 <= index < pair_count(n):
        raise IndexError(f"Pair index {index} out of range for n={n}")

    i = 0
    row = n - 1
    while index >= row:
        index -= row
        i += 1
        row -= 1
    return i, i + 1 + index


# =============================================================================
# Comparison
# =============================================================================


def comparison_recipe(rule: TieBreakRule) -> Counter:
    """Operations run by outranks() for a rule."""
    if rule == TieBreakRule.PRICE_ID:
        return Counter({"ge": 1})
    if rule == TieBreakRule.PRICE_QUANTITY_ID:
        return Counter({"gt": 1, "eq": 1, "ge": 1, "and": 1, "or": 1})
    if rule == TieBreakRule.RANDOM:
        return Counter({"gt": 1, "eq": 1, "lt": 1, "and": 1, "or": 1})
    raise ValueError(f"Unknown tie-break rule: {rule}")


def outranks(backend: FHEBackend, rule: TieBreakRule, a: Bid, b: Bid) -> Ciphertext:
    """
    Encrypted boolean: bid `a` ranks ahead of bid `b`.

    `a` must have registered before `b`.
    """
    if a.bid_id >= b.bid_id:
        raise ValueError(f"Expected earlier bid first, got #{a.bid_id} vs #{b.bid_id}")

    if rule == TieBreakRule.PRICE_ID:
        return backend.ge(a.price, b.price)

    if rule == TieBreakRule.PRICE_QUANTITY_ID:
        tie_win = backend.ge(a.quantity, b.quantity)
    elif rule == TieBreakRule.RANDOM:
        if a.random_key is None or b.random_key is None:
            raise RuntimeError("RANDOM tie-break requires a random key on every bid")
        tie_win = backend.lt(a.random_key, b.random_key)
    else:
        raise ValueError(f"Unknown tie-break rule: {rule}")

    higher = backend.gt(a.price, b.price)
    same = backend.eq(a.price, b.price)
    return backend.or_(higher, backend.and_(same, tie_win))


__all__ = ["pair_count", "pair_at", "comparison_recipe", "outranks"]
