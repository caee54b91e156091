"""
Auction computation engine.

Components, in data-flow order:
- BidStore: encrypted bids by identity, validation (step 1)
- outranks / Ranker: pairwise comparison and rank counters (step 2)
- Allocator: per-rank allocation and uniform price (step 3)
- IdentityRemapper: rank -> identity allocation (step 4)
- AuctionEngine: the resumable state machine over all four
"""

from sealbid.core.types import EngineStep, TieBreakRule, WorkStatus
from sealbid.core.engine.bid_store import Bid, BidStore
from sealbid.core.engine.comparator import outranks, pair_at, pair_count
from sealbid.core.engine.ranker import Ranker
from sealbid.core.engine.allocator import Allocator
from sealbid.core.engine.remapper import IdentityRemapper
from sealbid.core.engine.state import EngineState, step_sizes
from sealbid.core.engine.engine import AuctionEngine

__all__ = [
    "AuctionEngine",
    "Allocator",
    "Bid",
    "BidStore",
    "EngineState",
    "EngineStep",
    "IdentityRemapper",
    "Ranker",
    "TieBreakRule",
    "WorkStatus",
    "outranks",
    "pair_at",
    "pair_count",
    "step_sizes",
]
