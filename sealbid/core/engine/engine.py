"""
Auction Computation Engine - resumable, budget-metered state machine.

Steps (strictly ordered, never revisited):
    VALIDATION          N units       clamp and zero invalid bids
    RANKING             N(N-1)/2      pairwise oblivious comparisons
    ALLOCATION_BY_RANK  N units       cumulative supply, won quantity, price
    ALLOCATION_BY_ID    N^2 units     rank -> identity remap
    FINISHED

Each step exposes a "do up to k units" entry point. Units are
position-addressed (the next unit is always progress[step]), so repeated or
interleaved callers cannot corrupt progress; a call on a finished step is a
FINISHED no-op. A blind claim becomes possible once ALLOCATION_BY_RANK is
done, a direct claim once ALLOCATION_BY_ID is done.

Bidding closes when computation starts; empty steps are completed on entry.
"""

from collections import Counter
from typing import Optional, Tuple

from sealbid.core.config import AuctionConfig, MAX_BID_COUNT
from sealbid.core.engine.allocator import Allocator
from sealbid.core.engine.bid_store import Bid, BidStore, PRICE_TYPE, QUANTITY_TYPE
from sealbid.core.engine.comparator import comparison_recipe, outranks, pair_at
from sealbid.core.engine.ranker import Ranker, UPDATE_RECIPE
from sealbid.core.engine.remapper import IdentityRemapper, UNIT_RECIPE as REMAP_RECIPE
from sealbid.core.engine.state import EngineState, step_sizes
from sealbid.core.iterator import ComputeIterator, WorkReport, run_step_units
from sealbid.core.types import EngineStep, TieBreakRule
from sealbid.crypto.fhe import BLOCK_FHE_GAS_LIMIT, Ciphertext, FHEBackend, MockFHEBackend
from sealbid.utils.logger import get_logger
from sealbid.utils.validation import validate_amount, validate_integer, validate_rank

logger = get_logger("engine")


class AuctionEngine:
    """
    Computes ranks, allocations and the uniform price over encrypted bids.

    Never branches on a secret: every data-dependent choice goes through the
    backend's select.
    """

    def __init__(
        self,
        backend: FHEBackend,
        total_quantity: int,
        max_bid_count: int = 10_000,
        tie_break_rule: TieBreakRule = TieBreakRule.PRICE_ID,
        step_weights: Tuple[int, int, int, int] = (1, 2, 1, 1),
        gas_limit: int = BLOCK_FHE_GAS_LIMIT,
    ):
        """
        Initialize the engine.

        Args:
            backend: Encrypted-integer capability
            total_quantity: Q, total supply offered (immutable)
            max_bid_count: Capacity of the bid store
            tie_break_rule: Ordering policy on equal prices
            step_weights: Iterations per unit for each step
            gas_limit: Default budget for one "do work" call
        """
        valid, err = validate_integer(total_quantity, "total_quantity", 1)
        if not valid:
            raise ValueError(err)
        valid, err = validate_integer(max_bid_count, "max_bid_count", 1, MAX_BID_COUNT)
        if not valid:
            raise ValueError(err)

        self.backend = backend
        self._total_quantity = total_quantity
        self.tie_break_rule = TieBreakRule(tie_break_rule)

        self.store = BidStore(backend, total_quantity, max_bid_count, self.tie_break_rule)
        self.ranker = Ranker(backend)
        self.allocator = Allocator(backend, total_quantity)
        self.remapper = IdentityRemapper(backend)
        self.state = EngineState(step_weights=tuple(step_weights), gas_limit=gas_limit)
        self.iterator = ComputeIterator(self, self.state.step_weights, gas_limit)

        logger.info(
            f"AuctionEngine initialized: Q={total_quantity}, "
            f"max_bids={max_bid_count}, rule={self.tie_break_rule.name}"
        )

    @classmethod
    def from_config(cls, config: AuctionConfig, backend: Optional[FHEBackend] = None) -> "AuctionEngine":
        return cls(
            backend=backend if backend is not None else MockFHEBackend(),
            total_quantity=config.total_quantity,
            max_bid_count=config.max_bid_count,
            tie_break_rule=config.tie_break_rule,
            step_weights=config.step_weights,
            gas_limit=config.fhe_gas_limit,
        )

    # =========================================================================
    # Bids
    # =========================================================================

    @property
    def total_quantity(self) -> int:
        return self._total_quantity

    @property
    def bid_count(self) -> int:
        return self.store.bid_count

    def add_bid(
        self,
        bidder: str,
        price: Ciphertext,
        quantity: Ciphertext,
        deposit: Optional[int] = None,
    ) -> Tuple[Optional[int], str]:
        """
        Register an encrypted bid.

        Returns:
            (bid_id, error_message) - bid_id is None on failure
        """
        if self.state.started:
            return None, "Computation already started"
        bid_id, err = self.store.add_bid(bidder, price, quantity, deposit)
        if err:
            logger.warning(f"Bid from {bidder} rejected: {err}")
        return bid_id, err

    def place_bid(
        self,
        bidder: str,
        price: int,
        quantity: int,
        deposit: Optional[int] = None,
    ) -> Tuple[Optional[int], str]:
        """Encrypt a cleartext bid as its owner would, then register it."""
        for value, name in ((price, "price"), (quantity, "quantity")):
            valid, err = validate_amount(value, name)
            if not valid:
                return None, err
        return self.add_bid(
            bidder,
            self.backend.encrypt(price, PRICE_TYPE),
            self.backend.encrypt(quantity, QUANTITY_TYPE),
            deposit,
        )

    def remove_bid(self, bidder: str) -> Tuple[bool, str]:
        """Cancel a bid; only before computation starts."""
        if self.state.started:
            return False, "Computation already started"
        ok, err = self.store.remove_bid(bidder)
        if err:
            logger.warning(f"Cancel from {bidder} rejected: {err}")
        return ok, err

    def start(self) -> None:
        """Close bidding and enter the first step. Idempotent."""
        if self.state.started:
            return
        self.store.close()
        self.state.started = True
        self.state.bid_count = self.store.bid_count
        self._enter_step(EngineStep.VALIDATION)

    # =========================================================================
    # Step Machinery (iterator target)
    # =========================================================================

    @property
    def current_step(self) -> EngineStep:
        return self.state.step

    def step_size(self, step: int) -> int:
        return self.state.size(step)

    def step_progress(self, step: int) -> int:
        return self.state.progress[step]

    def unit_recipe(self, step: int) -> Counter:
        n = self.state.bid_count
        if step == EngineStep.VALIDATION:
            return self.store.validation_recipe(self.state.progress[step])
        if step == EngineStep.RANKING:
            return comparison_recipe(self.tie_break_rule) + UPDATE_RECIPE
        if step == EngineStep.ALLOCATION_BY_RANK:
            return Allocator.unit_recipe(n)
        if step == EngineStep.ALLOCATION_BY_ID:
            return Counter(REMAP_RECIPE)
        raise ValueError(f"No units in step {step}")

    def unit_cost(self, step: int) -> int:
        return self.backend.cost(self.unit_recipe(step))

    def run_unit(self, step: int) -> None:
        """Run the next unit of `step` and advance progress."""
        if step != self.state.step:
            raise RuntimeError(f"Unit for {EngineStep(step).name} run during {self.state.step.name}")
        index = self.state.progress[step]
        if index >= self.state.size(step):
            raise RuntimeError(f"{EngineStep(step).name} has no unit {index}")

        bids = self.store.bids
        if step == EngineStep.VALIDATION:
            self.store.validate_at(index)
        elif step == EngineStep.RANKING:
            i, j = pair_at(index, self.state.bid_count)
            self.ranker.record(i, j, outranks(self.backend, self.tie_break_rule, bids[i], bids[j]))
        elif step == EngineStep.ALLOCATION_BY_RANK:
            self.allocator.allocate_rank(index, bids, self.ranker.ranks)
        elif step == EngineStep.ALLOCATION_BY_ID:
            self.remapper.remap_unit(index, self.ranker.ranks, self.allocator)

        self.state.progress[step] = index + 1
        if index + 1 == self.state.size(step):
            self._enter_step(EngineStep(step + 1))

    def _enter_step(self, step: EngineStep) -> None:
        while True:
            self.state.step = step
            n = self.state.bid_count
            if step == EngineStep.RANKING:
                self.ranker.reset(n)
            elif step == EngineStep.ALLOCATION_BY_RANK:
                self.allocator.reset()
            elif step == EngineStep.ALLOCATION_BY_ID:
                self.remapper.reset(n)

            if step == EngineStep.FINISHED:
                logger.info("Engine finished")
                return

            size = self.state.size(step)
            logger.info(f"Engine entered {step.name} ({size} units)")
            if size > 0:
                return
            step = EngineStep(step + 1)

    # =========================================================================
    # Do Work
    # =========================================================================

    def _budget(self, budget: Optional[int]) -> int:
        return self.state.gas_limit if budget is None else budget

    def compute_validation(self, units: int, budget: Optional[int] = None) -> WorkReport:
        """Run up to `units` validation units. Starts computation if needed."""
        self.start()
        return run_step_units(self, EngineStep.VALIDATION, units, self._budget(budget))

    def compute_ranking(self, units: int, budget: Optional[int] = None) -> WorkReport:
        return run_step_units(self, EngineStep.RANKING, units, self._budget(budget))

    def compute_allocation_by_rank(self, units: int, budget: Optional[int] = None) -> WorkReport:
        return run_step_units(self, EngineStep.ALLOCATION_BY_RANK, units, self._budget(budget))

    def compute_allocation_by_id(self, units: int, budget: Optional[int] = None) -> WorkReport:
        return run_step_units(self, EngineStep.ALLOCATION_BY_ID, units, self._budget(budget))

    def next(
        self,
        iterations: int,
        budget: Optional[int] = None,
        stop_at_blind_claim: bool = False,
    ) -> WorkReport:
        """Spend weighted iterations across steps. Starts computation if needed."""
        self.start()
        return self.iterator.next(iterations, budget, stop_at_blind_claim)

    def run_to_completion(self, budget: Optional[int] = None, stop_at_blind_claim: bool = False) -> int:
        """
        Call next() until done; returns the number of calls.

        Raises:
            RuntimeError: if a call makes no progress (budget below one unit)
        """
        calls = 0
        goal = EngineStep.ALLOCATION_BY_ID if stop_at_blind_claim else EngineStep.FINISHED
        while True:
            self.start()
            if self.state.step >= goal:
                return calls
            report = self.next(self.iter_progress_max or 1, budget, stop_at_blind_claim)
            calls += 1
            if not report.ok or report.units == 0:
                raise RuntimeError(f"Engine stalled at {self.state.step.name}: {report}")

    # =========================================================================
    # Progress
    # =========================================================================

    def _progress_max(self, step: EngineStep) -> int:
        # Known only once the step has been reached
        if not self.state.started or self.state.step < step:
            return 0
        return self.state.size(step)

    @property
    def validation_progress(self) -> int:
        return self.state.progress[EngineStep.VALIDATION]

    @property
    def validation_progress_max(self) -> int:
        return self._progress_max(EngineStep.VALIDATION)

    @property
    def ranking_progress(self) -> int:
        return self.state.progress[EngineStep.RANKING]

    @property
    def ranking_progress_max(self) -> int:
        return self._progress_max(EngineStep.RANKING)

    @property
    def allocation_by_rank_progress(self) -> int:
        return self.state.progress[EngineStep.ALLOCATION_BY_RANK]

    @property
    def allocation_by_rank_progress_max(self) -> int:
        return self._progress_max(EngineStep.ALLOCATION_BY_RANK)

    @property
    def allocation_by_id_progress(self) -> int:
        return self.state.progress[EngineStep.ALLOCATION_BY_ID]

    @property
    def allocation_by_id_progress_max(self) -> int:
        return self._progress_max(EngineStep.ALLOCATION_BY_ID)

    @property
    def iter_progress(self) -> int:
        return self.iterator.iter_progress

    @property
    def iter_progress_max(self) -> int:
        if not self.state.started:
            return self._weighted_total(self.store.bid_count, int(EngineStep.FINISHED))
        return self.iterator.iter_progress_max

    @property
    def min_iterations_for_blind_claim(self) -> int:
        if not self.state.started:
            return self._weighted_total(self.store.bid_count, int(EngineStep.ALLOCATION_BY_ID))
        return self.iterator.min_iterations_for_blind_claim

    def _weighted_total(self, n: int, steps: int) -> int:
        sizes = step_sizes(n)
        return sum(sizes[s] * self.state.step_weights[s] for s in range(steps))

    @property
    def ready_for_blind_claim(self) -> bool:
        return self.state.is_complete(EngineStep.ALLOCATION_BY_RANK)

    @property
    def ready_for_direct_claim(self) -> bool:
        return self.state.is_complete(EngineStep.ALLOCATION_BY_ID)

    @property
    def finished(self) -> bool:
        return self.state.started and self.state.step == EngineStep.FINISHED

    # =========================================================================
    # Outputs (encrypted)
    # =========================================================================

    def get_bid(self, bid_id: int) -> Optional[Bid]:
        return self.store.get(bid_id)

    def get_bid_by_id(self, bid_id: int) -> Optional[Tuple[Ciphertext, Ciphertext]]:
        """Encrypted (price, quantity) of a bidder; validated once step 1 is done."""
        bid = self.store.get(bid_id)
        if bid is None:
            return None
        return bid.price, bid.quantity

    def get_bid_by_rank(self, rank: int) -> Optional[Tuple[Ciphertext, Ciphertext]]:
        """Encrypted (price, quantity) occupying a rank, once allocated."""
        valid, _ = validate_rank(rank, self.state.bid_count)
        if not valid or rank >= self.allocator.ranks_done:
            return None
        return self.allocator.rank_price[rank], self.allocator.rank_quantity[rank]

    def get_rank(self, bid_id: int) -> Optional[Ciphertext]:
        """Encrypted rank of a bidder, once ranking is complete."""
        if not self.state.is_complete(EngineStep.RANKING) or self.store.get(bid_id) is None:
            return None
        return self.ranker.ranks[bid_id - 1]

    def get_won_at_rank(self, rank: int) -> Optional[Tuple[Ciphertext, Ciphertext, Ciphertext]]:
        """Encrypted (bid id, validated price, won quantity) at a rank."""
        if not self.ready_for_blind_claim:
            return None
        valid, _ = validate_rank(rank, self.state.bid_count)
        if not valid:
            return None
        a = self.allocator
        return a.rank_id[rank], a.rank_price[rank], a.rank_won[rank]

    def get_allocation_by_id(self, bid_id: int) -> Optional[Tuple[Ciphertext, Ciphertext]]:
        """Encrypted (validated price, won quantity) of a bidder."""
        if not self.ready_for_direct_claim or self.store.get(bid_id) is None:
            return None
        return self.remapper.price_by_id[bid_id - 1], self.remapper.won_by_id[bid_id - 1]

    @property
    def uniform_price(self) -> Optional[Ciphertext]:
        """Encrypted clearing price, frozen once allocation by rank is done."""
        if not self.ready_for_blind_claim:
            return None
        return self.allocator.uniform_price

    # =========================================================================
    # Persistence
    # =========================================================================

    def snapshot(self) -> dict:
        return {
            "state": self.state.to_dict(),
            "store": self.store.to_dict(),
            "ranks": [c.to_str() for c in self.ranker.ranks],
            "allocation": self.allocator.to_dict(),
            "remap": self.remapper.to_dict(),
        }

    @classmethod
    def from_snapshot(cls, backend: FHEBackend, data: dict) -> "AuctionEngine":
        store = data["store"]
        state = EngineState.from_dict(data["state"])
        engine = cls(
            backend=backend,
            total_quantity=store["total_quantity"],
            max_bid_count=store["max_bid_count"],
            tie_break_rule=TieBreakRule(store["tie_break_rule"]),
            step_weights=state.step_weights,
            gas_limit=state.gas_limit,
        )
        engine.state = state
        engine.store = BidStore.from_dict(backend, store)
        engine.ranker.ranks = [Ciphertext.from_str(s) for s in data["ranks"]]
        engine.allocator.load_dict(data["allocation"])
        engine.remapper.load_dict(data["remap"])
        return engine

    def save(self, storage, auction_id: str) -> None:
        """Checkpoint the engine (and a mock backend's table) to storage."""
        if isinstance(self.backend, MockFHEBackend):
            storage.save_backend(self.backend)
        storage.save_engine_state(auction_id, int(self.state.step), self.snapshot())
        logger.info(f"Engine {auction_id} saved at {self.state.step.name}")

    @classmethod
    def load(cls, storage, auction_id: str, backend: Optional[FHEBackend] = None) -> Optional["AuctionEngine"]:
        """Resume an engine from storage, or None if no checkpoint exists."""
        data = storage.load_engine_state(auction_id)
        if data is None:
            return None
        if backend is None:
            backend = storage.load_backend()
            if backend is None:
                raise RuntimeError(f"Checkpoint {auction_id} has no saved backend table")
        engine = cls.from_snapshot(backend, data)
        logger.info(f"Engine {auction_id} resumed at {engine.state.step.name}")
        return engine

    def stats(self) -> dict:
        return {
            "bid_count": self.bid_count,
            "step": self.state.step.name,
            "progress": list(self.state.progress),
            "iter_progress": self.iter_progress,
            "iter_progress_max": self.iter_progress_max,
            "gas_used": self.backend.gas_used,
        }


__all__ = ["AuctionEngine"]
