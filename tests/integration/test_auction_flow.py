"""
End-to-end auction tests: bids -> engine -> oracle -> settlement.

Tests cover:
1. The Q = 1,000,000 worked example with direct claims
2. Blind claims by rank
3. Rank awards mixed with direct claims
4. Penalties, cancellations and termination
"""

import pytest

from sealbid.core.claim import AuctionSettlement, DecryptionOracle, EscrowLedger
from sealbid.core.config import AuctionConfig
from sealbid.core.engine import AuctionEngine
from sealbid.crypto.fhe import MockFHEBackend


# =============================================================================
# Fixtures
# =============================================================================


def addr(i: int) -> str:
    return "0x" + f"{i:040x}"


BENEFICIARY = addr(0xBEEF)

WORKED_EXAMPLE = [
    (addr(1), 800, 600_000),
    (addr(2), 200, 500_000),
    (addr(3), 1, 1_000_000),
]


class Auction:
    """Wires an engine, oracle, escrow and settlement together."""

    def __init__(self, total_quantity, bids, payment_penalty=0, **engine_kwargs):
        self.fhe = MockFHEBackend()
        self.engine = AuctionEngine(self.fhe, total_quantity=total_quantity, **engine_kwargs)
        self.oracle = DecryptionOracle(self.fhe)
        self.escrow = EscrowLedger()
        self.escrow.fund_asset(total_quantity)
        for bidder, price, quantity, *rest in bids:
            deposit = rest[0] if rest else price * quantity
            self.escrow.deposit(bidder, deposit)
            bid_id, err = self.engine.place_bid(bidder, price, quantity, deposit=deposit)
            assert err == "", err
        self.settlement = AuctionSettlement(
            self.engine, self.oracle, self.escrow, BENEFICIARY, payment_penalty=payment_penalty
        )

    def clear(self, stop_at_blind_claim=False):
        self.engine.run_to_completion(budget=10**9, stop_at_blind_claim=stop_at_blind_claim)
        request_id, err = self.settlement.decrypt_uniform_price()
        assert err == ""
        self.oracle.fulfill_all()
        return self.settlement.cleared_price


# =============================================================================
# Direct Claims
# =============================================================================


class TestDirectClaims:
    """Worked example settled by identity."""

    @pytest.fixture
    def auction(self):
        return Auction(1_000_000, WORKED_EXAMPLE)

    def test_worked_example(self, auction):
        assert auction.clear() == 200

        for bidder, _, _ in WORKED_EXAMPLE:
            request_id, err = auction.settlement.claim(bidder)
            assert err == ""
        assert auction.oracle.fulfill_all() == 3

        escrow = auction.escrow
        assert escrow.asset_balance_of(addr(1)) == 600_000
        assert escrow.asset_balance_of(addr(2)) == 400_000
        assert escrow.asset_balance_of(addr(3)) == 0

        # Uniform price, not bid price
        assert escrow.balance_of(BENEFICIARY) == 200 * 1_000_000
        assert escrow.balance_of(addr(1)) == 800 * 600_000 - 200 * 600_000
        assert escrow.balance_of(addr(2)) == 200 * 500_000 - 200 * 400_000
        assert escrow.balance_of(addr(3)) == 1_000_000
        assert auction.settlement.total_claims_completed == 3

    def test_claim_exclusivity(self, auction):
        auction.clear()
        for bidder, _, _ in WORKED_EXAMPLE:
            assert auction.settlement.claim(bidder)[1] == ""
        request_id, err = auction.settlement.claim(addr(1))
        assert request_id is None
        assert "already claimed" in err

        auction.oracle.fulfill_all()
        request_id, err = auction.settlement.claim(addr(2))
        assert request_id is None
        assert auction.settlement.total_claims_completed == 3

    def test_unknown_bidder(self, auction):
        auction.clear()
        request_id, err = auction.settlement.claim(addr(42))
        assert request_id is None

    def test_direct_claim_needs_remap(self):
        auction = Auction(1_000_000, WORKED_EXAMPLE)
        auction.clear(stop_at_blind_claim=True)
        request_id, err = auction.settlement.claim(addr(1))
        assert request_id is None
        assert "not computed" in err

    def test_terminate(self, auction):
        auction.clear()
        unsold, err = auction.settlement.terminate()
        assert unsold is None

        for bidder, _, _ in WORKED_EXAMPLE:
            auction.settlement.claim(bidder)
        auction.oracle.fulfill_all()
        unsold, err = auction.settlement.terminate()
        assert (unsold, err) == (0, "")
        assert auction.settlement.terminate()[0] is None
        assert auction.settlement.claim(addr(1))[0] is None


# =============================================================================
# Blind Claims
# =============================================================================


class TestBlindClaims:
    """Settlement by rank before the identity remap."""

    def test_blind_claims_settle_everyone(self):
        auction = Auction(1_000_000, WORKED_EXAMPLE)
        assert auction.clear(stop_at_blind_claim=True) == 200

        slots = []
        for bidder, _, _ in WORKED_EXAMPLE:
            rank, err = auction.settlement.blind_claim(bidder)
            assert err == ""
            slots.append(rank)
        assert sorted(slots) == [0, 1, 2]
        assert auction.settlement.total_blind_claims_requested == 3

        auction.oracle.fulfill_all()
        assert auction.escrow.asset_balance_of(addr(1)) == 600_000
        assert auction.escrow.asset_balance_of(addr(2)) == 400_000
        assert all(auction.settlement.blind_claim_completed(b) for b, _, _ in WORKED_EXAMPLE)
        assert auction.settlement.terminate() == (0, "")

    def test_blind_claim_idempotent(self):
        auction = Auction(1_000_000, WORKED_EXAMPLE)
        auction.clear(stop_at_blind_claim=True)
        first = auction.settlement.blind_claim(addr(3))
        pending = len(auction.oracle.pending)
        assert auction.settlement.blind_claim(addr(3)) == first
        assert len(auction.oracle.pending) == pending
        assert auction.settlement.has_blind_claimed(addr(3))
        assert not auction.settlement.blind_claim_completed(addr(3))
        assert auction.settlement.total_blind_claims_requested == 1

    def test_only_registered_bidders(self):
        auction = Auction(1_000_000, WORKED_EXAMPLE)
        auction.clear(stop_at_blind_claim=True)
        rank, err = auction.settlement.blind_claim(addr(99))
        assert rank is None
        assert "registered" in err

    def test_slots_skip_awarded_ranks(self):
        auction = Auction(1_000_000, WORKED_EXAMPLE)
        auction.clear(stop_at_blind_claim=True)
        assert auction.settlement.award_prize_at_rank(0)[1] == ""
        assert auction.settlement.blind_claim(addr(2)) == (1, "")
        assert auction.settlement.blind_claim(addr(3)) == (2, "")
        rank, err = auction.settlement.blind_claim(addr(1))
        assert rank is None
        assert "No rank slot" in err


# =============================================================================
# Awards / Mixed Modes
# =============================================================================


class TestAwards:

    def test_award_each_rank_once(self):
        auction = Auction(1_000_000, WORKED_EXAMPLE)
        auction.clear()
        for rank in range(3):
            assert auction.settlement.award_prize_at_rank(rank)[1] == ""
        assert auction.settlement.award_prize_at_rank(1)[0] is None
        assert auction.settlement.award_prize_at_rank(3)[0] is None
        auction.oracle.fulfill_all()
        assert auction.settlement.total_claims_completed == 3

    def test_mixed_modes_settle_each_identity_once(self):
        auction = Auction(1_000_000, WORKED_EXAMPLE)
        auction.clear()
        # Bidder 1 holds rank 0: both requests are in flight
        auction.settlement.claim(addr(1))
        auction.settlement.award_prize_at_rank(0)
        auction.oracle.fulfill_all()

        assert auction.settlement.total_claims_completed == 1
        assert auction.escrow.asset_balance_of(addr(1)) == 600_000
        assert auction.escrow.balance_of(BENEFICIARY) == 200 * 600_000
        assert auction.settlement.claim(addr(1))[0] is None


# =============================================================================
# Penalties / Cancellation
# =============================================================================


class TestPenalties:

    def test_invalid_bid_pays_penalty(self):
        bids = [
            (addr(1), 10, 50),
            (addr(2), 0, 50, 100),       # zero price
            (addr(3), 10, 50, 20),       # deposit cannot cover 10 * 50
        ]
        auction = Auction(100, bids, payment_penalty=70)
        assert auction.clear() == 10
        for bidder, *_ in bids:
            auction.settlement.claim(bidder)
        auction.oracle.fulfill_all()

        escrow = auction.escrow
        assert escrow.balance_of(addr(2)) == 30
        # Penalty capped at the escrowed amount
        assert escrow.balance_of(addr(3)) == 0
        assert escrow.balance_of(BENEFICIARY) == 10 * 50 + 70 + 20
        assert auction.settlement.terminate() == (50, "")
        assert escrow.asset_balance_of(BENEFICIARY) == 50

    def test_cancelled_bid_refunded_without_penalty(self):
        auction = Auction(100, [(addr(1), 10, 50), (addr(2), 9, 50)], payment_penalty=70)
        ok, err = auction.engine.remove_bid(addr(2))
        assert ok
        auction.clear()
        auction.settlement.claim(addr(2))
        auction.oracle.fulfill_all()
        assert auction.escrow.balance_of(addr(2)) == 9 * 50
        assert auction.escrow.balance_of(BENEFICIARY) == 0

    def test_losing_valid_bid_refunded(self):
        auction = Auction(50, [(addr(1), 10, 50), (addr(2), 9, 50)], payment_penalty=70)
        auction.clear()
        auction.settlement.claim(addr(2))
        auction.oracle.fulfill_all()
        assert auction.escrow.balance_of(addr(2)) == 9 * 50

    def test_no_bids(self):
        auction = Auction(100, [])
        assert auction.clear() == 0
        assert auction.settlement.terminate() == (100, "")
        assert auction.escrow.asset_balance_of(BENEFICIARY) == 100


class TestFromConfig:

    def test_configured_auction(self):
        config = AuctionConfig(total_quantity=100, payment_penalty=5, decryption_window=3)
        fhe = MockFHEBackend()
        engine = AuctionEngine.from_config(config, backend=fhe)
        oracle = DecryptionOracle(fhe)
        settlement = AuctionSettlement.from_config(engine, oracle, EscrowLedger(), BENEFICIARY, config)
        assert settlement.payment_penalty == 5
        assert settlement.decryption_window == 3
