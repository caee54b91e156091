"""
Persistence tests: checkpoint an engine mid-run, resume it elsewhere.

Tests cover:
1. Save during ranking, reload with a fresh StorageManager, finish
2. Checkpoints before start keep bidding open
3. Settlement on a resumed engine
4. Claim flags, blind slots and pending requests across a restart
"""

import pytest

from sealbid.core.claim import AuctionSettlement, DecryptionOracle, EscrowLedger
from sealbid.core.engine import AuctionEngine, EngineStep, TieBreakRule
from sealbid.core.storage import StorageManager
from sealbid.crypto import decryption_result_digest, generate_keypair, sign
from sealbid.crypto.fhe import MockFHEBackend


def addr(i: int) -> str:
    return "0x" + f"{i:040x}"


BIDS = [(40, 10), (55, 20), (40, 25), (70, 5), (10, 50), (55, 20)]
BIG_BUDGET = 10**12


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "data"


def make_engine(rule=TieBreakRule.PRICE_ID):
    fhe = MockFHEBackend()
    engine = AuctionEngine(fhe, total_quantity=60, tie_break_rule=rule)
    for i, (price, quantity) in enumerate(BIDS, start=1):
        engine.place_bid(addr(i), price, quantity, deposit=price * quantity)
    return fhe, engine


def decrypted(fhe, engine):
    n = engine.bid_count
    return (
        [fhe.decrypt(engine.get_rank(i)) for i in range(1, n + 1)],
        [tuple(fhe.decrypt(c) for c in engine.get_allocation_by_id(i)) for i in range(1, n + 1)],
        fhe.decrypt(engine.uniform_price),
    )


class TestCheckpointResume:
    """Save, drop everything, reload from disk, continue."""

    @pytest.mark.parametrize("rule", list(TieBreakRule))
    def test_resume_mid_ranking(self, data_dir, rule):
        fhe, engine = make_engine(rule)
        engine.compute_validation(len(BIDS), budget=BIG_BUDGET)
        engine.compute_ranking(7, budget=BIG_BUDGET)
        assert engine.current_step == EngineStep.RANKING
        assert engine.ranking_progress == 7

        storage = StorageManager(data_dir)
        engine.save(storage, "auction-1")
        storage.close()

        reopened = StorageManager(data_dir)
        assert reopened.list_auctions() == ["auction-1"]
        resumed = AuctionEngine.load(reopened, "auction-1")
        assert resumed.current_step == EngineStep.RANKING
        assert resumed.ranking_progress == 7
        assert resumed.iter_progress == engine.iter_progress

        resumed.run_to_completion(budget=BIG_BUDGET)
        engine.run_to_completion(budget=BIG_BUDGET)
        # Same encrypted inputs, so same cleartext outputs
        assert decrypted(resumed.backend, resumed) == decrypted(fhe, engine)
        reopened.close()

    def test_resume_before_start(self, data_dir):
        fhe, engine = make_engine()
        storage = StorageManager(data_dir)
        engine.save(storage, "auction-2")

        resumed = AuctionEngine.load(storage, "auction-2")
        assert not resumed.state.started
        bid_id, err = resumed.place_bid(addr(99), 60, 10, deposit=600)
        assert (bid_id, err) == (len(BIDS) + 1, "")
        storage.close()

    def test_missing_checkpoint(self, data_dir):
        storage = StorageManager(data_dir)
        assert AuctionEngine.load(storage, "nope") is None
        storage.close()

    def test_checkpoint_overwrites(self, data_dir):
        fhe, engine = make_engine()
        storage = StorageManager(data_dir)
        engine.save(storage, "auction-3")
        engine.run_to_completion(budget=BIG_BUDGET, stop_at_blind_claim=True)
        engine.save(storage, "auction-3")

        resumed = AuctionEngine.load(storage, "auction-3")
        assert resumed.ready_for_blind_claim
        assert not resumed.ready_for_direct_claim
        assert storage.list_auctions() == ["auction-3"]
        storage.close()


class TestSettleResumedEngine:

    def test_claims_after_resume(self, data_dir):
        fhe, engine = make_engine()
        engine.run_to_completion(budget=BIG_BUDGET, stop_at_blind_claim=True)
        storage = StorageManager(data_dir)
        engine.save(storage, "auction-4")
        storage.close()

        storage = StorageManager(data_dir)
        resumed = AuctionEngine.load(storage, "auction-4")
        resumed.run_to_completion(budget=BIG_BUDGET)

        backend = resumed.backend
        oracle = DecryptionOracle(backend)
        escrow = EscrowLedger()
        escrow.fund_asset(60)
        for i, (price, quantity) in enumerate(BIDS, start=1):
            escrow.deposit(addr(i), price * quantity)
        settlement = AuctionSettlement(resumed, oracle, escrow, addr(0xBEEF))

        settlement.decrypt_uniform_price()
        oracle.fulfill_all()
        # 70x5, 55x20 (#2), 55x20 (#6), 40x10 (#1) fill 55, #3 gets the last 5
        assert settlement.cleared_price == 40

        for i in range(1, len(BIDS) + 1):
            assert settlement.claim(addr(i))[1] == ""
        oracle.fulfill_all()

        won = {s.bid_id: s.won_quantity for s in settlement.settlements}
        assert won == {1: 10, 2: 20, 3: 5, 4: 5, 5: 0, 6: 20}
        assert settlement.terminate() == (0, "")
        storage.close()


class TestSettlementPersistence:
    """Claim-side state must survive a restart as well as the engine."""

    @pytest.fixture
    def keypair(self):
        return generate_keypair()

    def start_settlement(self, data_dir, keypair):
        fhe, engine = make_engine()
        engine.run_to_completion(budget=BIG_BUDGET)
        oracle = DecryptionOracle(fhe, keypair=keypair)
        escrow = EscrowLedger()
        escrow.fund_asset(60)
        for i, (price, quantity) in enumerate(BIDS, start=1):
            escrow.deposit(addr(i), price * quantity)
        settlement = AuctionSettlement(engine, oracle, escrow, addr(0xBEEF), payment_penalty=7)

        price_id, _ = settlement.decrypt_uniform_price()
        oracle.fulfill_all()
        settlement.claim(addr(1))
        oracle.fulfill_all()
        # #4 (70x5) holds rank 0; its blind claim is still in flight at shutdown
        rank, _ = settlement.blind_claim(addr(4))

        storage = StorageManager(data_dir)
        engine.save(storage, "auction-5")
        settlement.save(storage, "auction-5")
        storage.close()
        return price_id, rank, list(settlement.pending)

    def reopen(self, data_dir, keypair=None):
        storage = StorageManager(data_dir)
        engine = AuctionEngine.load(storage, "auction-5")
        oracle = DecryptionOracle(engine.backend, keypair=keypair)
        settlement = AuctionSettlement.load(storage, "auction-5", engine, oracle)
        return storage, oracle, settlement

    def test_flags_survive_restart(self, data_dir, keypair):
        price_id, rank, pending = self.start_settlement(data_dir, keypair)
        storage, oracle, settlement = self.reopen(data_dir, keypair)

        assert settlement.cleared_price == 40
        assert settlement.settled_ids == {1}
        assert settlement.escrow.asset_balance_of(addr(1)) == 10
        assert settlement.escrow.balance_of(addr(0xBEEF)) == 400
        assert settlement.claim(addr(1))[0] is None
        assert settlement.decrypt_uniform_price()[0] is None

        # Same slot back, no new request
        assert settlement.blind_claim(addr(4)) == (rank, "")
        assert list(settlement.pending) == pending
        assert settlement.has_blind_claimed(addr(4))
        assert not settlement.blind_claim_completed(addr(4))
        storage.close()

    def test_resolved_results_not_replayed(self, data_dir, keypair):
        price_id, _, _ = self.start_settlement(data_dir, keypair)
        storage, oracle, settlement = self.reopen(data_dir, keypair)

        signature = sign(decryption_result_digest(price_id, [1]), keypair.private_key)
        ok, err = settlement.on_decryption(price_id, [1], caller=keypair.address, signature=signature)
        assert not ok
        assert "already resolved" in err
        assert settlement.cleared_price == 40
        assert oracle.next_request_id > max(pending_id for pending_id in settlement.pending)
        storage.close()

    def test_pending_request_reissued_after_restart(self, data_dir, keypair):
        _, rank, pending = self.start_settlement(data_dir, keypair)
        storage, oracle, settlement = self.reopen(data_dir, keypair)

        new_id, err = settlement.retry_request(pending[0])
        assert err == ""
        assert new_id > pending[0]
        oracle.fulfill_all()
        assert settlement.blind_claim_completed(addr(4))

        for i in (2, 3, 5, 6):
            assert settlement.claim(addr(i))[1] == ""
        oracle.fulfill_all()
        won = {s.bid_id: s.won_quantity for s in settlement.settlements}
        assert won == {1: 10, 2: 20, 3: 5, 4: 5, 5: 0, 6: 20}
        assert settlement.terminate() == (0, "")

        settlement.save(storage, "auction-5")
        storage.close()
        storage, _, again = self.reopen(data_dir, keypair)
        assert again.terminated
        assert again.terminate()[0] is None
        storage.close()

    def test_other_oracle_key_refused(self, data_dir, keypair):
        _, _, pending = self.start_settlement(data_dir, keypair)
        storage, oracle, settlement = self.reopen(data_dir)

        assert settlement.oracle_address == keypair.address
        new_id, _ = settlement.retry_request(pending[0])
        oracle.fulfill_all()
        assert new_id in settlement.pending
        assert not settlement.blind_claim_completed(addr(4))
        storage.close()

    def test_missing_settlement(self, data_dir):
        storage = StorageManager(data_dir)
        engine = make_engine()[1]
        oracle = DecryptionOracle(engine.backend)
        assert AuctionSettlement.load(storage, "nope", engine, oracle) is None
        storage.close()
