"""
Claim / Award Protocol - settlement of finalized encrypted allocations.

Flow:
1. decrypt_uniform_price(): once allocation by rank is done, the clearing
   price is decrypted once. Every claim waits for it.
2. Claims, each setting its completion flag before requesting decryption:
   - claim(bidder): direct claim by identity, after allocation by id
   - award_prize_at_rank(rank): anyone triggers settlement of one rank
   - blind_claim(bidder): a registered bidder self-assigns the next free
     rank slot and settles it without learning whose allocation it is
3. on_decryption(): the single authenticated entry point for oracle
   results. The caller must be the oracle address with a valid signature;
   each request resolves at most once.

Settlement rule (exactly once per identity):
    won > 0, escrow covers P * won pay P * won to beneficiary, transfer won
                                   units, refund the rest
    won > 0, escrow short          default: units stay in custody, penalty
                                   (capped at escrow) to beneficiary, refund
                                   the rest
    price == 0 and not cancelled   penalty (capped at escrow) to beneficiary,
                                   refund the rest
    otherwise                      refund

A rank claim that resolves to an identity already settled by a direct claim
(or the reverse) is a no-op.
"""

from dataclasses import asdict, dataclass
from enum import IntEnum
from typing import Dict, List, Optional, Sequence, Set, Tuple

from sealbid.core.claim.escrow import EscrowLedger
from sealbid.core.claim.oracle import DecryptionOracle
from sealbid.core.config import AuctionConfig
from sealbid.core.engine import AuctionEngine
from sealbid.crypto import decryption_result_digest, verify
from sealbid.crypto.fhe import Ciphertext
from sealbid.utils.logger import get_logger
from sealbid.utils.validation import validate_bidder_address, validate_rank

logger = get_logger("claim")


# =============================================================================
# Constants
# =============================================================================

DEFAULT_DECRYPTION_WINDOW = 100


# =============================================================================
# Enums
# =============================================================================


class RequestKind(IntEnum):
    """What a pending decryption request is for."""
    UNIFORM_PRICE = 0
    DIRECT_CLAIM = 1
    RANK_CLAIM = 2


# =============================================================================
# Data Structures
# =============================================================================


@dataclass
class PendingDecryption:
    """Settlement-side record of an outstanding oracle request."""
    request_id: int
    kind: RequestKind
    handles: List[Ciphertext]
    bid_id: int = 0
    rank: int = -1
    blind: bool = False

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "kind": int(self.kind),
            "handles": [c.to_str() for c in self.handles],
            "bid_id": self.bid_id,
            "rank": self.rank,
            "blind": self.blind,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PendingDecryption":
        return cls(
            request_id=data["request_id"],
            kind=RequestKind(data["kind"]),
            handles=[Ciphertext.from_str(s) for s in data["handles"]],
            bid_id=data["bid_id"],
            rank=data["rank"],
            blind=data["blind"],
        )


@dataclass
class Settlement:
    """Outcome of settling one identity."""
    bid_id: int
    bidder: str
    won_quantity: int
    payment: int
    penalty: int
    refund: int
    via_rank: bool
    defaulted: bool = False


# =============================================================================
# Auction Settlement
# =============================================================================


class AuctionSettlement:
    """
    Settles an engine's results through the decryption oracle.

    Completion flags are one-shot: once set they are never cleared, even if
    the oracle request they triggered has to be reissued.
    """

    def __init__(
        self,
        engine: AuctionEngine,
        oracle: DecryptionOracle,
        escrow: EscrowLedger,
        beneficiary: str,
        payment_penalty: int = 0,
        decryption_window: int = DEFAULT_DECRYPTION_WINDOW,
    ):
        valid, err = validate_bidder_address(beneficiary)
        if not valid:
            raise ValueError(err)
        if payment_penalty < 0:
            raise ValueError("payment_penalty must be >= 0")

        self.engine = engine
        self.oracle = oracle
        self.escrow = escrow
        self.beneficiary = beneficiary.lower()
        self.payment_penalty = payment_penalty
        self.decryption_window = decryption_window

        # Oracle identity, pinned at construction
        self.oracle_address = oracle.address
        self.oracle_public_key = oracle.public_key

        # Uniform price
        self.cleared_price: Optional[int] = None
        self.price_request_id: Optional[int] = None

        # One-shot flags
        self.claimed_ids: Set[int] = set()
        self.claimed_ranks: Set[int] = set()
        self.settled_ids: Set[int] = set()
        self.settled_ranks: Set[int] = set()

        # Blind claim slots: bidder -> rank
        self.blind_slots: Dict[str, int] = {}
        self._next_blind_rank = 0

        # Oracle bookkeeping
        self.pending: Dict[int, PendingDecryption] = {}
        self.resolved: Set[int] = set()

        self.settlements: List[Settlement] = []
        self.total_claims_completed = 0
        self.total_blind_claims_requested = 0
        self.terminated = False

    @classmethod
    def from_config(
        cls,
        engine: AuctionEngine,
        oracle: DecryptionOracle,
        escrow: EscrowLedger,
        beneficiary: str,
        config: AuctionConfig,
    ) -> "AuctionSettlement":
        return cls(
            engine=engine,
            oracle=oracle,
            escrow=escrow,
            beneficiary=beneficiary,
            payment_penalty=config.payment_penalty,
            decryption_window=config.decryption_window,
        )

    # =========================================================================
    # Requests
    # =========================================================================

    def _request(self, record: PendingDecryption) -> int:
        deadline = self.oracle.current_tick + self.decryption_window
        request_id = self.oracle.request_decryption(record.handles, self.on_decryption, deadline)
        record.request_id = request_id
        self.pending[request_id] = record
        return request_id

    def _reject(self, action: str, err: str):
        logger.warning(f"{action} rejected: {err}")
        return None, err

    def _claim_preconditions(self, need_direct: bool) -> str:
        ready = self.engine.ready_for_direct_claim if need_direct else self.engine.ready_for_blind_claim
        if not ready:
            return "Allocation not computed yet"
        if self.cleared_price is None:
            return "Uniform price not decrypted yet"
        if self.terminated:
            return "Auction terminated"
        return ""

    def decrypt_uniform_price(self) -> Tuple[Optional[int], str]:
        """
        Request decryption of the clearing price. Allowed once.

        Returns:
            (request_id, error_message)
        """
        if not self.engine.ready_for_blind_claim:
            return self._reject("Price decryption", "Allocation by rank not complete")
        if self.cleared_price is not None or self.price_request_id is not None:
            return self._reject("Price decryption", "Uniform price already requested")

        uniform = self.engine.uniform_price
        record = PendingDecryption(0, RequestKind.UNIFORM_PRICE, [uniform])
        # Flag before the request
        self.price_request_id = -1
        self.price_request_id = self._request(record)
        logger.info(f"Uniform price decryption requested (#{self.price_request_id})")
        return self.price_request_id, ""

    def claim(self, bidder: str) -> Tuple[Optional[int], str]:
        """
        Direct claim by identity.

        Returns:
            (request_id, error_message)
        """
        err = self._claim_preconditions(need_direct=True)
        if err:
            return self._reject("Claim", err)
        valid, err = validate_bidder_address(bidder)
        if not valid:
            return self._reject("Claim", err)

        bid_id = self.engine.store.bid_id_of(bidder)
        if not bid_id:
            return self._reject("Claim", "Bidder has no bid")
        if bid_id in self.claimed_ids or bid_id in self.settled_ids:
            return self._reject("Claim", f"Bid #{bid_id} already claimed")

        price, won = self.engine.get_allocation_by_id(bid_id)
        self.claimed_ids.add(bid_id)
        request_id = self._request(
            PendingDecryption(0, RequestKind.DIRECT_CLAIM, [price, won], bid_id=bid_id)
        )
        logger.info(f"Direct claim for bid #{bid_id} requested (#{request_id})")
        return request_id, ""

    def award_prize_at_rank(self, rank: int) -> Tuple[Optional[int], str]:
        """
        Settle whichever bidder holds `rank`. Anyone may call this.

        Returns:
            (request_id, error_message)
        """
        err = self._claim_preconditions(need_direct=False)
        if err:
            return self._reject("Award", err)
        valid, err = validate_rank(rank, self.engine.state.bid_count)
        if not valid:
            return self._reject("Award", err)
        if rank in self.claimed_ranks:
            return self._reject("Award", f"Rank {rank} already claimed")

        request_id = self._request_rank(rank, blind=False)
        return request_id, ""

    def _request_rank(self, rank: int, blind: bool) -> int:
        enc_id, price, won = self.engine.get_won_at_rank(rank)
        self.claimed_ranks.add(rank)
        request_id = self._request(
            PendingDecryption(0, RequestKind.RANK_CLAIM, [enc_id, price, won], rank=rank, blind=blind)
        )
        logger.info(f"Rank {rank} {'blind claim' if blind else 'award'} requested (#{request_id})")
        return request_id

    def blind_claim(self, bidder: str) -> Tuple[Optional[int], str]:
        """
        Claim the next free rank slot on behalf of whoever holds it.

        Idempotent per bidder: a repeat call returns the same slot and issues
        no new request.

        Returns:
            (rank_slot, error_message)
        """
        err = self._claim_preconditions(need_direct=False)
        if err:
            return self._reject("Blind claim", err)
        valid, err = validate_bidder_address(bidder)
        if not valid:
            return self._reject("Blind claim", err)
        if not self.engine.store.bid_id_of(bidder):
            return self._reject("Blind claim", "Only registered bidders may blind claim")

        key = bidder.lower()
        if key in self.blind_slots:
            return self.blind_slots[key], ""

        n = self.engine.state.bid_count
        while self._next_blind_rank < n and self._next_blind_rank in self.claimed_ranks:
            self._next_blind_rank += 1
        if self._next_blind_rank >= n:
            return self._reject("Blind claim", "No rank slot left")

        rank = self._next_blind_rank
        self._next_blind_rank += 1
        self.blind_slots[key] = rank
        self.total_blind_claims_requested += 1
        self._request_rank(rank, blind=True)
        return rank, ""

    def has_blind_claimed(self, bidder: str) -> bool:
        return bidder.lower() in self.blind_slots

    def blind_claim_completed(self, bidder: str) -> bool:
        rank = self.blind_slots.get(bidder.lower())
        return rank is not None and rank in self.settled_ranks

    def retry_request(self, request_id: int) -> Tuple[Optional[int], str]:
        """
        Reissue a request the oracle dropped after its deadline.

        Returns:
            (new_request_id, error_message)
        """
        record = self.pending.get(request_id)
        if record is None:
            return self._reject("Retry", f"Request #{request_id} is not outstanding")
        if self.oracle.is_pending(request_id):
            return self._reject("Retry", f"Request #{request_id} still pending at the oracle")

        del self.pending[request_id]
        new_id = self._request(record)
        if record.kind == RequestKind.UNIFORM_PRICE:
            self.price_request_id = new_id
        logger.info(f"Request #{request_id} reissued as #{new_id}")
        return new_id, ""

    # =========================================================================
    # Oracle Callback
    # =========================================================================

    def on_decryption(
        self,
        request_id: int,
        values: Sequence[int],
        caller: str = "",
        signature: bytes = b"",
    ) -> Tuple[bool, str]:
        """
        Authenticated completion entry point for oracle results.

        Returns:
            (success, error_message)
        """
        if not isinstance(caller, str) or caller.lower() != self.oracle_address.lower():
            logger.warning(f"Decryption callback #{request_id} from unauthorized caller {caller}")
            return False, "Unauthorized caller"

        digest = decryption_result_digest(request_id, values)
        if not verify(digest, signature, self.oracle_public_key):
            logger.warning(f"Decryption callback #{request_id} has an invalid signature")
            return False, "Invalid oracle signature"

        if request_id in self.resolved:
            return False, f"Request #{request_id} already resolved"
        record = self.pending.get(request_id)
        if record is None:
            return False, f"Unknown request #{request_id}"
        if len(values) != len(record.handles):
            return False, f"Expected {len(record.handles)} value(s), got {len(values)}"

        if record.kind == RequestKind.UNIFORM_PRICE:
            self.cleared_price = int(values[0])
            logger.info(f"Uniform price cleared at {self.cleared_price}")
        elif record.kind == RequestKind.DIRECT_CLAIM:
            price, won = values
            self._settle(record.bid_id, int(price), int(won))
        else:
            bid_id, price, won = values
            bid_id = int(bid_id)
            if self.engine.get_bid(bid_id) is None:
                raise RuntimeError(f"Rank {record.rank} resolved to unknown bid #{bid_id}")
            self._settle(bid_id, int(price), int(won), rank=record.rank, blind=record.blind)
            self.settled_ranks.add(record.rank)

        # Resolved only after settlement went through; a failed one stays retryable
        del self.pending[request_id]
        self.resolved.add(request_id)
        return True, ""

    # =========================================================================
    # Settlement
    # =========================================================================

    def _settle(
        self,
        bid_id: int,
        validated_price: int,
        won: int,
        rank: Optional[int] = None,
        blind: bool = False,
    ) -> None:
        # Blind claims keep the rank -> identity link out of INFO logs
        label = f"Rank {rank}" if blind else f"Bid #{bid_id}"
        if bid_id in self.settled_ids:
            logger.info(f"{label} already settled, nothing to do")
            return
        if self.cleared_price is None:
            raise RuntimeError("Settlement before the uniform price was cleared")
        if won > self.escrow.asset_custody:
            raise RuntimeError(f"Custody cannot cover {won} units for bid #{bid_id}")

        bid = self.engine.get_bid(bid_id)
        bidder = bid.bidder
        held = self.escrow.escrow_of(bidder)
        payment = 0
        penalty = 0
        defaulted = False

        if won > 0 and held >= self.cleared_price * won:
            payment = self.cleared_price * won
            self.escrow.pay(bidder, self.beneficiary, payment)
            self.escrow.transfer_asset(bidder, won)
        elif won > 0:
            # Escrow short of the bill: units stay in custody for terminate()
            defaulted = True
            logger.warning(f"{label} defaulted: escrow {held} < {self.cleared_price * won}")
            won = 0
            penalty = min(self.payment_penalty, held)
        elif validated_price == 0 and not bid.cancelled:
            penalty = min(self.payment_penalty, held)
        if penalty:
            self.escrow.pay(bidder, self.beneficiary, penalty)
        refund = self.escrow.refund(bidder)

        self.settled_ids.add(bid_id)
        self.total_claims_completed += 1
        self.settlements.append(Settlement(
            bid_id=bid_id,
            bidder=bidder,
            won_quantity=won,
            payment=payment,
            penalty=penalty,
            refund=refund,
            via_rank=rank is not None,
            defaulted=defaulted,
        ))
        logger.info(
            f"{label} settled: won={won} paid={payment} penalty={penalty} refund={refund}"
        )
        if blind:
            logger.debug(f"Rank {rank} was bid #{bid_id}")

    # =========================================================================
    # Termination
    # =========================================================================

    def terminate(self) -> Tuple[Optional[int], str]:
        """
        Return unsold supply to the beneficiary once every identity is settled.

        Returns:
            (unsold_units, error_message)
        """
        if self.terminated:
            return self._reject("Terminate", "Already terminated")
        if not self.engine.ready_for_blind_claim:
            return self._reject("Terminate", "Allocation not computed yet")
        n = self.engine.state.bid_count
        if len(self.settled_ids) < n:
            return self._reject("Terminate", f"{n - len(self.settled_ids)} bid(s) not settled")

        unsold = self.escrow.asset_custody
        self.escrow.transfer_asset(self.beneficiary, unsold)
        self.terminated = True
        logger.info(f"Auction terminated, {unsold} unsold unit(s) returned")
        return unsold, ""

    # =========================================================================
    # Persistence
    # =========================================================================

    def to_dict(self) -> dict:
        return {
            "beneficiary": self.beneficiary,
            "payment_penalty": self.payment_penalty,
            "decryption_window": self.decryption_window,
            "oracle_address": self.oracle_address,
            "oracle_public_key": self.oracle_public_key.hex(),
            "cleared_price": self.cleared_price,
            "price_request_id": self.price_request_id,
            "claimed_ids": sorted(self.claimed_ids),
            "claimed_ranks": sorted(self.claimed_ranks),
            "settled_ids": sorted(self.settled_ids),
            "settled_ranks": sorted(self.settled_ranks),
            "blind_slots": dict(self.blind_slots),
            "next_blind_rank": self._next_blind_rank,
            "pending": [record.to_dict() for record in self.pending.values()],
            "resolved": sorted(self.resolved),
            "next_request_id": self.oracle.next_request_id,
            "settlements": [asdict(s) for s in self.settlements],
            "total_claims_completed": self.total_claims_completed,
            "total_blind_claims_requested": self.total_blind_claims_requested,
            "terminated": self.terminated,
            "escrow": self.escrow.to_dict(),
        }

    @classmethod
    def from_dict(
        cls,
        engine: AuctionEngine,
        oracle: DecryptionOracle,
        data: dict,
    ) -> "AuctionSettlement":
        """
        Rebuild settlement state around a resumed engine and a live oracle.

        The oracle identity stays the one pinned when the auction was set up;
        results signed by any other key are refused. Requests that were
        outstanding come back as pending and can be reissued with
        retry_request().
        """
        settlement = cls(
            engine=engine,
            oracle=oracle,
            escrow=EscrowLedger.from_dict(data["escrow"]),
            beneficiary=data["beneficiary"],
            payment_penalty=data["payment_penalty"],
            decryption_window=data["decryption_window"],
        )
        settlement.oracle_address = data["oracle_address"]
        settlement.oracle_public_key = bytes.fromhex(data["oracle_public_key"])
        if settlement.oracle_address.lower() != oracle.address.lower():
            logger.warning(f"Oracle {oracle.address} differs from pinned {settlement.oracle_address}")

        settlement.cleared_price = data["cleared_price"]
        settlement.price_request_id = data["price_request_id"]
        settlement.claimed_ids = set(data["claimed_ids"])
        settlement.claimed_ranks = set(data["claimed_ranks"])
        settlement.settled_ids = set(data["settled_ids"])
        settlement.settled_ranks = set(data["settled_ranks"])
        settlement.blind_slots = {k: int(v) for k, v in data["blind_slots"].items()}
        settlement._next_blind_rank = data["next_blind_rank"]
        settlement.pending = {
            r["request_id"]: PendingDecryption.from_dict(r) for r in data["pending"]
        }
        settlement.resolved = set(data["resolved"])
        settlement.settlements = [Settlement(**s) for s in data["settlements"]]
        settlement.total_claims_completed = data["total_claims_completed"]
        settlement.total_blind_claims_requested = data["total_blind_claims_requested"]
        settlement.terminated = data["terminated"]

        # Ids handed out before the restart must not be issued again
        oracle.restore_request_counter(data["next_request_id"])
        return settlement

    def save(self, storage, auction_id: str) -> None:
        """Persist claim flags, blind slots, pending requests and escrow."""
        storage.save_settlement(auction_id, self.to_dict())
        logger.info(f"Settlement {auction_id} saved ({len(self.pending)} pending request(s))")

    @classmethod
    def load(
        cls,
        storage,
        auction_id: str,
        engine: AuctionEngine,
        oracle: DecryptionOracle,
    ) -> Optional["AuctionSettlement"]:
        """Resume settlement state, or None if none was saved."""
        data = storage.load_settlement(auction_id)
        if data is None:
            return None
        settlement = cls.from_dict(engine, oracle, data)
        logger.info(f"Settlement {auction_id} resumed, {len(settlement.settled_ids)} bid(s) settled")
        return settlement

    def stats(self) -> dict:
        return {
            "cleared_price": self.cleared_price,
            "claims_completed": self.total_claims_completed,
            "blind_claims_requested": self.total_blind_claims_requested,
            "pending_requests": len(self.pending),
            "terminated": self.terminated,
        }


__all__ = [
    "AuctionSettlement",
    "PendingDecryption",
    "RequestKind",
    "Settlement",
    "DEFAULT_DECRYPTION_WINDOW",
]
