"""
Bid Store - encrypted bids indexed by stable bidder identity.

Each registered bidder owns one slot holding an encrypted (price, quantity)
pair. Identities are small integers assigned in registration order starting
at 1 (0 means unregistered) and are never reused: a cancelled bid keeps its
slot with zeroed values, and the same bidder may later bid again into it.

Validation (step 1 of the engine) rewrites each slot obliviously:
    quantity = min(quantity, Q)
    invalid  = price == 0 or quantity == 0 [or price * quantity > deposit]
    (price, quantity) = invalid ? (0, 0) : (price, quantity)

The deposit check only applies when a cleartext escrow deposit was recorded
with the bid.
"""

from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from sealbid.core.types import TieBreakRule
from sealbid.crypto.fhe import Ciphertext, CipherType, FHEBackend
from sealbid.utils.logger import get_logger
from sealbid.utils.validation import validate_amount, validate_bidder_address

logger = get_logger("bid_store")


# =============================================================================
# Constants
# =============================================================================

# Bid amounts are bounded by type; products and prefix sums are widened
PRICE_TYPE = CipherType.EUINT64
QUANTITY_TYPE = CipherType.EUINT64
WIDE_TYPE = CipherType.EUINT256
ID_TYPE = CipherType.EUINT16
RANDOM_KEY_TYPE = CipherType.EUINT64

# Random keys are rand(2^32) << 16 | id, unique by construction
RANDOM_BITS = 32
ID_BITS = 16


# =============================================================================
# Data Structures
# =============================================================================


@dataclass
class Bid:
    """
    One bidder slot.

    Attributes:
        bid_id: Stable identity (1-based)
        bidder: Bidder address
        price: Encrypted price (validated in place by step 1)
        quantity: Encrypted quantity (validated in place by step 1)
        enc_id: Encrypted copy of bid_id, selected obliviously by rank
        random_key: Encrypted tie-break key (RANDOM rule only)
        deposit: Cleartext escrow deposit, if one was recorded
        cancelled: Bid was removed before validation
    """
    bid_id: int
    bidder: str
    price: Ciphertext
    quantity: Ciphertext
    enc_id: Ciphertext
    random_key: Optional[Ciphertext] = None
    deposit: Optional[int] = None
    cancelled: bool = False

    def to_dict(self) -> dict:
        return {
            "bid_id": self.bid_id,
            "bidder": self.bidder,
            "price": self.price.to_str(),
            "quantity": self.quantity.to_str(),
            "enc_id": self.enc_id.to_str(),
            "random_key": self.random_key.to_str() if self.random_key else None,
            "deposit": self.deposit,
            "cancelled": self.cancelled,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Bid":
        return cls(
            bid_id=data["bid_id"],
            bidder=data["bidder"],
            price=Ciphertext.from_str(data["price"]),
            quantity=Ciphertext.from_str(data["quantity"]),
            enc_id=Ciphertext.from_str(data["enc_id"]),
            random_key=Ciphertext.from_str(data["random_key"]) if data.get("random_key") else None,
            deposit=data.get("deposit"),
            cancelled=data.get("cancelled", False),
        )


# =============================================================================
# Bid Store
# =============================================================================


class BidStore:
    """
    Append-only store of encrypted bids.

    Accepts bids until closed; the engine closes the store when validation
    starts, which fixes the bid count N.
    """

    def __init__(
        self,
        backend: FHEBackend,
        total_quantity: int,
        max_bid_count: int,
        tie_break_rule: TieBreakRule = TieBreakRule.PRICE_ID,
    ):
        self.backend = backend
        self.total_quantity = total_quantity
        self.max_bid_count = max_bid_count
        self.tie_break_rule = TieBreakRule(tie_break_rule)

        self.bids: List[Bid] = []
        self.bidder_to_id: Dict[str, int] = {}
        self.closed = False

    # =========================================================================
    # Lookup
    # =========================================================================

    @property
    def bid_count(self) -> int:
        return len(self.bids)

    def get(self, bid_id: int) -> Optional[Bid]:
        """Get bid by 1-based identity."""
        if 1 <= bid_id <= len(self.bids):
            return self.bids[bid_id - 1]
        return None

    def bid_id_of(self, bidder: str) -> int:
        """Identity of a bidder, 0 if unregistered."""
        return self.bidder_to_id.get(bidder.lower(), 0)

    def at(self, index: int) -> Bid:
        """Bid by 0-based position."""
        return self.bids[index]

    # =========================================================================
    # Registration
    # =========================================================================

    def add_bid(
        self,
        bidder: str,
        price: Ciphertext,
        quantity: Ciphertext,
        deposit: Optional[int] = None,
    ) -> Tuple[Optional[int], str]:
        """
        Register an encrypted bid.

        Args:
            bidder: Bidder address
            price: Encrypted price (EUINT64)
            quantity: Encrypted quantity (EUINT64)
            deposit: Optional cleartext escrow deposit backing the bid

        Returns:
            (bid_id, error_message) - bid_id is None on failure
        """
        valid, err = validate_bidder_address(bidder)
        if not valid:
            return None, err
        if self.closed:
            return None, "Bidding is closed"
        if not isinstance(price, Ciphertext) or price.ctype != PRICE_TYPE:
            return None, f"Price must be an encrypted {PRICE_TYPE.name}"
        if not isinstance(quantity, Ciphertext) or quantity.ctype != QUANTITY_TYPE:
            return None, f"Quantity must be an encrypted {QUANTITY_TYPE.name}"
        if deposit is not None:
            valid, err = validate_amount(deposit, "deposit")
            if not valid:
                return None, err

        key = bidder.lower()
        existing = self.bidder_to_id.get(key, 0)
        if existing:
            bid = self.bids[existing - 1]
            if not bid.cancelled:
                return None, "Bidder already has a bid"
            # Cancelled slot is reused, identity and random key persist
            bid.price = price
            bid.quantity = quantity
            bid.deposit = deposit
            bid.cancelled = False
            logger.info(f"Bid #{existing} re-placed by {bidder}")
            return existing, ""

        if len(self.bids) >= self.max_bid_count:
            return None, f"Max bid count reached ({self.max_bid_count})"

        bid_id = len(self.bids) + 1
        bid = Bid(
            bid_id=bid_id,
            bidder=key,
            price=price,
            quantity=quantity,
            enc_id=self.backend.trivial_encrypt(bid_id, ID_TYPE),
            deposit=deposit,
        )
        if self.tie_break_rule == TieBreakRule.RANDOM:
            bid.random_key = self._random_key(bid_id)

        self.bids.append(bid)
        self.bidder_to_id[key] = bid_id

        logger.info(f"Bid #{bid_id} placed by {bidder}")
        return bid_id, ""

    def _random_key(self, bid_id: int) -> Ciphertext:
        b = self.backend
        noise = b.random(RANDOM_KEY_TYPE, upper_bound=1 << RANDOM_BITS)
        return b.add(b.mul(noise, 1 << ID_BITS), bid_id)

    def remove_bid(self, bidder: str) -> Tuple[bool, str]:
        """
        Cancel a bid: zero its encrypted values, keep the slot.

        Returns:
            (success, error_message)
        """
        if self.closed:
            return False, "Bidding is closed"
        bid_id = self.bid_id_of(bidder) if isinstance(bidder, str) else 0
        if not bid_id:
            return False, "Bidder has no bid"
        bid = self.bids[bid_id - 1]
        if bid.cancelled:
            return False, "Bid already cancelled"

        bid.price = self.backend.trivial_encrypt(0, PRICE_TYPE)
        bid.quantity = self.backend.trivial_encrypt(0, QUANTITY_TYPE)
        bid.cancelled = True

        logger.info(f"Bid #{bid_id} cancelled by {bidder}")
        return True, ""

    def close(self) -> None:
        """Stop accepting bids; N is fixed from here on."""
        if not self.closed:
            self.closed = True
            logger.info(f"Bidding closed with {len(self.bids)} bid(s)")

    # =========================================================================
    # Validation (step 1)
    # =========================================================================

    def validation_recipe(self, index: int) -> Counter:
        """Operations run by validate_at(index)."""
        recipe = Counter({"min": 1, "eq": 2, "or": 1, "select": 2})
        if self.bids[index].deposit is not None:
            recipe.update({"cast": 2, "mul": 1, "gt": 1, "or": 1})
        return recipe

    def validate_at(self, index: int) -> None:
        """Validate the bid at 0-based position `index` in place."""
        b = self.backend
        bid = self.bids[index]

        quantity = b.min(bid.quantity, self.total_quantity)
        invalid = b.or_(b.eq(bid.price, 0), b.eq(quantity, 0))
        if bid.deposit is not None:
            cost = b.mul(b.cast(bid.price, WIDE_TYPE), b.cast(quantity, WIDE_TYPE))
            invalid = b.or_(invalid, b.gt(cost, bid.deposit))

        bid.price = b.select(invalid, 0, bid.price)
        bid.quantity = b.select(invalid, 0, quantity)

    # =========================================================================
    # Persistence
    # =========================================================================

    def to_dict(self) -> dict:
        return {
            "total_quantity": self.total_quantity,
            "max_bid_count": self.max_bid_count,
            "tie_break_rule": int(self.tie_break_rule),
            "closed": self.closed,
            "bids": [bid.to_dict() for bid in self.bids],
        }

    @classmethod
    def from_dict(cls, backend: FHEBackend, data: dict) -> "BidStore":
        store = cls(
            backend=backend,
            total_quantity=data["total_quantity"],
            max_bid_count=data["max_bid_count"],
            tie_break_rule=TieBreakRule(data["tie_break_rule"]),
        )
        store.closed = data["closed"]
        for raw in data["bids"]:
            bid = Bid.from_dict(raw)
            store.bids.append(bid)
            store.bidder_to_id[bid.bidder] = bid.bid_id
        return store


__all__ = [
    "Bid",
    "BidStore",
    "PRICE_TYPE",
    "QUANTITY_TYPE",
    "WIDE_TYPE",
    "ID_TYPE",
    "RANDOM_KEY_TYPE",
]
