"""
Escrow Ledger - in-memory payment and asset custody for settlement.

Bidders escrow payment before bidding; the beneficiary escrows the auctioned
supply. Settlement moves value out of escrow into free balances. A balance
going negative means settlement logic is wrong, so it raises instead of
clamping.
"""

from typing import Dict, Tuple

from sealbid.utils.logger import get_logger
from sealbid.utils.validation import validate_amount, validate_bidder_address

logger = get_logger("escrow")


class EscrowLedger:
    """Payment escrow per bidder, free balances, and asset custody."""

    def __init__(self):
        self.escrowed: Dict[str, int] = {}
        self.balances: Dict[str, int] = {}
        self.asset_custody = 0
        self.asset_balances: Dict[str, int] = {}

    # =========================================================================
    # Funding
    # =========================================================================

    def deposit(self, owner: str, amount: int) -> Tuple[bool, str]:
        """Escrow payment for a bidder."""
        valid, err = validate_bidder_address(owner)
        if not valid:
            return False, err
        valid, err = validate_amount(amount)
        if not valid:
            return False, err

        key = owner.lower()
        self.escrowed[key] = self.escrowed.get(key, 0) + amount
        logger.debug(f"Escrowed {amount} for {owner}")
        return True, ""

    def fund_asset(self, amount: int) -> Tuple[bool, str]:
        """Place auctioned supply into custody."""
        valid, err = validate_amount(amount)
        if not valid:
            return False, err
        self.asset_custody += amount
        return True, ""

    # =========================================================================
    # Settlement Moves
    # =========================================================================

    def escrow_of(self, owner: str) -> int:
        return self.escrowed.get(owner.lower(), 0)

    def balance_of(self, owner: str) -> int:
        return self.balances.get(owner.lower(), 0)

    def asset_balance_of(self, owner: str) -> int:
        return self.asset_balances.get(owner.lower(), 0)

    def pay(self, payer: str, payee: str, amount: int) -> None:
        """
        Move escrowed payment to a free balance.

        Raises:
            RuntimeError: if the payer's escrow would go negative
        """
        key = payer.lower()
        held = self.escrowed.get(key, 0)
        if amount < 0 or amount > held:
            raise RuntimeError(f"Escrow of {payer} cannot cover {amount} (holds {held})")
        self.escrowed[key] = held - amount
        self.balances[payee.lower()] = self.balances.get(payee.lower(), 0) + amount

    def refund(self, owner: str) -> int:
        """Release an owner's remaining escrow to its free balance."""
        key = owner.lower()
        amount = self.escrowed.pop(key, 0)
        if amount:
            self.balances[key] = self.balances.get(key, 0) + amount
        return amount

    def transfer_asset(self, recipient: str, amount: int) -> None:
        """
        Release units of the auctioned asset from custody.

        Raises:
            RuntimeError: if custody would go negative
        """
        if amount < 0 or amount > self.asset_custody:
            raise RuntimeError(f"Custody cannot cover {amount} units (holds {self.asset_custody})")
        self.asset_custody -= amount
        key = recipient.lower()
        self.asset_balances[key] = self.asset_balances.get(key, 0) + amount

    # =========================================================================
    # Persistence
    # =========================================================================

    def to_dict(self) -> dict:
        return {
            "escrowed": dict(self.escrowed),
            "balances": dict(self.balances),
            "asset_custody": self.asset_custody,
            "asset_balances": dict(self.asset_balances),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EscrowLedger":
        ledger = cls()
        ledger.escrowed = {k: int(v) for k, v in data["escrowed"].items()}
        ledger.balances = {k: int(v) for k, v in data["balances"].items()}
        ledger.asset_custody = int(data["asset_custody"])
        ledger.asset_balances = {k: int(v) for k, v in data["asset_balances"].items()}
        return ledger

    def stats(self) -> dict:
        return {
            "escrowed": sum(self.escrowed.values()),
            "paid_out": sum(self.balances.values()),
            "asset_custody": self.asset_custody,
        }


__all__ = ["EscrowLedger"]
