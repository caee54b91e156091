"""
Claim / Award protocol.

- DecryptionOracle: asynchronous, signed cleartext delivery
- EscrowLedger: payment and asset custody
- AuctionSettlement: direct, rank and blind claims; settlement; termination
"""

from sealbid.core.claim.oracle import DecryptionOracle, DecryptionRequest
from sealbid.core.claim.escrow import EscrowLedger
from sealbid.core.claim.protocol import (
    AuctionSettlement,
    PendingDecryption,
    RequestKind,
    Settlement,
    DEFAULT_DECRYPTION_WINDOW,
)

__all__ = [
    "AuctionSettlement",
    "DecryptionOracle",
    "DecryptionRequest",
    "EscrowLedger",
    "PendingDecryption",
    "RequestKind",
    "Settlement",
    "DEFAULT_DECRYPTION_WINDOW",
]
