"""
Decryption Oracle - asynchronous cleartext delivery for settlement.

Requests are queued with a callback and a deadline and resolved later, in
a separate call, by fulfill() or fulfill_all(). Every result is signed with
the oracle's secp256k1 key over decryption_result_digest(request_id, values)
and delivered with the oracle's address as the caller, so the receiving
handler can authenticate it.

Requests past their deadline are dropped unanswered.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from sealbid.crypto import KeyPair, decryption_result_digest, generate_keypair, sign
from sealbid.crypto.fhe import Ciphertext, MockFHEBackend
from sealbid.utils.logger import get_logger

logger = get_logger("oracle")

# callback(request_id, values, caller=..., signature=...)
DecryptionCallback = Callable[..., object]


@dataclass
class DecryptionRequest:
    """A queued decryption request."""
    request_id: int
    handles: List[Ciphertext]
    callback: DecryptionCallback
    deadline: int
    created_at: int = 0
    values: Optional[List[int]] = field(default=None, repr=False)


class DecryptionOracle:
    """
    Mock of the external decryption service.

    Holds the only read access to the coprocessor table outside tests.
    """

    def __init__(self, backend: MockFHEBackend, keypair: Optional[KeyPair] = None):
        self.backend = backend
        self.keypair = keypair or generate_keypair()
        self.pending: Dict[int, DecryptionRequest] = {}
        self.current_tick = 0
        self._next_id = 1

        self.fulfilled_count = 0
        self.expired_count = 0

        logger.info(f"DecryptionOracle ready at {self.address}")

    @property
    def address(self) -> str:
        return self.keypair.address

    @property
    def public_key(self) -> bytes:
        return self.keypair.public_key

    def advance(self, ticks: int = 1) -> None:
        """Move the oracle clock forward."""
        self.current_tick += ticks

    def is_pending(self, request_id: int) -> bool:
        return request_id in self.pending

    @property
    def next_request_id(self) -> int:
        return self._next_id

    def restore_request_counter(self, next_id: int) -> None:
        """Resume id allocation so ids issued before a restart are never reused."""
        self._next_id = max(self._next_id, next_id)

    # =========================================================================
    # Requests
    # =========================================================================

    def request_decryption(
        self,
        handles: Sequence[Ciphertext],
        callback: DecryptionCallback,
        deadline: int,
    ) -> int:
        """
        Queue a request. Returns immediately with its id.

        Raises:
            ValueError: if no handles are given or the deadline has passed
        """
        if not handles:
            raise ValueError("Nothing to decrypt")
        if deadline < self.current_tick:
            raise ValueError(f"Deadline {deadline} already passed (tick {self.current_tick})")

        request_id = self._next_id
        self._next_id += 1
        self.pending[request_id] = DecryptionRequest(
            request_id=request_id,
            handles=list(handles),
            callback=callback,
            deadline=deadline,
            created_at=self.current_tick,
        )
        logger.debug(f"Decryption request #{request_id}: {len(handles)} handle(s), deadline {deadline}")
        return request_id

    # =========================================================================
    # Fulfilment
    # =========================================================================

    def fulfill(self, request_id: int) -> bool:
        """
        Decrypt, sign and deliver one request.

        Returns:
            True if the callback was invoked
        """
        request = self.pending.pop(request_id, None)
        if request is None:
            return False

        if self.current_tick > request.deadline:
            self.expired_count += 1
            logger.warning(f"Decryption request #{request_id} expired at tick {request.deadline}")
            return False

        values = [self.backend.decrypt(ct) for ct in request.handles]
        signature = sign(decryption_result_digest(request_id, values), self.keypair.private_key)
        request.values = values
        self.fulfilled_count += 1

        logger.debug(f"Fulfilling decryption request #{request_id}")
        request.callback(request_id, values, caller=self.address, signature=signature)
        return True

    def fulfill_all(self) -> int:
        """Deliver every pending request in id order; returns how many were delivered."""
        delivered = 0
        # Callbacks may queue new requests; those wait for the next call
        for request_id in sorted(self.pending):
            if self.fulfill(request_id):
                delivered += 1
        return delivered

    def stats(self) -> dict:
        return {
            "pending": len(self.pending),
            "fulfilled": self.fulfilled_count,
            "expired": self.expired_count,
        }


__all__ = ["DecryptionOracle", "DecryptionRequest"]
