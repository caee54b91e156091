"""
Cryptographic primitives for Sealbid.

This module provides:
- Hashing (Keccak-256)
- secp256k1 keypairs and Ethereum-style addresses
- ECDSA signatures used to authenticate decryption oracle callbacks
- The encrypted integer abstraction (see sealbid.crypto.fhe)

Design Notes:
-------------
Participants (bidders, beneficiary, oracle) are identified by addresses
derived from secp256k1 public keys, as on an EVM host chain. The decryption
oracle signs every cleartext result it delivers; the claim protocol only
accepts results whose signature recovers the oracle's public key.

Ciphertext handles are Keccak-256 digests, mirroring how fhEVM-style
coprocessors derive handles from the operation and its operands.
"""

import secrets
from dataclasses import dataclass
from typing import Sequence

from Crypto.Hash import keccak
from py_ecc.secp256k1 import secp256k1


# =============================================================================
# Constants
# =============================================================================

# secp256k1 curve order
SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

# Domain separator for oracle result digests
DOMAIN_DECRYPTION_RESULT = b"sealbid.decryption.v1"


# =============================================================================
# Hashing
# =============================================================================


def keccak256(data: bytes) -> bytes:
    """
    Compute Keccak-256 hash (Ethereum-style).

    Used for: address derivation, ciphertext handles, request digests.
    """
    k = keccak.new(digest_bits=256)
    k.update(data)
    return k.digest()


# =============================================================================
# Keys and Addresses
# =============================================================================


@dataclass
class KeyPair:
    """
    An ECDSA keypair on secp256k1.

    Attributes:
        private_key: 32-byte secret key
        public_key: 64-byte uncompressed public key (x || y)
    """
    private_key: bytes
    public_key: bytes

    @property
    def address(self) -> str:
        """Last 20 bytes of keccak256(public_key), 0x-prefixed hex."""
        return address_from_public_key(self.public_key)


def address_from_public_key(public_key: bytes) -> str:
    """Derive an Ethereum-style address from a 64-byte public key."""
    if len(public_key) != 64:
        raise ValueError(f"Public key must be 64 bytes, got {len(public_key)}")
    return "0x" + keccak256(public_key)[-20:].hex()


def private_key_to_public_key(private_key: bytes) -> bytes:
    """Derive the 64-byte public key for a 32-byte private key."""
    if len(private_key) != 32:
        raise ValueError("Private key must be 32 bytes")

    x, y = secp256k1.privtopub(private_key)
    return x.to_bytes(32, byteorder="big") + y.to_bytes(32, byteorder="big")


def generate_keypair() -> KeyPair:
    """Generate a new random keypair from the OS CSPRNG."""
    private_key_int = secrets.randbelow(SECP256K1_ORDER - 1) + 1
    private_key = private_key_int.to_bytes(32, byteorder="big")
    return KeyPair(
        private_key=private_key,
        public_key=private_key_to_public_key(private_key),
    )


# =============================================================================
# Signatures
# =============================================================================


def sign(message_hash: bytes, private_key: bytes) -> bytes:
    """
    Sign a 32-byte digest with ECDSA on secp256k1.

    Returns:
        64-byte signature (r || s), s normalized to the lower half order
    """
    if len(message_hash) != 32:
        raise ValueError("Message hash must be 32 bytes")
    if len(private_key) != 32:
        raise ValueError("Private key must be 32 bytes")

    _, r, s = secp256k1.ecdsa_raw_sign(message_hash, private_key)

    # Low-s form (EIP-2); recovery below tries both parities
    if s > SECP256K1_ORDER // 2:
        s = SECP256K1_ORDER - s

    return r.to_bytes(32, byteorder="big") + s.to_bytes(32, byteorder="big")


def verify(message_hash: bytes, signature: bytes, public_key: bytes) -> bool:
    """
    Verify an ECDSA signature against a 64-byte public key.

    Returns:
        True if the signature recovers public_key, False otherwise
    """
    if len(message_hash) != 32 or len(signature) != 64 or len(public_key) != 64:
        return False

    r = int.from_bytes(signature[:32], byteorder="big")
    s = int.from_bytes(signature[32:], byteorder="big")
    if not (1 <= r < SECP256K1_ORDER and 1 <= s < SECP256K1_ORDER):
        return False

    expected = (
        int.from_bytes(public_key[:32], byteorder="big"),
        int.from_bytes(public_key[32:], byteorder="big"),
    )
    for v in (27, 28):
        try:
            if secp256k1.ecdsa_raw_recover(message_hash, (v, r, s)) == expected:
                return True
        except (ValueError, ZeroDivisionError, TypeError):
            continue
    return False


# =============================================================================
# Decryption Results
# =============================================================================


def decryption_result_digest(request_id: int, values: Sequence[int]) -> bytes:
    """
    Digest signed by the decryption oracle for one fulfilled request.

    keccak256(domain || request_id || len || v_0 || ... || v_n), with every
    integer encoded as 32 big-endian bytes.
    """
    payload = bytearray(DOMAIN_DECRYPTION_RESULT)
    payload += request_id.to_bytes(32, byteorder="big")
    payload += len(values).to_bytes(32, byteorder="big")
    for value in values:
        payload += int(value).to_bytes(32, byteorder="big")
    return keccak256(bytes(payload))


# =============================================================================
# Encrypted Integers
# =============================================================================

from sealbid.crypto.fhe import (
    CipherType,
    Ciphertext,
    FHEBackend,
    MockFHEBackend,
    OP_GAS,
    BLOCK_FHE_GAS_LIMIT,
)
