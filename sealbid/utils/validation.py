"""
Input Validation - sanitization for engine and claim entry points.

Every public entry point checks its cleartext arguments here before any
state is touched, so a rejected call never leaves partial mutations.

Bounds:
- Prices and quantities fit in 64 bits, so price * quantity fits in the
  256-bit encrypted domain without wrapping.
- Bidder addresses are 0x-prefixed 20-byte hex strings.
"""

from typing import Any, Tuple


# =============================================================================
# Constants
# =============================================================================

ADDRESS_SIZE = 20

MIN_AMOUNT = 0
MAX_AMOUNT = 2**64 - 1

MAX_UNITS = 2**32 - 1
MAX_BUDGET = 2**64 - 1


# =============================================================================
# Validation Functions
# =============================================================================


def validate_integer(
    value: Any,
    name: str,
    min_val: int = MIN_AMOUNT,
    max_val: int = MAX_AMOUNT,
) -> Tuple[bool, str]:
    """
    Validate integer within bounds.

    Args:
        value: Value to validate
        name: Field name for errors
        min_val: Minimum allowed value
        max_val: Maximum allowed value

    Returns:
        (is_valid, error_message)
    """
    if isinstance(value, bool) or not isinstance(value, int):
        return False, f"{name} must be int, got {type(value).__name__}"

    if value < min_val:
        return False, f"{name} must be >= {min_val}, got {value}"

    if value > max_val:
        return False, f"{name} must be <= {max_val}, got {value}"

    return True, ""


def validate_amount(amount: Any, name: str = "amount") -> Tuple[bool, str]:
    """Validate a price, quantity or deposit."""
    return validate_integer(amount, name, MIN_AMOUNT, MAX_AMOUNT)


def validate_unit_count(units: Any) -> Tuple[bool, str]:
    """Validate a requested number of work units or iterations."""
    return validate_integer(units, "units", 0, MAX_UNITS)


def validate_budget(budget: Any) -> Tuple[bool, str]:
    """Validate a gas budget."""
    return validate_integer(budget, "budget", 0, MAX_BUDGET)


def validate_rank(rank: Any, bid_count: int) -> Tuple[bool, str]:
    """Validate a rank index against the number of bids."""
    if bid_count == 0:
        return False, "No bids"
    return validate_integer(rank, "rank", 0, bid_count - 1)


def validate_bidder_address(address: Any) -> Tuple[bool, str]:
    """
    Validate a bidder address.

    Returns:
        (is_valid, error_message)
    """
    if not isinstance(address, str):
        return False, f"address must be str, got {type(address).__name__}"

    if not address.startswith("0x"):
        return False, "address must be 0x-prefixed"

    hex_str = address[2:]
    if len(hex_str) != ADDRESS_SIZE * 2:
        return False, f"address must be {ADDRESS_SIZE} bytes, got {len(hex_str) // 2}"

    try:
        bytes.fromhex(hex_str)
    except ValueError:
        return False, "address contains invalid hex characters"

    return True, ""


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "validate_integer",
    "validate_amount",
    "validate_unit_count",
    "validate_budget",
    "validate_rank",
    "validate_bidder_address",
    "MAX_AMOUNT",
    "ADDRESS_SIZE",
]
