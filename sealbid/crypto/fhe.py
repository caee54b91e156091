"""
Encrypted integers - the oblivious computation capability used by the engine.

The auction engine never sees a cleartext bid. It manipulates opaque
Ciphertext handles through a small capability interface:

    arithmetic:  add, sub, mul, min          (wrap modulo 2^bits)
    comparison:  eq, ne, gt, ge, lt, le      (-> encrypted boolean)
    boolean:     and_, or_, not_
    selection:   select(cond, a, b)          (branch-free a-or-b)
    misc:        cast, random, encrypt, trivial_encrypt

Every operation is charged against OP_GAS so that a caller can price a unit
of work before running it and stay within a per-invocation budget
(BLOCK_FHE_GAS_LIMIT by default).

MockFHEBackend follows the mocked-coprocessor model used for local fhEVM
testing: the cleartext behind each handle lives in a private table that
only the decryption oracle (and tests) read through decrypt().

Handle layout:
    handle = keccak256(salt || counter || op || operands)[:31] || ctype
"""

from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union
import secrets

from sealbid.crypto import keccak256


# =============================================================================
# Constants
# =============================================================================

# Per-operation gas, loosely calibrated on fhEVM coprocessor prices
OP_GAS: Dict[str, int] = {
    "add": 188_000,
    "sub": 188_000,
    "mul": 641_000,
    "min": 384_000,
    "eq": 100_000,
    "ne": 100_000,
    "gt": 156_000,
    "ge": 156_000,
    "lt": 156_000,
    "le": 156_000,
    "and": 34_000,
    "or": 34_000,
    "not": 34_000,
    "select": 138_000,
    "cast": 32_000,
    "rand": 100_000,
    "encrypt": 0,
    "trivial": 0,
}

# Default per-invocation budget (fhEVM block FHE gas limit)
BLOCK_FHE_GAS_LIMIT = 10_000_000

HANDLE_SIZE = 32


# =============================================================================
# Types
# =============================================================================


class CipherType(IntEnum):
    """Encrypted value types."""
    EBOOL = 0
    EUINT16 = 1
    EUINT64 = 2
    EUINT256 = 3

    @property
    def bits(self) -> int:
        return _BITS[self]

    @property
    def modulus(self) -> int:
        return 1 << _BITS[self]


_BITS = {
    CipherType.EBOOL: 1,
    CipherType.EUINT16: 16,
    CipherType.EUINT64: 64,
    CipherType.EUINT256: 256,
}


@dataclass(frozen=True)
class Ciphertext:
    """
    Opaque encrypted value.

    Only the handle and the declared type are visible; the cleartext never
    leaves the backend.
    """
    handle: bytes
    ctype: CipherType

    def __post_init__(self):
        if len(self.handle) != HANDLE_SIZE:
            raise ValueError(f"Handle must be {HANDLE_SIZE} bytes, got {len(self.handle)}")

    def to_str(self) -> str:
        """Serialize as '<ctype>:<hex handle>'."""
        return f"{int(self.ctype)}:{self.handle.hex()}"

    @classmethod
    def from_str(cls, data: str) -> "Ciphertext":
        ctype, handle = data.split(":", 1)
        return cls(handle=bytes.fromhex(handle), ctype=CipherType(int(ctype)))

    def __repr__(self) -> str:
        return f"Ciphertext({self.ctype.name}, 0x{self.handle.hex()[:12]}...)"


Operand = Union[Ciphertext, int]


# =============================================================================
# Capability Interface
# =============================================================================


class FHEBackend(ABC):
    """
    Capability interface for oblivious computation on encrypted integers.

    Subclasses implement the operations; metering lives here so that every
    backend reports gas the same way.
    """

    def __init__(self):
        self.gas_used = 0
        self.op_counts: Counter = Counter()

    # -------------------------------------------------------------------------
    # Metering
    # -------------------------------------------------------------------------

    def _charge(self, op: str) -> None:
        self.gas_used += OP_GAS[op]
        self.op_counts[op] += 1

    @staticmethod
    def cost(recipe: Mapping[str, int]) -> int:
        """Price a multiset of operations, e.g. {"eq": 1, "select": 2}."""
        return sum(OP_GAS[op] * count for op, count in recipe.items())

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    @abstractmethod
    def encrypt(self, value: int, ctype: CipherType) -> Ciphertext:
        """Encrypt a client input."""

    @abstractmethod
    def trivial_encrypt(self, value: int, ctype: CipherType) -> Ciphertext:
        """Encrypt a public constant."""

    @abstractmethod
    def add(self, a: Ciphertext, b: Operand) -> Ciphertext: ...

    @abstractmethod
    def sub(self, a: Ciphertext, b: Operand) -> Ciphertext: ...

    @abstractmethod
    def mul(self, a: Ciphertext, b: Operand) -> Ciphertext: ...

    @abstractmethod
    def min(self, a: Ciphertext, b: Operand) -> Ciphertext: ...

    @abstractmethod
    def eq(self, a: Ciphertext, b: Operand) -> Ciphertext: ...

    @abstractmethod
    def ne(self, a: Ciphertext, b: Operand) -> Ciphertext: ...

    @abstractmethod
    def gt(self, a: Ciphertext, b: Operand) -> Ciphertext: ...

    @abstractmethod
    def ge(self, a: Ciphertext, b: Operand) -> Ciphertext: ...

    @abstractmethod
    def lt(self, a: Ciphertext, b: Operand) -> Ciphertext: ...

    @abstractmethod
    def le(self, a: Ciphertext, b: Operand) -> Ciphertext: ...

    @abstractmethod
    def and_(self, a: Ciphertext, b: Operand) -> Ciphertext: ...

    @abstractmethod
    def or_(self, a: Ciphertext, b: Operand) -> Ciphertext: ...

    @abstractmethod
    def not_(self, a: Ciphertext) -> Ciphertext: ...

    @abstractmethod
    def select(
        self,
        cond: Ciphertext,
        if_true: Operand,
        if_false: Operand,
        ctype: Optional[CipherType] = None,
    ) -> Ciphertext: ...

    @abstractmethod
    def cast(self, a: Ciphertext, ctype: CipherType) -> Ciphertext: ...

    @abstractmethod
    def random(self, ctype: CipherType, upper_bound: Optional[int] = None) -> Ciphertext: ...


# =============================================================================
# Mock Backend
# =============================================================================


class MockFHEBackend(FHEBackend):
    """
    Mocked coprocessor: cleartexts live in a private handle table.

    Semantics match an fhEVM-style backend: unsigned arithmetic wraps,
    comparisons yield EBOOL, select is branch-free from the caller's view.
    """

    def __init__(self, salt: Optional[bytes] = None):
        super().__init__()
        self._salt = salt if salt is not None else secrets.token_bytes(16)
        self._counter = 0
        self._table: Dict[bytes, int] = {}

    # -------------------------------------------------------------------------
    # Handle table
    # -------------------------------------------------------------------------

    def _new_handle(self, op: str, ctype: CipherType, operands: Iterable[bytes]) -> bytes:
        self._counter += 1
        digest = keccak256(
            self._salt
            + self._counter.to_bytes(8, "big")
            + op.encode()
            + b"".join(operands)
        )
        return digest[:HANDLE_SIZE - 1] + bytes([int(ctype)])

    def _store(self, op: str, value: int, ctype: CipherType, operands: Iterable[bytes] = ()) -> Ciphertext:
        handle = self._new_handle(op, ctype, operands)
        self._table[handle] = value % ctype.modulus
        return Ciphertext(handle=handle, ctype=ctype)

    def _load(self, ct: Ciphertext) -> int:
        try:
            return self._table[ct.handle]
        except KeyError:
            raise ValueError(f"Unknown ciphertext handle {ct!r}") from None

    def _operand(self, b: Operand, ctype: CipherType) -> Tuple[int, bytes]:
        """Resolve a right-hand operand (ciphertext or public scalar)."""
        if isinstance(b, Ciphertext):
            if b.ctype != ctype:
                raise TypeError(f"Operand type mismatch: {ctype.name} vs {b.ctype.name}")
            return self._load(b), b.handle
        if isinstance(b, bool) or not isinstance(b, int):
            raise TypeError(f"Scalar operand must be int, got {type(b).__name__}")
        if not 0 <= b < ctype.modulus:
            raise ValueError(f"Scalar {b} out of range for {ctype.name}")
        return b, b"s" + b.to_bytes((ctype.bits + 7) // 8, "big")

    @staticmethod
    def _require(a: Ciphertext, *, boolean: bool) -> None:
        if not isinstance(a, Ciphertext):
            raise TypeError(f"Left operand must be a Ciphertext, got {type(a).__name__}")
        if boolean and a.ctype != CipherType.EBOOL:
            raise TypeError(f"Expected EBOOL, got {a.ctype.name}")
        if not boolean and a.ctype == CipherType.EBOOL:
            raise TypeError("Expected an encrypted integer, got EBOOL")

    def _arith(self, op: str, a: Ciphertext, b: Operand, fn: Callable[[int, int], int]) -> Ciphertext:
        self._require(a, boolean=False)
        lhs = self._load(a)
        rhs, rhs_bytes = self._operand(b, a.ctype)
        self._charge(op)
        return self._store(op, fn(lhs, rhs), a.ctype, (a.handle, rhs_bytes))

    def _compare(self, op: str, a: Ciphertext, b: Operand, fn: Callable[[int, int], bool]) -> Ciphertext:
        self._require(a, boolean=False)
        lhs = self._load(a)
        rhs, rhs_bytes = self._operand(b, a.ctype)
        self._charge(op)
        return self._store(op, int(fn(lhs, rhs)), CipherType.EBOOL, (a.handle, rhs_bytes))

    def _logic(self, op: str, a: Ciphertext, b: Operand, fn: Callable[[int, int], int]) -> Ciphertext:
        self._require(a, boolean=True)
        lhs = self._load(a)
        rhs, rhs_bytes = self._operand(b, CipherType.EBOOL)
        self._charge(op)
        return self._store(op, fn(lhs, rhs), CipherType.EBOOL, (a.handle, rhs_bytes))

    # -------------------------------------------------------------------------
    # Inputs
    # -------------------------------------------------------------------------

    def encrypt(self, value: int, ctype: CipherType) -> Ciphertext:
        if not 0 <= value < ctype.modulus:
            raise ValueError(f"Value {value} out of range for {ctype.name}")
        self._charge("encrypt")
        return self._store("encrypt", value, ctype)

    def trivial_encrypt(self, value: int, ctype: CipherType) -> Ciphertext:
        if not 0 <= value < ctype.modulus:
            raise ValueError(f"Value {value} out of range for {ctype.name}")
        self._charge("trivial")
        return self._store("trivial", value, ctype)

    # -------------------------------------------------------------------------
    # Arithmetic
    # -------------------------------------------------------------------------

    def add(self, a: Ciphertext, b: Operand) -> Ciphertext:
        return self._arith("add", a, b, lambda x, y: x + y)

    def sub(self, a: Ciphertext, b: Operand) -> Ciphertext:
        return self._arith("sub", a, b, lambda x, y: x - y)

    def mul(self, a: Ciphertext, b: Operand) -> Ciphertext:
        return self._arith("mul", a, b, lambda x, y: x * y)

    def min(self, a: Ciphertext, b: Operand) -> Ciphertext:
        return self._arith("min", a, b, lambda x, y: x if x < y else y)

    # -------------------------------------------------------------------------
    # Comparison
    # -------------------------------------------------------------------------

    def eq(self, a: Ciphertext, b: Operand) -> Ciphertext:
        return self._compare("eq", a, b, lambda x, y: x == y)

    def ne(self, a: Ciphertext, b: Operand) -> Ciphertext:
        return self._compare("ne", a, b, lambda x, y: x != y)

    def gt(self, a: Ciphertext, b: Operand) -> Ciphertext:
        return self._compare("gt", a, b, lambda x, y: x > y)

    def ge(self, a: Ciphertext, b: Operand) -> Ciphertext:
        return self._compare("ge", a, b, lambda x, y: x >= y)

    def lt(self, a: Ciphertext, b: Operand) -> Ciphertext:
        return self._compare("lt", a, b, lambda x, y: x < y)

    def le(self, a: Ciphertext, b: Operand) -> Ciphertext:
        return self._compare("le", a, b, lambda x, y: x <= y)

    # -------------------------------------------------------------------------
    # Boolean
    # -------------------------------------------------------------------------

    def and_(self, a: Ciphertext, b: Operand) -> Ciphertext:
        return self._logic("and", a, b, lambda x, y: x & y)

    def or_(self, a: Ciphertext, b: Operand) -> Ciphertext:
        return self._logic("or", a, b, lambda x, y: x | y)

    def not_(self, a: Ciphertext) -> Ciphertext:
        self._require(a, boolean=True)
        value = self._load(a)
        self._charge("not")
        return self._store("not", 1 - value, CipherType.EBOOL, (a.handle,))

    # -------------------------------------------------------------------------
    # Selection / conversion
    # -------------------------------------------------------------------------

    def select(
        self,
        cond: Ciphertext,
        if_true: Operand,
        if_false: Operand,
        ctype: Optional[CipherType] = None,
    ) -> Ciphertext:
        self._require(cond, boolean=True)
        if ctype is None:
            for branch in (if_true, if_false):
                if isinstance(branch, Ciphertext):
                    ctype = branch.ctype
                    break
            else:
                raise TypeError("select() needs a ctype when both branches are scalars")

        t_value, t_bytes = self._operand(if_true, ctype)
        f_value, f_bytes = self._operand(if_false, ctype)
        c_value = self._load(cond)
        self._charge("select")
        # Both branches are already evaluated; the choice happens in the table
        chosen = t_value if c_value else f_value
        return self._store("select", chosen, ctype, (cond.handle, t_bytes, f_bytes))

    def cast(self, a: Ciphertext, ctype: CipherType) -> Ciphertext:
        if not isinstance(a, Ciphertext):
            raise TypeError(f"cast() expects a Ciphertext, got {type(a).__name__}")
        value = self._load(a)
        self._charge("cast")
        return self._store("cast", value, ctype, (a.handle,))

    def random(self, ctype: CipherType, upper_bound: Optional[int] = None) -> Ciphertext:
        bound = ctype.modulus if upper_bound is None else upper_bound
        if not 0 < bound <= ctype.modulus:
            raise ValueError(f"Invalid upper bound {bound} for {ctype.name}")
        self._charge("rand")
        return self._store("rand", secrets.randbelow(bound), ctype)

    # -------------------------------------------------------------------------
    # Oracle access / persistence
    # -------------------------------------------------------------------------

    def decrypt(self, ct: Ciphertext) -> int:
        """
        Reveal a cleartext.

        Reserved for the decryption oracle and for test inspection; engine
        code must never call this.
        """
        return self._load(ct)

    def export_table(self) -> List[Tuple[bytes, int]]:
        """Dump (handle, value) rows for persistence."""
        return list(self._table.items())

    def import_table(self, rows: Iterable[Tuple[bytes, int]]) -> None:
        for handle, value in rows:
            self._table[bytes(handle)] = int(value)

    @property
    def salt(self) -> bytes:
        return self._salt

    @property
    def counter(self) -> int:
        return self._counter

    def restore_counter(self, counter: int) -> None:
        """Continue handle derivation after a reload."""
        self._counter = max(self._counter, counter)

    def stats(self) -> dict:
        return {
            "ciphertexts": len(self._table),
            "gas_used": self.gas_used,
            "ops": dict(self.op_counts),
        }
