"""
Unit tests for the encrypted integer backend.

Tests cover:
1. Arithmetic wrap-around
2. Comparison, boolean and select semantics
3. Type enforcement
4. Gas metering
5. Handle table export/import
"""

import pytest

from sealbid.crypto.fhe import (
    BLOCK_FHE_GAS_LIMIT,
    OP_GAS,
    Ciphertext,
    CipherType,
    MockFHEBackend,
)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def fhe():
    return MockFHEBackend()


# =============================================================================
# Arithmetic
# =============================================================================


class TestArithmetic:
    """Unsigned arithmetic wraps modulo 2^bits."""

    def test_add_wraps(self, fhe):
        x = fhe.encrypt(65535, CipherType.EUINT16)
        assert fhe.decrypt(fhe.add(x, 1)) == 0

    def test_sub_wraps(self, fhe):
        x = fhe.encrypt(0, CipherType.EUINT16)
        assert fhe.decrypt(fhe.sub(x, 1)) == 65535

    def test_mul_wraps(self, fhe):
        x = fhe.encrypt(256, CipherType.EUINT16)
        assert fhe.decrypt(fhe.mul(x, 256)) == 0

    def test_min(self, fhe):
        x = fhe.encrypt(7, CipherType.EUINT64)
        y = fhe.encrypt(3, CipherType.EUINT64)
        assert fhe.decrypt(fhe.min(x, y)) == 3
        assert fhe.decrypt(fhe.min(x, 10)) == 7

    def test_result_keeps_type(self, fhe):
        x = fhe.encrypt(1, CipherType.EUINT256)
        assert fhe.add(x, x).ctype == CipherType.EUINT256


# =============================================================================
# Comparison / Boolean / Select
# =============================================================================


class TestLogic:

    def test_comparisons(self, fhe):
        x = fhe.encrypt(5, CipherType.EUINT64)
        cases = {
            "eq": (5, 1), "ne": (5, 0), "gt": (4, 1),
            "ge": (5, 1), "lt": (5, 0), "le": (5, 1),
        }
        for op, (rhs, expected) in cases.items():
            result = getattr(fhe, op)(x, rhs)
            assert result.ctype == CipherType.EBOOL
            assert fhe.decrypt(result) == expected, op

    def test_boolean_ops(self, fhe):
        t = fhe.encrypt(1, CipherType.EBOOL)
        f = fhe.encrypt(0, CipherType.EBOOL)
        assert fhe.decrypt(fhe.and_(t, f)) == 0
        assert fhe.decrypt(fhe.or_(t, f)) == 1
        assert fhe.decrypt(fhe.not_(f)) == 1

    def test_select(self, fhe):
        a = fhe.encrypt(10, CipherType.EUINT64)
        b = fhe.encrypt(20, CipherType.EUINT64)
        assert fhe.decrypt(fhe.select(fhe.eq(a, 10), a, b)) == 10
        assert fhe.decrypt(fhe.select(fhe.eq(a, 11), a, b)) == 20

    def test_select_with_scalar_branch(self, fhe):
        a = fhe.encrypt(10, CipherType.EUINT64)
        zero = fhe.select(fhe.eq(a, 10), 0, a)
        assert zero.ctype == CipherType.EUINT64
        assert fhe.decrypt(zero) == 0

    def test_select_scalars_need_type(self, fhe):
        cond = fhe.encrypt(1, CipherType.EBOOL)
        with pytest.raises(TypeError):
            fhe.select(cond, 1, 2)
        assert fhe.decrypt(fhe.select(cond, 1, 2, CipherType.EUINT16)) == 1

    def test_cast(self, fhe):
        flag = fhe.eq(fhe.encrypt(3, CipherType.EUINT16), 3)
        assert fhe.decrypt(fhe.cast(flag, CipherType.EUINT16)) == 1
        big = fhe.encrypt(70000, CipherType.EUINT64)
        assert fhe.decrypt(fhe.cast(big, CipherType.EUINT16)) == 70000 % 65536

    def test_random_bound(self, fhe):
        for _ in range(20):
            assert fhe.decrypt(fhe.random(CipherType.EUINT16, upper_bound=10)) < 10
        with pytest.raises(ValueError):
            fhe.random(CipherType.EUINT16, upper_bound=0)


# =============================================================================
# Type Enforcement
# =============================================================================


class TestTypes:

    def test_mixed_types_rejected(self, fhe):
        x = fhe.encrypt(1, CipherType.EUINT16)
        y = fhe.encrypt(1, CipherType.EUINT64)
        with pytest.raises(TypeError):
            fhe.add(x, y)

    def test_arith_on_bool_rejected(self, fhe):
        flag = fhe.encrypt(1, CipherType.EBOOL)
        with pytest.raises(TypeError):
            fhe.add(flag, 1)

    def test_logic_on_uint_rejected(self, fhe):
        x = fhe.encrypt(1, CipherType.EUINT16)
        with pytest.raises(TypeError):
            fhe.and_(x, x)

    def test_scalar_bounds(self, fhe):
        x = fhe.encrypt(1, CipherType.EUINT16)
        with pytest.raises(ValueError):
            fhe.add(x, 70000)
        with pytest.raises(TypeError):
            fhe.add(x, True)

    def test_encrypt_bounds(self, fhe):
        with pytest.raises(ValueError):
            fhe.encrypt(-1, CipherType.EUINT16)
        with pytest.raises(ValueError):
            fhe.trivial_encrypt(1 << 16, CipherType.EUINT16)

    def test_unknown_handle(self, fhe):
        with pytest.raises(ValueError):
            fhe.decrypt(Ciphertext(b"\x00" * 32, CipherType.EUINT16))

    def test_handle_size(self):
        with pytest.raises(ValueError):
            Ciphertext(b"\x00" * 31, CipherType.EUINT16)


# =============================================================================
# Metering
# =============================================================================


class TestMetering:

    def test_gas_accumulates(self, fhe):
        x = fhe.encrypt(1, CipherType.EUINT64)
        before = fhe.gas_used
        fhe.add(x, 1)
        fhe.eq(x, 1)
        assert fhe.gas_used - before == OP_GAS["add"] + OP_GAS["eq"]
        assert fhe.op_counts["add"] == 1

    def test_inputs_are_free(self, fhe):
        fhe.encrypt(1, CipherType.EUINT64)
        fhe.trivial_encrypt(0, CipherType.EUINT64)
        assert fhe.gas_used == 0

    def test_cost_recipe(self, fhe):
        assert fhe.cost({"add": 2, "select": 1}) == 2 * OP_GAS["add"] + OP_GAS["select"]
        assert fhe.cost({}) == 0

    def test_block_limit_covers_a_few_ops(self):
        assert BLOCK_FHE_GAS_LIMIT > max(OP_GAS.values())


# =============================================================================
# Handles / Persistence
# =============================================================================


class TestHandles:

    def test_handles_are_distinct(self, fhe):
        a = fhe.encrypt(5, CipherType.EUINT64)
        b = fhe.encrypt(5, CipherType.EUINT64)
        assert a.handle != b.handle

    def test_handle_encodes_type(self, fhe):
        ct = fhe.encrypt(5, CipherType.EUINT64)
        assert len(ct.handle) == 32
        assert ct.handle[-1] == int(CipherType.EUINT64)

    def test_string_roundtrip(self, fhe):
        ct = fhe.encrypt(5, CipherType.EUINT16)
        assert Ciphertext.from_str(ct.to_str()) == ct

    def test_export_import(self, fhe):
        ct = fhe.encrypt(12345, CipherType.EUINT64)
        other = MockFHEBackend(salt=fhe.salt)
        other.import_table(fhe.export_table())
        other.restore_counter(fhe.counter)
        assert other.decrypt(ct) == 12345
        # Fresh handles do not collide with restored ones
        assert other.encrypt(1, CipherType.EUINT64).handle not in dict(fhe.export_table())
