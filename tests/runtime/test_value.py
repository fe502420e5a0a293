# Copyright 2025 Ant Group Co., Ltd.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Tests for the runtime value model."""

import numpy as np
import pytest

from mpcflow.edsl.typing import (
    BIT,
    Array,
    NamedTupleType,
    Tuple,
    Vector,
    i8,
    i32,
    u8,
    u32,
    u64,
)
from mpcflow.runtime import value as rv

# ==============================================================================
# --- Ring arithmetic
# ==============================================================================


class TestRing:
    """Wraparound arithmetic over Z/2^bitwidth."""

    def test_wrap_masks_to_bitwidth(self):
        """Values are reduced to the scalar's bitwidth."""
        assert int(rv.wrap(0x1FF, u8)) == 0xFF
        assert int(rv.wrap(3, BIT)) == 1
        assert rv.wrap(5, u32).dtype == np.uint64

    def test_add_and_mul_wrap(self):
        """Overflow wraps silently."""
        a = rv.from_python(250, u8)
        b = rv.from_python(10, u8)
        assert int(rv.ring_add(a, b, u8)) == 4
        assert int(rv.ring_mul(a, b, u8)) == (2500 % 256)

    def test_u64_wraps_at_two_to_the_64(self):
        """64-bit arithmetic relies on numpy's uint64 overflow."""
        a = rv.from_python(2**64 - 1, u64)
        assert int(rv.ring_add(a, rv.from_python(2, u64), u64)) == 1
        assert int(rv.ring_neg(rv.from_python(1, u64), u64)) == 2**64 - 1

    def test_sub_and_neg(self):
        """Subtraction below zero yields the two's complement residue."""
        a = rv.from_python(3, u32)
        b = rv.from_python(5, u32)
        assert int(rv.ring_sub(a, b, u32)) == 2**32 - 2
        assert int(rv.ring_neg(a, u32)) == 2**32 - 3

    def test_matmul_and_sum(self):
        """Matrix product and reductions stay in the ring."""
        a = rv.from_python([[1, 2], [3, 4]], Array[u8, (2, 2)])
        out = rv.ring_matmul(a, a, u8)
        np.testing.assert_array_equal(out, [[7, 10], [15, 22]])
        big = rv.from_python([200, 100], Array[u8, (2,)])
        assert int(rv.ring_sum(big, (0,), u8)) == 44

    def test_scale_by_negative_constant(self):
        """Scaling by a negative integer multiplies by its residue."""
        a = rv.from_python(3, i32)
        assert rv.to_python(rv.ring_scale(a, -2, i32), i32) == -6


# ==============================================================================
# --- Conversion
# ==============================================================================


class TestConversion:
    """from_python / to_python and signed interpretation."""

    def test_negative_ints_roundtrip(self):
        """Signed scalars accept negatives and read them back."""
        v = rv.from_python(-5, i8)
        assert int(v) == 251
        assert rv.to_python(v, i8) == -5

    def test_to_signed_at_boundaries(self):
        """The MSB decides the sign."""
        vals = rv.from_python([127, 128, 255], Array[u8, (3,)])
        np.testing.assert_array_equal(rv.to_signed(vals, i8), [127, -128, -1])

    def test_array_shape_mismatch(self):
        """An array of the wrong shape is rejected."""
        with pytest.raises(ValueError):
            rv.from_python([1, 2, 3], Array[u32, (2,)])

    def test_floats_rejected(self):
        """Floating point data never enters the ring."""
        with pytest.raises(TypeError):
            rv.from_python(1.5, u32)

    def test_huge_python_ints(self):
        """Python ints beyond 64 bits are reduced."""
        assert int(rv.from_python(2**70 + 3, u32)) == 3

    def test_composites(self):
        """Tuples, named tuples (from dicts) and vectors."""
        nt = NamedTupleType({"x": u32, "y": i32})
        v = rv.from_python({"y": -1, "x": 2}, nt)
        assert rv.to_python(v, nt) == {"x": 2, "y": -1}
        tt = Tuple[u32, BIT]
        assert rv.to_python(rv.from_python((7, 1), tt), tt) == (7, 1)
        vt = Vector[u8, 3]
        assert rv.to_python(rv.from_python([1, 2, 3], vt), vt) == [1, 2, 3]
        with pytest.raises(ValueError):
            rv.from_python([1, 2], vt)


# ==============================================================================
# --- Structure helpers
# ==============================================================================


class TestStructure:
    """zeros_of_type, map_leaves, conforms, values_equal, freeze."""

    def test_zeros_of_array(self):
        """Zeros follow the array shape."""
        z = rv.zeros_of_type(Array[u32, (3, 4)])
        assert z.shape == (3, 4)
        assert z.dtype == np.uint64
        assert not z.any()

    def test_zeros_of_composite(self):
        """Composite zeros are tuples of leaf zeros."""
        z = rv.zeros_of_type(Tuple[u32, Vector[BIT, 2]])
        assert isinstance(z, tuple) and isinstance(z[1], tuple)
        assert len(z[1]) == 2

    def test_map_leaves(self):
        """The callback sees each leaf's type and values."""
        t = Tuple[u8, i32]
        a = rv.from_python((250, 1), t)
        b = rv.from_python((10, -3), t)
        out = rv.map_leaves(lambda lt, x, y: rv.ring_add(x, y, lt), t, a, b)
        assert rv.to_python(out, t) == (4, -2)

    def test_conforms(self):
        """Dtype, shape and range are all checked."""
        t = Array[u8, (2,)]
        assert rv.conforms(rv.from_python([1, 2], t), t)
        assert not rv.conforms(np.array([1, 2], dtype=np.int64), t)
        assert not rv.conforms(np.array([1, 256], dtype=np.uint64), t)
        assert not rv.conforms(np.array([1], dtype=np.uint64), t)
        assert not rv.conforms((rv.from_python(1, u8),), Tuple[u8, u8])

    def test_values_equal(self):
        """Equality is structural and exact."""
        t = Tuple[u32, u32]
        a = rv.from_python((1, 2), t)
        assert rv.values_equal(a, rv.from_python((1, 2), t))
        assert not rv.values_equal(a, rv.from_python((1, 3), t))
        assert not rv.values_equal(a, a[0])

    def test_freeze(self):
        """Frozen leaves are read-only."""
        v = rv.freeze(rv.from_python((1, [1, 2]), Tuple[u32, Array[u32, (2,)]]))
        with pytest.raises(ValueError):
            v[1][0] = 5
