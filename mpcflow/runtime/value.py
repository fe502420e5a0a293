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

"""Runtime value model.

Numeric values (Scalar and Array types) are ``numpy.uint64`` ndarrays holding
the unsigned residue modulo 2^bitwidth; scalars are 0-d arrays. Tuples, named
tuples and vectors are Python tuples of their element values.

All ring helpers go through numpy ufuncs so that wraparound is silent and
exact: 2^bitwidth divides 2^64, so reducing the uint64 result is enough.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

import numpy as np

from mpcflow.edsl.typing import (
    BaseType,
    NamedTupleType,
    ScalarType,
    TupleType,
    VectorType,
    is_numeric,
    scalar_of,
    shape_of,
)

DTYPE = np.uint64


def _mask(scalar: ScalarType) -> np.uint64:
    return np.uint64(scalar.mask)


def wrap(x: Any, scalar: ScalarType) -> np.ndarray:
    """Reduce `x` into Z/2^bitwidth, returning a uint64 ndarray."""
    arr = np.asarray(x, dtype=DTYPE)
    if scalar.bitwidth == 64:
        return np.array(arr, dtype=DTYPE)
    return np.asarray(np.bitwise_and(arr, _mask(scalar), dtype=DTYPE), dtype=DTYPE)


def to_signed(x: np.ndarray, scalar: ScalarType) -> np.ndarray:
    """Two's complement interpretation of residues as int64."""
    arr = np.asarray(x, dtype=DTYPE)
    if scalar.bitwidth == 64:
        return arr.view(np.int64).reshape(arr.shape)
    v = arr.astype(np.int64)
    sign = np.int64(1 << (scalar.bitwidth - 1))
    return np.where(v >= sign, v - np.int64(1 << scalar.bitwidth), v).astype(np.int64)


def interpret(x: np.ndarray, scalar: ScalarType) -> np.ndarray:
    """Residues as numbers: int64 for signed scalars, uint64 otherwise."""
    if scalar.signed:
        return to_signed(x, scalar)
    return np.asarray(x, dtype=DTYPE)


# ==============================================================================
# --- Ring arithmetic
# ==============================================================================


def ring_add(a: Any, b: Any, scalar: ScalarType) -> np.ndarray:
    return wrap(np.add(a, b, dtype=DTYPE), scalar)


def ring_sub(a: Any, b: Any, scalar: ScalarType) -> np.ndarray:
    return wrap(np.subtract(a, b, dtype=DTYPE), scalar)


def ring_mul(a: Any, b: Any, scalar: ScalarType) -> np.ndarray:
    return wrap(np.multiply(a, b, dtype=DTYPE), scalar)


def ring_neg(a: Any, scalar: ScalarType) -> np.ndarray:
    return wrap(np.subtract(DTYPE(0), a, dtype=DTYPE), scalar)


def ring_matmul(a: Any, b: Any, scalar: ScalarType) -> np.ndarray:
    return wrap(np.matmul(np.asarray(a, DTYPE), np.asarray(b, DTYPE)), scalar)


def ring_sum(a: Any, axes: tuple[int, ...], scalar: ScalarType) -> np.ndarray:
    return wrap(np.sum(np.asarray(a, DTYPE), axis=axes, dtype=DTYPE), scalar)


def ring_scale(a: Any, k: int, scalar: ScalarType) -> np.ndarray:
    return ring_mul(a, DTYPE(k & 0xFFFFFFFFFFFFFFFF), scalar)


# ==============================================================================
# --- Construction and conversion
# ==============================================================================


def zeros_of_type(t: BaseType) -> Any:
    """All-zero value of type `t` (placeholder for another party's input).

    >>> zeros_of_type(ArrayType((3, 4), u32)).shape
    (3, 4)
    """
    if is_numeric(t):
        return np.zeros(shape_of(t), dtype=DTYPE)
    if isinstance(t, (TupleType, NamedTupleType)):
        return tuple(zeros_of_type(et) for et in t.element_types)
    if isinstance(t, VectorType):
        return tuple(zeros_of_type(t.element_type) for _ in range(t.length))
    raise TypeError(f"Unknown type {t}")


def map_leaves(fn: Callable[..., Any], t: BaseType, *values: Any) -> Any:
    """Apply `fn(leaf_type, *leaf_values)` over the numeric leaves of `t`."""
    if is_numeric(t):
        return fn(t, *values)
    if isinstance(t, (TupleType, NamedTupleType)):
        return tuple(
            map_leaves(fn, et, *(v[i] for v in values))
            for i, et in enumerate(t.element_types)
        )
    if isinstance(t, VectorType):
        return tuple(
            map_leaves(fn, t.element_type, *(v[i] for v in values))
            for i in range(t.length)
        )
    raise TypeError(f"Unknown type {t}")


def _numeric_from_python(raw: Any, t: BaseType) -> np.ndarray:
    scalar = scalar_of(t)
    arr = np.asarray(raw)
    if arr.dtype == np.object_ or arr.dtype.kind not in "biu":
        if arr.dtype.kind == "f":
            raise TypeError(f"Cannot use floating point data for {t}")
        # Python ints beyond int64: reduce element by element.
        flat = [int(v) & scalar.mask for v in np.ravel(arr).tolist()]
        arr = np.array(flat, dtype=DTYPE).reshape(arr.shape)
    elif arr.dtype.kind in "bi":
        arr = arr.astype(np.int64).astype(DTYPE)
    if arr.shape != shape_of(t):
        if arr.size == 1 and not shape_of(t):
            arr = arr.reshape(())
        else:
            raise ValueError(f"Value of shape {arr.shape} does not fit {t}")
    return wrap(arr, scalar)


def from_python(raw: Any, t: BaseType) -> Any:
    """Convert user data (ints, nested lists, numpy arrays, tuples, dicts).

    Negative ints are accepted and stored as their two's complement residue.
    """
    if is_numeric(t):
        return _numeric_from_python(raw, t)
    if isinstance(t, NamedTupleType):
        if isinstance(raw, Mapping):
            raw = [raw[name] for name in t.names]
        return tuple(from_python(r, et) for r, et in zip(raw, t.element_types, strict=True))
    if isinstance(t, TupleType):
        return tuple(from_python(r, et) for r, et in zip(raw, t.element_types, strict=True))
    if isinstance(t, VectorType):
        items = list(raw)
        if len(items) != t.length:
            raise ValueError(f"Expected {t.length} vector elements, got {len(items)}")
        return tuple(from_python(r, t.element_type) for r in items)
    raise TypeError(f"Unknown type {t}")


def to_python(value: Any, t: BaseType) -> Any:
    """Convert a runtime value back to numbers, honouring signedness.

    Scalars become Python ints, arrays become int64/uint64 ndarrays, named
    tuples become dicts.
    """
    if is_numeric(t):
        out = interpret(value, scalar_of(t))
        if not shape_of(t):
            return int(out)
        return out
    if isinstance(t, NamedTupleType):
        return {n: to_python(v, et) for (n, et), v in zip(t.fields, value, strict=True)}
    if isinstance(t, TupleType):
        return tuple(to_python(v, et) for v, et in zip(value, t.element_types, strict=True))
    if isinstance(t, VectorType):
        return [to_python(v, t.element_type) for v in value]
    raise TypeError(f"Unknown type {t}")


def conforms(value: Any, t: BaseType) -> bool:
    """True if `value` is a well-formed runtime value of type `t`."""
    if is_numeric(t):
        if not isinstance(value, np.ndarray) or value.dtype != DTYPE:
            return False
        if value.shape != shape_of(t):
            return False
        scalar = scalar_of(t)
        return scalar.bitwidth == 64 or not np.any(value > _mask(scalar))
    if isinstance(t, (TupleType, NamedTupleType)):
        return (
            isinstance(value, tuple)
            and len(value) == len(t.element_types)
            and all(conforms(v, et) for v, et in zip(value, t.element_types, strict=True))
        )
    if isinstance(t, VectorType):
        return (
            isinstance(value, tuple)
            and len(value) == t.length
            and all(conforms(v, t.element_type) for v in value)
        )
    return False


def values_equal(a: Any, b: Any) -> bool:
    """Structural, bit-exact equality of runtime values."""
    if isinstance(a, tuple) or isinstance(b, tuple):
        if not (isinstance(a, tuple) and isinstance(b, tuple)) or len(a) != len(b):
            return False
        return all(values_equal(x, y) for x, y in zip(a, b, strict=True))
    return bool(np.array_equal(np.asarray(a), np.asarray(b)))


def freeze(value: Any) -> Any:
    """Mark numeric leaves read-only so cached values cannot be mutated."""
    if isinstance(value, np.ndarray):
        value.setflags(write=False)
        return value
    if isinstance(value, tuple):
        for v in value:
            freeze(v)
    return value


__all__ = [
    "DTYPE",
    "conforms",
    "freeze",
    "from_python",
    "interpret",
    "map_leaves",
    "ring_add",
    "ring_matmul",
    "ring_mul",
    "ring_neg",
    "ring_scale",
    "ring_sub",
    "ring_sum",
    "to_python",
    "to_signed",
    "values_equal",
    "wrap",
    "zeros_of_type",
]
