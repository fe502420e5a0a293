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

"""
mpcflow Type System.

===========================
Numeric Types
===========================
- `ScalarType(bitwidth, signed)`: an element of the ring Z/2^bitwidth.
  Storage is always the unsigned residue; `signed` only changes how the
  residue is interpreted (comparison, division, conversion to Python int).
  `BIT` (1-bit, unsigned) is the boolean type. Its ring is Z/2, so addition
  is XOR and multiplication is AND.

- `ArrayType(shape, element_type)`: a dense tensor of scalars. The shape is a
  non-empty tuple of positive dimensions (rank-0 data is a `ScalarType`).

===========================
Composite Types
===========================
- `TupleType(types)`: heterogeneous, positional.
- `NamedTupleType(((name, type), ...))`: heterogeneous, named. Names are
  unique and the order is significant (it is the serialization order).
- `VectorType(length, element_type)`: homogeneous sequence of any type,
  including tuples and arrays. Unlike `ArrayType`, elements need not be
  scalars.

All types are immutable and compared structurally. There is no subtyping.

Sugar:
    Array[u32, (3, 4)]      -> ArrayType((3, 4), u32)
    Vector[i64, 5]          -> VectorType(5, i64)
    Tuple[i32, BIT]         -> TupleType((i32, BIT))
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from typing import Any, ClassVar

from mpcflow.edsl import serde
from mpcflow.errors import InvalidAttribute, ShapeMismatch, TypeMismatch

SUPPORTED_BITWIDTHS = (1, 8, 16, 32, 64)

Shape = tuple[int, ...]


class BaseType:
    """Base class for all mpcflow types."""

    def __repr__(self) -> str:
        return str(self)


# ==============================================================================
# --- Numeric Types
# ==============================================================================


@serde.register_class
class ScalarType(BaseType):
    """An integer modulo 2^bitwidth.

    Examples:
        >>> ScalarType(32, signed=True)  # i32
        >>> ScalarType(1)                # BIT
    """

    def __init__(self, bitwidth: int, signed: bool = False):
        if bitwidth not in SUPPORTED_BITWIDTHS:
            raise InvalidAttribute(
                f"bitwidth must be one of {SUPPORTED_BITWIDTHS}, got {bitwidth}"
            )
        if bitwidth == 1 and signed:
            raise InvalidAttribute("BIT scalars cannot be signed")
        self.bitwidth = bitwidth
        self.signed = signed

    @property
    def modulus(self) -> int:
        return 1 << self.bitwidth

    @property
    def mask(self) -> int:
        return self.modulus - 1

    @property
    def is_bit(self) -> bool:
        return self.bitwidth == 1

    def __str__(self) -> str:
        if self.bitwidth == 1:
            return "bit"
        return f"{'i' if self.signed else 'u'}{self.bitwidth}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ScalarType):
            return False
        return self.bitwidth == other.bitwidth and self.signed == other.signed

    def __hash__(self) -> int:
        return hash(("ScalarType", self.bitwidth, self.signed))

    _serde_kind: ClassVar[str] = "mpcflow.ScalarType"

    def to_json(self) -> dict[str, Any]:
        return {"bitwidth": self.bitwidth, "signed": self.signed}

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> ScalarType:
        return cls(data["bitwidth"], data["signed"])


BIT = ScalarType(1)
u8 = ScalarType(8)
u16 = ScalarType(16)
u32 = ScalarType(32)
u64 = ScalarType(64)
i8 = ScalarType(8, signed=True)
i16 = ScalarType(16, signed=True)
i32 = ScalarType(32, signed=True)
i64 = ScalarType(64, signed=True)

UINT32 = u32
INT32 = i32
UINT64 = u64
INT64 = i64


def as_shape(dims: Sequence[int]) -> Shape:
    return tuple(int(d) for d in dims)


@serde.register_class
class ArrayType(BaseType):
    """A dense tensor of scalars with a static shape."""

    def __init__(self, shape: Sequence[int], element_type: ScalarType):
        if not isinstance(element_type, ScalarType):
            raise TypeMismatch(
                f"Array element type must be a ScalarType, got {element_type}"
            )
        shape = as_shape(shape)
        if not shape:
            raise InvalidAttribute("Array shape must have at least one dimension")
        for dim in shape:
            if dim <= 0:
                raise InvalidAttribute(f"Invalid dimension {dim}: must be positive")
        self.shape = shape
        self.element_type = element_type

    def __class_getitem__(cls, params: tuple[ScalarType, Sequence[int]]) -> ArrayType:
        """Enables the syntax `Array[element_type, shape]`."""
        if not isinstance(params, tuple) or len(params) != 2:
            raise TypeError("Array expects 2 parameters (element_type, shape)")
        element_type, shape = params
        return cls(shape, element_type)

    @property
    def rank(self) -> int:
        return len(self.shape)

    @property
    def size(self) -> int:
        n = 1
        for dim in self.shape:
            n *= dim
        return n

    def __str__(self) -> str:
        return f"{self.element_type}[{', '.join(str(d) for d in self.shape)}]"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ArrayType):
            return False
        return self.shape == other.shape and self.element_type == other.element_type

    def __hash__(self) -> int:
        return hash(("ArrayType", self.shape, self.element_type))

    _serde_kind: ClassVar[str] = "mpcflow.ArrayType"

    def to_json(self) -> dict[str, Any]:
        return {"shape": list(self.shape), "element_type": serde.to_json(self.element_type)}

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> ArrayType:
        return cls(tuple(data["shape"]), serde.from_json(data["element_type"]))


Array = ArrayType


# ==============================================================================
# --- Composite Types
# ==============================================================================


@serde.register_class
class TupleType(BaseType):
    """A positional product of types."""

    def __init__(self, element_types: Sequence[BaseType]):
        element_types = tuple(element_types)
        for t in element_types:
            if not isinstance(t, BaseType):
                raise TypeMismatch(f"Tuple element must be a type, got {t!r}")
        self.element_types = element_types

    def __class_getitem__(cls, params: Any) -> TupleType:
        if not isinstance(params, tuple):
            params = (params,)
        return cls(params)

    def __len__(self) -> int:
        return len(self.element_types)

    def __iter__(self) -> Iterator[BaseType]:
        return iter(self.element_types)

    def __str__(self) -> str:
        return f"({', '.join(str(t) for t in self.element_types)})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TupleType):
            return False
        return self.element_types == other.element_types

    def __hash__(self) -> int:
        return hash(("TupleType", self.element_types))

    _serde_kind: ClassVar[str] = "mpcflow.TupleType"

    def to_json(self) -> dict[str, Any]:
        return {"element_types": [serde.to_json(t) for t in self.element_types]}

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> TupleType:
        return cls([serde.from_json(t) for t in data["element_types"]])


Tuple = TupleType


@serde.register_class
class NamedTupleType(BaseType):
    """An ordered name -> type mapping."""

    def __init__(self, fields: Sequence[tuple[str, BaseType]] | dict[str, BaseType]):
        items = tuple(fields.items()) if isinstance(fields, dict) else tuple(fields)
        seen: set[str] = set()
        for name, t in items:
            if not isinstance(name, str) or not name:
                raise InvalidAttribute(f"Field names must be non-empty strings, got {name!r}")
            if name in seen:
                raise InvalidAttribute(f"Duplicate field name {name!r}")
            if not isinstance(t, BaseType):
                raise TypeMismatch(f"Field {name!r} must have a type, got {t!r}")
            seen.add(name)
        self.fields: tuple[tuple[str, BaseType], ...] = tuple(
            (str(n), t) for n, t in items
        )

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(n for n, _ in self.fields)

    @property
    def element_types(self) -> tuple[BaseType, ...]:
        return tuple(t for _, t in self.fields)

    def index_of(self, name: str) -> int:
        for i, (n, _) in enumerate(self.fields):
            if n == name:
                return i
        raise KeyError(name)

    def __len__(self) -> int:
        return len(self.fields)

    def __str__(self) -> str:
        return "{" + ", ".join(f"{n}: {t}" for n, t in self.fields) + "}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, NamedTupleType):
            return False
        return self.fields == other.fields

    def __hash__(self) -> int:
        return hash(("NamedTupleType", self.fields))

    _serde_kind: ClassVar[str] = "mpcflow.NamedTupleType"

    def to_json(self) -> dict[str, Any]:
        return {"fields": [[n, serde.to_json(t)] for n, t in self.fields]}

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> NamedTupleType:
        return cls([(n, serde.from_json(t)) for n, t in data["fields"]])


NamedTuple = NamedTupleType


@serde.register_class
class VectorType(BaseType):
    """A homogeneous sequence of `length` elements of any type."""

    def __init__(self, length: int, element_type: BaseType):
        if not isinstance(length, int) or length < 0:
            raise InvalidAttribute(f"Vector length must be a non-negative int, got {length}")
        if not isinstance(element_type, BaseType):
            raise TypeMismatch(f"Vector element must be a type, got {element_type!r}")
        self.length = length
        self.element_type = element_type

    def __class_getitem__(cls, params: tuple[BaseType, int]) -> VectorType:
        """Enables the syntax `Vector[element_type, length]`."""
        if not isinstance(params, tuple) or len(params) != 2:
            raise TypeError("Vector expects 2 parameters (element_type, length)")
        element_type, length = params
        return cls(length, element_type)

    def __str__(self) -> str:
        return f"<{self.element_type} x {self.length}>"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, VectorType):
            return False
        return self.length == other.length and self.element_type == other.element_type

    def __hash__(self) -> int:
        return hash(("VectorType", self.length, self.element_type))

    _serde_kind: ClassVar[str] = "mpcflow.VectorType"

    def to_json(self) -> dict[str, Any]:
        return {"length": self.length, "element_type": serde.to_json(self.element_type)}

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> VectorType:
        return cls(data["length"], serde.from_json(data["element_type"]))


Vector = VectorType


# ==============================================================================
# --- Helpers
# ==============================================================================


def is_numeric(t: BaseType) -> bool:
    """True for scalars and arrays (the types that carry ring elements)."""
    return isinstance(t, (ScalarType, ArrayType))


def scalar_of(t: BaseType) -> ScalarType:
    if isinstance(t, ScalarType):
        return t
    if isinstance(t, ArrayType):
        return t.element_type
    raise TypeMismatch(f"Expected a scalar or array type, got {t}")


def shape_of(t: BaseType) -> Shape:
    if isinstance(t, ScalarType):
        return ()
    if isinstance(t, ArrayType):
        return t.shape
    raise TypeMismatch(f"Expected a scalar or array type, got {t}")


def numeric_type(shape: Sequence[int], scalar: ScalarType) -> ScalarType | ArrayType:
    """Build a Scalar for rank-0 shapes and an Array otherwise."""
    shape = as_shape(shape)
    if not shape:
        return scalar
    return ArrayType(shape, scalar)


def broadcast_shapes(a: Shape, b: Shape) -> Shape:
    """Numpy broadcasting: trailing dims align, size-1 dims stretch."""
    result: list[int] = []
    for i in range(1, max(len(a), len(b)) + 1):
        da = a[-i] if i <= len(a) else 1
        db = b[-i] if i <= len(b) else 1
        if da != db and da != 1 and db != 1:
            raise ShapeMismatch(f"Shapes {a} and {b} are not broadcast-compatible")
        result.append(max(da, db))
    return tuple(reversed(result))


def leaf_types(t: BaseType) -> list[ScalarType | ArrayType]:
    """Numeric leaves of a type in serialization order."""
    if is_numeric(t):
        return [t]  # type: ignore[list-item]
    if isinstance(t, (TupleType, NamedTupleType)):
        out: list[ScalarType | ArrayType] = []
        for et in t.element_types:
            out.extend(leaf_types(et))
        return out
    if isinstance(t, VectorType):
        return leaf_types(t.element_type) * t.length
    raise TypeMismatch(f"Unknown type {t}")


def size_in_bits(t: BaseType) -> int:
    total = 0
    for leaf in leaf_types(t):
        n = leaf.size if isinstance(leaf, ArrayType) else 1
        total += n * scalar_of(leaf).bitwidth
    return total


def with_scalar(t: BaseType, scalar: ScalarType) -> ScalarType | ArrayType:
    """Same shape as numeric type `t`, element type replaced."""
    return numeric_type(shape_of(t), scalar)


__all__ = [
    "BIT",
    "INT32",
    "INT64",
    "SUPPORTED_BITWIDTHS",
    "UINT32",
    "UINT64",
    "Array",
    "ArrayType",
    "BaseType",
    "NamedTuple",
    "NamedTupleType",
    "ScalarType",
    "Shape",
    "Tuple",
    "TupleType",
    "Vector",
    "VectorType",
    "as_shape",
    "broadcast_shapes",
    "i8",
    "i16",
    "i32",
    "i64",
    "is_numeric",
    "leaf_types",
    "numeric_type",
    "scalar_of",
    "shape_of",
    "size_in_bits",
    "u8",
    "u16",
    "u32",
    "u64",
    "with_scalar",
]
