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

"""Operation kinds and their type-inference rules.

The op set is closed. Each kind has exactly one inference rule registered in
`_INFER_RULES`; `infer_type` is the only entry point and is pure. Adding a
kind means adding a rule here, a kernel in `mpcflow.runtime.kernels` and a
lowering in `mpcflow.mpc.compiler`.
"""

from __future__ import annotations

import enum
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from mpcflow.edsl.typing import (
    BIT,
    ArrayType,
    BaseType,
    NamedTupleType,
    ScalarType,
    TupleType,
    VectorType,
    broadcast_shapes,
    is_numeric,
    numeric_type,
    scalar_of,
    shape_of,
    u64,
    with_scalar,
)
from mpcflow.errors import (
    InvalidAttribute,
    InvalidInputReference,
    ShapeMismatch,
    TypeMismatch,
    UnknownField,
)


class OpKind(enum.Enum):
    # sources
    INPUT = "input"
    CONSTANT = "constant"
    # arithmetic
    ADD = "add"
    SUBTRACT = "subtract"
    MULTIPLY = "multiply"
    NEGATE = "negate"
    DIVIDE = "divide"
    MATMUL = "matmul"
    SUM = "sum"
    # comparison
    EQUAL = "equal"
    NOT_EQUAL = "not_equal"
    LESS = "less"
    LESS_EQUAL = "less_equal"
    GREATER = "greater"
    GREATER_EQUAL = "greater_equal"
    MIN = "min"
    MAX = "max"
    SELECT = "select"
    # logical
    AND = "and"
    OR = "or"
    XOR = "xor"
    NOT = "not"
    # layout
    RESHAPE = "reshape"
    PERMUTE_AXES = "permute_axes"
    GATHER = "gather"
    SCATTER = "scatter"
    CAST = "cast"
    # composite
    CREATE_TUPLE = "create_tuple"
    TUPLE_GET = "tuple_get"
    CREATE_NAMED_TUPLE = "create_named_tuple"
    NAMED_TUPLE_GET = "named_tuple_get"
    CREATE_VECTOR = "create_vector"
    VECTOR_GET = "vector_get"
    ZIP = "zip"
    REPEAT = "repeat"
    CALL = "call"
    # protocol
    SEND = "send"
    RECEIVE = "receive"
    PRF_KEY = "prf_key"
    MASK = "mask"
    TRIPLE = "triple"
    LOCALIZE = "localize"
    BIT_DECOMPOSE = "bit_decompose"

    def __str__(self) -> str:
        return self.value


ELEMENTWISE_ARITHMETIC = frozenset({
    OpKind.ADD,
    OpKind.SUBTRACT,
    OpKind.MULTIPLY,
    OpKind.DIVIDE,
    OpKind.MIN,
    OpKind.MAX,
})

COMPARISONS = frozenset({
    OpKind.EQUAL,
    OpKind.NOT_EQUAL,
    OpKind.LESS,
    OpKind.LESS_EQUAL,
    OpKind.GREATER,
    OpKind.GREATER_EQUAL,
})

LOGICAL_BINARY = frozenset({OpKind.AND, OpKind.OR, OpKind.XOR})

PROTOCOL_KINDS = frozenset({
    OpKind.SEND,
    OpKind.RECEIVE,
    OpKind.PRF_KEY,
    OpKind.MASK,
    OpKind.TRIPLE,
    OpKind.LOCALIZE,
    OpKind.BIT_DECOMPOSE,
})

# Triple flavours produced by the dealer, keyed by the op they feed.
TRIPLE_KINDS = ("multiply", "matmul", "and")

# 128-bit PRF key stored as two 64-bit words.
PRF_KEY_TYPE = ArrayType((2,), u64)


# ==============================================================================
# --- Rule registry
# ==============================================================================

InferRule = Callable[[Sequence[BaseType], Mapping[str, Any]], BaseType]

_INFER_RULES: dict[OpKind, InferRule] = {}


def _rule(*kinds: OpKind) -> Callable[[InferRule], InferRule]:
    def deco(fn: InferRule) -> InferRule:
        for kind in kinds:
            _INFER_RULES[kind] = fn
        return fn

    return deco


def _arity(kind: OpKind, types: Sequence[BaseType], n: int) -> None:
    if len(types) != n:
        raise InvalidInputReference(f"{kind} expects {n} inputs, got {len(types)}")


def _numeric(kind: OpKind, t: BaseType) -> None:
    if not is_numeric(t):
        raise TypeMismatch(f"{kind} expects a scalar or array operand, got {t}")


def _same_scalar(kind: OpKind, a: BaseType, b: BaseType) -> ScalarType:
    _numeric(kind, a)
    _numeric(kind, b)
    sa, sb = scalar_of(a), scalar_of(b)
    if sa != sb:
        raise TypeMismatch(f"{kind} operands have different scalar types: {sa} vs {sb}")
    return sa


def _attr(attrs: Mapping[str, Any], name: str, kind: OpKind) -> Any:
    if name not in attrs:
        raise InvalidAttribute(f"{kind} requires attribute '{name}'")
    return attrs[name]


def _int_attr(attrs: Mapping[str, Any], name: str, kind: OpKind) -> int:
    value = _attr(attrs, name, kind)
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidAttribute(f"{kind} attribute '{name}' must be an int, got {value!r}")
    return value


def _party_attr(attrs: Mapping[str, Any], name: str, kind: OpKind) -> int:
    value = _int_attr(attrs, name, kind)
    if value < 0:
        raise InvalidAttribute(f"{kind} attribute '{name}' must be >= 0, got {value}")
    return value


def _type_attr(attrs: Mapping[str, Any], name: str, kind: OpKind) -> BaseType:
    value = _attr(attrs, name, kind)
    if not isinstance(value, BaseType):
        raise InvalidAttribute(f"{kind} attribute '{name}' must be a type, got {value!r}")
    return value


def _normalize_axis(axis: int, rank: int, kind: OpKind) -> int:
    if not -rank <= axis < rank:
        raise InvalidAttribute(f"{kind} axis {axis} out of range for rank {rank}")
    return axis % rank


def _is_index_type(t: BaseType) -> bool:
    return is_numeric(t) and not scalar_of(t).is_bit


# ==============================================================================
# --- Sources
# ==============================================================================


@_rule(OpKind.INPUT)
def _infer_input(types: Sequence[BaseType], attrs: Mapping[str, Any]) -> BaseType:
    _arity(OpKind.INPUT, types, 0)
    party = attrs.get("party")
    if party is not None and (not isinstance(party, int) or party < 0):
        raise InvalidAttribute(f"input party must be a non-negative int, got {party!r}")
    if attrs.get("public") and party is not None:
        raise InvalidAttribute("a public input cannot be owned by a party")
    return _type_attr(attrs, "type", OpKind.INPUT)


@_rule(OpKind.CONSTANT)
def _infer_constant(types: Sequence[BaseType], attrs: Mapping[str, Any]) -> BaseType:
    _arity(OpKind.CONSTANT, types, 0)
    _attr(attrs, "value", OpKind.CONSTANT)
    return _type_attr(attrs, "type", OpKind.CONSTANT)


# ==============================================================================
# --- Arithmetic
# ==============================================================================


def _elementwise(kind: OpKind, types: Sequence[BaseType]) -> tuple[ScalarType, tuple]:
    _arity(kind, types, 2)
    a, b = types
    scalar = _same_scalar(kind, a, b)
    return scalar, broadcast_shapes(shape_of(a), shape_of(b))


@_rule(*ELEMENTWISE_ARITHMETIC)
def _infer_arith(types: Sequence[BaseType], attrs: Mapping[str, Any]) -> BaseType:
    scalar, shape = _elementwise(OpKind.ADD, types)
    return numeric_type(shape, scalar)


@_rule(OpKind.NEGATE)
def _infer_negate(types: Sequence[BaseType], attrs: Mapping[str, Any]) -> BaseType:
    _arity(OpKind.NEGATE, types, 1)
    _numeric(OpKind.NEGATE, types[0])
    return types[0]


@_rule(*COMPARISONS)
def _infer_compare(types: Sequence[BaseType], attrs: Mapping[str, Any]) -> BaseType:
    _, shape = _elementwise(OpKind.EQUAL, types)
    return numeric_type(shape, BIT)


def matmul_shape(a: tuple, b: tuple) -> tuple:
    """numpy.matmul shape rule; rank-1 operands are promoted and squeezed."""
    if not a or not b:
        raise ShapeMismatch("matmul operands must have rank >= 1")
    a_vec, b_vec = len(a) == 1, len(b) == 1
    a2 = (1, *a) if a_vec else a
    b2 = (*b, 1) if b_vec else b
    if a2[-1] != b2[-2]:
        raise ShapeMismatch(f"matmul contraction mismatch: {a} @ {b}")
    batch = broadcast_shapes(a2[:-2], b2[:-2])
    out = [*batch]
    if not a_vec:
        out.append(a2[-2])
    if not b_vec:
        out.append(b2[-1])
    return tuple(out)


@_rule(OpKind.MATMUL)
def _infer_matmul(types: Sequence[BaseType], attrs: Mapping[str, Any]) -> BaseType:
    _arity(OpKind.MATMUL, types, 2)
    a, b = types
    scalar = _same_scalar(OpKind.MATMUL, a, b)
    return numeric_type(matmul_shape(shape_of(a), shape_of(b)), scalar)


def sum_axes(attrs: Mapping[str, Any], rank: int) -> tuple[int, ...]:
    axes = attrs.get("axes")
    if axes is None:
        return tuple(range(rank))
    normalized = tuple(_normalize_axis(int(ax), rank, OpKind.SUM) for ax in axes)
    if len(set(normalized)) != len(normalized):
        raise InvalidAttribute(f"sum axes must be unique, got {tuple(axes)}")
    return normalized


@_rule(OpKind.SUM)
def _infer_sum(types: Sequence[BaseType], attrs: Mapping[str, Any]) -> BaseType:
    _arity(OpKind.SUM, types, 1)
    (t,) = types
    _numeric(OpKind.SUM, t)
    shape = shape_of(t)
    axes = sum_axes(attrs, len(shape))
    kept = tuple(d for i, d in enumerate(shape) if i not in axes)
    return numeric_type(kept, scalar_of(t))


@_rule(OpKind.SELECT)
def _infer_select(types: Sequence[BaseType], attrs: Mapping[str, Any]) -> BaseType:
    _arity(OpKind.SELECT, types, 3)
    cond, a, b = types
    _numeric(OpKind.SELECT, cond)
    if scalar_of(cond) != BIT:
        raise TypeMismatch(f"select condition must be bit-typed, got {cond}")
    scalar = _same_scalar(OpKind.SELECT, a, b)
    shape = broadcast_shapes(shape_of(cond), broadcast_shapes(shape_of(a), shape_of(b)))
    return numeric_type(shape, scalar)


# ==============================================================================
# --- Logical
# ==============================================================================


@_rule(*LOGICAL_BINARY)
def _infer_logical(types: Sequence[BaseType], attrs: Mapping[str, Any]) -> BaseType:
    scalar, shape = _elementwise(OpKind.AND, types)
    if scalar != BIT:
        raise TypeMismatch(f"logical ops need bit operands, got {scalar}")
    return numeric_type(shape, BIT)


@_rule(OpKind.NOT)
def _infer_not(types: Sequence[BaseType], attrs: Mapping[str, Any]) -> BaseType:
    _arity(OpKind.NOT, types, 1)
    _numeric(OpKind.NOT, types[0])
    if scalar_of(types[0]) != BIT:
        raise TypeMismatch(f"not needs a bit operand, got {types[0]}")
    return types[0]


# ==============================================================================
# --- Layout
# ==============================================================================


@_rule(OpKind.RESHAPE)
def _infer_reshape(types: Sequence[BaseType], attrs: Mapping[str, Any]) -> BaseType:
    _arity(OpKind.RESHAPE, types, 1)
    (t,) = types
    _numeric(OpKind.RESHAPE, t)
    new_type = _type_attr(attrs, "type", OpKind.RESHAPE)
    _numeric(OpKind.RESHAPE, new_type)
    if scalar_of(new_type) != scalar_of(t):
        raise TypeMismatch(f"reshape cannot change scalar type: {t} -> {new_type}")
    old_n = ArrayType(shape_of(t), scalar_of(t)).size if shape_of(t) else 1
    new_n = ArrayType(shape_of(new_type), scalar_of(t)).size if shape_of(new_type) else 1
    if old_n != new_n:
        raise ShapeMismatch(f"reshape changes element count: {t} -> {new_type}")
    return new_type


@_rule(OpKind.PERMUTE_AXES)
def _infer_permute(types: Sequence[BaseType], attrs: Mapping[str, Any]) -> BaseType:
    _arity(OpKind.PERMUTE_AXES, types, 1)
    (t,) = types
    if not isinstance(t, ArrayType):
        raise TypeMismatch(f"permute_axes expects an array, got {t}")
    perm = tuple(_attr(attrs, "perm", OpKind.PERMUTE_AXES))
    if sorted(perm) != list(range(t.rank)):
        raise InvalidAttribute(f"{perm} is not a permutation of {t.rank} axes")
    return ArrayType(tuple(t.shape[p] for p in perm), t.element_type)


@_rule(OpKind.GATHER)
def _infer_gather(types: Sequence[BaseType], attrs: Mapping[str, Any]) -> BaseType:
    _arity(OpKind.GATHER, types, 2)
    x, idx = types
    if not isinstance(x, ArrayType):
        raise TypeMismatch(f"gather expects an array, got {x}")
    if not _is_index_type(idx):
        raise TypeMismatch(f"gather indices must be integers, got {idx}")
    axis = _normalize_axis(attrs.get("axis", 0), x.rank, OpKind.GATHER)
    shape = x.shape[:axis] + shape_of(idx) + x.shape[axis + 1 :]
    return numeric_type(shape, x.element_type)


@_rule(OpKind.SCATTER)
def _infer_scatter(types: Sequence[BaseType], attrs: Mapping[str, Any]) -> BaseType:
    _arity(OpKind.SCATTER, types, 3)
    base, idx, updates = types
    if not isinstance(base, ArrayType):
        raise TypeMismatch(f"scatter expects an array base, got {base}")
    if not _is_index_type(idx):
        raise TypeMismatch(f"scatter indices must be integers, got {idx}")
    _same_scalar(OpKind.SCATTER, base, updates)
    axis = _normalize_axis(attrs.get("axis", 0), base.rank, OpKind.SCATTER)
    expected = base.shape[:axis] + shape_of(idx) + base.shape[axis + 1 :]
    if shape_of(updates) != expected:
        raise ShapeMismatch(
            f"scatter updates shape {shape_of(updates)} != expected {expected}"
        )
    return base


@_rule(OpKind.CAST)
def _infer_cast(types: Sequence[BaseType], attrs: Mapping[str, Any]) -> BaseType:
    _arity(OpKind.CAST, types, 1)
    (t,) = types
    _numeric(OpKind.CAST, t)
    scalar = _type_attr(attrs, "scalar", OpKind.CAST)
    if not isinstance(scalar, ScalarType):
        raise InvalidAttribute(f"cast target must be a scalar type, got {scalar}")
    return with_scalar(t, scalar)


# ==============================================================================
# --- Composite
# ==============================================================================


@_rule(OpKind.CREATE_TUPLE)
def _infer_create_tuple(types: Sequence[BaseType], attrs: Mapping[str, Any]) -> BaseType:
    return TupleType(types)


@_rule(OpKind.TUPLE_GET)
def _infer_tuple_get(types: Sequence[BaseType], attrs: Mapping[str, Any]) -> BaseType:
    _arity(OpKind.TUPLE_GET, types, 1)
    (t,) = types
    if not isinstance(t, TupleType):
        raise TypeMismatch(f"tuple_get expects a tuple, got {t}")
    index = _int_attr(attrs, "index", OpKind.TUPLE_GET)
    if not 0 <= index < len(t):
        raise UnknownField(f"tuple index {index} out of range for {t}")
    return t.element_types[index]


@_rule(OpKind.CREATE_NAMED_TUPLE)
def _infer_create_named_tuple(
    types: Sequence[BaseType], attrs: Mapping[str, Any]
) -> BaseType:
    names = tuple(_attr(attrs, "names", OpKind.CREATE_NAMED_TUPLE))
    if len(names) != len(types):
        raise InvalidAttribute(
            f"create_named_tuple got {len(names)} names for {len(types)} inputs"
        )
    return NamedTupleType(list(zip(names, types, strict=True)))


@_rule(OpKind.NAMED_TUPLE_GET)
def _infer_named_tuple_get(
    types: Sequence[BaseType], attrs: Mapping[str, Any]
) -> BaseType:
    _arity(OpKind.NAMED_TUPLE_GET, types, 1)
    (t,) = types
    if not isinstance(t, NamedTupleType):
        raise TypeMismatch(f"named_tuple_get expects a named tuple, got {t}")
    name = _attr(attrs, "name", OpKind.NAMED_TUPLE_GET)
    try:
        return t.element_types[t.index_of(name)]
    except KeyError:
        raise UnknownField(f"no field {name!r} in {t}") from None


@_rule(OpKind.CREATE_VECTOR)
def _infer_create_vector(types: Sequence[BaseType], attrs: Mapping[str, Any]) -> BaseType:
    element_type = _type_attr(attrs, "element_type", OpKind.CREATE_VECTOR)
    for t in types:
        if t != element_type:
            raise TypeMismatch(f"vector element {t} does not match {element_type}")
    return VectorType(len(types), element_type)


@_rule(OpKind.VECTOR_GET)
def _infer_vector_get(types: Sequence[BaseType], attrs: Mapping[str, Any]) -> BaseType:
    _arity(OpKind.VECTOR_GET, types, 2)
    vec, idx = types
    if not isinstance(vec, VectorType):
        raise TypeMismatch(f"vector_get expects a vector, got {vec}")
    if not isinstance(idx, ScalarType) or idx.is_bit:
        raise TypeMismatch(f"vector_get index must be an integer scalar, got {idx}")
    return vec.element_type


@_rule(OpKind.ZIP)
def _infer_zip(types: Sequence[BaseType], attrs: Mapping[str, Any]) -> BaseType:
    if len(types) < 2:
        raise InvalidInputReference(f"zip expects at least 2 inputs, got {len(types)}")
    for t in types:
        if not isinstance(t, VectorType):
            raise TypeMismatch(f"zip expects vectors, got {t}")
    lengths = {t.length for t in types}  # type: ignore[attr-defined]
    if len(lengths) != 1:
        raise ShapeMismatch(f"zip needs vectors of equal length, got {sorted(lengths)}")
    return VectorType(
        types[0].length,  # type: ignore[attr-defined]
        TupleType([t.element_type for t in types]),  # type: ignore[attr-defined]
    )


@_rule(OpKind.REPEAT)
def _infer_repeat(types: Sequence[BaseType], attrs: Mapping[str, Any]) -> BaseType:
    _arity(OpKind.REPEAT, types, 1)
    n = _int_attr(attrs, "n", OpKind.REPEAT)
    return VectorType(n, types[0])


def infer_call_type(
    arg_types: Sequence[BaseType],
    param_types: Sequence[BaseType],
    result_type: BaseType,
) -> BaseType:
    """Type of a CALL node given the callee's signature."""
    if len(arg_types) != len(param_types):
        raise TypeMismatch(
            f"call passes {len(arg_types)} arguments to a graph with "
            f"{len(param_types)} inputs"
        )
    for i, (a, p) in enumerate(zip(arg_types, param_types, strict=True)):
        if a != p:
            raise TypeMismatch(f"call argument {i} has type {a}, callee expects {p}")
    return result_type


@_rule(OpKind.CALL)
def _infer_call(types: Sequence[BaseType], attrs: Mapping[str, Any]) -> BaseType:
    # CALL needs the callee signature; Graph.add_node resolves it through the
    # owning context and calls infer_call_type directly.
    raise InvalidAttribute("call nodes must be created through Graph.call")


# ==============================================================================
# --- Protocol
# ==============================================================================


def _check_parties(kind: OpKind, attrs: Mapping[str, Any]) -> None:
    sender = _party_attr(attrs, "sender", kind)
    receiver = _party_attr(attrs, "receiver", kind)
    if sender == receiver:
        raise InvalidAttribute(f"{kind} sender and receiver must differ, both {sender}")


@_rule(OpKind.SEND, OpKind.RECEIVE)
def _infer_comm(types: Sequence[BaseType], attrs: Mapping[str, Any]) -> BaseType:
    _arity(OpKind.SEND, types, 1)
    _check_parties(OpKind.SEND, attrs)
    return types[0]


@_rule(OpKind.PRF_KEY)
def _infer_prf_key(types: Sequence[BaseType], attrs: Mapping[str, Any]) -> BaseType:
    _arity(OpKind.PRF_KEY, types, 0)
    _party_attr(attrs, "party", OpKind.PRF_KEY)
    return PRF_KEY_TYPE


@_rule(OpKind.MASK)
def _infer_mask(types: Sequence[BaseType], attrs: Mapping[str, Any]) -> BaseType:
    _arity(OpKind.MASK, types, 1)
    if types[0] != PRF_KEY_TYPE:
        raise TypeMismatch(f"mask expects a PRF key input, got {types[0]}")
    _party_attr(attrs, "party", OpKind.MASK)
    t = _type_attr(attrs, "type", OpKind.MASK)
    _numeric(OpKind.MASK, t)
    return t


def triple_product_type(kind: str, a_type: BaseType, b_type: BaseType) -> BaseType:
    if kind == "multiply":
        return _infer_arith([a_type, b_type], {})
    if kind == "matmul":
        return _infer_matmul([a_type, b_type], {})
    if kind == "and":
        return _infer_logical([a_type, b_type], {})
    raise InvalidAttribute(f"unknown triple kind {kind!r}, expected one of {TRIPLE_KINDS}")


@_rule(OpKind.TRIPLE)
def _infer_triple(types: Sequence[BaseType], attrs: Mapping[str, Any]) -> BaseType:
    _arity(OpKind.TRIPLE, types, 0)
    kind = _attr(attrs, "kind", OpKind.TRIPLE)
    a_type = _type_attr(attrs, "a_type", OpKind.TRIPLE)
    b_type = _type_attr(attrs, "b_type", OpKind.TRIPLE)
    return TupleType((a_type, b_type, triple_product_type(kind, a_type, b_type)))


@_rule(OpKind.LOCALIZE)
def _infer_localize(types: Sequence[BaseType], attrs: Mapping[str, Any]) -> BaseType:
    _arity(OpKind.LOCALIZE, types, 1)
    _party_attr(attrs, "party", OpKind.LOCALIZE)
    return types[0]


@_rule(OpKind.BIT_DECOMPOSE)
def _infer_bit_decompose(
    types: Sequence[BaseType], attrs: Mapping[str, Any]
) -> BaseType:
    _arity(OpKind.BIT_DECOMPOSE, types, 1)
    (t,) = types
    _numeric(OpKind.BIT_DECOMPOSE, t)
    scalar = scalar_of(t)
    if scalar.is_bit:
        raise TypeMismatch("bit_decompose expects a multi-bit operand")
    return ArrayType((*shape_of(t), scalar.bitwidth), BIT)


# ==============================================================================
# --- Entry point
# ==============================================================================


def infer_type(
    kind: OpKind, input_types: Sequence[BaseType], attrs: Mapping[str, Any]
) -> BaseType:
    """Return the output type of `kind` applied to `input_types`.

    Raises:
        TypeMismatch, ShapeMismatch, UnknownField, InvalidAttribute,
        InvalidInputReference: If the operands or attributes are invalid.
    """
    rule = _INFER_RULES.get(kind)
    if rule is None:
        raise InvalidAttribute(f"no type rule for op kind {kind}")
    return rule(list(input_types), attrs)


__all__ = [
    "COMPARISONS",
    "ELEMENTWISE_ARITHMETIC",
    "LOGICAL_BINARY",
    "PRF_KEY_TYPE",
    "PROTOCOL_KINDS",
    "TRIPLE_KINDS",
    "OpKind",
    "infer_call_type",
    "infer_type",
    "matmul_shape",
    "sum_axes",
    "triple_product_type",
]
