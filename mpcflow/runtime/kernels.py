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

"""Kernel table: the semantic function of every op kind.

Kernels are registered per `OpKind` and looked up by the interpreter; the
same table serves plaintext and compiled graphs. Signature::

    kernel(frame, node, *args) -> value

`frame` gives access to the graph being evaluated, the party environment
(None for plaintext runs) and the call scope used to derive randomness and
channel tags. Protocol kernels return the party's own view: the real value
at the owning/sending/receiving party and zeros everywhere else.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import numpy as np

from mpcflow.edsl.graph import Node
from mpcflow.edsl.ops import OpKind, sum_axes
from mpcflow.edsl.typing import NamedTupleType, scalar_of, shape_of
from mpcflow.errors import EvaluationError, MissingAuxiliaryRandomness
from mpcflow.mpc.randomness import expand_mask, key_to_words, scope_tag
from mpcflow.runtime import value as rv

if TYPE_CHECKING:
    from mpcflow.runtime.interpreter import EvalFrame

Kernel = Callable[..., Any]

_KERNELS: dict[OpKind, Kernel] = {}


def register_kernel(*kinds: OpKind) -> Callable[[Kernel], Kernel]:
    """Register `fn` as the kernel of each of `kinds`."""

    def deco(fn: Kernel) -> Kernel:
        for kind in kinds:
            _KERNELS[kind] = fn
        return fn

    return deco


def get_kernel(kind: OpKind) -> Kernel | None:
    return _KERNELS.get(kind)


def default_kernels() -> dict[OpKind, Kernel]:
    """A copy of the registered table, safe to customize per interpreter."""
    return dict(_KERNELS)


def _input_type(frame: EvalFrame, node: Node, i: int = 0) -> Any:
    return frame.graph.nodes[node.inputs[i]].type


def _require_env(frame: EvalFrame, node: Node) -> Any:
    if frame.env is None:
        raise EvaluationError(
            f"{node.kind} needs a party environment; evaluate compiled graphs "
            "with simulate() or run_party()",
            node_id=node.id,
        )
    return frame.env


# ==============================================================================
# --- Sources
# ==============================================================================


@register_kernel(OpKind.CONSTANT)
def _constant(frame: EvalFrame, node: Node) -> Any:
    return node.attrs["value"]


# ==============================================================================
# --- Arithmetic
# ==============================================================================


@register_kernel(OpKind.ADD)
def _add(frame: EvalFrame, node: Node, a: Any, b: Any) -> Any:
    return rv.ring_add(a, b, scalar_of(node.type))


@register_kernel(OpKind.SUBTRACT)
def _subtract(frame: EvalFrame, node: Node, a: Any, b: Any) -> Any:
    return rv.ring_sub(a, b, scalar_of(node.type))


@register_kernel(OpKind.MULTIPLY)
def _multiply(frame: EvalFrame, node: Node, a: Any, b: Any) -> Any:
    return rv.ring_mul(a, b, scalar_of(node.type))


@register_kernel(OpKind.NEGATE)
def _negate(frame: EvalFrame, node: Node, a: Any) -> Any:
    return rv.ring_neg(a, scalar_of(node.type))


@register_kernel(OpKind.DIVIDE)
def _divide(frame: EvalFrame, node: Node, a: Any, b: Any) -> Any:
    scalar = scalar_of(node.type)
    if np.any(np.asarray(b) == 0):
        raise ZeroDivisionError("integer division by zero")
    if not scalar.signed:
        return rv.wrap(np.floor_divide(a, b, dtype=rv.DTYPE), scalar)
    sa, sb = rv.to_signed(a, scalar), rv.to_signed(b, scalar)
    # Truncate toward zero.
    q = np.floor_divide(np.abs(sa), np.abs(sb))
    q = np.where((sa < 0) ^ (sb < 0), -q, q)
    return rv.wrap(np.asarray(q, dtype=np.int64).astype(rv.DTYPE), scalar)


@register_kernel(OpKind.MATMUL)
def _matmul(frame: EvalFrame, node: Node, a: Any, b: Any) -> Any:
    return rv.ring_matmul(a, b, scalar_of(node.type))


@register_kernel(OpKind.SUM)
def _sum(frame: EvalFrame, node: Node, a: Any) -> Any:
    axes = sum_axes(node.attrs, len(shape_of(_input_type(frame, node))))
    return rv.ring_sum(a, axes, scalar_of(node.type))


# ==============================================================================
# --- Comparison / order
# ==============================================================================

_COMPARE_FNS = {
    OpKind.EQUAL: np.equal,
    OpKind.NOT_EQUAL: np.not_equal,
    OpKind.LESS: np.less,
    OpKind.LESS_EQUAL: np.less_equal,
    OpKind.GREATER: np.greater,
    OpKind.GREATER_EQUAL: np.greater_equal,
}


@register_kernel(*_COMPARE_FNS)
def _compare(frame: EvalFrame, node: Node, a: Any, b: Any) -> Any:
    scalar = scalar_of(_input_type(frame, node))
    fn = _COMPARE_FNS[node.kind]
    result = fn(rv.interpret(a, scalar), rv.interpret(b, scalar))
    return np.asarray(result, dtype=rv.DTYPE)


@register_kernel(OpKind.MIN, OpKind.MAX)
def _min_max(frame: EvalFrame, node: Node, a: Any, b: Any) -> Any:
    scalar = scalar_of(node.type)
    ia, ib = rv.interpret(a, scalar), rv.interpret(b, scalar)
    take_a = ia <= ib if node.kind == OpKind.MIN else ia >= ib
    return np.asarray(np.where(take_a, a, b), dtype=rv.DTYPE)


@register_kernel(OpKind.SELECT)
def _select(frame: EvalFrame, node: Node, cond: Any, a: Any, b: Any) -> Any:
    return np.asarray(np.where(np.asarray(cond) != 0, a, b), dtype=rv.DTYPE)


# ==============================================================================
# --- Logical
# ==============================================================================


@register_kernel(OpKind.AND)
def _and(frame: EvalFrame, node: Node, a: Any, b: Any) -> Any:
    return np.asarray(np.bitwise_and(a, b, dtype=rv.DTYPE), dtype=rv.DTYPE)


@register_kernel(OpKind.OR)
def _or(frame: EvalFrame, node: Node, a: Any, b: Any) -> Any:
    return np.asarray(np.bitwise_or(a, b, dtype=rv.DTYPE), dtype=rv.DTYPE)


@register_kernel(OpKind.XOR)
def _xor(frame: EvalFrame, node: Node, a: Any, b: Any) -> Any:
    return np.asarray(np.bitwise_xor(a, b, dtype=rv.DTYPE), dtype=rv.DTYPE)


@register_kernel(OpKind.NOT)
def _not(frame: EvalFrame, node: Node, a: Any) -> Any:
    return np.asarray(np.bitwise_xor(a, rv.DTYPE(1), dtype=rv.DTYPE), dtype=rv.DTYPE)


# ==============================================================================
# --- Layout
# ==============================================================================


@register_kernel(OpKind.RESHAPE)
def _reshape(frame: EvalFrame, node: Node, a: Any) -> Any:
    return np.reshape(np.asarray(a, dtype=rv.DTYPE), shape_of(node.type))


@register_kernel(OpKind.PERMUTE_AXES)
def _permute_axes(frame: EvalFrame, node: Node, a: Any) -> Any:
    return np.ascontiguousarray(np.transpose(a, tuple(node.attrs["perm"])))


def _indices(frame: EvalFrame, node: Node, idx: Any) -> np.ndarray:
    positions = rv.interpret(idx, scalar_of(_input_type(frame, node, 1)))
    if np.any(positions < 0):
        raise IndexError(f"negative index in {positions.tolist()}")
    return positions.astype(np.int64)


@register_kernel(OpKind.GATHER)
def _gather(frame: EvalFrame, node: Node, a: Any, idx: Any) -> Any:
    axis = node.attrs.get("axis", 0)
    return np.asarray(np.take(a, _indices(frame, node, idx), axis=axis), dtype=rv.DTYPE)


@register_kernel(OpKind.SCATTER)
def _scatter(frame: EvalFrame, node: Node, base: Any, idx: Any, updates: Any) -> Any:
    rank = len(shape_of(node.type))
    axis = node.attrs.get("axis", 0) % rank
    out = np.array(base, dtype=rv.DTYPE, copy=True)
    positions = _indices(frame, node, idx)
    if np.any(positions >= out.shape[axis]):
        raise IndexError(f"scatter index out of range for axis size {out.shape[axis]}")
    out[(slice(None),) * axis + (positions,)] = updates
    return out


@register_kernel(OpKind.CAST)
def _cast(frame: EvalFrame, node: Node, a: Any) -> Any:
    src = scalar_of(_input_type(frame, node))
    if src.signed:
        a = rv.to_signed(a, src).astype(rv.DTYPE)
    return rv.wrap(a, scalar_of(node.type))


@register_kernel(OpKind.BIT_DECOMPOSE)
def _bit_decompose(frame: EvalFrame, node: Node, a: Any) -> Any:
    bits = shape_of(node.type)[-1]
    shifts = np.arange(bits, dtype=rv.DTYPE)
    x = np.asarray(a, dtype=rv.DTYPE)[..., None]
    return np.bitwise_and(np.right_shift(x, shifts), rv.DTYPE(1), dtype=rv.DTYPE)


# ==============================================================================
# --- Composite
# ==============================================================================


@register_kernel(OpKind.CREATE_TUPLE, OpKind.CREATE_NAMED_TUPLE, OpKind.CREATE_VECTOR)
def _create(frame: EvalFrame, node: Node, *elements: Any) -> Any:
    return tuple(elements)


@register_kernel(OpKind.TUPLE_GET)
def _tuple_get(frame: EvalFrame, node: Node, t: Any) -> Any:
    return t[node.attrs["index"]]


@register_kernel(OpKind.NAMED_TUPLE_GET)
def _named_tuple_get(frame: EvalFrame, node: Node, t: Any) -> Any:
    nt = _input_type(frame, node)
    assert isinstance(nt, NamedTupleType)
    return t[nt.index_of(node.attrs["name"])]


@register_kernel(OpKind.VECTOR_GET)
def _vector_get(frame: EvalFrame, node: Node, vec: Any, idx: Any) -> Any:
    i = int(rv.interpret(idx, scalar_of(_input_type(frame, node, 1))))
    if not 0 <= i < len(vec):
        raise IndexError(f"vector index {i} out of range for length {len(vec)}")
    return vec[i]


@register_kernel(OpKind.ZIP)
def _zip(frame: EvalFrame, node: Node, *vectors: Any) -> Any:
    return tuple(zip(*vectors, strict=True))


@register_kernel(OpKind.REPEAT)
def _repeat(frame: EvalFrame, node: Node, a: Any) -> Any:
    return tuple(a for _ in range(node.attrs["n"]))


@register_kernel(OpKind.CALL)
def _call(frame: EvalFrame, node: Node, *args: Any) -> Any:
    return frame.interpreter.call_graph(frame, node, list(args))


# ==============================================================================
# --- Protocol
# ==============================================================================


def channel_tag(frame: EvalFrame, send_id: int) -> bytes:
    return scope_tag(frame.scope, send_id, "channel")


@register_kernel(OpKind.SEND)
def _send(frame: EvalFrame, node: Node, payload: Any) -> Any:
    env = _require_env(frame, node)
    if env.party != node.attrs["sender"]:
        return rv.zeros_of_type(node.type)
    env.send(node.attrs["receiver"], channel_tag(frame, node.id), payload, node.id)
    return payload


@register_kernel(OpKind.RECEIVE)
def _receive(frame: EvalFrame, node: Node, send_view: Any) -> Any:
    env = _require_env(frame, node)
    if env.party != node.attrs["receiver"]:
        return rv.zeros_of_type(node.type)
    return env.receive(node.attrs["sender"], channel_tag(frame, node.inputs[0]), node.id)


@register_kernel(OpKind.PRF_KEY)
def _prf_key(frame: EvalFrame, node: Node) -> Any:
    env = _require_env(frame, node)
    if env.party != node.attrs["party"]:
        return rv.zeros_of_type(node.type)
    return key_to_words(env.prf_key)


@register_kernel(OpKind.MASK)
def _mask(frame: EvalFrame, node: Node, key: Any) -> Any:
    env = _require_env(frame, node)
    if env.party != node.attrs["party"]:
        return rv.zeros_of_type(node.type)
    return expand_mask(key, scope_tag(frame.scope, node.id, "mask"), node.type)


@register_kernel(OpKind.TRIPLE)
def _triple(frame: EvalFrame, node: Node) -> Any:
    env = _require_env(frame, node)
    source = env.randomness.triple_source
    if source is None:
        raise MissingAuxiliaryRandomness(
            "no triple source configured for evaluation",
            node_id=node.id,
            kind=node.kind,
        )
    return source.triple(
        scope_tag(frame.scope, node.id, "triple"),
        node.attrs["kind"],
        node.attrs["a_type"],
        node.attrs["b_type"],
        env.party,
    )


@register_kernel(OpKind.LOCALIZE)
def _localize(frame: EvalFrame, node: Node, a: Any) -> Any:
    env = _require_env(frame, node)
    if env.party != node.attrs["party"]:
        return rv.zeros_of_type(node.type)
    return a


__all__ = ["channel_tag", "default_kernels", "get_kernel", "register_kernel"]
