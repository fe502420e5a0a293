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

"""Secure sub-protocol builders over additive sharing.

`ProtocolBuilder` appends protocol nodes to a compiled (SPMD) graph. Every
party evaluates that same graph; the value a party computes for a node is
its share (private values) or the value itself (public values). Operands are
`SVal(id, private)` pairs and every builder accepts any mix of public and
private operands, localizing public ones into a trivial sharing when needed.

Protocols
---------
- Input sharing: the owner masks its value with PRF-derived masks and sends
  one mask to each other party.
- Open: every party sends its share to every other party (one round).
- Beaver multiplication (multiply, matmul, and): with a triple (a, b, c),
  open d = x - a and e = y - b, then z = c + d*b + a*e + d*e.
- Bit decomposition: each party decomposes its own share; the N bit vectors
  are XOR-shared and summed with ripple-carry adders
  (carry = a ^ ((a ^ b) & (a ^ c))).
- Less-than: comparator chain from the LSB, c' = c ^ ((x ^ y) & (y ^ c));
  signed operands are biased by 2^(b-1) by flipping their top bit.
- Equality: AND-tree over the negated bits of x - y.
- B2A: fold the parties' localized bits with a ^ b = a + b - 2ab.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any, NamedTuple

import numpy as np

from mpcflow.edsl.graph import Graph
from mpcflow.edsl.ops import OpKind
from mpcflow.edsl.typing import (
    BaseType,
    NamedTupleType,
    ScalarType,
    TupleType,
    VectorType,
    is_numeric,
    scalar_of,
    shape_of,
    u64,
    with_scalar,
)


class SVal(NamedTuple):
    """A compiled node id plus whether its value is secret-shared."""

    id: int
    private: bool


_BEAVER_OPS = {
    "multiply": (OpKind.SUBTRACT, OpKind.MULTIPLY, OpKind.ADD),
    "matmul": (OpKind.SUBTRACT, OpKind.MATMUL, OpKind.ADD),
    "and": (OpKind.XOR, OpKind.AND, OpKind.XOR),
}


class ProtocolBuilder:
    """Append secure sub-protocols to a compiled graph.

    Args:
        graph: The compiled graph under construction.
        party_count: Number of parties N.
        on_triple: Called before each TRIPLE node is emitted; raises when
            auxiliary randomness is unavailable.
    """

    def __init__(
        self,
        graph: Graph,
        party_count: int,
        on_triple: Callable[[], None],
    ):
        self.g = graph
        self.n = party_count
        self.on_triple = on_triple
        self._localized: dict[tuple[int, int], int] = {}
        self._constants: dict[tuple[BaseType, int], int] = {}
        self._indices: dict[int, int] = {}
        self._prf_keys: dict[int, int] = {}

    # =========================================================================
    # Basics
    # =========================================================================

    def type_of(self, x: SVal | int) -> BaseType:
        node_id = x.id if isinstance(x, SVal) else x
        return self.g.nodes[node_id].type

    def op(self, kind: OpKind, inputs: Sequence[SVal], attrs: Any = None) -> SVal:
        """Plain local op; the result is private if any operand is."""
        node = self.g.add_node(kind, [x.id for x in inputs], attrs)
        return SVal(node, any(x.private for x in inputs))

    def constant(self, t: BaseType, fill: int) -> SVal:
        """Public constant of type `t` with every element equal to `fill`."""
        key = (t, fill)
        if key not in self._constants:
            scalar = scalar_of(t)
            data = np.full(shape_of(t), fill & scalar.mask, dtype=np.uint64)
            self._constants[key] = self.g.constant(t, data)
        return SVal(self._constants[key], False)

    def index(self, i: int) -> int:
        if i not in self._indices:
            self._indices[i] = self.g.constant(u64, i)
        return self._indices[i]

    def localize(self, x: SVal, party: int = 0) -> SVal:
        """Trivial sharing of public `x`: the value at `party`, zeros elsewhere."""
        if x.private:
            return x
        key = (x.id, party)
        if key not in self._localized:
            self._localized[key] = self.g.add_node(
                OpKind.LOCALIZE, [x.id], {"party": party}
            )
        return SVal(self._localized[key], True)

    def mixed(self, kind: OpKind, inputs: Sequence[SVal], attrs: Any = None) -> SVal:
        """Local op where public operands must first become shares."""
        if any(x.private for x in inputs):
            inputs = [self.localize(x) for x in inputs]
        return self.op(kind, inputs, attrs)

    # =========================================================================
    # Sharing / communication
    # =========================================================================

    def prf_key(self, party: int) -> int:
        if party not in self._prf_keys:
            self._prf_keys[party] = self.g.add_node(OpKind.PRF_KEY, [], {"party": party})
        return self._prf_keys[party]

    def transfer(self, x: int, sender: int, receiver: int) -> int:
        """SEND/RECEIVE pair; the result holds `x` at `receiver`."""
        parties = {"sender": sender, "receiver": receiver}
        send = self.g.add_node(OpKind.SEND, [x], parties, annotations=parties)
        return self.g.add_node(OpKind.RECEIVE, [send], parties, annotations=parties)

    def share_input(self, x: int, t: BaseType, owner: int) -> SVal:
        """Turn the owner's plaintext input into an additive sharing."""
        if is_numeric(t):
            share = x
            for j in range(self.n):
                if j == owner:
                    continue
                mask = self.g.add_node(
                    OpKind.MASK, [self.prf_key(owner)], {"party": owner, "type": t}
                )
                share = self.g.subtract(share, mask)
                share = self.g.add(share, self.transfer(mask, owner, j))
            return SVal(share, True)
        if isinstance(t, NamedTupleType):
            parts = [
                self.share_input(self.g.named_tuple_get(x, name), et, owner).id
                for name, et in t.fields
            ]
            return SVal(self.g.create_named_tuple(t.names, parts), True)
        if isinstance(t, TupleType):
            parts = [
                self.share_input(self.g.tuple_get(x, i), et, owner).id
                for i, et in enumerate(t.element_types)
            ]
            return SVal(self.g.create_tuple(parts), True)
        if isinstance(t, VectorType):
            parts = [
                self.share_input(self.g.vector_get(x, self.index(i)), t.element_type, owner).id
                for i in range(t.length)
            ]
            return SVal(self.g.create_vector(t.element_type, parts), True)
        raise TypeError(f"Unknown type {t}")

    def open(self, x: SVal) -> SVal:
        """Reveal a shared value to every party (one all-to-all round)."""
        if not x.private:
            return x
        acc = x.id
        for i in range(self.n):
            for j in range(self.n):
                if i != j:
                    acc = self.g.add_node(
                        OpKind.XOR if scalar_of(self.type_of(x)).is_bit else OpKind.ADD,
                        [acc, self.transfer(x.id, i, j)],
                    )
        return SVal(acc, False)

    # =========================================================================
    # Arithmetic
    # =========================================================================

    def add(self, x: SVal, y: SVal) -> SVal:
        return self.mixed(OpKind.ADD, [x, y])

    def sub(self, x: SVal, y: SVal) -> SVal:
        return self.mixed(OpKind.SUBTRACT, [x, y])

    def beaver(self, kind: str, x: SVal, y: SVal) -> SVal:
        """Product of two shared values with one triple and one round."""
        sub_kind, mul_kind, add_kind = _BEAVER_OPS[kind]
        self.on_triple()
        triple = self.g.add_node(
            OpKind.TRIPLE,
            [],
            {"kind": kind, "a_type": self.type_of(x), "b_type": self.type_of(y)},
        )
        a = SVal(self.g.tuple_get(triple, 0), True)
        b = SVal(self.g.tuple_get(triple, 1), True)
        c = SVal(self.g.tuple_get(triple, 2), True)
        d = self.open(self.op(sub_kind, [x, a]))
        e = self.open(self.op(sub_kind, [y, b]))
        z = self.op(add_kind, [c, self.op(mul_kind, [d, b])])
        z = self.op(add_kind, [z, self.op(mul_kind, [a, e])])
        return self.op(add_kind, [z, self.localize(self.op(mul_kind, [d, e]))])

    def product(self, kind: str, x: SVal, y: SVal) -> SVal:
        """Multiply-like op; only private*private needs a protocol."""
        if x.private and y.private:
            return self.beaver(kind, x, y)
        return self.op(_BEAVER_OPS[kind][1], [x, y])

    def mul(self, x: SVal, y: SVal) -> SVal:
        return self.product("multiply", x, y)

    def matmul(self, x: SVal, y: SVal) -> SVal:
        return self.product("matmul", x, y)

    # =========================================================================
    # Boolean (XOR-shared bits)
    # =========================================================================

    def xor(self, x: SVal, y: SVal) -> SVal:
        return self.mixed(OpKind.XOR, [x, y])

    def and_(self, x: SVal, y: SVal) -> SVal:
        return self.product("and", x, y)

    def not_(self, x: SVal) -> SVal:
        if not x.private:
            return self.op(OpKind.NOT, [x])
        return self.xor(x, self.constant(self.type_of(x), 1))

    def or_(self, x: SVal, y: SVal) -> SVal:
        if not (x.private or y.private):
            return self.op(OpKind.OR, [x, y])
        return self.xor(self.xor(x, y), self.and_(x, y))

    def all_of(self, bits: Sequence[SVal]) -> SVal:
        """AND-tree, logarithmic depth."""
        layer = list(bits)
        while len(layer) > 1:
            nxt = [self.and_(layer[i], layer[i + 1]) for i in range(0, len(layer) - 1, 2)]
            if len(layer) % 2:
                nxt.append(layer[-1])
            layer = nxt
        return layer[0]

    def bit_columns(self, x: SVal) -> list[SVal]:
        """XOR-shared bits of shared `x`, least significant first."""
        bitwidth = scalar_of(self.type_of(x)).bitwidth
        decomposed = SVal(self.g.add_node(OpKind.BIT_DECOMPOSE, [x.id]), True)
        if not x.private:
            return [
                SVal(self.g.gather(decomposed.id, self.index(k), axis=-1), False)
                for k in range(bitwidth)
            ]
        total: list[SVal] | None = None
        for party in range(self.n):
            own = self.g.add_node(OpKind.LOCALIZE, [decomposed.id], {"party": party})
            cols = [
                SVal(self.g.gather(own, self.index(k), axis=-1), True)
                for k in range(bitwidth)
            ]
            total = cols if total is None else self.ripple_add(total, cols)
        assert total is not None
        return total

    def ripple_add(self, u: Sequence[SVal], v: Sequence[SVal]) -> list[SVal]:
        """Sum of two XOR-shared bit vectors modulo 2^len (carry dropped)."""
        out = [self.xor(u[0], v[0])]
        carry = self.and_(u[0], v[0])
        for k in range(1, len(u)):
            t = self.xor(u[k], v[k])
            out.append(self.xor(t, carry))
            if k < len(u) - 1:
                # majority(u, v, carry)
                carry = self.xor(u[k], self.and_(t, self.xor(u[k], carry)))
        return out

    # =========================================================================
    # Comparison / selection
    # =========================================================================

    def _order_bits(self, x: SVal, signed: bool) -> list[SVal]:
        bits = self.bit_columns(x)
        if signed:
            bits[-1] = self.not_(bits[-1])
        return bits

    def less(self, x: SVal, y: SVal) -> SVal:
        """Shared bit x < y (signedness from the operand type)."""
        scalar = scalar_of(self.type_of(x))
        if scalar.is_bit:
            return self.and_(self.not_(x), y)
        xb = self._order_bits(x, scalar.signed)
        yb = self._order_bits(y, scalar.signed)
        c = self.and_(self.xor(xb[0], yb[0]), yb[0])
        for k in range(1, len(xb)):
            diff = self.xor(xb[k], yb[k])
            c = self.xor(c, self.and_(diff, self.xor(yb[k], c)))
        return c

    def equal(self, x: SVal, y: SVal) -> SVal:
        if scalar_of(self.type_of(x)).is_bit:
            return self.not_(self.xor(x, y))
        bits = self.bit_columns(self.sub(x, y))
        return self.all_of([self.not_(b) for b in bits])

    def b2a(self, bit: SVal, scalar: ScalarType) -> SVal:
        """Arithmetic sharing in `scalar`'s ring of an XOR-shared bit."""
        if scalar.is_bit:
            return bit
        lifted = self.g.cast(bit.id, scalar)
        if not bit.private:
            return SVal(lifted, False)
        acc: SVal | None = None
        for party in range(self.n):
            part = SVal(self.g.add_node(OpKind.LOCALIZE, [lifted], {"party": party}), True)
            if acc is None:
                acc = part
                continue
            prod = self.mul(acc, part)
            acc = self.sub(self.add(acc, part), self.add(prod, prod))
        assert acc is not None
        return acc

    def select(self, cond: SVal, a: SVal, b: SVal) -> SVal:
        if not cond.private:
            # A public condition stays identical at every party.
            if a.private or b.private:
                a, b = self.localize(a), self.localize(b)
            return self.op(OpKind.SELECT, [cond, a, b])
        scalar = scalar_of(self.type_of(a))
        choice = self.b2a(cond, scalar)
        return self.add(b, self.mul(choice, self.sub(a, b)))

    def cast(self, x: SVal, target: ScalarType) -> SVal:
        """Conversion between rings; widening a shared value needs bits."""
        src = scalar_of(self.type_of(x))
        if not x.private or target.bitwidth <= src.bitwidth:
            return self.op(OpKind.CAST, [x], {"scalar": target})
        if src.is_bit:
            return self.b2a(x, target)
        acc: SVal | None = None
        for k, bit in enumerate(self.bit_columns(x)):
            weight = 1 << k
            if src.signed and k == src.bitwidth - 1:
                weight = -weight
            term = self.mul(
                self.b2a(bit, target),
                self.constant(with_scalar(self.type_of(bit), target), weight),
            )
            acc = term if acc is None else self.add(acc, term)
        assert acc is not None
        return acc


__all__ = ["ProtocolBuilder", "SVal"]
