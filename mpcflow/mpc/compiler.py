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

"""MPC lowering: plaintext graph -> N-party protocol graph.

The compiled graph is SPMD: every party evaluates all of it with its own
`PartyEnv`, and the value a party holds for a private node is its additive
share. Lowering is one pass in node order; each plaintext node is mapped to
an `SVal` (compiled node id, private flag) by the rule registered for its
kind with `@_lowering`.

Example:
    >>> ctx = Context()
    >>> g = ctx.create_graph("millionaires")
    >>> a, b = g.input(i32, party=0), g.input(i32, party=1)
    >>> g.finalize([g.less(a, b)])
    >>> config = CompileConfig(2, RandomnessConfig.with_dealer(2, seed=0))
    >>> compiled = compile_mpc(ctx, g, config)
    >>> simulate_and_reconstruct(ctx, compiled, [17, 42], randomness=config.randomness)
    [1]
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from mpcflow.edsl.graph import Context, Graph, Node
from mpcflow.edsl.ops import PROTOCOL_KINDS, OpKind
from mpcflow.errors import (
    GraphNotFinalized,
    MissingAuxiliaryRandomness,
    UnsupportedOpForMPC,
)
from mpcflow.mpc.protocols import ProtocolBuilder, SVal
from mpcflow.mpc.randomness import RandomnessConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompileConfig:
    """Options of `compile_mpc`.

    Attributes:
        party_count: Number of parties N (>= 2).
        randomness: Supplies the triple source; its capacity bounds the
            number of triples one evaluation of the compiled graph consumes.
    """

    party_count: int
    randomness: RandomnessConfig = field(default_factory=RandomnessConfig)

    def __post_init__(self) -> None:
        if isinstance(self.party_count, bool) or not isinstance(self.party_count, int):
            raise TypeError(f"party_count must be an int, got {self.party_count!r}")
        if self.party_count < 2:
            raise ValueError(f"party_count must be >= 2, got {self.party_count}")


# ==============================================================================
# --- Lowering rule table
# ==============================================================================

LoweringRule = Callable[["GraphLowering", Node, list[SVal]], SVal]

_LOWERINGS: dict[OpKind, LoweringRule] = {}


def _lowering(*kinds: OpKind) -> Callable[[LoweringRule], LoweringRule]:
    def deco(fn: LoweringRule) -> LoweringRule:
        for kind in kinds:
            _LOWERINGS[kind] = fn
        return fn

    return deco


class GraphLowering:
    """State of lowering one plaintext graph into one compiled graph."""

    def __init__(
        self,
        compiler: MPCCompiler,
        plain: Graph,
        compiled: Graph,
        *,
        shared_inputs: bool,
    ):
        self.compiler = compiler
        self.plain = plain
        self.compiled = compiled
        self.shared_inputs = shared_inputs
        self.builder = ProtocolBuilder(compiled, compiler.party_count, self._reserve_triple)
        self.values: dict[int, SVal] = {}
        self.current: Node | None = None
        self.triples = 0

    def unsupported(self, reason: str) -> UnsupportedOpForMPC:
        node = self.current
        return UnsupportedOpForMPC(
            reason,
            node_id=None if node is None else node.id,
            kind=None if node is None else node.kind,
        )

    def _reserve_triple(self) -> None:
        self.reserve_triples(1)

    def reserve_triples(self, count: int) -> None:
        """Account for `count` more triples per evaluation of this graph."""
        if count == 0:
            return
        node = self.current
        where = {
            "node_id": None if node is None else node.id,
            "kind": None if node is None else node.kind,
        }
        source = self.compiler.config.randomness.triple_source
        if source is None:
            raise MissingAuxiliaryRandomness("no triple source configured", **where)
        self.triples += count
        if source.capacity is not None and self.triples > source.capacity:
            raise MissingAuxiliaryRandomness(
                f"triple source capacity {source.capacity} exceeded "
                f"({self.triples} triples needed)",
                **where,
            )

    def run(self) -> Graph:
        for node in self.plain.nodes:
            self.current = node
            rule = _LOWERINGS.get(node.kind)
            if rule is None:
                raise self.unsupported(f"no secure lowering for {node.kind}")
            args = [self.values[i] for i in node.inputs]
            self.values[node.id] = rule(self, node, args)
        self.current = None

        outputs = []
        for out in self.plain.outputs:
            # Public results are reconstructed by summing: party 0 holds them.
            outputs.append(self.builder.localize(self.values[out], 0).id)
        return self.compiled.finalize(outputs)


class MPCCompiler:
    """Lower plaintext graphs of one `Context` for a fixed party count.

    Callees are compiled once per (graph id, party count) and memoized in the
    context, so every CALL site of a callee shares one compiled graph.
    """

    def __init__(self, context: Context, config: CompileConfig):
        self.context = context
        self.config = config
        self.party_count = config.party_count
        self._triple_counts: dict[int, int] = {}

    def compile(self, graph: Graph) -> Graph:
        return self._lower(graph, shared_inputs=False)

    def compile_callee(self, graph: Graph) -> Graph:
        cached = self.context.get_compiled(graph.id, self.party_count, role="callee")
        if cached is not None:
            logger.debug(f"Reusing compiled callee {cached.id} for graph {graph.id}")
            return cached
        return self._lower(graph, shared_inputs=True)

    def triples_per_run(self, compiled: Graph) -> int:
        """TRIPLE nodes one evaluation of `compiled` executes, callees included."""
        if compiled.id not in self._triple_counts:
            total = 0
            for node in compiled.nodes:
                if node.kind == OpKind.TRIPLE:
                    total += 1
                elif node.kind == OpKind.CALL:
                    total += self.triples_per_run(
                        self.context.get_graph(node.attrs["graph_id"])
                    )
            self._triple_counts[compiled.id] = total
        return self._triple_counts[compiled.id]

    def _lower(self, graph: Graph, *, shared_inputs: bool) -> Graph:
        if graph.context is not self.context:
            raise ValueError(f"graph {graph.id} belongs to another context")
        if not graph.finalized:
            raise GraphNotFinalized(f"graph {graph.id} must be finalized to compile")
        n = self.party_count
        base = graph.name or f"graph{graph.id}"
        suffix = "callee" if shared_inputs else "main"
        first = len(self.context)
        compiled = self.context.create_graph(f"{base}@mpc{n}.{suffix}")
        lowering = GraphLowering(self, graph, compiled, shared_inputs=shared_inputs)
        try:
            lowering.run()
        except Exception:
            self.context.discard_graphs(first)
            for gid in [g for g in self._triple_counts if g >= first]:
                del self._triple_counts[gid]
            raise
        self._triple_counts[compiled.id] = lowering.triples
        self.context.set_compiled(
            graph.id, n, compiled.id, role="callee" if shared_inputs else "main"
        )
        logger.info(
            f"Compiled graph {graph.id} ({base}) for {n} parties: "
            f"{len(graph)} -> {len(compiled)} nodes, {lowering.triples} triples"
        )
        return compiled


def compile_mpc(context: Context, graph: Graph, config: CompileConfig) -> Graph:
    """Compile plaintext `graph` into an N-party protocol graph in `context`.

    Args:
        context: Context owning `graph`; the compiled graph is added to it.
        graph: Finalized plaintext graph.
        config: Party count and randomness.

    Returns:
        The compiled graph. Its inputs mirror the plaintext inputs (each
        party binds the ones it owns) and its outputs are per-party shares
        of the plaintext outputs.

    Raises:
        UnsupportedOpForMPC: An op has no secure lowering.
        MissingAuxiliaryRandomness: Triples are needed but unavailable.
    """
    return MPCCompiler(context, config).compile(graph)


# ==============================================================================
# --- Sources
# ==============================================================================


@_lowering(OpKind.INPUT)
def _lower_input(ctx: GraphLowering, node: Node, args: list[SVal]) -> SVal:
    t = node.attrs["type"]
    g = ctx.compiled
    if ctx.shared_inputs:
        return SVal(g.add_node(OpKind.INPUT, (), {"type": t, "shared": True}), True)
    if node.attrs.get("public"):
        return SVal(g.input(t, public=True), False)
    owner = node.attrs.get("party", 0)
    if owner >= ctx.compiler.party_count:
        raise ctx.unsupported(
            f"input owned by party {owner} but only {ctx.compiler.party_count} parties"
        )
    return ctx.builder.share_input(g.input(t, party=owner), t, owner)


@_lowering(OpKind.CONSTANT)
def _lower_constant(ctx: GraphLowering, node: Node, args: list[SVal]) -> SVal:
    return SVal(ctx.compiled.add_node(OpKind.CONSTANT, (), node.attrs), False)


# ==============================================================================
# --- Local (linear) ops
# ==============================================================================


@_lowering(
    OpKind.ADD,
    OpKind.SUBTRACT,
    OpKind.XOR,
    OpKind.CREATE_TUPLE,
    OpKind.CREATE_NAMED_TUPLE,
    OpKind.CREATE_VECTOR,
    OpKind.ZIP,
)
def _lower_mixed(ctx: GraphLowering, node: Node, args: list[SVal]) -> SVal:
    return ctx.builder.mixed(node.kind, args, node.attrs)


@_lowering(
    OpKind.NEGATE,
    OpKind.SUM,
    OpKind.RESHAPE,
    OpKind.PERMUTE_AXES,
    OpKind.TUPLE_GET,
    OpKind.NAMED_TUPLE_GET,
    OpKind.REPEAT,
)
def _lower_unary(ctx: GraphLowering, node: Node, args: list[SVal]) -> SVal:
    return ctx.builder.op(node.kind, args, node.attrs)


def _public_index(ctx: GraphLowering, index: SVal) -> None:
    if index.private:
        raise ctx.unsupported("indices must be public")


@_lowering(OpKind.GATHER, OpKind.VECTOR_GET)
def _lower_indexed(ctx: GraphLowering, node: Node, args: list[SVal]) -> SVal:
    source, index = args
    _public_index(ctx, index)
    out = ctx.builder.op(node.kind, [source, index], node.attrs)
    return SVal(out.id, source.private)


@_lowering(OpKind.SCATTER)
def _lower_scatter(ctx: GraphLowering, node: Node, args: list[SVal]) -> SVal:
    base, index, updates = args
    _public_index(ctx, index)
    if base.private or updates.private:
        base, updates = ctx.builder.localize(base), ctx.builder.localize(updates)
    out = ctx.builder.op(node.kind, [base, index, updates], node.attrs)
    return SVal(out.id, base.private)


# ==============================================================================
# --- Products
# ==============================================================================


@_lowering(OpKind.MULTIPLY)
def _lower_multiply(ctx: GraphLowering, node: Node, args: list[SVal]) -> SVal:
    return ctx.builder.mul(*args)


@_lowering(OpKind.MATMUL)
def _lower_matmul(ctx: GraphLowering, node: Node, args: list[SVal]) -> SVal:
    return ctx.builder.matmul(*args)


@_lowering(OpKind.AND)
def _lower_and(ctx: GraphLowering, node: Node, args: list[SVal]) -> SVal:
    return ctx.builder.and_(*args)


@_lowering(OpKind.OR)
def _lower_or(ctx: GraphLowering, node: Node, args: list[SVal]) -> SVal:
    return ctx.builder.or_(*args)


@_lowering(OpKind.NOT)
def _lower_not(ctx: GraphLowering, node: Node, args: list[SVal]) -> SVal:
    return ctx.builder.not_(args[0])


@_lowering(OpKind.DIVIDE)
def _lower_divide(ctx: GraphLowering, node: Node, args: list[SVal]) -> SVal:
    raise ctx.unsupported("division has no secure lowering")


# ==============================================================================
# --- Comparison / order
# ==============================================================================


def _compare(ctx: GraphLowering, kind: OpKind, x: SVal, y: SVal) -> SVal:
    b = ctx.builder
    if kind == OpKind.LESS:
        return b.less(x, y)
    if kind == OpKind.GREATER:
        return b.less(y, x)
    if kind == OpKind.LESS_EQUAL:
        return b.not_(b.less(y, x))
    if kind == OpKind.GREATER_EQUAL:
        return b.not_(b.less(x, y))
    if kind == OpKind.EQUAL:
        return b.equal(x, y)
    if kind == OpKind.NOT_EQUAL:
        return b.not_(b.equal(x, y))
    raise ctx.unsupported(f"{kind} is not a comparison")


@_lowering(
    OpKind.EQUAL,
    OpKind.NOT_EQUAL,
    OpKind.LESS,
    OpKind.LESS_EQUAL,
    OpKind.GREATER,
    OpKind.GREATER_EQUAL,
)
def _lower_compare(ctx: GraphLowering, node: Node, args: list[SVal]) -> SVal:
    if not any(a.private for a in args):
        return ctx.builder.op(node.kind, args)
    return _compare(ctx, node.kind, *args)


@_lowering(OpKind.MIN, OpKind.MAX)
def _lower_min_max(ctx: GraphLowering, node: Node, args: list[SVal]) -> SVal:
    if not any(a.private for a in args):
        return ctx.builder.op(node.kind, args)
    a, b = args
    lt = ctx.builder.less(a, b)
    if node.kind == OpKind.MIN:
        return ctx.builder.select(lt, a, b)
    return ctx.builder.select(lt, b, a)


@_lowering(OpKind.SELECT)
def _lower_select(ctx: GraphLowering, node: Node, args: list[SVal]) -> SVal:
    return ctx.builder.select(*args)


@_lowering(OpKind.CAST)
def _lower_cast(ctx: GraphLowering, node: Node, args: list[SVal]) -> SVal:
    return ctx.builder.cast(args[0], node.attrs["scalar"])


# ==============================================================================
# --- Calls
# ==============================================================================


@_lowering(OpKind.CALL)
def _lower_call(ctx: GraphLowering, node: Node, args: list[SVal]) -> SVal:
    plain_callee = ctx.plain.context.get_graph(node.attrs["graph_id"])
    callee = ctx.compiler.compile_callee(plain_callee)
    ctx.reserve_triples(ctx.compiler.triples_per_run(callee))
    shares = [ctx.builder.localize(a).id for a in args]
    return SVal(ctx.compiled.call(callee.id, shares), True)


@_lowering(*PROTOCOL_KINDS)
def _reject_protocol(ctx: GraphLowering, node: Node, args: list[SVal]) -> SVal:
    raise ctx.unsupported(f"{node.kind} may only appear in compiled graphs")


__all__ = ["CompileConfig", "GraphLowering", "MPCCompiler", "compile_mpc"]
