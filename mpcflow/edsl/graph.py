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
Graph IR: an arena of flat, append-only node lists.

Key Design Principles:
----------------------
1. **Flat Structure**: a Graph is a list of Nodes; node ids are list positions.
2. **Inputs precede**: a node may only reference smaller ids, so stored order
   is always a valid topological order and cycles cannot be expressed.
3. **Arena of graphs**: a Context owns every Graph and hands out graph ids.
   Subgraph calls reference a callee by id; the call relation is checked to be
   acyclic when the call is added.
4. **Frozen after finalize**: once outputs are set a Graph is immutable and
   can be evaluated or compiled any number of times.

Example:
--------
    from mpcflow.edsl.graph import Context
    from mpcflow.edsl.typing import i32

    ctx = Context()
    g = ctx.create_graph("millionaires")
    a = g.input(i32, party=0)
    b = g.input(i32, party=1)
    g.finalize([g.less(a, b)])

    print(format_graph(g))
    # graph 0 "millionaires" {
    #   %0 = input {party=0, type=i32} : i32
    #   %1 = input {party=1, type=i32} : i32
    #   %2 = less(%0, %1) : bit
    #   return %2
    # }
"""

from __future__ import annotations

import types
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, ClassVar

import numpy as np

from mpcflow.edsl import serde
from mpcflow.edsl.ops import OpKind, infer_call_type, infer_type
from mpcflow.edsl.typing import BaseType, ScalarType, TupleType, u64
from mpcflow.errors import (
    CyclicGraphCall,
    EmptyOutputSet,
    GraphConstructionError,
    GraphFinalized,
    GraphNotFinalized,
    InvalidInputReference,
    UnknownGraph,
    UnknownNode,
)
from mpcflow.runtime import value as rv


def _freeze_attr(v: Any) -> Any:
    if isinstance(v, list):
        return tuple(_freeze_attr(x) for x in v)
    if isinstance(v, tuple):
        return tuple(_freeze_attr(x) for x in v)
    if isinstance(v, np.ndarray):
        return rv.freeze(v.copy())
    if isinstance(v, np.integer):
        return int(v)
    return v


def _freeze_attrs(attrs: Mapping[str, Any] | None) -> Mapping[str, Any]:
    frozen = {k: _freeze_attr(v) for k, v in (attrs or {}).items()}
    return types.MappingProxyType(frozen)


@serde.register_class
@dataclass(frozen=True, eq=False)
class Node:
    """A single typed operation.

    Attributes:
        id: Position of the node within its graph.
        kind: Operation kind.
        inputs: Ids of the operand nodes (all smaller than `id`).
        attrs: Op-specific, read-only attributes.
        type: Output type inferred at construction time.
        annotations: Free-form read-only metadata (e.g. sender/receiver).
    """

    id: int
    kind: OpKind
    inputs: tuple[int, ...]
    attrs: Mapping[str, Any]
    type: BaseType
    annotations: Mapping[str, Any] = field(
        default_factory=lambda: types.MappingProxyType({})
    )

    def __repr__(self) -> str:
        return f"Node(%{self.id} = {self.kind}{list(self.inputs)} : {self.type})"

    _serde_kind: ClassVar[str] = "mpcflow.Node"

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "inputs": list(self.inputs),
            "attrs": {k: serde.to_json(v) for k, v in self.attrs.items()},
            "type": serde.to_json(self.type),
            "annotations": {k: serde.to_json(v) for k, v in self.annotations.items()},
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Node:
        return cls(
            id=data["id"],
            kind=OpKind(data["kind"]),
            inputs=tuple(data["inputs"]),
            attrs=_freeze_attrs({k: serde.from_json(v) for k, v in data["attrs"].items()}),
            type=serde.from_json(data["type"]),
            annotations=_freeze_attrs(
                {k: serde.from_json(v) for k, v in data.get("annotations", {}).items()}
            ),
        )


class Graph:
    """Typed dataflow graph owned by a `Context`.

    Nodes are added with `add_node` (or one of the typed builders, which all
    delegate to it) and the graph is sealed with `finalize`.
    """

    def __init__(self, context: Context, graph_id: int, name: str | None = None):
        self.context = context
        self.id = graph_id
        self.name = name
        self.nodes: list[Node] = []
        self._outputs: tuple[int, ...] | None = None

    # =========================================================================
    # Structure
    # =========================================================================

    @property
    def finalized(self) -> bool:
        return self._outputs is not None

    @property
    def outputs(self) -> tuple[int, ...]:
        if self._outputs is None:
            raise GraphNotFinalized(f"graph {self.id} has no outputs yet")
        return self._outputs

    def node(self, node_id: int) -> Node:
        if not isinstance(node_id, int) or not 0 <= node_id < len(self.nodes):
            raise UnknownNode(f"graph {self.id} has no node {node_id}")
        return self.nodes[node_id]

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[Node]:
        return iter(self.nodes)

    def input_nodes(self) -> list[Node]:
        return [n for n in self.nodes if n.kind == OpKind.INPUT]

    @property
    def input_types(self) -> list[BaseType]:
        return [n.type for n in self.input_nodes()]

    @property
    def output_types(self) -> list[BaseType]:
        return [self.nodes[i].type for i in self.outputs]

    @property
    def result_type(self) -> BaseType:
        """Type a CALL to this graph produces: the single output or a tuple."""
        out = self.output_types
        return out[0] if len(out) == 1 else TupleType(out)

    def called_graph_ids(self) -> list[int]:
        return [n.attrs["graph_id"] for n in self.nodes if n.kind == OpKind.CALL]

    # =========================================================================
    # Construction
    # =========================================================================

    def _check_mutable(self) -> None:
        if self.finalized:
            raise GraphFinalized(f"graph {self.id} is finalized")

    def _check_inputs(self, inputs: Sequence[int]) -> tuple[int, ...]:
        next_id = len(self.nodes)
        checked = []
        for i in inputs:
            if isinstance(i, bool) or not isinstance(i, (int, np.integer)):
                raise InvalidInputReference(f"input reference must be a node id, got {i!r}")
            i = int(i)
            if not 0 <= i < next_id:
                raise InvalidInputReference(
                    f"node {next_id} of graph {self.id} references node {i}, "
                    f"which does not precede it"
                )
            checked.append(i)
        return tuple(checked)

    def add_node(
        self,
        kind: OpKind,
        inputs: Sequence[int] = (),
        attrs: Mapping[str, Any] | None = None,
        annotations: Mapping[str, Any] | None = None,
    ) -> int:
        """Append a node and return its id.

        Raises:
            GraphFinalized: The graph is already finalized.
            InvalidInputReference: An input id is absent or does not precede.
            TypeMismatch, ShapeMismatch, UnknownField, InvalidAttribute:
                Type inference rejected the node.
        """
        self._check_mutable()
        kind = OpKind(kind)
        input_ids = self._check_inputs(inputs)
        frozen = _freeze_attrs(attrs)
        input_types = [self.nodes[i].type for i in input_ids]

        if kind == OpKind.CALL:
            callee = self.context.get_graph(frozen.get("graph_id"))
            out_type = infer_call_type(input_types, callee.input_types, callee.result_type)
        else:
            out_type = infer_type(kind, input_types, frozen)

        if kind == OpKind.RECEIVE:
            send = self.nodes[input_ids[0]]
            if send.kind != OpKind.SEND or (
                send.attrs["sender"],
                send.attrs["receiver"],
            ) != (frozen["sender"], frozen["receiver"]):
                raise InvalidInputReference(
                    "receive must consume a send node with the same sender/receiver"
                )

        node = Node(
            id=len(self.nodes),
            kind=kind,
            inputs=input_ids,
            attrs=frozen,
            type=out_type,
            annotations=_freeze_attrs(annotations),
        )
        self.nodes.append(node)
        return node.id

    def finalize(self, output_ids: Sequence[int]) -> Graph:
        """Freeze the output list.

        Raises:
            EmptyOutputSet: No outputs given.
            UnknownNode: An output id is not a node of this graph.
        """
        self._check_mutable()
        output_ids = list(output_ids)
        if not output_ids:
            raise EmptyOutputSet(f"graph {self.id} needs at least one output")
        for i in output_ids:
            self.node(i)
        self._outputs = tuple(int(i) for i in output_ids)
        return self

    def add_subgraph_call(self, callee_id: int, inputs: Sequence[int]) -> int:
        """Add a CALL node to graph `callee_id` of the same context.

        Raises:
            UnknownGraph: No such graph.
            CyclicGraphCall: The callee is this graph or transitively calls it.
            GraphNotFinalized: The callee has no outputs yet.
        """
        callee = self.context.get_graph(callee_id)
        if callee.id == self.id or self.context.calls_transitively(callee.id, self.id):
            raise CyclicGraphCall(
                f"graph {self.id} cannot call graph {callee.id}: the call would be cyclic"
            )
        if not callee.finalized:
            raise GraphNotFinalized(f"callee graph {callee.id} is not finalized")
        return self.add_node(OpKind.CALL, inputs, {"graph_id": callee.id})

    call = add_subgraph_call

    # =========================================================================
    # Typed builders
    # =========================================================================

    def input(
        self, type: BaseType, party: int | None = None, public: bool = False
    ) -> int:
        attrs: dict[str, Any] = {"type": type}
        if party is not None:
            attrs["party"] = party
        if public:
            attrs["public"] = True
        return self.add_node(OpKind.INPUT, (), attrs)

    def constant(self, type: BaseType, value: Any) -> int:
        return self.add_node(
            OpKind.CONSTANT, (), {"type": type, "value": rv.from_python(value, type)}
        )

    def add(self, a: int, b: int) -> int:
        return self.add_node(OpKind.ADD, (a, b))

    def subtract(self, a: int, b: int) -> int:
        return self.add_node(OpKind.SUBTRACT, (a, b))

    def multiply(self, a: int, b: int) -> int:
        return self.add_node(OpKind.MULTIPLY, (a, b))

    def negate(self, a: int) -> int:
        return self.add_node(OpKind.NEGATE, (a,))

    def divide(self, a: int, b: int) -> int:
        return self.add_node(OpKind.DIVIDE, (a, b))

    def matmul(self, a: int, b: int) -> int:
        return self.add_node(OpKind.MATMUL, (a, b))

    def sum(self, a: int, axes: Sequence[int] | None = None) -> int:
        attrs = {} if axes is None else {"axes": list(axes)}
        return self.add_node(OpKind.SUM, (a,), attrs)

    def equal(self, a: int, b: int) -> int:
        return self.add_node(OpKind.EQUAL, (a, b))

    def not_equal(self, a: int, b: int) -> int:
        return self.add_node(OpKind.NOT_EQUAL, (a, b))

    def less(self, a: int, b: int) -> int:
        return self.add_node(OpKind.LESS, (a, b))

    def less_equal(self, a: int, b: int) -> int:
        return self.add_node(OpKind.LESS_EQUAL, (a, b))

    def greater(self, a: int, b: int) -> int:
        return self.add_node(OpKind.GREATER, (a, b))

    def greater_equal(self, a: int, b: int) -> int:
        return self.add_node(OpKind.GREATER_EQUAL, (a, b))

    def minimum(self, a: int, b: int) -> int:
        return self.add_node(OpKind.MIN, (a, b))

    def maximum(self, a: int, b: int) -> int:
        return self.add_node(OpKind.MAX, (a, b))

    def select(self, cond: int, a: int, b: int) -> int:
        return self.add_node(OpKind.SELECT, (cond, a, b))

    def logical_and(self, a: int, b: int) -> int:
        return self.add_node(OpKind.AND, (a, b))

    def logical_or(self, a: int, b: int) -> int:
        return self.add_node(OpKind.OR, (a, b))

    def logical_xor(self, a: int, b: int) -> int:
        return self.add_node(OpKind.XOR, (a, b))

    def logical_not(self, a: int) -> int:
        return self.add_node(OpKind.NOT, (a,))

    def reshape(self, a: int, new_type: BaseType) -> int:
        return self.add_node(OpKind.RESHAPE, (a,), {"type": new_type})

    def permute_axes(self, a: int, perm: Sequence[int]) -> int:
        return self.add_node(OpKind.PERMUTE_AXES, (a,), {"perm": list(perm)})

    def gather(self, a: int, indices: int, axis: int = 0) -> int:
        return self.add_node(OpKind.GATHER, (a, indices), {"axis": axis})

    def scatter(self, base: int, indices: int, updates: int, axis: int = 0) -> int:
        return self.add_node(OpKind.SCATTER, (base, indices, updates), {"axis": axis})

    def cast(self, a: int, scalar: ScalarType) -> int:
        return self.add_node(OpKind.CAST, (a,), {"scalar": scalar})

    def create_tuple(self, elements: Sequence[int]) -> int:
        return self.add_node(OpKind.CREATE_TUPLE, elements)

    def tuple_get(self, a: int, index: int) -> int:
        return self.add_node(OpKind.TUPLE_GET, (a,), {"index": index})

    def create_named_tuple(self, names: Sequence[str], elements: Sequence[int]) -> int:
        return self.add_node(OpKind.CREATE_NAMED_TUPLE, elements, {"names": list(names)})

    def named_tuple_get(self, a: int, name: str) -> int:
        return self.add_node(OpKind.NAMED_TUPLE_GET, (a,), {"name": name})

    def create_vector(self, element_type: BaseType, elements: Sequence[int]) -> int:
        return self.add_node(OpKind.CREATE_VECTOR, elements, {"element_type": element_type})

    def vector_get(self, vec: int, index: int) -> int:
        return self.add_node(OpKind.VECTOR_GET, (vec, index))

    def zip(self, vectors: Sequence[int]) -> int:
        return self.add_node(OpKind.ZIP, vectors)

    def repeat(self, a: int, n: int) -> int:
        return self.add_node(OpKind.REPEAT, (a,), {"n": n})

    def index_constant(self, index: int) -> int:
        """Public u64 scalar, handy for `vector_get` and `gather`."""
        return self.constant(u64, index)

    # =========================================================================
    # Representation / Serialization
    # =========================================================================

    def __repr__(self) -> str:
        return f"Graph(id={self.id}, name={self.name!r}, {len(self.nodes)} nodes)"

    def __str__(self) -> str:
        from mpcflow.edsl.printer import format_graph

        return format_graph(self)

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "nodes": [serde.to_json(n) for n in self.nodes],
            "outputs": None if self._outputs is None else list(self._outputs),
        }

    def _load_json(self, data: dict[str, Any]) -> None:
        """Replay nodes through add_node so every stored type is re-checked."""
        for node_data in data["nodes"]:
            stored: Node = serde.from_json(node_data)
            new_id = self.add_node(
                stored.kind, stored.inputs, stored.attrs, stored.annotations
            )
            if new_id != stored.id or self.nodes[new_id].type != stored.type:
                raise GraphConstructionError(
                    f"graph {self.id}: stored node {stored.id} does not replay "
                    f"(type {stored.type} vs {self.nodes[new_id].type})"
                )
        if data["outputs"] is not None:
            self.finalize(data["outputs"])


@serde.register_class
class Context:
    """Owner of every graph in one compilation unit."""

    _serde_kind: ClassVar[str] = "mpcflow.Context"

    def __init__(self) -> None:
        self.graphs: list[Graph] = []
        self.main_graph_id: int | None = None
        # (plaintext graph id, party count, role) -> compiled graph id
        self._compiled: dict[tuple[int, int, str], int] = {}
        # compiled graph id -> (plaintext graph id, party count), kept for every
        # compiled graph even after a recompilation replaces the registry entry
        self._compiled_forms: dict[int, tuple[int, int]] = {}

    def create_graph(self, name: str | None = None) -> Graph:
        graph = Graph(self, len(self.graphs), name)
        self.graphs.append(graph)
        return graph

    def discard_graphs(self, first_id: int) -> None:
        """Drop graphs `first_id` onward, e.g. after a failed compilation."""
        if not 0 <= first_id <= len(self.graphs):
            raise UnknownGraph(f"context has no graph {first_id}")
        if self.main_graph_id is not None and self.main_graph_id >= first_id:
            raise ValueError(f"cannot discard main graph {self.main_graph_id}")
        for graph in self.graphs[:first_id]:
            if any(callee >= first_id for callee in graph.called_graph_ids()):
                raise ValueError(f"graph {graph.id} calls a graph being discarded")
        del self.graphs[first_id:]
        self._compiled = {k: c for k, c in self._compiled.items() if c < first_id}
        self._compiled_forms = {
            c: form for c, form in self._compiled_forms.items() if c < first_id
        }

    def get_graph(self, graph_id: Any) -> Graph:
        if isinstance(graph_id, bool) or not isinstance(graph_id, int):
            raise UnknownGraph(f"invalid graph id {graph_id!r}")
        if not 0 <= graph_id < len(self.graphs):
            raise UnknownGraph(f"context has no graph {graph_id}")
        return self.graphs[graph_id]

    def __len__(self) -> int:
        return len(self.graphs)

    def __iter__(self) -> Iterator[Graph]:
        return iter(self.graphs)

    def finalize(self, graph: Graph, outputs: Sequence[int]) -> Graph:
        if graph.context is not self:
            raise UnknownGraph(f"graph {graph.id} belongs to another context")
        return graph.finalize(outputs)

    def calls_transitively(self, caller_id: int, target_id: int) -> bool:
        """True if graph `caller_id` reaches `target_id` through CALL nodes."""
        seen: set[int] = set()
        stack = [caller_id]
        while stack:
            gid = stack.pop()
            if gid in seen:
                continue
            seen.add(gid)
            for callee in self.get_graph(gid).called_graph_ids():
                if callee == target_id:
                    return True
                stack.append(callee)
        return False

    # ------------------------------------------------------------------
    # Main graph / compiled counterparts
    # ------------------------------------------------------------------

    def set_main_graph(self, graph: Graph) -> None:
        if not graph.finalized:
            raise GraphNotFinalized(f"main graph {graph.id} must be finalized")
        self.main_graph_id = graph.id

    @property
    def main_graph(self) -> Graph | None:
        if self.main_graph_id is None:
            return None
        return self.get_graph(self.main_graph_id)

    def set_compiled(
        self, plain_id: int, party_count: int, compiled_id: int, role: str = "main"
    ) -> None:
        """Register `compiled_id` as the N-party form of `plain_id`.

        `role` separates entry graphs ("main", owners bind their inputs) from
        subgraph forms ("callee", every input arrives already shared).
        """
        self.get_graph(plain_id)
        if role not in ("main", "callee"):
            raise ValueError(f"unknown compiled role {role!r}")
        if not self.get_graph(compiled_id).finalized:
            raise GraphNotFinalized(f"compiled graph {compiled_id} is not finalized")
        self._compiled[(plain_id, party_count, role)] = compiled_id
        self._compiled_forms[compiled_id] = (plain_id, party_count)

    def get_compiled(
        self, plain_id: int, party_count: int, role: str = "main"
    ) -> Graph | None:
        compiled_id = self._compiled.get((plain_id, party_count, role))
        return None if compiled_id is None else self.get_graph(compiled_id)

    def compiled_info(self, graph_id: int) -> tuple[int, int] | None:
        """(plaintext graph id, party count) if `graph_id` is a compiled graph."""
        return self._compiled_forms.get(graph_id)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_json(self) -> dict[str, Any]:
        return {
            "graphs": [g.to_json() for g in self.graphs],
            "main_graph_id": self.main_graph_id,
            "compiled": [
                [p, n, role, c] for (p, n, role), c in sorted(self._compiled.items())
            ],
            "compiled_forms": [
                [c, p, n] for c, (p, n) in sorted(self._compiled_forms.items())
            ],
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Context:
        ctx = cls()
        graph_data = data["graphs"]
        for gd in graph_data:
            ctx.create_graph(gd["name"])

        # Callees must be finalized before their callers replay CALL nodes.
        loaded: set[int] = set()

        def load(gid: int, active: tuple[int, ...]) -> None:
            if gid in loaded:
                return
            if gid in active:
                raise CyclicGraphCall(f"serialized context has a cyclic call at {gid}")
            for nd in graph_data[gid]["nodes"]:
                if nd["kind"] == OpKind.CALL.value:
                    callee = serde.from_json(nd["attrs"]["graph_id"])
                    load(callee, (*active, gid))
            ctx.graphs[gid]._load_json(graph_data[gid])
            loaded.add(gid)

        for gid in range(len(graph_data)):
            load(gid, ())

        ctx.main_graph_id = data.get("main_graph_id")
        for plain_id, parties, role, compiled_id in data.get("compiled", []):
            ctx._compiled[(plain_id, parties, role)] = compiled_id
            ctx._compiled_forms[compiled_id] = (plain_id, parties)
        for compiled_id, plain_id, parties in data.get("compiled_forms", []):
            ctx._compiled_forms[compiled_id] = (plain_id, parties)
        return ctx


__all__ = ["Context", "Graph", "Node"]
