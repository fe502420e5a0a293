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

"""Pretty printer for the Graph IR."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import numpy as np

from mpcflow.edsl.graph import Context, Graph, Node
from mpcflow.edsl.ops import OpKind


class GraphPrinter:
    """Format graphs in a readable, MLIR-like style."""

    def __init__(
        self,
        *,
        indent_size: int = 2,
        show_types: bool = True,
        show_attrs: bool = True,
        max_constant_items: int = 8,
    ):
        self.indent_size = indent_size
        self.show_types = show_types
        self.show_attrs = show_attrs
        self.max_constant_items = max_constant_items

    def format(self, graph: Graph) -> str:
        """Return a formatted string representation of `graph`."""
        lines: list[str] = []
        self._format_graph(graph, lines)
        return "\n".join(lines)

    def format_context(self, context: Context) -> str:
        return "\n\n".join(self.format(g) for g in context)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _write(self, lines: list[str], indent_level: int, text: str) -> None:
        indent = " " * (indent_level * self.indent_size)
        lines.append(f"{indent}{text}")

    def _format_graph(self, graph: Graph, lines: list[str]) -> None:
        title = f' "{graph.name}"' if graph.name else ""
        self._write(lines, 0, f"graph {graph.id}{title} {{")
        for node in graph:
            self._write(lines, 1, self._format_node(node))
        if graph.finalized:
            outs = ", ".join(f"%{i}" for i in graph.outputs)
            self._write(lines, 1, f"return {outs}")
        self._write(lines, 0, "}")

    def _format_node(self, node: Node) -> str:
        text = f"%{node.id} = {node.kind}"
        if node.inputs:
            text += "(" + ", ".join(f"%{i}" for i in node.inputs) + ")"
        if self.show_attrs and node.attrs:
            text += " " + self._format_attrs(node)
        if self.show_types:
            text += f" : {node.type}"
        return text

    def _format_attrs(self, node: Node) -> str:
        attrs: Mapping[str, Any] = node.attrs
        parts = []
        for key in sorted(attrs):
            if node.kind == OpKind.CALL and key == "graph_id":
                parts.append(f"graph=@{attrs[key]}")
            else:
                parts.append(f"{key}={self._format_value(attrs[key])}")
        return "{" + ", ".join(parts) + "}"

    def _format_value(self, value: Any) -> str:
        if isinstance(value, np.ndarray):
            flat = value.ravel().tolist()
            if len(flat) > self.max_constant_items:
                head = ", ".join(str(v) for v in flat[: self.max_constant_items])
                return f"[{head}, ...]"
            return str(flat[0]) if value.ndim == 0 else str(flat)
        if isinstance(value, tuple):
            return "(" + ", ".join(self._format_value(v) for v in value) + ")"
        return str(value)


def format_graph(graph: Graph, **kwargs: Any) -> str:
    """Format `graph` with a `GraphPrinter` configured by `kwargs`."""
    return GraphPrinter(**kwargs).format(graph)


__all__ = ["GraphPrinter", "format_graph"]
