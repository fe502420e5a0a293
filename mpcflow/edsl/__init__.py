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

"""Graph construction surface: types, op kinds, graphs and contexts.

Typical usage::

    import mpcflow.edsl as el
    import mpcflow.edsl.typing as elt
"""

from __future__ import annotations

from . import typing as typing
from .graph import Context, Graph, Node
from .ops import OpKind, infer_type
from .printer import GraphPrinter, format_graph
from .typing import (
    BIT,
    ArrayType,
    BaseType,
    NamedTupleType,
    ScalarType,
    TupleType,
    VectorType,
    i8,
    i16,
    i32,
    i64,
    u8,
    u16,
    u32,
    u64,
)

__all__ = [
    "BIT",
    "ArrayType",
    "BaseType",
    "Context",
    "Graph",
    "GraphPrinter",
    "NamedTupleType",
    "Node",
    "OpKind",
    "ScalarType",
    "TupleType",
    "VectorType",
    "format_graph",
    "i8",
    "i16",
    "i32",
    "i64",
    "infer_type",
    "typing",
    "u8",
    "u16",
    "u32",
    "u64",
]
