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

"""Ready-made plaintext graphs for common two-party computations.

Every builder adds one finalized graph to the given context and returns it;
compile it with `mpcflow.mpc.compile_mpc` to obtain the protocol version.
"""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np

from mpcflow.edsl.graph import Context, Graph
from mpcflow.edsl.typing import ArrayType, ScalarType, u32, u64


def _index_array(graph: Graph, positions: Sequence[int]) -> int:
    return graph.constant(ArrayType((len(positions),), u64), np.asarray(positions))


def create_millionaires_graph(context: Context, st: ScalarType = u32) -> Graph:
    """Yao's millionaires' problem: is party 0 poorer than party 1?

    Inputs: party 0's wealth, party 1's wealth (both `st`).
    Output: BIT, 1 iff wealth_0 < wealth_1.
    """
    g = context.create_graph("millionaires")
    alice = g.input(st, party=0)
    bob = g.input(st, party=1)
    return g.finalize([g.less(alice, bob)])


def create_matmul_graph(
    context: Context, m: int, n: int, k: int, st: ScalarType = u64
) -> Graph:
    """Product of an m x n matrix of party 0 with an n x k matrix of party 1."""
    g = context.create_graph("matmul")
    a = g.input(ArrayType((m, n), st), party=0)
    b = g.input(ArrayType((n, k), st), party=1)
    return g.finalize([g.matmul(a, b)])


def create_minimum_graph(
    context: Context, n: int, st: ScalarType = u32, party: int = 0
) -> Graph:
    """Minimum of an array of 2^n elements owned by `party`.

    Tournament method: compare the first half against the second half
    elementwise and keep the minima, n times. The graph has O(n) nodes; the
    output is an array of shape (1,).
    """
    g = context.create_graph("minimum")
    x = g.input(ArrayType((1 << n,), st), party=party)
    for level in reversed(range(n)):
        half = 1 << level
        first = g.gather(x, _index_array(g, range(half)))
        second = g.gather(x, _index_array(g, range(half, 2 * half)))
        x = g.minimum(first, second)
    return g.finalize([x])


def create_sort_graph(
    context: Context, n: int, st: ScalarType = u32, party: int = 0
) -> Graph:
    """Ascending sort of n elements with an odd-even transposition network.

    Round r compares the pairs (i, i+1) with i = r mod 2, r mod 2 + 2, ...;
    n rounds sort any input.
    """
    g = context.create_graph("sort")
    x = g.input(ArrayType((n,), st), party=party)
    for rnd in range(n):
        left = list(range(rnd % 2, n - 1, 2))
        if not left:
            continue
        right = [i + 1 for i in left]
        left_idx = _index_array(g, left)
        right_idx = _index_array(g, right)
        a = g.gather(x, left_idx)
        b = g.gather(x, right_idx)
        x = g.scatter(x, left_idx, g.minimum(a, b))
        x = g.scatter(x, right_idx, g.maximum(a, b))
    return g.finalize([x])


def create_set_intersection_graph(
    context: Context, n: int, m: int, st: ScalarType = u32
) -> Graph:
    """Membership of party 0's n elements in party 1's set of m elements.

    Output: BIT array of shape (n,), entry i is 1 iff a[i] occurs in b.
    """
    g = context.create_graph("set_intersection")
    a = g.input(ArrayType((n,), st), party=0)
    b = g.input(ArrayType((m,), st), party=1)
    column = g.reshape(a, ArrayType((n, 1), st))
    row = g.reshape(b, ArrayType((1, m), st))
    hits = g.equal(column, row)
    # Balanced OR-reduction over the m columns.
    layer = [g.gather(hits, g.index_constant(j), axis=1) for j in range(m)]
    while len(layer) > 1:
        nxt = [g.logical_or(layer[i], layer[i + 1]) for i in range(0, len(layer) - 1, 2)]
        if len(layer) % 2:
            nxt.append(layer[-1])
        layer = nxt
    return g.finalize([layer[0]])


__all__ = [
    "create_matmul_graph",
    "create_millionaires_graph",
    "create_minimum_graph",
    "create_set_intersection_graph",
    "create_sort_graph",
]
