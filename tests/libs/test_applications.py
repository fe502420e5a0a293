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

"""Tests for the ready-made application graphs."""

import numpy as np
import pytest

from mpcflow.edsl.ops import OpKind
from mpcflow.edsl.typing import BIT, ArrayType, i32, u8, u32
from mpcflow.libs import (
    create_matmul_graph,
    create_millionaires_graph,
    create_minimum_graph,
    create_set_intersection_graph,
    create_sort_graph,
)
from mpcflow.mpc.compiler import compile_mpc
from mpcflow.runtime import value as rv
from mpcflow.runtime.interpreter import Interpreter


class TestMillionaires:
    """Yao's millionaires' problem."""

    def test_structure(self, ctx):
        """Two inputs owned by parties 0 and 1, one BIT output."""
        g = create_millionaires_graph(ctx)
        owners = [n.attrs["party"] for n in g.input_nodes()]
        assert owners == [0, 1]
        assert g.output_types == [BIT]

    @pytest.mark.parametrize("n", [2, 3])
    @pytest.mark.parametrize("pair,expected", [((17, 42), 1), ((42, 17), 0), ((5, 5), 0)])
    def test_secure_result(self, ctx, run_mpc, n, pair, expected):
        """The protocol answers wealth_0 < wealth_1."""
        g = create_millionaires_graph(ctx)
        (out,) = run_mpc(ctx, g, list(pair), n)
        assert int(out) == expected

    def test_signed_wealth(self, ctx, mpc_check):
        """Debts compare below assets."""
        g = create_millionaires_graph(ctx, st=i32)
        mpc_check(ctx, g, [-10, 3])


class TestMatmul:
    """Two-party matrix product."""

    def test_two_by_two(self, ctx, run_mpc):
        """[[1,2],[3,4]] @ [[5,6],[7,8]]."""
        g = create_matmul_graph(ctx, 2, 2, 2)
        (out,) = run_mpc(ctx, g, [[[1, 2], [3, 4]], [[5, 6], [7, 8]]], 2)
        np.testing.assert_array_equal(out, [[19, 22], [43, 50]])

    def test_uses_one_triple(self, ctx, make_config):
        """A single matmul triple covers the whole product."""
        g = create_matmul_graph(ctx, 3, 2, 4, st=u32)
        compiled = compile_mpc(ctx, g, make_config(2))
        triples = [n for n in compiled.nodes if n.kind == OpKind.TRIPLE]
        assert len(triples) == 1
        assert triples[0].attrs["kind"] == "matmul"


class TestMinimum:
    """Tournament minimum."""

    def test_plaintext(self, ctx):
        """The tournament finds the minimum of 2^n elements."""
        g = create_minimum_graph(ctx, 3)
        (out,) = Interpreter().evaluate(ctx, g, [[9, 4, 7, 8, 3, 6, 5, 11]])
        assert g.output_types == [ArrayType((1,), u32)]
        assert out.tolist() == [3]

    def test_secure(self, ctx, mpc_check):
        """Compiled tournament over a signed array owned by party 1."""
        g = create_minimum_graph(ctx, 2, st=i32, party=1)
        got = mpc_check(ctx, g, [[4, -2, 0, -7]])
        assert rv.to_python(got[0], ArrayType((1,), i32)).tolist() == [-7]


class TestSort:
    """Odd-even transposition sort."""

    def test_plaintext(self, ctx):
        """n rounds sort any permutation."""
        g = create_sort_graph(ctx, 6, st=u8)
        (out,) = Interpreter().evaluate(ctx, g, [[6, 5, 4, 3, 2, 1]])
        assert out.tolist() == [1, 2, 3, 4, 5, 6]

    def test_secure(self, ctx, mpc_check):
        """Compiled sort with duplicates."""
        g = create_sort_graph(ctx, 4, st=u8)
        got = mpc_check(ctx, g, [[3, 1, 3, 0]])
        assert got[0].tolist() == [0, 1, 3, 3]

    def test_single_element(self, ctx):
        """A one element array is already sorted."""
        g = create_sort_graph(ctx, 1)
        (out,) = Interpreter().evaluate(ctx, g, [[5]])
        assert out.tolist() == [5]


class TestSetIntersection:
    """Membership of party 0's elements in party 1's set."""

    def test_plaintext(self, ctx):
        """Output bit i says whether a[i] is in b."""
        g = create_set_intersection_graph(ctx, 4, 3)
        (out,) = Interpreter().evaluate(ctx, g, [[1, 2, 3, 4], [4, 9, 2]])
        assert g.output_types == [ArrayType((4,), BIT)]
        assert out.tolist() == [0, 1, 0, 1]

    @pytest.mark.parametrize("n", [2, 3])
    def test_secure(self, ctx, mpc_check, n):
        """Compiled membership test."""
        g = create_set_intersection_graph(ctx, 3, 2, st=u8)
        got = mpc_check(ctx, g, [[7, 8, 9], [9, 7]], n)
        assert got[0].tolist() == [1, 0, 1]
