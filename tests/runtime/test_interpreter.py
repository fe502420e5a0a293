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

"""Tests for the plaintext and per-party interpreter."""

import numpy as np
import pytest

from mpcflow.edsl.ops import OpKind
from mpcflow.edsl.typing import BIT, Array, Tuple, i32, u8, u32
from mpcflow.errors import (
    CacheSlotError,
    EvaluationError,
    GraphNotFinalized,
    MissingInputBinding,
)
from mpcflow.runtime import value as rv
from mpcflow.runtime.interpreter import (
    MAX_WORKERS_ENV,
    Interpreter,
    PartyEnv,
    ValueCache,
    make_executor,
    owns_input,
)


def _diamond(ctx):
    """(a + b) * (a - b) over i32."""
    g = ctx.create_graph("diamond")
    a = g.input(i32)
    b = g.input(i32)
    g.finalize([g.multiply(g.add(a, b), g.subtract(a, b))])
    return g


# ==============================================================================
# --- Evaluation
# ==============================================================================


class TestEvaluate:
    """Sequential and parallel evaluation of plaintext graphs."""

    def test_sequential(self, ctx):
        """Outputs follow the graph's semantics with signed wraparound."""
        g = _diamond(ctx)
        (out,) = Interpreter().evaluate(ctx, g, [3, 5])
        assert rv.to_python(out, i32) == -16

    def test_parallel_matches_sequential(self, ctx):
        """The dependency-counting scheduler gives identical results."""
        g = ctx.create_graph()
        x = g.input(Array[u32, (4,)])
        acc = x
        leaves = []
        for k in range(6):
            acc = g.add(acc, g.constant(u32, k))
            leaves.append(g.multiply(acc, x))
        g.finalize(leaves)
        data = [1, 2, 3, 4]
        expected = Interpreter().evaluate(ctx, g, [data])
        with make_executor(4) as pool:
            got = Interpreter(executor=pool).evaluate(ctx, g, [data])
        assert all(rv.values_equal(e, v) for e, v in zip(expected, got))

    def test_bindings_by_node_id(self, ctx):
        """Inputs may be bound by node id."""
        g = _diamond(ctx)
        a, b = (n.id for n in g.input_nodes())
        (out,) = Interpreter().evaluate(ctx, g, {a: 5, b: 3})
        assert rv.to_python(out, i32) == 16

    def test_comparisons_and_select(self, ctx):
        """Signed comparison respects two's complement."""
        g = ctx.create_graph()
        a = g.input(i32)
        b = g.input(i32)
        lt = g.less(a, b)
        g.finalize([lt, g.select(lt, a, b), g.maximum(a, b)])
        outs = Interpreter().evaluate(ctx, g, [-7, 2])
        assert [rv.to_python(v, t) for v, t in zip(outs, g.output_types)] == [1, -7, 2]

    def test_composite_outputs(self, ctx):
        """Tuple construction and projection."""
        g = ctx.create_graph()
        a = g.input(u8)
        b = g.input(BIT)
        t = g.create_tuple([a, b])
        g.finalize([t, g.tuple_get(t, 1)])
        outs = Interpreter().evaluate(ctx, g, [200, 1])
        assert rv.to_python(outs[0], Tuple[u8, BIT]) == (200, 1)
        assert int(outs[1]) == 1

    def test_call(self, ctx):
        """CALL evaluates the callee with the caller's arguments."""
        callee = ctx.create_graph("square")
        x = callee.input(u32)
        callee.finalize([callee.multiply(x, x)])
        g = ctx.create_graph("main")
        y = g.input(u32)
        g.finalize([g.call(callee.id, [g.add(y, g.constant(u32, 1))])])
        (out,) = Interpreter().evaluate(ctx, g, [4])
        assert int(out) == 25

    def test_outputs_are_read_only(self, ctx):
        """Values leave the interpreter frozen."""
        g = ctx.create_graph()
        x = g.input(Array[u32, (2,)])
        g.finalize([g.negate(x)])
        (out,) = Interpreter().evaluate(ctx, g, [[1, 2]])
        assert not out.flags.writeable


# ==============================================================================
# --- Failures
# ==============================================================================


class TestFailures:
    """Errors carry node and party context."""

    def test_unfinalized_graph(self, ctx):
        """Only finalized graphs can be evaluated."""
        g = ctx.create_graph()
        g.input(u32)
        with pytest.raises(GraphNotFinalized):
            Interpreter().evaluate(ctx, g, [1])

    def test_missing_binding(self, ctx):
        """An unbound input names the node."""
        g = _diamond(ctx)
        with pytest.raises(MissingInputBinding) as exc:
            Interpreter().evaluate(ctx, g, [1])
        assert exc.value.node_id == 1

    def test_too_many_bindings(self, ctx):
        """Surplus positional bindings are rejected."""
        g = _diamond(ctx)
        with pytest.raises(MissingInputBinding):
            Interpreter().evaluate(ctx, g, [1, 2, 3])

    def test_bad_binding(self, ctx):
        """A binding of the wrong shape is an evaluation error."""
        g = ctx.create_graph()
        x = g.input(Array[u32, (2,)])
        g.finalize([x])
        with pytest.raises(EvaluationError) as exc:
            Interpreter().evaluate(ctx, g, [[1, 2, 3]])
        assert exc.value.node_id == x

    def test_divide_by_zero(self, ctx):
        """Kernel exceptions are wrapped with the failing node id."""
        g = ctx.create_graph()
        a = g.input(u32)
        b = g.input(u32)
        d = g.divide(a, b)
        g.finalize([d])
        with pytest.raises(EvaluationError) as exc:
            Interpreter().evaluate(ctx, g, [1, 0])
        assert exc.value.node_id == d
        assert isinstance(exc.value.__cause__, ZeroDivisionError)

    def test_divide_by_zero_parallel(self, ctx):
        """The parallel scheduler re-raises worker failures."""
        g = ctx.create_graph()
        a = g.input(u32)
        g.finalize([g.divide(a, g.constant(u32, 0))])
        with make_executor(2) as pool:
            with pytest.raises(EvaluationError):
                Interpreter(executor=pool).evaluate(ctx, g, [1])

    def test_check_types_catches_bad_kernel(self, ctx):
        """A kernel producing an ill-typed value is reported."""
        g = ctx.create_graph()
        x = g.input(u8)
        g.finalize([g.negate(x)])
        kernels = Interpreter().kernels
        kernels[OpKind.NEGATE] = lambda frame, node, v: np.uint64(1000)
        with pytest.raises(EvaluationError):
            Interpreter(kernels, check_types=True).evaluate(ctx, g, [1])

    def test_cache_slot_written_twice(self):
        """Value cache slots are write-once."""
        cache = ValueCache()
        cache.put(0, np.zeros((), dtype=np.uint64))
        with pytest.raises(CacheSlotError) as exc:
            cache.put(0, np.zeros((), dtype=np.uint64), party=1)
        assert exc.value.node_id == 0
        assert exc.value.party == 1


# ==============================================================================
# --- Party environment
# ==============================================================================


class TestPartyEnv:
    """Input ownership and executor configuration."""

    def test_party_range(self):
        """The party index must be below the party count."""
        with pytest.raises(ValueError):
            PartyEnv(2, 2)

    def test_owns_input(self, ctx):
        """Owner, public and shared inputs."""
        g = ctx.create_graph()
        own = g.node(g.input(u32, party=1))
        default = g.node(g.input(u32))
        public = g.node(g.input(u32, public=True))
        shared = g.node(g.add_node(OpKind.INPUT, (), {"type": u32, "shared": True}))
        assert owns_input(own, None)
        assert owns_input(own, 1) and not owns_input(own, 0)
        assert owns_input(default, 0) and not owns_input(default, 1)
        assert owns_input(public, 0) and owns_input(public, 1)
        assert owns_input(shared, 0) and owns_input(shared, 1)

    def test_non_owner_gets_zeros(self, ctx):
        """A party evaluating another owner's input sees a zero placeholder."""
        g = ctx.create_graph()
        x = g.input(u32, party=1)
        g.finalize([x])
        (out,) = Interpreter().evaluate(ctx, g, [None], PartyEnv(0, 2))
        assert int(out) == 0

    def test_max_workers_from_environment(self, monkeypatch):
        """The worker count can be set through the environment."""
        monkeypatch.setenv(MAX_WORKERS_ENV, "3")
        with make_executor() as pool:
            assert pool._max_workers == 3
