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

"""Tests for multi-party execution: lockstep simulation and delegated runs."""

import numpy as np
import pytest

from mpcflow.edsl.ops import OpKind
from mpcflow.edsl.typing import Array, i32, u32
from mpcflow.errors import CommunicationFailure, EvaluationError, MissingInputBinding
from mpcflow.libs.applications import create_millionaires_graph
from mpcflow.mpc.compiler import compile_mpc
from mpcflow.mpc.sharing import reconstruct_outputs
from mpcflow.runtime import value as rv
from mpcflow.runtime.interpreter import PartyEnv, make_executor
from mpcflow.runtime.simulation import (
    SimulationInterpreter,
    run_parties_in_threads,
    simulate,
    simulate_and_reconstruct,
)


def _dot_graph(ctx):
    """Inner product of two private vectors plus a public offset."""
    g = ctx.create_graph("dot")
    a = g.input(Array[u32, (4,)], party=0)
    b = g.input(Array[u32, (4,)], party=1)
    off = g.input(u32, public=True)
    g.finalize([g.add(g.sum(g.multiply(a, b)), off), g.less(g.sum(a), g.sum(b))])
    return g


INPUTS = [[1, 2, 3, 4], [5, 6, 7, 8], 100]


def _adder(ctx):
    g = ctx.create_graph("adder")
    return g.finalize([g.add(g.input(u32), g.input(u32))])


class _WideCalls(SimulationInterpreter):
    """Sets a bit above 32 in every CALL result."""

    def call_graph(self, frame, node, args):
        values = super().call_graph(frame, node, args)
        return [np.asarray(v | np.uint64(1 << 40)) for v in values]


# ==============================================================================
# --- Simulation
# ==============================================================================


class TestSimulate:
    """All parties in one process."""

    def test_shares_reconstruct(self, ctx, make_config):
        """Per-party shares add up to the plaintext outputs."""
        g = _dot_graph(ctx)
        config = make_config(3)
        compiled = compile_mpc(ctx, g, config)
        shares = simulate(ctx, compiled, INPUTS, randomness=config.randomness)
        assert len(shares) == 3
        assert all(len(s) == 2 for s in shares)
        dot, lt = reconstruct_outputs(shares, compiled.output_types)
        assert int(dot) == 70 + 100
        assert int(lt) == 1

    def test_party_count_from_registry(self, ctx, make_config):
        """The compiled graph's party count is looked up in the context."""
        g = _dot_graph(ctx)
        config = make_config(2)
        compiled = compile_mpc(ctx, g, config)
        out = simulate_and_reconstruct(ctx, compiled, INPUTS, randomness=config.randomness)
        assert int(out[0]) == 170

    def test_unregistered_graph_needs_party_count(self, ctx):
        """A graph that is not a compiled graph has no implicit party count."""
        g = _dot_graph(ctx)
        with pytest.raises(ValueError):
            simulate(ctx, g, INPUTS)

    def test_seeded_runs_are_deterministic(self, ctx, make_config):
        """Identical seeds give identical shares."""
        g = _dot_graph(ctx)
        config = make_config(2, seed=11)
        compiled = compile_mpc(ctx, g, config)
        first = simulate(ctx, compiled, INPUTS, randomness=config.randomness)
        second = simulate(ctx, compiled, INPUTS, randomness=config.randomness)
        assert all(
            rv.values_equal(a, b) for pa, pb in zip(first, second) for a, b in zip(pa, pb)
        )

    def test_different_seeds_change_shares(self, ctx, make_config):
        """Shares depend on the randomness; the reconstruction does not."""
        g = _dot_graph(ctx)
        c1, c2 = make_config(2, seed=1), make_config(2, seed=2)
        compiled = compile_mpc(ctx, g, c1)
        s1 = simulate(ctx, compiled, INPUTS, randomness=c1.randomness)
        s2 = simulate(ctx, compiled, INPUTS, randomness=c2.randomness)
        assert not rv.values_equal(s1[0][0], s2[0][0])
        types = compiled.output_types
        assert all(
            rv.values_equal(a, b)
            for a, b in zip(reconstruct_outputs(s1, types), reconstruct_outputs(s2, types))
        )

    def test_parallel_simulation(self, ctx, make_config):
        """Simulation also runs on the parallel scheduler."""
        g = _dot_graph(ctx)
        config = make_config(2)
        compiled = compile_mpc(ctx, g, config)
        with make_executor(4) as pool:
            out = simulate_and_reconstruct(
                ctx, compiled, INPUTS, randomness=config.randomness, executor=pool
            )
        assert [int(v) for v in out] == [170, 1]

    def test_check_types_covers_protocol_nodes(self, ctx, make_config):
        """SEND, RECEIVE and CALL results pass the type check."""
        adder = _adder(ctx)
        g = ctx.create_graph()
        a = g.input(u32, party=0)
        b = g.input(u32, party=1)
        g.finalize([g.less(g.call(adder.id, [a, b]), b)])
        config = make_config(2)
        compiled = compile_mpc(ctx, g, config)
        out = simulate_and_reconstruct(
            ctx, compiled, [3, 5], randomness=config.randomness, check_types=True
        )
        assert int(out[0]) == 0

    def test_check_types_rejects_bad_call_result(self, ctx, make_config):
        """A CALL result wider than its type is reported per party."""
        adder = _adder(ctx)
        g = ctx.create_graph()
        a = g.input(u32, party=0)
        b = g.input(u32, party=1)
        g.finalize([g.call(adder.id, [a, b])])
        config = make_config(2)
        compiled = compile_mpc(ctx, g, config)
        call_id = next(n.id for n in compiled if n.kind == OpKind.CALL)
        envs = [PartyEnv(p, 2, config.randomness) for p in range(2)]

        interp = _WideCalls(envs, check_types=True)
        with pytest.raises(EvaluationError) as exc:
            interp.evaluate_all(ctx, compiled, [3, 5])
        assert exc.value.node_id == call_id
        assert exc.value.party == 0

    def test_missing_owned_input(self, ctx, make_config):
        """The owner of a private input must bind it."""
        g = _dot_graph(ctx)
        config = make_config(2)
        compiled = compile_mpc(ctx, g, config)
        with pytest.raises(MissingInputBinding):
            simulate(ctx, compiled, [[1, 2, 3, 4], None, 100], randomness=config.randomness)


# ==============================================================================
# --- Delegated execution
# ==============================================================================


class TestDelegated:
    """One thread per party over a local mesh."""

    @pytest.mark.parametrize("party_count", [2, 3])
    def test_matches_simulation(self, ctx, make_config, party_count):
        """Delegated shares equal the simulated shares bit for bit."""
        g = _dot_graph(ctx)
        config = make_config(party_count)
        compiled = compile_mpc(ctx, g, config)
        simulated = simulate(ctx, compiled, INPUTS, randomness=config.randomness)
        party_inputs = [
            [INPUTS[0] if p == 0 else None, INPUTS[1] if p == 1 else None, INPUTS[2]]
            for p in range(party_count)
        ]
        delegated = run_parties_in_threads(
            ctx, compiled, party_inputs, randomness=config.randomness, timeout=30
        )
        for sim, dele in zip(simulated, delegated, strict=True):
            assert all(rv.values_equal(a, b) for a, b in zip(sim, dele, strict=True))

    def test_signed_comparison(self, ctx, make_config):
        """The millionaires comparison over signed inputs."""
        g = ctx.create_graph()
        a = g.input(i32, party=0)
        b = g.input(i32, party=1)
        g.finalize([g.greater(a, b)])
        config = make_config(2)
        compiled = compile_mpc(ctx, g, config)
        shares = run_parties_in_threads(
            ctx, compiled, [[-3, None], [None, -9]], randomness=config.randomness, timeout=30
        )
        (out,) = reconstruct_outputs(shares, compiled.output_types)
        assert int(out) == 1

    def test_unsigned_scalar_comparison(self, ctx, make_config):
        """Scalar shares cross the wire as 0-d values."""
        g = create_millionaires_graph(ctx)
        config = make_config(2)
        compiled = compile_mpc(ctx, g, config)
        shares = run_parties_in_threads(
            ctx,
            compiled,
            [[17, None], [None, 42]],
            randomness=config.randomness,
            timeout=30,
            check_types=True,
        )
        assert all(s[0].shape == () for s in shares)
        (out,) = reconstruct_outputs(shares, compiled.output_types)
        assert int(out) == 1

    def test_wrong_party_input_count(self, ctx, make_config):
        """One binding set per party is required."""
        g = _dot_graph(ctx)
        config = make_config(2)
        compiled = compile_mpc(ctx, g, config)
        with pytest.raises(ValueError):
            run_parties_in_threads(ctx, compiled, [INPUTS], randomness=config.randomness)

    def test_party_failure_is_reported(self, ctx, make_config):
        """A failing party surfaces its own error, not the peers' timeouts."""
        g = _dot_graph(ctx)
        config = make_config(2)
        compiled = compile_mpc(ctx, g, config)
        party_inputs = [[INPUTS[0], None, 100], [None, None, 100]]
        with pytest.raises(MissingInputBinding):
            run_parties_in_threads(
                ctx, compiled, party_inputs, randomness=config.randomness, timeout=30
            )

    def test_unseeded_dealer_must_be_shared(self, ctx, make_config):
        """Without a PRF seed, parties still agree when they share one dealer."""
        g = _dot_graph(ctx)
        config = make_config(2)
        compiled = compile_mpc(ctx, g, config)
        randomness = type(config.randomness)(triple_source=config.randomness.triple_source)
        party_inputs = [[INPUTS[0], None, 100], [None, INPUTS[1], 100]]
        shares = run_parties_in_threads(
            ctx, compiled, party_inputs, randomness=randomness, timeout=30
        )
        assert [int(v) for v in reconstruct_outputs(shares, compiled.output_types)] == [
            170,
            1,
        ]


def test_communication_failure_type():
    """Communication failures are evaluation errors."""
    assert issubclass(CommunicationFailure, EvaluationError)
