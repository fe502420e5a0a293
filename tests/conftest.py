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

import pytest

from mpcflow.edsl.graph import Context, Graph
from mpcflow.mpc.compiler import CompileConfig, compile_mpc
from mpcflow.mpc.randomness import RandomnessConfig
from mpcflow.runtime import value as rv
from mpcflow.runtime.interpreter import Interpreter
from mpcflow.runtime.simulation import simulate_and_reconstruct


@pytest.fixture
def ctx() -> Context:
    return Context()


def _dealer_config(party_count: int, seed: int = 7, capacity=None) -> CompileConfig:
    """Compile config backed by a seeded trusted dealer."""
    return CompileConfig(
        party_count,
        RandomnessConfig.with_dealer(party_count, seed=seed, capacity=capacity),
    )


def _run_compiled(context: Context, graph: Graph, inputs, party_count: int, seed: int = 7):
    """Compile `graph`, simulate all parties and reconstruct the outputs."""
    config = _dealer_config(party_count, seed)
    compiled = compile_mpc(context, graph, config)
    return simulate_and_reconstruct(
        context, compiled, inputs, randomness=config.randomness, check_types=True
    )


@pytest.fixture
def make_config():
    """Factory for dealer-backed compile configs: make_config(n, seed=7, capacity=None)."""
    return _dealer_config


@pytest.fixture
def run_mpc():
    """Compile, simulate and reconstruct: run_mpc(ctx, graph, inputs, n, seed=7)."""
    return _run_compiled


@pytest.fixture
def mpc_check():
    """Assert that the compiled graph reconstructs to the plaintext result.

    Returns the reconstructed outputs so tests can also check exact values.
    """

    def check(context: Context, graph: Graph, inputs, party_count: int = 2):
        expected = Interpreter(check_types=True).evaluate(context, graph, inputs)
        got = _run_compiled(context, graph, inputs, party_count)
        assert len(got) == len(expected)
        for e, g in zip(expected, got, strict=True):
            assert rv.values_equal(e, g), f"expected {e}, got {g}"
        return got

    return check
