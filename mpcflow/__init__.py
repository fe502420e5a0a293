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

"""mpcflow: a typed graph IR, an MPC-lowering compiler and its evaluator.

    import mpcflow as mf

    ctx = mf.Context()
    g = mf.create_millionaires_graph(ctx)
    config = mf.CompileConfig(2, mf.RandomnessConfig.with_dealer(2, seed=0))
    compiled = mf.compile_mpc(ctx, g, config)
    mf.simulate_and_reconstruct(ctx, compiled, [17, 42], randomness=config.randomness)
"""

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("mpcflow")
except PackageNotFoundError:
    # Fallback for development/editable installs when package is not installed
    __version__ = "0.0.0-dev"

# =============================================================================
# Graph IR (must load before the runtime, which reuses its value helpers)
# =============================================================================
from mpcflow.edsl import (
    BIT,
    ArrayType,
    Context,
    Graph,
    GraphPrinter,
    NamedTupleType,
    Node,
    OpKind,
    ScalarType,
    TupleType,
    VectorType,
    format_graph,
    i8,
    i16,
    i32,
    i64,
    u8,
    u16,
    u32,
    u64,
)
from mpcflow.errors import (
    CompilationError,
    EvaluationError,
    GraphConstructionError,
    MPCFlowError,
)

# =============================================================================
# Compiler / runtime
# =============================================================================
from mpcflow.libs import (
    create_matmul_graph,
    create_millionaires_graph,
    create_minimum_graph,
    create_set_intersection_graph,
    create_sort_graph,
)
from mpcflow.logging_config import disable_logging, get_logger, setup_logging
from mpcflow.mpc import (
    CompileConfig,
    RandomnessConfig,
    TrustedDealer,
    compile_mpc,
    reconstruct,
    share_value,
)
from mpcflow.runtime.interpreter import Interpreter, PartyEnv, make_executor
from mpcflow.runtime.simulation import (
    run_parties_in_threads,
    run_party,
    simulate,
    simulate_and_reconstruct,
)
from mpcflow.runtime.transport import LocalMesh, Transport
from mpcflow.runtime.value import zeros_of_type

__all__ = [
    "BIT",
    "ArrayType",
    "CompilationError",
    "CompileConfig",
    "Context",
    "EvaluationError",
    "Graph",
    "GraphConstructionError",
    "GraphPrinter",
    "Interpreter",
    "LocalMesh",
    "MPCFlowError",
    "NamedTupleType",
    "Node",
    "OpKind",
    "PartyEnv",
    "RandomnessConfig",
    "ScalarType",
    "Transport",
    "TrustedDealer",
    "TupleType",
    "VectorType",
    "__version__",
    "compile_mpc",
    "create_matmul_graph",
    "create_millionaires_graph",
    "create_minimum_graph",
    "create_set_intersection_graph",
    "create_sort_graph",
    "disable_logging",
    "format_graph",
    "get_logger",
    "i8",
    "i16",
    "i32",
    "i64",
    "make_executor",
    "reconstruct",
    "run_parties_in_threads",
    "run_party",
    "setup_logging",
    "share_value",
    "simulate",
    "simulate_and_reconstruct",
    "u8",
    "u16",
    "u32",
    "u64",
    "zeros_of_type",
]
