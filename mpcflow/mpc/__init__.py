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

"""MPC lowering, randomness and secret-sharing helpers."""

from __future__ import annotations

from mpcflow.mpc.compiler import CompileConfig, MPCCompiler, compile_mpc
from mpcflow.mpc.protocols import ProtocolBuilder, SVal
from mpcflow.mpc.randomness import RandomnessConfig, TripleSource, TrustedDealer
from mpcflow.mpc.sharing import reconstruct, reconstruct_outputs, share_value

__all__ = [
    "CompileConfig",
    "MPCCompiler",
    "ProtocolBuilder",
    "RandomnessConfig",
    "SVal",
    "TripleSource",
    "TrustedDealer",
    "compile_mpc",
    "reconstruct",
    "reconstruct_outputs",
    "share_value",
]
