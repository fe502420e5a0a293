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

"""Error taxonomy for mpcflow.

Three families mirror the three entry points of the library:

- GraphConstructionError: raised while building a graph (type inference,
  input references, subgraph calls, finalization).
- CompilationError: raised by the MPC compiler, carries the offending
  plaintext node id and op kind.
- EvaluationError: raised by the interpreter, carries the offending node id
  and, in multi-party runs, the party index.
"""

from __future__ import annotations

from typing import Any


class MPCFlowError(Exception):
    """Base class of every error raised by mpcflow."""


# ==============================================================================
# --- Graph construction
# ==============================================================================


class GraphConstructionError(MPCFlowError):
    pass


class TypeMismatch(GraphConstructionError):
    pass


class ShapeMismatch(GraphConstructionError):
    pass


class UnknownField(GraphConstructionError):
    pass


class InvalidAttribute(GraphConstructionError):
    pass


class InvalidInputReference(GraphConstructionError):
    pass


class UnknownNode(GraphConstructionError):
    pass


class UnknownGraph(GraphConstructionError):
    pass


class CyclicGraphCall(GraphConstructionError):
    pass


class EmptyOutputSet(GraphConstructionError):
    pass


class GraphFinalized(GraphConstructionError):
    pass


class GraphNotFinalized(GraphConstructionError):
    pass


# ==============================================================================
# --- Compilation
# ==============================================================================


class CompilationError(MPCFlowError):
    """Error raised while lowering a plaintext graph.

    Attributes:
        node_id: Id of the plaintext node being lowered (None if not node specific).
        kind: Op kind of that node.
    """

    def __init__(self, message: str, *, node_id: int | None = None, kind: Any = None):
        self.node_id = node_id
        self.kind = kind
        if node_id is not None:
            message = f"{message} (node {node_id}, kind {kind})"
        super().__init__(message)


class UnsupportedOpForMPC(CompilationError):
    pass


class MissingAuxiliaryRandomness(CompilationError):
    pass


# ==============================================================================
# --- Evaluation
# ==============================================================================


class EvaluationError(MPCFlowError):
    """Error raised while evaluating a graph.

    Attributes:
        node_id: Id of the node whose evaluation failed.
        party: Party index in multi-party runs, None for plaintext runs.
        reason: The message without the node/party suffix.
    """

    def __init__(
        self,
        message: str,
        *,
        node_id: int | None = None,
        party: int | None = None,
    ):
        self.node_id = node_id
        self.party = party
        self.reason = message
        where = []
        if node_id is not None:
            where.append(f"node {node_id}")
        if party is not None:
            where.append(f"party {party}")
        if where:
            message = f"{message} ({', '.join(where)})"
        super().__init__(message)


class MissingInputBinding(EvaluationError):
    pass


class CommunicationFailure(EvaluationError):
    pass


class CacheSlotError(EvaluationError):
    pass
