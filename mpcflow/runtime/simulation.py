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

"""Multi-party execution of compiled graphs.

Two strategies resolve SEND/RECEIVE:

1. Simulation (`simulate`): one process holds every party's values. Each
   cache slot stores a list with one value per party and nodes advance in
   lockstep; a RECEIVE copies the sender's SEND value directly, so nothing
   ever blocks.
2. Delegated (`run_party`): one party evaluates alone and exchanges payloads
   through a `Transport`. `run_parties_in_threads` drives all parties over a
   `LocalMesh` for testing.
"""

from __future__ import annotations

import concurrent.futures
import logging
from collections.abc import Mapping, Sequence
from dataclasses import replace
from typing import Any

from mpcflow.edsl.graph import Context, Graph, Node
from mpcflow.edsl.ops import OpKind
from mpcflow.errors import (
    CommunicationFailure,
    EvaluationError,
    GraphNotFinalized,
    MPCFlowError,
)
from mpcflow.mpc.randomness import RandomnessConfig
from mpcflow.mpc.sharing import reconstruct_outputs
from mpcflow.runtime import value as rv
from mpcflow.runtime.interpreter import EvalFrame, Interpreter, PartyEnv
from mpcflow.runtime.kernels import Kernel
from mpcflow.runtime.transport import LocalMesh, PartyChannel, Transport

logger = logging.getLogger(__name__)

Bindings = Sequence[Any] | Mapping[int, Any]


def _party_count(context: Context, graph: Graph, party_count: int | None) -> int:
    if party_count is None:
        info = context.compiled_info(graph.id)
        if info is None:
            raise ValueError(
                f"graph {graph.id} is not a registered compiled graph; "
                "pass party_count explicitly"
            )
        party_count = info[1]
    if party_count < 2:
        raise ValueError(f"party_count must be >= 2, got {party_count}")
    return party_count


class SimulationInterpreter(Interpreter):
    """Interpreter whose cache slots hold one value per party."""

    def __init__(
        self,
        envs: Sequence[PartyEnv],
        kernels: Mapping[OpKind, Kernel] | None = None,
        executor: concurrent.futures.Executor | None = None,
        *,
        check_types: bool = False,
    ) -> None:
        super().__init__(kernels, executor, check_types=check_types, name="Simulation")
        self.envs = list(envs)

    @property
    def party_count(self) -> int:
        return len(self.envs)

    def execute_node(self, frame: EvalFrame, node: Node, args: list[Any]) -> Any:
        n = self.party_count
        if node.kind == OpKind.SEND:
            sender = node.attrs["sender"]
            zeros = rv.zeros_of_type(node.type)
            return self.checked(
                node, [args[0][p] if p == sender else zeros for p in range(n)]
            )
        if node.kind == OpKind.RECEIVE:
            sender, receiver = node.attrs["sender"], node.attrs["receiver"]
            zeros = rv.zeros_of_type(node.type)
            return self.checked(
                node, [args[0][sender] if p == receiver else zeros for p in range(n)]
            )
        if node.kind == OpKind.CALL:
            return self.checked(node, self.call_graph(frame, node, args))
        return [
            super(SimulationInterpreter, self).execute_node(
                replace(frame, env=self.envs[p]), node, [a[p] for a in args]
            )
            for p in range(n)
        ]

    def checked(self, node: Node, values: list[Any]) -> list[Any]:
        """Apply `check_types` to per-party values the base class never sees."""
        if self.check_types:
            for p, value in enumerate(values):
                if not rv.conforms(value, node.type):
                    raise EvaluationError(
                        f"{node.kind} produced a value that does not conform "
                        f"to {node.type}",
                        node_id=node.id,
                        party=p,
                    )
        return values

    def call_graph(self, frame: EvalFrame, node: Node, args: list[Any]) -> Any:
        callee = frame.context.get_graph(node.attrs["graph_id"])
        params = [n.id for n in callee.input_nodes()]
        sub = replace(frame, graph=callee, scope=(*frame.scope, node.id))
        outs = self.run_graph(sub, dict(zip(params, args, strict=True)))
        if len(outs) == 1:
            return outs[0]
        return [tuple(o[p] for o in outs) for p in range(self.party_count)]

    def evaluate_all(
        self, context: Context, graph: Graph, inputs: Bindings
    ) -> list[list[Any]]:
        """Per-party output lists: ``result[p][k]`` is party p's output k."""
        if not graph.finalized:
            raise GraphNotFinalized(f"graph {graph.id} must be finalized to evaluate")
        per_party = [self.bind_inputs(graph, inputs, env) for env in self.envs]
        bindings = {
            node.id: [b[node.id] for b in per_party] for node in graph.input_nodes()
        }
        outs = self.run_graph(EvalFrame(self, context, graph), bindings)
        return [[o[p] for o in outs] for p in range(self.party_count)]


def simulate(
    context: Context,
    graph: Graph,
    inputs: Bindings,
    *,
    party_count: int | None = None,
    randomness: RandomnessConfig | None = None,
    executor: concurrent.futures.Executor | None = None,
    check_types: bool = False,
) -> list[list[Any]]:
    """Evaluate compiled `graph` for all parties in one process.

    Args:
        context: Context owning the graph.
        graph: Compiled graph.
        inputs: Bindings for the graph's INPUT nodes; each party only takes
            the inputs it owns, the rest become zero placeholders.
        party_count: Defaults to the count the graph was compiled for.
        randomness: Seed and triple source used at evaluation time.
        executor: Enables parallel scheduling.
        check_types: Verify every party's values against node types.

    Returns:
        ``shares[p][k]``: party p's share of output k.
    """
    n = _party_count(context, graph, party_count)
    randomness = randomness or RandomnessConfig()
    envs = [PartyEnv(p, n, randomness) for p in range(n)]
    interp = SimulationInterpreter(envs, executor=executor, check_types=check_types)
    logger.debug(f"Simulating graph {graph.id} for {n} parties")
    return interp.evaluate_all(context, graph, inputs)


def simulate_and_reconstruct(
    context: Context,
    graph: Graph,
    inputs: Bindings,
    **kwargs: Any,
) -> list[Any]:
    """`simulate` followed by reconstruction of every output."""
    shares = simulate(context, graph, inputs, **kwargs)
    return reconstruct_outputs(shares, graph.output_types)


def run_party(
    context: Context,
    graph: Graph,
    party: int,
    inputs: Bindings,
    *,
    transport: Transport | PartyChannel,
    party_count: int | None = None,
    randomness: RandomnessConfig | None = None,
    executor: concurrent.futures.Executor | None = None,
    check_types: bool = False,
) -> list[Any]:
    """Evaluate compiled `graph` as `party`, exchanging messages over `transport`.

    Returns this party's output shares.
    """
    n = _party_count(context, graph, party_count)
    channel = transport if isinstance(transport, PartyChannel) else PartyChannel(transport, party)
    env = PartyEnv(party, n, randomness or RandomnessConfig(), channel)
    interp = Interpreter(executor=executor, check_types=check_types, name=f"party{party}")
    return interp.evaluate(context, graph, inputs, env)


def run_parties_in_threads(
    context: Context,
    graph: Graph,
    party_inputs: Sequence[Bindings],
    *,
    randomness: RandomnessConfig | None = None,
    timeout: float | None = None,
    party_count: int | None = None,
    check_types: bool = False,
) -> list[list[Any]]:
    """Run every party in its own thread over a fresh `LocalMesh`.

    Args:
        party_inputs: ``party_inputs[p]`` are party p's own bindings.
        randomness: Shared by all parties (the dealer must be common).
        timeout: Receive timeout of the mesh.

    Returns:
        ``shares[p][k]`` as for `simulate`.

    Raises:
        The first party failure. Other parties are woken by closing the mesh.
    """
    n = _party_count(context, graph, party_count)
    if len(party_inputs) != n:
        raise ValueError(f"expected inputs for {n} parties, got {len(party_inputs)}")
    randomness = randomness or RandomnessConfig()
    mesh = LocalMesh(n, timeout=timeout)

    def run(p: int) -> list[Any]:
        try:
            return run_party(
                context,
                graph,
                p,
                party_inputs[p],
                transport=mesh.channel(p),
                party_count=n,
                randomness=randomness,
                check_types=check_types,
            )
        except Exception:
            mesh.shutdown()
            raise

    errors: list[BaseException] = []
    results: list[list[Any]] = []
    with concurrent.futures.ThreadPoolExecutor(
        max_workers=n, thread_name_prefix="mpcflow-party"
    ) as pool:
        futures = [pool.submit(run, p) for p in range(n)]
        for fut in futures:
            try:
                results.append(fut.result())
            except MPCFlowError as e:
                errors.append(e)
    if errors:
        # Closing the mesh makes the healthy parties fail too; report the cause.
        root = [e for e in errors if not isinstance(e, CommunicationFailure)]
        raise (root or errors)[0]
    return results


__all__ = [
    "SimulationInterpreter",
    "run_parties_in_threads",
    "run_party",
    "simulate",
    "simulate_and_reconstruct",
]
