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

"""Graph evaluator.

The interpreter walks a finalized graph in stored (topological) order and
applies the kernel registered for each node kind. The same interpreter runs
plaintext graphs (``env=None``) and compiled graphs (``env`` = one party's
`PartyEnv`); multi-party simulation lives in `mpcflow.runtime.simulation`.

With an executor the interpreter switches to dependency-counting scheduling:
a node is submitted once all of its inputs are in the value cache.
"""

from __future__ import annotations

import collections
import concurrent.futures
import logging
import os
import queue
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from mpcflow.edsl.graph import Context, Graph, Node
from mpcflow.edsl.ops import OpKind
from mpcflow.errors import (
    CacheSlotError,
    EvaluationError,
    GraphNotFinalized,
    MissingInputBinding,
    MPCFlowError,
)
from mpcflow.mpc.randomness import RandomnessConfig
from mpcflow.runtime import value as rv
from mpcflow.runtime.kernels import Kernel, default_kernels

if TYPE_CHECKING:
    from mpcflow.runtime.transport import PartyChannel

logger = logging.getLogger(__name__)

MAX_WORKERS_ENV = "MPCFLOW_MAX_WORKERS"

# Kinds that may block on another party or recurse into a nested run. In
# parallel mode they get their own thread so pool workers never wait on them.
_DETACHED_KINDS = frozenset({OpKind.CALL, OpKind.RECEIVE})


def make_executor(max_workers: int | None = None) -> concurrent.futures.Executor:
    """Thread pool for parallel evaluation.

    The worker count defaults to ``$MPCFLOW_MAX_WORKERS`` or, if unset, to
    the number of CPUs.
    """
    if max_workers is None:
        env_value = os.environ.get(MAX_WORKERS_ENV)
        max_workers = int(env_value) if env_value else (os.cpu_count() or 4)
    return concurrent.futures.ThreadPoolExecutor(
        max_workers=max_workers, thread_name_prefix="mpcflow"
    )


@dataclass
class PartyEnv:
    """Identity and collaborators of one party evaluating a compiled graph.

    Attributes:
        party: This party's index.
        party_count: Number of parties.
        randomness: PRF seed and triple source.
        channel: Message channel for delegated execution; None in simulation.
    """

    party: int
    party_count: int
    randomness: RandomnessConfig = field(default_factory=RandomnessConfig)
    channel: PartyChannel | None = None
    _prf_key: bytes | None = field(default=None, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        if not 0 <= self.party < self.party_count:
            raise ValueError(f"party {self.party} out of range for {self.party_count}")

    @property
    def prf_key(self) -> bytes:
        with self._lock:
            if self._prf_key is None:
                self._prf_key = self.randomness.prf_key(self.party)
            return self._prf_key

    def send(self, receiver: int, tag: bytes, payload: Any, node_id: int) -> None:
        if self.channel is None:
            raise EvaluationError(
                "no transport configured for delegated send",
                node_id=node_id,
                party=self.party,
            )
        self.channel.send(receiver, tag, payload, node_id=node_id)

    def receive(self, sender: int, tag: bytes, node_id: int) -> Any:
        if self.channel is None:
            raise EvaluationError(
                "no transport configured for delegated receive",
                node_id=node_id,
                party=self.party,
            )
        return self.channel.receive(sender, tag, node_id=node_id)


@dataclass(frozen=True)
class EvalFrame:
    """Everything a kernel may consult while evaluating one node."""

    interpreter: Interpreter
    context: Context
    graph: Graph
    env: PartyEnv | None = None
    scope: tuple[int, ...] = ()

    @property
    def party(self) -> int | None:
        return None if self.env is None else self.env.party


class ValueCache:
    """Per-run node values with write-once slots.

    Each slot has a single producer (its node); a second write is a bug and
    raises `CacheSlotError`. Reads are shared and happen after the write.
    """

    def __init__(self) -> None:
        self._slots: dict[int, Any] = {}
        self._lock = threading.Lock()

    def put(self, node_id: int, value: Any, party: int | None = None) -> None:
        with self._lock:
            if node_id in self._slots:
                raise CacheSlotError(
                    "value cache slot written twice", node_id=node_id, party=party
                )
            self._slots[node_id] = rv.freeze(value)

    def get(self, node_id: int) -> Any:
        with self._lock:
            return self._slots[node_id]

    def __contains__(self, node_id: object) -> bool:
        with self._lock:
            return node_id in self._slots

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)

    def clear(self) -> None:
        with self._lock:
            self._slots.clear()


class Interpreter:
    """Evaluate finalized graphs.

    Example:
        >>> interp = Interpreter()
        >>> interp.evaluate(ctx, graph, [17, 42])
        [array(1, dtype=uint64)]

    Args:
        kernels: Kernel table; defaults to every registered kernel.
        executor: If given, independent nodes are evaluated concurrently.
        check_types: Verify every produced value against its node's type.
        name: Used in log messages.
    """

    def __init__(
        self,
        kernels: Mapping[OpKind, Kernel] | None = None,
        executor: concurrent.futures.Executor | None = None,
        *,
        check_types: bool = False,
        name: str = "Interpreter",
    ) -> None:
        self.kernels: dict[OpKind, Kernel] = (
            dict(kernels) if kernels is not None else default_kernels()
        )
        self.executor = executor
        self.check_types = check_types
        self.name = name

    # =========================================================================
    # Public API
    # =========================================================================

    def evaluate(
        self,
        context: Context,
        graph: Graph,
        inputs: Sequence[Any] | Mapping[int, Any],
        env: PartyEnv | None = None,
    ) -> list[Any]:
        """Evaluate `graph` and return the values of its outputs.

        Args:
            context: Context owning `graph` and any graph it calls.
            graph: Finalized graph, plaintext or compiled.
            inputs: One binding per INPUT node, positionally or by node id.
                For a compiled graph a party binds only the inputs it owns;
                other owners' inputs may be omitted (or None).
            env: This party's environment for compiled graphs.

        Raises:
            MissingInputBinding: A required input is not bound.
            EvaluationError: A node failed; carries node id and party.
        """
        if not graph.finalized:
            raise GraphNotFinalized(f"graph {graph.id} must be finalized to evaluate")
        party = None if env is None else env.party
        logger.debug(
            f"[{self.name}] evaluating graph {graph.id} ({len(graph)} nodes, "
            f"party={party}, parallel={self.executor is not None})"
        )
        bindings = self.bind_inputs(graph, inputs, env)
        frame = EvalFrame(self, context, graph, env)
        try:
            return self.run_graph(frame, bindings)
        except MPCFlowError as e:
            logger.debug(f"[{self.name}] graph {graph.id} failed: {e}")
            raise

    def bind_inputs(
        self,
        graph: Graph,
        inputs: Sequence[Any] | Mapping[int, Any],
        env: PartyEnv | None,
    ) -> dict[int, Any]:
        input_nodes = graph.input_nodes()
        if isinstance(inputs, Mapping):
            raw = {n.id: inputs.get(n.id) for n in input_nodes}
        else:
            given = list(inputs)
            if len(given) > len(input_nodes):
                raise MissingInputBinding(
                    f"graph {graph.id} has {len(input_nodes)} inputs, "
                    f"got {len(given)} bindings"
                )
            given += [None] * (len(input_nodes) - len(given))
            raw = {n.id: v for n, v in zip(input_nodes, given, strict=True)}

        bindings: dict[int, Any] = {}
        party = None if env is None else env.party
        for node in input_nodes:
            if not owns_input(node, party):
                # Zero input: a structurally valid placeholder for another
                # owner's private value.
                bindings[node.id] = rv.zeros_of_type(node.type)
                continue
            if raw[node.id] is None:
                raise MissingInputBinding(
                    f"no binding for input of type {node.type}",
                    node_id=node.id,
                    party=party,
                )
            try:
                bindings[node.id] = rv.from_python(raw[node.id], node.type)
            except (TypeError, ValueError) as e:
                raise EvaluationError(
                    f"bad binding for input of type {node.type}: {e}",
                    node_id=node.id,
                    party=party,
                ) from e
        return bindings

    # =========================================================================
    # Execution
    # =========================================================================

    def run_graph(self, frame: EvalFrame, bindings: Mapping[int, Any]) -> list[Any]:
        if self.executor is not None:
            return self._run_parallel(frame, bindings)
        return self._run_sequential(frame, bindings)

    def call_graph(self, frame: EvalFrame, node: Node, args: list[Any]) -> Any:
        """Evaluate the callee of CALL `node` with a fresh cache."""
        callee = frame.context.get_graph(node.attrs["graph_id"])
        params = [n.id for n in callee.input_nodes()]
        sub = EvalFrame(
            self, frame.context, callee, frame.env, (*frame.scope, node.id)
        )
        outs = self.run_graph(sub, dict(zip(params, args, strict=True)))
        return outs[0] if len(outs) == 1 else tuple(outs)

    def execute_node(self, frame: EvalFrame, node: Node, args: list[Any]) -> Any:
        """Apply the kernel of `node` and wrap foreign failures."""
        kernel = self.kernels.get(node.kind)
        if kernel is None:
            raise EvaluationError(
                f"no kernel registered for {node.kind}",
                node_id=node.id,
                party=frame.party,
            )
        try:
            value = kernel(frame, node, *args)
        except MPCFlowError:
            raise
        except Exception as e:
            raise EvaluationError(
                f"{node.kind} failed: {e}", node_id=node.id, party=frame.party
            ) from e
        if self.check_types and not rv.conforms(value, node.type):
            raise EvaluationError(
                f"{node.kind} produced a value that does not conform to {node.type}",
                node_id=node.id,
                party=frame.party,
            )
        return value

    def _input_value(self, frame: EvalFrame, node: Node, bindings: Mapping[int, Any]) -> Any:
        if node.id not in bindings:
            raise MissingInputBinding(
                "input not bound", node_id=node.id, party=frame.party
            )
        return bindings[node.id]

    def _run_sequential(self, frame: EvalFrame, bindings: Mapping[int, Any]) -> list[Any]:
        graph = frame.graph
        cache = ValueCache()
        try:
            for node in graph.nodes:
                if node.kind == OpKind.INPUT:
                    value = self._input_value(frame, node, bindings)
                else:
                    args = [cache.get(i) for i in node.inputs]
                    value = self.execute_node(frame, node, args)
                cache.put(node.id, value, frame.party)
            return [cache.get(i) for i in graph.outputs]
        finally:
            cache.clear()

    def _run_parallel(self, frame: EvalFrame, bindings: Mapping[int, Any]) -> list[Any]:
        """Dependency-counting scheduler over the executor."""
        graph = frame.graph
        executor = self.executor
        assert executor is not None
        cache = ValueCache()

        # 1. Inputs are resolved up front
        for node in graph.nodes:
            if node.kind == OpKind.INPUT:
                cache.put(node.id, self._input_value(frame, node, bindings), frame.party)

        # 2. Build dependency counts over distinct operands
        pending: dict[int, int] = {}
        consumers: dict[int, list[int]] = collections.defaultdict(list)
        for node in graph.nodes:
            if node.kind == OpKind.INPUT:
                continue
            deps = {i for i in node.inputs if i not in cache}
            for i in deps:
                consumers[i].append(node.id)
            pending[node.id] = len(deps)

        lock = threading.Lock()
        ready_queue: queue.Queue[Any] = queue.Queue()
        remaining = len(pending)
        error_occurred = False

        def on_done(node: Node, value: Any, error: BaseException | None = None) -> None:
            nonlocal remaining, error_occurred
            with lock:
                if error_occurred:
                    return
                if error is None:
                    try:
                        cache.put(node.id, value, frame.party)
                    except CacheSlotError as e:
                        error = e
                if error is not None:
                    error_occurred = True
                    ready_queue.put(error)
                    return
                for consumer in consumers.get(node.id, ()):
                    pending[consumer] -= 1
                    if pending[consumer] == 0:
                        ready_queue.put(consumer)
                remaining -= 1
                if remaining == 0:
                    ready_queue.put(None)

        def execute(node_id: int) -> None:
            node = graph.nodes[node_id]
            args = [cache.get(i) for i in node.inputs]

            def task() -> None:
                try:
                    value = self.execute_node(frame, node, args)
                except Exception as e:
                    on_done(node, None, e)
                else:
                    on_done(node, value)

            if node.kind in _DETACHED_KINDS:
                threading.Thread(
                    target=task, name=f"mpcflow-node-{node.id}", daemon=True
                ).start()
            else:
                executor.submit(task)

        for node_id, count in pending.items():
            if count == 0:
                ready_queue.put(node_id)
        if remaining == 0:
            ready_queue.put(None)

        try:
            while True:
                item = ready_queue.get()
                if item is None:
                    break
                if isinstance(item, BaseException):
                    raise item
                execute(item)
            return [cache.get(i) for i in graph.outputs]
        finally:
            cache.clear()


def owns_input(node: Node, party: int | None) -> bool:
    """Whether `party` must bind INPUT `node` itself.

    Plaintext runs (party None) bind everything. In compiled graphs public
    inputs and pre-shared inputs are bound by every party; private inputs
    only by their owner (party 0 if the owner is unspecified).
    """
    if party is None:
        return True
    if node.attrs.get("public") or node.attrs.get("shared"):
        return True
    owner = node.attrs.get("party")
    return (0 if owner is None else owner) == party


__all__ = [
    "MAX_WORKERS_ENV",
    "EvalFrame",
    "Interpreter",
    "PartyEnv",
    "ValueCache",
    "make_executor",
    "owns_input",
]
