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

"""Transport collaborator for delegated execution.

A `Transport` moves opaque byte payloads between parties. The evaluator never
talks to it directly: each party wraps it in a `PartyChannel`, which
serializes values with `mpcflow.edsl.serde`, stamps them with a channel tag
(derived from the call scope and SEND node id) and parks out-of-order
messages in a mailbox until the matching RECEIVE asks for them.

`QueueTransport` / `LocalMesh` are the in-process implementation used by
`run_parties_in_threads` and the tests.
"""

from __future__ import annotations

import abc
import logging
import queue
import threading
from typing import Any

from mpcflow.edsl import serde
from mpcflow.errors import CommunicationFailure

logger = logging.getLogger(__name__)


class Transport(abc.ABC):
    """Point-to-point byte transport between parties."""

    @abc.abstractmethod
    def send(self, party_from: int, party_to: int, payload: bytes) -> None:
        """Deliver `payload` from `party_from` to `party_to`."""

    @abc.abstractmethod
    def receive(self, party_from: int, party_to: int) -> bytes:
        """Block until the next payload from `party_from` to `party_to`."""


_CLOSED = object()


class QueueTransport(Transport):
    """In-memory transport with one FIFO queue per ordered party pair.

    Args:
        world_size: Number of parties.
        timeout: Seconds a receive may wait; None waits forever.
    """

    def __init__(self, world_size: int, *, timeout: float | None = None):
        self.world_size = world_size
        self.timeout = timeout
        self._queues: dict[tuple[int, int], queue.Queue[Any]] = {
            (i, j): queue.Queue()
            for i in range(world_size)
            for j in range(world_size)
            if i != j
        }
        self._closed = False

    def _queue(self, party_from: int, party_to: int) -> queue.Queue[Any]:
        try:
            return self._queues[(party_from, party_to)]
        except KeyError:
            raise CommunicationFailure(
                f"no link from party {party_from} to party {party_to}",
                party=party_to,
            ) from None

    def send(self, party_from: int, party_to: int, payload: bytes) -> None:
        if self._closed:
            raise CommunicationFailure("transport is closed", party=party_from)
        if not isinstance(payload, (bytes, bytearray)):
            raise TypeError(f"payload must be bytes, got {type(payload).__name__}")
        self._queue(party_from, party_to).put(bytes(payload))

    def receive(self, party_from: int, party_to: int) -> bytes:
        q = self._queue(party_from, party_to)
        try:
            item = q.get(timeout=self.timeout)
        except queue.Empty:
            raise CommunicationFailure(
                f"timed out after {self.timeout}s waiting for party {party_from}",
                party=party_to,
            ) from None
        if item is _CLOSED:
            q.put(_CLOSED)
            raise CommunicationFailure("transport is closed", party=party_to)
        return item

    def close(self) -> None:
        """Wake every blocked receiver with a failure."""
        self._closed = True
        for q in self._queues.values():
            q.put(_CLOSED)


class PartyChannel:
    """One party's tagged view of a transport.

    Messages are serde-encoded ``{"tag", "value"}`` records. A receive for a
    tag that has not arrived yet reads from the transport, parking messages
    with other tags, until its own shows up. Only one thread reads a given
    sender's link at a time; others wait for it to park their message.
    """

    def __init__(self, transport: Transport, party: int):
        self.transport = transport
        self.party = party
        self._mailbox: dict[tuple[int, str], Any] = {}
        self._reading: set[int] = set()
        self._cond = threading.Condition()

    def _fail(self, e: Exception, node_id: int | None) -> CommunicationFailure:
        reason = getattr(e, "reason", None) or str(e) or type(e).__name__
        return CommunicationFailure(reason, node_id=node_id, party=self.party)

    def send(self, receiver: int, tag: bytes, value: Any, *, node_id: int | None = None) -> None:
        payload = serde.dumps({"tag": tag.hex(), "value": value})
        logger.debug(
            f"party {self.party} -> {receiver}: tag={tag.hex()[:8]} ({len(payload)} bytes)"
        )
        try:
            self.transport.send(self.party, receiver, payload)
        except Exception as e:
            raise self._fail(e, node_id) from e

    def receive(self, sender: int, tag: bytes, *, node_id: int | None = None) -> Any:
        key = (sender, tag.hex())
        with self._cond:
            while True:
                if key in self._mailbox:
                    return self._mailbox.pop(key)
                if sender not in self._reading:
                    self._reading.add(sender)
                    break
                self._cond.wait()
        try:
            while True:
                try:
                    message = serde.loads(self.transport.receive(sender, self.party))
                except Exception as e:
                    raise self._fail(e, node_id) from e
                if message["tag"] == key[1]:
                    return message["value"]
                with self._cond:
                    parked = (sender, message["tag"])
                    if parked in self._mailbox:
                        raise CommunicationFailure(
                            f"duplicate message on channel {parked[1][:8]} from party {sender}",
                            node_id=node_id,
                            party=self.party,
                        )
                    self._mailbox[parked] = message["value"]
                    self._cond.notify_all()
        finally:
            with self._cond:
                self._reading.discard(sender)
                self._cond.notify_all()


class LocalMesh:
    """In-process mesh: one shared `QueueTransport` and a channel per party."""

    def __init__(self, world_size: int, *, timeout: float | None = None):
        self.world_size = world_size
        self.transport = QueueTransport(world_size, timeout=timeout)
        self.channels = [PartyChannel(self.transport, i) for i in range(world_size)]

    def channel(self, party: int) -> PartyChannel:
        return self.channels[party]

    def shutdown(self) -> None:
        self.transport.close()


__all__ = ["LocalMesh", "PartyChannel", "QueueTransport", "Transport"]
