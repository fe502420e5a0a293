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

"""Tests for the in-process transport and tagged party channels."""

import threading

import numpy as np
import pytest

from mpcflow.errors import CommunicationFailure
from mpcflow.runtime.transport import LocalMesh, PartyChannel, QueueTransport


class TestQueueTransport:
    """FIFO byte links between party pairs."""

    def test_fifo_per_link(self):
        """Payloads arrive in order on each ordered pair."""
        t = QueueTransport(3)
        t.send(0, 2, b"a")
        t.send(0, 2, b"b")
        t.send(1, 2, b"c")
        assert t.receive(1, 2) == b"c"
        assert t.receive(0, 2) == b"a"
        assert t.receive(0, 2) == b"b"

    def test_timeout(self):
        """A receive with nothing pending fails after the timeout."""
        t = QueueTransport(2, timeout=0.05)
        with pytest.raises(CommunicationFailure) as exc:
            t.receive(0, 1)
        assert exc.value.party == 1

    def test_unknown_link(self):
        """Self links and out-of-range parties do not exist."""
        t = QueueTransport(2)
        with pytest.raises(CommunicationFailure):
            t.send(0, 0, b"x")
        with pytest.raises(CommunicationFailure):
            t.send(0, 5, b"x")

    def test_payload_must_be_bytes(self):
        """Only byte payloads are accepted."""
        with pytest.raises(TypeError):
            QueueTransport(2).send(0, 1, "text")

    def test_close_wakes_receivers(self):
        """Closing the transport fails blocked and future calls."""
        t = QueueTransport(2)
        errors = []

        def wait():
            try:
                t.receive(0, 1)
            except CommunicationFailure as e:
                errors.append(e)

        th = threading.Thread(target=wait)
        th.start()
        t.close()
        th.join(timeout=5)
        assert len(errors) == 1
        with pytest.raises(CommunicationFailure):
            t.send(0, 1, b"x")


class TestPartyChannel:
    """Tagged messages over a shared transport."""

    def test_values_roundtrip(self):
        """Arrays and tuples survive serialization."""
        mesh = LocalMesh(2)
        value = (np.arange(3, dtype=np.uint64), np.uint64(7))
        mesh.channel(0).send(1, b"\x01", value)
        got = mesh.channel(1).receive(0, b"\x01")
        np.testing.assert_array_equal(got[0], value[0])
        assert int(got[1]) == 7

    def test_out_of_order_tags(self):
        """Messages with other tags are parked until asked for."""
        mesh = LocalMesh(2)
        sender, receiver = mesh.channel(0), mesh.channel(1)
        for i in range(3):
            sender.send(1, bytes([i]), i)
        assert receiver.receive(0, b"\x02") == 2
        assert receiver.receive(0, b"\x00") == 0
        assert receiver.receive(0, b"\x01") == 1

    def test_concurrent_receivers(self):
        """Several threads may wait on the same sender."""
        mesh = LocalMesh(2, timeout=5)
        receiver = mesh.channel(1)
        results = {}

        def wait(i):
            results[i] = receiver.receive(0, bytes([i]))

        threads = [threading.Thread(target=wait, args=(i,)) for i in range(4)]
        for th in threads:
            th.start()
        for i in reversed(range(4)):
            mesh.channel(0).send(1, bytes([i]), i * 10)
        for th in threads:
            th.join(timeout=10)
        assert results == {0: 0, 1: 10, 2: 20, 3: 30}

    def test_duplicate_tag(self):
        """Two parked messages with one tag are a protocol error."""
        mesh = LocalMesh(2)
        for _ in range(2):
            mesh.channel(0).send(1, b"\x07", 1)
        mesh.channel(0).send(1, b"\x08", 2)
        with pytest.raises(CommunicationFailure):
            mesh.channel(1).receive(0, b"\x08", node_id=4)

    def test_failure_carries_node_and_party(self):
        """Transport failures are tagged with the receiving node."""
        channel = PartyChannel(QueueTransport(2, timeout=0.05), 1)
        with pytest.raises(CommunicationFailure) as exc:
            channel.receive(0, b"\x00", node_id=9)
        assert exc.value.node_id == 9
        assert exc.value.party == 1
