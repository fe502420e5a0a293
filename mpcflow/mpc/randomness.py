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

"""Randomness sources for compiled protocols.

Two kinds of randomness are consumed at evaluation time:

- Input masks. Each party owns a 128-bit PRF key (`PRF_KEY` node); `MASK`
  nodes expand it with AES-CTR under a nonce derived from the node's scope
  path, so every invocation of a subgraph gets fresh masks.
- Beaver triples. `TRIPLE` nodes ask a `TripleSource` for this party's shares
  of (a, b, c = a op b). `TrustedDealer` derives all parties' shares from a
  single dealer key, so parties running in separate threads still agree.

Nothing is drawn at compile time; the compiler only checks that a triple
source is configured and has enough capacity.
"""

from __future__ import annotations

import abc
import hashlib
import logging
import os
import struct
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import numpy as np
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from mpcflow.edsl.ops import triple_product_type
from mpcflow.edsl.typing import BaseType, leaf_types, scalar_of, shape_of
from mpcflow.runtime import value as rv

logger = logging.getLogger(__name__)

KEY_BYTES = 16

Seed = int | bytes | str


def seed_bytes(seed: Seed) -> bytes:
    if isinstance(seed, bytes):
        return seed
    return str(seed).encode("utf-8")


def derive_bytes(*parts: Any, length: int = KEY_BYTES) -> bytes:
    """Domain-separated SHA-256 derivation over ints, strs and bytes."""
    h = hashlib.sha256(b"mpcflow")
    for part in parts:
        if isinstance(part, bytes):
            chunk = part
        elif isinstance(part, int):
            chunk = struct.pack("<q", part)
        else:
            chunk = str(part).encode("utf-8")
        h.update(struct.pack("<I", len(chunk)))
        h.update(chunk)
    return h.digest()[:length]


def scope_tag(scope: Sequence[int], node_id: int, purpose: str) -> bytes:
    """16-byte tag naming one node invocation (call path + node id)."""
    return derive_bytes(purpose, len(scope), *scope, node_id)


class KeyStream:
    """AES-CTR keystream used as a PRF expander."""

    def __init__(self, key: bytes, nonce: bytes):
        if len(nonce) != 16:
            raise ValueError(f"nonce must be 16 bytes, got {len(nonce)}")
        self._enc = Cipher(algorithms.AES(key), modes.CTR(nonce)).encryptor()

    def read(self, n: int) -> bytes:
        return self._enc.update(b"\x00" * n)

    def uniform(self, t: BaseType) -> Any:
        """A uniformly random value of type `t` (any composite)."""

        def draw(leaf: BaseType) -> np.ndarray:
            shape = shape_of(leaf)
            count = int(np.prod(shape, dtype=np.int64)) if shape else 1
            words = np.frombuffer(self.read(8 * count), dtype="<u8").astype(rv.DTYPE)
            return rv.wrap(words.reshape(shape), scalar_of(leaf))

        return rv.map_leaves(draw, t)


def key_to_words(key: bytes) -> np.ndarray:
    return np.frombuffer(key, dtype="<u8").astype(rv.DTYPE)


def words_to_key(words: np.ndarray) -> bytes:
    return np.asarray(words, dtype="<u8").tobytes()


def expand_mask(key_words: np.ndarray, tag: bytes, t: BaseType) -> Any:
    """Deterministic pseudo-random value of type `t` from a PRF key."""
    return KeyStream(words_to_key(key_words), tag).uniform(t)


# ==============================================================================
# --- Triple sources
# ==============================================================================


class TripleSource(abc.ABC):
    """Supplier of Beaver triples.

    `capacity` bounds how many triples one evaluation of a compiled graph
    may consume. A callee counts once per CALL site that runs it. None means
    unbounded.
    """

    capacity: int | None = None

    @abc.abstractmethod
    def triple(
        self,
        tag: bytes,
        kind: str,
        a_type: BaseType,
        b_type: BaseType,
        party: int,
    ) -> tuple[Any, Any, Any]:
        """Return `party`'s shares of (a, b, c) for the triple named `tag`."""


class TrustedDealer(TripleSource):
    """Triple source that derives every party's shares from one dealer key.

    Each triple is a pure function of (dealer key, tag), so any party asking
    for the same tag gets a consistent slice without coordination.

    Args:
        party_count: Number of parties sharing the triples.
        seed: Dealer seed; random (os.urandom) when None.
        capacity: Maximum number of triples one evaluation consumes, callees
            counted per call site. None for no bound.
    """

    def __init__(
        self,
        party_count: int,
        seed: Seed | None = None,
        capacity: int | None = None,
    ):
        if party_count < 2:
            raise ValueError(f"party_count must be >= 2, got {party_count}")
        self.party_count = party_count
        self.capacity = capacity
        if seed is None:
            self._key = os.urandom(KEY_BYTES)
        else:
            self._key = derive_bytes("dealer", seed_bytes(seed))

    def __repr__(self) -> str:
        return f"TrustedDealer(party_count={self.party_count}, capacity={self.capacity})"

    def triple(
        self,
        tag: bytes,
        kind: str,
        a_type: BaseType,
        b_type: BaseType,
        party: int,
    ) -> tuple[Any, Any, Any]:
        if not 0 <= party < self.party_count:
            raise ValueError(f"party {party} out of range for {self.party_count} parties")
        c_type = triple_product_type(kind, a_type, b_type)
        stream = KeyStream(self._key, derive_bytes("triple", tag))
        a = stream.uniform(a_type)
        b = stream.uniform(b_type)
        c = _product(kind, a, b, c_type)
        return (
            _slice_share(stream, a, a_type, party, self.party_count),
            _slice_share(stream, b, b_type, party, self.party_count),
            _slice_share(stream, c, c_type, party, self.party_count),
        )


def _product(kind: str, a: np.ndarray, b: np.ndarray, c_type: BaseType) -> np.ndarray:
    scalar = scalar_of(c_type)
    if kind == "matmul":
        return rv.ring_matmul(a, b, scalar)
    # "multiply" and "and": in Z2 multiplication is AND.
    return rv.ring_mul(a, b, scalar)


def _slice_share(
    stream: KeyStream, v: np.ndarray, t: BaseType, party: int, party_count: int
) -> np.ndarray:
    # Every caller draws all N-1 random shares so the stream stays aligned.
    (leaf,) = leaf_types(t)
    scalar = scalar_of(leaf)
    randoms = [stream.uniform(leaf) for _ in range(party_count - 1)]
    if party < party_count - 1:
        return randoms[party]
    last = v
    for r in randoms:
        last = rv.ring_sub(last, r, scalar)
    return last


# ==============================================================================
# --- Configuration
# ==============================================================================


@dataclass(frozen=True)
class RandomnessConfig:
    """Randomness wiring passed to both compile and evaluate.

    Attributes:
        seed: With a seed, party PRF keys are derived deterministically and
            simulation is reproducible. Without, keys come from os.urandom.
        triple_source: Supplier of Beaver triples; required by any graph
            that multiplies two private values.
    """

    seed: Seed | None = None
    triple_source: TripleSource | None = None

    def prf_key(self, party: int) -> bytes:
        if self.seed is None:
            return os.urandom(KEY_BYTES)
        return derive_bytes("prf", seed_bytes(self.seed), party)

    @classmethod
    def with_dealer(
        cls,
        party_count: int,
        seed: Seed | None = None,
        capacity: int | None = None,
    ) -> RandomnessConfig:
        """Config with a `TrustedDealer` seeded from the same seed."""
        logger.debug(f"Creating trusted dealer for {party_count} parties")
        return cls(seed=seed, triple_source=TrustedDealer(party_count, seed, capacity))


__all__ = [
    "KeyStream",
    "RandomnessConfig",
    "TripleSource",
    "TrustedDealer",
    "derive_bytes",
    "expand_mask",
    "key_to_words",
    "scope_tag",
    "words_to_key",
]
