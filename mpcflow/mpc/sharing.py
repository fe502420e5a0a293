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

"""Additive secret sharing of runtime values.

A numeric value of bitwidth b is split into N shares summing to it modulo
2^b (XOR sharing for BIT). Composite values are shared leaf by leaf.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import numpy as np

from mpcflow.edsl.typing import BaseType, scalar_of, shape_of
from mpcflow.runtime import value as rv


def _random_leaf(rng: np.random.Generator, t: BaseType) -> np.ndarray:
    words = rng.integers(
        0, np.iinfo(np.uint64).max, size=shape_of(t), dtype=np.uint64, endpoint=True
    )
    return rv.wrap(words, scalar_of(t))


def share_value(
    value: Any,
    t: BaseType,
    parties: int,
    rng: np.random.Generator | None = None,
) -> list[Any]:
    """Split `value` of type `t` into `parties` additive shares.

    Args:
        value: Runtime value (see `mpcflow.runtime.value.from_python`).
        t: Type of the value.
        parties: Number of shares, at least 2.
        rng: Source of the random shares; a fresh OS-seeded generator if None.
    """
    if parties < 2:
        raise ValueError(f"need at least 2 parties, got {parties}")
    rng = rng if rng is not None else np.random.default_rng()

    def split(leaf: BaseType, v: np.ndarray) -> list[np.ndarray]:
        scalar = scalar_of(leaf)
        shares = [_random_leaf(rng, leaf) for _ in range(parties - 1)]
        last = v
        for s in shares:
            last = rv.ring_sub(last, s, scalar)
        return [*shares, last]

    per_leaf = rv.map_leaves(split, t, value)
    return [_pick(per_leaf, t, i) for i in range(parties)]


def _pick(split_value: Any, t: BaseType, party: int) -> Any:
    # map_leaves left a list of shares at each leaf; select one party's.
    return rv.map_leaves(lambda _leaf, shares: shares[party], t, split_value)


def reconstruct(shares: Sequence[Any], t: BaseType) -> Any:
    """Sum shares modulo 2^bitwidth, leaf by leaf."""
    if not shares:
        raise ValueError("cannot reconstruct from zero shares")

    def combine(leaf: BaseType, *parts: np.ndarray) -> np.ndarray:
        scalar = scalar_of(leaf)
        acc = rv.wrap(parts[0], scalar)
        for p in parts[1:]:
            acc = rv.ring_add(acc, p, scalar)
        return acc

    return rv.map_leaves(combine, t, *shares)


def reconstruct_outputs(
    party_outputs: Sequence[Sequence[Any]], types: Sequence[BaseType]
) -> list[Any]:
    """Reconstruct every output of a compiled graph.

    Args:
        party_outputs: `party_outputs[p][k]` is party p's share of output k.
        types: Output types.
    """
    return [
        reconstruct([outs[k] for outs in party_outputs], t) for k, t in enumerate(types)
    ]


__all__ = ["reconstruct", "reconstruct_outputs", "share_value"]
