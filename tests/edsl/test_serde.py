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

"""Tests for the tagged JSON serialization layer."""

from typing import Any, ClassVar

import numpy as np
import pytest

from mpcflow.edsl import serde


@serde.register_class
class _Point:
    _serde_kind: ClassVar[str] = "tests.Point"

    def __init__(self, x: int, y: int):
        self.x, self.y = x, y

    def to_json(self) -> dict[str, Any]:
        return {"x": self.x, "y": self.y}

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "_Point":
        return cls(data["x"], data["y"])


class TestBuiltins:
    """Builtin values keep their Python type."""

    @pytest.mark.parametrize(
        "value",
        [None, True, 0, -5, 2**70, 1.5, "hi", b"\x00\xff", [1, "a"], (1, (2, 3))],
    )
    def test_roundtrip(self, value):
        """from_json(to_json(v)) == v."""
        assert serde.from_json(serde.to_json(value)) == value

    def test_dicts(self):
        """String keys use _dict, other keys _dict_pairs."""
        assert serde.to_json({"a": 1})["_kind"] == "_dict"
        assert serde.to_json({1: "a"})["_kind"] == "_dict_pairs"
        assert serde.from_json(serde.to_json({(1, 2): "x"})) == {(1, 2): "x"}

    def test_ndarray_keeps_dtype_and_shape(self):
        """Arrays round-trip bit-exactly."""
        arr = np.array([[1, 2**64 - 1], [3, 4]], dtype=np.uint64)
        back = serde.from_json(serde.to_json(arr))
        assert back.dtype == np.uint64
        assert np.array_equal(back, arr)

    def test_zero_dim_array_keeps_shape(self):
        """Scalars stay 0-d through the wire format."""
        back = serde.loads(serde.dumps(np.array(5, dtype=np.uint64)))
        assert back.shape == ()
        assert back.dtype == np.uint64
        assert int(back) == 5

    def test_non_contiguous_array(self):
        """Transposed views encode in logical order."""
        arr = np.arange(6, dtype=np.uint64).reshape(2, 3).T
        back = serde.from_json(serde.to_json(arr))
        assert back.shape == (3, 2)
        assert np.array_equal(back, arr)

    def test_unsupported_object(self):
        """Arbitrary objects are rejected."""
        with pytest.raises(TypeError):
            serde.to_json(object())

    def test_unknown_kind(self):
        """Unknown tags fail on decode."""
        with pytest.raises(ValueError):
            serde.from_json({"_kind": "nope"})
        with pytest.raises(ValueError):
            serde.from_json({"x": 1})


class TestRegistry:
    """Class registration."""

    def test_registered_class(self):
        """Registered classes are dispatched on _kind."""
        p = serde.from_json(serde.to_json(_Point(1, 2)))
        assert isinstance(p, _Point)
        assert (p.x, p.y) == (1, 2)
        assert serde.get_registered_class("tests.Point") is _Point
        assert "tests.Point" in serde.list_registered_kinds()

    def test_duplicate_kind(self):
        """A kind can only be registered once."""
        with pytest.raises(ValueError):

            @serde.register_class
            class _Other:
                _serde_kind: ClassVar[str] = "tests.Point"

                def to_json(self):
                    return {}

                @classmethod
                def from_json(cls, data):
                    return cls()


class TestWireFormat:
    """gzip JSON bytes."""

    def test_dumps_is_stable(self):
        """Identical objects serialize to identical bytes."""
        obj = {"b": [1, 2], "a": np.arange(3, dtype=np.uint64)}
        assert serde.dumps(obj) == serde.dumps(obj)

    def test_loads(self):
        """loads inverts dumps, compressed or not."""
        obj = {"tag": "ab", "value": (np.uint64(3), [1])}
        back = serde.loads(serde.dumps(obj))
        assert back["tag"] == "ab"
        assert back["value"] == (3, [1])
        assert serde.loads(serde.dumps(obj, compress=False), compressed=False) == back
        assert serde.loads_b64(serde.dumps_b64(obj)) == back
