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

"""
JSON-based serialization for mpcflow types, graphs, contexts and runtime values.

Every persistent class registers itself with `@register_class` and supplies its
own `to_json`/`from_json`. The encoding is a tagged union: each encoded object
carries a `_kind` field that selects the class (or builtin) on decode.

Usage:
    from mpcflow.edsl import serde

    @serde.register_class
    class MyType:
        _serde_kind = "mymodule.MyType"

        def to_json(self) -> dict:
            return {"field": self.field}

        @classmethod
        def from_json(cls, data: dict) -> "MyType":
            return cls(data["field"])

    blob = serde.dumps(MyType(...))
    obj = serde.loads(blob)

The same encoding is used for protocol messages in delegated transport mode,
so runtime values (numpy arrays and tuples of them) round-trip bit-for-bit.
"""

from __future__ import annotations

import base64
import gzip
import json
from typing import Any, ClassVar, Protocol, TypeVar, runtime_checkable

import numpy as np

# =============================================================================
# Type Registry
# =============================================================================

_CLASS_REGISTRY: dict[str, type] = {}

T = TypeVar("T")


def register_class(cls: type[T]) -> type[T]:
    """Decorator to register a class for JSON serialization.

    The class must define `_serde_kind`, `to_json` and `from_json`.
    """
    kind = getattr(cls, "_serde_kind", None)
    if kind is None:
        raise ValueError(
            f"{cls.__name__} must define `_serde_kind` class variable "
            "for serialization registration"
        )
    existing = _CLASS_REGISTRY.get(kind)
    if existing is not None and existing is not cls:
        raise ValueError(
            f"Duplicate _serde_kind '{kind}': already registered by {existing.__name__}"
        )
    _CLASS_REGISTRY[kind] = cls
    return cls


def get_registered_class(kind: str) -> type | None:
    return _CLASS_REGISTRY.get(kind)


def list_registered_kinds() -> list[str]:
    return list(_CLASS_REGISTRY.keys())


@runtime_checkable
class JsonSerializable(Protocol):
    """Protocol for types that can be serialized to JSON."""

    _serde_kind: ClassVar[str]

    def to_json(self) -> dict[str, Any]: ...

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> JsonSerializable: ...


# =============================================================================
# Core Serialization Functions
# =============================================================================


def to_json(obj: Any) -> dict[str, Any]:
    """Serialize an object to a JSON-compatible dict.

    Supported: registered classes, None/bool/int/float/str, bytes, numpy
    scalars and arrays, lists, tuples and dicts of supported objects.

    Raises:
        TypeError: If the object cannot be serialized.
    """
    if hasattr(obj, "_serde_kind") and hasattr(obj, "to_json"):
        data: dict[str, Any] = obj.to_json()
        data["_kind"] = obj._serde_kind
        return data

    if obj is None:
        return {"_kind": "_null"}
    # bool is a subclass of int
    if isinstance(obj, bool):
        return {"_kind": "_bool", "v": obj}
    if isinstance(obj, int):
        # Python ints are unbounded; keep them as strings to survive JSON readers
        # that coerce to float.
        return {"_kind": "_int", "v": str(obj)}
    if isinstance(obj, float):
        return {"_kind": "_float", "v": obj}
    if isinstance(obj, str):
        return {"_kind": "_str", "v": obj}

    if isinstance(obj, np.integer):
        return {"_kind": "_int", "v": str(int(obj))}

    if isinstance(obj, np.ndarray):
        if obj.dtype == np.object_:
            raise TypeError("Object arrays are not part of the mpcflow value model")
        return {
            "_kind": "_ndarray",
            "dtype": obj.dtype.str,
            "shape": list(obj.shape),
            "data": base64.b64encode(obj.tobytes()).decode("ascii"),
        }

    if isinstance(obj, (list, tuple)):
        return {
            "_kind": "_list" if isinstance(obj, list) else "_tuple",
            "items": [to_json(item) for item in obj],
        }
    if isinstance(obj, dict):
        if any(not isinstance(k, str) for k in obj):
            return {
                "_kind": "_dict_pairs",
                "pairs": [[to_json(k), to_json(v)] for k, v in obj.items()],
            }
        return {"_kind": "_dict", "items": {k: to_json(v) for k, v in obj.items()}}

    if isinstance(obj, bytes):
        return {"_kind": "_bytes", "data": base64.b64encode(obj).decode("ascii")}

    raise TypeError(
        f"Cannot serialize object of type {type(obj).__name__}. "
        "Ensure the class is decorated with @serde.register_class "
        "and implements to_json()/from_json()."
    )


def from_json(data: dict[str, Any]) -> Any:
    """Deserialize an object produced by `to_json`.

    Raises:
        ValueError: If `_kind` is missing or unknown.
    """
    if not isinstance(data, dict):
        raise ValueError(f"Expected dict, got {type(data).__name__}")

    kind = data.get("_kind")
    if kind is None:
        raise ValueError("Missing '_kind' field in JSON data")

    if kind == "_null":
        return None
    if kind == "_bool":
        return bool(data["v"])
    if kind == "_int":
        return int(data["v"])
    if kind == "_float":
        return float(data["v"])
    if kind == "_str":
        return str(data["v"])

    if kind == "_list":
        return [from_json(item) for item in data["items"]]
    if kind == "_tuple":
        return tuple(from_json(item) for item in data["items"])
    if kind == "_dict":
        return {k: from_json(v) for k, v in data["items"].items()}
    if kind == "_dict_pairs":
        return {from_json(k): from_json(v) for k, v in data["pairs"]}

    if kind == "_bytes":
        return base64.b64decode(data["data"])

    if kind == "_ndarray":
        buffer = base64.b64decode(data["data"])
        dtype = np.dtype(data["dtype"])
        return np.frombuffer(buffer, dtype=dtype).reshape(tuple(data["shape"])).copy()

    cls = _CLASS_REGISTRY.get(kind)
    if cls is not None:
        payload = {k: v for k, v in data.items() if k != "_kind"}
        return cls.from_json(payload)  # type: ignore[attr-defined]

    raise ValueError(
        f"Unknown type kind: '{kind}'. "
        "Ensure the class is registered with @serde.register_class "
        "and the module is imported."
    )


# =============================================================================
# Wire Format
# =============================================================================


def dumps(obj: Any, *, compress: bool = True) -> bytes:
    """Serialize object to bytes (JSON + optional gzip)."""
    data = json.dumps(to_json(obj), separators=(",", ":"), sort_keys=True).encode(
        "utf-8"
    )
    if compress:
        # mtime=0 keeps the output byte-stable across runs
        data = gzip.compress(data, mtime=0)
    return data


def loads(data: bytes, *, compressed: bool = True) -> Any:
    """Deserialize object from bytes produced by `dumps`."""
    if compressed:
        data = gzip.decompress(data)
    return from_json(json.loads(data.decode("utf-8")))


def dumps_b64(obj: Any, *, compress: bool = True) -> str:
    return base64.b64encode(dumps(obj, compress=compress)).decode("ascii")


def loads_b64(data: str, *, compressed: bool = True) -> Any:
    return loads(base64.b64decode(data), compressed=compressed)
