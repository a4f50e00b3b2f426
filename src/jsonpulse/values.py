from __future__ import annotations

import copy
from typing import Dict, List, Union

JsonScalar = Union[None, bool, int, float, str]
JsonValue = Union[JsonScalar, Dict[str, "JsonValue"], List["JsonValue"]]


class _Empty:
    """Falsy marker for "no data yet" (or "no data any more")."""

    _instance: _Empty | None = None

    def __new__(cls) -> _Empty:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "EMPTY"

    def __copy__(self) -> _Empty:
        return self

    def __deepcopy__(self, memo) -> _Empty:
        return self


EMPTY = _Empty()


def clone(value):
    """Detach a point-in-time copy from a live, still-mutating snapshot."""
    if value is EMPTY:
        return EMPTY
    return copy.deepcopy(value)
