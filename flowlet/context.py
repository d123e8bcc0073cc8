"""Shared key-value context passed by reference to every node of one run."""
from collections.abc import MutableMapping
from typing import Any, Dict, Iterator, Optional


class Context(MutableMapping):
    """Mutable mapping of string keys to JSON-like values.

    One instance is created per top-level run and shared by every node, so a
    write is visible to all subsequent reads immediately. There is no locking:
    concurrent branches must write disjoint keys or accept last-write-wins.
    Keys starting with ``__`` are reserved for loop/map node signalling.

    Usage:
        ctx = Context({"value": 10})
        ctx.set("answer", 42)
        ctx.get("missing")        # None
        ctx.has("answer")         # True
    """

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        self._store: Dict[str, Any] = dict(data or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._store.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._store[key] = value

    def has(self, key: str) -> bool:
        return key in self._store

    def to_dict(self) -> Dict[str, Any]:
        """Shallow copy of the underlying store."""
        return dict(self._store)

    def __getitem__(self, key: str) -> Any:
        return self._store[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self._store[key] = value

    def __delitem__(self, key: str) -> None:
        del self._store[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._store)

    def __len__(self) -> int:
        return len(self._store)

    def __repr__(self):
        return f"Context({self._store!r})"
