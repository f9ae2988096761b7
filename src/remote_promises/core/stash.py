"""Correlation stash, the pending-request registry.

A caller stores one :class:`PendingRequest` per outstanding invocation under
its correlation id and removes it when the matching settlement arrives.
Removal of an unknown id is a normal outcome (duplicate or late settlement),
so it returns ``None`` instead of raising.

Example::

    stash = CorrelationStash()
    request_id = stash.insert(request)
    ...
    request = stash.remove(request_id)
    if request is not None:
        request.resolve(value)
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

__all__ = ["CorrelationStash", "PendingRequest", "new_request_id"]

T = TypeVar("T")


def new_request_id() -> str:
    """Generate a fresh correlation id."""
    return str(uuid.uuid4())


@dataclass
class PendingRequest:
    """One outstanding invocation.

    Attributes:
        args: Positional arguments sent with the ``do`` message
        on_resolve: Continuation invoked with the result on success
        on_reject: Continuation invoked with the error on failure
        id: Correlation id, assigned when the request is stashed
    """

    args: tuple[Any, ...]
    on_resolve: Callable[[Any], None]
    on_reject: Callable[[BaseException], None]
    id: str = ""

    @classmethod
    def for_future(cls, args: tuple[Any, ...], future: asyncio.Future[Any]) -> PendingRequest:
        """Build a request whose continuations settle ``future``."""

        def _resolve(value: Any) -> None:
            if not future.done():
                future.set_result(value)

        def _reject(error: BaseException) -> None:
            if not future.done():
                future.set_exception(error)

        return cls(args=tuple(args), on_resolve=_resolve, on_reject=_reject)

    def resolve(self, value: Any) -> None:
        self.on_resolve(value)

    def reject(self, error: BaseException) -> None:
        self.on_reject(error)


class CorrelationStash(Generic[T]):
    """Identifier-keyed store of pending records.

    Confined to one event loop; no locking.
    """

    def __init__(self, id_factory: Callable[[], str] | None = None) -> None:
        self._entries: dict[str, T] = {}
        self._id_factory = id_factory or new_request_id

    def insert(self, value: T, id: str | None = None) -> str:
        """Store ``value`` under ``id`` (generated if omitted) and return the id.

        Raises:
            ValueError: If an explicit ``id`` is already live.
        """
        if id is None:
            id = self._id_factory()
            while id in self._entries:
                id = self._id_factory()
        elif id in self._entries:
            raise ValueError(f"correlation id already live: {id}")
        self._entries[id] = value
        return id

    def get(self, id: str) -> T | None:
        """Non-destructive lookup."""
        return self._entries.get(id)

    def remove(self, id: str) -> T | None:
        """Destructive lookup; ``None`` when the id is not present."""
        return self._entries.pop(id, None)

    def for_each(self, fn: Callable[[str, T], Any]) -> None:
        """Call ``fn(id, value)`` over a snapshot, so ``fn`` may mutate the stash."""
        for id, value in self.items():
            fn(id, value)

    def items(self) -> list[tuple[str, T]]:
        return list(self._entries.items())

    def ids(self) -> list[str]:
        return list(self._entries)

    def clear(self) -> list[T]:
        """Remove every entry, returning the removed values."""
        values = list(self._entries.values())
        self._entries.clear()
        return values

    def __contains__(self, id: object) -> bool:
        return id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self.ids())
