"""Protocol messages.

Three message kinds travel over a connection, each carrying a correlation id
and a payload:

======== ================= ==============================
kind     direction         payload
======== ================= ==============================
do       caller -> runner  list of positional arguments
resolve  runner -> caller  the work function's result
reject   runner -> caller  the failure payload
======== ================= ==============================

Disconnection is not a message; transports report it through their
disconnect handlers.

The JSON codec (:func:`encode`, :func:`decode`) is what the TCP transport puts
on the wire, one document per line.  The in-memory transport passes
:class:`Message` objects directly.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

from remote_promises.core.errors import ProtocolError

__all__ = ["MessageKind", "Message", "encode", "decode"]


class MessageKind(str, Enum):
    """The closed set of protocol message kinds."""

    DO = "do"
    RESOLVE = "resolve"
    REJECT = "reject"


@dataclass(frozen=True)
class Message:
    """A tagged protocol message.

    Attributes:
        kind: Which of the three message kinds this is
        id: Correlation id of the request
        payload: Argument list for ``do``; result or error for settlements
    """

    kind: MessageKind
    id: str
    payload: Any = None

    @classmethod
    def do(cls, id: str, args: tuple[Any, ...] | list[Any]) -> Message:
        return cls(MessageKind.DO, id, list(args))

    @classmethod
    def resolve(cls, id: str, result: Any) -> Message:
        return cls(MessageKind.RESOLVE, id, result)

    @classmethod
    def reject(cls, id: str, error: Any) -> Message:
        return cls(MessageKind.REJECT, id, error)

    @property
    def args(self) -> tuple[Any, ...]:
        """Positional arguments of a ``do`` message."""
        if self.kind is not MessageKind.DO:
            return ()
        return tuple(self.payload or ())

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "id": self.id, "payload": self.payload}


def encode(message: Message) -> bytes:
    """Serialize a message to a single newline-terminated JSON line.

    Raises:
        ProtocolError: If the payload is not JSON-serializable.
    """
    try:
        text = json.dumps(message.to_dict(), separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise ProtocolError(
            f"payload is not JSON-serializable: {e}", cause=e
        ).with_context(request_id=message.id)
    return text.encode("utf-8") + b"\n"


def decode(line: bytes | str) -> Message:
    """Parse one JSON line back into a :class:`Message`.

    Raises:
        ProtocolError: If the line is not a well-formed protocol message.
    """
    try:
        data = json.loads(line)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"undecodable frame: {e}", cause=e)

    if not isinstance(data, dict):
        raise ProtocolError("frame is not a JSON object")

    try:
        kind = MessageKind(data.get("kind"))
    except ValueError as e:
        raise ProtocolError(f"unknown message kind: {data.get('kind')!r}", cause=e)

    request_id = data.get("id")
    if not isinstance(request_id, str) or not request_id:
        raise ProtocolError("message id must be a non-empty string")

    payload = data.get("payload")
    if kind is MessageKind.DO and not isinstance(payload, list):
        raise ProtocolError("do payload must be an argument list").with_context(
            request_id=request_id
        )

    return Message(kind, request_id, payload)
