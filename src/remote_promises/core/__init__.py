"""Core primitives: errors, logging, settings, the correlation stash and messages.

Architecture::

    errors.py     RemotePromiseError hierarchy, error_payload()
    logging.py    structlog configuration + get_logger()
    settings.py   RemotePromiseSettings (pydantic-settings) + get_settings()
    stash.py      CorrelationStash, PendingRequest
    messages.py   MessageKind, Message, JSON line codec
"""

from remote_promises.core.errors import (
    CallerClosedError,
    ConfigError,
    ConnectionClosedError,
    ErrorCategory,
    ErrorContext,
    ProtocolError,
    RemoteCallError,
    RemotePromiseError,
    TransportError,
    error_payload,
)
from remote_promises.core.messages import Message, MessageKind
from remote_promises.core.settings import RemotePromiseSettings, get_settings
from remote_promises.core.stash import CorrelationStash, PendingRequest

__all__ = [
    "CallerClosedError",
    "ConfigError",
    "ConnectionClosedError",
    "CorrelationStash",
    "ErrorCategory",
    "ErrorContext",
    "Message",
    "MessageKind",
    "PendingRequest",
    "ProtocolError",
    "RemoteCallError",
    "RemotePromiseError",
    "RemotePromiseSettings",
    "TransportError",
    "error_payload",
    "get_settings",
]
