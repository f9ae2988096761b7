"""
Structured error types for remote-promises.

Every failure the package raises on purpose is a :class:`RemotePromiseError`
carrying a category, a retryable flag, structured context and an optional
chained cause.  The correlation layer itself never raises for protocol
anomalies (unknown settlement ids, duplicate deliveries, no workers); these
types cover the edges where something does surface to user code.

Manifesto:
    - **Typed hierarchy:** Rejections, transport faults and bad configuration
      are distinguishable without string matching
    - **Verbatim payloads:** A remote rejection travels back to the caller
      unchanged inside :class:`RemoteCallError`
    - **Rich context:** Errors carry the request id, connection id and address
      for logging

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                    RemotePromiseError                         │
        │        (category, retryable, context, cause)                  │
        ├──────────────────────────────────────────────────────────────┤
        │  RemoteCallError      TransportError        ProtocolError     │
        │  (REMOTE, payload)    (TRANSPORT, retry)    (PROTOCOL)        │
        │       │                     │                                 │
        │  CallerClosedError    ConnectionClosedError ConfigError       │
        │                                             (CONFIG)          │
        └──────────────────────────────────────────────────────────────┘

Examples:
    Rejecting from a work function with a verbatim payload:

    >>> async def work(n):
    ...     if n < 0:
    ...         raise RemoteCallError.from_payload({"reason": "negative"})
    ...     return n * 2

    Handling the rejection on the caller side:

    >>> try:
    ...     await call(-1)
    ... except RemoteCallError as e:
    ...     e.payload
    {'reason': 'negative'}

Tags:
    error-handling, exception-hierarchy, remote-promises, rpc

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    REMOTE = "REMOTE"
    TRANSPORT = "TRANSPORT"
    PROTOCOL = "PROTOCOL"
    CONFIG = "CONFIG"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """
    Structured context attached to a :class:`RemotePromiseError`.

    Attributes:
        request_id: Correlation id of the request involved
        connection_id: Identifier of the connection involved
        address: Listen/connect target involved
        metadata: Additional key-value pairs
    """

    request_id: str | None = None
    connection_id: str | None = None
    address: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["request_id", "connection_id", "address"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class RemotePromiseError(Exception):
    """
    Base exception for all remote-promises errors.

    Subclasses set ``default_category`` and ``default_retryable`` to give
    sensible defaults for their domain.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> RemotePromiseError:
        """
        Add context to this error (fluent API).

        Usage:
            raise TransportError("connect failed").with_context(
                address="127.0.0.1:3000",
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# REMOTE EXECUTION
# =============================================================================


class RemoteCallError(RemotePromiseError):
    """
    A remote work function failed.

    Raised inside a work function to reject with an explicit payload, and
    raised to the awaiting caller when a ``reject`` settlement arrives.  The
    ``payload`` attribute is the rejection value exactly as the runner sent
    it.  Rejections are never retried automatically.
    """

    default_category = ErrorCategory.REMOTE
    default_retryable = False

    def __init__(self, payload: Any, message: str | None = None, **kwargs: Any):
        super().__init__(message or _describe_payload(payload), **kwargs)
        self.payload = payload

    @classmethod
    def from_payload(cls, payload: Any, request_id: str | None = None) -> RemoteCallError:
        """Build the error a caller sees for a ``reject`` settlement."""
        return cls(payload, context=ErrorContext(request_id=request_id))

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["payload"] = self.payload
        return result


class CallerClosedError(RemoteCallError):
    """The caller was closed while the request was still pending."""

    def __init__(self, request_id: str | None = None):
        super().__init__(
            None,
            message="caller closed before the request settled",
            context=ErrorContext(request_id=request_id),
        )


# =============================================================================
# TRANSPORT / PROTOCOL
# =============================================================================


class TransportError(RemotePromiseError):
    """The underlying connection could not be opened or used."""

    default_category = ErrorCategory.TRANSPORT
    default_retryable = True


class ConnectionClosedError(TransportError):
    """Operation attempted on a connection or listener that is closed."""

    default_retryable = False


class ProtocolError(RemotePromiseError):
    """A frame could not be decoded into a protocol message."""

    default_category = ErrorCategory.PROTOCOL
    default_retryable = False


# =============================================================================
# CONFIGURATION
# =============================================================================


class ConfigError(RemotePromiseError):
    """Invalid listen/connect target or settings."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


# =============================================================================
# HELPERS
# =============================================================================


def error_payload(error: BaseException) -> Any:
    """
    Convert a work-function failure into a transport-serializable payload.

    :class:`RemoteCallError` forwards its payload verbatim; anything else is
    reduced to its type name and message.
    """
    if isinstance(error, RemoteCallError):
        return error.payload
    return {"type": error.__class__.__name__, "message": str(error)}


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, RemotePromiseError):
        return error.retryable
    return isinstance(error, (ConnectionError, OSError))


def _describe_payload(payload: Any) -> str:
    if isinstance(payload, dict) and "message" in payload:
        return str(payload["message"])
    return repr(payload)


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "RemotePromiseError",
    "RemoteCallError",
    "CallerClosedError",
    "TransportError",
    "ConnectionClosedError",
    "ProtocolError",
    "ConfigError",
    "error_payload",
    "is_retryable",
]
