"""Error taxonomy for the node protocol engine.

Recoverable errors are answered on the wire with an ``error`` payload whose
code comes from ``error_code``. ``HandshakeIncompleteError`` and
``OutputClosedError`` are fatal and end the process with a non-zero status.
"""

from __future__ import annotations

from nodewire.models.payloads import ErrorCode


class NodewireError(RuntimeError):
    """Base class for all engine errors."""

    error_code: ErrorCode = ErrorCode.CRASH


class DecodeError(NodewireError, ValueError):
    """Raised when a line cannot be decoded into an envelope.

    ``sender``, ``recipient``, ``message_id`` and ``in_reply_to`` are filled
    in when the envelope frame was readable but the payload fields were not,
    so the node can tell the sender what went wrong, or fail the request a
    malformed reply was meant to answer.
    """

    error_code = ErrorCode.MALFORMED_REQUEST

    def __init__(
        self,
        message: str,
        *,
        sender: str | None = None,
        recipient: str | None = None,
        message_id: int | None = None,
        in_reply_to: int | None = None,
    ) -> None:
        super().__init__(message)
        self.sender = sender
        self.recipient = recipient
        self.message_id = message_id
        self.in_reply_to = in_reply_to


class ProtocolError(NodewireError):
    """Raised when a message violates the handshake protocol."""

    error_code = ErrorCode.PRECONDITION_FAILED


class HandshakeRequiredError(ProtocolError):
    """A non-init message arrived before the node was bound."""


class AlreadyBoundError(ProtocolError):
    """A second init arrived after the node was bound."""


class NotBoundError(NodewireError):
    """Identity was read before the handshake completed."""


class UnhandledMessageTypeError(NodewireError):
    """No handler is registered for a payload type."""

    error_code = ErrorCode.NOT_SUPPORTED

    def __init__(self, payload_type: str) -> None:
        super().__init__(f"Unsupported message type: {payload_type!r}")
        self.payload_type = payload_type


class RequestTimeoutError(NodewireError, TimeoutError):
    """An outstanding request received no reply before its deadline."""

    error_code = ErrorCode.TIMEOUT


class RequestCancelledError(NodewireError):
    """An outstanding request was cancelled before a reply arrived."""

    error_code = ErrorCode.ABORT


class RPCError(NodewireError):
    """A peer answered a request with an ``error`` payload."""

    def __init__(self, code: int, text: str = "") -> None:
        super().__init__(f"Remote error {code}: {text}" if text else f"Remote error {code}")
        self.code = code
        self.text = text


class HandshakeIncompleteError(NodewireError):
    """Fatal: input ended, or strict mode saw a bad first message, before init."""


class OutputClosedError(NodewireError):
    """Fatal: the output stream can no longer be written."""
