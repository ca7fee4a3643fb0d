"""Nodewire data models — all Pydantic v2, all frozen (immutable)."""

from nodewire.models.envelopes import Body, Envelope
from nodewire.models.identity import NodeIdentity, NodeState, PendingRequest
from nodewire.models.payloads import (
    BUILTIN_PAYLOADS,
    Error,
    ErrorCode,
    Init,
    InitOk,
    Payload,
    Unrecognized,
)

__all__ = [
    # envelopes
    "Body",
    "Envelope",
    # payloads
    "Payload",
    "Init",
    "InitOk",
    "Error",
    "ErrorCode",
    "Unrecognized",
    "BUILTIN_PAYLOADS",
    # identity
    "NodeIdentity",
    "NodeState",
    "PendingRequest",
]
