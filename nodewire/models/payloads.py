"""Message payloads — the tagged variant carried in every message body.

Each payload model declares its wire discriminator as a ``Literal`` default
on the ``type`` field. Payload-specific fields sit beside ``type`` in the
JSON body; the codec flattens and unflattens them.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class ErrorCode(IntEnum):
    """Numeric error codes carried by ``error`` payloads.

    Codes below 1000 are reserved by the protocol; applications may define
    their own above that.
    """

    TIMEOUT = 0
    NODE_NOT_FOUND = 1
    NOT_SUPPORTED = 10
    TEMPORARILY_UNAVAILABLE = 11
    MALFORMED_REQUEST = 12
    CRASH = 13
    ABORT = 14
    KEY_DOES_NOT_EXIST = 20
    KEY_ALREADY_EXISTS = 21
    PRECONDITION_FAILED = 22
    TXN_CONFLICT = 30


class Payload(BaseModel):
    """Base for every payload variant.

    Subclasses narrow ``type`` to a ``Literal`` default so that
    ``SomePayload()`` carries its own discriminator.
    """

    model_config = ConfigDict(frozen=True)

    type: str

    @classmethod
    def payload_type(cls) -> str:
        """Return the wire discriminator declared by this payload class."""
        default = cls.model_fields["type"].default
        if not isinstance(default, str):
            raise TypeError(f"{cls.__name__} does not declare a fixed payload type")
        return default

    def wire_fields(self) -> dict[str, Any]:
        """Return the payload-specific fields as JSON-ready values."""
        return self.model_dump(mode="json", exclude={"type"})


class Init(Payload):
    """Handshake sent by the orchestrator as the first message to a node."""

    type: Literal["init"] = "init"
    node_id: str
    node_ids: list[str]


class InitOk(Payload):
    type: Literal["init_ok"] = "init_ok"


class Error(Payload):
    """Failure reply; always sent with ``in_reply_to`` set."""

    type: Literal["error"] = "error"
    code: int = Field(ge=0)
    text: str = ""


class Unrecognized(Payload):
    """Payload whose discriminator has no registered model.

    Keeps the raw fields so the node can answer or forward it without
    understanding it.
    """

    raw_fields: dict[str, Any] = {}

    def wire_fields(self) -> dict[str, Any]:
        return dict(self.raw_fields)


# Built-in payloads, keyed by discriminator, used to seed every codec.
BUILTIN_PAYLOADS: dict[str, type[Payload]] = {
    "init": Init,
    "init_ok": InitOk,
    "error": Error,
}
