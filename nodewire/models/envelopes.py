"""Message envelope and body models.

On the wire an envelope looks like::

    {"src": "c1", "dest": "n1",
     "body": {"type": "echo", "msg_id": 1, "in_reply_to": null, ...}}

In memory the body keeps its payload as a typed ``Payload`` instance and the
header fields under descriptive names. Both models are frozen.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from nodewire.models.payloads import Payload


class Body(BaseModel):
    """Message body: optional correlation ids plus exactly one payload."""

    model_config = ConfigDict(frozen=True)

    message_id: int | None = Field(default=None, ge=0)
    in_reply_to: int | None = Field(default=None, ge=0)
    payload: Payload

    @property
    def is_reply(self) -> bool:
        return self.in_reply_to is not None


class Envelope(BaseModel):
    """A single message addressed from one node to another."""

    model_config = ConfigDict(frozen=True)

    sender: str
    recipient: str
    body: Body

    @property
    def payload(self) -> Payload:
        return self.body.payload

    @property
    def payload_type(self) -> str:
        return self.body.payload.type
