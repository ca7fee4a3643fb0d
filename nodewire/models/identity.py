"""Node identity and lifecycle models."""

from __future__ import annotations

from concurrent.futures import Future
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class NodeState(str, Enum):
    """Handshake lifecycle. There is no terminal state."""

    UNBOUND = "unbound"
    BOUND = "bound"


class NodeIdentity(BaseModel):
    """Who this node is and which peers exist. Created once, at handshake."""

    model_config = ConfigDict(frozen=True)

    self_id: str
    peers: frozenset[str] = frozenset()

    @property
    def other_peers(self) -> list[str]:
        """Every known peer except this node, in sorted order."""
        return sorted(p for p in self.peers if p != self.self_id)


class PendingRequest(BaseModel):
    """An outstanding request waiting for its reply."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    message_id: int = Field(ge=0)
    recipient: str
    issued_at: float
    future: Future
