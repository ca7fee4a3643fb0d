"""Broadcast workload: collect broadcast values and report them on ``read``.

Only local bookkeeping lives here. Forwarding values to neighbours is left
to the algorithm built on top; ``neighbours`` tells it who they are.
"""

from __future__ import annotations

import threading
from typing import Literal

from nodewire.core.dispatcher import Context
from nodewire.core.node import Node
from nodewire.models.identity import NodeIdentity
from nodewire.models.payloads import Payload
from nodewire.workloads.base import Workload


class Broadcast(Payload):
    type: Literal["broadcast"] = "broadcast"
    message: int


class BroadcastOk(Payload):
    type: Literal["broadcast_ok"] = "broadcast_ok"


class Read(Payload):
    type: Literal["read"] = "read"


class ReadOk(Payload):
    type: Literal["read_ok"] = "read_ok"
    messages: list[int]


class Topology(Payload):
    type: Literal["topology"] = "topology"
    topology: dict[str, list[str]]


class TopologyOk(Payload):
    type: Literal["topology_ok"] = "topology_ok"


class BroadcastStore:
    """Values seen by this node, in arrival order, plus the advertised topology."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._messages: list[int] = []
        self._seen: set[int] = set()
        self._topology: dict[str, list[str]] = {}

    def add(self, message: int) -> bool:
        """Record *message*. Returns ``False`` if it was already known."""
        with self._lock:
            if message in self._seen:
                return False
            self._seen.add(message)
            self._messages.append(message)
            return True

    @property
    def messages(self) -> list[int]:
        with self._lock:
            return list(self._messages)

    def neighbours(self, identity: NodeIdentity) -> list[str]:
        """Peers this node should talk to: its topology entry, else all others."""
        with self._lock:
            if identity.self_id in self._topology:
                return list(self._topology[identity.self_id])
        return identity.other_peers

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def handle_broadcast(self, ctx: Context, payload: Broadcast) -> None:
        self.add(payload.message)
        ctx.reply(BroadcastOk())

    def handle_read(self, ctx: Context, payload: Read) -> None:
        ctx.reply(ReadOk(messages=self.messages))

    def handle_topology(self, ctx: Context, payload: Topology) -> None:
        with self._lock:
            self._topology = {node: list(adj) for node, adj in payload.topology.items()}
        ctx.reply(TopologyOk())


def install(node: Node) -> BroadcastStore:
    store = BroadcastStore()
    node.register_payloads(Broadcast, BroadcastOk, Read, ReadOk, Topology, TopologyOk)
    node.on("broadcast", store.handle_broadcast)
    node.on("read", store.handle_read)
    node.on("topology", store.handle_topology)
    return store


WORKLOAD = Workload(
    name="broadcast",
    description="Store broadcast values and return them on read.",
    handles=["broadcast", "read", "topology"],
    install=install,
)
