"""Unique id workload: ``generate`` returns an id no other node will issue.

Ids are striped across the cluster: node *i* of *n* (by sorted node id)
issues ``i, i + n, i + 2n, ...``, so no coordination is needed.
"""

from __future__ import annotations

import threading
from typing import Literal

from pydantic import Field

from nodewire.core.dispatcher import Context
from nodewire.core.node import Node
from nodewire.models.payloads import Payload
from nodewire.workloads.base import Workload


class Generate(Payload):
    type: Literal["generate"] = "generate"


class GenerateOk(Payload):
    type: Literal["generate_ok"] = "generate_ok"
    id: int = Field(ge=0)


class IdGenerator:
    """Issues cluster-unique integer ids for one node."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counter = 0

    def next_id(self, node_id: str, peers: frozenset[str]) -> int:
        members = sorted(peers | {node_id})
        stride = len(members)
        offset = members.index(node_id)
        with self._lock:
            sequence = self._counter
            self._counter += 1
        return sequence * stride + offset

    def handle_generate(self, ctx: Context, payload: Generate) -> None:
        ctx.reply(GenerateOk(id=self.next_id(ctx.node_id, ctx.peers)))


def install(node: Node) -> IdGenerator:
    generator = IdGenerator()
    node.register_payloads(Generate, GenerateOk)
    node.on("generate", generator.handle_generate)
    return generator


WORKLOAD = Workload(
    name="unique-ids",
    description="Generate ids that are unique across the cluster.",
    handles=["generate"],
    install=install,
)
