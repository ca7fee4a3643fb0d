"""Grow-only counter workload, local to one node.

``read`` here answers with ``value`` rather than ``messages``, so this
workload and ``broadcast`` cannot be installed on the same node.
"""

from __future__ import annotations

import threading
from typing import Literal

from pydantic import Field

from nodewire.core.dispatcher import Context
from nodewire.core.node import Node
from nodewire.models.payloads import Payload
from nodewire.workloads.base import Workload


class Add(Payload):
    type: Literal["add"] = "add"
    delta: int = Field(ge=0)


class AddOk(Payload):
    type: Literal["add_ok"] = "add_ok"


class Read(Payload):
    type: Literal["read"] = "read"


class ReadOk(Payload):
    type: Literal["read_ok"] = "read_ok"
    value: int


class GrowOnlyCounter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def handle_add(self, ctx: Context, payload: Add) -> None:
        with self._lock:
            self._value += payload.delta
        ctx.reply(AddOk())

    def handle_read(self, ctx: Context, payload: Read) -> None:
        ctx.reply(ReadOk(value=self.value))


def install(node: Node) -> GrowOnlyCounter:
    counter = GrowOnlyCounter()
    node.register_payloads(Add, AddOk, Read, ReadOk)
    node.on("add", counter.handle_add)
    node.on("read", counter.handle_read)
    return counter


WORKLOAD = Workload(
    name="counter",
    description="Grow-only counter: add deltas and read the total.",
    handles=["add", "read"],
    install=install,
)
