"""Echo workload: answer ``echo`` with the same text in ``echo_ok``."""

from __future__ import annotations

from typing import Literal

from nodewire.core.dispatcher import Context
from nodewire.core.node import Node
from nodewire.models.payloads import Payload
from nodewire.workloads.base import Workload


class Echo(Payload):
    type: Literal["echo"] = "echo"
    echo: str


class EchoOk(Payload):
    type: Literal["echo_ok"] = "echo_ok"
    echo: str


def handle_echo(ctx: Context, payload: Echo) -> None:
    ctx.reply(EchoOk(echo=payload.echo))


def install(node: Node) -> None:
    node.register_payloads(Echo, EchoOk)
    node.on("echo", handle_echo)


WORKLOAD = Workload(
    name="echo",
    description="Reply to every echo with the same text.",
    handles=["echo"],
    install=install,
)
