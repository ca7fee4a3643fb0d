"""Shared test fixtures for Nodewire."""

from __future__ import annotations

import json
import queue
import threading
import time
from collections.abc import Callable, Iterator
from typing import Any

import pytest

from nodewire.core.node import Node
from nodewire.workloads import echo


class RecordingOutput:
    """Thread-safe text sink that records every line a node writes."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._buffer = ""

    def write(self, text: str) -> int:
        with self._cond:
            self._buffer += text
            self._cond.notify_all()
        return len(text)

    def flush(self) -> None:
        pass

    @property
    def raw_lines(self) -> list[str]:
        with self._cond:
            return [line for line in self._buffer.split("\n") if line]

    @property
    def messages(self) -> list[dict[str, Any]]:
        return [json.loads(line) for line in self.raw_lines]

    def wait_for(self, predicate: Callable[[list[dict[str, Any]]], bool], timeout: float = 2.0) -> bool:
        """Block until *predicate(messages)* holds or *timeout* elapses."""
        deadline = time.monotonic() + timeout
        with self._cond:
            while True:
                messages = [json.loads(line) for line in self._buffer.split("\n") if line]
                if predicate(messages):
                    return True
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)


class LineFeed:
    """Iterable input stream fed line by line from the test thread."""

    def __init__(self) -> None:
        self._queue: queue.Queue[str | None] = queue.Queue()

    def push(self, line: str) -> None:
        self._queue.put(line + "\n")

    def close(self) -> None:
        self._queue.put(None)

    def __iter__(self) -> Iterator[str]:
        while True:
            line = self._queue.get()
            if line is None:
                return
            yield line


@pytest.fixture
def output() -> RecordingOutput:
    """Provide an in-memory output sink."""
    return RecordingOutput()


@pytest.fixture
def make_output() -> Callable[[], RecordingOutput]:
    """Factory fixture: build additional output sinks."""
    return RecordingOutput


@pytest.fixture
def node(output: RecordingOutput) -> Node:
    """Provide an unbound inline node with the echo workload installed."""
    n = Node(output)
    echo.install(n)
    return n


@pytest.fixture
def make_line() -> Callable[..., str]:
    """Factory fixture: build one wire line."""

    def _factory(
        payload_type: str,
        msg_id: int | None = None,
        src: str = "c1",
        dest: str = "n1",
        in_reply_to: int | None = None,
        **fields: Any,
    ) -> str:
        body: dict[str, Any] = {"type": payload_type}
        if msg_id is not None:
            body["msg_id"] = msg_id
        if in_reply_to is not None:
            body["in_reply_to"] = in_reply_to
        body.update(fields)
        return json.dumps({"src": src, "dest": dest, "body": body})

    return _factory


@pytest.fixture
def init_line(make_line: Callable[..., str]) -> str:
    """Convenience: the handshake for node n1 in a three-node cluster."""
    return make_line("init", msg_id=1, node_id="n1", node_ids=["n1", "n2", "n3"])


@pytest.fixture
def bound_node(node: Node, output: RecordingOutput, init_line: str) -> Node:
    """Provide a node that has completed the handshake as n1."""
    node.process_line(init_line)
    assert output.messages[-1]["body"]["type"] == "init_ok"
    return node


@pytest.fixture
def line_feed() -> LineFeed:
    return LineFeed()
