"""Tests for the Node lifecycle — handshake gating, error replies, run loops."""

from __future__ import annotations

import io
import threading
from collections.abc import Callable

import pytest

from nodewire.core.dispatcher import Context
from nodewire.core.errors import HandshakeIncompleteError, OutputClosedError, RPCError
from nodewire.core.node import Node
from nodewire.models.identity import NodeState
from nodewire.models.payloads import ErrorCode, Unrecognized
from nodewire.workloads import echo


class TestHandshake:
    def test_starts_unbound(self, node: Node):
        assert node.state == NodeState.UNBOUND

    def test_init_binds_and_replies(self, node: Node, output, init_line: str):
        node.process_line(init_line)
        assert node.state == NodeState.BOUND
        assert node.identity.self_id == "n1"
        assert node.identity.peers == frozenset({"n1", "n2", "n3"})
        assert output.messages == [
            {"src": "n1", "dest": "c1", "body": {"type": "init_ok", "msg_id": 0, "in_reply_to": 1}}
        ]

    def test_message_before_init_is_rejected(
        self, node: Node, output, make_line: Callable[..., str], init_line: str
    ):
        node.process_line(make_line("echo", msg_id=1, echo="early"))
        [reply] = output.messages
        assert reply["src"] == "n1"  # taken from the inbound dest
        assert reply["dest"] == "c1"
        assert reply["body"]["type"] == "error"
        assert reply["body"]["code"] == ErrorCode.PRECONDITION_FAILED
        assert reply["body"]["in_reply_to"] == 1
        assert node.state == NodeState.UNBOUND

        # The handshake still succeeds on the first attempt afterwards.
        node.process_line(init_line)
        assert node.state == NodeState.BOUND
        assert output.messages[-1]["body"]["type"] == "init_ok"

    def test_second_init_rejected(
        self, bound_node: Node, output, make_line: Callable[..., str]
    ):
        bound_node.process_line(make_line("init", msg_id=5, node_id="n9", node_ids=["n9"]))
        reply = output.messages[-1]
        assert reply["body"]["type"] == "error"
        assert reply["body"]["code"] == ErrorCode.PRECONDITION_FAILED
        assert reply["body"]["in_reply_to"] == 5
        assert bound_node.identity.self_id == "n1"

    def test_init_handler_cannot_be_registered(self, node: Node):
        with pytest.raises(ValueError):
            node.on("init", lambda ctx, p: None)

    def test_strict_handshake_fails_on_bad_first_message(
        self, output, make_line: Callable[..., str]
    ):
        node = Node(output, strict_handshake=True)
        with pytest.raises(HandshakeIncompleteError):
            node.run([make_line("echo", msg_id=1, echo="x") + "\n"])
        assert output.messages == []

    def test_strict_handshake_fails_on_garbage_before_init(self, output):
        node = Node(output, strict_handshake=True)
        with pytest.raises(HandshakeIncompleteError):
            node.run(["{not json\n"])


class TestDispatchErrors:
    def test_unknown_type_gets_one_not_supported_error(
        self, bound_node: Node, output, make_line: Callable[..., str]
    ):
        before = bound_node.membership.issued
        bound_node.process_line(make_line("cas", msg_id=7, key=1))
        assert bound_node.membership.issued == before + 1
        reply = output.messages[-1]
        assert reply["body"]["type"] == "error"
        assert reply["body"]["code"] == ErrorCode.NOT_SUPPORTED
        assert reply["body"]["in_reply_to"] == 7
        assert len(output.messages) == 2

    def test_handler_crash_becomes_crash_error(
        self, bound_node: Node, output, make_line: Callable[..., str]
    ):
        def explode(ctx: Context, payload: Unrecognized) -> None:
            raise ZeroDivisionError("boom")

        bound_node.on("boom", explode)
        bound_node.process_line(make_line("boom", msg_id=3))
        reply = output.messages[-1]
        assert reply["body"]["code"] == ErrorCode.CRASH
        assert "boom" in reply["body"]["text"]

    def test_rpc_error_is_relayed(
        self, bound_node: Node, output, make_line: Callable[..., str]
    ):
        def refuse(ctx: Context, payload: Unrecognized) -> None:
            raise RPCError(ErrorCode.KEY_DOES_NOT_EXIST, "no such key")

        bound_node.on("get", refuse)
        bound_node.process_line(make_line("get", msg_id=3))
        body = output.messages[-1]["body"]
        assert body["code"] == ErrorCode.KEY_DOES_NOT_EXIST
        assert body["text"] == "no such key"

    def test_malformed_line_skipped(self, bound_node: Node, output):
        assert bound_node.process_line("{oops") is None
        assert len(output.messages) == 1

    def test_malformed_payload_answered(
        self, bound_node: Node, output, make_line: Callable[..., str]
    ):
        # echo requires an 'echo' field
        bound_node.process_line(make_line("echo", msg_id=4))
        body = output.messages[-1]["body"]
        assert body["code"] == ErrorCode.MALFORMED_REQUEST
        assert body["in_reply_to"] == 4

    def test_no_error_reply_to_a_reply(
        self, node: Node, output, make_line: Callable[..., str]
    ):
        node.process_line(make_line("echo_ok", msg_id=1, in_reply_to=0, echo="x"))
        assert output.messages == []

    def test_invalid_utf8_line_skipped(
        self, bound_node: Node, output, make_line: Callable[..., str]
    ):
        bad = b'{"src":"c1","dest":"n1","body":{"type":"echo","msg_id":2,"echo":"\xff"}}'
        assert bound_node.process_line(bad) is None
        assert len(output.messages) == 1

        bound_node.process_line(make_line("echo", msg_id=3, echo="ok").encode())
        assert output.messages[-1]["body"]["in_reply_to"] == 3

    def test_malformed_reply_is_not_answered(
        self, bound_node: Node, output, make_line: Callable[..., str]
    ):
        # echo_ok requires an 'echo' field
        bound_node.process_line(make_line("echo_ok", src="n2", msg_id=5, in_reply_to=0))
        assert len(output.messages) == 1

    def test_malformed_reply_fails_the_waiting_request(
        self, node: Node, output, init_line: str, make_line: Callable[..., str]
    ):
        def relay(ctx: Context, payload: Unrecognized) -> None:
            ctx.request("n2", echo.Echo(echo="ping"))

        node.on("relay", relay)
        node.run(
            [
                init_line + "\n",
                make_line("relay", msg_id=2) + "\n",
                make_line("echo_ok", src="n2", msg_id=8, in_reply_to=1) + "\n",
            ]
        )
        types = [m["body"]["type"] for m in output.messages]
        assert types == ["init_ok", "echo", "error"]
        error = output.messages[-1]
        assert error["dest"] == "c1"
        assert error["body"]["code"] == ErrorCode.MALFORMED_REQUEST
        assert error["body"]["in_reply_to"] == 2
        assert node.correlator.pending_count == 0

    def test_unwritable_output_is_fatal(self, init_line: str):
        class Closed:
            def write(self, text: str) -> int:
                raise BrokenPipeError("closed")

            def flush(self) -> None:
                pass

        node = Node(Closed())
        with pytest.raises(OutputClosedError):
            node.process_line(init_line)


class TestRun:
    def test_ids_strictly_increasing_without_gaps(
        self, node: Node, output, init_line: str, make_line: Callable[..., str]
    ):
        lines = [init_line] + [make_line("echo", msg_id=i + 2, echo=str(i)) for i in range(20)]
        node.run(line + "\n" for line in lines)
        ids = [m["body"]["msg_id"] for m in output.messages]
        assert ids == list(range(21))

    def test_input_ending_before_init_is_fatal(self, node: Node):
        with pytest.raises(HandshakeIncompleteError):
            node.run([])

    def test_blank_lines_ignored(self, node: Node, output, init_line: str):
        node.run(["\n", init_line + "\n", "   \n"])
        assert len(output.messages) == 1

    def test_pooled_run_answers_every_request(
        self, output, init_line: str, make_line: Callable[..., str]
    ):
        node = Node(output, workers=4)
        echo.install(node)
        lines = [init_line] + [make_line("echo", msg_id=i + 2, echo=str(i)) for i in range(50)]
        node.run(line + "\n" for line in lines)

        replies = output.messages[1:]
        assert sorted(r["body"]["in_reply_to"] for r in replies) == list(range(2, 52))
        # Ids reach the wire in the order they were issued.
        assert [m["body"]["msg_id"] for m in output.messages] == list(range(51))

    def test_handler_request_round_trip(
        self, output, init_line: str, make_line: Callable[..., str], line_feed
    ):
        node = Node(output, workers=2, request_timeout=2.0)

        def relay(ctx: Context, payload: Unrecognized) -> None:
            answer = ctx.request("n2", Unrecognized(type="read"))
            ctx.reply(Unrecognized(type="relay_ok", raw_fields={"value": answer.raw_fields["value"]}))

        node.on("relay", relay)
        runner = threading.Thread(target=node.run, args=(line_feed,), daemon=True)
        runner.start()

        line_feed.push(init_line)
        line_feed.push(make_line("relay", msg_id=2))
        assert output.wait_for(lambda msgs: any(m["body"]["type"] == "read" for m in msgs))
        request = next(m for m in output.messages if m["body"]["type"] == "read")
        assert request["dest"] == "n2"

        line_feed.push(
            make_line("read_ok", src="n2", msg_id=11, in_reply_to=request["body"]["msg_id"], value=42)
        )
        assert output.wait_for(lambda msgs: any(m["body"]["type"] == "relay_ok" for m in msgs))
        line_feed.close()
        runner.join(2.0)
        assert not runner.is_alive()

        relay_ok = output.messages[-1]
        assert relay_ok["body"] == {"type": "relay_ok", "msg_id": 2, "in_reply_to": 2, "value": 42}
        assert node.correlator.pending_count == 0

    def test_handler_request_timeout_reported(
        self, output, init_line: str, make_line: Callable[..., str], line_feed
    ):
        node = Node(output, workers=1, request_timeout=0.05)

        def relay(ctx: Context, payload: Unrecognized) -> None:
            ctx.request("n2", Unrecognized(type="read"))

        node.on("relay", relay)
        runner = threading.Thread(target=node.run, args=(line_feed,), daemon=True)
        runner.start()
        line_feed.push(init_line)
        line_feed.push(make_line("relay", msg_id=2))
        assert output.wait_for(lambda msgs: any(m["body"]["type"] == "error" for m in msgs))
        line_feed.close()
        runner.join(2.0)

        error = next(m for m in output.messages if m["body"]["type"] == "error")
        assert error["body"]["code"] == ErrorCode.TIMEOUT
        assert error["body"]["in_reply_to"] == 2

    def test_inline_handler_request_round_trip(
        self, node: Node, output, init_line: str, make_line: Callable[..., str]
    ):
        def relay(ctx: Context, payload: Unrecognized) -> None:
            answer = ctx.request("n2", Unrecognized(type="read"))
            ctx.reply(Unrecognized(type="relay_ok", raw_fields={"value": answer.raw_fields["value"]}))

        node.on("relay", relay)
        node.run(
            line + "\n"
            for line in [
                init_line,
                make_line("relay", msg_id=2),
                make_line("read_ok", src="n2", msg_id=11, in_reply_to=1, value=42),
            ]
        )
        assert [m["body"]["type"] for m in output.messages] == ["init_ok", "read", "relay_ok"]
        assert output.messages[1]["dest"] == "n2"
        assert output.messages[-1]["body"] == {"type": "relay_ok", "msg_id": 2, "in_reply_to": 2, "value": 42}
        assert node.correlator.pending_count == 0

    def test_inline_wait_keeps_serving_other_messages(
        self, node: Node, output, init_line: str, make_line: Callable[..., str]
    ):
        def relay(ctx: Context, payload: Unrecognized) -> None:
            ctx.request("n2", Unrecognized(type="read"))
            ctx.reply(Unrecognized(type="relay_ok"))

        node.on("relay", relay)
        node.run(
            line + "\n"
            for line in [
                init_line,
                make_line("relay", msg_id=2),
                make_line("echo", msg_id=3, echo="meanwhile"),
                make_line("read_ok", src="n2", msg_id=11, in_reply_to=1),
                make_line("echo", msg_id=4, echo="after"),
            ]
        )
        replies = [(m["body"]["type"], m["body"].get("in_reply_to")) for m in output.messages]
        assert replies == [("init_ok", 1), ("read", None), ("echo_ok", 3), ("relay_ok", 2), ("echo_ok", 4)]

    def test_inline_wait_cancelled_when_input_ends(
        self, output, init_line: str, make_line: Callable[..., str]
    ):
        node = Node(output, request_timeout=30.0)

        def relay(ctx: Context, payload: Unrecognized) -> None:
            ctx.request("n2", Unrecognized(type="read"))

        node.on("relay", relay)
        node.run([init_line + "\n", make_line("relay", msg_id=2) + "\n"])

        error = output.messages[-1]
        assert error["body"]["type"] == "error"
        assert error["body"]["code"] == ErrorCode.ABORT
        assert error["body"]["in_reply_to"] == 2
        assert node.correlator.pending_count == 0

    @pytest.mark.parametrize("workers", [0, 2])
    def test_invalid_utf8_in_binary_input_is_skipped(
        self, workers: int, output, init_line: str, make_line: Callable[..., str]
    ):
        node = Node(output, workers=workers)
        echo.install(node)
        raw = b"".join(
            [
                init_line.encode() + b"\n",
                b'{"src":"c1","dest":"n1","body":{"type":"echo","msg_id":2,"echo":"\xff"}}\n',
                b"\xfe\xfd\n",
                make_line("echo", msg_id=3, echo="hi").encode() + b"\n",
            ]
        )
        node.run(io.TextIOWrapper(io.BytesIO(raw), encoding="utf-8"))

        assert [m["body"]["type"] for m in output.messages] == ["init_ok", "echo_ok"]
        assert output.messages[-1]["body"]["in_reply_to"] == 3

    def test_worker_losing_output_stops_idle_run(
        self, init_line: str, make_line: Callable[..., str], line_feed
    ):
        class ClosesAfterFirstLine:
            def __init__(self) -> None:
                self.lines = 0

            def write(self, text: str) -> int:
                if self.lines:
                    raise BrokenPipeError("closed")
                self.lines += 1
                return len(text)

            def flush(self) -> None:
                pass

        node = Node(ClosesAfterFirstLine(), workers=1)
        echo.install(node)
        failures: list[BaseException] = []

        def run() -> None:
            try:
                node.run(line_feed)
            except OutputClosedError as exc:
                failures.append(exc)

        runner = threading.Thread(target=run, daemon=True)
        runner.start()
        line_feed.push(init_line)
        line_feed.push(make_line("echo", msg_id=2, echo="lost"))
        # Input stays open; the failed write alone must end the run.
        runner.join(2.0)
        try:
            assert not runner.is_alive()
            assert len(failures) == 1
        finally:
            line_feed.close()
