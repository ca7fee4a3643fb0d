"""Node lifecycle — handshake gating and the read/dispatch/write loop.

States: ``UNBOUND -> BOUND``. Until an ``init`` payload is handled the node
answers every other request with a ``precondition failed`` error. Once bound,
messages flow to the ``Dispatcher``. The node runs until its input ends.

Input is read as bytes where the stream offers them (``sys.stdin.buffer``),
so a line that is not UTF-8 is skipped like any other undecodable line.

Two scheduling modes share one code path (``process``):

- ``workers == 0``: read, decode, dispatch and write inline, one line at a
  time. A handler blocked in ``ctx.request`` keeps reading and handling
  input on the same thread until its reply arrives or the deadline passes.
- ``workers > 0``: a reader thread feeds lines to the calling thread, which
  decodes them, resolves replies itself and hands every other message to a
  thread pool. A worker that loses the output stops the loop at once.

Output is a single shared sink; each line is encoded, written and flushed
under a lock so lines never interleave.
"""

from __future__ import annotations

import logging
import queue
import sys
import threading
import time
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from typing import TextIO

from nodewire.core.codec import Codec
from nodewire.core.correlator import Correlator
from nodewire.core.dispatcher import Dispatcher, Handler
from nodewire.core.errors import (
    DecodeError,
    HandshakeIncompleteError,
    HandshakeRequiredError,
    NodewireError,
    OutputClosedError,
    RPCError,
)
from nodewire.core.membership import Membership
from nodewire.models.envelopes import Body, Envelope
from nodewire.models.identity import NodeIdentity, NodeState
from nodewire.models.payloads import Error, ErrorCode, Init, InitOk, Payload

logger = logging.getLogger(__name__)

# Marks the end of input on the pooled loop's line queue.
_STOP = object()


class Node:
    """A single protocol participant.

    Parameters
    ----------
    output:
        Text sink for outbound lines. Defaults to ``sys.stdout``.
    workers:
        Handler thread pool size for ``run``; ``0`` handles messages inline.
    request_timeout:
        Default timeout in seconds for ``ctx.request``.
    strict_handshake:
        When true, input that does not start with ``init`` is fatal instead
        of being answered with an error.
    """

    def __init__(
        self,
        output: TextIO | None = None,
        *,
        workers: int = 0,
        request_timeout: float = 1.0,
        strict_handshake: bool = False,
    ) -> None:
        if workers < 0:
            raise ValueError(f"workers must be >= 0, got {workers}")
        self._output = output if output is not None else sys.stdout
        self._workers = workers
        self._strict_handshake = strict_handshake
        self._write_lock = threading.Lock()
        self._seen_message = False
        self._fatal: BaseException | None = None
        self._reader: threading.Thread | None = None
        self._inline_lines: Iterator[str | bytes] | None = None
        self._inbox: queue.Queue | None = None

        self.codec = Codec()
        self.membership = Membership()
        self.correlator = Correlator(
            self.membership,
            self._emit,
            default_timeout=request_timeout,
            pump=self._pump,
        )
        self.dispatcher = Dispatcher(self.membership, self.correlator, self._emit)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def on(self, payload_type: str, handler: Handler | None = None) -> Callable[[Handler], Handler] | Handler:
        """Register a handler for *payload_type*; usable as a decorator."""
        if payload_type == Init.payload_type():
            raise ValueError("The init handshake is handled by the node itself")

        def _register(fn: Handler) -> Handler:
            self.dispatcher.register(payload_type, fn)
            return fn

        if handler is None:
            return _register
        return _register(handler)

    def register_payloads(self, *payload_classes: type[Payload]) -> None:
        """Teach the codec about application payload models."""
        self.codec.register(*payload_classes)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> NodeState:
        return NodeState.BOUND if self.membership.is_bound else NodeState.UNBOUND

    @property
    def identity(self) -> NodeIdentity:
        return self.membership.identity

    def request(self, recipient: str, payload: Payload, timeout: float | None = None) -> Payload:
        """Send a request from outside any handler and wait for its reply."""
        return self.correlator.send_request(recipient, payload, timeout=timeout)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def process_line(self, line: str | bytes) -> Envelope | None:
        """Decode and handle one input line. Returns the decoded envelope."""
        try:
            envelope = self.codec.decode(line)
        except DecodeError as exc:
            self._on_decode_error(exc)
            return None
        if envelope is not None:
            self.process(envelope)
        return envelope

    def process(self, envelope: Envelope) -> None:
        """Gate *envelope* on the handshake, then dispatch it."""
        logger.debug(
            "Received %s from %s (msg_id=%s, in_reply_to=%s)",
            envelope.payload_type,
            envelope.sender,
            envelope.body.message_id,
            envelope.body.in_reply_to,
        )
        first = not self._seen_message
        self._seen_message = True

        if isinstance(envelope.payload, Init) and not envelope.body.is_reply:
            self._handshake(envelope)
            return

        if not self.membership.is_bound:
            if self._strict_handshake and first:
                raise HandshakeIncompleteError(
                    f"First message was {envelope.payload_type!r}, not 'init'"
                )
            self._reject(
                envelope,
                HandshakeRequiredError(
                    f"Cannot handle {envelope.payload_type!r} before the init handshake"
                ),
            )
            return

        self._dispatch(envelope)

    def run(self, stream: Iterable[str] | Iterable[bytes] | None = None) -> None:
        """Process *stream* (default ``sys.stdin``) until it is exhausted.

        Text streams with an underlying binary buffer are read through it.

        Raises
        ------
        HandshakeIncompleteError
            The input ended before an ``init`` was handled.
        OutputClosedError
            The output stream became unwritable.
        """
        if stream is None:
            stream = sys.stdin
        lines = getattr(stream, "buffer", stream)
        logger.info("Node starting (workers=%d)", self._workers)
        try:
            if self._workers == 0:
                self._run_inline(lines)
            else:
                self._run_pooled(lines)
        finally:
            self._cancel_outstanding()

        if not self.membership.is_bound:
            raise HandshakeIncompleteError("Input ended before the init handshake")
        logger.info("Input closed; node %s stopping", self.membership.self_id)

    def _run_inline(self, lines: Iterable[str | bytes]) -> None:
        self._reader = threading.current_thread()
        self._inline_lines = iter(lines)
        try:
            for line in self._inline_lines:
                self.process_line(line)
        finally:
            self._inline_lines = None

    def _pump(self, future: Future, deadline: float) -> None:
        # Only the thread running an inline loop may read ahead of it.
        if self._inline_lines is None or threading.current_thread() is not self._reader:
            return
        while not future.done() and time.monotonic() < deadline:
            line = next(self._inline_lines, None)
            if line is None:
                # No reply can arrive once input is gone.
                self._cancel_outstanding()
                return
            self.process_line(line)

    def _run_pooled(self, lines: Iterable[str | bytes]) -> None:
        inbox: queue.Queue = queue.Queue()
        self._inbox = inbox
        reader = threading.Thread(
            target=self._read_into,
            args=(lines, inbox),
            name="nodewire-reader",
            daemon=True,
        )
        pool = ThreadPoolExecutor(max_workers=self._workers, thread_name_prefix="nodewire-handler")
        reader.start()
        try:
            while self._fatal is None:
                line = inbox.get()
                if line is _STOP:
                    break
                if isinstance(line, BaseException):
                    raise line
                try:
                    envelope = self.codec.decode(line)
                except DecodeError as exc:
                    self._on_decode_error(exc)
                    continue
                if envelope is None:
                    continue
                # Handshake traffic and replies stay on this thread.
                if not self.membership.is_bound or envelope.body.is_reply:
                    self.process(envelope)
                    continue
                future = pool.submit(self.process, envelope)
                future.add_done_callback(self._check_worker)
        finally:
            # Waiters must fail before the pool drains or shutdown blocks on them.
            self._cancel_outstanding()
            pool.shutdown(wait=True)
            self._inbox = None
        if self._fatal is not None:
            raise self._fatal

    @staticmethod
    def _read_into(lines: Iterable[str | bytes], inbox: queue.Queue) -> None:
        try:
            for line in lines:
                inbox.put(line)
        except Exception as exc:  # noqa: BLE001
            inbox.put(exc)
        finally:
            inbox.put(_STOP)

    def _check_worker(self, future: Future) -> None:
        exc = future.exception()
        if exc is not None and self._fatal is None:
            self._fatal = exc
            inbox = self._inbox
            if inbox is not None:
                inbox.put(_STOP)

    def _cancel_outstanding(self) -> None:
        cancelled = self.correlator.cancel_all()
        if cancelled:
            logger.info("Cancelled %d outstanding request(s) at shutdown", cancelled)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _handshake(self, envelope: Envelope) -> None:
        payload = envelope.payload
        try:
            self.membership.bind(payload.node_id, payload.node_ids)
        except NodewireError as exc:
            self._reject(envelope, exc)
            return
        self._reply(envelope, InitOk())

    def _dispatch(self, envelope: Envelope) -> None:
        try:
            self.dispatcher.handle(envelope)
        except OutputClosedError:
            raise
        except RPCError as exc:
            self._reply_error(envelope, exc.code, exc.text or str(exc))
        except NodewireError as exc:
            self._reject(envelope, exc)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Handler for %s crashed", envelope.payload_type)
            self._reply_error(envelope, ErrorCode.CRASH, f"{type(exc).__name__}: {exc}")

    def _reject(self, envelope: Envelope, exc: NodewireError) -> None:
        logger.warning("Rejecting %s from %s: %s", envelope.payload_type, envelope.sender, exc)
        self._reply_error(envelope, exc.error_code, str(exc))

    def _reply_error(self, envelope: Envelope, code: int, text: str) -> None:
        # Errors answer requests only; answering a reply could loop between nodes.
        if envelope.body.is_reply:
            return
        self._reply(envelope, Error(code=int(code), text=text))

    def _reply(self, envelope: Envelope, payload: Payload) -> None:
        self._answer(envelope.recipient, envelope.sender, envelope.body.message_id, payload)

    def _answer(self, addressed_to: str, recipient: str, in_reply_to: int | None, payload: Payload) -> None:
        # Before the handshake, answer as whatever id the peer addressed us by.
        sender = self.membership.self_id if self.membership.is_bound else addressed_to
        with self.membership.sequenced():
            self._emit(
                Envelope(
                    sender=sender,
                    recipient=recipient,
                    body=Body(
                        message_id=self.membership.next_message_id(),
                        in_reply_to=in_reply_to,
                        payload=payload,
                    ),
                )
            )

    def _on_decode_error(self, exc: DecodeError) -> None:
        if self._strict_handshake and not self.membership.is_bound:
            raise HandshakeIncompleteError(f"Undecodable input before init: {exc}") from exc
        logger.warning("Skipping undecodable line: %s", exc)
        if exc.in_reply_to is not None:
            # A broken reply is never answered; its waiter sees the error instead.
            self.correlator.fail(exc.in_reply_to, exc)
            return
        if exc.sender is None or exc.recipient is None or exc.message_id is None:
            return
        self._answer(
            exc.recipient,
            exc.sender,
            exc.message_id,
            Error(code=int(exc.error_code), text=str(exc)),
        )

    def _emit(self, envelope: Envelope) -> None:
        with self._write_lock:
            line = self.codec.encode(envelope)
            try:
                self._output.write(line + "\n")
                self._output.flush()
            except (OSError, ValueError) as exc:
                raise OutputClosedError(f"Cannot write to output: {exc}") from exc
        logger.debug("Sent %s", line)
