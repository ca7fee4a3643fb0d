"""Payload dispatch — routes each inbound message to its handler.

Replies (messages with ``in_reply_to``) go to the ``Correlator``. Everything
else is looked up by payload type in the handler table. Handlers receive a
``Context`` and the typed payload, and may answer through ``ctx.reply`` /
``ctx.send`` or by returning ``(recipient, payload)`` pairs.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any, Protocol, runtime_checkable

from nodewire.core.correlator import Correlator
from nodewire.core.errors import UnhandledMessageTypeError
from nodewire.core.membership import Membership
from nodewire.models.envelopes import Body, Envelope
from nodewire.models.payloads import Payload

logger = logging.getLogger(__name__)

Outbound = tuple[str, Payload]


@runtime_checkable
class Handler(Protocol):
    """Anything callable as ``handler(ctx, payload)``.

    The return value may be ``None``, a single ``(recipient, payload)`` pair
    or an iterable of such pairs; each is sent with a fresh message id.
    """

    def __call__(self, ctx: Context, payload: Any) -> Outbound | Iterable[Outbound] | None:
        ...


class Context:
    """What a handler knows about the message it is handling.

    ``reply`` addresses the sender and sets ``in_reply_to`` from the inbound
    ``message_id``; every outbound message gets a fresh id from the
    membership counter.
    """

    def __init__(
        self,
        envelope: Envelope,
        membership: Membership,
        correlator: Correlator,
        emit: Callable[[Envelope], None],
    ) -> None:
        self.envelope = envelope
        self._membership = membership
        self._correlator = correlator
        self._emit = emit

    @property
    def sender(self) -> str:
        return self.envelope.sender

    @property
    def message_id(self) -> int | None:
        return self.envelope.body.message_id

    @property
    def node_id(self) -> str:
        return self._membership.self_id

    @property
    def peers(self) -> frozenset[str]:
        return self._membership.peers

    def reply(self, payload: Payload) -> Envelope:
        """Answer the sender of the inbound message."""
        if self.message_id is None:
            logger.debug(
                "Replying to %s from %s without in_reply_to: inbound had no msg_id",
                self.envelope.payload_type,
                self.sender,
            )
        return self._send(self.sender, payload, in_reply_to=self.message_id)

    def send(self, recipient: str, payload: Payload) -> Envelope:
        """Send *payload* to *recipient* without waiting for an answer."""
        return self._send(recipient, payload)

    def request(self, recipient: str, payload: Payload, timeout: float | None = None) -> Payload:
        """Send *payload* to *recipient* and block until the reply payload arrives."""
        return self._correlator.send_request(recipient, payload, timeout=timeout)

    def _send(self, recipient: str, payload: Payload, in_reply_to: int | None = None) -> Envelope:
        sender = self._membership.self_id
        with self._membership.sequenced():
            envelope = Envelope(
                sender=sender,
                recipient=recipient,
                body=Body(
                    message_id=self._membership.next_message_id(),
                    in_reply_to=in_reply_to,
                    payload=payload,
                ),
            )
            self._emit(envelope)
        return envelope


class Dispatcher:
    """Maps payload types to handlers and invokes them.

    Usage
    -----
    >>> dispatcher = Dispatcher(membership, correlator, emit)
    >>> dispatcher.register("echo", lambda ctx, p: ctx.reply(EchoOk(echo=p.echo)))
    >>> dispatcher.handle(envelope)
    """

    def __init__(
        self,
        membership: Membership,
        correlator: Correlator,
        emit: Callable[[Envelope], None],
    ) -> None:
        self._membership = membership
        self._correlator = correlator
        self._emit = emit
        self._handlers: dict[str, Handler] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, payload_type: str, handler: Handler) -> None:
        """Associate *handler* with *payload_type*. The last registration wins."""
        if payload_type in self._handlers:
            logger.info("Replacing handler for %s", payload_type)
        self._handlers[payload_type] = handler

    def handles(self, payload_type: str) -> bool:
        return payload_type in self._handlers

    @property
    def handlers(self) -> dict[str, Handler]:
        """Return a copy of the handler table."""
        return dict(self._handlers)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def handle(self, envelope: Envelope) -> None:
        """Route *envelope* to the correlator or to its handler.

        Raises
        ------
        UnhandledMessageTypeError
            No handler is registered for the payload type.
        """
        if envelope.body.is_reply:
            self._correlator.resolve(envelope)
            return

        handler = self._handlers.get(envelope.payload_type)
        if handler is None:
            raise UnhandledMessageTypeError(envelope.payload_type)

        ctx = Context(envelope, self._membership, self._correlator, self._emit)
        result = handler(ctx, envelope.payload)
        for recipient, payload in _outbound(result):
            ctx.send(recipient, payload)


def _outbound(result: Any) -> list[Outbound]:
    # An Envelope means the handler already sent via ctx.reply or ctx.send
    if result is None or isinstance(result, Envelope):
        return []
    if isinstance(result, tuple) and len(result) == 2 and isinstance(result[1], Payload):
        return [result]
    return [item for item in result if not isinstance(item, Envelope)]
