"""Request/reply correlation over the unreliable message stream.

``send_request`` registers a ``PendingRequest`` keyed by the fresh message
id, emits the request and blocks the calling handler on a future until the
matching reply (``in_reply_to == message_id``) arrives or the timeout
elapses. Replies are resolved from the reader thread, so many handlers can
wait at once without holding up input. When the waiter itself runs on the
reader, the optional ``pump`` callback keeps input flowing until the reply
is matched.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError

from nodewire.core.errors import RequestCancelledError, RequestTimeoutError, RPCError
from nodewire.core.membership import Membership
from nodewire.models.envelopes import Body, Envelope
from nodewire.models.identity import PendingRequest
from nodewire.models.payloads import Error, Payload

logger = logging.getLogger(__name__)


class Correlator:
    """Matches inbound replies to outstanding requests by message id.

    Parameters
    ----------
    membership:
        Supplies this node's id and fresh message ids.
    emit:
        Writes an outbound envelope.
    default_timeout:
        Seconds to wait when ``send_request`` is called without a timeout.
    pump:
        Called as ``pump(future, deadline)`` before blocking on a reply. It
        may process further input until *future* is done or the monotonic
        *deadline* passes.
    """

    def __init__(
        self,
        membership: Membership,
        emit: Callable[[Envelope], None],
        *,
        default_timeout: float = 1.0,
        pump: Callable[[Future, float], None] | None = None,
    ) -> None:
        self._membership = membership
        self._emit = emit
        self._default_timeout = default_timeout
        self._pump = pump
        self._lock = threading.Lock()
        self._pending: dict[int, PendingRequest] = {}

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def send_request(
        self,
        recipient: str,
        payload: Payload,
        timeout: float | None = None,
    ) -> Payload:
        """Send *payload* to *recipient* and wait for the reply payload.

        Raises
        ------
        RequestTimeoutError
            No reply arrived within *timeout* seconds. The pending entry is
            removed, so a late reply is dropped as unmatched.
        RPCError
            The peer replied with an ``error`` payload.
        RequestCancelledError
            The request was cancelled (e.g. at shutdown) while waiting.
        DecodeError
            The reply arrived but its payload could not be decoded.
        """
        if timeout is None:
            timeout = self._default_timeout

        sender = self._membership.self_id
        with self._membership.sequenced():
            message_id = self._membership.next_message_id()
            pending = PendingRequest(
                message_id=message_id,
                recipient=recipient,
                issued_at=time.monotonic(),
                future=Future(),
            )
            with self._lock:
                self._pending[message_id] = pending

            envelope = Envelope(
                sender=sender,
                recipient=recipient,
                body=Body(message_id=message_id, payload=payload),
            )
            try:
                self._emit(envelope)
            except BaseException:
                self._discard(message_id)
                raise

        deadline = pending.issued_at + timeout
        if self._pump is not None:
            try:
                self._pump(pending.future, deadline)
            except BaseException:
                self._discard(message_id)
                raise
        try:
            reply = pending.future.result(timeout=max(0.0, deadline - time.monotonic()))
        except FutureTimeoutError:
            # The reply may have been matched between the timeout and here.
            if self._discard(message_id):
                logger.warning(
                    "Request %d to %s timed out after %.3fs",
                    message_id,
                    recipient,
                    timeout,
                )
                raise RequestTimeoutError(
                    f"No reply from {recipient} to request {message_id} within {timeout}s"
                ) from None
            reply = pending.future.result()

        if isinstance(reply, Error):
            raise RPCError(reply.code, reply.text)
        return reply

    # ------------------------------------------------------------------
    # Replies
    # ------------------------------------------------------------------

    def resolve(self, envelope: Envelope) -> bool:
        """Complete the pending request answered by *envelope*.

        Returns ``False`` (and logs) when no request is waiting for it,
        which happens after a timeout or for duplicate deliveries.
        """
        in_reply_to = envelope.body.in_reply_to
        if in_reply_to is None:
            return False
        with self._lock:
            pending = self._pending.pop(in_reply_to, None)
        if pending is None:
            logger.warning(
                "Dropping %s from %s in reply to %d: no pending request",
                envelope.payload_type,
                envelope.sender,
                in_reply_to,
            )
            return False

        elapsed = time.monotonic() - pending.issued_at
        logger.debug("Request %d answered by %s in %.3fs", in_reply_to, envelope.sender, elapsed)
        pending.future.set_result(envelope.body.payload)
        return True

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def fail(self, message_id: int, exc: BaseException) -> bool:
        """Fail the waiter for *message_id* with *exc*. Returns ``False`` if none."""
        with self._lock:
            pending = self._pending.pop(message_id, None)
        if pending is None:
            return False
        pending.future.set_exception(exc)
        return True

    def cancel(self, message_id: int) -> bool:
        """Fail the waiter for *message_id* with ``RequestCancelledError``."""
        with self._lock:
            pending = self._pending.get(message_id)
        if pending is None:
            return False
        return self.fail(
            message_id,
            RequestCancelledError(f"Request {message_id} to {pending.recipient} was cancelled"),
        )

    def cancel_all(self) -> int:
        """Cancel every outstanding request. Returns how many were cancelled."""
        with self._lock:
            message_ids = list(self._pending)
        return sum(1 for message_id in message_ids if self.cancel(message_id))

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def is_pending(self, message_id: int) -> bool:
        with self._lock:
            return message_id in self._pending

    def _discard(self, message_id: int) -> bool:
        with self._lock:
            return self._pending.pop(message_id, None) is not None
