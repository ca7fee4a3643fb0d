"""Node identity and message id sequencing.

``Membership`` holds the bind-once ``NodeIdentity`` and the counter that
issues local message ids. The counter is independent of binding: error
replies sent before the handshake still need ids.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager

from nodewire.core.errors import AlreadyBoundError, NotBoundError
from nodewire.models.identity import NodeIdentity

logger = logging.getLogger(__name__)


class Membership:
    """Bind-once identity plus a strictly increasing message id counter.

    Both ``bind`` and ``next_message_id`` are atomic with respect to
    concurrent callers. After ``bind`` the identity is immutable and is
    read without locking.

    Senders take an id and write their line inside ``sequenced()``, so ids
    reach the wire in the order they were issued.
    """

    def __init__(self, first_message_id: int = 0) -> None:
        self._lock = threading.RLock()
        self._identity: NodeIdentity | None = None
        self._next_id = first_message_id

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def bind(self, node_id: str, peers: Iterable[str]) -> NodeIdentity:
        """Bind this node's identity. Raises ``AlreadyBoundError`` on a second call."""
        identity = NodeIdentity(self_id=node_id, peers=frozenset(peers))
        with self._lock:
            if self._identity is not None:
                raise AlreadyBoundError(
                    f"Node is already bound as {self._identity.self_id!r}; "
                    f"refusing to rebind as {node_id!r}"
                )
            self._identity = identity
        logger.info("Bound as %s with %d peer(s)", identity.self_id, len(identity.peers))
        return identity

    @property
    def is_bound(self) -> bool:
        return self._identity is not None

    @property
    def identity(self) -> NodeIdentity:
        if self._identity is None:
            raise NotBoundError("Node identity is not available before the init handshake")
        return self._identity

    @property
    def self_id(self) -> str:
        return self.identity.self_id

    @property
    def peers(self) -> frozenset[str]:
        return self.identity.peers

    # ------------------------------------------------------------------
    # Sequencing
    # ------------------------------------------------------------------

    def next_message_id(self) -> int:
        """Return the next local message id. Ids are never reused."""
        with self._lock:
            message_id = self._next_id
            self._next_id += 1
        return message_id

    @contextmanager
    def sequenced(self) -> Iterator[None]:
        """Hold the counter; ids issued inside are written before anyone else's."""
        with self._lock:
            yield

    @property
    def issued(self) -> int:
        """Return the id the next call to ``next_message_id`` will issue."""
        with self._lock:
            return self._next_id
