"""Nodewire: a line-delimited JSON node protocol engine.

A node reads one JSON message per line on stdin and writes one per line on
stdout. The engine owns:
  - Framing and the payload registry (``nodewire.core.codec``)
  - Bind-once identity and monotonic message ids (``nodewire.core.membership``)
  - Request/reply correlation with timeouts (``nodewire.core.correlator``)
  - Handler dispatch by payload type (``nodewire.core.dispatcher``)
  - The handshake-gated node lifecycle (``nodewire.core.node``)

Application logic (echo, unique ids, broadcast, counters) lives in
``nodewire.workloads`` and plugs in through handler registration.
"""

__version__ = "0.1.0"
__description__ = "Line-delimited JSON node protocol engine"

from nodewire.core.node import Node

__all__ = ["Node", "__version__"]
