"""Nodewire workloads — registry mapping workload name to its descriptor.

Usage::

    from nodewire.workloads import get_workload

    node = Node()
    get_workload("broadcast").install(node)
    node.run()
"""

from __future__ import annotations

from nodewire.workloads import broadcast, counter, echo, unique_ids
from nodewire.workloads.base import Workload

WORKLOADS: dict[str, Workload] = {
    w.name: w
    for w in (echo.WORKLOAD, unique_ids.WORKLOAD, broadcast.WORKLOAD, counter.WORKLOAD)
}


def get_workload(name: str) -> Workload:
    """Return the workload registered under *name*.

    Raises ``KeyError`` if the name is not registered.
    """
    try:
        return WORKLOADS[name]
    except KeyError:
        raise KeyError(
            f"Unknown workload {name!r}. Registered workloads: {sorted(WORKLOADS)}"
        ) from None


__all__ = ["WORKLOADS", "Workload", "get_workload"]
