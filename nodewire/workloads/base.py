"""Workload descriptor shared by every workload module."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ConfigDict

from nodewire.core.node import Node


class Workload(BaseModel):
    """A named bundle of payload models and handlers.

    ``install`` registers the payloads with the node's codec and the
    handlers with its dispatcher, and returns the workload's state object
    (if any) so callers and tests can inspect it.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    handles: list[str]
    install: Callable[[Node], Any]
