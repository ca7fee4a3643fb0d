"""Node configuration — env-driven via pydantic-settings.

Every setting can be overridden with a ``NODEWIRE_*`` environment variable
or a ``.env`` file; ``nodewire run`` options take precedence over both.

Examples
--------
Override via environment::

    export NODEWIRE_WORKLOAD=broadcast
    export NODEWIRE_WORKERS=8
    export NODEWIRE_LOG_LEVEL=DEBUG
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class NodeConfig(BaseSettings):
    """Runtime settings for a single node process."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="NODEWIRE_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Which workload to install (see nodewire.workloads.WORKLOADS)
    workload: str = "echo"

    # Handler pool size; 0 runs handlers inline on the reader
    workers: int = Field(default=4, ge=0)

    # Default ctx.request timeout, seconds
    request_timeout: float = Field(default=1.0, gt=0)

    log_level: str = "INFO"

    # Treat a non-init first message as fatal
    strict_handshake: bool = False
