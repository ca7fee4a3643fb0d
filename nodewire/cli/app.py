"""Main Typer application.

Entry point: ``nodewire`` (configured via pyproject.toml console_scripts).
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from nodewire.config import NodeConfig
from nodewire.core.errors import HandshakeIncompleteError, OutputClosedError
from nodewire.core.node import Node
from nodewire.workloads import WORKLOADS, get_workload

app = typer.Typer(
    name="nodewire",
    help="Nodewire: line-delimited JSON node for distributed systems workloads.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

# stdout is the protocol channel; everything human-facing goes to stderr.
err_console = Console(stderr=True)


def configure_logging(level: str) -> None:
    """Route all logging to stderr through Rich."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False, rich_tracebacks=True)],
        force=True,
    )


@app.command(name="run", help="Run a node on stdin/stdout.")
def run_cmd(
    workload: Optional[str] = typer.Option(None, "--workload", "-w", help="Workload to install."),
    workers: Optional[int] = typer.Option(
        None, "--workers", "-j", min=0, help="Handler threads; 0 handles messages inline."
    ),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", help="Default request timeout in seconds."
    ),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Logging level."),
    strict_handshake: Optional[bool] = typer.Option(
        None,
        "--strict-handshake/--lenient-handshake",
        help="Exit if the first message is not init.",
    ),
) -> None:
    """Run a node until its input closes."""
    overrides = {
        "workload": workload,
        "workers": workers,
        "request_timeout": timeout,
        "log_level": log_level,
        "strict_handshake": strict_handshake,
    }
    settings = NodeConfig(**{k: v for k, v in overrides.items() if v is not None})
    configure_logging(settings.log_level)

    try:
        spec = get_workload(settings.workload)
    except KeyError as exc:
        err_console.print(f"[red]{exc.args[0]}[/red]")
        raise typer.Exit(code=2) from None

    node = Node(
        sys.stdout,
        workers=settings.workers,
        request_timeout=settings.request_timeout,
        strict_handshake=settings.strict_handshake,
    )
    spec.install(node)

    try:
        node.run(sys.stdin)
    except (HandshakeIncompleteError, OutputClosedError) as exc:
        err_console.print(f"[red]Fatal:[/red] {exc}")
        raise typer.Exit(code=1) from None


@app.command(name="workloads", help="List available workloads.")
def workloads_cmd() -> None:
    """List the workloads a node can run and the message types they handle."""
    console = Console()
    table = Table(title="Workloads")
    table.add_column("Name", style="cyan")
    table.add_column("Handles", style="green")
    table.add_column("Description")
    for name, spec in sorted(WORKLOADS.items()):
        table.add_row(name, ", ".join(spec.handles), spec.description)
    console.print(table)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
