"""Nodewire CLI — Typer-based command-line interface.

Provides the ``nodewire`` command: ``run`` starts a node on stdin/stdout and
``workloads`` lists what can be installed. Diagnostics go to stderr through
Rich, since stdout carries the protocol.
"""
