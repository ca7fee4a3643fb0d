"""Nodewire engine — codec, membership, correlation, dispatch and the node lifecycle."""
