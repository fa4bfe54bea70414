"""Agent pipeline workflow ledger.

Tracks each feature/issue of the agent pipeline through a fixed phase graph
with optimistic concurrency, an append-only transition history and
idempotent mirroring of phases onto GitHub issue labels.
"""

__version__ = "0.1.0"
