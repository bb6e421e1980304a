"""Shared test doubles: memory backends, ledger and chain."""

from __future__ import annotations

from cadenza.chain.memory import MemoryChain
from cadenza.ledger.memory import MemoryLedger, ScriptedTask
from cadenza.persistence.memory_backend import MemoryCacheBackend, MemoryFileStore

__all__ = [
    "MemoryCacheBackend",
    "MemoryChain",
    "MemoryFileStore",
    "MemoryLedger",
    "ScriptedTask",
]
