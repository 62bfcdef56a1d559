"""Port interfaces - layer boundary contracts.

    LedgerStore - durable append-only token ledger (hard dependency)
"""

from src.ports.ledger_port import LedgerStore

__all__ = [
    "LedgerStore",
]
