"""Token ledger infrastructure."""

from .ledger import InMemoryLedgerStore
from .pg_ledger import PgLedgerStore

__all__ = [
    "InMemoryLedgerStore",
    "PgLedgerStore",
]
