from .ledger import Ledger
from .records import (
    ActiveJob,
    QueueEntry,
    RecordFormatError,
    TerminalRecord,
    TerminalStatus,
)
from .store import COLLECTIONS, FileLedgerStore, LedgerStore, MemoryLedgerStore

__all__ = [
    "Ledger",
    "ActiveJob",
    "QueueEntry",
    "RecordFormatError",
    "TerminalRecord",
    "TerminalStatus",
    "COLLECTIONS",
    "FileLedgerStore",
    "LedgerStore",
    "MemoryLedgerStore",
]
