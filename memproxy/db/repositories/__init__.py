"""Repository package for database access."""

from .sessions import SqliteSessionRepository
from .steps import SqliteStepRepository
from .drift import SqliteDriftRepository
from .tasks import SqliteTaskRepository
from .ledger import SqliteCaptureLedgerRepository

__all__ = [
    "SqliteSessionRepository",
    "SqliteStepRepository",
    "SqliteDriftRepository",
    "SqliteTaskRepository",
    "SqliteCaptureLedgerRepository",
]
