"""Persistence for the local ledger, schedules and reconciliation runs."""

from .models import (
    Base,
    Transaction,
    ScheduledReconciliation,
    ReconciliationRun,
)
from .session import (
    get_db,
    get_database_url,
    init_db,
    close_db,
    create_async_engine,
    create_tables,
    get_async_session_factory,
    session_scope,
)
from .repository import (
    TransactionRepository,
    ScheduledReconciliationRepository,
    ReconciliationRunRepository,
)

__all__ = [
    # Models
    "Base",
    "Transaction",
    "ScheduledReconciliation",
    "ReconciliationRun",
    # Session management
    "get_db",
    "get_database_url",
    "init_db",
    "close_db",
    "create_async_engine",
    "create_tables",
    "get_async_session_factory",
    "session_scope",
    # Repositories
    "TransactionRepository",
    "ScheduledReconciliationRepository",
    "ReconciliationRunRepository",
]
