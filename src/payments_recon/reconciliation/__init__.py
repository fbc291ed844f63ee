"""Reconciliation of the local payments ledger against a processor's ledger.

Features:
- Fetch a processor's transactions for a time window
- Partition them into missing, mismatched and matched against local records
- Apply the differences in cancellable, progress-reporting batches
- Compute next run times for recurring reconciliation jobs
"""

from .models import (
    TransactionStatus,
    PaymentMethod,
    RunStatus,
    ApplyAction,
    TransactionRecord,
    MismatchedRecord,
    DiffResult,
    BatchProgress,
    ApplyOutcome,
    ReconciliationRequest,
    ReconciliationReport,
)
from .matcher import ReconciliationMatcher, diff
from .batch import BatchOrchestrator, BatchJobState, CancelToken, run_batched
from .schedule import Frequency, ScheduleConfig, next_run
from .adapters import expected_settlement_date, from_orm, from_remote_payload
from .ledger_client import (
    LedgerFetcherBase,
    LedgerSession,
    ClicPagoFetcher,
    InMemoryLedgerFetcher,
    get_ledger_fetcher,
)
from .service import ReconciliationService

__all__ = [
    # Models
    "TransactionStatus",
    "PaymentMethod",
    "RunStatus",
    "ApplyAction",
    "TransactionRecord",
    "MismatchedRecord",
    "DiffResult",
    "BatchProgress",
    "ApplyOutcome",
    "ReconciliationRequest",
    "ReconciliationReport",
    # Core
    "ReconciliationMatcher",
    "diff",
    "BatchOrchestrator",
    "BatchJobState",
    "CancelToken",
    "run_batched",
    "Frequency",
    "ScheduleConfig",
    "next_run",
    # Adapters
    "expected_settlement_date",
    "from_orm",
    "from_remote_payload",
    # Ledger fetchers
    "LedgerFetcherBase",
    "LedgerSession",
    "ClicPagoFetcher",
    "InMemoryLedgerFetcher",
    "get_ledger_fetcher",
    # Service
    "ReconciliationService",
]
