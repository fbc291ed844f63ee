# payments_recon package
__version__ = "0.1.0"

from .errors import ErrorKind, ErrorSeverity, ReconciliationError
from .database import (
    Transaction,
    ScheduledReconciliation,
    ReconciliationRun,
    init_db,
    close_db,
    get_db,
)

from .reconciliation import (
    ReconciliationService,
    ReconciliationReport,
    ReconciliationRequest,
    DiffResult,
    TransactionRecord,
    CancelToken,
    ScheduleConfig,
    diff,
    next_run,
    run_batched,
    get_ledger_fetcher,
)
