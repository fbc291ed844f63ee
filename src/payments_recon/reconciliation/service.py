"""Service layer for reconciliation jobs."""

import os
import asyncio
import uuid
import logging
import weakref
from contextlib import nullcontext
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import (
    TransactionRepository,
    ScheduledReconciliationRepository,
    ReconciliationRunRepository,
)
from ..errors import ErrorKind, ReconciliationError
from ..timeutils import to_naive_utc, utc_now
from .adapters import expected_settlement_date, from_orm, parse_status
from .batch import CancelToken, ProgressCallback, run_batched
from .ledger_client import LedgerFetcherBase, get_ledger_fetcher
from .matcher import ReconciliationMatcher
from .models import (
    ApplyAction,
    ApplyOutcome,
    BatchProgress,
    DiffResult,
    ReconciliationReport,
    ReconciliationRequest,
    RunStatus,
    TransactionRecord,
)
from .schedule import ScheduleConfig, next_run

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50

# Entries disappear once no run holds their lock
_channel_locks: "weakref.WeakValueDictionary[Tuple[Optional[str], str], asyncio.Lock]" = (
    weakref.WeakValueDictionary()
)


def get_channel_lock(organization_id: Optional[str], payment_channel_id: str) -> asyncio.Lock:
    """Return the process-wide lock serializing runs for one channel.

    Callers must keep a reference to the lock for as long as they use it.
    """
    key = (organization_id, payment_channel_id)
    lock = _channel_locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _channel_locks[key] = lock
    return lock


class ReconciliationService:
    """Service for executing and recording reconciliation jobs."""

    def __init__(
        self,
        session: AsyncSession,
        ledger_fetcher: Optional[LedgerFetcherBase] = None,
        batch_size: Optional[int] = None,
        pause_between_batches: Optional[float] = None,
        use_channel_locks: bool = False,
    ):
        """Initialize the reconciliation service.

        Args:
            session: Async database session.
            ledger_fetcher: Remote ledger fetcher. When omitted one is created
                per run from the request's provider and closed afterwards.
            batch_size: Default batch size for batched applies. Falls back
                to the RECON_BATCH_SIZE env var.
            pause_between_batches: Seconds between batches. Falls back to
                RECON_BATCH_PAUSE.
            use_channel_locks: Serialize runs per (organization, channel)
                within this process.
        """
        self.session = session
        self.transaction_repo = TransactionRepository(session)
        self.schedule_repo = ScheduledReconciliationRepository(session)
        self.run_repo = ReconciliationRunRepository(session)
        self.matcher = ReconciliationMatcher()
        self._ledger_fetcher = ledger_fetcher
        self.batch_size = batch_size or int(os.getenv("RECON_BATCH_SIZE", DEFAULT_BATCH_SIZE))
        if pause_between_batches is None:
            pause_between_batches = float(os.getenv("RECON_BATCH_PAUSE", "0"))
        self.pause_between_batches = pause_between_batches
        self.use_channel_locks = use_channel_locks

    async def fetch_local_transactions(
        self,
        payment_channel_id: str,
        start_time: datetime,
        end_time: datetime,
    ) -> List[TransactionRecord]:
        """Fetch a channel's local ledger records for the window.

        Returns:
            Records normalized for the matcher.
        """
        rows = await self.transaction_repo.list_by_channel(
            payment_channel_id,
            to_naive_utc(start_time),
            to_naive_utc(end_time),
        )
        records = [from_orm(row) for row in rows]
        logger.info(f"Fetched {len(records)} local transactions for channel {payment_channel_id}")
        return records

    async def fetch_remote_transactions(
        self,
        start_time: datetime,
        end_time: datetime,
        provider: str = "clicpago",
    ) -> List[TransactionRecord]:
        """Fetch the processor's records for the window."""
        if self._ledger_fetcher is not None:
            return await self._ledger_fetcher.fetch_transactions(start_time, end_time)

        async with get_ledger_fetcher(provider) as fetcher:
            return await fetcher.fetch_transactions(start_time, end_time)

    async def _fetch_and_diff(
        self,
        request: ReconciliationRequest,
    ) -> Tuple[List[TransactionRecord], List[TransactionRecord], DiffResult]:
        start_time = to_naive_utc(request.start_time)
        end_time = to_naive_utc(request.end_time)
        if start_time > end_time:
            raise ReconciliationError(
                ErrorKind.VALIDATION,
                "start_time must be before end_time",
                details={"start_time": start_time.isoformat(), "end_time": end_time.isoformat()},
            )

        local = await self.fetch_local_transactions(request.payment_channel_id, start_time, end_time)
        remote = await self.fetch_remote_transactions(start_time, end_time, request.provider)
        return local, remote, self.matcher.diff(local, remote)

    async def compute_diff(self, request: ReconciliationRequest) -> DiffResult:
        """Compare the local ledger against the processor for the window.

        Raises:
            ReconciliationError: On invalid windows or fetch failures.
        """
        _, _, result = await self._fetch_and_diff(request)
        return result

    async def _apply_records(
        self,
        payment_channel_id: str,
        remote_by_id: Dict[str, TransactionRecord],
        transaction_ids: List[str],
    ) -> List[ApplyOutcome]:
        existing = await self.transaction_repo.get_by_transaction_ids(
            payment_channel_id, transaction_ids
        )
        outcomes: List[ApplyOutcome] = []

        for transaction_id in transaction_ids:
            remote = remote_by_id.get(transaction_id)
            if remote is None:
                continue

            row = existing.get(transaction_id)
            if row is None:
                await self.transaction_repo.create(
                    payment_channel_id=payment_channel_id,
                    transaction_id=remote.transaction_id,
                    amount=remote.amount,
                    status=remote.status.value,
                    transaction_date=remote.transaction_date,
                    currency=remote.currency,
                    payment_method=remote.payment_method.value,
                    installments=remote.installments,
                    expected_settlement_date=(
                        remote.expected_settlement_date
                        or expected_settlement_date(remote.transaction_date, remote.payment_method)
                    ),
                    settlement_batch_id=remote.settlement_batch_id,
                )
                outcomes.append(ApplyOutcome(
                    transaction_id=transaction_id,
                    action=ApplyAction.CREATED,
                    new_status=remote.status,
                ))
            else:
                # Row can exist outside the reconciled window; update it in place
                previous_status = parse_status(row.status)
                await self.transaction_repo.update_reconciled_fields(
                    row,
                    status=remote.status.value,
                    settlement_batch_id=remote.settlement_batch_id,
                    expected_settlement_date=remote.expected_settlement_date,
                )
                outcomes.append(ApplyOutcome(
                    transaction_id=transaction_id,
                    action=ApplyAction.UPDATED,
                    previous_status=previous_status,
                    new_status=remote.status,
                ))

        return outcomes

    async def apply_diff(
        self,
        payment_channel_id: str,
        result: DiffResult,
    ) -> List[ApplyOutcome]:
        """Apply a whole diff to the local ledger in one pass.

        Missing records are inserted; mismatched records take the processor's
        status, settlement batch and expected settlement date.

        Returns:
            One outcome per actionable record.
        """
        outcomes = await self._apply_records(
            payment_channel_id,
            result.remote_index(),
            result.actionable_ids,
        )
        logger.info(f"Applied {len(outcomes)} changes to channel {payment_channel_id}")
        return outcomes

    async def apply_diff_batched(
        self,
        payment_channel_id: str,
        result: DiffResult,
        batch_size: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> List[ApplyOutcome]:
        """Apply a diff in batches, committing after each batch.

        Returns:
            Outcomes of the batches that ran; fewer than the actionable
            records when cancelled.
        """
        remote_by_id = result.remote_index()

        async def apply_batch(transaction_ids: List[str], batch_index: int) -> List[ApplyOutcome]:
            outcomes = await self._apply_records(payment_channel_id, remote_by_id, transaction_ids)
            await self.session.commit()
            return outcomes

        return await run_batched(
            result.actionable_ids,
            batch_size or self.batch_size,
            apply_batch,
            on_progress=on_progress,
            cancel_token=cancel_token,
            pause_between_batches=self.pause_between_batches,
        )

    async def _record_run(
        self,
        report: ReconciliationReport,
        schedule_id: Optional[str] = None,
    ) -> None:
        await self.run_repo.create(
            run_id=report.id,
            payment_channel_id=report.payment_channel_id,
            organization_id=report.organization_id,
            schedule_id=schedule_id,
            start_date=to_naive_utc(report.start_time),
            end_date=to_naive_utc(report.end_time),
            status=report.status.value,
            records_affected=report.records_affected,
            total_amount=report.total_amount,
            description=report.error_message,
            completed_at=report.completed_at,
        )

    async def run_reconciliation(
        self,
        request: ReconciliationRequest,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancelToken] = None,
        schedule_id: Optional[str] = None,
    ) -> ReconciliationReport:
        """Execute a reconciliation job and record it.

        The diff is applied when ``request.apply`` is set, in batches when
        ``request.batch_size`` is given. The run is recorded as ``success``
        when everything actionable was applied (or nothing was), ``partial``
        when a batched apply was cancelled, and ``failed`` on error.

        Args:
            request: Reconciliation request parameters.
            on_progress: Progress callback for batched applies.
            cancel_token: Cancels a batched apply between batches.
            schedule_id: Schedule that triggered the run, if any.

        Returns:
            ReconciliationReport with results.

        Raises:
            ReconciliationError: Re-raised after the failed run is recorded.
        """
        report = ReconciliationReport(
            id=str(uuid.uuid4()),
            payment_channel_id=request.payment_channel_id,
            organization_id=request.organization_id,
            provider=request.provider,
            start_time=request.start_time,
            end_time=request.end_time,
            applied=request.apply,
        )

        logger.info(
            f"Starting reconciliation job {report.id} for channel {request.payment_channel_id} "
            f"from {request.start_time} to {request.end_time}"
        )

        lock = (
            get_channel_lock(request.organization_id, request.payment_channel_id)
            if self.use_channel_locks else nullcontext()
        )
        async with lock:
            applied: List[ApplyOutcome] = []

            def track_progress(progress: BatchProgress) -> None:
                applied.extend(progress.batch_results or [])
                if on_progress:
                    on_progress(progress)

            try:
                local, remote, result = await self._fetch_and_diff(request)
                report.diff = result
                report.total_local_records = len(local)
                report.total_remote_records = len(remote)
                report.total_missing = len(result.missing)
                report.total_mismatched = len(result.mismatched)
                report.total_matched = len(result.matched)
                report.total_amount = result.total_amount

                if request.apply and not result.is_clean:
                    if request.batch_size:
                        outcomes = await self.apply_diff_batched(
                            request.payment_channel_id,
                            result,
                            batch_size=request.batch_size,
                            on_progress=track_progress,
                            cancel_token=cancel_token,
                        )
                    else:
                        outcomes = await self.apply_diff(request.payment_channel_id, result)
                    report.outcomes = outcomes
                    report.records_affected = len(outcomes)
                    if len(outcomes) < len(result.actionable_ids):
                        report.status = RunStatus.PARTIAL

                report.completed_at = utc_now()

            except Exception as e:
                logger.error(f"Reconciliation job {report.id} failed: {e}")
                await self.session.rollback()
                report.status = RunStatus.FAILED
                report.error_message = str(e)
                report.outcomes = applied
                report.records_affected = len(applied)
                report.completed_at = utc_now()
                await self._record_run(report, schedule_id)
                await self.session.commit()
                raise

            await self._record_run(report, schedule_id)

        logger.info(
            f"Reconciliation job {report.id} {report.status.value}: "
            f"{report.total_matched} matched, {report.total_missing} missing, "
            f"{report.total_mismatched} mismatched, {report.records_affected} applied"
        )
        return report

    async def run_scheduled(
        self,
        schedule_id: str,
        now: Optional[datetime] = None,
    ) -> ReconciliationReport:
        """Run a scheduled reconciliation and advance its schedule.

        The window covers the schedule's ``days_to_include`` days up to
        ``now``. Differences are always applied.

        Raises:
            ReconciliationError: If the schedule does not exist or is inactive,
                or the run fails. A failed run still advances the schedule.
        """
        schedule = await self.schedule_repo.get_by_id(schedule_id)
        if schedule is None:
            raise ReconciliationError(
                ErrorKind.NOT_FOUND,
                f"Scheduled reconciliation {schedule_id} not found",
            )
        if not schedule.is_active:
            raise ReconciliationError(
                ErrorKind.VALIDATION,
                f"Scheduled reconciliation {schedule_id} is inactive",
            )

        now = to_naive_utc(now or utc_now())
        try:
            config = ScheduleConfig(
                frequency=schedule.frequency,
                day_of_week=schedule.day_of_week,
                day_of_month=schedule.day_of_month,
                hour=schedule.hour,
                minute=schedule.minute,
            )
        except ValidationError as e:
            raise ReconciliationError(
                ErrorKind.CONFIGURATION,
                f"Scheduled reconciliation {schedule_id} has an invalid recurrence",
                details={"errors": e.errors(include_url=False, include_context=False)},
            ) from e
        request = ReconciliationRequest(
            payment_channel_id=schedule.payment_channel_id,
            organization_id=schedule.organization_id,
            start_time=now - timedelta(days=schedule.days_to_include),
            end_time=now,
            apply=True,
            batch_size=self.batch_size,
        )
        following = next_run(config, now)

        try:
            report = await self.run_reconciliation(request, schedule_id=schedule_id)
        except Exception:
            await self.session.refresh(schedule)
            await self.schedule_repo.record_execution(
                schedule, ran_at=now, status=RunStatus.FAILED.value, next_run=following
            )
            await self.session.commit()
            raise

        await self.schedule_repo.record_execution(
            schedule, ran_at=now, status=report.status.value, next_run=following
        )
        logger.info(f"Schedule {schedule_id} ran ({report.status.value}), next run {following}")
        return report
