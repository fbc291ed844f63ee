"""Repository layer for ledger persistence operations."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, List, Iterable

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from ..timeutils import utc_now
from .models import (
    Transaction,
    ScheduledReconciliation,
    ReconciliationRun,
)

logger = logging.getLogger(__name__)


class TransactionRepository:
    """Repository for local ledger transactions."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def list_by_channel(
        self,
        payment_channel_id: str,
        start_time: datetime,
        end_time: datetime,
    ) -> List[Transaction]:
        """List a channel's transactions dated within a time window.

        Args:
            payment_channel_id: Payment channel identifier.
            start_time: Start of the window (inclusive).
            end_time: End of the window (inclusive).

        Returns:
            Transactions ordered by transaction date.
        """
        result = await self.session.execute(
            select(Transaction)
            .where(
                and_(
                    Transaction.payment_channel_id == payment_channel_id,
                    Transaction.transaction_date >= start_time,
                    Transaction.transaction_date <= end_time,
                )
            )
            .order_by(Transaction.transaction_date)
        )
        return list(result.scalars().all())

    async def get_by_transaction_ids(
        self,
        payment_channel_id: str,
        transaction_ids: Iterable[str],
    ) -> Dict[str, Transaction]:
        """Fetch a channel's transactions keyed by processor transaction ID.

        Args:
            payment_channel_id: Payment channel identifier.
            transaction_ids: Processor transaction IDs to look up.

        Returns:
            Mapping of transaction ID to Transaction for the IDs that exist.
        """
        ids = list(transaction_ids)
        if not ids:
            return {}
        result = await self.session.execute(
            select(Transaction).where(
                and_(
                    Transaction.payment_channel_id == payment_channel_id,
                    Transaction.transaction_id.in_(ids),
                )
            )
        )
        return {t.transaction_id: t for t in result.scalars().all()}

    async def create(
        self,
        payment_channel_id: str,
        transaction_id: str,
        amount: Decimal,
        status: str,
        transaction_date: datetime,
        currency: str = "ARS",
        payment_method: str = "other",
        installments: int = 1,
        expected_settlement_date: Optional[datetime] = None,
        settlement_batch_id: Optional[str] = None,
    ) -> Transaction:
        """Insert a new transaction into the local ledger.

        Returns:
            Created Transaction instance.
        """
        transaction = Transaction(
            payment_channel_id=payment_channel_id,
            transaction_id=transaction_id,
            amount=amount,
            currency=currency.upper(),
            status=status,
            payment_method=payment_method,
            installments=installments,
            transaction_date=transaction_date,
            expected_settlement_date=expected_settlement_date,
            settlement_batch_id=settlement_batch_id,
        )
        self.session.add(transaction)
        await self.session.flush()

        logger.debug(f"Created transaction {transaction_id} on channel {payment_channel_id}")
        return transaction

    async def update_reconciled_fields(
        self,
        transaction: Transaction,
        status: str,
        settlement_batch_id: Optional[str],
        expected_settlement_date: Optional[datetime] = None,
    ) -> Transaction:
        """Overwrite the fields the remote ledger is authoritative for.

        Args:
            transaction: Transaction instance to update.
            status: New status value.
            settlement_batch_id: Settlement linkage from the remote ledger.
            expected_settlement_date: Optional new settlement estimate.

        Returns:
            Updated Transaction instance.
        """
        transaction.status = status
        transaction.settlement_batch_id = settlement_batch_id
        if expected_settlement_date is not None:
            transaction.expected_settlement_date = expected_settlement_date
        transaction.updated_at = utc_now()

        await self.session.flush()
        logger.debug(f"Updated transaction {transaction.transaction_id} to {status}")
        return transaction


class ScheduledReconciliationRepository:
    """Repository for recurring reconciliation jobs."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, schedule_id: str) -> Optional[ScheduledReconciliation]:
        result = await self.session.execute(
            select(ScheduledReconciliation).where(ScheduledReconciliation.id == schedule_id)
        )
        return result.scalar_one_or_none()

    async def list(
        self,
        organization_id: Optional[str] = None,
        payment_channel_id: Optional[str] = None,
    ) -> List[ScheduledReconciliation]:
        """List schedules, newest first, optionally filtered by organization or channel."""
        query = select(ScheduledReconciliation)
        if organization_id:
            query = query.where(ScheduledReconciliation.organization_id == organization_id)
        if payment_channel_id:
            query = query.where(ScheduledReconciliation.payment_channel_id == payment_channel_id)

        result = await self.session.execute(
            query.order_by(ScheduledReconciliation.created_at.desc())
        )
        return list(result.scalars().all())

    async def update(
        self,
        schedule: ScheduledReconciliation,
        **fields,
    ) -> ScheduledReconciliation:
        """Overwrite the given columns of a schedule.

        Raises:
            AttributeError: If a field is not a schedule column.
        """
        columns = ScheduledReconciliation.__table__.columns.keys()
        for name, value in fields.items():
            if name not in columns:
                raise AttributeError(f"ScheduledReconciliation has no column {name!r}")
            setattr(schedule, name, value)
        schedule.updated_at = utc_now()

        await self.session.flush()
        logger.info(f"Updated scheduled reconciliation {schedule.id}: {sorted(fields)}")
        return schedule

    async def delete(self, schedule: ScheduledReconciliation) -> None:
        await self.session.delete(schedule)
        await self.session.flush()
        logger.info(f"Deleted scheduled reconciliation {schedule.id}")

    async def create(
        self,
        name: str,
        organization_id: str,
        payment_channel_id: str,
        frequency: str,
        next_run: datetime,
        day_of_week: Optional[int] = None,
        day_of_month: Optional[int] = None,
        hour: int = 0,
        minute: int = 0,
        days_to_include: int = 7,
        is_active: bool = True,
    ) -> ScheduledReconciliation:
        """Create a scheduled reconciliation with a precomputed next run."""
        schedule = ScheduledReconciliation(
            name=name,
            organization_id=organization_id,
            payment_channel_id=payment_channel_id,
            frequency=frequency,
            day_of_week=day_of_week,
            day_of_month=day_of_month,
            hour=hour,
            minute=minute,
            days_to_include=days_to_include,
            is_active=is_active,
            next_run=next_run,
        )
        self.session.add(schedule)
        await self.session.flush()

        logger.info(f"Created scheduled reconciliation {schedule.id} ({frequency}), next run {next_run}")
        return schedule

    async def list_due(self, now: datetime) -> List[ScheduledReconciliation]:
        """List active schedules whose next run is at or before ``now``."""
        result = await self.session.execute(
            select(ScheduledReconciliation)
            .where(
                and_(
                    ScheduledReconciliation.is_active.is_(True),
                    ScheduledReconciliation.next_run <= now,
                )
            )
            .order_by(ScheduledReconciliation.next_run)
        )
        return list(result.scalars().all())

    async def record_execution(
        self,
        schedule: ScheduledReconciliation,
        ran_at: datetime,
        status: str,
        next_run: datetime,
    ) -> ScheduledReconciliation:
        """Store the outcome of a run and the newly computed next run."""
        schedule.last_run = ran_at
        schedule.last_execution_status = status
        schedule.execution_count = (schedule.execution_count or 0) + 1
        schedule.next_run = next_run
        schedule.updated_at = utc_now()

        await self.session.flush()
        return schedule


class ReconciliationRunRepository:
    """Repository for reconciliation run audit records."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        payment_channel_id: str,
        start_date: datetime,
        end_date: datetime,
        status: str,
        records_affected: int = 0,
        total_amount: Decimal = Decimal("0"),
        description: Optional[str] = None,
        organization_id: Optional[str] = None,
        schedule_id: Optional[str] = None,
        run_id: Optional[str] = None,
        completed_at: Optional[datetime] = None,
    ) -> ReconciliationRun:
        """Record the outcome of a reconciliation run."""
        run = ReconciliationRun(
            payment_channel_id=payment_channel_id,
            organization_id=organization_id,
            schedule_id=schedule_id,
            start_date=start_date,
            end_date=end_date,
            status=status,
            records_affected=records_affected,
            total_amount=total_amount,
            description=description,
            completed_at=completed_at or utc_now(),
        )
        if run_id:
            run.id = run_id

        self.session.add(run)
        await self.session.flush()

        logger.info(f"Recorded reconciliation run {run.id}: {status}, {records_affected} records")
        return run

    async def list_by_channel(
        self,
        payment_channel_id: str,
        limit: int = 100,
    ) -> List[ReconciliationRun]:
        """List runs for a channel, newest first."""
        result = await self.session.execute(
            select(ReconciliationRun)
            .where(ReconciliationRun.payment_channel_id == payment_channel_id)
            .order_by(ReconciliationRun.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
