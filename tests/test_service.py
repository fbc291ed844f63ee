"""Tests for the reconciliation service."""

import gc
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import select

from payments_recon.database import (
    ReconciliationRunRepository,
    ScheduledReconciliation,
    ScheduledReconciliationRepository,
    Transaction,
    TransactionRepository,
)
from payments_recon.errors import ErrorKind, ReconciliationError
from payments_recon.reconciliation import (
    ApplyAction,
    CancelToken,
    InMemoryLedgerFetcher,
    LedgerFetcherBase,
    ReconciliationRequest,
    ReconciliationService,
    RunStatus,
    TransactionStatus,
)
from payments_recon.reconciliation.service import _channel_locks, get_channel_lock

from conftest import make_record

CHANNEL = "btn-1"
START = datetime(2026, 3, 1)
END = datetime(2026, 3, 7, 23, 59, 59)


class FailingFetcher(LedgerFetcherBase):
    async def fetch_transactions(self, start_time, end_time):
        raise ReconciliationError(ErrorKind.EXTERNAL_API, "Processor API returned 503")


async def seed(session, transaction_id, status="completed", settlement_batch_id=None,
               transaction_date=datetime(2026, 3, 4, 12, 0), channel=CHANNEL):
    row = await TransactionRepository(session).create(
        payment_channel_id=channel,
        transaction_id=transaction_id,
        amount=Decimal("100.00"),
        status=status,
        payment_method="debit_card",
        transaction_date=transaction_date,
        settlement_batch_id=settlement_batch_id,
    )
    await session.commit()
    return row


@pytest.fixture
def remote_records():
    """Remote side of the T1/T2/T3 scenario."""
    return [
        make_record("T1", TransactionStatus.COMPLETED, "LIQ-1"),
        make_record("T2", TransactionStatus.COMPLETED, "LIQ-1"),
        make_record("T3", TransactionStatus.COMPLETED, "LIQ-1", amount="55.00"),
    ]


@pytest.fixture
async def seeded_session(db_session):
    """Local side of the T1/T2/T3 scenario."""
    await seed(db_session, "T1", "completed", "LIQ-1")
    await seed(db_session, "T2", "pending", None)
    return db_session


def make_request(**overrides) -> ReconciliationRequest:
    params = {
        "payment_channel_id": CHANNEL,
        "organization_id": "org-1",
        "start_time": START,
        "end_time": END,
        "provider": "memory",
    }
    params.update(overrides)
    return ReconciliationRequest(**params)


async def local_rows(session, channel=CHANNEL):
    result = await session.execute(
        select(Transaction)
        .where(Transaction.payment_channel_id == channel)
        .order_by(Transaction.transaction_id)
    )
    return {row.transaction_id: row for row in result.scalars().all()}


class TestComputeDiff:
    """Tests for fetching both ledgers and diffing them."""

    async def test_example_scenario(self, seeded_session, remote_records):
        service = ReconciliationService(seeded_session, InMemoryLedgerFetcher(remote_records))

        result = await service.compute_diff(make_request())

        assert result.missing_ids == ["T3"]
        assert result.mismatched_ids == ["T2"]
        assert result.matched == ["T1"]

    async def test_other_channels_are_ignored(self, db_session, remote_records):
        await seed(db_session, "T1", "completed", "LIQ-1", channel="btn-2")
        service = ReconciliationService(db_session, InMemoryLedgerFetcher(remote_records))

        result = await service.compute_diff(make_request())

        assert result.missing_ids == ["T1", "T2", "T3"]

    async def test_fetch_local_transactions_respects_window(self, db_session):
        await seed(db_session, "in", transaction_date=datetime(2026, 3, 2))
        await seed(db_session, "out", transaction_date=datetime(2026, 2, 2))
        service = ReconciliationService(db_session, InMemoryLedgerFetcher())

        records = await service.fetch_local_transactions(CHANNEL, START, END)

        assert [r.transaction_id for r in records] == ["in"]

    async def test_inverted_window_is_rejected(self, db_session):
        service = ReconciliationService(db_session, InMemoryLedgerFetcher())

        with pytest.raises(ReconciliationError) as exc_info:
            await service.compute_diff(make_request(start_time=END, end_time=START))

        assert exc_info.value.kind is ErrorKind.VALIDATION


class TestRunReconciliation:
    """Tests for full reconciliation runs."""

    async def test_diff_only_run_changes_nothing(self, seeded_session, remote_records):
        service = ReconciliationService(seeded_session, InMemoryLedgerFetcher(remote_records))

        report = await service.run_reconciliation(make_request())

        assert report.status == RunStatus.SUCCESS
        assert report.records_affected == 0
        assert report.total_missing == 1
        assert report.total_mismatched == 1
        assert report.total_matched == 1
        assert report.total_amount == Decimal("155.00")
        rows = await local_rows(seeded_session)
        assert set(rows) == {"T1", "T2"}
        assert rows["T2"].status == "pending"

    async def test_bulk_apply(self, seeded_session, remote_records):
        service = ReconciliationService(seeded_session, InMemoryLedgerFetcher(remote_records))

        report = await service.run_reconciliation(make_request(apply=True))

        assert report.status == RunStatus.SUCCESS
        assert report.records_affected == 2
        actions = {o.transaction_id: o for o in report.outcomes}
        assert actions["T3"].action == ApplyAction.CREATED
        assert actions["T2"].action == ApplyAction.UPDATED
        assert actions["T2"].previous_status == TransactionStatus.PENDING

        rows = await local_rows(seeded_session)
        assert rows["T2"].status == "completed"
        assert rows["T2"].settlement_batch_id == "LIQ-1"
        assert rows["T3"].amount == Decimal("55.00")
        assert rows["T3"].expected_settlement_date == datetime(2026, 3, 5, 12, 0)

        follow_up = await service.compute_diff(make_request())
        assert follow_up.is_clean
        assert follow_up.matched == ["T1", "T2", "T3"]

    async def test_batched_apply_reports_progress(self, seeded_session, remote_records):
        service = ReconciliationService(seeded_session, InMemoryLedgerFetcher(remote_records))
        events = []

        report = await service.run_reconciliation(
            make_request(apply=True, batch_size=1),
            on_progress=events.append,
        )

        assert report.status == RunStatus.SUCCESS
        assert report.records_affected == 2
        assert [e.processed_items for e in events] == [1, 2]
        assert (await local_rows(seeded_session))["T3"].status == "completed"

    async def test_cancelled_batched_apply_is_partial(self, seeded_session, remote_records):
        service = ReconciliationService(seeded_session, InMemoryLedgerFetcher(remote_records))
        token = CancelToken()

        report = await service.run_reconciliation(
            make_request(apply=True, batch_size=1),
            on_progress=lambda progress: token.cancel(),
            cancel_token=token,
        )

        assert report.status == RunStatus.PARTIAL
        assert report.records_affected == 1
        rows = await local_rows(seeded_session)
        assert "T3" in rows
        assert rows["T2"].status == "pending"

    async def test_clean_ledgers_apply_nothing(self, seeded_session):
        remote = [
            make_record("T1", TransactionStatus.COMPLETED, "LIQ-1"),
            make_record("T2", TransactionStatus.PENDING, None),
        ]
        service = ReconciliationService(seeded_session, InMemoryLedgerFetcher(remote))

        report = await service.run_reconciliation(make_request(apply=True))

        assert report.status == RunStatus.SUCCESS
        assert report.records_affected == 0
        assert report.diff.is_clean

    async def test_missing_record_stored_outside_window_is_updated(self, db_session):
        # Stored with a date outside the window, reported inside it remotely
        await seed(db_session, "T9", "pending", transaction_date=datetime(2026, 2, 20))
        remote = [make_record("T9", TransactionStatus.COMPLETED, "LIQ-3")]
        service = ReconciliationService(db_session, InMemoryLedgerFetcher(remote))

        report = await service.run_reconciliation(make_request(apply=True))

        assert report.outcomes[0].action == ApplyAction.UPDATED
        rows = await local_rows(db_session)
        assert len(rows) == 1
        assert rows["T9"].status == "completed"

    async def test_run_is_recorded(self, seeded_session, remote_records):
        service = ReconciliationService(seeded_session, InMemoryLedgerFetcher(remote_records))

        report = await service.run_reconciliation(make_request(apply=True))

        runs = await ReconciliationRunRepository(seeded_session).list_by_channel(CHANNEL)
        assert len(runs) == 1
        assert runs[0].id == report.id
        assert runs[0].status == "success"
        assert runs[0].records_affected == 2
        assert runs[0].organization_id == "org-1"

    async def test_failed_run_is_recorded_and_reraised(self, seeded_session):
        service = ReconciliationService(seeded_session, FailingFetcher())

        with pytest.raises(ReconciliationError) as exc_info:
            await service.run_reconciliation(make_request(apply=True))

        assert exc_info.value.kind is ErrorKind.EXTERNAL_API
        runs = await ReconciliationRunRepository(seeded_session).list_by_channel(CHANNEL)
        assert len(runs) == 1
        assert runs[0].status == "failed"
        assert "503" in runs[0].description

    async def test_failure_during_batches_keeps_committed_batches(
        self, seeded_session, remote_records, monkeypatch
    ):
        service = ReconciliationService(seeded_session, InMemoryLedgerFetcher(remote_records))
        original = service._apply_records
        calls = []

        async def flaky_apply(channel, remote_by_id, transaction_ids):
            calls.append(transaction_ids)
            if len(calls) == 2:
                raise RuntimeError("database went away")
            return await original(channel, remote_by_id, transaction_ids)

        monkeypatch.setattr(service, "_apply_records", flaky_apply)

        with pytest.raises(RuntimeError):
            await service.run_reconciliation(make_request(apply=True, batch_size=1))

        rows = await local_rows(seeded_session)
        assert "T3" in rows
        runs = await ReconciliationRunRepository(seeded_session).list_by_channel(CHANNEL)
        assert runs[0].status == "failed"
        assert runs[0].records_affected == 1

    async def test_channel_lock(self, seeded_session, remote_records):
        service = ReconciliationService(
            seeded_session,
            InMemoryLedgerFetcher(remote_records),
            use_channel_locks=True,
        )

        report = await service.run_reconciliation(make_request())

        assert report.status == RunStatus.SUCCESS
        assert get_channel_lock("org-1", CHANNEL) is get_channel_lock("org-1", CHANNEL)
        assert get_channel_lock("org-1", CHANNEL) is not get_channel_lock("org-2", CHANNEL)
        assert not get_channel_lock("org-1", CHANNEL).locked()

    def test_unused_channel_locks_are_dropped(self):
        lock = get_channel_lock("org-9", CHANNEL)
        assert _channel_locks.get(("org-9", CHANNEL)) is lock

        del lock
        gc.collect()

        assert ("org-9", CHANNEL) not in _channel_locks

    async def test_unknown_provider_is_a_validation_error(self, seeded_session):
        service = ReconciliationService(seeded_session)

        with pytest.raises(ReconciliationError) as exc_info:
            await service.run_reconciliation(make_request(provider="nope"))

        assert exc_info.value.kind is ErrorKind.VALIDATION
        runs = await ReconciliationRunRepository(seeded_session).list_by_channel(CHANNEL)
        assert runs[0].status == "failed"


class TestRunScheduled:
    """Tests for scheduled runs."""

    @pytest.fixture
    async def schedule(self, db_session):
        schedule = await ScheduledReconciliationRepository(db_session).create(
            name="Weekly check",
            organization_id="org-1",
            payment_channel_id=CHANNEL,
            frequency="weekly",
            day_of_week=3,
            hour=9,
            next_run=datetime(2026, 3, 4, 9, 0),
        )
        await db_session.commit()
        return schedule

    async def test_runs_window_and_advances_schedule(self, db_session, schedule):
        remote = [
            make_record("recent", transaction_date=datetime(2026, 3, 1)),
            make_record("old", transaction_date=datetime(2026, 2, 20)),
        ]
        service = ReconciliationService(db_session, InMemoryLedgerFetcher(remote))
        now = datetime(2026, 3, 4, 9, 0)

        report = await service.run_scheduled(schedule.id, now=now)

        assert report.status == RunStatus.SUCCESS
        assert report.start_time == datetime(2026, 2, 25, 9, 0)
        assert report.end_time == now
        assert set(await local_rows(db_session)) == {"recent"}

        assert schedule.last_run == now
        assert schedule.execution_count == 1
        assert schedule.last_execution_status == "success"
        assert schedule.next_run == datetime(2026, 3, 11, 9, 0)

        runs = await ReconciliationRunRepository(db_session).list_by_channel(CHANNEL)
        assert runs[0].schedule_id == schedule.id

    async def test_failed_run_still_advances_schedule(self, db_session, schedule):
        service = ReconciliationService(db_session, FailingFetcher())

        with pytest.raises(ReconciliationError):
            await service.run_scheduled(schedule.id, now=datetime(2026, 3, 4, 9, 0))

        stored = await db_session.get(ScheduledReconciliation, schedule.id)
        assert stored.execution_count == 1
        assert stored.last_execution_status == "failed"
        assert stored.next_run == datetime(2026, 3, 11, 9, 0)

    async def test_unknown_schedule(self, db_session):
        service = ReconciliationService(db_session, InMemoryLedgerFetcher())

        with pytest.raises(ReconciliationError) as exc_info:
            await service.run_scheduled("missing")

        assert exc_info.value.kind is ErrorKind.NOT_FOUND

    async def test_inactive_schedule(self, db_session, schedule):
        schedule.is_active = False
        await db_session.commit()
        service = ReconciliationService(db_session, InMemoryLedgerFetcher())

        with pytest.raises(ReconciliationError) as exc_info:
            await service.run_scheduled(schedule.id)

        assert exc_info.value.kind is ErrorKind.VALIDATION

    async def test_due_schedules(self, db_session, schedule):
        repo = ScheduledReconciliationRepository(db_session)

        assert await repo.list_due(datetime(2026, 3, 4, 8, 59)) == []
        assert [s.id for s in await repo.list_due(datetime(2026, 3, 4, 9, 0))] == [schedule.id]
