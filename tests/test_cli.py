"""Tests for the reconciliation CLI."""

import json
from datetime import datetime
from unittest.mock import patch

import pytest

from payments_recon.database import (
    ScheduledReconciliationRepository,
    create_async_engine,
    create_tables,
    get_async_session_factory,
    session_scope,
)
from payments_recon.reconciliation import InMemoryLedgerFetcher
from payments_recon.reconciliation.cli import (
    EXIT_DIFFERENCES,
    EXIT_FAILED,
    EXIT_OK,
    create_parser,
    main,
    parse_cli_datetime,
    run_due_async,
)

from conftest import make_record


@pytest.fixture
def database_url(tmp_path, monkeypatch):
    """File-backed SQLite database shared by consecutive CLI runs."""
    url = f"sqlite+aiosqlite:///{tmp_path / 'recon.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    return url


def serve_remote(records):
    return patch(
        "payments_recon.reconciliation.service.get_ledger_fetcher",
        side_effect=lambda provider: InMemoryLedgerFetcher(records),
    )


RECONCILE_ARGS = ["reconcile", "-c", "btn-1", "-s", "2026-03-01", "-e", "2026-03-07", "-p", "memory"]


class TestParseCliDatetime:
    """Tests for CLI date parsing."""

    def test_bare_end_date_covers_the_day(self):
        assert parse_cli_datetime("2026-03-07", end_of_day=True) == datetime(2026, 3, 7, 23, 59, 59)

    def test_explicit_time_is_kept(self):
        assert parse_cli_datetime("2026-03-07T10:00:00", end_of_day=True) == datetime(2026, 3, 7, 10, 0)

    def test_start_date(self):
        assert parse_cli_datetime("2026-03-01") == datetime(2026, 3, 1)


class TestParser:
    """Tests for argument parsing."""

    def test_reconcile_arguments(self):
        args = create_parser().parse_args(RECONCILE_ARGS + ["--apply", "--batch-size", "10"])

        assert args.command == "reconcile"
        assert args.channel == "btn-1"
        assert args.apply is True
        assert args.batch_size == 10

    def test_frequency_choices(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["next-run", "-f", "hourly"])


class TestNextRunCommand:
    """Tests for the next-run command."""

    def test_prints_next_run(self, capsys):
        code = main([
            "next-run", "-f", "weekly", "--day-of-week", "3", "--hour", "9",
            "--now", "2026-03-04T09:00:00",
        ])

        assert code == EXIT_OK
        assert capsys.readouterr().out.strip() == "2026-03-11T09:00:00"

    def test_invalid_configuration(self):
        assert main(["next-run", "-f", "weekly", "--hour", "9"]) == EXIT_DIFFERENCES

    def test_invalid_now(self):
        assert main(["next-run", "-f", "daily", "--now", "tomorrow"]) == EXIT_DIFFERENCES


def test_no_command_prints_help(capsys):
    assert main([]) == EXIT_DIFFERENCES
    assert "usage" in capsys.readouterr().out.lower()


class TestReconcileCommand:
    """Tests for the reconcile command."""

    def test_invalid_start(self, database_url):
        assert main(["reconcile", "-c", "btn-1", "-s", "soon", "-e", "2026-03-07"]) == EXIT_DIFFERENCES

    def test_differences_then_apply(self, database_url, capsys):
        remote = [make_record("T1"), make_record("T2")]

        with serve_remote(remote):
            assert main(RECONCILE_ARGS) == EXIT_DIFFERENCES
            first = json.loads(capsys.readouterr().out)

            assert main(RECONCILE_ARGS + ["--apply", "--batch-size", "1"]) == EXIT_OK
            applied = json.loads(capsys.readouterr().out)

            assert main(RECONCILE_ARGS + ["--details"]) == EXIT_OK
            clean = json.loads(capsys.readouterr().out)

        assert first["statistics"]["total_missing"] == 2
        assert applied["statistics"]["records_affected"] == 2
        assert clean["statistics"]["total_matched"] == 2
        assert clean["diff"]["matched"] == ["T1", "T2"]

    def test_inverted_window_fails(self, database_url):
        args = ["reconcile", "-c", "btn-1", "-s", "2026-03-07T10:00:00", "-e", "2026-03-01T10:00:00", "-p", "memory"]

        with serve_remote([]):
            assert main(args) == EXIT_FAILED

    def test_unknown_provider_fails(self, database_url, capsys):
        args = ["reconcile", "-c", "btn-1", "-s", "2026-03-01", "-e", "2026-03-07", "-p", "nope"]

        assert main(args) == EXIT_FAILED
        assert capsys.readouterr().out == ""


class TestRunDue:
    """Tests for running due schedules."""

    async def test_runs_due_schedules(self, database_url):
        engine = create_async_engine(database_url)
        await create_tables(engine)
        factory = get_async_session_factory(engine)
        async with session_scope(factory) as session:
            schedule = await ScheduledReconciliationRepository(session).create(
                name="Daily",
                organization_id="org-1",
                payment_channel_id="btn-1",
                frequency="daily",
                hour=6,
                next_run=datetime(2026, 3, 5, 6, 0),
            )
            schedule_id = schedule.id

        with serve_remote([make_record("T1")]):
            code = await run_due_async(now=datetime(2026, 3, 5, 7, 0), database_url=database_url)

        assert code == EXIT_OK
        async with session_scope(factory) as session:
            refreshed = await ScheduledReconciliationRepository(session).get_by_id(schedule_id)
        await engine.dispose()

        assert refreshed.last_run == datetime(2026, 3, 5, 7, 0)
        assert refreshed.last_execution_status == "success"
        assert refreshed.next_run == datetime(2026, 3, 6, 6, 0)

    async def test_nothing_due(self, database_url):
        assert await run_due_async(now=datetime(2026, 3, 5), database_url=database_url) == EXIT_OK
