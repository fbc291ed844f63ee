"""Tests for the batch orchestrator."""

import asyncio
import math
from unittest.mock import AsyncMock, patch

import pytest

from payments_recon.reconciliation import (
    BatchJobState,
    BatchOrchestrator,
    CancelToken,
    run_batched,
)


async def echo_batch(items, batch_index):
    """Return one outcome per input item."""
    return [f"done:{item}" for item in items]


class TestRunBatched:
    """Tests for run_batched."""

    @pytest.mark.parametrize("count,batch_size", [(10, 3), (9, 3), (1, 5), (7, 1)])
    async def test_batch_completeness(self, count, batch_size):
        """N items give N outcomes in order and ceil(N/B) progress events."""
        items = list(range(count))
        events = []

        outcomes = await run_batched(items, batch_size, echo_batch, on_progress=events.append)

        assert outcomes == [f"done:{i}" for i in items]
        assert len(events) == math.ceil(count / batch_size)
        processed = [e.processed_items for e in events]
        assert processed == sorted(processed)
        assert processed[-1] == count
        assert events[-1].percent_complete == 100.0

    async def test_progress_payload(self):
        """Progress events carry batch counters and per-batch results."""
        events = []

        await run_batched(["a", "b", "c", "d", "e"], 2, echo_batch, on_progress=events.append)

        first = events[0]
        assert first.total_items == 5
        assert first.total_batches == 3
        assert first.current_batch == 1
        assert first.processed_items == 2
        assert first.percent_complete == 40.0
        assert first.batch_results == ["done:a", "done:b"]
        assert events[-1].current_batch == 3

    async def test_batches_receive_their_index(self):
        """The processing function is called with consecutive batch indexes."""
        seen = []

        async def record_index(items, batch_index):
            seen.append((batch_index, list(items)))
            return items

        await run_batched([1, 2, 3, 4, 5], 2, record_index)

        assert seen == [(0, [1, 2]), (1, [3, 4]), (2, [5])]

    async def test_sync_processing_function(self):
        """A plain function works as well as a coroutine function."""
        outcomes = await run_batched([1, 2, 3], 2, lambda items, index: [i * 10 for i in items])

        assert outcomes == [10, 20, 30]

    async def test_empty_items(self):
        """No items means no calls and no progress events."""
        events = []
        calls = []

        async def apply(items, batch_index):
            calls.append(items)
            return items

        assert await run_batched([], 10, apply, on_progress=events.append) == []
        assert calls == []
        assert events == []

    async def test_errors_propagate_unchanged(self):
        """An exception from the processing function aborts the run."""
        calls = []

        async def failing(items, batch_index):
            calls.append(batch_index)
            if batch_index == 1:
                raise RuntimeError("processor down")
            return items

        with pytest.raises(RuntimeError, match="processor down"):
            await run_batched([1, 2, 3, 4, 5, 6], 2, failing)

        assert calls == [0, 1]

    async def test_invalid_batch_size(self):
        with pytest.raises(ValueError):
            await run_batched([1], 0, echo_batch)


class TestCancellation:
    """Tests for cooperative cancellation."""

    async def test_cancel_after_kth_batch(self):
        """Cancelling in the k-th progress event keeps exactly k batches."""
        token = CancelToken()

        def on_progress(progress):
            if progress.current_batch == 2:
                token.cancel()

        outcomes = await run_batched(
            list(range(10)), 3, echo_batch, on_progress=on_progress, cancel_token=token
        )

        assert outcomes == [f"done:{i}" for i in range(6)]

    async def test_cancel_does_not_interrupt_started_batch(self):
        """A batch that has started runs to completion."""
        orchestrator = BatchOrchestrator(batch_size=2, process_batch_fn=None)

        async def cancel_midway(items, batch_index):
            orchestrator.cancel()
            await asyncio.sleep(0)
            return [i * 2 for i in items]

        orchestrator.process_batch_fn = cancel_midway
        outcomes = await orchestrator.process_items([1, 2, 3, 4])

        assert outcomes == [2, 4]

    async def test_cancel_flag_resets_on_next_run(self):
        """A cancelled orchestrator processes everything on its next run."""
        orchestrator = BatchOrchestrator(batch_size=1, process_batch_fn=echo_batch)
        orchestrator.cancel()

        outcomes = await orchestrator.process_items(["x", "y"])

        assert outcomes == ["done:x", "done:y"]

    async def test_cancelled_run_logs_warning(self, caplog):
        token = CancelToken()
        token.cancel()

        with caplog.at_level("WARNING"):
            outcomes = await run_batched([1, 2], 1, echo_batch, cancel_token=token)

        assert outcomes == []
        assert "cancelled" in caplog.text


class TestEstimation:
    """Tests for ETA reporting."""

    async def test_no_estimate_before_two_batches(self):
        """ETA is absent until at least two batches completed."""
        events = []

        await run_batched(list(range(8)), 2, echo_batch, on_progress=events.append)

        assert events[0].estimated_seconds_remaining is None
        assert all(e.estimated_seconds_remaining is not None for e in events[1:])
        assert events[-1].estimated_seconds_remaining == 0

    async def test_estimate_uses_average_batch_duration(self):
        """ETA is the average batch duration times the batches left."""
        ticks = iter([0.0, 2.0, 10.0, 14.0, 20.0, 20.0])
        events = []
        orchestrator = BatchOrchestrator(
            batch_size=1,
            process_batch_fn=echo_batch,
            on_progress=events.append,
        )

        with patch("payments_recon.reconciliation.batch.monotonic", side_effect=lambda: next(ticks)):
            await orchestrator.process_items(["a", "b", "c"])

        # durations 2 and 4: average 3, one batch left
        assert events[1].estimated_seconds_remaining == pytest.approx(3.0)

    async def test_estimation_can_be_disabled(self):
        events = []
        orchestrator = BatchOrchestrator(
            batch_size=1,
            process_batch_fn=echo_batch,
            on_progress=events.append,
            enable_time_estimation=False,
        )

        await orchestrator.process_items([1, 2, 3])

        assert all(e.estimated_seconds_remaining is None for e in events)

    def test_job_state_estimate(self):
        state = BatchJobState(total_items=10, total_batches=5)
        state.batch_durations = [1.0]
        assert state.estimate_seconds_remaining() is None

        state.batch_durations = [1.0, 3.0]
        assert state.estimate_seconds_remaining() == pytest.approx(6.0)


class TestOrchestratorOptions:
    """Tests for pause and timeout options."""

    async def test_pause_only_between_batches(self):
        """The pause runs between batches, never after the last one."""
        orchestrator = BatchOrchestrator(
            batch_size=1,
            process_batch_fn=echo_batch,
            pause_between_batches=0.5,
        )

        with patch("payments_recon.reconciliation.batch.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            await orchestrator.process_items([1, 2, 3])

        assert mock_sleep.call_count == 2
        mock_sleep.assert_called_with(0.5)

    async def test_batch_timeout(self):
        """A batch exceeding the timeout aborts the run."""
        async def slow(items, batch_index):
            await asyncio.sleep(1)
            return items

        orchestrator = BatchOrchestrator(batch_size=1, process_batch_fn=slow, batch_timeout=0.01)

        with pytest.raises(asyncio.TimeoutError):
            await orchestrator.process_items([1])

    async def test_state_is_cleared_after_run(self):
        observed = []
        orchestrator = BatchOrchestrator(batch_size=1, process_batch_fn=echo_batch)
        orchestrator.on_progress = lambda p: observed.append(orchestrator.state.processed_items)

        await orchestrator.process_items([1, 2])

        assert observed == [1, 2]
        assert orchestrator.state is None
