"""Batch processing for applying large reconciliation diffs.

Items are split into fixed-size chunks that are handed, one at a time, to a
caller supplied processing function. After every chunk a ``BatchProgress``
event is emitted. Processing can be cancelled cooperatively; the flag is only
checked between chunks, so a chunk that has started always runs to completion.

Example:
    orchestrator = BatchOrchestrator(
        batch_size=50,
        process_batch_fn=apply_chunk,
        on_progress=lambda p: print(p.percent_complete),
    )
    outcomes = await orchestrator.process_items(transaction_ids)
"""

import asyncio
import inspect
import logging
import math
from time import monotonic
from dataclasses import dataclass, field
from typing import (
    Awaitable,
    Callable,
    Generic,
    List,
    Optional,
    Sequence,
    TypeVar,
    Union,
)

from .models import BatchProgress

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

ProcessBatchFn = Callable[[List[T], int], Union[Awaitable[List[R]], List[R]]]
ProgressCallback = Callable[[BatchProgress], None]


class CancelToken:
    """Advisory cancellation flag that can be shared with the caller."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class BatchJobState:
    """Mutable state of a single ``process_items`` invocation."""
    total_items: int
    total_batches: int
    processed_items: int = 0
    current_batch: int = 0
    batch_durations: List[float] = field(default_factory=list)
    cancelled: bool = False

    @property
    def completed_batches(self) -> int:
        return len(self.batch_durations)

    @property
    def percent_complete(self) -> float:
        if self.total_items == 0:
            return 100.0
        return self.processed_items / self.total_items * 100

    def estimate_seconds_remaining(self) -> Optional[float]:
        """Average batch duration times batches left; needs two samples."""
        if self.completed_batches < 2:
            return None
        average = sum(self.batch_durations) / len(self.batch_durations)
        return average * (self.total_batches - self.completed_batches)


class BatchOrchestrator(Generic[T, R]):
    """Sequentially process items in fixed-size batches."""

    def __init__(
        self,
        batch_size: int,
        process_batch_fn: ProcessBatchFn,
        on_progress: Optional[ProgressCallback] = None,
        pause_between_batches: float = 0.0,
        enable_time_estimation: bool = True,
        batch_timeout: Optional[float] = None,
    ):
        """Initialize the orchestrator.

        Args:
            batch_size: Number of items per batch. Must be at least 1.
            process_batch_fn: Called with ``(batch_items, batch_index)``. May be
                a coroutine function or a plain function.
            on_progress: Called with a ``BatchProgress`` after every batch.
            pause_between_batches: Seconds to sleep between batches, giving
                the event loop a chance to run other tasks.
            enable_time_estimation: Report an ETA once two batches are done.
            batch_timeout: Optional per-batch timeout in seconds. A timeout
                raises ``asyncio.TimeoutError`` and aborts the run.

        Raises:
            ValueError: If batch_size is smaller than 1.
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")
        self.batch_size = batch_size
        self.process_batch_fn = process_batch_fn
        self.on_progress = on_progress
        self.pause_between_batches = pause_between_batches
        self.enable_time_estimation = enable_time_estimation
        self.batch_timeout = batch_timeout
        self._cancelled = False
        self._cancel_token: Optional[CancelToken] = None
        self._state: Optional[BatchJobState] = None

    def cancel(self) -> None:
        """Request cancellation. Takes effect before the next batch starts."""
        self._cancelled = True
        if self._cancel_token is not None:
            self._cancel_token.cancel()

    @property
    def is_cancelled(self) -> bool:
        if self._cancel_token is not None and self._cancel_token.cancelled:
            return True
        return self._cancelled

    @property
    def state(self) -> Optional[BatchJobState]:
        """State of the run in progress, ``None`` when idle."""
        return self._state

    async def _run_batch(self, batch_items: List[T], batch_index: int) -> List[R]:
        result = self.process_batch_fn(batch_items, batch_index)
        if inspect.isawaitable(result):
            if self.batch_timeout is not None:
                result = await asyncio.wait_for(result, timeout=self.batch_timeout)
            else:
                result = await result
        return list(result)

    async def process_items(
        self,
        items: Sequence[T],
        cancel_token: Optional[CancelToken] = None,
    ) -> List[R]:
        """Process all items batch by batch.

        Args:
            items: Items to process, in order.
            cancel_token: Optional shared token; cancelling it has the same
                effect as calling ``cancel()``.

        Returns:
            Results of all completed batches, in input order. When cancelled,
            only the batches that finished before the cancellation.
        """
        items = list(items)
        if not items:
            return []

        self._cancelled = False
        self._cancel_token = cancel_token
        total_batches = math.ceil(len(items) / self.batch_size)
        state = BatchJobState(total_items=len(items), total_batches=total_batches)
        self._state = state
        results: List[R] = []

        try:
            for batch_index in range(total_batches):
                if self.is_cancelled:
                    state.cancelled = True
                    logger.warning(
                        f"Batch processing cancelled after {batch_index}/{total_batches} "
                        f"batches ({state.processed_items}/{state.total_items} items)"
                    )
                    break

                start = batch_index * self.batch_size
                end = min(start + self.batch_size, len(items))
                state.current_batch = batch_index

                batch_started = monotonic()
                batch_results = await self._run_batch(items[start:end], batch_index)
                state.batch_durations.append(monotonic() - batch_started)

                results.extend(batch_results)
                state.processed_items = end

                logger.debug(
                    f"Batch {batch_index + 1}/{total_batches} done: "
                    f"{len(batch_results)} results"
                )

                if self.on_progress:
                    self.on_progress(BatchProgress(
                        total_items=state.total_items,
                        processed_items=state.processed_items,
                        current_batch=batch_index + 1,
                        total_batches=total_batches,
                        percent_complete=state.percent_complete,
                        estimated_seconds_remaining=(
                            state.estimate_seconds_remaining()
                            if self.enable_time_estimation else None
                        ),
                        batch_results=batch_results,
                    ))

                if self.pause_between_batches > 0 and batch_index < total_batches - 1:
                    await asyncio.sleep(self.pause_between_batches)
        finally:
            self._state = None
            self._cancel_token = None

        return results


async def run_batched(
    items: Sequence[T],
    batch_size: int,
    apply: ProcessBatchFn,
    on_progress: Optional[ProgressCallback] = None,
    cancel_token: Optional[CancelToken] = None,
    pause_between_batches: float = 0.0,
) -> List[R]:
    """Functional form of ``BatchOrchestrator.process_items``.

    Errors raised by ``apply`` propagate unchanged.
    """
    orchestrator: BatchOrchestrator = BatchOrchestrator(
        batch_size=batch_size,
        process_batch_fn=apply,
        on_progress=on_progress,
        pause_between_batches=pause_between_batches,
    )
    return await orchestrator.process_items(items, cancel_token=cancel_token)
