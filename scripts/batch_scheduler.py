#!/usr/bin/env python3
"""
Batch scheduler for per-address work.

Walks the input list in fixed-size batches, one address at a time, pausing
between addresses and between batches so the shared Etherscan rate limit is
never exceeded. A failing address is logged and skipped; it never stops the
batch or the run.

States:
    IDLE -> FETCHING_ADDRESS <-> BACKOFF -> BETWEEN_BATCHES -> ... -> DONE

Waiting only happens in BACKOFF (retry backoff and request pacing, entered
through backoff_sleep) and BETWEEN_BATCHES.
"""

import logging
import signal
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Generic, List, Optional, Sequence, TypeVar

from settings import RunConfig

log = logging.getLogger(__name__)

T = TypeVar("T")


class SchedulerState(Enum):
    IDLE = "idle"
    FETCHING_ADDRESS = "fetching_address"
    BACKOFF = "backoff"
    BETWEEN_BATCHES = "between_batches"
    DONE = "done"


@dataclass
class BatchRunSummary(Generic[T]):
    total: int = 0
    processed: int = 0
    failed: List[T] = field(default_factory=list)
    batches_completed: int = 0
    cancelled: bool = False

    @property
    def succeeded(self) -> int:
        return self.processed - len(self.failed)


def _label(item) -> str:
    return str(getattr(item, "address", item))


class BatchScheduler:
    """Sequential batched driver with pacing and failure isolation."""

    def __init__(self, config: RunConfig, sleep: Callable[[float], None] = time.sleep):
        self.batch_size = config.batch_size
        self.batch_delay = config.batch_delay
        self.request_delay = config.request_delay
        self._sleep = sleep
        self._cancel = threading.Event()
        self.state = SchedulerState.IDLE

    def cancel(self):
        """Stop at the next address boundary."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def backoff_sleep(self, seconds: float):
        """Rate-limit wait. Handed to the client and fetcher as their sleep."""
        previous = self.state
        self.state = SchedulerState.BACKOFF
        try:
            self._sleep(seconds)
        finally:
            self.state = previous

    def run(self, items: Sequence[T], process: Callable[[T], None],
            on_batch_complete: Optional[Callable[[int, int], None]] = None) -> BatchRunSummary:
        """
        Call process(item) for every item, in order.

        on_batch_complete(batch_number, total_batches) runs after every batch,
        including a batch cut short by cancel(), so partial output can be
        flushed.
        """
        summary = BatchRunSummary(total=len(items))
        total_batches = (len(items) + self.batch_size - 1) // self.batch_size
        self.state = SchedulerState.IDLE

        log.info("Processing %d addresses in batches of %d with %.1fs delay between batches",
                 len(items), self.batch_size, self.batch_delay)

        for batch_index, start in enumerate(range(0, len(items), self.batch_size)):
            if self.cancelled:
                summary.cancelled = True
                break
            batch = items[start:start + self.batch_size]
            batch_number = batch_index + 1
            log.info("=== Processing batch %d/%d (%d addresses) ===",
                     batch_number, total_batches, len(batch))

            for position, item in enumerate(batch):
                if self.cancelled:
                    break
                if position:
                    self.backoff_sleep(self.request_delay)

                self.state = SchedulerState.FETCHING_ADDRESS
                summary.processed += 1
                try:
                    process(item)
                except Exception as e:
                    summary.failed.append(item)
                    log.error("Error processing %s: %s", _label(item), e)
                    log.debug("Traceback for %s", _label(item), exc_info=True)

            summary.batches_completed += 1
            if on_batch_complete is not None:
                on_batch_complete(batch_number, total_batches)

            log.info("Progress: %d/%d addresses checked", summary.processed, len(items))

            if self.cancelled:
                summary.cancelled = True
                log.warning("Run cancelled after batch %d/%d", batch_number, total_batches)
                break

            if batch_number < total_batches:
                self.state = SchedulerState.BETWEEN_BATCHES
                log.info("Batch %d complete. Pausing for %.1f seconds before next batch...",
                         batch_number, self.batch_delay)
                self._sleep(self.batch_delay)

        self.state = SchedulerState.DONE
        return summary


def setup_signal_handlers(scheduler: BatchScheduler):
    """
    First Ctrl+C (or SIGTERM) stops the run at the next address boundary;
    a second Ctrl+C interrupts immediately.
    """
    def handler(signum, frame):
        sig_name = signal.Signals(signum).name
        log.warning("Received %s, stopping after the current address...", sig_name)
        scheduler.cancel()
        signal.signal(signal.SIGINT, signal.default_int_handler)

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)
