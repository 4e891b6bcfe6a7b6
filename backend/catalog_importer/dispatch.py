"""Hand planned chunks to the task queue.

Chunks go out in small batches, one batch at a time, so a large import never
floods the broker. A batch that keeps failing stops the dispatch: everything
already queued stays queued and is processed, and the caller gets back how
much made it so it can resubmit the rest.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Protocol, Sequence

from .chunking import Chunk
from .errors import TransportError
from .jobs import JobTracker

logger = logging.getLogger(__name__)


class DispatchState(str, Enum):
    PLANNED = "PLANNED"
    DISPATCHING = "DISPATCHING"
    DISPATCHED = "DISPATCHED"
    PARTIALLY_DISPATCHED = "PARTIALLY_DISPATCHED"


class TaskQueue(Protocol):
    def enqueue(self, messages: List[dict]) -> None:
        """Queue a batch of chunk messages; raise TransportError when the broker refuses."""


@dataclass
class DispatchResult:
    state: DispatchState
    total_chunks: int
    dispatched_chunks: int
    dispatched_rows: int
    undispatched_rows: int
    aborted: bool = False
    error: Optional[str] = None

    @property
    def partial(self) -> bool:
        return self.state is DispatchState.PARTIALLY_DISPATCHED


class Dispatcher:
    def __init__(
        self,
        queue: TaskQueue,
        tracker: JobTracker,
        batch_size: int = 10,
        max_attempts: int = 3,
        backoff: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if batch_size < 1 or max_attempts < 1:
            raise ValueError("batch_size and max_attempts must be at least 1")
        self.queue = queue
        self.tracker = tracker
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.sleep = sleep

    def dispatch(self, job_id: str, chunks: Sequence[Chunk]) -> DispatchResult:
        total = len(chunks)
        self.tracker.set_dispatch_state(job_id, DispatchState.PLANNED.value, total_chunks=total)
        self.tracker.mark_processing(job_id)

        sent = 0
        aborted = False
        error = None
        for start in range(0, total, self.batch_size):
            batch = chunks[start:start + self.batch_size]
            if self.tracker.is_abort_requested(job_id):
                aborted = True
                logger.warning("Job %s aborted after %d/%d chunk(s) dispatched", job_id, sent, total)
                break

            # Recorded before sending: once the last batch is queued the job
            # can complete at any moment and must not be touched after that.
            last = start + len(batch) >= total
            self.tracker.set_dispatch_state(
                job_id,
                (DispatchState.DISPATCHED if last else DispatchState.DISPATCHING).value,
                dispatched_chunks=sent + len(batch),
            )
            error = self._send(job_id, batch)
            if error is not None:
                break
            sent += len(batch)
            logger.info("Job %s: dispatched %d/%d chunk(s)", job_id, sent, total)

        dispatched_rows = sum(len(c.rows) for c in chunks[:sent])
        remaining_rows = sum(len(c.rows) for c in chunks[sent:])
        if sent == total:
            return DispatchResult(DispatchState.DISPATCHED, total, sent, dispatched_rows, 0)

        self.tracker.set_dispatch_state(
            job_id, DispatchState.PARTIALLY_DISPATCHED.value, dispatched_chunks=sent
        )
        reason = "import aborted" if aborted else f"queue unavailable: {error}"
        if sent == 0 and not aborted:
            self.tracker.fail(job_id, f"No chunks could be dispatched ({reason})")
        else:
            kind = "Aborted" if aborted else TransportError.kind
            self.tracker.record_row_errors(
                job_id,
                [{
                    "kind": kind,
                    "message": f"{remaining_rows} row(s) in {total - sent} chunk(s) were not dispatched: {reason}",
                }],
            )
            self.tracker.record_outcome(job_id, False, remaining_rows)
        logger.warning(
            "Job %s partially dispatched: %d/%d chunk(s), %d row(s) left for resubmission",
            job_id, sent, total, remaining_rows,
        )
        return DispatchResult(
            DispatchState.PARTIALLY_DISPATCHED,
            total,
            sent,
            dispatched_rows,
            remaining_rows,
            aborted=aborted,
            error=None if aborted else str(error),
        )

    def _send(self, job_id: str, batch: Sequence[Chunk]) -> Optional[TransportError]:
        messages = [chunk.to_message() for chunk in batch]
        for attempt in range(self.max_attempts):
            try:
                self.queue.enqueue(messages)
                return None
            except TransportError as e:
                if attempt + 1 >= self.max_attempts:
                    logger.error(
                        "Job %s: enqueue failed after %d attempt(s): %s", job_id, self.max_attempts, e
                    )
                    return e
                delay = self.backoff * (2 ** attempt)
                logger.warning(
                    "Job %s: enqueue failed (%s), retry %d/%d in %.1fs",
                    job_id, e, attempt + 1, self.max_attempts - 1, delay,
                )
                self.sleep(delay)
        return None
