"""Import job bookkeeping.

Job rows live in the catalog database so every API process and every worker
sees the same counters. Counter updates are single guarded UPDATE statements
(``processed = processed + :n``), so concurrent workers never lose increments
and no lock is held in Python. A chunk's outcome is counted once: the
``import_chunk_receipts`` unique key turns a redelivered chunk into a no-op.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from . import models
from .errors import JobNotFoundError, JobStateError
from .models import JobStatus
from .utils import new_id, utcnow

logger = logging.getLogger(__name__)

MAX_ROW_ERRORS = 100


class JobTracker:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    # ---- creation / lifecycle ----

    def create_job(
        self,
        store_id: str,
        total: int,
        user_id: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> str:
        if total < 0:
            raise ValueError("total must be >= 0")
        job = models.ImportJob(
            id=new_id(),
            store_id=store_id,
            user_id=user_id,
            file_name=file_name,
            total_rows=total,
            processed=0,
            failed=0,
            status=JobStatus.PENDING,
        )
        with self.session_factory() as db:
            db.add(job)
            db.commit()
        logger.info("Created import job %s for store %s (%d rows)", job.id, store_id, total)
        return job.id

    def mark_processing(self, job_id: str) -> None:
        with self.session_factory() as db:
            res = db.execute(
                update(models.ImportJob)
                .where(
                    models.ImportJob.id == job_id,
                    models.ImportJob.status == JobStatus.PENDING,
                )
                .values(status=JobStatus.PROCESSING, started_at=utcnow())
            )
            db.commit()
            if res.rowcount:
                return
            job = self._load(db, job_id)
            if job.status in JobStatus.TERMINAL:
                raise JobStateError(f"job {job_id} is already {job.status}")

    def finalize(self, job_id: str, when_done: bool = False) -> Optional[str]:
        """Mark a fully counted job COMPLETED; failures stay visible in ``failed``.

        Raises JobStateError for a terminal job or one with rows still
        outstanding. With ``when_done`` such a job is left alone and None is
        returned; the counters call it this way after every increment.
        """
        with self.session_factory() as db:
            res = db.execute(
                update(models.ImportJob)
                .where(
                    models.ImportJob.id == job_id,
                    models.ImportJob.status.in_(JobStatus.ACTIVE),
                    models.ImportJob.processed >= models.ImportJob.total_rows,
                )
                .values(status=JobStatus.COMPLETED, finished_at=utcnow())
            )
            db.commit()
            done = bool(res.rowcount)
        if done:
            logger.info("Import job %s completed", job_id)
            return JobStatus.COMPLETED
        if when_done:
            return None
        with self.session_factory() as db:
            job = self._load(db, job_id)
            if job.status in JobStatus.TERMINAL:
                raise JobStateError(f"job {job_id} is already {job.status}")
            raise JobStateError(
                f"job {job_id} has {job.total_rows - job.processed} outstanding row(s)"
            )

    def fail(self, job_id: str, message: str) -> None:
        with self.session_factory() as db:
            res = db.execute(
                update(models.ImportJob)
                .where(
                    models.ImportJob.id == job_id,
                    models.ImportJob.status.in_(JobStatus.ACTIVE),
                )
                .values(status=JobStatus.FAILED, error=message, finished_at=utcnow())
            )
            db.commit()
            if not res.rowcount:
                job = self._load(db, job_id)
                raise JobStateError(f"job {job_id} is already {job.status}")
        logger.error("Import job %s failed: %s", job_id, message)

    def request_abort(self, job_id: str) -> None:
        """Stop dispatching unsent chunks. Chunks already queued still run."""
        with self.session_factory() as db:
            res = db.execute(
                update(models.ImportJob)
                .where(
                    models.ImportJob.id == job_id,
                    models.ImportJob.status.in_(JobStatus.ACTIVE),
                )
                .values(abort_requested=True)
            )
            db.commit()
            if not res.rowcount:
                job = self._load(db, job_id)
                raise JobStateError(f"job {job_id} is already {job.status}")
        logger.info("Abort requested for import job %s", job_id)

    def is_abort_requested(self, job_id: str) -> bool:
        with self.session_factory() as db:
            return bool(self._load(db, job_id).abort_requested)

    def set_dispatch_state(
        self,
        job_id: str,
        state: str,
        total_chunks: Optional[int] = None,
        dispatched_chunks: Optional[int] = None,
    ) -> None:
        values: Dict[str, Any] = {"dispatch_state": state}
        if total_chunks is not None:
            values["total_chunks"] = total_chunks
        if dispatched_chunks is not None:
            values["dispatched_chunks"] = dispatched_chunks
        with self.session_factory() as db:
            db.execute(
                update(models.ImportJob)
                .where(
                    models.ImportJob.id == job_id,
                    models.ImportJob.status.in_(JobStatus.ACTIVE),
                )
                .values(**values)
            )
            db.commit()

    # ---- counters ----

    def record_outcome(self, job_id: str, succeeded: bool, count: int) -> None:
        """Add ``count`` rows to processed (and to failed unless ``succeeded``)."""
        if count < 0:
            raise ValueError("count must be >= 0")
        if count == 0:
            return
        ok, bad = (count, 0) if succeeded else (0, count)
        with self.session_factory() as db:
            self._increment(db, job_id, ok, bad)
            db.commit()
        self.finalize(job_id, when_done=True)

    def record_chunk(
        self,
        job_id: str,
        chunk_index: int,
        succeeded: int,
        failed: int,
        errors: Iterable[Any] = (),
    ) -> bool:
        """
        Count one chunk's outcome exactly once.

        Returns False when the chunk was already counted (queue redelivery).
        Raises JobStateError when the job is terminal and the chunk is new.
        """
        with self.session_factory() as db:
            db.add(
                models.ImportChunkReceipt(
                    job_id=job_id, chunk_index=chunk_index, succeeded=succeeded, failed=failed
                )
            )
            try:
                db.flush()
            except IntegrityError:
                db.rollback()
                logger.info("Chunk %d of job %s already counted, skipping", chunk_index, job_id)
                return False
            try:
                self._increment(db, job_id, succeeded, failed)
            except (JobStateError, JobNotFoundError):
                db.rollback()
                raise
            self._add_errors(db, job_id, errors)
            db.commit()
        self.finalize(job_id, when_done=True)
        return True

    def is_chunk_recorded(self, job_id: str, chunk_index: int) -> bool:
        with self.session_factory() as db:
            return (
                db.query(models.ImportChunkReceipt.id)
                .filter(
                    models.ImportChunkReceipt.job_id == job_id,
                    models.ImportChunkReceipt.chunk_index == chunk_index,
                )
                .first()
                is not None
            )

    def record_row_errors(self, job_id: str, errors: Iterable[Any]) -> None:
        with self.session_factory() as db:
            self._add_errors(db, job_id, errors)
            db.commit()

    # ---- reads ----

    def get_status(self, job_id: str) -> Dict[str, Any]:
        with self.session_factory() as db:
            job = self._load(db, job_id)
            errors = (
                db.query(models.ImportRowError)
                .filter(models.ImportRowError.job_id == job_id)
                .order_by(models.ImportRowError.row, models.ImportRowError.id)
                .limit(MAX_ROW_ERRORS)
                .all()
            )
            return {
                "job_id": job.id,
                "store_id": job.store_id,
                "status": job.status,
                "total": job.total_rows,
                "processed": job.processed,
                "failed": job.failed,
                "succeeded": job.processed - job.failed,
                "outstanding": job.total_rows - job.processed,
                "total_chunks": job.total_chunks,
                "dispatched_chunks": job.dispatched_chunks,
                "dispatch_state": job.dispatch_state,
                "abort_requested": bool(job.abort_requested),
                "error": job.error,
                "started_at": job.started_at,
                "finished_at": job.finished_at,
                "errors": [
                    {
                        "row": e.row,
                        "name": e.name,
                        "field": e.field,
                        "kind": e.kind,
                        "message": e.message,
                    }
                    for e in errors
                ],
            }

    # ---- internals ----

    def _load(self, db, job_id: str) -> models.ImportJob:
        job = db.get(models.ImportJob, job_id)
        if job is None:
            raise JobNotFoundError(f"import job {job_id} not found")
        return job

    def _increment(self, db, job_id: str, succeeded: int, failed: int) -> None:
        n = succeeded + failed
        res = db.execute(
            update(models.ImportJob)
            .where(
                models.ImportJob.id == job_id,
                models.ImportJob.status.in_(JobStatus.ACTIVE),
                models.ImportJob.processed + n <= models.ImportJob.total_rows,
            )
            .values(
                processed=models.ImportJob.processed + n,
                failed=models.ImportJob.failed + failed,
            )
            .execution_options(synchronize_session=False)
        )
        if res.rowcount:
            return
        job = self._load(db, job_id)
        if job.status in JobStatus.TERMINAL:
            raise JobStateError(f"job {job_id} is already {job.status}")
        raise JobStateError(
            f"job {job_id}: adding {n} row(s) would pass total {job.total_rows}"
        )

    def _add_errors(self, db, job_id: str, errors: Iterable[Any]) -> None:
        errors = list(errors)
        if not errors:
            return
        have = (
            db.query(models.ImportRowError)
            .filter(models.ImportRowError.job_id == job_id)
            .count()
        )
        room = max(MAX_ROW_ERRORS - have, 0)
        for err in errors[:room]:
            data = err if isinstance(err, dict) else err.as_dict()
            db.add(
                models.ImportRowError(
                    job_id=job_id,
                    row=data.get("row"),
                    name=(data.get("name") or None) and str(data["name"])[:255],
                    field=data.get("field"),
                    kind=data.get("kind") or "Error",
                    message=str(data.get("message") or ""),
                )
            )

