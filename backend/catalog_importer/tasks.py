# catalog_importer/tasks.py
import json
import logging
from dataclasses import asdict

import redis
from celery import Celery, Task, group, signals
from kombu.exceptions import OperationalError as KombuOperationalError

from .config import settings
from .database import SessionLocal
from .errors import JobNotFoundError, JobStateError, TransportError
from .log_config import setup_logging
from .models import JobStatus
from .pipeline import ImportPipeline
from .search_index import ProductSearchIndex

logger = logging.getLogger(__name__)

PROGRESS_TTL = 3600

celery_app = Celery("catalog_importer", broker=settings.broker_url, backend=settings.result_backend)
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    # at-least-once: a chunk is acked only after it was merged and counted
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
)

r = redis.Redis.from_url(settings.redis_url, decode_responses=True)


def progress_key(job_id: str) -> str:
    return f"import_progress:{job_id}"


def set_progress(status: dict):
    """
    Store the latest job snapshot in Redis.
    /sse/progress/{job_id} streams this to the status UI.
    """
    total = status.get("total") or 0
    payload = dict(status)
    payload["percent"] = 100 if not total else int(status.get("processed", 0) * 100 / total)
    try:
        r.set(progress_key(status["job_id"]), json.dumps(payload, default=str), ex=PROGRESS_TTL)
    except redis.RedisError as e:
        # the job row stays authoritative; only the live view lags
        logger.warning("Could not publish progress for job %s: %s", status["job_id"], e)


def rate_key(user_id: str) -> str:
    return f"import_rate:{user_id}"


def allow_import(client, user_id: str, limit: int, window: int) -> bool:
    """Count one import for ``user_id``; False once ``limit`` is passed inside ``window`` seconds."""
    if limit <= 0:
        return True
    key = rate_key(user_id)
    try:
        count = client.incr(key)
        if count == 1:
            client.expire(key, window)
    except redis.RedisError as e:
        logger.warning("Import rate check skipped for %s: %s", user_id, e)
        return True
    return count <= limit


class CeleryTaskQueue:
    """Dispatches chunk messages as one Celery group per batch."""

    def enqueue(self, messages):
        try:
            group(merge_chunk_task.s(m) for m in messages).apply_async()
        except (KombuOperationalError, redis.ConnectionError, redis.TimeoutError) as e:
            raise TransportError(f"broker unavailable: {e}") from e


_pipeline = None


def get_pipeline() -> ImportPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = ImportPipeline(
            SessionLocal,
            CeleryTaskQueue(),
            ProductSearchIndex.from_settings(settings),
            settings,
            on_progress=set_progress,
        )
    return _pipeline


def queue_rebuild() -> str:
    try:
        return rebuild_search_index_task.delay().id
    except (KombuOperationalError, redis.ConnectionError, redis.TimeoutError) as e:
        raise TransportError(f"broker unavailable: {e}") from e


@signals.worker_process_init.connect
def _init_worker_logging(**kwargs):
    setup_logging(settings.log_level)


class MergeChunkTask(Task):
    def on_failure(self, exc, task_id, args, kwargs, einfo):
        # Retries are exhausted: count the chunk's rows as failed so the job
        # can still finish instead of waiting on rows that will never merge.
        message = args[0] if args else kwargs.get("message")
        if not message:
            return
        rows = message.get("rows") or []
        tracker = get_pipeline().tracker
        try:
            tracker.record_chunk(
                message["job_id"],
                message["chunk_index"],
                0,
                len(rows),
                [{
                    "kind": getattr(exc, "kind", type(exc).__name__),
                    "message": f"chunk {message['chunk_index']} gave up: {exc}",
                }],
            )
        except (JobStateError, JobNotFoundError) as e:
            logger.error("Could not record failed chunk for job %s: %s", message.get("job_id"), e)
            return
        get_pipeline().publish_progress(message["job_id"])


@celery_app.task(
    bind=True,
    base=MergeChunkTask,
    name="catalog_importer.merge_chunk",
    autoretry_for=(TransportError,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_jitter=True,
    max_retries=8,
)
def merge_chunk_task(self, message: dict):
    """Merge one chunk; a TransportError puts it back on the queue with backoff."""
    outcome = get_pipeline().merge_chunk(message)
    return {
        "job_id": outcome.job_id,
        "chunk_index": outcome.chunk_index,
        "succeeded": outcome.succeeded,
        "failed": outcome.failed,
        "redelivered": outcome.redelivered,
    }


@celery_app.task(bind=True, name="catalog_importer.rebuild_search_index")
def rebuild_search_index_task(self):
    result = get_pipeline().rebuild_search_index()
    if not result.ok:
        logger.error("Search index rebuild %s failed: %s", self.request.id, result.error)
    return asdict(result)


def is_finished(snapshot: dict) -> bool:
    return snapshot.get("status") in JobStatus.TERMINAL
