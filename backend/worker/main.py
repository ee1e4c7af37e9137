"""Maintenance worker for the WhatsApp pipeline.

Jobs arrive on a Redis list as ``{"job_id", "topic", "payload", "attempt"}``.
Failed jobs are requeued with exponential backoff and land in the dead-letter
list after ``MAX_ATTEMPTS``; every outcome is recorded in ``event_log``.
"""
import asyncio
import json
import logging
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from common.config import settings
from common.conversation import purge_expired
from common.identity import expire_pending_codes
from common.models import EventLog
from common.timeutil import utc_now

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("worker")

engine = create_async_engine(settings.DATABASE_URL)
AsyncSessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)

DEFAULT_QUEUE = "default_queue"
DLQ = "dead_letter_queue"
MAX_ATTEMPTS = 5
MAX_BACKOFF_SECONDS = 60
POLL_TIMEOUT_SECONDS = 5


def _event_row(job_id: str, event_type: str, payload: Dict[str, Any], user_id: str = "system") -> EventLog:
    return EventLog(
        id=str(uuid.uuid4()),
        request_id=f"job_{job_id}",
        user_id=user_id,
        event_type=event_type,
        payload_json=payload,
    )


async def _record_lifecycle(job: Dict[str, Any], event_type: str, queue: str, **details: Any) -> None:
    """Lifecycle rows are best-effort; a logging failure never fails the job."""
    payload = {
        "topic": job.get("topic"),
        "job_id": job.get("job_id"),
        "attempt": job.get("attempt", 1),
        "max_attempts": MAX_ATTEMPTS,
        "queue": queue,
        **details,
    }
    user_id = (job.get("payload") or {}).get("user_id", "system")
    try:
        async with AsyncSessionLocal() as db:
            db.add(_event_row(job.get("job_id"), event_type, payload, user_id=user_id))
            await db.commit()
    except Exception as exc:
        logger.error("Could not record %s for job=%s: %s", event_type, job.get("job_id"), exc)


async def _purge(job_id: str, event_type: str, count_key: str, purge: Callable[..., Awaitable[int]]) -> int:
    cutoff: datetime = utc_now()
    async with AsyncSessionLocal() as db:
        removed = await purge(db, cutoff)
        db.add(_event_row(job_id, event_type, {"job_id": job_id, count_key: removed, "cutoff": cutoff.isoformat()}))
        await db.commit()
    return removed


async def handle_conversation_cleanup(job_id: str, payload: dict):
    removed = await _purge(job_id, "conversation_cleanup_completed", "deleted_contexts", purge_expired)
    logger.info("Expired conversation contexts removed: %s", removed)


async def handle_link_codes_expire(job_id: str, payload: dict):
    removed = await _purge(job_id, "link_codes_expired", "deleted_links", expire_pending_codes)
    logger.info("Expired link codes removed: %s", removed)


TOPIC_HANDLERS: Dict[str, Callable[[str, dict], Awaitable[None]]] = {
    "conversation.cleanup": handle_conversation_cleanup,
    "link_codes.expire": handle_link_codes_expire,
}


async def _requeue_or_bury(job: Dict[str, Any], error: Exception) -> None:
    attempt = job.get("attempt", 1)
    if attempt >= MAX_ATTEMPTS:
        logger.error("job=%s gave up after %s attempts; moving to %s", job.get("job_id"), attempt, DLQ)
        await _record_lifecycle(job, "worker_moved_to_dlq", DLQ, error=str(error))
        await redis_client.rpush(DLQ, json.dumps(job))
        return

    delay = min(2 ** attempt, MAX_BACKOFF_SECONDS)
    await _record_lifecycle(job, "worker_retry_scheduled", DEFAULT_QUEUE, delay_seconds=delay, error=str(error))
    logger.info("job=%s retry %s in %ss", job.get("job_id"), attempt + 1, delay)
    await asyncio.sleep(delay)
    await redis_client.rpush(DEFAULT_QUEUE, json.dumps({**job, "attempt": attempt + 1}))


async def process_job(job_data: dict):
    topic: Optional[str] = job_data.get("topic")
    handler = TOPIC_HANDLERS.get(topic)
    if handler is None:
        logger.warning("Ignoring job=%s with unknown topic %r", job_data.get("job_id"), topic)
        return

    logger.info("job=%s topic=%s attempt=%s", job_data.get("job_id"), topic, job_data.get("attempt", 1))
    try:
        await handler(job_data.get("job_id"), job_data.get("payload") or {})
    except Exception as exc:
        logger.error("job=%s topic=%s failed: %s", job_data.get("job_id"), topic, exc)
        await _requeue_or_bury(job_data, exc)
        return
    await _record_lifecycle(job_data, "worker_topic_completed", DEFAULT_QUEUE)


async def worker_loop():
    logger.info("Worker listening on %s", DEFAULT_QUEUE)
    while True:
        try:
            popped = await redis_client.blpop(DEFAULT_QUEUE, timeout=POLL_TIMEOUT_SECONDS)
            if popped:
                _, raw = popped
                await process_job(json.loads(raw))
        except Exception as exc:
            logger.error("Worker loop error: %s", exc)
            await asyncio.sleep(POLL_TIMEOUT_SECONDS)


if __name__ == "__main__":
    asyncio.run(worker_loop())
