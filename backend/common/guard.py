"""Inbound event deduplication and freshness filtering.

The processed marker row is the idempotency boundary: it is written with a
conditional insert (``ON CONFLICT DO NOTHING`` on ``event_id``), so at most one
execution wins the marker for a given event even under concurrent redelivery.
"""
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from common.config import settings
from common.gateway import InboundEvent
from common.models import PayloadKind, ProcessedMarker
from common.timeutil import utc_now

logger = logging.getLogger(__name__)

REASON_OWN_MESSAGE = "own-message"
REASON_ALREADY_PROCESSED = "already-processed"
REASON_OLD_MESSAGE = "old_message"
REASON_IN_FLIGHT = "in-flight"


@dataclass
class GuardDecision:
    skip: bool
    reason: Optional[str] = None


def now_ms() -> int:
    return int(time.time() * 1000)


async def marker_exists(db: AsyncSession, event_id: str) -> bool:
    stmt = select(ProcessedMarker.id).where(ProcessedMarker.event_id == event_id).limit(1)
    return (await db.execute(stmt)).scalar_one_or_none() is not None


async def mark_processed(
    db: AsyncSession,
    event_id: str,
    reason: str,
    resolved_user_id: Optional[str] = None,
    resulting_task_id: Optional[str] = None,
    intent: Optional[str] = None,
) -> bool:
    """Create the marker if absent. Returns True when this call created it."""
    stmt = (
        pg_insert(ProcessedMarker)
        .values(
            id=f"pm_{uuid.uuid4().hex[:16]}",
            event_id=event_id,
            processed_at=utc_now(),
            resolved_user_id=resolved_user_id,
            resulting_task_id=resulting_task_id,
            intent=intent,
            reason=reason,
        )
        .on_conflict_do_nothing(index_elements=["event_id"])
    )
    result = await db.execute(stmt)
    await db.commit()
    created = (result.rowcount or 0) == 1
    if not created:
        logger.info("Processed marker already present for event=%s", event_id)
    return created


async def check_event(db: AsyncSession, event: InboundEvent, current_ms: Optional[int] = None) -> GuardDecision:
    if event.payload_kind == PayloadKind.own_message:
        return GuardDecision(skip=True, reason=REASON_OWN_MESSAGE)

    if await marker_exists(db, event.event_id):
        return GuardDecision(skip=True, reason=REASON_ALREADY_PROCESSED)

    current_ms = now_ms() if current_ms is None else current_ms
    if current_ms - event.timestamp_ms > settings.EVENT_MAX_AGE_SECONDS * 1000:
        # Marked before any costly work so redelivery storms stop here.
        await mark_processed(db, event.event_id, REASON_OLD_MESSAGE)
        logger.info("Discarding stale event=%s age_ms=%s", event.event_id, current_ms - event.timestamp_ms)
        return GuardDecision(skip=True, reason=REASON_OLD_MESSAGE)

    return GuardDecision(skip=False)


async def claim_in_flight(redis_client, event_id: str) -> bool:
    """Best-effort claim so a concurrent redelivery is not processed in parallel.

    Redis trouble degrades to marker-only protection.
    """
    try:
        claimed = await redis_client.set(
            f"inflight:{event_id}", "1", nx=True, ex=settings.INFLIGHT_CLAIM_TTL_SECONDS
        )
    except Exception as e:
        logger.warning(f"In-flight claim unavailable for event={event_id}: {e}")
        return True
    return bool(claimed)


async def within_rate_limit(redis_client, sender_address: str) -> bool:
    key = f"rate_limit:whatsapp:{sender_address}"
    try:
        current = await redis_client.incr(key)
        if current == 1:
            await redis_client.expire(key, settings.RATE_LIMIT_WINDOW_SECONDS)
    except Exception as e:
        logger.warning(f"Rate limiter unavailable for {sender_address}: {e}")
        return True
    return current <= settings.RATE_LIMIT_MESSAGES_PER_WINDOW


async def release_in_flight(redis_client, event_id: str) -> None:
    try:
        await redis_client.delete(f"inflight:{event_id}")
    except Exception as e:
        logger.warning(f"Could not release in-flight claim for event={event_id}: {e}")
