import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from common.config import settings
from common.models import ConversationContext
from common.timeutil import utc_now, as_aware

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {"last_task_id", "last_intent"}
ROLES = {"user", "assistant"}


def _expiry(now: datetime) -> datetime:
    return now + timedelta(minutes=settings.CONVERSATION_TTL_MINUTES)


async def _find(db: AsyncSession, user_id: str, sender_address: str) -> Optional[ConversationContext]:
    stmt = select(ConversationContext).where(
        ConversationContext.user_id == user_id,
        ConversationContext.sender_address == sender_address,
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def get_or_create(
    db: AsyncSession, user_id: str, sender_address: str, now: Optional[datetime] = None
) -> ConversationContext:
    """Read-or-insert the rolling conversation state for a (user, address) pair.

    An expired context comes back reset: empty history and no task anchor.
    """
    now = now or utc_now()
    ctx = await _find(db, user_id, sender_address)
    if ctx is not None:
        if ctx.expires_at is not None and as_aware(ctx.expires_at) < now:
            ctx.conversation_history = []
            ctx.last_task_id = None
            ctx.last_intent = None
            ctx.updated_at = now
            ctx.expires_at = _expiry(now)
            await db.commit()
        return ctx

    ctx = ConversationContext(
        id=f"cvc_{uuid.uuid4().hex[:12]}",
        user_id=user_id,
        sender_address=sender_address,
        last_task_id=None,
        last_intent=None,
        conversation_history=[],
        created_at=now,
        updated_at=now,
        expires_at=_expiry(now),
    )
    db.add(ctx)
    try:
        await db.commit()
    except IntegrityError:
        # Another request for the same pair inserted first.
        await db.rollback()
        existing = await _find(db, user_id, sender_address)
        if existing is None:
            raise
        return existing
    return ctx


async def update_context(db: AsyncSession, context_id: str, now: Optional[datetime] = None, **fields: Any) -> None:
    """Shallow merge of ``last_task_id`` / ``last_intent``; other columns stay as they are."""
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported conversation fields: {sorted(unknown)}")
    now = now or utc_now()
    values: Dict[str, Any] = dict(fields)
    if hasattr(values.get("last_intent"), "value"):
        values["last_intent"] = values["last_intent"].value
    values["updated_at"] = now
    values["expires_at"] = _expiry(now)
    await db.execute(update(ConversationContext).where(ConversationContext.id == context_id).values(**values))
    await db.commit()


async def append_turn(
    db: AsyncSession, context_id: str, role: str, content: str, now: Optional[datetime] = None
) -> None:
    if role not in ROLES:
        raise ValueError(f"Unsupported role: {role}")
    now = now or utc_now()
    ctx = await db.get(ConversationContext, context_id)
    if ctx is None:
        logger.error("Conversation context not found: %s", context_id)
        return
    history = list(ctx.conversation_history or [])
    history.append({"role": role, "content": content, "at_ms": int(now.timestamp() * 1000)})
    # Reassign so the JSON column is flagged dirty.
    ctx.conversation_history = history[-settings.CONVERSATION_HISTORY_LIMIT:]
    ctx.updated_at = now
    ctx.expires_at = _expiry(now)
    await db.commit()


def recent_turns(ctx: ConversationContext, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    limit = settings.CONVERSATION_PROMPT_TURNS if limit is None else limit
    history = [t for t in (ctx.conversation_history or []) if isinstance(t, dict)]
    if limit <= 0:
        return []
    return history[-limit:]


async def purge_expired(db: AsyncSession, now: Optional[datetime] = None) -> int:
    now = now or utc_now()
    result = await db.execute(delete(ConversationContext).where(ConversationContext.expires_at < now))
    await db.commit()
    return result.rowcount or 0
