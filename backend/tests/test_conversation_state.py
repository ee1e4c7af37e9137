import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import IntegrityError

from common import conversation
from common.models import ConversationContext, IntentKind

NOW = datetime(2026, 10, 14, 12, 0, tzinfo=timezone.utc)


class _FakeResult:
    def __init__(self, one_or_none=None, rowcount=0):
        self._one_or_none = one_or_none
        self.rowcount = rowcount

    def scalar_one_or_none(self):
        return self._one_or_none


def _ctx(history=None, expires_at=None, last_task_id="tsk_1"):
    return ConversationContext(
        id="cvc_1",
        user_id="usr_1",
        sender_address="5491112345678",
        last_task_id=last_task_id,
        last_intent="create_task",
        conversation_history=history if history is not None else [],
        created_at=NOW - timedelta(minutes=5),
        updated_at=NOW - timedelta(minutes=5),
        expires_at=expires_at or NOW + timedelta(minutes=30),
    )


def _turns(count):
    return [{"role": "user", "content": f"m{i}", "at_ms": i} for i in range(count)]


def test_get_or_create_inserts_empty_context():
    async def _run():
        db = AsyncMock()
        db.execute = AsyncMock(return_value=_FakeResult(one_or_none=None))
        db.add = MagicMock()
        db.commit = AsyncMock()

        ctx = await conversation.get_or_create(db, "usr_1", "5491112345678", now=NOW)
        db.add.assert_called_once_with(ctx)
        assert ctx.conversation_history == []
        assert ctx.last_task_id is None
        assert ctx.expires_at == NOW + timedelta(minutes=60)

    asyncio.run(_run())


def test_get_or_create_returns_existing_context():
    async def _run():
        existing = _ctx(history=_turns(2))
        db = AsyncMock()
        db.execute = AsyncMock(return_value=_FakeResult(one_or_none=existing))
        db.add = MagicMock()

        ctx = await conversation.get_or_create(db, "usr_1", "5491112345678", now=NOW)
        assert ctx is existing
        assert ctx.last_task_id == "tsk_1"
        db.add.assert_not_called()

    asyncio.run(_run())


def test_get_or_create_resets_expired_context():
    async def _run():
        expired = _ctx(history=_turns(3), expires_at=NOW - timedelta(seconds=1))
        db = AsyncMock()
        db.execute = AsyncMock(return_value=_FakeResult(one_or_none=expired))
        db.commit = AsyncMock()

        ctx = await conversation.get_or_create(db, "usr_1", "5491112345678", now=NOW)
        assert ctx.conversation_history == []
        assert ctx.last_task_id is None
        assert ctx.last_intent is None
        db.commit.assert_awaited_once()

    asyncio.run(_run())


def test_get_or_create_recovers_from_concurrent_insert():
    async def _run():
        winner = _ctx()
        db = AsyncMock()
        db.execute = AsyncMock(side_effect=[_FakeResult(one_or_none=None), _FakeResult(one_or_none=winner)])
        db.add = MagicMock()
        db.commit = AsyncMock(side_effect=IntegrityError("INSERT", {}, Exception("duplicate key")))
        db.rollback = AsyncMock()

        ctx = await conversation.get_or_create(db, "usr_1", "5491112345678", now=NOW)
        assert ctx is winner
        db.rollback.assert_awaited_once()

    asyncio.run(_run())


def test_update_context_is_shallow_merge():
    async def _run():
        db = AsyncMock()
        db.execute = AsyncMock(return_value=_FakeResult(rowcount=1))
        db.commit = AsyncMock()

        await conversation.update_context(db, "cvc_1", now=NOW, last_intent=IntentKind.view_tasks)
        stmt = db.execute.await_args.args[0]
        params = stmt.compile().params
        assert params["last_intent"] == "view_tasks"
        assert "last_task_id" not in params
        assert "conversation_history" not in params

        with pytest.raises(ValueError):
            await conversation.update_context(db, "cvc_1", conversation_history=[])

    asyncio.run(_run())


def test_append_turn_keeps_bounded_window():
    async def _run():
        ctx = _ctx(history=_turns(5))
        db = AsyncMock()
        db.get = AsyncMock(return_value=ctx)
        db.commit = AsyncMock()

        await conversation.append_turn(db, "cvc_1", "assistant", "hecho", now=NOW)
        assert len(ctx.conversation_history) == 5
        assert ctx.conversation_history[0]["content"] == "m1"
        last = ctx.conversation_history[-1]
        assert last["role"] == "assistant"
        assert last["content"] == "hecho"
        assert last["at_ms"] == int(NOW.timestamp() * 1000)

        with pytest.raises(ValueError):
            await conversation.append_turn(db, "cvc_1", "system", "nope")

    asyncio.run(_run())


def test_recent_turns_reads_last_three():
    ctx = _ctx(history=_turns(5))
    turns = conversation.recent_turns(ctx)
    assert [t["content"] for t in turns] == ["m2", "m3", "m4"]
    assert conversation.recent_turns(ctx, limit=0) == []
