"""Intent execution against the task store.

Each handler is a small state transition: at most one task-store read and one
write, followed by a conversation update recording ``last_intent`` (and
``last_task_id`` when a task was created or referenced).
"""
import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from common import conversation, replies
from common.errors import ExecutionError
from common.intents import (
    TITLE_MAX_LEN, Intent, detect_due_date, normalize_category, parse_iso_date,
)
from common.models import ConversationContext, IntentKind
from common.task_store import TaskStore, clean_context_name

logger = logging.getLogger(__name__)


@dataclass
class ExecutionContext:
    user_id: str
    conversation: ConversationContext
    today: date
    event_id: Optional[str] = None
    sender_name: Optional[str] = None


@dataclass
class ExecutionResult:
    reply: str
    task_id: Optional[str] = None
    menu: Optional[Dict[str, Any]] = None
    failed: bool = False


Handler = Callable[[TaskStore, Intent, ExecutionContext], Awaitable[ExecutionResult]]


async def _remember(
    store: TaskStore, ctx: ExecutionContext, kind: IntentKind, task_id: Optional[str] = None, clear_task: bool = False
) -> None:
    fields: Dict[str, Any] = {"last_intent": kind}
    if task_id:
        fields["last_task_id"] = task_id
    elif clear_task:
        fields["last_task_id"] = None
    await conversation.update_context(store.db, ctx.conversation.id, **fields)


async def _referenced_task(store: TaskStore, ctx: ExecutionContext, kind: IntentKind):
    task_id = ctx.conversation.last_task_id
    if not task_id:
        raise ExecutionError("no task referenced", user_message=replies.ASK_WHICH_TASK)
    task = await store.get_task(ctx.user_id, task_id)
    if task is None:
        # Drop the stale anchor so the next turn does not hit it again.
        await _remember(store, ctx, kind, clear_task=True)
        raise ExecutionError(f"task {task_id} vanished", user_message=replies.TASK_NOT_FOUND)
    return task


async def _create_task(store: TaskStore, intent: Intent, ctx: ExecutionContext) -> ExecutionResult:
    data = intent.task_data
    if data is None:
        raise ExecutionError("create_task without task data", user_message=replies.REPHRASE)

    context = None
    if data.context_name:
        context = await store.find_context_by_name(ctx.user_id, data.context_name)
        if context is None:
            logger.info("Context %r not found for user=%s; creating task without it", data.context_name, ctx.user_id)

    task, created = await store.create_task(
        ctx.user_id,
        data,
        context_id=context.id if context else None,
        description=f"Creado desde WhatsApp por {ctx.sender_name or 'usuario'}",
        source_event_id=ctx.event_id,
    )
    if created:
        logger.info("Task created user=%s task=%s category=%s", ctx.user_id, task.id, data.category.value)
    await _remember(store, ctx, IntentKind.create_task, task_id=task.id)
    return ExecutionResult(reply=replies.task_created(task, context.name if context else None), task_id=task.id)


async def _view_tasks(store: TaskStore, intent: Intent, ctx: ExecutionContext) -> ExecutionResult:
    view_filter = intent.parameters.get("filter") or "inbox"
    tasks = await store.list_tasks(ctx.user_id, view_filter, ctx.today)
    await _remember(store, ctx, IntentKind.view_tasks)
    return ExecutionResult(reply=replies.task_list(view_filter, tasks, ctx.today))


async def _complete_task(store: TaskStore, intent: Intent, ctx: ExecutionContext) -> ExecutionResult:
    task = await _referenced_task(store, ctx, IntentKind.complete_task)
    if task.completed:
        reply = replies.task_already_completed(task)
    else:
        await store.complete_task(task)
        reply = replies.task_completed(task)
    await _remember(store, ctx, IntentKind.complete_task, task_id=task.id)
    return ExecutionResult(reply=reply, task_id=task.id)


async def _add_context(store: TaskStore, intent: Intent, ctx: ExecutionContext) -> ExecutionResult:
    if not ctx.conversation.last_task_id:
        raise ExecutionError("no task referenced", user_message=replies.ASK_WHICH_TASK)
    name = clean_context_name(intent.parameters.get("context_name") or "")
    if not name:
        raise ExecutionError("missing context name", user_message=replies.ASK_CONTEXT_NAME)
    task = await _referenced_task(store, ctx, IntentKind.add_context)
    context = await store.find_context_by_name(ctx.user_id, name)
    if context is None:
        raise ExecutionError(f"context {name!r} not found", user_message=replies.context_not_found(name))
    await store.update_task(task, "context_id", context.id)
    await _remember(store, ctx, IntentKind.add_context, task_id=task.id)
    return ExecutionResult(reply=replies.context_added(task, context.name), task_id=task.id)


async def _edit_value(store: TaskStore, ctx: ExecutionContext, field: str, raw: str):
    """Return (column, value, display) for one edit, or raise ExecutionError."""
    if field == "title":
        title = raw[:TITLE_MAX_LEN]
        return "title", title, title
    if field == "description":
        return "description", raw, raw
    if field == "due_date":
        due = parse_iso_date(raw) or detect_due_date(raw, ctx.today)
        if due is None:
            raise ExecutionError(f"unparseable date {raw!r}", user_message=replies.invalid_date(raw))
        return "due_date", due, replies.format_date(due)
    if field == "context":
        context = await store.find_context_by_name(ctx.user_id, raw)
        if context is None:
            name = clean_context_name(raw)
            raise ExecutionError(f"context {name!r} not found", user_message=replies.context_not_found(name))
        return "context_id", context.id, f"@{context.name}"
    category = normalize_category(raw)
    if category is None:
        raise ExecutionError(f"unknown category {raw!r}", user_message=replies.invalid_category(raw))
    return "category", category, category.value


async def _edit_task(store: TaskStore, intent: Intent, ctx: ExecutionContext) -> ExecutionResult:
    if not ctx.conversation.last_task_id:
        raise ExecutionError("no task referenced", user_message=replies.ASK_WHICH_TASK)
    field = intent.parameters.get("edit_field")
    if not field:
        raise ExecutionError("unrecognized edit field", user_message=replies.UNKNOWN_EDIT_FIELD)
    raw = intent.parameters.get("new_value")
    if not raw:
        raise ExecutionError(f"missing value for {field}", user_message=replies.missing_edit_value(field))
    task = await _referenced_task(store, ctx, IntentKind.edit_task)
    column, value, display = await _edit_value(store, ctx, field, raw)
    await store.update_task(task, column, value)
    await _remember(store, ctx, IntentKind.edit_task, task_id=task.id)
    return ExecutionResult(reply=replies.task_updated(field, task, display), task_id=task.id)


async def _help(store: TaskStore, intent: Intent, ctx: ExecutionContext) -> ExecutionResult:
    return ExecutionResult(reply=replies.HELP_TEXT, menu=replies.help_menu())


async def _greeting(store: TaskStore, intent: Intent, ctx: ExecutionContext) -> ExecutionResult:
    return ExecutionResult(reply=replies.greeting(ctx.sender_name))


HANDLERS: Dict[IntentKind, Handler] = {
    IntentKind.create_task: _create_task,
    IntentKind.view_tasks: _view_tasks,
    IntentKind.complete_task: _complete_task,
    IntentKind.edit_task: _edit_task,
    IntentKind.add_context: _add_context,
    IntentKind.help: _help,
    IntentKind.greeting: _greeting,
}

_missing = set(IntentKind) - set(HANDLERS)
if _missing:
    raise RuntimeError(f"No executor handler for intents: {sorted(k.value for k in _missing)}")


async def execute_intent(db: AsyncSession, intent: Intent, ctx: ExecutionContext) -> ExecutionResult:
    """Run the handler for ``intent.kind``; ExecutionError becomes a guidance reply."""
    store = TaskStore(db)
    try:
        return await HANDLERS[intent.kind](store, intent, ctx)
    except ExecutionError as exc:
        logger.info("Execution of %s stopped: %s", intent.kind.value, exc)
        return ExecutionResult(reply=exc.user_message or replies.GENERIC_ERROR, failed=True)
