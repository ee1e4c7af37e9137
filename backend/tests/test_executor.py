import asyncio
from datetime import date
from unittest.mock import AsyncMock, MagicMock, patch

from common import replies
from common.executor import HANDLERS, ExecutionContext, execute_intent
from common.intents import Intent, TaskData
from common.models import Context, ConversationContext, GTDCategory, IntentKind, Task

TODAY = date(2026, 10, 14)


def _conversation(last_task_id=None):
    return ConversationContext(id="cvc_1", user_id="usr_1", sender_address="5491112345678", last_task_id=last_task_id)


def _ctx(last_task_id=None, sender_name="Ana"):
    return ExecutionContext(
        user_id="usr_1",
        conversation=_conversation(last_task_id),
        today=TODAY,
        event_id="MSG1",
        sender_name=sender_name,
    )


def _task(task_id="tsk_1", title="Llamar al dentista", completed=False, **kwargs):
    return Task(
        id=task_id,
        user_id="usr_1",
        title=title,
        completed=completed,
        category=kwargs.pop("category", GTDCategory.Inbox),
        is_quick_action=kwargs.pop("is_quick_action", False),
        **kwargs,
    )


def _fake_store(task=None, context=None, created_task=None, listed=None):
    store = MagicMock()
    store.db = AsyncMock()
    store.get_task = AsyncMock(return_value=task)
    store.find_context_by_name = AsyncMock(return_value=context)
    store.create_task = AsyncMock(return_value=(created_task, True))
    store.complete_task = AsyncMock(side_effect=lambda t: t)
    store.update_task = AsyncMock()
    store.list_tasks = AsyncMock(return_value=listed or [])
    return store


def _execute(store, intent, ctx):
    update_context = AsyncMock()

    async def _run():
        with patch("common.executor.TaskStore", return_value=store), patch(
            "common.executor.conversation.update_context", new=update_context
        ):
            return await execute_intent(AsyncMock(), intent, ctx)

    return asyncio.run(_run()), update_context


def test_every_intent_kind_has_a_handler():
    assert set(HANDLERS) == set(IntentKind)


def test_create_task_records_anchor_and_formats_reply():
    created = _task(due_date=date(2026, 10, 15), category=GTDCategory.NextAction)
    store = _fake_store(created_task=created, context=Context(id="ctx_1", user_id="usr_1", name="Casa"))
    intent = Intent(
        kind=IntentKind.create_task,
        confidence=0.9,
        task_data=TaskData(
            title="Llamar al dentista",
            context_name="casa",
            due_date=date(2026, 10, 15),
            category=GTDCategory.NextAction,
        ),
    )
    result, update_context = _execute(store, intent, _ctx())

    assert result.failed is False
    assert result.task_id == "tsk_1"
    assert "📝 Llamar al dentista" in result.reply
    assert "🏷️ Casa" in result.reply
    assert "📅 jue, 15 oct" in result.reply

    kwargs = store.create_task.await_args.kwargs
    assert kwargs["context_id"] == "ctx_1"
    assert kwargs["source_event_id"] == "MSG1"
    assert kwargs["description"] == "Creado desde WhatsApp por Ana"
    update_context.assert_awaited_once()
    assert update_context.await_args.kwargs == {"last_intent": IntentKind.create_task, "last_task_id": "tsk_1"}


def test_create_task_with_unknown_context_still_creates():
    store = _fake_store(created_task=_task(), context=None)
    intent = Intent(kind=IntentKind.create_task, task_data=TaskData(title="Llamar al dentista", context_name="gym"))
    result, _ = _execute(store, intent, _ctx(sender_name=None))
    assert result.failed is False
    assert store.create_task.await_args.kwargs["context_id"] is None
    assert store.create_task.await_args.kwargs["description"] == "Creado desde WhatsApp por usuario"


def test_create_task_without_data_asks_to_rephrase():
    store = _fake_store()
    result, update_context = _execute(store, Intent(kind=IntentKind.create_task), _ctx())
    assert result.failed is True
    assert result.reply == replies.REPHRASE
    store.create_task.assert_not_awaited()
    update_context.assert_not_awaited()


def test_view_tasks_lists_and_records_intent():
    listed = [_task(title="Pagar luz", due_date=TODAY), _task(task_id="tsk_2", title="Reunión")]
    store = _fake_store(listed=listed)
    intent = Intent(kind=IntentKind.view_tasks, parameters={"filter": "today"})
    result, update_context = _execute(store, intent, _ctx(last_task_id="tsk_9"))

    assert "Tareas para hoy" in result.reply
    assert "1. Pagar luz" in result.reply
    assert "2. Reunión" in result.reply
    assert store.list_tasks.await_args.args == ("usr_1", "today", TODAY)
    # Viewing does not move the task anchor.
    assert update_context.await_args.kwargs == {"last_intent": IntentKind.view_tasks}


def test_view_empty_list():
    result, _ = _execute(_fake_store(), Intent(kind=IntentKind.view_tasks, parameters={"filter": "inbox"}), _ctx())
    assert result.reply == replies.VIEW_EMPTY["inbox"]


def test_complete_without_referent_asks_which_task():
    store = _fake_store()
    result, update_context = _execute(store, Intent(kind=IntentKind.complete_task), _ctx())
    assert result.failed is True
    assert result.reply == replies.ASK_WHICH_TASK
    store.get_task.assert_not_awaited()
    update_context.assert_not_awaited()


def test_complete_referenced_task():
    task = _task()
    store = _fake_store(task=task)
    result, update_context = _execute(store, Intent(kind=IntentKind.complete_task), _ctx(last_task_id="tsk_1"))
    assert result.failed is False
    assert "✔️ Llamar al dentista" in result.reply
    store.complete_task.assert_awaited_once_with(task)
    assert update_context.await_args.kwargs["last_task_id"] == "tsk_1"


def test_complete_already_completed_is_not_rewritten():
    store = _fake_store(task=_task(completed=True))
    result, _ = _execute(store, Intent(kind=IntentKind.complete_task), _ctx(last_task_id="tsk_1"))
    assert "ya estaba completada" in result.reply
    store.complete_task.assert_not_awaited()


def test_vanished_task_clears_stale_anchor():
    store = _fake_store(task=None)
    result, update_context = _execute(store, Intent(kind=IntentKind.complete_task), _ctx(last_task_id="tsk_gone"))
    assert result.failed is True
    assert result.reply == replies.TASK_NOT_FOUND
    assert update_context.await_args.kwargs == {"last_intent": IntentKind.complete_task, "last_task_id": None}


def test_add_context_assigns_existing_context():
    task = _task()
    store = _fake_store(task=task, context=Context(id="ctx_2", user_id="usr_1", name="Oficina"))
    intent = Intent(kind=IntentKind.add_context, parameters={"context_name": "oficina"})
    result, _ = _execute(store, intent, _ctx(last_task_id="tsk_1"))
    assert result.failed is False
    assert "@Oficina" in result.reply
    store.update_task.assert_awaited_once_with(task, "context_id", "ctx_2")


def test_add_context_failures():
    intent = Intent(kind=IntentKind.add_context, parameters={"context_name": "oficina"})
    result, _ = _execute(_fake_store(), intent, _ctx())
    assert result.reply == replies.ASK_WHICH_TASK

    result, _ = _execute(_fake_store(task=_task()), Intent(kind=IntentKind.add_context, parameters={}), _ctx("tsk_1"))
    assert result.reply == replies.ASK_CONTEXT_NAME

    store = _fake_store(task=_task(), context=None)
    result, _ = _execute(store, intent, _ctx(last_task_id="tsk_1"))
    assert result.failed is True
    assert result.reply == replies.context_not_found("oficina")
    store.update_task.assert_not_awaited()


def test_edit_due_date_with_relative_value():
    task = _task()
    store = _fake_store(task=task)
    intent = Intent(kind=IntentKind.edit_task, parameters={"edit_field": "due_date", "new_value": "el viernes"})
    result, update_context = _execute(store, intent, _ctx(last_task_id="tsk_1"))
    assert result.failed is False
    store.update_task.assert_awaited_once_with(task, "due_date", date(2026, 10, 16))
    assert "vie, 16 oct" in result.reply
    assert update_context.await_args.kwargs["last_intent"] == IntentKind.edit_task


def test_edit_title_and_category():
    task = _task()
    store = _fake_store(task=task)
    intent = Intent(kind=IntentKind.edit_task, parameters={"edit_field": "title", "new_value": "Llamar a la clínica"})
    _execute(store, intent, _ctx(last_task_id="tsk_1"))
    store.update_task.assert_awaited_once_with(task, "title", "Llamar a la clínica")

    store = _fake_store(task=task)
    intent = Intent(kind=IntentKind.edit_task, parameters={"edit_field": "category", "new_value": "algún día"})
    _execute(store, intent, _ctx(last_task_id="tsk_1"))
    store.update_task.assert_awaited_once_with(task, "category", GTDCategory.Someday)


def test_edit_failures_give_guidance():
    ctx = _ctx(last_task_id="tsk_1")
    cases = [
        ({"edit_field": None, "new_value": "x"}, replies.UNKNOWN_EDIT_FIELD),
        ({"edit_field": "title", "new_value": None}, replies.missing_edit_value("title")),
        ({"edit_field": "due_date", "new_value": "algún momento"}, replies.invalid_date("algún momento")),
        ({"edit_field": "category", "new_value": "urgente"}, replies.invalid_category("urgente")),
        ({"edit_field": "context", "new_value": "@gym"}, replies.context_not_found("gym")),
    ]
    for parameters, expected in cases:
        store = _fake_store(task=_task(), context=None)
        result, _ = _execute(store, Intent(kind=IntentKind.edit_task, parameters=parameters), ctx)
        assert result.failed is True
        assert result.reply == expected
        store.update_task.assert_not_awaited()

    result, _ = _execute(_fake_store(), Intent(kind=IntentKind.edit_task, parameters={"edit_field": "title"}), _ctx())
    assert result.reply == replies.ASK_WHICH_TASK


def test_help_returns_menu_and_greeting_uses_name():
    result, update_context = _execute(_fake_store(), Intent(kind=IntentKind.help), _ctx())
    assert result.reply == replies.HELP_TEXT
    assert result.menu["sections"][0]["rows"][0]["rowId"] == "ver bandeja de entrada"
    update_context.assert_not_awaited()

    result, _ = _execute(_fake_store(), Intent(kind=IntentKind.greeting), _ctx(sender_name="Ana"))
    assert result.reply.startswith("¡Hola Ana!")
