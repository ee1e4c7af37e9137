import asyncio
import json
from datetime import date, datetime
from unittest.mock import AsyncMock, patch

import httpx

from common.adapter import LLMAdapter
from common.config import settings
from common.models import GTDCategory, IntentKind

NOW_LOCAL = datetime(2026, 10, 14, 9, 30)


class _FakeResponse:
    def __init__(self, payload):
        self._payload = payload

    def raise_for_status(self):
        return None

    def json(self):
        return self._payload


def _completion(content, usage=None):
    payload = {"choices": [{"message": {"content": content}}]}
    if usage is not None:
        payload["usage"] = usage
    return payload


def _set_provider_settings(retries=2):
    original = {
        "LLM_API_BASE_URL": settings.LLM_API_BASE_URL,
        "LLM_API_KEY": settings.LLM_API_KEY,
        "LLM_MAX_RETRIES": settings.LLM_MAX_RETRIES,
        "LLM_TIMEOUT_SECONDS": settings.LLM_TIMEOUT_SECONDS,
        "LLM_RETRY_BACKOFF_SECONDS": settings.LLM_RETRY_BACKOFF_SECONDS,
    }
    settings.LLM_API_BASE_URL = "https://provider.example/v1"
    settings.LLM_API_KEY = "test_api_key"
    settings.LLM_MAX_RETRIES = retries
    settings.LLM_TIMEOUT_SECONDS = 5
    settings.LLM_RETRY_BACKOFF_SECONDS = 0
    return original


def _restore_provider_settings(original):
    for key, value in original.items():
        setattr(settings, key, value)


def test_classify_create_task_with_usage():
    async def _run():
        adapter = LLMAdapter()
        original = _set_provider_settings()
        try:
            content = json.dumps(
                {
                    "intent": "create_task",
                    "confidence": 0.92,
                    "needsContext": False,
                    "parameters": {},
                    "taskData": {"title": "Llamar al dentista", "dueDate": "2026-10-15", "category": "NextAction"},
                }
            )
            payload = _completion(content, usage={"prompt_tokens": 210, "completion_tokens": 40})
            post = AsyncMock(return_value=_FakeResponse(payload))
            with patch("common.adapter.httpx.AsyncClient.post", new=post):
                result = await adapter.classify_intent("Llamar al dentista mañana a las 3pm", NOW_LOCAL)

            assert result.fallback is False
            assert result.error_code is None
            assert result.intent.kind == IntentKind.create_task
            assert result.intent.task_data.due_date == date(2026, 10, 15)
            assert result.intent.task_data.category == GTDCategory.NextAction
            assert result.usage == {"input_tokens": 210, "output_tokens": 40}

            sent = post.await_args.kwargs["json"]
            assert sent["model"] == settings.LLM_MODEL_CLASSIFY
            assert sent["response_format"] == {"type": "json_object"}
            assert "Fecha de hoy: 2026-10-14" in sent["messages"][1]["content"]
        finally:
            _restore_provider_settings(original)

    asyncio.run(_run())


def test_classify_retries_then_succeeds():
    async def _run():
        adapter = LLMAdapter()
        original = _set_provider_settings(retries=2)
        try:
            request = httpx.Request("POST", "https://provider.example/v1/chat/completions")
            post = AsyncMock(
                side_effect=[
                    httpx.ConnectError("boom", request=request),
                    _FakeResponse(_completion('{"intent":"greeting","confidence":0.8}')),
                ]
            )
            with patch("common.adapter.httpx.AsyncClient.post", new=post):
                result = await adapter.classify_intent("hola!", NOW_LOCAL)
            assert result.fallback is False
            assert result.intent.kind == IntentKind.greeting
            assert post.await_count == 2
        finally:
            _restore_provider_settings(original)

    asyncio.run(_run())


def test_provider_failure_falls_back_to_inbox_task():
    async def _run():
        adapter = LLMAdapter()
        original = _set_provider_settings(retries=0)
        try:
            request = httpx.Request("POST", "https://provider.example/v1/chat/completions")
            post = AsyncMock(side_effect=httpx.ConnectError("provider down", request=request))
            with patch("common.adapter.httpx.AsyncClient.post", new=post):
                result = await adapter.classify_intent("Comprar pintura para el living", NOW_LOCAL)
            assert result.fallback is True
            assert result.error_code == "ConnectError"
            assert result.intent.kind == IntentKind.create_task
            assert result.intent.task_data.title == "Comprar pintura para el living"
            assert result.intent.task_data.category == GTDCategory.Inbox
            assert post.await_count == 1
        finally:
            _restore_provider_settings(original)

    asyncio.run(_run())


def test_invalid_json_content_falls_back():
    async def _run():
        adapter = LLMAdapter()
        original = _set_provider_settings(retries=0)
        try:
            payload = _completion("no es json")
            with patch("common.adapter.httpx.AsyncClient.post", new=AsyncMock(return_value=_FakeResponse(payload))):
                result = await adapter.classify_intent("Revisar presupuesto", NOW_LOCAL)
            assert result.fallback is True
            assert result.error_code == "JSONDecodeError"
            assert result.intent.task_data.title == "Revisar presupuesto"
        finally:
            _restore_provider_settings(original)

    asyncio.run(_run())


def test_unknown_intent_kind_falls_back():
    async def _run():
        adapter = LLMAdapter()
        original = _set_provider_settings(retries=0)
        try:
            payload = _completion('{"intent":"delete_everything","confidence":0.99}')
            with patch("common.adapter.httpx.AsyncClient.post", new=AsyncMock(return_value=_FakeResponse(payload))):
                result = await adapter.classify_intent("borrar todo", NOW_LOCAL)
            assert result.fallback is True
            assert result.error_code == "ValueError"
            assert result.intent.kind == IntentKind.create_task
        finally:
            _restore_provider_settings(original)

    asyncio.run(_run())


def test_user_prompt_carries_history_and_anchor():
    turns = [
        {"role": "user", "content": "Llamar al dentista mañana"},
        {"role": "assistant", "content": "✅ Tarea creada"},
    ]
    prompt = LLMAdapter.build_user_prompt("listo, ya lo hice", NOW_LOCAL, turns, True)
    assert "Usuario: Llamar al dentista mañana" in prompt
    assert "Asistente: ✅ Tarea creada" in prompt
    assert "Hay una última tarea referenciada: sí" in prompt
    assert prompt.endswith('"listo, ya lo hice"')

    empty = LLMAdapter.build_user_prompt("hola", NOW_LOCAL, [], False)
    assert "(sin historial)" in empty
    assert "Hay una última tarea referenciada: no" in empty
