import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from common.config import settings
from common.errors import ClassificationError
from common.intents import Intent, fallback_intent, normalize_classification

logger = logging.getLogger(__name__)

CLASSIFY_SYSTEM_PROMPT = (
    "Eres un asistente experto en el método GTD (Getting Things Done) que atiende mensajes de WhatsApp.\n"
    "Clasifica cada mensaje en exactamente una intención:\n"
    "- create_task: el usuario quiere capturar algo por hacer (\"Llamar al dentista mañana\").\n"
    "- view_tasks: quiere ver tareas. parameters.filter = inbox | today | next_actions.\n"
    "- complete_task: quiere marcar como hecha la última tarea mencionada (\"listo\", \"completar esa tarea\").\n"
    "- edit_task: quiere cambiar un campo de la última tarea. parameters.editField = title | description | "
    "dueDate | context | category y parameters.newValue con el nuevo valor (fechas en YYYY-MM-DD).\n"
    "- add_context: quiere asignar un contexto a la última tarea. parameters.contextName sin @.\n"
    "- help: pide ayuda o pregunta qué puede hacer el bot.\n"
    "- greeting: saludos, despedidas, agradecimientos o respuestas cortas sin acción.\n"
    "\n"
    "Para create_task completa taskData con: title (máximo 80 caracteres), description (opcional), "
    "contextName (opcional, sin @), dueDate (YYYY-MM-DD, opcional), estimatedMinutes (opcional), "
    "category e isQuickAction.\n"
    "Categorías, en este orden de decisión:\n"
    "1. Si tiene fecha de vencimiento -> \"Próximas acciones\".\n"
    "2. Si depende de otra persona -> \"A la espera\".\n"
    "3. Si es un proyecto de varios pasos -> \"Multitarea\".\n"
    "4. Si es una idea o recomendación sin urgencia -> \"Algún día\".\n"
    "5. Si es ambiguo -> \"Inbox\".\n"
    "Las fechas relativas (\"mañana\", \"el lunes\", \"en 3 días\") se calculan desde la fecha de hoy indicada "
    "y se devuelven como fecha absoluta.\n"
    "Usa el historial reciente para resolver referencias como \"esa tarea\".\n"
    "Responde SOLO con un objeto JSON con las claves: intent, confidence (0 a 1), needsContext (bool), "
    "parameters (objeto) y taskData (solo para create_task)."
)


@dataclass
class ClassificationResult:
    intent: Intent
    fallback: bool = False
    error_code: Optional[str] = None
    usage: Dict[str, int] = field(default_factory=dict)
    latency_ms: int = 0


class LLMAdapter:
    @staticmethod
    def _normalize_usage(candidate: Any) -> Optional[Dict[str, int]]:
        if not isinstance(candidate, dict):
            return None
        usage = {}
        mapping = {
            "input_tokens": ("input_tokens", "prompt_tokens"),
            "output_tokens": ("output_tokens", "completion_tokens"),
        }
        for normalized_key, provider_keys in mapping.items():
            for key in provider_keys:
                value = candidate.get(key)
                if isinstance(value, int) and value >= 0:
                    usage[normalized_key] = value
                    break
        return usage or None

    def _base_url(self) -> str:
        base = settings.LLM_API_BASE_URL.strip()
        if not base:
            raise RuntimeError("LLM_API_BASE_URL is not configured")
        return base.rstrip("/")

    async def _post_with_retry(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        last_error: Optional[Exception] = None
        retries = max(0, settings.LLM_MAX_RETRIES)
        for attempt in range(retries + 1):
            try:
                async with httpx.AsyncClient(timeout=settings.LLM_TIMEOUT_SECONDS) as client:
                    response = await client.post(
                        f"{self._base_url()}/chat/completions",
                        headers={
                            "Authorization": f"Bearer {settings.LLM_API_KEY}",
                            "Content-Type": "application/json",
                        },
                        json=payload,
                    )
                    response.raise_for_status()
                    body = response.json()
                    if not isinstance(body, dict):
                        raise ValueError("Provider response is not a JSON object")
                    return body
            except (httpx.RequestError, httpx.HTTPStatusError, httpx.TimeoutException, ValueError) as exc:
                last_error = exc
                if attempt >= retries:
                    break
                delay = max(0.0, settings.LLM_RETRY_BACKOFF_SECONDS) * (2 ** attempt)
                if delay > 0:
                    await asyncio.sleep(delay)
        assert last_error is not None
        raise last_error

    @staticmethod
    def _extract_content(payload: Dict[str, Any]) -> Any:
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            raise ValueError("Provider response missing choices")
        first = choices[0]
        if not isinstance(first, dict):
            raise ValueError("Provider choice is invalid")
        message = first.get("message")
        if not isinstance(message, dict):
            raise ValueError("Provider message is invalid")
        content = message.get("content")
        if isinstance(content, list):
            parts = []
            for part in content:
                if isinstance(part, dict):
                    text_value = part.get("text")
                    if isinstance(text_value, str):
                        parts.append(text_value)
            content = "\n".join(parts).strip()
        return content

    @staticmethod
    def _parse_content_object(content: Any) -> Dict[str, Any]:
        if isinstance(content, dict):
            return content
        if not isinstance(content, str) or not content.strip():
            raise ValueError("Provider content is not JSON")
        parsed = json.loads(content)
        if not isinstance(parsed, dict):
            raise ValueError("Parsed provider content is not an object")
        return parsed

    @staticmethod
    def build_user_prompt(text: str, now_local: datetime, turns: List[Dict[str, Any]], has_last_task: bool) -> str:
        history_lines = []
        for turn in turns:
            role = "Usuario" if turn.get("role") == "user" else "Asistente"
            history_lines.append(f"{role}: {turn.get('content', '')}")
        history = "\n".join(history_lines) if history_lines else "(sin historial)"
        return (
            f"Fecha de hoy: {now_local.date().isoformat()} ({now_local.strftime('%A')})\n"
            f"Hora actual ({settings.APP_TIMEZONE}): {now_local.strftime('%H:%M')}\n"
            f"Hay una última tarea referenciada: {'sí' if has_last_task else 'no'}\n"
            f"Historial reciente:\n{history}\n"
            "\n"
            f"Mensaje a analizar:\n\"{text}\""
        )

    def _build_payload(self, user_prompt: str) -> Dict[str, Any]:
        return {
            "model": settings.LLM_MODEL_CLASSIFY,
            "temperature": settings.LLM_TEMPERATURE,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": CLASSIFY_SYSTEM_PROMPT},
                {"role": "user", "content": user_prompt},
            ],
        }

    async def _classify_raw(self, user_prompt: str) -> Dict[str, Any]:
        response = await self._post_with_retry(self._build_payload(user_prompt))
        content_obj = self._parse_content_object(self._extract_content(response))
        usage = self._normalize_usage(response.get("usage"))
        if usage:
            content_obj["usage"] = usage
        return content_obj

    async def classify_intent(
        self,
        text: str,
        now_local: datetime,
        turns: Optional[List[Dict[str, Any]]] = None,
        has_last_task: bool = False,
    ) -> ClassificationResult:
        """Classify a message; never raises.

        Any provider or parsing failure yields the deterministic create_task
        fallback so the user's message is not lost.
        """
        start = time.time()
        user_prompt = self.build_user_prompt(text, now_local, turns or [], has_last_task)
        try:
            try:
                raw = await self._classify_raw(user_prompt)
                intent = normalize_classification(raw, text, now_local.date())
            except Exception as exc:
                raise ClassificationError(type(exc).__name__) from exc
            return ClassificationResult(
                intent=intent,
                usage=self._normalize_usage(raw.get("usage")) or {},
                latency_ms=int((time.time() - start) * 1000),
            )
        except ClassificationError as exc:
            logger.warning("classify_intent fallback: %s", exc)
            return ClassificationResult(
                intent=fallback_intent(text),
                fallback=True,
                error_code=str(exc),
                latency_ms=int((time.time() - start) * 1000),
            )


adapter = LLMAdapter()
