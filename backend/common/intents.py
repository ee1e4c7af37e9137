import re
import unicodedata
from datetime import date, timedelta
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from common.models import GTDCategory, IntentKind

TITLE_MAX_LEN = 80
FALLBACK_CONFIDENCE = 0.1
QUICK_ACTION_MAX_MINUTES = 2

VIEW_FILTERS = ("inbox", "today", "next_actions")

EDIT_FIELD_ALIASES = {
    "title": "title",
    "titulo": "title",
    "nombre": "title",
    "description": "description",
    "descripcion": "description",
    "nota": "description",
    "notas": "description",
    "due_date": "due_date",
    "duedate": "due_date",
    "fecha": "due_date",
    "vencimiento": "due_date",
    "context": "context",
    "contexto": "context",
    "category": "category",
    "categoria": "category",
}


class TaskData(BaseModel):
    title: str = Field(..., min_length=1, max_length=TITLE_MAX_LEN)
    description: Optional[str] = None
    context_name: Optional[str] = None
    due_date: Optional[date] = None
    estimated_minutes: Optional[int] = Field(None, ge=1, le=1440)
    category: GTDCategory = GTDCategory.Inbox
    is_quick_action: bool = False


class Intent(BaseModel):
    kind: IntentKind
    confidence: float = Field(0.5, ge=0, le=1)
    needs_context: bool = False
    parameters: Dict[str, Any] = Field(default_factory=dict)
    task_data: Optional[TaskData] = None


def fold(text: str) -> str:
    """Lowercase and strip accents so 'Mañana' and 'manana' compare equal."""
    decomposed = unicodedata.normalize("NFKD", text or "")
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).lower()


# --- Category inference ---

_WAITING_PHRASES = (
    "a la espera", "esperar a", "esperando", "espero que", "que me responda", "que me conteste",
    "que me envie", "que me mande", "que me devuelva", "cuando responda", "cuando conteste",
    "pendiente de", "depende de", "waiting for", "waiting on", "wait for",
)
_MULTI_STEP_PHRASES = (
    "proyecto", "organizar", "planificar", "planear", "renovar", "remodelar", "mudanza",
    "mudarme", "preparar el", "preparar la", "varios pasos", "lanzar", "armar el", "armar la",
    "project", "organize", "plan the", "launch",
)
_SOMEDAY_PHRASES = (
    "algun dia", "alguna vez", "me recomendaron", "recomendaron", "recomendo", "recomendacion",
    "seria bueno", "estaria bueno", "quizas", "quiza", "tal vez", "en el futuro", "cuando pueda",
    "someday", "some day", "maybe", "recommended",
)


def _has_phrase(folded: str, phrases) -> bool:
    return any(re.search(rf"\b{re.escape(p)}\b", folded) for p in phrases)


def infer_category(text: str, due_date: Optional[date] = None, today: Optional[date] = None) -> GTDCategory:
    """Fixed decision order: due date, third party, multi-step, someday, Inbox."""
    folded = fold(text)
    if due_date is None and today is not None:
        due_date = detect_due_date(text, today)
    if due_date is not None:
        return GTDCategory.NextAction
    if _has_phrase(folded, _WAITING_PHRASES):
        return GTDCategory.Waiting
    if _has_phrase(folded, _MULTI_STEP_PHRASES):
        return GTDCategory.MultiStep
    if _has_phrase(folded, _SOMEDAY_PHRASES):
        return GTDCategory.Someday
    return GTDCategory.Inbox


_CATEGORY_ALIASES = {
    "inbox": GTDCategory.Inbox,
    "bandeja de entrada": GTDCategory.Inbox,
    "nextaction": GTDCategory.NextAction,
    "next action": GTDCategory.NextAction,
    "next actions": GTDCategory.NextAction,
    "proximas acciones": GTDCategory.NextAction,
    "proxima accion": GTDCategory.NextAction,
    "multistep": GTDCategory.MultiStep,
    "multi-step": GTDCategory.MultiStep,
    "multi step": GTDCategory.MultiStep,
    "multitarea": GTDCategory.MultiStep,
    "proyecto": GTDCategory.MultiStep,
    "project": GTDCategory.MultiStep,
    "waiting": GTDCategory.Waiting,
    "waiting for": GTDCategory.Waiting,
    "a la espera": GTDCategory.Waiting,
    "someday": GTDCategory.Someday,
    "someday/maybe": GTDCategory.Someday,
    "algun dia": GTDCategory.Someday,
}


def normalize_category(value: Any) -> Optional[GTDCategory]:
    if isinstance(value, GTDCategory):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    return _CATEGORY_ALIASES.get(fold(value.strip()))


# --- Relative date resolution ---

_WEEKDAYS = {
    "lunes": 0, "martes": 1, "miercoles": 2, "jueves": 3, "viernes": 4, "sabado": 5, "domingo": 6,
    "monday": 0, "tuesday": 1, "wednesday": 2, "thursday": 3, "friday": 4, "saturday": 5, "sunday": 6,
}
_WEEKDAY_RE = re.compile(
    r"\b(?:el|este|proximo|next|on|this)\s+(" + "|".join(_WEEKDAYS) + r")\b"
)
_IN_DAYS_RE = re.compile(r"\b(?:en|in)\s+(\d{1,3})\s+(?:dias|days)\b")
_ISO_RE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")
# A bare N/M is usually a fraction or ratio ("1/2 kg", "24/7"); only read it
# as day/month after a date cue.
_DAY_MONTH_RE = re.compile(
    r"\b(?:el|para|hasta|antes del?|desde|by|on|due|until)\s+(\d{1,2})/(\d{1,2})(?:/(\d{2,4}))?\b"
)
# "por la mañana" / "esta mañana" name a time of day, not tomorrow.
_TOMORROW_RE = re.compile(r"(?<!la )(?<!esta )\bmanana\b|\btomorrow\b")


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def detect_due_date(text: str, today: date) -> Optional[date]:
    """Resolve the first explicit or relative date expression against ``today``."""
    folded = fold(text)
    if not folded:
        return None

    match = _ISO_RE.search(folded)
    if match:
        return _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))

    match = _DAY_MONTH_RE.search(folded)
    if match:
        day, month = int(match.group(1)), int(match.group(2))
        year_raw = match.group(3)
        if year_raw:
            year = int(year_raw)
            if year < 100:
                year += 2000
            return _safe_date(year, month, day)
        candidate = _safe_date(today.year, month, day)
        if candidate and candidate < today:
            candidate = _safe_date(today.year + 1, month, day)
        return candidate

    if re.search(r"\bpasado manana\b|\bday after tomorrow\b", folded):
        return today + timedelta(days=2)
    if _TOMORROW_RE.search(folded):
        return today + timedelta(days=1)
    if re.search(r"\bhoy\b|\btoday\b|\besta noche\b|\btonight\b", folded):
        return today

    match = _IN_DAYS_RE.search(folded)
    if match:
        return today + timedelta(days=int(match.group(1)))

    match = _WEEKDAY_RE.search(folded)
    if match:
        target = _WEEKDAYS[match.group(1)]
        ahead = (target - today.weekday()) % 7 or 7
        return today + timedelta(days=ahead)

    return None


def parse_iso_date(value: Any) -> Optional[date]:
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


# --- Classifier output normalization ---

def normalize_edit_field(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    return EDIT_FIELD_ALIASES.get(fold(value.strip()).replace(" ", "_"))


def _first(payload: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return None


def _normalize_task_data(candidate: Any, text: str, today: date) -> Optional[TaskData]:
    if not isinstance(candidate, dict):
        return None
    title = _first(candidate, "title", "titulo")
    if not isinstance(title, str) or not title.strip():
        return None
    description = _first(candidate, "description", "descripcion")
    context_name = _first(candidate, "contextName", "context_name", "context")
    if isinstance(context_name, str):
        context_name = context_name.strip().lstrip("@") or None
    else:
        context_name = None

    due_date = parse_iso_date(_first(candidate, "dueDate", "due_date"))
    # An explicit null means the model saw no date; only an omitted key falls back to the text.
    if due_date is None and "dueDate" not in candidate and "due_date" not in candidate:
        due_date = detect_due_date(text, today)

    minutes = _first(candidate, "estimatedMinutes", "estimated_minutes")
    if not isinstance(minutes, int) or isinstance(minutes, bool) or not (1 <= minutes <= 1440):
        minutes = None

    if due_date is not None:
        category = GTDCategory.NextAction
    else:
        category = normalize_category(candidate.get("category")) or infer_category(text)

    quick = bool(candidate.get("isQuickAction") or candidate.get("is_quick_action"))
    if minutes is not None and minutes <= QUICK_ACTION_MAX_MINUTES:
        quick = True

    return TaskData(
        title=title.strip()[:TITLE_MAX_LEN],
        description=description.strip() if isinstance(description, str) and description.strip() else None,
        context_name=context_name,
        due_date=due_date,
        estimated_minutes=minutes,
        category=category,
        is_quick_action=quick,
    )


def normalize_classification(payload: Dict[str, Any], text: str, today: date) -> Intent:
    """Validate a language-model classification. Raises ValueError on unusable output."""
    if not isinstance(payload, dict):
        raise ValueError("Classification payload is not an object")
    raw_kind = _first(payload, "intent", "kind")
    try:
        kind = IntentKind(raw_kind)
    except ValueError:
        raise ValueError(f"Unknown intent kind: {raw_kind!r}")

    confidence = payload.get("confidence")
    if not isinstance(confidence, (int, float)) or isinstance(confidence, bool):
        confidence = 0.5
    confidence = min(1.0, max(0.0, float(confidence)))

    parameters = payload.get("parameters")
    parameters = dict(parameters) if isinstance(parameters, dict) else {}
    if kind == IntentKind.edit_task:
        parameters["edit_field"] = normalize_edit_field(_first(parameters, "editField", "edit_field", "field"))
        new_value = _first(parameters, "newValue", "new_value", "value")
        parameters["new_value"] = new_value.strip() if isinstance(new_value, str) and new_value.strip() else None
    elif kind == IntentKind.add_context:
        name = _first(parameters, "contextName", "context_name", "context")
        parameters["context_name"] = name.strip().lstrip("@") if isinstance(name, str) and name.strip() else None
    elif kind == IntentKind.view_tasks:
        view_filter = _first(parameters, "filter", "view")
        parameters["filter"] = view_filter if view_filter in VIEW_FILTERS else "inbox"

    task_data = None
    if kind == IntentKind.create_task:
        task_data = _normalize_task_data(_first(payload, "taskData", "task_data"), text, today)

    return Intent(
        kind=kind,
        confidence=confidence,
        needs_context=bool(_first(payload, "needsContext", "needs_context")),
        parameters=parameters,
        task_data=task_data,
    )


def fallback_intent(text: str) -> Intent:
    """Deterministic classification used when the language model is unavailable."""
    clean = (text or "").strip()
    return Intent(
        kind=IntentKind.create_task,
        confidence=FALLBACK_CONFIDENCE,
        needs_context=False,
        parameters={"fallback": True},
        task_data=TaskData(
            title=clean[:TITLE_MAX_LEN] or "Nota sin texto",
            description=clean if len(clean) > TITLE_MAX_LEN else None,
            category=GTDCategory.Inbox,
        ),
    )
