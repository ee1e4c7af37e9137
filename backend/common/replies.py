"""User-facing WhatsApp texts (Spanish)."""
from datetime import date
from typing import Any, Dict, List, Optional

from common.config import settings
from common.models import GTDCategory, Task

_WEEKDAYS_SHORT = ("lun", "mar", "mié", "jue", "vie", "sáb", "dom")
_MONTHS_SHORT = ("ene", "feb", "mar", "abr", "may", "jun", "jul", "ago", "sept", "oct", "nov", "dic")

VIEW_TITLES = {
    "inbox": "📥 Tu bandeja de entrada",
    "today": "📅 Tareas para hoy",
    "next_actions": "▶️ Próximas acciones",
}
VIEW_EMPTY = {
    "inbox": "Tu bandeja de entrada está vacía. ¡Buen trabajo! 🎉",
    "today": "No tienes tareas para hoy. 🙌",
    "next_actions": "No tienes próximas acciones pendientes.",
}
EDIT_FIELD_LABELS = {
    "title": "título",
    "description": "descripción",
    "due_date": "fecha",
    "context": "contexto",
    "category": "categoría",
}

LINK_SUCCESS = (
    "✅ ¡Cuenta vinculada exitosamente!\n\n"
    "Ahora puedes enviarme mensajes de texto o notas de voz para crear tareas.\n\n"
    "Ejemplo:\n\"Llamar al dentista mañana a las 3pm\"\n\"Comprar leche y pan @compras\""
)
LINK_INVALID = "❌ Código inválido o expirado.\n\nGenera un nuevo código desde el dashboard de GTD Buddy."
TRANSCRIPTION_FAILED = (
    "🎙️ No pude procesar tu nota de voz.\n\n"
    "Intenta con un audio más corto o escríbeme el mensaje como texto."
)
RATE_LIMITED = "⏳ Estás enviando muchos mensajes seguidos. Espera un minuto y vuelve a intentarlo."
UNSUPPORTED_TYPE = "📎 Por ahora solo entiendo mensajes de texto y notas de voz. Escríbeme o mándame un audio."
GENERIC_ERROR = "😕 Ocurrió un error procesando tu mensaje. Intenta de nuevo en unos minutos."
REPHRASE = "🤔 No entendí qué tarea quieres crear. ¿Puedes escribirlo de otra forma?"
ASK_WHICH_TASK = "🤔 ¿A qué tarea te refieres? Primero crea o menciona una tarea y luego dime qué hacer con ella."
TASK_NOT_FOUND = "🔎 No encontré esa tarea. Puede que la hayas eliminado desde la web."
ASK_CONTEXT_NAME = "🏷️ ¿Qué contexto quieres asignar? Por ejemplo: \"agregar contexto @casa\"."
UNKNOWN_EDIT_FIELD = (
    "✏️ ¿Qué quieres cambiar de la tarea? Puedo editar el título, la descripción, "
    "la fecha, el contexto o la categoría."
)


def format_date(value: date) -> str:
    """Short Spanish date, e.g. 'lun, 20 oct'."""
    return f"{_WEEKDAYS_SHORT[value.weekday()]}, {value.day} {_MONTHS_SHORT[value.month - 1]}"


def _category_label(category: Any) -> str:
    return category.value if isinstance(category, GTDCategory) else str(category or GTDCategory.Inbox.value)


def not_linked() -> str:
    return (
        "¡Hola! 👋\n\n"
        "Para usar GTD Buddy por WhatsApp, primero debes vincular tu cuenta.\n\n"
        f"1. Ingresa a tu dashboard en {settings.APP_PUBLIC_URL}\n"
        "2. Ve a Configuración > WhatsApp\n"
        "3. Genera tu código de vinculación\n"
        "4. Envíame ese código de 6 dígitos\n\n"
        "¡Nos vemos pronto!"
    )


def not_registered() -> str:
    return (
        "¡Hola! 👋\n\n"
        "No encontré una cuenta de GTD Buddy asociada a este número.\n"
        f"Regístrate en {settings.APP_PUBLIC_URL} y luego vincula tu WhatsApp desde Configuración."
    )


def subscription_expired() -> str:
    return (
        "⚠️ Tu suscripción ha expirado.\n\n"
        f"Para seguir usando GTD Buddy, renueva tu suscripción en:\n{settings.APP_PUBLIC_URL}/dashboard"
    )


def error_reply_for_category(category: str) -> str:
    if category == "subscription":
        return subscription_expired()
    if category == "linking":
        return not_linked()
    if category == "transcription":
        return TRANSCRIPTION_FAILED
    return GENERIC_ERROR


def task_created(task: Task, context_name: Optional[str] = None) -> str:
    lines = ["✅ Tarea creada:", "", f"📝 {task.title}"]
    category = _category_label(task.category)
    if category != GTDCategory.Inbox.value:
        lines.append(f"📂 {category}")
    if context_name:
        lines.append(f"🏷️ {context_name}")
    if task.due_date:
        lines.append(f"📅 {format_date(task.due_date)}")
    if task.estimated_minutes:
        lines.append(f"⏱️ {task.estimated_minutes} min")
    if task.is_quick_action:
        lines.append("⚡ Acción rápida (< 2 min)")
    return "\n".join(lines)


def task_list(view_filter: str, tasks: List[Task], today: date) -> str:
    if not tasks:
        return VIEW_EMPTY.get(view_filter, VIEW_EMPTY["inbox"])
    lines = [f"*{VIEW_TITLES.get(view_filter, VIEW_TITLES['inbox'])}*", ""]
    for idx, task in enumerate(tasks, start=1):
        line = f"{idx}. {task.title}"
        if task.due_date and view_filter != "today":
            marker = " ⚠️" if task.due_date < today else ""
            line += f" (📅 {format_date(task.due_date)}{marker})"
        if task.is_quick_action:
            line += " ⚡"
        lines.append(line)
    return "\n".join(lines)


def task_completed(task: Task) -> str:
    return f"🎉 ¡Listo! Marqué como completada:\n\n✔️ {task.title}"


def task_already_completed(task: Task) -> str:
    return f"👌 La tarea \"{task.title}\" ya estaba completada."


def context_added(task: Task, context_name: str) -> str:
    return f"🏷️ Asigné el contexto @{context_name} a \"{task.title}\"."


def context_not_found(name: str) -> str:
    return (
        f"🔎 No encontré el contexto \"{name}\".\n\n"
        "Revisa el nombre o créalo primero desde la sección Contextos de la web."
    )


def missing_edit_value(field: str) -> str:
    label = EDIT_FIELD_LABELS.get(field, field)
    return f"✏️ ¿Cuál es el nuevo valor para el {label}?"


def invalid_date(value: str) -> str:
    return f"📅 No pude entender la fecha \"{value}\". Prueba con \"mañana\", \"el viernes\" o 25/12."


def invalid_category(value: str) -> str:
    options = ", ".join(c.value for c in GTDCategory)
    return f"📂 \"{value}\" no es una categoría válida. Opciones: {options}."


def task_updated(field: str, task: Task, display_value: str) -> str:
    label = EDIT_FIELD_LABELS.get(field, field)
    return f"✏️ Actualicé el {label} de \"{task.title}\":\n\n➡️ {display_value}"


def greeting(name: Optional[str] = None) -> str:
    who = f" {name}" if name else ""
    return (
        f"¡Hola{who}! 👋\n\n"
        "Envíame lo que tengas en mente y lo guardo como tarea. Escribe \"ayuda\" para ver qué puedo hacer."
    )


HELP_TEXT = (
    "🤖 *Así puedo ayudarte:*\n\n"
    "📝 *Crear tareas*: \"Llamar al dentista mañana a las 3pm\"\n"
    "🏷️ *Con contexto*: \"Comprar leche y pan @compras\"\n"
    "🎙️ *Notas de voz*: envíame un audio y lo transcribo\n"
    "📥 *Ver tareas*: \"ver bandeja de entrada\", \"ver tareas de hoy\", \"ver próximas acciones\"\n"
    "✔️ *Completar*: \"listo\" o \"completar esa tarea\"\n"
    "✏️ *Editar*: \"cambiar la fecha al viernes\"\n"
    "➕ *Contexto*: \"agregar contexto @oficina\""
)


def help_menu() -> Dict[str, Any]:
    """Interactive list body; row ids are the text commands they stand for."""
    return {
        "title": "GTD Buddy",
        "description": "¿Qué quieres hacer?",
        "buttonText": "Ver opciones",
        "footerText": "También puedes escribirme o enviarme un audio.",
        "sections": [
            {
                "title": "Tareas",
                "rows": [
                    {"title": "Ver bandeja de entrada", "description": "Tareas sin procesar", "rowId": "ver bandeja de entrada"},
                    {"title": "Ver tareas de hoy", "description": "Lo que vence hoy", "rowId": "ver tareas de hoy"},
                    {"title": "Ver próximas acciones", "description": "Tu lista de próximas acciones", "rowId": "ver próximas acciones"},
                ],
            },
            {
                "title": "Última tarea",
                "rows": [
                    {"title": "Completar", "description": "Marcar la última tarea como hecha", "rowId": "completar esa tarea"},
                ],
            },
        ],
    }
