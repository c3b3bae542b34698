"""
Customer-facing texts of the Kika assistant.

All copy sent to contacts lives here so the engine and the router only
decide *which* message to send.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

ASSISTANT_NAME = "Kika"
TERMS_URL = "https://www.finsolred.com/terminos-y-condiciones-uso-del-chatbot"


def time_greeting(now: datetime) -> str:
    hour = now.hour
    if 5 <= hour < 12:
        return "Buenos días"
    if 12 <= hour < 19:
        return "Buenas tardes"
    return "Buenas noches"


def main_menu(now: datetime, name: Optional[str] = None, include_intro: bool = True) -> str:
    if include_intro:
        text = f"¡{time_greeting(now)}, {name or ''}! Soy {ASSISTANT_NAME} 🤖.\n"
        text += "Es un gusto saludarte. ¿En qué puedo ayudarte hoy?\n\n"
    else:
        text = f"¿En qué más te puedo ayudar, {name}? 👇" if name else "Aquí tienes tus opciones:"
        text += "\n\n"
    text += "1️⃣ Consultar Deudas\n"
    text += "2️⃣ Hablar con un asesor\n"
    text += '\n💡 _(Escribe "Salir" para terminar)_'
    return text


def ask_for_name(now: datetime) -> str:
    return (
        f"{time_greeting(now)} 👋 Soy {ASSISTANT_NAME}, tu asistente virtual.\n\n"
        "Para brindarte una mejor atención, ¿podrías indicarme tu nombre, por favor?"
    )


INVALID_NAME = "Mmm... ese nombre no parece válido 🤔. Por favor, escribe solo tu nombre real para continuar."

RESET_NOTICE = "¡Entendido! Regresamos al menú principal 🏠.\n\n"

UNRECOGNIZED_OPTION = "No entendí esa opción 😅. Por favor, elige una de las siguientes:\n\n"

CONFUSED_RESTART = "¡Ups! 😅 Me confundí un poco. Mejor empecemos de nuevo.\n\n"

ASK_NATIONAL_ID = "¡Perfecto! 👌 Por favor, ingresa tu número de cédula para realizar la consulta."

DISCLAIMER = (
    "Antes de mostrarte información privada 🔒, necesito que aceptes nuestros "
    f"Términos y Condiciones: {TERMS_URL}\n\n"
    '¿Estás de acuerdo? (Responde "Sí" o "No")'
)

TERMS_ACCEPTED = "¡Gracias por confirmar! ✅\n\nAhora sí, escríbeme tu número de cédula para buscar tus deudas."

PRIVACY_NOTICE = (
    "Comprendo. Respetamos tu privacidad, pero sin tu autorización no puedo "
    "mostrarte la información 🛡️.\n\n"
)

DISCLAIMER_UNCLEAR = 'Necesito una confirmación clara. Por favor responde "Sí" para continuar o "No" para cancelar.'

NATIONAL_ID_TOO_SHORT = "El número parece muy corto. Por favor verifica e intenta nuevamente."


def no_client_record(national_id: str) -> str:
    return (
        f"Busqué en el sistema 🔎, pero no encontré registros con la cédula *{national_id}*.\n\n"
        "¿Deseas intentar otra vez?\n"
    )


def good_news(name: Optional[str]) -> str:
    return (
        f"¡Estimado/a {name or ''}, te tengo buenas noticias! 🎉\n\n"
        "*No registras deudas pendientes con nosotros.*"
    )


def account_statement(client_name: str, debt_text: str) -> str:
    return f"Hola {client_name}, aquí tienes tu estado de cuenta 📄:\n\n{debt_text}"


DEBT_TIP = "\n💡 *Tip:* Si necesitas detalles específicos, la opción 2 te conecta con un humano.\n\n"

SURVEY_QUESTION = (
    "Antes de irte, ¿me regalas 5 segundos? ⏱️\n\n"
    "¿Cómo calificarías mi atención hoy?\n\n"
    "1️⃣ Mala\n2️⃣ Regular\n3️⃣ Excelente!\n\n"
    "_(Solo escribe el número)_"
)

AGENT_SURVEY_QUESTION = (
    "Antes de finalizar, ¿podría calificar mi atención?\n\n"
    "1. Mala\n2. Regular\n3. Excelente\n\n"
    "(Por favor escriba el número)"
)

SURVEY_THANKS = f"¡Muchas gracias por tu opinión! 🙌 Que tengas un día genial. {ASSISTANT_NAME} se despide."

HANDOFF_HOLDING = (
    "¡Entendido! Uno de nuestros asesores se pondrá en contacto con usted lo más "
    "pronto posible. Por favor espere un momento. ⏳"
)

TECHNICAL_PROBLEM = "Tuve un problema técnico. Un asesor te contactará pronto."

SESSION_EXPIRED = "La sesión ha caducado por inactividad. Si necesita algo más, vuelva a escribirnos."

FAREWELL = "Gracias por escribirnos. Si necesitas algo más, aquí estaré. ¡Hasta pronto! 👋"

MEDIA_PLACEHOLDER = "Archivo adjunto"


# ── System notes (visible to agents only) ──────────────────────

NOTE_CHANNEL_NOT_READY = "Mensaje recibido sin conexión de WhatsApp. Asignando a asesor."
NOTE_HANDOFF_REQUESTED = "Cliente solicitó asesor. Mensaje de espera enviado."
NOTE_QUEUED = "Sin asesores disponibles. Chat en cola de espera."
NOTE_UNASSIGNED = "Asignación removida."
NOTE_SEND_FAILED = "⚠️ Error al enviar mensaje por WhatsApp. Intente nuevamente."
NOTE_RESPONSE_TIMEOUT = "El asesor no respondió a tiempo. Reasignando chat."
NOTE_RELEASED_BY_TIMEOUT = "Sin otro asesor disponible. Chat devuelto al asistente automático."
NOTE_RELEASED_STALE = "Chat liberado automáticamente por inactividad prolongada."


def note_assigned(agent_name: str, is_auto: bool) -> str:
    how = "automáticamente" if is_auto else "manualmente"
    return f"Chat asignado {how} a: {agent_name}."


def note_released(agent_name: str) -> str:
    return f"Chat liberado por {agent_name}."
