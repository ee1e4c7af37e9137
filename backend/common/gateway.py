import logging
import time
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List

import httpx

from common.config import settings
from common.errors import DeliveryError, GatewayAuthError
from common.models import PayloadKind

logger = logging.getLogger(__name__)

MESSAGE_EVENT = "messages.upsert"
TEXT_MESSAGE_TYPES = {"conversation", "extendedTextMessage"}
AUDIO_MESSAGE_TYPES = {"audioMessage"}
BUTTON_MESSAGE_TYPES = {"buttonsResponseMessage", "templateButtonReplyMessage"}
LIST_MESSAGE_TYPES = {"listResponseMessage"}


@dataclass
class InboundEvent:
    event_id: str
    sender_address: str
    remote_jid: str
    timestamp_ms: int
    payload_kind: PayloadKind
    raw_content: Optional[str] = None
    media_url: Optional[str] = None
    media_mimetype: Optional[str] = None
    sender_name: Optional[str] = None
    message_type: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


def verify_gateway_api_key(headers: Dict[str, str], payload: Optional[Dict[str, Any]]) -> bool:
    """The relay may carry the key in a header or in the payload; either is accepted."""
    expected = settings.GATEWAY_API_KEY
    if not expected:
        return True
    header_key = headers.get("apikey") or headers.get("x-api-key")
    payload_key = payload.get("apikey") if isinstance(payload, dict) else None
    return header_key == expected or payload_key == expected


def require_gateway_api_key(headers: Dict[str, str], payload: Optional[Dict[str, Any]]) -> None:
    if not verify_gateway_api_key(headers, payload):
        raise GatewayAuthError("gateway api key missing or invalid")


def extract_phone_number(remote_jid: str) -> str:
    # 5491112345678@s.whatsapp.net -> 5491112345678
    return (remote_jid or "").split("@")[0]


def _timestamp_ms(raw: Any) -> int:
    if isinstance(raw, str) and raw.strip().isdigit():
        raw = int(raw.strip())
    if isinstance(raw, (int, float)) and raw > 0:
        # The relay sends seconds; some builds forward milliseconds.
        return int(raw if raw > 1_000_000_000_000 else raw * 1000)
    return int(time.time() * 1000)


def _selection_text(message: Dict[str, Any], message_type: str) -> Optional[str]:
    if message_type in BUTTON_MESSAGE_TYPES:
        reply = message.get("buttonsResponseMessage") or message.get("templateButtonReplyMessage") or {}
        return reply.get("selectedButtonId") or reply.get("selectedId") or reply.get("selectedDisplayText")
    if message_type in LIST_MESSAGE_TYPES:
        reply = message.get("listResponseMessage") or {}
        single = reply.get("singleSelectReply") or {}
        return single.get("selectedRowId") or reply.get("title")
    return None


def parse_webhook(payload: Dict[str, Any]) -> Optional[InboundEvent]:
    """Extract a single inbound event from the relay envelope.

    Returns None for non-message events (connection updates, receipts) or
    envelopes without a message key.
    """
    if not isinstance(payload, dict):
        return None
    event_name = (payload.get("event") or "").lower().replace("_", ".")
    if event_name and event_name != MESSAGE_EVENT:
        return None
    data = payload.get("data")
    if not isinstance(data, dict):
        return None
    key = data.get("key") or {}
    event_id = key.get("id")
    remote_jid = key.get("remoteJid") or ""
    if not event_id or not remote_jid:
        return None

    message = data.get("message") or {}
    message_type = data.get("messageType") or ""
    event = InboundEvent(
        event_id=str(event_id),
        sender_address=extract_phone_number(remote_jid),
        remote_jid=remote_jid,
        timestamp_ms=_timestamp_ms(data.get("messageTimestamp")),
        payload_kind=PayloadKind.unsupported,
        sender_name=data.get("pushName"),
        message_type=message_type,
    )

    if key.get("fromMe"):
        event.payload_kind = PayloadKind.own_message
        return event

    if message_type == "conversation":
        event.payload_kind = PayloadKind.text
        event.raw_content = message.get("conversation")
    elif message_type == "extendedTextMessage":
        event.payload_kind = PayloadKind.text
        event.raw_content = (message.get("extendedTextMessage") or {}).get("text")
    elif message_type in AUDIO_MESSAGE_TYPES:
        audio = message.get("audioMessage") or {}
        event.payload_kind = PayloadKind.audio
        event.media_url = audio.get("url")
        event.media_mimetype = audio.get("mimetype")
        event.extra["seconds"] = audio.get("seconds")
    elif message_type in BUTTON_MESSAGE_TYPES:
        event.payload_kind = PayloadKind.button_selection
        event.raw_content = _selection_text(message, message_type)
    elif message_type in LIST_MESSAGE_TYPES:
        event.payload_kind = PayloadKind.list_selection
        event.raw_content = _selection_text(message, message_type)

    if isinstance(event.raw_content, str):
        event.raw_content = event.raw_content.strip()
    return event


def _gateway_url(operation: str) -> Optional[str]:
    if not settings.GATEWAY_API_URL or not settings.GATEWAY_INSTANCE_NAME:
        return None
    return f"{settings.GATEWAY_API_URL.rstrip('/')}/{operation}/{settings.GATEWAY_INSTANCE_NAME}"


def _gateway_headers() -> Dict[str, str]:
    return {
        "Content-Type": "application/json",
        "apikey": settings.GATEWAY_API_KEY or "",
    }


def split_message_text(text: str, max_len: Optional[int] = None) -> List[str]:
    """Split long text into gateway-safe chunks while preferring line boundaries."""
    max_len = max_len or settings.GATEWAY_TEXT_MAX_LEN
    if len(text) <= max_len:
        return [text]

    lines = text.splitlines(keepends=True)
    chunks: List[str] = []
    current = ""

    def flush() -> None:
        nonlocal current
        if current:
            chunks.append(current)
            current = ""

    for line in lines:
        if len(line) > max_len:
            flush()
            remaining = line
            while len(remaining) > max_len:
                split_at = remaining.rfind(" ", 0, max_len)
                if split_at <= 0:
                    split_at = max_len
                chunks.append(remaining[:split_at])
                remaining = remaining[split_at:]
            if remaining:
                current = remaining
            continue

        if len(current) + len(line) > max_len:
            flush()
        current += line

    flush()
    return chunks if chunks else [text[:max_len]]


async def send_message(number: str, text: str) -> Dict[str, Any]:
    """
    Sends a plain text message through the relay. Never raises.
    """
    url = _gateway_url("message/sendText")
    if not url:
        logger.error("Gateway API URL or instance not configured.")
        return {"ok": False, "error": "gateway_not_configured"}

    chunks = split_message_text(text or "")
    try:
        async with httpx.AsyncClient(timeout=settings.GATEWAY_TIMEOUT_SECONDS) as client:
            last_json: Dict[str, Any] = {"ok": True}
            for chunk in chunks:
                resp = await client.post(url, headers=_gateway_headers(), json={"number": number, "text": chunk})
                if resp.status_code >= 400:
                    logger.error(
                        "Failed to send WhatsApp message (status=%s, body=%s)",
                        resp.status_code,
                        resp.text,
                    )
                    return {"ok": False, "error": f"status_{resp.status_code}"}
                try:
                    last_json = {"ok": True, "result": resp.json()}
                except ValueError:
                    last_json = {"ok": True}
            return last_json
    except Exception as e:
        logger.error(f"Failed to send WhatsApp message: {e}")
        return {"ok": False, "error": str(e)}


async def send_list_message(number: str, menu: Dict[str, Any], fallback_text: str) -> Dict[str, Any]:
    """Sends an interactive list; falls back to plain text when the relay rejects it.

    Some recipient clients do not render list messages and the relay answers
    with a 4xx in that case.
    """
    url = _gateway_url("message/sendList")
    if url:
        payload = {"number": number, **menu}
        try:
            async with httpx.AsyncClient(timeout=settings.GATEWAY_TIMEOUT_SECONDS) as client:
                resp = await client.post(url, headers=_gateway_headers(), json=payload)
                if resp.status_code < 400:
                    return {"ok": True, "interactive": True}
                logger.warning(
                    "WhatsApp list message rejected (status=%s, body=%s). Falling back to text.",
                    resp.status_code,
                    resp.text,
                )
        except Exception as e:
            logger.warning(f"WhatsApp list message failed: {e}. Falling back to text.")
    result = await send_message(number, fallback_text)
    result["interactive"] = False
    return result


def raise_for_delivery(address: str, result: Dict[str, Any]) -> None:
    """Turn a failed send result into a DeliveryError for the caller to log."""
    if not result.get("ok"):
        raise DeliveryError(f"reply to {address} not delivered: {result.get('error') or 'unknown'}")
