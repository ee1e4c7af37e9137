"""Voice-note retrieval and speech-to-text.

The relay delivers voice notes as references to encrypted blobs (``.enc``
URLs) that only the relay can decrypt. Retrieval tries an ordered list of
strategies; each either returns the audio or signals the caller to move on.
"""
import base64
import binascii
import logging
from dataclasses import dataclass
from typing import List, Optional

import httpx

from common.config import settings
from common.errors import TranscriptionError

logger = logging.getLogger(__name__)

DEFAULT_MIMETYPE = "audio/ogg"
GATEWAY_MEDIA_OPERATIONS = (
    "chat/getBase64FromMediaMessage",
    "message/downloadMedia",
    "chat/downloadMedia",
)


@dataclass
class MediaPayload:
    content: bytes
    mimetype: str = DEFAULT_MIMETYPE


def is_ciphertext_reference(media_url: Optional[str]) -> bool:
    return not media_url or ".enc" in media_url


def _base64_field(body) -> Optional[str]:
    if not isinstance(body, dict):
        return None
    media = body.get("media") if isinstance(body.get("media"), dict) else {}
    for value in (body.get("base64"), body.get("mediaBase64"), body.get("base64Media"), media.get("base64")):
        if isinstance(value, str) and value.strip():
            return value
    return None


@dataclass
class DirectDownload:
    url: str

    @property
    def name(self) -> str:
        return "direct"

    async def fetch(self, client: httpx.AsyncClient) -> Optional[MediaPayload]:
        resp = await client.get(self.url)
        if resp.status_code >= 400:
            logger.warning("Direct media download failed with %s", resp.status_code)
            return None
        mimetype = resp.headers.get("content-type") or DEFAULT_MIMETYPE
        return MediaPayload(content=resp.content, mimetype=mimetype.split(";")[0].strip())


@dataclass
class GatewayBase64Download:
    operation: str
    message_id: str
    remote_jid: str
    mimetype: str = DEFAULT_MIMETYPE

    @property
    def name(self) -> str:
        return self.operation

    async def fetch(self, client: httpx.AsyncClient) -> Optional[MediaPayload]:
        url = f"{settings.GATEWAY_API_URL.rstrip('/')}/{self.operation}/{settings.GATEWAY_INSTANCE_NAME}"
        resp = await client.post(
            url,
            headers={"Content-Type": "application/json", "apikey": settings.GATEWAY_API_KEY or ""},
            json={"message": {"key": {"id": self.message_id, "remoteJid": self.remote_jid}}},
        )
        if resp.status_code >= 300 or resp.status_code < 200:
            logger.info("Media endpoint %s answered %s", self.operation, resp.status_code)
            return None
        encoded = _base64_field(resp.json())
        if not encoded:
            logger.info("Media endpoint %s returned no base64 field", self.operation)
            return None
        return MediaPayload(content=base64.b64decode(encoded), mimetype=self.mimetype)


def build_strategies(
    media_url: Optional[str],
    message_id: Optional[str],
    remote_jid: Optional[str],
    mimetype: Optional[str] = None,
) -> List:
    if not is_ciphertext_reference(media_url):
        return [DirectDownload(url=media_url)]
    if not (message_id and remote_jid and settings.GATEWAY_API_URL and settings.GATEWAY_INSTANCE_NAME):
        return []
    return [
        GatewayBase64Download(
            operation=op,
            message_id=message_id,
            remote_jid=remote_jid,
            mimetype=(mimetype or DEFAULT_MIMETYPE).split(";")[0].strip(),
        )
        for op in GATEWAY_MEDIA_OPERATIONS
    ]


async def retrieve_media(strategies: List) -> MediaPayload:
    last_error: Optional[Exception] = None
    async with httpx.AsyncClient(timeout=settings.MEDIA_DOWNLOAD_TIMEOUT_SECONDS) as client:
        for strategy in strategies:
            try:
                payload = await strategy.fetch(client)
            except (httpx.HTTPError, ValueError, binascii.Error) as exc:
                logger.info("Media strategy %s failed: %s", strategy.name, exc)
                last_error = exc
                continue
            if payload is not None and payload.content:
                logger.info("Media retrieved via %s (%s bytes)", strategy.name, len(payload.content))
                return payload
    detail = type(last_error).__name__ if last_error else "no strategy returned audio"
    raise TranscriptionError(f"media retrieval failed: {detail}")


async def speech_to_text(media: MediaPayload) -> str:
    extension = media.mimetype.split("/")[-1] or "ogg"
    try:
        async with httpx.AsyncClient(timeout=settings.STT_TIMEOUT_SECONDS) as client:
            resp = await client.post(
                f"{settings.STT_API_BASE_URL.rstrip('/')}/audio/transcriptions",
                headers={"Authorization": f"Bearer {settings.stt_api_key}"},
                data={
                    "model": settings.STT_MODEL,
                    "language": settings.STT_LANGUAGE,
                    "response_format": "text",
                },
                files={"file": (f"audio.{extension}", media.content, media.mimetype)},
            )
            resp.raise_for_status()
    except httpx.HTTPError as exc:
        raise TranscriptionError(f"speech-to-text failed: {type(exc).__name__}") from exc
    text = (resp.text or "").strip()
    if not text:
        raise TranscriptionError("speech-to-text returned empty transcript")
    return text


async def transcribe(
    media_url: Optional[str],
    message_id: Optional[str] = None,
    remote_jid: Optional[str] = None,
    mimetype: Optional[str] = None,
) -> str:
    """Return the transcript of a voice note or raise TranscriptionError."""
    strategies = build_strategies(media_url, message_id, remote_jid, mimetype)
    if not strategies:
        raise TranscriptionError("no media retrieval strategy available")
    media = await retrieve_media(strategies)
    text = await speech_to_text(media)
    logger.info("Voice note transcribed (%s chars)", len(text))
    return text
