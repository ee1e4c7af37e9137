import uuid
import json
import time
import logging
from typing import Optional, Dict, Any

from fastapi import FastAPI, Depends, HTTPException, status, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy import text

import redis.asyncio as redis

from common.config import settings
from common.models import PayloadKind, PromptRun
from common.adapter import adapter
from common import conversation, replies
from common.errors import (
    DeliveryError, GatewayAuthError, IdentityError, NotRegistered, TranscriptionError, categorize_error_text,
)
from common.executor import ExecutionContext, execute_intent
from common.gateway import (
    InboundEvent, parse_webhook, raise_for_delivery, require_gateway_api_key, send_list_message, send_message,
)
from common.guard import (
    REASON_IN_FLIGHT, check_event, claim_in_flight, mark_processed, release_in_flight, within_rate_limit,
)
from common.identity import activate_link, deactivate_links, is_link_code, issue_link_code, resolve_user
from common.timeutil import local_now, utc_now
from common.transcription import transcribe
from api.schemas import (
    WebhookResponse, LinkCodeCreateRequest, LinkCodeCreateResponse,
    UnlinkResponse, MaintenanceResponse,
)

LINK_CODE_REQUESTS_PER_WINDOW = 5
MAINTENANCE_TOPICS = ("conversation.cleanup", "link_codes.expire")

logger = logging.getLogger(__name__)
app = FastAPI(title="GTD Buddy WhatsApp API")

# DB Setup
engine = create_async_engine(settings.DATABASE_URL, echo=settings.APP_ENV == "dev")
AsyncSessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

# Redis Setup
redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)

async def get_db():
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()

# --- Middleware & Dependencies ---

@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

async def get_authenticated_user(request: Request):
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing or invalid authorization header")
    token = auth_header.split(" ")[1]
    token_map = settings.token_user_map
    if token_map:
        mapped_user = token_map.get(token)
        if mapped_user:
            return mapped_user
    if token not in settings.auth_tokens:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return "usr_dev"

async def enforce_rate_limit(user_id: str, endpoint_class: str, limit: int):
    key = f"rate_limit:{endpoint_class}:{user_id}"
    current = await redis_client.incr(key)
    if current == 1:
        await redis_client.expire(key, settings.RATE_LIMIT_WINDOW_SECONDS)
    if current > limit:
        ttl = await redis_client.ttl(key)
        if ttl is None or ttl < 0:
            ttl = settings.RATE_LIMIT_WINDOW_SECONDS
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Rate limit exceeded for {endpoint_class}. Retry in {ttl}s.",
        )

# --- Pipeline helpers ---

def _record_prompt_run(
    db: AsyncSession,
    request_id: str,
    user_id: str,
    operation: str,
    model: str,
    prompt_version: str,
    latency_ms: int,
    status_value: str,
    usage: Optional[Dict[str, int]] = None,
    error_code: Optional[str] = None,
) -> None:
    usage = usage or {}
    db.add(PromptRun(
        id=str(uuid.uuid4()), request_id=request_id, user_id=user_id, operation=operation,
        provider=settings.LLM_PROVIDER, model=model, prompt_version=prompt_version,
        input_tokens=usage.get("input_tokens"), output_tokens=usage.get("output_tokens"),
        latency_ms=latency_ms, status=status_value, error_code=error_code, created_at=utc_now(),
    ))

async def _deliver(address: str, text_value: str, menu: Optional[Dict[str, Any]] = None) -> bool:
    """Outbound replies are best-effort; failures are logged and never raised."""
    if menu:
        result = await send_list_message(address, menu, text_value)
    else:
        result = await send_message(address, text_value)
    try:
        raise_for_delivery(address, result)
    except DeliveryError as exc:
        logger.warning("Reply delivery failed: %s", exc)
        return False
    return True

def _identity_reply(exc: IdentityError) -> str:
    if isinstance(exc, NotRegistered):
        return replies.not_registered()
    return replies.error_reply_for_category(exc.category)

async def _finish(
    db: AsyncSession,
    event: InboundEvent,
    reason: str,
    message: str,
    user_id: Optional[str] = None,
    task_id: Optional[str] = None,
    intent: Optional[str] = None,
) -> WebhookResponse:
    await mark_processed(db, event.event_id, reason, resolved_user_id=user_id, resulting_task_id=task_id, intent=intent)
    logger.info("event=%s finished reason=%s user=%s task=%s", event.event_id, reason, user_id, task_id)
    return WebhookResponse(message=message, reason=reason, task_id=task_id, intent=intent)

async def _handle_link_code(db: AsyncSession, event: InboundEvent, code: str) -> WebhookResponse:
    link = await activate_link(db, code, event.sender_address)
    if link is None:
        await _deliver(event.sender_address, replies.LINK_INVALID)
        return await _finish(db, event, "link_failed", "link_failed")
    await _deliver(event.sender_address, replies.LINK_SUCCESS)
    return await _finish(db, event, "linked", "linked", user_id=link.user_id)

async def _transcribe_event(db: AsyncSession, event: InboundEvent, user_id: str, request_id: str) -> str:
    start = time.time()
    try:
        transcript = await transcribe(event.media_url, event.event_id, event.remote_jid, event.media_mimetype)
    except TranscriptionError as exc:
        _record_prompt_run(
            db, request_id, user_id, "transcribe", settings.STT_MODEL, settings.STT_LANGUAGE,
            int((time.time() - start) * 1000), "error", error_code=str(exc)[:120],
        )
        raise
    _record_prompt_run(
        db, request_id, user_id, "transcribe", settings.STT_MODEL, settings.STT_LANGUAGE,
        int((time.time() - start) * 1000), "success",
    )
    return transcript

async def process_event(event: InboundEvent, db: AsyncSession, request_id: str) -> WebhookResponse:
    """Run one inbound event through the pipeline up to its processed marker."""
    decision = await check_event(db, event)
    if decision.skip:
        logger.info("event=%s skipped: %s", event.event_id, decision.reason)
        if event.payload_kind == PayloadKind.own_message:
            await mark_processed(db, event.event_id, decision.reason)
        return WebhookResponse(message="skipped", reason=decision.reason)

    if not await claim_in_flight(redis_client, event.event_id):
        logger.info("event=%s skipped: in-flight elsewhere", event.event_id)
        return WebhookResponse(message="skipped", reason=REASON_IN_FLIGHT)

    if not await within_rate_limit(redis_client, event.sender_address):
        await _deliver(event.sender_address, replies.RATE_LIMITED)
        return await _finish(db, event, "rate_limited", "rate_limited")

    if event.payload_kind == PayloadKind.unsupported:
        await _deliver(event.sender_address, replies.UNSUPPORTED_TYPE)
        return await _finish(db, event, "unsupported_type", "unsupported")

    message_text = event.raw_content or ""
    if event.payload_kind != PayloadKind.audio and is_link_code(message_text):
        return await _handle_link_code(db, event, message_text.strip())

    try:
        user_id = await resolve_user(db, event.sender_address)
    except IdentityError as exc:
        logger.info("event=%s identity rejected: %s", event.event_id, exc)
        await _deliver(event.sender_address, _identity_reply(exc))
        return await _finish(db, event, exc.reason, exc.reason)

    if event.payload_kind == PayloadKind.audio:
        try:
            message_text = await _transcribe_event(db, event, user_id, request_id)
        except TranscriptionError as exc:
            logger.warning("event=%s transcription failed: %s", event.event_id, exc)
            await _deliver(event.sender_address, replies.error_reply_for_category(exc.category))
            return await _finish(db, event, exc.reason, exc.reason, user_id=user_id)

    if not message_text.strip():
        return await _finish(db, event, "empty_content", "empty_content", user_id=user_id)

    ctx = await conversation.get_or_create(db, user_id, event.sender_address)
    now_local = local_now()
    classification = await adapter.classify_intent(
        message_text,
        now_local,
        conversation.recent_turns(ctx),
        has_last_task=bool(ctx.last_task_id),
    )
    _record_prompt_run(
        db, request_id, user_id, "classify", settings.LLM_MODEL_CLASSIFY, settings.PROMPT_VERSION_CLASSIFY,
        classification.latency_ms, "fallback" if classification.fallback else "success",
        usage=classification.usage, error_code=classification.error_code,
    )
    intent = classification.intent
    logger.info(
        "event=%s classified intent=%s confidence=%.2f fallback=%s",
        event.event_id, intent.kind.value, intent.confidence, classification.fallback,
    )
    await conversation.append_turn(db, ctx.id, "user", message_text)

    result = await execute_intent(
        db,
        intent,
        ExecutionContext(
            user_id=user_id,
            conversation=ctx,
            today=now_local.date(),
            event_id=event.event_id,
            sender_name=event.sender_name,
        ),
    )
    await _deliver(event.sender_address, result.reply, result.menu)
    await conversation.append_turn(db, ctx.id, "assistant", result.reply)
    reason = "execution_failed" if result.failed else "processed"
    return await _finish(db, event, reason, "processed", user_id=user_id, task_id=result.task_id, intent=intent.kind.value)

# --- Health ---

@app.get("/health/live")
async def health_live():
    return {"status": "ok"}

@app.get("/health/ready")
async def health_ready(db: AsyncSession = Depends(get_db)):
    try:
        await db.execute(text("SELECT 1"))
        await redis_client.ping()
    except Exception:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Infrastructure unreachable")
    return {"status": "ready"}

# --- WhatsApp Webhook ---

@app.get("/webhook")
async def webhook_liveness():
    return {"status": "ok", "service": "whatsapp-webhook"}

@app.post("/webhook", response_model=WebhookResponse, response_model_exclude_none=True)
async def whatsapp_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    try:
        payload = await request.json()
    except Exception:
        payload = None

    # 1. Validate gateway credential (header or payload field)
    try:
        require_gateway_api_key(request.headers, payload)
    except GatewayAuthError as e:
        logger.warning("Rejected webhook call: %s", e)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized webhook source")

    # 2. Parse envelope
    event = parse_webhook(payload) if isinstance(payload, dict) else None
    if event is None:
        return WebhookResponse(message="ignored")

    # 3. Route
    try:
        result = await process_event(event, db, request.state.request_id)
    except Exception as e:
        logger.exception(f"WhatsApp pipeline failed for event={event.event_id}: {e}")
        await release_in_flight(redis_client, event.event_id)
        category = getattr(e, "category", None) or categorize_error_text(str(e))
        await _deliver(event.sender_address, replies.error_reply_for_category(category))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": "internal_error"},
        )

    if result.reason == REASON_IN_FLIGHT:
        # Another delivery holds the claim; a non-2xx makes the relay retry after it finishes or expires.
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content=result.model_dump(exclude_none=True),
        )
    return result

# --- Linking ---

@app.post("/v1/integrations/whatsapp/link_code", response_model=LinkCodeCreateResponse)
async def create_whatsapp_link_code(
    payload: LinkCodeCreateRequest,
    user_id: str = Depends(get_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    await enforce_rate_limit(user_id, "link_code", LINK_CODE_REQUESTS_PER_WINDOW)
    try:
        link, code = await issue_link_code(db, user_id, payload.phone)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return LinkCodeCreateResponse(
        link_code=code,
        expires_at=link.link_code_expiry,
        normalized_address=link.normalized_address,
    )

@app.delete("/v1/integrations/whatsapp/link", response_model=UnlinkResponse)
async def delete_whatsapp_link(
    user_id: str = Depends(get_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    deactivated = await deactivate_links(db, user_id)
    logger.info("Deactivated %s WhatsApp link(s) for user=%s", deactivated, user_id)
    return UnlinkResponse(deactivated=deactivated)

# --- Maintenance ---

@app.post("/v1/maintenance/cleanup", response_model=MaintenanceResponse, dependencies=[Depends(get_authenticated_user)])
async def enqueue_cleanup():
    job_ids = []
    for topic in MAINTENANCE_TOPICS:
        job_id = str(uuid.uuid4())
        await redis_client.rpush("default_queue", json.dumps({"job_id": job_id, "topic": topic, "payload": {}}))
        job_ids.append(job_id)
    return MaintenanceResponse(job_ids=job_ids)
