"""
FastAPI Application — REST API + WebSocket + Webhooks.

Provides:
- AI analysis job submission and polling
- Synchronous message send through the channel registry
- Scheduled message CRUD (cancel via DELETE)
- Offline outbox sync endpoint
- Signed channel webhooks (WhatsApp, Instagram, LinkedIn, Email)
- WebSocket push of pipeline events
- Health report: channels, queue, dispatcher, connections

The job queue and the scheduled message dispatcher run as background
tasks owned by the application lifespan.
"""
from __future__ import annotations

import json
import structlog
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from analysis.engine import AnalysisEngine
from channels.base import ChannelRegistry
from channels.email_adapter import EmailAdapter
from channels.instagram_adapter import InstagramAdapter
from channels.linkedin_adapter import LinkedInAdapter
from channels.retry import RetryPolicy
from channels.whatsapp_adapter import WhatsAppAdapter
from config.settings import Settings, get_settings
from core.errors import (
    AuthenticationError, ConflictError, NotFoundError, PermanentError, PipelineError,
    QuotaError, TransientError, WebhookVerificationError,
)
from core.events import EventBus, Topics
from database.session import close_db, init_db
from database.store_factory import Stores, create_stores
from job_queue.handlers import build_analysis_handlers
from job_queue.queue import JobQueue
from job_queue.store import create_job_store
from models.schemas import ChannelType, JobType, ScheduledMessageStatus, utcnow
from outbox.server import OutboxSyncService
from realtime.access import ConversationAccess
from realtime.auth import TokenVerifier
from realtime.broadcaster import EventBroadcaster
from scheduler.dispatcher import ScheduledMessageDispatcher

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

@dataclass
class Pipeline:
    """Everything the API serves from. Built once per app."""
    settings: Settings
    bus: EventBus
    registry: ChannelRegistry
    stores: Stores
    job_queue: JobQueue
    dispatcher: ScheduledMessageDispatcher
    sync_service: OutboxSyncService
    verifier: TokenVerifier
    access: ConversationAccess
    broadcaster: EventBroadcaster


def build_registry(settings: Settings) -> ChannelRegistry:
    policy = RetryPolicy.from_config(settings.delivery)
    registry = ChannelRegistry()
    for adapter_cls in (WhatsAppAdapter, InstagramAdapter, LinkedInAdapter, EmailAdapter):
        registry.register(adapter_cls(retry_policy=policy))
    return registry


def build_pipeline(settings: Optional[Settings] = None, **overrides) -> Pipeline:
    """
    Wire every component from settings. Keyword overrides replace a
    component by field name (tests inject registries and stores this way).
    """
    settings = settings or get_settings()
    bus = overrides.get("bus") or EventBus()
    registry = overrides.get("registry") or build_registry(settings)
    stores = overrides.get("stores") or create_stores(settings.database)
    verifier = overrides.get("verifier") or TokenVerifier.from_config(settings.auth)
    access = overrides.get("access") or ConversationAccess(stores.scheduled)

    job_queue = overrides.get("job_queue") or JobQueue.from_config(
        create_job_store(settings.queue),
        build_analysis_handlers(AnalysisEngine(settings.llm)),
        settings.queue,
        bus=bus,
    )
    dispatcher = overrides.get("dispatcher") or ScheduledMessageDispatcher.from_config(
        stores.scheduled, registry, settings.scheduler, bus=bus,
    )
    return Pipeline(
        settings=settings,
        bus=bus,
        registry=registry,
        stores=stores,
        job_queue=job_queue,
        dispatcher=dispatcher,
        sync_service=overrides.get("sync_service") or OutboxSyncService(stores.receipts, registry, bus),
        verifier=verifier,
        access=access,
        broadcaster=overrides.get("broadcaster") or EventBroadcaster(
            verifier, access_check=access, open_roles=tuple(settings.auth.agent_roles),
        ),
    )


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class AnalysisJobRequest(BaseModel):
    type: JobType
    message_id: str
    content: str
    conversation_context: Optional[str] = None
    conversation_id: Optional[str] = None
    conversation_history: list[dict[str, Any]] = []
    existing_categories: list[str] = []
    tone: Optional[str] = None


class SendMessageRequest(BaseModel):
    channel_type: ChannelType
    recipient: str
    content: str
    media: list[str] = []
    metadata: dict[str, Any] = {}


class ScheduleMessageRequest(BaseModel):
    conversation_id: str
    content: str
    scheduled_time: datetime
    channel_type: Optional[ChannelType] = None
    recipient: Optional[str] = None
    metadata: dict[str, Any] = {}


class OutboxSyncRequest(BaseModel):
    entries: list[dict[str, Any]]


# ──────────────────────────────────────────────────────────────
#  Error mapping
# ──────────────────────────────────────────────────────────────

def status_for(exc: PipelineError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ConflictError):
        return 409
    if isinstance(exc, QuotaError):
        return 413
    if isinstance(exc, AuthenticationError):
        return 401
    if isinstance(exc, WebhookVerificationError):
        return 403
    if isinstance(exc, TransientError):
        return 503
    if isinstance(exc, PermanentError) and exc.code == "validation_error":
        return 422
    return 400


# ══════════════════════════════════════════════════════════════
#  APP FACTORY
# ══════════════════════════════════════════════════════════════

def create_app(pipeline: Optional[Pipeline] = None) -> FastAPI:
    p = pipeline or build_pipeline()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = p.settings
        if p.stores.backend == "sql":
            await init_db()
        await p.registry.initialize_all(settings.channels)
        p.access.attach(p.bus)
        p.broadcaster.attach(p.bus)
        await p.job_queue.start()
        await p.dispatcher.start()
        logger.info("inbox_pipeline_started",
                    store_backend=p.stores.backend,
                    queue_backend=type(p.job_queue.store).__name__,
                    channels=[c.value for c in p.registry.get_available()])
        yield

        await p.dispatcher.stop()
        await p.job_queue.stop()
        p.broadcaster.detach()
        p.access.detach()
        await p.broadcaster.close_all()
        await p.registry.shutdown_all()
        if p.stores.backend == "sql":
            await close_db()
        logger.info("inbox_pipeline_stopped")

    app = FastAPI(
        title="Inbox Pipeline API",
        description="AI analysis jobs, scheduled delivery and offline sync for a unified inbox",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.pipeline = p

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        status = status_for(exc)
        if status >= 500:
            logger.warning("request_failed_transient", path=request.url.path, code=exc.code)
        return JSONResponse(status_code=status, content={"error": exc.to_dict()})

    async def current_user(authorization: Optional[str] = Header(None)) -> str:
        return p.verifier.user_id(authorization)

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "timestamp": utcnow().isoformat(),
            "channels": await p.registry.health_check_all(),
            "healthy_channels": [c.value for c in p.registry.get_healthy_channels()],
            "queue": await p.job_queue.stats(),
            "dispatcher": await p.dispatcher.stats(),
            "realtime": p.broadcaster.stats(),
        }

    # ══════════════════════════════════════════════════════════
    #  AI ANALYSIS JOBS
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/ai/jobs", status_code=202)
    async def submit_analysis_job(req: AnalysisJobRequest, user_id: str = Depends(current_user)):
        payload = req.model_dump(exclude={"type", "message_id"}, exclude_none=True)
        handle = await p.job_queue.enqueue(req.type, req.message_id, payload, user_id=user_id)
        return {"job_id": handle.job_id, "status": "queued", "duplicate": handle.duplicate}

    @app.get("/api/v1/ai/jobs/{job_id}")
    async def get_analysis_job(job_id: str, user_id: str = Depends(current_user)):
        job = await p.job_queue.store.get(job_id)
        if job is None or (job.user_id and job.user_id != user_id):
            raise HTTPException(404, "Job not found")
        return await p.job_queue.get_status(job_id)

    @app.get("/api/v1/ai/queue/stats")
    async def queue_stats(user_id: str = Depends(current_user)):
        return await p.job_queue.stats()

    # ══════════════════════════════════════════════════════════
    #  MESSAGES
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/messages/send")
    async def send_message(req: SendMessageRequest, user_id: str = Depends(current_user)):
        receipt = await p.registry.deliver(
            req.channel_type, req.recipient, req.content,
            media=req.media or None,
            metadata={**req.metadata, "user_id": user_id},
        )
        return receipt.model_dump(mode="json")

    # ══════════════════════════════════════════════════════════
    #  SCHEDULED MESSAGES
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/scheduled-messages", status_code=201)
    async def schedule_message(req: ScheduleMessageRequest, user_id: str = Depends(current_user)):
        message = await p.dispatcher.schedule_message(
            user_id=user_id,
            conversation_id=req.conversation_id,
            content=req.content,
            scheduled_time=req.scheduled_time,
            channel_type=req.channel_type,
            recipient=req.recipient,
            metadata=req.metadata,
        )
        return message.model_dump(mode="json")

    @app.get("/api/v1/scheduled-messages")
    async def list_scheduled_messages(
        conversation_id: Optional[str] = None,
        status: Optional[ScheduledMessageStatus] = None,
        limit: int = Query(100, ge=1, le=500),
        user_id: str = Depends(current_user),
    ):
        messages = await p.dispatcher.list_messages(user_id, conversation_id, status, limit)
        return [m.model_dump(mode="json") for m in messages]

    @app.get("/api/v1/scheduled-messages/{message_id}")
    async def get_scheduled_message(message_id: str, user_id: str = Depends(current_user)):
        message = await p.dispatcher.get_message(message_id, user_id)
        return message.model_dump(mode="json")

    @app.delete("/api/v1/scheduled-messages/{message_id}")
    async def cancel_scheduled_message(message_id: str, user_id: str = Depends(current_user)):
        message = await p.dispatcher.cancel(message_id, user_id)
        return message.model_dump(mode="json")

    # ══════════════════════════════════════════════════════════
    #  OFFLINE OUTBOX SYNC
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/sync/outbox")
    async def sync_outbox(req: OutboxSyncRequest, user_id: str = Depends(current_user)):
        results = await p.sync_service.submit(user_id, req.entries)
        return {"results": [r.model_dump(mode="json") for r in results]}

    # ══════════════════════════════════════════════════════════
    #  WEBHOOKS
    # ══════════════════════════════════════════════════════════

    @app.get("/webhooks/whatsapp")
    async def whatsapp_verify(request: Request):
        adapter = p.registry.require(ChannelType.WHATSAPP)
        challenge = adapter.verify_subscription(dict(request.query_params))
        if challenge is None:
            raise HTTPException(403, "Verification failed")
        return PlainTextResponse(challenge)

    @app.post("/webhooks/email/bounce")
    async def email_bounce(request: Request):
        adapter = p.registry.require(ChannelType.EMAIL)
        body = await request.body()
        if not adapter.verify_webhook(request.headers.get(adapter.signature_header), body):
            raise WebhookVerificationError(adapter.name)
        try:
            data = json.loads(body or b"{}")
        except ValueError as e:
            raise PermanentError("Malformed bounce payload", adapter.name, code="malformed_payload") from e
        if not isinstance(data, dict):
            raise PermanentError("Bounce payload must be an object", adapter.name, code="malformed_payload")
        if data.get("event") == "unsubscribe":
            return await adapter.handle_unsubscribe(data.get("email", ""))
        return await adapter.handle_bounce(data)

    @app.post("/webhooks/{channel}")
    async def channel_webhook(channel: str, request: Request):
        adapter = p.registry.get(channel)
        if adapter is None:
            raise HTTPException(404, f"Unknown channel: {channel}")
        body = await request.body()
        messages = await adapter.handle_webhook(request.headers.get(adapter.signature_header), body)
        for message in messages:
            await p.bus.publish(
                Topics.INBOUND, "message.received",
                data=message.to_public(),
                conversation_id=message.conversation_id,
            )
        return {"status": "ok", "received": len(messages)}

    # ══════════════════════════════════════════════════════════
    #  WEBSOCKET — Realtime events
    # ══════════════════════════════════════════════════════════

    @app.websocket("/ws")
    async def realtime_socket(websocket: WebSocket):
        """
        Client sends JSON events:
          {"type": "subscribe", "conversation_id": "..."}
          {"type": "unsubscribe", "conversation_id": "..."}
          {"type": "typing", "conversation_id": "...", "is_typing": true}
          {"type": "presence", "status": "away"}
          {"type": "ping"}
        """
        try:
            conn = await p.broadcaster.connect(websocket, websocket.query_params.get("token"))
        except AuthenticationError:
            await websocket.close(code=4401, reason="Authentication failed")
            return

        await websocket.accept()
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    event = json.loads(raw)
                except json.JSONDecodeError:
                    event = {"type": "invalid"}
                if not isinstance(event, dict):
                    event = {"type": "invalid"}
                await p.broadcaster.handle_client_event(conn, event)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error("websocket_error", user_id=conn.user_id, error=str(e))
        finally:
            await p.broadcaster.disconnect(conn)

    return app


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
