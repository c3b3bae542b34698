"""
FastAPI Application — WhatsApp webhook + agent dashboard API.

Provides:
- Webhook endpoints for the WhatsApp Cloud API (verify + receive)
- WebSocket endpoint for agent dashboards (presence + live events)
- REST actions on chats: list, assign, release, unassign, agent message,
  internal note, mark read
- Health and queue diagnostics
"""
from __future__ import annotations

import json
import uuid
import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import (
    BackgroundTasks, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from channels.base import ChannelError
from channels.notifier import WebSocketNotifier
from channels.whatsapp_adapter import WhatsAppCloudChannel
from config.settings import get_settings
from core.container import build_routing_container
from core.errors import NotFoundError, RoutingError
from core.runtime import RoutingRuntime
from database.kv_store import create_kv_store
from database.repository_factory import create_repository
from database.session import close_db, init_db
from models.schemas import Agent, AgentRole, InboundMessage
from utils.logging_config import setup_logging

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

settings = get_settings()
setup_logging(settings.log_level, settings.log_json)

kv_store = create_kv_store({
    "backend": settings.store.backend,
    "redis_url": settings.store.redis_url,
    "key_prefix": settings.store.key_prefix,
})
repository = create_repository({"repository_backend": settings.database.repository_backend})
runtime = RoutingRuntime()
notifier = WebSocketNotifier(runtime.presence)
whatsapp = WhatsAppCloudChannel(settings.whatsapp)

container = build_routing_container(
    settings=settings,
    store=kv_store,
    repo=repository,
    channel=whatsapp,
    notifier=notifier,
    runtime=runtime,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await kv_store.connect()
    if settings.database.repository_backend == "sql":
        await init_db()
    await whatsapp.initialize()
    container.start_maintenance()

    logger.info("converse_router_started",
                store_backend=settings.store.backend,
                repository_backend=settings.database.repository_backend,
                whatsapp_ready=whatsapp.is_ready)
    yield

    await container.stop()
    await whatsapp.shutdown()
    await kv_store.close()
    if settings.database.repository_backend == "sql":
        await close_db()
    logger.info("converse_router_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="ConverseRouter API",
    description="WhatsApp conversation routing and agent assignment",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(RoutingError)
async def routing_error_handler(request: Request, exc: RoutingError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ChannelError)
async def channel_error_handler(request: Request, exc: ChannelError):
    return JSONResponse(status_code=502, content={"detail": str(exc), "channel": exc.channel})


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class AgentUpsertRequest(BaseModel):
    id: str
    role: AgentRole = AgentRole.AGENT
    first_name: str = ""
    last_name: str = ""
    email: str = ""


class AssignRequest(BaseModel):
    agent_id: str


class ReleaseRequest(BaseModel):
    send_survey: bool = True


class AgentMessageRequest(BaseModel):
    agent_id: str
    content: str


class NoteRequest(BaseModel):
    agent_id: str
    content: str = Field(min_length=1)


# ══════════════════════════════════════════════════════════════
#  HEALTH & DIAGNOSTICS
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "whatsapp": await whatsapp.health_check(),
        "connected_agents": len(runtime.presence.connected(AgentRole.AGENT)),
        "active_timers": runtime.timers.active_count(),
    }


@app.get("/api/v1/queue")
async def queue_snapshot():
    return {"waiting": await container.wait_queue.snapshot()}


@app.get("/api/v1/agents/online")
async def online_agents():
    return [p.model_dump(mode="json") for p in runtime.presence.connected()]


# ══════════════════════════════════════════════════════════════
#  WEBHOOKS — WhatsApp
# ══════════════════════════════════════════════════════════════

@app.get("/webhooks/whatsapp")
async def whatsapp_verify(request: Request):
    challenge = whatsapp.verify_webhook(dict(request.query_params))
    if challenge:
        return PlainTextResponse(challenge)
    raise HTTPException(403, "Verification failed")


async def _route_inbound(inbound: InboundMessage) -> None:
    try:
        await container.router.handle_inbound(inbound)
    except Exception as e:
        logger.error("inbound_routing_failed",
                     contact_id=inbound.contact_id, error=str(e), exc_info=True)


@app.post("/webhooks/whatsapp")
async def whatsapp_webhook(request: Request, background_tasks: BackgroundTasks):
    """Receive WhatsApp messages with signature verification."""
    body_bytes = await request.body()

    signature = request.headers.get("X-Hub-Signature-256", "")
    if not whatsapp.verify_signature(body_bytes, signature):
        logger.warning("whatsapp_webhook_signature_invalid")
        raise HTTPException(403, "Invalid signature")

    try:
        body = json.loads(body_bytes)
    except json.JSONDecodeError:
        raise HTTPException(400, "Invalid JSON")

    inbound = whatsapp.parse_inbound(body)
    for msg in inbound:
        background_tasks.add_task(_route_inbound, msg)
    return {"status": "ok", "accepted": len(inbound)}


# ══════════════════════════════════════════════════════════════
#  AGENTS & CHATS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/agents")
async def upsert_agent(req: AgentUpsertRequest):
    agent = await repository.save_agent(Agent(**req.model_dump()))
    return agent.model_dump(mode="json")


@app.get("/api/v1/chats")
async def list_chats(page: int = Query(1, ge=1), limit: int = Query(50, ge=1, le=200)):
    result = await repository.list_chats(page=page, limit=limit)
    return {
        "data": [c.model_dump(mode="json") for c in result.items],
        "meta": {
            "total": result.total,
            "page": result.page,
            "limit": result.limit,
            "total_pages": result.total_pages,
            "has_next_page": result.has_next_page,
            "has_previous_page": result.has_previous_page,
        },
    }


@app.get("/api/v1/chats/{chat_id}")
async def get_chat(chat_id: str, limit: int = 100):
    chat = await repository.find_chat_by_id(chat_id)
    if chat is None:
        raise HTTPException(404, "Chat not found")
    msgs = await repository.list_messages(chat_id, limit=limit)
    notes = await repository.list_notes(chat_id)
    return {
        "chat": chat.model_dump(mode="json"),
        "messages": [m.model_dump(mode="json") for m in msgs],
        "notes": [n.model_dump(mode="json") for n in notes],
    }


@app.post("/api/v1/chats/{chat_id}/assign")
async def assign_chat(chat_id: str, req: AssignRequest):
    chat = await container.scheduler.assign(chat_id, req.agent_id, is_auto=False)
    return chat.model_dump(mode="json")


@app.post("/api/v1/chats/{chat_id}/release")
async def release_chat(chat_id: str, req: Optional[ReleaseRequest] = None):
    send_survey = req.send_survey if req else True
    chat = await container.scheduler.release_chat(chat_id, send_survey=send_survey)
    return chat.model_dump(mode="json")


@app.post("/api/v1/chats/{chat_id}/unassign")
async def unassign_chat(chat_id: str):
    chat = await container.scheduler.unassign_chat(chat_id)
    return chat.model_dump(mode="json")


@app.post("/api/v1/chats/{chat_id}/messages")
async def send_agent_message(chat_id: str, req: AgentMessageRequest):
    message = await container.scheduler.send_agent_message(chat_id, req.agent_id, req.content)
    return message.model_dump(mode="json")


@app.post("/api/v1/chats/{chat_id}/notes")
async def add_chat_note(chat_id: str, req: NoteRequest):
    note = await container.scheduler.add_note(chat_id, req.agent_id, req.content)
    return note.model_dump(mode="json")


@app.post("/api/v1/chats/{chat_id}/read")
async def mark_chat_read(chat_id: str):
    marked = await container.scheduler.mark_read(chat_id)
    return {"chat_id": chat_id, "marked": marked}


# ══════════════════════════════════════════════════════════════
#  WEBSOCKET — Agent dashboards
# ══════════════════════════════════════════════════════════════

@app.websocket("/ws/agents")
async def agent_socket(websocket: WebSocket):
    """
    One connection per dashboard tab. The agent id comes from the query
    string; events are pushed as {"event": ..., "data": ...} frames.
    Clients may send {"type": "ping"} to keep the connection alive.
    """
    agent_id = websocket.query_params.get("agent_id", "")
    agent = await repository.find_agent_by_id(agent_id) if agent_id else None
    await websocket.accept()
    if agent is None:
        await websocket.close(code=4003, reason="Unknown agent")
        return

    connection_id = uuid.uuid4().hex
    notifier.attach(connection_id, websocket)
    try:
        await container.scheduler.on_agent_connected(connection_id, agent)
        while True:
            raw = await websocket.receive_text()
            try:
                event: dict[str, Any] = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if event.get("type") == "ping":
                await websocket.send_text(json.dumps({"event": "pong"}))
    except WebSocketDisconnect:
        pass
    finally:
        notifier.detach(connection_id)
        await container.scheduler.on_agent_disconnected(connection_id)


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
