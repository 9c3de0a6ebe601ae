# apps/api/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from prometheus_client import make_asgi_app
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from sqlalchemy import text

from chatrelay.core.auth import Principal, get_current_principal
from chatrelay.core.logging import configure_logging, request_logging_middleware
from chatrelay.core.metrics import CHAT_ABORTS
from chatrelay.core.settings import AppSettings, get_settings
from chatrelay.orchestration.cancellation import LIVE, TEST, CancellationRegistry, stream_key
from chatrelay.orchestration.relay import ChatTurn, StreamRelay
from chatrelay.orchestration.sse import SSE_HEADERS
from chatrelay.providers.base import CompletionProvider
from chatrelay.providers.mock import get_mock_provider
from chatrelay.providers.openai_compat import get_openai_provider
from chatrelay.storage.database import create_engine_for, create_session_factory
from chatrelay.storage.repo import AgentRepo, ChatRepo, init_models

logger = logging.getLogger("app.api")


class ChatStreamRequest(BaseModel):
    # Missing fields are reported on the event stream, not as a 422
    model_config = ConfigDict(populate_by_name=True)

    agent_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("agentId", "agent_id"))
    thread_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("threadId", "thread_id"))
    content: Optional[str] = None


class ChatAbortRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    agent_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("agentId", "agent_id"))
    thread_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("threadId", "thread_id"))


def envelope(data: Any = None, message: str = "ok", code: int = 0) -> Dict[str, Any]:
    return {"code": code, "message": message, "data": data}


def _iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat().replace("+00:00", "Z")


def create_app(
    settings: Optional[AppSettings] = None,
    *,
    provider: Optional[CompletionProvider] = None,
    mock_provider: Optional[CompletionProvider] = None,
    registry: Optional[CancellationRegistry] = None,
) -> FastAPI:
    settings = settings or get_settings()
    engine = create_engine_for(settings.db_url)
    session_factory = create_session_factory(engine)
    chats = ChatRepo(session_factory)
    agents = AgentRepo(session_factory)
    registry = registry or CancellationRegistry()
    relay = StreamRelay(chats, agents, registry, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_models(engine)
        logger.info({"event": "startup", "app": settings.app_name, "env": settings.app_env,
                     "db_dialect": settings.db_dialect})
        yield
        await relay.drain()
        await engine.dispose()
        logger.info({"event": "shutdown"})

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.chats = chats
    app.state.agents = agents
    app.state.registry = registry
    app.state.relay = relay
    app.state.provider = provider or get_openai_provider(settings)
    app.state.mock_provider = mock_provider or get_mock_provider(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(request_logging_middleware)
    app.mount("/metrics", make_asgi_app())

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=envelope(None, str(exc.detail), exc.status_code))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.warning({"event": "validation_error", "path": request.url.path, "errors": str(exc.errors())})
        return JSONResponse(status_code=400, content=envelope(None, "Invalid request body", 400))

    @app.get("/health")
    async def health() -> JSONResponse:
        db_ok = True
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception as e:  # noqa: BLE001
            logger.error({"event": "health_db_failed", "error": str(e)})
            db_ok = False
        data = {
            "status": "UP" if db_ok else "DOWN",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "services": {"database": "UP" if db_ok else "DOWN"},
        }
        return JSONResponse(status_code=200 if db_ok else 503, content=envelope(data))

    @app.get("/config")
    async def config() -> JSONResponse:
        safe_config = {
            "app_name": settings.app_name,
            "env": settings.app_env,
            "db_dialect": settings.db_dialect,
            "log_level": settings.log_level,
            "provider": {
                "base_url": settings.provider_base_url,
                "model": settings.provider_model,
                "temperature": settings.provider_temperature,
                "api_key_set": bool(settings.provider_api_key),
            },
            "context": {"history_limit": settings.chat_history_limit},
            "active_streams": len(registry),
            "pending_turns": relay.pending_turns,
        }
        return JSONResponse(content=safe_config)

    def _stream(principal: Principal, req: ChatStreamRequest, provider: CompletionProvider, namespace: str):
        turn = ChatTurn(agent_id=req.agent_id, thread_id=req.thread_id, content=req.content)
        return StreamingResponse(relay.sse(principal, turn, provider, namespace=namespace), headers=SSE_HEADERS)

    @app.post("/api/chat/stream")
    async def chat_stream(req: ChatStreamRequest, principal: Principal = Depends(get_current_principal)):
        return _stream(principal, req, app.state.provider, LIVE)

    @app.post("/api/chat/stream-test")
    async def chat_stream_test(req: ChatStreamRequest, principal: Principal = Depends(get_current_principal)):
        return _stream(principal, req, app.state.mock_provider, TEST)

    @app.post("/api/chat/abort")
    async def chat_abort(req: ChatAbortRequest, principal: Principal = Depends(get_current_principal)):
        if not req.agent_id or not req.thread_id:
            return JSONResponse(status_code=400, content=envelope(None, "agent_id and thread_id are required", 1))

        pid = principal.principal_id
        if registry.cancel(stream_key(pid, req.thread_id, LIVE)):
            outcome, message = "cancelled", "interrupt success"
        elif registry.cancel(stream_key(pid, req.thread_id, TEST)):
            outcome, message = "cancelled_test", "interrupt success (test)"
        else:
            outcome, message = "no_stream", "no active stream to interrupt"
        CHAT_ABORTS.labels(outcome=outcome).inc()
        logger.info({"event": "chat_abort", "thread_id": req.thread_id, "user_id": pid, "outcome": outcome})
        return envelope({"threadId": req.thread_id}, message)

    @app.get("/api/chat/threads")
    async def list_threads(principal: Principal = Depends(get_current_principal)):
        threads = await chats.list_threads(principal.principal_id)
        return envelope([
            {
                "threadId": t.id,
                "title": t.title or "Untitled thread",
                "agentId": t.agent_id,
                "updatedAt": _iso(t.updated_at),
            }
            for t in threads
        ])

    @app.get("/api/chat/message/{thread_id}")
    async def list_messages(thread_id: str, principal: Principal = Depends(get_current_principal)):
        if await chats.find_thread(thread_id, principal.principal_id) is None:
            raise HTTPException(status_code=404, detail="Thread not found or access denied")
        messages = await chats.list_messages(thread_id)
        return envelope([
            {
                "id": m.id,
                "thread_id": m.thread_id,
                "role": m.role,
                "content": m.content,
                "created_at": _iso(m.created_at),
            }
            for m in messages
        ])

    @app.delete("/api/chat/thread/{thread_id}")
    async def delete_thread(thread_id: str, principal: Principal = Depends(get_current_principal)):
        pid = principal.principal_id
        if not await chats.delete_thread(thread_id, pid):
            raise HTTPException(status_code=404, detail="Thread not found or access denied")
        # a reply still streaming into the deleted thread has nowhere to go
        registry.cancel(stream_key(pid, thread_id, LIVE))
        registry.cancel(stream_key(pid, thread_id, TEST))
        logger.info({"event": "thread_deleted", "thread_id": thread_id, "user_id": pid})
        return envelope(None)

    @app.get("/api/threads/{thread_id}/agent")
    async def thread_agent(thread_id: str, principal: Principal = Depends(get_current_principal)):
        thread_id = thread_id.strip()
        if not thread_id:
            raise HTTPException(status_code=400, detail="threadId is required")
        thread = await chats.get_thread(thread_id)
        if thread is None or thread.is_debug:
            raise HTTPException(status_code=404, detail="Thread not found")
        data = await agents.get_agent_display(thread.agent_id, thread.agent_version)
        if data is None:
            raise HTTPException(status_code=404, detail="Agent or agent version not found")
        return envelope(data)

    return app


settings = get_settings()
configure_logging(level=settings.log_level)

app = create_app(settings)
