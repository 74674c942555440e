import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from .config import MASKED, AppSettings, CONFIG_PATH, load_settings, save_settings
from .models import active_models
from .orchestrator import Orchestrator, ProgressCallbacks
from .providers import ProviderRegistry, build_registry
from .schemas import ChainedResponse, OrchestratorRequest
from .sessions import SessionStore
from .tools import FOREFRONT_TOOLS

logger = logging.getLogger("uvicorn.error")


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def get_sessions(request: Request) -> SessionStore:
    return request.app.state.sessions


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


async def parse_chat_request(request: Request) -> OrchestratorRequest:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Request body must be JSON.")
    try:
        chat = OrchestratorRequest.model_validate(body)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False))
    if not chat.message.strip():
        raise HTTPException(status_code=400, detail="Message is required.")
    return chat


router = APIRouter()


@router.post("/api/chat")
async def chat(
    request: Request,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    chat_request = await parse_chat_request(request)
    result = await orchestrator.execute(chat_request)
    return result.model_dump(by_alias=True)


@router.post("/api/chat/stream")
async def chat_stream(
    request: Request,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    chat_request = await parse_chat_request(request)
    queue: asyncio.Queue = asyncio.Queue()

    def forward(event_type: str):
        async def handler(payload: Dict[str, Any]) -> None:
            await queue.put({"type": event_type, **payload})

        return handler

    callbacks = ProgressCallbacks(
        on_step_start=forward("step-start"),
        on_step_complete=forward("step-complete"),
        on_coordinator_update=forward("coordinator-update"),
    )

    async def run() -> None:
        try:
            result = await orchestrator.execute(chat_request, callbacks)
            event_type = "chain-complete" if isinstance(result, ChainedResponse) else "complete"
            await queue.put({"type": event_type, "data": result.model_dump(by_alias=True)})
        except Exception as exc:
            logger.exception("Streaming chat failed")
            await queue.put({"type": "error", "error": str(exc)})
        finally:
            await queue.put(None)

    async def event_generator():
        task = asyncio.create_task(run())
        try:
            while True:
                ev = await queue.get()
                if ev is None:
                    break
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            if not task.done():
                task.cancel()

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.delete("/api/sessions/{session_id}")
async def delete_session(session_id: str, sessions: SessionStore = Depends(get_sessions)):
    if not sessions.discard(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"ok": True, "session_id": session_id}


@router.get("/api/sessions/{session_id}")
async def get_session(session_id: str, sessions: SessionStore = Depends(get_sessions)):
    session = sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return {
        **session.to_dict(),
        "recent": [e.model_dump(by_alias=True) for e in session.tracker.get_recent()],
    }


@router.get("/api/models")
async def list_models(provider: Optional[str] = None):
    return {"models": [spec.to_dict() for spec in active_models(provider)]}


@router.get("/api/tools")
async def list_tools():
    return {"tools": FOREFRONT_TOOLS}


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    config_path: Path = Depends(get_config_path),
):
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Request body must be JSON.")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Settings must be a JSON object.")
    current = settings.model_dump()
    for name in ("groq", "perplexity", "gemini", "replicate"):
        # A masked key echoed back from GET /settings keeps the stored key.
        endpoint = body.get(name)
        if isinstance(endpoint, dict):
            merged = {**current[name], **endpoint}
            if merged.get("api_key") == MASKED:
                merged["api_key"] = current[name].get("api_key")
            body[name] = merged
    try:
        new_settings = AppSettings(**{**current, **body})
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False))
    save_settings(new_settings, config_path=config_path)
    request.app.state.settings = new_settings
    if request.app.state.owns_registry:
        await request.app.state.registry.close()
        request.app.state.registry = build_registry(new_settings)
    request.app.state.orchestrator = Orchestrator(
        new_settings, request.app.state.registry, sessions=request.app.state.sessions
    )
    return {"ok": True, "settings": new_settings.to_safe_dict()}


def create_app(
    settings: AppSettings,
    *,
    providers: Optional[ProviderRegistry] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            yield
        finally:
            await app.state.registry.close()

    app = FastAPI(title="Forefront Orchestrator", lifespan=lifespan)
    app.state.settings = settings
    app.state.owns_registry = providers is None
    app.state.registry = providers or build_registry(settings)
    app.state.sessions = SessionStore()
    app.state.orchestrator = Orchestrator(settings, app.state.registry, sessions=app.state.sessions)
    app.state.config_path = config_path or CONFIG_PATH
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("FOREFRONT_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "forefront.main:app",
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
