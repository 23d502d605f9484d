"""
Core API backend for autoloop.

This module exposes the agent through a RESTful API that's used by frontends and the CLI.
It exposes the following endpoints:
- **GET /health**  - liveness probe for health checks.
- **POST /sessions** - create a new session, returns a session ID.
- **GET /sessions** - list all active sessions.
- **GET /tools** - list the tools an agent run would see.
- **POST /agent**   - run the agent on {"message": "...", "session_id": "..."}
- **POST /agent/stream** - same, streamed as NDJSON progress chunks followed by the final message.
- **POST /sessions/{session_id}/stop** - abort the run in flight for a session.
"""

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import (
    AsyncIterator,
    Callable,
    Dict,
    List,
    Optional,
)

from fastapi import (
    Depends,
    FastAPI,
    HTTPException,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from autoloop.agent.orchestrator import ChatOrchestrator
from autoloop.api.models import (
    MessageRequest,
    MessageResponse,
    SessionResponse,
    StopResponse,
    ToolInfo,
)
from autoloop.common import (
    AnsiColors,
    colored_print,
)
from autoloop.config import (
    AgentConfig,
    settings,
)
from autoloop.core.cancellation import CancellationToken
from autoloop.core.schema import (
    ChatMessage,
    FinalMessage,
    Role,
)
from autoloop.protocol.client import (
    MCPToolClient,
    load_server_configs,
)
from autoloop.store.tool_store import ToolStore
from autoloop.store.turn_log import (
    init_turn_log,
    save_turn,
)

logger = logging.getLogger(__name__)

# Session storage (in-memory for now, could be moved to a database)
sessions: Dict[str, List[ChatMessage]] = {}
# Cancellation tokens of the runs currently in flight, by session
active_runs: Dict[str, CancellationToken] = {}

_orchestrator: Optional[ChatOrchestrator] = None


def _data_path(name: str) -> Path:
    path = Path(name)
    return path if path.is_absolute() else Path(settings.DATA_DIR) / path


def _build_orchestrator(protocol_client: Optional[MCPToolClient] = None) -> ChatOrchestrator:
    return ChatOrchestrator(
        tool_store=ToolStore(_data_path(settings.STORED_TOOLS_FILE)),
        protocol_client=protocol_client,
    )


async def get_orchestrator() -> ChatOrchestrator:
    """The shared orchestrator; built without protocol tools when the app was not started."""
    global _orchestrator  # pylint: disable=global-statement
    if _orchestrator is None:
        _orchestrator = _build_orchestrator()
    return _orchestrator


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Start protocol servers and stop them again, both from the lifespan task."""
    global _orchestrator  # pylint: disable=global-statement
    init_turn_log()
    protocol_client = None
    if settings.ENABLE_PROTOCOL_TOOLS:
        protocol_client = MCPToolClient(load_server_configs(_data_path(settings.PROTOCOL_SERVERS_FILE)))
        await protocol_client.start()
    _orchestrator = _build_orchestrator(protocol_client)
    try:
        yield
    finally:
        if protocol_client is not None:
            await protocol_client.close()
        _orchestrator = None


app = FastAPI(
    title="autoloop API",
    version="0.1.0",
    description="Autonomous tool-calling agent API",
    lifespan=lifespan,
)

# Add CORS middleware to allow requests from browser frontends
app.add_middleware(
    CORSMiddleware,
    allow_origins=[f"http://localhost:{settings.API_PORT}"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------
def get_or_create_session(session_id: Optional[str] = None) -> str:
    """Get existing session or create a new one."""
    if session_id and session_id in sessions:
        return session_id

    new_session_id = str(uuid.uuid4())
    sessions[new_session_id] = []
    return new_session_id


def _record_turn(session_id: str, req: MessageRequest, reply: FinalMessage) -> None:
    sessions[session_id].append(ChatMessage(role=Role.USER, content=req.message))
    sessions[session_id].append(ChatMessage(role=Role.ASSISTANT, content=reply.content))
    save_turn(session_id, req.message, reply)


async def _run_agent(
    orchestrator: ChatOrchestrator,
    session_id: str,
    req: MessageRequest,
    on_chunk: Optional[Callable[[str], None]] = None,
) -> FinalMessage:
    token = CancellationToken()
    active_runs[session_id] = token
    try:
        return await orchestrator.send_chat_message(
            req.message,
            req.agent or AgentConfig.from_settings(),
            images=req.images,
            system_prompt=req.system_prompt,
            history=list(sessions[session_id]),
            model=req.model,
            enable_tools=req.enable_tools,
            enable_protocol_tools=req.enable_protocol_tools,
            server_filter=req.server_filter,
            on_chunk=on_chunk,
            cancel_token=token,
        )
    finally:
        active_runs.pop(session_id, None)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
@app.get("/health", summary="Health check")
async def health() -> dict[str, str]:
    """Return a simple liveness payload."""
    return {"status": "ok"}


@app.post("/sessions", response_model=SessionResponse, summary="Create a new session")
async def create_session() -> SessionResponse:
    """Create a new conversation session."""
    session_id = get_or_create_session()
    return SessionResponse(session_id=session_id)


@app.get("/sessions", response_model=List[str], summary="List active sessions")
async def list_sessions() -> List[str]:
    """List all active session IDs."""
    return list(sessions.keys())


@app.post("/sessions/{session_id}/stop", response_model=StopResponse, summary="Abort a run")
async def stop_session(session_id: str) -> StopResponse:
    """Abort the agent run in flight for *session_id*, if any."""
    if session_id not in sessions:
        raise HTTPException(status_code=404, detail=f"Unknown session '{session_id}'")
    token = active_runs.get(session_id)
    if token is not None:
        logger.info("Stopping run of session %s", session_id)
        token.cancel()
    return StopResponse(session_id=session_id, stopped=token is not None)


@app.get("/tools", response_model=List[ToolInfo], summary="List available tools")
async def list_tools(orchestrator: ChatOrchestrator = Depends(get_orchestrator)) -> List[ToolInfo]:
    """List the tools an agent run would be offered with the current settings."""
    catalog = await orchestrator.build_catalog(
        enable_tools=True, enable_protocol_tools=settings.ENABLE_PROTOCOL_TOOLS
    )
    return [
        ToolInfo(
            name=tool.name,
            description=tool.description,
            implementation=tool.implementation.value,
            parameters=tool.parameters,
        )
        for tool in catalog.definitions()
    ]


@app.post("/agent", response_model=MessageResponse, summary="Process a message")
async def agent_endpoint(
    req: MessageRequest, orchestrator: ChatOrchestrator = Depends(get_orchestrator)
) -> MessageResponse:
    """Run the agent on a user message with optional session context."""
    session_id = get_or_create_session(req.session_id)
    logger.debug("Agent request for session %s: %s", session_id, req.message)

    reply = await _run_agent(orchestrator, session_id, req)
    _record_turn(session_id, req, reply)
    return MessageResponse(session_id=session_id, message=reply)


@app.post("/agent/stream", summary="Process a message, streaming progress")
async def agent_stream_endpoint(
    req: MessageRequest, orchestrator: ChatOrchestrator = Depends(get_orchestrator)
) -> StreamingResponse:
    """
    Stream the run as newline-delimited JSON: ``{"type": "chunk", "content": ...}`` lines while
    the agent works, then a single ``{"type": "final", "session_id": ..., "message": {...}}`` line.
    """
    session_id = get_or_create_session(req.session_id)

    async def events() -> AsyncIterator[str]:
        queue: asyncio.Queue = asyncio.Queue()

        async def run() -> FinalMessage:
            try:
                return await _run_agent(orchestrator, session_id, req, on_chunk=queue.put_nowait)
            finally:
                queue.put_nowait(None)

        task = asyncio.create_task(run())
        while True:
            chunk = await queue.get()
            if chunk is None:
                break
            yield json.dumps({"type": "chunk", "content": chunk}) + "\n"

        reply = await task
        _record_turn(session_id, req, reply)
        final = {"type": "final", "session_id": session_id, "message": reply.model_dump(mode="json")}
        yield json.dumps(final) + "\n"

    return StreamingResponse(events(), media_type="application/x-ndjson")


@app.get("/", summary="API root")
async def root() -> dict[str, str]:
    """Return a simple welcome message."""
    return {"message": "Welcome to the autoloop API! Use /docs for API documentation."}


# ---------------------------------------------------------------------------
# Public helper to launch the API (imported by main.py)
# ---------------------------------------------------------------------------
def run_api(
    host: str = "0.0.0.0", port: int = 8000, reload: bool = False, log_level: str | None = None
) -> None:
    """Start a uvicorn server hosting *app*.

    Parameters
    ----------
    host, port:
        Bind address for the HTTP server.
    reload:
        If *True*, enable auto-reload (useful in dev docker-compose).
    log_level:
        Logging level to use (default from settings if not provided).
    """

    # Lazy import - keeps uvicorn an optional dependency at pkg-import time
    import uvicorn  # pylint: disable=import-outside-toplevel

    if log_level is None:  # Use the default from settings if not provided
        log_level = settings.LOG_LEVEL

    logger.info(
        "Starting autoloop API at %s:%d (reload=%s, log_level=%s)", host, port, reload, log_level
    )
    logger.debug("API settings: %s", settings.model_dump())

    colored_print(f"autoloop API is running at http://localhost:{port}.", AnsiColors.GREEN)
    colored_print(f"Visit http://localhost:{port}/docs for API documentation.", AnsiColors.BLUE)
    uvicorn.run(
        "autoloop.api.app:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )


# ---------------------------------------------------------------------------
# `python -m autoloop.api.app` helper
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    run_api(reload=True)
