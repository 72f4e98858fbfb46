from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from agentbridge import __version__
from agentbridge.config import get_config
from agentbridge.logging import configure_logging
from agentbridge.server.auth import require_api_key
from agentbridge.server.routers.chats import router as chats_router
from agentbridge.server.runtime import get_runtime, get_runtime_async, reset_runtime


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = await get_runtime_async()
    configure_logging(runtime.config.log_level, runtime.config.json_logs)
    yield
    # Terminates every live agent process
    await reset_runtime()


app = FastAPI(
    title="agentbridge",
    description="Streaming bridge between web viewers and agent CLI processes",
    version=__version__,
    lifespan=lifespan,
)

_origins = get_config().cors_origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins or ["*"],
    allow_credentials=bool(_origins),
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chats_router)


@app.get("/health")
async def health():
    runtime = get_runtime()
    return {
        "status": "ok",
        "chats": len(runtime.registry),
        "viewers": runtime.broadcaster.viewer_count,
    }


@app.get("/pids", dependencies=[Depends(require_api_key)])
async def pid_map():
    return {str(pid): chat_id for pid, chat_id in get_runtime().registry.pid_map().items()}


@app.get("/events", dependencies=[Depends(require_api_key)])
async def events(chat_id: str | None = None) -> StreamingResponse:
    broadcaster = get_runtime().broadcaster
    return StreamingResponse(
        broadcaster.listen(chat_id),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
