from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from chatcapture import service
from chatcapture.config import get_settings
from chatcapture.errors import CaptureError
from chatcapture.models import CAPTURE_SOURCES

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    logger.info("[server] %s %s ready", service.ENGINE_NAME, service.ENGINE_VERSION)
    yield


app = FastAPI(title="Chat Capture API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class CaptureRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str
    capture_run_id: str | None = Field(default=None, alias="captureRunId")
    strict: bool | None = None


def _normalize_url(raw: str) -> str:
    url = raw.strip()
    if not url:
        raise HTTPException(status_code=400, detail="url is required")
    if not url.startswith(("http://", "https://")):
        url = "https://" + url
    return url


def _strict(request: CaptureRequest) -> bool:
    return get_settings().strict_attachments if request.strict is None else request.strict


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/ping")
async def ping():
    """Handshake: lets a caller check a capture engine is present before starting a run."""
    return {
        "ok": True,
        "engine": service.ENGINE_NAME,
        "version": service.ENGINE_VERSION,
        "sources": list(CAPTURE_SOURCES),
    }


@app.post("/capture")
async def capture(request: CaptureRequest):
    url = _normalize_url(request.url)
    try:
        result = await service.run_capture(url, strict=_strict(request))
    except CaptureError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except Exception as e:
        logger.exception("[server] capture of %s crashed", url)
        raise HTTPException(status_code=500, detail=str(e))
    return {"ok": True, "payload": result.payload.to_wire(), "warning": result.warning}


# ---------------------------------------------------------------------------
# SSE Streaming Endpoints
# ---------------------------------------------------------------------------

@app.post("/capture/stream")
async def capture_stream(request: CaptureRequest):
    """Capture a chat page with progress streamed as SSE, keyed by the capture run id."""
    url = _normalize_url(request.url)
    run_id = request.capture_run_id or service.new_run_id()

    async def event_stream():
        async for event in service.run_capture_streaming(url, run_id, _strict(request)):
            yield event

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run("chatcapture.main:app", host=settings.host, port=settings.port)
