"""Capture runs as the server exposes them: one-shot, or streamed as SSE events."""

import asyncio
import logging
import uuid

from chatcapture.browser import open_chat_page
from chatcapture.errors import CaptureError
from chatcapture.flows import CaptureProgress, CaptureResult, ProgressEmitter, run_capture_flow
from chatcapture.payload import infer_source_from_url
from chatcapture.sse_utils import sse_event

logger = logging.getLogger(__name__)

ENGINE_NAME = "chatcapture"
ENGINE_VERSION = "0.1.0"


def new_run_id() -> str:
    return uuid.uuid4().hex


async def run_capture(url: str, emit: ProgressEmitter | None = None, strict: bool = False) -> CaptureResult:
    source = infer_source_from_url(url)
    logger.info("[flow] capture %s as %s (strict=%s)", url, source, strict)
    async with open_chat_page(url) as page:
        return await run_capture_flow(page, source, emit, strict)


async def run_capture_streaming(url: str, run_id: str, strict: bool = False):
    """
    Yield SSE strings for one capture run: ``progress`` events while it runs,
    then a single ``done`` (payload, warning) or ``error`` (message).
    """
    queue: asyncio.Queue = asyncio.Queue()

    def emit(progress: CaptureProgress):
        queue.put_nowait(sse_event("progress", {"runId": run_id, **progress.to_event()}))

    async def worker():
        try:
            result = await run_capture(url, emit, strict)
            queue.put_nowait(sse_event("done", {
                "runId": run_id,
                "payload": result.payload.to_wire(),
                "warning": result.warning,
            }))
        except CaptureError as e:
            logger.warning("[flow] run %s failed: %s", run_id, e)
            queue.put_nowait(sse_event("error", {"runId": run_id, "message": str(e)}))
        except Exception as e:
            logger.exception("[flow] run %s crashed", run_id)
            queue.put_nowait(sse_event("error", {"runId": run_id, "message": str(e)}))
        finally:
            queue.put_nowait(None)

    task = asyncio.create_task(worker())
    try:
        while True:
            event = await queue.get()
            if event is None:
                break
            yield event
    finally:
        if not task.done():
            task.cancel()
