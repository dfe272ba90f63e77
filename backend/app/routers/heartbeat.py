from fastapi import APIRouter
from fastapi.responses import StreamingResponse
from starlette.concurrency import run_in_threadpool
import asyncio
import json
import time
from typing import AsyncIterator, Awaitable, Callable

from ..config import settings
from ..db import probe_db

router = APIRouter(tags=["health"])

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def sse_event(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data, separators=(',', ':'))}\n\n"


def db_ok() -> bool:
    return probe_db()[0]


async def heartbeat_stream(
    probe: Callable[[], bool],
    interval: float,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.time,
) -> AsyncIterator[str]:
    """
    Yields `connected`, then one `heartbeat` per interval while `probe()` holds.
    The stream ends with an `offline` event the first time the probe fails.

    Waiting happens on the event loop; only the probe itself borrows a worker
    thread, so idle registers do not hold the threadpool used by the routers.
    """
    yield sse_event("connected", {"status": "ok"})
    while True:
        await sleep(interval)
        if not await run_in_threadpool(probe):
            yield sse_event("offline", {"status": "offline", "db": "down"})
            return
        yield sse_event("heartbeat", {"timestamp": int(clock() * 1000), "db": "ok"})


@router.get("/heartbeat")
def heartbeat():
    if not db_ok():
        return StreamingResponse(
            iter([sse_event("offline", {"status": "offline", "db": "down"})]),
            status_code=503,
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )
    return StreamingResponse(
        heartbeat_stream(db_ok, settings.heartbeat_interval_seconds),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
