"""
Debug Routes

Operational endpoints, gated by ``require_debug_access``:

- ``GET /metrics``                      Prometheus text exposition
- ``GET /debug/pprof/``                 index of the endpoints below
- ``GET /debug/pprof/cmdline``          process command line
- ``GET /debug/pprof/threads``          stack of every thread
- ``GET /debug/pprof/tasks``            stack of every asyncio task
- ``GET /debug/pprof/heap?limit=N``     top allocation sites (tracemalloc)
- ``GET /debug/pprof/profile?seconds=N`` cProfile of the event-loop thread

In production the gate requires ``Authorization: Bearer <DEBUG_AUTH_TOKEN>``.
"""

import asyncio
import cProfile
import io
import pstats
import sys
import threading
import traceback
import tracemalloc

from fastapi import APIRouter, Query
from fastapi.responses import PlainTextResponse, Response

from src.application.api.dependencies import ContainerDep, DebugAccessDep
from src.core.config.constants import Stage
from src.core.logging.logger import get_logger

logger = get_logger(__name__)

metrics_router = APIRouter(tags=["Debug"], dependencies=[DebugAccessDep])
router = APIRouter(prefix="/debug/pprof", tags=["Debug"], dependencies=[DebugAccessDep])

PROFILE_MAX_SECONDS = 60
_profile_lock = asyncio.Lock()

INDEX = """/debug/pprof/

cmdline   process command line
threads   stack traces of all threads
tasks     stack traces of all asyncio tasks
heap      top allocation sites (?limit=N, starts tracemalloc on first use)
profile   CPU profile of the event loop (?seconds=N, default 30, max 60)
"""


@metrics_router.get("/metrics")
async def metrics(container: ContainerDep):
    """Prometheus metrics in text exposition format."""
    collector = container.metrics
    return Response(content=collector.get_prometheus_metrics(), media_type=collector.get_content_type())


@router.get("/")
async def index():
    return PlainTextResponse(INDEX)


@router.get("/cmdline")
async def cmdline():
    return PlainTextResponse("\x00".join(sys.argv))


@router.get("/threads")
async def threads():
    names = {t.ident: t.name for t in threading.enumerate()}
    out = io.StringIO()
    for ident, frame in sys._current_frames().items():
        out.write(f"thread {names.get(ident, '?')} ({ident}):\n")
        out.write("".join(traceback.format_stack(frame)))
        out.write("\n")
    return PlainTextResponse(out.getvalue())


@router.get("/tasks")
async def tasks():
    out = io.StringIO()
    all_tasks = asyncio.all_tasks()
    out.write(f"{len(all_tasks)} tasks\n\n")
    for task in all_tasks:
        out.write(f"task {task.get_name()} done={task.done()}:\n")
        task.print_stack(file=out)
        out.write("\n")
    return PlainTextResponse(out.getvalue())


@router.get("/heap")
async def heap(limit: int = Query(default=25, ge=1, le=500)):
    if not tracemalloc.is_tracing():
        tracemalloc.start()
        logger.info("tracemalloc started", stage=Stage.DEBUG.value)
    snapshot = tracemalloc.take_snapshot()
    stats = snapshot.statistics("lineno")
    current, peak = tracemalloc.get_traced_memory()
    lines = [f"traced current={current} peak={peak} bytes", ""]
    lines.extend(str(stat) for stat in stats[:limit])
    return PlainTextResponse("\n".join(lines) + "\n")


@router.get("/profile")
async def profile(seconds: int = Query(default=30, ge=1, le=PROFILE_MAX_SECONDS)):
    """Profile everything the event-loop thread runs for ``seconds``."""
    async with _profile_lock:
        profiler = cProfile.Profile()
        profiler.enable()
        try:
            await asyncio.sleep(seconds)
        finally:
            profiler.disable()

    out = io.StringIO()
    pstats.Stats(profiler, stream=out).sort_stats(pstats.SortKey.CUMULATIVE).print_stats(50)
    logger.info("CPU profile collected", stage=Stage.DEBUG.value, seconds=seconds)
    return PlainTextResponse(out.getvalue())
