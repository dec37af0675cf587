import asyncio
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from atende.config import settings
from atende.logging_config import get_logger, setup_logging
from atende.routers import admin, inbound
from atende.runtime import build_runtime
from atende.worker import queue_worker_loop, timeout_monitor_loop

setup_logging(settings.log_level)

logger = get_logger("main")

app = FastAPI(
    title="Atende API",
    description="Conversation processing pipeline for AI customer service over WhatsApp",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()] or ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(inbound.router)
app.include_router(admin.router)

_background_loops: list[asyncio.Task] = []


def _loops_enabled() -> bool:
    return not os.environ.get("PYTEST_CURRENT_TEST")


@app.on_event("startup")
async def start_runtime() -> None:
    runtime = build_runtime(settings)
    app.state.runtime = runtime
    if not _loops_enabled():
        return
    if settings.worker_enabled:
        _background_loops.append(asyncio.create_task(queue_worker_loop(runtime), name="queue-worker"))
        logger.info("Queue worker started")
    if settings.timeout_monitor_enabled:
        _background_loops.append(asyncio.create_task(timeout_monitor_loop(runtime), name="timeout-monitor"))
        logger.info("Timeout monitor started")


@app.on_event("shutdown")
async def stop_runtime() -> None:
    for task in _background_loops:
        task.cancel()
    await asyncio.gather(*_background_loops, return_exceptions=True)
    _background_loops.clear()
    runtime = getattr(app.state, "runtime", None)
    if runtime is not None:
        await runtime.close()
        app.state.runtime = None


@app.get("/health")
async def health():
    runtime = getattr(app.state, "runtime", None)
    circuits = runtime.circuits() if runtime else []
    degraded = any(circuit["state"] == "OPEN" for circuit in circuits)
    return {"status": "degraded" if degraded else "ok", "circuits": circuits}
