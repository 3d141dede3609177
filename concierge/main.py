import asyncio
import os

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from concierge.config import settings
from concierge.dependencies import get_pipeline
from concierge.logging_config import get_logger, setup_logging
from concierge.routers import chat
from concierge.services.chat_pipeline import ChatPipeline

setup_logging(settings.log_level)

app = FastAPI(
    title="Concierge API",
    description="Decision pipeline for the lagoon guest concierge",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat.router)

cleanup_logger = get_logger("cleanup_worker")
_cleanup_worker_task: asyncio.Task | None = None


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _is_cleanup_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _is_env_enabled(os.environ.get("CLEANUP_WORKER_ENABLED"), default=True)


async def run_cleanup(pipeline: ChatPipeline) -> dict:
    """One eviction pass over sessions and cached replies."""
    sessions = await pipeline.store.sweep()
    cache_entries = await pipeline.cache.sweep()
    return {"sessions_removed": sessions, "cache_entries_removed": cache_entries}


async def _cleanup_worker_loop() -> None:
    interval_seconds = max(float(settings.cleanup_interval_seconds), 1.0)
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            results = await run_cleanup(get_pipeline())
            cleanup_logger.info("Cleanup worker processed", extra={"context": results})
        except asyncio.CancelledError:
            break
        except Exception as exc:
            cleanup_logger.error(
                "Cleanup worker loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def start_cleanup_worker() -> None:
    global _cleanup_worker_task
    if not _is_cleanup_worker_enabled():
        return
    if _cleanup_worker_task is None or _cleanup_worker_task.done():
        _cleanup_worker_task = asyncio.create_task(_cleanup_worker_loop())
        cleanup_logger.info("Cleanup worker started")


@app.on_event("shutdown")
async def stop_cleanup_worker() -> None:
    global _cleanup_worker_task
    if _cleanup_worker_task is None:
        return
    _cleanup_worker_task.cancel()
    try:
        await _cleanup_worker_task
    except asyncio.CancelledError:
        pass
    _cleanup_worker_task = None


@app.on_event("shutdown")
async def close_pipeline() -> None:
    if not get_pipeline.cache_info().currsize:
        return
    pipeline = get_pipeline()
    if pipeline.telemetry is not None:
        await pipeline.telemetry.drain()
    close = getattr(pipeline.cache, "close", None)
    if close is not None:
        await close()


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/health/stats")
async def health_stats(pipeline: ChatPipeline = Depends(get_pipeline)):
    cache_entries = len(pipeline.cache) if hasattr(pipeline.cache, "__len__") else None
    return {
        "status": "ok",
        "sessions": len(pipeline.store),
        "cache_entries": cache_entries,
    }
