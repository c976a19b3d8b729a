from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI

from switchboard.api.error_handling import register_exception_handlers
from switchboard.api.routes import router
from switchboard.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the orchestrator and queue workers; stop them on shutdown."""
    from switchboard.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.start()

    yield

    try:
        await runtime.stop()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Switchboard", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag logs with the caller's X-Request-ID, or a fresh one, and echo it back."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store, queue and orchestrator health."""
    from switchboard.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, check) -> bool:
        try:
            return bool(await asyncio.wait_for(check(), HEALTH_CHECK_TIMEOUT_SECONDS))
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    store_ok = await _run_bounded("database", lambda: asyncio.to_thread(runtime.store.ping))
    checks["database"] = {
        "status": "healthy" if store_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }
    queue_ok = await _run_bounded("queue", runtime.queue.is_healthy)
    checks["queue"] = {"status": "healthy" if queue_ok else "unhealthy", "type": type(runtime.queue).__name__}
    orchestrator_ok = await _run_bounded("orchestrator", runtime.orchestrator.is_healthy)
    checks["orchestrator"] = {
        "status": "healthy" if orchestrator_ok else "unhealthy",
        "tools": runtime.registry.size(),
    }
    checks["redis"] = {"status": "healthy" if runtime.redis_available else "not_configured"}

    overall_healthy = store_ok and queue_ok and orchestrator_ok
    return {
        "status": "healthy" if overall_healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def main() -> None:
    import uvicorn

    from switchboard.config import get_settings

    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
