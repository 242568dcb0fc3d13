"""
FastAPI application entry point.

Run with:
    uvicorn ambient.main:app --reload --port 8000
"""

import uuid
import logging
import time

from fastapi import FastAPI, Request

from ambient.config import settings
from ambient.logging.config import setup_logging, request_id_var
from ambient.agent.categories import CategoryConfig
from ambient.agent.progress import ProgressStreams
from ambient.agent.prompts import build_default_registry
from ambient.api.routes_profile import router as profile_router
from ambient.storage.store import build_store

# --- Initialize logging FIRST ---
setup_logging(level=settings.log_level)
logger = logging.getLogger(__name__)

# --- Create the FastAPI app ---
app = FastAPI(
    title=settings.app_name,
    docs_url="/docs" if settings.app_env == "development" else None,
    redoc_url=None,
)

# --- Shared state: loaded once, a broken prompt or category file stops startup ---
app.state.registry = build_default_registry()
app.state.categories = CategoryConfig.load(settings.category_config_path)
app.state.store = build_store(settings.profile_store_path)
app.state.progress = ProgressStreams(settings.progress_history_size)


# --- Middleware: Request context + logging ---
@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    """Set up request ID and request timing."""
    req_id = str(uuid.uuid4())[:8]
    request_id_var.set(req_id)

    start = time.monotonic()
    response = await call_next(request)

    response.headers["X-Request-ID"] = req_id

    latency_ms = int((time.monotonic() - start) * 1000)
    logger.info(
        "http.request",
        extra={
            "action": "http.request",
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "latency_ms": latency_ms,
        },
    )

    return response


# --- Register route modules ---
app.include_router(profile_router)


# --- Health check endpoints ---
@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/ready")
async def ready():
    checks = {
        "config_loaded": True,
        "prompts_loaded": len(app.state.registry) > 0,
        "anthropic_key_set": bool(settings.anthropic_api_key),
    }
    all_ok = all(checks.values())
    return {"status": "ready" if all_ok else "not_ready", "checks": checks}
