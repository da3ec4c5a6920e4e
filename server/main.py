"""FastAPI application entrypoint.

Responsibilities:
- Create the FastAPI app with lifespan context
- Wire engine events (processor + connection monitor) to the SSE broadcaster
- Attach middleware: request id binding, basic security headers
- Include API routes

Notes:
- Logging is configured in adder.bootstrap when the context is created.
- On shutdown a running batch is cancelled (its cursor is already persisted)
  and the stats record is saved.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator
import asyncio
import uuid

from fastapi import FastAPI, Request, Response
from structlog import contextvars as struct_contextvars

from adder.bootstrap import get_context
from .events import publish_connection_change, publish_processor_event
from .routes import cancel_batch_task, router as core_router


# ------------------------------------------------------------
# Lifespan: initialize global context once app starts
# ------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:  # noqa: D401
    ctx = await get_context()
    ctx.processor.on_event = publish_processor_event
    ctx.monitor.subscribe(publish_connection_change)
    log_method = ctx.logger.debug if ctx.settings.quiet_startup else ctx.logger.info
    log_method("api_startup", client_ready=ctx.monitor.is_ready)
    try:
        yield
    except asyncio.CancelledError:  # graceful shutdown triggered
        log_method("api_shutdown_cancelled")
    finally:
        await cancel_batch_task()
        ctx.monitor.unsubscribe(publish_connection_change)
        try:
            ctx.processor.save_state()
        except OSError as exc:
            ctx.logger.error("shutdown_state_save_failed", error=str(exc))
        log_method("api_shutdown")


app = FastAPI(title="Group Member Adder", version="0.1.0", lifespan=lifespan)


@app.middleware("http")
async def security_headers(request: Request, call_next):  # noqa: D401
    rid = str(uuid.uuid4())
    struct_contextvars.bind_contextvars(request_id=rid)
    try:
        response: Response = await call_next(request)
    finally:
        struct_contextvars.clear_contextvars()
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault("X-Request-ID", rid)
    return response


app.include_router(core_router)
