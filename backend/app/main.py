from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from .deps import error_status
from .routes_accounts import router as connect_router
from .routes_ops import router as ops_router
from .routes_posts import queue_router, router as posts_router
from .routes_scheduler import router as scheduler_router
from .services.errors import PublishingError
from .settings import get_settings

logger = logging.getLogger("app")

app = FastAPI(title="crosspost")
settings = get_settings()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PublishingError)
async def publishing_error_handler(request: Request, exc: PublishingError):
    code = error_status(exc)
    if code >= 500:
        logger.error("Configuration error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse({"detail": str(exc)}, status_code=code)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return PlainTextResponse("Internal Server Error", status_code=500)


@app.get("/ping")
async def ping():
    return {"status": "ok"}


app.include_router(posts_router)
app.include_router(queue_router)
app.include_router(connect_router)
app.include_router(scheduler_router)
app.include_router(ops_router)


@app.on_event("startup")
async def startup_event():
    """Start the in-process ticker when SCHEDULER_ENABLED is set."""
    from app.services.scheduler import scheduler_service
    scheduler_service.configure(settings.async_database_url)
    scheduler_service.start()


@app.on_event("shutdown")
async def shutdown_event():
    from app.services.scheduler import scheduler_service
    scheduler_service.stop()
