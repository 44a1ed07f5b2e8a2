"""
WhatsApp Inbox API

Webhook ingestion, outbound sends and conversation helpers for a
multi-tenant WhatsApp Cloud API inbox.
"""

import uuid
from contextlib import asynccontextmanager

import redis.asyncio as redis
import sentry_sdk
import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi_limiter import FastAPILimiter
from prometheus_client import make_asgi_app

from config import get_settings
from database import init_db
from exceptions import InboxError
from logger_config import configure_logger
from routers import conversations, messages, webhook
from services.cache import CacheService
from services.whatsapp_client import WhatsAppClient

settings = get_settings()
logger = structlog.get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logger()

    if settings.SENTRY_DSN:
        sentry_sdk.init(dsn=settings.SENTRY_DSN, environment=settings.APP_ENV)
        logger.info("Sentry initialized")

    redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    await FastAPILimiter.init(redis_client)
    app.state.redis = redis_client
    app.state.cache = CacheService(redis_client)
    app.state.whatsapp = WhatsAppClient(settings)

    if settings.AUTO_CREATE_SCHEMA:
        await init_db()
        logger.info("Database schema ensured")

    logger.info("API ready", env=settings.APP_ENV, graph=settings.graph_messages_base)
    yield

    await app.state.whatsapp.close()
    await redis_client.aclose()
    logger.info("API shutdown complete")


app = FastAPI(title="WhatsApp Inbox API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
    allow_credentials="*" not in settings.cors_origins,
    max_age=86400,
)


@app.middleware("http")
async def bind_request_context(request: Request, call_next):
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12],
        path=request.url.path,
    )
    return await call_next(request)


@app.exception_handler(InboxError)
async def inbox_error_handler(request: Request, exc: InboxError):
    if exc.status_code >= 500:
        logger.error("Request failed", error=exc.code, detail=exc.detail)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    detail = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"ok": False, "error": "validation_error", "detail": detail})


app.include_router(webhook.router)
app.include_router(messages.router)
app.include_router(conversations.router)
app.mount("/metrics", make_asgi_app())


@app.get("/v1/health")
async def health():
    return {"ok": True}
