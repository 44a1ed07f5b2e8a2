import logging
import sys

import structlog

from config import get_settings

# Third-party loggers that drown request logs at INFO
QUIET_LOGGERS = (
    "httpx",
    "httpcore",
    "asyncio",
    "aiosqlite",
    "sqlalchemy.engine",  # SQL echo is the engine's job
    "alembic.runtime.migration",
)


def _renderer(app_env: str):
    if app_env == "production":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer()


def configure_logger(level: int = logging.INFO):
    """Configure structlog once per process (API lifespan, worker main)."""
    settings = get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,  # request_id, tenant_id, actor_id
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer(settings.APP_ENV),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # uvicorn and friends log through stdlib; keep them on the same stream
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def phone_suffix(phone: str) -> str:
    """Last four digits only; full numbers never go to logs."""
    return phone[-4:] if phone else ""
