"""
Mailroom Admin Backend - FastAPI Application.

Entry point for the admin API. Admin routers sit behind the session role
check and the admin IP gate.
"""
import gzip
import logging
import os
import shutil
import sys
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mailroom_admin.backend.api.v1 import ip_whitelist
from mailroom_admin.backend.core.audit import AuditSink
from mailroom_admin.backend.core.config import get_web_settings
from mailroom_admin.backend.core.database import db_service
from mailroom_admin.backend.core.errors import E
from mailroom_admin.backend.core.ip_whitelist import WhitelistCache
from mailroom_admin.backend.core.whitelist_guard import WhitelistGuard
from mailroom_admin.backend.core.whitelist_store import WhitelistStore


# ── Logging setup (structlog) ────────────────────────────────────

_LOG_FILE = "admin-api.log"
_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
_BACKUP_COUNT = 5

# Short "component" names shown instead of dotted module paths
_COMPONENTS = {
    "mailroom_admin.backend.api": "api",
    "mailroom_admin.backend.core.whitelist_guard": "guard",
    "mailroom_admin.backend.core.whitelist_store": "store",
    "mailroom_admin.backend.core.ip_whitelist": "cache",
    "mailroom_admin.backend.core.ip_utils": "cidr",
    "mailroom_admin.backend.core.audit": "audit",
    "mailroom_admin.backend.core.database": "db",
    "asyncpg": "db",
    "uvicorn": "uvicorn",
}

_QUIET_LOGGERS = ("asyncpg", "uvicorn.access")


def _gzip_name(default_name: str) -> str:
    return default_name + ".gz"


def _gzip_rotate(source: str, dest: str) -> None:
    """Compress the full log into its backup slot and start a fresh file."""
    with open(source, "rb") as f_in, gzip.open(dest, "wb") as f_out:
        shutil.copyfileobj(f_in, f_out)
    os.remove(source)


def _file_handler(log_dir: str, formatter: logging.Formatter) -> RotatingFileHandler:
    path = Path(log_dir)
    path.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(path / _LOG_FILE),
        maxBytes=_MAX_BYTES, backupCount=_BACKUP_COUNT, encoding="utf-8",
    )
    handler.namer = _gzip_name
    handler.rotator = _gzip_rotate
    handler.setLevel(logging.INFO)
    handler.setFormatter(formatter)
    return handler


def _add_component(_logger, _method_name: str, event_dict: dict) -> dict:
    """structlog processor: replaces the logger name with a component tag."""
    name = event_dict.pop("logger", "") or ""
    component = name.rsplit(".", 1)[-1]
    for prefix, short in _COMPONENTS.items():
        if name == prefix or name.startswith(prefix + "."):
            component = short
            break
    event_dict["component"] = component
    return event_dict


def _setup_web_logging(log_level: str, log_dir: str) -> None:
    """Route stdlib logging through structlog: console renderer plus JSON log file."""
    pre_chain = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    def formatter(renderer) -> structlog.stdlib.ProcessorFormatter:
        return structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _add_component,
                renderer,
            ],
        )

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.DEBUG)

    console = logging.StreamHandler()
    console.setLevel(getattr(logging, log_level, logging.INFO))
    console.setFormatter(formatter(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())))
    root.addHandler(console)

    try:
        root.addHandler(_file_handler(log_dir, formatter(structlog.processors.JSONRenderer())))
    except OSError as exc:
        root.warning("Cannot write %s in %s (%s), logging to console only", _LOG_FILE, log_dir, exc)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


logger = logging.getLogger(__name__)


# ── FastAPI app ───────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_web_settings()
    logger.info("Admin API starting on %s:%s", settings.host, settings.port)

    if settings.database_url:
        connected = await db_service.connect(database_url=settings.database_url)
        if connected:
            if settings.admin_ip_bootstrap:
                guard: WhitelistGuard = app.state.whitelist_guard
                await guard.bootstrap(settings.admin_ip_bootstrap)
        else:
            logger.warning("Database connection failed, whitelist store unavailable")
    else:
        logger.info("No DATABASE_URL, running without database")

    yield

    if db_service.is_connected:
        await db_service.disconnect()
    logger.info("Admin API stopped")


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    settings = get_web_settings()
    _setup_web_logging(settings.log_level, settings.log_dir)

    app = FastAPI(
        title="Mailroom Admin API",
        description="Admin API for the mailroom service",
        version="1.0.0",
        docs_url="/api/docs" if settings.debug else None,
        redoc_url="/api/redoc" if settings.debug else None,
        openapi_url="/api/openapi.json" if settings.debug else None,
        lifespan=lifespan,
        redirect_slashes=False,
    )

    # One whitelist store/cache/guard per process
    store = WhitelistStore(db_service)
    cache = WhitelistCache(store.list_entries)
    app.state.whitelist_cache = cache
    app.state.whitelist_guard = WhitelistGuard(
        store,
        cache,
        AuditSink(db_service),
        revalidate=settings.whitelist_revalidate,
    )

    cors_origins = [o for o in settings.cors_origins if o != "*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response: Response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"detail": {"detail": "Server error", "code": E.INTERNAL_ERROR.value}},
        )

    app.include_router(ip_whitelist.router, prefix="/api/v1/admin/ip-whitelist", tags=["admin-ip-whitelist"])

    @app.get("/api/v1/health", tags=["health"])
    async def health_check(request: Request):
        """Health check endpoint (not gated)."""
        cache: WhitelistCache = request.app.state.whitelist_cache
        return {
            "status": "ok",
            "service": "mailroom-admin",
            "database": db_service.is_connected,
            "whitelist_cached": cache.is_warm,
        }

    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_web_settings()
    uvicorn.run(
        "mailroom_admin.backend.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
