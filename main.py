"""
main.py
FastAPI application entry point.
Wires the routers, middleware and error handlers, and the lifespan that
opens the database, Redis and the notification channels.
"""

import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from config import redis_client as redis_module
from config.database import AsyncSessionLocal, close_db, init_db
from config.redis_client import SchedulerCache, close_redis, init_redis
from config.settings import settings
from services.admin.router import router as admin_router
from services.auth.router import router as auth_router
from services.congregation.router import admin_router as congregation_admin_router
from services.congregation.router import router as congregation_router
from services.hierarchy.router import router as hierarchy_router
from services.meal.router import router as meal_router
from services.missionary.router import admin_router as missionary_admin_router
from services.missionary.router import portal_router as missionary_portal_router
from services.missionary.router import router as missionary_router
from services.notification.dispatcher import build_notification_manager
from services.notification.router import router as notification_router
from services.notification.router import webhook_router as sms_webhook_router
from shared.utils.errors import AppError

UNLIMITED_PATHS = {"/health", "/metrics", "/docs", "/redoc", "/openapi.json", "/api/sms/webhook"}


# ── Logging ──────────────────────────────────────────────────

class JSONFormatter(logging.Formatter):
    """One JSON object per line; ids passed via `extra=` are carried along."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "env": settings.APP_ENV,
        }
        for extra in ("request_id", "missionary_id", "meal_id"):
            value = getattr(record, extra, None)
            if value is not None:
                entry[extra] = value
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.basicConfig(
        level=logging.DEBUG if settings.DEBUG else logging.INFO, handlers=[handler], force=True
    )
    # SQL statements are echoed only when DB_ECHO is set
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


configure_logging()
logger = logging.getLogger(__name__)


# ── Lifespan ─────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("%s %s starting in %s", settings.APP_NAME, settings.APP_VERSION, settings.APP_ENV)
    await init_db()
    await init_redis()

    manager = build_notification_manager(settings, AsyncSessionLocal)
    app.state.notification_manager = manager
    simulated = sorted(m.value for m, sender in manager.senders.items() if not sender.configured)
    if simulated:
        logger.warning("Simulating delivery for channels without credentials: %s", ", ".join(simulated))

    yield

    await close_redis()
    await close_db()
    logger.info("Shutdown complete")


# ── App Factory ───────────────────────────────────────────────

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## Missionary Meal Scheduler API

Ward members sign up to host meals for the missionaries serving their
congregation; administrators manage the hierarchy, missionaries and users.

- **Public**: congregation lookup by access code, meal booking, availability
- **Missionaries**: self-registration, email verification, portal login
- **Admin**: regions, missions, stakes and congregations; users; statistics
- **Notifications**: email, WhatsApp, SMS and Messenger with message logs

Admin endpoints take `Authorization: Bearer <access_token>` from `/api/auth/login`.
        """,
        lifespan=lifespan,
    )

    # Last added runs outermost
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=["*"])
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.SECRET_KEY,
        session_cookie="meal_scheduler_session",
        same_site="lax",
        https_only=settings.is_production,
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{(time.perf_counter() - started) * 1000:.1f}ms"
        return response

    @app.middleware("http")
    async def unauthenticated_rate_limit(request: Request, call_next):
        """Per-IP limit on anonymous traffic. Fails open if Redis is down or not connected."""
        client = redis_module.redis_client
        if (
            client is None
            or request.url.path in UNLIMITED_PATHS
            or request.headers.get("Authorization", "").startswith("Bearer ")
        ):
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        try:
            allowed = await SchedulerCache(client).allow_attempt(
                "unauth", client_ip, settings.RATE_LIMIT_UNAUTH_PER_MINUTE
            )
        except Exception as exc:
            logger.error("Rate limit check failed: %s", exc)
            return await call_next(request)

        if not allowed:
            logger.warning("Rate limit exceeded for %s", client_ip)
            return JSONResponse(
                status_code=429,
                content={"message": "Too many requests. Please wait a minute and try again."},
                headers={"Retry-After": "60"},
            )
        return await call_next(request)

    # ── Error handlers ─────────────────────────────────────────

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"message": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"), "message": err.get("msg")}
            for err in exc.errors()
        ]
        return JSONResponse(status_code=400, content={"message": "Invalid request", "errors": errors})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        request_id = getattr(request.state, "request_id", None)
        logger.error("Unhandled %s on %s", type(exc).__name__, request.url.path,
                     exc_info=True, extra={"request_id": request_id})
        message = str(exc) if settings.DEBUG else "Internal server error"
        return JSONResponse(status_code=500, content={"message": message, "requestId": request_id})

    # ── Routes ─────────────────────────────────────────────────

    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check():
        report = {"status": "ok", "version": settings.APP_VERSION}

        try:
            async with AsyncSessionLocal() as session:
                await session.execute(text("SELECT 1"))
            report["database"] = "ok"
        except Exception:
            report["database"] = "error"

        client = redis_module.redis_client
        try:
            report["redis"] = "ok" if client is not None and await client.ping() else "error"
        except Exception:
            report["redis"] = "error"

        manager = getattr(app.state, "notification_manager", None)
        if manager is not None:
            report["channels"] = {
                method.value: "live" if sender.configured else "simulated"
                for method, sender in manager.senders.items()
            }

        if "error" in (report["database"], report["redis"]):
            report["status"] = "degraded"
        return JSONResponse(content=report, status_code=200 if report["status"] == "ok" else 503)

    for router in (
        auth_router,
        congregation_router,
        meal_router,
        missionary_router,
        missionary_portal_router,
        hierarchy_router,
        congregation_admin_router,
        missionary_admin_router,
        admin_router,
        notification_router,
        sms_webhook_router,
    ):
        app.include_router(router)

    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS,
        log_level="debug" if settings.DEBUG else "info",
    )
