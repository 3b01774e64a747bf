from importlib.metadata import PackageNotFoundError, version

import redis
import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .api import router
from .config import settings
from .db import SessionLocal, engine, init_db
from .logging_config import setup_logging
from .middleware import RequestContextMiddleware, SecurityHeadersMiddleware

log = structlog.get_logger("bookingcore.main")


def _read_app_version() -> str:
    try:
        return version("bookingcore")
    except PackageNotFoundError:
        return "0.1.0"


setup_logging()
if settings.DATABASE_URL.startswith("sqlite") or bool(settings.DB_AUTO_CREATE_ALL):
    init_db(engine)

app = FastAPI(
    title="BookingCore",
    description="Multi-tenant appointment scheduling with human review",
    version=_read_app_version(),
)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestContextMiddleware)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    log.error("unhandled_exception", error=str(exc), exc_type=type(exc).__name__)
    return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/health/ready")
def ready():
    checks = {"db": "ok", "redis": "skipped"}
    db_ok = True
    redis_ok = True

    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        checks["db"] = "error"
        db_ok = False

    redis_url = (settings.REDIS_URL or "").strip()
    if redis_url and bool(settings.EVENT_BUS_ENABLED):
        try:
            redis.from_url(redis_url, decode_responses=True).ping()
            checks["redis"] = "ok"
        except (redis.RedisError, ValueError):
            checks["redis"] = "error"
            redis_ok = False

    if db_ok and redis_ok:
        return {"status": "ready", "checks": checks}
    return JSONResponse(status_code=503, content={"status": "not_ready", "checks": checks})


app.include_router(router)
