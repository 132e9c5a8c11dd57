# main.py — ProjectDesk API entry point
# - Request id / correlation id echoed on every response, plus security headers
# - Domain errors (errors.AppError) rendered as {"detail", "code", ..., "request_id"}
# - /health verifies the database; every feature router is mounted under /api/v1

import os
import json
import uuid
import time
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text

from database import init_db, close_db, async_session_maker
from errors import AppError
from routers import (
    auth, users, companies, roles, kanban, projects, reference, notifications,
)

logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("projectdesk")

VERSION = "1.0.0"
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}

ROUTERS = (
    auth.router,
    users.router,
    companies.router,
    roles.router,
    roles.permissions_router,
    kanban.router,
    kanban.columns_router,
    projects.router,
    reference.regions_router,
    reference.statuses_router,
    reference.types_router,
    notifications.router,
)


def _startup_warnings() -> List[str]:
    """Configuration problems worth shouting about at boot"""
    found = []
    access_secret = os.getenv("JWT_SECRET_KEY", "")
    refresh_secret = os.getenv("JWT_REFRESH_SECRET_KEY", "")
    for env_name, value in (("JWT_SECRET_KEY", access_secret), ("JWT_REFRESH_SECRET_KEY", refresh_secret)):
        if len(value) < 32:
            found.append(f"⚠️  {env_name} is missing or shorter than 32 characters")
    if access_secret and access_secret == refresh_secret:
        found.append("⚠️  JWT_SECRET_KEY and JWT_REFRESH_SECRET_KEY must differ")
    if ENVIRONMENT == "production" and os.getenv("DATABASE_URL", "").startswith("sqlite"):
        found.append("⚠️  SQLite configured in production; use PostgreSQL")
    return found


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"🚀 ProjectDesk v{VERSION} starting ({ENVIRONMENT})")
    await init_db()
    for warning in _startup_warnings():
        logger.warning(warning)
    yield
    logger.info("🛑 ProjectDesk shutting down")
    await close_db()


app = FastAPI(
    title="ProjectDesk",
    description="Multi-tenant project management: companies, roles, kanban boards and project audit trail",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-Correlation-ID"],
    expose_headers=["X-Request-ID", "X-Correlation-ID"],
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id

    started = time.perf_counter()
    response = await call_next(request)
    elapsed = time.perf_counter() - started

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Correlation-ID"] = request.headers.get("X-Correlation-ID", request_id)
    response.headers["X-Response-Time"] = f"{elapsed:.4f}s"
    response.headers.update(SECURITY_HEADERS)

    logger.info(f"{request.method} {request.url.path} → {response.status_code} ({elapsed:.3f}s) [rid={request_id[:8]}]")
    return response


# ============================================================
# ERROR RENDERING
# ============================================================

def _error_response(request: Request, status_code: int, body: Dict[str, Any], headers=None) -> JSONResponse:
    body["request_id"] = getattr(request.state, "request_id", None)
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def _json_safe(value: Any) -> Any:
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return str(value)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return _error_response(request, exc.status_code, exc.to_dict(), headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {
            "loc": list(err.get("loc", [])),
            "msg": str(err.get("msg", "")),
            "type": str(err.get("type", "unknown")),
            **({"input": _json_safe(err["input"])} if "input" in err else {}),
        }
        for err in exc.errors()
    ]
    return _error_response(request, 422, {"detail": errors, "code": "VALIDATION_ERROR"})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled {type(exc).__name__} on {request.url.path}: {exc}", exc_info=True)
    return _error_response(request, 500, {"detail": "Internal server error", "code": "INTERNAL_SERVER_ERROR"})


for router in ROUTERS:
    app.include_router(router)


@app.get("/health")
async def health_check():
    """Liveness plus a SELECT 1 round trip"""
    try:
        async with async_session_maker() as db:
            await db.execute(text("SELECT 1"))
        database = "connected"
    except Exception as e:
        logger.warning(f"Health check database failure: {e}")
        database = f"error: {str(e)[:100]}"
    return {
        "status": "healthy" if database == "connected" else "degraded",
        "version": VERSION,
        "environment": ENVIRONMENT,
        "database": database,
    }


@app.get("/")
async def root():
    return {"name": "ProjectDesk", "version": VERSION, "docs": "/docs", "health": "/health"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=ENVIRONMENT == "development",
    )
