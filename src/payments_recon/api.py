"""FastAPI application exposing reconciliation jobs and schedules."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import SQLAlchemyError

from .auth import limiter
from .database import init_db, close_db
from .errors import ErrorKind, ReconciliationError
from .reconciliation.api import router as reconciliation_router, schedules_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield
    await close_db()


app = FastAPI(title="Payments Reconciliation API", lifespan=lifespan)
app.state.limiter = limiter

app.include_router(reconciliation_router)
app.include_router(schedules_router)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"error": "RATE_LIMITED", "message": f"Rate limit exceeded: {exc.detail}"},
    )


@app.exception_handler(ReconciliationError)
async def reconciliation_error_handler(request: Request, exc: ReconciliationError):
    if exc.should_report:
        logger.error(f"{request.method} {request.url.path} failed: {exc!r}")
    # Client errors carry their details; server-side ones do not leak them
    return JSONResponse(
        status_code=exc.kind.status_code,
        content=exc.to_dict(include_details=not exc.should_report),
    )


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    error = ReconciliationError(ErrorKind.DATABASE, "Database operation failed")
    logger.error(f"{request.method} {request.url.path} database error: {type(exc).__name__}")
    return JSONResponse(status_code=error.kind.status_code, content=error.to_dict())
