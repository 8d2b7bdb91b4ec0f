"""expense-auth FastAPI application.

Serves the identity, credential and session-trust API of the expense
tracker:

* ``/auth/*``: anonymous tokens, identity authorization, PIN create and
  verify, logout and session status
* ``/ledger/*``: the caller's own Ledger row and its change stream
* ``/admin/*``: Ledger administration (``X-Admin-Key``)
* ``/healthz``, ``/livez``: probes

The lifespan creates the Ledger tables, starts the expired-session
cleanup task and, on shutdown, closes every open change stream.
"""

from __future__ import annotations

import json
import logging
import sys
import time
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from expense_auth.config import (
    CORS_ORIGINS,
    HTTP_HOST,
    HTTP_PORT,
    LOG_FORMAT,
    LOG_LEVEL,
    SESSION_CLEANUP_INTERVAL,
)
from expense_auth.errors import ExpenseAuthError

log = logging.getLogger("expense_auth.main")


# ======================================================================
# Structured JSON logging
# ======================================================================


class _JSONFormatter(logging.Formatter):
    """One JSON object per log line.

    Fields: ``timestamp``, ``level``, ``logger``, ``message``, ``module``,
    ``funcName``, plus ``audit`` for audit events and ``exception`` when
    the record carries one.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "funcName": record.funcName,
        }
        audit = getattr(record, "audit", None)
        if audit is not None:
            log_entry["audit"] = audit
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def _configure_logging() -> None:
    """Configure root logging from ``LOG_LEVEL`` and ``LOG_FORMAT``.

    Existing handlers are removed first so uvicorn's own handlers do not
    duplicate every line.
    """
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    if LOG_FORMAT.lower() == "json":
        handler.setFormatter(_JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root.addHandler(handler)
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))

    # Suppress noisy third-party loggers.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


# ======================================================================
# Application lifespan
# ======================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: logging, Ledger tables, session cleanup. Shutdown in reverse."""
    from expense_auth.auth.session import SessionCleanupTask, get_session_store
    from expense_auth.db.session import init_database
    from expense_auth.ledger.events import get_event_bus

    _configure_logging()
    log.info(f"expense-auth starting: HTTP={HTTP_HOST}:{HTTP_PORT}, log_level={LOG_LEVEL}")

    init_database()

    cleanup = SessionCleanupTask(get_session_store(), SESSION_CLEANUP_INTERVAL)
    await cleanup.start()

    yield

    log.info("expense-auth shutting down")
    get_event_bus().close_all()
    await cleanup.stop()
    log.info("expense-auth shutdown complete")


# ======================================================================
# FastAPI application
# ======================================================================

app = FastAPI(
    title="expense-auth",
    description="Identity, PIN credential and session-trust service for the expense tracker.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=CORS_ORIGINS != ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ======================================================================
# Error handlers
# ======================================================================


@app.exception_handler(ExpenseAuthError)
async def expense_auth_error_handler(request: Request, exc: ExpenseAuthError) -> JSONResponse:
    """Render taxonomy errors as ``{error, code}``."""
    body = exc.to_payload()
    headers = {}
    retry_after = getattr(exc, "retry_after", None)
    if retry_after is not None:
        body["retry_after"] = retry_after
        headers["Retry-After"] = str(retry_after)
    reason = getattr(exc, "reason", None)
    if reason is not None:
        body["reason"] = reason
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Schema failures use the same ``{error, code}`` shape."""
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"error": message, "code": "invalid_request"})


# ======================================================================
# Request logging
# ======================================================================


@app.middleware("http")
async def request_logging(request: Request, call_next):
    """Log all requests with timing."""
    start = time.time()
    response = await call_next(request)
    duration_ms = int((time.time() - start) * 1000)

    log.info(
        f"request_complete {request.method} {request.url.path} "
        f"status={response.status_code} duration_ms={duration_ms}"
    )
    return response


# ======================================================================
# Routers
# ======================================================================

from expense_auth.api import admin, auth, health, ledger  # noqa: E402

app.include_router(health.router)
app.include_router(auth.router)
app.include_router(ledger.router)
app.include_router(admin.router)
