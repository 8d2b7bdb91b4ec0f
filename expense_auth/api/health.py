"""Health check endpoints.

| Endpoint     | Purpose                          | Status     |
|--------------|----------------------------------|------------|
| GET /livez   | Liveness, is the process alive?  | Always 200 |
| GET /healthz | Readiness, is the Ledger DB up?  | 200 / 503  |
"""
import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

log = logging.getLogger(__name__)
router = APIRouter(tags=["health"])


@router.get("/livez")
async def livez():
    """Liveness probe, always 200."""
    return {"status": "alive", "service": "expense-auth"}


@router.get("/healthz")
async def healthz():
    """Readiness probe: 200 if the Ledger database answers, 503 otherwise."""
    from expense_auth.auth.session import get_session_store
    from expense_auth.db.session import SessionLocal
    from expense_auth.ledger.events import get_event_bus

    db_status = "connected"
    try:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
    except SQLAlchemyError as e:
        log.warning(f"Health check: DB unavailable: {e}")
        db_status = "unavailable"

    body = {
        "status": "ok" if db_status == "connected" else "unhealthy",
        "database": db_status,
        "sessions": get_session_store().session_count,
        "subscribers": get_event_bus().subscriber_count(),
    }
    if db_status != "connected":
        return JSONResponse(content=body, status_code=503)
    return body
