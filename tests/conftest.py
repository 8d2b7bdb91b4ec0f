"""Pytest fixtures for expense-auth tests.

Every test runs against its own SQLite Ledger under ``tmp_path`` with
fresh singletons. The FastAPI app is driven in-process through httpx's
ASGI transport.
"""
import asyncio
import importlib
from typing import AsyncGenerator, AsyncIterator, Callable, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from expense_auth.audit import reset_audit_logger
from expense_auth.auth.rate_limit import reset_rate_limiters
from expense_auth.auth.session import get_session_store, reset_session_store
from expense_auth.client.api import AuthServiceClient
from expense_auth.client.storage import MemoryStorage
from expense_auth.errors import AuthorizationError, SessionInvalidatedError
from expense_auth.ledger.events import get_event_bus, reset_event_bus
from expense_auth.ledger.store import get_ledger_store, reset_ledger_store
from expense_auth.models import LedgerChangeEvent

TEST_ADMIN_KEY = "test-admin-key-12345"

_ENV_KEYS = (
    "EXPENSE_AUTH_DATABASE_URL",
    "EXPENSE_AUTH_PIN_BCRYPT_ROUNDS",
    "EXPENSE_AUTH_ADMIN_KEY",
    "EXPENSE_AUTH_PIN_MAX_ATTEMPTS",
    "EXPENSE_AUTH_AUTHORIZE_MAX_ATTEMPTS",
    "EXPENSE_AUTH_EVENT_KEEPALIVE_SECONDS",
)


def _reset_singletons() -> None:
    reset_ledger_store()
    reset_session_store()
    reset_rate_limiters()
    reset_event_bus()
    reset_audit_logger()


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the event loop until ``predicate()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.01)


# =============================================================================
# Environment
# =============================================================================


@pytest.fixture(autouse=True)
def ledger_env(tmp_path, monkeypatch):
    """Isolated Ledger database, fast bcrypt and an admin key."""
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("EXPENSE_AUTH_DATABASE_URL", f"sqlite:///{tmp_path}/ledger.db")
    monkeypatch.setenv("EXPENSE_AUTH_PIN_BCRYPT_ROUNDS", "4")
    monkeypatch.setenv("EXPENSE_AUTH_ADMIN_KEY", TEST_ADMIN_KEY)
    monkeypatch.setenv("EXPENSE_AUTH_EVENT_KEEPALIVE_SECONDS", "0.05")

    import expense_auth.config as config_module
    import expense_auth.db.session as db_session_module

    importlib.reload(config_module)
    importlib.reload(db_session_module)
    db_session_module.init_database()
    _reset_singletons()

    yield tmp_path

    _reset_singletons()
    db_session_module.engine.dispose()


@pytest.fixture
def reload_config(monkeypatch):
    """Set ``EXPENSE_AUTH_*`` variables and reload config and limiters."""

    def _apply(**values: str) -> None:
        import expense_auth.config as config_module

        for key, value in values.items():
            monkeypatch.setenv(f"EXPENSE_AUTH_{key}", value)
        importlib.reload(config_module)
        reset_rate_limiters()

    return _apply


# =============================================================================
# Ledger helpers
# =============================================================================


@pytest.fixture
def ledger():
    return get_ledger_store()


@pytest.fixture
def seed_identity(ledger):
    """Create a Ledger row, optionally with a PIN already set."""
    from expense_auth.auth.credential import hash_pin

    def _seed(email: str, name: str = "Test User", status: str = "active", pin: Optional[str] = None):
        ledger.add_identity(email, name, status)
        if pin is not None:
            ledger.set_pin_hash(email, hash_pin(pin))
        return ledger.get_identity(email)

    return _seed


# =============================================================================
# HTTP clients
# =============================================================================


@pytest.fixture
def app():
    from expense_auth.main import app as fastapi_app

    return fastapi_app


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Raw HTTP client against the app."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.fixture
def admin_headers() -> dict:
    return {"X-Admin-Key": TEST_ADMIN_KEY}


@pytest_asyncio.fixture
async def api(app) -> AsyncGenerator[AuthServiceClient, None]:
    """Service client wired to the app in-process."""
    service = AuthServiceClient(base_url="http://test", transport=ASGITransport(app=app))
    yield service
    await service.close()


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def bus_event_source():
    """Change stream fed straight from the in-process event bus.

    Mirrors what ``GET /ledger/me/events`` serves: refused for revoked
    or unknown tokens, scoped to the token's bound email.
    """

    async def _source(token: str) -> AsyncIterator[LedgerChangeEvent]:
        session = await get_session_store().lookup(token)
        if session is None or not session.is_bound:
            raise AuthorizationError.invalid_token()
        if session.is_revoked:
            raise SessionInvalidatedError(session.revoked_reason)
        subscription = get_event_bus().subscribe(session.email)
        try:
            async for event in subscription:
                yield event
        finally:
            subscription.close()

    return _source


async def bearer_session(client: AsyncClient, email: Optional[str] = None) -> dict:
    """Issue a token and, when ``email`` is given, authorize it."""
    token = (await client.post("/auth/anonymous")).json()["token"]
    headers = {"Authorization": f"Bearer {token}"}
    if email is not None:
        response = await client.post("/auth/authorize", json={"email": email}, headers=headers)
        assert response.status_code == 200, response.text
    return headers
