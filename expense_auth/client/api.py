"""Async HTTP client for the expense-auth service.

Thin wrapper over ``httpx.AsyncClient``:

- Bearer token auth per call (tokens belong to the orchestrator's session)
- Error mapping: ``{error, code}`` bodies become the matching
  :mod:`expense_auth.errors` exception; network failures and 5xx become
  :class:`~expense_auth.errors.TransportError`
- Server-sent event parsing for the Ledger change stream

No call is retried here. Retry is a user decision.
"""
import json
import logging
from typing import AsyncIterator, Optional

import httpx
from pydantic import ValidationError

from expense_auth.errors import TransportError, error_from_payload
from expense_auth.models import (
    AnonymousTokenResponse,
    AuthorizeResponse,
    LedgerChangeEvent,
    LedgerSnapshot,
    PinResponse,
    SessionStatusResponse,
)

log = logging.getLogger(__name__)


class AuthServiceClient:
    """Client for the ``/auth`` and ``/ledger`` endpoints."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=5.0),
            transport=transport,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._http.aclose()

    async def __aenter__(self) -> "AuthServiceClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Internal request helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _headers(token: Optional[str]) -> dict:
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        token: Optional[str] = None,
        json: dict | None = None,
    ) -> httpx.Response:
        """Send a request and map failures onto the error taxonomy.

        Raises:
            TransportError: Network failure, timeout or 5xx without body
            ExpenseAuthError: The server's ``{error, code}`` answer
        """
        try:
            response = await self._http.request(
                method, path, json=json, headers=self._headers(token)
            )
        except httpx.TimeoutException as e:
            log.warning(f"{method} {path} timed out: {e}")
            raise TransportError(f"timeout: {e}")
        except httpx.TransportError as e:
            log.warning(f"{method} {path} failed: {e}")
            raise TransportError(str(e))

        if response.status_code >= 400:
            self._raise_for_error(response.status_code, response.content)
        return response

    @staticmethod
    def _raise_for_error(status_code: int, content: bytes) -> None:
        try:
            payload = json.loads(content) if content else {}
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        if not payload.get("code") and status_code >= 500:
            raise TransportError(f"server returned {status_code}")
        raise error_from_payload(payload, status_code)

    @staticmethod
    def _parse(model, response: httpx.Response):
        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise TransportError(f"unexpected response from {response.request.url.path}: {e}")

    # -------------------------------------------------------------------------
    # Session endpoints
    # -------------------------------------------------------------------------

    async def issue_token(self) -> AnonymousTokenResponse:
        response = await self._request("POST", "/auth/anonymous")
        return self._parse(AnonymousTokenResponse, response)

    async def authorize(self, token: str, email: str) -> AuthorizeResponse:
        response = await self._request(
            "POST", "/auth/authorize", token=token, json={"email": email}
        )
        return self._parse(AuthorizeResponse, response)

    async def pin(self, token: str, email: str, pin: str, action: str) -> PinResponse:
        response = await self._request(
            "POST",
            "/auth/pin",
            token=token,
            json={"email": email, "pin": pin, "action": action},
        )
        return self._parse(PinResponse, response)

    async def logout(self, token: str) -> None:
        await self._request("POST", "/auth/logout", token=token)

    async def session_status(self, token: str) -> SessionStatusResponse:
        response = await self._request("GET", "/auth/session", token=token)
        return self._parse(SessionStatusResponse, response)

    # -------------------------------------------------------------------------
    # Ledger endpoints
    # -------------------------------------------------------------------------

    async def fetch_ledger_row(self, token: str) -> LedgerSnapshot:
        """Current snapshot of the row bound to ``token``."""
        response = await self._request("GET", "/ledger/me", token=token)
        return self._parse(LedgerSnapshot, response)

    async def stream_ledger_events(self, token: str) -> AsyncIterator[LedgerChangeEvent]:
        """Yield change events for the bound row until the stream ends.

        Keepalive comments are skipped. The generator returns when the
        server closes the stream; network loss raises TransportError.
        """
        try:
            async with self._http.stream(
                "GET",
                "/ledger/me/events",
                headers={**self._headers(token), "Accept": "text/event-stream"},
                timeout=httpx.Timeout(None, connect=5.0),
            ) as response:
                if response.status_code >= 400:
                    self._raise_for_error(response.status_code, await response.aread())

                data_lines: list[str] = []
                async for line in response.aiter_lines():
                    if line.startswith(":"):
                        continue
                    if line.startswith("data:"):
                        data_lines.append(line[5:].lstrip())
                        continue
                    if line == "" and data_lines:
                        event = _decode_event("\n".join(data_lines))
                        data_lines = []
                        if event is not None:
                            yield event
        except httpx.TransportError as e:
            log.info(f"Ledger event stream lost: {e}")
            raise TransportError(str(e))


def _decode_event(data: str) -> Optional[LedgerChangeEvent]:
    try:
        return LedgerChangeEvent.model_validate_json(data)
    except ValidationError as e:
        log.warning(f"Skipping malformed ledger event: {e}")
        return None
