"""Tests for the admin CLI."""

import json

import httpx
import pytest
from typer.testing import CliRunner

from expense_auth import cli

runner = CliRunner()

ROW = {
    "email": "a@x.com",
    "name": "Ana",
    "status": "active",
    "has_pin": True,
    "pin_stamp": "abcd",
    "revision": 4,
}


@pytest.fixture
def admin_server(monkeypatch):
    """Route the CLI's HTTP calls to a scripted handler; records requests."""
    requests = []
    responses = {}
    real_client = httpx.Client

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        key = (request.method, request.url.path)
        if key not in responses:
            return httpx.Response(404, json={"error": "Identity not found", "code": "identity_not_found"})
        return responses[key]

    def client_factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(cli.httpx, "Client", client_factory)
    monkeypatch.setenv("EXPENSE_AUTH_ADMIN_KEY", "k")
    return requests, responses


class TestAdminCommands:
    def test_list_table(self, admin_server):
        requests, responses = admin_server
        responses[("GET", "/admin/identities")] = httpx.Response(200, json={"identities": [ROW], "count": 1})

        result = runner.invoke(cli.app, ["admin", "list"])

        assert result.exit_code == 0, result.output
        assert "a@x.com" in result.output
        assert requests[0].headers["X-Admin-Key"] == "k"

    def test_list_json(self, admin_server):
        _, responses = admin_server
        responses[("GET", "/admin/identities")] = httpx.Response(200, json={"identities": [ROW], "count": 1})

        result = runner.invoke(cli.app, ["admin", "list", "--format", "json"])

        assert result.exit_code == 0
        assert json.loads(result.output)[0]["revision"] == 4

    def test_suspend(self, admin_server):
        requests, responses = admin_server
        responses[("PATCH", "/admin/identities/a@x.com")] = httpx.Response(200, json={**ROW, "status": "suspended"})

        result = runner.invoke(cli.app, ["admin", "suspend", "a@x.com", "-f", "json"])

        assert result.exit_code == 0
        assert json.loads(requests[0].content) == {"status": "suspended"}

    def test_update_requires_a_field(self, admin_server):
        requests, _ = admin_server
        result = runner.invoke(cli.app, ["admin", "update", "a@x.com"])

        assert result.exit_code == cli.EXIT_REQUEST_ERROR
        assert requests == []

    def test_delete_with_yes(self, admin_server):
        requests, responses = admin_server
        responses[("DELETE", "/admin/identities/a@x.com")] = httpx.Response(
            200, json={"success": True, "email": "a@x.com"}
        )

        result = runner.invoke(cli.app, ["admin", "delete", "a@x.com", "--yes"])

        assert result.exit_code == 0
        assert "Deleted a@x.com" in result.output
        assert requests[0].method == "DELETE"

    def test_server_error_exits_with_request_error(self, admin_server):
        result = runner.invoke(cli.app, ["admin", "reset-pin", "ghost@x.com"])

        assert result.exit_code == cli.EXIT_REQUEST_ERROR

    def test_unreachable_service(self, monkeypatch):
        real_client = httpx.Client

        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        monkeypatch.setattr(
            cli.httpx, "Client", lambda **kw: real_client(transport=httpx.MockTransport(refuse), **kw)
        )

        result = runner.invoke(cli.app, ["admin", "list", "--key", "k"])

        assert result.exit_code == cli.EXIT_CONNECTION_ERROR


class TestVersion:
    def test_version(self):
        from expense_auth import __version__

        result = runner.invoke(cli.app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output
