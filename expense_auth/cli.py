"""expense-auth CLI.

Commands:
    expense-auth serve                          Run the service
    expense-auth admin list                     List authorized identities
    expense-auth admin add <email> <name>       Authorize an email
    expense-auth admin update <email>           Edit name and/or status
    expense-auth admin suspend <email>          Suspend an identity
    expense-auth admin activate <email>         Reactivate an identity
    expense-auth admin reset-pin <email>        Clear the PIN
    expense-auth admin delete <email>           Remove from the allowlist
    expense-auth admin audit                    Show recent audit events

Admin commands talk to a running service over HTTP with ``X-Admin-Key``.
"""

import json
from enum import Enum
from typing import Any, Optional

import httpx
import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(
    name="expense-auth",
    help="expense-auth identity and PIN service.",
    no_args_is_help=True,
)

admin_app = typer.Typer(
    name="admin",
    help="Manage the Authorization Ledger of a running service.",
    no_args_is_help=True,
)
app.add_typer(admin_app, name="admin")

EXIT_REQUEST_ERROR = 1
EXIT_CONNECTION_ERROR = 2


class OutputFormat(str, Enum):
    json = "json"
    table = "table"


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        from expense_auth import __version__

        typer.echo(f"expense-auth version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """expense-auth identity and PIN service."""


@app.command("serve")
def serve_cmd(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default: EXPENSE_AUTH_HTTP_HOST)"),
    port: Optional[int] = typer.Option(None, "--port", help="Port (default: EXPENSE_AUTH_HTTP_PORT)"),
) -> None:
    """Run the HTTP service with uvicorn."""
    import uvicorn

    from expense_auth.config import HTTP_HOST, HTTP_PORT

    uvicorn.run("expense_auth.main:app", host=host or HTTP_HOST, port=port or HTTP_PORT)


# =============================================================================
# Admin commands
# =============================================================================

_URL_OPTION = typer.Option(
    "http://localhost:8000",
    "--url",
    envvar="EXPENSE_AUTH_URL",
    help="Service base URL",
)
_KEY_OPTION = typer.Option(
    ...,
    "--key",
    envvar="EXPENSE_AUTH_ADMIN_KEY",
    help="Admin key",
)
_FORMAT_OPTION = typer.Option(OutputFormat.table, "--format", "-f", help="Output format")


def _admin_request(
    url: str,
    key: str,
    method: str,
    path: str,
    body: Optional[dict] = None,
    params: Optional[dict] = None,
) -> Any:
    """Call the admin API, exiting with a message on failure."""
    try:
        with httpx.Client(base_url=url.rstrip("/"), timeout=10.0) as client:
            response = client.request(
                method, path, json=body, params=params, headers={"X-Admin-Key": key}
            )
    except httpx.TransportError as e:
        typer.echo(f"Error: cannot reach {url}: {e}", err=True)
        raise typer.Exit(EXIT_CONNECTION_ERROR)

    if response.status_code >= 400:
        try:
            payload = response.json()
            message = f"{payload.get('error')} ({payload.get('code')})"
        except ValueError:
            message = response.text[:200]
        typer.echo(f"Error: {message}", err=True)
        raise typer.Exit(EXIT_REQUEST_ERROR)
    return response.json()


def _print_identities(rows: list[dict], fmt: OutputFormat) -> None:
    if fmt == OutputFormat.json:
        typer.echo(json.dumps(rows, indent=2))
        return
    if not rows:
        typer.echo("No identities.", err=True)
        return
    table = Table(title="Authorized identities", show_header=True, header_style="bold")
    for col in ("email", "name", "status", "has_pin", "revision"):
        table.add_column(col)
    for row in rows:
        table.add_row(
            row["email"],
            row["name"],
            row["status"],
            "yes" if row["has_pin"] else "no",
            str(row["revision"]),
        )
    Console().print(table)


@admin_app.command("list")
def list_cmd(url: str = _URL_OPTION, key: str = _KEY_OPTION, fmt: OutputFormat = _FORMAT_OPTION) -> None:
    """List authorized identities, newest first."""
    data = _admin_request(url, key, "GET", "/admin/identities")
    _print_identities(data["identities"], fmt)


@admin_app.command("add")
def add_cmd(
    email: str = typer.Argument(..., help="Email to authorize"),
    name: str = typer.Argument(..., help="Display name"),
    suspended: bool = typer.Option(False, "--suspended", help="Create in suspended status"),
    url: str = _URL_OPTION,
    key: str = _KEY_OPTION,
    fmt: OutputFormat = _FORMAT_OPTION,
) -> None:
    """Authorize a new email."""
    body = {"email": email, "name": name, "status": "suspended" if suspended else "active"}
    row = _admin_request(url, key, "POST", "/admin/identities", body=body)
    _print_identities([row], fmt)


@admin_app.command("update")
def update_cmd(
    email: str = typer.Argument(..., help="Identity email"),
    name: Optional[str] = typer.Option(None, "--name", help="New display name"),
    status: Optional[str] = typer.Option(None, "--status", help="active or suspended"),
    url: str = _URL_OPTION,
    key: str = _KEY_OPTION,
    fmt: OutputFormat = _FORMAT_OPTION,
) -> None:
    """Edit an identity. Ends its open sessions."""
    body = {k: v for k, v in (("name", name), ("status", status)) if v is not None}
    if not body:
        typer.echo("Error: nothing to update (use --name and/or --status)", err=True)
        raise typer.Exit(EXIT_REQUEST_ERROR)
    row = _admin_request(url, key, "PATCH", f"/admin/identities/{email}", body=body)
    _print_identities([row], fmt)


@admin_app.command("suspend")
def suspend_cmd(
    email: str = typer.Argument(..., help="Identity email"),
    url: str = _URL_OPTION,
    key: str = _KEY_OPTION,
    fmt: OutputFormat = _FORMAT_OPTION,
) -> None:
    """Suspend an identity. Ends its open sessions."""
    row = _admin_request(url, key, "PATCH", f"/admin/identities/{email}", body={"status": "suspended"})
    _print_identities([row], fmt)


@admin_app.command("activate")
def activate_cmd(
    email: str = typer.Argument(..., help="Identity email"),
    url: str = _URL_OPTION,
    key: str = _KEY_OPTION,
    fmt: OutputFormat = _FORMAT_OPTION,
) -> None:
    """Reactivate a suspended identity."""
    row = _admin_request(url, key, "PATCH", f"/admin/identities/{email}", body={"status": "active"})
    _print_identities([row], fmt)


@admin_app.command("reset-pin")
def reset_pin_cmd(
    email: str = typer.Argument(..., help="Identity email"),
    url: str = _URL_OPTION,
    key: str = _KEY_OPTION,
    fmt: OutputFormat = _FORMAT_OPTION,
) -> None:
    """Clear the PIN; the next login creates a new one."""
    row = _admin_request(url, key, "POST", f"/admin/identities/{email}/reset-pin")
    _print_identities([row], fmt)


@admin_app.command("delete")
def delete_cmd(
    email: str = typer.Argument(..., help="Identity email"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    url: str = _URL_OPTION,
    key: str = _KEY_OPTION,
) -> None:
    """Remove an identity from the allowlist."""
    if not yes:
        typer.confirm(f"Delete {email}?", abort=True)
    _admin_request(url, key, "DELETE", f"/admin/identities/{email}")
    typer.echo(f"Deleted {email}")


@admin_app.command("audit")
def audit_cmd(
    limit: int = typer.Option(50, "--limit", "-n", help="Max events"),
    action: Optional[str] = typer.Option(None, "--action", help="Action prefix filter"),
    url: str = _URL_OPTION,
    key: str = _KEY_OPTION,
    fmt: OutputFormat = _FORMAT_OPTION,
) -> None:
    """Show recent audit events."""
    params = {"limit": limit}
    if action:
        params["action"] = action
    data = _admin_request(url, key, "GET", "/admin/audit-logs", params=params)

    if fmt == OutputFormat.json:
        typer.echo(json.dumps(data, indent=2))
        return
    table = Table(title=f"Audit events ({data['count']})", show_header=True, header_style="bold")
    for col in ("action", "principal", "status", "source_ip", "details"):
        table.add_column(col)
    for e in data["events"]:
        table.add_row(
            e["action"],
            e["principal_id"],
            e["status"],
            e["source_ip"],
            json.dumps(e["details"]),
        )
    Console().print(table)


if __name__ == "__main__":
    app()
