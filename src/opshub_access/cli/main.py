"""opshub-access CLI: command-line interface for per-user cluster access.

Commands:
    issue           Issue a user's credential and print the kubeconfig
    kubeconfig      Re-mint a kubeconfig for an existing credential
    sa-kubeconfig   Mint a kubeconfig for a named ServiceAccount
    bind            Bind a user to a ClusterRole or Role
    unbind          Remove a user's role binding
    revoke          Revoke a user's credential (scoped, or --full)
    bindings        List role bindings on a cluster
    bound-users     List users bound to one role
    identities      List issued service identities
    users           Search platform users
    migrate         Create or upgrade the ledger database
    serve           Run the access HTTP API
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import click

from opshub_access import __version__
from opshub_access.config import load_config
from opshub_access.db.connection import Database
from opshub_access.db.migrations import run_migrations
from opshub_access.deadline import Deadline
from opshub_access.errors import AccessError
from opshub_access.models import IssuedCredential, RoleKind
from opshub_access.service import AccessService


@contextmanager
def _cli_errors() -> Iterator[None]:
    """Print access and config errors and exit 1 instead of a traceback."""
    try:
        yield
    except (AccessError, FileNotFoundError, ValueError) as e:
        click.echo(click.style("Error", fg="red") + f": {e}", err=True)
        sys.exit(1)


def _service(ctx: click.Context) -> AccessService:
    obj = ctx.ensure_object(dict)
    if obj.get("service") is None:
        with _cli_errors():
            obj["service"] = AccessService.from_config(obj.get("config"))
    return obj["service"]


def _deadline(ctx: click.Context) -> Deadline | None:
    timeout = ctx.ensure_object(dict).get("timeout")
    return Deadline.after(timeout) if timeout is not None else None


def _emit_credential(issued: IssuedCredential, output: str | None) -> None:
    if output is None:
        click.echo(issued.kubeconfig, nl=False)
        return
    path = Path(output)
    path.write_text(issued.kubeconfig, encoding="utf-8")
    path.chmod(0o600)
    click.echo(
        f"Wrote kubeconfig for {issued.namespace}/{issued.service_account} to {path}",
        err=True,
    )


# --- Root group ---


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config", "config_path", default=None,
    help="Path to opshub-access.yaml (default: auto-discover)",
)
@click.option("--timeout", type=float, default=None, help="Deadline in seconds")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, timeout: float | None, verbose: bool) -> None:
    """opshub-access: per-user Kubernetes credentials and role bindings."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    obj = ctx.ensure_object(dict)
    obj["config"] = config_path
    obj["timeout"] = timeout


# --- Credentials ---


@cli.command()
@click.argument("cluster_id", type=int)
@click.argument("user_id", type=int)
@click.option("--requested-by", type=int, default=None, help="Acting user id")
@click.option("--output", "-o", default=None, help="Write the kubeconfig to this file")
@click.pass_context
def issue(
    ctx: click.Context,
    cluster_id: int,
    user_id: int,
    requested_by: int | None,
    output: str | None,
) -> None:
    """Issue a user's credential and print the kubeconfig."""
    service = _service(ctx)
    with _cli_errors():
        issued = service.request_credential(
            cluster_id, user_id, requested_by, _deadline(ctx),
        )
    _emit_credential(issued, output)


@cli.command()
@click.argument("cluster_id", type=int)
@click.argument("user_id", type=int)
@click.option("--output", "-o", default=None, help="Write the kubeconfig to this file")
@click.pass_context
def kubeconfig(ctx: click.Context, cluster_id: int, user_id: int, output: str | None) -> None:
    """Re-mint a kubeconfig for an existing credential."""
    service = _service(ctx)
    with _cli_errors():
        issued = service.existing_credential(cluster_id, user_id, _deadline(ctx))
    _emit_credential(issued, output)


@cli.command("sa-kubeconfig")
@click.argument("cluster_id", type=int)
@click.argument("service_account")
@click.option("--output", "-o", default=None, help="Write the kubeconfig to this file")
@click.pass_context
def sa_kubeconfig(
    ctx: click.Context, cluster_id: int, service_account: str, output: str | None,
) -> None:
    """Mint a kubeconfig for a named ServiceAccount."""
    service = _service(ctx)
    with _cli_errors():
        issued = service.mint_for_service_account(cluster_id, service_account, _deadline(ctx))
    _emit_credential(issued, output)


# --- Role bindings ---


@cli.command()
@click.argument("cluster_id", type=int)
@click.argument("user_id", type=int)
@click.argument("role_name")
@click.option("--namespace", "-n", default="", help="Role namespace (Role bindings)")
@click.option(
    "--kind", "role_kind", default=None,
    type=click.Choice([k.value for k in RoleKind]),
    help="Role kind (default: ClusterRole, or Role with --namespace)",
)
@click.option("--bound-by", type=int, default=0, help="Acting user id")
@click.pass_context
def bind(
    ctx: click.Context,
    cluster_id: int,
    user_id: int,
    role_name: str,
    namespace: str,
    role_kind: str | None,
    bound_by: int,
) -> None:
    """Bind a user to a ClusterRole or Role."""
    service = _service(ctx)
    with _cli_errors():
        record = service.bind(
            cluster_id, user_id, role_name, namespace, role_kind, bound_by, _deadline(ctx),
        )
    role = _role(record.role_name, record.role_namespace)
    click.echo(
        click.style("BOUND", fg="green") + f"  user={record.user_id} {record.role_kind}={role}"
    )


@cli.command()
@click.argument("cluster_id", type=int)
@click.argument("user_id", type=int)
@click.argument("role_name")
@click.option("--namespace", "-n", default="", help="Role namespace (Role bindings)")
@click.pass_context
def unbind(
    ctx: click.Context,
    cluster_id: int,
    user_id: int,
    role_name: str,
    namespace: str,
) -> None:
    """Remove a user's role binding."""
    service = _service(ctx)
    with _cli_errors():
        service.unbind(cluster_id, user_id, role_name, namespace, _deadline(ctx))
    click.echo(
        click.style("UNBOUND", fg="yellow")
        + f"  user={user_id} role={_role(role_name, namespace)}"
    )


@cli.command()
@click.argument("cluster_id", type=int)
@click.argument("user_id", type=int)
@click.option("--full", is_flag=True, help="Remove every binding and all ledger rows")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def revoke(
    ctx: click.Context,
    cluster_id: int,
    user_id: int,
    full: bool,
    json_output: bool,
) -> None:
    """Revoke a user's credential on a cluster."""
    service = _service(ctx)
    with _cli_errors():
        if full:
            summary = service.revoke_user_fully(cluster_id, user_id, _deadline(ctx))
        else:
            summary = service.revoke_credential(cluster_id, user_id, _deadline(ctx))

    if json_output:
        click.echo(json.dumps(summary.model_dump(mode="json"), indent=2))
        return
    click.echo(
        click.style("REVOKED", fg="red")
        + f"  {summary.service_account} on cluster {summary.cluster_id}"
    )
    for name in summary.bindings_deleted:
        click.echo(f"  - binding {name}")
    for name in summary.service_accounts_deleted:
        click.echo(f"  - serviceaccount {name}")


@cli.command()
@click.argument("cluster_id", type=int)
@click.option("--user", "user_id", type=int, default=None, help="Only this user's bindings")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def bindings(ctx: click.Context, cluster_id: int, user_id: int | None, json_output: bool) -> None:
    """List role bindings on a cluster."""
    service = _service(ctx)
    with _cli_errors():
        items = service.list_user_bindings(cluster_id, user_id)

    if json_output:
        click.echo(json.dumps([b.model_dump(mode="json") for b in items], indent=2))
        return
    if not items:
        click.echo("No bindings found.")
        return
    for b in items:
        click.echo(
            f"  {b.username or b.user_id!s:<20} "
            + click.style(f"[{b.role_kind}]", fg="cyan")
            + f" {_role(b.role_name, b.role_namespace)}"
        )
    click.echo(f"\n{len(items)} binding(s).")


@cli.command("bound-users")
@click.argument("cluster_id", type=int)
@click.argument("role_name")
@click.option("--namespace", "-n", default="", help="Role namespace (Role bindings)")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def bound_users(
    ctx: click.Context,
    cluster_id: int,
    role_name: str,
    namespace: str,
    json_output: bool,
) -> None:
    """List users bound to one role."""
    service = _service(ctx)
    with _cli_errors():
        users = service.list_bound_users(cluster_id, role_name, namespace)

    if json_output:
        click.echo(json.dumps([u.model_dump(mode="json") for u in users], indent=2))
        return
    if not users:
        click.echo("No users bound.")
        return
    for u in users:
        click.echo(f"  {u.user_id:<6} {u.username:<20} {u.bound_at.isoformat()[:19]}")
    click.echo(f"\n{len(users)} user(s).")


@cli.command()
@click.argument("cluster_id", type=int)
@click.option("--live", is_flag=True, help="Cross-check against ServiceAccounts on the cluster")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def identities(ctx: click.Context, cluster_id: int, live: bool, json_output: bool) -> None:
    """List issued service identities."""
    service = _service(ctx)
    with _cli_errors():
        if live:
            items = service.list_credential_identities(cluster_id, _deadline(ctx))
        else:
            items = service.list_identities(cluster_id)

    if json_output:
        click.echo(json.dumps([i.model_dump(mode="json") for i in items], indent=2))
        return
    if not items:
        click.echo("No identities found.")
        return
    for i in items:
        active = getattr(i, "is_active", True)
        status = click.style("active", fg="green") if active else click.style("revoked", fg="red")
        click.echo(f"  {i.user_id:<6} {i.namespace}/{i.service_account:<30} {status}")
    click.echo(f"\n{len(items)} identit{'y' if len(items) == 1 else 'ies'}.")


@cli.command()
@click.argument("keyword", default="")
@click.option("--page", default=1, type=int, help="Page number (from 1)")
@click.option("--page-size", default=20, type=int, help="Users per page (max 100)")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def users(ctx: click.Context, keyword: str, page: int, page_size: int, json_output: bool) -> None:
    """Search platform users by username, name or email."""
    service = _service(ctx)
    with _cli_errors():
        result = service.search_users(keyword, page, page_size)

    if json_output:
        click.echo(json.dumps(result.model_dump(mode="json"), indent=2))
        return
    if not result.items:
        click.echo("No users found.")
        return
    for u in result.items:
        click.echo(f"  {u.user_id:<6} {u.username:<20} {u.real_name:<24} {u.email}")
    click.echo(f"\nPage {result.page}: {len(result.items)} of {result.total} user(s).")


# --- Ledger ---


@cli.command()
@click.pass_context
def migrate(ctx: click.Context) -> None:
    """Create or upgrade the ledger database."""
    with _cli_errors():
        cfg = load_config(ctx.ensure_object(dict).get("config"))
    db = Database(cfg.db_path)
    try:
        version = run_migrations(db)
    finally:
        db.close()
    click.echo(f"Ledger {cfg.db_path} at schema version {version}.")


# --- serve command ---


@cli.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8430, type=int, help="Port number")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Run the access HTTP API."""
    try:
        import uvicorn
    except ImportError:
        click.echo(
            "The HTTP API requires extra dependencies. Install with:\n"
            "  pip install opshub-access[api]",
            err=True,
        )
        sys.exit(1)

    from opshub_access.api.app import create_app

    app = create_app(_service(ctx))
    click.echo(f"OpsHub Access API at http://{host}:{port}/api/docs")
    uvicorn.run(app, host=host, port=port, log_level="info")


def _role(role_name: str, role_namespace: str) -> str:
    return f"{role_namespace}/{role_name}" if role_namespace else role_name
