"""CLI entry point for DashNex Auth."""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import click

from .auth.oauth_client import DashNexOAuthClient
from .auth.token_storage import get_token_storage
from .config import Config
from .exceptions import DashNexAuthError
from .utils.logging_setup import configure_logging


@click.group()
@click.option(
    "--config-file", "-c",
    type=click.Path(exists=True, dir_okay=False, resolve_path=True),
    help="Path to a JSON configuration file.",
    envvar="DASHNEX_AUTH_CONFIG_FILE"
)
@click.option(
    "--log-level", "-l",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default=None,
    help="Override the logging level (e.g., DEBUG, INFO).",
)
@click.option(
    "--log-format",
    type=click.Choice(["console", "json"], case_sensitive=False),
    default=None,
    help="Override logging format.",
)
@click.pass_context
def cli(ctx: click.Context, config_file: Optional[str], log_level: Optional[str], log_format: Optional[str]) -> None:
    """DashNex Auth - sign in to DashNex with OAuth and call the account API."""
    try:
        cfg = Config.from_file(Path(config_file)) if config_file else Config()
    except (OSError, ValueError) as e:
        click.echo(f"Error loading configuration: {e}", err=True)
        sys.exit(1)

    if log_level:
        cfg.logging.level = log_level.upper()
    if log_format:
        cfg.logging.format = log_format.lower()
    configure_logging(cfg.logging)

    ctx.ensure_object(dict)
    ctx.obj["CONFIG"] = cfg


def _run_with_client(ctx: click.Context, action: Callable[[DashNexOAuthClient], Awaitable[Any]]) -> Any:
    """Builds a client from the configuration, runs the action and maps auth errors to exit code 1."""
    cfg: Config = ctx.obj["CONFIG"]

    async def runner() -> Any:
        client_config = cfg.client.to_client_config()
        token_storage = get_token_storage(cfg.storage)
        async with DashNexOAuthClient(client_config, token_storage, app_config=cfg) as client:
            return await action(client)

    try:
        return asyncio.run(runner())
    except DashNexAuthError as e:
        click.echo(f"Error: {e}", err=True)
        if e.requires_reauth:
            click.echo("Sign in again with 'login-url' and 'exchange'.", err=True)
        sys.exit(1)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True))


@cli.command("login-url")
@click.option("--scope", default=None, help="Scope to request. Defaults to the configured scope.")
@click.pass_context
def login_url(ctx: click.Context, scope: Optional[str]) -> None:
    """Print the URL to open in a browser to sign in."""
    requested_scope = scope if scope is not None else ctx.obj["CONFIG"].client.scope
    url = _run_with_client(ctx, lambda client: client.get_authorization_url(requested_scope))
    click.echo(url)


@cli.command()
@click.argument("code")
@click.option("--state", default=None, help="The state parameter received on the redirect URI.")
@click.pass_context
def exchange(ctx: click.Context, code: str, state: Optional[str]) -> None:
    """Exchange the authorization CODE from the redirect for tokens."""
    _run_with_client(ctx, lambda client: client.exchange_code_for_token(code, state=state))
    click.echo("Signed in.")


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show whether tokens are stored."""
    authenticated = _run_with_client(ctx, lambda client: client.is_authenticated())
    click.echo("Authenticated." if authenticated else "Not authenticated.")
    if not authenticated:
        sys.exit(2)


@cli.command()
@click.pass_context
def whoami(ctx: click.Context) -> None:
    """Show the signed-in user and their licenses."""
    user = _run_with_client(ctx, lambda client: client.get_current_user())
    _echo_json(user.model_dump())


@cli.command("activation-status")
@click.argument("product")
@click.pass_context
def activation_status(ctx: click.Context, product: str) -> None:
    """Show activations of PRODUCT."""
    result = _run_with_client(ctx, lambda client: client.get_activation_status(product))
    _echo_json(result.model_dump())


@cli.command()
@click.argument("product")
@click.argument("domain")
@click.pass_context
def activate(ctx: click.Context, product: str, domain: str) -> None:
    """Activate PRODUCT on DOMAIN."""
    result = _run_with_client(ctx, lambda client: client.activate_domain(product, domain))
    click.echo(f"Activated {product} on {domain} (activation id {result.id}).")


@cli.command()
@click.argument("activation_id", type=int)
@click.pass_context
def revoke(ctx: click.Context, activation_id: int) -> None:
    """Revoke the activation ACTIVATION_ID."""
    _run_with_client(ctx, lambda client: client.revoke_activation(activation_id))
    click.echo(f"Revoked activation {activation_id}.")


@cli.command()
@click.pass_context
def logout(ctx: click.Context) -> None:
    """Forget all stored tokens."""
    _run_with_client(ctx, lambda client: client.logout())
    click.echo("Logged out.")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
