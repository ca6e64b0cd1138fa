"""
Click CLI for the loopback OAuth callback flow.

Commands:
    authorize  Run the authorization flow (if needed) and cache the token
    status     Show the cached token status
    revoke     Delete the cached token file
"""

import json
import logging
import sys
from typing import Optional

import click

from .config import CallbackOptions
from .coordinator import OAuthCoordinator
from .exceptions import AuthorizationError, ConfigurationError, OAuthCallbackError

logger = logging.getLogger(__name__)


def print_error(message: str) -> None:
    """Print error message to stderr."""
    click.secho(f"Error: {message}", fg="red", err=True)


def print_success(message: str) -> None:
    """Print success message."""
    click.secho(message, fg="green")


def get_coordinator(ctx: click.Context) -> OAuthCoordinator:
    """Get the OAuthCoordinator from context."""
    return ctx.obj["coordinator"]


@click.group()
@click.option(
    "--redirect-url",
    envvar="OAUTH_CALLBACK_REDIRECT_URL",
    help="Redirect URL registered with the provider",
)
@click.option(
    "--token-path",
    envvar="OAUTH_CALLBACK_TOKEN_PATH",
    help="Cached token file",
)
@click.option(
    "--credentials-path",
    envvar="OAUTH_CALLBACK_CREDENTIALS_PATH",
    help="Client credentials JSON file",
)
@click.option(
    "--scope",
    "scopes",
    multiple=True,
    help="Scope to request (repeatable)",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.pass_context
def cli(
    ctx: click.Context,
    redirect_url: Optional[str],
    token_path: Optional[str],
    credentials_path: Optional[str],
    scopes: tuple[str, ...],
    verbose: bool,
) -> None:
    """
    OAuth Callback - obtain and cache an OAuth2 token from the command line.

    Runs the Authorization Code flow with a short-lived local listener
    for the provider's redirect.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    try:
        options = CallbackOptions.from_env(
            redirect_url=redirect_url,
            token_path=token_path,
            credentials_path=credentials_path,
            scopes=scopes or None,
        )
    except ConfigurationError as e:
        print_error(f"Configuration error: {e}")
        sys.exit(1)

    ctx.ensure_object(dict)
    ctx.obj["options"] = options
    ctx.obj["coordinator"] = OAuthCoordinator(options)


@cli.command()
@click.option(
    "--no-browser",
    is_flag=True,
    help="Don't automatically open browser (display URL only)",
)
@click.option("--force", is_flag=True, help="Re-authorize even if a token is cached")
@click.pass_context
def authorize(ctx: click.Context, no_browser: bool, force: bool) -> None:
    """Run the authorization flow and cache the token."""
    coordinator = get_coordinator(ctx)
    coordinator.options.open_browser = not no_browser

    try:
        if not force and coordinator.is_authorized():
            print_success("Already authorized.")
            click.echo(f"Token file: {coordinator.storage.token_file}")
            click.echo("Use --force to re-authorize.")
            return

        coordinator.authenticate()
    except AuthorizationError as e:
        print_error(f"Authorization failed: {e}")
        sys.exit(1)
    except OAuthCallbackError as e:
        print_error(str(e))
        sys.exit(1)

    print_success("Authorization successful!")
    click.echo(f"Tokens saved to: {coordinator.storage.token_file}")


@cli.command()
@click.option("--json", "output_json", is_flag=True, help="JSON output")
@click.pass_context
def status(ctx: click.Context, output_json: bool) -> None:
    """Show the cached token status."""
    info = get_coordinator(ctx).get_status()

    if output_json:
        click.echo(json.dumps(info, indent=2))
        return

    if not info["authorized"]:
        click.echo(f"Not authorized ({info['message']})")
        click.echo(f"Token file: {info['token_file']}")
        return

    click.echo("Authorized")
    click.echo(f"Token file:    {info['token_file']}")
    click.echo(f"Expires at:    {info['expires_at'] or 'unknown'}")
    click.echo(f"Expired:       {'yes' if info['expired'] else 'no'}")
    click.echo(f"Refresh token: {'yes' if info['has_refresh_token'] else 'no'}")
    if info["scope"]:
        click.echo(f"Scope:         {info['scope']}")


@cli.command()
@click.pass_context
def revoke(ctx: click.Context) -> None:
    """Delete the cached token file (local only)."""
    coordinator = get_coordinator(ctx)
    try:
        deleted = coordinator.revoke()
    except OAuthCallbackError as e:
        print_error(str(e))
        sys.exit(1)

    if deleted:
        print_success("Authorization revoked")
        click.echo(f"Token file deleted: {coordinator.storage.token_file}")
    else:
        click.echo("No authorization found to revoke")


def main() -> None:
    """Console script entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
