"""Command-line interface for gworkspace-credentials."""

import asyncio
import logging
import sys
from pathlib import Path

import click

from gworkspace_credentials.__version__ import __version__
from gworkspace_credentials.auth import (
    OAuthClient,
    TokenManager,
    TokenStatus,
    shutdown_with_fallback,
)

# Exit code telling wrappers that interactive authorization is needed again
EXIT_REAUTH_REQUIRED = 2


def _create_manager(
    token_path: Path | None,
    client_id: str | None = None,
    client_secret: str | None = None,
) -> TokenManager:
    client = OAuthClient(client_id or "", client_secret or "")
    return TokenManager(client, token_path)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--token-path",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="GWORKSPACE_TOKEN_PATH",
    default=None,
    help="Token file location (defaults to the per-user config directory)",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity (logs go to stderr)",
)
@click.pass_context
def main(ctx: click.Context, token_path: Path | None, log_level: str) -> None:
    """Google Workspace credentials - inspect and maintain stored OAuth tokens.

    Tokens are written by the login flow of the Workspace tool server; these
    commands check, refresh and remove them.
    """
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        stream=sys.stderr,
    )
    ctx.ensure_object(dict)
    ctx.obj["token_path"] = token_path


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show the status of the stored token file."""
    manager = _create_manager(ctx.obj["token_path"])
    token_status = manager.get_status()

    click.echo(f"Token file: {manager.token_path}")

    if token_status == TokenStatus.MISSING:
        click.echo("❌ Not authenticated. Run the login flow first.")
        sys.exit(1)

    if token_status == TokenStatus.INVALID:
        click.echo("❌ Token file corrupted. Run the login flow to re-authenticate.")
        sys.exit(1)

    if token_status == TokenStatus.EXPIRED:
        click.echo("⚠ Access token expired (will be refreshed on next use)")
        return

    click.echo("✓ Access token valid")


async def _validate_and_shutdown(manager: TokenManager) -> bool:
    try:
        return await manager.validate()
    finally:
        await shutdown_with_fallback(manager)


@main.command()
@click.option("--client-id", envvar="GOOGLE_OAUTH_CLIENT_ID", help="Google OAuth client ID")
@click.option(
    "--client-secret", envvar="GOOGLE_OAUTH_CLIENT_SECRET", help="Google OAuth client secret"
)
@click.pass_context
def refresh(ctx: click.Context, client_id: str | None, client_secret: str | None) -> None:
    """Validate stored tokens, refreshing and saving them if needed.

    Requires:
    - GOOGLE_OAUTH_CLIENT_ID environment variable or --client-id option
    - GOOGLE_OAUTH_CLIENT_SECRET environment variable or --client-secret option
    """
    if not client_id or not client_secret:
        click.echo("❌ Error: OAuth client credentials required")
        click.echo("")
        click.echo("Set environment variables:")
        click.echo("  export GOOGLE_OAUTH_CLIENT_ID='your-client-id'")
        click.echo("  export GOOGLE_OAUTH_CLIENT_SECRET='your-client-secret'")
        sys.exit(1)

    manager = _create_manager(ctx.obj["token_path"], client_id, client_secret)

    if manager.get_status() == TokenStatus.MISSING:
        click.echo("❌ Not authenticated. Run the login flow first.")
        sys.exit(1)

    try:
        valid = asyncio.run(_validate_and_shutdown(manager))
    except Exception as e:
        click.echo(f"❌ Token validation failed: {e}")
        sys.exit(1)

    if not valid:
        click.echo("❌ Re-authentication required. Run the login flow again.")
        sys.exit(EXIT_REAUTH_REQUIRED)

    click.echo("✓ Tokens valid")
    click.echo(f"Token stored at: {manager.token_path}")


async def _clear_and_shutdown(manager: TokenManager) -> None:
    try:
        await manager.clear()
    finally:
        await shutdown_with_fallback(manager)


@main.command()
@click.pass_context
def logout(ctx: click.Context) -> None:
    """Delete the stored tokens."""
    manager = _create_manager(ctx.obj["token_path"])
    asyncio.run(_clear_and_shutdown(manager))
    click.echo("✓ Stored tokens removed")


if __name__ == "__main__":
    main()
