"""Tag controller CLI (tagctl).

One-shot operations against the configured directory, plus the long-running
controller. Settings come from the same environment variables as the
controller process.

Usage:
    tagctl serve                       # Run the controller
    tagctl reconcile --tags tag:a      # One reconciliation pass
    tagctl reconcile --dry-run         # Show what would be tagged
    tagctl pending                     # List pending devices
    tagctl tags                        # List the tag catalog
    tagctl register-command            # Register the Discord slash command
"""

from __future__ import annotations

import asyncio
from typing import Any

import click

from .config import (
    Config,
    ConfigurationError,
    ControllerMode,
    DirectoryBackend,
    TagSelectionMode,
    parse_tag_list,
)
from .discord_bot import DiscordRestClient
from .main import build_directory, setup_logging
from .main import main as controller_main
from .metrics import PrometheusMetrics
from .models import PendingDevicesResponse, TagsResponse
from .reconciler import Reconciler, compute_pending
from .retry import RetryPolicy, with_retry

# Read-only commands need a directory and nothing else
READ_ONLY_OVERRIDES: dict[str, Any] = {
    "mode": ControllerMode.APPROVAL,
    "tag_mode": TagSelectionMode.SELECTABLE,
    "discord": None,
}

# Upstream calls from one-shot commands
RETRY_POLICY = RetryPolicy()


def load_config(**overrides: Any) -> Config:
    """Load configuration, turning validation errors into CLI errors."""
    try:
        return Config.from_env(**overrides)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="tagctl")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    help="Log level for one-shot commands",
)
def cli(log_level: str) -> None:
    """Tailscale tag controller CLI (tagctl).

    \b
    Quick Start:
        tagctl pending     # What is waiting for tags?
        tagctl reconcile   # Tag it with TAGS_TO_APPLY
    """
    setup_logging(log_level.upper())


@cli.command()
def serve() -> None:
    """Run the controller with the HTTP API and background worker."""
    exit_code = asyncio.run(controller_main())
    if exit_code:
        raise SystemExit(exit_code)


@cli.command()
@click.option("--tags", "tags_text", help="Comma-separated tags (default: TAGS_TO_APPLY)")
@click.option("--dry-run", is_flag=True, help="List pending devices without tagging them")
def reconcile(tags_text: str | None, dry_run: bool) -> None:
    """Run a single reconciliation pass."""
    overrides: dict[str, Any] = {"mode": ControllerMode.AUTO, "discord": None}
    if tags_text is not None:
        overrides["tags_to_apply"] = parse_tag_list(tags_text)
    config = load_config(**overrides)

    async def run_pass() -> Any:
        directory = build_directory(config)
        try:
            reconciler = Reconciler(
                directory,
                PrometheusMetrics(),
                tags_to_apply=config.tags_to_apply,
                retry_policy=RETRY_POLICY,
                dry_run=dry_run,
            )
            return await reconciler.reconcile()
        finally:
            await directory.aclose()

    result = asyncio.run(run_pass())
    if result.error is not None:
        raise click.ClickException(f"Failed to list devices: {result.error}")

    for device in result.pending:
        marker = "would tag" if dry_run else ("tagged" if device.id in result.tagged else "FAILED")
        click.echo(f"  {marker}: {device.name} ({device.id})")

    click.echo(
        f"Processed {result.devices_processed} devices: {len(result.pending)} pending, "
        f"{len(result.tagged)} tagged, {len(result.failed)} failed"
    )
    if result.failed:
        raise SystemExit(1)


@cli.command()
def pending() -> None:
    """List authorized devices that carry no tags."""
    config = load_config(**READ_ONLY_OVERRIDES)

    async def fetch() -> PendingDevicesResponse:
        directory = build_directory(config)
        try:
            devices = await with_retry(
                directory.list_devices, RETRY_POLICY, description="list_devices"
            )
        finally:
            await directory.aclose()
        return PendingDevicesResponse(pending_devices=compute_pending(devices))

    try:
        response = asyncio.run(fetch())
    except Exception as e:
        raise click.ClickException(f"Failed to get pending devices: {e}") from e
    click.echo(response.model_dump_json(indent=2))


@cli.command()
def tags() -> None:
    """List tags defined in the network policy."""
    config = load_config(**READ_ONLY_OVERRIDES)

    async def fetch() -> TagsResponse:
        directory = build_directory(config)
        try:
            tags = await with_retry(
                directory.get_available_tags, RETRY_POLICY, description="get_available_tags"
            )
            return TagsResponse(tags=tags)
        finally:
            await directory.aclose()

    try:
        response = asyncio.run(fetch())
    except Exception as e:
        raise click.ClickException(f"Failed to get available tags: {e}") from e
    click.echo(response.model_dump_json(indent=2))


@cli.command("register-command")
def register_command() -> None:
    """Register the Discord slash command used to trigger a check."""
    config = load_config(
        mode=ControllerMode.APPROVAL,
        tag_mode=TagSelectionMode.SELECTABLE,
        backend=DirectoryBackend.CONTROLLER,
    )
    if config.discord is None:
        raise click.ClickException("DISCORD_BOT_TOKEN is not set")
    discord = config.discord

    async def register() -> dict[str, Any]:
        client = DiscordRestClient(discord.bot_token)
        try:
            return await client.register_command(
                discord.application_id, discord.command_name, guild_id=discord.guild_id
            )
        finally:
            await client.aclose()

    try:
        command = asyncio.run(register())
    except Exception as e:
        raise click.ClickException(f"Cannot register slash command: {e}") from e
    scope = f"guild {discord.guild_id}" if discord.guild_id else "global"
    click.secho(f"✓ Registered /{command.get('name', discord.command_name)} ({scope})", fg="green")


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
