"""Main entry point for the Tailscale tag controller.

One process serves the HTTP API and runs one background worker:

- auto mode: the reconciler tags every pending device on each interval
- approval mode with Discord: the notification scheduler posts prompts and
  the interactions endpoint handles the clicks
- approval mode without Discord: API only, for an externally hosted bot

SIGTERM and SIGINT stop the worker and the HTTP server together.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from collections.abc import Awaitable
from datetime import UTC, datetime

import uvicorn

from .api import create_app
from .approval import ApprovalWorkflow
from .config import Config, ConfigurationError, ControllerMode, DirectoryBackend
from .directory import ControllerApiDirectory, TailscaleDirectory
from .discord_bot import DiscordChannel, DiscordRestClient, create_interactions_router
from .metrics import PrometheusMetrics
from .notifications import NotificationDispatcher
from .reconciler import Reconciler
from .retry import RetryPolicy

# LogRecord attributes that are not user-supplied extra fields
_RECORD_ATTRIBUTES = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "taskName"}


class JsonFormatter(logging.Formatter):
    """One JSON object per line, extra fields flattened into it."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRIBUTES:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging on stdout."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers[:] = [handler]
    root_logger.setLevel(level)

    # Per-request logs from the HTTP stack
    for name in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(name).setLevel(logging.WARNING)


def build_directory(config: Config) -> TailscaleDirectory | ControllerApiDirectory:
    """Create the directory client selected by DIRECTORY_BACKEND."""
    if config.backend == DirectoryBackend.CONTROLLER:
        return ControllerApiDirectory(config.controller_api_url)
    return TailscaleDirectory(config.tailnet, config.api_key, base_url=config.tailscale_api_url)


async def _serve(server: uvicorn.Server, shutdown_event: asyncio.Event) -> None:
    try:
        await server.serve()
    finally:
        shutdown_event.set()


async def main() -> int:
    """Run the controller.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logging.getLogger().setLevel(config.log_level)
    logger.info(
        "Starting Tailscale tag controller",
        extra={
            "mode": config.mode.value,
            "backend": config.backend.value,
            "tag_mode": config.tag_mode.value,
            "tags": list(config.tags_to_apply),
            "poll_interval_seconds": config.poll_interval_seconds,
            "discord": config.discord is not None,
        },
    )

    shutdown_event = asyncio.Event()
    retry_policy = RetryPolicy()
    metrics = PrometheusMetrics()
    directory = build_directory(config)
    discord_client: DiscordRestClient | None = None

    app = create_app(
        directory,
        metrics=metrics,
        retry_policy=retry_policy,
        tag_mode=config.tag_mode,
        fixed_tags=config.tags_to_apply,
        shutdown_event=shutdown_event,
    )

    worker: Awaitable[None] | None = None
    try:
        if config.mode == ControllerMode.AUTO:
            reconciler = Reconciler(
                directory,
                metrics,
                tags_to_apply=config.tags_to_apply,
                interval_seconds=config.poll_interval_seconds,
                retry_policy=retry_policy,
                shutdown_event=shutdown_event,
            )
            worker = reconciler.run()
        elif config.discord is not None:
            discord = config.discord
            discord_client = DiscordRestClient(discord.bot_token)
            dispatcher = NotificationDispatcher(
                DiscordChannel(discord_client, discord.channel_id),
                directory,
                interval_seconds=config.poll_interval_seconds,
                retry_policy=retry_policy,
                shutdown_event=shutdown_event,
            )
            workflow = ApprovalWorkflow(
                directory,
                tag_mode=config.tag_mode,
                fixed_tags=config.tags_to_apply,
                retry_policy=retry_policy,
                cancel_event=shutdown_event,
            )
            app.include_router(
                create_interactions_router(
                    client=discord_client,
                    workflow=workflow,
                    dispatcher=dispatcher,
                    application_id=discord.application_id,
                    public_key=discord.public_key,
                    command_name=discord.command_name,
                    retry_policy=retry_policy,
                    shutdown_event=shutdown_event,
                )
            )
            try:
                await discord_client.register_command(
                    discord.application_id, discord.command_name, guild_id=discord.guild_id
                )
            except Exception as e:
                logger.error("Cannot register slash command", extra={"error": str(e)})
                return 1
            worker = dispatcher.run()
        else:
            logger.info("Approval mode without a chat surface, serving the API only")

        server = uvicorn.Server(
            uvicorn.Config(
                app,
                host=config.http_host,
                port=config.http_port,
                log_config=None,
                access_log=False,
            )
        )

        loop = asyncio.get_running_loop()

        def signal_handler(sig: signal.Signals) -> None:
            logger.info("Received signal", extra={"signal": sig.name})
            shutdown_event.set()
            server.should_exit = True

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

        tasks = [_serve(server, shutdown_event)]
        if worker is not None:
            tasks.append(worker)

        try:
            await asyncio.gather(*tasks)
        except Exception as e:
            logger.exception("Unhandled exception", extra={"error": str(e)})
            return 1
    finally:
        await directory.aclose()
        if discord_client is not None:
            await discord_client.aclose()

    logger.info("Controller stopped")
    return 0


def run() -> None:
    """Entry point for the controller process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
