"""Configuration management with validation.

All settings come from environment variables and are validated once at
startup. A configuration problem is fatal: the process refuses to start
rather than failing halfway through a reconciliation pass.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ControllerMode(str, Enum):
    """How pending devices are driven into a tagged state."""

    AUTO = "auto"
    APPROVAL = "approval"


class TagSelectionMode(str, Enum):
    """How the tags applied on approval are chosen."""

    FIXED = "fixed"
    SELECTABLE = "selectable"


class DirectoryBackend(str, Enum):
    """Which upstream the device directory is read from."""

    TAILSCALE = "tailscale"
    CONTROLLER = "controller"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_AUTO_POLL_INTERVAL_SECONDS = 30.0
DEFAULT_APPROVAL_POLL_INTERVAL_SECONDS = 24 * 60 * 60.0

DEFAULT_HTTP_HOST = "0.0.0.0"
DEFAULT_HTTP_PORT = 8080

DEFAULT_TAILSCALE_API_URL = "https://api.tailscale.com"
DEFAULT_CONTROLLER_API_URL = "http://localhost:8080"
DEFAULT_COMMAND_NAME = "tailscale-approve"

TAG_PREFIX = "tag:"

# Go-style durations: "30s", "24h", "1h30m", "500ms", "1.5h"
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}

VALID_COMMAND_NAME_PATTERN = r"^[-_a-z0-9]{1,32}$"
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def parse_duration(value: str) -> float:
    """Parse a Go-style duration string into seconds.

    Raises:
        ValueError: If the string is not a sequence of <number><unit> parts.
    """
    text = value.strip()
    if not text:
        raise ValueError("empty duration")

    total = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            raise ValueError(f"invalid duration: {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()

    if position != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return total


def parse_tag_list(value: str) -> tuple[str, ...]:
    """Split a comma-separated tag list, dropping blanks."""
    return tuple(tag.strip() for tag in value.split(",") if tag.strip())


@dataclass(frozen=True)
class DiscordConfig:
    """Discord application settings for the approval chat surface."""

    bot_token: str
    application_id: str
    public_key: str
    channel_id: str
    guild_id: str = ""
    command_name: str = DEFAULT_COMMAND_NAME


@dataclass(frozen=True)
class Config:
    """Controller configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    mode: ControllerMode = ControllerMode.AUTO
    backend: DirectoryBackend = DirectoryBackend.TAILSCALE

    # Tailscale backend
    tailnet: str = ""
    api_key: str = ""
    tailscale_api_url: str = DEFAULT_TAILSCALE_API_URL

    # Controller backend
    controller_api_url: str = DEFAULT_CONTROLLER_API_URL

    # Tagging
    tags_to_apply: tuple[str, ...] = field(default_factory=tuple)
    tag_mode: TagSelectionMode = TagSelectionMode.SELECTABLE

    # Timing
    poll_interval_seconds: float = DEFAULT_AUTO_POLL_INTERVAL_SECONDS

    # HTTP surface
    http_host: str = DEFAULT_HTTP_HOST
    http_port: int = DEFAULT_HTTP_PORT

    # Chat surface, approval mode only
    discord: DiscordConfig | None = None

    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if self.backend == DirectoryBackend.TAILSCALE:
            if not self.tailnet:
                errors.append("TAILSCALE_TAILNET is required")
            if not self.api_key:
                errors.append("TAILSCALE_API_KEY is required")
        elif not self.controller_api_url:
            errors.append("CONTROLLER_API_URL is required when DIRECTORY_BACKEND is controller")

        if self.needs_fixed_tags and not self.tags_to_apply:
            errors.append("TAGS_TO_APPLY is required (e.g., tag:a,tag:b)")

        for tag in self.tags_to_apply:
            if not tag.startswith(TAG_PREFIX) or len(tag) == len(TAG_PREFIX):
                errors.append(f"TAGS_TO_APPLY entries must look like tag:<name>: {tag}")

        if self.poll_interval_seconds <= 0:
            errors.append("POLL_INTERVAL must be a positive duration")

        if not (1 <= self.http_port <= 65535):
            errors.append(f"HTTP_PORT must be between 1 and 65535: {self.http_port}")

        if self.discord is not None:
            if self.mode != ControllerMode.APPROVAL:
                errors.append("DISCORD_BOT_TOKEN is only supported with CONTROLLER_MODE=approval")
            if not self.discord.application_id:
                errors.append("DISCORD_APPLICATION_ID is required when DISCORD_BOT_TOKEN is set")
            if not self.discord.public_key:
                errors.append("DISCORD_PUBLIC_KEY is required when DISCORD_BOT_TOKEN is set")
            if not self.discord.channel_id:
                errors.append("DISCORD_CHANNEL_ID is required when DISCORD_BOT_TOKEN is set")
            if not re.match(VALID_COMMAND_NAME_PATTERN, self.discord.command_name):
                errors.append(
                    f"DISCORD_COMMAND_NAME must match {VALID_COMMAND_NAME_PATTERN}: "
                    f"{self.discord.command_name}"
                )

        if self.log_level not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def needs_fixed_tags(self) -> bool:
        """Whether a fixed tag list must be configured."""
        return self.mode == ControllerMode.AUTO or self.tag_mode == TagSelectionMode.FIXED

    @classmethod
    def from_env(cls, **overrides: Any) -> Config:
        """Load configuration from environment variables.

        Keyword arguments override the value read from the environment, so a
        one-shot command can relax settings it does not use.

        Environment Variables:
            CONTROLLER_MODE: auto or approval (default: auto)
            DIRECTORY_BACKEND: tailscale or controller (default: tailscale)
            TAILSCALE_TAILNET: Tailnet name, "-" for the key's own tailnet
            TAILSCALE_API_KEY: Tailscale API key
            TAILSCALE_API_URL: API base URL (default: https://api.tailscale.com)
            CONTROLLER_API_URL: Controller API URL for the controller backend
            TAGS_TO_APPLY: Comma-separated tags, e.g. tag:a,tag:b
            APPROVAL_TAG_MODE: selectable or fixed (default: selectable)
            POLL_INTERVAL: Go-style duration (default: 30s auto, 24h approval)
            HTTP_HOST: Listen host (default: 0.0.0.0)
            HTTP_PORT: Listen port (default: 8080)
            LOG_LEVEL: Root log level (default: INFO)

        Discord Variables (approval mode):
            DISCORD_BOT_TOKEN: Enables the chat surface when set
            DISCORD_APPLICATION_ID: Application snowflake
            DISCORD_PUBLIC_KEY: Hex Ed25519 key for interaction signatures
            DISCORD_CHANNEL_ID: Channel receiving approval prompts
            DISCORD_GUILD_ID: Guild for the slash command (empty = global)
            DISCORD_COMMAND_NAME: Slash command name (default: tailscale-approve)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if not value:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_enum(key: str, enum_cls: type[Enum], default: Enum) -> Enum:
            value = os.environ.get(key, "").strip().lower()
            if not value:
                return default
            try:
                return enum_cls(value)
            except ValueError as e:
                valid = [m.value for m in enum_cls]
                raise ConfigurationError(f"{key} must be one of {valid}: {value}") from e

        mode = get_enum("CONTROLLER_MODE", ControllerMode, ControllerMode.AUTO)

        default_interval = (
            DEFAULT_APPROVAL_POLL_INTERVAL_SECONDS
            if mode == ControllerMode.APPROVAL
            else DEFAULT_AUTO_POLL_INTERVAL_SECONDS
        )
        interval_text = os.environ.get("POLL_INTERVAL", "")
        if interval_text:
            try:
                poll_interval = parse_duration(interval_text)
            except ValueError as e:
                raise ConfigurationError(
                    f"POLL_INTERVAL must be a valid duration (e.g., 24h, 1h30m): {interval_text}"
                ) from e
        else:
            poll_interval = default_interval

        discord: DiscordConfig | None = None
        bot_token = os.environ.get("DISCORD_BOT_TOKEN", "")
        if bot_token:
            discord = DiscordConfig(
                bot_token=bot_token,
                application_id=os.environ.get("DISCORD_APPLICATION_ID", ""),
                public_key=os.environ.get("DISCORD_PUBLIC_KEY", ""),
                channel_id=os.environ.get("DISCORD_CHANNEL_ID", ""),
                guild_id=os.environ.get("DISCORD_GUILD_ID", ""),
                command_name=os.environ.get("DISCORD_COMMAND_NAME", DEFAULT_COMMAND_NAME),
            )

        settings: dict[str, Any] = dict(
            mode=mode,
            backend=get_enum(
                "DIRECTORY_BACKEND", DirectoryBackend, DirectoryBackend.TAILSCALE
            ),
            tailnet=os.environ.get("TAILSCALE_TAILNET", ""),
            api_key=os.environ.get("TAILSCALE_API_KEY", ""),
            tailscale_api_url=os.environ.get("TAILSCALE_API_URL", DEFAULT_TAILSCALE_API_URL),
            controller_api_url=os.environ.get("CONTROLLER_API_URL", DEFAULT_CONTROLLER_API_URL),
            tags_to_apply=parse_tag_list(os.environ.get("TAGS_TO_APPLY", "")),
            tag_mode=get_enum(
                "APPROVAL_TAG_MODE", TagSelectionMode, TagSelectionMode.SELECTABLE
            ),
            poll_interval_seconds=poll_interval,
            http_host=os.environ.get("HTTP_HOST", DEFAULT_HTTP_HOST),
            http_port=get_int("HTTP_PORT", DEFAULT_HTTP_PORT),
            discord=discord,
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )
        settings.update(overrides)
        return cls(**settings)
