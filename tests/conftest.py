"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for tailscale_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from tagcontroller.retry import RetryPolicy  # noqa: E402

CONTROLLER_ENV_VARS = (
    "CONTROLLER_MODE",
    "DIRECTORY_BACKEND",
    "TAILSCALE_TAILNET",
    "TAILSCALE_API_KEY",
    "TAILSCALE_API_URL",
    "CONTROLLER_API_URL",
    "TAGS_TO_APPLY",
    "APPROVAL_TAG_MODE",
    "POLL_INTERVAL",
    "HTTP_HOST",
    "HTTP_PORT",
    "LOG_LEVEL",
    "DISCORD_BOT_TOKEN",
    "DISCORD_APPLICATION_ID",
    "DISCORD_PUBLIC_KEY",
    "DISCORD_CHANNEL_ID",
    "DISCORD_GUILD_ID",
    "DISCORD_COMMAND_NAME",
)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Remove every controller variable so tests start from defaults."""
    for name in CONTROLLER_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Five attempts without real backoff waits."""
    return RetryPolicy(initial_backoff_seconds=0.0, max_backoff_seconds=0.0)
