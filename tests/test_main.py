"""Tests for process wiring."""

from __future__ import annotations

import json
import logging
import sys

import pytest

from tagcontroller.config import Config, ControllerMode, DirectoryBackend
from tagcontroller.directory import ControllerApiDirectory, TailscaleDirectory
from tagcontroller.main import JsonFormatter, build_directory, main


class TestJsonFormatter:
    """Tests for structured log output."""

    def test_extra_fields_flattened(self) -> None:
        """Test that extra={} fields land at the top level."""
        record = logging.LogRecord(
            "tagcontroller.reconciler", logging.INFO, "", 0, "Applied", None, None
        )
        record.device_id = "42"
        record.tags = ["tag:a"]

        data = json.loads(JsonFormatter().format(record))

        assert data["message"] == "Applied"
        assert data["level"] == "INFO"
        assert data["logger"] == "tagcontroller.reconciler"
        assert data["device_id"] == "42"
        assert data["tags"] == ["tag:a"]
        assert data["timestamp"].endswith("Z")
        assert "lineno" not in data

    def test_exception_included(self) -> None:
        """Test that exception text is kept."""
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord("x", logging.ERROR, "", 0, "failed", None, sys.exc_info())

        data = json.loads(JsonFormatter().format(record))

        assert "RuntimeError: boom" in data["exception"]


class TestBuildDirectory:
    """Tests for backend selection."""

    @pytest.mark.asyncio
    async def test_tailscale_backend(self) -> None:
        """Test the default backend."""
        config = Config(tailnet="example.com", api_key="key", tags_to_apply=("tag:a",))
        directory = build_directory(config)
        await directory.aclose()
        assert isinstance(directory, TailscaleDirectory)

    @pytest.mark.asyncio
    async def test_controller_backend(self) -> None:
        """Test the split-deployment backend."""
        config = Config(backend=DirectoryBackend.CONTROLLER, mode=ControllerMode.APPROVAL)
        directory = build_directory(config)
        await directory.aclose()
        assert isinstance(directory, ControllerApiDirectory)


class TestMain:
    """Tests for main()."""

    @pytest.mark.asyncio
    async def test_configuration_error_exits_1(
        self, clean_env: pytest.MonkeyPatch
    ) -> None:
        """Test that invalid configuration stops startup."""
        clean_env.setattr("tagcontroller.main.setup_logging", lambda level="INFO": None)
        assert await main() == 1
