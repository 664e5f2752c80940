"""Tests for pending-device notifications."""

from __future__ import annotations

import asyncio

import pytest
from tailscale_mock import MockDirectory, RecordingChatSurface, make_device

from tagcontroller.directory import DirectoryError
from tagcontroller.models import PendingDevice
from tagcontroller.notifications import (
    WARNING_THRESHOLD,
    NotificationDispatcher,
    NotificationOutcome,
    NotificationReport,
    warning_text,
)
from tagcontroller.retry import RetryPolicy


def pending(count: int) -> list[PendingDevice]:
    return [PendingDevice(id=str(i), name=f"device-{i}") for i in range(1, count + 1)]


class TestNotificationReport:
    """Tests for the interactive summary text."""

    def test_summaries(self) -> None:
        """Test the reply for each outcome."""
        assert NotificationReport().summary == "No pending devices found."
        assert (
            NotificationReport(pending=pending(2), outcome=NotificationOutcome.PER_DEVICE).summary
            == "Found 2 pending device(s). Sending approval requests..."
        )
        assert (
            NotificationReport(pending=pending(4), outcome=NotificationOutcome.WARNING).summary
            == warning_text(4)
        )
        assert (
            NotificationReport(error=RuntimeError("boom")).summary
            == "Failed to get pending devices: boom"
        )

    def test_warning_text(self) -> None:
        """Test the operator warning wording."""
        assert warning_text(3) == (
            "Warning: 3 pending devices found. This is unusual. "
            "Please check the Tailscale admin console."
        )


class TestNotify:
    """Tests for the threshold policy."""

    @pytest.fixture
    def chat(self) -> RecordingChatSurface:
        """Recording chat surface."""
        return RecordingChatSurface()

    def dispatcher(
        self, chat: RecordingChatSurface, retry: RetryPolicy, directory: MockDirectory | None = None
    ) -> NotificationDispatcher:
        return NotificationDispatcher(chat, directory or MockDirectory(), retry_policy=retry)

    @pytest.mark.asyncio
    async def test_zero_devices_sends_nothing(
        self, chat: RecordingChatSurface, fast_retry: RetryPolicy
    ) -> None:
        """Test that an empty list sends no message."""
        report = await self.dispatcher(chat, fast_retry).notify([])

        assert chat.sent == []
        assert report.outcome == NotificationOutcome.NONE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("count", [1, 2])
    async def test_one_prompt_per_device(
        self, chat: RecordingChatSurface, fast_retry: RetryPolicy, count: int
    ) -> None:
        """Test that below the threshold each device gets Approve/Decline."""
        report = await self.dispatcher(chat, fast_retry).notify(pending(count))

        assert report.outcome == NotificationOutcome.PER_DEVICE
        assert report.messages_sent == count
        assert len(chat.sent) == count
        for index, view in enumerate(chat.sent, start=1):
            assert view.custom_ids == [f"approve:{index}", f"decline:{index}"]
            assert f"Name: `device-{index}`" in view.content
            assert f"ID: `{index}`" in view.content

    @pytest.mark.asyncio
    @pytest.mark.parametrize("count", [WARNING_THRESHOLD, 10])
    async def test_threshold_sends_single_warning(
        self, chat: RecordingChatSurface, fast_retry: RetryPolicy, count: int
    ) -> None:
        """Test that three or more devices give one warning and no prompts."""
        report = await self.dispatcher(chat, fast_retry).notify(pending(count))

        assert report.outcome == NotificationOutcome.WARNING
        assert chat.contents == [warning_text(count)]
        assert chat.sent[0].rows == ()

    @pytest.mark.asyncio
    async def test_warning_can_be_left_to_caller(
        self, chat: RecordingChatSurface, fast_retry: RetryPolicy
    ) -> None:
        """Test that an interactive check does not post the warning."""
        report = await self.dispatcher(chat, fast_retry).notify(
            pending(5), announce_warning=False
        )

        assert report.outcome == NotificationOutcome.WARNING
        assert chat.sent == []

    @pytest.mark.asyncio
    async def test_send_failure_is_counted(
        self, chat: RecordingChatSurface, fast_retry: RetryPolicy
    ) -> None:
        """Test that a failed send does not stop the next prompt."""
        chat.fail_next(RuntimeError("HTTP 500"), times=5)

        report = await self.dispatcher(chat, fast_retry).notify(pending(2))

        assert report.messages_failed == 1
        assert report.messages_sent == 1
        assert chat.sent[0].custom_ids == ["approve:2", "decline:2"]

    @pytest.mark.asyncio
    async def test_send_is_retried(
        self, chat: RecordingChatSurface, fast_retry: RetryPolicy
    ) -> None:
        """Test that a transient send failure is retried."""
        chat.fail_next(RuntimeError("You are being rate limited"))

        report = await self.dispatcher(chat, fast_retry).notify(pending(1))

        assert chat.attempts == 2
        assert report.messages_sent == 1


class TestCheck:
    """Tests for check() and the scheduled loop."""

    @pytest.mark.asyncio
    async def test_check_uses_pending_subset(self, fast_retry: RetryPolicy) -> None:
        """Test that only authorized, untagged devices are announced."""
        chat = RecordingChatSurface()
        directory = MockDirectory(
            [
                make_device("1", "laptop"),
                make_device("2", "server", tags=["tag:server"]),
                make_device("3", "phone", authorized=False),
            ]
        )
        dispatcher = NotificationDispatcher(chat, directory, retry_policy=fast_retry)

        report = await dispatcher.check()

        assert report.pending == [PendingDevice(id="1", name="laptop")]
        assert [view.custom_ids for view in chat.sent] == [["approve:1", "decline:1"]]

    @pytest.mark.asyncio
    async def test_check_reports_list_failure(self, fast_retry: RetryPolicy) -> None:
        """Test that a failed listing is reported, not raised."""
        chat = RecordingChatSurface()
        directory = MockDirectory()
        directory.fail("list_devices", DirectoryError("HTTP 503"))
        dispatcher = NotificationDispatcher(chat, directory, retry_policy=fast_retry)

        report = await dispatcher.check()

        assert isinstance(report.error, DirectoryError)
        assert report.summary.startswith("Failed to get pending devices:")
        assert chat.sent == []

    @pytest.mark.asyncio
    async def test_run_waits_for_interval(self, fast_retry: RetryPolicy) -> None:
        """Test that the scheduler checks after each interval until shutdown."""
        chat = RecordingChatSurface()
        directory = MockDirectory([make_device("1")])
        dispatcher = NotificationDispatcher(
            chat, directory, interval_seconds=0.01, retry_policy=fast_retry
        )

        task = asyncio.create_task(dispatcher.run())
        for _ in range(100):
            if chat.sent:
                break
            await asyncio.sleep(0.01)
        dispatcher.shutdown()
        await asyncio.wait_for(task, timeout=1)

        assert chat.sent
        assert chat.sent[0].custom_ids == ["approve:1", "decline:1"]

    @pytest.mark.asyncio
    async def test_run_does_not_check_immediately(self, fast_retry: RetryPolicy) -> None:
        """Test that the first check waits for a full interval."""
        directory = MockDirectory([make_device("1")])
        dispatcher = NotificationDispatcher(
            RecordingChatSurface(), directory, interval_seconds=3600, retry_policy=fast_retry
        )

        task = asyncio.create_task(dispatcher.run())
        await asyncio.sleep(0.05)
        dispatcher.shutdown()
        await asyncio.wait_for(task, timeout=1)

        assert directory.calls == []
