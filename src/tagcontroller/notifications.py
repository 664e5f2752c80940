"""Pending-device alerts for the approval chat surface.

Routing policy for one notification cycle:

- no pending devices: nothing is sent
- 1 or 2 devices: one approval prompt per device (Approve / Decline)
- 3 or more devices: a single warning pointing operators at the admin
  console, and no per-device prompts

The threshold guards against mass-approval mistakes and channel floods.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from .approval import render_device_prompt
from .directory import Directory
from .messages import MessageView
from .models import PendingDevice
from .reconciler import compute_pending
from .retry import RetryPolicy, with_retry

logger = logging.getLogger(__name__)

WARNING_THRESHOLD = 3


class ChatSurface(Protocol):
    """Where approval prompts and warnings are posted."""

    async def send_message(self, view: MessageView) -> None: ...


class NotificationOutcome(str, Enum):
    """Which branch of the routing policy a cycle took."""

    NONE = "none"
    PER_DEVICE = "per_device"
    WARNING = "warning"


def warning_text(count: int) -> str:
    return (
        f"Warning: {count} pending devices found. This is unusual. "
        "Please check the Tailscale admin console."
    )


@dataclass
class NotificationReport:
    """What one notification cycle found and sent."""

    pending: list[PendingDevice] = field(default_factory=list)
    outcome: NotificationOutcome = NotificationOutcome.NONE
    messages_sent: int = 0
    messages_failed: int = 0
    error: Exception | None = None

    @property
    def summary(self) -> str:
        """One-line text for the user who asked for the check."""
        if self.error is not None:
            return f"Failed to get pending devices: {self.error}"
        match self.outcome:
            case NotificationOutcome.NONE:
                return "No pending devices found."
            case NotificationOutcome.WARNING:
                return warning_text(len(self.pending))
            case NotificationOutcome.PER_DEVICE:
                return (
                    f"Found {len(self.pending)} pending device(s). "
                    "Sending approval requests..."
                )


class NotificationDispatcher:
    """Finds pending devices and routes alerts to the chat surface."""

    def __init__(
        self,
        chat: ChatSurface,
        directory: Directory,
        *,
        interval_seconds: float = 24 * 60 * 60.0,
        retry_policy: RetryPolicy | None = None,
        shutdown_event: asyncio.Event | None = None,
    ) -> None:
        self._chat = chat
        self._directory = directory
        self._interval_seconds = interval_seconds
        self._retry_policy = retry_policy or RetryPolicy()
        self._shutdown_event = shutdown_event or asyncio.Event()

    async def notify(
        self,
        pending: Sequence[PendingDevice],
        *,
        announce_warning: bool = True,
    ) -> NotificationReport:
        """Apply the routing policy to a list of pending devices.

        Args:
            pending: Devices found in this cycle.
            announce_warning: Post the warning to the channel. An interactive
                check turns this off and shows the warning as its reply.
        """
        report = NotificationReport(pending=list(pending))

        if not pending:
            logger.info("No pending devices found")
            return report

        if len(pending) >= WARNING_THRESHOLD:
            report.outcome = NotificationOutcome.WARNING
            logger.warning(
                "Too many pending devices, suppressing approval prompts",
                extra={"pending": len(pending), "threshold": WARNING_THRESHOLD},
            )
            if announce_warning:
                await self._send(MessageView(content=warning_text(len(pending))), report)
            return report

        report.outcome = NotificationOutcome.PER_DEVICE
        for device in pending:
            await self._send(render_device_prompt(device), report, device=device)
        return report

    async def check(self, *, announce_warning: bool = True) -> NotificationReport:
        """Fetch pending devices and notify about them."""
        try:
            devices = await with_retry(
                self._directory.list_devices,
                self._retry_policy,
                cancel_event=self._shutdown_event,
                description="list_devices",
            )
        except Exception as e:
            logger.error("Failed to get pending devices", extra={"error": str(e)})
            return NotificationReport(error=e)

        return await self.notify(compute_pending(devices), announce_warning=announce_warning)

    async def run(self) -> None:
        """Check on every interval until shutdown."""
        logger.info(
            "Starting notification scheduler",
            extra={"interval_seconds": self._interval_seconds},
        )

        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self._interval_seconds,
                )
            except TimeoutError:
                logger.info("Running scheduled check")
                report = await self.check()
                logger.info(
                    "Scheduled check finished",
                    extra={
                        "outcome": report.outcome.value,
                        "pending": len(report.pending),
                        "messages_sent": report.messages_sent,
                        "messages_failed": report.messages_failed,
                    },
                )

        logger.info("Notification scheduler stopped")

    def shutdown(self) -> None:
        """Signal the scheduler to stop."""
        self._shutdown_event.set()

    async def _send(
        self,
        view: MessageView,
        report: NotificationReport,
        *,
        device: PendingDevice | None = None,
    ) -> None:
        try:
            await with_retry(
                lambda: self._chat.send_message(view),
                self._retry_policy,
                cancel_event=self._shutdown_event,
                description="send_message",
            )
        except Exception as e:
            report.messages_failed += 1
            logger.error(
                "Failed to send notification",
                extra={
                    "device": device.name if device else None,
                    "device_id": device.id if device else None,
                    "error": str(e),
                },
            )
            return
        report.messages_sent += 1
