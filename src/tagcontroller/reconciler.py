"""Core reconciliation loop.

This module implements the fetch-filter-apply pattern:
1. List devices from the directory (with retry)
2. Filter to pending devices: authorized and untagged
3. Apply the configured tag set to each pending device (with retry)
4. Repeat on interval

A failed listing aborts the pass before any device is touched. A failed tag
application is logged and counted, and the pass moves on to the next device.
Devices are not re-checked before tagging: setting the same tags twice is
idempotent upstream, so a concurrent approval of the same device is harmless.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .directory import Directory
from .metrics import MetricsSink
from .models import Device, PendingDevice
from .retry import RetryCancelledError, RetryPolicy, with_retry

logger = logging.getLogger(__name__)


def compute_pending(devices: Iterable[Device]) -> list[PendingDevice]:
    """Return the authorized, untagged devices in input order."""
    return [device.to_pending() for device in devices if device.is_pending]


@dataclass
class ReconcileResult:
    """Result of a single reconciliation pass."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    devices_processed: int = 0
    pending: list[PendingDevice] = field(default_factory=list)
    tagged: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """True when the listing succeeded and every pending device was tagged."""
        return self.error is None and not self.failed


class Reconciler:
    """Applies a fixed tag set to every pending device.

    Used directly in fully-automatic mode. The pass is safe to repeat: a
    device tagged by an earlier pass is no longer pending and is skipped.
    """

    def __init__(
        self,
        directory: Directory,
        metrics: MetricsSink,
        *,
        tags_to_apply: Sequence[str] = (),
        interval_seconds: float = 30.0,
        retry_policy: RetryPolicy | None = None,
        shutdown_event: asyncio.Event | None = None,
        dry_run: bool = False,
    ) -> None:
        self._directory = directory
        self._metrics = metrics
        self._tags_to_apply = list(tags_to_apply)
        self._interval_seconds = interval_seconds
        self._retry_policy = retry_policy or RetryPolicy()
        self._shutdown_event = shutdown_event or asyncio.Event()
        self._dry_run = dry_run

    async def run(self) -> None:
        """Reconcile immediately, then on every interval until shutdown."""
        logger.info(
            "Starting reconciler",
            extra={
                "tags": self._tags_to_apply,
                "interval_seconds": self._interval_seconds,
                "dry_run": self._dry_run,
            },
        )

        while not self._shutdown_event.is_set():
            result = await self.reconcile()
            self._log_result(result)

            # Wait for next cycle or shutdown
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self._interval_seconds,
                )
            except TimeoutError:
                pass

        logger.info("Reconciler shutdown complete")

    def shutdown(self) -> None:
        """Signal the reconciler to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def reconcile(self, tags_to_apply: Sequence[str] | None = None) -> ReconcileResult:
        """Run one fetch-filter-apply pass.

        Args:
            tags_to_apply: Tags for pending devices. Defaults to the configured set.

        Returns:
            The pass outcome. Errors are recorded on the result, not raised.
        """
        tags = list(tags_to_apply) if tags_to_apply is not None else self._tags_to_apply
        result = ReconcileResult()
        started = time.monotonic()

        try:
            try:
                devices = await with_retry(
                    self._directory.list_devices,
                    self._retry_policy,
                    cancel_event=self._shutdown_event,
                    description="list_devices",
                )
            except RetryCancelledError:
                logger.info("Shutdown in progress, skipping pass")
                return result
            except Exception as e:
                logger.error("Failed to list devices", extra={"error": str(e)})
                self._metrics.reconcile_error()
                result.error = e
                return result

            for device in devices:
                if self._shutdown_event.is_set():
                    logger.info("Shutdown in progress, stopping pass early")
                    break

                self._metrics.device_processed()
                result.devices_processed += 1

                if not device.is_pending:
                    continue
                result.pending.append(device.to_pending())

                if self._dry_run:
                    logger.info(
                        "Dry run: would apply tags",
                        extra={"device": device.name, "device_id": device.id, "tags": tags},
                    )
                    continue

                try:
                    applied = await self._apply(device, tags)
                except RetryCancelledError:
                    logger.info(
                        "Shutdown in progress, stopping pass early",
                        extra={"device": device.name, "device_id": device.id},
                    )
                    break

                if applied:
                    result.tagged.append(device.id)
                else:
                    result.failed.append(device.id)

            return result
        finally:
            result.end_time = datetime.now(UTC)
            self._metrics.observe_duration(time.monotonic() - started)

    async def _apply(self, device: Device, tags: list[str]) -> bool:
        try:
            await with_retry(
                lambda: self._directory.set_tags(device.id, tags),
                self._retry_policy,
                cancel_event=self._shutdown_event,
                description="set_tags",
            )
        except RetryCancelledError:
            raise
        except Exception as e:
            logger.error(
                "Failed to set tags",
                extra={"device": device.name, "device_id": device.id, "error": str(e)},
            )
            self._metrics.reconcile_error()
            return False

        self._metrics.tags_applied()
        logger.info(
            "Applied tags to device",
            extra={"device": device.name, "device_id": device.id, "tags": tags},
        )
        return True

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconciliation result with structured data."""
        extra: dict[str, Any] = {
            "duration_seconds": result.duration_seconds,
            "devices_processed": result.devices_processed,
            "pending": len(result.pending),
            "tagged": len(result.tagged),
            "failed": len(result.failed),
        }

        if result.error is not None:
            extra["error"] = str(result.error)
            logger.error("Reconciliation failed", extra=extra)
        elif result.failed:
            logger.warning("Reconciliation finished with errors", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
