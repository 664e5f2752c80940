"""HTTP surface for operators and for a separately deployed chat bot.

Routes:
    GET  /healthz              liveness
    GET  /pending-devices      authorized, untagged devices
    GET  /tags                 tag catalog (selectable tag mode only)
    POST /approve/{device_id}  apply chosen tags, or the fixed set
    POST /decline/{device_id}  log-only
    GET  /metrics              Prometheus exposition

Upstream failures that survive the retries become 500 responses carrying the
error text. A retry abandoned because the process is shutting down becomes
503. Invalid requests become 400 and never reach the directory.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST

from .approval import TagValidationError, validate_tags
from .config import TagSelectionMode
from .directory import Directory
from .metrics import PrometheusMetrics
from .models import ApproveRequest, PendingDevicesResponse, TagsResponse
from .reconciler import compute_pending
from .retry import RetryCancelledError, RetryPolicy, with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")


def upstream_error(error: Exception) -> PlainTextResponse:
    """Response for a directory call that did not succeed."""
    status_code = 503 if isinstance(error, RetryCancelledError) else 500
    return PlainTextResponse(str(error), status_code=status_code)


def create_app(
    directory: Directory,
    *,
    metrics: PrometheusMetrics | None = None,
    retry_policy: RetryPolicy | None = None,
    tag_mode: TagSelectionMode = TagSelectionMode.SELECTABLE,
    fixed_tags: Sequence[str] = (),
    shutdown_event: asyncio.Event | None = None,
) -> FastAPI:
    """Build the controller API around a directory client.

    Args:
        directory: Device directory backing every route.
        metrics: Exposed on /metrics when given.
        retry_policy: Retry bounds for directory calls.
        tag_mode: Selectable mode validates against the catalog and serves /tags.
        fixed_tags: Tags applied by a bare POST /approve.
        shutdown_event: When set, in-flight retry waits are abandoned.
    """
    policy = retry_policy or RetryPolicy()
    app = FastAPI(title="Tailscale Tag Controller")

    async def call(operation: Callable[[], Awaitable[T]], description: str) -> T:
        return await with_retry(
            operation, policy, cancel_event=shutdown_event, description=description
        )

    @app.get("/healthz", response_class=PlainTextResponse)
    async def healthz() -> str:
        return "ok"

    @app.get("/pending-devices", response_model=PendingDevicesResponse)
    async def pending_devices() -> Any:
        logger.info("Getting pending devices")
        try:
            devices = await call(directory.list_devices, "list_devices")
        except Exception as e:
            logger.error("Failed to get pending devices", extra={"error": str(e)})
            return upstream_error(e)
        return PendingDevicesResponse(pending_devices=compute_pending(devices))

    if tag_mode == TagSelectionMode.SELECTABLE:

        @app.get("/tags", response_model=TagsResponse)
        async def available_tags() -> Any:
            try:
                tags = await call(directory.get_available_tags, "get_available_tags")
            except Exception as e:
                logger.error("Failed to get available tags", extra={"error": str(e)})
                return upstream_error(e)
            return TagsResponse(tags=tags)

    @app.post("/approve/{device_id}", response_class=PlainTextResponse)
    async def approve(device_id: str, body: ApproveRequest | None = None) -> Any:
        if body is None:
            if not fixed_tags:
                return PlainTextResponse("at least one tag is required", status_code=400)
            tags = list(fixed_tags)
        else:
            if not body.tags:
                return PlainTextResponse("at least one tag is required", status_code=400)
            try:
                available = await call(directory.get_available_tags, "get_available_tags")
            except Exception as e:
                logger.error(
                    "Failed to get available tags for validation", extra={"error": str(e)}
                )
                return upstream_error(e)
            try:
                tags = validate_tags(body.tags, available)
            except TagValidationError as e:
                logger.error("Invalid tag requested", extra={"device_id": device_id, "error": str(e)})
                return PlainTextResponse(str(e), status_code=400)

        logger.info("Approve requested", extra={"device_id": device_id, "tags": tags})
        try:
            await call(lambda: directory.set_tags(device_id, tags), "set_tags")
        except Exception as e:
            logger.error("Failed to set tags", extra={"device_id": device_id, "error": str(e)})
            return upstream_error(e)

        logger.info("Approved device", extra={"device_id": device_id, "tags": tags})
        return "ok"

    @app.post("/decline/{device_id}", response_class=PlainTextResponse)
    async def decline(device_id: str) -> Any:
        try:
            await call(lambda: directory.decline(device_id), "decline")
        except Exception as e:
            logger.error("Failed to decline device", extra={"device_id": device_id, "error": str(e)})
            return upstream_error(e)
        return "ok"

    if metrics is not None:

        @app.get("/metrics")
        async def prometheus_metrics() -> Response:
            return Response(content=metrics.render(), media_type=CONTENT_TYPE_LATEST)

    return app
