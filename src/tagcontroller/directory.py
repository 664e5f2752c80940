"""Device directory clients.

The directory is the external service that lists devices and applies tags.
Two implementations share the `Directory` protocol:

- TailscaleDirectory: the Tailscale REST API (v2)
- ControllerApiDirectory: this project's own HTTP API, used when the chat
  bot runs as a separate process from the controller

Neither client retries; callers wrap each call in `with_retry`.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import Any, Protocol

import httpx
import json5

from .models import (
    ApproveRequest,
    Device,
    PendingDevicesResponse,
    TagsResponse,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
MAX_ERROR_BODY_CHARS = 300


class DirectoryError(Exception):
    """Raised when the directory answers with a non-success status."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class Directory(Protocol):
    """Operations the controller needs from the device directory."""

    async def list_devices(self) -> list[Device]: ...

    async def set_tags(self, device_id: str, tags: Sequence[str]) -> None: ...

    async def get_available_tags(self) -> list[str]: ...

    async def decline(self, device_id: str) -> None: ...


def _raise_for_status(response: httpx.Response, action: str) -> None:
    if response.is_success:
        return
    raise DirectoryError(
        f"{action} failed: HTTP {response.status_code} {response.text[:MAX_ERROR_BODY_CHARS]}",
        status_code=response.status_code,
    )


def tag_owner_keys(policy: dict[str, Any]) -> list[str]:
    """Return the tags declared in a policy's tagOwners, deduplicated and sorted."""
    owners = policy.get("tagOwners") or {}
    if not isinstance(owners, dict):
        return []
    return sorted({str(tag) for tag in owners})


class TailscaleDirectory:
    """Directory backed by the Tailscale API."""

    def __init__(
        self,
        tailnet: str,
        api_key: str,
        *,
        base_url: str = "https://api.tailscale.com",
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._tailnet = tailnet
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            auth=(api_key, ""),
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def list_devices(self) -> list[Device]:
        response = await self._client.get(f"/api/v2/tailnet/{self._tailnet}/devices")
        _raise_for_status(response, "List devices")

        body = response.json()
        if isinstance(body, dict) and isinstance(body.get("devices"), list):
            raw_devices = body["devices"]
        elif isinstance(body, list):
            raw_devices = body
        else:
            raise DirectoryError("Unexpected device list response shape")

        return [Device.model_validate(raw) for raw in raw_devices]

    async def set_tags(self, device_id: str, tags: Sequence[str]) -> None:
        response = await self._client.post(
            f"/api/v2/device/{device_id}/tags",
            json={"tags": list(tags)},
        )
        _raise_for_status(response, f"Set tags for device {device_id}")

    async def get_available_tags(self) -> list[str]:
        response = await self._client.get(
            f"/api/v2/tailnet/{self._tailnet}/acl",
            headers={"Accept": "application/json"},
        )
        _raise_for_status(response, "Get policy file")

        text = response.text.strip()
        if "application/json" in response.headers.get("content-type", ""):
            try:
                policy = json.loads(text)
            except ValueError:
                policy = json5.loads(text)
        else:
            # The policy file is HuJSON unless JSON was negotiated
            policy = json5.loads(text)

        if not isinstance(policy, dict):
            raise DirectoryError("Unexpected policy file shape")
        return tag_owner_keys(policy)

    async def decline(self, device_id: str) -> None:
        # Declining leaves the device untouched; an admin removes it upstream.
        logger.info("Device declined", extra={"device_id": device_id})


class ControllerApiDirectory:
    """Directory backed by the controller's own HTTP API."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def list_devices(self) -> list[Device]:
        """List pending devices; the API only exposes the pending subset."""
        response = await self._client.get("/pending-devices")
        _raise_for_status(response, "Get pending devices")
        parsed = PendingDevicesResponse.model_validate(response.json())
        return [
            Device(id=device.id, name=device.name, authorized=True, tags=[])
            for device in parsed.pending_devices
        ]

    async def set_tags(self, device_id: str, tags: Sequence[str]) -> None:
        response = await self._client.post(
            f"/approve/{device_id}",
            json=ApproveRequest(tags=list(tags)).model_dump(),
        )
        _raise_for_status(response, f"Approve device {device_id}")

    async def get_available_tags(self) -> list[str]:
        response = await self._client.get("/tags")
        _raise_for_status(response, "Get available tags")
        return TagsResponse.model_validate(response.json()).tags

    async def decline(self, device_id: str) -> None:
        response = await self._client.post(f"/decline/{device_id}")
        _raise_for_status(response, f"Decline device {device_id}")
