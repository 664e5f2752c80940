"""Pydantic models for devices and the HTTP wire payloads.

These models provide:
1. Type-safe parsing of upstream directory responses
2. Validation at the boundary (unknown fields are ignored, wrong types fail)
3. The JSON shapes served by the controller API
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class Device(BaseModel):
    """A device as reported by the upstream directory.

    `authorized` is owned by the network's admission control and is never
    written here. `tags` is written only for devices this controller approves.
    """

    model_config = {"extra": "ignore"}

    id: str
    name: str = ""
    authorized: bool = False
    tags: list[str] = Field(default_factory=list)

    @property
    def is_pending(self) -> bool:
        """Authorized by the network but not yet tagged."""
        return self.authorized and not self.tags

    def to_pending(self) -> PendingDevice:
        """Project onto the fields exposed to the approval surface."""
        return PendingDevice(id=self.id, name=self.name)


class PendingDevice(BaseModel):
    """A pending device restricted to what notifications may show."""

    model_config = {"extra": "ignore"}

    id: str
    name: str = ""


class PendingDevicesResponse(BaseModel):
    """Body of GET /pending-devices."""

    pending_devices: list[PendingDevice] = Field(default_factory=list)


class TagsResponse(BaseModel):
    """Body of GET /tags."""

    tags: list[str] = Field(default_factory=list)


class ApproveRequest(BaseModel):
    """Optional body of POST /approve/{device_id}."""

    model_config = {"extra": "ignore"}

    tags: list[str] = Field(default_factory=list)
