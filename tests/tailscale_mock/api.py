"""httpx MockTransport fakes of the Tailscale and Discord REST APIs."""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import httpx

SAMPLE_POLICY_HUJSON = """
// Example/default ACLs for unrestricted connections.
{
  "tagOwners": {
    "tag:server": ["autogroup:admin"],
    "tag:ci":     ["autogroup:admin"],
    "tag:laptop": ["autogroup:admin"],  // trailing comma is fine in HuJSON
  },
  "acls": [
    {"action": "accept", "src": ["*"], "dst": ["*:*"]},
  ],
}
"""


@dataclass
class RecordedRequest:
    method: str
    path: str
    headers: httpx.Headers
    body: Any = None


@dataclass
class FakeTailscaleApi:
    """Serves /api/v2 devices, tags and policy file endpoints from memory."""

    tailnet: str = "example.com"
    devices: list[dict[str, Any]] = field(default_factory=list)
    policy_text: str = SAMPLE_POLICY_HUJSON
    policy_content_type: str = "application/hujson"
    # (method, path) -> (status, body text), served instead of the default
    overrides: dict[tuple[str, str], tuple[int, str]] = field(default_factory=dict)
    requests: list[RecordedRequest] = field(default_factory=list)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)

    def add_device(
        self,
        device_id: str,
        name: str,
        *,
        authorized: bool = True,
        tags: Iterable[str] = (),
    ) -> None:
        self.devices.append(
            {
                "id": device_id,
                "name": name,
                "authorized": authorized,
                "tags": list(tags),
                "os": "linux",
            }
        )

    def _handle(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append(
            RecordedRequest(request.method, request.url.path, request.headers, body)
        )

        override = self.overrides.get((request.method, request.url.path))
        if override is not None:
            status, text = override
            return httpx.Response(status, text=text)

        devices_path = f"/api/v2/tailnet/{self.tailnet}/devices"
        acl_path = f"/api/v2/tailnet/{self.tailnet}/acl"

        if request.method == "GET" and request.url.path == devices_path:
            return httpx.Response(200, json={"devices": self.devices})

        if request.method == "GET" and request.url.path == acl_path:
            return httpx.Response(
                200,
                text=self.policy_text,
                headers={"content-type": self.policy_content_type},
            )

        if request.method == "POST" and request.url.path.endswith("/tags"):
            device_id = request.url.path.split("/")[-2]
            for device in self.devices:
                if device["id"] == device_id:
                    device["tags"] = list(body["tags"])
                    return httpx.Response(200, json={})
            return httpx.Response(404, json={"message": "device not found"})

        return httpx.Response(404, json={"message": "not found"})


@dataclass
class FakeDiscordApi:
    """Records Discord REST calls and answers them with canned bodies."""

    status_code: int = 200
    requests: list[RecordedRequest] = field(default_factory=list)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)

    def paths(self, method: str | None = None) -> list[str]:
        return [r.path for r in self.requests if method is None or r.method == method]

    def _handle(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append(
            RecordedRequest(request.method, request.url.path, request.headers, body)
        )
        if self.status_code >= 400:
            return httpx.Response(self.status_code, json={"message": "error"})
        if request.url.path.endswith("/commands"):
            return httpx.Response(200, json={"id": "1", **(body or {})})
        return httpx.Response(200, json={"id": "2"})
