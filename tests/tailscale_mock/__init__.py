"""In-memory fakes for testing the tag controller.

Key Features:
- Device directory with call recording and failure injection
- Chat surface that records every message view it is asked to send
- Metrics sink that counts instead of exporting
- httpx MockTransport fakes of the Tailscale and Discord REST APIs

Usage:
    from tailscale_mock import MockDirectory, RecordingMetrics

    directory = MockDirectory([make_device("1", "laptop")])
    directory.fail("set_tags", DirectoryError("boom"), device_id="1")

    reconciler = Reconciler(directory, RecordingMetrics(), tags_to_apply=["tag:a"])
    result = await reconciler.reconcile()

    assert directory.call_count("set_tags") == 5
"""

from .api import FakeDiscordApi, FakeTailscaleApi
from .chat import RecordingChatSurface
from .directory import MockDirectory, make_device
from .metrics import RecordingMetrics

__all__ = [
    "FakeDiscordApi",
    "FakeTailscaleApi",
    "MockDirectory",
    "RecordingChatSurface",
    "RecordingMetrics",
    "make_device",
]
