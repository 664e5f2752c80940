"""Chat surface that records instead of posting."""

from __future__ import annotations

from tagcontroller.messages import MessageView


class RecordingChatSurface:
    def __init__(self) -> None:
        self.sent: list[MessageView] = []
        self.attempts = 0
        self._failures: list[Exception] = []

    def fail_next(self, error: Exception, times: int = 1) -> None:
        self._failures.extend([error] * times)

    async def send_message(self, view: MessageView) -> None:
        self.attempts += 1
        if self._failures:
            raise self._failures.pop(0)
        self.sent.append(view)

    @property
    def contents(self) -> list[str]:
        return [view.content for view in self.sent]
