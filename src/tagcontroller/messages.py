"""Platform-neutral chat message views.

The approval workflow and the notification dispatcher describe what a
message should look like; the chat transport turns a view into its own
wire format. Each inner list of `rows` is one row of controls.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ButtonStyle(str, Enum):
    """Visual weight of a button."""

    PRIMARY = "primary"
    SECONDARY = "secondary"
    SUCCESS = "success"
    DANGER = "danger"


@dataclass(frozen=True)
class Button:
    label: str
    custom_id: str
    style: ButtonStyle = ButtonStyle.SECONDARY


@dataclass(frozen=True)
class SelectOption:
    label: str
    value: str


@dataclass(frozen=True)
class SelectMenu:
    """Multi-select control; the user must pick between min and max values."""

    custom_id: str
    options: tuple[SelectOption, ...]
    placeholder: str = ""
    min_values: int = 1
    max_values: int = 1


Component = Button | SelectMenu


@dataclass(frozen=True)
class MessageView:
    """Content and controls of one chat message.

    An empty `rows` tuple removes every control from the message. An
    ephemeral view is shown only to the acting user and leaves the
    original message unchanged.
    """

    content: str
    rows: tuple[tuple[Component, ...], ...] = field(default_factory=tuple)
    ephemeral: bool = False

    @property
    def custom_ids(self) -> list[str]:
        return [component.custom_id for row in self.rows for component in row]
