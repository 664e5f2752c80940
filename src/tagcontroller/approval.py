"""Human approval of pending devices through chat controls.

The workflow keeps no server-side session. Every step is encoded in the
identifier of the control the user clicked, `<action>:<device_id>`:

    Presented ──approve──▶ AwaitingTagSelection ──select_tags──▶ Approved
        │    (selectable)          │
        │                          └──cancel──▶ Cancelled
        ├──approve (fixed tags)──▶ Approved
        └──decline──▶ Declined

A transition depends only on the identifier plus, where needed, one fresh
lookup of the tag catalog. Identifiers that do not parse are ignored.
Because nothing is stored, two people can approve the same device at once;
both tag writes go through and the last one wins.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TypeVar

from .config import TagSelectionMode
from .directory import Directory
from .messages import Button, ButtonStyle, MessageView, SelectMenu, SelectOption
from .models import PendingDevice
from .retry import RetryPolicy, with_retry

logger = logging.getLogger(__name__)

CUSTOM_ID_SEPARATOR = ":"

T = TypeVar("T")


class ApprovalAction(str, Enum):
    """Actions a chat control can carry."""

    APPROVE = "approve"
    DECLINE = "decline"
    CANCEL = "cancel"
    SELECT_TAGS = "select_tags"


class TagValidationError(ValueError):
    """Raised when requested tags are empty or not in the catalog."""

    pass


@dataclass(frozen=True)
class ApprovalContext:
    """Workflow step decoded from a control identifier."""

    action: ApprovalAction
    device_id: str

    @property
    def custom_id(self) -> str:
        return encode_custom_id(self.action, self.device_id)


@dataclass(frozen=True)
class ComponentInteraction:
    """A user's click or selection on a message control."""

    custom_id: str
    user: str
    values: tuple[str, ...] = field(default_factory=tuple)


def encode_custom_id(action: ApprovalAction, device_id: str) -> str:
    return f"{action.value}{CUSTOM_ID_SEPARATOR}{device_id}"


def parse_custom_id(custom_id: str) -> ApprovalContext | None:
    """Decode a control identifier; None when it is not a known shape."""
    action_text, separator, device_id = custom_id.partition(CUSTOM_ID_SEPARATOR)
    if not separator or not device_id:
        return None
    try:
        action = ApprovalAction(action_text)
    except ValueError:
        return None
    return ApprovalContext(action=action, device_id=device_id)


def validate_tags(requested: Sequence[str], available: Iterable[str]) -> list[str]:
    """Check requested tags against the current catalog.

    Returns:
        The requested tags, in order.

    Raises:
        TagValidationError: If no tag was requested or one is not in the catalog.
    """
    if not requested:
        raise TagValidationError("at least one tag is required")
    catalog = set(available)
    for tag in requested:
        if tag not in catalog:
            raise TagValidationError(f"invalid tag: {tag}")
    return list(requested)


# =============================================================================
# Rendering
# =============================================================================


def render_device_prompt(device: PendingDevice) -> MessageView:
    """Initial state: Approve and Decline bound to the device."""
    return MessageView(
        content=(
            "**New device pending approval**\n"
            f"Name: `{device.name}`\n"
            f"ID: `{device.id}`"
        ),
        rows=(
            (
                Button(
                    label="Approve",
                    custom_id=encode_custom_id(ApprovalAction.APPROVE, device.id),
                    style=ButtonStyle.SUCCESS,
                ),
                Button(
                    label="Decline",
                    custom_id=encode_custom_id(ApprovalAction.DECLINE, device.id),
                    style=ButtonStyle.DANGER,
                ),
            ),
        ),
    )


def render_tag_selection(device_id: str, tags: Sequence[str]) -> MessageView:
    """Multi-select over the catalog plus a Cancel button."""
    return MessageView(
        content=f"**Select tags to apply**\nDevice ID: `{device_id}`",
        rows=(
            (
                SelectMenu(
                    custom_id=encode_custom_id(ApprovalAction.SELECT_TAGS, device_id),
                    options=tuple(SelectOption(label=tag, value=tag) for tag in tags),
                    placeholder="Select tags to apply...",
                    min_values=1,
                    max_values=len(tags),
                ),
            ),
            (
                Button(
                    label="Cancel",
                    custom_id=encode_custom_id(ApprovalAction.CANCEL, device_id),
                    style=ButtonStyle.SECONDARY,
                ),
            ),
        ),
    )


def render_approved(user: str, tags: Sequence[str]) -> MessageView:
    joined = "`, `".join(tags)
    return MessageView(content=f"✅ **Approved** by {user}\nTags: `{joined}`")


def render_declined(user: str) -> MessageView:
    return MessageView(content=f"❌ **Declined** by {user}")


def render_cancelled() -> MessageView:
    return MessageView(content="🚫 **Cancelled**")


def render_failure(reason: str, *, ephemeral: bool = False) -> MessageView:
    return MessageView(content=reason, ephemeral=ephemeral)


# =============================================================================
# Workflow
# =============================================================================


class ApprovalWorkflow:
    """Turns control interactions into directory calls and message updates."""

    def __init__(
        self,
        directory: Directory,
        *,
        tag_mode: TagSelectionMode = TagSelectionMode.SELECTABLE,
        fixed_tags: Sequence[str] = (),
        retry_policy: RetryPolicy | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        if tag_mode == TagSelectionMode.FIXED and not fixed_tags:
            raise ValueError("fixed tag mode requires at least one tag")
        self._directory = directory
        self._tag_mode = tag_mode
        self._fixed_tags = list(fixed_tags)
        self._retry_policy = retry_policy or RetryPolicy()
        self._cancel_event = cancel_event

    @property
    def tag_mode(self) -> TagSelectionMode:
        return self._tag_mode

    async def handle(self, interaction: ComponentInteraction) -> MessageView | None:
        """Advance the workflow for one interaction.

        Returns:
            The view that should replace the message (or be shown to the
            user, when ephemeral), or None when the interaction is ignored.
        """
        context = parse_custom_id(interaction.custom_id)
        if context is None:
            logger.debug(
                "Ignoring unrecognised interaction",
                extra={"custom_id": interaction.custom_id},
            )
            return None

        logger.info(
            "Interaction received",
            extra={
                "action": context.action.value,
                "device_id": context.device_id,
                "user": interaction.user,
            },
        )

        match context.action:
            case ApprovalAction.DECLINE:
                return await self._decline(context.device_id, interaction.user)
            case ApprovalAction.APPROVE:
                if self._tag_mode == TagSelectionMode.FIXED:
                    return await self._apply(context.device_id, self._fixed_tags, interaction.user)
                return await self._offer_tags(context.device_id)
            case ApprovalAction.CANCEL:
                logger.info(
                    "Approval cancelled",
                    extra={"device_id": context.device_id, "user": interaction.user},
                )
                return render_cancelled()
            case ApprovalAction.SELECT_TAGS:
                return await self._submit_selection(
                    context.device_id, list(interaction.values), interaction.user
                )

    async def _retry(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        return await with_retry(
            operation,
            self._retry_policy,
            cancel_event=self._cancel_event,
            description=description,
        )

    async def _decline(self, device_id: str, user: str) -> MessageView:
        try:
            await self._retry(lambda: self._directory.decline(device_id), "decline")
        except Exception as e:
            logger.error("Failed to decline device", extra={"device_id": device_id, "error": str(e)})
            return render_failure(f"Failed to decline device: {e}")

        logger.info("Device declined", extra={"device_id": device_id, "user": user})
        return render_declined(user)

    async def _offer_tags(self, device_id: str) -> MessageView:
        try:
            tags = await self._retry(self._directory.get_available_tags, "get_available_tags")
        except Exception as e:
            logger.error("Failed to fetch tags", extra={"device_id": device_id, "error": str(e)})
            return render_failure(f"Failed to fetch available tags: {e}", ephemeral=True)

        if not tags:
            logger.warning("Tag catalog is empty", extra={"device_id": device_id})
            return render_failure(
                "No tags are defined in the network policy; cannot approve.",
                ephemeral=True,
            )
        return render_tag_selection(device_id, tags)

    async def _submit_selection(
        self, device_id: str, selected: list[str], user: str
    ) -> MessageView:
        logger.info(
            "Tags selected",
            extra={"device_id": device_id, "tags": selected, "user": user},
        )
        try:
            available = await self._retry(self._directory.get_available_tags, "get_available_tags")
        except Exception as e:
            logger.error("Failed to fetch tags", extra={"device_id": device_id, "error": str(e)})
            return render_failure(f"Failed to approve device: {e}")

        try:
            tags = validate_tags(selected, available)
        except TagValidationError as e:
            logger.error("Invalid tag requested", extra={"device_id": device_id, "error": str(e)})
            return render_failure(f"Failed to approve device: {e}")

        return await self._apply(device_id, tags, user)

    async def _apply(self, device_id: str, tags: list[str], user: str) -> MessageView:
        try:
            await self._retry(lambda: self._directory.set_tags(device_id, tags), "set_tags")
        except Exception as e:
            logger.error("Failed to set tags", extra={"device_id": device_id, "error": str(e)})
            return render_failure(f"Failed to approve device: {e}")

        logger.info(
            "Approved device",
            extra={"device_id": device_id, "tags": tags, "user": user},
        )
        return render_approved(user, tags)
