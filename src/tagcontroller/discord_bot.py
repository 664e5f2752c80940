"""Discord transport for the approval workflow.

Discord delivers interactions to an HTTP endpoint (POST /interactions) and
expects an answer within three seconds. Slash commands are answered with a
deferred response and component clicks with a deferred message update; the
real work then runs as a background task and edits the original message
through the REST API. Prompts and warnings are posted to the configured
channel through the same REST client.
"""

from __future__ import annotations

import asyncio
import json
import logging
from enum import IntEnum
from typing import Any

import httpx
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.responses import JSONResponse

from .approval import ApprovalWorkflow, ComponentInteraction
from .messages import Button, ButtonStyle, MessageView, SelectMenu
from .notifications import NotificationDispatcher
from .retry import RetryCancelledError, RetryPolicy, with_retry

logger = logging.getLogger(__name__)

DISCORD_API_URL = "https://discord.com/api/v10"
DEFAULT_TIMEOUT_SECONDS = 30.0
COMMAND_DESCRIPTION = "Check and approve pending Tailscale devices"

SIGNATURE_HEADER = "X-Signature-Ed25519"
TIMESTAMP_HEADER = "X-Signature-Timestamp"

EPHEMERAL_FLAG = 1 << 6


class InteractionType(IntEnum):
    PING = 1
    APPLICATION_COMMAND = 2
    MESSAGE_COMPONENT = 3


class InteractionResponseType(IntEnum):
    PONG = 1
    CHANNEL_MESSAGE_WITH_SOURCE = 4
    DEFERRED_CHANNEL_MESSAGE_WITH_SOURCE = 5
    DEFERRED_UPDATE_MESSAGE = 6


class ComponentType(IntEnum):
    ACTION_ROW = 1
    BUTTON = 2
    STRING_SELECT = 3


_BUTTON_STYLES = {
    ButtonStyle.PRIMARY: 1,
    ButtonStyle.SECONDARY: 2,
    ButtonStyle.SUCCESS: 3,
    ButtonStyle.DANGER: 4,
}


class InvalidSignatureError(Exception):
    """Raised when an interaction request is not signed by Discord."""

    pass


def verify_signature(public_key_hex: str, signature_hex: str, timestamp: str, body: bytes) -> None:
    """Check the Ed25519 signature Discord puts on every interaction.

    Raises:
        InvalidSignatureError: If the signature is missing, malformed or wrong.
    """
    if not signature_hex or not timestamp:
        raise InvalidSignatureError("missing signature headers")
    try:
        key = Ed25519PublicKey.from_public_bytes(bytes.fromhex(public_key_hex))
        key.verify(bytes.fromhex(signature_hex), timestamp.encode() + body)
    except (InvalidSignature, ValueError) as e:
        raise InvalidSignatureError("invalid request signature") from e


def render_payload(view: MessageView) -> dict[str, Any]:
    """Translate a message view into a Discord message payload."""
    rows: list[dict[str, Any]] = []
    for row in view.rows:
        components: list[dict[str, Any]] = []
        for component in row:
            if isinstance(component, Button):
                components.append(
                    {
                        "type": ComponentType.BUTTON,
                        "style": _BUTTON_STYLES[component.style],
                        "label": component.label,
                        "custom_id": component.custom_id,
                    }
                )
            elif isinstance(component, SelectMenu):
                components.append(
                    {
                        "type": ComponentType.STRING_SELECT,
                        "custom_id": component.custom_id,
                        "placeholder": component.placeholder,
                        "min_values": component.min_values,
                        "max_values": component.max_values,
                        "options": [
                            {"label": option.label, "value": option.value}
                            for option in component.options
                        ],
                    }
                )
        rows.append({"type": ComponentType.ACTION_ROW, "components": components})

    payload: dict[str, Any] = {"content": view.content, "components": rows}
    if view.ephemeral:
        payload["flags"] = EPHEMERAL_FLAG
    return payload


def interaction_user(payload: dict[str, Any]) -> str:
    """Username of whoever triggered the interaction."""
    user = (payload.get("member") or {}).get("user") or payload.get("user") or {}
    return str(user.get("username") or "unknown")


class DiscordRestClient:
    """Minimal Discord REST client for commands, messages and interaction edits."""

    def __init__(
        self,
        bot_token: str,
        *,
        base_url: str = DISCORD_API_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bot {bot_token}"},
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def register_command(
        self,
        application_id: str,
        name: str,
        *,
        guild_id: str = "",
        description: str = COMMAND_DESCRIPTION,
    ) -> dict[str, Any]:
        """Create or update the slash command; guild-scoped when guild_id is set."""
        if guild_id:
            path = f"/applications/{application_id}/guilds/{guild_id}/commands"
        else:
            path = f"/applications/{application_id}/commands"
        response = await self._client.post(
            path, json={"name": name, "description": description, "type": 1}
        )
        response.raise_for_status()
        logger.info("Registered slash command", extra={"name": name, "guild_id": guild_id})
        return response.json()

    async def send_channel_message(self, channel_id: str, view: MessageView) -> None:
        response = await self._client.post(
            f"/channels/{channel_id}/messages", json=render_payload(view)
        )
        response.raise_for_status()

    async def edit_original_response(
        self, application_id: str, token: str, view: MessageView
    ) -> None:
        response = await self._client.patch(
            f"/webhooks/{application_id}/{token}/messages/@original",
            json=render_payload(view),
        )
        response.raise_for_status()

    async def create_followup(self, application_id: str, token: str, view: MessageView) -> None:
        response = await self._client.post(
            f"/webhooks/{application_id}/{token}", json=render_payload(view)
        )
        response.raise_for_status()


class DiscordChannel:
    """ChatSurface posting into one Discord channel."""

    def __init__(self, client: DiscordRestClient, channel_id: str) -> None:
        self._client = client
        self._channel_id = channel_id

    async def send_message(self, view: MessageView) -> None:
        await self._client.send_channel_message(self._channel_id, view)


def create_interactions_router(
    *,
    client: DiscordRestClient,
    workflow: ApprovalWorkflow,
    dispatcher: NotificationDispatcher,
    application_id: str,
    public_key: str,
    command_name: str,
    retry_policy: RetryPolicy | None = None,
    shutdown_event: asyncio.Event | None = None,
) -> APIRouter:
    """Build the POST /interactions endpoint.

    Replies are sent from background tasks. A set `shutdown_event` abandons
    their retry waits so graceful shutdown is not held up.
    """
    policy = retry_policy or RetryPolicy()
    router = APIRouter()

    async def reply(token: str, view: MessageView) -> None:
        async def send() -> None:
            if view.ephemeral:
                await client.create_followup(application_id, token, view)
            else:
                await client.edit_original_response(application_id, token, view)

        try:
            await with_retry(
                send, policy, cancel_event=shutdown_event, description="respond_to_interaction"
            )
        except RetryCancelledError:
            logger.info("Shutdown in progress, interaction left unanswered")
        except Exception as e:
            logger.error("Failed to respond to interaction", extra={"error": str(e)})

    async def run_command(token: str, user: str) -> None:
        logger.info("Slash command invoked", extra={"user": user})
        report = await dispatcher.check(announce_warning=False)
        await reply(token, MessageView(content=report.summary))

    async def run_component(token: str, interaction: ComponentInteraction) -> None:
        view = await workflow.handle(interaction)
        if view is not None:
            await reply(token, view)

    @router.post("/interactions")
    async def interactions(request: Request, background_tasks: BackgroundTasks) -> Any:
        body = await request.body()
        try:
            verify_signature(
                public_key,
                request.headers.get(SIGNATURE_HEADER, ""),
                request.headers.get(TIMESTAMP_HEADER, ""),
                body,
            )
        except InvalidSignatureError as e:
            logger.warning("Rejected interaction", extra={"error": str(e)})
            return JSONResponse({"error": str(e)}, status_code=401)

        try:
            payload = json.loads(body)
        except ValueError:
            return JSONResponse({"error": "invalid request body"}, status_code=400)

        interaction_type = payload.get("type")
        data = payload.get("data") or {}
        token = str(payload.get("token", ""))

        if interaction_type == InteractionType.PING:
            return {"type": InteractionResponseType.PONG}

        if interaction_type == InteractionType.APPLICATION_COMMAND:
            if data.get("name") != command_name:
                return {
                    "type": InteractionResponseType.CHANNEL_MESSAGE_WITH_SOURCE,
                    "data": {"content": "Unknown command", "flags": EPHEMERAL_FLAG},
                }
            background_tasks.add_task(run_command, token, interaction_user(payload))
            return {"type": InteractionResponseType.DEFERRED_CHANNEL_MESSAGE_WITH_SOURCE}

        if interaction_type == InteractionType.MESSAGE_COMPONENT:
            interaction = ComponentInteraction(
                custom_id=str(data.get("custom_id", "")),
                user=interaction_user(payload),
                values=tuple(str(v) for v in data.get("values") or ()),
            )
            background_tasks.add_task(run_component, token, interaction)
            return {"type": InteractionResponseType.DEFERRED_UPDATE_MESSAGE}

        return JSONResponse({"error": "unsupported interaction type"}, status_code=400)

    return router
