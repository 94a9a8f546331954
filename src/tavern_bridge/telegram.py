"""Telegram Bot API transport.

- TelegramGateway: MessagingGateway over the Bot API using httpx
- parse_message: Telegram message object -> InboundMessage
- TelegramPoller: long-polls getUpdates for one bot and hands each message
  to the inbound handler
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

import httpx

from . import conventions
from .errors import GatewayError, MessageNotModifiedError
from .models import Attachment, Bot, InboundMessage

logger = logging.getLogger(__name__)

_NOT_MODIFIED = "message is not modified"
_IMAGE_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/gif": "gif",
    "image/webp": "webp",
}


class TelegramGateway:
    """Real Telegram Bot API client for one bot token.

    ``transport`` lets tests substitute ``httpx.MockTransport``.
    """

    def __init__(
        self,
        token: str,
        *,
        base_url: str = conventions.TELEGRAM_API_BASE,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._token = token
        self._base_url = base_url.rstrip("/")
        self._transport = transport
        self._timeout = timeout

    def _client(self, timeout: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport, timeout=timeout or self._timeout
        )

    async def _api_call(
        self,
        method: str,
        *,
        files: dict[str, Any] | None = None,
        http_timeout: float | None = None,
        **params: Any,
    ) -> Any:
        """Call a Bot API method and return its ``result``."""
        url = f"{self._base_url}/bot{self._token}/{method}"
        async with self._client(http_timeout) as client:
            try:
                if files:
                    data = {key: str(value) for key, value in params.items()}
                    response = await client.post(url, data=data, files=files)
                else:
                    response = await client.post(url, json=params)
                payload = response.json()
            except (httpx.HTTPError, ValueError) as exc:
                raise GatewayError(f"Telegram {method} failed: {exc}") from exc

        if not payload.get("ok"):
            description = payload.get("description", "unknown")
            if _NOT_MODIFIED in description:
                raise MessageNotModifiedError(description)
            raise GatewayError(f"Telegram API error in {method}: {description}")
        return payload.get("result")

    async def send_message(self, chat_id: int, text: str) -> int:
        result = await self._api_call("sendMessage", chat_id=chat_id, text=text)
        return int(result["message_id"])

    async def edit_message(self, chat_id: int, message_id: int, text: str) -> None:
        await self._api_call(
            "editMessageText", chat_id=chat_id, message_id=message_id, text=text
        )

    async def send_chat_action(self, chat_id: int, action: str) -> None:
        await self._api_call("sendChatAction", chat_id=chat_id, action=action)

    async def send_photo(self, chat_id: int, data: bytes, mime_type: str) -> None:
        filename = f"image.{_IMAGE_EXTENSIONS.get(mime_type, 'png')}"
        await self._api_call(
            "sendPhoto",
            chat_id=chat_id,
            files={"photo": (filename, data, mime_type)},
        )

    async def send_document(
        self, chat_id: int, data: bytes, file_name: str, mime_type: str
    ) -> None:
        await self._api_call(
            "sendDocument",
            chat_id=chat_id,
            files={"document": (file_name, data, mime_type)},
        )

    async def download_file(self, file_id: str) -> bytes:
        info = await self._api_call("getFile", file_id=file_id)
        file_path = info.get("file_path") if info else None
        if not file_path:
            raise GatewayError(f"Telegram returned no file_path for {file_id}")

        url = f"{self._base_url}/file/bot{self._token}/{file_path}"
        async with self._client() as client:
            try:
                response = await client.get(url)
                response.raise_for_status()
            except httpx.HTTPError as exc:
                raise GatewayError(f"Download of {file_id} failed: {exc}") from exc
        logger.debug(f"Downloaded {file_path} ({len(response.content)} bytes)")
        return response.content

    async def get_updates(
        self, offset: int | None = None, timeout: int = 0, limit: int = 100
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"timeout": timeout, "limit": limit}
        if offset is not None:
            params["offset"] = offset
        result = await self._api_call(
            "getUpdates", http_timeout=timeout + self._timeout, **params
        )
        return list(result or [])


def extract_attachments(message: dict[str, Any]) -> list[Attachment]:
    """Collect every file a Telegram message carries."""
    files: list[Attachment] = []

    photos = message.get("photo") or []
    if photos:
        # Sizes are listed smallest first.
        files.append(Attachment(photos[-1]["file_id"], "photo.jpg", "image/jpeg"))

    document = message.get("document")
    if document:
        files.append(
            Attachment(
                document["file_id"],
                document.get("file_name") or "document",
                document.get("mime_type") or "application/octet-stream",
            )
        )

    video = message.get("video")
    if video:
        files.append(
            Attachment(
                video["file_id"],
                video.get("file_name") or "video.mp4",
                video.get("mime_type") or "video/mp4",
            )
        )

    audio = message.get("audio")
    if audio:
        files.append(
            Attachment(
                audio["file_id"],
                audio.get("file_name") or "audio.mp3",
                audio.get("mime_type") or "audio/mpeg",
            )
        )

    voice = message.get("voice")
    if voice:
        files.append(
            Attachment(
                voice["file_id"], "voice.ogg", voice.get("mime_type") or "audio/ogg"
            )
        )

    video_note = message.get("video_note")
    if video_note:
        files.append(Attachment(video_note["file_id"], "video_note.mp4", "video/mp4"))

    sticker = message.get("sticker")
    if sticker:
        if sticker.get("is_video"):
            name, mime = "sticker.webm", "video/webm"
        elif sticker.get("is_animated"):
            name, mime = "sticker.tgs", "application/x-tgsticker"
        else:
            name, mime = "sticker.webp", "image/webp"
        files.append(Attachment(sticker["file_id"], name, mime))

    return files


def parse_message(message: dict[str, Any]) -> InboundMessage | None:
    """Convert a Telegram message object. Returns None without a chat."""
    chat = message.get("chat") or {}
    if "id" not in chat:
        return None
    sender = message.get("from") or {}
    date = message.get("date")
    return InboundMessage(
        chat_id=chat["id"],
        user_id=sender.get("id"),
        username=sender.get("username", ""),
        text=message.get("text") or message.get("caption") or "",
        attachments=tuple(extract_attachments(message)),
        burst_id=message.get("media_group_id"),
        date=datetime.fromtimestamp(date) if date else None,
        message_id=message.get("message_id"),
    )


MessageHandler = Callable[[Bot, InboundMessage], Awaitable[None]]


class TelegramPoller:
    """Long-polls getUpdates for one bot."""

    def __init__(
        self,
        gateway: TelegramGateway,
        bot: Bot,
        handler: MessageHandler,
        *,
        poll_timeout: int = conventions.TELEGRAM_POLL_TIMEOUT,
        retry_delay: float = conventions.TELEGRAM_POLL_RETRY_SECONDS,
    ) -> None:
        self._gateway = gateway
        self._bot = bot
        self._handler = handler
        self._poll_timeout = poll_timeout
        self._retry_delay = retry_delay
        self._offset: int | None = None
        self._task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the background polling task."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.ensure_future(self._poll_loop())

    def stop(self) -> None:
        """Stop the background polling task."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def drop_pending(self) -> int:
        """Skip updates that arrived while the bridge was down."""
        dropped = 0
        while True:
            updates = await self._gateway.get_updates(offset=self._offset, timeout=0)
            if not updates:
                break
            dropped += len(updates)
            self._offset = updates[-1]["update_id"] + 1
        if dropped:
            logger.info(
                f"Cleared {dropped} pending messages for bot "
                f'"{self._bot.character_name}"'
            )
        return dropped

    async def poll_once(self, timeout: int | None = None) -> int:
        """Fetch one batch of updates and handle them. Returns messages handled."""
        updates = await self._gateway.get_updates(
            offset=self._offset,
            timeout=self._poll_timeout if timeout is None else timeout,
        )
        count = 0
        for update in updates:
            self._offset = update["update_id"] + 1
            message = update.get("message")
            if not message:
                continue
            inbound = parse_message(message)
            if inbound is None:
                continue
            try:
                await self._handler(self._bot, inbound)
                count += 1
            except Exception:
                logger.exception(f"Error handling update {update['update_id']}")
        return count

    async def _poll_loop(self) -> None:
        """Background polling loop."""
        try:
            await self.drop_pending()
        except GatewayError as exc:
            logger.error(
                f"Could not clear pending updates for bot {self._bot.id}: {exc}"
            )
        logger.info(f'Bot "{self._bot.character_name}" polling started')

        while self._running:
            try:
                await self.poll_once()
            except Exception:
                logger.exception(f"Error in poll loop for bot {self._bot.id}")
                await asyncio.sleep(self._retry_delay)
