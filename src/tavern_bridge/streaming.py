"""Streaming relay: placeholder, throttled edits, finalize.

While the host streams a reply, each (bot, chat) pair gets one
StreamSession. The first chunk sends a "Thinking..." placeholder; later
chunks only update the session's latest text, and at most one edit per
throttle interval rewrites the placeholder with the first part of that
text. The finalize event replaces the placeholder with the first
non-blank part (the anchor) and sends the remaining parts as new messages.

The relay also owns presence indicators (typing, upload_photo keep-alive)
since they live and die with the reply they announce.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Any

from . import conventions
from .bots import BotRegistry
from .errors import GatewayError, MessageNotModifiedError
from .gateway import MessagingGateway

logger = logging.getLogger(__name__)

StreamKey = tuple[str, int]

HISTORY_FAILED_NOTICE = "Failed to send chat history file."


@dataclass
class StreamSession:
    """One in-progress streamed reply."""

    chat_id: int
    # Resolves to the placeholder's message id, or None if it failed to send.
    message_id: asyncio.Future[int | None]
    latest_text: str
    editing: bool = False
    ended: bool = False
    timer: asyncio.TimerHandle | None = None
    edit_task: asyncio.Task[None] | None = None

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


def split_reply(text: str, split_char: str) -> list[str]:
    return text.split(split_char) if split_char else [text]


class StreamRelay:
    """Per-conversation streaming state machine."""

    def __init__(
        self,
        bots: BotRegistry,
        *,
        throttle_seconds: float = conventions.STREAM_THROTTLE_SECONDS,
        split_char: str = conventions.DEFAULT_SPLIT_CHAR,
        chat_action_interval: float = conventions.CHAT_ACTION_INTERVAL_SECONDS,
    ) -> None:
        self._bots = bots
        self._throttle = throttle_seconds
        self._split_char = split_char
        self._action_interval = chat_action_interval
        self._sessions: dict[StreamKey, StreamSession] = {}
        self._presence: dict[StreamKey, asyncio.Task[None]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def session(self, bot_id: str, chat_id: int) -> StreamSession | None:
        return self._sessions.get((str(bot_id), chat_id))

    # --- Streaming ---

    async def handle_chunk(self, bot_id: str, chat_id: int, text: str) -> None:
        gateway = self._gateway(bot_id, "stream_chunk")
        if gateway is None:
            return

        key = (str(bot_id), chat_id)
        session = self._sessions.get(key)
        if session is None:
            loop = asyncio.get_running_loop()
            session = StreamSession(
                chat_id=chat_id, message_id=loop.create_future(), latest_text=text
            )
            self._sessions[key] = session
            logger.debug(f"Stream session opened for {key}")
            self._spawn(self._send_placeholder(key, session, gateway))
            return

        session.latest_text = text
        self._schedule_edit(key, session)

    async def handle_end(self, bot_id: str, chat_id: int) -> None:
        session = self._sessions.get((str(bot_id), chat_id))
        if session is None:
            logger.warning(f"Received stream_end but no session for {bot_id}/{chat_id}")
            return
        session.cancel_timer()
        session.ended = True
        logger.info("Stream end received, waiting for final update")

    async def _send_placeholder(
        self, key: StreamKey, session: StreamSession, gateway: MessagingGateway
    ) -> None:
        message_id: int | None = None
        try:
            message_id = await gateway.send_message(
                session.chat_id, conventions.STREAM_PLACEHOLDER_TEXT
            )
        except GatewayError:
            logger.exception(f"Failed to send placeholder to {session.chat_id}")
        finally:
            if not session.message_id.done():
                session.message_id.set_result(message_id)
        self._schedule_edit(key, session)

    def _schedule_edit(self, key: StreamKey, session: StreamSession) -> None:
        if self._sessions.get(key) is not session or session.ended:
            return
        if session.timer is not None:
            return
        if not session.message_id.done() or session.message_id.result() is None:
            return
        loop = asyncio.get_running_loop()
        session.timer = loop.call_later(self._throttle, self._fire_edit, key, session)

    def _fire_edit(self, key: StreamKey, session: StreamSession) -> None:
        session.timer = None
        if self._sessions.get(key) is not session:
            return
        if session.editing:
            self._schedule_edit(key, session)
            return
        session.editing = True
        session.edit_task = self._spawn(self._edit(key, session))

    async def _edit(self, key: StreamKey, session: StreamSession) -> None:
        gateway = self._bots.gateway(key[0])
        message_id = session.message_id.result()
        first_part = split_reply(session.latest_text, self._split_char)[0]
        try:
            if gateway is not None and message_id is not None:
                await gateway.edit_message(
                    session.chat_id,
                    message_id,
                    first_part + conventions.STREAM_PENDING_SUFFIX,
                )
        except MessageNotModifiedError:
            pass
        except GatewayError:
            logger.exception(f"Failed to edit streaming message in {session.chat_id}")
        finally:
            session.editing = False

    # --- Terminal events ---

    async def finalize(
        self,
        bot_id: str,
        chat_id: int,
        text: str,
        images: list[dict[str, Any]] | None = None,
    ) -> None:
        """Deliver the complete reply, replacing the placeholder if there is one."""
        key = (str(bot_id), chat_id)
        session = self._sessions.pop(key, None)
        self.stop_presence(bot_id, chat_id)
        if session is not None:
            session.cancel_timer()

        gateway = self._gateway(bot_id, "final_message_update")
        if gateway is None:
            return

        await self._send_images(gateway, chat_id, images)

        parts = split_reply(text, self._split_char)
        anchor_index = next((i for i, part in enumerate(parts) if part.strip()), None)

        message_id: int | None = None
        if session is not None:
            message_id = await session.message_id
            if session.edit_task is not None:
                await session.edit_task
            logger.info(f"Streaming session {bot_id}/{chat_id} completed")

        if anchor_index is None:
            logger.warning("Final response text is empty or whitespace only")
            return

        anchor = parts[anchor_index]
        if message_id is not None:
            logger.info(f"Sending final streamed update (anchor: part {anchor_index})")
            try:
                await gateway.edit_message(chat_id, message_id, anchor)
            except MessageNotModifiedError:
                pass
            except GatewayError:
                logger.exception(f"Failed to edit final message in {chat_id}")
        else:
            await self._send(gateway, chat_id, anchor)

        for part in parts[anchor_index + 1 :]:
            if part.strip():
                await self._send(gateway, chat_id, part)

    async def reply(
        self,
        bot_id: str,
        chat_id: int,
        text: str,
        images: list[dict[str, Any]] | None = None,
    ) -> None:
        """Deliver a non-streamed reply: every non-blank part as a new message."""
        self.stop_presence(bot_id, chat_id)
        gateway = self._gateway(bot_id, "ai_reply")
        if gateway is None:
            return
        await self._send_images(gateway, chat_id, images)
        sent = 0
        for part in split_reply(text, self._split_char):
            if part.strip():
                await self._send(gateway, chat_id, part)
                sent += 1
        if not sent:
            logger.warning("AI reply text is empty or whitespace only")

    async def error(self, bot_id: str, chat_id: int, text: str) -> None:
        """Relay a host error and discard the conversation's stream."""
        session = self._sessions.pop((str(bot_id), chat_id), None)
        if session is not None:
            session.cancel_timer()
        self.stop_presence(bot_id, chat_id)
        gateway = self._gateway(bot_id, "error_message")
        if gateway is None:
            return
        logger.error(f"Error from generation host: {text}")
        await self._send(gateway, chat_id, text)

    async def send_history(
        self, bot_id: str, chat_id: int, file_data: str, file_name: str
    ) -> None:
        gateway = self._gateway(bot_id, "history_file")
        if gateway is None:
            return
        try:
            data = base64.b64decode(file_data, validate=True)
            logger.info(f"Sending history file to chat {chat_id}: {file_name}")
            await gateway.send_document(chat_id, data, file_name, "text/html")
        except (binascii.Error, GatewayError) as exc:
            logger.error(f"Failed to send history file: {exc}")
            await self._send(gateway, chat_id, HISTORY_FAILED_NOTICE)

    def discard(self, bot_id: str, chat_id: int) -> bool:
        """Drop one session without finalizing it."""
        session = self._sessions.pop((str(bot_id), chat_id), None)
        if session is None:
            return False
        session.cancel_timer()
        if not session.message_id.done():
            session.message_id.set_result(None)
        return True

    async def reset(self) -> None:
        """Drop every session and presence loop (host disconnected)."""
        for bot_id, chat_id in list(self._sessions):
            self.discard(bot_id, chat_id)
        for task in self._presence.values():
            task.cancel()
        self._presence.clear()
        logger.info("Stream sessions reset")

    async def close(self) -> None:
        await self.reset()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # --- Presence ---

    async def typing(self, bot_id: str, chat_id: int) -> None:
        gateway = self._gateway(bot_id, "typing_action")
        if gateway is None:
            return
        try:
            await gateway.send_chat_action(chat_id, "typing")
        except GatewayError as exc:
            logger.error(f"Failed to send typing action: {exc}")

    def start_presence(self, bot_id: str, chat_id: int, action: str) -> None:
        """Repeat ``action`` every interval until the reply completes."""
        gateway = self._gateway(bot_id, "chat_action")
        if gateway is None:
            return
        key = (str(bot_id), chat_id)
        self.stop_presence(bot_id, chat_id)
        self._presence[key] = self._spawn(self._presence_loop(key, gateway, action))

    def stop_presence(self, bot_id: str, chat_id: int) -> None:
        task = self._presence.pop((str(bot_id), chat_id), None)
        if task is not None:
            task.cancel()

    @property
    def presence_count(self) -> int:
        return len(self._presence)

    async def _presence_loop(
        self, key: StreamKey, gateway: MessagingGateway, action: str
    ) -> None:
        _, chat_id = key
        try:
            while True:
                await gateway.send_chat_action(chat_id, action)
                await asyncio.sleep(self._action_interval)
        except GatewayError as exc:
            logger.error(f"Failed to send chat action ({action}): {exc}")
            if self._presence.get(key) is asyncio.current_task():
                del self._presence[key]

    # --- Helpers ---

    def _gateway(self, bot_id: str, event: str) -> MessagingGateway | None:
        gateway = self._bots.gateway(bot_id)
        if gateway is None:
            logger.error(f"Received {event} for unknown bot: {bot_id}")
        return gateway

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    async def _send(gateway: MessagingGateway, chat_id: int, text: str) -> None:
        try:
            await gateway.send_message(chat_id, text)
        except MessageNotModifiedError:
            pass
        except GatewayError:
            logger.exception(f"Failed to send message to {chat_id}")

    @staticmethod
    async def _send_images(
        gateway: MessagingGateway, chat_id: int, images: list[dict[str, Any]] | None
    ) -> None:
        if not images:
            return
        logger.info(f"Sending {len(images)} image(s) to chat {chat_id}")
        for image in images:
            mime_type = image.get("mimeType") or "image/png"
            try:
                data = base64.b64decode(image.get("base64") or "", validate=True)
                await gateway.send_photo(chat_id, data, mime_type)
            except (binascii.Error, GatewayError) as exc:
                logger.error(f"Failed to send image: {exc}")
