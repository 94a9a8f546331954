"""Dispatch of generation host events.

Every text frame from the host passes through ``HostEventRouter.handle_raw``:
switch confirmations advance the JobQueue handshake, output events go to
the StreamRelay, and terminal events release the active job. A frame that
cannot be handled discards the conversation's stream and frees the slot so
the queue never wedges on bad input.
"""

from __future__ import annotations

import logging
import re

from . import conventions, protocol
from .bots import BotRegistry
from .errors import MalformedEventError
from .job_queue import JobQueue
from .protocol import HostEvent
from .streaming import StreamRelay

logger = logging.getLogger(__name__)

_SANITIZED = (protocol.STREAM_CHUNK, protocol.FINAL_MESSAGE_UPDATE, protocol.AI_REPLY)
_SWITCH_COMMANDS = (
    conventions.SWITCH_CHARACTER_COMMAND,
    conventions.SWITCH_PROFILE_COMMAND,
)
DEFAULT_CHAT_ACTION = "upload_photo"


def compile_filter(pattern: str) -> re.Pattern[str] | None:
    """Compile the output filter; an invalid pattern is logged and ignored."""
    if not pattern:
        return None
    try:
        return re.compile(pattern)
    except re.error as exc:
        logger.error(f"Invalid bot_message_filter_regex {pattern!r}: {exc}")
        return None


class HostEventRouter:
    def __init__(
        self,
        queue: JobQueue,
        relay: StreamRelay,
        bots: BotRegistry,
        *,
        filter_regex: str = "",
    ) -> None:
        self._queue = queue
        self._relay = relay
        self._bots = bots
        self._filter = compile_filter(filter_regex)

    def sanitize(self, text: str) -> str:
        if self._filter is None:
            return text
        return self._filter.sub("", text)

    async def handle_raw(self, raw: str | bytes) -> None:
        try:
            event = protocol.parse_host_event(raw)
        except MalformedEventError as exc:
            logger.error(f"Malformed host event: {exc}")
            self._recover(exc.bot_id, exc.chat_id)
            return

        try:
            await self.dispatch(event)
        except Exception:
            logger.exception(f"Error processing host event {event.type}")
            self._recover(event.bot_id, event.chat_id)

    def _recover(self, bot_id: str | None, chat_id: int | None) -> None:
        if bot_id is not None and chat_id is not None:
            self._relay.discard(bot_id, chat_id)
        self._queue.release()

    async def dispatch(self, event: HostEvent) -> None:
        if not event.is_known:
            logger.warning(f"Ignoring unknown host event type: {event.type}")
            return

        if event.type == protocol.COMMAND_EXECUTED:
            await self._command_executed(event)
            return

        # parse_host_event rejects routed events without both ids.
        bot_id, chat_id = str(event.bot_id), event.chat_id
        text = self.sanitize(event.text) if event.type in _SANITIZED else event.text

        if event.type == protocol.STREAM_CHUNK:
            logger.debug(f"Stream chunk for {bot_id}/{chat_id}: {text[:50]!r}")
            await self._relay.handle_chunk(bot_id, chat_id, text)
        elif event.type == protocol.STREAM_END:
            await self._relay.handle_end(bot_id, chat_id)
        elif event.type == protocol.FINAL_MESSAGE_UPDATE:
            await self._relay.finalize(bot_id, chat_id, text, event.images)
            self._queue.release(bot_id, chat_id)
        elif event.type == protocol.AI_REPLY:
            await self._relay.reply(bot_id, chat_id, text, event.images)
            self._queue.release(bot_id, chat_id)
        elif event.type == protocol.ERROR_MESSAGE:
            await self._relay.error(bot_id, chat_id, text)
            self._queue.release(bot_id, chat_id)
        elif event.type == protocol.TYPING_ACTION:
            await self._relay.typing(bot_id, chat_id)
        elif event.type == protocol.CHAT_ACTION:
            action = event.data.get("action") or DEFAULT_CHAT_ACTION
            self._relay.start_presence(bot_id, chat_id, action)
        elif event.type == protocol.HISTORY_FILE:
            await self._relay.send_history(
                bot_id, chat_id, event.data["fileData"], event.data["fileName"]
            )
            self._queue.release(bot_id, chat_id)

    async def _command_executed(self, event: HostEvent) -> None:
        command = event.data["command"]
        success = bool(event.data["success"])
        message = event.data.get("message") or ""

        is_switch = bool(event.data.get("isQueuedSwitch")) or (
            self._queue.switch_pending and command in _SWITCH_COMMANDS
        )
        if is_switch:
            if not self._queue.switch_pending:
                logger.warning(f"Switch response for {command} with no switch pending")
                return
            if success:
                logger.info(f'Command "{command}" successful')
                self._queue.confirm_switch()
            else:
                logger.error(f'Command "{command}" failed: {message}')
                self._queue.reject_switch(f"Failed to execute {command}: {message}")
            return

        outcome = "success" if success else "failure"
        logger.info(f"Command {command} execution completed: {outcome}")
        job = self._queue.active_job
        if job is None or event.bot_id != job.bot.id:
            return
        if message:
            await self._bots.notify(job.bot.id, job.chat_id, message)
        self._queue.release(job.bot.id, job.chat_id)
