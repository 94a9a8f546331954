"""Debounce and media-burst aggregation.

Users often send several messages (or an album of photos) in quick
succession. The aggregator buffers them per conversation and hands one
batched message Job to the queue once the conversation has gone quiet for
the debounce window. Album members arrive as separate updates sharing a
burst id; they are reassembled over a short fixed delay first.

All timers are ``loop.call_later`` handles owned by their buffer. Every
new entry cancels and replaces the buffer's handle; a callback that finds
its buffer gone does nothing.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime

from . import conventions
from .models import (
    Attachment,
    Bot,
    InboundMessage,
    Job,
    MessageEntry,
    MessagePayload,
)

logger = logging.getLogger(__name__)

ConversationKey = tuple[str, int]
BurstKey = tuple[str, int, str]


def format_timestamp(user_message_format: str, sent_at: datetime | None) -> str:
    """Render the configured prefix, replacing {{date}} with YYYY-MM-DD HH:MM."""
    moment = sent_at or datetime.now()
    return user_message_format.replace("{{date}}", moment.strftime("%Y-%m-%d %H:%M"))


@dataclass
class DebounceBuffer:
    bot: Bot
    user_id: int | None
    entries: list[MessageEntry] = field(default_factory=list)
    timer: asyncio.TimerHandle | None = None


@dataclass
class MediaBurstBuffer:
    bot: Bot
    user_id: int | None
    messages: list[InboundMessage] = field(default_factory=list)
    timer: asyncio.TimerHandle | None = None


class MessageAggregator:
    """Turns bursts of raw inbound input into discrete message Jobs.

    ``on_job`` receives each flushed Job (normally ``JobQueue.enqueue``).
    """

    def __init__(
        self,
        on_job: Callable[[Job], object],
        *,
        debounce_seconds: float = conventions.DEBOUNCE_SECONDS,
        media_group_delay: float = conventions.MEDIA_GROUP_DELAY_MS / 1000,
        user_message_format: str = "",
    ) -> None:
        self._on_job = on_job
        self._debounce = debounce_seconds
        self._media_delay = media_group_delay
        self._format = user_message_format
        self._buffers: dict[ConversationKey, DebounceBuffer] = {}
        self._bursts: dict[BurstKey, MediaBurstBuffer] = {}

    @property
    def pending_conversations(self) -> int:
        return len(self._buffers)

    @property
    def pending_bursts(self) -> int:
        return len(self._bursts)

    def buffered_entries(self, bot_id: str, chat_id: int) -> list[MessageEntry]:
        buffer = self._buffers.get((bot_id, chat_id))
        return list(buffer.entries) if buffer else []

    def submit(
        self,
        bot: Bot,
        chat_id: int,
        user_id: int | None,
        text: str = "",
        attachments: Iterable[Attachment] = (),
        sent_at: datetime | None = None,
    ) -> None:
        """Buffer one entry and restart the conversation's flush timer.

        An entry with neither text nor attachments only restarts the timer.
        """
        key = (bot.id, chat_id)
        buffer = self._buffers.get(key)
        if buffer is None:
            buffer = DebounceBuffer(bot=bot, user_id=user_id)
            self._buffers[key] = buffer
        elif buffer.timer is not None:
            buffer.timer.cancel()

        entry = MessageEntry(text=text or "", attachments=tuple(attachments))
        if not entry.is_empty:
            if self._format:
                prefix = format_timestamp(self._format, sent_at)
                entry = MessageEntry(prefix + entry.text, entry.attachments)
            buffer.entries.append(entry)
            logger.debug(
                f"Buffered message for chat {chat_id} "
                f"(buffer size: {len(buffer.entries)})"
            )

        loop = asyncio.get_running_loop()
        buffer.timer = loop.call_later(self._debounce, self._flush, key)

    def submit_burst(
        self,
        bot: Bot,
        chat_id: int,
        user_id: int | None,
        burst_id: str,
        message: InboundMessage,
    ) -> None:
        """Collect one member of a media burst (album)."""
        key = (bot.id, chat_id, burst_id)
        burst = self._bursts.get(key)
        if burst is None:
            burst = MediaBurstBuffer(bot=bot, user_id=user_id)
            self._bursts[key] = burst
        elif burst.timer is not None:
            burst.timer.cancel()

        burst.messages.append(message)
        loop = asyncio.get_running_loop()
        burst.timer = loop.call_later(self._media_delay, self._flush_burst, key)

    def _flush_burst(self, key: BurstKey) -> None:
        burst = self._bursts.pop(key, None)
        if burst is None:
            return

        attachments: list[Attachment] = []
        caption = ""
        sent_at = burst.messages[0].date if burst.messages else None
        for message in burst.messages:
            attachments.extend(message.attachments)
            if not caption and message.text:
                caption = message.text
                sent_at = message.date

        _, chat_id, burst_id = key
        logger.info(
            f"Processing media burst {burst_id}: {len(burst.messages)} messages, "
            f"{len(attachments)} files"
        )
        self.submit(burst.bot, chat_id, burst.user_id, caption, attachments, sent_at)

    def _flush(self, key: ConversationKey) -> None:
        buffer = self._buffers.pop(key, None)
        if buffer is None or not buffer.entries:
            return

        summary = next(
            (entry.text for entry in reversed(buffer.entries) if entry.text),
            conventions.BATCH_PLACEHOLDER_TEXT,
        )
        _, chat_id = key
        job = Job(
            bot=buffer.bot,
            chat_id=chat_id,
            user_id=buffer.user_id,
            payload=MessagePayload(entries=tuple(buffer.entries), text=summary),
        )
        logger.info(
            f"Flushing buffer for chat {chat_id} with {len(buffer.entries)} messages"
        )
        self._on_job(job)

    def close(self) -> None:
        """Cancel every pending timer without flushing."""
        for buffer in self._buffers.values():
            if buffer.timer is not None:
                buffer.timer.cancel()
        for burst in self._bursts.values():
            if burst.timer is not None:
                burst.timer.cancel()
        self._buffers.clear()
        self._bursts.clear()
