"""Inbound user message handling.

Decides what happens to each message a bot receives: rejected by the
allow-list, collected into a media burst, dispatched as a command, or
buffered by the aggregator.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from .aggregator import MessageAggregator
from .bots import BotRegistry
from .commands import CommandHandler
from .models import Bot, InboundMessage

logger = logging.getLogger(__name__)

UNAUTHORIZED_NOTICE = "Sorry, you are not authorized to use this bot."


class InboundHandler:
    def __init__(
        self,
        bots: BotRegistry,
        aggregator: MessageAggregator,
        commands: CommandHandler,
        allowed_user_ids: Iterable[int] = (),
    ) -> None:
        self._bots = bots
        self._aggregator = aggregator
        self._commands = commands
        self._allowed = frozenset(allowed_user_ids)

    def is_allowed(self, user_id: int | None) -> bool:
        """Whether the user passes the allow-list (empty list allows everyone)."""
        return not self._allowed or user_id in self._allowed

    async def handle(self, bot: Bot, message: InboundMessage) -> None:
        if not self.is_allowed(message.user_id):
            logger.warning(
                f"Rejected message from unauthorized user {message.user_id} "
                f"on bot {bot.id}"
            )
            await self._bots.notify(bot.id, message.chat_id, UNAUTHORIZED_NOTICE)
            return

        if message.burst_id:
            self._aggregator.submit_burst(
                bot, message.chat_id, message.user_id, message.burst_id, message
            )
            return

        if not message.text and not message.attachments:
            logger.debug("Ignoring empty message (no text, no files)")
            return

        if message.is_command:
            await self._commands.handle(bot, message)
            return

        suffix = "..." if len(message.text) > 50 else ""
        logger.info(
            f'Received message for "{bot.character_name}" from user {message.user_id}: '
            f'text="{message.text[:50]}{suffix}", files={len(message.attachments)}'
        )
        self._aggregator.submit(
            bot,
            message.chat_id,
            message.user_id,
            message.text,
            message.attachments,
            sent_at=message.date,
        )
