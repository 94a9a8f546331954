"""Registry of configured bots and their gateways."""

from __future__ import annotations

import logging
from collections.abc import Iterator

from .gateway import MessagingGateway
from .errors import GatewayError
from .models import Bot

logger = logging.getLogger(__name__)


class BotRegistry:
    """Maps bot ids to Bot identities and the gateway that speaks for each."""

    def __init__(self) -> None:
        self._bots: dict[str, Bot] = {}
        self._gateways: dict[str, MessagingGateway] = {}

    def register(self, bot: Bot, gateway: MessagingGateway) -> None:
        if bot.id in self._bots:
            raise ValueError(f"Bot {bot.id} is already registered")
        self._bots[bot.id] = bot
        self._gateways[bot.id] = gateway
        logger.info(f"Registered bot {bot.id} for character {bot.character_name}")

    def get(self, bot_id: str | None) -> Bot | None:
        if bot_id is None:
            return None
        return self._bots.get(str(bot_id))

    def gateway(self, bot_id: str | None) -> MessagingGateway | None:
        if bot_id is None:
            return None
        return self._gateways.get(str(bot_id))

    def __iter__(self) -> Iterator[Bot]:
        return iter(self._bots.values())

    def __len__(self) -> int:
        return len(self._bots)

    async def notify(self, bot_id: str, chat_id: int, text: str) -> bool:
        """Send a plain notice. Failures are logged, never raised."""
        gateway = self.gateway(bot_id)
        if gateway is None:
            logger.warning(f"Cannot notify chat {chat_id}: unknown bot {bot_id}")
            return False
        try:
            await gateway.send_message(chat_id, text)
        except GatewayError:
            logger.exception(f"Failed to notify chat {chat_id} via bot {bot_id}")
            return False
        return True
