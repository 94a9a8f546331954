"""The Bridge: one object owning all relay state.

Architecture:
    Telegram -> TelegramPoller -> InboundHandler
        -> CommandHandler (slash commands)
        -> MessageAggregator (debounce, media bursts)
        -> JobQueue (switchchar -> switchmodel -> execute)
        -> HostConnection -> generation host
    generation host -> HostEventRouter
        -> JobQueue (switch confirmations, release)
        -> StreamRelay (placeholder, edits, finalize) -> Telegram
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from . import conventions
from .aggregator import MessageAggregator
from .bots import BotRegistry
from .commands import CommandHandler
from .connection import HostConnection, HostSocket
from .gateway import MessagingGateway
from .inbound import InboundHandler
from .job_queue import JobQueue
from .models import Bot
from .router import HostEventRouter
from .schema import BotConfig, BridgeConfig
from .streaming import StreamRelay
from .telegram import TelegramGateway, TelegramPoller

logger = logging.getLogger(__name__)

GatewayFactory = Callable[[BotConfig], MessagingGateway]


def telegram_gateway(bot_config: BotConfig) -> MessagingGateway:
    return TelegramGateway(bot_config.token)


class Bridge:
    """Wires the relay components together for one configuration.

    ``gateway_factory`` builds the gateway for each configured bot; tests
    pass one returning MemoryGateway instances. Pollers are only created
    for Telegram gateways.
    """

    def __init__(
        self,
        config: BridgeConfig,
        *,
        gateway_factory: GatewayFactory = telegram_gateway,
        character_switch_timeout: float = conventions.CHARACTER_SWITCH_TIMEOUT,
        profile_switch_timeout: float = conventions.PROFILE_SWITCH_TIMEOUT,
        chat_action_interval: float = conventions.CHAT_ACTION_INTERVAL_SECONDS,
    ) -> None:
        behavior = config.behavior
        self.config = config
        self.bots = BotRegistry()
        self.connection = HostConnection()
        self.queue = JobQueue(
            self.connection,
            self.bots,
            character_switch_timeout=character_switch_timeout,
            profile_switch_timeout=profile_switch_timeout,
        )
        self.relay = StreamRelay(
            self.bots,
            throttle_seconds=behavior.stream_throttle_seconds,
            split_char=behavior.message_split_char,
            chat_action_interval=chat_action_interval,
        )
        self.router = HostEventRouter(
            self.queue,
            self.relay,
            self.bots,
            filter_regex=behavior.bot_message_filter_regex,
        )
        self.aggregator = MessageAggregator(
            self.queue.enqueue,
            debounce_seconds=behavior.debounce_seconds,
            media_group_delay=behavior.media_group_delay_ms / 1000,
            user_message_format=behavior.user_message_format,
        )
        self.commands = CommandHandler(self.queue, self.bots, self.connection)
        self.inbound = InboundHandler(
            self.bots, self.aggregator, self.commands, config.allowed_user_ids
        )
        self.pollers: list[TelegramPoller] = []

        for bot_config in config.bots:
            bot = Bot(
                id=bot_config.bot_id,
                character_name=bot_config.character_name,
                connection_profile=bot_config.connection_profile,
            )
            gateway = gateway_factory(bot_config)
            self.bots.register(bot, gateway)
            if isinstance(gateway, TelegramGateway):
                self.pollers.append(TelegramPoller(gateway, bot, self.inbound.handle))

        # Streams first, so no edit races the disconnect notices.
        self.connection.on_lost(self.relay.reset)
        self.connection.on_lost(self.queue.handle_disconnect)

    # --- Lifecycle ---

    async def start(self) -> None:
        for poller in self.pollers:
            poller.start()
        logger.info(f"Bridge started with {len(self.bots)} bots")

    async def stop(self) -> None:
        for poller in self.pollers:
            poller.stop()
        self.aggregator.close()
        await self.relay.close()
        await self.queue.close()
        logger.info("Bridge stopped")

    # --- Generation host socket ---

    def host_connected(self, socket: HostSocket) -> None:
        self.connection.attach(socket)

    async def host_frame(self, raw: str | bytes) -> None:
        await self.router.handle_raw(raw)

    async def host_disconnected(self, socket: HostSocket) -> None:
        await self.connection.handle_loss(socket)

    def status(self) -> dict[str, Any]:
        job = self.queue.active_job
        return {
            "connected": self.connection.is_connected,
            "queue_length": self.queue.pending_count,
            "processing": self.queue.is_processing,
            "active_job": job.id if job else None,
            "bots": [
                {
                    "id": bot.id,
                    "character_name": bot.character_name,
                    "connection_profile": bot.connection_profile,
                }
                for bot in self.bots
            ],
            "stream_sessions": self.relay.session_count,
        }
