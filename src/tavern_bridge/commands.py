"""Slash command handling.

Commands fall into three groups:
1. Immediate: answered by the bridge itself (help, ping, system commands)
2. Queued: forwarded to the generation host as command Jobs, so they wait
   their turn behind other bots' work and get the character switch first
3. Unknown: answered with a pointer to /help
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from typing import TYPE_CHECKING, ClassVar

from .bots import BotRegistry
from .job_queue import JobQueue
from .models import Bot, CommandPayload, InboundMessage, Job

if TYPE_CHECKING:
    from .connection import HostConnection

logger = logging.getLogger(__name__)

_SWITCHCHAT_RE = re.compile(r"^switchchat(_\d+)?$")

UNSUPPORTED_NOTICE = (
    "/{command} is not supported by this bridge. Restart the service instead."
)
INVALID_DELETE_NOTICE = "Invalid number of messages to delete."


def parse_command(text: str) -> tuple[str, list[str]]:
    """Split "/cmd@botname arg1 arg2" into ("cmd", ["arg1", "arg2"]).

    Examples:
        "/help" -> ("help", [])
        "/switchchat My Chat" -> ("switchchat", ["My", "Chat"])
        "/Delete@MyBot 3" -> ("delete", ["3"])
    """
    parts = text.strip().lstrip("/").split()
    if not parts:
        return "", []
    command = parts[0].split("@", 1)[0].lower()
    return command, parts[1:]


class CommandHandler:
    """Routes one parsed command for one bot."""

    # Forwarded unchanged to the generation host.
    QUEUED: ClassVar[frozenset[str]] = frozenset(
        {"new", "listchats", "history", "summarize"}
    )
    # Answered by the bridge (the process lifecycle is not the host's business).
    SYSTEM: ClassVar[frozenset[str]] = frozenset({"reload", "restart", "exit", "ping"})

    def __init__(
        self,
        queue: JobQueue,
        bots: BotRegistry,
        connection: HostConnection,
        shutdown: Callable[[], None] | None = None,
    ) -> None:
        self._queue = queue
        self._bots = bots
        self._connection = connection
        self._shutdown = shutdown

    def set_shutdown_hook(self, hook: Callable[[], None] | None) -> None:
        self._shutdown = hook

    async def handle(self, bot: Bot, message: InboundMessage) -> None:
        command, args = parse_command(message.text)
        logger.info(f'Command received on bot "{bot.character_name}": /{command}')

        if command in self.SYSTEM:
            await self._system(bot, message, command)
        elif command == "help":
            await self._reply(bot, message, self.help_text(bot))
        elif command in self.QUEUED or _SWITCHCHAT_RE.match(command):
            self._enqueue(bot, message, command, tuple(args))
        elif command == "delete":
            await self._delete(bot, message, args)
        elif command == "trigger":
            self._enqueue(bot, message, "trigger_generation", ())
        else:
            await self._reply(
                bot,
                message,
                f"Unknown command: /{command}. Use /help to see available commands.",
            )

    def help_text(self, bot: Bot) -> str:
        name = bot.character_name
        return (
            f"{name} - Telegram Bridge Commands:\n"
            "\n"
            "Chat Management\n"
            f"/new - Start a new chat with {name}\n"
            f"/listchats - List all saved chat logs for {name}\n"
            "/switchchat <name> - Load a specific chat log\n"
            "/switchchat_<N> - Load chat log by number\n"
            "/history - Export the current chat log\n"
            "/summarize - Summarize the current chat\n"
            "/delete [n] - Delete the last n messages (default 1)\n"
            "/trigger - Manually trigger a new AI response\n"
            "\n"
            "System Management\n"
            "/exit - Shutdown server\n"
            "/ping - Check connection status\n"
            "\n"
            "Help\n"
            "/help - Show this help message\n"
            "\n"
            f"Note: This bot is dedicated to {name}. Messages you send will be "
            "processed as conversations with this character."
        )

    def status_text(self) -> str:
        host = "Connected" if self._connection.is_connected else "Not connected"
        state = "processing" if self._queue.is_processing else "idle"
        return (
            "Bridge status: Connected\n"
            f"SillyTavern status: {host}\n"
            f"Queue: {self._queue.pending_count} pending, {state}\n"
            f"Active bots: {len(self._bots)}"
        )

    async def _system(self, bot: Bot, message: InboundMessage, command: str) -> None:
        logger.info(f"Executing system command: {command}")
        if command == "ping":
            await self._reply(bot, message, self.status_text())
        elif command == "exit":
            await self._reply(bot, message, "Shutting down server...")
            if self._shutdown is None:
                logger.warning("Exit requested but no shutdown hook is installed")
            else:
                self._shutdown()
        else:
            await self._reply(bot, message, UNSUPPORTED_NOTICE.format(command=command))

    async def _delete(self, bot: Bot, message: InboundMessage, args: list[str]) -> None:
        try:
            count = int(args[0]) if args else 1
        except ValueError:
            count = 0
        if count < 1:
            await self._reply(bot, message, INVALID_DELETE_NOTICE)
            return
        self._enqueue(bot, message, "delete_messages", (count,))

    def _enqueue(
        self,
        bot: Bot,
        message: InboundMessage,
        command: str,
        args: tuple[str | int, ...],
    ) -> None:
        self._queue.enqueue(
            Job(
                bot=bot,
                chat_id=message.chat_id,
                user_id=message.user_id,
                payload=CommandPayload(command=command, arguments=args),
            )
        )

    async def _reply(self, bot: Bot, message: InboundMessage, text: str) -> None:
        await self._bots.notify(bot.id, message.chat_id, text)
