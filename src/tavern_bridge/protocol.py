"""Wire protocol between the bridge and the generation host.

JSON text frames over one WebSocket; the ``type`` field selects the schema.
Outbound payloads are built here; inbound frames are parsed and checked for
the fields their type requires before anything else sees them.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from .errors import MalformedEventError
from .models import Bot, Job

# Bridge -> host
USER_MESSAGE = "user_message"
EXECUTE_COMMAND = "execute_command"

# Host -> bridge
STREAM_CHUNK = "stream_chunk"
STREAM_END = "stream_end"
FINAL_MESSAGE_UPDATE = "final_message_update"
AI_REPLY = "ai_reply"
ERROR_MESSAGE = "error_message"
TYPING_ACTION = "typing_action"
CHAT_ACTION = "chat_action"
COMMAND_EXECUTED = "command_executed"
HISTORY_FILE = "history_file"

_ROUTED = ("chatId", "botId")

REQUIRED_FIELDS: dict[str, tuple[str, ...]] = {
    STREAM_CHUNK: (*_ROUTED, "text"),
    STREAM_END: _ROUTED,
    FINAL_MESSAGE_UPDATE: (*_ROUTED, "text"),
    AI_REPLY: (*_ROUTED, "text"),
    ERROR_MESSAGE: (*_ROUTED, "text"),
    TYPING_ACTION: _ROUTED,
    CHAT_ACTION: _ROUTED,
    COMMAND_EXECUTED: ("command", "success"),
    HISTORY_FILE: (*_ROUTED, "fileData", "fileName"),
}
# May be sent as null; read back as "".
_NULLABLE = frozenset({"text"})


@dataclass(frozen=True)
class HostEvent:
    """A parsed, validated frame from the generation host."""

    type: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def chat_id(self) -> int | None:
        return self.data.get("chatId")

    @property
    def bot_id(self) -> str | None:
        value = self.data.get("botId")
        return None if value is None else str(value)

    @property
    def text(self) -> str:
        return self.data.get("text") or ""

    @property
    def images(self) -> list[dict[str, Any]]:
        return list(self.data.get("images") or [])

    @property
    def is_known(self) -> bool:
        return self.type in REQUIRED_FIELDS


def parse_host_event(raw: str | bytes) -> HostEvent:
    """Parse one frame, raising MalformedEventError when it is unusable.

    Unknown event types are returned as-is (``is_known`` is False) so the
    caller can log and ignore them.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise MalformedEventError(f"Frame is not valid JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise MalformedEventError("Frame is not a JSON object")

    event_type = data.get("type")
    bot_id = data.get("botId")
    chat_id = data.get("chatId")
    bot_id = None if bot_id is None else str(bot_id)
    if not isinstance(event_type, str) or not event_type:
        raise MalformedEventError(
            "Frame has no 'type' field", bot_id=bot_id, chat_id=chat_id
        )

    missing = [
        name
        for name in REQUIRED_FIELDS.get(event_type, ())
        if name not in data or (data[name] is None and name not in _NULLABLE)
    ]
    if missing:
        raise MalformedEventError(
            f"'{event_type}' frame is missing {', '.join(missing)}",
            bot_id=bot_id,
            chat_id=chat_id,
        )
    return HostEvent(type=event_type, data=data)


# --- Outbound builders ---


def switch_request(job: Job, command: str, argument: str) -> dict[str, Any]:
    """A handshake step, answered by command_executed with isQueuedSwitch."""
    return {
        "type": EXECUTE_COMMAND,
        "command": command,
        "args": [argument],
        "chatId": job.chat_id,
        "botId": job.bot.id,
        "isQueuedSwitch": True,
    }


def user_message(
    bot: Bot, chat_id: int, messages: list[dict[str, Any]]
) -> dict[str, Any]:
    return {
        "type": USER_MESSAGE,
        "chatId": chat_id,
        "botId": bot.id,
        "characterName": bot.character_name,
        "messages": messages,
    }


def command_request(
    bot: Bot, chat_id: int, command: str, arguments: tuple[str | int, ...]
) -> dict[str, Any]:
    return {
        "type": EXECUTE_COMMAND,
        "command": command,
        "args": list(arguments),
        "chatId": chat_id,
        "botId": bot.id,
        "characterName": bot.character_name,
    }
