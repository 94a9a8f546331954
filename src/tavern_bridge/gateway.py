"""Messaging gateway abstraction.

Provides a Protocol for the chat operations the relay needs and an
in-memory implementation (MemoryGateway) for tests and simulation. The
Telegram Bot API implementation lives in telegram.py.

Each Bot owns exactly one gateway; the relay never talks to the chat
transport except through this protocol.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from .errors import GatewayError, MessageNotModifiedError


@runtime_checkable
class MessagingGateway(Protocol):
    """Protocol for one bot's chat transport."""

    async def send_message(self, chat_id: int, text: str) -> int:
        """Send a text message. Returns the new message id."""
        ...

    async def edit_message(self, chat_id: int, message_id: int, text: str) -> None:
        """Replace the text of a message sent earlier."""
        ...

    async def send_chat_action(self, chat_id: int, action: str) -> None:
        """Show a presence indicator ("typing", "upload_photo", ...)."""
        ...

    async def send_photo(self, chat_id: int, data: bytes, mime_type: str) -> None:
        ...

    async def send_document(
        self, chat_id: int, data: bytes, file_name: str, mime_type: str
    ) -> None:
        ...

    async def download_file(self, file_id: str) -> bytes:
        """Fetch the bytes behind an attachment's file id."""
        ...


@dataclass
class SentMessage:
    """Record of a message sent through the gateway (for testing)."""

    chat_id: int
    text: str
    message_id: int


class MemoryGateway:
    """In-memory gateway for testing and simulation.

    Records all operations for inspection. No network calls. Methods named
    in ``failing`` raise GatewayError; editing a message to its current
    text raises MessageNotModifiedError, like the real API.
    """

    def __init__(self, files: dict[str, bytes] | None = None) -> None:
        self.sent_messages: list[SentMessage] = []
        self.edits: list[dict[str, Any]] = []
        self.chat_actions: list[tuple[int, str]] = []
        self.photos: list[dict[str, Any]] = []
        self.documents: list[dict[str, Any]] = []
        self.downloads: list[str] = []
        self.files: dict[str, bytes] = dict(files or {})
        self.failing: set[str] = set()
        self._texts: dict[tuple[int, int], str] = {}
        self._next_id = 100
        # Callback for every call (used by tests to observe ordering)
        self.on_call: Any = None

    def _record(self, method: str, *args: Any) -> None:
        if self.on_call:
            self.on_call(method, *args)
        if method in self.failing:
            raise GatewayError(f"{method} failed")

    def texts(self, chat_id: int | None = None) -> list[str]:
        """Texts of sent messages, optionally for one chat."""
        return [
            m.text
            for m in self.sent_messages
            if chat_id is None or m.chat_id == chat_id
        ]

    def current_text(self, chat_id: int, message_id: int) -> str | None:
        return self._texts.get((chat_id, message_id))

    async def send_message(self, chat_id: int, text: str) -> int:
        self._record("send_message", chat_id, text)
        self._next_id += 1
        self.sent_messages.append(SentMessage(chat_id, text, self._next_id))
        self._texts[(chat_id, self._next_id)] = text
        return self._next_id

    async def edit_message(self, chat_id: int, message_id: int, text: str) -> None:
        self._record("edit_message", chat_id, message_id, text)
        if self._texts.get((chat_id, message_id)) == text:
            raise MessageNotModifiedError("message is not modified")
        self.edits.append({"chat_id": chat_id, "message_id": message_id, "text": text})
        self._texts[(chat_id, message_id)] = text

    async def send_chat_action(self, chat_id: int, action: str) -> None:
        self._record("send_chat_action", chat_id, action)
        self.chat_actions.append((chat_id, action))

    async def send_photo(self, chat_id: int, data: bytes, mime_type: str) -> None:
        self._record("send_photo", chat_id)
        self.photos.append({"chat_id": chat_id, "data": data, "mime_type": mime_type})

    async def send_document(
        self, chat_id: int, data: bytes, file_name: str, mime_type: str
    ) -> None:
        self._record("send_document", chat_id, file_name)
        self.documents.append(
            {
                "chat_id": chat_id,
                "data": data,
                "file_name": file_name,
                "mime_type": mime_type,
            }
        )

    async def download_file(self, file_id: str) -> bytes:
        self._record("download_file", file_id)
        self.downloads.append(file_id)
        if file_id not in self.files:
            raise GatewayError(f"unknown file {file_id}")
        return self.files[file_id]
