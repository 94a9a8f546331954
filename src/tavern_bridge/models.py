"""Data models for the bridge.

Defines the core data structures shared by the relay components:
- Bot identities (one per persona)
- Inbound chat messages and their attachments
- Jobs, their tagged payloads, and the single active-job slot
"""

from __future__ import annotations

import asyncio
import secrets
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum


class JobKind(StrEnum):
    """What a Job asks the generation host to do."""

    MESSAGE = "message"  # Batched user input for the character to answer
    COMMAND = "command"  # A slash command executed by the host


@dataclass(frozen=True)
class Bot:
    """A configured persona bound to one chat bot token."""

    id: str
    character_name: str
    connection_profile: str | None = None


@dataclass(frozen=True)
class Attachment:
    """Opaque reference to a file held by the messaging gateway."""

    file_id: str
    file_name: str
    mime_type: str


@dataclass(frozen=True)
class MessageEntry:
    """One buffered piece of user input."""

    text: str = ""
    attachments: tuple[Attachment, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.text and not self.attachments


@dataclass(frozen=True)
class MessagePayload:
    """Payload of a message Job: entries in arrival order plus a summary."""

    entries: tuple[MessageEntry, ...]
    text: str

    @property
    def attachments(self) -> tuple[Attachment, ...]:
        """All attachments, concatenated in arrival order."""
        return tuple(a for entry in self.entries for a in entry.attachments)


@dataclass(frozen=True)
class CommandPayload:
    """Payload of a command Job."""

    command: str
    arguments: tuple[str | int, ...] = ()


def new_job_id() -> str:
    """Return a unique id of the form job_<millis>_<random>."""
    return f"job_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"


@dataclass(frozen=True)
class Job:
    """One unit of queued work targeting a Bot and a conversation.

    ``id`` and ``created_at`` are assigned by the queue at enqueue time.
    """

    bot: Bot
    chat_id: int
    user_id: int | None
    payload: MessagePayload | CommandPayload
    id: str = ""
    created_at: str = ""

    @property
    def kind(self) -> JobKind:
        if isinstance(self.payload, CommandPayload):
            return JobKind.COMMAND
        return JobKind.MESSAGE


@dataclass
class ActiveJob:
    """The Job occupying the single execution slot."""

    job: Job
    switch_confirmed: bool = False
    # Resolved by the host's command_executed reply to the in-flight switch.
    switch_future: asyncio.Future[None] | None = None
    started_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    def matches(self, bot_id: str | None, chat_id: int | None) -> bool:
        """Whether a host event for (bot_id, chat_id) belongs to this job."""
        if bot_id is not None and str(bot_id) != self.job.bot.id:
            return False
        if chat_id is not None and str(chat_id) != str(self.job.chat_id):
            return False
        return True


@dataclass(frozen=True)
class InboundMessage:
    """A user message received from the messaging gateway."""

    chat_id: int
    user_id: int | None
    text: str = ""
    attachments: tuple[Attachment, ...] = ()
    burst_id: str | None = None  # media_group_id; None when sent alone
    date: datetime | None = None
    username: str = ""
    message_id: int | None = None

    @property
    def is_command(self) -> bool:
        return self.text.startswith("/") and not self.attachments
