"""Exception hierarchy for the bridge.

Nothing raised here is fatal to the process: every error degrades to a
logged message plus forward progress of the job queue.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for all bridge errors."""


class ConfigError(BridgeError):
    """The configuration file is missing or invalid."""


class HandshakeError(BridgeError):
    """A context or profile switch failed or timed out."""


class HostUnavailableError(BridgeError):
    """The generation host is not connected (or the send failed)."""


class MalformedEventError(BridgeError):
    """An inbound host event could not be parsed or lacks required fields.

    ``bot_id`` and ``chat_id`` are filled in when the event carried enough
    information to identify the conversation it belonged to.
    """

    def __init__(
        self,
        message: str,
        bot_id: str | None = None,
        chat_id: int | str | None = None,
    ) -> None:
        super().__init__(message)
        self.bot_id = bot_id
        self.chat_id = chat_id


class GatewayError(BridgeError):
    """A messaging gateway call (send, edit, download) failed."""


class MessageNotModifiedError(GatewayError):
    """The edit was rejected because the content is unchanged.

    Callers treat this as success.
    """
