"""Pydantic schema for ~/.tavern-bridge/config.yaml

Default values here MUST match the canonical constants in conventions.py.
conventions.py is the source of truth for filenames, paths and protocol
defaults; this schema defines the shape of config.yaml.
"""

import re

from pydantic import BaseModel, Field, field_validator

from . import conventions

# <digits>:<secret>, the shape of every Telegram bot token.
_TOKEN_RE = re.compile(r"^\d+:[A-Za-z0-9_-]+$")
_PLACEHOLDER_MARKER = "YOUR_"


class ServerConfig(BaseModel):
    host: str = conventions.SERVER_DEFAULT_HOST
    port: int = conventions.SERVER_DEFAULT_PORT


class BehaviorConfig(BaseModel):
    """Timing and text-shaping knobs for the relay."""

    debounce_seconds: float = conventions.DEBOUNCE_SECONDS
    media_group_delay_ms: int = conventions.MEDIA_GROUP_DELAY_MS
    stream_throttle_seconds: float = conventions.STREAM_THROTTLE_SECONDS
    # "{{date}}" is replaced with the message time (YYYY-MM-DD HH:MM).
    user_message_format: str = ""
    # Stripped from every text the generation host sends back.
    bot_message_filter_regex: str = ""
    message_split_char: str = conventions.DEFAULT_SPLIT_CHAR


class BotConfig(BaseModel):
    token: str
    character_name: str
    connection_profile: str | None = None

    @field_validator("token")
    @classmethod
    def _check_token(cls, value: str) -> str:
        value = value.strip()
        if _PLACEHOLDER_MARKER in value:
            raise ValueError("bot token is still a placeholder")
        if not _TOKEN_RE.match(value):
            raise ValueError("bot token must look like '<digits>:<secret>'")
        return value

    @field_validator("character_name")
    @classmethod
    def _check_character(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("character_name must not be empty")
        return value

    @field_validator("connection_profile")
    @classmethod
    def _blank_profile_is_none(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value

    @property
    def bot_id(self) -> str:
        return self.token.split(":", 1)[0]


class BridgeConfig(BaseModel):
    """Root config model for ~/.tavern-bridge/config.yaml."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    allowed_user_ids: list[int] = Field(default_factory=list)
    behavior: BehaviorConfig = Field(default_factory=BehaviorConfig)
    bots: list[BotConfig] = Field(default_factory=list, validate_default=True)

    @field_validator("bots")
    @classmethod
    def _need_bots(cls, value: list[BotConfig]) -> list[BotConfig]:
        if not value:
            raise ValueError("at least one bot must be configured")
        ids = [bot.bot_id for bot in value]
        if len(set(ids)) != len(ids):
            raise ValueError("bot tokens must be unique")
        return value
