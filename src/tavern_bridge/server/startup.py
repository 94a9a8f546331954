"""Logging set-up and the start-up banner.

Console output is human-readable; the file under ~/.tavern-bridge is one
JSON object per line. Telegram bot tokens travel inside Bot API URLs, and
httpx puts those URLs in its log lines and exception messages, so every
handler installed here masks tokens before anything is written.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import UTC, datetime
from importlib.metadata import PackageNotFoundError, version
from logging.handlers import RotatingFileHandler
from pathlib import Path

from tavern_bridge import conventions
from tavern_bridge.schema import BridgeConfig

logger = logging.getLogger(__name__)

_TOKEN_IN_TEXT = re.compile(r"(\d{5,}:)[A-Za-z0-9_-]{20,}")
_LOG_BYTES = 10 * 1024 * 1024
_LOG_BACKUPS = 3
# Loggers that are chatty at INFO (httpx logs every long-poll request).
_NOISY_LOGGERS = ("httpx", "httpcore")


def log_file_path() -> Path:
    return Path(conventions.BRIDGE_HOME).expanduser() / conventions.SERVER_LOG_FILE


def redact_tokens(text: str) -> str:
    """Mask the secret half of any bot token in ``text``."""
    return _TOKEN_IN_TEXT.sub(r"\1***", text)


class JSONFormatter(logging.Formatter):
    """One JSON object per record, tokens masked."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": redact_tokens(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = redact_tokens(self.formatException(record.exc_info))
        return json.dumps(entry)


class RedactingFormatter(logging.Formatter):
    """Console formatter that masks tokens in the rendered line."""

    def format(self, record: logging.LogRecord) -> str:
        return redact_tokens(super().format(record))


def setup_logging(log_file: Path | None = None, level: int = logging.INFO) -> None:
    """Install the console and JSON file handlers on the root logger.

    Calling it again replaces the handlers from the previous call instead of
    stacking duplicates.
    """
    log_file = log_file or log_file_path()
    log_file.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_tavern_bridge", False):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)

    console = logging.StreamHandler()
    console.setFormatter(
        RedactingFormatter(
            "%(asctime)s %(levelname)-8s %(name)s: %(message)s", datefmt="%H:%M:%S"
        )
    )
    json_file = RotatingFileHandler(
        str(log_file), maxBytes=_LOG_BYTES, backupCount=_LOG_BACKUPS
    )
    json_file.setFormatter(JSONFormatter())
    for handler in (console, json_file):
        handler._tavern_bridge = True  # type: ignore[attr-defined]
        root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def package_version() -> str:
    try:
        return version("tavern-bridge")
    except PackageNotFoundError:
        logger.debug("tavern-bridge is not installed, reporting 0.1.0")
        return "0.1.0"


def log_startup_info(
    *,
    host: str,
    port: int,
    config: BridgeConfig,
    logger: logging.Logger,
) -> None:
    """Log version, bind address, bots and allow-list at start-up."""
    logger.info("Tavern Bridge v%s", package_version())
    logger.info("Bind: %s:%d (host endpoint: ws://%s:%d/)", host, port, host, port)
    for bot in config.bots:
        profile = bot.connection_profile or "-"
        logger.info(
            "Bot %s: character=%s profile=%s", bot.bot_id, bot.character_name, profile
        )
    if config.allowed_user_ids:
        logger.info("Allow-list: %d user(s)", len(config.allowed_user_ids))
    else:
        logger.info("Allow-list: empty (all users allowed)")
