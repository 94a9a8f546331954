"""Config I/O for config.yaml."""

import logging
import os
from pathlib import Path

import yaml
from pydantic import ValidationError

from . import conventions
from .errors import ConfigError
from .schema import BridgeConfig

logger = logging.getLogger(__name__)


def bridge_home() -> Path:
    """Return ~/.tavern-bridge, expanded."""
    return Path(conventions.BRIDGE_HOME).expanduser()


def config_path(override: str | Path | None = None) -> Path:
    """Resolve the config file: explicit override > env var > default."""
    if override:
        return Path(override).expanduser()
    env = os.environ.get(conventions.CONFIG_PATH_ENV)
    if env:
        return Path(env).expanduser()
    return bridge_home() / conventions.CONFIG_FILENAME


def _port_override() -> int | None:
    for name in conventions.PORT_ENV_VARS:
        raw = os.environ.get(name)
        if not raw:
            continue
        try:
            return int(raw)
        except ValueError:
            logger.warning("Ignoring non-numeric %s=%r", name, raw)
    return None


def load_config(path: str | Path | None = None) -> BridgeConfig:
    """Load and validate config.yaml.

    Unlike optional settings files, the bridge cannot run without bots, so
    every problem is raised as ConfigError rather than papered over with
    defaults.
    """
    resolved = config_path(path)
    if not resolved.exists():
        raise ConfigError(f"Config file not found: {resolved}")

    try:
        data = yaml.safe_load(resolved.read_text())
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {resolved}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {resolved} must contain a mapping")

    try:
        config = BridgeConfig(**data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config at {resolved}: {exc}") from exc

    port = _port_override()
    if port is not None:
        config.server.port = port

    logger.info("Loaded config from %s (%d bots)", resolved, len(config.bots))
    return config
