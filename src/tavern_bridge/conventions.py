"""Tavern Bridge Conventions

Canonical names, paths and protocol defaults shared by every part of the
bridge. Values that operators tune live in config.yaml (see schema.py);
the defaults for those tunables are defined HERE so schema.py and the
components agree on them.
"""

# --- The Root ---
# Everything the bridge writes lives under this directory.
BRIDGE_HOME = "~/.tavern-bridge"

# --- Configuration ---
CONFIG_FILENAME = "config.yaml"
# Full path: ~/.tavern-bridge/config.yaml
CONFIG_PATH_ENV = "TAVERN_BRIDGE_CONFIG"
PORT_ENV_VARS = ("TAVERN_BRIDGE_PORT", "WSS_PORT")

# --- Server ---
SERVER_DEFAULT_HOST = "127.0.0.1"
SERVER_DEFAULT_PORT = 2333
SERVER_LOG_FILE = "bridge.log"
# Full path: ~/.tavern-bridge/bridge.log

# --- Aggregation ---
DEBOUNCE_SECONDS = 10
MEDIA_GROUP_DELAY_MS = 500
BATCH_PLACEHOLDER_TEXT = "(Batch Request)"

# --- Streaming ---
STREAM_THROTTLE_SECONDS = 2.0
STREAM_PLACEHOLDER_TEXT = "Thinking..."
STREAM_PENDING_SUFFIX = " ..."
CHAT_ACTION_INTERVAL_SECONDS = 4.0
DEFAULT_SPLIT_CHAR = "\n"

# --- Handshake ---
CHARACTER_SWITCH_TIMEOUT = 30.0
PROFILE_SWITCH_TIMEOUT = 15.0
SWITCH_CHARACTER_COMMAND = "switchchar"
SWITCH_PROFILE_COMMAND = "switchmodel"

# --- Telegram ---
TELEGRAM_API_BASE = "https://api.telegram.org"
TELEGRAM_POLL_TIMEOUT = 30
TELEGRAM_POLL_RETRY_SECONDS = 5.0
