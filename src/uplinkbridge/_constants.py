"""Internal constants for the Uplink API and the MQTT topic layout."""

from __future__ import annotations

from pathlib import Path

API_BASE = "https://api.nibeuplink.com"
TOKEN_ENDPOINT = "/oauth/token"
AUTHORIZE_ENDPOINT = "/oauth/authorize"
API_ENDPOINT = "/api/v1/systems"
DEFAULT_SCOPE = "READSYSTEM+WRITESYSTEM"

APP_HEADERS: dict[str, str] = {
    "Accept": "application/json",
}

REQUEST_TIMEOUT = 15  # seconds

TOKEN_DIR = Path.home() / ".config" / "uplinkbridge"
TOKEN_FILE_PREFIX = ".oauth_token_"

# The API pages parameter reads at 15 ids per request.
MAX_BATCH_SIZE = 15

DEFAULT_TOPIC_PREFIX = "Bridge"
MQTT_CLIENT_ID = "uplinkbridge"
MQTT_PORT = 1883

DEFAULT_INTERVAL = 60  # seconds between polling cycles
POLL_SPACING = 5  # seconds between outbound API calls within a cycle

BACKOFF_INITIAL = 1.0
BACKOFF_MAX = 60.0

HEARTBEAT = "ON"
