"""
Constants for the dgrelay server.

These values are hardcoded and not configurable through the config file or CLI arguments.
"""

LIVE_TRANSCRIPTION_PATH = "/api/live-transcription"
"""Path clients upgrade on to open a relay session."""

SESSION_PATH = "/api/session"
"""Path that issues session credentials."""

METADATA_PATH = "/api/metadata"
"""Path that serves the [meta] table of the metadata file."""

HEALTH_PATH = "/health"
"""Liveness endpoint."""

ACCESS_TOKEN_PREFIX = "access_token."
"""Subprotocol prefix carrying the session credential."""

SESSION_TOKEN_ALGORITHM = "HS256"
"""Signing algorithm for session credentials."""

UPSTREAM_AUTH_PARAM = "token"
"""Upstream query parameter carrying the server-held API key."""

REQUIRED_OPTION_DEFAULTS: dict[str, str] = {
  "model": "nova-3",
  "language": "en",
  "encoding": "linear16",
  "sample_rate": "16000",
  "channels": "1",
  "smart_format": "true",
}
"""Transcription options always sent upstream, with the value used when the client omits one."""

OPTIONAL_OPTIONS: tuple[str, ...] = ("punctuate", "diarize", "filler_words")
"""Transcription options sent upstream only when the client provides them."""

CLIENT_DISCONNECTED_REASON = "Client disconnected"
UPSTREAM_FAILED_REASON = "Upstream connection failed"
UPSTREAM_ERROR_REASON = "Upstream connection error"
SHUTDOWN_REASON = "Server shutting down"
RELAY_ERROR_REASON = "Relay error"
