import os
import secrets
from collections.abc import Mapping
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator

from dgrelay.logs import get_logger

logger = get_logger("cfg")

DEFAULT_UPSTREAM_URL = "wss://api.deepgram.com/v1/listen"

# Environment variable -> config field. Environment wins over the config file.
ENV_OVERRIDES: dict[str, str] = {
  "DEEPGRAM_API_KEY": "upstream_api_key",
  "DEEPGRAM_STT_URL": "upstream_url",
  "SESSION_SECRET": "session_secret",
  "HOST": "host",
  "PORT": "port",
}


class ConfigurationError(ValueError):
  """Raised when the relay configuration cannot be loaded or is invalid."""


class RelayConfig(BaseModel):
  """Process-wide relay configuration. Read once at startup, immutable thereafter."""

  model_config = ConfigDict(frozen=True, extra="forbid")

  host: str = "0.0.0.0"
  """Interface the listener binds to."""

  port: int = Field(default=8081, ge=0, le=65535)
  """Port the listener binds to. 0 picks a free port."""

  upstream_url: str = DEFAULT_UPSTREAM_URL
  """Streaming endpoint of the transcription service."""

  upstream_api_key: SecretStr
  """Server-held credential for the transcription service. Never sent to clients."""

  session_secret: SecretStr = Field(default_factory=lambda: SecretStr(secrets.token_hex(32)))
  """Signing secret for session credentials. Random per process when unset."""

  session_ttl: int = Field(default=3600, gt=0)
  """Lifetime of an issued session credential, in seconds."""

  upstream_open_timeout: float = Field(default=10.0, gt=0.0)
  """Upper bound on the upstream opening handshake, in seconds."""

  metadata_path: Path = Path("deepgram.toml")
  """TOML file whose [meta] table is served by the metadata endpoint."""

  @field_validator("upstream_url")
  @classmethod
  def validate_upstream_scheme(cls, value: str) -> str:
    if not value.startswith(("ws://", "wss://")):
      raise ValueError(f"upstream_url must be a ws:// or wss:// URL, got {value!r}")
    return value

  @field_validator("upstream_api_key")
  @classmethod
  def validate_api_key_present(cls, value: SecretStr) -> SecretStr:
    if not value.get_secret_value().strip():
      raise ValueError("upstream_api_key cannot be empty")
    return value

  def pretty_print(self) -> None:
    """Log the effective configuration at INFO level, with secrets masked."""
    logger.info("=" * 60)
    logger.info("DGRELAY CONFIGURATION")
    logger.info("=" * 60)
    logger.info(f"  Listen: {self.host}:{self.port}")
    logger.info(f"  Upstream URL: {self.upstream_url}")
    logger.info(f"  Upstream API Key: {self.upstream_api_key}")
    logger.info(f"  Session Secret: {self.session_secret}")
    logger.info(f"  Session TTL: {self.session_ttl}s")
    logger.info(f"  Upstream Open Timeout: {self.upstream_open_timeout}s")
    logger.info(f"  Metadata Path: {self.metadata_path}")
    logger.info("=" * 60)


def _read_config_file(config_path: Path) -> dict:
  logger.info("Loading dgrelay configuration", path=str(config_path))

  if not config_path.is_file():
    raise ConfigurationError(f"Configuration file not found: {config_path}")

  try:
    with open(config_path, "r", encoding="utf-8") as file:
      config_data = yaml.safe_load(file)
  except yaml.YAMLError as e:
    raise ConfigurationError(f"Invalid YAML in configuration file: {e}") from e
  except OSError as e:
    raise ConfigurationError(f"Error reading configuration file: {e}") from e

  if config_data is None:
    return {}

  if not isinstance(config_data, dict):
    raise ConfigurationError("Configuration file must contain a YAML dictionary")

  return config_data


def load_config(
  config_path: Path | None = None, env: Mapping[str, str] | None = None
) -> RelayConfig:
  """
  Build the relay configuration from an optional YAML file and the environment.

  :param config_path: YAML file to read, or None to rely on defaults and the environment.
  :param env: Environment to read overrides from. Defaults to os.environ.
  :raises ConfigurationError: When the file is unreadable or the result fails validation.
  """
  env = os.environ if env is None else env
  config_data = _read_config_file(config_path) if config_path is not None else {}

  for env_var, field_name in ENV_OVERRIDES.items():
    value = env.get(env_var)
    if value:
      config_data[field_name] = value

  try:
    config = RelayConfig.model_validate(config_data)
  except ValidationError as e:
    raise ConfigurationError(f"Invalid relay configuration: {e}") from e

  config.pretty_print()
  return config
