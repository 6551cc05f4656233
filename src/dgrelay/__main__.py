import argparse
import asyncio
import os
import sys
from pathlib import Path

from dgrelay.logs import get_logger, setup_logging


def get_env_or_default(env_var, default, var_type: type = str):
  """Get environment variable with type conversion and default fallback."""
  value = os.getenv(env_var)
  if value is None:
    return default

  if var_type is bool:
    return value.lower() in ("true", "1", "yes", "on")
  elif var_type is int:
    try:
      return int(value)
    except ValueError:
      return default
  else:
    return value


def build_parser() -> argparse.ArgumentParser:
  parser = argparse.ArgumentParser(
    prog="dgrelay", description="WebSocket relay to a live transcription service."
  )
  parser.add_argument(
    "--host",
    type=str,
    default=get_env_or_default("HOST", None),
    help="Interface to bind. (Env: HOST)",
  )
  parser.add_argument(
    "--port",
    "-p",
    type=int,
    default=get_env_or_default("PORT", None, int),
    help="Port to listen on. (Env: PORT)",
  )
  parser.add_argument(
    "--config",
    type=str,
    default=get_env_or_default("DGRELAY_CONFIG", None),
    help="Path to an optional YAML configuration file. (Env: DGRELAY_CONFIG)",
  )
  parser.add_argument(
    "--json_logs",
    action="store_true",
    default=get_env_or_default("JSON_LOGS", False, bool),
    help="Output logs in JSON format. (Env: JSON_LOGS)",
  )
  parser.add_argument(
    "--correlation_id",
    type=str,
    default=get_env_or_default("CORRELATION_ID", None),
    help="Correlation ID for log tracing. (Env: CORRELATION_ID)",
  )
  return parser


async def main(argv: list[str] | None = None) -> int:
  args = build_parser().parse_args(argv)

  log_level = os.getenv("LOG_LEVEL", "INFO").upper()
  setup_logging(level=log_level, json_output=args.json_logs, correlation_id=args.correlation_id)
  logger = get_logger("main")

  from dgrelay.config import ConfigurationError, load_config
  from dgrelay.server import RelayServer

  # Command line flags win over both the environment and the config file.
  env = dict(os.environ)
  if args.host is not None:
    env["HOST"] = args.host
  if args.port is not None:
    env["PORT"] = str(args.port)

  if not env.get("DEEPGRAM_API_KEY") and not args.config:
    logger.error(
      "Deepgram API key not found. Set DEEPGRAM_API_KEY in the environment or "
      "upstream_api_key in the configuration file. "
      "Get an API key at https://console.deepgram.com"
    )
    return 1

  try:
    config = load_config(Path(args.config) if args.config else None, env)
  except ConfigurationError as e:
    logger.error("Configuration validation failed", error=str(e), config_path=args.config)
    return 1

  server = RelayServer(config)
  await server.run()
  return 0


def run() -> None:
  """Console script entry point."""
  try:
    sys.exit(asyncio.run(main()))
  except KeyboardInterrupt:
    pass


if __name__ == "__main__":
  run()
