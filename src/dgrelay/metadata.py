import tomllib
from pathlib import Path
from typing import Any

from dgrelay.logs import get_logger

logger = get_logger("meta")


class MetadataError(Exception):
  """Raised when the metadata file cannot provide a [meta] table."""


def load_metadata(path: Path) -> dict[str, Any]:
  """
  Read the [meta] table of a TOML metadata file.

  :raises MetadataError: When the file is missing, unreadable, not valid TOML, or has no
    [meta] table.
  """
  try:
    with open(path, "rb") as file:
      document = tomllib.load(file)
  except (OSError, tomllib.TOMLDecodeError) as e:
    logger.error("Error reading metadata", path=str(path), error=str(e))
    raise MetadataError(f"Failed to read metadata from {path.name}") from e

  meta = document.get("meta")
  if not isinstance(meta, dict):
    raise MetadataError(f"Missing [meta] section in {path.name}")

  return meta
