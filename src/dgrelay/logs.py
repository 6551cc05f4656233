"""Centralized logging configuration for dgrelay using structlog."""

import logging
import time
from typing import Any

import structlog
from structlog.dev import (
  BRIGHT,
  DIM,
  RESET_ALL,
  Column,
  ConsoleRenderer,
  KeyValueColumnFormatter,
)
from structlog.typing import EventDict, Processor, WrappedLogger

# Store program start time for relative timestamps
_PROGRAM_START_TIME = time.time()


def hex_to_ansi_fg(hex_color: int) -> str:
  """Convert hex color (e.g., 0xad8a89) to ANSI 24-bit foreground escape code."""
  r = (hex_color >> 16) & 0xFF
  g = (hex_color >> 8) & 0xFF
  b = hex_color & 0xFF
  return f"\x1b[38;2;{r};{g};{b}m"


_RESET = "\x1b[0m"

# (label, label colour, bracket colour)
_LEVEL_STYLES: dict[str, tuple[str, int, int]] = {
  "debug": ("dbug", 0x908CAA, 0x827E99),
  "info": ("info", 0x9CCFD8, 0x8CBAC2),
  "warning": ("warn", 0xF6C177, 0xDDAE6B),
  "error": ("eror", 0xEB6F92, 0xD46483),
  "exception": ("exc!", 0xEB6F92, 0xD46483),
  "critical": ("crit", 0xEB6F92, 0xD46483),
}


def _relative_time_processor(
  _logger: WrappedLogger, _method_name: str, event_dict: EventDict
) -> EventDict:
  """Add relative timestamp since program start, formatted as [h:][m:]s.ms."""
  elapsed = time.time() - _PROGRAM_START_TIME

  hours = int(elapsed // 3600)
  minutes = int((elapsed % 3600) // 60)
  seconds = elapsed % 60

  parts = []
  if hours:
    parts.append(f"{hours:02d}")
  if hours or minutes:
    parts.append(f"{minutes:02d}")
  parts.append(f"{seconds:06.3f}")

  event_dict["timestamp"] = "+" + ":".join(parts)
  return event_dict


def _compact_level_processor(
  _logger: WrappedLogger, _method_name: str, event_dict: EventDict
) -> EventDict:
  """Convert log levels to a compact 4-character format with 24-bit colors."""
  level = event_dict.get("level")
  if level in _LEVEL_STYLES:
    label, text_color, bracket_color = _LEVEL_STYLES[level]
    bracket = hex_to_ansi_fg(bracket_color)
    event_dict["level"] = (
      f"{bracket}[{_RESET}{hex_to_ansi_fg(text_color)}{label}{_RESET}{bracket}]{_RESET}"
    )
  return event_dict


def _console_renderer() -> ConsoleRenderer:
  logger_name_formatter = KeyValueColumnFormatter(
    key_style=None,
    value_style=hex_to_ansi_fg(0x7D6B95),
    reset_style=RESET_ALL,
    value_repr=str,
    prefix="[",
    postfix="]",
  )

  return ConsoleRenderer(
    colors=True,
    columns=[
      # Default formatter for key=value pairs
      Column(
        "",
        KeyValueColumnFormatter(
          key_style=hex_to_ansi_fg(0x6E6A86),
          value_style=hex_to_ansi_fg(0xF6C177),
          reset_style=RESET_ALL,
          value_repr=str,
        ),
      ),
      Column(
        "timestamp",
        KeyValueColumnFormatter(
          key_style=None,
          value_style=DIM,
          reset_style=RESET_ALL,
          value_repr=str,
        ),
      ),
      Column(
        "level",
        KeyValueColumnFormatter(
          key_style=None,
          value_style="",
          reset_style=RESET_ALL,
          value_repr=str,
        ),
      ),
      Column("logger", logger_name_formatter),
      Column(
        "event",
        KeyValueColumnFormatter(
          key_style=None,
          value_style=BRIGHT,
          reset_style=RESET_ALL,
          value_repr=str,
          width=30,
        ),
      ),
    ],
  )


def setup_logging(
  level: str = "INFO", json_output: bool = False, correlation_id: str | None = None
) -> None:
  """Configure structured logging for the application."""

  shared_processors: list[Processor] = [
    structlog.stdlib.filter_by_level,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.PositionalArgumentsFormatter(),
    structlog.stdlib.ExtraAdder(),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
  ]

  # Add correlation ID if provided
  if correlation_id:
    shared_processors.insert(0, structlog.contextvars.merge_contextvars)
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)

  if json_output:
    shared_processors.append(structlog.processors.TimeStamper(fmt="iso"))
    log_renderer: Processor = structlog.processors.JSONRenderer()
  else:
    shared_processors.extend([_compact_level_processor, _relative_time_processor])
    log_renderer = _console_renderer()

  structlog.configure(
    processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
    wrapper_class=structlog.stdlib.BoundLogger,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
  )

  formatter = structlog.stdlib.ProcessorFormatter(
    foreign_pre_chain=shared_processors,
    processors=[
      structlog.stdlib.ProcessorFormatter.remove_processors_meta,
      log_renderer,
    ],
  )

  handler = logging.StreamHandler()
  handler.setFormatter(formatter)
  root_logger = logging.getLogger()
  root_logger.handlers.clear()
  root_logger.addHandler(handler)
  root_logger.setLevel(level)

  # Propagate the handshake/keepalive chatter of websockets only when it matters
  for liblog in [logging.getLogger(_liblog) for _liblog in ["websockets"]]:
    liblog.handlers.clear()
    liblog.setLevel(logging.WARNING)
    liblog.propagate = True


def get_logger(
  name: str | None = None, *args: list[Any], **initial_values: Any
) -> structlog.stdlib.BoundLogger:
  """Get a structured logger instance."""
  return structlog.get_logger(*([name] + list(args)), **initial_values)
