"""
Channel protocol shared by both ends of a relay session, plus the send and close helpers
the session uses on them.

Both `websockets.asyncio.server.ServerConnection` (client side) and
`websockets.asyncio.client.ClientConnection` (upstream side) satisfy `Channel`.
"""

from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol, TypeAlias

from websockets.exceptions import ConnectionClosed
from websockets.frames import CloseCode

from dgrelay.constants import UPSTREAM_ERROR_REASON

Frame: TypeAlias = str | bytes
"""A WebSocket message. str travels as a text frame, bytes as a binary frame."""


class Channel(Protocol):
  """One WebSocket connection, seen from the relay."""

  @property
  def close_code(self) -> int | None:
    """Close code once the connection is closed, 1006 when it closed abnormally."""
    ...

  @property
  def close_reason(self) -> str | None: ...

  def __aiter__(self) -> AsyncIterator[Frame]: ...

  async def send(self, message: Frame) -> None: ...

  async def close(self, code: int = CloseCode.NORMAL_CLOSURE, reason: str = "") -> None: ...


@dataclass(frozen=True)
class Delivery:
  """Outcome of a best-effort send."""

  delivered: bool
  error: ConnectionClosed | None = None


async def deliver(channel: Channel, message: Frame) -> Delivery:
  """
  Send a frame without raising when the destination is already gone.

  The caller decides what a failed delivery means. The frame type is preserved since
  `send` picks text or binary framing from the Python type.
  """
  try:
    await channel.send(message)
  except ConnectionClosed as e:
    return Delivery(delivered=False, error=e)
  return Delivery(delivered=True)


# Close codes that a peer may report but that must never be put on the wire.
_TRANSPORT_FAILURE_CODES = {CloseCode.ABNORMAL_CLOSURE, CloseCode.TLS_HANDSHAKE}


@dataclass(frozen=True)
class CloseFrame:
  code: int
  reason: str = ""


def is_transport_failure(code: int | None) -> bool:
  """True when a channel ended without a close frame from its peer."""
  return code is None or code in _TRANSPORT_FAILURE_CODES


def propagated_close(code: int | None, reason: str | None) -> CloseFrame:
  """
  Close frame to forward to the other side of the relay.

  The peer's code and reason are kept verbatim. A peer that closed without a status code
  (1005) is forwarded as a normal closure with its reason. Transport failures have no
  code to forward and become the relay's own error.
  """
  if is_transport_failure(code):
    return CloseFrame(CloseCode.INTERNAL_ERROR, UPSTREAM_ERROR_REASON)
  if code == CloseCode.NO_STATUS_RCVD:
    return CloseFrame(CloseCode.NORMAL_CLOSURE, reason or "")
  return CloseFrame(int(code), reason or "")
