"""
Relay session: one client connection paired with one upstream connection.

The client side is pumped by the connection handler task that calls `run`; the upstream
side gets its own task. Every I/O completion on either side goes through `advance` and the
resulting action is carried out before the pump reads its next frame, which keeps frames
from one source in order.
"""

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, TypeAlias

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.frames import CloseCode

from dgrelay.config import RelayConfig
from dgrelay.constants import (
  CLIENT_DISCONNECTED_REASON,
  RELAY_ERROR_REASON,
  SHUTDOWN_REASON,
  UPSTREAM_ERROR_REASON,
  UPSTREAM_FAILED_REASON,
)
from dgrelay.logs import get_logger
from dgrelay.relay.channel import Channel, Frame, deliver, is_transport_failure, propagated_close
from dgrelay.relay.state import RelayAction, RelayEvent, RelayState, advance
from dgrelay.upstream import ConnectionOptions, build_upstream_url

if TYPE_CHECKING:
  from dgrelay.registry import SessionRegistry

UpstreamConnector: TypeAlias = Callable[[str, float], Awaitable[Channel]]

LOG_EVERY_N_FRAMES = 10


async def connect_upstream(url: str, open_timeout: float) -> Channel:
  """Open the upstream WebSocket. The credential is in the URL, no custom headers needed."""
  return await connect(url, open_timeout=open_timeout)


class RelaySession:
  """
  Forwards frames between a client and the upstream transcription service.

  The session never interprets payloads, never buffers frames sent before the upstream
  handshake completes, and never reconnects. Whichever side closes first decides the
  close code the other side receives.
  """

  def __init__(
    self,
    client: Channel,
    options: ConnectionOptions,
    config: RelayConfig,
    registry: "SessionRegistry",
    connector: UpstreamConnector = connect_upstream,
  ) -> None:
    self.id = uuid.uuid4().hex[:8]
    self.client = client
    self.options = options
    self.upstream: Channel | None = None
    self.state = RelayState.OPENING

    self._config = config
    self._registry = registry
    self._connector = connector
    self._handle: int | None = None
    self._upstream_task: asyncio.Task | None = None
    self._client_frames = 0
    self._upstream_frames = 0
    self.logger = get_logger("relay", session=self.id)

  async def run(self) -> None:
    """Relay until both channels are closed."""
    self._handle = self._registry.register(self)
    self.logger.info(
      "Client connected, opening upstream",
      model=self.options.resolved("model"),
      language=self.options.resolved("language"),
      encoding=self.options.resolved("encoding"),
      sample_rate=self.options.resolved("sample_rate"),
      channels=self.options.resolved("channels"),
    )

    url = build_upstream_url(
      self._config.upstream_url,
      self._config.upstream_api_key.get_secret_value(),
      self.options,
    )
    self._upstream_task = asyncio.create_task(
      self._pump_upstream(url), name=f"relay-upstream-{self.id}"
    )

    try:
      await self._pump_client()
      await asyncio.wait([self._upstream_task])
      if not self._upstream_task.cancelled():
        # Hand upstream pump failures to the connection wrapper.
        self._upstream_task.result()
    finally:
      self._registry.remove(self._handle)
      if not self._upstream_task.done():
        await self._close_upstream()
        self._upstream_task.cancel()
      await self._handle_event(RelayEvent.CHANNELS_RELEASED)
      self.logger.info(
        "Relay session closed",
        client_frames=self._client_frames,
        upstream_frames=self._upstream_frames,
      )

  async def shutdown(self) -> None:
    """Close both sides on behalf of the server."""
    await self._handle_event(RelayEvent.SHUTDOWN)

  async def _pump_client(self) -> None:
    try:
      async for message in self.client:
        self._client_frames += 1
        await self._handle_event(RelayEvent.CLIENT_MESSAGE, message)
    except ConnectionClosed:
      pass

    self.logger.info(
      "Client disconnected", code=self.client.close_code, reason=self.client.close_reason
    )
    if self._handle is not None:
      self._registry.remove(self._handle)
    await self._handle_event(RelayEvent.CLIENT_CLOSED)

  async def _pump_upstream(self, url: str) -> None:
    try:
      upstream = await self._connector(url, self._config.upstream_open_timeout)
    except (OSError, TimeoutError, WebSocketException) as e:
      self.logger.error("Upstream connection failed", error=str(e))
      await self._handle_event(RelayEvent.UPSTREAM_FAILED)
      return

    self.upstream = upstream
    self.logger.info("Connected to upstream")
    await self._handle_event(RelayEvent.UPSTREAM_OPENED)

    try:
      async for message in upstream:
        self._upstream_frames += 1
        if self._upstream_frames % LOG_EVERY_N_FRAMES == 0:
          self.logger.debug(
            "Upstream message",
            count=self._upstream_frames,
            size=len(message) if isinstance(message, str) else "binary",
          )
        await self._handle_event(RelayEvent.UPSTREAM_MESSAGE, message)
    except ConnectionClosed:
      pass
    except Exception:
      # Release both sides before failing the session.
      await self._handle_event(RelayEvent.UPSTREAM_ERROR)
      await upstream.close(CloseCode.INTERNAL_ERROR, RELAY_ERROR_REASON)
      raise

    code, reason = upstream.close_code, upstream.close_reason
    if is_transport_failure(code):
      self.logger.error("Upstream connection error", code=code)
      await self._handle_event(RelayEvent.UPSTREAM_ERROR)
    else:
      self.logger.info("Upstream connection closed", code=code, reason=reason)
      await self._handle_event(RelayEvent.UPSTREAM_CLOSED)

  async def _handle_event(self, event: RelayEvent, message: Frame | None = None) -> None:
    transition = advance(self.state, event)
    if transition.state is not self.state:
      self.logger.debug(
        "Relay state change", trigger=event, previous=self.state, current=transition.state
      )
      self.state = transition.state

    match transition.action:
      case RelayAction.NONE:
        pass

      case RelayAction.DROP:
        self.logger.debug("Dropping frame", trigger=event, state=self.state)

      case RelayAction.FORWARD_TO_UPSTREAM:
        assert self.upstream is not None and message is not None
        delivery = await deliver(self.upstream, message)
        if not delivery.delivered:
          self.logger.debug("Upstream gone, client frame dropped")

      case RelayAction.FORWARD_TO_CLIENT:
        assert message is not None
        # A vanished client is not an error here: its close event follows and cleans up.
        delivery = await deliver(self.client, message)
        if not delivery.delivered:
          self.logger.debug("Client gone, upstream frame dropped")

      case RelayAction.FAIL_CLIENT:
        reason = (
          UPSTREAM_FAILED_REASON if event is RelayEvent.UPSTREAM_FAILED else UPSTREAM_ERROR_REASON
        )
        await self.client.close(CloseCode.INTERNAL_ERROR, reason)

      case RelayAction.PROPAGATE_CLOSE:
        assert self.upstream is not None
        frame = propagated_close(self.upstream.close_code, self.upstream.close_reason)
        await self.client.close(frame.code, frame.reason)

      case RelayAction.CLOSE_UPSTREAM:
        await self._close_upstream()

      case RelayAction.CLOSE_BOTH:
        await self._close_both()

  async def _close_upstream(self, reason: str = CLIENT_DISCONNECTED_REASON) -> None:
    if self.upstream is not None:
      await self.upstream.close(CloseCode.NORMAL_CLOSURE, reason)
    elif self._upstream_task is not None and not self._upstream_task.done():
      # Handshake still in flight: abandon it rather than open a connection nobody uses.
      self._upstream_task.cancel()

  async def _close_both(self) -> None:
    errors: list[Exception] = []

    try:
      await self.client.close(CloseCode.GOING_AWAY, SHUTDOWN_REASON)
    except Exception as e:
      self.logger.exception("Error closing client connection")
      errors.append(e)

    try:
      await self._close_upstream(SHUTDOWN_REASON)
    except Exception as e:
      self.logger.exception("Error closing upstream connection")
      errors.append(e)

    if errors:
      raise errors[0]
