from collections.abc import Awaitable, Callable

from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed, InvalidMessage

from dgrelay.logs import get_logger
from dgrelay.shutdown import ShutdownCoordinator


class WebSocketServer:
  """Wrapper around the WebSocket listener that keeps per-connection failures contained"""

  def __init__(
    self,
    handler: Callable[[ServerConnection], Awaitable[None]],
    host: str,
    port: int,
    **kwargs,
  ):
    self.handler = handler
    self.host = host
    self.port = port
    self.kwargs = kwargs
    self.logger = get_logger("ws/server")

  async def serve_until_shutdown(self, coordinator: ShutdownCoordinator) -> None:
    """Accept connections until the coordinator has finished shutting down."""
    self.logger.info(f"Starting WebSocket server on {self.host}:{self.port}")
    async with serve(
      self.error_handling_wrapper,
      self.host,
      self.port,
      **self.kwargs,
    ) as server:
      coordinator.attach(server)
      for sock in server.sockets:
        self.logger.info("Listening", address=sock.getsockname())
      await coordinator.wait()

  async def error_handling_wrapper(self, websocket: ServerConnection):
    """Wrapper that catches and logs connection errors without crashing"""
    addr = websocket.remote_address

    try:
      self.logger.debug("Connection begin", address=addr, websocket_id=websocket.id)
      await self.handler(websocket)
    except InvalidMessage:
      self.logger.debug("Connection from failed handshake", websocket_id=websocket.id)
    except ConnectionClosed as e:
      self.logger.debug("Connection closed", error=e, websocket_id=websocket.id)
    except (KeyboardInterrupt, SystemExit):
      raise
    except Exception:
      self.logger.exception("Connection unexpected error", websocket_id=websocket.id)
