import asyncio

from websockets.asyncio.server import ServerConnection
from websockets.frames import CloseCode

from dgrelay.config import RelayConfig
from dgrelay.constants import (
  HEALTH_PATH,
  LIVE_TRANSCRIPTION_PATH,
  METADATA_PATH,
  SESSION_PATH,
  SHUTDOWN_REASON,
)
from dgrelay.logs import get_logger
from dgrelay.registry import SessionRegistry
from dgrelay.relay import RelaySession, UpstreamConnector, connect_upstream
from dgrelay.routes import HttpRoutes
from dgrelay.shutdown import ShutdownCoordinator
from dgrelay.websocket import WebSocketServer


class RelayServer:
  """
  The relay process: one listener serving the HTTP endpoints and the live transcription
  WebSocket, the registry of live sessions, and the shutdown coordinator.
  """

  def __init__(self, config: RelayConfig, connector: UpstreamConnector = connect_upstream):
    self.config = config
    self.registry = SessionRegistry()
    self.coordinator = ShutdownCoordinator(self.registry)
    self.routes = HttpRoutes(config)
    self._connector = connector
    self.logger = get_logger("server")

  async def handle_connection(self, websocket: ServerConnection) -> None:
    """Run a relay session for a connection that passed the upgrade gate."""
    grant = self.routes.grants.pop(websocket, None)
    if grant is None:
      # process_request only lets authorized upgrades through, so this is a wiring bug.
      self.logger.error("Upgrade without an authorization grant", websocket_id=websocket.id)
      await websocket.close(CloseCode.POLICY_VIOLATION, "Unauthorized")
      return

    if self.coordinator.is_shutting_down:
      await websocket.close(CloseCode.GOING_AWAY, SHUTDOWN_REASON)
      return

    session = RelaySession(websocket, grant.options, self.config, self.registry, self._connector)
    await session.run()

  async def run(self) -> None:
    """Serve until a shutdown signal or an unrecoverable error, then shut down gracefully."""
    self.coordinator.install(asyncio.get_running_loop())

    websocket_server = WebSocketServer(
      self.handle_connection,
      self.config.host,
      self.config.port,
      process_request=self.routes.process_request,
      select_subprotocol=self.routes.select_subprotocol,
    )
    self.log_routes()

    try:
      await websocket_server.serve_until_shutdown(self.coordinator)
    except (KeyboardInterrupt, SystemExit):
      raise
    except Exception:
      self.logger.exception("Unrecoverable server error")
      await self.coordinator.request_shutdown("fatal_error")

  def log_routes(self) -> None:
    self.logger.info("=" * 60)
    self.logger.info(f"Relay server starting on {self.config.host}:{self.config.port}")
    self.logger.info(f"GET  {SESSION_PATH}")
    self.logger.info(f"WS   {LIVE_TRANSCRIPTION_PATH} (auth required)")
    self.logger.info(f"GET  {METADATA_PATH}")
    self.logger.info(f"GET  {HEALTH_PATH}")
    self.logger.info("=" * 60)
