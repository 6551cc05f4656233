import asyncio
import signal
from typing import Any, Protocol

from dgrelay.logs import get_logger
from dgrelay.registry import ClosableSession, SessionRegistry


class Listener(Protocol):
  """The part of `websockets.asyncio.server.Server` the coordinator drives."""

  def close(self, close_connections: bool = True) -> None: ...

  async def wait_closed(self) -> None: ...


class ShutdownCoordinator:
  """
  Runs the graceful shutdown sequence exactly once.

  Triggered by SIGINT/SIGTERM, by an exception reported to the event loop's exception
  handler, or by the server when an error escapes its run loop. The sequence stops the
  listener from accepting, closes every registered session independently, then waits for
  the listener to release its socket.
  """

  def __init__(self, registry: SessionRegistry):
    self.registry = registry
    self.reason: str | None = None
    self._listener: Listener | None = None
    self._task: asyncio.Task | None = None
    self._done = asyncio.Event()
    self.logger = get_logger("shutdown")

  def attach(self, listener: Listener) -> None:
    self._listener = listener

  def install(self, loop: asyncio.AbstractEventLoop) -> None:
    """Route termination signals and unhandled loop errors into the shutdown sequence."""
    for sig in (signal.SIGINT, signal.SIGTERM):
      loop.add_signal_handler(sig, self.request_shutdown, sig.name)
    loop.set_exception_handler(self._handle_loop_exception)

  def request_shutdown(self, reason: str) -> asyncio.Task:
    """Start the shutdown sequence, or return the one already running."""
    if self._task is not None:
      self.logger.warning("Shutdown already in progress", reason=reason)
      return self._task

    self.reason = reason
    self._task = asyncio.get_running_loop().create_task(self.shutdown(reason), name="shutdown")
    return self._task

  async def shutdown(self, reason: str) -> None:
    self.logger.info("Starting graceful shutdown", reason=reason)

    if self._listener is not None:
      # Sessions are closed below with their own close codes.
      self._listener.close(close_connections=False)

    await self.close_sessions()

    if self._listener is not None:
      await self._listener.wait_closed()
      self.logger.info("Server stopped")

    self.logger.info("Shutdown complete")
    self._done.set()

  async def close_sessions(self) -> None:
    """Close every registered session. One failing close never blocks the others."""
    entries = self.registry.snapshot()
    self.logger.info(f"Closing {len(entries)} active relay session(s)")
    await asyncio.gather(*(self._close_session(handle, session) for handle, session in entries))

  async def _close_session(self, handle: int, session: ClosableSession) -> None:
    try:
      await session.shutdown()
    except Exception:
      self.logger.exception("Error closing relay session", session=session.id)
    finally:
      self.registry.remove(handle)

  async def wait(self) -> None:
    """Block until the shutdown sequence has completed."""
    await self._done.wait()

  @property
  def is_shutting_down(self) -> bool:
    return self._task is not None

  def _handle_loop_exception(
    self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]
  ) -> None:
    self.logger.error(
      "Unhandled error on event loop",
      message=context.get("message"),
      exc_info=context.get("exception"),
    )
    self.request_shutdown("unhandled_exception")
