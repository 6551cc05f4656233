import itertools
import time
from typing import Protocol

from dgrelay.logs import get_logger


class ClosableSession(Protocol):
  """What the registry needs from a session: something to call at shutdown."""

  id: str

  async def shutdown(self) -> None: ...


class SessionRegistry:
  """
  Handle table of live relay sessions, owned by the server.

  Sessions register when their client is accepted and remove themselves when their client
  goes away. The table never owns a session; it only lets the shutdown path find the ones
  that are still open. Handles are never reused.
  """

  def __init__(self):
    self._sessions: dict[int, ClosableSession] = {}
    self._start_times: dict[int, float] = {}
    self._next_handle = itertools.count(1)
    self.logger = get_logger("registry")

  def register(self, session: ClosableSession) -> int:
    """
    Adds a session to the table.

    Returns:
        The opaque handle the session must use to remove itself.
    """
    handle = next(self._next_handle)
    self._sessions[handle] = session
    self._start_times[handle] = time.monotonic()
    self.logger.debug("Session registered", session=session.id, handle=handle, live=len(self))
    return handle

  def remove(self, handle: int) -> None:
    """Removes a session. Removing an unknown or already removed handle is a no-op."""
    session = self._sessions.pop(handle, None)
    started = self._start_times.pop(handle, None)
    if session is None:
      return

    duration = time.monotonic() - started if started is not None else None
    self.logger.debug(
      "Session removed", session=session.id, handle=handle, duration=duration, live=len(self)
    )

  def get(self, handle: int) -> ClosableSession | None:
    return self._sessions.get(handle)

  def snapshot(self) -> list[tuple[int, ClosableSession]]:
    """Current entries, safe to iterate while sessions remove themselves."""
    return list(self._sessions.items())

  def __len__(self) -> int:
    return len(self._sessions)

  def __contains__(self, handle: object) -> bool:
    return handle in self._sessions
