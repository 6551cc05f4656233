"""
Relay session state machine.

The session reacts to I/O completions on two channels. Each completion is turned into a
RelayEvent and fed through `advance`, which is pure: it returns the next state and the
single action the session must perform. States only ever move forward.
"""

from dataclasses import dataclass
from enum import StrEnum


class RelayState(StrEnum):
  OPENING = "opening"
  """Client accepted, upstream handshake in flight."""

  ACTIVE = "active"
  """Upstream handshake succeeded, forwarding in both directions."""

  CLOSING = "closing"
  """One side closed or failed, the other is being closed."""

  CLOSED = "closed"
  """Both channels released. Terminal."""


class RelayEvent(StrEnum):
  UPSTREAM_OPENED = "upstream_opened"
  UPSTREAM_FAILED = "upstream_failed"
  CLIENT_MESSAGE = "client_message"
  UPSTREAM_MESSAGE = "upstream_message"
  UPSTREAM_ERROR = "upstream_error"
  UPSTREAM_CLOSED = "upstream_closed"
  CLIENT_CLOSED = "client_closed"
  SHUTDOWN = "shutdown"
  CHANNELS_RELEASED = "channels_released"


class RelayAction(StrEnum):
  NONE = "none"
  DROP = "drop"
  FORWARD_TO_UPSTREAM = "forward_to_upstream"
  FORWARD_TO_CLIENT = "forward_to_client"
  FAIL_CLIENT = "fail_client"
  """Close the client with the relay's own error code."""
  PROPAGATE_CLOSE = "propagate_close"
  """Close the client with the upstream's close code and reason."""
  CLOSE_UPSTREAM = "close_upstream"
  CLOSE_BOTH = "close_both"


@dataclass(frozen=True)
class Transition:
  state: RelayState
  action: RelayAction = RelayAction.NONE


_CLOSE_EVENTS = {
  RelayEvent.UPSTREAM_FAILED,
  RelayEvent.UPSTREAM_ERROR,
  RelayEvent.UPSTREAM_CLOSED,
  RelayEvent.CLIENT_CLOSED,
  RelayEvent.SHUTDOWN,
}

_MESSAGE_EVENTS = {RelayEvent.CLIENT_MESSAGE, RelayEvent.UPSTREAM_MESSAGE}

_TRANSITIONS: dict[tuple[RelayState, RelayEvent], Transition] = {
  (RelayState.OPENING, RelayEvent.UPSTREAM_OPENED): Transition(RelayState.ACTIVE),
  (RelayState.OPENING, RelayEvent.UPSTREAM_FAILED): Transition(
    RelayState.CLOSING, RelayAction.FAIL_CLIENT
  ),
  (RelayState.OPENING, RelayEvent.UPSTREAM_ERROR): Transition(
    RelayState.CLOSING, RelayAction.FAIL_CLIENT
  ),
  (RelayState.OPENING, RelayEvent.UPSTREAM_CLOSED): Transition(
    RelayState.CLOSING, RelayAction.PROPAGATE_CLOSE
  ),
  (RelayState.OPENING, RelayEvent.CLIENT_CLOSED): Transition(
    RelayState.CLOSING, RelayAction.CLOSE_UPSTREAM
  ),
  (RelayState.OPENING, RelayEvent.SHUTDOWN): Transition(
    RelayState.CLOSING, RelayAction.CLOSE_BOTH
  ),
  (RelayState.ACTIVE, RelayEvent.CLIENT_MESSAGE): Transition(
    RelayState.ACTIVE, RelayAction.FORWARD_TO_UPSTREAM
  ),
  (RelayState.ACTIVE, RelayEvent.UPSTREAM_MESSAGE): Transition(
    RelayState.ACTIVE, RelayAction.FORWARD_TO_CLIENT
  ),
  (RelayState.ACTIVE, RelayEvent.UPSTREAM_ERROR): Transition(
    RelayState.CLOSING, RelayAction.FAIL_CLIENT
  ),
  (RelayState.ACTIVE, RelayEvent.UPSTREAM_CLOSED): Transition(
    RelayState.CLOSING, RelayAction.PROPAGATE_CLOSE
  ),
  (RelayState.ACTIVE, RelayEvent.CLIENT_CLOSED): Transition(
    RelayState.CLOSING, RelayAction.CLOSE_UPSTREAM
  ),
  (RelayState.ACTIVE, RelayEvent.SHUTDOWN): Transition(RelayState.CLOSING, RelayAction.CLOSE_BOTH),
  # The handshake finished after the client had already gone.
  (RelayState.CLOSING, RelayEvent.UPSTREAM_OPENED): Transition(
    RelayState.CLOSING, RelayAction.CLOSE_UPSTREAM
  ),
  (RelayState.CLOSING, RelayEvent.CHANNELS_RELEASED): Transition(RelayState.CLOSED),
  (RelayState.OPENING, RelayEvent.CHANNELS_RELEASED): Transition(RelayState.CLOSED),
  (RelayState.ACTIVE, RelayEvent.CHANNELS_RELEASED): Transition(RelayState.CLOSED),
}


def advance(state: RelayState, event: RelayEvent) -> Transition:
  """
  Compute the transition for an event.

  Messages are dropped outside ACTIVE. Close and error events after the first one are
  absorbed, since the side that closed first already decided the close code. CLOSED
  ignores everything.
  """
  if event in _MESSAGE_EVENTS:
    return _TRANSITIONS.get((state, event), Transition(state, RelayAction.DROP))

  if state is RelayState.CLOSED:
    return Transition(RelayState.CLOSED)

  transition = _TRANSITIONS.get((state, event))
  if transition is not None:
    return transition

  if state is RelayState.CLOSING and event in _CLOSE_EVENTS:
    return Transition(RelayState.CLOSING)

  return Transition(state)
