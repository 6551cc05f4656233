"""
Relay session components: the state machine, the channel helpers and the session itself.
"""

from dgrelay.relay.channel import Channel, CloseFrame, Delivery, deliver, propagated_close
from dgrelay.relay.session import RelaySession, UpstreamConnector, connect_upstream
from dgrelay.relay.state import RelayAction, RelayEvent, RelayState, Transition, advance

__all__ = [
  "Channel",
  "CloseFrame",
  "Delivery",
  "RelayAction",
  "RelayEvent",
  "RelaySession",
  "RelayState",
  "Transition",
  "UpstreamConnector",
  "advance",
  "connect_upstream",
  "deliver",
  "propagated_close",
]
