"""Loopback tests through real websockets listeners on both sides of the relay."""

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta

import pytest
from websockets.asyncio.client import connect
from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed, InvalidStatus

from dgrelay.auth import issue_session_token
from dgrelay.config import RelayConfig
from dgrelay.relay import connect_upstream
from dgrelay.server import RelayServer
from dgrelay.websocket import WebSocketServer

SESSION_SECRET = "session-secret"


class StubUpstream:
  """Plays the transcription service: greets, answers one frame, then closes if told to."""

  def __init__(self, close_with: tuple[int, str] | None = None):
    self.close_with = close_with
    self.paths: list[str] = []
    self.received: list[str | bytes] = []
    self.peer_close: tuple[int | None, str | None] | None = None
    self.finished = asyncio.Event()

  async def handler(self, websocket):
    self.paths.append(websocket.request.path)
    await websocket.send('{"type": "Metadata"}')
    try:
      async for message in websocket:
        self.received.append(message)
        await websocket.send(f'{{"type": "Results", "bytes": {len(message)}}}')
        if self.close_with is not None:
          await websocket.close(*self.close_with)
          return
    except ConnectionClosed:
      pass
    finally:
      self.peer_close = (websocket.close_code, websocket.close_reason)
      self.finished.set()


class CountingConnector:
  def __init__(self):
    self.urls: list[str] = []

  async def __call__(self, url: str, open_timeout: float):
    self.urls.append(url)
    return await connect_upstream(url, open_timeout)


@asynccontextmanager
async def running_relay(upstream: StubUpstream):
  """Start a stub upstream and a relay pointed at it; yield the relay URL and connector."""
  async with serve(upstream.handler, "127.0.0.1", 0) as upstream_server:
    upstream_port = upstream_server.sockets[0].getsockname()[1]
    config = RelayConfig(
      host="127.0.0.1",
      port=0,
      upstream_url=f"ws://127.0.0.1:{upstream_port}/v1/listen",
      upstream_api_key="dg-secret",
      session_secret=SESSION_SECRET,
    )
    connector = CountingConnector()
    relay = RelayServer(config, connector=connector)
    listener = WebSocketServer(relay.handle_connection, config.host, config.port)

    async with serve(
      listener.error_handling_wrapper,
      config.host,
      config.port,
      process_request=relay.routes.process_request,
      select_subprotocol=relay.routes.select_subprotocol,
    ) as relay_server:
      relay_port = relay_server.sockets[0].getsockname()[1]
      yield f"ws://127.0.0.1:{relay_port}/api/live-transcription", connector


def session_protocol() -> str:
  return f"access_token.{issue_session_token(SESSION_SECRET, timedelta(minutes=5))}"


class TestLoopbackRelay:
  @pytest.mark.asyncio
  async def test_invalid_token_rejected_before_upstream(self):
    upstream = StubUpstream()
    async with running_relay(upstream) as (url, connector):
      with pytest.raises(InvalidStatus) as excinfo:
        async with connect(url, subprotocols=["access_token.not-a-jwt"]):
          pass

    assert excinfo.value.response.status_code == 401
    assert connector.urls == []
    assert upstream.paths == []

  @pytest.mark.asyncio
  async def test_upstream_close_reaches_client_verbatim(self):
    upstream = StubUpstream(close_with=(1011, "server error"))
    protocol = session_protocol()

    async with running_relay(upstream) as (url, connector):
      async with connect(f"{url}?model=nova-2", subprotocols=[protocol]) as client:
        assert client.subprotocol == protocol
        assert await asyncio.wait_for(client.recv(), 2) == '{"type": "Metadata"}'

        await client.send(b"\x00\x01\x02\x03")
        assert await asyncio.wait_for(client.recv(), 2) == '{"type": "Results", "bytes": 4}'

        with pytest.raises(ConnectionClosed):
          await asyncio.wait_for(client.recv(), 2)

      assert client.close_code == 1011
      assert client.close_reason == "server error"

    assert upstream.received == [b"\x00\x01\x02\x03"]
    assert len(connector.urls) == 1
    assert "token=dg-secret" in upstream.paths[0]
    assert "model=nova-2" in upstream.paths[0]

  @pytest.mark.asyncio
  async def test_client_close_reaches_upstream(self):
    upstream = StubUpstream()

    async with running_relay(upstream) as (url, connector):
      async with connect(url, subprotocols=[session_protocol()]) as client:
        assert await asyncio.wait_for(client.recv(), 2) == '{"type": "Metadata"}'

      await asyncio.wait_for(upstream.finished.wait(), 2)

    assert upstream.peer_close == (1000, "Client disconnected")
