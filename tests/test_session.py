"""Tests for the relay session forwarding and close propagation."""

import asyncio
import gc

import pytest
from fakes import FakeChannel, FakeConnector, wait_until

from dgrelay.relay import RelaySession, RelayState
from dgrelay.upstream import ConnectionOptions


async def start_session(config, registry, connector, options=None):
  client = FakeChannel(name="client")
  session = RelaySession(client, options or ConnectionOptions(), config, registry, connector)
  task = asyncio.create_task(session.run())
  return client, session, task


async def start_active_session(config, registry, connector=None):
  connector = connector or FakeConnector()
  client, session, task = await start_session(config, registry, connector)
  await wait_until(lambda: session.state is RelayState.ACTIVE)
  return client, connector.upstreams[0], session, task


class TestSessionLifecycle:
  @pytest.mark.asyncio
  async def test_registers_and_connects_with_built_url(self, config, registry):
    connector = FakeConnector()
    options = ConnectionOptions.from_query("model=nova-2&diarize=true")
    client, session, task = await start_session(config, registry, connector, options)
    await wait_until(lambda: session.state is RelayState.ACTIVE)

    assert len(registry) == 1
    assert connector.calls == [
      "wss://api.deepgram.com/v1/listen?token=dg-secret&model=nova-2&language=en"
      "&encoding=linear16&sample_rate=16000&channels=1&smart_format=true&diarize=true"
    ]

    client.peer_close(1000)
    await asyncio.wait_for(task, 1)
    assert len(registry) == 0
    assert session.state is RelayState.CLOSED

  @pytest.mark.asyncio
  async def test_handshake_failure_closes_client_with_error(self, config, registry):
    connector = FakeConnector(error=OSError("connection refused"))
    client, session, task = await start_session(config, registry, connector)

    await asyncio.wait_for(task, 1)

    assert client.close_calls == [(1011, "Upstream connection failed")]
    assert session.upstream is None
    assert session.state is RelayState.CLOSED
    assert len(registry) == 0

  @pytest.mark.asyncio
  async def test_client_close_during_handshake_abandons_upstream(self, config, registry):
    connector = FakeConnector(gate=asyncio.Event())
    client, session, task = await start_session(config, registry, connector)
    await wait_until(lambda: len(connector.calls) == 1)

    client.peer_close(1001, "page closed")
    await asyncio.wait_for(task, 1)

    assert session.upstream is None
    assert connector.upstreams == []
    assert session.state is RelayState.CLOSED


class TestForwarding:
  @pytest.mark.asyncio
  async def test_client_frames_reach_upstream_in_order(self, config, registry):
    client, upstream, session, task = await start_active_session(config, registry)

    frames = [b"\x01\x02", b"\x03", '{"type": "KeepAlive"}', b"\x04"]
    for frame in frames:
      client.feed(frame)
    await wait_until(lambda: len(upstream.sent) == len(frames))

    assert upstream.sent == frames
    assert [type(f) for f in upstream.sent] == [bytes, bytes, str, bytes]

    client.peer_close(1000)
    await asyncio.wait_for(task, 1)

  @pytest.mark.asyncio
  async def test_upstream_frames_reach_client_in_order(self, config, registry):
    client, upstream, session, task = await start_active_session(config, registry)

    frames = [f'{{"type": "Results", "seq": {i}}}' for i in range(25)]
    for frame in frames:
      upstream.feed(frame)
    await wait_until(lambda: len(client.sent) == len(frames))

    assert client.sent == frames

    client.peer_close(1000)
    await asyncio.wait_for(task, 1)

  @pytest.mark.asyncio
  async def test_frames_before_handshake_are_dropped(self, config, registry):
    gate = asyncio.Event()
    connector = FakeConnector(gate=gate)
    client, session, task = await start_session(config, registry, connector)

    client.feed(b"too early")
    await wait_until(lambda: client.pending == 0)
    gate.set()
    await wait_until(lambda: session.state is RelayState.ACTIVE)

    client.feed(b"on time")
    upstream = connector.upstreams[0]
    await wait_until(lambda: len(upstream.sent) == 1)
    assert upstream.sent == [b"on time"]

    client.peer_close(1000)
    await asyncio.wait_for(task, 1)

  @pytest.mark.asyncio
  async def test_failed_delivery_to_client_is_not_escalated(self, config, registry):
    client, upstream, session, task = await start_active_session(config, registry)
    client.gone = True

    upstream.feed('{"type": "Results"}')
    await wait_until(lambda: upstream.pending == 0)
    assert session.state is RelayState.ACTIVE
    assert not task.done()

    client.peer_close(1006)
    await asyncio.wait_for(task, 1)
    assert session.state is RelayState.CLOSED


class TestClosePropagation:
  @pytest.mark.asyncio
  async def test_client_close_closes_upstream_normally(self, config, registry):
    client, upstream, session, task = await start_active_session(config, registry)

    client.peer_close(1000, "done")
    await asyncio.wait_for(task, 1)

    assert upstream.close_calls == [(1000, "Client disconnected")]
    assert client.close_calls == []
    assert session.state is RelayState.CLOSED
    assert len(registry) == 0

  @pytest.mark.asyncio
  async def test_upstream_close_code_and_reason_forwarded_verbatim(self, config, registry):
    client, upstream, session, task = await start_active_session(config, registry)

    upstream.peer_close(1011, "server error")
    await asyncio.wait_for(task, 1)

    assert client.close_calls == [(1011, "server error")]
    assert upstream.close_calls == []
    assert session.state is RelayState.CLOSED

  @pytest.mark.asyncio
  async def test_upstream_normal_completion_forwarded(self, config, registry):
    client, upstream, session, task = await start_active_session(config, registry)

    upstream.feed('{"type": "Metadata"}')
    upstream.peer_close(1000, "")
    await asyncio.wait_for(task, 1)

    assert client.sent == ['{"type": "Metadata"}']
    assert client.close_calls == [(1000, "")]

  @pytest.mark.asyncio
  async def test_upstream_transport_error_fails_client(self, config, registry):
    client, upstream, session, task = await start_active_session(config, registry)

    upstream.drop()
    await asyncio.wait_for(task, 1)

    assert client.close_calls == [(1011, "Upstream connection error")]

  @pytest.mark.asyncio
  async def test_shutdown_closes_both_sides(self, config, registry):
    client, upstream, session, task = await start_active_session(config, registry)

    await session.shutdown()
    await asyncio.wait_for(task, 1)

    assert client.close_calls == [(1001, "Server shutting down")]
    assert upstream.close_calls == [(1000, "Server shutting down")]
    assert session.state is RelayState.CLOSED


class TestUpstreamPumpFailure:
  @pytest.mark.asyncio
  async def test_unexpected_error_reaches_caller_and_releases_both_sides(
    self, config, registry
  ):
    loop = asyncio.get_running_loop()
    reported = []
    previous_handler = loop.get_exception_handler()
    loop.set_exception_handler(lambda loop, context: reported.append(context))
    try:
      client, upstream, session, task = await start_active_session(config, registry)

      upstream.fail(RuntimeError("decoder crashed"))
      with pytest.raises(RuntimeError, match="decoder crashed"):
        await asyncio.wait_for(task, 1)

      gc.collect()
      await asyncio.sleep(0)
    finally:
      loop.set_exception_handler(previous_handler)

    assert client.close_calls == [(1011, "Upstream connection error")]
    assert upstream.close_calls == [(1011, "Relay error")]
    assert session.state is RelayState.CLOSED
    assert len(registry) == 0
    assert reported == []
