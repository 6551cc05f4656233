from dgrelay.registry import SessionRegistry


class StubSession:
  def __init__(self, session_id: str):
    self.id = session_id

  async def shutdown(self) -> None:
    pass


class TestSessionRegistry:
  def test_register_returns_distinct_handles(self):
    registry = SessionRegistry()
    first = registry.register(StubSession("a"))
    second = registry.register(StubSession("b"))

    assert first != second
    assert len(registry) == 2
    assert first in registry and second in registry

  def test_get_returns_registered_session(self):
    registry = SessionRegistry()
    session = StubSession("a")
    handle = registry.register(session)

    assert registry.get(handle) is session
    assert registry.get(handle + 100) is None

  def test_remove_is_idempotent(self):
    registry = SessionRegistry()
    handle = registry.register(StubSession("a"))

    registry.remove(handle)
    registry.remove(handle)
    registry.remove(12345)

    assert len(registry) == 0
    assert handle not in registry

  def test_handles_are_not_reused(self):
    registry = SessionRegistry()
    handle = registry.register(StubSession("a"))
    registry.remove(handle)

    assert registry.register(StubSession("b")) != handle

  def test_snapshot_survives_removal_during_iteration(self):
    registry = SessionRegistry()
    for name in "abc":
      registry.register(StubSession(name))

    seen = []
    for handle, session in registry.snapshot():
      seen.append(session.id)
      registry.remove(handle)

    assert seen == ["a", "b", "c"]
    assert len(registry) == 0
