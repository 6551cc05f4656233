import pytest

from dgrelay.config import RelayConfig
from dgrelay.registry import SessionRegistry


@pytest.fixture
def config() -> RelayConfig:
  return RelayConfig(upstream_api_key="dg-secret", session_secret="session-secret")


@pytest.fixture
def registry() -> SessionRegistry:
  return SessionRegistry()


@pytest.fixture
def fake_filesystem(fs):
  """Variable name 'fs' causes a pylint warning. Provide a longer name
  acceptable to pylint for use in tests.
  """
  yield fs
