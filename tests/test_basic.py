"""Basic tests for dgrelay."""

import dgrelay


def test_import():
  """Test that the module can be imported."""
  assert dgrelay is not None


def test_version():
  """Test that version is defined."""
  assert hasattr(dgrelay, "__version__")
