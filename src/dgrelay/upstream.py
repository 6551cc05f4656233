"""
Mapping of client transcription options onto the upstream connection URL.
"""

from collections.abc import Iterator, Mapping
from types import MappingProxyType
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from dgrelay.constants import OPTIONAL_OPTIONS, REQUIRED_OPTION_DEFAULTS, UPSTREAM_AUTH_PARAM

KNOWN_OPTIONS: tuple[str, ...] = (*REQUIRED_OPTION_DEFAULTS, *OPTIONAL_OPTIONS)


class ConnectionOptions(Mapping[str, str]):
  """
  Transcription options a client supplied at upgrade time. Read-only.

  Only the known option names are kept. When a parameter repeats, the first value wins.
  """

  def __init__(self, params: Mapping[str, str] | None = None):
    kept = {name: value for name, value in (params or {}).items() if name in KNOWN_OPTIONS}
    self._params = MappingProxyType(kept)

  @classmethod
  def from_query(cls, query: str) -> "ConnectionOptions":
    """Parse options from a raw URL query string."""
    values: dict[str, str] = {}
    for name, value in parse_qsl(query, keep_blank_values=True):
      values.setdefault(name, value)
    return cls(values)

  def __getitem__(self, name: str) -> str:
    return self._params[name]

  def __iter__(self) -> Iterator[str]:
    return iter(self._params)

  def __len__(self) -> int:
    return len(self._params)

  def resolved(self, name: str) -> str:
    """Value for a required option, falling back to its default when absent or blank."""
    return self._params.get(name) or REQUIRED_OPTION_DEFAULTS[name]


def build_upstream_url(endpoint: str, api_key: str, options: ConnectionOptions) -> str:
  """
  Build the upstream connection URL for a relay session.

  Required options always appear, with defaults filling the gaps. Optional flags appear
  only when the client sent them, so upstream defaults are never overridden silently.

  :param endpoint: Upstream streaming endpoint. Existing query parameters are kept.
  :param api_key: Server-held upstream credential, sent as the ``token`` parameter.
  :param options: Options the client supplied.
  """
  parts = urlsplit(endpoint)
  params = dict(parse_qsl(parts.query, keep_blank_values=True))

  params[UPSTREAM_AUTH_PARAM] = api_key
  for name in REQUIRED_OPTION_DEFAULTS:
    params[name] = options.resolved(name)
  for name in OPTIONAL_OPTIONS:
    if name in options:
      params[name] = options[name]

  return urlunsplit(parts._replace(query=urlencode(params)))
