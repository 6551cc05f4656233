"""
HTTP side of the listener.

`websockets` hands every incoming request to `process_request` before the WebSocket
handshake. Plain HTTP endpoints are answered there directly; upgrade requests on the live
transcription path are authenticated there, so an unauthenticated client is turned away
before any relay session or upstream connection exists.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import timedelta
from email.utils import formatdate
from http import HTTPStatus
from typing import Any, Literal
from urllib.parse import urlsplit
from weakref import WeakKeyDictionary

from pydantic import BaseModel, TypeAdapter
from websockets.asyncio.server import ServerConnection
from websockets.datastructures import Headers
from websockets.http11 import Request, Response
from websockets.typing import Subprotocol

from dgrelay.auth import issue_session_token, validate_ws_token
from dgrelay.config import RelayConfig
from dgrelay.constants import HEALTH_PATH, LIVE_TRANSCRIPTION_PATH, METADATA_PATH, SESSION_PATH
from dgrelay.logs import get_logger
from dgrelay.metadata import MetadataError, load_metadata
from dgrelay.upstream import ConnectionOptions

CORS_HEADERS: list[tuple[str, str]] = [
  ("Access-Control-Allow-Origin", "*"),
  ("Access-Control-Allow-Methods", "GET, POST, OPTIONS"),
  ("Access-Control-Allow-Headers", "Content-Type, Authorization"),
]


class SessionTokenResponse(BaseModel):
  token: str


class HealthResponse(BaseModel):
  status: Literal["ok"] = "ok"


class ErrorResponse(BaseModel):
  error: str
  message: str


@dataclass(frozen=True)
class UpgradeGrant:
  """What an authenticated upgrade request carries over to its connection handler."""

  protocol: str
  """The ``access_token.<jwt>`` subprotocol to echo back."""

  options: ConnectionOptions


def make_response(status: HTTPStatus, body: bytes, content_type: str) -> Response:
  headers = Headers(CORS_HEADERS)
  headers["Date"] = formatdate(usegmt=True)
  headers["Connection"] = "close"
  headers["Content-Type"] = content_type
  headers["Content-Length"] = str(len(body))
  return Response(status.value, status.phrase, headers, body)


# TOML tables may hold dates and times, which the pydantic encoder handles.
_JSON_OBJECT = TypeAdapter(dict[str, Any])


def json_response(status: HTTPStatus, body: BaseModel | dict[str, Any]) -> Response:
  if isinstance(body, BaseModel):
    payload = body.model_dump_json().encode("utf-8")
  else:
    payload = _JSON_OBJECT.dump_json(body)
  return make_response(status, payload, "application/json")


class HttpRoutes:
  """Request routing and the authentication gate for the live transcription endpoint."""

  def __init__(self, config: RelayConfig):
    self.config = config
    # Keyed weakly so grants of connections that never finish the handshake disappear.
    self.grants: WeakKeyDictionary[ServerConnection, UpgradeGrant] = WeakKeyDictionary()
    self.logger = get_logger("http")
    self._routes: dict[str, Callable[[], Response]] = {
      SESSION_PATH: self.handle_session,
      METADATA_PATH: self.handle_metadata,
      HEALTH_PATH: self.handle_health,
    }

  def process_request(self, connection: ServerConnection, request: Request) -> Response | None:
    """Answer plain HTTP requests, and return None to let an authorized upgrade proceed."""
    url = urlsplit(request.path)

    if url.path == LIVE_TRANSCRIPTION_PATH:
      return self.authorize_upgrade(connection, request, url.query)

    route = self._routes.get(url.path)
    if route is None:
      return json_response(
        HTTPStatus.NOT_FOUND, ErrorResponse(error="Not Found", message="Endpoint not found")
      )
    return route()

  def authorize_upgrade(
    self, connection: ServerConnection, request: Request, query: str
  ) -> Response | None:
    offered = request.headers.get_all("Sec-WebSocket-Protocol")
    protocol = validate_ws_token(
      ", ".join(offered) if offered else None,
      self.config.session_secret.get_secret_value(),
    )

    if protocol is None:
      self.logger.info("WebSocket auth failed: invalid or missing token")
      return make_response(HTTPStatus.UNAUTHORIZED, b"Unauthorized", "text/plain; charset=utf-8")

    self.grants[connection] = UpgradeGrant(protocol, ConnectionOptions.from_query(query))
    return None

  def select_subprotocol(
    self, connection: ServerConnection, subprotocols: Sequence[Subprotocol]
  ) -> Subprotocol | None:
    """Echo back the exact subprotocol the credential arrived in."""
    grant = self.grants.get(connection)
    if grant is not None and grant.protocol in subprotocols:
      return Subprotocol(grant.protocol)
    return None

  def handle_session(self) -> Response:
    token = issue_session_token(
      self.config.session_secret.get_secret_value(),
      timedelta(seconds=self.config.session_ttl),
    )
    return json_response(HTTPStatus.OK, SessionTokenResponse(token=token))

  def handle_metadata(self) -> Response:
    try:
      meta = load_metadata(self.config.metadata_path)
    except MetadataError as e:
      return json_response(
        HTTPStatus.INTERNAL_SERVER_ERROR,
        ErrorResponse(error="INTERNAL_SERVER_ERROR", message=str(e)),
      )
    return json_response(HTTPStatus.OK, meta)

  def handle_health(self) -> Response:
    return json_response(HTTPStatus.OK, HealthResponse())
