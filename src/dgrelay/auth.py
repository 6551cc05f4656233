"""
Session credentials for the live transcription endpoint.

Browsers cannot attach custom headers to a WebSocket upgrade, so the credential
travels as a subprotocol of the form ``access_token.<jwt>`` and the full
subprotocol is echoed back when the upgrade is accepted.
"""

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from dgrelay.constants import ACCESS_TOKEN_PREFIX, SESSION_TOKEN_ALGORITHM
from dgrelay.logs import get_logger

logger = get_logger("auth")


def issue_session_token(secret: str, ttl: timedelta, now: datetime | None = None) -> str:
  """
  Create a signed session credential.

  :param secret: Server-held signing secret.
  :param ttl: How long the credential stays valid.
  :param now: Issue time, defaults to the current UTC time.
  :returns: Encoded JWT carrying only ``iat`` and ``exp``.
  """
  issued_at = now or datetime.now(timezone.utc)
  claims = {"iat": issued_at, "exp": issued_at + ttl}
  return jwt.encode(claims, secret, algorithm=SESSION_TOKEN_ALGORITHM)


def find_access_token_protocol(protocols: str | None) -> str | None:
  """Return the first ``access_token.`` entry of a comma-separated subprotocol list."""
  if not protocols:
    return None

  for protocol in (p.strip() for p in protocols.split(",")):
    if protocol.startswith(ACCESS_TOKEN_PREFIX):
      return protocol
  return None


def validate_ws_token(protocols: str | None, secret: str) -> str | None:
  """
  Validate the session credential carried in a ``Sec-WebSocket-Protocol`` header.

  Every failure (missing header, no ``access_token.`` entry, bad signature, expired
  token) returns None so callers cannot tell them apart.

  :param protocols: Raw header value, possibly None.
  :param secret: Server-held signing secret.
  :returns: The matched subprotocol string to echo back, or None.
  """
  protocol = find_access_token_protocol(protocols)
  if protocol is None:
    logger.debug("No access token subprotocol offered")
    return None

  token = protocol[len(ACCESS_TOKEN_PREFIX) :]
  try:
    jwt.decode(token, secret, algorithms=[SESSION_TOKEN_ALGORITHM])
  except JWTError as e:
    logger.debug("Session token rejected", error=str(e))
    return None

  return protocol
