"""
Session cookie helpers.

The session obtained from Supabase is stored in the ``sb-auth-token`` cookie as
``base64-`` prefixed, URL-safe base64 JSON, the same encoding the Supabase
browser helpers use, so both sides of the app can read it.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import jwt
from jwt import InvalidTokenError

logger = logging.getLogger(__name__)

SESSION_COOKIE = "sb-auth-token"
ACCESS_TOKEN_COOKIE = "sb-access-token"
CODE_VERIFIER_COOKIE = "sb-code-verifier"
SESSION_MAX_AGE = 60 * 60 * 24 * 7  # one week
JWT_ALGORITHM = "HS256"
JWT_AUDIENCE = "authenticated"
_BASE64_PREFIX = "base64-"


def encode_session_cookie(session: Dict[str, Any]) -> str:
  raw = json.dumps(session, separators=(",", ":")).encode("utf-8")
  return _BASE64_PREFIX + base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_session_cookie(value: Optional[str]) -> Optional[Dict[str, Any]]:
  """Return the session stored in the cookie, or ``None`` if it is unreadable."""
  if not value:
    return None

  text = value
  if value.startswith(_BASE64_PREFIX):
    encoded = value[len(_BASE64_PREFIX):]
    encoded += "=" * (-len(encoded) % 4)
    try:
      text = base64.urlsafe_b64decode(encoded).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
      logger.debug("Session cookie is not valid base64.")
      return None

  try:
    session = json.loads(text)
  except ValueError:
    logger.debug("Session cookie is not valid JSON.")
    return None
  if not isinstance(session, dict):
    return None
  if not isinstance(session.get("user"), dict):
    session.pop("user", None)
  return session


def is_session_valid(session: Optional[Dict[str, Any]], *, jwt_secret: str = "", now: datetime | None = None) -> bool:
  """
  Decide whether a stored session still authenticates the browser.

  Without a JWT secret only presence and ``expires_at`` are checked; with one
  the access token signature, expiry and audience are verified as well.
  """
  if not session:
    return False
  access_token = session.get("access_token")
  if not access_token:
    return False

  expires_at = session.get("expires_at")
  if expires_at is not None:
    current = (now or datetime.now(timezone.utc)).timestamp()
    try:
      if float(expires_at) <= current:
        return False
    except (TypeError, ValueError):
      return False

  if jwt_secret:
    try:
      jwt.decode(access_token, jwt_secret, algorithms=[JWT_ALGORITHM], audience=JWT_AUDIENCE)
    except InvalidTokenError as exc:
      logger.info("Rejecting session token: %s", exc)
      return False
  return True


def read_request_session(cookies, *, jwt_secret: str = "") -> Optional[Dict[str, Any]]:
  """Return the valid session carried by the request cookies, if any."""
  session = decode_session_cookie(cookies.get(SESSION_COOKIE))
  if session is None and cookies.get(ACCESS_TOKEN_COOKIE):
    session = {"access_token": cookies.get(ACCESS_TOKEN_COOKIE)}
  if is_session_valid(session, jwt_secret=jwt_secret):
    return session
  return None


__all__ = [
  "ACCESS_TOKEN_COOKIE",
  "CODE_VERIFIER_COOKIE",
  "SESSION_COOKIE",
  "SESSION_MAX_AGE",
  "decode_session_cookie",
  "encode_session_cookie",
  "is_session_valid",
  "read_request_session",
]
