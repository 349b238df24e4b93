"""
Supabase clients and the auth operations the web app performs through them.

Two clients are used: a service-role client for server-side table access
(cached on the Flask app) and a short-lived anon client per auth request so
that no user session is ever shared between requests.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from supabase import AuthError, Client, ClientOptions, create_client

logger = logging.getLogger(__name__)

ADMIN_EXTENSION_KEY = "supabase_admin"
AUTH_EXTENSION_KEY = "supabase_auth"


class SupabaseNotConfiguredError(RuntimeError):
  """Raised when the Supabase URL or key is missing from the configuration."""


class SessionExchangeError(RuntimeError):
  """Raised when an authorization code cannot be turned into a session."""


class SignInError(RuntimeError):
  """Raised when email/password sign-in is rejected."""


class PasswordUpdateError(RuntimeError):
  """Raised when the identity provider refuses a password change."""


def create_supabase_client(url: str, key: str) -> Client:
  """Build a client that keeps no session state of its own."""
  if not url or not key:
    raise SupabaseNotConfiguredError("Supabase URL and key must be configured.")
  options = ClientOptions(auto_refresh_token=False, persist_session=False)
  return create_client(url, key, options=options)


def get_admin_client(app) -> Client:
  """Return the service-role client, creating it on first use."""
  client = app.extensions.get(ADMIN_EXTENSION_KEY)
  if client is None:
    client = create_supabase_client(
      app.config["SUPABASE_URL"], app.config["SUPABASE_SERVICE_ROLE_KEY"]
    )
    app.extensions[ADMIN_EXTENSION_KEY] = client
  return client


def get_auth_client(app) -> Client:
  """Return a fresh anon client for a single auth round-trip."""
  client = app.extensions.get(AUTH_EXTENSION_KEY)
  if client is not None:
    return client
  return create_supabase_client(app.config["SUPABASE_URL"], app.config["SUPABASE_ANON_KEY"])


def _session_payload(session: Any) -> Dict[str, Any]:
  """Flatten a gotrue ``Session`` into the fields the app keeps in its cookie."""
  user = getattr(session, "user", None)
  return {
    "access_token": session.access_token,
    "refresh_token": getattr(session, "refresh_token", None),
    "expires_at": getattr(session, "expires_at", None),
    "token_type": getattr(session, "token_type", None) or "bearer",
    "user": {
      "id": getattr(user, "id", None),
      "email": getattr(user, "email", None),
    },
  }


def exchange_code_for_session(client: Client, code: str, code_verifier: Optional[str] = None) -> Dict[str, Any]:
  """
  Exchange a one-time authorization code for a session.

  ``code_verifier`` is the PKCE verifier stored by the browser when the flow
  started; the provider rejects the exchange if it is required and missing.
  """
  params: Dict[str, Any] = {"auth_code": code}
  if code_verifier:
    params["code_verifier"] = code_verifier

  try:
    response = client.auth.exchange_code_for_session(params)
  except AuthError as exc:
    raise SessionExchangeError(str(exc)) from exc

  session = getattr(response, "session", None)
  if session is None or not getattr(session, "access_token", None):
    raise SessionExchangeError("Identity provider returned no session.")
  return _session_payload(session)


def sign_in_with_password(client: Client, email: str, password: str) -> Dict[str, Any]:
  """Authenticate with email and password and return the session payload."""
  try:
    response = client.auth.sign_in_with_password({"email": email, "password": password})
  except AuthError as exc:
    raise SignInError(str(exc)) from exc

  session = getattr(response, "session", None)
  if session is None:
    raise SignInError("Identity provider returned no session.")
  return _session_payload(session)


def update_password(client: Client, session: Dict[str, Any], new_password: str) -> None:
  """Set a new password for the user that owns ``session``."""
  try:
    client.auth.set_session(session["access_token"], session.get("refresh_token") or "")
    client.auth.update_user({"password": new_password})
  except AuthError as exc:
    raise PasswordUpdateError(str(exc)) from exc


__all__ = [
  "PasswordUpdateError",
  "SessionExchangeError",
  "SignInError",
  "SupabaseNotConfiguredError",
  "create_supabase_client",
  "exchange_code_for_session",
  "get_admin_client",
  "get_auth_client",
  "sign_in_with_password",
  "update_password",
]
