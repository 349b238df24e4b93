from __future__ import annotations

import time
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest
from supabase import AuthError

from app import create_app
from bestmealmate.sessions import SESSION_COOKIE, encode_session_cookie

TEST_CONFIG = {
  "TESTING": True,
  "APP_ENV": "test",
  "APP_URL": "https://app.bestmealmate.test",
  "SUPABASE_URL": "https://project.supabase.test",
  "SUPABASE_ANON_KEY": "anon-key",
  "SUPABASE_SERVICE_ROLE_KEY": "service-role-key",
  "SUPABASE_JWT_SECRET": "",
  "ANTHROPIC_API_KEY": "test-anthropic-key",
  "STRIPE_SECRET_KEY": "sk_test_123",
  "STRIPE_WEBHOOK_SECRET": "whsec_test_secret",
  "STRIPE_PREMIUM_PRICE_ID": "price_premium",
  "STRIPE_FAMILY_PRICE_ID": "price_family",
}


class FakeAuthError(AuthError):
  def __init__(self, message: str) -> None:
    Exception.__init__(self, message)
    self.message = message


class FakeResponse:
  """Stand-in for ``requests.Response``."""

  def __init__(self, status_code: int = 200, json_data: Any = None, text: str = "") -> None:
    self.status_code = status_code
    self._json = json_data
    self.text = text
    self.reason = "OK" if status_code < 400 else "Error"

  @property
  def ok(self) -> bool:
    return self.status_code < 400

  def json(self) -> Any:
    if self._json is None:
      raise ValueError("no JSON")
    return self._json


class FakeQuery:
  def __init__(self, table: "FakeTable") -> None:
    self.table = table
    self.action = "select"
    self.payload: Optional[Dict[str, Any]] = None
    self.filters: List[tuple] = []
    self.row_limit: Optional[int] = None

  def select(self, columns: str) -> "FakeQuery":
    self.action = "select"
    return self

  def update(self, payload: Dict[str, Any]) -> "FakeQuery":
    self.action = "update"
    self.payload = payload
    return self

  def eq(self, column: str, value: Any) -> "FakeQuery":
    self.filters.append((column, value))
    return self

  def limit(self, count: int) -> "FakeQuery":
    self.row_limit = count
    return self

  def execute(self):
    return self.table.run(self)


class FakeTable:
  def __init__(self, rows: List[Dict[str, Any]]) -> None:
    self.rows = rows
    self.error: Optional[Exception] = None
    self.updates: List[Dict[str, Any]] = []

  def run(self, query: FakeQuery):
    if self.error is not None:
      raise self.error
    matches = [row for row in self.rows if all(row.get(col) == val for col, val in query.filters)]
    if query.action == "update":
      self.updates.append({"filters": list(query.filters), "values": dict(query.payload or {})})
      for row in matches:
        row.update(query.payload or {})
      return SimpleNamespace(data=matches)
    if query.row_limit is not None:
      matches = matches[:query.row_limit]
    return SimpleNamespace(data=[dict(row) for row in matches])


class FakeAuth:
  def __init__(self) -> None:
    self.session = make_gotrue_session()
    self.error: Optional[Exception] = None
    self.exchange_calls: List[Dict[str, Any]] = []
    self.sign_in_calls: List[Dict[str, Any]] = []
    self.password_updates: List[Dict[str, Any]] = []

  def exchange_code_for_session(self, params: Dict[str, Any]):
    self.exchange_calls.append(params)
    if self.error is not None:
      raise self.error
    return SimpleNamespace(session=self.session, user=self.session.user)

  def sign_in_with_password(self, credentials: Dict[str, Any]):
    self.sign_in_calls.append(credentials)
    if self.error is not None:
      raise self.error
    return SimpleNamespace(session=self.session, user=self.session.user)

  def set_session(self, access_token: str, refresh_token: str):
    return SimpleNamespace(session=self.session)

  def update_user(self, attributes: Dict[str, Any]):
    if self.error is not None:
      raise self.error
    self.password_updates.append(attributes)
    return SimpleNamespace(user=self.session.user)


class FakeSupabase:
  def __init__(
    self,
    households: Optional[List[Dict[str, Any]]] = None,
    members: Optional[List[Dict[str, Any]]] = None,
  ) -> None:
    self.households = FakeTable(households or [])
    self.family_members = FakeTable(members or [])
    self.auth = FakeAuth()

  def table(self, name: str) -> FakeQuery:
    assert name in ("households", "family_members"), f"unexpected table {name}"
    return FakeQuery(getattr(self, name))


def make_gotrue_session(email: str = "cook@example.com", expires_in: int = 3600):
  return SimpleNamespace(
    access_token="access-token-123",
    refresh_token="refresh-token-456",
    expires_at=int(time.time()) + expires_in,
    token_type="bearer",
    user=SimpleNamespace(id="user-1", email=email),
  )


@pytest.fixture
def households() -> List[Dict[str, Any]]:
  return [
    {
      "id": "household-free",
      "subscription_tier": "free",
      "ai_suggestions_this_week": 2,
      "ai_suggestions_reset_at": None,
      "trial_ends_at": None,
      "subscription_status": "active",
      "stripe_customer_id": "cus_free",
    },
    {
      "id": "household-premium",
      "subscription_tier": "premium",
      "ai_suggestions_this_week": 40,
      "ai_suggestions_reset_at": None,
      "trial_ends_at": "2030-01-15T00:00:00+00:00",
      "subscription_status": "trialing",
      "stripe_customer_id": "cus_premium",
      "stripe_subscription_id": "sub_premium",
    },
  ]


@pytest.fixture
def members() -> List[Dict[str, Any]]:
  return [{"user_id": "user-1", "household_id": "household-premium"}]


@pytest.fixture
def supabase(households, members) -> FakeSupabase:
  return FakeSupabase(households, members)


@pytest.fixture
def app(supabase):
  flask_app = create_app(TEST_CONFIG)
  flask_app.extensions["supabase_admin"] = supabase
  flask_app.extensions["supabase_auth"] = supabase
  return flask_app


@pytest.fixture
def client(app):
  return app.test_client()


@pytest.fixture
def signed_in_client(client):
  session = {
    "access_token": "access-token-123",
    "refresh_token": "refresh-token-456",
    "expires_at": int(time.time()) + 3600,
    "user": {"id": "user-1", "email": "cook@example.com"},
  }
  client.set_cookie(SESSION_COOKIE, encode_session_cookie(session))
  return client


@pytest.fixture
def fake_response():
  return FakeResponse


@pytest.fixture
def auth_error():
  return FakeAuthError
