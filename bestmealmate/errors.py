"""
Error taxonomy shared by the HTTP handlers.

Each error carries the HTTP status and the message that is safe to show to the
client. Internal causes are chained with ``raise ... from`` and logged by the
handler; they never reach the response body.
"""

from __future__ import annotations

from typing import Any, Dict, Tuple


class BestMealMateError(Exception):
  """Base class for errors that map onto a JSON error response."""

  status_code = 500
  default_message = "Internal server error"

  def __init__(self, message: str | None = None, status_code: int | None = None) -> None:
    self.message = message or self.default_message
    if status_code is not None:
      self.status_code = status_code
    super().__init__(self.message)

  def to_response(self) -> Tuple[Dict[str, Any], int]:
    return {"success": False, "error": self.message}, self.status_code


class ValidationError(BestMealMateError):
  """Missing or malformed client input."""

  status_code = 400
  default_message = "Invalid request"


class NotFoundError(BestMealMateError):
  """The requested resource does not exist."""

  status_code = 404
  default_message = "Not found"


class ExternalServiceError(BestMealMateError):
  """A hosted collaborator (Supabase, Stripe, the AI provider) failed."""

  status_code = 500
  default_message = "Upstream service failed"


class RateLimitedError(ExternalServiceError):
  status_code = 429
  default_message = "Service is busy. Please try again in a moment."


class UpstreamTimeoutError(ExternalServiceError):
  status_code = 504
  default_message = "Request timed out"


__all__ = [
  "BestMealMateError",
  "ValidationError",
  "NotFoundError",
  "ExternalServiceError",
  "RateLimitedError",
  "UpstreamTimeoutError",
]
