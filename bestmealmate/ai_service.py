"""
Client helpers for invoking the Anthropic Messages API.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MODEL = "claude-sonnet-4-20250514"


class AIServiceError(RuntimeError):
  """Raised when the AI provider returns an error or cannot be reached."""

  def __init__(self, message: str, status_code: Optional[int] = None) -> None:
    super().__init__(message)
    self.status_code = status_code


class AIConfigurationError(AIServiceError):
  """Raised when no API key is configured."""


class AITimeoutError(AIServiceError):
  """Raised when the provider does not answer within the timeout."""


def call_messages_api(
  messages: List[Dict[str, Any]],
  *,
  api_key: str,
  model: str = DEFAULT_MODEL,
  max_tokens: int = 1024,
  system: Optional[str] = None,
  timeout: float = 55,
) -> Dict[str, Any]:
  """
  Send a single Messages API request and return the decoded JSON body.

  Parameters
  ----------
  messages:
      Conversation turns in the provider's ``role``/``content`` format.
  api_key:
      Provider key sent as the ``x-api-key`` header.
  model:
      Model identifier.
  max_tokens:
      Upper bound on generated tokens.
  system:
      Optional system prompt.
  timeout:
      Request timeout in seconds.
  """
  if not api_key:
    raise AIConfigurationError("ANTHROPIC_API_KEY is not configured", status_code=401)

  payload: Dict[str, Any] = {
    "model": model,
    "max_tokens": max_tokens,
    "messages": messages,
  }
  if system:
    payload["system"] = system
  headers = {
    "Content-Type": "application/json",
    "x-api-key": api_key,
    "anthropic-version": ANTHROPIC_VERSION,
  }

  try:
    response = requests.post(ANTHROPIC_MESSAGES_URL, headers=headers, json=payload, timeout=timeout)
  except requests.Timeout as exc:
    raise AITimeoutError(f"AI request timed out after {timeout}s") from exc
  except requests.RequestException as exc:
    raise AIServiceError(f"AI request failed: {exc}") from exc

  if not response.ok:
    error_body = response.text[:200] if response.text else response.reason
    raise AIServiceError(
      f"AI provider responded with {response.status_code}: {error_body}",
      status_code=response.status_code,
    )

  try:
    return response.json()
  except ValueError as exc:
    raise AIServiceError("AI provider did not return JSON.") from exc


def extract_text(response: Dict[str, Any]) -> Optional[str]:
  """Return the first text block of a Messages API response."""
  for block in response.get("content") or []:
    if isinstance(block, dict) and block.get("type") == "text":
      return block.get("text") or ""
  return None


__all__ = [
  "AIConfigurationError",
  "AIServiceError",
  "AITimeoutError",
  "call_messages_api",
  "extract_text",
]
