"""
Weekly AI-suggestion usage for a household.

Households live in the Supabase ``households`` table. This module reads the
subscription and counter columns and derives the usage-stats projection served
by ``GET /api/usage``.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from supabase import PostgrestAPIError

logger = logging.getLogger(__name__)

USAGE_LIMITS: Dict[str, int] = {
  "free": 5,
  "premium": -1,  # unlimited
  "family": -1,  # unlimited
}
DEFAULT_LIMIT = 5
USAGE_WINDOW = timedelta(days=7)
TRIAL_WARNING_DAYS = 3
TIER_NAMES = {"free": "Free", "premium": "Premium", "family": "Family"}

HOUSEHOLD_USAGE_COLUMNS = (
  "subscription_tier, ai_suggestions_this_week, ai_suggestions_reset_at, "
  "trial_ends_at, subscription_status"
)

# PostgREST codes that mean "no household matches this id".
_NOT_FOUND_CODES = {"PGRST116", "22P02"}


class UsageLookupError(RuntimeError):
  """Raised when the households table cannot be read or updated."""


def _utcnow() -> datetime:
  return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> Optional[datetime]:
  """Parse a Postgres ``timestamptz`` string into an aware datetime."""
  if not value:
    return None
  if isinstance(value, datetime):
    parsed = value
  else:
    try:
      parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
      logger.warning("Ignoring unparsable timestamp: %s", value)
      return None
  if parsed.tzinfo is None:
    parsed = parsed.replace(tzinfo=timezone.utc)
  return parsed


def fetch_household(client, household_id: str) -> Optional[Dict[str, Any]]:
  """Return the usage columns for ``household_id`` or ``None`` when absent."""
  try:
    response = (
      client.table("households")
      .select(HOUSEHOLD_USAGE_COLUMNS)
      .eq("id", household_id)
      .limit(1)
      .execute()
    )
  except PostgrestAPIError as exc:
    if getattr(exc, "code", None) in _NOT_FOUND_CODES:
      return None
    raise UsageLookupError(f"Household lookup failed: {exc}") from exc

  rows = response.data or []
  return rows[0] if rows else None


def build_usage_stats(household: Dict[str, Any], now: datetime | None = None) -> Dict[str, Any]:
  """
  Derive the usage projection from a ``households`` row.

  A counter whose window started more than a week ago reads as zero; it is
  actually reset the next time a suggestion is recorded.
  """
  now = now or _utcnow()
  tier = household.get("subscription_tier") or "free"
  limit = USAGE_LIMITS.get(tier, DEFAULT_LIMIT)
  is_unlimited = limit == -1
  used = int(household.get("ai_suggestions_this_week") or 0)

  reset_at = _parse_timestamp(household.get("ai_suggestions_reset_at")) or now
  if reset_at < now - USAGE_WINDOW:
    used = 0

  return {
    "suggestionsUsed": used,
    "suggestionsLimit": limit,
    "resetDate": (reset_at + USAGE_WINDOW).isoformat(),
    "tier": tier,
    "trialEnds": household.get("trial_ends_at"),
    "status": household.get("subscription_status") or "active",
    "isUnlimited": is_unlimited,
    "canUseAI": is_unlimited or used < limit,
    "remainingSuggestions": -1 if is_unlimited else max(0, limit - used),
  }


def get_usage_stats(client, household_id: str, now: datetime | None = None) -> Optional[Dict[str, Any]]:
  """Return usage stats for a household, ``None`` when it does not exist."""
  household = fetch_household(client, household_id)
  if household is None:
    return None
  return build_usage_stats(household, now=now)


def check_and_increment_usage(client, household_id: str, now: datetime | None = None) -> Dict[str, Any]:
  """
  Record one AI suggestion if the household is still under its weekly limit.

  Returns a dict with ``allowed``, ``usage`` and, when refused, ``message``.
  """
  now = now or _utcnow()
  usage = get_usage_stats(client, household_id, now=now)
  if usage is None:
    return {"allowed": False, "usage": None, "message": "Household not found"}

  if not usage["canUseAI"]:
    return {
      "allowed": False,
      "usage": usage,
      "message": (
        f"You've reached your weekly limit of {usage['suggestionsLimit']} AI suggestions. "
        "Upgrade to Premium for unlimited suggestions!"
      ),
    }

  used = usage["suggestionsUsed"]
  changes: Dict[str, Any] = {"ai_suggestions_this_week": used + 1}
  if used == 0:
    changes["ai_suggestions_reset_at"] = now.isoformat()

  try:
    client.table("households").update(changes).eq("id", household_id).execute()
  except PostgrestAPIError as exc:
    logger.error("Error incrementing usage for %s: %s", household_id, exc)
    return {"allowed": False, "usage": usage, "message": "Failed to track usage"}

  limit = usage["suggestionsLimit"]
  unlimited = usage["isUnlimited"]
  updated = dict(usage)
  updated["suggestionsUsed"] = used + 1
  updated["remainingSuggestions"] = -1 if unlimited else max(0, limit - used - 1)
  updated["canUseAI"] = unlimited or used + 1 < limit
  return {"allowed": True, "usage": updated}


def days_until_trial_expires(trial_ends: Any, now: datetime | None = None) -> Optional[int]:
  """Whole days left in the trial (rounded up), 0 once it has ended."""
  end = _parse_timestamp(trial_ends)
  if end is None:
    return None
  remaining = (end - (now or _utcnow())).total_seconds() / 86400
  days = math.ceil(remaining)
  return days if days > 0 else 0


def is_trial_expiring_soon(trial_ends: Any, now: datetime | None = None) -> bool:
  days = days_until_trial_expires(trial_ends, now=now)
  return days is not None and 0 < days <= TRIAL_WARNING_DAYS


def find_household_id(client, user_id: str) -> Optional[str]:
  """Return the household ``user_id`` belongs to via ``family_members``."""
  try:
    response = (
      client.table("family_members")
      .select("household_id")
      .eq("user_id", user_id)
      .limit(1)
      .execute()
    )
  except PostgrestAPIError as exc:
    raise UsageLookupError(f"Membership lookup failed: {exc}") from exc

  rows = response.data or []
  return rows[0].get("household_id") if rows else None


def build_subscription_badge(stats: Dict[str, Any], now: datetime | None = None) -> Dict[str, Any]:
  """Summarise plan, trial countdown and AI allowance for the dashboard badge."""
  tier = stats.get("tier") or "free"
  return {
    "tier": tier,
    "tierName": TIER_NAMES.get(tier, "Free"),
    "status": stats.get("status") or "active",
    "trialDaysRemaining": days_until_trial_expires(stats.get("trialEnds"), now=now),
    "trialExpiringSoon": is_trial_expiring_soon(stats.get("trialEnds"), now=now),
    "usage": stats,
  }


__all__ = [
  "USAGE_LIMITS",
  "UsageLookupError",
  "TIER_NAMES",
  "build_subscription_badge",
  "build_usage_stats",
  "check_and_increment_usage",
  "days_until_trial_expires",
  "fetch_household",
  "find_household_id",
  "get_usage_stats",
  "is_trial_expiring_soon",
]
