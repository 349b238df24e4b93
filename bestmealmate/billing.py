"""
Stripe subscriptions: checkout, customer portal and webhook handling.

Stripe owns the subscription lifecycle; the app only mirrors the resulting
tier onto the household row when Stripe notifies it through the webhook.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import stripe
from supabase import PostgrestAPIError

logger = logging.getLogger(__name__)

PLAN_TIERS = ("premium", "family")
TRIAL_PERIOD_DAYS = 14
WEBHOOK_TOLERANCE_SECONDS = 300


class BillingError(RuntimeError):
  """Raised when Stripe is not configured or a Stripe call fails."""

  def __init__(self, message: str, user_message: Optional[str] = None) -> None:
    super().__init__(message)
    self.user_message = user_message


class WebhookSignatureError(ValueError):
  """Raised when a webhook payload does not carry a valid Stripe signature."""


def _require_key(api_key: str) -> None:
  if not api_key:
    raise BillingError("STRIPE_SECRET_KEY is not configured")


def create_checkout_session(
  *,
  api_key: str,
  price_id: str,
  household_id: str,
  tier: str,
  email: str,
  app_url: str,
) -> str:
  """Create a subscription checkout with a free trial and return its URL."""
  _require_key(api_key)
  try:
    session = stripe.checkout.Session.create(
      api_key=api_key,
      mode="subscription",
      payment_method_types=["card"],
      customer_email=email,
      line_items=[{"price": price_id, "quantity": 1}],
      metadata={"household_id": household_id, "tier": tier},
      success_url=f"{app_url}/dashboard?upgraded=true",
      cancel_url=f"{app_url}/dashboard/settings",
      subscription_data={"trial_period_days": TRIAL_PERIOD_DAYS},
    )
  except stripe.StripeError as exc:
    raise BillingError(f"Checkout session creation failed: {exc}", exc.user_message) from exc
  return session.url


def create_portal_session(*, api_key: str, customer_id: str, return_url: str) -> str:
  """Open a billing-portal session for an existing Stripe customer."""
  _require_key(api_key)
  try:
    session = stripe.billing_portal.Session.create(
      api_key=api_key,
      customer=customer_id,
      return_url=return_url,
    )
  except stripe.StripeError as exc:
    raise BillingError(f"Portal session creation failed: {exc}", exc.user_message) from exc
  return session.url


def parse_webhook_event(payload: bytes, signature: str, secret: str) -> Dict[str, Any]:
  """Verify the ``Stripe-Signature`` header and return the decoded event."""
  try:
    stripe.WebhookSignature.verify_header(
      payload.decode("utf-8"), signature, secret, WEBHOOK_TOLERANCE_SECONDS
    )
  except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
    raise WebhookSignatureError(str(exc)) from exc

  try:
    event = json.loads(payload)
  except ValueError as exc:
    raise WebhookSignatureError("Webhook payload is not JSON.") from exc
  if not isinstance(event, dict):
    raise WebhookSignatureError("Webhook payload is not an event object.")
  return event


def _tier_for_price(price_id: Optional[str], *, premium_price_id: str, family_price_id: str) -> str:
  if price_id and price_id == premium_price_id:
    return "premium"
  if price_id and price_id == family_price_id:
    return "family"
  return "free"


def apply_webhook_event(
  client,
  event: Dict[str, Any],
  *,
  premium_price_id: str = "",
  family_price_id: str = "",
) -> Optional[str]:
  """
  Mirror a Stripe event onto the ``households`` table.

  Returns the event type when it was acted on, ``None`` for ignored events.
  Raises ``BillingError`` if the table update fails.
  """
  event_type = event.get("type")
  obj = (event.get("data") or {}).get("object") or {}

  try:
    if event_type == "checkout.session.completed":
      metadata = obj.get("metadata") or {}
      household_id = metadata.get("household_id")
      tier = metadata.get("tier")
      if household_id and tier:
        client.table("households").update(
          {
            "subscription_tier": tier,
            "stripe_customer_id": obj.get("customer"),
            "stripe_subscription_id": obj.get("subscription"),
          }
        ).eq("id", household_id).execute()
      return event_type

    if event_type == "customer.subscription.updated":
      found = (
        client.table("households").select("id")
        .eq("stripe_customer_id", obj.get("customer"))
        .limit(1)
        .execute()
      )
      rows = found.data or []
      if rows:
        items = (obj.get("items") or {}).get("data") or [{}]
        price_id = (items[0].get("price") or {}).get("id")
        tier = _tier_for_price(
          price_id, premium_price_id=premium_price_id, family_price_id=family_price_id
        )
        client.table("households").update(
          {
            "subscription_tier": tier if obj.get("status") == "active" else "free",
            "stripe_subscription_id": obj.get("id"),
          }
        ).eq("id", rows[0]["id"]).execute()
      return event_type

    if event_type == "customer.subscription.deleted":
      client.table("households").update(
        {"subscription_tier": "free", "stripe_subscription_id": None}
      ).eq("stripe_customer_id", obj.get("customer")).execute()
      return event_type
  except PostgrestAPIError as exc:
    raise BillingError(f"Failed to update household for {event_type}: {exc}") from exc

  if event_type == "invoice.payment_failed":
    logger.warning("Payment failed for customer: %s", obj.get("customer"))
    return event_type

  logger.debug("Ignoring Stripe event %s", event_type)
  return None


__all__ = [
  "BillingError",
  "PLAN_TIERS",
  "WebhookSignatureError",
  "apply_webhook_event",
  "create_checkout_session",
  "create_portal_session",
  "parse_webhook_event",
]
