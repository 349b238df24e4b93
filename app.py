"""
Flask backend for BestMealMate.

This service renders the public pages (landing, login, onboarding and the
protected dashboard), bridges Supabase OAuth callbacks into a session cookie,
serves household usage statistics from the Supabase ``households`` table,
forwards AI chef questions and pantry photos to the Anthropic Messages API,
and drives Stripe checkout, billing portal and webhook handling.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import click
from dotenv import load_dotenv
from flask import Flask, g, redirect, render_template, request, url_for
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from bestmealmate import billing, supabase_gateway
from bestmealmate.ai_chef import ask_chef
from bestmealmate.ai_service import DEFAULT_MODEL, AIConfigurationError, AIServiceError, AITimeoutError
from bestmealmate.billing import PLAN_TIERS, BillingError, WebhookSignatureError
from bestmealmate.errors import (
  BestMealMateError,
  ExternalServiceError,
  NotFoundError,
  RateLimitedError,
  UpstreamTimeoutError,
  ValidationError,
)
from bestmealmate.food_scan import InvalidImageError, decode_image_data_url, lookup_barcode, scan_image
from bestmealmate.mobile_shell import build_capacitor_config, write_capacitor_config
from bestmealmate.scan_fallback import demo_scan_result
from bestmealmate.sessions import (
  ACCESS_TOKEN_COOKIE,
  CODE_VERIFIER_COOKIE,
  SESSION_COOKIE,
  SESSION_MAX_AGE,
  encode_session_cookie,
  read_request_session,
)
from bestmealmate.supabase_gateway import (
  PasswordUpdateError,
  SessionExchangeError,
  SignInError,
  SupabaseNotConfiguredError,
)
from bestmealmate.usage import UsageLookupError, build_subscription_badge, find_household_id, get_usage_stats

BASE_DIR = Path(__file__).resolve().parent

load_dotenv(BASE_DIR / ".env")

DEFAULT_NEXT_PATH = "/dashboard"
LOGIN_FAILED_PATH = "/login?error=auth_failed"
PROTECTED_PREFIXES = ("/dashboard",)
AUTH_ROUTES = ("/login", "/onboarding")
MIN_PASSWORD_LENGTH = 8


def _safe_int(value: Optional[str], default: int) -> int:
  try:
    return int(value) if value is not None else default
  except (TypeError, ValueError):
    return default


def _env(*names: str, default: str = "") -> str:
  """Return the first non-empty environment variable among ``names``."""
  for name in names:
    value = os.environ.get(name)
    if value and value.strip():
      return value.strip()
  return default


def _load_settings() -> Dict[str, Any]:
  """Read the runtime configuration from the environment."""
  return {
    "APP_ENV": _env("APP_ENV", "FLASK_ENV", default="development").lower(),
    "APP_URL": _env("NEXT_PUBLIC_APP_URL", "APP_URL").rstrip("/"),
    "SUPABASE_URL": _env("NEXT_PUBLIC_SUPABASE_URL", "SUPABASE_URL"),
    "SUPABASE_ANON_KEY": _env("NEXT_PUBLIC_SUPABASE_ANON_KEY", "SUPABASE_ANON_KEY"),
    "SUPABASE_SERVICE_ROLE_KEY": _env("SUPABASE_SERVICE_ROLE_KEY"),
    "SUPABASE_JWT_SECRET": _env("SUPABASE_JWT_SECRET"),
    "ANTHROPIC_API_KEY": _env("ANTHROPIC_API_KEY"),
    "ANTHROPIC_MODEL": _env("ANTHROPIC_MODEL", default=DEFAULT_MODEL),
    "AI_CHEF_TIMEOUT": _safe_int(os.environ.get("AI_CHEF_TIMEOUT"), 55),
    "SCAN_TIMEOUT": _safe_int(os.environ.get("SCAN_TIMEOUT"), 55),
    "STRIPE_SECRET_KEY": _env("STRIPE_SECRET_KEY"),
    "STRIPE_WEBHOOK_SECRET": _env("STRIPE_WEBHOOK_SECRET"),
    "STRIPE_PREMIUM_PRICE_ID": _env("STRIPE_PREMIUM_PRICE_ID"),
    "STRIPE_FAMILY_PRICE_ID": _env("STRIPE_FAMILY_PRICE_ID"),
    "CORS_ORIGINS": _env("CORS_ORIGINS", default="*"),
  }


def _safe_local_path(value: Optional[str], default: str = DEFAULT_NEXT_PATH) -> str:
  """Accept only same-site paths as redirect targets."""
  if not value or not value.startswith("/") or value.startswith("//") or value.startswith("/\\"):
    return default
  return value


def _json_body() -> Dict[str, Any]:
  payload = request.get_json(silent=True)
  return payload if isinstance(payload, dict) else {}


def create_app(test_config: Optional[Mapping[str, Any]] = None) -> Flask:
  """Instantiate the Flask application and register routes."""
  app = Flask(__name__, template_folder=str(BASE_DIR / "templates"))
  app.config.update(_load_settings())
  if test_config:
    app.config.update(test_config)

  origins = app.config["CORS_ORIGINS"]
  CORS(app, resources={r"/api/*": {"origins": "*" if origins == "*" else origins.split(",")}})

  def _secure_cookies() -> bool:
    return app.config["APP_ENV"] == "production"

  def _set_session_cookie(response, session: Dict[str, Any]):
    response.set_cookie(
      SESSION_COOKIE,
      encode_session_cookie(session),
      max_age=SESSION_MAX_AGE,
      path="/",
      secure=_secure_cookies(),
      httponly=False,
      samesite="Lax",
    )
    response.delete_cookie(CODE_VERIFIER_COOKIE, path="/")
    return response

  def _current_session() -> Optional[Dict[str, Any]]:
    if "session" not in g:
      g.session = read_request_session(request.cookies, jwt_secret=app.config["SUPABASE_JWT_SECRET"])
    return g.session

  def _subscription_badge(user_id: Any) -> Optional[Dict[str, Any]]:
    """Load the plan badge for the user's household; ``None`` when unavailable."""
    if not user_id:
      return None
    try:
      client = supabase_gateway.get_admin_client(app)
      household_id = find_household_id(client, str(user_id))
      stats = get_usage_stats(client, household_id) if household_id else None
    except (SupabaseNotConfiguredError, UsageLookupError) as exc:
      app.logger.warning("Subscription badge unavailable for %s: %s", user_id, exc)
      return None
    return build_subscription_badge(stats) if stats else None

  @app.context_processor
  def _inject_session() -> Dict[str, Any]:
    return {"signed_in": _current_session() is not None}

  @app.before_request
  def _guard_routes():
    """Send anonymous visitors to login and signed-in users past the auth pages."""
    path = request.path
    if any(path == prefix or path.startswith(prefix + "/") for prefix in PROTECTED_PREFIXES):
      if _current_session() is None:
        return redirect(url_for("login", redirect=path))
    elif path in AUTH_ROUTES and _current_session() is not None:
      return redirect(_safe_local_path(request.args.get("redirect")))
    return None

  @app.errorhandler(BestMealMateError)
  def _handle_app_error(exc: BestMealMateError):
    return exc.to_response()

  @app.errorhandler(Exception)
  def _handle_unexpected(exc: Exception):
    if isinstance(exc, HTTPException):
      return exc
    app.logger.exception("Unhandled error on %s: %s", request.path, exc)
    return {"success": False, "error": "Internal server error"}, 500

  @app.cli.command("export-mobile-config")
  @click.argument("path", required=False, default=str(BASE_DIR / "capacitor.config.json"))
  def export_mobile_config(path: str) -> None:
    """Write the Capacitor shell configuration to PATH."""
    written = write_capacitor_config(Path(path), build_capacitor_config(app.config["APP_URL"]))
    click.echo(f"Wrote {written}")

  # Pages

  @app.route("/", methods=["GET"])
  def landing():
    return render_template("index.html")

  @app.route("/loading", methods=["GET"])
  def loading():
    """Standalone loading placeholder shown during route transitions."""
    return render_template("loading.html")

  @app.route("/onboarding", methods=["GET"])
  def onboarding():
    return render_template("onboarding.html", trial_days=billing.TRIAL_PERIOD_DAYS)

  @app.route("/login", methods=["GET", "POST"])
  def login():
    """Render the sign-in form and handle email/password sign-in."""
    redirect_to = _safe_local_path(request.args.get("redirect"), default="")
    error = "Sign-in failed. Please try again." if request.args.get("error") == "auth_failed" else None
    if request.method == "GET":
      return render_template("login.html", error=error, redirect_to=redirect_to)

    email = (request.form.get("email") or "").strip().lower()
    password = request.form.get("password") or ""
    if not email or not password:
      return render_template(
        "login.html", error="Email and password are required.", email=email, redirect_to=redirect_to
      ), 400

    try:
      client = supabase_gateway.get_auth_client(app)
      session = supabase_gateway.sign_in_with_password(client, email, password)
    except SupabaseNotConfiguredError as exc:
      app.logger.error("Sign-in unavailable: %s", exc)
      return render_template(
        "login.html", error="Sign-in is temporarily unavailable.", email=email, redirect_to=redirect_to
      ), 503
    except SignInError as exc:
      app.logger.info("Sign-in rejected for %s: %s", email, exc)
      return render_template(
        "login.html", error="Invalid email or password.", email=email, redirect_to=redirect_to
      ), 401

    return _set_session_cookie(redirect(redirect_to or DEFAULT_NEXT_PATH), session)

  @app.route("/logout", methods=["POST"])
  def logout():
    response = redirect("/")
    response.delete_cookie(SESSION_COOKIE, path="/")
    response.delete_cookie(ACCESS_TOKEN_COOKIE, path="/")
    return response

  @app.route("/dashboard", methods=["GET"])
  @app.route("/dashboard/<path:section>", methods=["GET"])
  def dashboard(section: Optional[str] = None):
    session = _current_session() or {}
    user = session.get("user") or {}
    return render_template(
      "dashboard.html",
      user_email=user.get("email"),
      section=section,
      badge=_subscription_badge(user.get("id")),
    )

  @app.route("/reset-password", methods=["GET", "POST"])
  def reset_password():
    """Let a user arriving from a recovery link choose a new password."""
    session = _current_session()
    if session is None:
      return redirect(url_for("login", redirect="/reset-password"))
    if request.method == "GET":
      return render_template("reset_password.html", min_length=MIN_PASSWORD_LENGTH)

    password = request.form.get("password") or ""
    if len(password) < MIN_PASSWORD_LENGTH:
      return render_template(
        "reset_password.html",
        min_length=MIN_PASSWORD_LENGTH,
        error=f"Password must be at least {MIN_PASSWORD_LENGTH} characters.",
      ), 400

    try:
      client = supabase_gateway.get_auth_client(app)
      supabase_gateway.update_password(client, session, password)
    except (SupabaseNotConfiguredError, PasswordUpdateError) as exc:
      app.logger.error("Password update failed: %s", exc)
      return render_template(
        "reset_password.html",
        min_length=MIN_PASSWORD_LENGTH,
        error="We could not update your password. Request a new reset link.",
      ), 502
    return render_template("reset_password.html", min_length=MIN_PASSWORD_LENGTH, updated=True)

  # Auth

  @app.route("/auth/callback", methods=["GET"])
  def auth_callback():
    """
    Exchange the OAuth/PKCE ``code`` for a session and redirect.

    The exchange is attempted at most once. Failures are logged and reported
    to the browser only as ``/login?error=auth_failed``.
    """
    code = request.args.get("code")
    next_path = _safe_local_path(request.args.get("next"))
    if not code:
      return redirect(next_path)

    try:
      client = supabase_gateway.get_auth_client(app)
      session = supabase_gateway.exchange_code_for_session(
        client, code, request.cookies.get(CODE_VERIFIER_COOKIE)
      )
    except (SupabaseNotConfiguredError, SessionExchangeError) as exc:
      app.logger.error("Auth callback error: %s", exc)
      return redirect(LOGIN_FAILED_PATH)
    except Exception as exc:
      app.logger.exception("Auth callback failed unexpectedly: %s", exc)
      return redirect(LOGIN_FAILED_PATH)

    if request.args.get("type") == "recovery":
      next_path = "/reset-password"
    return _set_session_cookie(redirect(next_path), session)

  # API

  @app.route("/api/usage", methods=["GET"])
  def usage() -> Tuple[Dict[str, Any], int]:
    """Return weekly AI usage statistics for a household."""
    household_id = (request.args.get("householdId") or "").strip()
    if not household_id:
      raise ValidationError("householdId is required")

    try:
      stats = get_usage_stats(supabase_gateway.get_admin_client(app), household_id)
    except Exception as exc:
      app.logger.exception("Usage API error: %s", exc)
      raise ExternalServiceError("Failed to get usage stats") from exc

    if stats is None:
      raise NotFoundError("Household not found")
    return {"success": True, "usage": stats}, 200

  @app.route("/api/ai-chef", methods=["POST"])
  def ai_chef() -> Tuple[Dict[str, Any], int]:
    """Answer a cooking question using the family context supplied by the client."""
    payload = _json_body()
    message = payload.get("message")
    if not message or not isinstance(message, str):
      raise ValidationError("Message is required")

    try:
      reply = ask_chef(
        message,
        payload.get("context"),
        api_key=app.config["ANTHROPIC_API_KEY"],
        model=app.config["ANTHROPIC_MODEL"],
        timeout=app.config["AI_CHEF_TIMEOUT"],
      )
    except AITimeoutError as exc:
      app.logger.error("AI Chef timeout: %s", exc)
      raise UpstreamTimeoutError("Request timed out. Please try a simpler question.") from exc
    except AIServiceError as exc:
      if isinstance(exc, AIConfigurationError) or exc.status_code == 401:
        app.logger.error("AI Chef auth error: %s", exc)
        raise ExternalServiceError("AI service configuration error") from exc
      if exc.status_code == 429:
        app.logger.warning("AI Chef rate limited: %s", exc)
        raise RateLimitedError("AI service is busy. Please try again in a moment.") from exc
      app.logger.error("AI Chef error: %s", exc)
      raise ExternalServiceError("Failed to get AI response") from exc

    return {"reply": reply}, 200

  @app.route("/api/scan-food", methods=["POST"])
  def scan_food() -> Tuple[Dict[str, Any], int]:
    """Identify pantry items from a photo, or look up a single barcode."""
    payload = _json_body()

    barcode = payload.get("barcode")
    if barcode:
      item = lookup_barcode(str(barcode).strip())
      if item is None:
        raise NotFoundError("Product not found for barcode")
      return {"items": [item], "scanType": "barcode", "totalItems": 1}, 200

    image = payload.get("image")
    if not image:
      raise ValidationError("No image provided")
    try:
      media_type, image_data = decode_image_data_url(image)
    except InvalidImageError as exc:
      app.logger.info("Rejected scan upload: %s", exc)
      raise ValidationError("Invalid image format") from exc

    try:
      result = scan_image(
        media_type,
        image_data,
        location=payload.get("location"),
        api_key=app.config["ANTHROPIC_API_KEY"],
        model=app.config["ANTHROPIC_MODEL"],
        timeout=app.config["SCAN_TIMEOUT"],
      )
    except (AIServiceError, ValueError) as exc:
      app.logger.warning("Food scan failed; serving demo result: %s", exc)
      result = demo_scan_result()
    return result, 200

  @app.route("/api/stripe/checkout", methods=["POST"])
  def stripe_checkout() -> Tuple[Dict[str, Any], int]:
    """Start a Stripe subscription checkout for a household."""
    payload = _json_body()
    household_id = payload.get("householdId")
    tier = payload.get("tier")
    email = payload.get("email")

    if not household_id or not tier or not email:
      raise ValidationError("Missing required fields: householdId, tier, and email are required")
    if tier not in PLAN_TIERS:
      raise ValidationError('Invalid tier. Must be "premium" or "family"')

    price_id = app.config["STRIPE_FAMILY_PRICE_ID" if tier == "family" else "STRIPE_PREMIUM_PRICE_ID"]
    if not price_id:
      raise ExternalServiceError("Price ID not configured for this tier")

    try:
      url = billing.create_checkout_session(
        api_key=app.config["STRIPE_SECRET_KEY"],
        price_id=price_id,
        household_id=str(household_id),
        tier=tier,
        email=str(email),
        app_url=app.config["APP_URL"] or request.host_url.rstrip("/"),
      )
    except BillingError as exc:
      app.logger.error("Stripe checkout error: %s", exc)
      raise ExternalServiceError("Failed to create checkout session") from exc
    return {"url": url}, 200

  @app.route("/api/stripe/portal", methods=["GET"])
  def stripe_portal_info() -> Tuple[Dict[str, Any], int]:
    return {
      "name": "Stripe Customer Portal API",
      "description": "Create Stripe billing portal sessions for subscription management",
      "usage": {
        "method": "POST",
        "body": {
          "customerId": "string (required) - Stripe customer ID",
          "returnUrl": "string (optional) - URL to return to after portal",
        },
      },
    }, 200

  @app.route("/api/stripe/portal", methods=["POST"])
  def stripe_portal() -> Tuple[Dict[str, Any], int]:
    """Open the Stripe billing portal for an existing customer."""
    payload = _json_body()
    customer_id = payload.get("customerId")
    if not customer_id:
      raise ValidationError("Customer ID is required")

    app_url = app.config["APP_URL"] or request.host_url.rstrip("/")
    try:
      url = billing.create_portal_session(
        api_key=app.config["STRIPE_SECRET_KEY"],
        customer_id=str(customer_id),
        return_url=payload.get("returnUrl") or f"{app_url}/dashboard/settings",
      )
    except BillingError as exc:
      app.logger.error("Stripe portal error: %s", exc)
      if exc.user_message:
        raise ValidationError(exc.user_message) from exc
      raise ExternalServiceError("Failed to create portal session") from exc
    return {"success": True, "url": url}, 200

  @app.route("/api/stripe/webhook", methods=["POST"])
  def stripe_webhook() -> Tuple[Dict[str, Any], int]:
    """Mirror Stripe subscription events onto the household record."""
    body = request.get_data()
    signature = request.headers.get("Stripe-Signature")
    secret = app.config["STRIPE_WEBHOOK_SECRET"]
    if not signature or not secret:
      raise ValidationError("Missing signature or webhook secret")

    try:
      event = billing.parse_webhook_event(body, signature, secret)
    except WebhookSignatureError as exc:
      app.logger.warning("Webhook signature verification failed: %s", exc)
      raise ValidationError("Invalid signature") from exc

    try:
      billing.apply_webhook_event(
        supabase_gateway.get_admin_client(app),
        event,
        premium_price_id=app.config["STRIPE_PREMIUM_PRICE_ID"],
        family_price_id=app.config["STRIPE_FAMILY_PRICE_ID"],
      )
    except (BillingError, SupabaseNotConfiguredError) as exc:
      app.logger.exception("Webhook handler error: %s", exc)
      raise ExternalServiceError("Webhook handler failed") from exc
    return {"received": True}, 200

  @app.route("/health", methods=["GET"])
  def health() -> Tuple[Dict[str, str], int]:
    """Simple health-check endpoint."""
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}, 200

  return app


if __name__ == "__main__":
  logging.basicConfig(level=logging.INFO)
  flask_app = create_app()
  flask_app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "5000")), debug=flask_app.config["APP_ENV"] != "production")
