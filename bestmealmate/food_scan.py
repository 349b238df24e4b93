"""
Food recognition for pantry and fridge photos, plus barcode lookups.

Photos arrive from the browser as ``data:image/...;base64,`` URLs. They are
decoded and checked with Pillow before being forwarded to the vision model;
barcodes are resolved against the Open Food Facts product database.
"""

from __future__ import annotations

import base64
import binascii
import io
import json
import logging
import math
import re
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import requests
from PIL import Image, UnidentifiedImageError

from bestmealmate.ai_service import DEFAULT_MODEL, call_messages_api, extract_text

logger = logging.getLogger(__name__)

OPEN_FOOD_FACTS_URL = "https://world.openfoodfacts.org/api/v0/product/{barcode}.json"
BARCODE_TIMEOUT = 10
SCAN_MAX_TOKENS = 2048
DEFAULT_SHELF_LIFE_DAYS = 14
BARCODE_SHELF_LIFE_DAYS = 30
MACRO_FIELDS = ("calories", "protein", "carbs", "fat")

# Estimated shelf life for common food categories.
SHELF_LIFE_DAYS: Dict[str, int] = {
  "produce": 7,
  "meat": 3,
  "dairy": 14,
  "pantry": 180,
  "frozen": 90,
  "spices": 365,
  "condiments": 180,
  "grains": 180,
  "beverages": 30,
}

# Open Food Facts category tags mapped onto pantry categories.
OFF_CATEGORY_MAP = {
  "en:dairy": "dairy",
  "en:meats": "meat",
  "en:fruits": "produce",
  "en:vegetables": "produce",
  "en:beverages": "beverages",
  "en:cereals": "grains",
  "en:snacks": "pantry",
  "en:frozen": "frozen",
}

# Media types the vision model accepts, keyed by Pillow format name.
SUPPORTED_FORMATS = {
  "JPEG": "image/jpeg",
  "PNG": "image/png",
  "GIF": "image/gif",
  "WEBP": "image/webp",
}

_DATA_URL_RE = re.compile(r"^data:image/(\w+);base64,(.+)$", re.DOTALL)
_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")

SCAN_PROMPT = """You are an expert food recognition AI analyzing an image of food items in a {location}.

Identify ALL visible food items and provide detailed nutritional estimates. Return a JSON object:

{{
  "items": [
    {{
      "name": "Specific item name (e.g., 'Organic Whole Milk' not just 'Milk')",
      "quantity": "Estimated quantity with unit (e.g., '1 gallon', '2 lbs', '6 count', '500g')",
      "category": "One of: produce, meat, dairy, pantry, frozen, spices, condiments, grains, beverages",
      "confidence": 0.95,
      "calories": 150,
      "protein": 8,
      "carbs": 12,
      "fat": 8,
      "freshness": "fresh"
    }}
  ]
}}

Guidelines:
- Be VERY specific with item names - include brand if visible
- Provide accurate nutritional estimates per serving
- Estimate freshness: "fresh" (just bought), "good" (fine to use), "use-soon" (use within 1-2 days), "expired" (looks bad)
- Confidence score 0-1 based on image clarity
- Include ALL visible food items
- Calories, protein, carbs, fat are per typical serving

Return ONLY valid JSON, no markdown or extra text."""


class InvalidImageError(ValueError):
  """Raised when the uploaded image cannot be decoded."""


def decode_image_data_url(data_url: Any) -> Tuple[str, str]:
  """
  Validate a ``data:image`` URL and return ``(media_type, base64_data)``.

  The payload is decoded and opened with Pillow; the media type reported to the
  model is the one Pillow detects, not the one claimed by the browser.
  """
  if not isinstance(data_url, str):
    raise InvalidImageError("Image must be a data URL string.")
  match = _DATA_URL_RE.match(data_url.strip())
  if not match:
    raise InvalidImageError("Image is not a base64 data URL.")

  encoded = match.group(2).strip()
  try:
    image_bytes = base64.b64decode(encoded, validate=True)
  except (binascii.Error, ValueError) as exc:
    raise InvalidImageError("Image payload is not valid base64.") from exc

  try:
    with Image.open(io.BytesIO(image_bytes)) as image:
      image_format = image.format
      image.verify()
  except (UnidentifiedImageError, OSError, SyntaxError) as exc:
    raise InvalidImageError(f"Image could not be decoded: {exc}") from exc

  media_type = SUPPORTED_FORMATS.get(image_format or "")
  if media_type is None:
    raise InvalidImageError(f"Unsupported image format: {image_format}")
  return media_type, encoded


def _number(value: Any) -> float:
  try:
    number = float(value or 0)
  except (TypeError, ValueError):
    return 0.0
  return number if math.isfinite(number) else 0.0


def parse_detected_items(text: str) -> List[Dict[str, Any]]:
  """Pull the ``items`` list out of the model reply and add shelf-life estimates."""
  match = _JSON_OBJECT_RE.search(text or "")
  if not match:
    return []
  try:
    parsed = json.loads(match.group(0))
  except ValueError as exc:
    logger.error("Error parsing AI response: %s", exc)
    return []

  raw_items = parsed.get("items") if isinstance(parsed, dict) else None
  items: List[Dict[str, Any]] = []
  for item in raw_items or []:
    if not isinstance(item, dict):
      continue
    enriched = dict(item)
    for key in MACRO_FIELDS:
      value = enriched.get(key)
      if isinstance(value, float) and not math.isfinite(value):
        enriched[key] = 0
    enriched["expiryDays"] = SHELF_LIFE_DAYS.get(str(item.get("category")), DEFAULT_SHELF_LIFE_DAYS)
    items.append(enriched)
  return items


def summarise_nutrition(items: List[Dict[str, Any]]) -> Optional[Dict[str, float]]:
  """Total the per-item macros; ``None`` when nothing was detected."""
  if not items:
    return None
  totals = {
    "totalCalories": _number(sum(_number(item.get("calories")) for item in items)),
    "totalProtein": _number(sum(_number(item.get("protein")) for item in items)),
    "totalCarbs": _number(sum(_number(item.get("carbs")) for item in items)),
    "totalFat": _number(sum(_number(item.get("fat")) for item in items)),
  }
  return {key: int(value) if value == int(value) else value for key, value in totals.items()}


def scan_image(
  media_type: str,
  base64_data: str,
  *,
  location: Optional[str],
  api_key: str,
  model: str = DEFAULT_MODEL,
  timeout: float = 55,
) -> Dict[str, Any]:
  """Identify food items in an image and return the scan response body."""
  prompt = SCAN_PROMPT.format(location=location or "kitchen storage area")
  response = call_messages_api(
    [
      {
        "role": "user",
        "content": [
          {
            "type": "image",
            "source": {"type": "base64", "media_type": media_type, "data": base64_data},
          },
          {"type": "text", "text": prompt},
        ],
      }
    ],
    api_key=api_key,
    model=model,
    max_tokens=SCAN_MAX_TOKENS,
    timeout=timeout,
  )

  text = extract_text(response)
  if text is None:
    raise ValueError("No text response from AI")

  items = parse_detected_items(text)
  result: Dict[str, Any] = {"items": items, "scanType": "camera", "totalItems": len(items)}
  summary = summarise_nutrition(items)
  if summary is not None:
    result["nutritionSummary"] = summary
  return result


def map_category(off_category: str) -> str:
  for key, value in OFF_CATEGORY_MAP.items():
    if key in off_category:
      return value
  return "pantry"


def lookup_barcode(barcode: str, *, timeout: float = BARCODE_TIMEOUT) -> Optional[Dict[str, Any]]:
  """Resolve a barcode via Open Food Facts; ``None`` when it is unknown."""
  url = OPEN_FOOD_FACTS_URL.format(barcode=quote(barcode, safe=""))
  try:
    response = requests.get(url, timeout=timeout)
  except requests.RequestException as exc:
    logger.error("Barcode lookup error for %s: %s", barcode, exc)
    return None
  if not response.ok:
    return None

  try:
    data = response.json()
  except ValueError:
    logger.error("Barcode lookup for %s did not return JSON.", barcode)
    return None

  if not isinstance(data, dict):
    return None
  product = data.get("product")
  if data.get("status") != 1 or not isinstance(product, dict) or not product:
    logger.info("No usable product for barcode %s", barcode)
    return None

  nutriments = product.get("nutriments")
  if not isinstance(nutriments, dict):
    nutriments = {}
  categories = product.get("categories_tags")
  first_category = categories[0] if isinstance(categories, list) and categories else ""
  return {
    "name": str(product.get("product_name") or "Unknown Product"),
    "quantity": str(product.get("quantity") or "1 unit"),
    "category": map_category(str(first_category or "")),
    "confidence": 1.0,
    "calories": round(_number(nutriments.get("energy-kcal_100g"))),
    "protein": round(_number(nutriments.get("proteins_100g"))),
    "carbs": round(_number(nutriments.get("carbohydrates_100g"))),
    "fat": round(_number(nutriments.get("fat_100g"))),
    "expiryDays": BARCODE_SHELF_LIFE_DAYS,
    "freshness": "fresh",
    "barcode": barcode,
  }


__all__ = [
  "InvalidImageError",
  "SHELF_LIFE_DAYS",
  "decode_image_data_url",
  "lookup_barcode",
  "map_category",
  "parse_detected_items",
  "scan_image",
  "summarise_nutrition",
]
